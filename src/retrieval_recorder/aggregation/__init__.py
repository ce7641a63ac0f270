"""In-memory per-retrieval aggregation: state table, classifier and aggregator."""
