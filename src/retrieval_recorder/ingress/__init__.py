"""HTTP ingestion of retrieval telemetry."""
