"""Storage provider identity resolution."""

from retrieval_recorder.providers.resolver import DEFAULT_HEYFIL_ENDPOINT, StorageProviderResolver

__all__ = ["DEFAULT_HEYFIL_ENDPOINT", "StorageProviderResolver"]
