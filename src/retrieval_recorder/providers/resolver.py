"""Storage provider id resolution against the HeyFil registry.

Aggregate records identify storage providers by libp2p peer id. Metrics are
additionally tagged with the registry's normalized provider id (e.g.
``f01228000``), looked up via ``GET {endpoint}/sp?peerid={peer_id}``, which
answers with a JSON list of provider ids. The first entry is used.

Resolution is best-effort: any failure (network error, timeout, non-2xx
status, undecodable body) resolves to the empty string and is not cached,
so the next record retries. Definitive answers, including "no provider
known" (an empty list), are kept in a process-lifetime LRU cache.

Thread Safety:
    resolve() may be called from any thread. The cache is guarded by a
    lock; the network round-trip happens outside it, so concurrent misses
    for the same id may both query the registry (last write wins, same value).
    resolve_many() fans lookups out over a shared ThreadPoolExecutor and
    returns only once every lookup has completed or failed.
"""

import threading
from collections import OrderedDict
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed

import httpx
import structlog

from retrieval_recorder.contracts.enums import is_protocol_agnostic

logger = structlog.get_logger(__name__)

DEFAULT_HEYFIL_ENDPOINT = "https://heyfil.prod.cid.contact"
DEFAULT_CACHE_SIZE = 10_000
DEFAULT_LOOKUP_TIMEOUT_SEC = 30.0
DEFAULT_MAX_WORKERS = 10


class StorageProviderResolver:
    """Resolves peer ids to registry provider ids with an LRU cache.

    Example:
        >>> resolver = StorageProviderResolver()
        >>> resolver.resolve("12D3KooWDGBkHBZye7rN6Pz9ihEZrHnggoVRQh6eEtKP4z1K4KeE")
        'f01228000'
        >>> resolver.close()
    """

    def __init__(
        self,
        endpoint: str = DEFAULT_HEYFIL_ENDPOINT,
        *,
        client: httpx.Client | None = None,
        timeout: float = DEFAULT_LOOKUP_TIMEOUT_SEC,
        cache_size: int = DEFAULT_CACHE_SIZE,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        """Initialize the resolver.

        Args:
            endpoint: Base URL of the registry service.
            client: HTTP client to use. When omitted, the resolver creates and
                owns one with ``timeout`` applied.
            timeout: Per-lookup timeout in seconds (owned client only).
            cache_size: Maximum number of cached peer ids.
            max_workers: Concurrent lookups in resolve_many().
        """
        if cache_size <= 0:
            raise ValueError(f"cache_size must be positive, got {cache_size}")
        if max_workers <= 0:
            raise ValueError(f"max_workers must be positive, got {max_workers}")
        self._endpoint = endpoint.rstrip("/")
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=timeout)
        self._cache: OrderedDict[str, str] = OrderedDict()
        self._cache_size = cache_size
        self._cache_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sp-resolver")
        self._failures = 0
        self._closed = False

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def failures(self) -> int:
        """Number of lookups that failed since creation."""
        with self._cache_lock:
            return self._failures

    def cached(self, peer_id: str) -> str | None:
        """Return the cached provider id for ``peer_id``, or None on a miss."""
        with self._cache_lock:
            value = self._cache.get(peer_id)
            if value is not None:
                self._cache.move_to_end(peer_id)
            return value

    def _store(self, peer_id: str, provider_id: str) -> None:
        with self._cache_lock:
            self._cache[peer_id] = provider_id
            self._cache.move_to_end(peer_id)
            while len(self._cache) > self._cache_size:
                self._cache.popitem(last=False)

    def _query(self, peer_id: str) -> str | None:
        """Ask the registry. Returns None when no definitive answer was obtained."""
        try:
            response = self._client.get(f"{self._endpoint}/sp", params={"peerid": peer_id})
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPError as e:
            self._note_failure(peer_id, e)
            return None
        except ValueError as e:
            # JSONDecodeError is a ValueError
            self._note_failure(peer_id, e)
            return None

        if not isinstance(body, list) or not all(isinstance(item, str) for item in body):
            self._note_failure(peer_id, ValueError(f"unexpected response shape: {type(body).__name__}"))
            return None
        return body[0] if body else ""

    def _note_failure(self, peer_id: str, error: Exception) -> None:
        with self._cache_lock:
            self._failures += 1
            failures = self._failures
        logger.warning(
            "Storage provider lookup failed",
            peer_id=peer_id,
            error=str(error),
            error_type=type(error).__name__,
            total_failures=failures,
        )

    def resolve(self, peer_id: str) -> str:
        """Resolve ``peer_id`` to a registry provider id.

        Never raises. Empty ids and the protocol-agnostic id are not
        provider peer ids and resolve to the empty string without a lookup.
        """
        if is_protocol_agnostic(peer_id):
            return ""
        cached = self.cached(peer_id)
        if cached is not None:
            return cached
        if self._closed:
            return ""

        provider_id = self._query(peer_id)
        if provider_id is None:
            return ""
        self._store(peer_id, provider_id)
        return provider_id

    def resolve_many(self, peer_ids: Iterable[str]) -> dict[str, str]:
        """Resolve several peer ids concurrently.

        Returns:
            Mapping of every distinct input id to its provider id ("" when
            unresolved). Returns after all lookups have completed or failed.
        """
        results: dict[str, str] = {}
        pending: list[str] = []
        for peer_id in dict.fromkeys(peer_ids):
            cached = "" if is_protocol_agnostic(peer_id) else self.cached(peer_id)
            if cached is not None:
                results[peer_id] = cached
            else:
                pending.append(peer_id)

        if not pending:
            return results
        if len(pending) == 1 or self._closed:
            for peer_id in pending:
                results[peer_id] = self.resolve(peer_id)
            return results

        futures: dict[Future[str], str] = {}
        for peer_id in pending:
            try:
                futures[self._executor.submit(self.resolve, peer_id)] = peer_id
            except RuntimeError:
                # close() shut the pool down after the check above
                results[peer_id] = ""
        if len(futures) < len(pending):
            logger.debug("Storage provider lookups skipped after close", skipped=len(pending) - len(futures))
        for future in as_completed(futures):
            results[futures[future]] = future.result()
        return results

    def close(self) -> None:
        """Stop the lookup pool and release the HTTP client. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=True)
        if self._owns_client:
            self._client.close()
