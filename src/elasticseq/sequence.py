"""
elasticseq Sequence — Auto-Increment IDs on Elasticsearch
=========================================================

Elasticsearch bumps a document's ``_version`` by one every time the
document is indexed, atomically on its primary shard. Re-indexing an empty
counter document therefore yields a monotonic integer sequence shared by
every process talking to the cluster, with no client-side locking:

    index "sequence"
        counter document "<collection>:<name>"  ->  _version 1, 2, 3, ...

Components:
    CounterStore      batched atomic increments of counter documents
    BootstrapScanner  fast-forwards a new counter past pre-existing integer ids
    PrefetchCache     bounded queue of pre-allocated ids, refilled in background
    Sequence          per (collection, name) facade handing out ids as strings

Guarantees:
    - IDs handed out for one sequence name are unique and increase
    - A new counter starts above the highest integer id already present
      in the collection
    - IDs cached by a process that goes away are lost (gaps are fine)

Known race: two processes attaching at the same time to a sequence whose
counter document doesn't exist yet may both find the same floor and both
fast-forward the counter. That leaves a gap but never a duplicate.
"""

import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Tuple

from .config import DEFAULT_SEQUENCE_INDEX
from .errors import SequenceTimeout

logger = logging.getLogger(__name__)

# Counter documents carry no data; only their version matters.
SEQUENCE_INDEX_BODY = {
    "settings": {
        "number_of_shards": 1,
        "auto_expand_replicas": "0-all"
    },
    "mappings": {
        "_source": {"enabled": False},
        "enabled": False
    }
}


class CounterStore:
    """
    Atomic counters kept as document versions in the sequence index.

    ``store`` is anything providing ``ensure_index``, ``exists`` and
    ``increment`` (an ``ElasticStore`` in practice).
    """

    def __init__(self, store, index: str = DEFAULT_SEQUENCE_INDEX, chunk_size: int = 5000):
        self._store = store
        self.index = index
        self.chunk_size = chunk_size

    @staticmethod
    def key(collection: str, name: str) -> str:
        """Counter document id for a sequence."""
        return f"{collection}:{name}"

    def ensure_index(self) -> None:
        if self._store.ensure_index(self.index, SEQUENCE_INDEX_BODY):
            logger.info("Created sequence index %s", self.index)

    def exists(self, key: str) -> bool:
        return self._store.exists(key, index=self.index)

    def increment(self, key: str, count: int) -> List[int]:
        """
        Allocate ``count`` new values of a counter.

        The values are unique but may arrive in any order. A failure
        anywhere in the batch raises and nothing is handed out; values the
        counter already advanced past are lost, never reissued.
        """
        return self._store.increment(
            key, count, index=self.index, chunk_size=self.chunk_size
        )


def _numeral(id: str) -> Optional[str]:
    # Canonical decimal form of an integer id, None for anything else
    if not (id.isascii() and id.isdigit()):
        return None
    return id.lstrip("0") or "0"


def _numeral_rank(numeral: str) -> Tuple[int, str]:
    # Longest numeral wins, equal lengths compare by value
    return (len(numeral), numeral)


class BootstrapScanner:
    """
    Finds the highest integer id already used in a collection.

    Ids are compared as numerals: longer first, then by value. Ids that
    aren't plain integers are skipped. With ``id_field`` set, the floor is
    read from a numeric field mirroring the id using a native sort instead
    of scanning every id.
    """

    def __init__(self, store, collection: str, id_field: Optional[str] = None):
        self._store = store
        self.collection = collection
        self.id_field = id_field

    def floor(self) -> int:
        """Highest integer id in the collection, 0 if there is none."""
        if self.id_field:
            return self._field_floor()

        best = None
        for id in self._store.ids(self.collection):
            numeral = _numeral(id)
            if numeral is None:
                continue
            if best is None or _numeral_rank(numeral) > _numeral_rank(best):
                best = numeral
        return int(best) if best is not None else 0

    def _field_floor(self) -> int:
        body = {
            "size": 1,
            "_source": False,
            "query": {"exists": {"field": self.id_field}},
            "sort": [{self.id_field: {"order": "desc"}}]
        }
        hits = self._store.search(body, index=self.collection)["hits"]["hits"]
        if not hits:
            return 0
        return max(int(hits[0]["sort"][0]), 0)

    def run(self, counters: CounterStore, key: str) -> int:
        """
        Seed a counter that doesn't exist yet.

        Returns:
            The floor the counter was advanced to (0 if nothing was done)
        """
        if counters.exists(key):
            logger.debug("Counter %s exists, skipping bootstrap scan", key)
            return 0

        floor = self.floor()
        if floor > 0:
            logger.info(
                "Fast-forwarding counter %s past existing id %d in %s",
                key, floor, self.collection
            )
            counters.increment(key, floor)
        return floor


class PrefetchCache:
    """
    Bounded queue of pre-allocated ids.

    ``loader(n)`` fetches n fresh ids. Whenever a caller finds the cache at
    or below ``refill_threshold`` a refill of ``cache_size`` ids is started
    on a background worker. At most one refill is in flight at a time. The
    queue holds ``2 * cache_size`` ids so a full refill fits next to the
    low-watermark.

    A failed refill is logged and leaves the cache as it was; the next
    ``get`` at the low-watermark tries again.
    """

    def __init__(
        self,
        loader: Callable[[int], Iterable[int]],
        cache_size: int = 1,
        refill_threshold: Optional[int] = None,
        name: str = "sequence"
    ):
        self.name = name
        self.cache_size = max(cache_size, 1)
        if refill_threshold is None:
            refill_threshold = self.cache_size
        if refill_threshold < 0:
            raise ValueError("refill_threshold must not be negative")
        if refill_threshold > self.cache_size:
            # a refill must fit next to the low-watermark
            raise ValueError("refill_threshold must not exceed cache_size")
        self.refill_threshold = refill_threshold

        self.refills = 0
        self.failures = 0

        self._loader = loader
        self._queue: "queue.Queue[int]" = queue.Queue(maxsize=2 * self.cache_size)
        self._lock = threading.Lock()
        self._refilling = False
        self._closed = False
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="elasticseq-refill"
        )

    def __len__(self) -> int:
        return self._queue.qsize()

    @property
    def capacity(self) -> int:
        return self._queue.maxsize

    @property
    def filling(self) -> bool:
        """True while a refill is in flight."""
        return self._refilling

    def request_refill(self) -> bool:
        """
        Start a background refill unless one is already running.

        Returns:
            True if a refill was started
        """
        with self._lock:
            if self._closed or self._refilling:
                return False
            self._refilling = True
        try:
            self._executor.submit(self._refill)
        except RuntimeError:
            # closed concurrently
            with self._lock:
                self._refilling = False
            return False
        return True

    def _refill(self) -> None:
        try:
            ids = sorted(self._loader(self.cache_size))
        except Exception:
            self.failures += 1
            logger.exception("Refilling sequence cache %s failed", self.name)
        else:
            for id in ids:
                self._queue.put(id)
            self.refills += 1
            logger.debug("Refilled sequence cache %s with %d ids", self.name, len(ids))
        finally:
            with self._lock:
                self._refilling = False

    def get(self, timeout: Optional[float] = None) -> int:
        """
        Take the next id, waiting for a refill if the cache is empty.

        Args:
            timeout: Seconds to wait at most (None waits indefinitely)

        Raises:
            SequenceTimeout: If no id arrived in time
        """
        size = self._queue.qsize()
        if size == 0:
            if self._refilling:
                logger.debug("Sequence cache %s is empty, refill in flight", self.name)
            else:
                logger.warning("Sequence cache %s is empty, waiting for refill", self.name)
        if size <= self.refill_threshold:
            self.request_refill()

        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            raise SequenceTimeout(self.name, timeout) from None

    def close(self, wait: bool = False) -> None:
        """
        Stop scheduling refills. A refill already running completes.

        Args:
            wait: Block until that refill has finished, e.g. before the
                client it uses is closed
        """
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)


class Sequence:
    """
    Auto-increment id generator for one collection.

    Construction provisions the sequence index, bootstraps the counter
    against existing ids (errors here are fatal) and starts the first
    prefetch.

    Example:
        seq = Sequence(store, "orders", cache_size=100)
        seq.get_id()   # "1"
        seq.get_id()   # "2"
    """

    def __init__(
        self,
        store,
        collection: str,
        name: Optional[str] = None,
        cache_size: int = 1,
        refill_threshold: Optional[int] = None,
        sequence_index: str = DEFAULT_SEQUENCE_INDEX,
        id_field: Optional[str] = None,
        timeout: Optional[float] = None,
        chunk_size: int = 5000
    ):
        """
        Attach to (or create) a sequence.

        Args:
            store: Document store (``ElasticStore``) the counter lives in
            collection: Index whose documents receive the ids
            name: Sequence name (default: the collection name)
            cache_size: IDs fetched per round trip (minimum 1)
            refill_threshold: Low-watermark triggering a refill
                (default: cache_size)
            sequence_index: Index holding the counter documents
            id_field: Numeric field mirroring the id, used for bootstrap
            timeout: Default seconds ``get_id`` waits for an id
            chunk_size: Increments per bulk request
        """
        self.collection = collection
        self.name = name or collection
        self.timeout = timeout

        self.counters = CounterStore(store, index=sequence_index, chunk_size=chunk_size)
        self.key = CounterStore.key(collection, self.name)

        self.counters.ensure_index()
        self.floor = BootstrapScanner(store, collection, id_field=id_field).run(
            self.counters, self.key
        )

        self.cache = PrefetchCache(
            self._load,
            cache_size=cache_size,
            refill_threshold=refill_threshold,
            name=self.key
        )
        self.cache.request_refill()

    def _load(self, count: int) -> List[int]:
        return self.counters.increment(self.key, count)

    def next_int(self, timeout: Optional[float] = None) -> int:
        """Next id as an integer."""
        return self.cache.get(timeout if timeout is not None else self.timeout)

    def get_id(self, timeout: Optional[float] = None) -> str:
        """Next id as a string, ready to use as a document id."""
        return str(self.next_int(timeout))

    def close(self, wait: bool = False) -> None:
        self.cache.close(wait=wait)

    def __repr__(self) -> str:
        return f"Sequence({self.collection!r}, name={self.name!r})"
