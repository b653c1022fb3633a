"""
elasticseq — Elasticsearch Document Store with Auto-Increment IDs
================================================================

Application-facing access to Elasticsearch (indexing, retrieval, update,
deletion, bulk loading, index/template/mapping management, search and
aggregations) plus distributed auto-increment integer ids built on the
engine's per-document version counter.

How the ids work:
    - Each sequence has a counter document in the "sequence" index
    - Re-indexing it makes Elasticsearch bump its _version atomically
    - Every process prefetches a batch of versions and hands them out
    - A new sequence starts above the highest integer id already stored

Usage:
    from elasticseq import ElasticStore

    # Connect to local Elasticsearch (or ELASTICSEQ_HOSTS)
    store = ElasticStore("orders")

    # Documents indexed without an id get 1, 2, 3, ...
    store.set_sequence_mode(cache_size=100)
    order_id = store.index({"item": "book"})

    # Search
    results = store.search({"query": {"match": {"item": "book"}}})

License: MIT
"""

__version__ = "0.1.0"

from .core import ElasticStore
from .config import ConnectionSettings, connect
from .sequence import Sequence, PrefetchCache, BootstrapScanner, CounterStore
from .builder import BulkLoader
from .cluster import ClusterManager
from .errors import (
    ElasticSeqError,
    StoreUnavailable,
    SequenceConflict,
    SequenceTimeout,
    DocumentNotFound,
    MissingIdError,
    NotAcknowledged,
)

__all__ = [
    "ElasticStore",
    "ConnectionSettings",
    "connect",
    "Sequence",
    "PrefetchCache",
    "BootstrapScanner",
    "CounterStore",
    "BulkLoader",
    "ClusterManager",
    "ElasticSeqError",
    "StoreUnavailable",
    "SequenceConflict",
    "SequenceTimeout",
    "DocumentNotFound",
    "MissingIdError",
    "NotAcknowledged",
]
