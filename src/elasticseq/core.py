"""
elasticseq Core — Document Store Access
=======================================

A thin, index-bound wrapper around the official Elasticsearch client:
indexing, retrieval, update, deletion, bulk loading, index/template/mapping
management, search and aggregations.

Every call passes straight through to Elasticsearch. The wrapper adds:
    - Sequence mode: documents indexed without an id get the next integer
      from an auto-increment Sequence (see ``elasticseq.sequence``)
    - Buffered bulk mode: ``start_bulk(n)`` queues index/update calls and
      flushes them every n actions
    - The atomic ``increment`` primitive sequences are built on
    - Uniform errors: client exceptions surface as ``StoreUnavailable``

Typical usage:
    store = ElasticStore("orders")
    store.set_sequence_mode(100)
    order_id = store.index({"item": "book"})   # "1", "2", ...
"""

from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from elasticsearch import (
    ApiError,
    BadRequestError,
    ConflictError,
    Elasticsearch,
    NotFoundError,
    TransportError,
)
from elasticsearch.helpers import BulkIndexError, ScanError, bulk, scan

from .config import ConnectionSettings, connect
from .errors import (
    DocumentNotFound,
    MissingIdError,
    NotAcknowledged,
    SequenceConflict,
    StoreUnavailable,
)
from .sequence import Sequence

# Largest number of increments sent in one bulk request
INCREMENT_CHUNK_SIZE = 5000


@contextmanager
def translate_errors():
    """Re-raise Elasticsearch client errors as elasticseq errors."""
    try:
        yield
    except ConflictError as e:
        raise SequenceConflict(str(e)) from e
    except (ApiError, TransportError, BulkIndexError, ScanError) as e:
        raise StoreUnavailable(str(e)) from e


def _acknowledged(response: Any, what: str) -> None:
    if not response.get("acknowledged"):
        raise NotAcknowledged(f"elasticsearch did not acknowledge {what}")


class ElasticStore:
    """
    Document store bound to one Elasticsearch index.

    The client is either injected (and left open on ``close()``) or built
    from connection settings (and owned by the store). Several stores can
    share one injected client.

    Example:
        store = ElasticStore("corpus")
        doc_id = store.index({"title": "Quantum Mechanics"}, id="42")
        store.get(doc_id)

        # Shared client, sequence-managed ids
        client = connect()
        users = ElasticStore("users", client=client)
        users.set_sequence_mode(cache_size=50)
    """

    def __init__(
        self,
        index_name: str,
        client: Optional[Elasticsearch] = None,
        settings: Optional[ConnectionSettings] = None,
        mapping: Optional[dict] = None,
        create_if_missing: bool = True
    ):
        """
        Open a store on an index.

        Args:
            index_name: Name of the Elasticsearch index
            client: Existing client to use (not closed by the store)
            settings: Connection settings (default: from environment)
            mapping: Mapping used by ``put_mapping`` and on index creation
            create_if_missing: Create the index if it doesn't exist
        """
        self.index_name = index_name
        self.settings = settings or ConnectionSettings.from_env()
        self.mapping = mapping
        self.sequence: Optional[Sequence] = None

        self._owns_client = client is None
        self._client = client if client is not None else connect(self.settings)

        self._bulk_actions: Optional[List[dict]] = None
        self._bulk_size = 0

        if create_if_missing:
            body = {"mappings": mapping} if mapping else None
            self.ensure_index(index_name, body)

    @property
    def client(self) -> Elasticsearch:
        """The underlying Elasticsearch client."""
        return self._client

    # ------------------------------------------------------------------
    # Sequence mode

    def set_sequence_mode(
        self,
        cache_size: int,
        name: Optional[str] = None,
        **options: Any
    ) -> Sequence:
        """
        Use auto-increment integer ids for documents indexed without an id.

        Args:
            cache_size: IDs fetched per round trip (0 is treated as 1)
            name: Sequence name (default: the index name)
            **options: Extra ``Sequence`` options (refill_threshold,
                id_field, timeout, ...)

        Returns:
            The attached Sequence
        """
        options.setdefault("sequence_index", self.settings.sequence_index)
        if self.sequence is not None:
            self.sequence.close()
        self.sequence = Sequence(
            self,
            self.index_name,
            name=name,
            cache_size=cache_size or 1,
            **options
        )
        return self.sequence

    # ------------------------------------------------------------------
    # Documents

    def index(self, document: dict, id: Optional[str] = None) -> str:
        """
        Store a single document.

        Without an id the next sequence value is used in sequence mode,
        otherwise Elasticsearch generates one.

        Returns:
            The document id ("" in bulk mode when the engine assigns it)
        """
        if not id and self.sequence is not None:
            id = self.sequence.get_id()

        if self._bulk_actions is not None:
            action = {"_op_type": "index", "_index": self.index_name, "_source": document}
            if id:
                action["_id"] = id
            self._queue_bulk(action)
            return id or ""

        kwargs: Dict[str, Any] = {"index": self.index_name, "document": document}
        if id:
            kwargs["id"] = id
        with translate_errors():
            response = self._client.index(**kwargs)
        return response["_id"]

    def bulk_index(self, documents: List[dict]) -> int:
        """
        Index a list of documents in one bulk request.

        Ids come from the sequence in sequence mode, otherwise from
        Elasticsearch. Not to be mixed with ``start_bulk``/``stop_bulk``.

        Returns:
            Number of documents indexed
        """
        def generate_actions():
            for doc in documents:
                action = {"_index": self.index_name, "_source": doc}
                if self.sequence is not None:
                    action["_id"] = self.sequence.get_id()
                yield action

        with translate_errors():
            success, _ = bulk(self._client, generate_actions())
        return success

    def update(self, document: dict, id: str) -> None:
        """Partially update an existing document."""
        if not id:
            raise MissingIdError("update needs an id")

        if self._bulk_actions is not None:
            self._queue_bulk({
                "_op_type": "update",
                "_index": self.index_name,
                "_id": id,
                "doc": document
            })
            return

        with translate_errors():
            self._client.update(index=self.index_name, id=id, doc=document)

    def get(self, id: str) -> dict:
        """
        Fetch a document's source by id.

        Raises:
            DocumentNotFound: If no document has this id
        """
        try:
            with translate_errors():
                response = self._client.get(index=self.index_name, id=id)
        except StoreUnavailable as e:
            if isinstance(e.__cause__, NotFoundError):
                raise DocumentNotFound(self.index_name, id) from e.__cause__
            raise
        return response["_source"]

    def get_multi(self, *ids: str) -> List[Optional[dict]]:
        """Fetch several documents; missing ones come back as None."""
        if not ids:
            return []
        with translate_errors():
            response = self._client.mget(index=self.index_name, ids=list(ids))
        return [
            doc.get("_source") if doc.get("found") else None
            for doc in response["docs"]
        ]

    def delete(self, id: str) -> bool:
        """
        Remove one document.

        Returns:
            True if the document existed, False otherwise
        """
        try:
            with translate_errors():
                self._client.delete(index=self.index_name, id=id)
        except StoreUnavailable as e:
            if isinstance(e.__cause__, NotFoundError):
                return False
            raise
        return True

    def exists(self, id: str, index: Optional[str] = None) -> bool:
        """Check whether a document exists (in this or another index)."""
        with translate_errors():
            return bool(self._client.exists(index=index or self.index_name, id=id))

    def increment(
        self,
        id: str,
        count: int = 1,
        index: Optional[str] = None,
        chunk_size: int = INCREMENT_CHUNK_SIZE
    ) -> List[int]:
        """
        Atomically bump a document's version ``count`` times.

        Each bump re-indexes the (empty) document, which Elasticsearch
        answers with the next ``_version``. Bumps are sent as bulk requests
        of at most ``chunk_size`` actions.

        Args:
            id: Document id of the counter
            count: Number of increments
            index: Index holding the counter (default: this store's index)
            chunk_size: Actions per bulk request

        Returns:
            The version numbers allocated, one per increment

        Raises:
            StoreUnavailable: If any increment of the batch fails
        """
        if count < 0:
            raise ValueError("count must not be negative")

        index = index or self.index_name
        versions: List[int] = []
        remaining = count

        while remaining > 0:
            size = min(remaining, chunk_size)
            operations: List[dict] = []
            for _ in range(size):
                operations.append({"index": {"_index": index, "_id": id}})
                operations.append({})

            with translate_errors():
                response = self._client.bulk(operations=operations)
            versions.extend(self._bulk_versions(response, id))
            remaining -= size

        return versions

    @staticmethod
    def _bulk_versions(response: Any, id: str) -> List[int]:
        versions = []
        for item in response["items"]:
            result = item.get("index", {})
            if "error" in result:
                if result.get("status") == 409:
                    raise SequenceConflict(f"version conflict on counter {id!r}")
                raise StoreUnavailable(f"increment of {id!r} failed: {result['error']}")
            versions.append(result["_version"])
        return versions

    # ------------------------------------------------------------------
    # Buffered bulk mode

    def start_bulk(self, size: int) -> None:
        """Queue index/update calls and send them every ``size`` actions."""
        self._bulk_actions = []
        self._bulk_size = max(size, 1)

    def stop_bulk(self) -> None:
        """Send any queued actions and leave bulk mode."""
        actions, self._bulk_actions = self._bulk_actions, None
        if actions:
            self._flush(actions)

    def _queue_bulk(self, action: dict) -> None:
        self._bulk_actions.append(action)
        if len(self._bulk_actions) >= self._bulk_size:
            actions, self._bulk_actions = self._bulk_actions, []
            self._flush(actions)

    def _flush(self, actions: List[dict]) -> None:
        with translate_errors():
            bulk(self._client, actions)

    # ------------------------------------------------------------------
    # Search

    def search(self, body: dict, index: Optional[str] = None) -> dict:
        """Run a query DSL search and return the raw response."""
        with translate_errors():
            return self._client.search(index=index or self.index_name, body=body)

    def aggregate(self, body: dict) -> dict:
        """Run aggregation(s) and return the ``aggregations`` section."""
        body = {"size": 0, **body}
        response = self.search(body)
        return response.get("aggregations", {})

    def count(self, body: Optional[dict] = None) -> int:
        """Count documents (total or matching a query body)."""
        with translate_errors():
            if body:
                response = self._client.count(index=self.index_name, body=body)
            else:
                response = self._client.count(index=self.index_name)
        return response["count"]

    def ids(self, index: Optional[str] = None) -> Iterator[str]:
        """
        Iterate over every document id of an index.

        Yields nothing if the index does not exist.
        """
        index = index or self.index_name
        hits = scan(
            self._client,
            index=index,
            query={"query": {"match_all": {}}, "_source": False}
        )
        try:
            with translate_errors():
                for hit in hits:
                    yield hit["_id"]
        except StoreUnavailable as e:
            if isinstance(e.__cause__, NotFoundError):
                return
            raise

    # ------------------------------------------------------------------
    # Index, template and mapping management

    def index_exists(self, name: Optional[str] = None) -> bool:
        """Check whether an index exists."""
        with translate_errors():
            return bool(self._client.indices.exists(index=name or self.index_name))

    def create_index(self, name: str, body: Optional[dict] = None) -> None:
        """Create an index, optionally with settings/mappings."""
        with translate_errors():
            if body:
                response = self._client.indices.create(index=name, body=body)
            else:
                response = self._client.indices.create(index=name)
        _acknowledged(response, "new index")

    def ensure_index(self, name: str, body: Optional[dict] = None) -> bool:
        """
        Create an index unless it already exists.

        Returns:
            True if this call created the index
        """
        if self.index_exists(name):
            return False
        try:
            self.create_index(name, body)
        except StoreUnavailable as e:
            # Lost a creation race against another client
            if isinstance(e.__cause__, BadRequestError) and \
                    e.__cause__.error == "resource_already_exists_exception":
                return False
            raise
        return True

    def delete_index(self, name: Optional[str] = None) -> None:
        """Delete an index (this store's index by default)."""
        with translate_errors():
            response = self._client.indices.delete(index=name or self.index_name)
        _acknowledged(response, "deletion of index")

    def put_index_template(self, name: str, body: dict) -> None:
        """Create or replace a composable index template."""
        with translate_errors():
            response = self._client.indices.put_index_template(name=name, body=body)
        _acknowledged(response, "creation of template")

    def delete_index_template(self, name: str) -> None:
        """Delete an index template."""
        with translate_errors():
            response = self._client.indices.delete_index_template(name=name)
        _acknowledged(response, "deletion of template")

    def get_mapping(self) -> dict:
        """Return the mapping of this store's index."""
        with translate_errors():
            response = self._client.indices.get_mapping(index=self.index_name)
        return response[self.index_name]["mappings"]

    def put_mapping(self, mapping: Optional[dict] = None) -> None:
        """Apply a mapping (the store's own mapping by default)."""
        mapping = mapping or self.mapping
        if not mapping:
            raise ValueError("no mapping to put")
        with translate_errors():
            response = self._client.indices.put_mapping(index=self.index_name, body=mapping)
        _acknowledged(response, "creation of mapping")

    def refresh(self) -> None:
        """Force index refresh (makes recent changes searchable)."""
        with translate_errors():
            self._client.indices.refresh(index=self.index_name)

    def close(self) -> None:
        """Stop the sequence and close the client if the store owns it."""
        if self.sequence is not None:
            # an owned client must outlive the refill still using it
            self.sequence.close(wait=self._owns_client)
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
