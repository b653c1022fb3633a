import threading
import time
from unittest.mock import MagicMock

import pytest

from elasticseq.errors import StoreUnavailable


class FakeStore:
    """In-memory stand-in for ElasticStore's counter and scan operations.

    Documents are kept as {index: {id: version}}. ``increment`` is atomic
    under a lock, like the engine's version counter.
    """

    def __init__(self):
        self.docs = {}
        self.created = {}
        self.lock = threading.Lock()
        self.increment_calls = 0
        self.fail_increments = 0
        self.reverse = False
        self.gate = None
        self.scan_error = None
        self.scans = 0

    def add_documents(self, index, *ids):
        docs = self.docs.setdefault(index, {})
        for id in ids:
            docs[str(id)] = 1

    def ensure_index(self, name, body=None):
        if name in self.created:
            return False
        self.created[name] = body
        self.docs.setdefault(name, {})
        return True

    def exists(self, id, index=None):
        return id in self.docs.get(index, {})

    def increment(self, id, count=1, index=None, chunk_size=5000):
        if self.gate is not None:
            self.gate.wait(5)
        with self.lock:
            self.increment_calls += 1
            if self.fail_increments:
                self.fail_increments -= 1
                raise StoreUnavailable("connection refused")
            docs = self.docs.setdefault(index, {})
            start = docs.get(id, 0)
            docs[id] = start + count
            versions = list(range(start + 1, start + count + 1))
        if self.reverse:
            versions.reverse()
        return versions

    def ids(self, index):
        self.scans += 1
        if self.scan_error is not None:
            raise self.scan_error
        return iter(list(self.docs.get(index, {})))

    def search(self, body, index=None):
        values = sorted(
            (int(id) for id in self.docs.get(index, {}) if id.isdigit()),
            reverse=True
        )
        hits = [{"_id": str(v), "sort": [v]} for v in values[:body.get("size", 10)]]
        return {"hits": {"hits": hits}}


def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is true; False on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


@pytest.fixture
def store():
    fake = FakeStore()
    yield fake
    # never leave a refill worker parked on the gate
    if fake.gate is not None:
        fake.gate.set()


@pytest.fixture
def client():
    """MagicMock Elasticsearch client with an existing index."""
    es = MagicMock()
    es.indices.exists.return_value = True
    es.indices.create.return_value = {"acknowledged": True}
    es.indices.delete.return_value = {"acknowledged": True}
    return es


def bulk_versions(es):
    """Make ``es.bulk`` answer index actions like Elasticsearch does.

    Each index action on the same (index, id) gets the next _version.
    """
    versions = {}

    def bulk(operations, **kwargs):
        items = []
        for action in operations[::2]:
            meta = action["index"]
            key = (meta["_index"], meta["_id"])
            versions[key] = versions.get(key, 0) + 1
            items.append({"index": {
                "_index": meta["_index"],
                "_id": meta["_id"],
                "_version": versions[key],
                "result": "updated" if versions[key] > 1 else "created",
                "status": 200 if versions[key] > 1 else 201
            }})
        return {"errors": False, "items": items}

    es.bulk.side_effect = bulk
    return versions
