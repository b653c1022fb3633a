"""
elasticseq Cluster — Elasticsearch Cluster Management
=====================================================

Cluster-level operations that go beyond a single store: a health summary
including the sequence index, index listing, index creation/deletion and a
view of the sequence counters.
"""

from typing import Any, Dict, List, Optional

from elasticsearch import Elasticsearch
from elasticsearch.helpers import scan

from .config import ConnectionSettings, connect
from .core import ElasticStore, translate_errors


def _index_row(entry: dict) -> dict:
    # _cat values are strings, and missing on closed indices
    return {
        "name": entry["index"],
        "health": entry.get("health") or "unknown",
        "status": entry.get("status") or "unknown",
        "docs_count": int(entry.get("docs.count") or 0),
        "size": entry.get("store.size") or "0b",
    }


class ClusterManager:
    """
    Elasticsearch cluster management utilities.

    Example:
        with ClusterManager() as manager:
            print(manager.health()["status"])
            print(manager.sequences())
    """

    def __init__(
        self,
        client: Optional[Elasticsearch] = None,
        settings: Optional[ConnectionSettings] = None
    ):
        """
        Args:
            client: Existing client to use (not closed by the manager)
            settings: Connection settings (default: from environment)
        """
        self.settings = settings or ConnectionSettings.from_env()
        self._owns_client = client is None
        self._client = client if client is not None else connect(self.settings)

    def _store(self, name: str) -> ElasticStore:
        return ElasticStore(name, client=self._client, create_if_missing=False)

    def health(self) -> Dict[str, Any]:
        """
        Summary of cluster health and of the sequence index.

        ``sequence_index`` is the health colour of the counter index, or
        None if no sequence was ever used.
        """
        index = self.settings.sequence_index
        with translate_errors():
            cluster = self._client.cluster.health()
            counters = None
            if self._client.indices.exists(index=index):
                counters = self._client.cluster.health(index=index)["status"]
        return {
            "cluster": cluster["cluster_name"],
            "status": cluster["status"],
            "nodes": cluster["number_of_nodes"],
            "unassigned_shards": cluster["unassigned_shards"],
            "sequence_index": counters,
        }

    def indices(self) -> List[dict]:
        """Open and closed indices, system indices excluded."""
        with translate_errors():
            entries = self._client.cat.indices(format="json")
        return [_index_row(e) for e in entries if not e["index"].startswith(".")]

    def create_index(
        self,
        name: str,
        shards: int = 1,
        replicas: int = 1,
        mapping: Optional[dict] = None
    ) -> None:
        """Create an index; raises NotAcknowledged if the cluster doesn't confirm."""
        body: Dict[str, Any] = {
            "settings": {"number_of_shards": shards, "number_of_replicas": replicas}
        }
        if mapping:
            body["mappings"] = mapping
        self._store(name).create_index(name, body)

    def delete_index(self, name: str) -> None:
        self._store(name).delete_index()

    def sequences(self, sequence_index: Optional[str] = None) -> Dict[str, int]:
        """
        Current value of every sequence counter.

        Returns:
            Mapping of counter id ("<collection>:<name>") to the last
            allocated value; empty if no sequence was ever used
        """
        index = sequence_index or self.settings.sequence_index
        with translate_errors():
            if not self._client.indices.exists(index=index):
                return {}
            hits = scan(
                self._client,
                index=index,
                query={"query": {"match_all": {}}, "version": True, "_source": False}
            )
            return {hit["_id"]: hit["_version"] for hit in hits}

    def close(self):
        """Close the client connection if the manager owns it."""
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
