"""
elasticseq Builder — Bulk Loading
=================================

Streams large record sets into a store with the Elasticsearch bulk API.

Records that don't carry an id get one from the store's sequence when
sequence mode is on; otherwise Elasticsearch assigns one.

Typical usage:
    store = ElasticStore("orders")
    store.set_sequence_mode(1000)
    loader = BulkLoader(store)
    loader.add_jsonl_files("data/*.jsonl")
"""

import json
import logging
import time
from pathlib import Path
from typing import Dict, Iterable, Iterator, List

from elasticsearch.helpers import bulk

from .core import ElasticStore, translate_errors

logger = logging.getLogger(__name__)


def find_files(pattern: str) -> List[Path]:
    """Files matching a glob pattern, ``**`` recursing into subdirectories."""
    if '**' in pattern:
        base = pattern.split('**')[0] or "."
        return sorted(Path(base).rglob(pattern.split('**/')[-1]))
    base_path = Path(pattern).parent
    return sorted(base_path.glob(Path(pattern).name))


class BulkLoader:
    """
    Bulk ingestion into an ElasticStore.

    Features:
        - Streaming: records are never all held in memory
        - Sequence ids for records without an id
        - Progress logging every ``progress_interval`` records
    """

    def __init__(
        self,
        store: ElasticStore,
        batch_size: int = 5000,
        progress_interval: int = 100_000,
        id_key: str = "id"
    ):
        """
        Args:
            store: Target store
            batch_size: Records per bulk request
            progress_interval: Records between progress reports
            id_key: Record field holding the document id, if any
        """
        self.store = store
        self.batch_size = batch_size
        self.progress_interval = progress_interval
        self.id_key = id_key

    def _action(self, record: dict) -> dict:
        action = {"_index": self.store.index_name, "_source": record}
        doc_id = record.get(self.id_key)
        if doc_id in (None, "") and self.store.sequence is not None:
            doc_id = self.store.sequence.get_id()
        if doc_id not in (None, ""):
            action["_id"] = str(doc_id)
        return action

    def _run(self, actions: Iterator[dict], counter: Dict[str, int]) -> dict:
        start_time = time.time()
        with translate_errors():
            _, errors = bulk(
                self.store.client,
                actions,
                chunk_size=self.batch_size,
                raise_on_error=False
            )
        self.store.refresh()

        elapsed = time.time() - start_time
        stats = {
            "total_records": counter["records"],
            "total_errors": counter["errors"] + len(errors),
            "elapsed_seconds": elapsed,
            "rate_per_second": counter["records"] / elapsed if elapsed > 0 else 0
        }
        logger.info(
            "Loaded %d records into %s (%d errors) in %.1fs",
            stats["total_records"], self.store.index_name,
            stats["total_errors"], elapsed
        )
        return stats

    def _progress(self, total: int) -> None:
        if total % self.progress_interval == 0:
            logger.info("%s records queued for %s", f"{total:,}", self.store.index_name)

    def add_records(self, records: Iterable[dict]) -> dict:
        """
        Add records from any iterable of documents.

        Returns:
            Load statistics
        """
        counter = {"records": 0, "errors": 0}

        def generate_actions():
            for rec in records:
                counter["records"] += 1
                yield self._action(rec)
                self._progress(counter["records"])

        return self._run(generate_actions(), counter)

    def add_jsonl_files(self, pattern: str) -> dict:
        """
        Add records from JSONL files matching a glob pattern.

        Lines that aren't valid JSON objects count as errors and are skipped.

        Returns:
            Load statistics
        """
        files = find_files(pattern)
        logger.info("Found %d files matching %s", len(files), pattern)

        counter = {"records": 0, "errors": 0}

        def generate_actions():
            for filepath in files:
                with open(filepath, 'r', encoding='utf-8') as f:
                    for line in f:
                        if not line.strip():
                            continue
                        try:
                            rec = json.loads(line)
                        except json.JSONDecodeError:
                            counter["errors"] += 1
                            continue
                        if not isinstance(rec, dict):
                            counter["errors"] += 1
                            continue

                        counter["records"] += 1
                        yield self._action(rec)
                        self._progress(counter["records"])

        stats = self._run(generate_actions(), counter)
        stats["files_processed"] = len(files)
        return stats
