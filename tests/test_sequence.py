"""Tests for auto-increment sequences."""

import logging
import threading
import time

import pytest

from conftest import wait_for
from elasticseq.errors import SequenceTimeout, StoreUnavailable
from elasticseq.sequence import (
    SEQUENCE_INDEX_BODY,
    BootstrapScanner,
    CounterStore,
    PrefetchCache,
    Sequence,
)


def make_sequence(store, collection="unit_test", **kwargs):
    return Sequence(store, collection, **kwargs)


class TestScenarios:
    def test_empty_collection_starts_at_one(self, store):
        seq = make_sequence(store, cache_size=1)
        assert seq.get_id(timeout=2) == "1"
        seq.close()

    def test_first_id_above_existing_ids(self, store):
        store.add_documents("unit_test", 5, 12, 19)
        seq = make_sequence(store, cache_size=1)
        assert int(seq.get_id(timeout=2)) > 19
        assert seq.floor == 19
        seq.close()

    def test_prepopulated_up_to_twenty(self, store):
        store.add_documents("unit_test", *range(15, 21))
        seq = make_sequence(store, cache_size=1)
        assert int(seq.get_id(timeout=2)) > 20
        seq.close()

    def test_two_hundred_ids_are_distinct(self, store):
        seq = make_sequence(store, cache_size=100)
        ids = [seq.get_id(timeout=2) for _ in range(200)]
        assert len(set(ids)) == 200
        seq.close()

    def test_ids_increase(self, store):
        seq = make_sequence(store, cache_size=7)
        ids = [seq.next_int(timeout=2) for _ in range(50)]
        assert ids == sorted(ids)
        seq.close()


class TestReattach:
    def test_second_sequence_never_reissues(self, store):
        first = make_sequence(store, cache_size=10)
        issued = [first.next_int(timeout=2) for _ in range(25)]
        first.close()

        second = make_sequence(store, cache_size=10)
        assert all(second.next_int(timeout=2) > max(issued) for _ in range(25))
        second.close()

    def test_existing_counter_skips_scan(self, store):
        first = make_sequence(store)
        first.get_id(timeout=2)
        first.close()
        assert store.scans == 1

        store.add_documents("unit_test", 500)
        seq = make_sequence(store)
        assert store.scans == 1
        assert seq.floor == 0
        seq.close()

    def test_named_sequences_are_independent(self, store):
        a = make_sequence(store, name="a")
        b = make_sequence(store, name="b")
        assert a.get_id(timeout=2) == "1"
        assert b.get_id(timeout=2) == "1"
        assert a.key == "unit_test:a"
        a.close()
        b.close()


class TestConcurrency:
    def test_concurrent_callers_get_unique_ids(self, store):
        seq = make_sequence(store, cache_size=16)
        results = []
        lock = threading.Lock()

        def worker():
            ids = [seq.get_id(timeout=5) for _ in range(50)]
            with lock:
                results.extend(ids)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)

        assert len(results) == 400
        assert len(set(results)) == 400
        seq.close()

    def test_shared_counter_across_sequences(self, store):
        # two processes attached to the same sequence name
        a = make_sequence(store, cache_size=5)
        b = make_sequence(store, cache_size=5)
        ids = []
        for _ in range(30):
            ids.append(a.next_int(timeout=2))
            ids.append(b.next_int(timeout=2))
        assert len(set(ids)) == 60
        a.close()
        b.close()

    def test_backpressure_waits_for_refill(self, store):
        store.gate = threading.Event()
        seq = make_sequence(store, cache_size=3)
        result = []

        t = threading.Thread(target=lambda: result.append(seq.get_id()))
        t.start()
        time.sleep(0.1)
        assert result == []
        assert t.is_alive()

        store.gate.set()
        t.join(2)
        assert result == ["1"]
        seq.close()

    def test_timeout_raises(self, store):
        store.gate = threading.Event()
        seq = make_sequence(store, cache_size=3)

        with pytest.raises(SequenceTimeout) as exc_info:
            seq.get_id(timeout=0.05)
        assert exc_info.value.sequence == "unit_test:unit_test"

        store.gate.set()
        assert seq.get_id(timeout=2) == "1"
        seq.close()

    def test_default_timeout(self, store):
        store.gate = threading.Event()
        seq = make_sequence(store, timeout=0.05)
        with pytest.raises(SequenceTimeout):
            seq.get_id()
        seq.close()

    def test_batch_efficiency(self, store):
        seq = make_sequence(store, cache_size=100)
        for _ in range(200):
            seq.get_id(timeout=2)
        # steady state: one round trip per 100 ids, plus the early trigger
        assert store.increment_calls <= 4
        seq.close()


class TestBootstrap:
    def test_failure_is_fatal(self, store):
        store.scan_error = StoreUnavailable("connection refused")
        with pytest.raises(StoreUnavailable):
            make_sequence(store)

    def test_counter_failure_is_fatal(self, store):
        store.add_documents("unit_test", 3)
        store.fail_increments = 1
        with pytest.raises(StoreUnavailable):
            make_sequence(store)

    def test_provisions_sequence_index(self, store):
        make_sequence(store, sequence_index="counters").close()
        assert store.created["counters"] == SEQUENCE_INDEX_BODY

    def test_fast_forward_uses_increments(self, store):
        store.add_documents("unit_test", 40)
        seq = make_sequence(store)
        assert store.docs["sequence"]["unit_test:unit_test"] >= 40
        assert seq.get_id(timeout=2) == "41"
        seq.close()


class TestBootstrapScanner:
    def test_non_integer_ids_are_skipped(self, store):
        store.add_documents("docs", "9", "abc", "10", "-5", "1e9", "12a")
        assert BootstrapScanner(store, "docs").floor() == 10

    def test_longest_numeral_wins(self, store):
        store.add_documents("docs", "99", "100", "0012")
        assert BootstrapScanner(store, "docs").floor() == 100

    def test_leading_zeros_rank_by_value(self, store):
        store.add_documents("docs", "0007", "12")
        assert BootstrapScanner(store, "docs").floor() == 12

    def test_non_ascii_digits_are_skipped(self, store):
        store.add_documents("docs", "٣", "2")
        assert BootstrapScanner(store, "docs").floor() == 2

    def test_empty_collection(self, store):
        assert BootstrapScanner(store, "docs").floor() == 0

    def test_only_non_integer_ids(self, store):
        store.add_documents("docs", "a", "b")
        assert BootstrapScanner(store, "docs").floor() == 0

    def test_id_field_uses_native_sort(self, store):
        store.add_documents("docs", 3, 250, 17)
        scanner = BootstrapScanner(store, "docs", id_field="num")
        assert scanner.floor() == 250
        assert store.scans == 0

    def test_run_skips_existing_counter(self, store):
        counters = CounterStore(store)
        counters.increment("docs:docs", 1)
        store.add_documents("docs", 10)

        assert BootstrapScanner(store, "docs").run(counters, "docs:docs") == 0
        assert store.docs["sequence"]["docs:docs"] == 1


class TestPrefetchCache:
    def test_zero_cache_size_becomes_one(self):
        cache = PrefetchCache(lambda n: list(range(1, n + 1)), cache_size=0)
        assert cache.cache_size == 1
        assert cache.capacity == 2
        cache.close()

    def test_unordered_batches_are_sorted(self, store):
        store.reverse = True
        seq = make_sequence(store, cache_size=10)
        ids = [seq.next_int(timeout=2) for _ in range(10)]
        assert ids == list(range(1, 11))
        seq.close()

    def test_single_flight(self):
        gate = threading.Event()
        calls = []

        def loader(n):
            calls.append(n)
            gate.wait(5)
            return list(range(1, n + 1))

        cache = PrefetchCache(loader, cache_size=5)
        assert cache.request_refill() is True
        assert wait_for(lambda: cache.filling and calls)
        assert all(cache.request_refill() is False for _ in range(10))

        gate.set()
        assert wait_for(lambda: len(cache) == 5)
        assert wait_for(lambda: not cache.filling)
        assert calls == [5]
        cache.close()

    def test_refill_triggered_at_low_watermark(self):
        calls = []

        def loader(n):
            start = len(calls) * n
            calls.append(n)
            return list(range(start + 1, start + n + 1))

        cache = PrefetchCache(loader, cache_size=4, refill_threshold=2)
        cache.request_refill()
        assert wait_for(lambda: len(cache) == 4)

        cache.get(timeout=1)  # 4 left before the call, above threshold
        cache.get(timeout=1)
        assert len(calls) == 1

        cache.get(timeout=1)  # 2 left: refill
        assert wait_for(lambda: len(calls) == 2)
        cache.close()

    def test_failed_refill_is_logged_and_retried(self, caplog):
        attempts = []

        def loader(n):
            attempts.append(n)
            if len(attempts) == 1:
                raise StoreUnavailable("connection refused")
            return [1]

        cache = PrefetchCache(loader, cache_size=1, name="docs:docs")
        with caplog.at_level(logging.ERROR, logger="elasticseq.sequence"):
            cache.request_refill()
            assert wait_for(lambda: cache.failures == 1 and not cache.filling)

        assert len(cache) == 0
        assert "docs:docs" in caplog.text

        assert cache.get(timeout=2) == 1
        assert cache.refills == 1
        cache.close()

    def test_negative_threshold_rejected(self):
        with pytest.raises(ValueError):
            PrefetchCache(lambda n: [], refill_threshold=-1)

    def test_threshold_above_cache_size_rejected(self):
        with pytest.raises(ValueError):
            PrefetchCache(lambda n: [], cache_size=2, refill_threshold=3)

    def test_threshold_equal_to_cache_size(self):
        cache = PrefetchCache(lambda n: [], cache_size=2, refill_threshold=2)
        assert cache.refill_threshold == 2
        cache.close()

    def test_close_waits_for_running_refill(self):
        started = threading.Event()
        finished = []

        def loader(n):
            started.set()
            time.sleep(0.1)
            finished.append(n)
            return [1]

        cache = PrefetchCache(loader)
        cache.request_refill()
        assert started.wait(2)
        cache.close(wait=True)
        assert finished == [1]
        assert not cache.filling

    def test_closed_cache_does_not_refill(self):
        calls = []
        cache = PrefetchCache(lambda n: calls.append(n) or [1])
        cache.close()
        assert cache.request_refill() is False
        with pytest.raises(SequenceTimeout):
            cache.get(timeout=0.01)
        assert calls == []

    def test_empty_cache_warns(self, caplog):
        gate = threading.Event()
        cache = PrefetchCache(lambda n: gate.wait(5) and [7], name="docs:docs")
        with caplog.at_level(logging.WARNING, logger="elasticseq.sequence"):
            with pytest.raises(SequenceTimeout):
                cache.get(timeout=0.01)
        assert "empty" in caplog.text
        gate.set()
        assert cache.get(timeout=2) == 7
        cache.close()

    def test_empty_cache_quiet_while_refill_in_flight(self, caplog):
        gate = threading.Event()
        cache = PrefetchCache(lambda n: gate.wait(5) and [7], name="docs:docs")
        cache.request_refill()
        assert wait_for(lambda: cache.filling)
        with caplog.at_level(logging.DEBUG, logger="elasticseq.sequence"):
            with pytest.raises(SequenceTimeout):
                cache.get(timeout=0.01)
        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]
        assert "refill in flight" in caplog.text
        gate.set()
        assert cache.get(timeout=2) == 7
        cache.close()

    def test_fresh_sequence_does_not_warn(self, store, caplog):
        store.gate = threading.Event()
        with caplog.at_level(logging.WARNING, logger="elasticseq.sequence"):
            seq = make_sequence(store)
            with pytest.raises(SequenceTimeout):
                seq.get_id(timeout=0.01)
        assert caplog.records == []
        store.gate.set()
        seq.close()
