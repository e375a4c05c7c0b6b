from __future__ import annotations

import logging
import threading
from typing import List

import pytest

from lead_ingestor.batching import Batch, BatchAccumulator
from lead_ingestor.errors import ExecutionTimeout, PersistenceFailed
from lead_ingestor.guard import Deadline
from lead_ingestor.persistence import PersistenceEngine

from tests.helpers import FakeClock, FakeStore, make_lead


def _batches(count: int, size: int) -> List[Batch]:
    accumulator = BatchAccumulator(size)
    batches = []
    for n in range(count):
        batch = accumulator.add(make_lead(f"A{n}", [f"55500000{n:02d}"], line_number=n + 2))
        if batch:
            batches.append(batch)
    remainder = accumulator.flush()
    if remainder:
        batches.append(remainder)
    return batches


def test_persist_commits_address_and_phone_rows(store: FakeStore, no_sleep_policy) -> None:
    engine = PersistenceEngine(store, no_sleep_policy)
    (batch,) = _batches(3, 5)

    result = engine.persist(batch)
    engine.close()

    assert result.ok
    assert result.inserted == ["A0", "A1", "A2"]
    assert len(store.addresses) == 3
    assert {row["aid"] for row in store.phone_queue} == {1, 2, 3}


def test_transient_failure_is_retried(no_sleep_policy) -> None:
    store = FakeStore(transient_failures=2)
    engine = PersistenceEngine(store, no_sleep_policy)

    result = engine.persist(_batches(2, 2)[0])
    engine.close()

    assert result.ok
    assert store.insert_calls == 3


def test_exhausted_retries_report_every_lead(no_sleep_policy, caplog: pytest.LogCaptureFixture) -> None:
    store = FakeStore(failing_dmids={"A1"})
    engine = PersistenceEngine(store, no_sleep_policy)
    batch = _batches(2, 2)[0]

    with caplog.at_level(logging.ERROR, logger="lead_ingestor.persistence"):
        result = engine.persist(batch)
    engine.close()

    assert not result.ok
    assert isinstance(result.error, PersistenceFailed)
    assert store.insert_calls == no_sleep_policy.max_attempts
    assert "PersistenceFailed line=2 dmid=A0" in caplog.text
    assert "PersistenceFailed line=3 dmid=A1" in caplog.text


def test_conflicting_rows_are_skipped_and_siblings_commit(store: FakeStore, no_sleep_policy) -> None:
    store.insert_leads([make_lead("A1", ["5559990000"])])
    engine = PersistenceEngine(store, no_sleep_policy)

    result = engine.persist(_batches(3, 3)[0])
    engine.close()

    assert result.ok
    assert result.conflicts == ["A1"]
    assert result.inserted == ["A0", "A2"]


def test_failed_batch_does_not_block_later_batches(no_sleep_policy) -> None:
    store = FakeStore(failing_dmids={"A4"})
    with PersistenceEngine(store, no_sleep_policy) as engine:
        for batch in _batches(5, 2):
            engine.submit(batch)
        results = engine.drain()

    assert [len(result.batch) for result in results] == [2, 2, 1]
    assert [result.ok for result in results] == [True, True, False]
    assert sorted(store.addresses) == ["A0", "A1", "A2", "A3"]


def test_parallel_workers_commit_every_batch(no_sleep_policy) -> None:
    store = FakeStore()
    with PersistenceEngine(store, no_sleep_policy, workers=4) as engine:
        for batch in _batches(40, 3):
            engine.submit(batch)
        results = engine.drain()

    assert len(results) == 14
    assert all(result.ok for result in results)
    assert len(store.addresses) == 40
    assert len(store.phone_queue) == 40


class BlockingStore(FakeStore):
    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def insert_leads(self, leads):
        self.started.set()
        self.release.wait(timeout=5)
        return super().insert_leads(leads)


def test_deadline_cancels_queued_batches(no_sleep_policy) -> None:
    store = BlockingStore()
    clock = FakeClock()
    deadline = Deadline(10, clock=clock)
    engine = PersistenceEngine(store, no_sleep_policy, workers=1, max_in_flight=10)
    for batch in _batches(3, 1):
        engine.submit(batch, deadline=deadline)
    assert store.started.wait(timeout=5)

    clock.advance(11)
    with pytest.raises(ExecutionTimeout):
        engine.drain(deadline)
    store.release.set()
    engine.close(cancel_pending=True)

    # The running transaction finishes; queued ones never reach the store.
    assert len(store.transactions) == 1
    assert len(engine.results) == 1


def test_workers_must_be_positive(store: FakeStore) -> None:
    with pytest.raises(ValueError):
        PersistenceEngine(store, workers=0)
