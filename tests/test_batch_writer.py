import asyncio
import sqlite3
import threading
import time

from fakes import MemoryDestination, fast_retry, vehicle_payload
from lotsync.domain.models import VehicleRecord
from lotsync.services.sync import BatchWriter, ChangeDetector
from lotsync.services.sync.errors import ErrorCategory


def _records(count: int) -> list[VehicleRecord]:
    return ChangeDetector().stamp(
        VehicleRecord.from_upstream(vehicle_payload(n)) for n in range(1, count + 1)
    )


def test_records_are_split_into_batches() -> None:
    destination = MemoryDestination()

    async def main():
        writer = BatchWriter(destination, fast_retry(), batch_size=4, max_in_flight=2)
        handle = await writer.submit(1, _records(10))
        outcomes = await handle.wait()
        return handle, outcomes

    handle, outcomes = asyncio.run(main())
    assert [o.size for o in outcomes] == [4, 4, 2]
    assert handle.written == 10
    assert handle.failures == []
    assert sorted(destination.batches) == [2, 4, 4]
    assert len(destination.rows) == 10


def test_in_flight_batches_are_bounded() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    class SlowDestination(MemoryDestination):
        def upsert_batch(self, records):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return super().upsert_batch(records)

    async def main():
        writer = BatchWriter(SlowDestination(), fast_retry(), batch_size=1, max_in_flight=2)
        handles = [await writer.submit(page, _records(3)) for page in (1, 2)]
        await writer.drain()
        assert writer.in_flight == 0
        return handles

    handles = asyncio.run(main())
    assert all(h.done() for h in handles)
    assert peak <= 2


def test_locked_database_is_retried() -> None:
    class LockedOnce(MemoryDestination):
        def __init__(self):
            super().__init__()
            self.failures = 0

        def upsert_batch(self, records):
            if self.failures < 1:
                self.failures += 1
                raise sqlite3.OperationalError("database is locked")
            return super().upsert_batch(records)

    async def main():
        writer = BatchWriter(LockedOnce(), fast_retry(3), batch_size=10)
        return await (await writer.submit(1, _records(3))).wait()

    (outcome,) = asyncio.run(main())
    assert outcome.ok
    assert outcome.written == 3
    assert outcome.attempts == 2


def test_failed_batch_is_reported_not_raised() -> None:
    class Broken(MemoryDestination):
        def upsert_batch(self, records):
            raise sqlite3.OperationalError("unable to open database file")

    async def main():
        writer = BatchWriter(Broken(), fast_retry(3), batch_size=2)
        handle = await writer.submit(5, _records(3))
        await handle.wait()
        return handle

    handle = asyncio.run(main())
    assert handle.written == 0
    assert len(handle.failures) == 2
    assert handle.failures[0].error_category == ErrorCategory.CONNECTIVITY
    assert handle.failures[0].attempts == 1
