"""
Arbitration engine: priorities, completion, failures and the watchdog.
"""

import asyncio

import pytest

from modbus_tool.common.exceptions import RequestError, TransportError
from modbus_tool.services.scheduler import (
    MetadataSequence,
    PollAction,
    PollCounts,
    RegisterEncoding,
    Scheduler,
    SystemRegister,
    WriteRequest,
)


class Recorder:
    """Collects scheduler broadcasts"""

    def __init__(self, scheduler):
        self.data = []
        self.completions = 0
        self.identities = []
        scheduler.new_register_data.connect(self.on_data)
        scheduler.polling_complete.connect(self.on_complete)
        scheduler.device_identity.connect(self.on_identity)

    def on_data(self, register, value, node):
        self.data.append((register, value, node))

    def on_complete(self):
        self.completions += 1

    def on_identity(self, node, data):
        self.identities.append((node, data))


def connected(transport, **kwargs):
    scheduler = Scheduler(**kwargs)
    recorder = Recorder(scheduler)
    scheduler.connect(transport)
    return scheduler, recorder


def test_connect_broadcasts_system_connected(transport):
    scheduler, recorder = connected(transport)

    assert scheduler.connected
    assert recorder.data == [(0, SystemRegister.SYSTEM_CONNECTED, 255)]
    assert scheduler.get_counts() == PollCounts(0, 0)


def test_connect_twice_is_an_error(transport):
    scheduler, _ = connected(transport)
    with pytest.raises(TransportError):
        scheduler.connect(transport)


def test_read_cycle(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        requester = make_requester(register=40001, count=2, node=1)
        scheduler.attach(requester)

        scheduler.enqueue_read(requester)
        assert transport.calls == [("read", 40001, 1, 2)]
        assert scheduler.get_active().active
        assert scheduler.get_active().requester is requester
        assert scheduler.current_action == PollAction.READ

        transport.finish([7, 8])

        assert (40001, 7, 1) in requester.values
        assert (40002, 8, 1) in requester.values
        assert scheduler.get_counts() == PollCounts(success=1, error=0)
        assert recorder.completions == 1
        assert not scheduler.get_active().active

    asyncio.run(scenario())


def test_single_transaction_in_flight(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        requesters = [make_requester(register=40001 + i * 10, name=str(i)) for i in range(3)]
        for requester in requesters:
            scheduler.enqueue_read(requester)

        assert len(transport.calls) == 1

        transport.finish([1, 1])
        assert len(transport.calls) == 2
        transport.finish([2, 2])
        assert len(transport.calls) == 3
        transport.finish([3, 3])

        assert [r.polls for r in requesters] == [1, 1, 1]
        assert recorder.completions == 1
        assert scheduler.get_counts().success == 3

    asyncio.run(scenario())


def test_write_preempts_queued_reads(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        first = make_requester(register=40001, name="first")
        second = make_requester(register=40020, name="second")

        scheduler.enqueue_read(first)
        scheduler.enqueue_read(second)
        scheduler.enqueue_write(WriteRequest(second, 1, 40010, [5, 6]))

        transport.finish([0, 0])
        assert transport.last_call == ("write", 40010, 1, [5, 6])
        assert scheduler.current_action == PollAction.WRITE

        transport.finish()
        assert (0, SystemRegister.WRITE_REQUEST_COMPLETE, 1) in recorder.data
        assert transport.last_call == ("read", 40020, 1, 2)

    asyncio.run(scenario())


def test_write_preempts_metadata(transport, provider, make_requester):
    async def scenario():
        scheduler, _ = connected(transport, metadata_provider=provider)
        requester = make_requester()

        scheduler.enqueue_read(requester)
        scheduler.enqueue_metadata(MetadataSequence(requester, 1, 40001, 40001))
        scheduler.enqueue_write(WriteRequest(requester, 1, 40001, [1]))

        transport.finish([0, 0])
        assert transport.last_call[0] == "write"
        transport.finish()
        assert transport.last_call[0] == "raw"

    asyncio.run(scenario())


def test_enqueue_while_disconnected_is_ignored(make_requester):
    async def scenario():
        scheduler = Scheduler()
        requester = make_requester()
        scheduler.enqueue_read(requester)
        scheduler.enqueue_write(WriteRequest(requester, 1, 40001, [1]))
        scheduler.request_device_id(1)
        assert scheduler.queue_stats() == {
            "writes": 0, "metadata": 0, "reads": 0, "device_ids": 0,
        }
        assert not scheduler.get_active().active

    asyncio.run(scenario())


def test_invalid_write_is_rejected(transport):
    async def scenario():
        scheduler, _ = connected(transport)
        with pytest.raises(RequestError):
            scheduler.enqueue_write(WriteRequest(None, 1, 40001, []))
        with pytest.raises(RequestError):
            scheduler.enqueue_write(WriteRequest(None, 300, 40001, [1]))
        with pytest.raises(RequestError):
            scheduler.enqueue_write(WriteRequest(None, 1, 40001, [0] * 126))
        assert transport.calls == []

    asyncio.run(scenario())


def test_write_without_requester_still_runs(transport):
    async def scenario():
        scheduler, recorder = connected(transport)
        scheduler.enqueue_write(WriteRequest(None, 4, 1, [1, 0, 1]))
        assert transport.calls == [("write", 1, 4, [1, 0, 1])]
        transport.finish()
        assert (0, SystemRegister.WRITE_REQUEST_COMPLETE, 4) in recorder.data

    asyncio.run(scenario())


def test_transaction_error_is_reported(transport, make_requester):
    async def scenario():
        scheduler, _ = connected(transport)
        first = make_requester(name="first")
        second = make_requester(register=40100, name="second")
        scheduler.attach(first)
        scheduler.attach(second)

        scheduler.enqueue_read(first)
        scheduler.enqueue_read(second)
        transport.fail(2)

        assert first.exceptions == ["Illegal data address"]
        assert second.exceptions == []
        assert scheduler.get_counts() == PollCounts(success=0, error=1)
        assert transport.last_call == ("read", 40100, 1, 2)

        transport.fail(99)
        assert second.exceptions == ["Unknown error (99)"]

    asyncio.run(scenario())


def test_watchdog_times_out_transaction(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport, timeout_seconds=0.02)
        requester = make_requester()
        scheduler.attach(requester)

        scheduler.enqueue_read(requester)
        await asyncio.sleep(0.1)

        assert requester.exceptions == ["Target device failed to respond"]
        assert scheduler.get_counts() == PollCounts(success=0, error=1)
        assert not scheduler.get_active().active

        # The answer finally arrives: it must not be attributed to anyone
        transport.finish([1, 2])
        assert scheduler.get_counts() == PollCounts(success=0, error=1)
        assert (40001, 1, 1) not in requester.values

    asyncio.run(scenario())


def test_late_completion_of_previous_transaction_is_ignored(transport, make_requester):
    async def scenario():
        scheduler, _ = connected(transport, timeout_seconds=0.02)
        first = make_requester(register=40001, name="first")
        second = make_requester(register=40050, name="second")
        scheduler.attach(first)
        scheduler.attach(second)

        scheduler.enqueue_read(first)
        await asyncio.sleep(0.1)
        assert first.exceptions

        scheduler.enqueue_read(second)
        assert transport.transaction_id == 2

        transport.finish([11, 12], transaction_id=1)
        assert scheduler.get_active().requester is second
        assert scheduler.get_counts().success == 0

        transport.finish([21, 22])
        assert (40050, 21, 1) in second.values
        assert scheduler.get_counts() == PollCounts(success=1, error=1)

    asyncio.run(scenario())


def test_busy_transport_defers_dispatch(transport, make_requester):
    async def scenario():
        scheduler, _ = connected(transport)
        requester = make_requester()

        transport.busy = True
        scheduler.enqueue_read(requester)
        assert transport.calls == []

        transport.busy = False
        transport.complete.emit(99)
        assert transport.calls == [("read", 40001, 1, 2)]

    asyncio.run(scenario())


def test_counts_are_idempotent(transport, make_requester):
    async def scenario():
        scheduler, _ = connected(transport)
        scheduler.enqueue_read(make_requester())
        transport.finish([1, 2])
        assert scheduler.get_counts() == scheduler.get_counts()
        assert scheduler.get_active() == scheduler.get_active()

    asyncio.run(scenario())


def test_remove_reference_drops_queued_reads(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        first = make_requester(name="first")
        second = make_requester(register=40100, name="second")

        scheduler.enqueue_read(first)
        scheduler.enqueue_read(second)
        scheduler.enqueue_read(second)
        assert recorder.completions == 1

        scheduler.remove_reference(second)
        assert recorder.completions == 2
        assert scheduler.queue_stats()["reads"] == 0

        transport.finish([1, 2])
        assert len(transport.calls) == 1
        assert second.polls == 0

    asyncio.run(scenario())


def test_remove_reference_of_in_flight_requester(transport, make_requester):
    async def scenario():
        scheduler, _ = connected(transport)
        requester = make_requester()
        scheduler.attach(requester)

        scheduler.enqueue_read(requester)
        scheduler.remove_reference(requester)

        active = scheduler.get_active()
        assert active.active
        assert active.requester is None

        transport.fail(4)
        assert requester.exceptions == []
        assert scheduler.get_counts().error == 1

    asyncio.run(scenario())


def test_remove_reference_keeps_writes_and_metadata(transport, provider, make_requester):
    async def scenario():
        scheduler, _ = connected(transport, metadata_provider=provider)
        busy = make_requester(name="busy")
        gone = make_requester(name="gone")

        scheduler.enqueue_read(busy)
        scheduler.enqueue_write(WriteRequest(gone, 1, 40001, [9]))
        scheduler.enqueue_metadata(MetadataSequence(gone, 1, 40001, 40002))
        scheduler.remove_reference(gone)

        transport.finish([0, 0])
        # The write still runs without a requester
        assert transport.last_call == ("write", 40001, 1, [9])
        transport.finish()
        # The metadata scan has nobody to report to and is discarded
        assert len(transport.calls) == 2
        assert gone.metadata == []

    asyncio.run(scenario())


def test_disconnect_clears_everything(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        first = make_requester(name="first")
        second = make_requester(register=40100, name="second")

        scheduler.enqueue_read(first)
        scheduler.enqueue_read(second)
        completions = recorder.completions

        scheduler.disconnect()
        assert not scheduler.connected
        assert recorder.completions == completions + 1
        assert recorder.data[-1] == (0, SystemRegister.SYSTEM_DISCONNECTED, 255)
        assert scheduler.current_action == PollAction.INACTIVE

        transport.finish([1, 2])
        assert scheduler.get_counts() == PollCounts(0, 0)

        scheduler.enqueue_read(first)
        assert len(transport.calls) == 1

        # Disconnecting twice is harmless
        scheduler.disconnect()

    asyncio.run(scenario())


def test_device_id_probe_runs_after_reads(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        first = make_requester(name="first")
        second = make_requester(register=40100, name="second")

        scheduler.enqueue_read(first)
        scheduler.request_device_id(3)
        scheduler.enqueue_read(second)

        transport.finish([0, 0])
        assert transport.last_call == ("read", 40100, 1, 2)
        transport.finish([0, 0])
        assert transport.last_call == ("device_id", 0, 3)
        assert scheduler.current_action == PollAction.DEVICE_ID

        transport.finish([0x01, 0x41])
        assert recorder.identities == [(3, b"\x01A")]
        assert recorder.data[-1] == (0, SystemRegister.DEVICE_ID_POLL_COMPLETE, 3)

    asyncio.run(scenario())


def test_metadata_scan(transport, provider, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport, metadata_provider=provider)
        requester = make_requester(node=2)

        scheduler.enqueue_metadata(MetadataSequence(requester, 2, 40001, 40002))
        assert transport.calls == [("raw", 0xFFFF, 2, 0x41, bytes([40001 & 0xFF]))]

        transport.finish([1, 2])
        metadata, node = requester.metadata[0]
        assert node == 2
        assert metadata.register == 40001
        assert metadata.label == "reg40001"
        assert metadata.encoding == RegisterEncoding.INT16
        assert (metadata.minimum, metadata.maximum, metadata.default) == (0, 100, 5)
        assert (0, SystemRegister.POLL_METADATA_COMPLETE, 2) in recorder.data

        assert transport.last_call == ("raw", 0xFFFF, 2, 0x41, bytes([40002 & 0xFF]))
        transport.finish([3])

        assert [m.register for m, _ in requester.metadata] == [40001, 40002]
        assert provider.disposed == [40001, 40002]
        assert len(transport.calls) == 2
        assert scheduler.current_action == PollAction.INACTIVE
        assert scheduler.queue_stats()["metadata"] == 0

    asyncio.run(scenario())


def test_metadata_past_last_register_is_discarded(transport, provider, make_requester):
    async def scenario():
        scheduler, _ = connected(transport, metadata_provider=provider)
        scheduler.enqueue_metadata(MetadataSequence(make_requester(), 1, 5, 4))
        assert transport.calls == []
        assert provider.created == []
        assert scheduler.queue_stats()["metadata"] == 0

    asyncio.run(scenario())


def test_metadata_without_provider_falls_through_to_read(transport, make_requester):
    async def scenario():
        scheduler, _ = connected(transport)
        first = make_requester(name="first")
        second = make_requester(register=40100, name="second")

        scheduler.enqueue_read(first)
        scheduler.enqueue_metadata(MetadataSequence(first, 1, 40001, 40002))
        scheduler.enqueue_read(second)

        transport.finish([0, 0])
        assert transport.last_call == ("read", 40100, 1, 2)
        assert scheduler.queue_stats()["metadata"] == 0

    asyncio.run(scenario())


def test_metadata_declined_by_provider_is_discarded(transport, make_requester):
    async def scenario():
        from fakes import FakeMetadataProvider

        provider = FakeMetadataProvider(decline={40001})
        scheduler, _ = connected(transport, metadata_provider=provider)
        scheduler.enqueue_metadata(MetadataSequence(make_requester(), 1, 40001, 40003))
        assert transport.calls == []
        assert scheduler.queue_stats()["metadata"] == 0

    asyncio.run(scenario())


def test_metadata_failure_abandons_remaining_range(transport, provider, make_requester):
    async def scenario():
        scheduler, _ = connected(transport, metadata_provider=provider)
        requester = make_requester()
        scheduler.attach(requester)

        scheduler.enqueue_metadata(MetadataSequence(requester, 1, 40001, 40003))
        transport.fail(1)

        assert requester.exceptions == ["Illegal function"]
        assert provider.created == [40001]
        assert provider.disposed == [40001]
        assert len(transport.calls) == 1
        assert scheduler.queue_stats()["metadata"] == 0

    asyncio.run(scenario())


def test_read_complete_follows_every_answered_read(transport, make_requester):
    async def scenario():
        scheduler, recorder = connected(transport)
        finished = []
        scheduler.read_complete.connect(lambda requester, node: finished.append((requester, node)))
        requester = make_requester(register=40001, count=3, node=4)
        scheduler.attach(requester)

        scheduler.enqueue_read(requester)
        # Device answered with fewer registers than asked for
        transport.finish([10, 11])

        assert requester.values == [(40001, 10, 4), (40002, 11, 4)]
        assert finished == [(requester, 4)]

        scheduler.enqueue_read(requester)
        transport.fail(2)
        assert finished == [(requester, 4)]

    asyncio.run(scenario())
