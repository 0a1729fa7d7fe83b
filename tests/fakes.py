"""
Test doubles for the transport, requesters and the metadata provider.
"""

import asyncio

from modbus_tool.common.signals import Signal


class FakeTransport:
    """
    Records submissions; completion and errors are driven by the test
    through finish() and fail().
    """

    def __init__(self):
        self.complete = Signal("fake.complete")
        self.error = Signal("fake.error")
        self.calls = []
        self.transaction_id = 0
        self.start_register = 0
        self.unit_id = 0
        self.busy = False
        self._results = {}

    def _begin(self, kind, register, node, *extra):
        self.transaction_id += 1
        self.start_register = register
        self.unit_id = node
        self.calls.append((kind, register, node) + extra)
        return self.transaction_id

    def submit_read(self, register, count, node):
        return self._begin("read", register, node, count)

    def submit_write(self, register, values, node):
        return self._begin("write", register, node, list(values))

    def submit_raw(self, function_code, payload, node):
        return self._begin("raw", 0xFFFF, node, function_code, bytes(payload))

    def submit_device_id(self, node):
        return self._begin("device_id", 0, node)

    def take_result(self, transaction_id=None):
        if transaction_id is None:
            transaction_id = self.transaction_id
        return self._results.pop(transaction_id, [])

    def finish(self, values=(), transaction_id=None):
        transaction_id = transaction_id or self.transaction_id
        self._results[transaction_id] = list(values)
        self.complete.emit(transaction_id)

    def fail(self, code, transaction_id=None):
        self.error.emit(transaction_id or self.transaction_id, code)

    @property
    def last_call(self):
        return self.calls[-1] if self.calls else None


class AutoTransport(FakeTransport):
    """
    Answers every request on the next loop iteration, like the worker.

    Reads return ``register % 1000`` for each register; writes succeed
    unless ``fail_writes`` holds an error code.
    ``short_reads`` drops the last value of every read and ``silent_reads``
    leaves reads unanswered.
    """

    def __init__(self, identity=b"\x01\x41"):
        super().__init__()
        self.identity = identity
        self.fail_writes = None
        self.short_reads = False
        self.silent_reads = False
        self.opened = False
        self.closed = False

    async def open(self):
        self.opened = True

    async def close(self):
        self.closed = True

    def _begin(self, kind, register, node, *extra):
        transaction_id = super()._begin(kind, register, node, *extra)
        loop = asyncio.get_running_loop()

        if kind == "read":
            count = extra[0]
            values = [(register + i) % 1000 for i in range(count)]
            if self.short_reads:
                values = values[:-1]
            if not self.silent_reads:
                loop.call_soon(self.finish, values, transaction_id)
        elif kind == "write" and self.fail_writes is not None:
            loop.call_soon(self.fail, self.fail_writes, transaction_id)
        elif kind == "device_id":
            loop.call_soon(self.finish, list(self.identity), transaction_id)
        else:
            loop.call_soon(self.finish, [], transaction_id)
        return transaction_id


class RecordingRequester:
    """Requester that reads one block and records everything it receives"""

    def __init__(self, register=40001, count=2, node=1, name="requester"):
        self.register = register
        self.count = count
        self.node = node
        self.name = name
        self.polls = 0
        self.values = []
        self.exceptions = []
        self.metadata = []

    def __repr__(self):
        return f"RecordingRequester({self.name!r})"

    def perform_poll(self, transport):
        self.polls += 1
        transport.submit_read(self.register, self.count, self.node)

    def receive_value(self, register, value, node):
        self.values.append((register, value, node))

    def receive_exception(self, requester, reason):
        if requester is self:
            self.exceptions.append(reason)

    def receive_metadata(self, metadata, node):
        self.metadata.append((metadata, node))


class FakeMetadataProvider:
    """Provider whose handles are dicts; labels are 'reg<register>'"""

    FUNCTION_CODE = 0x41

    def __init__(self, available=True, decline=()):
        self.available = available
        self.decline = set(decline)
        self.created = []
        self.disposed = []

    def create_request(self, register):
        if register in self.decline:
            return None
        self.created.append(register)
        return {"register": register}, self.FUNCTION_CODE

    def encode(self, handle):
        return bytes([handle["register"] & 0xFF])

    def decode(self, handle, data):
        handle["data"] = data
        return True

    def decode_label(self, handle):
        return f"reg{handle['register']}"

    def decode_limits(self, handle):
        return 0, 100

    def decode_default(self, handle):
        return 5

    def decode_encoding(self, handle):
        return 2

    def dispose(self, handle):
        self.disposed.append(handle["register"])
