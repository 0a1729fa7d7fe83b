"""
Poll Scheduler

Multi-tier arbitration over a strictly one-at-a-time transport. All
requests are one-shot: periodic polling is done by re-enqueueing read
demand. After every transaction the scheduler decides what runs next:

    write  >  metadata  >  read  >  device id probe

The scheduler is not thread safe. All methods, and the transport
signals it listens to, run on the event loop.

Signals:
    new_register_data(register, value, node)   register 0 = system events
    polling_complete()                         read queue drained
    poll_exception(requester, reason)          transaction failed
    device_identity(node, data)                device id probe result
    read_complete(requester, node)             a read transaction answered
"""

from typing import Any

from modbus_tool.common.exceptions import (
    DEVICE_TIMEOUT,
    TransportError,
    describe_error,
)
from modbus_tool.common.logging_setup import get_service_logger, log_poll_exception
from modbus_tool.common.signals import Signal
from modbus_tool.common.timers import Watchdog
from .metadata import MetadataProvider, MetadataStepper
from .queues import RequestQueues
from .requests import (
    ActivityState,
    MetadataSequence,
    PollAction,
    PollCounts,
    SYSTEM_NODE,
    SYSTEM_REGISTER,
    SystemRegister,
    WriteRequest,
)

logger = get_service_logger("scheduler")


class Scheduler:
    """
    Modbus poll scheduler.

    Owns the request queues, the transaction counters and the watchdog.
    The transport must provide submit_read/submit_write/submit_raw/
    submit_device_id, take_result, start_register, unit_id,
    transaction_id and the complete/error signals (see ModbusWorker).
    """

    DEFAULT_TIMEOUT_SECONDS = 3.0

    def __init__(
        self,
        metadata_provider: MetadataProvider | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.new_register_data = Signal("scheduler.new_register_data")
        self.polling_complete = Signal("scheduler.polling_complete")
        self.poll_exception = Signal("scheduler.poll_exception")
        self.device_identity = Signal("scheduler.device_identity")
        self.read_complete = Signal("scheduler.read_complete")

        self.metadata = MetadataStepper(metadata_provider)
        self._queues = RequestQueues()
        self._transport: Any = None
        self._watchdog = Watchdog(timeout_seconds, self._on_watchdog_expired)

        self._current_action = PollAction.INACTIVE
        self._current_request: Any = None
        self._transaction_id: int | None = None
        # Transaction in flight
        self._active = False
        # A pass or a result is being processed synchronously
        self._processing = False

        self._poll_count = 0
        self._error_count = 0

    @property
    def connected(self) -> bool:
        return self._transport is not None

    @property
    def current_action(self) -> PollAction:
        return self._current_action

    @property
    def timeout(self) -> float:
        return self._watchdog.timeout

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def connect(self, transport: Any, timeout_seconds: float | None = None) -> None:
        """
        Start scheduling on an open transport.

        Clears all queues, resets the counters and announces
        SYSTEM_CONNECTED on the system register.
        """
        if self._transport is not None:
            raise TransportError("scheduler is already connected", recoverable=False)

        if timeout_seconds is not None:
            self._watchdog.timeout = timeout_seconds

        self._release_metadata(self._queues.clear())
        self._reset_flight()
        self._poll_count = 0
        self._error_count = 0

        self._transport = transport
        transport.complete.connect(self._on_transport_complete)
        transport.error.connect(self._on_transport_error)

        logger.info(f"Scheduler connected (timeout {self._watchdog.timeout:.1f}s)")
        self.new_register_data.emit(
            SYSTEM_REGISTER, SystemRegister.SYSTEM_CONNECTED, SYSTEM_NODE
        )

    def disconnect(self) -> None:
        """
        Stop scheduling and drop all pending demand.

        Emits polling_complete if read demand was pending, so callers
        waiting for the read queue to drain are released, then announces
        SYSTEM_DISCONNECTED.
        """
        transport = self._transport
        if transport is None:
            return

        transport.complete.disconnect(self._on_transport_complete)
        transport.error.disconnect(self._on_transport_error)
        self._transport = None

        self._watchdog.stop()
        self._reset_flight()

        had_reads = bool(self._queues.reads)
        self._release_metadata(self._queues.clear())

        logger.info(
            f"Scheduler disconnected (success={self._poll_count}, errors={self._error_count})"
        )
        if had_reads:
            self.polling_complete.emit()
        self.new_register_data.emit(
            SYSTEM_REGISTER, SystemRegister.SYSTEM_DISCONNECTED, SYSTEM_NODE
        )

    def _reset_flight(self) -> None:
        self._current_request = None
        self._current_action = PollAction.INACTIVE
        self._transaction_id = None
        self._active = False
        self._processing = False

    def _release_metadata(self, sequences: list[MetadataSequence]) -> None:
        for sequence in sequences:
            self.metadata.release(sequence)

    # ------------------------------------------------------------------
    # Submission API
    # ------------------------------------------------------------------

    def enqueue_write(self, request: WriteRequest) -> None:
        """Queue a block write (highest priority)"""
        if self._transport is None:
            logger.debug("Write ignored: not connected")
            return
        request.validate()
        self._queues.writes.append(request)
        self._figure_next()

    def enqueue_metadata(self, sequence: MetadataSequence) -> None:
        """Queue a register-by-register metadata scan"""
        if self._transport is None:
            logger.debug("Metadata request ignored: not connected")
            return
        self._queues.metadata.append(sequence)
        self._figure_next()

    def enqueue_read(self, requester: Any) -> None:
        """Queue one read cycle for ``requester``"""
        if self._transport is None:
            logger.debug("Read request ignored: not connected")
            return
        self._queues.reads.append(requester)
        self._figure_next()

    def request_device_id(self, node: int) -> None:
        """Queue a device identity probe for ``node`` (lowest priority)"""
        if self._transport is None:
            logger.debug("Device id probe ignored: not connected")
            return
        self._queues.device_ids.append(node)
        self._figure_next()

    def attach(self, requester: Any) -> None:
        """Subscribe a requester to data and exception broadcasts"""
        self.new_register_data.connect(requester.receive_value)
        self.poll_exception.connect(requester.receive_exception)

    def remove_reference(self, requester: Any) -> None:
        """
        Release every reference to ``requester``.

        Queued writes and metadata scans still run but nobody is notified;
        queued reads are dropped; an in-flight transaction completes but its
        result is no longer attributed to the requester.
        """
        if requester is None:
            return

        had_reads = bool(self._queues.reads)
        removed = self._queues.remove_reference(requester)

        if self._current_request is requester:
            self._current_request = None

        for signal in (
            self.new_register_data,
            self.poll_exception,
            self.polling_complete,
            self.device_identity,
            self.read_complete,
        ):
            signal.disconnect_owner(requester)

        if removed:
            logger.debug(f"Removed {removed} queued reads for {requester!r}")

        if had_reads and not self._queues.reads:
            self.polling_complete.emit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_counts(self) -> PollCounts:
        """Success and error counts since this connection began"""
        return PollCounts(success=self._poll_count, error=self._error_count)

    def get_active(self) -> ActivityState:
        """Whether a transaction is in flight, and the requester it serves"""
        return ActivityState(active=self._active, requester=self._current_request)

    def queue_stats(self) -> dict:
        return self._queues.stats()

    # ------------------------------------------------------------------
    # Arbitration
    # ------------------------------------------------------------------

    def _figure_next(self) -> None:
        """Pick and dispatch the next transaction, if any"""
        if self._active or self._processing or self._transport is None:
            return

        if getattr(self._transport, "busy", False):
            # A timed-out transaction is still holding the transport;
            # its late signal re-runs arbitration.
            logger.debug("Transport busy, deferring dispatch")
            return

        self._processing = True
        try:
            emit_poll_complete = self._dispatch()
        finally:
            self._processing = False

        if self._active:
            self._watchdog.start()

        if emit_poll_complete:
            self.polling_complete.emit()

    def _dispatch(self) -> bool:
        """
        One arbitration pass.

        Returns:
            True if the last queued read was just dispatched
        """
        queues = self._queues
        self._current_request = None
        emit_poll_complete = False

        while True:
            next_action = PollAction.INACTIVE
            if queues.device_ids:
                next_action = PollAction.DEVICE_ID
            if queues.reads:
                next_action = PollAction.READ
            if queues.metadata:
                next_action = PollAction.METADATA
            if queues.writes:
                next_action = PollAction.WRITE

            if next_action == PollAction.METADATA and not self._poll_metadata():
                # Sequence finished or unusable; read demand goes next
                if queues.reads:
                    next_action = PollAction.READ
                else:
                    continue

            if next_action == PollAction.WRITE:
                self._poll_write()
            elif next_action == PollAction.READ:
                emit_poll_complete = self._poll_read()
            elif next_action == PollAction.DEVICE_ID:
                self._poll_device_id()

            break

        self._current_action = next_action
        return emit_poll_complete

    def _poll_write(self) -> None:
        write = self._queues.writes.popleft()
        self._current_request = write.requester
        self._transaction_id = self._transport.submit_write(
            write.first_register, list(write.values), write.node
        )
        self._active = True
        logger.debug(
            f"Dispatched write node={write.node} reg={write.first_register} "
            f"count={len(write.values)}"
        )

    def _poll_metadata(self) -> bool:
        """Dispatch the next metadata step; False if the sequence was discarded"""
        sequence = self._queues.metadata[0]
        step = None
        if not self.metadata.should_discard(sequence):
            step = self.metadata.begin_step(sequence)

        if step is None:
            self._discard_front_metadata()
            return False

        function_code, payload = step
        self._current_request = sequence.requester
        self._transaction_id = self._transport.submit_raw(
            function_code, payload, sequence.node
        )
        self._active = True
        logger.debug(
            f"Dispatched metadata node={sequence.node} reg={sequence.current_register}"
        )
        return True

    def _poll_read(self) -> bool:
        requester = self._queues.reads.popleft()
        self._current_request = requester
        self._active = True
        try:
            requester.perform_poll(self._transport)
        except Exception:
            self._active = False
            self._current_request = None
            raise
        self._transaction_id = self._transport.transaction_id
        return not self._queues.reads

    def _poll_device_id(self) -> None:
        node = self._queues.device_ids.popleft()
        self._current_request = None
        self._transaction_id = self._transport.submit_device_id(node)
        self._active = True
        logger.debug(f"Dispatched device id probe node={node}")

    def _discard_front_metadata(self) -> None:
        sequence = self._queues.metadata.popleft()
        self.metadata.release(sequence)

    # ------------------------------------------------------------------
    # Transport signal handlers
    # ------------------------------------------------------------------

    def _is_current(self, transaction_id: int) -> bool:
        return self._active and transaction_id == self._transaction_id

    def _on_transport_complete(self, transaction_id: int) -> None:
        if not self._is_current(transaction_id):
            logger.debug(f"Ignoring late completion of transaction {transaction_id}")
            self._figure_next()
            return

        self._watchdog.stop()
        self._poll_count += 1
        self._active = False

        self._processing = True
        try:
            self._process_result(transaction_id)
        finally:
            self._processing = False
            self._figure_next()

    def _process_result(self, transaction_id: int) -> None:
        transport = self._transport
        node = transport.unit_id
        action = self._current_action

        if action == PollAction.METADATA:
            if not self._queues.metadata:
                return
            sequence = self._queues.metadata[0]
            metadata = self.metadata.finish_step(
                sequence, transport.take_result(transaction_id)
            )
            if sequence.requester is not None:
                sequence.requester.receive_metadata(metadata, node)
            self.new_register_data.emit(
                SYSTEM_REGISTER, SystemRegister.POLL_METADATA_COMPLETE, node
            )

        elif action == PollAction.READ:
            register = transport.start_register
            for value in transport.take_result(transaction_id):
                self.new_register_data.emit(register, value, node)
                register += 1
            # Whatever the response length, the read is over
            self.read_complete.emit(self._current_request, node)

        elif action == PollAction.DEVICE_ID:
            data = bytes(v & 0xFF for v in transport.take_result(transaction_id))
            self.device_identity.emit(node, data)
            self.new_register_data.emit(
                SYSTEM_REGISTER, SystemRegister.DEVICE_ID_POLL_COMPLETE, node
            )

        else:
            self.new_register_data.emit(
                SYSTEM_REGISTER, SystemRegister.WRITE_REQUEST_COMPLETE, node
            )

    def _on_transport_error(self, transaction_id: int, error_code: int) -> None:
        if not self._is_current(transaction_id):
            logger.debug(f"Ignoring late error of transaction {transaction_id}")
            self._figure_next()
            return
        self._handle_failure(error_code)

    def _on_watchdog_expired(self) -> None:
        if not self._active:
            return
        logger.warning(
            f"Transaction {self._transaction_id} timed out after {self._watchdog.timeout:.1f}s"
        )
        self._handle_failure(DEVICE_TIMEOUT)

    def _handle_failure(self, error_code: int) -> None:
        self._watchdog.stop()
        self._error_count += 1
        self._active = False

        reason = describe_error(error_code)
        requester = self._current_request
        log_poll_exception(
            logger.logger, self._current_action.value, error_code, reason, requester
        )

        self._processing = True
        try:
            self.poll_exception.emit(requester, reason)
            if self._current_action == PollAction.METADATA and self._queues.metadata:
                # Abandon the rest of this scan; the requester already saw
                # the failure through poll_exception.
                self._discard_front_metadata()
        finally:
            self._processing = False
            self._figure_next()
