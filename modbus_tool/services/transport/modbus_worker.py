"""
Modbus Transport Worker

Owns the pymodbus connection and executes exactly one transaction at a
time on a dedicated asyncio task. Requests are handed over through a
single-slot mailbox; completion and errors are delivered back on the
event loop through the ``complete`` and ``error`` signals.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from pymodbus.client import AsyncModbusTcpClient, AsyncModbusSerialClient
from pymodbus.exceptions import (
    ConnectionException,
    ModbusException,
    ModbusIOException,
)

from modbus_tool.common.addressing import (
    RegisterAddress,
    RegisterFamily,
    max_block_size,
    resolve,
    resolve_write,
)
from modbus_tool.common.config import ConnectionSettings, Protocol
from modbus_tool.common.exceptions import (
    CommunicationError,
    DEVICE_TIMEOUT,
    ErrorCode,
    TransactionError,
    TransportBusyError,
)
from modbus_tool.common.logging_setup import (
    get_service_logger,
    log_device_read,
    log_device_write,
)
from modbus_tool.common.signals import Signal
from .raw_pdu import CUSTOM_REGISTER, RawRequest, response_class_for

logger = get_service_logger("transport")


class RequestKind(str, Enum):
    """Transaction classes the worker can execute"""
    READ = "read"
    WRITE = "write"
    RAW = "raw"
    DEVICE_ID = "device_id"


@dataclass
class TransportRequest:
    """Description of one transaction placed in the mailbox"""
    transaction_id: int
    kind: RequestKind
    node: int
    register: int = 0
    count: int = 0
    values: list[int] = field(default_factory=list)
    function_code: int = 0
    payload: bytes = b""


class ModbusWorker:
    """
    Single-outstanding Modbus transport.

    Handles:
    - Modbus TCP and RTU serial connections
    - Register map routing (coils, discrete inputs, input/holding registers)
    - Block writes (single and multiple, bits and words)
    - Raw vendor-defined PDUs and the device identity probe

    Signals:
        complete(transaction_id)
        error(transaction_id, error_code)
    """

    def __init__(
        self,
        settings: ConnectionSettings,
        client_factory: Callable[[], Any] | None = None,
    ):
        self.settings = settings
        self.complete = Signal("transport.complete")
        self.error = Signal("transport.error")

        self._client_factory = client_factory or self._build_client
        self._client: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._mailbox: asyncio.Queue | None = None
        self._task: asyncio.Task | None = None

        self._next_id = 0
        self._results: dict[int, list[int]] = {}
        self._start_register = 0
        self._unit_id = 0
        self._registered_codes: set[int] = set()

        self._quit = False
        self._closed = False

    @property
    def is_connected(self) -> bool:
        return (
            self._task is not None
            and not self._closed
            and self._client is not None
            and bool(self._client.connected)
        )

    @property
    def busy(self) -> bool:
        """A submitted request has not yet been picked up by the worker"""
        return self._mailbox is not None and self._mailbox.full()

    @property
    def start_register(self) -> int:
        """First register of the most recent request (0 = device id, 0xFFFF = raw)"""
        return self._start_register

    @property
    def unit_id(self) -> int:
        """Node the most recent request was sent to"""
        return self._unit_id

    @property
    def transaction_id(self) -> int:
        """Id of the most recently submitted transaction"""
        return self._next_id

    def _build_client(self) -> Any:
        s = self.settings
        timeout = s.timeout_ms / 1000
        if s.protocol == Protocol.RTU:
            return AsyncModbusSerialClient(
                port=s.serial_port,
                baudrate=s.baudrate,
                parity=s.parity,
                stopbits=s.stopbits,
                timeout=timeout,
            )
        return AsyncModbusTcpClient(
            host=s.host,
            port=s.port,
            timeout=timeout,
        )

    def _describe_target(self) -> str:
        s = self.settings
        if s.protocol == Protocol.RTU:
            return f"serial port {s.serial_port}"
        return f"{s.host}:{s.port}"

    async def open(self) -> None:
        """
        Connect and start the worker task.

        Raises:
            CommunicationError: if the connection cannot be established
        """
        self._loop = asyncio.get_running_loop()
        self._client = self._client_factory()

        try:
            await self._client.connect()
        except (ModbusException, OSError) as e:
            raise CommunicationError(
                f"Connection error to {self._describe_target()}: {e}",
                host=self.settings.host,
                port=self.settings.port,
            ) from e

        if not self._client.connected:
            raise CommunicationError(
                f"Failed to connect to {self._describe_target()}",
                host=self.settings.host,
                port=self.settings.port,
            )

        self._mailbox = asyncio.Queue(maxsize=1)
        self._quit = False
        self._closed = False
        self._task = asyncio.create_task(self._run(), name="modbus-worker")
        logger.info(f"Connected to {self._describe_target()}")

    async def close(self) -> None:
        """
        Stop the worker and close the connection.

        Waits for the worker task to exit; no signal is delivered after
        this returns. A transaction already on the wire is allowed to finish.
        """
        if self._closed:
            return
        self._closed = True
        self._quit = True

        if self._mailbox is not None and self._mailbox.empty():
            self._mailbox.put_nowait(None)

        if self._task is not None:
            await self._task
            self._task = None

        if self._client is not None:
            self._client.close()
            self._client = None

        self._results.clear()
        logger.info(f"Disconnected from {self._describe_target()}")

    # ------------------------------------------------------------------
    # Submission (control side)
    # ------------------------------------------------------------------

    def submit_read(self, register: int, count: int, node: int) -> int:
        """Read ``count`` bits/registers starting at ``register``"""
        transaction_id = self._begin(register, node)
        if resolve(register) is None:
            self._reject(transaction_id, ErrorCode.ILLEGAL_DATA_ADDRESS)
        elif count < 1 or count > max_block_size(register):
            self._reject(transaction_id, ErrorCode.ILLEGAL_DATA_VALUE)
        else:
            self._post_request(TransportRequest(
                transaction_id=transaction_id,
                kind=RequestKind.READ,
                node=node,
                register=register,
                count=count,
            ))
        return transaction_id

    def submit_write(self, register: int, values: list[int], node: int) -> int:
        """Write ``values`` starting at ``register`` (coils or holding registers)"""
        transaction_id = self._begin(register, node)
        if resolve_write(register) is None:
            self._reject(transaction_id, ErrorCode.ILLEGAL_DATA_ADDRESS)
        elif not values or len(values) > max_block_size(register):
            self._reject(transaction_id, ErrorCode.ILLEGAL_DATA_VALUE)
        else:
            self._post_request(TransportRequest(
                transaction_id=transaction_id,
                kind=RequestKind.WRITE,
                node=node,
                register=register,
                count=len(values),
                values=[int(v) & 0xFFFF for v in values],
            ))
        return transaction_id

    def submit_raw(self, function_code: int, payload: bytes, node: int) -> int:
        """Send a vendor-defined PDU; the result is the response bytes"""
        transaction_id = self._begin(CUSTOM_REGISTER, node)
        self._post_request(TransportRequest(
            transaction_id=transaction_id,
            kind=RequestKind.RAW,
            node=node,
            register=CUSTOM_REGISTER,
            function_code=function_code,
            payload=bytes(payload),
        ))
        return transaction_id

    def submit_device_id(self, node: int) -> int:
        """Probe device identity (report device id)"""
        transaction_id = self._begin(0, node)
        self._post_request(TransportRequest(
            transaction_id=transaction_id,
            kind=RequestKind.DEVICE_ID,
            node=node,
        ))
        return transaction_id

    def take_result(self, transaction_id: int | None = None) -> list[int]:
        """
        Values produced by a completed transaction.

        Each result can be taken once; later calls return an empty list.
        Without an id the most recent transaction is used.
        """
        if transaction_id is None:
            transaction_id = self._next_id
        result = self._results.pop(transaction_id, [])
        # Anything older can no longer be claimed
        for stale in [k for k in self._results if k < transaction_id]:
            del self._results[stale]
        return result

    def _begin(self, register: int, node: int) -> int:
        if self._mailbox is None or self._closed:
            raise CommunicationError("Transport is not open")
        if self._mailbox.full():
            raise TransportBusyError(self._next_id)
        self._next_id += 1
        self._start_register = register
        self._unit_id = node
        return self._next_id

    def _post_request(self, request: TransportRequest) -> None:
        self._mailbox.put_nowait(request)

    def _reject(self, transaction_id: int, code: ErrorCode) -> None:
        """Fail a request locally, without touching the wire"""
        logger.debug(
            f"Rejected transaction {transaction_id} "
            f"reg={self._start_register}: {code.name}"
        )
        self._deliver_later(self.error, transaction_id, int(code))

    def _deliver_later(self, signal: Signal, *args: Any) -> None:
        self._loop.call_soon(self._deliver, signal, args)

    def _deliver(self, signal: Signal, args: tuple) -> None:
        if self._closed:
            return
        signal.emit(*args)

    # ------------------------------------------------------------------
    # Worker task
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        """Execute mailbox requests one at a time until closed"""
        while True:
            request = await self._mailbox.get()
            if request is None or self._quit:
                break

            try:
                values = await self._execute(request)
            except TransactionError as e:
                logger.debug(
                    f"Transaction {request.transaction_id} ({request.kind.value}) "
                    f"failed: {e.message}"
                )
                if not self._quit:
                    self._deliver_later(self.error, request.transaction_id, e.code)
            else:
                self._results[request.transaction_id] = values
                if not self._quit:
                    self._deliver_later(self.complete, request.transaction_id)

            if self._quit:
                break

    async def _execute(self, request: TransportRequest) -> list[int]:
        """Run one transaction, converting pymodbus failures to TransactionError"""
        try:
            if request.kind == RequestKind.READ:
                return await self._execute_read(request)
            if request.kind == RequestKind.WRITE:
                return await self._execute_write(request)
            if request.kind == RequestKind.RAW:
                return await self._execute_raw(request)
            return await self._execute_device_id(request)

        except ConnectionException as e:
            raise TransactionError(ErrorCode.CONNECTION_LOST, str(e)) from e
        except ModbusIOException as e:
            raise TransactionError(ErrorCode.IO_ERROR, str(e)) from e
        except ModbusException as e:
            raise TransactionError(ErrorCode.IO_ERROR, str(e)) from e
        except asyncio.TimeoutError as e:
            raise TransactionError(DEVICE_TIMEOUT, "read timeout") from e
        except (OSError, ValueError) as e:
            logger.error(f"Transaction {request.transaction_id} failed: {e}", exc_info=True)
            raise TransactionError(ErrorCode.IO_ERROR, str(e)) from e
        except Exception as e:
            logger.error(
                f"Unexpected error in transaction {request.transaction_id}: {e}",
                exc_info=True,
            )
            raise TransactionError(ErrorCode.IO_ERROR, str(e)) from e

    async def _execute_read(self, request: TransportRequest) -> list[int]:
        address: RegisterAddress = resolve(request.register)
        client = self._client
        kwargs = {
            "address": address.offset,
            "count": request.count,
            "device_id": request.node,
        }

        if address.family == RegisterFamily.COIL:
            response = await client.read_coils(**kwargs)
        elif address.family == RegisterFamily.DISCRETE_INPUT:
            response = await client.read_discrete_inputs(**kwargs)
        elif address.family == RegisterFamily.INPUT_REGISTER:
            response = await client.read_input_registers(**kwargs)
        else:
            response = await client.read_holding_registers(**kwargs)

        try:
            self._check_response(response)
        except TransactionError:
            log_device_read(logger.logger, request.node, request.register, request.count, success=False)
            raise

        log_device_read(logger.logger, request.node, request.register, request.count)
        if address.is_bit:
            # pymodbus pads bit responses to a whole byte
            return [1 if bit else 0 for bit in response.bits[:request.count]]
        return list(response.registers[:request.count])

    async def _execute_write(self, request: TransportRequest) -> list[int]:
        address: RegisterAddress = resolve_write(request.register)
        client = self._client
        values = request.values

        if address.is_bit:
            if len(values) == 1:
                response = await client.write_coil(
                    address=address.offset,
                    value=values[0] > 0,
                    device_id=request.node,
                )
            else:
                response = await client.write_coils(
                    address=address.offset,
                    values=[v > 0 for v in values],
                    device_id=request.node,
                )
        elif len(values) == 1:
            response = await client.write_register(
                address=address.offset,
                value=values[0],
                device_id=request.node,
            )
        else:
            response = await client.write_registers(
                address=address.offset,
                values=values,
                device_id=request.node,
            )

        try:
            self._check_response(response)
        except TransactionError:
            log_device_write(logger.logger, request.node, request.register, values, success=False)
            raise

        log_device_write(logger.logger, request.node, request.register, values)
        return []

    async def _execute_raw(self, request: TransportRequest) -> list[int]:
        function_code = request.function_code
        if function_code not in self._registered_codes:
            self._client.register(response_class_for(function_code))
            self._registered_codes.add(function_code)

        pdu = RawRequest(
            function_code=function_code,
            payload=request.payload,
            device_id=request.node,
        )
        response = await self._client.execute(False, pdu)
        self._check_response(response)

        if response.function_code != function_code:
            raise TransactionError(
                ErrorCode.INVALID_RESPONSE,
                f"expected function code {function_code}, got {response.function_code}",
            )

        logger.debug(
            f"Raw fc={function_code} node={request.node} "
            f"sent={len(request.payload)} received={len(response.payload)}"
        )
        return list(response.payload)

    async def _execute_device_id(self, request: TransportRequest) -> list[int]:
        response = await self._client.report_device_id(device_id=request.node)
        self._check_response(response)
        return list(getattr(response, "identifier", b"") or b"")

    @staticmethod
    def _check_response(response: Any) -> None:
        if response is None:
            raise TransactionError(ErrorCode.INVALID_RESPONSE, "no response")
        if response.isError():
            code = getattr(response, "exception_code", 0) or ErrorCode.INVALID_RESPONSE
            raise TransactionError(code, str(response))
