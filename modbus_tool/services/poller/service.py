"""
Poller Service

Ties the transport, the scheduler and the configured register blocks
together:
- Opening the connection and attaching blocks to the scheduler
- Continuous polling, re-enqueued each time the read queue drains
- Block writes through the write batcher
- Metadata scans and device identity probes
- Periodic status log and the health HTTP server
"""

import asyncio
import signal
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable

from aiohttp import web

from modbus_tool.common.addressing import is_writable
from modbus_tool.common.config import ToolConfig
from modbus_tool.common.exceptions import RequestError, TransportError
from modbus_tool.common.logging_setup import get_service_logger
from modbus_tool.common.timers import ScheduledLoop
from modbus_tool.services.scheduler import (
    MetadataProvider,
    PollAction,
    Scheduler,
    SYSTEM_REGISTER,
    SystemRegister,
    WriteRequest,
    load_metadata_provider,
)
from modbus_tool.services.transport import ModbusWorker
from .register_block import RegisterBlock
from .write_batcher import WriteBatcher

logger = get_service_logger("poller")


class PollerService:
    """
    Poller Service

    Owns one transport and one scheduler for the lifetime of a session.
    start() connects and begins polling; stop() disconnects the scheduler
    before closing the transport.
    """

    def __init__(
        self,
        config: ToolConfig,
        worker_factory: Callable[[], Any] | None = None,
        metadata_provider: MetadataProvider | None = None,
    ):
        self.config = config
        self._worker_factory = worker_factory or (lambda: ModbusWorker(config.connection))

        if metadata_provider is None:
            metadata_provider = load_metadata_provider(config.metadata.plugin)

        self.scheduler = Scheduler(
            metadata_provider=metadata_provider,
            timeout_seconds=config.connection.poll_timeout_ms / 1000,
        )
        self.blocks = [RegisterBlock.from_config(b) for b in config.blocks]
        self.worker: Any = None
        self.identities: dict[int, bytes] = {}

        self._start_time = datetime.now(timezone.utc)
        self._running = False
        self._shutdown_event = asyncio.Event()

        # Continuous polling
        self._cycle_started = 0.0
        self._cycle_count = 0
        self._repoll_handle: asyncio.TimerHandle | None = None
        self._last_read: RegisterBlock | None = None
        self._cycle_waiters: list[asyncio.Future] = []

        # Outstanding writes and probes, in submission order
        self._write_waiters: deque[asyncio.Future] = deque()
        self._identity_waiters: dict[int, list[asyncio.Future]] = {}

        self._status_loop: ScheduledLoop | None = None
        self._health_runner: web.AppRunner | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_count(self) -> int:
        """Number of completed read cycles"""
        return self._cycle_count

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Connect and start polling.

        Raises:
            CommunicationError: if the device cannot be reached
        """
        logger.info(f"Starting poller ({len(self.blocks)} blocks)")

        self.worker = self._worker_factory()
        await self.worker.open()

        scheduler = self.scheduler
        scheduler.polling_complete.connect(self._on_polling_complete)
        scheduler.new_register_data.connect(self._on_register_data)
        scheduler.poll_exception.connect(self._on_poll_exception)
        scheduler.device_identity.connect(self._on_device_identity)
        scheduler.read_complete.connect(self._on_read_complete)
        for block in self.blocks:
            scheduler.attach(block)

        scheduler.connect(self.worker)
        self._running = True

        if self.config.metadata.query_on_connect:
            self.query_metadata()

        if self.config.polling.continuous:
            self._enqueue_cycle()

        if self.config.health.enabled:
            await self._start_health_server()

        self._status_loop = ScheduledLoop(
            self.config.polling.status_interval_s,
            self._report_status,
            name="status",
        )
        await self._status_loop.start()

        logger.info("Poller started")

    async def stop(self) -> None:
        """Stop polling and close the connection"""
        if not self._running:
            return
        logger.info("Stopping poller")
        self._running = False

        if self._repoll_handle is not None:
            self._repoll_handle.cancel()
            self._repoll_handle = None

        if self._status_loop is not None:
            self._status_loop.stop()
            self._status_loop = None

        # A cycle cut short by the disconnect does not count
        scheduler = self.scheduler
        scheduler.polling_complete.disconnect(self._on_polling_complete)
        scheduler.read_complete.disconnect(self._on_read_complete)

        scheduler.disconnect()
        self._last_read = None
        for block in self.blocks:
            scheduler.remove_reference(block)
        self._fail_waiters()

        scheduler.new_register_data.disconnect(self._on_register_data)
        scheduler.poll_exception.disconnect(self._on_poll_exception)
        scheduler.device_identity.disconnect(self._on_device_identity)

        if self.worker is not None:
            await self.worker.close()

        await self._stop_health_server()

        counts = scheduler.get_counts()
        logger.info(
            f"Poller stopped (success={counts.success}, errors={counts.error}, "
            f"cycles={self._cycle_count})"
        )

    async def run(self) -> None:
        """Start, then wait for SIGINT/SIGTERM and stop"""
        await self.start()
        self._setup_signal_handlers()
        try:
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self.request_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self.request_shutdown())

    def _fail_waiters(self) -> None:
        for waiter in self._cycle_waiters:
            if not waiter.done():
                waiter.set_result(False)
        self._cycle_waiters.clear()

        while self._write_waiters:
            waiter = self._write_waiters.popleft()
            if not waiter.done():
                waiter.set_result(False)

        for waiters in self._identity_waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(None)
        self._identity_waiters.clear()

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def _enqueue_cycle(self) -> None:
        """Queue one read for every block"""
        self._repoll_handle = None
        if not self._running or not self.scheduler.connected:
            return
        self._cycle_started = time.monotonic()
        for block in self.blocks:
            self.scheduler.enqueue_read(block)

    def _on_polling_complete(self) -> None:
        # Emitted when the last queued read is dispatched; the cycle ends
        # once that read has answered.
        active = self.scheduler.get_active()
        if active.active and isinstance(active.requester, RegisterBlock):
            self._last_read = active.requester
            return
        self._finish_cycle()

    def _last_read_done(self) -> None:
        self._last_read = None
        if not self.scheduler.queue_stats()["reads"]:
            self._finish_cycle()

    def _finish_cycle(self) -> None:
        self._cycle_count += 1

        waiters, self._cycle_waiters = self._cycle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(True)

        if not self._running or not self.config.polling.continuous:
            return
        if self._repoll_handle is not None:
            return

        interval = self.config.polling.interval_ms / 1000
        delay = max(0.0, interval - (time.monotonic() - self._cycle_started))
        loop = asyncio.get_running_loop()
        self._repoll_handle = loop.call_later(delay, self._enqueue_cycle)

    async def poll_once(self, timeout: float | None = None) -> list[dict]:
        """
        Read every block once.

        Returns:
            Snapshot of every block after the read queue drained

        Raises:
            TransportError: if the poller is not running or stops mid-cycle
        """
        if not self.blocks:
            return []
        if not self._running:
            raise TransportError("poller is not running")

        waiter = asyncio.get_running_loop().create_future()
        self._cycle_waiters.append(waiter)
        self._enqueue_cycle()
        if not await asyncio.wait_for(waiter, timeout):
            raise TransportError("poller stopped before the cycle completed")
        return [block.snapshot() for block in self.blocks]

    def query_metadata(self) -> int:
        """Start a metadata scan for every block; returns the number queued"""
        if not self.scheduler.metadata.available:
            logger.info("Metadata plugin not loaded, skipping metadata query")
            return 0

        queued = 0
        for block in self.blocks:
            sequence = block.metadata_sequence()
            if sequence is not None:
                self.scheduler.enqueue_metadata(sequence)
                queued += 1
        return queued

    # ------------------------------------------------------------------
    # Writes and probes
    # ------------------------------------------------------------------

    async def write(
        self,
        node: int,
        register: int,
        values: list[int],
        timeout: float | None = None,
    ) -> bool:
        """
        Write ``values`` to consecutive registers starting at ``register``.

        Long runs are split at the family limit. Returns True when every
        resulting block write completed without exception.

        Raises:
            RequestError: if any target register is not writable
        """
        if not self._running:
            raise TransportError("poller is not running")

        for offset in range(len(values)):
            if not is_writable(register + offset):
                raise RequestError(f"register {register + offset} is not writable", register)

        waiters: list[asyncio.Future] = []

        def submit(request: WriteRequest) -> None:
            self.scheduler.enqueue_write(request)
            waiter = asyncio.get_running_loop().create_future()
            self._write_waiters.append(waiter)
            waiters.append(waiter)

        batcher = WriteBatcher(submit, requester=self)
        for offset, value in enumerate(values):
            batcher.append(register + offset, value, node)
        batcher.flush()

        results = await asyncio.wait_for(asyncio.gather(*waiters), timeout)
        return all(results)

    async def identify(self, node: int, timeout: float | None = None) -> bytes | None:
        """Probe a node's identity; None if the probe failed"""
        if not self._running:
            raise TransportError("poller is not running")

        waiter = asyncio.get_running_loop().create_future()
        self._identity_waiters.setdefault(node, []).append(waiter)
        self.scheduler.request_device_id(node)
        return await asyncio.wait_for(waiter, timeout)

    def _on_register_data(self, register: int, value: int, node: int) -> None:
        if register != SYSTEM_REGISTER:
            return
        if value == SystemRegister.WRITE_REQUEST_COMPLETE and self._write_waiters:
            waiter = self._write_waiters.popleft()
            if not waiter.done():
                waiter.set_result(True)

    def _on_read_complete(self, requester: Any, node: int) -> None:
        if requester is not None and requester is self._last_read:
            self._last_read_done()

    def _on_poll_exception(self, requester: Any, reason: str) -> None:
        if requester is not None and requester is self._last_read:
            self._last_read_done()
        elif requester is self and self._write_waiters:
            logger.warning(f"Write failed: {reason}")
            waiter = self._write_waiters.popleft()
            if not waiter.done():
                waiter.set_result(False)
        elif requester is None and self.scheduler.current_action == PollAction.DEVICE_ID:
            node = self.worker.unit_id
            self._resolve_identity(node, None)

    def _on_device_identity(self, node: int, data: bytes) -> None:
        self.identities[node] = data
        logger.info(f"Device identity node={node}: {data!r}")
        self._resolve_identity(node, data)

    def _resolve_identity(self, node: int, data: bytes | None) -> None:
        waiters = self._identity_waiters.get(node)
        if not waiters:
            return
        waiter = waiters.pop(0)
        if not waiters:
            del self._identity_waiters[node]
        if not waiter.done():
            waiter.set_result(data)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status(self) -> dict:
        counts = self.scheduler.get_counts()
        active = self.scheduler.get_active()
        return {
            "running": self._running,
            "connected": self.scheduler.connected,
            "action": self.scheduler.current_action.value,
            "active": active.active,
            "active_requester": repr(active.requester) if active.requester is not None else None,
            "success": counts.success,
            "errors": counts.error,
            "cycles": self._cycle_count,
            "queues": self.scheduler.queue_stats(),
        }

    async def _report_status(self) -> None:
        status = self.get_status()
        logger.info(
            f"Status: success={status['success']} errors={status['errors']} "
            f"cycles={status['cycles']} action={status['action']}",
            extra={"queues": status["queues"]},
        )

    async def _start_health_server(self) -> None:
        """Start the health check HTTP server"""
        app = web.Application()
        app.router.add_get("/health", self._health_handler)
        app.router.add_get("/status", self._status_handler)

        self._health_runner = web.AppRunner(app)
        await self._health_runner.setup()

        health = self.config.health
        site = web.TCPSite(self._health_runner, health.host, health.port)
        await site.start()

        logger.info(f"Health server started on {health.host}:{health.port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    async def _health_handler(self, request: web.Request) -> web.Response:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        healthy = self._running and self.scheduler.connected
        return web.json_response({
            "status": "healthy" if healthy else "unhealthy",
            "service": "poller",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "counts": {
                "success": self.scheduler.get_counts().success,
                "errors": self.scheduler.get_counts().error,
            },
        })

    async def _status_handler(self, request: web.Request) -> web.Response:
        status = self.get_status()
        status["blocks"] = [block.snapshot() for block in self.blocks]
        return web.json_response(status)
