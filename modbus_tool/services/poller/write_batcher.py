"""
Write Batcher

Coalesces individual register writes into block writes. Consecutive
values on the same node, in the same address family, with contiguous
register numbers are merged into one WriteRequest up to the family limit.
"""

from typing import Any, Callable

from modbus_tool.common.addressing import family_for, is_writable, max_block_size
from modbus_tool.common.logging_setup import get_service_logger
from modbus_tool.services.scheduler.requests import WriteRequest

logger = get_service_logger("poller.writes")


class WriteBatcher:
    """
    Accumulates writes and hands each finished batch to ``submit``.

    Usage:
        batcher = WriteBatcher(scheduler.enqueue_write)
        for register, value in changes:
            batcher.append(register, value, node)
        batcher.flush()
    """

    def __init__(self, submit: Callable[[WriteRequest], None], requester: Any = None):
        self._submit = submit
        self.requester = requester
        self._pending: WriteRequest | None = None
        self.submitted = 0

    @property
    def pending(self) -> WriteRequest | None:
        return self._pending

    def append(self, register: int, value: int, node: int) -> None:
        if not is_writable(register):
            logger.debug(f"Skipping write to read-only register {register}")
            return

        if self._pending is not None and self._extends(register, node):
            self._pending.values.append(value)
            return

        self.flush()
        self._pending = WriteRequest(
            requester=self.requester,
            node=node,
            first_register=register,
            values=[value],
        )

    def _extends(self, register: int, node: int) -> bool:
        pending = self._pending
        return (
            node == pending.node
            and register == pending.first_register + len(pending.values)
            and family_for(register) == family_for(pending.first_register)
            and len(pending.values) < max_block_size(pending.first_register)
        )

    def flush(self) -> None:
        """Submit the batch being built, if any"""
        if self._pending is None:
            return
        request, self._pending = self._pending, None
        self._submit(request)
        self.submitted += 1
