"""
Register Block

A contiguous window of registers on one node, polled as a single read.
Implements the scheduler's Requester protocol and keeps the latest raw
values, per-register metadata and exception state for the window.
"""

from datetime import datetime, timezone
from typing import Any

from modbus_tool.common.addressing import family_for, is_writable, max_block_size
from modbus_tool.common.config import RegisterBlockConfig
from modbus_tool.common.exceptions import RequestError
from modbus_tool.services.scheduler.requests import (
    MetadataSequence,
    RegisterEncoding,
    RegisterMetadata,
    SYSTEM_REGISTER,
    SystemRegister,
    WriteRequest,
)


def format_value(value: int, encoding: RegisterEncoding) -> str:
    """Render a raw 16-bit value according to its metadata encoding"""
    if encoding == RegisterEncoding.BITS:
        return f"0x{value:x}"
    if encoding == RegisterEncoding.INT16:
        return str(value - 0x10000 if value & 0x8000 else value)
    if encoding in (RegisterEncoding.BYTES, RegisterEncoding.SIGNED_BYTES):
        high, low = (value >> 8) & 0xFF, value & 0xFF
        if encoding == RegisterEncoding.SIGNED_BYTES:
            high = high - 0x100 if high & 0x80 else high
            low = low - 0x100 if low & 0x80 else low
        return f"{high},{low}"
    return str(value)


class RegisterBlock:
    """
    Requester for one register window.

    The count is clamped to the family limit (2000 bits or 125 words).
    Values for other nodes or registers outside the window are ignored.
    """

    def __init__(self, register: int, count: int = 1, node: int = 1, name: str = ""):
        if family_for(register) is None:
            raise RequestError(f"register {register} is not a valid address", register)

        self.register = register
        self.count = max(1, min(count, max_block_size(register)))
        self.node = node
        self.name = name or f"{node}:{register}"

        self.values: list[int | None] = [None] * self.count
        self.metadata: dict[int, RegisterMetadata] = {}
        self.last_exception: str | None = None
        self.exception_count = 0
        self.update_count = 0
        self.last_update: datetime | None = None

        self.metadata_in_process = False
        self.have_metadata = False

    @classmethod
    def from_config(cls, config: RegisterBlockConfig) -> "RegisterBlock":
        return cls(
            register=config.register,
            count=config.count,
            node=config.node,
            name=config.name,
        )

    def __repr__(self) -> str:
        return f"RegisterBlock({self.name!r}, register={self.register}, count={self.count}, node={self.node})"

    @property
    def last_register(self) -> int:
        return self.register + self.count - 1

    def contains(self, register: int) -> bool:
        return self.register <= register <= self.last_register

    # ------------------------------------------------------------------
    # Requester protocol
    # ------------------------------------------------------------------

    def perform_poll(self, transport: Any) -> None:
        transport.submit_read(self.register, self.count, self.node)

    def receive_value(self, register: int, value: int, node: int) -> None:
        if register == SYSTEM_REGISTER:
            if value in (SystemRegister.SYSTEM_CONNECTED, SystemRegister.SYSTEM_DISCONNECTED):
                self.metadata_in_process = False
            return

        if node != self.node or not self.contains(register):
            return

        index = register - self.register
        self.values[index] = value
        self.last_update = datetime.now(timezone.utc)
        if index == self.count - 1:
            self.update_count += 1
            self.last_exception = None

    def receive_exception(self, requester: Any, reason: str) -> None:
        if requester is not self:
            return
        self.last_exception = reason
        self.exception_count += 1
        self.metadata_in_process = False

    def receive_metadata(self, metadata: RegisterMetadata, node: int) -> None:
        if node != self.node or not self.contains(metadata.register):
            self.metadata_in_process = False
            return

        self.metadata[metadata.register] = metadata
        if metadata.register == self.last_register:
            self.metadata_in_process = False
            self.have_metadata = True

    # ------------------------------------------------------------------
    # Request builders
    # ------------------------------------------------------------------

    def metadata_sequence(self) -> MetadataSequence | None:
        """
        Build a metadata scan over the whole window.

        Returns None while a previous scan is still running.
        """
        if self.metadata_in_process:
            return None
        self.metadata_in_process = True
        self.have_metadata = False
        return MetadataSequence(
            requester=self,
            node=self.node,
            current_register=self.register,
            last_register=self.last_register,
        )

    def write_request(self, offset: int, values: list[int]) -> WriteRequest:
        """
        Build a write of ``values`` starting ``offset`` registers into the window.

        Raises:
            RequestError: if the block is read-only or the write leaves the window
        """
        first = self.register + offset
        if not is_writable(first):
            raise RequestError(f"register {first} is not writable", first)
        if offset < 0 or not values or first + len(values) - 1 > self.last_register:
            raise RequestError(
                f"write of {len(values)} values at offset {offset} leaves the block",
                first,
            )
        return WriteRequest(
            requester=self,
            node=self.node,
            first_register=first,
            values=list(values),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def display_value(self, register: int) -> str:
        value = self.values[register - self.register]
        if value is None:
            return ""
        metadata = self.metadata.get(register)
        encoding = metadata.encoding if metadata else RegisterEncoding.NONE
        return format_value(value, encoding)

    def snapshot(self) -> dict:
        """Current state of the block, JSON serializable"""
        registers = []
        for offset, value in enumerate(self.values):
            register = self.register + offset
            entry = {"register": register, "value": value}
            metadata = self.metadata.get(register)
            if metadata is not None:
                entry["label"] = metadata.label
                entry["display"] = self.display_value(register)
            registers.append(entry)

        return {
            "name": self.name,
            "node": self.node,
            "register": self.register,
            "count": self.count,
            "updates": self.update_count,
            "exceptions": self.exception_count,
            "last_exception": self.last_exception,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "registers": registers,
        }
