"""
Scheduler Data Model

Queue entries, the Requester protocol implemented by consumers and the
enumerations shared by the scheduler and its listeners.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Protocol, runtime_checkable

from modbus_tool.common.addressing import max_block_size
from modbus_tool.common.exceptions import RequestError


class PollAction(str, Enum):
    """What the scheduler is currently doing"""
    INACTIVE = "inactive"
    WRITE = "write"
    METADATA = "metadata"
    READ = "read"
    DEVICE_ID = "device_id"


class SystemRegister(IntEnum):
    """Meanings of the value broadcast on the system register (0)"""
    DEVICE_ID_POLL_COMPLETE = 0
    CUSTOM_POLL_COMPLETE = 1
    POLL_METADATA_COMPLETE = 2
    WRITE_REQUEST_COMPLETE = 3
    SYSTEM_CONNECTED = 4
    SYSTEM_DISCONNECTED = 5


SYSTEM_REGISTER = 0
# Node reported with connection-level system events
SYSTEM_NODE = 255


class RegisterEncoding(IntEnum):
    """Encodings reported by the metadata provider"""
    NONE = 0
    UINT16 = 1
    INT16 = 2
    SIGNED_BYTES = 3
    BYTES = 4
    BITS = 5
    USER = 6
    UNKNOWN = 7


@runtime_checkable
class Requester(Protocol):
    """
    Consumer of scheduler results.

    perform_poll is called when one of the consumer's read demands is
    dequeued; it must submit exactly one read to the transport. The other
    methods receive broadcast data, exceptions and decoded metadata.
    """

    def perform_poll(self, transport: Any) -> None: ...

    def receive_value(self, register: int, value: int, node: int) -> None: ...

    def receive_exception(self, requester: Any, reason: str) -> None: ...

    def receive_metadata(self, metadata: "RegisterMetadata", node: int) -> None: ...


@dataclass
class WriteRequest:
    """A block of values to write to one node"""
    requester: Any
    node: int
    first_register: int
    values: list[int] = field(default_factory=list)

    def validate(self) -> None:
        """
        Check node range and block size.

        Raises:
            RequestError: if the request cannot be sent as one transaction
        """
        if not 0 <= self.node <= 255:
            raise RequestError(f"node {self.node} outside 0-255", self.first_register)
        if not self.values:
            raise RequestError("no values to write", self.first_register)
        limit = max_block_size(self.first_register)
        if len(self.values) > limit:
            raise RequestError(
                f"{len(self.values)} values exceed the block limit of {limit}",
                self.first_register,
            )


@dataclass
class MetadataSequence:
    """Register-by-register metadata scan for one requester"""
    requester: Any
    node: int
    current_register: int
    last_register: int
    # Provider handle for the step in flight (owned by this sequence)
    request: Any = None
    function_code: int = 0

    @property
    def exhausted(self) -> bool:
        return self.current_register > self.last_register


@dataclass
class RegisterMetadata:
    """Decoded metadata for a single register"""
    register: int
    function_code: int
    label: str = ""
    encoding: RegisterEncoding = RegisterEncoding.NONE
    minimum: int | None = None
    maximum: int | None = None
    default: int | None = None


@dataclass(frozen=True)
class PollCounts:
    """Transaction counts since the connection was established"""
    success: int = 0
    error: int = 0


@dataclass(frozen=True)
class ActivityState:
    """Whether a transaction is in flight, and for whom"""
    active: bool = False
    requester: Any = None
