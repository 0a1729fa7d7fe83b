"""
Scheduler Service - Request Arbitration

Responsibilities:
- Queue write, metadata, read and device id demand
- Keep at most one transaction in flight
- Dispatch by priority (write > metadata > read > device id)
- Watchdog transactions the transport never answers
- Broadcast register data, exceptions and batch completion
"""

from .engine import Scheduler
from .metadata import MetadataProvider, MetadataStepper, load_metadata_provider
from .queues import RequestQueues
from .requests import (
    ActivityState,
    MetadataSequence,
    PollAction,
    PollCounts,
    RegisterEncoding,
    RegisterMetadata,
    Requester,
    SYSTEM_NODE,
    SYSTEM_REGISTER,
    SystemRegister,
    WriteRequest,
)

__all__ = [
    "Scheduler",
    "MetadataProvider",
    "MetadataStepper",
    "load_metadata_provider",
    "RequestQueues",
    "ActivityState",
    "MetadataSequence",
    "PollAction",
    "PollCounts",
    "RegisterEncoding",
    "RegisterMetadata",
    "Requester",
    "SYSTEM_NODE",
    "SYSTEM_REGISTER",
    "SystemRegister",
    "WriteRequest",
]
