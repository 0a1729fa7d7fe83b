"""
Request Queues

Independent FIFOs of pending demand. Entries hold plain references to
their requester; the scheduler never owns or destroys a requester.
"""

from collections import deque
from typing import Any

from .requests import MetadataSequence, WriteRequest


class RequestQueues:
    """
    Pending demand, by class.

    - writes: WriteRequest entries (highest priority)
    - metadata: MetadataSequence entries
    - reads: requester handles, one entry per read cycle wanted
    - device_ids: nodes waiting for an identity probe (lowest priority)
    """

    def __init__(self):
        self.writes: deque[WriteRequest] = deque()
        self.metadata: deque[MetadataSequence] = deque()
        self.reads: deque[Any] = deque()
        self.device_ids: deque[int] = deque()

    def clear(self) -> list[MetadataSequence]:
        """Empty every queue; returns the dropped metadata sequences"""
        dropped = list(self.metadata)
        self.writes.clear()
        self.metadata.clear()
        self.reads.clear()
        self.device_ids.clear()
        return dropped

    def remove_reference(self, requester: Any) -> int:
        """
        Drop every reference to ``requester``.

        Write and metadata entries keep their place with the requester
        cleared (the transaction still runs, nobody is notified); read
        demand is removed outright.

        Returns:
            Number of read entries removed
        """
        for write in self.writes:
            if write.requester is requester:
                write.requester = None

        for sequence in self.metadata:
            if sequence.requester is requester:
                sequence.requester = None

        before = len(self.reads)
        self.reads = deque(r for r in self.reads if r is not requester)
        return before - len(self.reads)

    def stats(self) -> dict:
        return {
            "writes": len(self.writes),
            "metadata": len(self.metadata),
            "reads": len(self.reads),
            "device_ids": len(self.device_ids),
        }
