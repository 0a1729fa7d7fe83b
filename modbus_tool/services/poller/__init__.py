"""
Poller Service - Register Polling

Responsibilities:
- Poll configured register blocks, continuously or once
- Batch writes into block writes
- Query register metadata and device identity
- Report status (log and health HTTP server)
"""

from .register_block import RegisterBlock, format_value
from .service import PollerService
from .write_batcher import WriteBatcher

__all__ = ["PollerService", "RegisterBlock", "WriteBatcher", "format_value"]
