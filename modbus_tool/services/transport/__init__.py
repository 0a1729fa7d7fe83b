"""
Transport Service - Modbus I/O

Responsibilities:
- Own the pymodbus TCP/RTU client
- Execute exactly one transaction at a time on a worker task
- Route register numbers to coil/discrete/input/holding functions
- Send raw vendor-defined PDUs and device identity probes
- Report completion and errors back on the event loop
"""

from .modbus_worker import ModbusWorker, RequestKind, TransportRequest
from .raw_pdu import CUSTOM_REGISTER, RawRequest, RawResponse

__all__ = [
    "ModbusWorker",
    "RequestKind",
    "TransportRequest",
    "CUSTOM_REGISTER",
    "RawRequest",
    "RawResponse",
]
