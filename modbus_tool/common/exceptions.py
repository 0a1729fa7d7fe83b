"""
Custom Exception Classes for modbus-tool

Hierarchical exception structure plus the numeric error codes reported
by the transport for failed transactions.
"""

from enum import IntEnum


class ModbusToolError(Exception):
    """Base exception for all modbus-tool errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(ModbusToolError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Config Error: {message}", recoverable)


class TransportError(ModbusToolError):
    """Transport (worker) errors"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Transport Error: {message}", recoverable)


class CommunicationError(TransportError):
    """Connection could not be established; fatal for the session"""

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, recoverable=False)


class TransportBusyError(TransportError):
    """A request was submitted while another one is still outstanding"""

    def __init__(self, pending_id: int):
        self.pending_id = pending_id
        super().__init__(
            f"transaction {pending_id} still outstanding",
            recoverable=False,
        )


class RequestError(ModbusToolError):
    """Malformed request (bad address, oversized block, bad node)"""

    def __init__(self, message: str, register: int | None = None):
        self.register = register
        super().__init__(f"Request Error: {message}", recoverable=True)


class ErrorCode(IntEnum):
    """Transaction error codes (Modbus exception codes plus local codes)"""
    ILLEGAL_FUNCTION = 1
    ILLEGAL_DATA_ADDRESS = 2
    ILLEGAL_DATA_VALUE = 3
    SERVER_DEVICE_FAILURE = 4
    ACKNOWLEDGE = 5
    SERVER_DEVICE_BUSY = 6
    NEGATIVE_ACKNOWLEDGE = 7
    MEMORY_PARITY_ERROR = 8
    GATEWAY_PATH_UNAVAILABLE = 10
    GATEWAY_TARGET_FAILED = 11
    # Local (non-protocol) codes
    IO_ERROR = 256
    CONNECTION_LOST = 257
    INVALID_RESPONSE = 258
    CONNECTION_FAILED = 259


# Code used when the scheduler watchdog gives up on a transaction
DEVICE_TIMEOUT = ErrorCode.GATEWAY_TARGET_FAILED

_ERROR_TEXT = {
    ErrorCode.ILLEGAL_FUNCTION: "Illegal function",
    ErrorCode.ILLEGAL_DATA_ADDRESS: "Illegal data address",
    ErrorCode.ILLEGAL_DATA_VALUE: "Illegal data value",
    ErrorCode.SERVER_DEVICE_FAILURE: "Slave device or server failure",
    ErrorCode.ACKNOWLEDGE: "Acknowledge",
    ErrorCode.SERVER_DEVICE_BUSY: "Slave device or server is busy",
    ErrorCode.NEGATIVE_ACKNOWLEDGE: "Negative acknowledge",
    ErrorCode.MEMORY_PARITY_ERROR: "Memory parity error",
    ErrorCode.GATEWAY_PATH_UNAVAILABLE: "Gateway path unavailable",
    ErrorCode.GATEWAY_TARGET_FAILED: "Target device failed to respond",
    ErrorCode.IO_ERROR: "I/O error",
    ErrorCode.CONNECTION_LOST: "Connection lost",
    ErrorCode.INVALID_RESPONSE: "Invalid response",
    ErrorCode.CONNECTION_FAILED: "Connection failed",
}


def describe_error(code: int) -> str:
    """Human readable reason for a transaction error code"""
    try:
        return _ERROR_TEXT[ErrorCode(code)]
    except ValueError:
        return f"Unknown error ({code})"


class TransactionError(TransportError):
    """A single transaction failed with a numeric error code"""

    def __init__(self, code: int, detail: str = ""):
        self.code = int(code)
        self.detail = detail
        text = describe_error(code)
        if detail:
            text = f"{text}: {detail}"
        super().__init__(text, recoverable=True)
