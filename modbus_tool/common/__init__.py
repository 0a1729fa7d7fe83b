"""
Common Utilities

Shared modules used across all services:
- addressing.py - Register map (5-digit register numbers)
- config.py - Configuration dataclasses
- exceptions.py - Custom exception classes and error codes
- logging_setup.py - Structured logging setup
- signals.py - Broadcast signals with weak listeners
- timers.py - Watchdog and interval loop
"""

from .addressing import (
    RegisterFamily,
    RegisterAddress,
    MAX_BITS,
    MAX_WORDS,
    family_for,
    resolve,
    resolve_write,
    is_writable,
    max_block_size,
)
from .config import (
    ConnectionSettings,
    PollingSettings,
    RegisterBlockConfig,
    MetadataSettings,
    HealthSettings,
    ToolConfig,
    Protocol,
    load_tool_config,
    load_config_file,
)
from .exceptions import (
    ModbusToolError,
    ConfigError,
    TransportError,
    CommunicationError,
    TransportBusyError,
    RequestError,
    TransactionError,
    ErrorCode,
    DEVICE_TIMEOUT,
    describe_error,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    set_log_level,
    log_device_read,
    log_device_write,
    log_poll_exception,
)
from .signals import Signal
from .timers import Watchdog, ScheduledLoop

__all__ = [
    # Addressing
    "RegisterFamily",
    "RegisterAddress",
    "MAX_BITS",
    "MAX_WORDS",
    "family_for",
    "resolve",
    "resolve_write",
    "is_writable",
    "max_block_size",
    # Config
    "ConnectionSettings",
    "PollingSettings",
    "RegisterBlockConfig",
    "MetadataSettings",
    "HealthSettings",
    "ToolConfig",
    "Protocol",
    "load_tool_config",
    "load_config_file",
    # Exceptions
    "ModbusToolError",
    "ConfigError",
    "TransportError",
    "CommunicationError",
    "TransportBusyError",
    "RequestError",
    "TransactionError",
    "ErrorCode",
    "DEVICE_TIMEOUT",
    "describe_error",
    # Logging
    "setup_logging",
    "get_service_logger",
    "set_log_level",
    "log_device_read",
    "log_device_write",
    "log_poll_exception",
    # Signals and timers
    "Signal",
    "Watchdog",
    "ScheduledLoop",
]
