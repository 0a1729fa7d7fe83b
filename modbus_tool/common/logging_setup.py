"""
Structured Logging Setup

Consistent logging configuration across all services.
Uses JSON format for structured logs by default.
"""

import logging
import sys
import os
from datetime import datetime, timezone
from typing import Any
import json


class JsonFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Add extra fields
        for key, value in record.__dict__.items():
            if key not in (
                "name", "msg", "args", "levelname", "levelno", "pathname",
                "filename", "module", "exc_info", "exc_text", "stack_info",
                "lineno", "funcName", "created", "msecs", "relativeCreated",
                "thread", "threadName", "processName", "process", "service",
                "message", "taskName",
            ):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds service name to all logs"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        kwargs.setdefault("extra", {})
        kwargs["extra"]["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Set up structured logging for a service.

    Args:
        service_name: Name of the service (e.g., "scheduler", "transport")
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True for production, False for dev)

    Returns:
        Configured logger instance
    """
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger(f"modbus_tool.{service_name}")
    logger.setLevel(numeric_level)

    # Clear existing handlers
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_format:
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Don't propagate to root logger
    logger.propagate = False

    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """
    Get a logger adapter with service context.

    Args:
        service_name: Name of the service

    Returns:
        Logger adapter with service name in all logs
    """
    log_level = os.environ.get("MODBUS_TOOL_LOG_LEVEL", "INFO")
    json_format = os.environ.get("MODBUS_TOOL_LOG_FORMAT", "json").lower() == "json"

    logger = setup_logging(service_name, log_level, json_format)
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Change the level of every modbus_tool logger already created"""
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    for name, logger in logging.root.manager.loggerDict.items():
        if name.startswith("modbus_tool.") and isinstance(logger, logging.Logger):
            logger.setLevel(numeric_level)
            for handler in logger.handlers:
                handler.setLevel(numeric_level)


def log_device_read(
    logger: logging.Logger,
    node: int,
    register: int,
    count: int,
    success: bool = True,
) -> None:
    """Log a block read transaction"""
    if success:
        logger.debug(
            f"Read node={node} reg={register} count={count}",
            extra={"node": node, "register": register, "count": count},
        )
    else:
        logger.warning(
            f"Failed to read node={node} reg={register} count={count}",
            extra={"node": node, "register": register, "count": count},
        )


def log_device_write(
    logger: logging.Logger,
    node: int,
    register: int,
    values: list[int],
    success: bool = True,
) -> None:
    """Log a block write transaction"""
    if success:
        logger.info(
            f"Write node={node} reg={register} values={values}",
            extra={"node": node, "register": register, "value_count": len(values)},
        )
    else:
        logger.error(
            f"Failed to write node={node} reg={register} values={values}",
            extra={"node": node, "register": register, "value_count": len(values)},
        )


def log_poll_exception(
    logger: logging.Logger,
    action: str,
    code: int,
    reason: str,
    requester: Any = None,
) -> None:
    """Log a failed transaction as seen by the scheduler"""
    logger.warning(
        f"Poll exception during {action}: {reason} (code {code})",
        extra={
            "action": action,
            "error_code": code,
            "requester": repr(requester) if requester is not None else None,
        },
    )
