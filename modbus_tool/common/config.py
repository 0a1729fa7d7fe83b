"""
Configuration Dataclasses

Type-safe configuration structures for the poller.
Configuration is read from a YAML file (see config.example.yaml).
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import yaml

from .addressing import family_for, max_block_size
from .exceptions import ConfigError


class Protocol(str, Enum):
    """Communication protocols"""
    TCP = "tcp"
    RTU = "rtu"


@dataclass
class ConnectionSettings:
    """Connection to the device (or gateway)"""
    protocol: Protocol = Protocol.TCP
    host: str = "127.0.0.1"
    port: int = 502
    # RTU serial settings (used when protocol == RTU)
    serial_port: str = ""         # e.g., "/dev/ttyUSB0"
    baudrate: int = 9600          # 9600, 19200, 38400, 115200
    parity: str = "N"             # N=None, E=Even, O=Odd
    stopbits: int = 1             # 1 or 2
    timeout_ms: int = 1000        # pymodbus request timeout
    poll_timeout_ms: int = 3000   # scheduler watchdog


@dataclass
class PollingSettings:
    """Read polling behaviour"""
    interval_ms: int = 1000
    continuous: bool = True
    status_interval_s: float = 30.0


@dataclass
class RegisterBlockConfig:
    """A contiguous block of registers read in one transaction"""
    register: int
    count: int = 1
    node: int = 1
    name: str = ""


@dataclass
class MetadataSettings:
    """Optional register metadata plugin"""
    plugin: str = ""  # "package.module:attribute"
    query_on_connect: bool = False


@dataclass
class HealthSettings:
    """Status HTTP server"""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8090


@dataclass
class ToolConfig:
    """Complete poller configuration"""
    connection: ConnectionSettings = field(default_factory=ConnectionSettings)
    polling: PollingSettings = field(default_factory=PollingSettings)
    metadata: MetadataSettings = field(default_factory=MetadataSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    blocks: list[RegisterBlockConfig] = field(default_factory=list)

    def validate(self) -> list[str]:
        """Return a list of configuration problems (empty if valid)"""
        errors = []

        if self.connection.protocol == Protocol.RTU and not self.connection.serial_port:
            errors.append("RTU protocol requires connection.serial_port")
        if self.connection.poll_timeout_ms <= 0:
            errors.append("connection.poll_timeout_ms must be positive")
        if self.polling.interval_ms < 0:
            errors.append("polling.interval_ms cannot be negative")

        for index, block in enumerate(self.blocks):
            label = block.name or f"blocks[{index}]"
            if not 0 <= block.node <= 255:
                errors.append(f"{label}: node {block.node} outside 0-255")
            family = family_for(block.register)
            if family is None:
                errors.append(f"{label}: register {block.register} is not a valid address")
                continue
            if block.count < 1 or block.count > max_block_size(block.register):
                errors.append(
                    f"{label}: count {block.count} outside 1-{max_block_size(block.register)}"
                )
            elif family_for(block.register + block.count - 1) != family:
                errors.append(f"{label}: block crosses the end of its address range")

        return errors


def load_tool_config(data: dict) -> ToolConfig:
    """Load ToolConfig from dictionary (e.g., parsed YAML)"""
    connection_data = data.get("connection", {}) or {}
    try:
        protocol = Protocol(connection_data.get("protocol", "tcp"))
    except ValueError:
        raise ConfigError(f"unknown protocol {connection_data.get('protocol')!r}")

    connection = ConnectionSettings(
        protocol=protocol,
        host=connection_data.get("host", "127.0.0.1"),
        port=connection_data.get("port", 502),
        serial_port=connection_data.get("serial_port", ""),
        baudrate=connection_data.get("baudrate", 9600),
        parity=connection_data.get("parity", "N"),
        stopbits=connection_data.get("stopbits", 1),
        timeout_ms=connection_data.get("timeout_ms", 1000),
        poll_timeout_ms=connection_data.get("poll_timeout_ms", 3000),
    )

    polling_data = data.get("polling", {}) or {}
    polling = PollingSettings(
        interval_ms=polling_data.get("interval_ms", 1000),
        continuous=polling_data.get("continuous", True),
        status_interval_s=polling_data.get("status_interval_s", 30.0),
    )

    metadata_data = data.get("metadata", {}) or {}
    metadata = MetadataSettings(
        plugin=metadata_data.get("plugin") or "",
        query_on_connect=metadata_data.get("query_on_connect", False),
    )

    health_data = data.get("health", {}) or {}
    health = HealthSettings(
        enabled=health_data.get("enabled", False),
        host=health_data.get("host", "127.0.0.1"),
        port=health_data.get("port", 8090),
    )

    blocks = []
    for b in data.get("blocks", []) or []:
        if "register" not in b:
            raise ConfigError(f"block {b.get('name', '?')!r} has no register")
        blocks.append(RegisterBlockConfig(
            register=b["register"],
            count=b.get("count", 1),
            node=b.get("node", 1),
            name=b.get("name", ""),
        ))

    return ToolConfig(
        connection=connection,
        polling=polling,
        metadata=metadata,
        health=health,
        blocks=blocks,
    )


def load_config_file(config_path: str | Path) -> ToolConfig:
    """Read and parse a YAML configuration file"""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"configuration file not found: {path}", recoverable=False)

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}", recoverable=False)

    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping", recoverable=False)

    return load_tool_config(data)
