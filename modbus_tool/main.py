#!/usr/bin/env python3
"""
modbus-tool - Main Entry Point

Loads the configuration and polls the configured register blocks.

Usage:
    modbus-tool                                # Use default config.yaml
    modbus-tool --config my.yaml               # Use custom config file
    modbus-tool --dry-run                      # Print config and exit
    modbus-tool --once                         # Read every block once, print JSON
    modbus-tool --write 1:40001=10,20,30       # Write, then exit
    modbus-tool --identify 1                   # Probe device identity, then exit

Without --once, --write or --identify the tool keeps polling until
interrupted.
"""

import argparse
import asyncio
import json
import sys

from modbus_tool.common.config import Protocol, ToolConfig, load_config_file
from modbus_tool.common.exceptions import CommunicationError, ConfigError, ModbusToolError
from modbus_tool.common.logging_setup import get_service_logger, set_log_level
from modbus_tool.services.poller import PollerService

logger = get_service_logger("main")


def parse_write(text: str) -> tuple[int, int, list[int]]:
    """
    Parse ``NODE:REGISTER=V1,V2,...``.

    Raises:
        argparse.ArgumentTypeError: if the text is malformed
    """
    try:
        target, _, values_text = text.partition("=")
        node_text, _, register_text = target.partition(":")
        node = int(node_text)
        register = int(register_text)
        values = [int(v, 0) for v in values_text.split(",") if v.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid write '{text}' (expected NODE:REGISTER=V1,V2)")

    if not values:
        raise argparse.ArgumentTypeError(f"invalid write '{text}' (no values)")
    return node, register, values


def print_config_summary(config: ToolConfig):
    """Print a summary of the configuration."""
    print("\n" + "=" * 60)
    print("  MODBUS TOOL")
    print("=" * 60)

    conn = config.connection
    if conn.protocol == Protocol.RTU:
        print(f"\n  Connection: RTU {conn.serial_port} {conn.baudrate} {conn.parity}{conn.stopbits}")
    else:
        print(f"\n  Connection: TCP {conn.host}:{conn.port}")
    print(f"    - Request timeout: {conn.timeout_ms}ms")
    print(f"    - Poll watchdog: {conn.poll_timeout_ms}ms")

    polling = config.polling
    print(f"\n  Polling:")
    print(f"    - Interval: {polling.interval_ms}ms")
    print(f"    - Continuous: {'yes' if polling.continuous else 'no'}")

    print(f"\n  Blocks: {len(config.blocks)}")
    for block in config.blocks:
        label = block.name or "-"
        print(f"    - {label}: node {block.node}, register {block.register} x{block.count}")

    if config.metadata.plugin:
        print(f"\n  Metadata: {config.metadata.plugin}")
    else:
        print(f"\n  Metadata: Disabled")

    if config.health.enabled:
        print(f"  Health server: {config.health.host}:{config.health.port}")

    print("=" * 60 + "\n")


async def run_once(service: PollerService, writes: list, identify: list[int]) -> int:
    """Perform the one-shot actions, returning the process exit code"""
    timeout = service.scheduler.timeout * 4
    exit_code = 0

    await service.start()
    try:
        for node, register, values in writes:
            ok = await service.write(node, register, values, timeout=timeout)
            print(json.dumps({"write": {"node": node, "register": register, "values": values}, "success": ok}))
            if not ok:
                exit_code = 1

        for node in identify:
            data = await service.identify(node, timeout=timeout)
            print(json.dumps({"node": node, "identity": data.hex() if data is not None else None}))
            if data is None:
                exit_code = 1

        if service.blocks and not writes and not identify:
            snapshots = await service.poll_once(timeout=timeout * max(1, len(service.blocks)))
            print(json.dumps(snapshots, indent=2, default=str))
    finally:
        await service.stop()

    return exit_code


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Modbus poll scheduler"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Read every block once, print the values as JSON and exit"
    )
    parser.add_argument(
        "--write",
        type=parse_write,
        action="append",
        default=[],
        metavar="NODE:REGISTER=V1,V2",
        help="Write values to consecutive registers (repeatable)"
    )
    parser.add_argument(
        "--identify",
        type=int,
        action="append",
        default=[],
        metavar="NODE",
        help="Probe the identity of a node (repeatable)"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print configuration and exit without connecting"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose (debug) logging"
    )

    args = parser.parse_args()

    if args.verbose:
        set_log_level("DEBUG")

    try:
        config = load_config_file(args.config)
    except ConfigError as e:
        logger.error(e.message)
        sys.exit(1)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    print_config_summary(config)

    if args.dry_run:
        print("Dry run mode - exiting without connecting")
        sys.exit(0)

    one_shot = args.once or args.write or args.identify
    if one_shot:
        config.polling.continuous = False

    service = PollerService(config)

    try:
        if one_shot:
            exit_code = asyncio.run(run_once(service, args.write, args.identify))
        else:
            print("Press Ctrl+C to stop\n")
            asyncio.run(service.run())
            exit_code = 0
    except KeyboardInterrupt:
        print("\nStopped by user")
        exit_code = 0
    except CommunicationError as e:
        logger.error(e.message)
        exit_code = 2
    except (ModbusToolError, asyncio.TimeoutError) as e:
        logger.error(f"modbus-tool failed: {e}")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
