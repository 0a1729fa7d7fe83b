"""
Register Metadata

Advances metadata sequences one register per transaction. Encoding and
decoding of the vendor-defined request is delegated to an optional
provider plugin; without one, metadata sequences are silently dropped.
"""

import importlib
from typing import Any, Protocol, runtime_checkable

from modbus_tool.common.logging_setup import get_service_logger
from .requests import MetadataSequence, RegisterEncoding, RegisterMetadata

logger = get_service_logger("scheduler.metadata")


@runtime_checkable
class MetadataProvider(Protocol):
    """Interface of a metadata plugin"""

    @property
    def available(self) -> bool: ...

    def create_request(self, register: int) -> tuple[Any, int] | None: ...

    def encode(self, handle: Any) -> bytes: ...

    def decode(self, handle: Any, data: bytes) -> bool: ...

    def decode_label(self, handle: Any) -> str | None: ...

    def decode_limits(self, handle: Any) -> tuple[int, int] | None: ...

    def decode_default(self, handle: Any) -> int | None: ...

    def decode_encoding(self, handle: Any) -> int | None: ...

    def dispose(self, handle: Any) -> None: ...


class MetadataStepper:
    """
    Drives MetadataSequence entries through the provider.

    The sequence owns its provider handle between begin_step and
    finish_step; the handle is disposed when the cursor advances or the
    sequence is abandoned.
    """

    def __init__(self, provider: MetadataProvider | None = None):
        self.provider = provider

    @property
    def available(self) -> bool:
        return self.provider is not None and bool(self.provider.available)

    def should_discard(self, sequence: MetadataSequence) -> bool:
        """True if the sequence cannot produce another transaction"""
        return (
            not self.available
            or sequence.exhausted
            or sequence.requester is None
        )

    def begin_step(self, sequence: MetadataSequence) -> tuple[int, bytes] | None:
        """
        Create the request for the current register.

        Returns:
            (function_code, pdu payload), or None if the provider declined
        """
        self.release(sequence)
        try:
            created = self.provider.create_request(sequence.current_register)
            if created is None:
                logger.warning(
                    f"Metadata provider declined register {sequence.current_register}"
                )
                return None
            handle, function_code = created
            sequence.request = handle
            sequence.function_code = function_code
            payload = self.provider.encode(handle)
        except Exception as e:
            logger.error(
                f"Metadata provider failed to build request for "
                f"register {sequence.current_register}: {e}",
                exc_info=True,
            )
            self.release(sequence)
            return None

        return sequence.function_code, bytes(payload)

    def finish_step(self, sequence: MetadataSequence, response: list[int]) -> RegisterMetadata:
        """Decode the response for the current register and advance the cursor"""
        metadata = RegisterMetadata(
            register=sequence.current_register,
            function_code=sequence.function_code,
        )
        handle = sequence.request
        data = bytes(v & 0xFF for v in response)

        try:
            if handle is not None and self.provider.decode(handle, data):
                self._fill(metadata, handle)
            else:
                logger.debug(f"No metadata decoded for register {metadata.register}")
        except Exception as e:
            logger.error(
                f"Metadata provider failed to decode register {metadata.register}: {e}",
                exc_info=True,
            )

        sequence.current_register += 1
        self.release(sequence)
        return metadata

    def _fill(self, metadata: RegisterMetadata, handle: Any) -> None:
        provider = self.provider

        label = provider.decode_label(handle)
        if label:
            metadata.label = label

        default = provider.decode_default(handle)
        if default is not None:
            metadata.default = default

        encoding = provider.decode_encoding(handle)
        if encoding is not None and encoding >= 0:
            try:
                metadata.encoding = RegisterEncoding(encoding)
            except ValueError:
                metadata.encoding = RegisterEncoding.UNKNOWN

        limits = provider.decode_limits(handle)
        if limits is not None:
            metadata.minimum, metadata.maximum = limits

    def release(self, sequence: MetadataSequence) -> None:
        """Dispose the sequence's provider handle, if any"""
        handle = sequence.request
        sequence.request = None
        if handle is None or self.provider is None:
            return
        try:
            self.provider.dispose(handle)
        except Exception as e:
            logger.error(f"Metadata provider failed to dispose request: {e}")


def load_metadata_provider(target: str) -> MetadataProvider | None:
    """
    Import a metadata provider from ``"package.module:attribute"``.

    A class (or other callable factory) is instantiated without arguments.
    Returns None, disabling the metadata feature, if the target is empty
    or cannot be loaded.
    """
    if not target:
        return None

    module_name, _, attribute = target.partition(":")
    try:
        module = importlib.import_module(module_name)
        provider = getattr(module, attribute or "provider")
        if isinstance(provider, type) or (
            callable(provider) and not isinstance(provider, MetadataProvider)
        ):
            provider = provider()
    except (ImportError, AttributeError, TypeError) as e:
        logger.info(f"Metadata plugin '{target}' unavailable: {e}")
        return None

    if not isinstance(provider, MetadataProvider):
        logger.info(f"Metadata plugin '{target}' does not implement the provider interface")
        return None

    logger.info(f"Loaded metadata plugin '{target}'")
    return provider
