"""
Register Map

Maps 5-digit Modbus register numbers onto address families and the
zero-based protocol offsets pymodbus expects.

    1 -  9999   coils              (bit, read/write)
10001 - 19999   discrete inputs    (bit, read-only)
30001 - 39999   input registers    (word, read-only)
40001 - 49999   holding registers  (word, read/write)
"""

from dataclasses import dataclass
from enum import Enum


class RegisterFamily(str, Enum):
    """Modbus address families"""
    COIL = "coil"
    DISCRETE_INPUT = "discrete_input"
    INPUT_REGISTER = "input_register"
    HOLDING_REGISTER = "holding_register"


# Maximum number of items in one request, per family
MAX_BITS = 2000
MAX_WORDS = 125

_RANGES = (
    (RegisterFamily.COIL, 1, 9999),
    (RegisterFamily.DISCRETE_INPUT, 10001, 19999),
    (RegisterFamily.INPUT_REGISTER, 30001, 39999),
    (RegisterFamily.HOLDING_REGISTER, 40001, 49999),
)

_WRITABLE = (RegisterFamily.COIL, RegisterFamily.HOLDING_REGISTER)


@dataclass(frozen=True)
class RegisterAddress:
    """A register number resolved to its family and protocol offset"""
    family: RegisterFamily
    offset: int

    @property
    def is_bit(self) -> bool:
        return self.family in (RegisterFamily.COIL, RegisterFamily.DISCRETE_INPUT)


def family_for(register: int) -> RegisterFamily | None:
    """Family of a register number, or None if it is not a valid address"""
    for family, first, last in _RANGES:
        if first <= register <= last:
            return family
    return None


def resolve(register: int) -> RegisterAddress | None:
    """Resolve a register number, or None if it is not a valid address"""
    for family, first, last in _RANGES:
        if first <= register <= last:
            return RegisterAddress(family=family, offset=register - first)
    return None


def resolve_write(register: int) -> RegisterAddress | None:
    """Resolve a register number for writing (coils and holding registers only)"""
    address = resolve(register)
    if address is None or address.family not in _WRITABLE:
        return None
    return address


def is_writable(register: int) -> bool:
    return resolve_write(register) is not None


def max_block_size(register: int) -> int:
    """Largest request size for the family of ``register``"""
    family = family_for(register)
    if family in (RegisterFamily.COIL, RegisterFamily.DISCRETE_INPUT):
        return MAX_BITS
    return MAX_WORDS
