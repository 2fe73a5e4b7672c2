from Crypto.Hash import keccak
from typing import Union

WORD_MASK = (1 << 256) - 1


def keccak256(data: bytes) -> bytes:
    """Returns Keccak-256 (Ethereum flavour, not NIST SHA3) of bytes."""
    h = keccak.new(digest_bits=256)
    h.update(data)
    return h.digest()


def keccak256_hex(data: bytes) -> str:
    return "0x" + keccak256(data).hex()


def to_word(value: Union[int, str, bytes]) -> int:
    """Normalises an int, hex string or bytes to a 256-bit word."""
    if isinstance(value, bytes):
        return int.from_bytes(value, "big") & WORD_MASK
    if isinstance(value, str):
        return int(value, 16) & WORD_MASK
    return value & WORD_MASK


def bytes32(value: Union[int, str, bytes]) -> bytes:
    """Left-pads a value to 32 big-endian bytes."""
    return to_word(value).to_bytes(32, "big")


def bytes32_hex(value: Union[int, str, bytes]) -> str:
    return "0x" + bytes32(value).hex()


def map_slot_for_key(key: Union[int, str, bytes], slot: int) -> int:
    """
    Storage slot of ``mapping[key]`` for a mapping declared at ``slot``.

    keccak256(pad32(key) ++ pad32(slot)), the compiler's rule for value-type keys.
    """
    return to_word(keccak256(bytes32(key) + bytes32(slot)))


def array_data_slot(slot: int) -> int:
    """First element slot of a dynamic array whose length lives at ``slot``."""
    return to_word(keccak256(bytes32(slot)))


def eip1967_slot(tag: str) -> int:
    """bytes32(uint256(keccak256(tag)) - 1)"""
    return to_word(keccak256(tag.encode())) - 1
