from typing import Optional, Union
from .hash import keccak256

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(addr: Union[str, int]) -> str:
    """Lower-case 0x-prefixed 20-byte hex address."""
    if isinstance(addr, int):
        if addr < 0 or addr >= 1 << 160:
            raise ValueError(f"Address out of range: {addr}")
        return "0x" + addr.to_bytes(20, "big").hex()

    raw = addr[2:] if addr.startswith(("0x", "0X")) else addr
    if len(raw) != 40:
        raise ValueError(f"Invalid address length: {addr}")
    try:
        int(raw, 16)
    except ValueError:
        raise ValueError(f"Invalid hex address: {addr}")
    return "0x" + raw.lower()


def address_to_int(addr: str) -> int:
    return int(normalize_address(addr), 16)


def address_from_word(word: int) -> str:
    """Low 20 bytes of a storage word as an address."""
    return normalize_address(word & ((1 << 160) - 1))


def address_from_pubkey(pub_bytes: bytes) -> str:
    """Address of a 64-byte uncompressed secp256k1 public key (no 0x04 prefix)."""
    if len(pub_bytes) == 65:
        pub_bytes = pub_bytes[1:]
    if len(pub_bytes) != 64:
        raise ValueError("Expected a 64-byte uncompressed public key")
    return normalize_address(keccak256(pub_bytes)[-20:].hex())


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return a is b
    return normalize_address(a) == normalize_address(b)
