from ecdsa import SigningKey, SECP256k1 # type: ignore
import os
from .addresses import address_from_pubkey


def generate_private_key() -> bytes:
    """Generates a random 32-byte private key."""
    return os.urandom(32)


def public_key_from_private(priv_bytes: bytes) -> bytes:
    """Returns the 64-byte uncompressed public key (x || y) for a private key."""
    sk = SigningKey.from_string(priv_bytes, curve=SECP256k1)
    return sk.get_verifying_key().to_string("raw")


def address_from_private(priv_bytes: bytes) -> str:
    return address_from_pubkey(public_key_from_private(priv_bytes))
