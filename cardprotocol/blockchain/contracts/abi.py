"""
Call data encoding for the devnet.

Encoded call data is the hex of a canonical JSON object
``{"args": [...], "method": "..."}``. ``"0x"`` means no call.
"""
import json
from typing import Any, List, Optional, Tuple

EMPTY_CALL = "0x"


def encode_call(method: str, *args: Any) -> str:
    if not method:
        raise ValueError("method name is required")
    payload = json.dumps({"method": method, "args": list(args)}, sort_keys=True, separators=(",", ":"))
    return "0x" + payload.encode().hex()


def is_empty_call(data: Optional[str]) -> bool:
    return data is None or data in ("", EMPTY_CALL)


def decode_call(data: Optional[str]) -> Optional[Tuple[str, List[Any]]]:
    """Returns ``(method, args)`` or None for empty call data."""
    if is_empty_call(data):
        return None
    raw = data[2:] if data.startswith(("0x", "0X")) else data
    try:
        payload = json.loads(bytes.fromhex(raw).decode())
        method = payload["method"]
        args = payload.get("args", [])
    except (ValueError, KeyError, TypeError) as e:
        raise ValueError(f"Malformed call data: {e}")
    if not isinstance(method, str) or not isinstance(args, list):
        raise ValueError("Malformed call data: method must be a string and args a list")
    return method, args


def describe_call(data: Optional[str]) -> str:
    """Human readable form, e.g. ``setup(0xabc..., 5)``."""
    decoded = decode_call(data)
    if decoded is None:
        return ""
    method, args = decoded
    return f"{method}({', '.join(str(a) for a in args)})"
