# MIT License
# Copyright (c) 2025 Hashborn

"""
Contract base classes for the devnet.

A contract is a Python class whose instances are bound to one execution
Frame. Persistent state lives only in 256-bit storage words, so swapping the
code of an account never touches its data.
"""

import functools
import inspect
from typing import Any, List, Optional

from ...protocol.crypto.addresses import ZERO_ADDRESS, address_from_word, address_to_int, normalize_address
from ...protocol.types.common import ExecutionReverted
from ..core.executor import Frame, call_contract, run_code

INITIALIZABLE_SLOT = 0
OWNER_SLOT = 51


def external(fn):
    fn._external = True
    return fn


def view(fn):
    fn._external = True
    fn._view = True
    return fn


def only_owner(fn):
    @functools.wraps(fn)
    def wrapper(self, *args):
        self.require(self.msg_sender == self.owner(), "Ownable: caller is not the owner")
        return fn(self, *args)
    return wrapper


def initializer(fn):
    @functools.wraps(fn)
    def wrapper(self, *args):
        self.require(self.sload(INITIALIZABLE_SLOT) & 0xFF == 0,
                     "Initializable: contract is already initialized")
        self.sstore(INITIALIZABLE_SLOT, (self.sload(INITIALIZABLE_SLOT) & ~0xFF) | 1)
        return fn(self, *args)
    return wrapper


def encode_short_string(value: str) -> int:
    """Solidity in-place encoding for strings shorter than 32 bytes."""
    raw = value.encode()
    if len(raw) > 31:
        raise ExecutionReverted(f"string too long for in-place storage ({len(raw)} bytes)")
    return int.from_bytes(raw.ljust(31, b"\0") + bytes([len(raw) * 2]), "big")


def decode_short_string(word: int) -> str:
    length = (word & 0xFF) // 2
    return word.to_bytes(32, "big")[:length].decode()


class Contract:
    code_name: Optional[str] = None

    def __init__(self, frame: Frame):
        self._frame = frame

    # --- Context ---
    @property
    def address(self) -> str:
        return self._frame.storage_address

    @property
    def msg_sender(self) -> str:
        return self._frame.sender

    # --- Storage ---
    def sload(self, slot: int) -> int:
        return self._frame.state.sload(self.address, slot)

    def sstore(self, slot: int, value: int):
        if self._frame.static:
            raise ExecutionReverted("state change during static call")
        self._frame.state.sstore(self.address, slot, value)

    def sload_address(self, slot: int) -> str:
        return address_from_word(self.sload(slot))

    def sstore_address(self, slot: int, address: str):
        self.sstore(slot, address_to_int(address))

    # --- Calls ---
    def call(self, to: str, method: str, *args) -> Any:
        return call_contract(self._frame.state, self.address, to, method, args,
                             tx_hash=self._frame.tx_hash, depth=self._frame.depth + 1,
                             static=self._frame.static)

    def static_call(self, to: str, method: str, *args) -> Any:
        return call_contract(self._frame.state, self.address, to, method, args,
                             tx_hash=self._frame.tx_hash, depth=self._frame.depth + 1, static=True)

    def delegatecall(self, code_name: str, method: str, args: List[Any]) -> Any:
        return run_code(self._frame.state, code_name, self.address, self.msg_sender, method, args,
                        tx_hash=self._frame.tx_hash, depth=self._frame.depth + 1,
                        static=self._frame.static)

    def code_at(self, address: str) -> Optional[str]:
        return self._frame.state.get_code(address)

    def emit(self, event: str, **args):
        if self._frame.static:
            raise ExecutionReverted("log emitted during static call")
        self._frame.state.append_log(self.address, event, args, tx_hash=self._frame.tx_hash)

    # --- Control ---
    def require(self, condition: bool, reason: str):
        if not condition:
            raise ExecutionReverted(reason)

    def revert(self, reason: str):
        raise ExecutionReverted(reason)

    def constructor(self, *args):
        pass

    def dispatch(self, method: str, args: List[Any]) -> Any:
        fn = getattr(type(self), method, None) if not method.startswith("_") else None
        if fn is None or not getattr(fn, "_external", False):
            return self.fallback(method, args)
        try:
            inspect.signature(fn).bind(self, *args)
        except TypeError as e:
            raise ExecutionReverted(f"bad arguments for {method}: {e}")
        if getattr(fn, "_view", False):
            self._frame.static = True
        try:
            return fn(self, *args)
        except ExecutionReverted:
            raise
        except (ValueError, TypeError) as e:
            # Bad argument values surface as reverts, like a failed ABI decode
            raise ExecutionReverted(f"{method}: {e}") from e

    def fallback(self, method: str, args: List[Any]) -> Any:
        self.revert(f"function selector was not recognized: {method}")


class Ownable(Contract):
    """
    Initializable + OwnableUpgradeable storage shape.

    ``_initialized``/``_initializing`` share slot 0, ``_owner`` sits at slot
    51 after the 50-slot Initializable/Context gap.
    """

    @external
    @initializer
    def initialize(self, owner: str):
        self._transfer_ownership(owner)

    @view
    def owner(self) -> str:
        return self.sload_address(OWNER_SLOT)

    @external
    @only_owner
    def transferOwnership(self, new_owner: str):
        self.require(normalize_address(new_owner) != ZERO_ADDRESS, "Ownable: new owner is the zero address")
        self._transfer_ownership(new_owner)

    def _transfer_ownership(self, new_owner: str):
        previous = self.sload_address(OWNER_SLOT)
        self.sstore_address(OWNER_SLOT, new_owner)
        self.emit("OwnershipTransferred", previousOwner=previous, newOwner=normalize_address(new_owner))
