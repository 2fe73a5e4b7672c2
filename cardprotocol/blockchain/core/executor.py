"""
Contract execution on the devnet.

Contract code is a registered Python class identified by name. An account's
``code`` field holds that name; calling the account instantiates the class
over a Frame bound to the account's storage. Delegate calls run another
class's code against the caller's storage.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Sequence, Type

from ...protocol.crypto.addresses import normalize_address
from ...protocol.types.common import ExecutionReverted
from .state import ChainState

logger = logging.getLogger(__name__)

MAX_CALL_DEPTH = 64

_CODE_REGISTRY: Dict[str, Type] = {}


@dataclass
class Frame:
    state: ChainState
    storage_address: str
    sender: str
    code_name: str
    tx_hash: Optional[str] = None
    depth: int = 0
    static: bool = False


def register_code(name: str, cls: Type) -> Type:
    existing = _CODE_REGISTRY.get(name)
    if existing is not None and existing is not cls:
        logger.warning(f"Overwriting contract code '{name}' ({existing.__name__} -> {cls.__name__})")
    _CODE_REGISTRY[name] = cls
    cls.code_name = name
    return cls


def contract(name: Optional[str] = None) -> Callable[[Type], Type]:
    """
    Decorator registering a contract class as deployable code.

    Usage:
        @contract("MerchantManager")
        class MerchantManager(Ownable):
            ...
    """
    def decorator(cls):
        return register_code(name or cls.__name__, cls)
    return decorator


def resolve_code(name: Optional[str]) -> Type:
    if not name:
        raise ExecutionReverted("call to non-contract")
    cls = _CODE_REGISTRY.get(name)
    if cls is None:
        raise ExecutionReverted(f"unknown contract code '{name}'")
    return cls


def run_code(state: ChainState, code_name: str, storage_address: str, sender: str,
             method: str, args: Sequence[Any] = (), tx_hash: Optional[str] = None,
             depth: int = 0, static: bool = False) -> Any:
    """Runs ``code_name`` against the storage of ``storage_address``."""
    if depth > MAX_CALL_DEPTH:
        raise ExecutionReverted("max call depth exceeded")
    cls = resolve_code(code_name)
    frame = Frame(
        state=state,
        storage_address=normalize_address(storage_address),
        sender=normalize_address(sender),
        code_name=code_name,
        tx_hash=tx_hash,
        depth=depth,
        static=static,
    )
    return cls(frame).dispatch(method, list(args))


def call_contract(state: ChainState, sender: str, to: str, method: str,
                  args: Sequence[Any] = (), tx_hash: Optional[str] = None,
                  depth: int = 0, static: bool = False) -> Any:
    """Message call: runs the code deployed at ``to`` against its own storage."""
    try:
        to = normalize_address(to)
    except (ValueError, TypeError, AttributeError):
        raise ExecutionReverted(f"invalid call target {to!r}")
    code_name = state.get_code(to)
    if not code_name:
        raise ExecutionReverted(f"call to non-contract {to}")
    return run_code(state, code_name, to, sender, method, args, tx_hash, depth, static)
