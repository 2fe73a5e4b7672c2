# MIT License
# Copyright (c) 2025 Hashborn

from enum import Enum
from typing import Iterable, Optional


class ChangeKind(str, Enum):
    UPGRADE = "UPGRADE"
    CALL = "CALL"
    UPGRADE_AND_CALL = "UPGRADE_AND_CALL"


class ProtocolError(Exception):
    """
    Base error for the upgrade tooling.

    Carries the contract id (when known) so every message names the contract
    and the violated precondition.
    """

    def __init__(self, message: str, contract_id: Optional[str] = None):
        self.contract_id = contract_id
        self.message = message
        super().__init__(f"{contract_id}: {message}" if contract_id else message)


class ValidationError(ProtocolError):
    pass


class ExecutionReverted(ProtocolError):
    """A contract call reverted; the enclosing transaction was rolled back."""

    def __init__(self, reason: str, contract_id: Optional[str] = None):
        self.reason = reason
        super().__init__(f"execution reverted: {reason}", contract_id)


# --- Authorization ---

class AuthorizationError(ProtocolError):
    pass


# --- Registration ---

class RegistrationError(ProtocolError):
    pass


class NotAProxy(RegistrationError):
    pass


class NotAdminOwner(RegistrationError):
    pass


class NotContractOwner(RegistrationError):
    pass


class DuplicateContractId(RegistrationError):
    pass


class UnknownContractId(RegistrationError):
    pass


class NotAContract(RegistrationError):
    pass


# --- State mismatch ---

class StateMismatchError(ProtocolError):
    pass


class StaleNonce(StateMismatchError):
    def __init__(self, expected: int, got: int):
        self.expected = expected
        self.got = got
        super().__init__(f"Stale upgrade nonce: current nonce is {expected}, commit was prepared against {got}")


class NoPendingChanges(StateMismatchError):
    pass


class LayoutIncompatible(StateMismatchError):
    def __init__(self, contract_id: Optional[str], mismatches: Iterable[str]):
        self.mismatches = list(mismatches)
        details = "; ".join(self.mismatches)
        super().__init__(f"Storage layout incompatible: {details}", contract_id)


# --- Transient ---

class TransientRPCError(ProtocolError):
    """Node-level failure worth retrying (nonce races, encoding hiccups, timeouts)."""
    pass


# --- Fatal migration ---

class FatalMigrationError(ProtocolError):
    pass


class OwnerMismatch(FatalMigrationError):
    def __init__(self, contract_id: str, expected: str, actual: str, stage: str):
        self.expected = expected
        self.actual = actual
        self.stage = stage
        super().__init__(
            f"Owner incorrect during upgrade process ({stage}): expected {expected}, got {actual}",
            contract_id,
        )


class UnhandledStorageType(FatalMigrationError):
    def __init__(self, contract_id: Optional[str], unhandled: Iterable[str]):
        self.unhandled = sorted(unhandled)
        super().__init__(f"Unhandled storage types: {', '.join(self.unhandled)}", contract_id)
