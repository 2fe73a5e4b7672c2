# MIT License
# Copyright (c) 2025 Hashborn

"""
Upgrade coordination and migration types.
"""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional
from dataclasses import dataclass

from ...protocol.config.params import CHUNK_SIZE, DEFAULT_PROTOCOL_VERSION
from ...protocol.types.common import ChangeKind

BUMP_KINDS = ("patch", "minor", "major", "promote")


@dataclass(frozen=True, order=True)
class Version:
    """
    Semantic version (MAJOR.MINOR.PATCH) of the protocol as a whole.

    Any commit through the coordinator moves the protocol to a new version,
    usually computed with ``bump``.
    """
    major: int
    minor: int
    patch: int

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"

    @classmethod
    def from_string(cls, version_str: str) -> 'Version':
        """Parse version from string (e.g., '1.2.3')."""
        parts = version_str.strip().split('.')
        if len(parts) != 3:
            raise ValueError(f"Invalid version format: {version_str}")
        try:
            return cls(major=int(parts[0]), minor=int(parts[1]), patch=int(parts[2]))
        except ValueError:
            raise ValueError(f"Invalid version format: {version_str}")

    def bump(self, kind: str = "patch") -> 'Version':
        """
        Next version for a release kind.

        ``promote`` keeps the version: the same release is being rolled out
        to another network.
        """
        if kind == "patch":
            return Version(self.major, self.minor, self.patch + 1)
        if kind == "minor":
            return Version(self.major, self.minor + 1, 0)
        if kind == "major":
            return Version(self.major + 1, 0, 0)
        if kind == "promote":
            return self
        raise ValueError(f"Unknown version bump '{kind}'. Expected one of: {', '.join(BUMP_KINDS)}")


class ProxyRecord(BaseModel):
    """An adopted proxy."""
    contract_id: str = Field(..., description="Stable logical name")
    proxy_address: str = Field(..., description="Proxy address")
    proxy_admin_address: str = Field(..., description="ProxyAdmin that administers the proxy")


class PendingChange(BaseModel):
    """A staged, not yet applied mutation of one adopted contract."""
    contract_id: str
    new_implementation: Optional[str] = Field(default=None, description="Implementation to upgrade to")
    encoded_call: Optional[str] = Field(default=None, description="Call data to run after (or instead of) the upgrade")

    @property
    def kind(self) -> ChangeKind:
        if self.new_implementation and self.encoded_call:
            return ChangeKind.UPGRADE_AND_CALL
        if self.new_implementation:
            return ChangeKind.UPGRADE
        return ChangeKind.CALL


class CoordinatorState(BaseModel):
    """
    Persisted coordinator state (StorageDB key ``coordinator``).
    """
    address: str = Field(..., description="On-chain account of the coordinator")
    owner: str = Field(..., description="Account allowed to adopt, call and commit")
    proposers: List[str] = Field(default_factory=list)
    records: Dict[str, ProxyRecord] = Field(default_factory=dict, description="Adopted proxies, in adoption order")
    pending: Dict[str, PendingChange] = Field(default_factory=dict)
    pending_order: List[str] = Field(default_factory=list, description="Contract ids, most recent proposal last")
    nonce: int = Field(default=0, description="Incremented once per successful commit")
    version: str = Field(default=DEFAULT_PROTOCOL_VERSION, description="Current protocol version")
    version_manager: Optional[str] = Field(default=None, description="On-chain VersionManager, if any")


class LayoutMismatch(BaseModel):
    label: str
    field: str = Field(..., description="label, slot, offset, type or length")
    old: Any = None
    new: Any = None
    message: str = ""


class CompatibilityReport(BaseModel):
    contract_name: Optional[str] = None
    ok: bool = True
    mismatches: List[LayoutMismatch] = Field(default_factory=list)

    def messages(self) -> List[str]:
        return [m.message for m in self.mismatches]


class MigrationProgress(BaseModel):
    """Resumable state of a chunked set migration (StorageDB ``migration:<id>``)."""
    contract_id: str
    upgrader: Optional[str] = Field(default=None, description="Upgrader implementation in use")
    processed: List[str] = Field(default_factory=list, description="Keys already migrated, in order")
    chunk_size: int = CHUNK_SIZE
    completed: bool = False


class StorageSnapshot(BaseModel):
    """Decoded storage values of one contract, by label."""
    contract_name: str
    values: Dict[str, Any] = Field(default_factory=dict)
    unhandled_types: List[str] = Field(default_factory=list)


class StatusRow(BaseModel):
    """One line of the protocol status report."""
    contract_id: str
    contract_name: Optional[str] = Field(default=None, description="Code name of the current implementation")
    proxy: str
    current_implementation: str
    proposed_implementation: Optional[str] = None
    proposed_call: Optional[str] = Field(default=None, description="Decoded proposed call")
    failing_call: Optional[str] = Field(default=None, description="Revert reason when simulating the change")
    changed: bool = False
