# MIT License
# Copyright (c) 2025 Hashborn

"""
Storage layout descriptors.

A descriptor is an immutable snapshot of where a contract keeps each state
variable. Descriptors come either from compiler build metadata (solc's
``storageLayout`` output) or from an archived JSON snapshot of a previously
deployed version.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


def is_gap_label(label: str) -> bool:
    """Reserved padding: ``__gap``, ``______gap``, ``____gap_Ownable`` ..."""
    if label.endswith("__gap"):
        return True
    return label.startswith("__") and label.lstrip("_").startswith("gap_")


class StorageSlot(BaseModel):
    """Placement of one storage variable."""
    model_config = ConfigDict(frozen=True)

    label: str = Field(..., description="Variable name")
    slot: int = Field(..., description="Storage slot number")
    offset: int = Field(default=0, description="Byte offset inside the slot")
    type: str = Field(..., description="Type label, e.g. 'mapping(address => bool)'")
    contract: Optional[str] = Field(default=None, description="Declaring contract (source:name)")

    @property
    def is_gap(self) -> bool:
        return is_gap_label(self.label)


class StorageLayout(BaseModel):
    """Ordered storage slots of one contract at one point in time."""
    model_config = ConfigDict(frozen=True)

    contract_name: str = Field(..., description="Contract name the layout belongs to")
    storage: List[StorageSlot] = Field(default_factory=list)

    def get(self, label: str) -> Optional[StorageSlot]:
        for item in self.storage:
            if item.label == label:
                return item
        return None

    def slot_of(self, label: str) -> int:
        item = self.get(label)
        if item is None:
            raise KeyError(f"{self.contract_name} has no storage variable '{label}'")
        return item.slot

    def without_gaps(self) -> List[StorageSlot]:
        return [s for s in self.storage if not s.is_gap]

    @classmethod
    def from_solc(cls, data: Dict[str, Any], contract_name: str) -> "StorageLayout":
        """
        Build a descriptor from solc ``storageLayout`` output.

        solc reports ``slot`` as a decimal string and ``type`` as a type id
        (``t_mapping(t_address,t_bool)``) that resolves through ``types``.
        Entries that already carry a readable type label are kept as-is.
        """
        types = data.get("types") or {}
        slots = []
        for entry in data.get("storage", []):
            type_id = entry["type"]
            type_info = types.get(type_id)
            slots.append(StorageSlot(
                label=entry["label"],
                slot=int(entry["slot"]),
                offset=int(entry.get("offset", 0)),
                type=type_info["label"] if type_info else type_id,
                contract=entry.get("contract"),
            ))
        return cls(contract_name=contract_name, storage=slots)

    @classmethod
    def load(cls, path: Union[str, Path], contract_name: Optional[str] = None) -> "StorageLayout":
        """Load an archived snapshot (our own format or raw solc output)."""
        path = Path(path)
        with open(path, "r") as f:
            data = json.load(f)

        name = contract_name or data.get("contract_name") or path.stem
        if "contract_name" in data:
            return cls.model_validate(data)
        return cls.from_solc(data, name)

    def save(self, path: Union[str, Path]):
        with open(path, "w") as f:
            f.write(self.model_dump_json(indent=2))
