# MIT License
# Copyright (c) 2025 Hashborn

"""
Storage layout compatibility checks.

Pure comparison of two StorageLayout descriptors, no I/O. A report with
``ok=False`` means the new implementation would read existing storage at
the wrong place or with the wrong type. Callers must abort on it.
"""

import logging
from typing import Dict, Iterable, List, Optional

from ...protocol.config.params import KNOWN_SLOTS
from ...protocol.types.common import LayoutIncompatible
from ...protocol.types.layout import StorageLayout, StorageSlot
from ..observability.metrics import layout_checks_total
from .types import CompatibilityReport, LayoutMismatch

logger = logging.getLogger(__name__)

# Initializable's flags were renamed with a leading underscore
DEFAULT_LABEL_RENAMES: Dict[str, str] = {
    "initializing": "_initializing",
    "initialized": "_initialized",
}

# Same storage shape under the upgrade-safe library name
DEFAULT_TYPE_EQUIVALENCES: Dict[str, str] = {
    "struct EnumerableSet.AddressSet": "struct EnumerableSetUpgradeable.AddressSet",
    "mapping(address => struct EnumerableSet.AddressSet)":
        "mapping(address => struct EnumerableSetUpgradeable.AddressSet)",
    "mapping(bytes32 => struct EnumerableSet.AddressSet)":
        "mapping(bytes32 => struct EnumerableSetUpgradeable.AddressSet)",
}


class StorageLayoutDiffer:
    """
    Compares an old and a new storage layout.

    Gap slots are dropped from both sides before pairing, so reserved
    padding may grow or shrink freely. Remaining slots are paired by
    position: the label must match after renames, slot and offset must be
    identical, the type must match after equivalences.
    """

    def __init__(self,
                 label_renames: Optional[Dict[str, str]] = None,
                 type_equivalences: Optional[Dict[str, str]] = None):
        self.label_renames = dict(DEFAULT_LABEL_RENAMES if label_renames is None else label_renames)
        self.type_equivalences = dict(DEFAULT_TYPE_EQUIVALENCES if type_equivalences is None else type_equivalences)

    def new_label(self, old_label: str) -> str:
        return self.label_renames.get(old_label, old_label)

    def new_type(self, old_type: str) -> str:
        return self.type_equivalences.get(old_type, old_type)

    def pair(self, old: StorageLayout, new: StorageLayout, ignore_labels: Iterable[str] = (),
             filter_gaps: bool = True):
        """Slots of both layouts as they are compared, before pairing."""
        ignored = set(ignore_labels)

        def keep(item: StorageSlot) -> bool:
            if item.label in ignored:
                return False
            return not (filter_gaps and item.is_gap)

        return [s for s in old.storage if keep(s)], [s for s in new.storage if keep(s)]

    def compare(self, old: StorageLayout, new: StorageLayout, ignore_labels: Iterable[str] = (),
                filter_gaps: bool = True) -> CompatibilityReport:
        """
        Compare two layouts.

        Args:
            old: Layout of the deployed implementation
            new: Layout of the candidate implementation
            ignore_labels: Variables intentionally added or dropped (skipped on both sides)
            filter_gaps: When False, gap slots are paired too; their labels and
                types are not checked, only slot and offset

        Returns:
            CompatibilityReport with every mismatch found
        """
        old_slots, new_slots = self.pair(old, new, ignore_labels, filter_gaps)
        mismatches: List[LayoutMismatch] = []

        for old_item, new_item in zip(old_slots, new_slots):
            mismatches.extend(self._compare_pair(old_item, new_item))

        if len(old_slots) != len(new_slots):
            longer, side = (old_slots, "old") if len(old_slots) > len(new_slots) else (new_slots, "new")
            unpaired = longer[min(len(old_slots), len(new_slots))]
            mismatches.append(LayoutMismatch(
                label=unpaired.label,
                field="length",
                old=len(old_slots),
                new=len(new_slots),
                message=(
                    f"{unpaired.label}: storage length differs (old {len(old_slots)}, "
                    f"new {len(new_slots)}), first unpaired variable is on the {side} side"
                ),
            ))

        report = CompatibilityReport(contract_name=new.contract_name, ok=not mismatches, mismatches=mismatches)
        layout_checks_total.labels(result="ok" if report.ok else "incompatible").inc()
        if report.ok:
            logger.info(f"Storage layout of {new.contract_name} is compatible ({len(new_slots)} variables)")
        else:
            logger.warning(f"Storage layout of {new.contract_name} has {len(mismatches)} mismatch(es)")
        return report

    def require_compatible(self, old: StorageLayout, new: StorageLayout, contract_id: Optional[str] = None,
                           **kwargs) -> CompatibilityReport:
        """Like ``compare`` but raises LayoutIncompatible on any mismatch."""
        report = self.compare(old, new, **kwargs)
        if not report.ok:
            error = LayoutIncompatible(contract_id or new.contract_name, report.messages())
            logger.error(str(error))
            raise error
        return report

    def _compare_pair(self, old_item: StorageSlot, new_item: StorageSlot) -> List[LayoutMismatch]:
        found = []
        both_gaps = old_item.is_gap and new_item.is_gap

        # Gap labels vary in their number of underscores
        expected_label = self.new_label(old_item.label)
        if not both_gaps and new_item.label != expected_label:
            found.append(LayoutMismatch(
                label=new_item.label, field="label", old=old_item.label, new=new_item.label,
                message=f"{new_item.label}: label changed (expected {expected_label})",
            ))

        if new_item.slot != old_item.slot:
            found.append(LayoutMismatch(
                label=new_item.label, field="slot", old=old_item.slot, new=new_item.slot,
                message=f"{new_item.label}: bad slot (old {old_item.slot}, new {new_item.slot})",
            ))

        if new_item.offset != old_item.offset:
            found.append(LayoutMismatch(
                label=new_item.label, field="offset", old=old_item.offset, new=new_item.offset,
                message=f"{new_item.label}: bad offset (old {old_item.offset}, new {new_item.offset})",
            ))

        expected_type = self.new_type(old_item.type)
        if not both_gaps and new_item.type != expected_type:
            found.append(LayoutMismatch(
                label=new_item.label, field="type", old=old_item.type, new=new_item.type,
                message=f"{new_item.label}: bad type (expected {expected_type}, got {new_item.type})",
            ))

        return found


def verify_known_slots(layout: StorageLayout,
                       known: Optional[Dict[str, Dict[str, int]]] = None) -> CompatibilityReport:
    """
    Check the hard-coded slot numbers migration readers rely on.

    Contract-specific entries win over the ``"*"`` defaults.
    """
    known = KNOWN_SLOTS if known is None else known
    specific = known.get(layout.contract_name, {})
    defaults = known.get("*", {})

    mismatches = []
    for item in layout.storage:
        expected = specific.get(item.label, defaults.get(item.label))
        if expected is not None and expected != item.slot:
            mismatches.append(LayoutMismatch(
                label=item.label, field="slot", old=expected, new=item.slot,
                message=f"Bad slot location for {layout.contract_name}#{item.label}: "
                        f"known slot {expected}, layout has {item.slot}",
            ))
    return CompatibilityReport(contract_name=layout.contract_name, ok=not mismatches, mismatches=mismatches)
