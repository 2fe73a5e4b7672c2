"""
Storage layout descriptors and compatibility checks.
"""

import json
import os

import pytest

from cardprotocol.blockchain.upgrade.layout import StorageLayoutDiffer, verify_known_slots
from cardprotocol.protocol.types.common import LayoutIncompatible
from cardprotocol.protocol.types.layout import StorageLayout, StorageSlot, is_gap_label
from sample_contracts import CURRENT_LAYOUT, LEGACY_LAYOUT


def layout(*slots, name="RewardPool"):
    return StorageLayout(contract_name=name, storage=[StorageSlot(**s) for s in slots])


def test_identical_layouts_are_compatible():
    report = StorageLayoutDiffer().compare(CURRENT_LAYOUT, CURRENT_LAYOUT)
    assert report.ok
    assert report.mismatches == []


def test_set_library_rename_is_equivalent():
    report = StorageLayoutDiffer().compare(LEGACY_LAYOUT, CURRENT_LAYOUT)
    assert report.ok, report.messages()


def test_initializable_flags_rename():
    old = layout({"label": "initialized", "slot": 0, "type": "bool"},
                 {"label": "initializing", "slot": 0, "offset": 1, "type": "bool"})
    new = layout({"label": "_initialized", "slot": 0, "type": "bool"},
                 {"label": "_initializing", "slot": 0, "offset": 1, "type": "bool"})
    assert StorageLayoutDiffer().compare(old, new).ok
    assert not StorageLayoutDiffer().compare(new, old).ok


def test_gaps_are_filtered_before_pairing():
    old = layout({"label": "a", "slot": 0, "type": "uint256"},
                 {"label": "__gap", "slot": 1, "type": "uint256[50]"},
                 {"label": "b", "slot": 51, "type": "address"})
    new = layout({"label": "a", "slot": 0, "type": "uint256"},
                 {"label": "____gap_Ownable", "slot": 1, "type": "uint256[49]"},
                 {"label": "b", "slot": 51, "type": "address"})
    assert StorageLayoutDiffer().compare(old, new).ok


def test_gap_shrink_that_moves_variables_is_reported():
    old = layout({"label": "__gap", "slot": 0, "type": "uint256[50]"},
                 {"label": "owner", "slot": 50, "type": "address"})
    new = layout({"label": "__gap", "slot": 0, "type": "uint256[49]"},
                 {"label": "owner", "slot": 49, "type": "address"})

    report = StorageLayoutDiffer().compare(old, new)

    assert not report.ok
    assert [m.field for m in report.mismatches] == ["slot"]
    assert "owner: bad slot (old 50, new 49)" in report.messages()[0]


def test_unfiltered_gaps_only_check_position():
    old = layout({"label": "__gap", "slot": 0, "type": "uint256[50]"},
                 {"label": "owner", "slot": 50, "type": "address"})
    new = layout({"label": "______gap", "slot": 0, "type": "uint256[48]"},
                 {"label": "owner", "slot": 50, "type": "address"})
    assert StorageLayoutDiffer().compare(old, new, filter_gaps=False).ok


def test_label_type_and_offset_mismatches():
    old = layout({"label": "token", "slot": 0, "type": "address"},
                 {"label": "paused", "slot": 0, "offset": 20, "type": "bool"})
    new = layout({"label": "asset", "slot": 0, "type": "address payable"},
                 {"label": "paused", "slot": 0, "offset": 21, "type": "bool"})

    report = StorageLayoutDiffer().compare(old, new)

    fields = sorted(m.field for m in report.mismatches)
    assert fields == ["label", "offset", "type"]


def test_appended_variable_is_reported_unless_ignored():
    old = layout({"label": "a", "slot": 0, "type": "uint256"})
    new = layout({"label": "a", "slot": 0, "type": "uint256"},
                 {"label": "limit", "slot": 1, "type": "uint256"})
    differ = StorageLayoutDiffer()

    report = differ.compare(old, new)
    assert not report.ok
    assert report.mismatches[0].field == "length"
    assert "limit" in report.messages()[0]

    assert differ.compare(old, new, ignore_labels=["limit"]).ok


def test_require_compatible_raises():
    old = layout({"label": "a", "slot": 0, "type": "uint256"})
    new = layout({"label": "a", "slot": 1, "type": "uint256"})

    with pytest.raises(LayoutIncompatible) as exc_info:
        StorageLayoutDiffer().require_compatible(old, new, "RewardPool")

    assert exc_info.value.contract_id == "RewardPool"
    assert len(exc_info.value.mismatches) == 1


def test_custom_equivalences_replace_defaults():
    differ = StorageLayoutDiffer(type_equivalences={})
    assert not differ.compare(LEGACY_LAYOUT, CURRENT_LAYOUT).ok


def test_known_slots():
    assert verify_known_slots(CURRENT_LAYOUT).ok

    moved = layout({"label": "_owner", "slot": 51, "type": "address"}, name="RewardPool")
    report = verify_known_slots(moved)
    assert not report.ok
    assert "RewardPool#_owner" in report.messages()[0]

    default = layout({"label": "_owner", "slot": 52, "type": "address"}, name="Exchange")
    assert not verify_known_slots(default).ok


@pytest.mark.parametrize("label,expected", [
    ("__gap", True),
    ("______gap", True),
    ("____gap_Ownable", True),
    ("gap", False),
    ("_owner", False),
    ("gapless", False),
])
def test_is_gap_label(label, expected):
    assert is_gap_label(label) is expected


def test_from_solc_resolves_type_ids():
    data = {
        "storage": [
            {"label": "_owner", "slot": "51", "offset": 0, "type": "t_address", "contract": "Ownable.sol:Ownable"},
            {"label": "admins", "slot": "102", "offset": 0, "type": "t_struct(AddressSet)123_storage"},
        ],
        "types": {
            "t_address": {"label": "address"},
            "t_struct(AddressSet)123_storage": {"label": "struct EnumerableSetUpgradeable.AddressSet"},
        },
    }

    result = StorageLayout.from_solc(data, "MerchantManager")

    assert result.slot_of("admins") == 102
    assert result.get("_owner").type == "address"
    assert result.get("_owner").contract == "Ownable.sol:Ownable"
    with pytest.raises(KeyError):
        result.slot_of("missing")


def test_save_and_load(temp_dir):
    path = os.path.join(temp_dir, "MerchantManager.json")
    CURRENT_LAYOUT.save(path)
    assert StorageLayout.load(path) == CURRENT_LAYOUT

    solc_path = os.path.join(temp_dir, "RewardPool.json")
    with open(solc_path, "w") as f:
        json.dump({"storage": [{"label": "_owner", "slot": "101", "type": "address"}]}, f)
    loaded = StorageLayout.load(solc_path)
    assert loaded.contract_name == "RewardPool"
    assert loaded.slot_of("_owner") == 101


def test_without_gaps():
    labels = [s.label for s in CURRENT_LAYOUT.without_gaps()]
    assert "__gap" not in labels
    assert labels[0] == "_initialized"
