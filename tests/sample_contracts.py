"""
Merchant registry contracts used across the test suite.

MerchantManagerV1 keeps its sets in the legacy encoding, MerchantManager in
the current one; MerchantManagerUpgrader moves storage from one to the other.
"""

from cardprotocol.blockchain.contracts.base import Ownable, external, only_owner, view
from cardprotocol.blockchain.contracts.sets import CURRENT, LEGACY
from cardprotocol.blockchain.contracts.upgrader import SetStorageUpgrader
from cardprotocol.blockchain.core.executor import contract
from cardprotocol.protocol.crypto.addresses import normalize_address
from cardprotocol.protocol.crypto.hash import map_slot_for_key
from cardprotocol.protocol.types.layout import StorageLayout, StorageSlot

REVENUE_POOL_SLOT = 101
ADMINS_SLOT = 102
MERCHANTS_SLOT = 206


class _MerchantManagerBase(Ownable):
    ENCODING = CURRENT
    GENERATION = 0

    @external
    @only_owner
    def setRevenuePool(self, revenue_pool: str):
        self.sstore_address(REVENUE_POOL_SLOT, revenue_pool)
        self.emit("RevenuePoolSet", revenuePool=normalize_address(revenue_pool))

    @external
    @only_owner
    def addAdmin(self, admin: str):
        self.ENCODING.add(self, ADMINS_SLOT, admin)

    @external
    @only_owner
    def removeAdmin(self, admin: str):
        self.require(self.ENCODING.remove(self, ADMINS_SLOT, admin), "not an admin")

    @external
    def registerMerchant(self, merchant: str, merchant_safe: str):
        self.ENCODING.add(self, map_slot_for_key(merchant, MERCHANTS_SLOT), merchant_safe)
        self.emit("MerchantCreation", merchant=normalize_address(merchant),
                  merchantSafe=normalize_address(merchant_safe))

    @view
    def revenuePool(self) -> str:
        return self.sload_address(REVENUE_POOL_SLOT)

    @view
    def admins(self):
        return self.ENCODING.values(self, ADMINS_SLOT)

    @view
    def merchantSafes(self, merchant: str):
        return self.ENCODING.values(self, map_slot_for_key(merchant, MERCHANTS_SLOT))

    @view
    def isMerchantSafe(self, merchant: str, merchant_safe: str) -> bool:
        return self.ENCODING.contains(self, map_slot_for_key(merchant, MERCHANTS_SLOT), merchant_safe)

    @view
    def generation(self) -> int:
        return self.GENERATION


@contract("MerchantManagerV1")
class LegacyMerchantManager(_MerchantManagerBase):
    ENCODING = LEGACY
    GENERATION = 1


@contract("MerchantManager")
class MerchantManager(_MerchantManagerBase):
    GENERATION = 2


@contract("MerchantManagerV3")
class NextMerchantManager(MerchantManager):
    GENERATION = 3


@contract("MerchantManagerUpgrader")
class MerchantManagerUpgrader(SetStorageUpgrader):
    SET_SLOTS = (ADMINS_SLOT,)
    KEYED_SET_SLOT = MERCHANTS_SLOT


@contract("MerchantAdminsUpgrader")
class MerchantAdminsUpgrader(SetStorageUpgrader):
    """Rewrites only the admin set; merchant safes are left alone."""
    SET_SLOTS = (ADMINS_SLOT,)


def _layout(contract_name: str, set_type: str, extra=()) -> StorageLayout:
    return StorageLayout(contract_name=contract_name, storage=[
        StorageSlot(label="_initialized", slot=0, offset=0, type="uint8"),
        StorageSlot(label="_initializing", slot=0, offset=1, type="bool"),
        StorageSlot(label="__gap", slot=1, type="uint256[50]"),
        StorageSlot(label="_owner", slot=51, type="address"),
        StorageSlot(label="__gap", slot=52, type="uint256[49]"),
        StorageSlot(label="revenuePool", slot=REVENUE_POOL_SLOT, type="address"),
        StorageSlot(label="admins", slot=ADMINS_SLOT, type=set_type),
        StorageSlot(label="merchants", slot=MERCHANTS_SLOT, type=f"mapping(address => {set_type})"),
        *extra,
    ])


LEGACY_LAYOUT = _layout("MerchantManager", LEGACY.type_label)
CURRENT_LAYOUT = _layout("MerchantManager", CURRENT.type_label)
