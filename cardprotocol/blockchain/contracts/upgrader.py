# MIT License
# Copyright (c) 2025 Hashborn

"""
Storage upgraders.

An upgrader is a temporary implementation installed behind a proxy to
rewrite legacy set storage into the current encoding. Plain sets are
rewritten by ``upgrade()`` (one shot, via upgradeAndCall) or by
``upgradeFinished()``; sets held in a mapping are rewritten key by key with
``upgradeChunk(keys)`` because a mapping cannot be walked on-chain.
"""

from typing import List, Optional, Tuple

from ...protocol.config.params import PROXY_ADMIN_SLOT, UPGRADE_FLAG_SLOT
from ...protocol.crypto.hash import eip1967_slot, map_slot_for_key
from ..core.executor import contract
from .base import Ownable, external, only_owner, view
from .reader import EnumerableSetReader
from .sets import migrate_set

MIGRATED_MARKER_SLOT = eip1967_slot("cardprotocol.upgrader.migrated-keys")


@contract("SetStorageUpgrader")
class SetStorageUpgrader(Ownable, EnumerableSetReader):
    """
    Default upgrader. Subclasses list the slots they own:

        SET_SLOTS       plain legacy sets, rewritten whole
        KEYED_SET_SLOT  base slot of a ``mapping(key => set)``
    """

    SET_SLOTS: Tuple[int, ...] = ()
    KEYED_SET_SLOT: Optional[int] = None

    @view
    def upgraded(self) -> bool:
        return self.sload(UPGRADE_FLAG_SLOT) == 1

    @view
    def isKeyMigrated(self, key) -> bool:
        return self.sload(map_slot_for_key(key, MIGRATED_MARKER_SLOT)) != 0

    @external
    def upgrade(self):
        """One-shot migration, called through ProxyAdmin.upgradeAndCall."""
        self.require(self.msg_sender in (self.sload_address(PROXY_ADMIN_SLOT), self.owner()),
                     "Upgrader: caller is not the proxy admin or owner")
        self._finish()

    @external
    @only_owner
    def upgradeChunk(self, keys: List[str]):
        self.require(not self.upgraded(), "Upgrader: migration already finished")
        self.require(self.KEYED_SET_SLOT is not None, "Upgrader: no keyed sets to migrate")
        migrated = 0
        for key in keys:
            marker = map_slot_for_key(key, MIGRATED_MARKER_SLOT)
            if self.sload(marker):
                continue
            migrate_set(self, map_slot_for_key(key, self.KEYED_SET_SLOT))
            self.sstore(marker, 1)
            migrated += 1
        self.emit("ChunkUpgraded", keys=list(keys), migrated=migrated)

    @external
    @only_owner
    def upgradeFinished(self):
        self._finish()

    def _finish(self):
        if self.upgraded():
            return
        for slot in self.SET_SLOTS:
            migrate_set(self, slot)
        self.sstore(UPGRADE_FLAG_SLOT, 1)
        self.emit("UpgradeFinished", setSlots=list(self.SET_SLOTS))
