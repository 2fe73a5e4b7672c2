# MIT License
# Copyright (c) 2025 Hashborn

"""
Set Migration Engine

Migrates and verifies enumerable set storage whose encoding changed between
implementation versions.

Live migration (any network):
    deploy upgrader -> point proxy at it -> migrate (one call or key chunks)
    -> upgradeFinished -> point proxy at the final implementation.
    The business owner is checked before and after every swap.

Verification (fork/test networks only):
    snapshot old values -> live migration -> snapshot new values -> compare,
    reading raw storage through a code-swapped reader.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from ...protocol.config.params import UPGRADE_FLAG_SLOT
from ...protocol.crypto.addresses import ZERO_ADDRESS, same_address
from ...protocol.crypto.hash import bytes32_hex, map_slot_for_key
from ...protocol.types.common import FatalMigrationError, LayoutIncompatible, OwnerMismatch
from ...protocol.types.layout import StorageLayout, StorageSlot
from ..contracts.sets import CURRENT, LEGACY
from ..core.chain import LocalChain
from ..core.events import EventBus, UpgradeEvent, event_bus as default_event_bus
from ..observability.metrics import migrations_completed_total
from .layout import StorageLayoutDiffer, verify_known_slots
from .migrations import MigrationStrategy, StrategyRegistry, sort_contracts
from .progress import ProgressStore
from .readers import CodeSwapStorageReader, MigrationContext, RawStorageReader, UpgraderStorageReader
from .retry import RetryingExecutor, nonce_increased
from .types import StorageSnapshot

logger = logging.getLogger(__name__)

OLD_SET_TYPES = {LEGACY.type_label}
NEW_SET_TYPES = {CURRENT.type_label}
MAPPING_OF_SET_RE = re.compile(r"^mapping\((address|bytes32) => (struct EnumerableSet(?:Upgradeable)?\.AddressSet)\)$")
SCALAR_RE = re.compile(r"^(bool|address|address payable|string|bytes\d*|u?int\d*|contract \S+|enum \S+)$")
# Plain mappings cannot be walked; their own slot word is still compared
RAW_MAPPING_RE = re.compile(r"^mapping\((address|bytes32|string|u?int\d*) => (?!struct EnumerableSet)")
GAP_TYPE_RE = re.compile(r"^uint256\[(\d+)\]$")


@dataclass
class MigrationRun:
    """One contract's trip through the migration."""
    contract_id: str
    proxy: str
    proxy_admin: str
    owner: str
    admin_owner: str
    context: MigrationContext
    upgrader: Optional[str] = None
    keys: List[str] = field(default_factory=list)
    chunks: int = 0


@dataclass
class MigrationTarget:
    contract_id: str
    proxy: str
    proxy_admin: str
    new_implementation: str


@dataclass
class VerificationResult:
    contract_id: str
    old_snapshot: StorageSnapshot
    new_snapshot: StorageSnapshot
    keys: List[str]
    chunks: int


class SetMigrationEngine:
    """
    Drives set migrations against a chain.

    Transactions go out one at a time through the RetryingExecutor; each one
    waits for the sender's nonce to move before the next is sent.
    """

    def __init__(self,
                 chain: LocalChain,
                 retry: Optional[RetryingExecutor] = None,
                 progress: Optional[ProgressStore] = None,
                 strategies: Optional[StrategyRegistry] = None,
                 differ: Optional[StorageLayoutDiffer] = None,
                 event_bus: Optional[EventBus] = None,
                 chunk_size: Optional[int] = None):
        self.chain = chain
        self.retry = retry or RetryingExecutor(
            max_attempts=chain.network.max_attempts,
            backoff=chain.network.retry_backoff_sec,
        )
        self.progress = progress or ProgressStore(chain.db)
        self.strategies = strategies or StrategyRegistry()
        self.differ = differ or StorageLayoutDiffer()
        self.event_bus = event_bus or default_event_bus
        self.chunk_size = chunk_size or chain.network.chunk_size

    # --- Chain helpers used by strategies ---

    def owner_of(self, proxy: str) -> str:
        return self.retry.run(lambda: self.chain.call(proxy, "owner"), description="owner")

    def admin_owner_of(self, proxy_admin: str) -> str:
        return self.retry.run(lambda: self.chain.call(proxy_admin, "owner"), description="ProxyAdmin.owner")

    def current_implementation(self, run: MigrationRun) -> str:
        return self.retry.run(
            lambda: self.chain.call(run.proxy_admin, "getProxyImplementation", run.proxy),
            description="getProxyImplementation",
        )

    def deploy_upgrader(self, run: MigrationRun, code_name: str) -> str:
        address = self.retry.run_and_wait(
            lambda: self.chain.deploy(run.admin_owner, code_name),
            nonce_increased(self.chain, run.admin_owner),
            description=f"deploy {code_name}",
        )
        logger.info(f"{run.contract_id}: deployed {code_name} at {address}")
        return address

    def repoint(self, run: MigrationRun, implementation: str, call_data: Optional[str] = None):
        """Point the proxy at ``implementation``, checking the owner on both sides."""
        self.check_owner(run, f"before switching to {implementation}")
        if call_data:
            operation = lambda: self.chain.transact(run.admin_owner, run.proxy_admin, "upgradeAndCall",
                                                    run.proxy, implementation, call_data)
        else:
            operation = lambda: self.chain.transact(run.admin_owner, run.proxy_admin, "upgrade",
                                                    run.proxy, implementation)
        self.retry.run_and_wait(operation, nonce_increased(self.chain, run.admin_owner),
                                description=f"{run.contract_id} upgrade")
        logger.info(f"{run.contract_id}: proxy {run.proxy} now points at {implementation}")
        self.check_owner(run, f"after switching to {implementation}")

    def send_as_owner(self, run: MigrationRun, method: str, *args) -> Any:
        return self.retry.run_and_wait(
            lambda: self.chain.transact(run.owner, run.proxy, method, *args),
            nonce_increased(self.chain, run.owner),
            description=f"{run.contract_id}#{method}",
        )

    def check_owner(self, run: MigrationRun, stage: str):
        actual = self.owner_of(run.proxy)
        if not same_address(actual, run.owner):
            error = OwnerMismatch(run.contract_id, run.owner, actual, stage)
            logger.error(str(error))
            raise error

    def check_upgrade_flag(self, run: MigrationRun):
        flag = self.retry.run(lambda: self.chain.get_storage_at(run.proxy, UPGRADE_FLAG_SLOT),
                              description="getStorageAt(upgrade flag)")
        if flag != 1:
            raise FatalMigrationError("Upgrade completion flag not set after upgrade", run.contract_id)

    # --- Live migration ---

    def migrate(self, contract_id: str, proxy: str, proxy_admin: str, new_implementation: str,
                strategy: Optional[MigrationStrategy] = None,
                context: Optional[MigrationContext] = None,
                reader: Optional[RawStorageReader] = None) -> MigrationRun:
        """
        Migrate one contract and leave it on ``new_implementation``.

        Args:
            contract_id: Logical contract name
            proxy: Proxy address
            proxy_admin: ProxyAdmin administering the proxy
            new_implementation: Final implementation address
            strategy: Overrides the registered strategy for this contract
            context: Run context (a fresh one by default)
            reader: Storage reader for post-migration checks; defaults to
                reading through the installed upgrader

        Returns:
            The finished MigrationRun

        Raises:
            OwnerMismatch: If the business owner changed across a swap
            FatalMigrationError: If the migration did not complete cleanly, or
                the upgrader rewrites a keyed set the strategy cannot enumerate
        """
        strategy = strategy or self.strategies.get(contract_id)
        keyed_slot = strategy.keyed_set_slot()
        if keyed_slot is not None and not strategy.has_key_source():
            error = FatalMigrationError(
                f"{strategy.upgrader} migrates a keyed set at slot {keyed_slot} but {strategy!r} has no key source",
                contract_id,
            )
            logger.error(str(error))
            raise error
        context = context or MigrationContext(contract_id)
        run = MigrationRun(
            contract_id=contract_id,
            proxy=proxy,
            proxy_admin=proxy_admin,
            owner=self.owner_of(proxy),
            admin_owner=self.admin_owner_of(proxy_admin),
            context=context,
        )
        logger.info(f"{contract_id}: migrating with {strategy!r} (owner {run.owner})")

        strategy.run(self, run)
        self.check_upgrade_flag(run)

        if keyed_slot is not None:
            reader = reader or UpgraderStorageReader(self.chain, context, proxy_admin, self.retry)
            self.check_keyed_sets(run, reader, keyed_slot)

        self.repoint(run, new_implementation)
        self.progress.discard(contract_id)

        migrations_completed_total.labels(strategy=strategy.name).inc()
        self.event_bus.emit(UpgradeEvent.MIGRATION_FINISHED, contract_id=contract_id,
                            implementation=new_implementation, chunks=run.chunks, keys=len(run.keys))
        logger.info(f"{contract_id}: migration complete ({run.chunks} chunk(s), {len(run.keys)} key(s))")
        return run

    def migrate_all(self, targets: Sequence[MigrationTarget]) -> List[MigrationRun]:
        """Migrate several contracts, dependencies first."""
        by_id = {t.contract_id: t for t in targets}
        runs = []
        for contract_id in sort_contracts(by_id):
            target = by_id[contract_id]
            runs.append(self.migrate(target.contract_id, target.proxy, target.proxy_admin,
                                     target.new_implementation))
        return runs

    def check_keyed_sets(self, run: MigrationRun, reader: RawStorageReader, slot: int):
        """Every migrated set must be indexed: members found, zero address absent."""
        for key in run.keys:
            self._check_set_index(run.contract_id, run.proxy, reader, map_slot_for_key(key, slot), f"[{key}]")

    # --- Verification ---

    def snapshot(self, proxy: str, layout: StorageLayout, reader: RawStorageReader,
                 context: MigrationContext, key_sources: Optional[Dict[str, Sequence[str]]] = None) -> StorageSnapshot:
        """
        Decode every variable of ``layout`` at ``proxy``.

        Gaps must be empty and are left out of the snapshot. Types without a
        handler are recorded in ``context.unhandled_types``.
        """
        key_sources = key_sources or {}
        values: Dict[str, Any] = {}
        for item in layout.storage:
            if item.is_gap:
                self._check_gap_empty(proxy, item, reader, context)
                continue
            values[item.label] = self._decode(proxy, item, reader, context, key_sources)

        snapshot = StorageSnapshot(
            contract_name=layout.contract_name,
            values=values,
            unhandled_types=sorted(context.unhandled_types),
        )
        logger.debug(f"{context.contract_id}: snapshot of {layout.contract_name} has {len(values)} value(s)")
        return snapshot

    def compare_snapshots(self, contract_id: str, old_layout: StorageLayout, new_layout: StorageLayout,
                          old: StorageSnapshot, new: StorageSnapshot, ignore_labels: Sequence[str] = ()):
        old_slots, new_slots = self.differ.pair(old_layout, new_layout, ignore_labels)
        problems = []
        for old_item, new_item in zip(old_slots, new_slots):
            before = _normalize(old.values.get(old_item.label))
            after = _normalize(new.values.get(new_item.label))
            if before != after:
                problems.append(f"{new_item.label}: {before!r} != {after!r}")
        if problems:
            error = FatalMigrationError(f"Value mismatch after migration: {'; '.join(problems)}", contract_id)
            logger.error(str(error))
            raise error

    def verify(self, contract_id: str, proxy: str, proxy_admin: str, new_implementation: str,
               old_layout: StorageLayout, new_layout: StorageLayout,
               strategy: Optional[MigrationStrategy] = None,
               ignore_labels: Sequence[str] = ()) -> VerificationResult:
        """
        Rehearse a migration on a fork and prove nothing was lost.

        Raises:
            FatalMigrationError: On production networks, unhandled storage
                types, value mismatches or a failed migration
            LayoutIncompatible: If the layouts do not line up
        """
        strategy = strategy or self.strategies.get(contract_id)
        context = MigrationContext(contract_id)
        reader = CodeSwapStorageReader(self.chain, context, self.retry)

        self.differ.require_compatible(old_layout, new_layout, contract_id, ignore_labels=ignore_labels)
        known = verify_known_slots(new_layout)
        if not known.ok:
            raise LayoutIncompatible(contract_id, known.messages())

        keys = strategy.discover_keys(self, proxy, context)
        # Without a key source keyed sets stay undecodable and are reported as unhandled
        key_sources = {"*": keys} if strategy.has_key_source() else {}

        old_snapshot = self.snapshot(proxy, old_layout, reader, context, key_sources)
        context.require_all_handled()

        run = self.migrate(contract_id, proxy, proxy_admin, new_implementation,
                           strategy=strategy, context=context, reader=reader)

        new_snapshot = self.snapshot(proxy, new_layout, reader, context, key_sources)
        context.require_all_handled()

        self.compare_snapshots(contract_id, old_layout, new_layout, old_snapshot, new_snapshot, ignore_labels)
        logger.info(f"{contract_id}: verified {len(new_snapshot.values)} value(s) across the migration")
        return VerificationResult(contract_id, old_snapshot, new_snapshot, run.keys, run.chunks)

    # --- Internals ---

    def _decode(self, proxy: str, item: StorageSlot, reader: RawStorageReader,
                context: MigrationContext, key_sources: Dict[str, Sequence[str]]) -> Any:
        type_label = item.type

        if SCALAR_RE.match(type_label) or RAW_MAPPING_RE.match(type_label):
            return bytes32_hex(reader.read_word(proxy, item.slot))

        if type_label in OLD_SET_TYPES:
            return reader.read_old_set(proxy, item.slot)

        if type_label in NEW_SET_TYPES:
            return self._check_set_index(context.contract_id, proxy, reader, item.slot, item.label)

        match = MAPPING_OF_SET_RE.match(type_label)
        if match:
            keys = key_sources.get(item.label, key_sources.get("*"))
            if keys is None:
                context.unhandled_types.add(f"{type_label} (no key source for {item.label})")
                return None
            old_encoding = match.group(2) in OLD_SET_TYPES
            result = {}
            for key in keys:
                slot = map_slot_for_key(key, item.slot)
                if old_encoding:
                    result[key] = reader.read_old_set(proxy, slot)
                else:
                    result[key] = self._check_set_index(context.contract_id, proxy, reader, slot,
                                                        f"{item.label}[{key}]")
            return result

        context.unhandled_types.add(type_label)
        return None

    def _check_set_index(self, contract_id: str, proxy: str, reader: RawStorageReader,
                         slot: int, label: str) -> List[str]:
        members = reader.read_new_set(proxy, slot)
        if reader.new_set_contains(proxy, slot, ZERO_ADDRESS):
            raise FatalMigrationError(f"Set {label} reports the zero address as a member", contract_id)
        for member in members:
            if not reader.new_set_contains(proxy, slot, member):
                raise FatalMigrationError(f"Set {label} is missing the index entry for {member}", contract_id)
        return members

    def _check_gap_empty(self, proxy: str, item: StorageSlot, reader: RawStorageReader,
                         context: MigrationContext):
        match = GAP_TYPE_RE.match(item.type)
        length = int(match.group(1)) if match else 1
        for offset in range(length):
            word = reader.read_word(proxy, item.slot + offset)
            if word != 0:
                raise FatalMigrationError(
                    f"Gap {item.label} is not empty at slot {item.slot + offset}: {bytes32_hex(word)}",
                    context.contract_id,
                )


def _normalize(value: Any) -> Any:
    """Set members compare regardless of order."""
    if isinstance(value, list):
        return sorted(value)
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    return value
