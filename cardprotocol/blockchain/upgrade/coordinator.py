# MIT License
# Copyright (c) 2025 Hashborn

"""
Upgrade Coordinator

Single point of control over the upgrades of a protocol made of many
upgradeable proxies.

Flow:
    adopt proxies -> proposers stage changes -> owner commits them all in
    one transaction -> protocol version and nonce move forward.

A commit either applies every staged change or none of them.
"""

import logging
import threading
from typing import Dict, List, Optional, Sequence

from ...protocol.config.params import IMPLEMENTATION_SLOT
from ...protocol.crypto.addresses import address_from_word, normalize_address, same_address
from ...protocol.types.common import (
    AuthorizationError,
    DuplicateContractId,
    ExecutionReverted,
    LayoutIncompatible,
    NoPendingChanges,
    NotAContract,
    NotAdminOwner,
    NotAProxy,
    NotContractOwner,
    ProtocolError,
    StaleNonce,
    UnknownContractId,
    ValidationError,
)
from ...protocol.types.layout import StorageLayout
from ..contracts.abi import decode_call, describe_call, is_empty_call
from ..core.chain import LocalChain
from ..core.events import EventBus, UpgradeEvent, event_bus as default_event_bus
from ..observability.metrics import (
    adoptions_total,
    commit_failures_total,
    commits_total,
    proposals_total,
    update_metrics,
    withdrawals_total,
)
from ..storage.db import StorageDB
from .layout import StorageLayoutDiffer
from .retry import RetryingExecutor
from .types import CompatibilityReport, CoordinatorState, PendingChange, ProxyRecord, StatusRow, Version

logger = logging.getLogger(__name__)

STATE_KEY = "coordinator"


class UpgradeCoordinator:
    """
    Coordinates protocol-wide upgrades.

    Responsibilities:
    - Keep the registry of adopted proxies
    - Stage upgrades and calls proposed by the proposer set
    - Apply every staged change atomically on commit
    - Track the protocol version and upgrade nonce
    """

    def __init__(self,
                 chain: LocalChain,
                 owner: Optional[str] = None,
                 address: Optional[str] = None,
                 db: Optional[StorageDB] = None,
                 retry: Optional[RetryingExecutor] = None,
                 differ: Optional[StorageLayoutDiffer] = None,
                 event_bus: Optional[EventBus] = None):
        """
        Initialize the coordinator, loading persisted state when present.

        Args:
            chain: Chain the proxies live on
            owner: Owner account (required when no state is persisted yet)
            address: On-chain account of the coordinator; a fresh one is
                created when omitted
            db: State database (defaults to the chain's)
            retry: Executor for chain reads
            differ: Storage layout differ used by check_storage_safety
            event_bus: Event bus for lifecycle notifications
        """
        self.chain = chain
        self.db = db if db is not None else chain.db
        self.retry = retry or RetryingExecutor(
            max_attempts=chain.network.max_attempts,
            backoff=chain.network.retry_backoff_sec,
        )
        self.differ = differ or StorageLayoutDiffer()
        self.event_bus = event_bus or default_event_bus
        self._lock = threading.RLock()
        self.state = self._load_state(owner, address)
        update_metrics(self, chain)

    # --- State ---

    def _load_state(self, owner: Optional[str], address: Optional[str]) -> CoordinatorState:
        raw = self.db.get_state(STATE_KEY) if self.db else None
        if raw:
            state = CoordinatorState.model_validate_json(raw)
            logger.info(f"Loaded coordinator {state.address} at version {state.version} (nonce {state.nonce})")
            return state

        if owner is None:
            raise ValidationError("An owner is required to initialize a new coordinator")
        state = CoordinatorState(
            address=normalize_address(address) if address else self.chain.create_account(),
            owner=normalize_address(owner),
        )
        logger.info(f"Initialized coordinator {state.address} owned by {state.owner}")
        self._save(state)
        return state

    def _save(self, state: Optional[CoordinatorState] = None):
        if self.db:
            self.db.set_state(STATE_KEY, (state or self.state).model_dump_json())

    def refresh(self):
        """Reloads the persisted state, picking up commits made by other processes."""
        raw = self.db.get_state(STATE_KEY) if self.db else None
        if raw:
            with self._lock:
                self.state = CoordinatorState.model_validate_json(raw)

    @property
    def address(self) -> str:
        return self.state.address

    @property
    def owner(self) -> str:
        return self.state.owner

    @property
    def nonce(self) -> int:
        return self.state.nonce

    @property
    def version(self) -> str:
        return self.state.version

    # --- Authorization ---

    def _require_owner(self, caller: str, action: str):
        if not same_address(caller, self.state.owner):
            logger.warning(f"Rejected {action} from {caller}: not the owner")
            raise AuthorizationError(f"Caller {caller} is not the owner; only the owner can {action}")

    def _require_proposer(self, caller: str, action: str):
        if same_address(caller, self.state.owner):
            return
        if any(same_address(caller, p) for p in self.state.proposers):
            return
        logger.warning(f"Rejected {action} from {caller}: not a proposer")
        raise AuthorizationError(f"Caller {caller} is not a proposer; only proposers can {action}")

    # --- Governance ---

    def setup(self, caller: str, proposers: Sequence[str], version_manager: Optional[str] = None):
        """
        Replace the proposer set and set the VersionManager.

        Args:
            caller: Must be the owner
            proposers: New proposer addresses
            version_manager: VersionManager proxy updated on every commit

        Raises:
            AuthorizationError: If caller is not the owner
            NotAContract: If version_manager has no code
        """
        self._require_owner(caller, "set up the coordinator")
        new_proposers = []
        for proposer in proposers:
            proposer = self._address(proposer)
            if proposer not in new_proposers:
                new_proposers.append(proposer)
        if version_manager:
            version_manager = self._address(version_manager)
            if not self.chain.get_code(version_manager):
                raise NotAContract(f"VersionManager {version_manager} is not a contract")

        with self._lock:
            removed = [p for p in self.state.proposers if p not in new_proposers]
            added = [p for p in new_proposers if p not in self.state.proposers]
            self.state.proposers = new_proposers
            self.state.version_manager = version_manager or None
            self._save()

        for proposer in removed:
            self.event_bus.emit(UpgradeEvent.PROPOSER_REMOVED, proposer=proposer)
        for proposer in added:
            self.event_bus.emit(UpgradeEvent.PROPOSER_ADDED, proposer=proposer)
        logger.info(f"Coordinator set up with {len(new_proposers)} proposer(s), "
                    f"version manager {version_manager or 'none'}")

    def add_proposer(self, caller: str, proposer: str):
        self._require_owner(caller, "add proposers")
        proposer = self._address(proposer)
        with self._lock:
            if proposer in self.state.proposers:
                logger.debug(f"{proposer} is already a proposer")
                return
            self.state.proposers.append(proposer)
            self._save()
        self.event_bus.emit(UpgradeEvent.PROPOSER_ADDED, proposer=proposer)
        logger.info(f"Added proposer {proposer}")

    def remove_proposer(self, caller: str, proposer: str):
        self._require_owner(caller, "remove proposers")
        proposer = self._address(proposer)
        with self._lock:
            if proposer not in self.state.proposers:
                raise ValidationError(f"{proposer} is not a proposer")
            self.state.proposers.remove(proposer)
            self._save()
        self.event_bus.emit(UpgradeEvent.PROPOSER_REMOVED, proposer=proposer)
        logger.info(f"Removed proposer {proposer}")

    # --- Registration ---

    def adopt(self, caller: str, contract_id: str, proxy: str, proxy_admin: str) -> ProxyRecord:
        """
        Take over upgrade control of an existing proxy.

        The coordinator must already own the ProxyAdmin and the contract
        behind the proxy.

        Args:
            caller: Must be the owner
            contract_id: Stable name for the contract
            proxy: Proxy address
            proxy_admin: ProxyAdmin administering the proxy

        Returns:
            The new ProxyRecord

        Raises:
            DuplicateContractId: If the id or the proxy is already adopted
            NotAdminOwner: If the coordinator does not own the ProxyAdmin
            NotAProxy: If the ProxyAdmin is not the admin of the proxy
            NotContractOwner: If the coordinator does not own the contract
        """
        self._require_owner(caller, "adopt proxies")
        if not contract_id:
            raise ValidationError("Contract id must not be empty")
        proxy = self._address(proxy)
        proxy_admin = self._address(proxy_admin)

        with self._lock:
            if contract_id in self.state.records:
                raise DuplicateContractId("Contract id already registered", contract_id)
            existing = self.get_adopted_contract_id(proxy)
            if existing is not None:
                raise DuplicateContractId(f"Proxy {proxy} is already adopted as {existing}", contract_id)

            try:
                admin_owner = self._read(proxy_admin, "owner")
            except ExecutionReverted as e:
                raise NotAdminOwner(f"Cannot read owner of ProxyAdmin {proxy_admin}: {e.reason}", contract_id)
            if not same_address(admin_owner, self.address):
                raise NotAdminOwner("Must be owner of ProxyAdmin to adopt", contract_id)

            try:
                actual_admin = self._read(proxy_admin, "getProxyAdmin", proxy)
            except ExecutionReverted:
                raise NotAProxy("ProxyAdmin is not admin of this contract", contract_id)
            if not same_address(actual_admin, proxy_admin):
                raise NotAProxy("ProxyAdmin is not admin of this contract", contract_id)

            try:
                contract_owner = self._read(proxy, "owner")
            except ExecutionReverted as e:
                raise NotContractOwner(f"Cannot read contract owner: {e.reason}", contract_id)
            if not same_address(contract_owner, self.address):
                raise NotContractOwner("Must be owner of contract to adopt", contract_id)

            record = ProxyRecord(contract_id=contract_id, proxy_address=proxy, proxy_admin_address=proxy_admin)
            self.state.records[contract_id] = record
            self._save()

        adoptions_total.inc()
        update_metrics(self, self.chain)
        self.event_bus.emit(UpgradeEvent.PROXY_ADOPTED, contract_id=contract_id, proxy=proxy,
                            proxy_admin=proxy_admin)
        logger.info(f"Adopted {contract_id} at {proxy} (ProxyAdmin {proxy_admin})")
        return record

    # --- Proposals ---

    def propose_upgrade(self, caller: str, contract_id: str, new_implementation: str) -> PendingChange:
        """Stage an upgrade of ``contract_id`` to ``new_implementation``."""
        return self._stage(caller, contract_id, new_implementation, None)

    def propose_call(self, caller: str, contract_id: str, encoded_call: str) -> PendingChange:
        """Stage a call on the proxy of ``contract_id``."""
        return self._stage(caller, contract_id, None, encoded_call)

    def propose_upgrade_and_call(self, caller: str, contract_id: str, new_implementation: str,
                                 encoded_call: str) -> PendingChange:
        """Stage an upgrade followed by a call through the upgraded proxy."""
        return self._stage(caller, contract_id, new_implementation, encoded_call)

    def _stage(self, caller: str, contract_id: str, new_implementation: Optional[str],
               encoded_call: Optional[str]) -> PendingChange:
        self._require_proposer(caller, "propose changes")
        self.get_proxy_record(contract_id)

        if new_implementation:
            new_implementation = self._address(new_implementation)
            if not self.chain.get_code(new_implementation):
                raise NotAContract(f"Proposed implementation {new_implementation} is not a contract", contract_id)
        if is_empty_call(encoded_call):
            encoded_call = None
        else:
            try:
                decode_call(encoded_call)
            except ValueError as e:
                raise ValidationError(str(e), contract_id)
        if not new_implementation and not encoded_call:
            raise ValidationError("A change needs an implementation, a call or both", contract_id)

        change = PendingChange(contract_id=contract_id, new_implementation=new_implementation,
                               encoded_call=encoded_call)
        with self._lock:
            if contract_id in self.state.pending:
                logger.info(f"{contract_id}: replacing previously staged change")
                self.state.pending_order.remove(contract_id)
            self.state.pending[contract_id] = change
            self.state.pending_order.append(contract_id)
            self._save()

        proposals_total.labels(kind=change.kind.value).inc()
        update_metrics(self, self.chain)
        self.event_bus.emit(UpgradeEvent.CHANGE_PROPOSED, contract_id=contract_id, kind=change.kind.value,
                            new_implementation=new_implementation, encoded_call=encoded_call, proposer=caller)
        logger.info(f"{contract_id}: staged {change.kind.value} proposed by {caller}")
        return change

    def withdraw_changes(self, caller: str, contract_id: str) -> bool:
        """
        Drop the staged change of ``contract_id``.

        Returns:
            True if a change was withdrawn, False if nothing was staged
        """
        self._require_proposer(caller, "withdraw changes")
        self.get_proxy_record(contract_id)
        with self._lock:
            if contract_id not in self.state.pending:
                logger.debug(f"{contract_id}: nothing staged to withdraw")
                return False
            del self.state.pending[contract_id]
            self.state.pending_order.remove(contract_id)
            self._save()

        withdrawals_total.inc()
        update_metrics(self, self.chain)
        self.event_bus.emit(UpgradeEvent.CHANGES_WITHDRAWN, contract_id=contract_id, proposer=caller)
        logger.info(f"{contract_id}: staged change withdrawn by {caller}")
        return True

    # --- Execution ---

    def call(self, caller: str, contract_id: str, encoded_call: str):
        """
        Run a call on an adopted proxy right away, as the coordinator.

        Raises:
            AuthorizationError: If caller is not the owner
            ExecutionReverted: If the call reverts
        """
        self._require_owner(caller, "call adopted contracts")
        record = self.get_proxy_record(contract_id)
        try:
            decoded = decode_call(encoded_call)
        except ValueError as e:
            raise ValidationError(str(e), contract_id)
        if decoded is None:
            raise ValidationError("Empty call data", contract_id)
        method, args = decoded
        try:
            result = self.chain.transact(self.address, record.proxy_address, method, *args)
        except ExecutionReverted as e:
            logger.error(f"{contract_id}: {method} reverted: {e.reason}")
            raise ExecutionReverted(e.reason, contract_id) from e
        logger.info(f"{contract_id}: executed {describe_call(encoded_call)}")
        return result

    def commit(self, caller: str, new_version: str, nonce: int,
               reports: Optional[Sequence[CompatibilityReport]] = None) -> List[str]:
        """
        Apply every staged change in one transaction.

        Changes run in proposal order, oldest first. If the VersionManager is
        configured its version is set in the same transaction.

        Args:
            caller: Must be the owner
            new_version: Protocol version after this commit
            nonce: Nonce the commit was prepared against
            reports: Storage compatibility reports that must all be ok

        Returns:
            Contract ids that were changed, in application order

        Raises:
            StaleNonce: If nonce is not the current nonce
            NoPendingChanges: If nothing is staged
            LayoutIncompatible: If any report is not ok
            ExecutionReverted: If any change reverts (nothing is applied)
        """
        self._require_owner(caller, "commit upgrades")
        try:
            Version.from_string(new_version)
        except ValueError as e:
            raise ValidationError(str(e))

        with self._lock:
            self.refresh()
            if nonce != self.state.nonce:
                commit_failures_total.labels(reason="stale_nonce").inc()
                raise StaleNonce(expected=self.state.nonce, got=nonce)
            if not self.state.pending_order:
                commit_failures_total.labels(reason="no_pending_changes").inc()
                raise NoPendingChanges("No pending changes to commit")
            for report in reports or ():
                if not report.ok:
                    commit_failures_total.labels(reason="layout").inc()
                    raise LayoutIncompatible(report.contract_name, report.messages())

            order = list(self.state.pending_order)
            changes = [self.state.pending[cid] for cid in order]
            committed = self.state.model_copy(deep=True)
            committed.pending.clear()
            committed.pending_order.clear()
            committed.version = new_version
            committed.nonce += 1
            try:
                self._apply(changes, new_version, committed)
            except ProtocolError as e:
                commit_failures_total.labels(reason="reverted").inc()
                logger.error(f"Protocol upgrade to {new_version} failed, nothing applied: {e}")
                raise

            old_version = self.state.version
            self.state = committed

        commits_total.inc()
        update_metrics(self, self.chain)
        self.event_bus.emit(UpgradeEvent.PROTOCOL_UPGRADED, old_version=old_version, new_version=new_version,
                            nonce=self.state.nonce, contract_ids=order)
        logger.info(f"Protocol upgraded {old_version} -> {new_version} ({len(order)} change(s), "
                    f"nonce now {self.state.nonce})")
        return order

    def _apply(self, changes: List[PendingChange], new_version: str, committed: CoordinatorState):
        shared_db = self.db is not None and self.db is self.chain.db
        with self.chain.transaction(self.address, "upgradeProtocol") as tx:
            for change in changes:
                record = self.state.records[change.contract_id]
                try:
                    if change.new_implementation and change.encoded_call:
                        tx.invoke(record.proxy_admin_address, "upgradeAndCall", record.proxy_address,
                                  change.new_implementation, change.encoded_call)
                    elif change.new_implementation:
                        tx.invoke(record.proxy_admin_address, "upgrade", record.proxy_address,
                                  change.new_implementation)
                    else:
                        method, args = decode_call(change.encoded_call)
                        tx.invoke(record.proxy_address, method, *args)
                except ExecutionReverted as e:
                    raise ExecutionReverted(e.reason, change.contract_id) from e
                logger.debug(f"{change.contract_id}: applied {change.kind.value}")
            if self.state.version_manager:
                tx.invoke(self.state.version_manager, "setVersion", new_version)
            if shared_db:
                tx.write_with_block(STATE_KEY, committed.model_dump_json())
        if not shared_db:
            self._save(committed)

    # --- Queries ---

    def get_pending_changes(self) -> List[str]:
        """Proxy addresses with staged changes, in proposal order."""
        return [self.state.records[cid].proxy_address for cid in self.state.pending_order]

    def get_pending_change(self, contract_id: str) -> Optional[PendingChange]:
        return self.state.pending.get(contract_id)

    def get_proposers(self) -> List[str]:
        return list(self.state.proposers)

    def get_proxies(self) -> List[str]:
        return [record.proxy_address for record in self.state.records.values()]

    def get_contract_ids(self) -> List[str]:
        return list(self.state.records)

    def get_adopted_contract_id(self, proxy: str) -> Optional[str]:
        for record in self.state.records.values():
            if same_address(record.proxy_address, proxy):
                return record.contract_id
        return None

    def get_proxy_record(self, contract_id: str) -> ProxyRecord:
        record = self.state.records.get(contract_id)
        if record is None:
            raise UnknownContractId("Contract id has not been adopted", contract_id)
        return record

    def current_implementation(self, contract_id: str) -> str:
        record = self.get_proxy_record(contract_id)
        word = self.retry.run(lambda: self.chain.get_storage_at(record.proxy_address, IMPLEMENTATION_SLOT),
                              description="getStorageAt")
        return address_from_word(word)

    def report(self, include_unchanged: bool = False) -> List[StatusRow]:
        """
        Status of every adopted contract.

        Each staged change is simulated as the coordinator; a revert reason
        is reported in ``failing_call``.

        Args:
            include_unchanged: Also list contracts without staged changes
        """
        rows = []
        for contract_id, record in self.state.records.items():
            change = self.state.pending.get(contract_id)
            if change is None and not include_unchanged:
                continue
            implementation = self.current_implementation(contract_id)
            row = StatusRow(
                contract_id=contract_id,
                contract_name=self.chain.get_code(implementation),
                proxy=record.proxy_address,
                current_implementation=implementation,
                changed=change is not None,
            )
            if change is not None:
                row.proposed_implementation = change.new_implementation
                row.proposed_call = describe_call(change.encoded_call) or None
                row.failing_call = self._simulate(record, change)
            rows.append(row)
        return rows

    def status(self) -> Dict:
        return {
            "address": self.address,
            "owner": self.owner,
            "version": self.version,
            "nonce": self.nonce,
            "proposers": self.get_proposers(),
            "version_manager": self.state.version_manager,
            "adopted": len(self.state.records),
            "pending": list(self.state.pending_order),
        }

    def check_storage_safety(self, contract_id: str, old_layout: StorageLayout, new_layout: StorageLayout,
                             ignore_labels: Sequence[str] = ()) -> CompatibilityReport:
        """
        Compare layouts of the current and proposed implementation.

        Raises:
            UnknownContractId: If the contract has not been adopted
            LayoutIncompatible: If the layouts do not line up
        """
        self.get_proxy_record(contract_id)
        report = self.differ.compare(old_layout, new_layout, ignore_labels=ignore_labels)
        if not report.ok:
            error = LayoutIncompatible(contract_id, report.messages())
            logger.error(str(error))
            raise error
        return report

    # --- Internals ---

    def _simulate(self, record: ProxyRecord, change: PendingChange) -> Optional[str]:
        try:
            if change.new_implementation and change.encoded_call:
                self.chain.call(record.proxy_admin_address, "upgradeAndCall", record.proxy_address,
                                change.new_implementation, change.encoded_call, sender=self.address)
            elif change.new_implementation:
                self.chain.call(record.proxy_admin_address, "upgrade", record.proxy_address,
                                change.new_implementation, sender=self.address)
            else:
                method, args = decode_call(change.encoded_call)
                self.chain.call(record.proxy_address, method, *args, sender=self.address)
        except ExecutionReverted as e:
            return e.reason
        return None

    def _read(self, to: str, method: str, *args):
        return self.retry.run(lambda: self.chain.call(to, method, *args, sender=self.address),
                              description=method)

    @staticmethod
    def _address(value: str) -> str:
        try:
            return normalize_address(value)
        except ValueError as e:
            raise ValidationError(str(e))
