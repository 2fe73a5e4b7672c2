from typing import Any, Dict, List, Optional
from .accounts import Account, LogEntry
from ...protocol.crypto.addresses import normalize_address
from ...protocol.crypto.hash import WORD_MASK
from ..storage.db import StorageDB


class ChainState:
    """
    World state of the devnet: accounts (code + storage), event logs and the
    block counter.

    Transactions run against a clone and replace the live state only when
    they complete, which is what gives commits their all-or-nothing shape.
    """

    def __init__(self, accounts: Dict[str, Account] = None, logs: List[LogEntry] = None, block_number: int = 0):
        self._accounts: Dict[str, Account] = accounts if accounts is not None else {}
        self.logs: List[LogEntry] = logs if logs is not None else []
        self.block_number = block_number

    def clone(self) -> 'ChainState':
        """Creates a copy of the state (for transactions and read-only calls)."""
        new_accounts = {k: v.model_copy(deep=True) for k, v in self._accounts.items()}
        return ChainState(new_accounts, list(self.logs), self.block_number)

    def get_account(self, address: str) -> Account:
        address = normalize_address(address)
        acc = self._accounts.get(address)
        if acc is None:
            acc = Account(address=address)
            self._accounts[address] = acc
        return acc

    def peek_account(self, address: str) -> Optional[Account]:
        return self._accounts.get(normalize_address(address))

    def accounts(self) -> List[Account]:
        return list(self._accounts.values())

    # --- Storage ---
    def sload(self, address: str, slot: int) -> int:
        acc = self.peek_account(address)
        if acc is None:
            return 0
        return acc.storage.get(slot & WORD_MASK, 0)

    def sstore(self, address: str, slot: int, value: int):
        acc = self.get_account(address)
        slot &= WORD_MASK
        value &= WORD_MASK
        if value == 0:
            acc.storage.pop(slot, None)
        else:
            acc.storage[slot] = value

    def get_code(self, address: str) -> Optional[str]:
        acc = self.peek_account(address)
        return acc.code if acc else None

    # --- Logs ---
    def append_log(self, address: str, event: str, args: Dict[str, Any], tx_hash: Optional[str] = None) -> LogEntry:
        entry = LogEntry(
            address=normalize_address(address),
            event=event,
            args=args,
            block_number=self.block_number,
            log_index=len(self.logs),
            tx_hash=tx_hash,
        )
        self.logs.append(entry)
        return entry

    # --- Persistence ---
    def persist(self, db: StorageDB, extra: Optional[Dict[str, str]] = None):
        """Writes accounts, new logs, the block counter and ``extra`` to DB in one batch."""
        items = {f"acc:{addr}": acc.model_dump_json() for addr, acc in self._accounts.items()}

        stored_logs = int(db.get_state("log_count") or 0)
        for entry in self.logs[stored_logs:]:
            items[f"log:{entry.log_index:012d}"] = entry.model_dump_json()
        items["log_count"] = str(len(self.logs))
        items["block_number"] = str(self.block_number)
        items.update(extra or {})
        db.set_states(items)

    @classmethod
    def load(cls, db: StorageDB) -> 'ChainState':
        accounts = {}
        for key, value in db.get_state_by_prefix("acc:").items():
            acc = Account.model_validate_json(value)
            accounts[acc.address] = acc

        raw_logs = db.get_state_by_prefix("log:")
        logs = [LogEntry.model_validate_json(raw_logs[k]) for k in sorted(raw_logs)]

        block_number = int(db.get_state("block_number") or 0)
        return cls(accounts, logs, block_number)
