# MIT License
# Copyright (c) 2025 Hashborn

from collections import namedtuple
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional
import logging
import threading

from ...protocol.config.params import CURRENT_NETWORK, GENESIS_BLOCK, NetworkConfig
from ...protocol.crypto.addresses import ZERO_ADDRESS, normalize_address
from ...protocol.crypto.hash import keccak256, keccak256_hex
from ...protocol.crypto.keys import address_from_private, generate_private_key
from ...protocol.types.common import AuthorizationError, ExecutionReverted
from ..contracts.abi import encode_call
from ..storage.db import StorageDB
from .accounts import LogEntry
from .executor import Frame, call_contract, resolve_code
from .state import ChainState
from .tx_receipt import TxReceipt, TxReceiptStore

logger = logging.getLogger(__name__)

ProxyDeployment = namedtuple("ProxyDeployment", ["proxy", "implementation", "proxy_admin"])


def contract_address(sender: str, nonce: int) -> str:
    """Deterministic address of a contract created by ``sender`` at ``nonce``."""
    raw = bytes.fromhex(normalize_address(sender)[2:]) + nonce.to_bytes(32, "big")
    return normalize_address(keccak256(raw)[-20:].hex())


class TransactionScope:
    """
    Calls and deployments issued inside one transaction.

    Every effect lands on a private working copy of the state; the chain
    swaps it in only when the ``with`` block completes.
    """

    def __init__(self, chain: 'LocalChain', state: ChainState, sender: str, tx_hash: str):
        self.chain = chain
        self.state = state
        self.sender = sender
        self.tx_hash = tx_hash
        self.db_writes: Dict[str, str] = {}

    def invoke(self, to: str, method: str, *args) -> Any:
        return call_contract(self.state, self.sender, to, method, args, tx_hash=self.tx_hash)

    def write_with_block(self, key: str, value: str):
        """Stores ``key`` in the chain database in the same write as the block."""
        self.db_writes[key] = value

    def deploy(self, code_name: str, *constructor_args) -> str:
        cls = resolve_code(code_name)
        deployer = self.state.get_account(self.sender)
        address = contract_address(self.sender, deployer.nonce)
        deployer.nonce += 1

        account = self.state.get_account(address)
        if account.code:
            raise ExecutionReverted(f"contract address collision at {address}")
        account.code = code_name

        cls(Frame(self.state, address, self.sender, code_name, tx_hash=self.tx_hash)).constructor(*constructor_args)
        logger.debug(f"Deployed {cls.__name__} at {address}")
        return address


class LocalChain:
    """
    In-process devnet.

    One mutating transaction at a time (guarded by a lock), each one
    all-or-nothing. Read-only calls run against a discarded copy of the state.
    """

    def __init__(self, db: Optional[StorageDB] = None, network: Optional[NetworkConfig] = None):
        self.db = db
        self.network = network or CURRENT_NETWORK
        self._lock = threading.RLock()
        self.state = ChainState.load(db) if db else ChainState()
        self.receipts = TxReceiptStore()
        logger.info(f"Chain initialized on {self.network.network_id} at block {self.state.block_number}")

    @property
    def block_number(self) -> int:
        return self.state.block_number

    # --- Accounts ---
    def create_account(self) -> str:
        """Generates a fresh secp256k1 key and returns its address."""
        address = address_from_private(generate_private_key())
        with self._lock:
            self.state.get_account(address)
            self._persist()
        return address

    def get_code(self, address: str) -> Optional[str]:
        return self.state.get_code(address)

    def set_code(self, address: str, code_name: Optional[str]):
        """
        Forces the code of an account without touching its storage.

        Debug facility for fork/test networks only.
        """
        if not self.network.allow_set_code:
            raise AuthorizationError(f"set_code is not available on network '{self.network.network_id}'")
        if code_name is not None:
            resolve_code(code_name)
        with self._lock:
            self.state.get_account(address).code = code_name
            self._persist()
        logger.debug(f"Code at {address} set to {code_name}")

    def get_storage_at(self, address: str, slot: int) -> int:
        return self.state.sload(address, slot)

    def get_nonce(self, address: str) -> int:
        acc = self.state.peek_account(address)
        return acc.nonce if acc else 0

    # --- Transactions ---
    @contextmanager
    def transaction(self, sender: str, description: str = "multicall", to: Optional[str] = None,
                    args: Optional[List[Any]] = None) -> Iterator[TransactionScope]:
        sender = normalize_address(sender)
        with self._lock:
            nonce = self.get_nonce(sender)
            tx_hash = keccak256_hex(
                f"{self.network.chain_id}:{sender}:{nonce}:{self.state.block_number + 1}".encode()
            )
            receipt = self.receipts.add_pending(TxReceipt(
                tx_hash=tx_hash, sender=sender, to=to, method=description, args=list(args or []),
            ))

            working = self.state.clone()
            working.block_number += 1
            scope = TransactionScope(self, working, sender, tx_hash)
            try:
                yield scope
                working.get_account(sender).nonce += 1
                self._persist(working, scope.db_writes)
            except Exception as e:
                self.receipts.mark_failed(tx_hash, str(e))
                logger.debug(f"Transaction {tx_hash[:18]} ({description}) reverted: {e}")
                raise

            self.state = working
            self.receipts.mark_confirmed(tx_hash, working.block_number)
            logger.debug(f"Transaction {receipt.tx_hash[:18]} ({description}) mined in block {working.block_number}")

    def transact(self, sender: str, to: str, method: str, *args) -> Any:
        with self.transaction(sender, method, to=to, args=list(args)) as tx:
            return tx.invoke(to, method, *args)

    def call(self, to: str, method: str, *args, sender: str = ZERO_ADDRESS) -> Any:
        """Read-only call (eth_call): executes on a copy, nothing is kept."""
        with self._lock:
            snapshot = self.state.clone()
        return call_contract(snapshot, normalize_address(sender), to, method, args)

    def deploy(self, sender: str, code_name: str, *constructor_args) -> str:
        with self.transaction(sender, f"deploy {code_name}") as tx:
            return tx.deploy(code_name, *constructor_args)

    def deploy_proxy(self, sender: str, code_name: str, init_method: Optional[str] = None, *init_args,
                     proxy_admin: Optional[str] = None) -> ProxyDeployment:
        """
        Deploys an implementation behind a transparent proxy in one transaction.

        A new ProxyAdmin owned by ``sender`` is created unless one is given.
        """
        data = encode_call(init_method, *init_args) if init_method else "0x"
        with self.transaction(sender, f"deploy proxy {code_name}") as tx:
            implementation = tx.deploy(code_name)
            admin = proxy_admin or tx.deploy("ProxyAdmin")
            proxy = tx.deploy("TransparentUpgradeableProxy", implementation, admin, data)
        logger.info(f"Deployed {code_name} proxy at {proxy} (implementation {implementation}, admin {admin})")
        return ProxyDeployment(proxy, implementation, admin)

    # --- Logs ---
    def get_logs(self, address: Optional[str] = None, event: Optional[str] = None,
                 from_block: int = GENESIS_BLOCK, to_block: Optional[int] = None) -> List[LogEntry]:
        address = normalize_address(address) if address else None
        result = []
        for entry in list(self.state.logs):
            if address and entry.address != address:
                continue
            if event and entry.event != event:
                continue
            if entry.block_number < from_block:
                continue
            if to_block is not None and entry.block_number > to_block:
                continue
            result.append(entry)
        return result

    def accounts_summary(self) -> Dict[str, Any]:
        contracts = [acc for acc in self.state.accounts() if acc.is_contract]
        return {
            "network": self.network.network_id,
            "block_number": self.block_number,
            "accounts": len(self.state.accounts()),
            "contracts": len(contracts),
        }

    def _persist(self, state: Optional[ChainState] = None, extra: Optional[Dict[str, str]] = None):
        if self.db:
            (state or self.state).persist(self.db, extra)
