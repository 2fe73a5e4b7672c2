"""
Transaction receipt tracking.

Stores the lifecycle status of devnet transactions for querying.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import time
import logging
from threading import RLock

logger = logging.getLogger(__name__)


@dataclass
class TxReceipt:
    """
    Transaction receipt containing confirmation status.

    Attributes:
        tx_hash: Transaction hash
        sender: Address that sent the transaction
        to: Target address (None for plain deployments)
        method: Invoked method (or a description for multi-call transactions)
        args: Call arguments
        status: Transaction status ('pending', 'confirmed', 'failed')
        block_number: Block the transaction was mined in (None if pending/failed)
        timestamp: When receipt was created (unix timestamp)
        error: Revert reason if the transaction failed (None otherwise)
    """
    tx_hash: str
    sender: str
    to: Optional[str] = None
    method: str = ""
    args: List[Any] = field(default_factory=list)
    status: str = 'pending'  # 'pending', 'confirmed', 'failed'
    block_number: Optional[int] = None
    timestamp: int = 0
    error: Optional[str] = None

    def __post_init__(self):
        if self.timestamp == 0:
            self.timestamp = int(time.time())

    def to_dict(self) -> dict:
        """Convert receipt to dictionary for API response."""
        return {
            "tx_hash": self.tx_hash,
            "sender": self.sender,
            "to": self.to,
            "method": self.method,
            "status": self.status,
            "block_number": self.block_number,
            "timestamp": self.timestamp,
            "error": self.error,
        }


class TxReceiptStore:
    """
    In-memory store for transaction receipts, kept in submission order.
    """

    def __init__(self, max_receipts: int = 10000):
        self.receipts: Dict[str, TxReceipt] = {}
        self.max_receipts = max_receipts
        self.lock = RLock()

    def add_pending(self, receipt: TxReceipt) -> TxReceipt:
        with self.lock:
            receipt.status = 'pending'
            self.receipts[receipt.tx_hash] = receipt

            if len(self.receipts) > self.max_receipts:
                self._cleanup_old_receipts()

            logger.debug(f"Added pending receipt: {receipt.tx_hash[:16]}... ({receipt.method})")
            return receipt

    def mark_confirmed(self, tx_hash: str, block_number: int) -> Optional[TxReceipt]:
        with self.lock:
            receipt = self.receipts.get(tx_hash)
            if not receipt:
                return None
            receipt.status = 'confirmed'
            receipt.block_number = block_number
            logger.debug(f"Marked confirmed: {tx_hash[:16]}... at block {block_number}")
            return receipt

    def mark_failed(self, tx_hash: str, error: str) -> Optional[TxReceipt]:
        with self.lock:
            receipt = self.receipts.get(tx_hash)
            if not receipt:
                return None
            receipt.status = 'failed'
            receipt.error = error
            logger.debug(f"Marked failed: {tx_hash[:16]}... - {error}")
            return receipt

    def get(self, tx_hash: str) -> Optional[TxReceipt]:
        with self.lock:
            return self.receipts.get(tx_hash)

    def list(self, method: Optional[str] = None, to: Optional[str] = None, status: Optional[str] = None) -> List[TxReceipt]:
        """Receipts in submission order, optionally filtered."""
        with self.lock:
            result = []
            for receipt in self.receipts.values():
                if method is not None and receipt.method != method:
                    continue
                if to is not None and (receipt.to or "").lower() != to.lower():
                    continue
                if status is not None and receipt.status != status:
                    continue
                result.append(receipt)
            return result

    def _cleanup_old_receipts(self) -> None:
        """Drops the oldest 10% of receipts."""
        num_to_remove = len(self.receipts) // 10
        for tx_hash in list(self.receipts)[:num_to_remove]:
            del self.receipts[tx_hash]

        logger.info(f"Cleaned up {num_to_remove} old receipts (total: {len(self.receipts)})")

    def clear(self) -> None:
        """Clear all receipts (for testing)."""
        with self.lock:
            self.receipts.clear()
