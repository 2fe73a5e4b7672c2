# MIT License
# Copyright (c) 2025 Hashborn

"""
Migration strategies.

A strategy moves one proxy from its old implementation to an installed,
finished upgrader. The engine then points the proxy at the final
implementation. Strategies are picked per contract id from a
StrategyRegistry; anything without an override uses the default
re-point-and-call strategy.
"""

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Sequence

from ...protocol.crypto.addresses import normalize_address, same_address
from ..contracts.abi import encode_call
from ..core.events import UpgradeEvent
from ..core.executor import resolve_code
from ..observability.metrics import migrated_keys_total, migration_chunks_total
from .readers import MigrationContext
from .types import MigrationProgress

if TYPE_CHECKING:
    from .set_migration import MigrationRun, SetMigrationEngine

logger = logging.getLogger(__name__)

DEFAULT_UPGRADER = "SetStorageUpgrader"

# Contracts whose upgraded implementation later migrations rely on
DEFAULT_FIRST = ("MerchantManager",)


def uniq(items: Iterable) -> List:
    """Drops duplicates, keeping first-seen order."""
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


def chunked(items: Sequence, size: int) -> List[List]:
    if size < 1:
        raise ValueError("chunk size must be at least 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def sort_contracts(contract_ids: Iterable[str], first: Sequence[str] = DEFAULT_FIRST) -> List[str]:
    """Contracts listed in ``first`` go first (in that order), the rest alphabetically."""
    priority = {cid: i for i, cid in enumerate(first)}
    return sorted(contract_ids, key=lambda cid: (0, priority[cid], "") if cid in priority else (1, 0, cid))


class MigrationStrategy(ABC):
    name = "abstract"

    def __init__(self, upgrader: str = DEFAULT_UPGRADER):
        self.upgrader = upgrader

    def __repr__(self):
        return f"{type(self).__name__}({self.upgrader})"

    def keyed_set_slot(self) -> Optional[int]:
        """Base slot of the ``mapping(key => set)`` the upgrader rewrites, if any."""
        return getattr(resolve_code(self.upgrader), "KEYED_SET_SLOT", None)

    def has_key_source(self) -> bool:
        """True when ``discover_keys`` can enumerate the keys of a keyed set."""
        return False

    def discover_keys(self, engine: 'SetMigrationEngine', proxy: str, context: MigrationContext) -> List[str]:
        return []

    @abstractmethod
    def run(self, engine: 'SetMigrationEngine', run: 'MigrationRun') -> None:
        """Leave ``run.proxy`` on a finished upgrader."""


class RepointAndCallStrategy(MigrationStrategy):
    """
    Deploy the upgrader and install it with ``upgradeAndCall(upgrade())``.
    """
    name = "repoint-and-call"

    def run(self, engine: 'SetMigrationEngine', run: 'MigrationRun') -> None:
        run.upgrader = engine.deploy_upgrader(run, self.upgrader)
        engine.repoint(run, run.upgrader, encode_call("upgrade"))


class ChunkedSetMigrationStrategy(MigrationStrategy):
    """
    Key-by-key migration of a ``mapping(key => set)``.

    Keys are every value of ``arg`` in ``event`` logs since genesis. They are
    sent to ``upgradeChunk`` in batches of ``chunk_size``; progress is saved
    after each batch so an interrupted run resumes with the same upgrader
    and skips processed keys.
    """
    name = "chunked-set"

    def __init__(self, upgrader: str, event: str, arg: str, chunk_size: Optional[int] = None):
        super().__init__(upgrader)
        self.event = event
        self.arg = arg
        self.chunk_size = chunk_size

    def has_key_source(self) -> bool:
        return True

    def discover_keys(self, engine: 'SetMigrationEngine', proxy: str, context: MigrationContext) -> List[str]:
        def load():
            logs = engine.retry.run(
                lambda: engine.chain.get_logs(proxy, self.event, from_block=engine.chain.network.genesis_block),
                description=f"getLogs({self.event})",
            )
            return uniq(self._key(entry.args[self.arg]) for entry in logs if self.arg in entry.args)

        keys = context.fetch(f"keys:{normalize_address(proxy)}:{self.event}:{self.arg}", load)
        logger.info(f"{context.contract_id}: discovered {len(keys)} key(s) from {self.event} events")
        return keys

    def run(self, engine: 'SetMigrationEngine', run: 'MigrationRun') -> None:
        progress = engine.progress.load(run.contract_id)
        if progress is None:
            progress = MigrationProgress(
                contract_id=run.contract_id,
                chunk_size=self.chunk_size or engine.chunk_size,
            )

        if progress.upgrader:
            logger.info(f"{run.contract_id}: resuming migration with upgrader {progress.upgrader} "
                        f"({len(progress.processed)} key(s) already processed)")
        else:
            progress.upgrader = engine.deploy_upgrader(run, self.upgrader)
            engine.progress.save(progress)
        run.upgrader = progress.upgrader

        run.keys = self.discover_keys(engine, run.proxy, run.context)

        if not same_address(engine.current_implementation(run), run.upgrader):
            engine.repoint(run, run.upgrader)

        processed = set(progress.processed)
        remaining = [key for key in run.keys if key not in processed]
        for chunk in chunked(remaining, progress.chunk_size):
            logger.info(f"{run.contract_id}: upgrading {len(chunk)} key(s): {', '.join(chunk)}")
            engine.send_as_owner(run, "upgradeChunk", chunk)

            progress.processed.extend(chunk)
            engine.progress.save(progress)
            run.chunks += 1
            migration_chunks_total.labels(contract_id=run.contract_id).inc()
            migrated_keys_total.labels(contract_id=run.contract_id).inc(len(chunk))
            engine.event_bus.emit(UpgradeEvent.MIGRATION_CHUNK, contract_id=run.contract_id,
                                  keys=chunk, processed=len(progress.processed), total=len(run.keys))

        engine.send_as_owner(run, "upgradeFinished")
        progress.completed = True
        engine.progress.save(progress)

    @staticmethod
    def _key(value) -> str:
        if isinstance(value, str) and len(value) == 42:
            return normalize_address(value)
        return str(value)


class StrategyRegistry:
    """
    Strategy per contract id, with a default for everything else.
    """

    def __init__(self, default: Optional[MigrationStrategy] = None):
        self.default = default or RepointAndCallStrategy()
        self._overrides: Dict[str, MigrationStrategy] = {}

    def register(self, contract_id: str, strategy: MigrationStrategy):
        if contract_id in self._overrides:
            logger.warning(f"Overwriting migration strategy for {contract_id}")
        self._overrides[contract_id] = strategy
        logger.info(f"Registered {strategy.name} strategy for {contract_id} ({strategy.upgrader})")

    def get(self, contract_id: str) -> MigrationStrategy:
        return self._overrides.get(contract_id, self.default)

    def has_override(self, contract_id: str) -> bool:
        return contract_id in self._overrides
