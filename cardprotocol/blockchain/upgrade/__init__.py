# MIT License
# Copyright (c) 2025 Hashborn

"""
Upgrade coordination and storage migration.

Stage, check and atomically apply upgrades across a protocol's proxies, and
migrate enumerable set storage between encodings.
"""

from .types import Version, ProxyRecord, PendingChange, CompatibilityReport, StatusRow
from .coordinator import UpgradeCoordinator
from .layout import StorageLayoutDiffer, verify_known_slots
from .retry import RetryingExecutor
from .migrations import (
    ChunkedSetMigrationStrategy,
    MigrationStrategy,
    RepointAndCallStrategy,
    StrategyRegistry,
)
from .set_migration import MigrationTarget, SetMigrationEngine

__all__ = [
    "Version",
    "ProxyRecord",
    "PendingChange",
    "CompatibilityReport",
    "StatusRow",
    "UpgradeCoordinator",
    "StorageLayoutDiffer",
    "verify_known_slots",
    "RetryingExecutor",
    "MigrationStrategy",
    "RepointAndCallStrategy",
    "ChunkedSetMigrationStrategy",
    "StrategyRegistry",
    "MigrationTarget",
    "SetMigrationEngine",
]
