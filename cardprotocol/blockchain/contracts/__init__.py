"""
Devnet contract code.

Importing this package registers the built-in contracts (proxy, ProxyAdmin,
VersionManager, set reader, default upgrader).
"""

from .base import Contract, Ownable, external, view, only_owner, initializer
from .proxy import TransparentUpgradeableProxy, ProxyAdmin
from .version_manager import VersionManager
from .reader import EnumerableSetReader
from .upgrader import SetStorageUpgrader

__all__ = [
    "Contract",
    "Ownable",
    "external",
    "view",
    "only_owner",
    "initializer",
    "TransparentUpgradeableProxy",
    "ProxyAdmin",
    "VersionManager",
    "EnumerableSetReader",
    "SetStorageUpgrader",
]
