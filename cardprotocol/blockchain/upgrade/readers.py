# MIT License
# Copyright (c) 2025 Hashborn

"""
Raw storage readers.

A live contract usually has no accessor for the internals of its sets, so
reading them needs code that knows the raw layout. Two ways to get such code
behind an address, never mixed in one run:

- CodeSwapStorageReader temporarily replaces the code at the address with
  the reader contract (fork and test networks only).
- UpgraderStorageReader reads through the upgrader implementation that is
  actually installed behind the proxy (production).
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Set

from ...protocol.crypto.addresses import ZERO_ADDRESS, normalize_address
from ...protocol.types.common import ExecutionReverted, FatalMigrationError, UnhandledStorageType
from ..contracts.reader import EnumerableSetReader
from ..core.chain import LocalChain
from ..core.executor import resolve_code
from .retry import RetryingExecutor

logger = logging.getLogger(__name__)

READER_CODE = "EnumerableSetReader"


class MigrationContext:
    """
    State of one migration or verification run.

    ``cache`` holds fetched bytecode, discovered keys and reader results for
    this run only. ``unhandled_types`` collects storage types no handler
    could decode.
    """

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        self.cache: Dict[str, Any] = {}
        self.unhandled_types: Set[str] = set()

    def fetch(self, key: str, loader: Callable[[], Any]) -> Any:
        if key in self.cache:
            return self.cache[key]
        value = loader()
        self.cache[key] = value
        return value

    def require_all_handled(self):
        if self.unhandled_types:
            error = UnhandledStorageType(self.contract_id, self.unhandled_types)
            logger.error(str(error))
            raise error


class RawStorageReader(ABC):

    def __init__(self, chain: LocalChain, context: MigrationContext,
                 retry: Optional[RetryingExecutor] = None):
        self.chain = chain
        self.context = context
        self.retry = retry or RetryingExecutor(max_attempts=chain.network.max_attempts)

    def read_word(self, address: str, slot: int) -> int:
        return self.retry.run(lambda: self.chain.get_storage_at(address, slot), description="getStorageAt")

    def read_old_set(self, address: str, slot: int) -> List[str]:
        return self._cached_read(address, "readOldAddressSet", slot)

    def read_new_set(self, address: str, slot: int) -> List[str]:
        return self._cached_read(address, "readNewAddressSet", slot)

    def new_set_contains(self, address: str, slot: int, member: str) -> bool:
        return self._cached_read(address, "newSetContains", slot, member)

    def _cached_read(self, address: str, method: str, *args) -> Any:
        # Any transaction moves the block number, so entries never outlive the state they saw
        address = normalize_address(address)
        key = f"read:{self.chain.block_number}:{address}:{method}:{args!r}"
        return self.context.fetch(key, lambda: self.retry.run(
            lambda: self._read(address, method, *args), description=method,
        ))

    @abstractmethod
    def _read(self, address: str, method: str, *args) -> Any:
        ...


class CodeSwapStorageReader(RawStorageReader):
    """Swaps the reader contract in for the duration of each read."""

    def __init__(self, chain: LocalChain, context: MigrationContext,
                 retry: Optional[RetryingExecutor] = None, reader_code: str = READER_CODE):
        super().__init__(chain, context, retry)
        if not chain.network.allow_set_code:
            raise FatalMigrationError(
                f"Code swap storage reads are not allowed on network '{chain.network.network_id}'",
                context.contract_id,
            )
        self.reader_code = reader_code

    @contextmanager
    def swapped(self, address: str):
        original = self.context.fetch(f"code:{address}", lambda: self.chain.get_code(address))
        self.chain.set_code(address, self.reader_code)
        try:
            yield
        finally:
            self.chain.set_code(address, original)

    def _read(self, address: str, method: str, *args) -> Any:
        with self.swapped(address):
            return self.chain.call(address, method, *args)


class UpgraderStorageReader(RawStorageReader):
    """
    Reads through the upgrader installed behind a proxy.

    The installed implementation is looked up through the ProxyAdmin before
    every read; reading fails unless it exposes the raw set accessors.
    """

    def __init__(self, chain: LocalChain, context: MigrationContext, proxy_admin: str,
                 retry: Optional[RetryingExecutor] = None):
        super().__init__(chain, context, retry)
        self.proxy_admin = proxy_admin

    def installed_upgrader(self, address: str) -> str:
        try:
            implementation = self.chain.call(self.proxy_admin, "getProxyImplementation", address)
        except ExecutionReverted as e:
            raise FatalMigrationError(f"Cannot resolve implementation of {address}: {e.reason}",
                                      self.context.contract_id)
        code_name = self.chain.get_code(implementation)
        try:
            cls = resolve_code(code_name)
        except ExecutionReverted:
            cls = None
        if cls is None or not issubclass(cls, EnumerableSetReader):
            raise FatalMigrationError(
                f"Implementation {implementation} ({code_name}) behind {address} is not a storage upgrader",
                self.context.contract_id,
            )
        return implementation

    def _read(self, address: str, method: str, *args) -> Any:
        self.installed_upgrader(address)
        return self.chain.call(address, method, *args, sender=ZERO_ADDRESS)
