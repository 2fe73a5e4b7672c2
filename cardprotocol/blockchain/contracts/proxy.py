# MIT License
# Copyright (c) 2025 Hashborn

"""
Transparent proxy and ProxyAdmin.

The proxy keeps its implementation and admin in the EIP-1967 slots. Calls
from the admin reach the proxy's own admin interface; every other caller is
delegated to the implementation, which runs against the proxy's storage.
"""

from typing import Any, List

from ...protocol.config.params import IMPLEMENTATION_SLOT, PROXY_ADMIN_SLOT
from ...protocol.crypto.addresses import ZERO_ADDRESS, normalize_address
from ..core.executor import contract
from .abi import decode_call, is_empty_call
from .base import Contract, external, view

PROXY_ADMIN_OWNER_SLOT = 0

ADMIN_METHODS = ("admin", "implementation", "upgradeTo", "upgradeToAndCall", "changeAdmin")


@contract("TransparentUpgradeableProxy")
class TransparentUpgradeableProxy(Contract):

    def constructor(self, logic: str, admin: str, data: str = "0x"):
        self._set_implementation(logic)
        self.sstore_address(PROXY_ADMIN_SLOT, admin)
        self.emit("AdminChanged", previousAdmin=ZERO_ADDRESS, newAdmin=normalize_address(admin))
        if not is_empty_call(data):
            self._delegate_data(data)

    def dispatch(self, method: str, args: List[Any]) -> Any:
        if self.msg_sender == self._admin():
            self.require(method in ADMIN_METHODS,
                         "TransparentUpgradeableProxy: admin cannot fallback to proxy target")
            return super().dispatch(method, args)
        return self._delegate(method, args)

    # --- Admin interface (reachable only by the admin) ---
    @view
    def admin(self) -> str:
        return self._admin()

    @view
    def implementation(self) -> str:
        return self.sload_address(IMPLEMENTATION_SLOT)

    @external
    def upgradeTo(self, new_implementation: str):
        self._set_implementation(new_implementation)

    @external
    def upgradeToAndCall(self, new_implementation: str, data: str):
        self._set_implementation(new_implementation)
        self._delegate_data(data)

    @external
    def changeAdmin(self, new_admin: str):
        self.require(normalize_address(new_admin) != ZERO_ADDRESS, "ERC1967: new admin is the zero address")
        previous = self._admin()
        self.sstore_address(PROXY_ADMIN_SLOT, new_admin)
        self.emit("AdminChanged", previousAdmin=previous, newAdmin=normalize_address(new_admin))

    # --- Internals ---
    def _admin(self) -> str:
        return self.sload_address(PROXY_ADMIN_SLOT)

    def _set_implementation(self, new_implementation: str):
        self.require(bool(self.code_at(new_implementation)), "ERC1967: new implementation is not a contract")
        self.sstore_address(IMPLEMENTATION_SLOT, new_implementation)
        self.emit("Upgraded", implementation=normalize_address(new_implementation))

    def _delegate(self, method: str, args: List[Any]) -> Any:
        implementation = self.sload_address(IMPLEMENTATION_SLOT)
        code_name = self.code_at(implementation)
        self.require(bool(code_name), "TransparentUpgradeableProxy: implementation has no code")
        return self.delegatecall(code_name, method, args)

    def _delegate_data(self, data: str) -> Any:
        if is_empty_call(data):
            return None
        try:
            method, args = decode_call(data)
        except ValueError as e:
            self.revert(str(e))
        return self._delegate(method, args)


@contract("ProxyAdmin")
class ProxyAdmin(Contract):
    """Owns proxies' admin rights; its own owner lives at slot 0."""

    def constructor(self):
        self.sstore_address(PROXY_ADMIN_OWNER_SLOT, self.msg_sender)

    @view
    def owner(self) -> str:
        return self.sload_address(PROXY_ADMIN_OWNER_SLOT)

    @view
    def getProxyAdmin(self, proxy: str) -> str:
        return self.static_call(proxy, "admin")

    @view
    def getProxyImplementation(self, proxy: str) -> str:
        return self.static_call(proxy, "implementation")

    @external
    def upgrade(self, proxy: str, implementation: str):
        self._only_owner()
        self.call(proxy, "upgradeTo", implementation)

    @external
    def upgradeAndCall(self, proxy: str, implementation: str, data: str):
        self._only_owner()
        self.call(proxy, "upgradeToAndCall", implementation, data)

    @external
    def changeProxyAdmin(self, proxy: str, new_admin: str):
        self._only_owner()
        self.call(proxy, "changeAdmin", new_admin)

    @external
    def transferOwnership(self, new_owner: str):
        self._only_owner()
        self.require(normalize_address(new_owner) != ZERO_ADDRESS, "Ownable: new owner is the zero address")
        previous = self.owner()
        self.sstore_address(PROXY_ADMIN_OWNER_SLOT, new_owner)
        self.emit("OwnershipTransferred", previousOwner=previous, newOwner=normalize_address(new_owner))

    def _only_owner(self):
        self.require(self.msg_sender == self.owner(), "Ownable: caller is not the owner")
