from ..core.executor import contract
from .base import Ownable, decode_short_string, encode_short_string, external, only_owner, view

VERSION_SLOT = 101


@contract("VersionManager")
class VersionManager(Ownable):
    """On-chain record of the protocol version, written on every commit."""

    @external
    @only_owner
    def setVersion(self, version: str):
        self.sstore(VERSION_SLOT, encode_short_string(version))
        self.emit("VersionUpdate", version=version)

    @view
    def version(self) -> str:
        return decode_short_string(self.sload(VERSION_SLOT))
