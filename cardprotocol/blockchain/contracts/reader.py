from typing import List, Union

from ...protocol.crypto.hash import to_word
from ..core.executor import contract
from .base import Contract, view
from .sets import CURRENT, LEGACY


@contract("EnumerableSetReader")
class EnumerableSetReader(Contract):
    """
    Raw storage accessors for both set encodings.

    Installed in place of a contract's code (forks only) or inherited by an
    upgrader so production reads go through the real proxy path. ``slot`` is
    a word (int or bytes32 hex), already combined with a mapping key when
    the set lives inside a mapping.
    """

    @view
    def readOldAddressSet(self, slot: Union[int, str]) -> List[str]:
        return LEGACY.values(self, to_word(slot))

    @view
    def readNewAddressSet(self, slot: Union[int, str]) -> List[str]:
        return CURRENT.values(self, to_word(slot))

    @view
    def oldSetContains(self, slot: Union[int, str], member: str) -> bool:
        return LEGACY.contains(self, to_word(slot), member)

    @view
    def newSetContains(self, slot: Union[int, str], member: str) -> bool:
        return CURRENT.contains(self, to_word(slot), member)

    @view
    def readWord(self, slot: Union[int, str]) -> str:
        return "0x" + self.sload(to_word(slot)).to_bytes(32, "big").hex()
