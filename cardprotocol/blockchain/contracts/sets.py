# MIT License
# Copyright (c) 2025 Hashborn

"""
Enumerable address set storage encodings.

Both encodings share one shape for a set declared at slot ``p``:

    p                   number of members
    keccak256(p) + i    member word i
    mapping at p + 1    member word -> 1-based position (0 = absent)

They differ in how a member address is packed into its word. The legacy
encoding stores it left-aligned (``address << 96``), the current encoding
right-aligned as a plain ``uint160``. Reading one with the other yields
garbage, which is why the migration has to rewrite every member.
"""

from typing import Callable, List

from ...protocol.crypto.addresses import address_from_word, address_to_int
from ...protocol.crypto.hash import array_data_slot, map_slot_for_key


class AddressSetEncoding:

    def __init__(self, name: str, type_label: str,
                 pack: Callable[[str], int], unpack: Callable[[int], str]):
        self.name = name
        self.type_label = type_label
        self._pack = pack
        self._unpack = unpack

    def __repr__(self):
        return f"AddressSetEncoding({self.name})"

    def length(self, store, slot: int) -> int:
        return store.sload(slot)

    def values(self, store, slot: int) -> List[str]:
        base = array_data_slot(slot)
        return [self._unpack(store.sload(base + i)) for i in range(self.length(store, slot))]

    def contains(self, store, slot: int, address: str) -> bool:
        return self._index_of(store, slot, self._pack(address)) != 0

    def add(self, store, slot: int, address: str) -> bool:
        word = self._pack(address)
        if self._index_of(store, slot, word):
            return False
        length = self.length(store, slot)
        store.sstore(array_data_slot(slot) + length, word)
        store.sstore(slot, length + 1)
        store.sstore(map_slot_for_key(word, slot + 1), length + 1)
        return True

    def remove(self, store, slot: int, address: str) -> bool:
        """Swap-and-pop removal, same as OpenZeppelin's EnumerableSet."""
        word = self._pack(address)
        index = self._index_of(store, slot, word)
        if not index:
            return False

        base = array_data_slot(slot)
        last_index = self.length(store, slot) - 1
        if index - 1 != last_index:
            last_word = store.sload(base + last_index)
            store.sstore(base + index - 1, last_word)
            store.sstore(map_slot_for_key(last_word, slot + 1), index)

        store.sstore(base + last_index, 0)
        store.sstore(slot, last_index)
        store.sstore(map_slot_for_key(word, slot + 1), 0)
        return True

    def clear(self, store, slot: int) -> int:
        base = array_data_slot(slot)
        length = self.length(store, slot)
        for i in range(length):
            word = store.sload(base + i)
            store.sstore(map_slot_for_key(word, slot + 1), 0)
            store.sstore(base + i, 0)
        store.sstore(slot, 0)
        return length

    def _index_of(self, store, slot: int, word: int) -> int:
        return store.sload(map_slot_for_key(word, slot + 1))


LEGACY = AddressSetEncoding(
    "legacy",
    "struct EnumerableSet.AddressSet",
    pack=lambda a: address_to_int(a) << 96,
    unpack=lambda w: address_from_word(w >> 96),
)

CURRENT = AddressSetEncoding(
    "current",
    "struct EnumerableSetUpgradeable.AddressSet",
    pack=address_to_int,
    unpack=address_from_word,
)


def migrate_set(store, slot: int, source: AddressSetEncoding = LEGACY,
                target: AddressSetEncoding = CURRENT) -> List[str]:
    """Re-encodes the set at ``slot`` in place, keeping member order."""
    members = source.values(store, slot)
    source.clear(store, slot)
    for member in members:
        target.add(store, slot, member)
    return members
