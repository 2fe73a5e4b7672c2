import glob
import json
import os

import pytest

from cardprotocol.cli.address_book import AddressBook
from cardprotocol.cli.keystore import KeyStore

PROXY = "0x" + "AB" * 20


def test_address_book_persists(temp_dir):
    book = AddressBook(temp_dir, "sokol")
    book.set("MerchantManager", PROXY, "MerchantManager")

    reloaded = AddressBook(temp_dir, "sokol")
    assert "MerchantManager" in reloaded
    assert len(reloaded) == 1
    assert reloaded.proxy_of("MerchantManager") == PROXY.lower()
    assert reloaded.get("MerchantManager")["contractName"] == "MerchantManager"
    assert reloaded.proxy_of("RewardPool") is None

    with open(os.path.join(temp_dir, "addresses-sokol.json")) as f:
        assert json.load(f) == {"MerchantManager": {"contractName": "MerchantManager", "proxy": PROXY.lower()}}


def test_address_book_backs_up_previous_file(temp_dir):
    book = AddressBook(temp_dir, "xdai")
    book.set("MerchantManager", PROXY, "MerchantManager")
    book.set("RewardPool", "0x" + "cd" * 20, "RewardPool")

    backups = glob.glob(os.path.join(temp_dir, "addresses-xdai-*.json.bak"))
    assert len(backups) >= 1
    assert [cid for cid, _ in AddressBook(temp_dir, "xdai").items()] == ["MerchantManager", "RewardPool"]


def test_address_book_batches_writes(temp_dir):
    book = AddressBook(temp_dir, "devnet")
    book.set("A", PROXY, "MerchantManager", save=False)
    assert not os.path.exists(book.path)

    book.save()
    assert os.path.exists(book.path)
    assert glob.glob(os.path.join(temp_dir, "*.bak")) == []


def test_keystore(temp_dir):
    keys = KeyStore(os.path.join(temp_dir, "keys"))
    created = keys.create_key("owner")

    assert keys.address_of("owner") == created["address"]
    assert keys.address_of(PROXY) == PROXY
    assert keys.list_keys() == [{"name": "owner", "address": created["address"]}]

    imported = keys.import_key("proposer", "0x" + "01" * 32)
    assert imported["address"].startswith("0x")
    assert oct(os.stat(keys._path("proposer")).st_mode)[-3:] == "600"


def test_keystore_rejects_bad_input(temp_dir):
    keys = KeyStore(os.path.join(temp_dir, "keys"))
    keys.create_key("owner")

    with pytest.raises(ValueError, match="already exists"):
        keys.create_key("owner")
    with pytest.raises(ValueError, match="length"):
        keys.import_key("short", "abcd")
    with pytest.raises(ValueError, match="hex"):
        keys.import_key("bad", "zz" * 32)
    with pytest.raises(ValueError, match="not found"):
        keys.address_of("nobody")
