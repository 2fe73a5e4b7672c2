import os
import json
import time
from typing import List, Dict, Optional
from ..protocol.crypto.keys import generate_private_key, public_key_from_private
from ..protocol.crypto.addresses import address_from_pubkey


class KeyStore:
    """Named accounts (owner, proposers) kept in ``<datadir>/keys``."""

    def __init__(self, root_dir: str):
        self.root_dir = root_dir
        os.makedirs(self.root_dir, exist_ok=True)

    def create_key(self, name: str) -> Dict[str, str]:
        """Generates and saves a new key."""
        if self.get_key(name):
            raise ValueError(f"Key '{name}' already exists")
        return self._store(name, generate_private_key())

    def import_key(self, name: str, private_key_hex: str) -> Dict[str, str]:
        if self.get_key(name):
            raise ValueError(f"Key '{name}' already exists")
        try:
            priv = bytes.fromhex(private_key_hex[2:] if private_key_hex.startswith("0x") else private_key_hex)
        except ValueError:
            raise ValueError("Invalid hex string")
        if len(priv) != 32:
            raise ValueError("Invalid private key length")
        return self._store(name, priv)

    def get_key(self, name: str) -> Optional[Dict[str, str]]:
        path = self._path(name)
        if not os.path.exists(path):
            return None
        with open(path, "r") as f:
            return json.load(f)

    def address_of(self, name_or_address: str) -> str:
        """Resolves a key name; anything that is not a key name is taken as an address."""
        key = self.get_key(name_or_address)
        if key:
            return key["address"]
        if name_or_address.startswith("0x"):
            return name_or_address
        raise ValueError(f"Key '{name_or_address}' not found")

    def list_keys(self) -> List[Dict[str, str]]:
        """Lists all available keys (without private info)."""
        keys = []
        for filename in sorted(os.listdir(self.root_dir)):
            if filename.endswith(".json"):
                data = self.get_key(filename[:-5])
                if data:
                    keys.append({"name": data["name"], "address": data["address"]})
        return keys

    def _store(self, name: str, priv: bytes) -> Dict[str, str]:
        pub = public_key_from_private(priv)
        key_data = {
            "name": name,
            "address": address_from_pubkey(pub),
            "public_key": pub.hex(),
            "private_key": priv.hex(),
            "created_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path = self._path(name)
        with open(path, "w") as f:
            json.dump(key_data, f, indent=2)
        os.chmod(path, 0o600)
        return key_data

    def _path(self, name: str) -> str:
        return os.path.join(self.root_dir, f"{name}.json")
