import os
import json
import time
import logging
from typing import Dict, Iterator, Optional, Tuple

from ..protocol.crypto.addresses import normalize_address

logger = logging.getLogger(__name__)


class AddressBook:
    """
    Deployed proxies of one network: ``contractId -> {proxy, contractName}``.

    Stored as ``addresses-<network>.json`` in the data directory. The previous
    file is kept as a timestamped ``.bak`` before each rewrite.
    """

    def __init__(self, root_dir: str, network: str):
        self.root_dir = root_dir
        self.network = network
        self.path = os.path.join(root_dir, f"addresses-{network}.json")
        self.entries: Dict[str, Dict[str, str]] = {}
        self.load()

    def load(self) -> Dict[str, Dict[str, str]]:
        if os.path.exists(self.path):
            with open(self.path, "r") as f:
                self.entries = json.load(f)
            logger.debug(f"Loaded {len(self.entries)} address book entries from {self.path}")
        else:
            self.entries = {}
        return self.entries

    def save(self):
        os.makedirs(self.root_dir, exist_ok=True)
        if os.path.exists(self.path):
            backup = os.path.join(self.root_dir, f"addresses-{self.network}-{int(time.time() * 1000)}.json.bak")
            os.replace(self.path, backup)
            logger.debug(f"Backed up address book to {backup}")
        with open(self.path, "w") as f:
            json.dump(self.entries, f, indent=2, sort_keys=True)

    def set(self, contract_id: str, proxy: str, contract_name: str, save: bool = True):
        self.entries[contract_id] = {"proxy": normalize_address(proxy), "contractName": contract_name}
        if save:
            self.save()
        logger.info(f"Address book: {contract_id} -> {proxy} ({contract_name})")

    def get(self, contract_id: str) -> Optional[Dict[str, str]]:
        return self.entries.get(contract_id)

    def proxy_of(self, contract_id: str) -> Optional[str]:
        entry = self.get(contract_id)
        return entry["proxy"] if entry else None

    def items(self) -> Iterator[Tuple[str, Dict[str, str]]]:
        return iter(sorted(self.entries.items()))

    def __contains__(self, contract_id: str) -> bool:
        return contract_id in self.entries

    def __len__(self) -> int:
        return len(self.entries)
