# MIT License
# Copyright (c) 2025 Hashborn

import os
from typing import Dict
from ..crypto.hash import eip1967_slot

# Migration / retry constants
CHUNK_SIZE = 10
MAX_ATTEMPTS = 5
GENESIS_BLOCK = 0
DEFAULT_PROTOCOL_VERSION = "1.0.0"

# EIP-1967 proxy slots
IMPLEMENTATION_SLOT = eip1967_slot("eip1967.proxy.implementation")
PROXY_ADMIN_SLOT = eip1967_slot("eip1967.proxy.admin")

# Set to 1 by an upgrader's upgradeFinished()
UPGRADE_FLAG_SLOT = eip1967_slot("cardstack.upgraded.gnosis-1-3")

# Slots that migration readers rely on; checked against layouts before use
KNOWN_SLOTS: Dict[str, Dict[str, int]] = {
    "RewardManager": {"rewardProgramIDs": 209},
    "PrepaidCardMarket": {"inventory": 156},
    "MerchantManager": {"merchants": 206},
    "RewardPool": {"_owner": 101},
    "SPEND": {"_owner": 103},
    "*": {"_owner": 51},
}


class NetworkConfig:
    def __init__(self,
                 network_id: str,
                 chain_id: int,
                 allow_set_code: bool,
                 production: bool = False,
                 max_attempts: int = MAX_ATTEMPTS,
                 retry_backoff_sec: float = 1.0,
                 chunk_size: int = CHUNK_SIZE,
                 genesis_block: int = GENESIS_BLOCK,
                 # Forked networks run against a local copy of production state
                 forked_from: str = None):
        self.network_id = network_id
        self.chain_id = chain_id
        # Debug facility (hardhat_setCode style); never on production
        self.allow_set_code = allow_set_code and not production
        self.production = production
        self.max_attempts = max_attempts
        self.retry_backoff_sec = retry_backoff_sec
        self.chunk_size = chunk_size
        self.genesis_block = genesis_block
        self.forked_from = forked_from

    def __repr__(self):
        return f"NetworkConfig({self.network_id}, chain_id={self.chain_id}, production={self.production})"


NETWORKS: Dict[str, NetworkConfig] = {
    "devnet": NetworkConfig(
        network_id="devnet",
        chain_id=31337,
        allow_set_code=True,
        retry_backoff_sec=0.0,
    ),
    "fork": NetworkConfig(
        network_id="fork",
        chain_id=31337,
        allow_set_code=True,
        retry_backoff_sec=0.0,
        forked_from="xdai",
    ),
    "sokol": NetworkConfig(
        network_id="sokol",
        chain_id=77,
        allow_set_code=False,
        production=True,
    ),
    "xdai": NetworkConfig(
        network_id="xdai",
        chain_id=100,
        allow_set_code=False,
        production=True,
    ),
}


def get_network(name: str = None) -> NetworkConfig:
    name = name or os.environ.get("CARDPAY_NETWORK", "devnet")
    if name not in NETWORKS:
        raise ValueError(f"Unknown network '{name}'. Known: {', '.join(NETWORKS)}")
    return NETWORKS[name]


# Default to devnet for now
CURRENT_NETWORK = NETWORKS["devnet"]
