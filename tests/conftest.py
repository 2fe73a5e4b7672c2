import os
import shutil
import tempfile

import pytest

import sample_contracts  # noqa: F401  registers the merchant contracts
from cardprotocol.blockchain.core.chain import LocalChain
from cardprotocol.blockchain.core.events import event_bus
from cardprotocol.blockchain.storage.db import StorageDB
from cardprotocol.blockchain.upgrade.coordinator import UpgradeCoordinator
from cardprotocol.blockchain.upgrade.retry import RetryingExecutor
from cardprotocol.protocol.config.params import NETWORKS


@pytest.fixture
def temp_dir():
    path = tempfile.mkdtemp()
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def clean_event_bus():
    """Clean event bus before and after test."""
    event_bus.clear()
    yield event_bus
    event_bus.clear()


@pytest.fixture
def db(temp_dir):
    storage = StorageDB(os.path.join(temp_dir, "chain.db"))
    yield storage
    storage.close()


@pytest.fixture
def chain(db):
    return LocalChain(db, NETWORKS["devnet"])


@pytest.fixture
def production_chain(temp_dir):
    storage = StorageDB(os.path.join(temp_dir, "xdai.db"))
    yield LocalChain(storage, NETWORKS["xdai"])
    storage.close()


@pytest.fixture
def retry():
    return RetryingExecutor(max_attempts=3, backoff=0.0)


@pytest.fixture
def owner(chain):
    return chain.create_account()


@pytest.fixture
def proposer(chain):
    return chain.create_account()


@pytest.fixture
def outsider(chain):
    return chain.create_account()


@pytest.fixture
def coordinator(chain, owner, proposer, retry, clean_event_bus):
    coord = UpgradeCoordinator(chain, owner=owner, retry=retry)
    coord.setup(owner, [proposer])
    return coord


@pytest.fixture
def deploy_adopted(chain, owner, coordinator):
    """Deploys a proxied contract owned by the coordinator and adopts it."""
    def deploy(contract_id, code_name="MerchantManager"):
        deployment = chain.deploy_proxy(owner, code_name, "initialize", coordinator.address)
        chain.transact(owner, deployment.proxy_admin, "transferOwnership", coordinator.address)
        coordinator.adopt(owner, contract_id, deployment.proxy, deployment.proxy_admin)
        return deployment
    return deploy
