"""
End-to-end runs of the command line tool against a devnet data directory.
"""

import json
import os

import pytest

from cardprotocol.blockchain.core.chain import LocalChain
from cardprotocol.blockchain.storage.db import StorageDB
from cardprotocol.blockchain.upgrade.coordinator import UpgradeCoordinator
from cardprotocol.cli.main import build_parser, main
from cardprotocol.protocol.config.params import NETWORKS
from sample_contracts import CURRENT_LAYOUT, LEGACY_LAYOUT


@pytest.fixture
def cli(temp_dir, monkeypatch, clean_event_bus):
    monkeypatch.delenv("CARDPAY_NETWORK", raising=False)
    monkeypatch.delenv("CARDPAY_VERSION", raising=False)
    monkeypatch.delenv("CARDPAY_DRY_RUN", raising=False)
    monkeypatch.setenv("CARDPAY_AUTOCONFIRM", "true")

    def run(*argv):
        main(["--datadir", temp_dir, "--network", "devnet", "--contracts-module", "sample_contracts", *argv])
    return run


def open_coordinator(datadir):
    db = StorageDB(os.path.join(datadir, "devnet.db"))
    return db, UpgradeCoordinator(LocalChain(db, NETWORKS["devnet"]), db=db)


def test_init_creates_keys_and_state(cli, temp_dir, capsys):
    cli("init")
    out = capsys.readouterr().out
    assert "Generated owner key" in out
    assert "initialized on devnet at version 1.0.0" in out

    cli("init")
    assert "already initialized" in capsys.readouterr().out

    cli("keys", "list")
    out = capsys.readouterr().out
    assert "owner" in out
    assert "coordinator" in out


def test_commands_need_init(cli, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli("status")
    assert exc_info.value.code == 1
    assert "run 'init' first" in capsys.readouterr().out


def test_deploy_propose_commit(cli, temp_dir, capsys):
    cli("init")
    cli("keys", "add", "alice")
    cli("setup", "--proposer", "alice")
    cli("deploy", "MerchantManager", "MerchantManager")

    with open(os.path.join(temp_dir, "addresses-devnet.json")) as f:
        book = json.load(f)
    assert book["MerchantManager"]["contractName"] == "MerchantManager"

    cli("propose", "MerchantManager", "--code", "MerchantManagerV3", "--from", "alice")
    cli("propose", "MerchantManager", "--code", "MerchantManagerV3", "--call", "registerMerchant",
        "--args", json.dumps(["0x" + "11" * 20, "0x" + "22" * 20]), "--from", "alice")
    capsys.readouterr()

    cli("status")
    out = capsys.readouterr().out
    assert "Version:     1.0.0" in out
    assert "registerMerchant(" in out

    cli("commit")
    out = capsys.readouterr().out
    assert "Protocol upgraded to 1.0.1 (1 change(s))" in out

    db, coordinator = open_coordinator(temp_dir)
    try:
        assert coordinator.version == "1.0.1"
        assert coordinator.nonce == 1
        assert coordinator.get_pending_changes() == []
        proxy = book["MerchantManager"]["proxy"]
        assert coordinator.chain.call(proxy, "generation") == 3
        assert coordinator.chain.call(proxy, "merchantSafes", "0x" + "11" * 20) == ["0x" + "22" * 20]
    finally:
        db.close()


def test_commit_with_version_bump_kind(cli, temp_dir, capsys, monkeypatch):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    cli("propose", "MerchantManager", "--code", "MerchantManagerV3")
    monkeypatch.setenv("CARDPAY_VERSION", "minor")

    cli("commit")
    assert "Protocol upgraded to 1.1.0" in capsys.readouterr().out


def test_commit_aborts_without_confirmation(cli, capsys, monkeypatch):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    cli("propose", "MerchantManager", "--code", "MerchantManagerV3")
    monkeypatch.setenv("CARDPAY_AUTOCONFIRM", "false")
    monkeypatch.setattr("builtins.input", lambda prompt: "n")

    with pytest.raises(SystemExit) as exc_info:
        cli("commit")
    assert exc_info.value.code == 1
    assert "Aborted." in capsys.readouterr().out


def test_commit_detects_commit_made_while_confirming(cli, temp_dir, capsys, monkeypatch):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    cli("propose", "MerchantManager", "--code", "MerchantManagerV3")
    capsys.readouterr()
    monkeypatch.setenv("CARDPAY_AUTOCONFIRM", "false")

    def commit_elsewhere(prompt):
        db, other = open_coordinator(temp_dir)
        try:
            other.commit(other.owner, "1.0.5", other.nonce)
        finally:
            db.close()
        return "y"

    monkeypatch.setattr("builtins.input", commit_elsewhere)
    with pytest.raises(SystemExit) as exc_info:
        cli("commit")
    assert exc_info.value.code == 1
    out = capsys.readouterr().out
    assert "nonce: 0" in out
    assert "Stale upgrade nonce" in out

    db, coordinator = open_coordinator(temp_dir)
    try:
        assert coordinator.version == "1.0.5"
        assert coordinator.nonce == 1
    finally:
        db.close()


def test_propose_skips_code_already_deployed(cli, temp_dir, capsys):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    capsys.readouterr()

    cli("propose", "MerchantManager", "--code", "MerchantManager")
    out = capsys.readouterr().out
    assert "Deployed code already matches for MerchantManager" in out
    assert "Staged" not in out

    db, coordinator = open_coordinator(temp_dir)
    try:
        assert coordinator.get_pending_changes() == []
    finally:
        db.close()


def test_dry_run_stages_and_commits_nothing(cli, temp_dir, capsys, monkeypatch):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    capsys.readouterr()

    cli("propose", "MerchantManager", "--code", "MerchantManagerV3", "--dry-run")
    out = capsys.readouterr().out
    assert "Code changed for MerchantManager (MerchantManager -> MerchantManagerV3)" in out
    assert "Dry run: would stage an upgrade of MerchantManager to MerchantManagerV3" in out

    db, coordinator = open_coordinator(temp_dir)
    try:
        assert coordinator.get_pending_changes() == []
    finally:
        db.close()

    cli("propose", "MerchantManager", "--code", "MerchantManagerV3")
    monkeypatch.setenv("CARDPAY_DRY_RUN", "true")
    cli("commit")
    assert "Dry run, nothing committed." in capsys.readouterr().out

    db, coordinator = open_coordinator(temp_dir)
    try:
        assert coordinator.version == "1.0.0"
        assert len(coordinator.get_pending_changes()) == 1
    finally:
        db.close()



def test_withdraw(cli, capsys):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    cli("propose", "MerchantManager", "--code", "MerchantManagerV3")
    cli("withdraw", "MerchantManager")
    cli("withdraw", "MerchantManager")

    out = capsys.readouterr().out
    assert "Withdrew pending change for MerchantManager" in out
    assert "No pending change for MerchantManager" in out


def test_protocol_errors_exit_nonzero(cli, capsys):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManager")
    capsys.readouterr()

    with pytest.raises(SystemExit) as exc_info:
        cli("deploy", "MerchantManager", "MerchantManager")
    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().out

    with pytest.raises(SystemExit):
        cli("propose", "MerchantManager")
    assert "Nothing to propose" in capsys.readouterr().out


def test_migrate_command(cli, temp_dir, capsys):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManagerV1")
    for i in range(3):
        cli("propose", "MerchantManager", "--call", "registerMerchant",
            "--args", json.dumps([f"0x{i + 1:040x}", f"0x{i + 10:040x}"]))
        cli("commit", "--version", f"1.0.{i + 1}")
    capsys.readouterr()

    cli("migrate", "MerchantManager", "--code", "MerchantManager", "--upgrader", "MerchantManagerUpgrader",
        "--event", "MerchantCreation", "--arg", "merchant", "--chunk-size", "2", "--from", "coordinator")

    assert "3 key(s) in 2 chunk(s)" in capsys.readouterr().out


def test_verify_command_uses_archived_layout(cli, temp_dir, capsys):
    cli("init")
    cli("deploy", "MerchantManager", "MerchantManagerV1")
    cli("propose", "MerchantManager", "--call", "registerMerchant",
        "--args", json.dumps(["0x" + "01" * 20, "0x" + "02" * 20]))
    cli("commit")
    archive = os.path.join(temp_dir, "old-storage-layout")
    os.makedirs(archive)
    LEGACY_LAYOUT.save(os.path.join(archive, "MerchantManagerV1.json"))
    new_path = os.path.join(temp_dir, "MerchantManager.json")
    CURRENT_LAYOUT.save(new_path)
    capsys.readouterr()

    cli("verify", "MerchantManager", "--new-layout", new_path, "--code", "MerchantManager",
        "--upgrader", "MerchantManagerUpgrader", "--event", "MerchantCreation")

    assert "1 key(s) migrated" in capsys.readouterr().out


def test_layout_diff(cli, temp_dir, capsys):
    old_path = os.path.join(temp_dir, "old.json")
    new_path = os.path.join(temp_dir, "new.json")
    LEGACY_LAYOUT.save(old_path)
    CURRENT_LAYOUT.save(new_path)

    cli("layout-diff", old_path, new_path)
    assert "storage layout compatible" in capsys.readouterr().out

    moved = CURRENT_LAYOUT.model_copy(update={"storage": CURRENT_LAYOUT.storage[:-2]})
    moved.save(new_path)
    with pytest.raises(SystemExit) as exc_info:
        cli("layout-diff", old_path, new_path)
    assert exc_info.value.code == 1
    assert "storage length differs" in capsys.readouterr().out


def test_parser_defaults():
    args = build_parser().parse_args(["propose", "MerchantManager", "--impl", "0x" + "00" * 19 + "01"])
    assert args.sender == "owner"
    assert args.datadir == "./.cardprotocol"
    assert args.call is None
