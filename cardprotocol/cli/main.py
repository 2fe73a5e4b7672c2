# MIT License
# Copyright (c) 2025 Hashborn

import argparse
import importlib
import json
import logging
import os
import sys
from typing import List, Optional

import requests
from uvicorn import Config, Server

from .address_book import AddressBook
from .keystore import KeyStore
from ..blockchain.contracts.abi import describe_call, encode_call
from ..blockchain.core.chain import LocalChain
from ..blockchain.rpc import api
from ..blockchain.storage.db import StorageDB
from ..blockchain.upgrade.coordinator import STATE_KEY, UpgradeCoordinator
from ..blockchain.upgrade.layout import StorageLayoutDiffer
from ..blockchain.upgrade.migrations import ChunkedSetMigrationStrategy, DEFAULT_UPGRADER, RepointAndCallStrategy
from ..blockchain.upgrade.progress import ProgressStore
from ..blockchain.upgrade.set_migration import SetMigrationEngine
from ..blockchain.upgrade.types import BUMP_KINDS, Version
from ..protocol.config.params import get_network
from ..protocol.types.common import ProtocolError, ValidationError
from ..protocol.types.layout import StorageLayout

logger = logging.getLogger(__name__)

DEFAULT_DATADIR = "./.cardprotocol"
DEFAULT_NODE = "http://localhost:8000"
OLD_LAYOUT_DIR = "old-storage-layout"


class CliContext:
    """Everything a command needs, opened from ``--datadir`` and ``--network``."""

    def __init__(self, args):
        self.datadir = args.datadir
        os.makedirs(self.datadir, exist_ok=True)
        self.network = get_network(args.network)
        self.db = StorageDB(os.path.join(self.datadir, f"{self.network.network_id}.db"))
        self.chain = LocalChain(self.db, self.network)
        self.keys = KeyStore(os.path.join(self.datadir, "keys"))
        self.address_book = AddressBook(self.datadir, self.network.network_id)
        self._coordinator = None

    @property
    def initialized(self) -> bool:
        return self.db.get_state(STATE_KEY) is not None

    @property
    def coordinator(self) -> UpgradeCoordinator:
        if self._coordinator is None:
            if not self.initialized:
                raise ValidationError("Coordinator not initialized, run 'init' first")
            self._coordinator = UpgradeCoordinator(self.chain, db=self.db)
        return self._coordinator

    def sender(self, args) -> str:
        return self.keys.address_of(args.sender)

    def close(self):
        self.db.close()


def confirm(prompt: str, assume_yes: bool = False) -> bool:
    if assume_yes or os.environ.get("CARDPAY_AUTOCONFIRM", "").lower() == "true":
        return True
    answer = input(f"{prompt} [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def dry_run(args) -> bool:
    return getattr(args, "dry_run", False) or os.environ.get("CARDPAY_DRY_RUN", "").lower() == "true"


def parse_json_args(raw: Optional[str]) -> List:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except ValueError as e:
        raise ValidationError(f"Arguments must be a JSON list: {e}")
    if not isinstance(value, list):
        raise ValidationError("Arguments must be a JSON list")
    return value


def print_report(rows):
    if not rows:
        print("No pending changes.")
        return
    print(f"{'Contract ID':<28} {'Name':<24} {'Proxy':<44} {'Proposed':<44} {'Call':<30} {'Failing'}")
    print("-" * 190)
    for row in rows:
        print(f"{row['contract_id']:<28} {row['contract_name'] or '-':<24} {row['proxy']:<44} "
              f"{row['proposed_implementation'] or '-':<44} {row['proposed_call'] or '-':<30} "
              f"{row['failing_call'] or '-'}")


def _implementation(ctx: CliContext, args) -> str:
    if args.impl:
        return args.impl
    if args.code:
        address = ctx.chain.deploy(ctx.sender(args), args.code)
        print(f"Deployed {args.code} implementation at {address}")
        return address
    raise ValidationError("One of --impl or --code is required")


def _strategy(args):
    if args.event:
        return ChunkedSetMigrationStrategy(args.upgrader, args.event, args.arg, args.chunk_size)
    return RepointAndCallStrategy(args.upgrader)


# --- Commands ---

def cmd_init(ctx: CliContext, args):
    """Create the owner and coordinator keys and the coordinator state."""
    for name in ("owner", "coordinator"):
        if not ctx.keys.get_key(name):
            key = ctx.keys.create_key(name)
            print(f"Generated {name} key: {key['address']}")
    if ctx.initialized:
        print(f"Coordinator already initialized in {ctx.datadir}")
        return
    coordinator = UpgradeCoordinator(
        ctx.chain,
        owner=ctx.keys.address_of("owner"),
        address=ctx.keys.address_of("coordinator"),
        db=ctx.db,
    )
    print(f"Coordinator {coordinator.address} initialized on {ctx.network.network_id} "
          f"at version {coordinator.version}")


def cmd_keys(ctx: CliContext, args):
    if args.subcommand == "add":
        key = ctx.keys.create_key(args.name)
        print(f"Key '{args.name}' created.")
        print(f"Address: {key['address']}")
        return
    keys = ctx.keys.list_keys()
    if not keys:
        print("No keys found.")
        return
    print(f"{'Name':<15} {'Address':<45}")
    print("-" * 60)
    for k in keys:
        print(f"{k['name']:<15} {k['address']:<45}")


def cmd_setup(ctx: CliContext, args):
    proposers = [ctx.keys.address_of(p) for p in args.proposer]
    ctx.coordinator.setup(ctx.sender(args), proposers, args.version_manager)
    print(f"Proposers: {', '.join(proposers) or 'none'}")


def cmd_deploy(ctx: CliContext, args):
    """Deploy a proxy, hand it over to the coordinator and adopt it."""
    coordinator = ctx.coordinator
    sender = ctx.sender(args)
    init_args = parse_json_args(args.init_args) if args.init_args else [coordinator.address]
    deployment = ctx.chain.deploy_proxy(sender, args.code, args.init_method or None, *init_args)
    print(f"Deployed {args.code} proxy at {deployment.proxy}")

    ctx.chain.transact(sender, deployment.proxy_admin, "transferOwnership", coordinator.address)
    contract_owner = ctx.chain.call(deployment.proxy, "owner")
    if contract_owner != coordinator.address:
        ctx.chain.transact(sender, deployment.proxy, "transferOwnership", coordinator.address)

    coordinator.adopt(sender, args.contract_id, deployment.proxy, deployment.proxy_admin)
    ctx.address_book.set(args.contract_id, deployment.proxy, args.code)
    print(f"Adopted {args.contract_id} (ProxyAdmin {deployment.proxy_admin})")


def cmd_adopt(ctx: CliContext, args):
    record = ctx.coordinator.adopt(ctx.sender(args), args.contract_id, args.proxy, args.proxy_admin)
    implementation = ctx.coordinator.current_implementation(args.contract_id)
    ctx.address_book.set(args.contract_id, record.proxy_address, ctx.chain.get_code(implementation) or "")
    print(f"Adopted {args.contract_id} at {record.proxy_address}")


def cmd_propose(ctx: CliContext, args):
    coordinator = ctx.coordinator
    sender = ctx.sender(args)
    data = encode_call(args.call, *parse_json_args(args.args)) if args.call else None
    if not (args.impl or args.code or data):
        raise ValidationError("Nothing to propose: pass --impl/--code and/or --call")

    upgrade_code = args.impl or args.code
    if args.code:
        current = ctx.chain.get_code(coordinator.current_implementation(args.contract_id))
        if current == args.code:
            print(f"Deployed code already matches for {args.contract_id} ({args.code}) "
                  f"- no need to deploy new version")
            upgrade_code = None
        else:
            print(f"Code changed for {args.contract_id} ({current} -> {args.code})... proposing upgrade")

    if dry_run(args):
        if upgrade_code:
            print(f"Dry run: would stage an upgrade of {args.contract_id} to {upgrade_code}")
        if data:
            print(f"Dry run: would stage {describe_call(data)} on {args.contract_id}")
        return

    implementation = _implementation(ctx, args) if upgrade_code else None
    if implementation and data:
        change = coordinator.propose_upgrade_and_call(sender, args.contract_id, implementation, data)
    elif implementation:
        change = coordinator.propose_upgrade(sender, args.contract_id, implementation)
    elif data:
        change = coordinator.propose_call(sender, args.contract_id, data)
    else:
        return
    print(f"Staged {change.kind.value} for {args.contract_id}")


def cmd_withdraw(ctx: CliContext, args):
    if ctx.coordinator.withdraw_changes(ctx.sender(args), args.contract_id):
        print(f"Withdrew pending change for {args.contract_id}")
    else:
        print(f"No pending change for {args.contract_id}")


def cmd_commit(ctx: CliContext, args):
    coordinator = ctx.coordinator
    if args.version:
        new_version = args.version
    else:
        kind = os.environ.get("CARDPAY_VERSION", "patch")
        if kind not in BUMP_KINDS:
            raise ValidationError(f"CARDPAY_VERSION must be one of: {', '.join(BUMP_KINDS)}")
        new_version = str(Version.from_string(coordinator.version).bump(kind))

    nonce = coordinator.nonce
    print_report([row.model_dump() for row in coordinator.report()])
    print(f"\nCurrent version: {coordinator.version}, new version: {new_version}, nonce: {nonce}")
    if dry_run(args):
        print("Dry run, nothing committed.")
        return
    if not confirm("Commit these changes?", args.yes):
        print("Aborted.")
        sys.exit(1)

    changed = coordinator.commit(ctx.sender(args), new_version, nonce)
    print(f"Protocol upgraded to {new_version} ({len(changed)} change(s))")


def cmd_status(ctx: Optional[CliContext], args):
    if args.node:
        resp = requests.get(f"{args.node}/report", params={"include_unchanged": str(args.all).lower()}, timeout=10)
        if resp.status_code != 200:
            print(f"Error: {resp.text}")
            sys.exit(1)
        print_report(resp.json()["rows"])
        return

    coordinator = ctx.coordinator
    print(f"Network:     {ctx.network.network_id}")
    print(f"Coordinator: {coordinator.address}")
    print(f"Version:     {coordinator.version}")
    print(f"Nonce:       {coordinator.nonce}")
    print(f"Proposers:   {', '.join(coordinator.get_proposers()) or 'none'}")
    for contract_id, progress in ProgressStore(ctx.db).in_progress().items():
        print(f"Migrating:   {contract_id} ({len(progress.processed)} key(s) done, upgrader {progress.upgrader})")
    print()
    print_report([row.model_dump() for row in coordinator.report(include_unchanged=args.all)])


def _engine(ctx: CliContext) -> SetMigrationEngine:
    return SetMigrationEngine(ctx.chain, progress=ProgressStore(ctx.db))


def cmd_migrate(ctx: CliContext, args):
    record = ctx.coordinator.get_proxy_record(args.contract_id)
    implementation = _implementation(ctx, args)
    run = _engine(ctx).migrate(args.contract_id, record.proxy_address, record.proxy_admin_address,
                               implementation, strategy=_strategy(args))
    print(f"Migrated {args.contract_id}: {len(run.keys)} key(s) in {run.chunks} chunk(s), "
          f"now on {implementation}")


def cmd_verify(ctx: CliContext, args):
    record = ctx.coordinator.get_proxy_record(args.contract_id)
    entry = ctx.address_book.get(args.contract_id)
    contract_name = entry["contractName"] if entry else args.contract_id
    old_path = args.old_layout or os.path.join(ctx.datadir, OLD_LAYOUT_DIR, f"{contract_name}.json")
    old_layout = StorageLayout.load(old_path, contract_name)
    new_layout = StorageLayout.load(args.new_layout, contract_name)
    implementation = _implementation(ctx, args)
    result = _engine(ctx).verify(args.contract_id, record.proxy_address, record.proxy_admin_address,
                                 implementation, old_layout, new_layout,
                                 strategy=_strategy(args), ignore_labels=args.ignore)
    print(f"Verified {args.contract_id}: {len(result.new_snapshot.values)} value(s) preserved, "
          f"{len(result.keys)} key(s) migrated")


def cmd_layout_diff(args):
    old_layout = StorageLayout.load(args.old)
    new_layout = StorageLayout.load(args.new)
    report = StorageLayoutDiffer().compare(old_layout, new_layout, ignore_labels=args.ignore)
    if report.ok:
        print(f"{new_layout.contract_name}: storage layout compatible")
        return
    for message in report.messages():
        print(message)
    sys.exit(1)


def cmd_serve(ctx: CliContext, args):
    api.chain = ctx.chain
    api.coordinator = ctx.coordinator
    print(f"Serving coordinator RPC on {args.host}:{args.port}")
    Server(Config(app=api.app, host=args.host, port=args.port, log_level=args.log_level.lower())).run()


# --- Parser ---

def _add_sender(p):
    p.add_argument("--from", dest="sender", default="owner", help="Key name or address to act as (default: owner)")


def _add_implementation(p):
    p.add_argument("--impl", help="Address of an already deployed implementation")
    p.add_argument("--code", help="Contract code to deploy as the new implementation")


def _add_strategy(p):
    p.add_argument("--upgrader", default=DEFAULT_UPGRADER, help="Storage upgrader contract code")
    p.add_argument("--event", help="Event whose arguments are the keys of a keyed set (enables chunking)")
    p.add_argument("--arg", default="merchant", help="Event argument holding the key")
    p.add_argument("--chunk-size", type=int, default=None, help="Keys per upgradeChunk transaction")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cardprotocol", description="Card protocol upgrade coordinator")
    parser.add_argument("--datadir", default=DEFAULT_DATADIR, help="Data directory")
    parser.add_argument("--network", default=None, help="Network (default: $CARDPAY_NETWORK or devnet)")
    parser.add_argument("--log-level", default="WARNING", help="Logging level")
    parser.add_argument("--contracts-module", action="append", default=[],
                        help="Module registering contract classes (repeatable)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Initialize keys and coordinator state")

    p_keys = subparsers.add_parser("keys", help="Manage keys")
    sp_keys = p_keys.add_subparsers(dest="subcommand", required=True)
    pk_add = sp_keys.add_parser("add", help="Create new key")
    pk_add.add_argument("name", help="Key name")
    sp_keys.add_parser("list", help="List keys")

    p_setup = subparsers.add_parser("setup", help="Set proposers and version manager")
    p_setup.add_argument("--proposer", action="append", default=[], help="Proposer key name or address")
    p_setup.add_argument("--version-manager", help="VersionManager address")
    _add_sender(p_setup)

    p_deploy = subparsers.add_parser("deploy", help="Deploy a proxied contract and adopt it")
    p_deploy.add_argument("contract_id")
    p_deploy.add_argument("code", help="Contract code name")
    p_deploy.add_argument("--init-method", default="initialize", help="Initializer ('' for none)")
    p_deploy.add_argument("--init-args", help="Initializer arguments as a JSON list (default: [coordinator])")
    _add_sender(p_deploy)

    p_adopt = subparsers.add_parser("adopt", help="Adopt an existing proxy")
    p_adopt.add_argument("contract_id")
    p_adopt.add_argument("proxy")
    p_adopt.add_argument("proxy_admin")
    _add_sender(p_adopt)

    p_propose = subparsers.add_parser("propose", help="Stage an upgrade and/or call")
    p_propose.add_argument("contract_id")
    _add_implementation(p_propose)
    p_propose.add_argument("--call", help="Method to call on the proxy")
    p_propose.add_argument("--args", help="Call arguments as a JSON list")
    p_propose.add_argument("--dry-run", action="store_true", help="Show what would be staged (or $CARDPAY_DRY_RUN=true)")
    _add_sender(p_propose)

    p_withdraw = subparsers.add_parser("withdraw", help="Withdraw a staged change")
    p_withdraw.add_argument("contract_id")
    _add_sender(p_withdraw)

    p_commit = subparsers.add_parser("commit", help="Apply every staged change")
    p_commit.add_argument("--version", help="New protocol version (default: bump per $CARDPAY_VERSION)")
    p_commit.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    p_commit.add_argument("--dry-run", action="store_true", help="Show the report without committing")
    _add_sender(p_commit)

    p_status = subparsers.add_parser("status", help="Show adopted contracts and staged changes")
    p_status.add_argument("--all", action="store_true", help="Include contracts without staged changes")
    p_status.add_argument("--node", help=f"Query a running coordinator RPC instead (e.g. {DEFAULT_NODE})")

    p_migrate = subparsers.add_parser("migrate", help="Migrate set storage and upgrade")
    p_migrate.add_argument("contract_id")
    _add_implementation(p_migrate)
    _add_strategy(p_migrate)
    _add_sender(p_migrate)

    p_verify = subparsers.add_parser("verify", help="Rehearse a migration and compare storage")
    p_verify.add_argument("contract_id")
    p_verify.add_argument("--old-layout", help="Archived layout of the current implementation "
                          f"(default: <datadir>/{OLD_LAYOUT_DIR}/<contractName>.json)")
    p_verify.add_argument("--new-layout", required=True, help="Layout of the new implementation")
    p_verify.add_argument("--ignore", action="append", default=[], help="Label to leave out of the comparison")
    _add_implementation(p_verify)
    _add_strategy(p_verify)
    _add_sender(p_verify)

    p_diff = subparsers.add_parser("layout-diff", help="Compare two storage layouts")
    p_diff.add_argument("old")
    p_diff.add_argument("new")
    p_diff.add_argument("--ignore", action="append", default=[], help="Label to leave out of the comparison")

    p_serve = subparsers.add_parser("serve", help="Serve the read-only RPC API")
    p_serve.add_argument("--host", default="127.0.0.1", help="RPC Host")
    p_serve.add_argument("--port", type=int, default=8000, help="RPC Port")

    return parser


COMMANDS = {
    "init": cmd_init,
    "keys": cmd_keys,
    "setup": cmd_setup,
    "deploy": cmd_deploy,
    "adopt": cmd_adopt,
    "propose": cmd_propose,
    "withdraw": cmd_withdraw,
    "commit": cmd_commit,
    "status": cmd_status,
    "migrate": cmd_migrate,
    "verify": cmd_verify,
    "serve": cmd_serve,
}


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    )

    ctx = None
    try:
        for module in args.contracts_module:
            importlib.import_module(module)
            logger.info(f"Loaded contracts from {module}")

        if args.command == "layout-diff":
            cmd_layout_diff(args)
            return
        if args.command == "status" and args.node:
            cmd_status(None, args)
            return

        ctx = CliContext(args)
        COMMANDS[args.command](ctx, args)
    except (ProtocolError, ValueError, ImportError, OSError, requests.RequestException) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        if ctx is not None:
            ctx.close()


if __name__ == "__main__":
    main()
