# MIT License
# Copyright (c) 2025 Hashborn

"""
Prometheus Metrics Exporter

Exports upgrade-coordination metrics in Prometheus format.

Metrics:
- Adoptions, proposals, withdrawals, commits
- Protocol nonce, pending changes, adopted proxies
- RPC retries
- Migration chunks and migrated keys
- Storage layout checks
"""

from prometheus_client import Counter, Gauge, CollectorRegistry

# Create registry for metrics
metrics_registry = CollectorRegistry()

# ═══════════════════════════════════════════════════════════════════
# COORDINATOR METRICS
# ═══════════════════════════════════════════════════════════════════

adoptions_total = Counter(
    'cardprotocol_adoptions_total',
    'Total number of adopted proxies',
    registry=metrics_registry
)

proposals_total = Counter(
    'cardprotocol_proposals_total',
    'Total number of staged changes',
    ['kind'],
    registry=metrics_registry
)

withdrawals_total = Counter(
    'cardprotocol_withdrawals_total',
    'Total number of withdrawn changes',
    registry=metrics_registry
)

commits_total = Counter(
    'cardprotocol_commits_total',
    'Total number of successful protocol upgrades',
    registry=metrics_registry
)

commit_failures_total = Counter(
    'cardprotocol_commit_failures_total',
    'Total number of rejected or reverted commits',
    ['reason'],
    registry=metrics_registry
)

protocol_nonce = Gauge(
    'cardprotocol_protocol_nonce',
    'Current upgrade nonce',
    registry=metrics_registry
)

pending_changes = Gauge(
    'cardprotocol_pending_changes',
    'Number of staged changes awaiting commit',
    registry=metrics_registry
)

adopted_proxies = Gauge(
    'cardprotocol_adopted_proxies',
    'Number of adopted proxies',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# EXECUTION METRICS
# ═══════════════════════════════════════════════════════════════════

rpc_retries_total = Counter(
    'cardprotocol_rpc_retries_total',
    'Total number of retried transient failures',
    ['operation'],
    registry=metrics_registry
)

chain_block_number = Gauge(
    'cardprotocol_chain_block_number',
    'Current devnet block number',
    registry=metrics_registry
)

# ═══════════════════════════════════════════════════════════════════
# MIGRATION METRICS
# ═══════════════════════════════════════════════════════════════════

migration_chunks_total = Counter(
    'cardprotocol_migration_chunks_total',
    'Total number of upgradeChunk transactions',
    ['contract_id'],
    registry=metrics_registry
)

migrated_keys_total = Counter(
    'cardprotocol_migrated_keys_total',
    'Total number of keys submitted for migration',
    ['contract_id'],
    registry=metrics_registry
)

migrations_completed_total = Counter(
    'cardprotocol_migrations_completed_total',
    'Total number of completed contract migrations',
    ['strategy'],
    registry=metrics_registry
)

layout_checks_total = Counter(
    'cardprotocol_layout_checks_total',
    'Total number of storage layout comparisons',
    ['result'],
    registry=metrics_registry
)


# ═══════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ═══════════════════════════════════════════════════════════════════

def update_metrics(coordinator=None, chain=None):
    """
    Update gauges from coordinator and chain state.
    Called after state changes and when metrics are scraped.

    Args:
        coordinator: Optional UpgradeCoordinator instance
        chain: Optional LocalChain instance
    """
    if coordinator is not None:
        state = coordinator.state
        protocol_nonce.set(state.nonce)
        pending_changes.set(len(state.pending_order))
        adopted_proxies.set(len(state.records))

    if chain is not None:
        chain_block_number.set(chain.block_number)
