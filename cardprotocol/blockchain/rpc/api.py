from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import Optional
from ...protocol.types.common import ProtocolError
from ..core.chain import LocalChain
from ..core.events import event_bus
from ..observability.metrics import metrics_registry, update_metrics
from ..upgrade.coordinator import UpgradeCoordinator
import logging

logger = logging.getLogger(__name__)

app = FastAPI(title="CardProtocol Upgrade Coordinator RPC")

coordinator: Optional[UpgradeCoordinator] = None
chain: Optional[LocalChain] = None


def _require_coordinator() -> UpgradeCoordinator:
    if not coordinator:
        raise HTTPException(status_code=503, detail="Coordinator not initialized")
    return coordinator


@app.get("/status")
async def get_status():
    coord = _require_coordinator()
    status = coord.status()
    status["chain"] = coord.chain.accounts_summary()
    return status


@app.get("/proxies")
async def get_proxies():
    coord = _require_coordinator()
    return {
        "proxies": [record.model_dump() for record in coord.state.records.values()]
    }


@app.get("/proxies/{contract_id}")
async def get_proxy(contract_id: str):
    coord = _require_coordinator()
    try:
        record = coord.get_proxy_record(contract_id)
    except ProtocolError as e:
        raise HTTPException(status_code=404, detail=str(e))
    change = coord.get_pending_change(contract_id)
    return {
        **record.model_dump(),
        "current_implementation": coord.current_implementation(contract_id),
        "pending": change.model_dump() if change else None,
    }


@app.get("/pending")
async def get_pending():
    coord = _require_coordinator()
    return {
        "nonce": coord.nonce,
        "proxies": coord.get_pending_changes(),
        "changes": [coord.state.pending[cid].model_dump() for cid in coord.state.pending_order],
    }


@app.get("/proposers")
async def get_proposers():
    coord = _require_coordinator()
    return {"proposers": coord.get_proposers()}


@app.get("/report")
async def get_report(include_unchanged: bool = False):
    """Status report, simulating every staged change."""
    coord = _require_coordinator()
    return {"rows": [row.model_dump() for row in coord.report(include_unchanged=include_unchanged)]}


@app.get("/events")
async def get_events(event_type: Optional[str] = None):
    return {"events": [{"event_type": name, **data} for name, data in event_bus.recent(event_type)]}


@app.get("/tx/{tx_hash}/receipt")
async def get_tx_receipt(tx_hash: str):
    if not chain:
        raise HTTPException(status_code=503, detail="Chain not initialized")
    receipt = chain.receipts.get(tx_hash)
    if not receipt:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return receipt.to_dict()


@app.get("/metrics")
async def get_metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    try:
        update_metrics(coordinator, chain)
        metrics_data = generate_latest(metrics_registry)
        return Response(content=metrics_data, media_type=CONTENT_TYPE_LATEST)
    except Exception as e:
        logger.error(f"Metrics error: {e}")
        raise HTTPException(status_code=500, detail=f"Metrics error: {str(e)}")
