"""API routers — /signals, /refresh, /status, /health, /performance, /performance/calibration.

No business logic. Delegates to the worker and config stored on
``app.state`` at startup.
"""

from typing import Optional

from fastapi import APIRouter, Query, Request

router = APIRouter()


def _worker(request: Request):
    return request.app.state.worker


@router.get("/health")
async def health(request: Request):
    """Liveness plus the outcome of the last cycle."""
    snapshot = _worker(request).get_snapshot()
    return {
        "ok": True,
        "lastRun": snapshot.last_run if snapshot else None,
        "status": snapshot.status if snapshot else "unknown",
    }


@router.get("/signals")
async def get_signals(
    request: Request,
    symbol: Optional[str] = Query(default=None),
    timeframe: Optional[str] = Query(default=None),
    limit: int = Query(default=200, ge=1),
):
    """Return recent signals, optionally filtered by symbol and timeframe."""
    worker = _worker(request)
    signals = worker.get_history(
        limit=limit,
        symbol=symbol.upper() if symbol else None,
        timeframe=timeframe,
    )
    snapshot = worker.get_snapshot()
    return {
        "lastRun": snapshot.last_run if snapshot else None,
        "runMs": snapshot.run_ms if snapshot else None,
        "status": snapshot.status if snapshot else "unknown",
        "count": len(signals),
        "signals": [s.to_dict() for s in signals],
    }


@router.post("/refresh")
async def refresh(request: Request):
    """Run a cycle now and return its snapshot."""
    snapshot = await _worker(request).run()
    return snapshot.to_dict() if snapshot else {"status": "unknown"}


@router.get("/status")
async def status(request: Request):
    """Echo the active configuration."""
    config = request.app.state.config
    return {**config.to_dict(), "persistPath": config.signal_store_path}


@router.get("/performance")
async def performance(
    request: Request,
    symbol: Optional[str] = Query(default=None),
    timeframe: Optional[str] = Query(default=None),
):
    """Aggregate stored outcomes of the signal history."""
    summary = _worker(request).performance(
        symbol=symbol.upper() if symbol else None, timeframe=timeframe
    )
    return summary.to_dict()


@router.get("/performance/calibration")
async def calibration(
    request: Request,
    symbol: Optional[str] = Query(default=None),
    timeframe: Optional[str] = Query(default=None),
):
    """Win rate and expectancy per score bucket, with a threshold suggestion."""
    result = _worker(request).calibration(
        symbol=symbol.upper() if symbol else None, timeframe=timeframe
    )
    return result.to_dict()
