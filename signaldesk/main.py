"""SignalDesk — application entry point.

Builds the FastAPI server around a ``SignalWorker`` and provides the CLI
entry point.  ``--once`` runs a single cycle and exits; otherwise the
worker polls in the background while uvicorn serves the API.
"""

import argparse
import asyncio
import json
import logging
import signal
from typing import Optional, Sequence

import uvicorn
from fastapi import FastAPI

from signaldesk.alerts import WebhookNotifier
from signaldesk.api.routers import router
from signaldesk.config import Config, load_config
from signaldesk.market.feed import build_feed
from signaldesk.meta.filter import MetaModelManager
from signaldesk.repos.state_store import JsonStateStore
from signaldesk.worker import SignalWorker

logger = logging.getLogger("signaldesk")


def create_app(worker: SignalWorker, config: Config) -> FastAPI:
    """FastAPI app with *worker* and *config* on ``app.state``."""
    app = FastAPI(title="SignalDesk API", version="0.1.0")
    app.state.worker = worker
    app.state.config = config
    app.include_router(router)
    return app


def build_worker(config: Config) -> SignalWorker:
    """Wire the worker to its live collaborators."""
    return SignalWorker(
        config=config,
        feed=build_feed(config.data_source),
        store=JsonStateStore(config.signal_store_path),
        meta_models=MetaModelManager(config.meta_model_path, config.meta_model_json),
        notifier=WebhookNotifier(config.webhook_url),
    )


# ── CLI ──────────────────────────────────────────────────────────────────


async def _serve(worker: SignalWorker, config: Config, port: int) -> None:
    """Start the API server and the polling loop concurrently."""
    app = create_app(worker, config)
    server = uvicorn.Server(
        uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, worker.stop)
    except NotImplementedError:
        pass

    logger.info(
        "Starting SignalDesk on port %d: %d symbol(s) × %d timeframe(s), every %ds",
        port, len(config.symbols), len(config.timeframes), config.poll_seconds,
    )

    async def _run_server() -> None:
        try:
            await server.serve()
        finally:
            worker.stop()

    results = await asyncio.gather(
        _run_server(),
        worker.run_forever(config.poll_seconds),
        return_exceptions=True,
    )
    logger.info("SignalDesk stopped. Results: %s", results)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Parse CLI arguments and run once or serve."""
    parser = argparse.ArgumentParser(description="SignalDesk signal engine")
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument("--port", type=int, default=None, help="API port (default: API_PORT)")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    args = parser.parse_args(argv)

    config = load_config(args.env_file)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    worker = build_worker(config)
    worker.initialize()

    if args.once:
        snapshot = asyncio.run(worker.run())
        print(json.dumps(snapshot.to_dict(), indent=2))
        return 0 if snapshot.status == "ok" else 1

    asyncio.run(_serve(worker, config, args.port or config.api_port))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
