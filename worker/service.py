"""
Worker process wiring.

Builds the store, signer, catalog, pipeline and refresh scheduler from
configuration, and runs the long-lived worker: health server plus the
periodic expiry refresh loop, until SIGTERM/SIGINT.
"""

import asyncio
import logging
import signal
import socket
import uuid
from dataclasses import dataclass
from typing import Optional

from config import (
    LOG_FORMAT,
    LOG_LEVEL,
    SCRATCH_DIR,
    SCRATCH_STALE_AGE,
    WORKER_HEALTH_PORT,
)
from core.database import database
from core.repository import MediaAssetRepository
from storage.object_store import ObjectStore, create_object_store
from storage.signing import UrlSigner, create_signer
from worker.alerts import (
    alert_worker_shutdown,
    alert_worker_startup,
    get_metrics,
    send_alert_fire_and_forget,
)
from worker.health_server import HealthServer
from worker.ingest import sweep_stale_scratch
from worker.pipeline import TranscodePipeline
from worker.refresh import RefreshScheduler, create_refresh_guard
from worker.transcoder import FFmpegTranscoder

logger = logging.getLogger(__name__)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(level=(level or LOG_LEVEL), format=LOG_FORMAT)


@dataclass
class Services:
    store: ObjectStore
    signer: UrlSigner
    repository: MediaAssetRepository
    pipeline: TranscodePipeline
    scheduler: RefreshScheduler


def build_services() -> Services:
    """Construct every pipeline component from configuration."""
    store = create_object_store()
    signer = create_signer(store)
    repository = MediaAssetRepository(database)
    pipeline = TranscodePipeline(store, signer, FFmpegTranscoder(), repository)
    scheduler = RefreshScheduler(repository, pipeline.rewriter, create_refresh_guard())
    return Services(store, signer, repository, pipeline, scheduler)


async def run_worker(services: Optional[Services] = None, health_port: int = WORKER_HEALTH_PORT) -> None:
    """Run the refresh worker until a shutdown signal arrives."""
    worker_id = f"{socket.gethostname()}-{str(uuid.uuid4())[:8]}"
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    services = services or build_services()
    removed = await asyncio.to_thread(sweep_stale_scratch, SCRATCH_DIR, SCRATCH_STALE_AGE)
    if removed:
        logger.info(f"Removed {removed} stale scratch director{'y' if removed == 1 else 'ies'}")

    await database.connect()
    health = HealthServer(port=health_port, refresh_in_flight_fn=lambda: services.scheduler.in_flight)
    try:
        assets = await services.repository.list_all()
        logger.info(f"Worker {worker_id} starting with {len(assets)} recorded asset(s)")
        send_alert_fire_and_forget(alert_worker_startup(worker_id, len(assets), removed))

        await health.start()
        health.set_ready(True)
        await services.scheduler.run(stop_event)
    finally:
        health.set_ready(False)
        await health.stop()
        await alert_worker_shutdown(worker_id)
        await database.disconnect()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.remove_signal_handler(sig)
        logger.info(f"Worker stopped. Metrics: {get_metrics().to_dict()}")


def main():
    """Entry point for the pipeline worker."""
    configure_logging()
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
