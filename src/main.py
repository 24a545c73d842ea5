"""Entrypoint wiring together the forwarding components.

- Loads configuration from environment.
- Builds the credential cache, bookmark store, tail reader and blob client.
- Runs the forwarding loop until SIGINT/SIGTERM (or one cycle with RELAY_RUN_ONCE).

Shutdown never cancels an in-flight append: the stop request is honoured
between sources and between cycles.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from datetime import timedelta

from blobstore.client import AppendBlobClient
from config import Config, load_config
from forwarding.bookmarks import BookmarkStore
from forwarding.credentials import CredentialCache, StaticSasProvider
from forwarding.engine import ForwardingLoop
from forwarding.sources import JsonlFileLogSource
from forwarding.tail import TailReader
from observability import DuckDBObservabilitySink, ObservabilityRecorder

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # urllib3 logs full request URLs (including SAS signatures) at DEBUG.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_loop(cfg: Config, *, recorder: ObservabilityRecorder | None = None) -> tuple[ForwardingLoop, AppendBlobClient]:
    """Construct the forwarding loop and the blob client it writes through."""
    relay = cfg.relay
    credentials = CredentialCache(
        StaticSasProvider(cfg.blobstore.sas_token),
        container=cfg.blobstore.container,
        lifetime=timedelta(minutes=relay.credential_lifetime_minutes),
        safety_margin=timedelta(minutes=relay.safety_margin_minutes),
    )
    client = AppendBlobClient(cfg.blobstore, credentials)
    tail = TailReader(
        JsonlFileLogSource(relay.source_dir),
        max_batch_records=relay.max_batch_records,
        timeout_s=cfg.blobstore.request_timeout,
    )
    loop = ForwardingLoop(
        sources=relay.sources,
        tail=tail,
        bookmarks=BookmarkStore(relay.state_dir),
        appender=client,
        credentials=credentials,
        interval_s=relay.poll_interval,
        max_chunks_per_cycle=relay.max_chunks_per_cycle,
        recorder=recorder,
    )
    return loop, client


async def run(cfg: Config) -> None:
    """Run the forwarding loop until a stop signal arrives."""
    recorder: ObservabilityRecorder | None = None
    if cfg.observability_db_path is not None:
        recorder = ObservabilityRecorder(sink=DuckDBObservabilitySink(path=cfg.observability_db_path))

    forwarding_loop, client = build_loop(cfg, recorder=recorder)

    event_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            event_loop.add_signal_handler(sig, _on_signal, sig, forwarding_loop)
        except NotImplementedError:  # pragma: no cover - Windows
            signal.signal(sig, lambda signum, _frame: forwarding_loop.request_stop())

    try:
        await forwarding_loop.run(once=cfg.relay.run_once)
    finally:
        await client.aclose()
        if recorder is not None:
            await recorder.aclose()


def _on_signal(sig: signal.Signals, forwarding_loop: ForwardingLoop) -> None:
    logger.info("Received %s, finishing the current source and shutting down...", sig.name)
    forwarding_loop.request_stop()


def main() -> None:
    """CLI entrypoint for `python src/main.py` / the `event-relay` script."""
    cfg = load_config()
    configure_logging(cfg.relay.log_level)
    logger.info(
        "Starting event relay: container=%s sources=%s interval=%.0fs",
        cfg.blobstore.container, ",".join(cfg.relay.sources), cfg.relay.poll_interval,
    )
    asyncio.run(run(cfg))


if __name__ == "__main__":
    main()
