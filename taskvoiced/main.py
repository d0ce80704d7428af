"""Main entry point for taskvoiced daemon."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .audio_capture import AudioCapture
from .config import load_config
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .model_cache import ModelCache
from .models import ModelStore
from .pipeline_manager import PipelineOrchestrator
from .reconciler import Reconciler
from .smart_parser import OllamaSmartParser
from .state import DaemonStateManager
from .task_store import TaskStore

logger = logging.getLogger(__name__)

__all__ = ["run"]

EVENT_POLL_INTERVAL_S = 0.05


async def pump_events(
    orchestrator: PipelineOrchestrator,
    ipc_server: IPCServer,
    interval: float = EVENT_POLL_INTERVAL_S,
) -> None:
    """Poll pipeline events and forward them to subscribers until cancelled.

    Polling applies task changes to the store, so it runs in a worker thread.
    """
    while True:
        events = await asyncio.to_thread(orchestrator.poll_events)
        if events:
            await ipc_server.publish_events(events)
        await asyncio.sleep(interval)


async def main() -> int:
    """Main daemon function.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    try:
        config = load_config()
    except Exception as e:
        print(f"Error loading configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(config.daemon.log_level, config.daemon.computed_log_file)
    logger.info("Starting taskvoiced daemon...")

    state_manager = DaemonStateManager()
    shutdown_event = asyncio.Event()

    try:
        task_store = TaskStore(config.daemon.computed_database_path)
        model_store = ModelStore(config.daemon.computed_models_dir)
        model_cache = ModelCache(model_store, config.whisper)
        smart_parser = (
            OllamaSmartParser(config.smart_parser) if config.smart_parser.enabled else None
        )
        orchestrator = PipelineOrchestrator(
            config,
            AudioCapture(),
            model_cache,
            Reconciler(task_store),
            state_manager=state_manager,
            smart_parser=smart_parser,
        )

        ipc_server = IPCServer(
            config.daemon.computed_socket_path,
            state_manager,
            shutdown_event,
            orchestrator,
            task_store,
            model_store,
        )

        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        await ipc_server.start()
        pump_task = asyncio.create_task(pump_events(orchestrator, ipc_server))

        # Loading can take a while; recordings made meanwhile wait on the cache lock
        preload_task = asyncio.create_task(asyncio.to_thread(orchestrator.preload_model))

        logger.info("Daemon started successfully")
        await shutdown_event.wait()
        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon startup:")
        return 1

    finally:
        # Stop in reverse order
        if "pump_task" in locals():
            pump_task.cancel()
            await asyncio.gather(pump_task, return_exceptions=True)
        if "ipc_server" in locals() and ipc_server._server:
            await ipc_server.stop()
        if "orchestrator" in locals():
            orchestrator.join(timeout=5.0)
            await asyncio.to_thread(orchestrator.poll_events)
        if "preload_task" in locals():
            await asyncio.gather(preload_task, return_exceptions=True)
        if "task_store" in locals():
            task_store.close()

        logger.info("Daemon shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the daemon."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
