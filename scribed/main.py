"""Main entry point for scribed daemon."""

import asyncio
import logging
import signal
import sys
from typing import NoReturn

from .config import load_config
from .ipc_server import IPCServer
from .logging_setup import setup_logging
from .pipeline_manager import PipelineManager
from .state import DaemonStateManager

logger = logging.getLogger(__name__)

__all__ = ["run"]


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
    logger.info(
        f"Starting scribed daemon (model: {config.whisper.model}, "
        f"language: {config.daemon.language}, "
        f"sessions: {config.storage.computed_data_dir})"
    )

    state_manager = DaemonStateManager()
    shutdown_event = asyncio.Event()

    pipeline_manager = PipelineManager(config, state_manager)
    ipc_server = IPCServer(
        config.daemon.computed_socket_path,
        state_manager,
        shutdown_event,
        pipeline_manager,
    )

    try:
        # Model loading continues in the background
        await pipeline_manager.start()

        def handle_signal(sig: int) -> None:
            sig_name = signal.Signals(sig).name
            logger.info(f"Received signal {sig_name}, initiating shutdown...")
            shutdown_event.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))

        await ipc_server.start()

        logger.info("Daemon started successfully")

        await shutdown_event.wait()

        logger.info("Starting graceful shutdown...")

    except Exception:
        logger.exception("Fatal error in daemon startup:")
        return 1

    finally:
        # Stop in reverse order
        if ipc_server._server:
            await ipc_server.stop()
        await pipeline_manager.stop()

        logger.info("Daemon shutdown complete")

    return 0


def run() -> NoReturn:
    """Entry point for the daemon."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        # Fallback logger in case of early failure
        logging.basicConfig()
        logger.exception(f"Daemon failed with unhandled exception: {e}")
        sys.exit(1)
