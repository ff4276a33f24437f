"""Shared shutdown signalling for reaper loops."""

import logging
import signal
import threading

logger = logging.getLogger(__name__)

# Global shutdown event for graceful termination of every loop
shutdown_event = threading.Event()


def _signal_handler(signum, frame):
    """Handle shutdown signals (SIGTERM, SIGINT) gracefully."""
    sig_name = signal.Signals(signum).name
    logger.info(f"Received {sig_name} signal, initiating graceful shutdown...")
    shutdown_event.set()


def install_signal_handlers() -> None:
    """Register SIGTERM/SIGINT handlers (must run on the main thread)."""
    signal.signal(signal.SIGTERM, _signal_handler)
    signal.signal(signal.SIGINT, _signal_handler)
