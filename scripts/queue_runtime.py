"""Common runtime helpers for queue scripts."""

from __future__ import annotations

import importlib
import signal
import threading
from collections.abc import Callable
from dataclasses import dataclass
from types import FrameType
from typing import Protocol

from inbound_queue.config.logging_config import get_logger, setup_logging
from inbound_queue.config.settings import Settings
from inbound_queue.workers.controller import MessageProcessor

logger = get_logger(__name__)


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


@dataclass
class _ShutdownController:
    """Shutdown state shared by signal handlers and the run loop."""

    _event: threading.Event

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def request(self, signum: int, frame: FrameType | None) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        self._event.set()


def create_shutdown_controller() -> _ShutdownController:
    return _ShutdownController(threading.Event())


def install_signal_handlers(controller: _ShutdownController) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    signal.signal(signal.SIGTERM, controller.request)
    signal.signal(signal.SIGINT, controller.request)


def initialize_logging(settings: Settings, *, json_logs: bool = False) -> None:
    setup_logging(log_level=settings.log_level, json_logs=json_logs)
    logger.info("logging_initialized", level=settings.log_level, json_logs=json_logs)


def load_processor(path: str) -> MessageProcessor:
    """Import a processor given as ``package.module:callable``.

    Raises:
        ValueError: If the path is malformed or does not name a callable
        ImportError: If the module cannot be imported
    """
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        msg = f"Processor must be given as 'module:callable', got {path!r}"
        raise ValueError(msg)

    module = importlib.import_module(module_name)
    processor = getattr(module, attr, None)
    if not callable(processor):
        msg = f"{path!r} does not name a callable"
        raise ValueError(msg)
    return processor  # type: ignore[no-any-return]


def run_scheduler_loop(
    *,
    controller: ShutdownSignal,
    interval_seconds: float,
    run_once: bool,
    action: Callable[[], object],
) -> None:
    """Execute ``action`` at a fixed interval until shutdown is requested.

    With ``run_once`` the first failure is re-raised so the caller's exit
    status reflects it; otherwise failures are logged and the loop continues.
    """

    interval_seconds = max(0.1, interval_seconds)
    logger.info("scheduler_loop_started", interval=interval_seconds, run_once=run_once)
    iteration = 0
    while not controller.is_set():
        iteration += 1
        try:
            action()
        except Exception:  # noqa: BLE001
            logger.exception("scheduler_iteration_failed", iteration=iteration)
            if run_once:
                raise
        if run_once:
            break
        controller.wait(interval_seconds)

    logger.info("scheduler_loop_stopped", iterations=iteration)


__all__ = [
    "ShutdownSignal",
    "create_shutdown_controller",
    "initialize_logging",
    "install_signal_handlers",
    "load_processor",
    "run_scheduler_loop",
]
