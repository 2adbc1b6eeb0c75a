"""Periodically drain the inbound message queue.

Usage:
    python scripts/run_queue_processor.py --processor my_bot.replies:handle
    python scripts/run_queue_processor.py --run-once --batch-size 20
"""

import argparse
import sys
from datetime import timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from inbound_queue.adapters.store_factory import create_queue_store
from inbound_queue.config.logging_config import get_logger
from inbound_queue.config.settings import get_settings
from inbound_queue.domain.exceptions import RepositoryError
from inbound_queue.domain.queue_constants import MAX_BATCH_SIZE
from inbound_queue.observability.metrics import ensure_metrics_exporter
from inbound_queue.workers.batch_runner import BatchRunner
from scripts import queue_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the inbound queue batch runner")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Messages per batch (defaults to queue.batch_size)",
    )
    parser.add_argument(
        "--interval-seconds",
        type=float,
        default=60.0,
        help="Interval between batch runs",
    )
    parser.add_argument(
        "--processor",
        default=None,
        help="Processor as 'module:callable' (defaults to queue.processor)",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run a single batch and exit",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    parser.add_argument(
        "--metrics",
        action="store_true",
        help="Expose Prometheus metrics (port from METRICS_PORT, default 9000)",
    )
    args = parser.parse_args(argv)
    if args.interval_seconds <= 0:
        parser.error("--interval-seconds must be greater than 0")
    if args.batch_size is not None and not 1 <= args.batch_size <= MAX_BATCH_SIZE:
        parser.error(f"--batch-size must be between 1 and {MAX_BATCH_SIZE}")
    return args


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    queue_runtime.initialize_logging(settings, json_logs=args.json_logs)

    processor_path = args.processor or settings.queue_processor
    if not processor_path:
        logger.error("processor_not_configured")
        return 2
    try:
        processor = queue_runtime.load_processor(processor_path)
    except (ImportError, ValueError) as exc:
        logger.error("processor_load_failed", processor=processor_path, error=str(exc))
        return 2

    if args.metrics:
        ensure_metrics_exporter()

    try:
        store = create_queue_store(settings)
    except (RepositoryError, ValueError) as exc:
        logger.error("queue_store_unavailable", error=str(exc))
        return 1

    runner = BatchRunner(
        store=store,
        policy=settings.retry_policy(),
        stale_after=timedelta(minutes=settings.queue_stale_after_minutes),
    )
    batch_size = args.batch_size or settings.queue_batch_size

    controller = queue_runtime.create_shutdown_controller()
    queue_runtime.install_signal_handlers(controller)

    try:
        queue_runtime.run_scheduler_loop(
            controller=controller,
            interval_seconds=args.interval_seconds,
            run_once=args.run_once,
            action=lambda: runner.run_batch_sync(processor, batch_size),
        )
    except RepositoryError as exc:
        logger.error("batch_run_aborted", error=str(exc))
        return 1
    finally:
        store.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
