"""Operator commands for dead-lettered messages.

Usage:
    python scripts/dead_letters.py list --status failed
    python scripts/dead_letters.py replay <dead_letter_id>
    python scripts/dead_letters.py resolve <dead_letter_id> --note "handled manually"
"""

import argparse
import json
import sys
from pathlib import Path
from uuid import UUID

sys.path.insert(0, str(Path(__file__).parent.parent))

from inbound_queue.adapters.store_factory import create_queue_store
from inbound_queue.config.logging_config import get_logger
from inbound_queue.config.settings import get_settings
from inbound_queue.domain.exceptions import (
    DeadLetterStateError,
    MessageNotFoundError,
    RepositoryError,
)
from inbound_queue.domain.models import DeadLetterStatus
from inbound_queue.use_cases.dead_letters import (
    list_dead_letters_use_case,
    replay_dead_letter_use_case,
    resolve_dead_letter_use_case,
)
from scripts import queue_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Inspect and act on dead letters")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs in JSON format")
    subparsers = parser.add_subparsers(dest="command", required=True)

    list_parser = subparsers.add_parser("list", help="List dead-letter entries")
    list_parser.add_argument(
        "--status",
        choices=[status.value for status in DeadLetterStatus],
        default=None,
        help="Only entries with this status",
    )
    list_parser.add_argument("--limit", type=int, default=50)

    replay_parser = subparsers.add_parser("replay", help="Re-enqueue a failed entry")
    replay_parser.add_argument("dead_letter_id", type=UUID)

    resolve_parser = subparsers.add_parser("resolve", help="Mark an entry as handled")
    resolve_parser.add_argument("dead_letter_id", type=UUID)
    resolve_parser.add_argument("--note", default=None)

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    queue_runtime.initialize_logging(settings, json_logs=args.json_logs)

    try:
        store = create_queue_store(settings)
    except (RepositoryError, ValueError) as exc:
        logger.error("queue_store_unavailable", error=str(exc))
        return 1

    try:
        if args.command == "list":
            status = DeadLetterStatus(args.status) if args.status else None
            entries = list_dead_letters_use_case(store, status=status, limit=args.limit)
            for entry in entries:
                print(entry.model_dump_json())
        elif args.command == "replay":
            result = replay_dead_letter_use_case(store, args.dead_letter_id)
            print(
                json.dumps(
                    {
                        "dead_letter_id": str(result.dead_letter.id),
                        "status": result.dead_letter.status.value,
                        "replayed_message_id": str(result.message.id),
                    }
                )
            )
        elif args.command == "resolve":
            entry = resolve_dead_letter_use_case(
                store, args.dead_letter_id, note=args.note
            )
            print(json.dumps({"dead_letter_id": str(entry.id), "status": entry.status.value}))
    except (MessageNotFoundError, DeadLetterStateError) as exc:
        logger.error("dead_letter_command_failed", command=args.command, error=str(exc))
        return 1
    finally:
        store.close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
