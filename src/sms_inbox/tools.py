from __future__ import annotations

import argparse
import csv
from collections.abc import Iterable

from .db import Message, SessionLocal
from .store import ConversationStore


def _format_str(value: str | None) -> str:
    """Normalise None/whitespace for display."""
    if value is None:
        return ""
    return value.strip()


def iter_recent_messages(limit: int) -> Iterable[tuple[Message, str]]:
    """Yield ``(message, phone_number)`` pairs, newest first."""
    db = SessionLocal()
    try:
        for message in ConversationStore(db).recent_messages(limit):
            yield message, message.conversation.phone_number
    finally:
        db.close()


def print_recent_messages(limit: int) -> None:
    """Print recent messages in a human-readable form."""
    for message, phone in iter_recent_messages(limit):
        print("-" * 80)
        print(
            f"Message #{message.id} | {message.direction} | phone={phone} | "
            f"lang={message.detected_language} | status={message.status} | at={message.created_at}"
        )
        print()
        print(f"ORIGINAL:   {_format_str(message.original_text)}")
        if message.translated_text:
            print(f"TRANSLATED: {_format_str(message.translated_text)}")
        if message.error_detail:
            print(f"ERROR:      {_format_str(message.error_detail)}")
        print()


def export_recent_messages_csv(limit: int, csv_path: str) -> None:
    """
    Export recent messages to a CSV file.

    Includes a blank 'tag' column so reviewers can mark translations
    as 'ok', 'weird', 'wrong', etc.
    """
    with open(csv_path, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(
            [
                "id",
                "created_at",
                "phone",
                "direction",
                "volunteer_id",
                "detected_language",
                "original_text",
                "translated_text",
                "status",
                "delivery_id",
                "error_detail",
                "tag",  # for manual review
            ]
        )
        for message, phone in iter_recent_messages(limit):
            writer.writerow(
                [
                    message.id,
                    message.created_at.isoformat() if message.created_at else "",
                    phone,
                    message.direction,
                    message.volunteer_id or "",
                    message.detected_language,
                    _format_str(message.original_text),
                    _format_str(message.translated_text),
                    message.status,
                    message.delivery_id or "",
                    _format_str(message.error_detail),
                    "",  # tag left blank for the reviewer
                ]
            )


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Inspect recent messages stored in the sms-inbox database."
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Number of most recent messages to show/export (default: 20).",
    )
    parser.add_argument(
        "--csv",
        type=str,
        default="",
        help="Optional path to export messages as CSV. If omitted, only prints to stdout.",
    )
    args = parser.parse_args()

    if args.csv:
        export_recent_messages_csv(limit=args.limit, csv_path=args.csv)
        print(f"Exported {args.limit} messages to {args.csv}")
    else:
        print_recent_messages(limit=args.limit)


if __name__ == "__main__":
    main()
