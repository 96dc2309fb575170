#!/usr/bin/env python3
"""Run one appointment reminder pass; meant to be called from cron every few minutes."""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from pathlib import Path

# Ensure the project root is on sys.path so ``pawmi`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pawmi import create_app
from pawmi.reminders import dispatch_reminders


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send appointment reminders that are due now.")
    parser.add_argument(
        "--now",
        type=datetime.fromisoformat,
        default=None,
        help="Pretend the run happens at this ISO datetime (UTC when no offset is given)",
    )
    parser.add_argument(
        "--window",
        type=int,
        default=None,
        help="Window in minutes around now (default: REMINDER_WINDOW_MINUTES)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    app = create_app()
    with app.app_context():
        summary = dispatch_reminders(now=args.now, window_minutes=args.window)
    print(json.dumps({"ok": True, **summary}))


if __name__ == "__main__":
    main()
