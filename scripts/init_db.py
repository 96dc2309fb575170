#!/usr/bin/env python3
"""Create the Pawmi tables; ``--drop`` recreates them from scratch."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Ensure the project root is on sys.path so ``pawmi`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from pawmi import create_app
from pawmi import models  # noqa: F401  registers every table on db.metadata
from pawmi.extensions import db


def main() -> None:
    parser = argparse.ArgumentParser(description="Create the Pawmi database schema.")
    parser.add_argument("--drop", action="store_true", help="Drop every table before creating them")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        if args.drop:
            db.drop_all()
            print("Dropped existing tables")
        db.create_all()
        tables = ", ".join(sorted(db.metadata.tables))
        print(f"✅ Schema ready at {app.config['SQLALCHEMY_DATABASE_URI']}: {tables}")


if __name__ == "__main__":
    main()
