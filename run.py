"""Development server for the Pawmi API."""
from __future__ import annotations

import argparse
import os

from pawmi import create_app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the Pawmi booking API locally.")
    parser.add_argument("--host", default=os.environ.get("HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", 5000)))
    parser.add_argument("--routes", action="store_true", help="Print the mounted routes and exit")
    return parser.parse_args()


def print_routes(app) -> None:
    for rule in sorted(app.url_map.iter_rules(), key=lambda item: item.rule):
        if rule.endpoint == "static":
            continue
        methods = ", ".join(sorted(rule.methods - {"HEAD", "OPTIONS"}))
        print(f"{methods:<12} {rule.rule}  -> {rule.endpoint}")


def main() -> None:
    args = parse_args()
    app = create_app()
    if args.routes:
        print_routes(app)
        return

    app.run(host=args.host, port=args.port, debug=app.config.get("DEBUG", False))


if __name__ == "__main__":
    main()
