#!/usr/bin/env python3
"""
chatrelay - streaming chat backend with per-request MCP tool providers.
"""

import argparse
import json
import logging
import sys

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep chatrelay imports lazy (inside main) so `--help` does not pull in the
# server and model SDKs.
#


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Streaming chat relay with MCP tool providers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP server
  python main.py --serve --port 8080

  # Apply database migrations
  python main.py --migrate

  # Show the model catalogue
  python main.py --list-models
        """,
    )

    parser.add_argument("--serve", action="store_true", help="Run the chat relay HTTP server")
    parser.add_argument("--host", default="0.0.0.0", help="Server bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")
    parser.add_argument("--migrate", action="store_true", help="Apply pending Postgres migrations and exit")
    parser.add_argument("--list-models", action="store_true", help="Print the model catalogue as JSON")

    args = parser.parse_args()

    if args.serve:
        from chatrelay.api.server import run

        run(host=args.host, port=args.port)
        return

    if args.migrate:
        from chatrelay.memory.migrate import main as migrate_main

        raise SystemExit(migrate_main())

    if args.list_models:
        from chatrelay.llm.models import DEFAULT_MODEL, list_models

        print(json.dumps({"default": DEFAULT_MODEL, "models": list_models()}, indent=2))
        return

    parser.print_help()


if __name__ == "__main__":
    main()
