#!/usr/bin/env python3

import argparse
import logging
import sys
import json

from .config import load_config
from .errors import TransferError
from .node import create_provider, request
from .receive_engine import OutcomeStatus


def setup_logging(debug: bool = False) -> None:
    """Setup logging configuration."""
    level = logging.DEBUG if debug else logging.INFO

    filename = "segfetch_debug.log" if debug else None

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        filename=filename,
        filemode='w'
    )

    if debug:
        print(f"Debug logging enabled. Writing to {filename}...")


def ask_permission(total_size: int) -> bool:
    """Console prompt shown before a download starts. No input means no."""
    try:
        answer = input(
            f"After this operation, {total_size} bytes of additional disk space "
            f"will be used.\nDo you want to continue? [y/n] "
        )
    except EOFError:
        print()
        return False
    return answer.strip().lower() in ("y", "yes")


# ---------------------------------------------------------------------------

def cmd_serve(args) -> int:
    """Handle serve command."""
    try:
        config = load_config(args.config)
        if args.chunk_size is not None:
            config.transfer.chunk_size = args.chunk_size
        if args.max_request_size is not None:
            config.transfer.max_request_size = args.max_request_size
        if args.concurrent:
            config.server.concurrent = True
        setup_logging(args.debug)

        provider = create_provider(
            host=args.host,
            port=args.port,
            resource_root=args.root,
            config=config,
        )

        print(f"Serving files from {provider.storage.resource_root}")
        print(f"Listening on {config.server.host}:{config.server.port}... (Press Ctrl+C to stop)")

        provider.serve_forever(max_connections=args.max_connections)

        stats = provider.stats
        print(
            f"Served {stats.connections} connection(s): {stats.completed} sent, "
            f"{stats.absent} absent, {stats.failed} failed"
        )
        return 0

    except KeyboardInterrupt:
        print("\nShutting down provider...")
        return 0
    except (TransferError, OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1


def cmd_fetch(args) -> int:
    """Handle fetch command."""
    try:
        config = load_config(args.config)
        if args.host is not None:
            config.client.host = args.host
        if args.port is not None:
            config.client.port = args.port
        setup_logging(args.debug)

        outcome = request(
            config.client.address,
            args.name,
            output_dir=args.output_dir,
            confirm=None if args.yes else ask_permission,
            config=config,
        )

        if args.json:
            print(json.dumps({
                "resource": outcome.resource,
                "status": outcome.status.value,
                "path": outcome.path,
                "size": outcome.size,
                "segments": outcome.segments,
                "error": outcome.kind,
            }, indent=2))
        elif outcome.status is OutcomeStatus.ABSENT:
            print("File does not exist on server machine.")
        elif outcome.status is OutcomeStatus.DECLINED:
            print("Download cancelled.")
        elif outcome.status is OutcomeStatus.RECEIVED:
            print(f"File received! {outcome.size} bytes written to {outcome.path}")
        else:
            print(f"File not transmitted properly ({outcome.kind}): {outcome.error}")

        return 0 if outcome.ok else 1

    except KeyboardInterrupt:
        print("\nInterrupted")
        return 1
    except (OSError, ValueError) as e:
        print(f"Error: {e}")
        return 1


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="segfetch",
        description="segfetch: point-to-point file retrieval with checksummed segments",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve the files in /srv/files
  segfetch serve --root /srv/files --port 8080

  # Fetch a file (written as ./received_notes.txt)
  segfetch fetch notes.txt --host 127.0.0.1 --port 8080

  # Fetch without the confirmation prompt, report as JSON
  segfetch fetch notes.txt --yes --json
""",
    )

    parser.add_argument(
        "--config",
        type=str,
        help="Configuration file path",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Serve files to requesters")
    serve_parser.add_argument("--host", type=str, help="Address to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, help="Port to bind (default: 8080)")
    serve_parser.add_argument("--root", type=str, help="Directory to serve (default: .)")
    serve_parser.add_argument(
        "--chunk-size",
        type=int,
        help="Maximum segment content size in bytes (default: 512)",
    )
    serve_parser.add_argument(
        "--max-request-size",
        type=int,
        help="Largest accepted resource name in bytes (default: 4096)",
    )
    serve_parser.add_argument(
        "--concurrent",
        action="store_true",
        help="Serve each connection on its own thread",
    )
    serve_parser.add_argument(
        "--max-connections",
        type=int,
        help="Exit after this many connections",
    )

    fetch_parser = subparsers.add_parser("fetch", help="Fetch a file")
    fetch_parser.add_argument("name", help="Name of the file on the provider")
    fetch_parser.add_argument("--host", type=str, help="Provider address (default: 127.0.0.1)")
    fetch_parser.add_argument("--port", type=int, help="Provider port (default: 8080)")
    fetch_parser.add_argument("--output-dir", type=str, help="Where to write the file (default: .)")
    fetch_parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Do not ask before downloading",
    )
    fetch_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the outcome as JSON",
    )

    args = parser.parse_args(argv)

    if args.command == "serve":
        return cmd_serve(args)
    elif args.command == "fetch":
        return cmd_fetch(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
