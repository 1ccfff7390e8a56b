"""CLI entry point for bookmarksync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .backend.rest import SupabaseRestBackend
from .client import BookmarkClient, ClientStatus
from .config import Config, load_config
from .errors import AuthError


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        # Safe JSON serialization
        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.WARNING)
    else:
        level = logging.DEBUG if verbose else logging.WARNING

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def print_bookmarks(status: ClientStatus) -> None:
    if not status.bookmarks:
        print("No bookmarks yet.")
        return
    for bookmark in status.bookmarks:
        created = bookmark.created_at.strftime("%Y-%m-%d %H:%M")
        print(f"{bookmark.id}  {created}  {bookmark.display_title}")
        if bookmark.title:
            print(f"{'':38}{bookmark.url}")


class StatusPrinter:
    """Prints the status whenever what it shows has changed.

    Only the most recently printed view is remembered.
    """

    def __init__(self) -> None:
        self.last_key: tuple | None = None

    def __call__(self, status: ClientStatus) -> None:
        key = (status.session, status.bookmarks, status.error)
        if key == self.last_key:
            return
        self.last_key = key
        print(f"--- {datetime.now().strftime('%H:%M:%S')} {status.session.name}")
        if status.error:
            print(f"Error: {status.error}")
        if status.session.identity:
            print_bookmarks(status)


async def _open_client(config: Config) -> BookmarkClient | None:
    """Build and start a client, or print why it cannot run."""
    client = BookmarkClient.from_config(config)
    if not client.ready:
        print(f"Error: {client.status.configuration_error}", file=sys.stderr)
        return None
    await client.start()
    await client.wait_idle()
    return client


def _require_identity(client: BookmarkClient) -> bool:
    if client.session.identity is None:
        message = client.error or "Not signed in. Run 'bookmarksync login' first."
        print(f"Error: {message}", file=sys.stderr)
        return False
    return True


async def cmd_status(args: argparse.Namespace) -> int:
    """Show configuration and session status."""
    config = load_config(args.config)
    client = BookmarkClient.from_config(config)

    try:
        await client.start()
        await client.wait_idle()
        status = client.status

        status_data = {
            "timestamp": datetime.now().isoformat(),
            "backend": {
                "kind": config.backend.kind,
                "url": config.backend.url,
                "configured": config.backend.is_configured,
                "table": config.backend.table,
            },
            "realtime": {
                "broker": config.realtime.broker,
                "port": config.realtime.port,
                "topic_prefix": config.realtime.topic_prefix,
            },
            **status.to_dict(),
        }
        status_data["bookmark_count"] = len(status.bookmarks)
        del status_data["bookmarks"]
    finally:
        await client.stop()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("bookmarksync Status")
    print("===================")
    print(f"Backend: {config.backend.kind} {config.backend.url}".rstrip())
    if not status.ready:
        print(f"  Not configured: {status.configuration_error}")
        return 1

    identity = status.session.identity
    print(f"Session: {status.session.name}")
    if identity:
        print(f"  Signed in as: {identity.display_name}")
        print(f"  Bookmarks: {len(status.bookmarks)}")
    if status.error:
        print(f"Error: {status.error}")
    return 0


async def cmd_login(args: argparse.Namespace) -> int:
    """Sign in, either with a token or through the browser."""
    config = load_config(args.config)
    client = await _open_client(config)
    if client is None:
        return 1

    try:
        if args.token:
            auth = client.backend.auth
            if not isinstance(auth, SupabaseRestBackend):
                print("Error: this backend does not accept tokens", file=sys.stderr)
                return 1
            try:
                identity = await auth.set_session(args.token, args.refresh_token)
            except AuthError as e:
                print(f"Error: {e}", file=sys.stderr)
                return 1
            print(f"Signed in as {identity.display_name}")
            return 0

        if not await client.sign_in(config.backend.redirect_to):
            print(f"Error: {client.error}", file=sys.stderr)
            return 1

        auth = client.backend.auth
        if isinstance(auth, SupabaseRestBackend) and auth.last_authorize_url:
            print("Continue signing in at:")
            print(f"  {auth.last_authorize_url}")
            print("Then run 'bookmarksync login --token <access_token>'")
        return 0
    finally:
        await client.stop()


async def cmd_logout(args: argparse.Namespace) -> int:
    client = await _open_client(load_config(args.config))
    if client is None:
        return 1
    try:
        if client.session.identity is None:
            print("Not signed in.")
            return 0
        if not await client.sign_out():
            print(f"Error: {client.error}", file=sys.stderr)
            return 1
        print("Signed out.")
        return 0
    finally:
        await client.stop()


async def cmd_list(args: argparse.Namespace) -> int:
    """List the signed-in user's bookmarks."""
    client = await _open_client(load_config(args.config))
    if client is None:
        return 1
    try:
        if not _require_identity(client):
            return 1
        status = client.status
        if status.error:
            print(f"Error: {status.error}", file=sys.stderr)
        if args.json:
            print(json.dumps([b.to_dict() for b in status.bookmarks], indent=2))
        else:
            print_bookmarks(status)
        return 0
    finally:
        await client.stop()


async def cmd_add(args: argparse.Namespace) -> int:
    client = await _open_client(load_config(args.config))
    if client is None:
        return 1
    try:
        if not _require_identity(client):
            return 1
        if not await client.add_bookmark(args.url, args.title):
            print(f"Error: {client.error}", file=sys.stderr)
            return 1
        print(f"Saved {args.url.strip()}")
        return 0
    finally:
        await client.stop()


async def cmd_remove(args: argparse.Namespace) -> int:
    client = await _open_client(load_config(args.config))
    if client is None:
        return 1
    try:
        if not _require_identity(client):
            return 1
        if not await client.remove_bookmark(args.id):
            print(f"Error: {client.error}", file=sys.stderr)
            return 1
        print(f"Deleted {args.id}")
        return 0
    finally:
        await client.stop()


async def cmd_watch(args: argparse.Namespace) -> int:
    """Print the bookmark list every time it changes."""
    client = await _open_client(load_config(args.config))
    if client is None:
        return 1

    on_status = StatusPrinter()
    client.add_listener(on_status)
    on_status(client.status)

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nStopping...")
    finally:
        await client.stop()
    return 0


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the local web interface."""
    config = load_config(args.config)

    try:
        import uvicorn

        from .web import create_app
    except ImportError as e:
        print(f"Web dependencies not installed: {e}", file=sys.stderr)
        return 1

    host = args.host or config.server.host
    port = args.port or config.server.port
    print(f"Starting bookmarksync web interface at http://{host}:{port}")

    app = create_app(config)
    verbose = getattr(args, "verbose", False)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if verbose else "warning",
        )
    )
    await server.serve()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookmarksync",
        description="Private bookmarks that stay in sync across sessions",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    status_parser = subparsers.add_parser("status", help="Show session status")
    status_parser.add_argument("--json", action="store_true", help="Output as JSON")
    status_parser.set_defaults(func=cmd_status)

    login_parser = subparsers.add_parser("login", help="Sign in")
    login_parser.add_argument("--token", help="Access token from the sign-in redirect")
    login_parser.add_argument("--refresh-token", help="Refresh token from the sign-in redirect")
    login_parser.set_defaults(func=cmd_login)

    logout_parser = subparsers.add_parser("logout", help="Sign out")
    logout_parser.set_defaults(func=cmd_logout)

    list_parser = subparsers.add_parser("list", help="List bookmarks")
    list_parser.add_argument("--json", action="store_true", help="Output as JSON")
    list_parser.set_defaults(func=cmd_list)

    add_parser = subparsers.add_parser("add", help="Save a bookmark")
    add_parser.add_argument("url", help="Link to save")
    add_parser.add_argument("-t", "--title", default=None, help="Optional title")
    add_parser.set_defaults(func=cmd_add)

    remove_parser = subparsers.add_parser("remove", help="Delete a bookmark")
    remove_parser.add_argument("id", help="Bookmark id (see 'list')")
    remove_parser.set_defaults(func=cmd_remove)

    watch_parser = subparsers.add_parser("watch", help="Follow bookmark changes live")
    watch_parser.set_defaults(func=cmd_watch)

    serve_parser = subparsers.add_parser("serve", help="Start the web interface")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main() -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
