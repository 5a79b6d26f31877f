"""CLI entry point for tasks-oauth-proxy.

Runs the Google Tasks MCP server, obtains the server's default Google
credential through a browser login, and inspects the persisted token file.
"""
import argparse
import sys
from datetime import datetime, timezone

import anyio
import uvicorn

from config import ConfigError, load_config
from logging_config import create_supabase_client, flush_logs, redact, setup_logging
from login_flow import LoginError, run_login_flow, save_refresh_token
from oauth.token_store import PersistentTokenStore

VERSION = "1.0.0"


def _timestamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


# ============== Commands ==============

def cmd_serve(args):
    """Start the MCP server in the foreground."""
    from main import create_app

    overrides = {}
    if args.host:
        overrides["HOST"] = args.host
    if args.port:
        overrides["PORT"] = str(args.port)
    if args.no_oauth:
        overrides["ENABLE_OAUTH"] = "false"

    config = load_config()
    config.data.update(overrides)

    setup_logging(
        config.log_level,
        config.log_format,
        supabase_client=create_supabase_client(config.supabase_url, config.supabase_key),
    )

    try:
        config.validate()
    except ConfigError as e:
        print(f"[ERROR] {e}", file=sys.stderr)
        print("Set them in .env or the environment and try again.", file=sys.stderr)
        sys.exit(1)

    app = create_app(config)
    print(f"\nGoogle Tasks MCP server on http://{config.host}:{config.port}/mcp")
    if config.enable_oauth:
        print(f"Public URL: {config.server_url}/mcp")
    try:
        uvicorn.run(app, host=config.host, port=config.port, log_level=config.log_level.lower())
    finally:
        flush_logs()


def cmd_login(args):
    """Log in with Google and record the default refresh token."""
    config = load_config()
    if not config.google_client_id or not config.google_client_secret:
        print("[ERROR] GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set", file=sys.stderr)
        sys.exit(1)

    try:
        refresh_token = run_login_flow(
            config.google_client_id, config.google_client_secret, config.scopes
        )
    except LoginError as e:
        print(f"\n[ERROR] Login failed: {e}", file=sys.stderr)
        sys.exit(1)

    if args.print_only:
        print(f"\nGOOGLE_REFRESH_TOKEN={refresh_token}")
        return

    save_refresh_token(refresh_token)
    print(f"\nSaved GOOGLE_REFRESH_TOKEN ({redact(refresh_token)}) to .env")


def cmd_tokens(args):
    """List or purge persisted token records."""
    config = load_config()
    store = PersistentTokenStore(config.token_store_path)
    store.load()

    if args.action == "purge":
        count = anyio.run(store.clear)
        if store.last_persist_error:
            print(f"[ERROR] Could not write {config.token_store_path}: {store.last_persist_error}",
                  file=sys.stderr)
            sys.exit(1)
        print(f"Purged {count} token records from {config.token_store_path}")
        return

    records = store.records()
    print(f"\nToken file: {config.token_store_path}")
    print(f"Records:    {len(records)}\n")
    for record in sorted(records, key=lambda r: r.created_at):
        print(f"  {redact(record.access_token)}  "
              f"created {_timestamp(record.created_at)}  "
              f"expires {_timestamp(record.expires_at)}")
    print()


def cmd_version(args):
    """Show version information."""
    print(f"tasks-oauth-proxy v{VERSION}")


def cmd_help(args):
    """Show detailed help."""
    print("""
Google Tasks MCP server with an OAuth authorization proxy

USAGE:
    tasks-oauth-proxy <command> [options]

COMMANDS:
    serve       Run the server in the foreground (default)
    login       Log in with Google and save GOOGLE_REFRESH_TOKEN to .env
    tokens      List persisted token records (or 'tokens purge' to clear them)
    version     Show version information
    help        Show this help message

EXAMPLES:
    # Run with OAuth for ChatGPT / Claude connectors
    OAUTH_SERVER_URL=https://tasks.example.com tasks-oauth-proxy serve

    # Run locally on the server's own Google credential
    tasks-oauth-proxy login
    tasks-oauth-proxy serve --no-oauth --port 8080

CONFIGURATION (.env or environment):
    GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET   Google OAuth client (required)
    OAUTH_SERVER_URL                         Public base URL (required with OAuth)
    GOOGLE_REFRESH_TOKEN                     Default credential (required without OAuth)
    HOST, PORT, ENABLE_OAUTH, TOKEN_STORE_PATH, GOOGLE_SCOPES
    LOG_LEVEL, LOG_FORMAT, SUPABASE_URL, SUPABASE_KEY
""")


# ============== Main Entry Point ==============

def main(argv=None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        prog="tasks-oauth-proxy",
        description="Google Tasks MCP server with an OAuth authorization proxy",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  serve     Run the server (default)
  login     Browser login for the default Google credential
  tokens    List or purge persisted tokens
  version   Show version
  help      Show detailed help

Examples:
  tasks-oauth-proxy serve --port 21184
  tasks-oauth-proxy tokens list
"""
    )

    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "login", "tokens", "version", "help"],
        help="Command to run (default: serve)"
    )
    parser.add_argument(
        "action",
        nargs="?",
        default="list",
        choices=["list", "purge"],
        help="Action for the tokens command (default: list)"
    )
    parser.add_argument("--host", help="Bind address (overrides HOST)")
    parser.add_argument("--port", type=int, help="Listen port (overrides PORT)")
    parser.add_argument("--no-oauth", action="store_true", help="Serve without the OAuth proxy")
    parser.add_argument("--print-only", action="store_true",
                        help="login: print the refresh token instead of writing .env")

    args = parser.parse_args(argv)

    if args.command == "serve":
        cmd_serve(args)
    elif args.command == "login":
        cmd_login(args)
    elif args.command == "tokens":
        cmd_tokens(args)
    elif args.command == "version":
        cmd_version(args)
    elif args.command == "help":
        cmd_help(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
