#!/usr/bin/env python3
"""
restbridge CLI

Resilient, scriptable access to REST APIs: every call is rate limited,
retried on transient failures and authenticated with an auto-refreshed
OAuth token. Results go to stdout; status lines, logs and structured
errors go to stderr.

Usage:
    restbridge request gmail GET /users/me/labels
    restbridge list drive /files --query q="trashed=false" --limit 50 -f csv
    restbridge batch gmail --file requests.json
    restbridge auth login --credential-file token.json
    restbridge auth status
    restbridge domains
"""

import argparse
import json
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, TextIO

import httpx
import structlog
from colorama import Fore, Style, init

from restbridge import __version__
from restbridge.auth import OAuthRefresher, TokenManager, load_credential_file
from restbridge.errors import ApiError, PaginationError, StructuredError
from restbridge.logging_config import configure_logging, level_for_verbosity
from restbridge.models import ApiRequest
from restbridge.output import Formatter, OutputFormat, parse_fields
from restbridge.registry import ClientRegistry, build_clients
from restbridge.settings import AuthSettings, ConfigError, Settings, load_settings, save_settings
from restbridge.token_store import FileTokenStore

logger = structlog.get_logger(__name__)

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


# ---------------------------------------------------------------------------
# Application context
# ---------------------------------------------------------------------------

class App:
    """
    Per-invocation wiring: settings, output, token manager and clients.

    The token manager and clients are built on first use, so commands that
    never touch the network (domains, auth status) do not open connections.
    """

    def __init__(
        self,
        settings: Settings,
        args: argparse.Namespace,
        stdout: TextIO | None = None,
        stderr: TextIO | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.args = args
        self.stderr = stderr or sys.stderr
        self.quiet = args.quiet
        self._transport = transport
        self._sleep = sleep

        self._output_file: TextIO | None = None
        if args.output:
            self._output_file = open(args.output, "w")
        self.formatter = Formatter(
            self._resolve_format(),
            writer=self._output_file or stdout or sys.stdout,
            fields=parse_fields(args.fields),
        )

        self._refresher: OAuthRefresher | None = None
        self._token_manager: TokenManager | None = None
        self._registry: ClientRegistry | None = None

    def _resolve_format(self) -> OutputFormat:
        if self.args.format:
            return OutputFormat.parse(self.args.format)
        output = self.settings.output
        if output.format is OutputFormat.JSON and output.compact:
            return OutputFormat.JSON_COMPACT
        return output.format

    # Status lines (stderr, colored)

    def success(self, msg: str) -> None:
        if not self.quiet:
            print(f"{GREEN}✓ {msg}{RESET}", file=self.stderr)

    def warning(self, msg: str) -> None:
        if not self.quiet:
            print(f"{YELLOW}⚠ {msg}{RESET}", file=self.stderr)

    def info(self, msg: str) -> None:
        if not self.quiet:
            print(f"{BLUE}ℹ {msg}{RESET}", file=self.stderr)

    def emit_error(self, error: StructuredError) -> int:
        """Structured errors are machine-readable JSON on stderr; exit code 1."""
        print(error.to_json(), file=self.stderr)
        return 1

    # Lazily built components

    @property
    def token_manager(self) -> TokenManager:
        if self._token_manager is None:
            auth = self.settings.auth
            if auth.can_refresh:
                self._refresher = OAuthRefresher(
                    client_id=auth.client_id,
                    client_secret=auth.client_secret,
                    token_uri=auth.token_uri,
                    http_client=httpx.Client(
                        transport=self._transport,
                        timeout=self.settings.api.timeout_seconds,
                    ),
                )
            self._token_manager = TokenManager(
                FileTokenStore(auth.token_file),
                refresher=self._refresher,
                safety_margin=auth.refresh_margin,
            )
        return self._token_manager

    @property
    def registry(self) -> ClientRegistry:
        if self._registry is None:
            self._registry = build_clients(
                self.token_manager,
                profiles=self.settings.profiles(),
                timeout=self.settings.api.timeout_seconds,
                transport=self._transport,
                sleep=self._sleep,
            )
        return self._registry

    def close(self) -> None:
        if self._registry is not None:
            self._registry.close()
        if self._token_manager is not None:
            self._token_manager.close()
        if self._refresher is not None:
            self._refresher.close()
        if self._output_file is not None:
            self._output_file.close()


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------

def parse_query(pairs: list[str] | None) -> dict[str, Any]:
    """Turn repeated `--query key=value` options into request params."""
    params: dict[str, Any] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid query parameter '{pair}' (expected key=value)")
        if key in params:
            existing = params[key]
            params[key] = existing + [value] if isinstance(existing, list) else [existing, value]
        else:
            params[key] = value
    return params


def parse_json_argument(value: str) -> Any:
    """JSON from an inline string, or from a file when prefixed with '@'."""
    if value.startswith("@"):
        with open(value[1:]) as f:
            return json.load(f)
    return json.loads(value)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_request(app: App, args: argparse.Namespace) -> int:
    """Run a single API call."""
    try:
        body = parse_json_argument(args.body) if args.body else None
        request = ApiRequest(
            method=args.method,
            path=args.path,
            params=parse_query(args.query),
            body=body,
            cost=args.cost,
        )
    except (ValueError, OSError) as e:
        return app.emit_error(StructuredError.invalid_request(args.domain, str(e)))

    result = app.registry.client(args.domain).execute(request)
    if not result.ok:
        return app.emit_error(result)

    if result.body is not None:
        app.formatter.write(result.body)
    else:
        app.formatter.write({"status_code": result.status_code, "text": result.text})
    return 0


def cmd_batch(app: App, args: argparse.Namespace) -> int:
    """Execute a JSON array of requests as one batch call."""
    try:
        if args.file:
            with open(args.file) as f:
                requests = json.load(f)
        else:
            requests = json.load(sys.stdin)
    except (OSError, json.JSONDecodeError) as e:
        return app.emit_error(StructuredError.invalid_request(args.domain, f"Invalid batch input: {e}"))

    if not isinstance(requests, list):
        return app.emit_error(
            StructuredError.invalid_request(args.domain, "Batch input must be a JSON array of requests")
        )

    result = app.registry.batch(args.domain).run(requests)
    if not result.ok:
        return app.emit_error(result)

    app.formatter.write(result)
    if result.status == "partial":
        app.warning(f"{len(result.errors)} of {len(requests)} requests failed")
    return 1 if result.status == "error" else 0


def cmd_list(app: App, args: argparse.Namespace) -> int:
    """Stream every item of a paginated listing."""
    try:
        params = parse_query(args.query)
    except ValueError as e:
        return app.emit_error(StructuredError.invalid_request(args.domain, str(e)))

    stream = app.registry.paginate(
        args.domain,
        args.path,
        params=params,
        items_key=args.items_key,
        limit=args.limit,
        page_size=args.page_size,
        page_token=args.page_token,
        sync_token=args.sync_token,
    )

    formatter = app.formatter
    formatter.start_stream()
    try:
        for item in stream:
            formatter.stream_item(item)
    except PaginationError as e:
        formatter.end_stream()
        return app.emit_error(e.error)
    formatter.end_stream()

    if stream.next_page_token:
        app.info(f"More results available: --page-token {stream.next_page_token}")
    if stream.next_sync_token:
        app.info(f"Sync token: {stream.next_sync_token}")
    return 0


def cmd_auth_login(app: App, args: argparse.Namespace) -> int:
    """Install a credential from a token or authorized-user file."""
    credential, client = load_credential_file(args.credential_file)

    # Keep the OAuth client alongside the credential so refresh works later
    if client.get("client_id") and client.get("client_secret") and not app.settings.auth.can_refresh:
        auth = AuthSettings(**{**app.settings.auth.model_dump(exclude_unset=True), **client})
        app.settings = app.settings.model_copy(update={"auth": auth})
        path = save_settings(app.settings, app.args.config)
        app.info(f"OAuth client saved to {path}")

    app.token_manager.login(credential)
    app.success("Logged in")
    app.formatter.write(app.token_manager.status())
    return 0


def cmd_auth_status(app: App, args: argparse.Namespace) -> int:
    status = app.token_manager.status()
    app.formatter.write(status)
    if not status["authenticated"]:
        app.warning("Not authenticated. Run 'restbridge auth login' first.")
    return 0


def cmd_auth_logout(app: App, args: argparse.Namespace) -> int:
    app.token_manager.logout()
    app.success("Logged out, stored credential removed")
    return 0


def cmd_domains(app: App, args: argparse.Namespace) -> int:
    """Show domain profiles and effective limits."""
    app.formatter.write_all(profile.to_dict() for profile in app.settings.profiles().values())
    return 0


def cmd_test(app: App, args: argparse.Namespace) -> int:
    """Check connectivity and credentials for one domain."""
    app.info(f"Connecting to {app.registry.client(args.domain).base_url}...")
    result = app.registry.client(args.domain).health_check(args.path)
    app.formatter.write(result)
    if result["status"] == "healthy":
        app.success("Connected successfully!")
        return 0
    return 1


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="restbridge",
        description="Resilient command-line client for REST APIs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  restbridge request gmail GET /users/me/labels
  restbridge list calendar /calendars/primary/events --limit 20 -f jsonl
  restbridge batch drive --file requests.json
  restbridge auth status
  restbridge domains
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-f", "--format", help="Output format: json, json-compact, jsonl, ndjson, csv")
    parser.add_argument("--fields", help="Comma-separated top-level fields to output")
    parser.add_argument("-o", "--output", help="Write output to a file instead of stdout")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress status lines")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (-vv for debug)")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines on stderr")
    parser.add_argument("--config", help="Path to config.json")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Request command
    request_parser = subparsers.add_parser("request", help="Run a single API call")
    request_parser.add_argument("domain", help="API domain (see 'restbridge domains')")
    request_parser.add_argument("method", help="HTTP method")
    request_parser.add_argument("path", help="Path relative to the domain base URL, or a full URL")
    request_parser.add_argument("--query", action="append", metavar="KEY=VALUE", help="Query parameter (repeatable)")
    request_parser.add_argument("--body", help="JSON body, or @file.json")
    request_parser.add_argument("--cost", type=int, help="Quota units this call consumes (default: the domain's cost for the method)")

    # Batch command
    batch_parser = subparsers.add_parser("batch", help="Run up to 100 requests in one batch call")
    batch_parser.add_argument("domain", help="API domain with a batch endpoint")
    batch_parser.add_argument(
        "--file",
        help="JSON array of {id, method, path, body?}; paths are relative to the domain base URL (default: stdin)",
    )

    # List command
    list_parser = subparsers.add_parser("list", help="Stream every item of a paginated listing")
    list_parser.add_argument("domain", help="API domain")
    list_parser.add_argument("path", help="List endpoint path")
    list_parser.add_argument("--query", action="append", metavar="KEY=VALUE", help="Query parameter (repeatable)")
    list_parser.add_argument("--items-key", help="Response key holding the items")
    list_parser.add_argument("--limit", type=int, help="Stop after this many items")
    list_parser.add_argument("--page-size", type=int, help="Items per page")
    list_parser.add_argument("--page-token", help="Resume from this page token")
    list_parser.add_argument("--sync-token", help="Incremental sync token")

    # Auth commands
    auth_parser = subparsers.add_parser("auth", help="Manage the stored credential")
    auth_subparsers = auth_parser.add_subparsers(dest="auth_command", required=True)
    login_parser = auth_subparsers.add_parser("login", help="Store a credential from a file")
    login_parser.add_argument("--credential-file", required=True, help="Token or authorized-user JSON file")
    auth_subparsers.add_parser("status", help="Show credential status")
    auth_subparsers.add_parser("logout", help="Remove the stored credential")

    # Domains command
    subparsers.add_parser("domains", help="Show domain profiles and limits")

    # Test command
    test_parser = subparsers.add_parser("test", help="Test connectivity for a domain")
    test_parser.add_argument("domain", help="API domain")
    test_parser.add_argument("path", nargs="?", default="/", help="Cheap GET endpoint to check")

    return parser


COMMANDS = {
    "request": cmd_request,
    "batch": cmd_batch,
    "list": cmd_list,
    "domains": cmd_domains,
    "test": cmd_test,
}

AUTH_COMMANDS = {
    "login": cmd_auth_login,
    "status": cmd_auth_status,
    "logout": cmd_auth_logout,
}


def main(
    argv: list[str] | None = None,
    transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] = time.sleep,
    stdout: TextIO | None = None,
    stderr: TextIO | None = None,
) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    stderr = stderr or sys.stderr

    if args.command is None:
        parser.print_help(file=stderr)
        return 0

    configure_logging(level_for_verbosity(args.verbose, args.quiet), json_format=args.log_json)

    try:
        settings = load_settings(Path(args.config) if args.config else None)
        app = App(settings, args, stdout=stdout, stderr=stderr, transport=transport, sleep=sleep)
    except (ConfigError, ValueError, OSError) as e:
        print(StructuredError.invalid_request("config", str(e)).to_json(), file=stderr)
        return 1

    if args.command == "auth":
        handler = AUTH_COMMANDS[args.auth_command]
        domain = "auth"
    else:
        handler = COMMANDS[args.command]
        domain = getattr(args, "domain", "cli")

    try:
        return handler(app, args)
    except ApiError as e:
        return app.emit_error(StructuredError.from_exception(e, domain))
    except ValueError as e:
        return app.emit_error(StructuredError.invalid_request(domain, str(e)))
    except KeyboardInterrupt:
        print(f"\n{YELLOW}Interrupted{RESET}", file=stderr)
        return 130
    finally:
        app.close()


if __name__ == "__main__":
    sys.exit(main())
