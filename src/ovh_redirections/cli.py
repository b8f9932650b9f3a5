#!/usr/bin/env python3
"""ovh-redir - OVH mail redirection manager

Keeps a local cache of the redirections of one OVH mail domain, reconciles it
with the provider on demand, and creates, deletes or changes redirections
through the OVH API.

Configuration (environment, ``.env.local``/``.env`` files, or a YAML file;
environment wins):

    Credentials:
        OVH_ENDPOINT       API endpoint alias or URL (default: ovh-eu)
        APP_KEY            Application key
        APP_SECRET         Application secret
        CONSUMER_KEY       Consumer key (see "ovh-redir authorize")

    Domain:
        DOMAIN             Mail domain to manage (required)
        DEFAULT_TO         Destination template for "create LOCAL", where
                           "{{alias}}" is replaced by the local part.
                           Example: "me+{{alias}}@example.org"
        SPAM_ADDRESS       Spam sink used by "ban" (default: spam@DOMAIN)

    Runtime:
        CACHE_PATH         JSON cache file (default: cache.json)
        FETCH_WORKERS      Concurrent detail fetches on update (default: 8)
        REQUEST_TIMEOUT    Seconds per API call (default: 10)
        LOG_LEVEL          DEBUG, INFO, WARNING, ERROR (default: WARNING)
        DEBUG              Show masked tracebacks on unexpected errors
        OVH_REDIR_CONFIG   YAML file with the same keys in lower case
                           (default: config.yaml)
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import traceback
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import click
import yaml
from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape

from ovh_redirections.operations import OperationReport, RedirectionManager
from ovh_redirections.provider import ApiError, OvhClient, RemoteClient, resolve_endpoint
from ovh_redirections.query import (
    FORMATS,
    SORT_COLUMNS,
    filter_by_search,
    filter_spam,
    render_redirections,
    render_table,
    sort_redirections,
)
from ovh_redirections.snapshot import RedirectionSyncer, Snapshot, SnapshotStore, SyncResult

logger = logging.getLogger(__name__)

console = Console(highlight=False)
err_console = Console(stderr=True, highlight=False)

# =============================================================================
# Configuration
# =============================================================================

DEFAULT_CONFIG_PATH = "config.yaml"
DOTENV_FILES = (".env.local", ".env")


class ConfigError(Exception):
    """Configuration that cannot be used."""


@dataclass(frozen=True)
class Settings:
    endpoint: str = "ovh-eu"
    app_key: str = ""
    app_secret: str = ""
    consumer_key: str = ""
    domain: str = ""
    default_to: str = ""
    spam_address: str = ""
    cache_path: str = "cache.json"
    fetch_workers: int = 8
    request_timeout: float = 10.0
    log_level: str = "WARNING"
    debug: bool = False

    @property
    def secrets(self) -> List[str]:
        return [s for s in (self.app_key, self.app_secret, self.consumer_key) if s]


# env name -> settings field
_ENV_KEYS = {
    "OVH_ENDPOINT": "endpoint",
    "APP_KEY": "app_key",
    "APP_SECRET": "app_secret",
    "CONSUMER_KEY": "consumer_key",
    "DOMAIN": "domain",
    "DEFAULT_TO": "default_to",
    "SPAM_ADDRESS": "spam_address",
    "CACHE_PATH": "cache_path",
    "FETCH_WORKERS": "fetch_workers",
    "REQUEST_TIMEOUT": "request_timeout",
    "LOG_LEVEL": "log_level",
    "DEBUG": "debug",
}


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _load_yaml_config(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")
    known = set(_ENV_KEYS.values())
    unknown = sorted(str(k) for k in data if k not in known)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {path}: {', '.join(unknown)}")
    return {k: v for k, v in data.items() if k in known}


def load_settings(
    config_path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    """Build settings from defaults, the YAML file, then the environment.

    When ``environ`` is omitted the process environment is used, after
    loading ``.env.local`` and ``.env`` without overriding existing values.
    """
    if environ is None:
        for dotenv_file in DOTENV_FILES:
            load_dotenv(dotenv_file, override=False)
        environ = os.environ

    path = Path(config_path or environ.get("OVH_REDIR_CONFIG") or DEFAULT_CONFIG_PATH)
    raw: Dict[str, Any] = _load_yaml_config(path)
    for env_name, key in _ENV_KEYS.items():
        value = environ.get(env_name)
        if value is not None and value != "":
            raw[key] = value

    domain = str(raw.get("domain") or "").strip().lower()
    try:
        fetch_workers = max(1, int(raw.get("fetch_workers", 8)))
        request_timeout = float(raw.get("request_timeout", 10.0))
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric setting: {e}") from e

    return Settings(
        endpoint=str(raw.get("endpoint") or "ovh-eu").strip(),
        app_key=str(raw.get("app_key") or "").strip(),
        app_secret=str(raw.get("app_secret") or "").strip(),
        consumer_key=str(raw.get("consumer_key") or "").strip(),
        domain=domain,
        default_to=str(raw.get("default_to") or "").strip(),
        spam_address=str(raw.get("spam_address") or (f"spam@{domain}" if domain else "")).strip(),
        cache_path=str(raw.get("cache_path") or "cache.json"),
        fetch_workers=fetch_workers,
        request_timeout=request_timeout,
        log_level=str(raw.get("log_level") or "WARNING").upper(),
        debug=_parse_bool(raw.get("debug")),
    )


def validate_settings(
    settings: Settings, *, need_domain: bool = True, need_consumer: bool = True
) -> List[str]:
    """Return a list of problems; empty when the settings are usable."""
    errors: List[str] = []
    try:
        resolve_endpoint(settings.endpoint)
    except ValueError as e:
        errors.append(str(e))
    if not settings.app_key or not settings.app_secret:
        errors.append("APP_KEY and APP_SECRET are required")
    if need_consumer and not settings.consumer_key:
        errors.append("CONSUMER_KEY is required (run 'ovh-redir authorize' to get one)")
    if need_domain and not settings.domain:
        errors.append("DOMAIN is required")
    return errors


# =============================================================================
# Logging and Secret Masking
# =============================================================================


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


_HEADER_SECRET_RE = re.compile(
    r"(X-Ovh-(?:Signature|Consumer|Application)['\"]?\s*[:=]\s*['\"]?)([^'\"\s,}]+)"
)


def mask_secrets(text: str, secrets: List[str]) -> str:
    """Replace credential values and OVH auth header values with ****."""
    for secret in sorted(secrets, key=len, reverse=True):
        if secret:
            text = text.replace(secret, "****")
    return _HEADER_SECRET_RE.sub(r"\1****", text)


# =============================================================================
# Context
# =============================================================================


@dataclass
class AppContext:
    """Everything an operation needs, built once per invocation."""

    settings: Settings
    client: RemoteClient
    store: SnapshotStore
    snapshot: Snapshot
    syncer: RedirectionSyncer
    manager: RedirectionManager


def create_client(settings: Settings) -> RemoteClient:
    """Factory for the configured OVH client."""
    return OvhClient(
        settings.endpoint,
        settings.app_key,
        settings.app_secret,
        settings.consumer_key,
        timeout_seconds=settings.request_timeout,
    )


def build_context(settings: Settings, client: Optional[RemoteClient] = None) -> AppContext:
    if client is None:
        client = create_client(settings)
    store = SnapshotStore(settings.cache_path, settings.domain)
    snapshot = store.load()
    syncer = RedirectionSyncer(
        client=client,
        store=store,
        snapshot=snapshot,
        domain=settings.domain,
        max_workers=settings.fetch_workers,
    )
    manager = RedirectionManager(
        client=client,
        syncer=syncer,
        domain=settings.domain,
        spam_address=settings.spam_address,
        default_to=settings.default_to,
    )
    return AppContext(
        settings=settings,
        client=client,
        store=store,
        snapshot=snapshot,
        syncer=syncer,
        manager=manager,
    )


@dataclass
class CliState:
    """Click ``obj``: settings and the lazily built context."""

    settings: Optional[Settings] = None
    context: Optional[AppContext] = None
    debug: bool = False
    config_path: Optional[str] = None
    client: Optional[RemoteClient] = field(default=None, repr=False)

    def require_settings(self) -> Settings:
        if self.settings is None:
            self.settings = load_settings(self.config_path)
        return self.settings

    def require_context(self) -> AppContext:
        if self.context is None:
            settings = self.require_settings()
            problems = validate_settings(settings)
            if problems:
                raise ConfigError("; ".join(problems))
            self.context = build_context(settings, self.client)
        return self.context

    def require_client(self, *, need_domain: bool = False) -> RemoteClient:
        if self.context is not None:
            return self.context.client
        if self.client is not None:
            return self.client
        settings = self.require_settings()
        problems = validate_settings(settings, need_domain=need_domain)
        if problems:
            raise ConfigError("; ".join(problems))
        self.client = create_client(settings)
        return self.client


pass_state = click.make_pass_decorator(CliState, ensure=True)

# =============================================================================
# Output Helpers
# =============================================================================


def print_sync(result: SyncResult) -> None:
    console.print(
        f"{result.remote_total} remote, [green]{result.added} new[/], "
        f"[yellow]{result.deleted} deleted[/] redirection(s)"
    )
    if result.failed:
        console.print(
            f"[yellow]Skipped {len(result.failed)} redirection(s) whose details could not be "
            f"fetched:[/] {', '.join(result.failed)}"
        )
    if not result.saved:
        console.print("[red]Cache file could not be written; run 'update' again later.[/]")


def print_report(report: OperationReport, verb: str) -> None:
    for line in report.done:
        console.print(f"[green]{verb}[/] {escape(line)}")
    for error in report.errors:
        err_console.print(f"[red]Error:[/] {escape(error.item)}: {escape(error.reason)}")
    if report.sync is not None:
        print_sync(report.sync)
    if report.stale:
        err_console.print(
            "[yellow]Remote changes were applied but the cache is stale; run 'update'.[/]"
        )


def finish(ctx: click.Context, report: OperationReport) -> None:
    if not report.ok:
        ctx.exit(1)


def maybe_update(state: CliState, update: bool) -> AppContext:
    app = state.require_context()
    if update:
        print_sync(app.syncer.sync_once())
    return app


def echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, sort_keys=True))


update_option = click.option(
    "-u", "--update", is_flag=True, help="Reconcile the cache with OVH before acting"
)

# =============================================================================
# Commands
# =============================================================================


class AliasedGroup(click.Group):
    ALIASES = {"del": "delete", "rm": "delete", "remove": "delete", "change": "modify"}

    def get_command(self, ctx: click.Context, cmd_name: str) -> Optional[click.Command]:
        return super().get_command(ctx, self.ALIASES.get(cmd_name, cmd_name))

    def resolve_command(self, ctx, args):
        _, cmd, rest = super().resolve_command(ctx, args)
        return cmd.name if cmd else None, cmd, rest


@click.group(cls=AliasedGroup)
@click.option("--config", "-c", "config_path", default=None, help="Path to YAML config file")
@click.option("--debug", is_flag=True, help="Show masked technical detail on errors")
@pass_state
def cli(state: CliState, config_path: Optional[str], debug: bool) -> None:
    """Manage the mail redirections of an OVH domain."""
    if config_path:
        state.config_path = config_path
    settings = state.require_settings()
    state.debug = state.debug or debug or settings.debug
    configure_logging("DEBUG" if debug else settings.log_level)


@cli.command("list")
@update_option
@click.option("--spam/--no-spam", default=False, help="Include redirections to the spam sink")
@click.option(
    "--format", "-f", "fmt", type=click.Choice(FORMATS), default="table", show_default=True
)
@click.option(
    "--sort",
    "-s",
    "column",
    default="from",
    show_default=True,
    help=f"One of {', '.join(SORT_COLUMNS)}",
)
@click.option("--desc", is_flag=True, help="Sort in descending order")
@click.option("--search", "-q", default=None, help="Case-insensitive filter on id, from and to")
@pass_state
def list_cmd(
    state: CliState,
    update: bool,
    spam: bool,
    fmt: str,
    column: str,
    desc: bool,
    search: Optional[str],
) -> None:
    """List cached redirections."""
    app = maybe_update(state, update)
    records = filter_spam(app.syncer.records, app.settings.spam_address, include_spam=spam)
    records = filter_by_search(records, search)
    records = sort_redirections(records, column, descending=desc)
    output = render_redirections(
        records,
        fmt,
        spam_address=app.settings.spam_address,
        color=fmt == "table" and sys.stdout.isatty(),
    )
    click.echo(output, nl=False)


@cli.command("update")
@pass_state
def update_cmd(state: CliState) -> None:
    """Reconcile the cache with the redirections on OVH."""
    app = state.require_context()
    print_sync(app.syncer.sync_once())


@cli.command("create")
@update_option
@click.argument("source")
@click.argument("target", required=False)
@click.pass_context
def create_cmd(ctx: click.Context, update: bool, source: str, target: Optional[str]) -> None:
    """Create SOURCE -> TARGET, or SOURCE -> DEFAULT_TO when TARGET is omitted."""
    app = maybe_update(ctx.find_object(CliState), update)
    if target:
        report = app.manager.create(source, target)
    else:
        report = app.manager.create_default(source)
    print_report(report, "Created")
    finish(ctx, report)


@cli.command("ban")
@update_option
@click.argument("local_parts", nargs=-1, required=True)
@click.pass_context
def ban_cmd(ctx: click.Context, update: bool, local_parts: tuple) -> None:
    """Redirect each LOCAL_PART to the spam sink."""
    app = maybe_update(ctx.find_object(CliState), update)
    report = app.manager.ban(*local_parts)
    print_report(report, "Banned")
    finish(ctx, report)


@cli.command("delete")
@update_option
@click.argument("identifiers", nargs=-1, required=True)
@click.pass_context
def delete_cmd(ctx: click.Context, update: bool, identifiers: tuple) -> None:
    """Delete redirections by id, address or local part."""
    app = maybe_update(ctx.find_object(CliState), update)
    report = app.manager.delete(*identifiers)
    print_report(report, "Deleted")
    finish(ctx, report)


@cli.command("modify")
@update_option
@click.argument("source")
@click.argument("target")
@click.pass_context
def modify_cmd(ctx: click.Context, update: bool, source: str, target: str) -> None:
    """Change the destination of the redirection SOURCE to TARGET."""
    app = maybe_update(ctx.find_object(CliState), update)
    report = app.manager.modify(source, target)
    print_report(report, "Changed")
    finish(ctx, report)


# -----------------------------------------------------------------------------
# Informational commands (no caching)
# -----------------------------------------------------------------------------


@cli.command("status")
@pass_state
def status_cmd(state: CliState) -> None:
    """Show account information."""
    echo_json(state.require_client().request("GET", "/me"))


@cli.command("summary")
@pass_state
def summary_cmd(state: CliState) -> None:
    """Show the mail domain summary."""
    settings = state.require_settings()
    client = state.require_client(need_domain=True)
    echo_json(client.request("GET", f"/email/domain/{settings.domain}/summary"))


@cli.command("quota")
@pass_state
def quota_cmd(state: CliState) -> None:
    """Show the mail domain quota."""
    settings = state.require_settings()
    client = state.require_client(need_domain=True)
    echo_json(client.request("GET", f"/email/domain/{settings.domain}/quota"))


@cli.command("domains")
@pass_state
def domains_cmd(state: CliState) -> None:
    """List the mail domains of the account."""
    for name in state.require_client().request("GET", "/email/domain") or []:
        click.echo(name)


@cli.command("dns")
@click.option("--type", "field_type", default=None, help="Record type filter (A, MX, TXT, ...)")
@click.option("--sub", "sub_domain", default=None, help="Sub-domain filter")
@click.option("--format", "-f", "fmt", type=click.Choice(["table", "json"]), default="table")
@pass_state
def dns_cmd(state: CliState, field_type: Optional[str], sub_domain: Optional[str], fmt: str) -> None:
    """List the DNS records of the domain zone."""
    settings = state.require_settings()
    client = state.require_client(need_domain=True)
    params: Dict[str, str] = {}
    if field_type:
        params["fieldType"] = field_type.upper()
    if sub_domain is not None:
        params["subDomain"] = sub_domain

    base = f"/domain/zone/{settings.domain}/record"
    record_ids = client.request("GET", base, params or None) or []
    records = [client.request("GET", f"{base}/{rid}") for rid in record_ids]

    if fmt == "json":
        echo_json(records)
        return
    headers = ["id", "subDomain", "fieldType", "target", "ttl"]
    rows = [[r.get(h) for h in headers] for r in records if isinstance(r, dict)]
    click.echo(render_table(headers, rows, color=sys.stdout.isatty()), nl=False)


@cli.command("authorize")
@click.option("--redirect", default="", help="URL to land on after validation")
@pass_state
def authorize_cmd(state: CliState, redirect: str) -> None:
    """Request a consumer key with full access."""
    settings = state.require_settings()
    problems = validate_settings(settings, need_domain=False, need_consumer=False)
    if problems:
        raise ConfigError("; ".join(problems))
    client = OvhClient(
        settings.endpoint,
        settings.app_key,
        settings.app_secret,
        timeout_seconds=settings.request_timeout,
    )
    credential = client.request_credential(redirect)
    console.print(f"Visit [bold]{credential.get('validationUrl')}[/] to validate the key.")
    console.print(f"Then set CONSUMER_KEY={credential.get('consumerKey')}")


# =============================================================================
# Main
# =============================================================================


def main(argv: Optional[List[str]] = None, state: Optional[CliState] = None) -> None:
    """Main entry point."""
    if state is None:
        state = CliState(debug=_parse_bool(os.environ.get("DEBUG")))
    try:
        code = cli.main(args=argv, prog_name="ovh-redir", standalone_mode=False, obj=state)
    except click.exceptions.Abort:
        err_console.print("Aborted.")
        sys.exit(1)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except ConfigError as e:
        err_console.print(f"[red]Configuration error:[/] {e}")
        sys.exit(2)
    except ApiError as e:
        secrets = state.settings.secrets if state.settings else []
        err_console.print(f"[red]Remote call failed:[/] {mask_secrets(str(e), secrets)}")
        _print_debug(state)
        sys.exit(1)
    except KeyboardInterrupt:
        err_console.print("Interrupted.")
        sys.exit(130)
    except Exception:
        err_console.print("[red]Unexpected error.[/] Re-run with --debug for details.")
        _print_debug(state)
        sys.exit(1)
    sys.exit(code if isinstance(code, int) else 0)


def _print_debug(state: CliState) -> None:
    if not state.debug:
        return
    secrets = state.settings.secrets if state.settings else []
    err_console.print(mask_secrets(traceback.format_exc(), secrets), markup=False)


if __name__ == "__main__":
    main()
