"""eventsource CLI - listen to a stream, manage default headers and options."""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click

try:
    import tomllib
except ModuleNotFoundError:
    import tomli as tomllib

import tomli_w

from .client import AsyncEventSource
from .types import ErrorEvent, EventSourceOptions


# ============================================================================
# Config helpers
# ============================================================================

CONFIG_FILE = Path(os.environ.get("EVENTSOURCE_CONFIG", Path.home() / ".eventsource" / "config.toml"))


def _load_config() -> Dict[str, Any]:
    """Read config.toml, returning an empty dict if it doesn't exist."""
    if not CONFIG_FILE.exists():
        return {}
    with open(CONFIG_FILE, "rb") as f:
        return tomllib.load(f)


def _save_config(cfg: Dict[str, Any]) -> None:
    """Write config dict to config.toml."""
    CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
    with open(CONFIG_FILE, "wb") as f:
        tomli_w.dump(cfg, f)


def _set_nested(cfg: Dict[str, Any], dotted_key: str, value: str) -> None:
    """Set a value in a nested dict using a dotted key like 'headers.Authorization'."""
    parts = dotted_key.split(".")
    d = cfg
    for part in parts[:-1]:
        d = d.setdefault(part, {})
    d[parts[-1]] = value


def _parse_headers(values: Tuple[str, ...]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for raw in values:
        name, sep, value = raw.partition(":")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected 'Name: value', got {raw!r}", param_hint="--header")
        headers[name.strip()] = value.strip()
    return headers


def _build_options(
    cfg: Dict[str, Any],
    headers: Dict[str, str],
    last_event_id: Optional[str],
    retry: Optional[int],
    insecure: bool,
) -> EventSourceOptions:
    """Merge config file defaults with command line flags (flags win)."""
    default = cfg.get("default", {})
    merged = {str(k): str(v) for k, v in cfg.get("headers", {}).items()}
    merged.update(headers)
    if last_event_id:
        merged["Last-Event-ID"] = last_event_id

    interval = retry
    if interval is None:
        raw = default.get("reconnect_interval", 1000)
        try:
            interval = int(raw)
        except (TypeError, ValueError):
            interval = -1
        if interval < 0:
            raise click.BadParameter(
                f"expected non-negative milliseconds, got {raw!r}", param_hint="default.reconnect_interval"
            )
    transport_options: Dict[str, Any] = {}
    if insecure:
        transport_options["verify"] = False

    return EventSourceOptions(
        headers=merged,
        reconnect_interval=interval,
        with_credentials=str(default.get("with_credentials", "")).lower() in ("1", "true", "yes"),
        transport_options=transport_options,
    )


def _format_event(event: Any, as_json: bool) -> str:
    if as_json:
        return json.dumps(event.model_dump(exclude_none=True), ensure_ascii=False)
    prefix = f"[{event.type}]"
    if event.last_event_id:
        prefix += f" id={event.last_event_id}"
    return f"{prefix} {event.data}"


def _format_error(event: ErrorEvent) -> str:
    parts = ["error"]
    if event.status is not None:
        parts.append(str(event.status))
    if event.message:
        parts.append(event.message)
    return ": ".join(parts)


# ============================================================================
# CLI group
# ============================================================================

@click.group()
def cli():
    """Server-Sent Events client"""
    pass


# ============================================================================
# eventsource listen <url>
# ============================================================================

@cli.command()
@click.argument("url")
@click.option("-H", "--header", "headers", multiple=True, help="Extra request header, 'Name: value'")
@click.option("--last-event-id", default=None, help="Resume after this event id")
@click.option("-e", "--event", "events", multiple=True, help="Also print events of this type")
@click.option("--retry", type=click.IntRange(min=0), default=None,
              help="Reconnect interval in ms (default: config or 1000)")
@click.option("--json", "as_json", is_flag=True, help="Print events as JSON lines")
@click.option("--insecure", is_flag=True, help="Skip TLS certificate verification")
@click.option("-v", "--verbose", is_flag=True, help="Log connection activity to stderr")
def listen(url: str, headers: Tuple[str, ...], last_event_id: Optional[str], events: Tuple[str, ...],
           retry: Optional[int], as_json: bool, insecure: bool, verbose: bool):
    """Print events from URL until interrupted."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    options = _build_options(_load_config(), _parse_headers(headers), last_event_id, retry, insecure)
    try:
        closed_by_server = asyncio.run(_listen(url, options, ("message",) + events, as_json))
    except KeyboardInterrupt:
        return
    if closed_by_server:
        sys.exit(1)


async def _listen(url: str, options: EventSourceOptions, event_types: Tuple[str, ...], as_json: bool) -> bool:
    """Stream until the source closes. Returns True when the server ended it for good."""
    source = AsyncEventSource(url, options)

    def show(event: Any) -> None:
        click.echo(_format_event(event, as_json))

    for event_type in dict.fromkeys(event_types):
        source.on(event_type, show)
    source.on("open", lambda event: click.echo(f"connected to {source.url}", err=True))
    source.on("error", lambda event: click.echo(_format_error(event), err=True))

    try:
        await source.wait_closed()
    finally:
        await source.aclose()
    return True


# ============================================================================
# eventsource config (subgroup)
# ============================================================================

@cli.group()
def config():
    """Manage configuration."""
    pass


@config.command("show")
def config_show():
    """Print config file contents."""
    if not CONFIG_FILE.exists():
        click.echo(f"No config file found at {CONFIG_FILE}")
        return

    with open(CONFIG_FILE, "r") as f:
        click.echo(f.read())


@config.command("set")
@click.argument("key")
@click.argument("value")
def config_set(key: str, value: str):
    """Set a config value (e.g., eventsource config set headers.Authorization "Bearer ...")"""
    cfg = _load_config()
    _set_nested(cfg, key, value)
    _save_config(cfg)
    click.echo(f"Set {key} = {value}")


# ============================================================================
# Entry point
# ============================================================================

def main():
    cli()


if __name__ == "__main__":
    main()
