# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""macbind CLI - Captive Portal MAC Binding Sync"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import click

from macbind import __version__
from macbind.adapters.base import ControlPlane, ProvenanceRules
from macbind.adapters.http import HttpControlPlane
from macbind.core.backup import BackupManager
from macbind.core.config import MacbindConfig, load_config
from macbind.core.diagnostics import Diagnostics
from macbind.core.engine import ReconciliationEngine, RunStatus, RunSummary
from macbind.core.exceptions import ControlPlaneError, QueueError
from macbind.core.lock import LockManager
from macbind.core.logger import configure_logging
from macbind.core.models import (
    Binding,
    GrantEvent,
    format_timestamp,
    normalize_mac,
    utcnow,
)
from macbind.core.query import BindingQuery, format_duration
from macbind.core.queue import FileEventQueue
from macbind.core.sessions import import_sessions
from macbind.core.store import BindingStore
from macbind.core.sync import ExternalSync

logger = logging.getLogger("macbind.cli")


# =============================================================================
# Wiring
# =============================================================================


@dataclass
class Components:
    config: MacbindConfig
    control_plane: ControlPlane
    lock: LockManager
    queue: FileEventQueue
    store: BindingStore
    backup: BackupManager
    sync: ExternalSync
    engine: ReconciliationEngine
    query: BindingQuery


def build_components(config: MacbindConfig, control_plane: Optional[ControlPlane] = None) -> Components:
    """Wire concrete instances from configuration"""
    paths = config.paths
    control_plane = control_plane or HttpControlPlane.from_config(config.control_plane)

    lock = LockManager(paths.lock_file, stale_after_seconds=config.sync.lock_stale_after_seconds)
    queue = FileEventQueue(paths.queue_file)
    store = BindingStore(paths.store_file)
    backup = BackupManager(
        control_plane,
        paths.backup_dir,
        retention=config.backup.retention,
        enabled=config.backup.enabled,
    )
    rules = ProvenanceRules(
        tag_prefix=config.sync.tag_prefix,
        companion_marker=config.sync.companion_marker,
    )
    sync = ExternalSync(control_plane, rules=rules, backup=backup)
    engine = ReconciliationEngine(
        lock=lock,
        queue=queue,
        store=store,
        sync=sync,
        disable_flag=paths.disable_flag,
        batch_size=config.sync.batch_size,
        adopt_companions=config.sync.adopt_companion_entries,
        companion_duration_minutes=config.sync.companion_default_duration_minutes,
    )
    return Components(
        config=config,
        control_plane=control_plane,
        lock=lock,
        queue=queue,
        store=store,
        backup=backup,
        sync=sync,
        engine=engine,
        query=BindingQuery(store, queue),
    )


def _components(ctx: click.Context) -> Components:
    obj = ctx.find_root().obj
    if "components" not in obj:
        components = build_components(obj["config"], obj.get("control_plane"))
        obj["components"] = components
        close = getattr(components.control_plane, "close", None)
        if close is not None and obj.get("control_plane") is None:
            ctx.find_root().call_on_close(close)
    return obj["components"]


def _require_root(config: MacbindConfig) -> None:
    if config.sync.require_root and os.geteuid() != 0:
        click.echo("[-] Error: this command must be run as root", err=True)
        sys.exit(1)


def _print_summary(summary: RunSummary) -> None:
    if summary.dry_run:
        click.echo("=== DRY RUN MODE (no changes applied) ===")
    for line in summary.to_lines():
        click.echo(line)
    for message in summary.error_messages:
        click.echo(f"[-] {message}", err=True)


def _binding_row(b: Binding, now: datetime) -> dict:
    data = b.to_dict()
    data["remaining"] = format_duration(b.remaining(now))
    return data


# =============================================================================
# Commands
# =============================================================================


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_file", type=click.Path(), help="Configuration file")
@click.option("--verbose", "-v", is_flag=True, help="Also log to stderr")
@click.pass_context
def cli(ctx, config_file: Optional[str], verbose: bool):
    """macbind - voucher-bound pass-through MAC bindings.

    The portal hook queues one grant per voucher login; `macbind sync`
    (cron, every minute) applies grants and expires them on time.
    """
    ctx.ensure_object(dict)
    config = load_config(Path(config_file) if config_file else None)
    ctx.obj["config"] = config
    configure_logging(
        config.observability,
        log_file=config.paths.log_file,
        console=True if verbose else None,
    )


@cli.command()
@click.option("--dry-run", "-n", is_flag=True, help="Compute changes without applying")
@click.pass_context
def sync(ctx, dry_run: bool):
    """Drain the queue and reconcile the pass-through list."""
    config = ctx.obj["config"]
    _require_root(config)
    summary = _components(ctx).engine.run(dry_run=dry_run)
    if summary.status == RunStatus.BUSY:
        # Cron overlap; stay quiet
        sys.exit(0)
    _print_summary(summary)
    sys.exit(summary.exit_code)


@cli.command()
@click.pass_context
def selftest(ctx):
    """Check permissions, paths, lock and control plane."""
    config = ctx.obj["config"]
    components = _components(ctx)
    report = Diagnostics(
        lock=components.lock,
        queue_file=config.paths.queue_file,
        store_file=config.paths.store_file,
        backup_dir=config.paths.backup_dir,
        control_plane=components.control_plane,
        disable_flag=config.paths.disable_flag,
        require_root=config.sync.require_root,
    ).run()

    click.echo("=== macbind Self-Test ===")
    for line in report.to_lines():
        click.echo(line)
    sys.exit(0 if report.ok else 1)


@cli.command("list")
@click.option("--zone", "-z", help="Only this zone")
@click.option(
    "--format", "-f", "output_format",
    type=click.Choice(["table", "csv", "json"]), default="table",
)
@click.pass_context
def list_cmd(ctx, zone: Optional[str], output_format: str):
    """List active bindings."""
    components = _components(ctx)
    bindings = components.query.list_bindings(zone)
    now = utcnow()

    if output_format == "json":
        click.echo(json.dumps([_binding_row(b, now) for b in bindings], indent=2))
        return

    if output_format == "csv":
        click.echo("zone,mac,expires_at,remaining,src_ip,last_seen")
        for b in bindings:
            click.echo(
                f"{b.zone},{b.mac},{format_timestamp(b.expires_at)},"
                f"{format_duration(b.remaining(now))},{b.src_ip},{format_timestamp(b.last_seen)}"
            )
        return

    if not bindings:
        click.echo("No active MAC bindings found.")
        return

    click.echo(f"\n{'ZONE':<15} | {'MAC ADDRESS':<19} | {'EXPIRES':<22} | {'REMAINING':<12} | SRC IP")
    click.echo("-" * 90)
    for b in bindings:
        click.echo(
            f"{b.zone:<15} | {b.mac:<19} | {format_timestamp(b.expires_at):<22} | "
            f"{format_duration(b.remaining(now)):<12} | {b.src_ip or '-'}"
        )
    click.echo("-" * 90)
    updated = components.store.updated_at
    click.echo(f"Total: {len(bindings)} binding(s)")
    click.echo(f"Last updated: {format_timestamp(updated) if updated else 'unknown'}\n")


@cli.command()
@click.argument("term")
@click.option("--zone", "-z", help="Only this zone")
@click.pass_context
def search(ctx, term: str, zone: Optional[str]):
    """Find bindings by MAC, MAC fragment or source IP."""
    found = _components(ctx).query.search(term, zone)
    if not found:
        click.echo(f"No bindings found matching: {term}")
        return

    now = utcnow()
    click.echo(f"\nFound {len(found)} matching binding(s):\n")
    for b in found:
        click.echo(f"Key:        {b.key}")
        click.echo(f"Zone:       {b.zone}")
        click.echo(f"MAC:        {b.mac}")
        click.echo(f"Expires:    {format_timestamp(b.expires_at)}")
        click.echo(f"Remaining:  {format_duration(b.remaining(now))}")
        click.echo(f"Source IP:  {b.src_ip or 'unknown'}")
        click.echo(f"Last seen:  {format_timestamp(b.last_seen)}")
        click.echo(f"Voucher:    {b.voucher_hash[:16]}...")
        click.echo(f"Origin:     {b.origin.value}")
        click.echo("-" * 50)


@cli.command()
@click.argument("mac")
@click.option("--zone", "-z", help="Only this zone")
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be removed")
@click.pass_context
def remove(ctx, mac: str, zone: Optional[str], force: bool, dry_run: bool):
    """Revoke a MAC's bindings and pass-through entries."""
    config = ctx.obj["config"]
    _require_root(config)

    normalized = normalize_mac(mac)
    if not normalized:
        click.echo(f"[-] Error: Invalid MAC address format: {mac}", err=True)
        sys.exit(1)

    components = _components(ctx)
    matches = [b for b in components.query.search(normalized, zone) if b.mac == normalized]
    if not matches:
        where = f" in zone: {zone}" if zone else ""
        click.echo(f"No binding found for MAC: {normalized}{where}")
        return

    click.echo(f"\nFound {len(matches)} binding(s) to remove:\n")
    for b in matches:
        click.echo(f"  Zone: {b.zone}, MAC: {b.mac}, IP: {b.src_ip or 'unknown'}")

    if not force and not dry_run:
        if not click.confirm("\nAre you sure you want to remove these binding(s)?", default=False):
            click.echo("Aborted.")
            return

    summary = components.engine.remove(normalized, zone=zone, dry_run=dry_run)
    if summary.status == RunStatus.BUSY:
        click.echo("[-] Another sync run holds the lock, try again shortly", err=True)
        sys.exit(1)
    _print_summary(summary)
    sys.exit(summary.exit_code)


@cli.command()
@click.pass_context
def stats(ctx):
    """Show binding statistics."""
    result = _components(ctx).query.statistics()

    click.echo("\n=== MAC Binding Statistics ===\n")
    click.echo(f"Total active bindings: {result.total}")
    click.echo(f"Expired (pending cleanup): {result.expired_pending}")
    click.echo(f"Expiring within 1 hour: {result.expiring_within_1h}")
    click.echo(f"Expiring within 24 hours: {result.expiring_within_24h}")
    click.echo("\nBindings by zone:")
    for zone_name, count in sorted(result.by_zone.items()):
        click.echo(f"  {zone_name}: {count}")
    click.echo(f"\nQueue file: {result.queue_backlog} pending entries")
    updated = format_timestamp(result.last_update) if result.last_update else "unknown"
    click.echo(f"\nLast database update: {updated}\n")


@cli.command()
@click.option("--file", "-f", "file_path", type=click.Path(), help="Output CSV file")
@click.pass_context
def export(ctx, file_path: Optional[str]):
    """Export all bindings to CSV."""
    target = Path(file_path) if file_path else Path(
        f"/tmp/macbind_export_{datetime.now().strftime('%Y%m%d_%H%M%S')}.csv"
    )
    try:
        count = _components(ctx).query.export_csv(target)
    except OSError as e:
        click.echo(f"[-] Error: Failed to write to {target}: {e}", err=True)
        sys.exit(1)
    click.echo(f"Exported {count} binding(s) to: {target}")


@cli.command()
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be purged")
@click.pass_context
def purge(ctx, dry_run: bool):
    """Evict expired bindings now, without draining the queue."""
    config = ctx.obj["config"]
    _require_root(config)
    summary = _components(ctx).engine.purge(dry_run=dry_run)
    if summary.status == RunStatus.BUSY:
        click.echo("[-] Another sync run holds the lock, try again shortly", err=True)
        sys.exit(1)
    _print_summary(summary)
    sys.exit(summary.exit_code)


@cli.command()
@click.argument("zone")
@click.argument("mac")
@click.argument("voucher")
@click.option("--minutes", "-m", type=int, default=0, help="Voucher validity in minutes")
@click.option("--src-ip", default="", help="Client IP address")
@click.pass_context
def enqueue(ctx, zone: str, mac: str, voucher: str, minutes: int, src_ip: str):
    """Queue a grant event (what the portal hook does)."""
    config = ctx.obj["config"]
    try:
        event = GrantEvent.issue(
            zone,
            mac,
            voucher,
            minutes,
            src_ip=src_ip,
            default_duration_minutes=config.sync.hook_default_duration_minutes,
        )
    except ValueError as e:
        click.echo(f"[-] Error: {e}", err=True)
        sys.exit(1)

    try:
        FileEventQueue(config.paths.queue_file).append(event)
    except QueueError as e:
        click.echo(f"[-] Error: {e}", err=True)
        sys.exit(1)

    click.echo(f"[+] Queued {event.key} until {format_timestamp(event.expires_at)}")


@cli.command("import-sessions")
@click.option("--zone", "-z", help="Only this zone (default: all zones)")
@click.option("--minutes", "-m", type=int, default=None, help="Grant length per session")
@click.option("--dry-run", "-n", is_flag=True, help="Show what would be imported")
@click.pass_context
def import_sessions_cmd(ctx, zone: Optional[str], minutes: Optional[int], dry_run: bool):
    """Queue grants for sessions that are already logged in."""
    config = ctx.obj["config"]
    _require_root(config)
    components = _components(ctx)

    zones: List[str]
    if zone:
        zones = [zone]
    else:
        try:
            zones = components.control_plane.list_zones()
        except ControlPlaneError as e:
            click.echo(f"[-] Error: {e.message}", err=True)
            sys.exit(1)

    report = import_sessions(
        zones,
        config.paths.session_db_pattern,
        components.queue,
        duration_minutes=minutes or config.sync.companion_default_duration_minutes,
        dry_run=dry_run,
    )

    if dry_run:
        click.echo("*** DRY RUN MODE - No changes will be made ***")
    for event in report.events:
        click.echo(f"  IMPORT: {event.key} ip={event.src_ip or '-'} until {format_timestamp(event.expires_at)}")
    click.echo(f"imported={report.imported}")
    click.echo(f"skipped={report.skipped}")
    click.echo(f"errors={report.errors}")
    sys.exit(1 if report.errors else 0)


if __name__ == "__main__":
    cli()
