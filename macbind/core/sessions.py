# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Bootstrap import of live captive portal sessions.

Run once after installation: every authenticated session in a zone's
session database becomes a grant event in the queue, so users who logged in
before the hook was installed keep their pass-through after their session
ends. The session databases are opened read-only.
"""

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import QueueError
from .models import GrantEvent, hash_voucher, normalize_mac, normalize_zone, utcnow
from .queue import EventQueue

logger = logging.getLogger("macbind.sessions")

SESSION_QUERY = "SELECT mac, ip, username, sessionid, allow_time FROM captiveportal"


@dataclass
class ImportReport:
    imported: int = 0
    skipped: int = 0
    errors: int = 0
    events: List[GrantEvent] = field(default_factory=list)


@contextmanager
def _connect_readonly(db_path: Path):
    """Read-only connection; never creates the database"""
    conn = sqlite3.connect(f"file:{db_path}?mode=ro", uri=True, timeout=2.0)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def read_sessions(db_path: Path) -> List[Dict[str, Any]]:
    """
    Read every session row of a captive portal database.

    Raises:
        sqlite3.Error: If the database cannot be opened or queried
    """
    with _connect_readonly(db_path) as conn:
        return [dict(row) for row in conn.execute(SESSION_QUERY)]


def session_to_event(
    zone: str, session: Dict[str, Any], duration_minutes: int, now: datetime
) -> Optional[GrantEvent]:
    """Grant event for one session, or None if it is unusable or expired"""
    mac = normalize_mac(str(session.get("mac") or ""))
    if not mac:
        return None

    try:
        allow_time = int(session.get("allow_time") or 0)
    except (TypeError, ValueError):
        allow_time = 0
    start = datetime.fromtimestamp(allow_time, tz=timezone.utc) if allow_time > 0 else now
    expires_at = start + timedelta(minutes=duration_minutes)
    if expires_at <= now:
        return None

    session_id = str(session.get("sessionid") or "")
    return GrantEvent(
        submitted_at=now,
        zone=zone,
        mac=mac,
        expires_at=expires_at,
        voucher_hash=hash_voucher(f"imported_{session_id}_{mac}"),
        src_ip=str(session.get("ip") or ""),
    )


def import_sessions(
    zones: Iterable[str],
    session_db_pattern: str,
    queue: EventQueue,
    duration_minutes: int = 43200,
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> ImportReport:
    """
    Queue a grant event for every live session of the given zones.

    Args:
        zones: Zone names to import
        session_db_pattern: Database path with a {zone} placeholder
        queue: Destination queue
        duration_minutes: Grant length counted from the session's allow_time
        now: Current time (defaults to UTC now)
        dry_run: Build the report without appending to the queue
    """
    now = now or utcnow()
    report = ImportReport()

    for zone in zones:
        zone = normalize_zone(zone)
        db_path = Path(session_db_pattern.format(zone=zone))
        if not db_path.exists():
            logger.info(f"No session database for zone {zone}: {db_path}")
            continue

        try:
            sessions = read_sessions(db_path)
        except sqlite3.Error as e:
            logger.error(f"Cannot read sessions of zone {zone}: {e}")
            report.errors += 1
            continue

        logger.info(f"Zone {zone}: {len(sessions)} session(s) found")
        for session in sessions:
            event = session_to_event(zone, session, duration_minutes, now)
            if event is None:
                report.skipped += 1
                logger.info(
                    f"Skipping session {session.get('sessionid')!r} in {zone}: "
                    f"invalid MAC or already expired"
                )
                continue
            report.events.append(event)

    if dry_run:
        report.imported = len(report.events)
    else:
        try:
            queue.append_many(report.events)
        except QueueError as e:
            logger.error(f"Import failed, queue not writable: {e}")
            report.errors += 1
        else:
            report.imported = len(report.events)

    logger.info(
        f"{'[DRY-RUN] ' if dry_run else ''}Session import: imported={report.imported} "
        f"skipped={report.skipped} errors={report.errors}"
    )
    return report
