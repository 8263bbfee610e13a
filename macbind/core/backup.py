# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Pass-through configuration snapshots.

Before the first external change of a run the control plane's pass-through
configuration is saved to

    <backup_dir>/cp_passthru_YYYYMMDD_HHMMSS.json

at most once per UTC day, keeping the newest `retention` files.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from macbind.adapters.base import ControlPlane

from .exceptions import BackupError, ControlPlaneError
from .models import format_timestamp, utcnow

logger = logging.getLogger("macbind.backup")

BACKUP_PREFIX = "cp_passthru_"


class BackupManager:
    """Daily snapshot of the pass-through configuration"""

    def __init__(
        self,
        control_plane: ControlPlane,
        backup_dir: Path,
        retention: int = 30,
        enabled: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.control_plane = control_plane
        self.backup_dir = Path(backup_dir)
        self.retention = retention
        self.enabled = enabled
        self._clock = clock
        self._attempted = False
        self.last_error: Optional[str] = None

    def reset(self) -> None:
        """Allow one more attempt (start of a new run)"""
        self._attempted = False
        self.last_error = None

    def backups(self) -> List[Path]:
        """Existing snapshots, oldest first"""
        if not self.backup_dir.is_dir():
            return []
        return sorted(self.backup_dir.glob(f"{BACKUP_PREFIX}*.json"))

    def has_backup_for(self, day: datetime) -> bool:
        prefix = f"{BACKUP_PREFIX}{day.strftime('%Y%m%d')}_"
        return any(p.name.startswith(prefix) for p in self.backups())

    def backup_if_needed(self) -> bool:
        """
        Take today's snapshot unless one exists.

        Only the first call per run does any work; later calls repeat its
        outcome.

        Returns:
            True if a snapshot exists for today, False if it could not be made
        """
        if not self.enabled:
            return True
        if self._attempted:
            return self.last_error is None
        self._attempted = True

        now = self._clock()
        if self.has_backup_for(now):
            logger.debug("Today's pass-through backup already exists")
            return True

        try:
            path = self._write_snapshot(now)
        except BackupError as e:
            self.last_error = str(e)
            logger.error(f"Backup failed: {e}")
            return False

        logger.info(f"Created config backup: {path}")
        self._prune()
        return True

    def _write_snapshot(self, now: datetime) -> Path:
        try:
            snapshot = self.control_plane.backup_snapshot()
        except ControlPlaneError as e:
            raise BackupError(f"Cannot read pass-through configuration: {e.message}", cause=e)

        document = {"timestamp": format_timestamp(now), "zones": snapshot}
        path = self.backup_dir / f"{BACKUP_PREFIX}{now.strftime('%Y%m%d_%H%M%S')}.json"

        tmp_path = None
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.backup_dir, prefix=".backup.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
            tmp_path = None
        except OSError as e:
            raise BackupError(f"Cannot write backup {path}: {e}", cause=e)
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
        return path

    def _prune(self) -> None:
        existing = self.backups()
        for old in existing[:max(0, len(existing) - self.retention)]:
            try:
                old.unlink()
                logger.debug(f"Pruned old backup {old.name}")
            except OSError as e:
                logger.warning(f"Cannot prune backup {old}: {e}")
