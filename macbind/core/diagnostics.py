# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""
Self-test for an installation.

Each check is independent and reports CheckResult(name, ok, detail). The
disable flag check is informational and never fails. Never call this from
inside a reconciliation run: the lock check takes the run lock.
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

from macbind.adapters.base import ControlPlane

from .exceptions import ControlPlaneError, LockError
from .lock import LockManager

logger = logging.getLogger("macbind.diagnostics")


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class DiagnosticsReport:
    checks: List[CheckResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(check.ok for check in self.checks)

    @property
    def failures(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.ok]

    def to_lines(self) -> List[str]:
        lines = []
        for i, check in enumerate(self.checks, 1):
            status = "OK" if check.ok else "FAIL"
            detail = f" ({check.detail})" if check.detail else ""
            lines.append(f"{i}. {check.name}: {status}{detail}")
        if self.ok:
            lines.append("RESULT: All checks passed")
        else:
            lines.append(f"RESULT: {len(self.failures)} error(s) found")
        return lines


def _file_accessible(path: Path) -> CheckResult:
    """A data file must be read/writable, or creatable in its directory"""
    name = f"{path.name} readable/writable"
    if path.exists():
        if os.access(path, os.R_OK | os.W_OK):
            return CheckResult(name, True, str(path))
        return CheckResult(name, False, f"{path} not readable/writable")
    return _dir_writable(path.parent, name=name, detail=f"{path} will be created")


def _dir_writable(directory: Path, name: Optional[str] = None, detail: str = "") -> CheckResult:
    name = name or f"{directory} writable"
    try:
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=directory, prefix=".macbind_probe_"):
            pass
    except OSError as e:
        return CheckResult(name, False, f"{directory}: {e.strerror or e}")
    return CheckResult(name, True, detail or str(directory))


class Diagnostics:
    """Runs every installation check"""

    def __init__(
        self,
        lock: LockManager,
        queue_file: Path,
        store_file: Path,
        backup_dir: Path,
        control_plane: ControlPlane,
        disable_flag: Optional[Path] = None,
        require_root: bool = True,
        geteuid: Callable[[], int] = os.geteuid,
    ):
        self.lock = lock
        self.queue_file = Path(queue_file)
        self.store_file = Path(store_file)
        self.backup_dir = Path(backup_dir)
        self.control_plane = control_plane
        self.disable_flag = Path(disable_flag) if disable_flag else None
        self.require_root = require_root
        self._geteuid = geteuid

    def run(self) -> DiagnosticsReport:
        report = DiagnosticsReport()
        if self.require_root:
            report.checks.append(self.check_root())
        report.checks.append(self.check_lock())
        report.checks.append(_file_accessible(self.queue_file))
        report.checks.append(_file_accessible(self.store_file))
        report.checks.append(_dir_writable(self.backup_dir, name="Backup directory writable"))
        report.checks.append(self.check_control_plane())
        if self.disable_flag is not None:
            report.checks.append(self.check_disable_flag())

        for check in report.failures:
            logger.warning(f"Self-test check failed: {check.name}: {check.detail}")
        return report

    def check_root(self) -> CheckResult:
        uid = self._geteuid()
        return CheckResult("Running as root", uid == 0, f"uid {uid}")

    def check_lock(self) -> CheckResult:
        try:
            acquired = self.lock.self_test()
        except LockError as e:
            return CheckResult("Lock acquire/release", False, e.message)
        if acquired:
            return CheckResult("Lock acquire/release", True)
        holder = self.lock.holder()
        detail = f"held by pid {holder.pid}" if holder else "held by another run"
        return CheckResult("Lock acquire/release", False, detail)

    def check_control_plane(self) -> CheckResult:
        try:
            zones = self.control_plane.list_zones()
        except ControlPlaneError as e:
            return CheckResult("Control plane reachable", False, e.message)
        return CheckResult(
            "Control plane reachable", True, f"zones: {', '.join(zones) or 'none configured'}"
        )

    def check_disable_flag(self) -> CheckResult:
        if self.disable_flag.exists():
            return CheckResult("Disable flag", True, "PRESENT (sync disabled)")
        return CheckResult("Disable flag", True, "not present (sync enabled)")
