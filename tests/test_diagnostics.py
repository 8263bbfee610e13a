# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

from macbind.core.diagnostics import Diagnostics
from macbind.core.lock import LockManager


def _diagnostics(paths, control_plane, **kwargs):
    return Diagnostics(
        lock=LockManager(paths["lock"]),
        queue_file=paths["queue"],
        store_file=paths["store"],
        backup_dir=paths["backups"],
        control_plane=control_plane,
        disable_flag=paths["disable"],
        **kwargs,
    )


def _check(report, name):
    return next(c for c in report.checks if c.name.startswith(name))


def test_healthy_installation_passes(paths, control_plane):
    report = _diagnostics(paths, control_plane, require_root=True, geteuid=lambda: 0).run()

    assert report.ok, report.to_lines()
    assert _check(report, "Running as root").ok
    assert _check(report, "Control plane").detail == "zones: guest"
    assert report.to_lines()[-1] == "RESULT: All checks passed"
    assert not paths["lock"].exists()


def test_root_check_skipped_when_not_required(paths, control_plane):
    report = _diagnostics(paths, control_plane, require_root=False).run()
    assert not any(c.name == "Running as root" for c in report.checks)


def test_non_root_fails(paths, control_plane):
    report = _diagnostics(paths, control_plane, require_root=True, geteuid=lambda: 1000).run()
    assert not report.ok
    assert _check(report, "Running as root").detail == "uid 1000"


def test_unreachable_control_plane_fails(paths, control_plane):
    control_plane.unreachable = True
    report = _diagnostics(paths, control_plane, require_root=False).run()
    assert not _check(report, "Control plane").ok
    assert report.to_lines()[-1] == "RESULT: 1 error(s) found"


def test_held_lock_fails(paths, control_plane):
    LockManager(paths["lock"]).acquire()
    report = _diagnostics(paths, control_plane, require_root=False).run()
    assert not _check(report, "Lock").ok


def test_disable_flag_is_informational(paths, control_plane):
    paths["disable"].write_text("")
    report = _diagnostics(paths, control_plane, require_root=False).run()
    flag = _check(report, "Disable flag")
    assert flag.ok
    assert "PRESENT" in flag.detail
    assert report.ok


def test_unwritable_backup_dir_fails(paths, control_plane, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    paths["backups"] = blocker / "backups"
    report = _diagnostics(paths, control_plane, require_root=False).run()
    assert not _check(report, "Backup directory").ok
