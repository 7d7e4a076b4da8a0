#!/usr/bin/env python3
"""Remove old or duplicate anonymous trial records.

Without a mode flag the script only prints trial statistics.

Usage:
    python3 scripts/cleanup_trials.py [--expired-only] [--duplicates-only] [--all] [--dry-run]
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app import create_app  # noqa: E402
from database import init_db, run_migrations  # noqa: E402
from trial import cleanup_trials, trial_stats  # noqa: E402

_MODE_FLAGS = {
    "--expired-only": "expired",
    "--duplicates-only": "duplicates",
    "--all": "all",
}


def main(argv: list[str]) -> int:
    modes = [mode for flag, mode in _MODE_FLAGS.items() if flag in argv]
    if len(modes) > 1:
        print("[cleanup] Pass at most one of --expired-only, --duplicates-only, --all")
        return 2
    dry_run = "--dry-run" in argv

    app = create_app()
    with app.app_context():
        init_db()
        run_migrations()

        stats = trial_stats()
        print(f"[cleanup] {stats['total']} trials ({stats['active']} active, {stats['expired']} expired)")
        if not modes:
            print("[cleanup] No mode given, nothing deleted.")
            return 0

        doomed = cleanup_trials(modes[0], dry_run=dry_run)
        verb = "Would delete" if dry_run else "Deleted"
        for t in doomed:
            print(f"  - {t.id}  session={t.session_id}  fp={t.device_fingerprint}  ip={t.ip_address}")
        print(f"[cleanup] {verb} {len(doomed)} trials (mode={modes[0]}).")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
