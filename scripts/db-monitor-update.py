#!/usr/bin/env python3
"""Install a newer db-monitor release from UPDATE_SCRIPT_URL."""
from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from dbmonitor.lib.auto_update import main  # type: ignore  # noqa: E402

if __name__ == "__main__":
    raise SystemExit(main())
