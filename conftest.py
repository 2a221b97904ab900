"""Pytest configuration.

Puts ``scripts/boot`` on the path so the ops scripts can be imported the same
way they import each other (``from utils import ...``) when run by path.  The
``back2tab`` package itself lives under ``src/`` and is put on the path by
``pythonpath`` in ``pyproject.toml``.
"""

import sys
from pathlib import Path

SCRIPTS_DIR = Path(__file__).resolve().parent / "scripts" / "boot"
if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))
