"""Root conftest: exports .env.test before dm_client.config builds its settings."""
from __future__ import annotations

import os
from pathlib import Path


def _load_env_file(path: Path) -> None:
    if not path.is_file():
        return
    for raw in path.read_text().splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, _, value = line.partition("=")
        # Variables already set in the environment take precedence.
        os.environ.setdefault(name.strip(), value.strip().strip("\"'"))


_load_env_file(Path(__file__).resolve().parent / ".env.test")
