"""
Dotenv support for local runs of the ledger.

Outside production the loader reads `.env` and then `.env.local` from the
working directory (or from the file named by `TRADELEDGER_ENV_FILE`).
Later files win over earlier ones, and variables already present in the
process environment win over both, so a shell export or a deployment
secret is never shadowed by a stale local file.

In production (`ENVIRONMENT=prod`, also the default when unset) nothing
is read.

Must not import `tradeledger.config.config`.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List

from dotenv import dotenv_values

ENV_FILE_VAR = "TRADELEDGER_ENV_FILE"
DOTENV_NAMES = (".env", ".env.local")


def _is_prod_env() -> bool:
    return str(os.getenv("ENVIRONMENT") or "prod").strip().lower() == "prod"


def dotenv_candidates(root: Path) -> List[Path]:
    """Dotenv files to read, lowest precedence first."""
    explicit = os.getenv(ENV_FILE_VAR)
    if explicit:
        return [Path(explicit).expanduser()]
    return [root / name for name in DOTENV_NAMES]


def read_dotenv(paths: List[Path]) -> Dict[str, str]:
    """Merge the given dotenv files. Missing files and valueless keys are skipped."""
    merged: Dict[str, str] = {}
    for path in paths:
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if value is not None:
                merged[key] = value
    return merged


def load_dotenv_files(*, root: Path | None = None) -> List[str]:
    """
    Export dotenv values that the process environment does not already set.

    Returns the names of the variables that were exported. No-op in prod.
    """
    if _is_prod_env():
        return []

    values = read_dotenv(dotenv_candidates(root or Path.cwd()))
    exported = []
    for key, value in values.items():
        if key in os.environ:
            continue
        os.environ[key] = value
        exported.append(key)
    return exported
