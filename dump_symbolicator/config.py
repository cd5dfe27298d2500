"""Runtime configuration and console helpers.

Settings come from environment variables (the ``symbolicate.py`` launcher
loads a ``.env`` file first through python-dotenv); command-line
flags override them.
"""
from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional


DEFAULT_SYMBOLIZER = "llvm-symbolizer"
DEFAULT_SYMBOLIZER_TIMEOUT = 10.0


def safe_print(msg: str):
    """Print message safely, handling unicode encoding issues on Windows."""
    try:
        print(msg)
    except UnicodeEncodeError:
        encoding = sys.stdout.encoding or 'utf-8'
        print(msg.encode(encoding, errors='replace').decode(encoding, errors='replace'))


def _env_int(env: Mapping[str, str], name: str) -> Optional[int]:
    value = env.get(name, "").strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        safe_print(f"[-] Ignoring {name}={value!r}: not an integer")
        return None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        safe_print(f"[-] Ignoring {name}={value!r}: not a number")
        return default


@dataclass
class Config:
    """Settings shared by the scanner, native resolution and the CLI."""
    cache_dir: Path
    symbolizer: str = DEFAULT_SYMBOLIZER
    symbolizer_timeout: float = DEFAULT_SYMBOLIZER_TIMEOUT
    max_modules: Optional[int] = None
    max_module_mb: Optional[int] = None
    verbose: bool = True

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if env is None else env

        cache_dir = env.get("SYMBOLICATE_CACHE_DIR")
        return cls(
            cache_dir=Path(cache_dir) if cache_dir else Path(tempfile.gettempdir()) / "dump_symbolicator",
            symbolizer=env.get("SYMBOLICATE_SYMBOLIZER") or DEFAULT_SYMBOLIZER,
            symbolizer_timeout=_env_float(env, "SYMBOLICATE_SYMBOLIZER_TIMEOUT", DEFAULT_SYMBOLIZER_TIMEOUT),
            max_modules=_env_int(env, "SYMBOLICATE_MAX_MODULES"),
            max_module_mb=_env_int(env, "SYMBOLICATE_MAX_MODULE_MB"),
            verbose=env.get("SYMBOLICATE_VERBOSE", "1").strip().lower() not in ("0", "false", "no", "off"),
        )
