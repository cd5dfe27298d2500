"""
Native Offset Map

Static address -> symbol table for native frames, loaded from a text index
built out-of-band:

    Name: libmonosgen-2.0.so
    0x1a2b3c mono_handle_native_crash ...
    0x1a2c00 mono_runtime_invoke ...

A ``Name:`` line switches the current binary; every other non-blank line is a
whitespace-separated record whose first two fields are address and symbol.
Indexes can also be fetched over HTTP and cached locally.
"""
from __future__ import annotations

from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

import requests

from .config import safe_print

FILE_HEADER = "Name:"


def normalize_address(address: str) -> str:
    """Lower-case hex with a 0x prefix; non-hex text is returned stripped."""
    text = address.strip().lower()
    digits = text[2:] if text.startswith("0x") else text
    try:
        return hex(int(digits, 16))
    except ValueError:
        return text


class NativeOffsetMap:
    """Address -> (symbol name, binary file) lookup."""

    def __init__(self, entries: Optional[Dict[str, Tuple[str, str]]] = None):
        self._entries: Dict[str, Tuple[str, str]] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and normalize_address(address) in self._entries

    @classmethod
    def parse(cls, lines: Iterable[str]) -> "NativeOffsetMap":
        entries: Dict[str, Tuple[str, str]] = {}
        current_file = ""
        for line in lines:
            line = line.strip()
            if not line:
                continue
            if line.startswith(FILE_HEADER):
                current_file = line[len(FILE_HEADER):].strip()
                continue
            parts = line.split()
            if len(parts) < 2:
                continue
            entries[normalize_address(parts[0])] = (parts[1], current_file)
        return cls(entries)

    @classmethod
    def load(cls, path, verbose: bool = True) -> "NativeOffsetMap":
        path = Path(path)
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            native_map = cls.parse(f)
        if verbose:
            safe_print(f"[NATIVE] Loaded {len(native_map)} native symbols from {path}")
        return native_map

    @classmethod
    def load_from_url(cls, url: str, cache_dir, verbose: bool = True,
                      timeout: float = 30) -> "NativeOffsetMap":
        """Download a native index, caching it; use the cached copy if the download fails."""
        cache_dir = Path(cache_dir)
        cache_dir.mkdir(parents=True, exist_ok=True)
        safe_name = url.rstrip("/").rsplit("/", 1)[-1].replace(":", "") or "native_index"
        cache_path = cache_dir / f"native_{safe_name}"

        if verbose:
            safe_print(f"[*] Fetching native index from {url}...")
        try:
            resp = requests.get(url, timeout=timeout, headers={
                'User-Agent': 'DumpSymbolicator/1.0 (Native Index)'
            })
            resp.raise_for_status()
            cache_path.write_text(resp.text, encoding="utf-8")
            if verbose:
                safe_print(f"[+] Downloaded {len(resp.content) / 1024:.1f} KB, cached to: {cache_path}")
        except requests.RequestException as e:
            if not cache_path.exists():
                raise
            if verbose:
                safe_print(f"[-] Download failed ({type(e).__name__}: {e}); using cached copy")

        return cls.load(cache_path, verbose=verbose)

    def lookup(self, address: str) -> Optional[Tuple[str, str]]:
        return self._entries.get(normalize_address(address))

    def try_resolve(self, address: str) -> Optional[str]:
        """Display name for an address, or None when it is not in the index."""
        entry = self.lookup(address)
        if entry is None:
            return None
        name, binary = entry
        return f"{name} ({binary})" if binary else name
