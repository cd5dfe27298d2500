"""Symbol index: per-method sequence points keyed by (module identity, token).

The index is assembled through :class:`SymbolIndexBuilder` while modules are
scanned, then frozen into a read-only :class:`SymbolIndex` that resolves
managed crash frames. A built index can be persisted as a gzip-compressed
JSON document so later runs skip the scan.
"""
from __future__ import annotations

import gzip
import json
import os
import zlib
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple, Union

from .frames import CrashFrame
from .keys import (
    CacheFormatError,
    MethodIdentity,
    MethodKey,
    SourceRange,
    format_key,
    parse_key,
)

CACHE_SUFFIX = ".gz"

PathLike = Union[str, "os.PathLike[str]"]


class SymbolIndexBuilder:
    """Mutable collector used during a scan."""

    def __init__(self):
        self._lookup: Dict[MethodKey, Tuple[SourceRange, ...]] = {}
        self._types: Dict[MethodKey, MethodIdentity] = {}

    def add(self, assembly: str, klass: str, function: str,
            module_identity: str, token: int,
            sequence_points: Iterable[SourceRange]):
        """Record (or overwrite) the method identity and sequence table for a key."""
        key = MethodKey(module_identity, token)
        self._lookup[key] = tuple(sequence_points)
        self._types[key] = MethodIdentity(assembly, klass, function)

    def __len__(self) -> int:
        return len(self._types)

    def build(self) -> "SymbolIndex":
        return SymbolIndex(dict(self._lookup), dict(self._types))


class SymbolIndex:
    """Read-only method lookup built by :class:`SymbolIndexBuilder`."""

    def __init__(self, lookup: Dict[MethodKey, Tuple[SourceRange, ...]],
                 types: Dict[MethodKey, MethodIdentity],
                 source: Optional[str] = None):
        self._lookup: Mapping[MethodKey, Tuple[SourceRange, ...]] = MappingProxyType(lookup)
        self._types: Mapping[MethodKey, MethodIdentity] = MappingProxyType(types)
        # Human readable origin (scan root or cache path) for log output
        self.source = source

    @classmethod
    def empty(cls) -> "SymbolIndex":
        return cls({}, {})

    def __len__(self) -> int:
        return len(self._types)

    def __contains__(self, key: object) -> bool:
        return key in self._types

    def keys(self) -> Iterator[MethodKey]:
        return iter(self._types)

    def identity(self, key: MethodKey) -> Optional[MethodIdentity]:
        return self._types.get(key)

    def sequence_points(self, key: MethodKey) -> Tuple[SourceRange, ...]:
        return self._lookup.get(key, ())

    def try_resolve(self, frame: CrashFrame) -> bool:
        """Fill in a managed frame from this index.

        Returns False and leaves the frame untouched when the method key is
        unknown. Otherwise the method identity is always applied; line and
        file come from the first sequence point whose offset equals the
        frame's IL offset, if any.
        """
        key = frame.method_key
        identity = self._types.get(key)
        if identity is None:
            return False

        match = None
        for seq in self._lookup.get(key, ()):
            if seq.offset == frame.offset:
                match = seq
                break

        frame.apply_method(identity, match)
        return True

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_document(self) -> Dict[str, Dict[str, object]]:
        return {
            "Lookup": {
                format_key(key): [seq.to_json() for seq in seqs]
                for key, seqs in self._lookup.items()
            },
            "Types": {
                format_key(key): identity.to_json()
                for key, identity in self._types.items()
            },
        }

    @classmethod
    def from_document(cls, document: object, source: Optional[str] = None) -> "SymbolIndex":
        if not isinstance(document, dict):
            raise CacheFormatError("Symbol cache root must be an object")
        raw_lookup = document.get("Lookup")
        raw_types = document.get("Types")
        if not isinstance(raw_lookup, dict) or not isinstance(raw_types, dict):
            raise CacheFormatError("Symbol cache must contain 'Lookup' and 'Types' objects")

        lookup: Dict[MethodKey, Tuple[SourceRange, ...]] = {}
        for key_text, seqs in raw_lookup.items():
            if not isinstance(seqs, list):
                raise CacheFormatError(f"Sequence points for {key_text!r} must be a list")
            lookup[parse_key(key_text)] = tuple(SourceRange.from_json(s) for s in seqs)

        types: Dict[MethodKey, MethodIdentity] = {}
        for key_text, identity in raw_types.items():
            types[parse_key(key_text)] = MethodIdentity.from_json(identity)

        return cls(lookup, types, source=source)

    def save(self, path: PathLike) -> Path:
        """Write the index as gzip-compressed JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with gzip.open(path, "wt", encoding="utf-8") as f:
            json.dump(self.to_document(), f)
        return path

    @classmethod
    def load(cls, path: PathLike) -> "SymbolIndex":
        """Read an index written by :meth:`save`.

        Raises:
            FileNotFoundError: if the cache file does not exist.
            CacheFormatError: if the file is not a valid symbol cache.
        """
        path = Path(path)
        try:
            with gzip.open(path, "rt", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            raise
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CacheFormatError(f"Could not read symbol cache {path}: {e}") from e
        return cls.from_document(document, source=str(path))


def cache_path_for(cache_dir: PathLike, name: str) -> Path:
    """Cache file path for an index name, following the ``.gz`` convention."""
    safe_name = name.replace("/", "_").replace("\\", "_").replace(":", "")
    return Path(cache_dir) / f"{safe_name}.json{CACHE_SUFFIX}"
