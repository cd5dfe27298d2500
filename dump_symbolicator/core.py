"""Run orchestration: build indexes, resolve a crash report, write the result.

This module ties the pieces together the way the CLI uses them. Timing and
counters for a run are collected in a :class:`RunStatistics` object that the
run returns, so nothing is kept in module-level state.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import zip_longest
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import Config, safe_print
from .metadata_reader import ModuleReader
from .module_scanner import ScanBudget, ScanResult, load_or_scan
from .native_map import NativeOffsetMap
from .request import SymbolicationRequest
from .symbol_index import SymbolIndex, cache_path_for
from .symbolizer_session import NativeResolver, SymbolizerSession


@dataclass
class RunStatistics:
    """Timings (seconds) and counters for one run."""
    timings: Dict[str, float] = field(default_factory=dict)
    counters: Dict[str, int] = field(default_factory=dict)

    @contextmanager
    def timed(self, name: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.timings[name] = self.timings.get(name, 0.0) + time.perf_counter() - start

    def count(self, name: str, amount: int = 1):
        self.counters[name] = self.counters.get(name, 0) + amount

    def update(self, values: Dict[str, int], prefix: str = ""):
        for key, value in values.items():
            self.count(f"{prefix}{key}", value)

    def summary(self) -> str:
        lines = ["RUN STATISTICS", "=" * 60]
        for name, seconds in self.timings.items():
            lines.append(f"  {name:28} {seconds:8.3f}s")
        for name, value in sorted(self.counters.items()):
            lines.append(f"  {name:28} {value:8d}")
        return "\n".join(lines)


@dataclass
class SymbolicationResult:
    request: Optional[SymbolicationRequest]
    scans: List[ScanResult]
    stats: RunStatistics


def default_cache_path(config: Config, root) -> Path:
    """Cache location for a scan root when none was given explicitly."""
    return cache_path_for(config.cache_dir, str(Path(root).resolve()).strip("/\\"))


class Symbolicator:
    """Builds symbol indexes and symbolicates crash reports."""

    def __init__(self, config: Optional[Config] = None, reader: Optional[ModuleReader] = None):
        self.config = config or Config.from_env()
        self.reader = reader or ModuleReader()

    @property
    def budget(self) -> ScanBudget:
        max_bytes = self.config.max_module_mb * 1024 * 1024 if self.config.max_module_mb else None
        return ScanBudget(max_modules=self.config.max_modules, max_module_bytes=max_bytes)

    def build_indexes(self, roots: Sequence, index_paths: Sequence = (),
                      save: bool = False, rebuild: bool = False,
                      stats: Optional[RunStatistics] = None) -> List[ScanResult]:
        """One independent index per root, in priority order.

        ``index_paths`` pairs up with ``roots`` by position. An existing index
        file replaces the scan of its root; an index path with no root must
        exist.
        """
        stats = stats or RunStatistics()
        results: List[ScanResult] = []
        for root, index_path in zip_longest(roots, index_paths):
            scan_allowed = root is not None
            if root is None:
                if not Path(index_path).exists():
                    raise FileNotFoundError(f"Symbol index not found: {index_path}")
                root = index_path
            elif not Path(root).exists() and not (index_path and Path(index_path).exists()):
                raise FileNotFoundError(f"Scan root not found: {root}")

            if index_path is None and save:
                index_path = default_cache_path(self.config, root)

            with stats.timed(f"index {Path(root).name}"):
                result = load_or_scan(root, cache_path=index_path, save_cache=save,
                                      rebuild=rebuild and scan_allowed,
                                      reader=self.reader, budget=self.budget,
                                      verbose=self.config.verbose)
            stats.count("modules_scanned", len(result.scanned))
            stats.count("modules_skipped", len(result.skipped))
            stats.count("methods_indexed", len(result.index))
            results.append(result)
        return results

    def native_resolver(self, native_index: Optional[str] = None,
                        native_binary: Optional[str] = None) -> NativeResolver:
        offset_map = None
        if native_index:
            if native_index.startswith(("http://", "https://")):
                offset_map = NativeOffsetMap.load_from_url(native_index, self.config.cache_dir,
                                                           verbose=self.config.verbose)
            else:
                if not Path(native_index).exists():
                    raise FileNotFoundError(f"Native index not found: {native_index}")
                offset_map = NativeOffsetMap.load(native_index, verbose=self.config.verbose)

        session = None
        if native_binary:
            session = SymbolizerSession(native_binary, symbolizer=self.config.symbolizer,
                                        timeout=self.config.symbolizer_timeout,
                                        verbose=self.config.verbose)
        return NativeResolver(offset_map, session)

    def symbolicate(self, crash_file, roots: Sequence = (), index_paths: Sequence = (),
                    native_index: Optional[str] = None, native_binary: Optional[str] = None,
                    output=None, save_indexes: bool = False) -> SymbolicationResult:
        """Full run. Fatal input problems raise before any output is written."""
        stats = RunStatistics()

        with stats.timed("parse crash report"):
            request = SymbolicationRequest.from_file(crash_file)
        if self.config.verbose:
            safe_print(f"[*] Parsed {len(request.threads)} threads, {len(request.frames())} frames")

        scans = self.build_indexes(roots, index_paths, save=save_indexes, stats=stats)
        indexes: List[SymbolIndex] = [scan.index for scan in scans]

        native = self.native_resolver(native_index, native_binary)
        try:
            with stats.timed("resolve frames"):
                request.process(indexes, native)
        finally:
            native.shutdown()

        stats.update(request.stats)
        if native.session is not None:
            stats.update(native.session.stats, prefix="symbolizer_")

        if output is not None:
            with stats.timed("write output"):
                written = request.write(output)
            if self.config.verbose:
                safe_print(f"[+] Symbolicated report saved to: {written}")

        return SymbolicationResult(request=request, scans=scans, stats=stats)

    def build_only(self, roots: Sequence, index_paths: Sequence = ()) -> SymbolicationResult:
        """Scan roots and persist their indexes without symbolicating anything."""
        stats = RunStatistics()
        scans = self.build_indexes(roots, index_paths, save=True, rebuild=True, stats=stats)
        return SymbolicationResult(request=None, scans=scans, stats=stats)


def summarize_scans(scans: Sequence[ScanResult]) -> Dict[str, Any]:
    return {
        scan.root: {
            "methods": len(scan.index),
            "modules": len(scan.scanned),
            "skipped": len(scan.skipped),
            "from_cache": scan.from_cache,
        }
        for scan in scans
    }
