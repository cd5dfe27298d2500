"""Dump Symbolicator package.

Post-mortem symbolication of Mono runtime crash reports:
- Symbol index of per-method sequence points keyed by (module MVID, token)
- Portable PDB / ECMA-335 metadata reader for building the index
- Compressed index cache so install trees need not be rescanned
- Native frame resolution from an offline index with an external
  symbolizer subprocess as fallback
- Annotated JSON report output
"""
from .keys import (
    CacheFormatError,
    MethodIdentity,
    MethodKey,
    SourceRange,
    format_key,
    parse_key,
)
from .frames import (
    CrashFrame,
    CrashThread,
    FrameKind,
    FrameAlreadyResolvedError,
    OUTSIDE_RUNTIME_SENTINEL,
)
from .symbol_index import SymbolIndex, SymbolIndexBuilder
from .metadata_reader import ModuleReader, ModuleReadError, ModuleDebugInfo, MethodDebugInfo
from .module_scanner import ScanBudget, ScanResult, scan_root, load_or_scan
from .native_map import NativeOffsetMap
from .symbolizer_session import SymbolizerSession, NativeResolver
from .request import SymbolicationRequest, CrashFormatError
from .config import Config
from .core import Symbolicator, SymbolicationResult, RunStatistics

__all__ = [
    # Keys
    "CacheFormatError",
    "MethodIdentity",
    "MethodKey",
    "SourceRange",
    "format_key",
    "parse_key",
    # Frames
    "CrashFrame",
    "CrashThread",
    "FrameKind",
    "FrameAlreadyResolvedError",
    "OUTSIDE_RUNTIME_SENTINEL",
    # Index
    "SymbolIndex",
    "SymbolIndexBuilder",
    # Module reading / scanning
    "ModuleReader",
    "ModuleReadError",
    "ModuleDebugInfo",
    "MethodDebugInfo",
    "ScanBudget",
    "ScanResult",
    "scan_root",
    "load_or_scan",
    # Native resolution
    "NativeOffsetMap",
    "SymbolizerSession",
    "NativeResolver",
    # Request / run
    "SymbolicationRequest",
    "CrashFormatError",
    "Config",
    "Symbolicator",
    "SymbolicationResult",
    "RunStatistics",
]

__version__ = "1.0.0"
