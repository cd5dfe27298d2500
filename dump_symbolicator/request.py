"""Symbolication request: crash report in, annotated report out."""
from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from .frames import CrashFrame, CrashThread
from .keys import MAX_TOKEN
from .symbol_index import SymbolIndex
from .symbolizer_session import NativeResolver


class CrashFormatError(ValueError):
    """Raised when a crash report cannot be parsed."""


# The runtime sometimes omits the comma before the "EventType:" key
_MISSING_EVENT_TYPE_SEPARATOR = re.compile(r'(?<=[}\]"\w])(\s*)(?="EventType:)')


def parse_crash_text(text: str) -> Dict[str, Any]:
    """Parse crash JSON, patching the known missing-separator malformation."""
    try:
        return json.loads(text)
    except json.JSONDecodeError as first_error:
        patched = _MISSING_EVENT_TYPE_SEPARATOR.sub(r',\1', text)
        if patched == text:
            raise CrashFormatError(f"Crash report is not valid JSON: {first_error}") from first_error
        try:
            return json.loads(patched)
        except json.JSONDecodeError as e:
            raise CrashFormatError(f"Crash report is not valid JSON even after EventType fix-up: {e}") from e


def _is_managed(frame: Dict[str, Any]) -> bool:
    value = frame.get("is_managed")
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def _hex_field(frame: Dict[str, Any], name: str) -> int:
    value = frame.get(name)
    if value is None:
        raise CrashFormatError(f"Managed frame is missing '{name}': {frame}")
    try:
        number = int(str(value), 16)
    except ValueError:
        raise CrashFormatError(f"Managed frame field '{name}' is not hex: {value!r}") from None
    if not 0 <= number <= MAX_TOKEN:
        raise CrashFormatError(f"Managed frame field '{name}' out of range: {value!r}")
    return number


def normalize_guid(guid: Any) -> str:
    """Module identity as indexed: hex digits only, upper-case."""
    return str(guid).strip().replace("-", "").replace("{", "").replace("}", "").upper()


def parse_frame(frame: Any) -> CrashFrame:
    if not isinstance(frame, dict):
        raise CrashFormatError(f"Frame must be an object, got {type(frame).__name__}")

    if _is_managed(frame):
        guid = frame.get("guid")
        if not guid:
            raise CrashFormatError(f"Managed frame is missing 'guid': {frame}")
        return CrashFrame.managed(normalize_guid(guid), _hex_field(frame, "token"),
                                  _hex_field(frame, "il_offset"))

    address = frame.get("native_address")
    if address is None:
        raise CrashFormatError(f"Unmanaged frame is missing 'native_address': {frame}")
    return CrashFrame.native(str(address))


def parse_frames(frames: Any) -> List[CrashFrame]:
    if frames is None:
        return []
    if not isinstance(frames, list):
        raise CrashFormatError(f"Frame list must be an array, got {type(frames).__name__}")
    return [parse_frame(frame) for frame in frames]


def parse_thread(thread: Any) -> CrashThread:
    if not isinstance(thread, dict):
        raise CrashFormatError(f"Thread must be an object, got {type(thread).__name__}")
    return CrashThread(
        name=str(thread.get("name") or ""),
        managed_frames=parse_frames(thread.get("managed_frames")),
        native_frames=parse_frames(thread.get("unmanaged_frames")),
    )


class SymbolicationRequest:
    """All threads of one crash report plus the resolution pass over them."""

    def __init__(self, document: Dict[str, Any]):
        payload = document.get("payload") if isinstance(document, dict) else None
        if not isinstance(payload, dict):
            raise CrashFormatError("Crash report has no 'payload' object")
        threads = payload.get("threads")
        if not isinstance(threads, list):
            raise CrashFormatError("Crash report payload has no 'threads' list")

        self.version: Optional[str] = payload.get("protocol_version")
        self.threads: List[CrashThread] = [parse_thread(t) for t in threads]

        self.stats = {
            'managed_frames': 0,
            'managed_resolved': 0,
            'managed_with_line': 0,
            'native_frames': 0,
            'native_resolved': 0,
        }

    @classmethod
    def from_text(cls, text: str) -> "SymbolicationRequest":
        return cls(parse_crash_text(text))

    @classmethod
    def from_file(cls, path) -> "SymbolicationRequest":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Crash report not found: {path}")
        return cls.from_text(path.read_text(encoding="utf-8", errors="replace"))

    def frames(self) -> List[CrashFrame]:
        return [frame for thread in self.threads for frame in thread.all_frames()]

    def resolve_frame(self, frame: CrashFrame, indexes: Sequence[SymbolIndex],
                      native: Optional[NativeResolver]) -> bool:
        if frame.is_managed:
            self.stats['managed_frames'] += 1
            for index in indexes:
                if index.try_resolve(frame):
                    self.stats['managed_resolved'] += 1
                    if frame.start_line is not None:
                        self.stats['managed_with_line'] += 1
                    return True
            return False

        self.stats['native_frames'] += 1
        if native is None:
            return False
        name = native.try_resolve(frame.address)
        if name is None:
            return False
        frame.apply_symbol(name)
        self.stats['native_resolved'] += 1
        return True

    def process(self, indexes: Sequence[SymbolIndex],
                native: Optional[NativeResolver] = None):
        """Resolve every frame. Indexes are consulted in order; the first hit wins."""
        for frame in self.frames():
            self.resolve_frame(frame, indexes, native)

    def emit(self) -> Dict[str, Any]:
        return {
            "Version": self.version,
            "Threads": [thread.emit() for thread in self.threads],
        }

    def to_json(self) -> str:
        return json.dumps(self.emit(), indent=2)

    def write(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.to_json(), encoding="utf-8")
        return path
