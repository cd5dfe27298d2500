"""Crash frame model.

A frame is either managed (module identity + method token + IL offset) or
native (a raw address). Both live in one dataclass tagged with
:class:`FrameKind`; resolution and emission switch on the tag.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .keys import MethodIdentity, MethodKey, SourceRange


# Address the Mono crash reporter writes for frames outside the runtime image
OUTSIDE_RUNTIME_SENTINEL = "outside mono-sgen"


class FrameKind(Enum):
    MANAGED = "managed"
    NATIVE = "native"


class FrameAlreadyResolvedError(RuntimeError):
    """Raised when resolution output is written twice to one frame."""


@dataclass
class CrashFrame:
    """One stack frame from a crash report."""
    kind: FrameKind

    # Managed input
    module_identity: Optional[str] = None
    token: Optional[int] = None
    offset: Optional[int] = None

    # Native input
    address: Optional[str] = None

    # Managed resolution output
    assembly: Optional[str] = None
    klass: Optional[str] = None
    function: Optional[str] = None
    source_file: Optional[str] = None
    start_line: Optional[int] = None
    start_column: Optional[int] = None
    end_line: Optional[int] = None
    end_column: Optional[int] = None

    # Native resolution output
    symbol: Optional[str] = None

    _resolved: bool = field(default=False, repr=False, compare=False)

    @classmethod
    def managed(cls, module_identity: str, token: int, offset: int) -> "CrashFrame":
        return cls(FrameKind.MANAGED, module_identity=module_identity, token=token, offset=offset)

    @classmethod
    def native(cls, address: str) -> "CrashFrame":
        return cls(FrameKind.NATIVE, address=address)

    @property
    def is_managed(self) -> bool:
        return self.kind is FrameKind.MANAGED

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def method_key(self) -> MethodKey:
        if not self.is_managed:
            raise TypeError("Native frames have no method key")
        return MethodKey(self.module_identity, self.token)

    def _claim(self):
        if self._resolved:
            raise FrameAlreadyResolvedError(f"Frame already resolved: {self.describe()}")
        self._resolved = True

    def apply_method(self, identity: MethodIdentity, source: Optional[SourceRange] = None):
        """Record a managed resolution. ``source`` is None for class-level hits."""
        if not self.is_managed:
            raise TypeError("Cannot apply a method identity to a native frame")
        self._claim()
        self.assembly = identity.assembly
        self.klass = identity.klass
        self.function = identity.function
        if source is not None:
            self.start_line = source.start_line
            self.start_column = source.start_column
            self.end_line = source.end_line
            self.end_column = source.end_column
            self.source_file = source.source_file

    def apply_symbol(self, symbol: str):
        if self.is_managed:
            raise TypeError("Cannot apply a native symbol to a managed frame")
        self._claim()
        self.symbol = symbol

    def describe(self) -> str:
        if self.is_managed:
            return f"{self.module_identity} 0x{self.token:x}+0x{self.offset:x}"
        return str(self.address)

    def emit(self) -> Dict[str, Any]:
        if self.kind is FrameKind.MANAGED:
            if self.assembly is None:
                return {
                    "Guid": self.module_identity,
                    "Token": f"0x{self.token:x}",
                    "Offset": f"0x{self.offset:x}",
                }
            return {
                "Assembly": self.assembly,
                "Class": self.klass,
                "Function": self.function,
                "File": self.source_file,
                "Line": self.start_line,
            }

        if self.symbol is None:
            return {"Address": self.address}
        return {"Address": self.address, "Name": self.symbol}


@dataclass
class CrashThread:
    """Frames of one thread, in report order."""
    name: str = ""
    managed_frames: List[CrashFrame] = field(default_factory=list)
    native_frames: List[CrashFrame] = field(default_factory=list)

    def all_frames(self) -> List[CrashFrame]:
        return self.managed_frames + self.native_frames

    def emit(self) -> Dict[str, Any]:
        return {
            "Name": self.name,
            "ManagedFrames": [frame.emit() for frame in self.managed_frames],
            "NativeFrames": [frame.emit() for frame in self.native_frames],
        }
