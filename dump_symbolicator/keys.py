"""Key and record types shared by the symbol index and the frame model."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List


KEY_SEPARATOR = ":"
MAX_TOKEN = 0xFFFFFFFF


class CacheFormatError(ValueError):
    """Raised when a persisted symbol index cannot be decoded."""


@dataclass(frozen=True)
class MethodKey:
    """Identifies one method: module build id + metadata token."""
    module_identity: str
    token: int

    def __str__(self) -> str:
        return format_key(self)


@dataclass(frozen=True)
class MethodIdentity:
    """Where a method lives: assembly path, declaring class, function name."""
    assembly: str
    klass: str
    function: str

    def to_json(self) -> List[str]:
        return [self.assembly, self.klass, self.function]

    @classmethod
    def from_json(cls, value: Any) -> "MethodIdentity":
        if not isinstance(value, list) or len(value) != 3:
            raise CacheFormatError(f"Malformed method identity: {value!r}")
        return cls(str(value[0]), str(value[1]), str(value[2]))


@dataclass(frozen=True)
class SourceRange:
    """One sequence point: IL offset -> source line/column range."""
    offset: int
    start_line: int
    start_column: int
    end_line: int
    end_column: int
    source_file: str

    def to_json(self) -> Dict[str, Any]:
        return {
            "Offset": self.offset,
            "StartLine": self.start_line,
            "StartColumn": self.start_column,
            "EndLine": self.end_line,
            "EndColumn": self.end_column,
            "Document": self.source_file,
        }

    @classmethod
    def from_json(cls, value: Any) -> "SourceRange":
        try:
            return cls(
                offset=int(value["Offset"]),
                start_line=int(value["StartLine"]),
                start_column=int(value["StartColumn"]),
                end_line=int(value["EndLine"]),
                end_column=int(value["EndColumn"]),
                source_file=str(value["Document"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CacheFormatError(f"Malformed sequence point {value!r}: {e}") from e


def format_key(key: MethodKey) -> str:
    """Render a key as ``<module_identity>:<token>`` (token in decimal)."""
    return f"{key.module_identity}{KEY_SEPARATOR}{key.token:d}"


def parse_key(text: str) -> MethodKey:
    """Inverse of :func:`format_key`.

    Raises:
        CacheFormatError: if the text does not have exactly one separator or
            the token is not an unsigned 32-bit integer.
    """
    parts = text.split(KEY_SEPARATOR)
    if len(parts) != 2:
        raise CacheFormatError(
            f"Could not parse method key {text!r}: expected exactly one '{KEY_SEPARATOR}'"
        )
    module_identity, token_text = parts
    try:
        token = int(token_text, 10)
    except ValueError:
        raise CacheFormatError(f"Could not parse token in method key {text!r}") from None
    if not 0 <= token <= MAX_TOKEN:
        raise CacheFormatError(f"Token out of range in method key {text!r}")
    return MethodKey(module_identity, token)
