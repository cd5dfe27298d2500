"""
ECMA-335 Metadata and Portable PDB Reader

Reads .NET modules and their portable PDB companion files using binary
struct unpacking. Extracts what the symbol index needs:
- Module MVID (build identity)
- TypeDef / MethodDef names and metadata tokens (nested types included)
- Per-method sequence points from the companion .pdb

Windows (MSF) PDB files and embedded PDBs are not supported; modules that
only carry those are reported as unreadable.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .keys import SourceRange


class ModuleReadError(Exception):
    """Raised when a module or its debug companion cannot be read."""


# ============================================================================
# CONSTANTS
# ============================================================================

METADATA_SIGNATURE = 0x424A5342  # 'BSJB'
CLI_HEADER_DIRECTORY = 14
METHODDEF_TOKEN_TYPE = 0x06000000


class Table(IntEnum):
    """Metadata table ids (ECMA-335 II.22 + Portable PDB)"""
    MODULE = 0x00
    TYPE_REF = 0x01
    TYPE_DEF = 0x02
    FIELD_PTR = 0x03
    FIELD = 0x04
    METHOD_PTR = 0x05
    METHOD_DEF = 0x06
    PARAM_PTR = 0x07
    PARAM = 0x08
    INTERFACE_IMPL = 0x09
    MEMBER_REF = 0x0A
    CONSTANT = 0x0B
    CUSTOM_ATTRIBUTE = 0x0C
    FIELD_MARSHAL = 0x0D
    DECL_SECURITY = 0x0E
    CLASS_LAYOUT = 0x0F
    FIELD_LAYOUT = 0x10
    STAND_ALONE_SIG = 0x11
    EVENT_MAP = 0x12
    EVENT_PTR = 0x13
    EVENT = 0x14
    PROPERTY_MAP = 0x15
    PROPERTY_PTR = 0x16
    PROPERTY = 0x17
    METHOD_SEMANTICS = 0x18
    METHOD_IMPL = 0x19
    MODULE_REF = 0x1A
    TYPE_SPEC = 0x1B
    IMPL_MAP = 0x1C
    FIELD_RVA = 0x1D
    ENC_LOG = 0x1E
    ENC_MAP = 0x1F
    ASSEMBLY = 0x20
    ASSEMBLY_PROCESSOR = 0x21
    ASSEMBLY_OS = 0x22
    ASSEMBLY_REF = 0x23
    ASSEMBLY_REF_PROCESSOR = 0x24
    ASSEMBLY_REF_OS = 0x25
    FILE = 0x26
    EXPORTED_TYPE = 0x27
    MANIFEST_RESOURCE = 0x28
    NESTED_CLASS = 0x29
    GENERIC_PARAM = 0x2A
    METHOD_SPEC = 0x2B
    GENERIC_PARAM_CONSTRAINT = 0x2C
    DOCUMENT = 0x30
    METHOD_DEBUG_INFORMATION = 0x31


T = Table

# Coded index -> (tag bits, tables addressed by the tag)
CODED_INDEXES: Dict[str, Tuple[int, Tuple[int, ...]]] = {
    "TypeDefOrRef": (2, (T.TYPE_DEF, T.TYPE_REF, T.TYPE_SPEC)),
    "HasConstant": (2, (T.FIELD, T.PARAM, T.PROPERTY)),
    "HasCustomAttribute": (5, (
        T.METHOD_DEF, T.FIELD, T.TYPE_REF, T.TYPE_DEF, T.PARAM, T.INTERFACE_IMPL,
        T.MEMBER_REF, T.MODULE, T.DECL_SECURITY, T.PROPERTY, T.EVENT,
        T.STAND_ALONE_SIG, T.MODULE_REF, T.TYPE_SPEC, T.ASSEMBLY, T.ASSEMBLY_REF,
        T.FILE, T.EXPORTED_TYPE, T.MANIFEST_RESOURCE, T.GENERIC_PARAM,
        T.GENERIC_PARAM_CONSTRAINT, T.METHOD_SPEC,
    )),
    "HasFieldMarshal": (1, (T.FIELD, T.PARAM)),
    "HasDeclSecurity": (2, (T.TYPE_DEF, T.METHOD_DEF, T.ASSEMBLY)),
    "MemberRefParent": (3, (T.TYPE_DEF, T.TYPE_REF, T.MODULE_REF, T.METHOD_DEF, T.TYPE_SPEC)),
    "HasSemantics": (1, (T.EVENT, T.PROPERTY)),
    "MethodDefOrRef": (1, (T.METHOD_DEF, T.MEMBER_REF)),
    "MemberForwarded": (1, (T.FIELD, T.METHOD_DEF)),
    "Implementation": (2, (T.FILE, T.ASSEMBLY_REF, T.EXPORTED_TYPE)),
    "CustomAttributeType": (3, (T.METHOD_DEF, T.MEMBER_REF)),
    "ResolutionScope": (2, (T.MODULE, T.MODULE_REF, T.ASSEMBLY_REF, T.TYPE_REF)),
    "TypeOrMethodDef": (1, (T.TYPE_DEF, T.METHOD_DEF)),
}

# Column kinds: "u2", "u4", "str", "guid", "blob", ("idx", table), ("coded", name)
TABLE_SCHEMA: Dict[int, List[Tuple[str, object]]] = {
    T.MODULE: [("Generation", "u2"), ("Name", "str"), ("Mvid", "guid"),
               ("EncId", "guid"), ("EncBaseId", "guid")],
    T.TYPE_REF: [("ResolutionScope", ("coded", "ResolutionScope")), ("TypeName", "str"),
                 ("TypeNamespace", "str")],
    T.TYPE_DEF: [("Flags", "u4"), ("TypeName", "str"), ("TypeNamespace", "str"),
                 ("Extends", ("coded", "TypeDefOrRef")), ("FieldList", ("idx", T.FIELD)),
                 ("MethodList", ("idx", T.METHOD_DEF))],
    T.FIELD_PTR: [("Field", ("idx", T.FIELD))],
    T.FIELD: [("Flags", "u2"), ("Name", "str"), ("Signature", "blob")],
    T.METHOD_PTR: [("Method", ("idx", T.METHOD_DEF))],
    T.METHOD_DEF: [("RVA", "u4"), ("ImplFlags", "u2"), ("Flags", "u2"), ("Name", "str"),
                   ("Signature", "blob"), ("ParamList", ("idx", T.PARAM))],
    T.PARAM_PTR: [("Param", ("idx", T.PARAM))],
    T.PARAM: [("Flags", "u2"), ("Sequence", "u2"), ("Name", "str")],
    T.INTERFACE_IMPL: [("Class", ("idx", T.TYPE_DEF)), ("Interface", ("coded", "TypeDefOrRef"))],
    T.MEMBER_REF: [("Class", ("coded", "MemberRefParent")), ("Name", "str"),
                   ("Signature", "blob")],
    T.CONSTANT: [("Type", "u2"), ("Parent", ("coded", "HasConstant")), ("Value", "blob")],
    T.CUSTOM_ATTRIBUTE: [("Parent", ("coded", "HasCustomAttribute")),
                         ("Type", ("coded", "CustomAttributeType")), ("Value", "blob")],
    T.FIELD_MARSHAL: [("Parent", ("coded", "HasFieldMarshal")), ("NativeType", "blob")],
    T.DECL_SECURITY: [("Action", "u2"), ("Parent", ("coded", "HasDeclSecurity")),
                      ("PermissionSet", "blob")],
    T.CLASS_LAYOUT: [("PackingSize", "u2"), ("ClassSize", "u4"), ("Parent", ("idx", T.TYPE_DEF))],
    T.FIELD_LAYOUT: [("Offset", "u4"), ("Field", ("idx", T.FIELD))],
    T.STAND_ALONE_SIG: [("Signature", "blob")],
    T.EVENT_MAP: [("Parent", ("idx", T.TYPE_DEF)), ("EventList", ("idx", T.EVENT))],
    T.EVENT_PTR: [("Event", ("idx", T.EVENT))],
    T.EVENT: [("EventFlags", "u2"), ("Name", "str"), ("EventType", ("coded", "TypeDefOrRef"))],
    T.PROPERTY_MAP: [("Parent", ("idx", T.TYPE_DEF)), ("PropertyList", ("idx", T.PROPERTY))],
    T.PROPERTY_PTR: [("Property", ("idx", T.PROPERTY))],
    T.PROPERTY: [("Flags", "u2"), ("Name", "str"), ("Type", "blob")],
    T.METHOD_SEMANTICS: [("Semantics", "u2"), ("Method", ("idx", T.METHOD_DEF)),
                         ("Association", ("coded", "HasSemantics"))],
    T.METHOD_IMPL: [("Class", ("idx", T.TYPE_DEF)), ("MethodBody", ("coded", "MethodDefOrRef")),
                    ("MethodDeclaration", ("coded", "MethodDefOrRef"))],
    T.MODULE_REF: [("Name", "str")],
    T.TYPE_SPEC: [("Signature", "blob")],
    T.IMPL_MAP: [("MappingFlags", "u2"), ("MemberForwarded", ("coded", "MemberForwarded")),
                 ("ImportName", "str"), ("ImportScope", ("idx", T.MODULE_REF))],
    T.FIELD_RVA: [("RVA", "u4"), ("Field", ("idx", T.FIELD))],
    T.ENC_LOG: [("Token", "u4"), ("FuncCode", "u4")],
    T.ENC_MAP: [("Token", "u4")],
    T.ASSEMBLY: [("HashAlgId", "u4"), ("MajorVersion", "u2"), ("MinorVersion", "u2"),
                 ("BuildNumber", "u2"), ("RevisionNumber", "u2"), ("Flags", "u4"),
                 ("PublicKey", "blob"), ("Name", "str"), ("Culture", "str")],
    T.ASSEMBLY_PROCESSOR: [("Processor", "u4")],
    T.ASSEMBLY_OS: [("OSPlatformID", "u4"), ("OSMajorVersion", "u4"), ("OSMinorVersion", "u4")],
    T.ASSEMBLY_REF: [("MajorVersion", "u2"), ("MinorVersion", "u2"), ("BuildNumber", "u2"),
                     ("RevisionNumber", "u2"), ("Flags", "u4"), ("PublicKeyOrToken", "blob"),
                     ("Name", "str"), ("Culture", "str"), ("HashValue", "blob")],
    T.ASSEMBLY_REF_PROCESSOR: [("Processor", "u4"), ("AssemblyRef", ("idx", T.ASSEMBLY_REF))],
    T.ASSEMBLY_REF_OS: [("OSPlatformID", "u4"), ("OSMajorVersion", "u4"),
                        ("OSMinorVersion", "u4"), ("AssemblyRef", ("idx", T.ASSEMBLY_REF))],
    T.FILE: [("Flags", "u4"), ("Name", "str"), ("HashValue", "blob")],
    T.EXPORTED_TYPE: [("Flags", "u4"), ("TypeDefId", "u4"), ("TypeName", "str"),
                      ("TypeNamespace", "str"), ("Implementation", ("coded", "Implementation"))],
    T.MANIFEST_RESOURCE: [("Offset", "u4"), ("Flags", "u4"), ("Name", "str"),
                          ("Implementation", ("coded", "Implementation"))],
    T.NESTED_CLASS: [("NestedClass", ("idx", T.TYPE_DEF)), ("EnclosingClass", ("idx", T.TYPE_DEF))],
    T.GENERIC_PARAM: [("Number", "u2"), ("Flags", "u2"), ("Owner", ("coded", "TypeOrMethodDef")),
                      ("Name", "str")],
    T.METHOD_SPEC: [("Method", ("coded", "MethodDefOrRef")), ("Instantiation", "blob")],
    T.GENERIC_PARAM_CONSTRAINT: [("Owner", ("idx", T.GENERIC_PARAM)),
                                 ("Constraint", ("coded", "TypeDefOrRef"))],
    T.DOCUMENT: [("Name", "blob"), ("HashAlgorithm", "guid"), ("Hash", "blob"),
                 ("Language", "guid")],
    T.METHOD_DEBUG_INFORMATION: [("Document", ("idx", T.DOCUMENT)), ("SequencePoints", "blob")],
}


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class MethodDebugInfo:
    """One method definition with its sequence points."""
    token: int
    klass: str
    function: str
    sequence_points: List[SourceRange] = field(default_factory=list)


@dataclass
class ModuleDebugInfo:
    """Everything the symbol index needs from one module."""
    path: str
    module_identity: str
    methods: List[MethodDebugInfo] = field(default_factory=list)


# ============================================================================
# BLOB DECODING
# ============================================================================

class BlobReader:
    """Cursor over a blob using ECMA-335 compressed integer encoding."""

    def __init__(self, data: bytes, offset: int = 0, end: Optional[int] = None):
        self.data = data
        self.pos = offset
        self.end = len(data) if end is None else min(end, len(data))

    def at_end(self) -> bool:
        return self.pos >= self.end

    def _byte(self) -> int:
        if self.pos >= self.end:
            raise ModuleReadError("Unexpected end of blob")
        value = self.data[self.pos]
        self.pos += 1
        return value

    def read_compressed_with_size(self) -> Tuple[int, int]:
        b0 = self._byte()
        if b0 & 0x80 == 0:
            return b0, 1
        if b0 & 0xC0 == 0x80:
            return ((b0 & 0x3F) << 8) | self._byte(), 2
        if b0 & 0xE0 == 0xC0:
            b1, b2, b3 = self._byte(), self._byte(), self._byte()
            return ((b0 & 0x1F) << 24) | (b1 << 16) | (b2 << 8) | b3, 4
        raise ModuleReadError(f"Invalid compressed integer lead byte 0x{b0:02x}")

    def read_compressed_uint(self) -> int:
        return self.read_compressed_with_size()[0]

    def read_compressed_int(self) -> int:
        """Signed compressed integer (sign bit rotated into bit 0)."""
        value, size = self.read_compressed_with_size()
        if value & 1 == 0:
            return value >> 1
        bias = {1: 0x40, 2: 0x2000, 4: 0x10000000}[size]
        return (value >> 1) - bias


# ============================================================================
# METADATA ROOT / TABLES
# ============================================================================

class MetadataImage:
    """Metadata root with its heaps and table stream."""

    def __init__(self, data: bytes, root_offset: int, source: str):
        self.data = data
        self.root = root_offset
        self.source = source
        self.streams: Dict[str, Tuple[int, int]] = {}
        self.rows: Dict[int, int] = {}
        self.table_offsets: Dict[int, int] = {}
        self.row_sizes: Dict[int, int] = {}
        self._parse_root()
        self._parse_tables()

    # -- root and stream headers ------------------------------------------

    def _unpack(self, fmt: str, offset: int) -> tuple:
        try:
            return struct.unpack_from(fmt, self.data, offset)
        except struct.error as e:
            raise ModuleReadError(f"{self.source}: truncated metadata at 0x{offset:x}") from e

    def _parse_root(self):
        sig, = self._unpack("<I", self.root)
        if sig != METADATA_SIGNATURE:
            raise ModuleReadError(f"{self.source}: metadata signature not found")

        version_length, = self._unpack("<I", self.root + 12)
        pos = self.root + 16 + version_length
        _, stream_count = self._unpack("<HH", pos)
        pos += 4

        for _ in range(stream_count):
            offset, size = self._unpack("<II", pos)
            pos += 8
            name_end = self.data.find(b"\x00", pos)
            if name_end < 0:
                raise ModuleReadError(f"{self.source}: unterminated stream name")
            name = self.data[pos:name_end].decode("ascii", errors="replace")
            # Names are padded to a 4-byte boundary including the terminator
            pos += (name_end - pos + 4) & ~3
            self.streams[name] = (self.root + offset, size)

    def has_stream(self, name: str) -> bool:
        return name in self.streams

    def _parse_tables(self):
        stream = self.streams.get("#~") or self.streams.get("#-")
        if stream is None:
            raise ModuleReadError(f"{self.source}: no metadata table stream")
        start, _ = stream

        heap_sizes, = self._unpack("<B", start + 6)
        valid, = self._unpack("<Q", start + 8)
        self.str_size = 4 if heap_sizes & 0x01 else 2
        self.guid_size = 4 if heap_sizes & 0x02 else 2
        self.blob_size = 4 if heap_sizes & 0x04 else 2

        pos = start + 24
        present = [t for t in range(64) if valid & (1 << t)]
        for table in present:
            self.rows[table], = self._unpack("<I", pos)
            pos += 4
        # Uncompressed (#-) streams written with extra data carry 4 more bytes
        if heap_sizes & 0x40:
            pos += 4

        for table in present:
            schema = TABLE_SCHEMA.get(table)
            if schema is None:
                # Later tables are unreachable without a row layout; stop here.
                break
            size = sum(self._column_size(kind) for _, kind in schema)
            self.table_offsets[table] = pos
            self.row_sizes[table] = size
            pos += size * self.rows[table]

    def _column_size(self, kind) -> int:
        if kind == "u2":
            return 2
        if kind == "u4":
            return 4
        if kind == "str":
            return self.str_size
        if kind == "guid":
            return self.guid_size
        if kind == "blob":
            return self.blob_size
        tag, arg = kind
        if tag == "idx":
            return 2 if self.rows.get(arg, 0) < 0x10000 else 4
        bits, tables = CODED_INDEXES[arg]
        largest = max(self.rows.get(t, 0) for t in tables)
        return 2 if largest < (1 << (16 - bits)) else 4

    # -- row access --------------------------------------------------------

    def row_count(self, table: int) -> int:
        return self.rows.get(table, 0)

    def row(self, table: int, rid: int) -> Dict[str, int]:
        """Raw column values of a 1-based row id."""
        if not 1 <= rid <= self.row_count(table) or table not in self.table_offsets:
            raise ModuleReadError(f"{self.source}: row {rid} out of range for table 0x{table:02x}")
        pos = self.table_offsets[table] + (rid - 1) * self.row_sizes[table]
        values = {}
        for name, kind in TABLE_SCHEMA[table]:
            size = self._column_size(kind)
            values[name], = self._unpack("<H" if size == 2 else "<I", pos)
            pos += size
        return values

    def iter_rows(self, table: int) -> Iterator[Tuple[int, Dict[str, int]]]:
        for rid in range(1, self.row_count(table) + 1):
            yield rid, self.row(table, rid)

    # -- heaps ---------------------------------------------------------------

    def string(self, index: int) -> str:
        start, size = self.streams.get("#Strings", (0, 0))
        if index == 0 or index >= size:
            return ""
        pos = start + index
        end = self.data.find(b"\x00", pos, start + size)
        if end < 0:
            end = start + size
        return self.data[pos:end].decode("utf-8", errors="replace")

    def guid_bytes(self, index: int) -> bytes:
        start, size = self.streams.get("#GUID", (0, 0))
        if index == 0 or index * 16 > size:
            return b"\x00" * 16
        pos = start + (index - 1) * 16
        return bytes(self.data[pos:pos + 16])

    def blob(self, index: int) -> bytes:
        start, size = self.streams.get("#Blob", (0, 0))
        if index == 0 or index >= size:
            return b""
        reader = BlobReader(self.data, start + index, start + size)
        length = reader.read_compressed_uint()
        return bytes(self.data[reader.pos:reader.pos + length])


# ============================================================================
# PE IMAGE
# ============================================================================

def _find_cli_metadata(data: bytes, source: str) -> int:
    """Return the file offset of the metadata root of a managed PE image."""
    try:
        if len(data) < 0x40 or data[:2] != b"MZ":
            raise ModuleReadError(f"{source}: not a PE image")

        e_lfanew = struct.unpack_from("<I", data, 0x3C)[0]
        if data[e_lfanew:e_lfanew + 4] != b"PE\x00\x00":
            raise ModuleReadError(f"{source}: missing PE signature")

        file_header_off = e_lfanew + 4
        _, num_sections, _, _, _, size_opt_header, _ = struct.unpack_from("<HHIIIHH", data, file_header_off)

        opt_off = file_header_off + 20
        magic = struct.unpack_from("<H", data, opt_off)[0]
        if magic == 0x20B:
            rva_count_off, data_dir_off = opt_off + 108, opt_off + 112
        elif magic == 0x10B:
            rva_count_off, data_dir_off = opt_off + 92, opt_off + 96
        else:
            raise ModuleReadError(f"{source}: unknown optional header magic 0x{magic:x}")

        rva_count = struct.unpack_from("<I", data, rva_count_off)[0]
        if rva_count <= CLI_HEADER_DIRECTORY:
            raise ModuleReadError(f"{source}: not a managed module")
        cli_rva, cli_size = struct.unpack_from("<II", data, data_dir_off + 8 * CLI_HEADER_DIRECTORY)
        if cli_rva == 0 or cli_size == 0:
            raise ModuleReadError(f"{source}: not a managed module")

        sections_off = opt_off + size_opt_header
        sections = []
        for i in range(num_sections):
            sec_off = sections_off + i * 40
            virtual_size, virtual_address, size_raw, ptr_raw = struct.unpack_from("<IIII", data, sec_off + 8)
            sections.append((virtual_address, max(virtual_size, size_raw), ptr_raw, size_raw))

        def rva_to_file_offset(rva: int) -> int:
            for va, vsz, ptr, rawsz in sections:
                if va <= rva < va + vsz and rva - va < rawsz:
                    return ptr + (rva - va)
            raise ModuleReadError(f"{source}: RVA 0x{rva:x} outside all sections")

        cli_off = rva_to_file_offset(cli_rva)
        metadata_rva = struct.unpack_from("<I", data, cli_off + 8)[0]
        return rva_to_file_offset(metadata_rva)
    except struct.error as e:
        raise ModuleReadError(f"{source}: truncated PE image") from e


# ============================================================================
# PORTABLE PDB
# ============================================================================

def _document_name(pdb: MetadataImage, blob_index: int) -> str:
    """Decode a Document.Name blob (separator + list of part blob indexes)."""
    raw = pdb.blob(blob_index)
    if not raw:
        return ""
    reader = BlobReader(raw, 1)
    separator = chr(raw[0]) if raw[0] else ""
    parts = []
    while not reader.at_end():
        parts.append(pdb.blob(reader.read_compressed_uint()).decode("utf-8", errors="replace"))
    return separator.join(parts)


def decode_sequence_points(blob: bytes, document: int,
                           documents: Dict[int, str]) -> List[SourceRange]:
    """Decode a MethodDebugInformation.SequencePoints blob.

    Hidden sequence points are dropped. ``document`` is the row id from the
    MethodDebugInformation row; 0 means the blob starts with an initial
    document record.
    """
    points: List[SourceRange] = []
    if not blob:
        return points

    reader = BlobReader(blob)
    reader.read_compressed_uint()  # LocalSignature
    if document == 0:
        document = reader.read_compressed_uint()

    il_offset = 0
    start_line = 0
    start_column = 0
    first = True
    seen_visible = False

    while not reader.at_end():
        delta_il = reader.read_compressed_uint()
        if delta_il == 0 and not first:
            document = reader.read_compressed_uint()
            continue
        il_offset = delta_il if first else il_offset + delta_il
        first = False

        delta_lines = reader.read_compressed_uint()
        if delta_lines == 0:
            delta_columns = reader.read_compressed_uint()
        else:
            delta_columns = reader.read_compressed_int()

        if delta_lines == 0 and delta_columns == 0:
            continue  # hidden

        if seen_visible:
            start_line += reader.read_compressed_int()
            start_column += reader.read_compressed_int()
        else:
            start_line = reader.read_compressed_uint()
            start_column = reader.read_compressed_uint()
            seen_visible = True

        points.append(SourceRange(
            offset=il_offset,
            start_line=start_line,
            start_column=start_column,
            end_line=start_line + delta_lines,
            end_column=start_column + delta_columns,
            source_file=documents.get(document, ""),
        ))

    return points


def read_portable_pdb(path: Path) -> Dict[int, List[SourceRange]]:
    """Map MethodDef row id -> sequence points for a portable PDB file."""
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ModuleReadError(f"Could not read debug file {path}: {e}") from e

    if len(data) < 4 or struct.unpack_from("<I", data, 0)[0] != METADATA_SIGNATURE:
        raise ModuleReadError(f"{path}: not a portable PDB")

    pdb = MetadataImage(data, 0, str(path))
    if not pdb.has_stream("#Pdb"):
        raise ModuleReadError(f"{path}: missing #Pdb stream")

    documents = {rid: _document_name(pdb, row["Name"])
                 for rid, row in pdb.iter_rows(T.DOCUMENT)}

    methods: Dict[int, List[SourceRange]] = {}
    for rid, row in pdb.iter_rows(T.METHOD_DEBUG_INFORMATION):
        if row["SequencePoints"] == 0:
            continue
        methods[rid] = decode_sequence_points(pdb.blob(row["SequencePoints"]),
                                              row["Document"], documents)
    return methods


# ============================================================================
# MODULE READER
# ============================================================================

def format_mvid(raw: bytes) -> str:
    """Render an MVID the way the runtime reports it: heap-order bytes as upper-case hex."""
    return raw.hex().upper()


def companion_pdb_path(module_path: Path) -> Path:
    return module_path.with_suffix(".pdb")


class ModuleReader:
    """Reads module identity, methods and sequence points.

    Args:
        require_symbols: When True (default) a module without a readable
            companion PDB raises ModuleReadError, so it is skipped by the
            scanner. When False such modules yield methods without
            sequence points.
    """

    def __init__(self, require_symbols: bool = True):
        self.require_symbols = require_symbols

    def read_module(self, path) -> ModuleDebugInfo:
        path = Path(path)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise ModuleReadError(f"Could not read {path}: {e}") from e

        image = MetadataImage(data, _find_cli_metadata(data, str(path)), str(path))
        if image.row_count(T.MODULE) < 1:
            raise ModuleReadError(f"{path}: missing Module table")
        mvid = format_mvid(image.guid_bytes(image.row(T.MODULE, 1)["Mvid"]))

        sequence_points: Dict[int, List[SourceRange]] = {}
        pdb_path = companion_pdb_path(path)
        if pdb_path.exists():
            try:
                sequence_points = read_portable_pdb(pdb_path)
            except ModuleReadError:
                if self.require_symbols:
                    raise
        elif self.require_symbols:
            raise ModuleReadError(f"{path}: debug file {pdb_path.name} not found")

        info = ModuleDebugInfo(path=str(path), module_identity=mvid)
        type_names = self._type_names(image)
        for type_rid, method_rid in self._method_owners(image):
            klass = type_names.get(type_rid, "")
            method_name = image.string(image.row(T.METHOD_DEF, method_rid)["Name"])
            info.methods.append(MethodDebugInfo(
                token=METHODDEF_TOKEN_TYPE | method_rid,
                klass=klass,
                function=f"{klass}::{method_name}" if klass else method_name,
                sequence_points=sequence_points.get(method_rid, []),
            ))
        return info

    def _type_names(self, image: MetadataImage) -> Dict[int, str]:
        enclosing: Dict[int, int] = {}
        if T.NESTED_CLASS in image.table_offsets:
            for _, row in image.iter_rows(T.NESTED_CLASS):
                enclosing[row["NestedClass"]] = row["EnclosingClass"]

        simple: Dict[int, str] = {}
        for rid, row in image.iter_rows(T.TYPE_DEF):
            name = image.string(row["TypeName"])
            namespace = image.string(row["TypeNamespace"])
            simple[rid] = f"{namespace}.{name}" if namespace else name

        names: Dict[int, str] = {}

        def full_name(rid: int, depth: int = 0) -> str:
            if rid in names:
                return names[rid]
            parent = enclosing.get(rid)
            if parent and parent != rid and depth < 64:
                result = f"{full_name(parent, depth + 1)}/{simple.get(rid, '')}"
            else:
                result = simple.get(rid, "")
            names[rid] = result
            return result

        for rid in simple:
            full_name(rid)
        return names

    def _method_owners(self, image: MetadataImage) -> Iterator[Tuple[int, int]]:
        """Yield (TypeDef rid, MethodDef rid) for every method definition."""
        type_count = image.row_count(T.TYPE_DEF)
        method_count = image.row_count(T.METHOD_DEF)
        use_ptr = image.row_count(T.METHOD_PTR) > 0
        list_count = image.row_count(T.METHOD_PTR) if use_ptr else method_count

        starts = [image.row(T.TYPE_DEF, rid)["MethodList"] for rid in range(1, type_count + 1)]
        for i, start in enumerate(starts):
            end = starts[i + 1] if i + 1 < len(starts) else list_count + 1
            for slot in range(start, min(end, list_count + 1)):
                if slot < 1:
                    continue
                method_rid = image.row(T.METHOD_PTR, slot)["Method"] if use_ptr else slot
                yield i + 1, method_rid


_default_reader = ModuleReader()


def read_module(path) -> ModuleDebugInfo:
    """Read a module with its required companion PDB."""
    return _default_reader.read_module(path)
