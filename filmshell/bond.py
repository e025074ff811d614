"""
Bond Compact Binary v2 - Deserializer / reference serializer

Schema-less decoder for the Bond CompactBinary variant used by map variant
(MVAR) files. Based on the Microsoft Bond open-source specification
(https://github.com/microsoft/bond) and on inspection of real MVAR blobs.

Wire Format Summary (MVAR variant):
  Document:
    - uint LEB128 outer length
    - one struct, constrained to the outer length
    - optional compressed trailer when the outer length is not consumed:
      int32 BE size + raw deflate (or zlib) payload holding another document
  Field header: 1 byte
    - Bits [0:4] (5 bits) = BondDataType
    - Bits [5:7] (3 bits) = field ordinal
    - If ordinal 0-5: field_id = ordinal (absolute, NOT a delta)
    - If ordinal == 6: followed by uint8 absolute field ordinal (0-255)
    - If ordinal == 7: followed by uint16 LE absolute field ordinal (0-65535)
  Values: uint16/32/64 as LEB128, int16/32/64 as zigzag LEB128,
    int8 as a two's-complement byte, float/double little-endian.
  Structs: uint LEB128 byte length, fields, BT_STOP (0x00).
  BT_STOP_BASE (0x01) marks a base class boundary; decoding continues.
  List/Set header: 1 byte
    - Bits [0:4] = element type
    - Bits [5:7] = inline count; 0 -> uint LEB128 count follows,
      otherwise count = inline - 1
  Map header: key type byte, value type byte, uint LEB128 count.
"""

import base64
import logging
import struct
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Bond data types
# ---------------------------------------------------------------------------

class BondType(IntEnum):
    BT_STOP      = 0
    BT_STOP_BASE = 1
    BT_BOOL      = 2
    BT_UINT8     = 3
    BT_UINT16    = 4
    BT_UINT32    = 5
    BT_UINT64    = 6
    BT_FLOAT     = 7
    BT_DOUBLE    = 8
    BT_STRING    = 9
    BT_STRUCT    = 10
    BT_LIST      = 11
    BT_SET       = 12
    BT_MAP       = 13
    BT_INT8      = 14
    BT_INT16     = 15
    BT_INT32     = 16
    BT_INT64     = 17
    BT_WSTRING   = 18


BOND_TYPE_NAMES = {v: v.name[3:].lower() for v in BondType}

BOND_FORMAT = "Bond Compact Binary v2"

# Nesting limit for structs/containers; deeper values are skipped.
MAX_DEPTH = 64

# Byte lists shorter than this that are all printable are exposed as text.
TEXT_LIMIT = 1000

_BYTE_TYPES = (BondType.BT_UINT8, BondType.BT_INT8)
_TEXT_BYTES = frozenset(range(32, 127)) | {0, 9, 10, 13}


def type_name(bond_type: int) -> str:
    """Return the lowercase name of a Bond type, or ``type_<n>``."""
    return BOND_TYPE_NAMES.get(bond_type, f"type_{bond_type}")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class BondError(ValueError):
    """Malformed Bond data."""


class BondTruncatedError(BondError, EOFError):
    """The buffer ended before a declared value was complete."""


class UnknownTagError(BondError):
    """A type tag that the decoder does not recognise."""

    def __init__(self, tag: int):
        super().__init__(f"Unknown Bond type {tag}")
        self.tag = tag


# ---------------------------------------------------------------------------
# Decoded value model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UnknownValue:
    """Opaque placeholder for a value with an unrecognised type tag."""
    tag: int


@dataclass
class BondField:
    bond_type: int
    value: Any

    @property
    def type_name(self) -> str:
        return type_name(self.bond_type)


@dataclass
class BondStruct:
    """Decoded struct: field id -> BondField, in wire order."""
    fields: Dict[int, BondField] = field(default_factory=dict)
    has_base_class: bool = False
    truncated: bool = False

    def get(self, field_id: int) -> Optional[BondField]:
        return self.fields.get(field_id)

    def __contains__(self, field_id: int) -> bool:
        return field_id in self.fields

    def __len__(self) -> int:
        return len(self.fields)


@dataclass
class BondList:
    """Decoded list or set.

    Exactly one of ``items``, ``text`` or ``blob_ref`` is populated. Byte
    payloads are either printable text or a reference into the document's
    blob table.
    """
    element_type: int
    count: int
    items: Optional[List[Any]] = None
    text: Optional[str] = None
    blob_ref: Optional[int] = None
    is_set: bool = False
    truncated: bool = False


@dataclass
class BondMap:
    key_type: int
    value_type: int
    count: int
    entries: List[Tuple[Any, Any]] = field(default_factory=list)
    truncated: bool = False


@dataclass
class Blob:
    index: int
    length: int
    data: bytes


@dataclass
class CompressedDocument:
    compression: str
    compressed_size: int
    decompressed_size: int
    document: "BondDocument"


@dataclass
class BondDocument:
    root: BondStruct
    blobs: List[Blob] = field(default_factory=list)
    outer_length: int = 0
    file_size: int = 0
    nested: Optional[CompressedDocument] = None

    def to_dict(self) -> Dict[str, Any]:
        """Human-readable tree, JSON-serialisable."""
        result: Dict[str, Any] = {
            "format": BOND_FORMAT,
            "file_size": self.file_size,
            "outer_length": self.outer_length,
            "content": bond_to_json(self.root),
            "blobs": [
                {
                    "index": b.index,
                    "length": b.length,
                    "data": base64.b64encode(b.data).decode("ascii"),
                }
                for b in self.blobs
            ],
        }
        if self.nested is not None:
            result["compressed"] = {
                "compression": self.nested.compression,
                "compressed_size": self.nested.compressed_size,
                "decompressed_size": self.nested.decompressed_size,
                "data": self.nested.document.to_dict(),
            }
        return result


# ---------------------------------------------------------------------------
# Varint / ZigZag helpers
# ---------------------------------------------------------------------------

def encode_varint(value: int) -> bytes:
    """Encode an unsigned integer as LEB128."""
    if value < 0:
        raise ValueError(f"encode_varint requires unsigned value, got {value}")
    buf = bytearray()
    while value > 0x7F:
        buf.append((value & 0x7F) | 0x80)
        value >>= 7
    buf.append(value & 0x7F)
    return bytes(buf)


def decode_varint(stream: BytesIO) -> int:
    """Decode an unsigned LEB128 integer from a byte stream."""
    result = 0
    shift = 0
    while True:
        raw = stream.read(1)
        if not raw:
            raise BondTruncatedError("Unexpected end of stream reading varint")
        b = raw[0]
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            break
        shift += 7
        if shift > 63:
            raise BondError("Varint too large")
    return result


def zigzag_encode(value: int) -> int:
    """ZigZag-encode a signed integer to unsigned."""
    if value >= 0:
        return value << 1
    return ((-value) << 1) - 1


def zigzag_decode(value: int) -> int:
    """ZigZag-decode an unsigned integer to signed."""
    return (value >> 1) ^ -(value & 1)


# ---------------------------------------------------------------------------
# CompactBinaryV2 Reader
# ---------------------------------------------------------------------------

class CompactBinaryV2Reader:
    """Deserialize a Bond CompactBinary v2 document without a schema.

    Decoding is tolerant: unknown tags become ``UnknownValue`` placeholders
    and short reads stop the innermost struct/container, which keeps what it
    already decoded and is flagged ``truncated``.
    """

    def __init__(self, data: bytes, max_depth: int = MAX_DEPTH):
        self._data = bytes(data)
        self._stream = BytesIO(self._data)
        self._depth = 0
        self.max_depth = max_depth
        self.blobs: List[Blob] = []

    # -- raw readers --------------------------------------------------------

    def _read(self, n: int) -> bytes:
        data = self._stream.read(n)
        if len(data) < n:
            raise BondTruncatedError(
                f"Expected {n} bytes at offset {self.position - len(data)}, got {len(data)}")
        return data

    def _read_clamped(self, n: int) -> bytes:
        """Read up to n bytes; the format tolerates short strings/blobs."""
        return self._stream.read(min(n, self.remaining))

    def _read_byte(self) -> int:
        return self._read(1)[0]

    def _read_uint16_le(self) -> int:
        return struct.unpack('<H', self._read(2))[0]

    def _read_int32_be(self) -> int:
        return struct.unpack('>i', self._read(4))[0]

    def _read_float_le(self) -> float:
        return struct.unpack('<f', self._read(4))[0]

    def _read_double_le(self) -> float:
        return struct.unpack('<d', self._read(8))[0]

    def _read_varint(self) -> int:
        return decode_varint(self._stream)

    # -- field header -------------------------------------------------------

    def read_field(self) -> Tuple[int, int]:
        """Read a field header. Returns (bond_type, field_id).

        Returns (BT_STOP, 0) or (BT_STOP_BASE, 0) for struct markers.
        Field ids are absolute:
          ordinal 0-5: field_id = ordinal
          ordinal == 6: read uint8 absolute ordinal
          ordinal == 7: read uint16 LE absolute ordinal
        """
        raw = self._read_byte()
        bond_type = raw & 0x1F
        ordinal = raw >> 5

        if bond_type in (BondType.BT_STOP, BondType.BT_STOP_BASE):
            return bond_type, 0

        if ordinal == 6:
            return bond_type, self._read_byte()
        if ordinal == 7:
            return bond_type, self._read_uint16_le()
        return bond_type, ordinal

    # -- typed value readers ------------------------------------------------

    def read_bool(self) -> bool:
        return self._read_byte() != 0

    def read_uint8(self) -> int:
        return self._read_byte()

    def read_int8(self) -> int:
        return struct.unpack('<b', self._read(1))[0]

    def read_uint(self) -> int:
        return self._read_varint()

    def read_int(self) -> int:
        return zigzag_decode(self._read_varint())

    def read_float(self) -> float:
        return self._read_float_le()

    def read_double(self) -> float:
        return self._read_double_le()

    def read_string(self) -> str:
        length = self._read_varint()
        return self._read_clamped(length).decode('utf-8', errors='replace')

    def read_wstring(self) -> str:
        char_count = self._read_varint()
        return self._read_clamped(char_count * 2).decode('utf-16-le', errors='replace')

    # -- generic value reader -----------------------------------------------

    def read_value(self, bond_type: int) -> Any:
        """Read a single value of the specified Bond type.

        Raises UnknownTagError for tags outside the value types; nothing is
        consumed in that case.
        """
        if bond_type == BondType.BT_BOOL:
            return self.read_bool()
        elif bond_type == BondType.BT_UINT8:
            return self.read_uint8()
        elif bond_type == BondType.BT_INT8:
            return self.read_int8()
        elif bond_type in (BondType.BT_UINT16, BondType.BT_UINT32, BondType.BT_UINT64):
            return self.read_uint()
        elif bond_type in (BondType.BT_INT16, BondType.BT_INT32, BondType.BT_INT64):
            return self.read_int()
        elif bond_type == BondType.BT_FLOAT:
            return self.read_float()
        elif bond_type == BondType.BT_DOUBLE:
            return self.read_double()
        elif bond_type == BondType.BT_STRING:
            return self.read_string()
        elif bond_type == BondType.BT_WSTRING:
            return self.read_wstring()
        elif bond_type == BondType.BT_STRUCT:
            return self.read_struct_value()
        elif bond_type in (BondType.BT_LIST, BondType.BT_SET):
            return self.read_list(is_set=bond_type == BondType.BT_SET)
        elif bond_type == BondType.BT_MAP:
            return self.read_map()
        raise UnknownTagError(bond_type)

    def _read_item(self, bond_type: int) -> Any:
        try:
            return self.read_value(bond_type)
        except UnknownTagError:
            return UnknownValue(bond_type)

    # -- structs ------------------------------------------------------------

    def read_struct_value(self) -> BondStruct:
        """Read a length-prefixed struct and reposition to its declared end."""
        length = self._read_varint()
        end = min(self.position + length, len(self._data))
        result = self.read_struct(length)
        self._stream.seek(end)
        return result

    def read_struct(self, max_len: Optional[int] = None) -> BondStruct:
        """Read struct fields until BT_STOP or max_len bytes.

        BT_STOP_BASE sets ``has_base_class`` and continues.
        """
        result = BondStruct()
        start = self.position
        limit = len(self._data)
        if max_len is not None:
            limit = min(limit, start + max_len)

        if self._depth >= self.max_depth:
            result.truncated = True
            return result

        self._depth += 1
        try:
            while self.position < limit:
                try:
                    bt, fid = self.read_field()
                except BondError:
                    result.truncated = True
                    break
                if bt == BondType.BT_STOP:
                    break
                if bt == BondType.BT_STOP_BASE:
                    result.has_base_class = True
                    continue
                try:
                    value = self._read_item(bt)
                except BondError:
                    result.truncated = True
                    break
                result.fields[fid] = BondField(bt, value)
        finally:
            self._depth -= 1
        return result

    # -- containers ---------------------------------------------------------

    def read_list_begin(self) -> Tuple[int, int]:
        """Returns (element_type, count)."""
        header = self._read_byte()
        element_type = header & 0x1F
        count = header >> 5
        if count == 0:
            count = self._read_varint()
        else:
            count -= 1
        return element_type, count

    def read_map_begin(self) -> Tuple[int, int, int]:
        """Returns (key_type, value_type, count)."""
        key_type = self._read_byte() & 0x1F
        value_type = self._read_byte() & 0x1F
        count = self._read_varint()
        return key_type, value_type, count

    def read_list(self, is_set: bool = False) -> BondList:
        element_type, count = self.read_list_begin()
        result = BondList(element_type=element_type, count=count, is_set=is_set)

        if element_type in _BYTE_TYPES:
            payload = self._read_clamped(count)
            result.truncated = len(payload) < count
            if 0 < len(payload) < TEXT_LIMIT and all(b in _TEXT_BYTES for b in payload):
                result.text = payload.decode('ascii').replace('\x00', '')
            else:
                result.blob_ref = self._add_blob(payload)
            return result

        n = self._clamp_count(count, result)
        result.items = []
        if self._depth >= self.max_depth:
            result.truncated = True
            return result
        self._depth += 1
        try:
            for _ in range(n):
                try:
                    result.items.append(self._read_item(element_type))
                except BondError:
                    result.truncated = True
                    break
        finally:
            self._depth -= 1
        return result

    def read_map(self) -> BondMap:
        key_type, value_type, count = self.read_map_begin()
        result = BondMap(key_type=key_type, value_type=value_type, count=count)
        n = self._clamp_count(count, result)
        if self._depth >= self.max_depth:
            result.truncated = True
            return result
        self._depth += 1
        try:
            for _ in range(n):
                try:
                    key = self._read_item(key_type)
                    value = self._read_item(value_type)
                except BondError:
                    result.truncated = True
                    break
                result.entries.append((key, value))
        finally:
            self._depth -= 1
        return result

    def _clamp_count(self, count: int, container: Any) -> int:
        # Every known element type takes at least one byte.
        if count > self.remaining:
            container.truncated = True
            return self.remaining
        return count

    def _add_blob(self, payload: bytes) -> int:
        index = len(self.blobs)
        self.blobs.append(Blob(index=index, length=len(payload), data=payload))
        return index

    # -- document -----------------------------------------------------------

    def read_document(self) -> BondDocument:
        """Read outer length, root struct and an optional compressed trailer."""
        try:
            outer_length = self._read_varint()
        except BondError:
            return BondDocument(root=BondStruct(truncated=True), file_size=len(self._data))

        content_start = self.position
        root = self.read_struct(outer_length)
        consumed = self.position - content_start

        nested = None
        if consumed < outer_length and self.remaining > 0:
            if any(self._data[self.position:]):
                nested = self._read_compressed_trailer()
            else:
                logger.debug("Ignoring %d bytes of zero padding", self.remaining)

        return BondDocument(
            root=root,
            blobs=self.blobs,
            outer_length=outer_length,
            file_size=len(self._data),
            nested=nested,
        )

    def _read_compressed_trailer(self) -> Optional[CompressedDocument]:
        """Inflate an int32 BE size-prefixed trailer into a nested document."""
        try:
            size = self._read_int32_be()
        except BondTruncatedError:
            return None
        if size <= 0 or size > self.remaining:
            logger.debug("Trailer size %d out of range (%d bytes left)", size, self.remaining)
            return None

        payload = self._read(size)
        for compression, wbits in (("deflate", -zlib.MAX_WBITS), ("zlib", zlib.MAX_WBITS)):
            try:
                inflated = zlib.decompress(payload, wbits)
            except zlib.error:
                continue
            logger.debug("Inflated %s trailer: %d -> %d bytes", compression, size, len(inflated))
            return CompressedDocument(
                compression=compression,
                compressed_size=size,
                decompressed_size=len(inflated),
                document=bond_unpack(inflated),
            )

        logger.debug("Trailer of %d bytes is neither deflate nor zlib", size)
        return None

    # -- stream info --------------------------------------------------------

    @property
    def position(self) -> int:
        return self._stream.tell()

    @property
    def remaining(self) -> int:
        return max(0, len(self._data) - self._stream.tell())


# ---------------------------------------------------------------------------
# CompactBinaryV2 Writer (reference encoder)
# ---------------------------------------------------------------------------

class CompactBinaryV2Writer:
    """Serialize data into the MVAR CompactBinary v2 wire format.

    Value shapes follow ``bond_serialize``:
      BT_STRUCT          {field_id: (bond_type, value)}
      BT_LIST / BT_SET   (element_type, items) -- items may be bytes for
                         uint8/int8 elements
      BT_MAP             (key_type, value_type, [(key, value), ...])
    """

    def __init__(self):
        self._buf = BytesIO()

    # -- raw writers --------------------------------------------------------

    def _write(self, data: bytes):
        self._buf.write(data)

    def _write_byte(self, value: int):
        self._buf.write(bytes([value & 0xFF]))

    def _write_uint16_le(self, value: int):
        self._buf.write(struct.pack('<H', value))

    def _write_float_le(self, value: float):
        self._buf.write(struct.pack('<f', value))

    def _write_double_le(self, value: float):
        self._buf.write(struct.pack('<d', value))

    def _write_varint(self, value: int):
        self._write(encode_varint(value))

    # -- field headers ------------------------------------------------------

    def write_field_begin(self, bond_type: int, field_id: int):
        """Write a field header byte (and optional extended field id)."""
        if field_id <= 5:
            self._write_byte((field_id << 5) | (bond_type & 0x1F))
        elif field_id <= 255:
            self._write_byte(0xC0 | (bond_type & 0x1F))
            self._write_byte(field_id)
        else:
            self._write_byte(0xE0 | (bond_type & 0x1F))
            self._write_uint16_le(field_id)

    def write_stop(self):
        self._write_byte(BondType.BT_STOP)

    def write_stop_base(self):
        self._write_byte(BondType.BT_STOP_BASE)

    def write_list_begin(self, element_type: int, count: int):
        if count < 7:
            self._write_byte(((count + 1) << 5) | (element_type & 0x1F))
        else:
            self._write_byte(element_type & 0x1F)
            self._write_varint(count)

    def write_map_begin(self, key_type: int, value_type: int, count: int):
        self._write_byte(key_type & 0x1F)
        self._write_byte(value_type & 0x1F)
        self._write_varint(count)

    # -- values -------------------------------------------------------------

    def write_field(self, field_id: int, bond_type: int, value: Any):
        self.write_field_begin(bond_type, field_id)
        self.write_value(bond_type, value)

    def write_fields(self, fields: Dict[int, Tuple[int, Any]]):
        """Write fields in ordinal order (no terminator)."""
        for fid in sorted(fields.keys()):
            bt, val = fields[fid]
            self.write_field(fid, bt, val)

    def write_value(self, bond_type: int, value: Any):
        """Write a value without a field header."""
        if bond_type == BondType.BT_BOOL:
            self._write_byte(1 if value else 0)
        elif bond_type == BondType.BT_UINT8:
            self._write_byte(value)
        elif bond_type == BondType.BT_INT8:
            self._write(struct.pack('<b', value))
        elif bond_type in (BondType.BT_UINT16, BondType.BT_UINT32, BondType.BT_UINT64):
            self._write_varint(value)
        elif bond_type in (BondType.BT_INT16, BondType.BT_INT32, BondType.BT_INT64):
            self._write_varint(zigzag_encode(value))
        elif bond_type == BondType.BT_FLOAT:
            self._write_float_le(value)
        elif bond_type == BondType.BT_DOUBLE:
            self._write_double_le(value)
        elif bond_type == BondType.BT_STRING:
            encoded = value.encode('utf-8')
            self._write_varint(len(encoded))
            self._write(encoded)
        elif bond_type == BondType.BT_WSTRING:
            encoded = value.encode('utf-16-le')
            self._write_varint(len(encoded) // 2)  # code unit count
            self._write(encoded)
        elif bond_type == BondType.BT_STRUCT:
            body = bond_serialize(value)
            self._write_varint(len(body))
            self._write(body)
        elif bond_type in (BondType.BT_LIST, BondType.BT_SET):
            element_type, items = value
            self.write_list_begin(element_type, len(items))
            if element_type in _BYTE_TYPES and isinstance(items, (bytes, bytearray)):
                self._write(bytes(items))
            else:
                for item in items:
                    self.write_value(element_type, item)
        elif bond_type == BondType.BT_MAP:
            key_type, value_type, entries = value
            self.write_map_begin(key_type, value_type, len(entries))
            for k, v in entries:
                self.write_value(key_type, k)
                self.write_value(value_type, v)
        else:
            raise ValueError(f"Cannot encode Bond type {bond_type}")

    # -- output -------------------------------------------------------------

    def get_data(self) -> bytes:
        """Return the serialized byte buffer."""
        return self._buf.getvalue()


# ---------------------------------------------------------------------------
# High-level helpers
# ---------------------------------------------------------------------------

def bond_serialize(fields: Dict[int, Tuple[int, Any]], base_class: bool = False) -> bytes:
    """Serialize {field_id: (bond_type, value)} to struct body bytes.

    Returns fields + BT_STOP (no length prefix). With ``base_class`` a
    BT_STOP_BASE marker precedes the fields.
    """
    w = CompactBinaryV2Writer()
    if base_class:
        w.write_stop_base()
    w.write_fields(fields)
    w.write_stop()
    return w.get_data()


def bond_pack(
    fields: Dict[int, Tuple[int, Any]],
    nested: Optional[Dict[int, Tuple[int, Any]]] = None,
    compression: str = "deflate",
) -> bytes:
    """Build a complete document: outer length + struct [+ compressed trailer].

    ``nested`` fields are packed as their own document and appended as an
    int32 BE size-prefixed deflate (or zlib) trailer counted in the outer
    length.
    """
    body = bond_serialize(fields)
    trailer = b""
    if nested is not None:
        inner = bond_pack(nested)
        if compression == "zlib":
            payload = zlib.compress(inner)
        else:
            compressor = zlib.compressobj(level=9, wbits=-zlib.MAX_WBITS)
            payload = compressor.compress(inner) + compressor.flush()
        trailer = struct.pack('>i', len(payload)) + payload
    return encode_varint(len(body) + len(trailer)) + body + trailer


def bond_unpack(data: bytes) -> BondDocument:
    """Decode a complete MVAR Bond document."""
    return CompactBinaryV2Reader(data).read_document()


# ---------------------------------------------------------------------------
# Tolerant accessors
# ---------------------------------------------------------------------------

def lookup(value: Any, *field_ids: int) -> Any:
    """Follow a path of struct field ids; None when any step is absent.

    Accepts a BondDocument (its root is used) or a BondStruct. A step that
    lands on anything other than a struct fails closed.
    """
    current = value
    for fid in field_ids:
        if isinstance(current, BondDocument):
            current = current.root
        if not isinstance(current, BondStruct):
            return None
        entry = current.fields.get(fid)
        if entry is None:
            return None
        current = entry.value
    return current


def lookup_items(value: Any, *field_ids: int) -> List[Any]:
    """Items of the list/set at the given path, or an empty list."""
    target = lookup(value, *field_ids)
    if isinstance(target, BondList) and target.items is not None:
        return target.items
    return []


def lookup_number(value: Any, *field_ids: int, default: Any = None) -> Any:
    """Numeric value at the given path, or ``default``."""
    target = lookup(value, *field_ids)
    if isinstance(target, (int, float)) and not isinstance(target, bool):
        return target
    return default


# ---------------------------------------------------------------------------
# Text / JSON views of decoded data
# ---------------------------------------------------------------------------

def bond_to_json(value: Any) -> Any:
    """Convert a decoded Bond value into JSON-serialisable data."""
    if isinstance(value, BondStruct):
        result: Dict[str, Any] = {
            "fields": {
                str(fid): {"type": f.type_name, "value": bond_to_json(f.value)}
                for fid, f in value.fields.items()
            },
        }
        if value.has_base_class:
            result["has_base_class"] = True
        if value.truncated:
            result["truncated"] = True
        return result
    if isinstance(value, BondList):
        result = {
            "type": "set" if value.is_set else "list",
            "element_type": type_name(value.element_type),
            "count": value.count,
        }
        if value.text is not None:
            result["data"] = value.text
        elif value.blob_ref is not None:
            result["blob_ref"] = value.blob_ref
        else:
            result["items"] = [bond_to_json(v) for v in value.items or []]
        if value.truncated:
            result["truncated"] = True
        return result
    if isinstance(value, BondMap):
        return {
            "type": "map",
            "key_type": type_name(value.key_type),
            "value_type": type_name(value.value_type),
            "count": value.count,
            "entries": [
                {"key": bond_to_json(k), "value": bond_to_json(v)}
                for k, v in value.entries
            ],
        }
    if isinstance(value, UnknownValue):
        return {"unknown_type": value.tag}
    return value


def bond_pretty_print(
    value: Any,
    schema: Optional[Dict[int, str]] = None,
    indent: int = 0,
) -> str:
    """Format a decoded struct as a human-readable string.

    Args:
        value: Decoded BondStruct (or BondDocument).
        schema: Optional {field_id: field_name} for annotation.
        indent: Current indentation level.
    """
    if isinstance(value, BondDocument):
        value = value.root
    lines: List[str] = []
    prefix = "  " * indent

    for fid, entry in value.fields.items():
        name = ""
        if schema and fid in schema:
            name = f" ({schema[fid]})"
        head = f"{prefix}[{fid}]{name} {entry.type_name}"
        lines.extend(_pretty_value(head, entry.value, indent))

    if value.truncated:
        lines.append(f"{prefix}<truncated>")
    return "\n".join(lines)


def _pretty_value(head: str, value: Any, indent: int) -> List[str]:
    prefix = "  " * indent
    if isinstance(value, BondStruct):
        body = bond_pretty_print(value, None, indent + 1)
        return [f"{head}:"] + ([body] if body else [])
    if isinstance(value, BondList):
        kind = "set" if value.is_set else "list"
        elem = type_name(value.element_type)
        if value.text is not None:
            return [f"{head} {kind}<{elem}> = {value.text!r}"]
        if value.blob_ref is not None:
            return [f"{head} {kind}<{elem}> = <blob #{value.blob_ref}, {value.count} bytes>"]
        lines = [f"{head} {kind}<{elem}> ({value.count} items):"]
        for i, item in enumerate(value.items or []):
            lines.extend(_pretty_value(f"{prefix}  [{i}]", item, indent + 2))
        return lines
    if isinstance(value, BondMap):
        lines = [f"{head} map<{type_name(value.key_type)}, {type_name(value.value_type)}> "
                 f"({value.count} entries):"]
        for k, v in value.entries:
            lines.extend(_pretty_value(f"{prefix}  {k!r}", v, indent + 2))
        return lines
    if isinstance(value, UnknownValue):
        return [f"{head} = <unknown type {value.tag}>"]
    return [f"{head} = {value!r}"]


def bond_hexdump(data: bytes, offset: int = 0, length: Optional[int] = None) -> str:
    """Produce a hex dump of binary data for debugging."""
    if length is not None:
        data = data[offset:offset + length]
    else:
        data = data[offset:]

    lines: List[str] = []
    for i in range(0, len(data), 16):
        chunk = data[i:i + 16]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        ascii_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"  {offset + i:08x}  {hex_part:<48s}  {ascii_part}")

    return "\n".join(lines)
