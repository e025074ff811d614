"""
Film frame scanner.

Telemetry chunks are a byte stream with fixed-size frames introduced by a
3-byte marker. Frames are located by scanning for the marker rather than by
walking a length-prefixed structure.

Frame layout (20 bytes):
  +0   A0 7B 42     marker
  +3   uint16 BE    tick
  +5   4 bytes      frame type (byte5, byte6, byte7, byte8)
                      byte6 bits [5:7] = player index, bits [0:4] = base type
  +9   uint8        format byte
  +10  10 bytes     data d0..d9

Position frames (byte5 0x40, base type 0x09, high nibble of d0 == 4):
  coord1 = d0 << 8 | d1              (16 bits)
  coord2 = (d2 & 0x0f) << 8 | d3     (12 bits)
"""

import bisect
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Sequence, Tuple

FRAME_MARKER = b"\xa0\x7b\x42"
FRAME_SIZE = 20
DATA_OFFSET = 10
DATA_SIZE = 10

POSITION_CLASS = 0x40
BASE_POSITION = 0x09
BASE_STATE = 0x08


class FieldType(IntEnum):
    """Per-byte labels produced by build_field_map."""
    NONE       = 0
    MARKER     = 1
    TICK       = 2
    FRAME_TYPE = 3
    FORMAT     = 4
    DATA_POS   = 5
    DATA_STATE = 6
    DATA_EXT   = 7


@dataclass(frozen=True)
class ParsedFrame:
    index: int
    offset: int
    chunk_index: int
    tick: int
    type_bytes: Tuple[int, int, int, int]
    player_index: int
    base_type: int
    format_byte: int
    data: Tuple[int, ...]
    is_position_frame: bool
    has_player: bool
    coord1: Optional[int] = None
    coord2: Optional[int] = None

    @property
    def byte5(self) -> int:
        return self.type_bytes[0]

    @property
    def frame_type_hex(self) -> str:
        return "".join(f"{b:02x}" for b in self.type_bytes)

    @property
    def subtype_hex(self) -> str:
        return "".join(f"{b:02x}" for b in self.type_bytes[2:])

    @property
    def end(self) -> int:
        """Offset of the last byte of the frame."""
        return self.offset + FRAME_SIZE - 1


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def find_markers(data: bytes) -> List[int]:
    """Return every offset where the frame marker starts, ascending."""
    if not isinstance(data, (bytes, bytearray)):
        data = bytes(data)
    positions = []
    pos = data.find(FRAME_MARKER)
    while pos != -1:
        positions.append(pos)
        pos = data.find(FRAME_MARKER, pos + 1)
    return positions


def chunk_index_for_offset(offset: int, chunk_offsets: Optional[Sequence[int]]) -> int:
    """Index of the chunk containing ``offset`` (0 when unknown)."""
    if not chunk_offsets:
        return 0
    return max(0, bisect.bisect_right(chunk_offsets, offset) - 1)


def decode_frame(data: bytes, pos: int, index: int = 0, chunk_index: int = 0) -> ParsedFrame:
    """Decode the frame whose marker starts at ``pos``.

    Data bytes past the end of the buffer read as 0.
    """
    tick = (data[pos + 3] << 8) | data[pos + 4]
    type_bytes = (data[pos + 5], data[pos + 6], data[pos + 7], data[pos + 8])
    byte5, byte6 = type_bytes[0], type_bytes[1]
    player_index = (byte6 >> 5) & 0x07
    base_type = byte6 & 0x1F

    start = pos + DATA_OFFSET
    raw = bytes(data[start:start + DATA_SIZE])
    d = tuple(raw.ljust(DATA_SIZE, b"\x00"))

    is_position = byte5 == POSITION_CLASS and base_type == BASE_POSITION and d[0] >> 4 == 4
    has_player = byte5 == POSITION_CLASS and base_type in (BASE_STATE, BASE_POSITION)

    coord1 = coord2 = None
    if is_position:
        coord1 = d[0] * 256 + d[1]
        coord2 = ((d[2] & 0x0F) << 8) | d[3]

    return ParsedFrame(
        index=index,
        offset=pos,
        chunk_index=chunk_index,
        tick=tick,
        type_bytes=type_bytes,
        player_index=player_index,
        base_type=base_type,
        format_byte=data[pos + 9],
        data=d,
        is_position_frame=is_position,
        has_player=has_player,
        coord1=coord1,
        coord2=coord2,
    )


def parse_frames(data: bytes, chunk_offsets: Optional[Sequence[int]] = None) -> List[ParsedFrame]:
    """Parse every complete frame in concatenated chunk data.

    A marker needs FRAME_SIZE bytes from its start to be decoded. Markers
    that fall inside an already accepted frame are part of its payload and
    are skipped, so frame spans never overlap.
    """
    frames: List[ParsedFrame] = []
    next_free = 0
    for pos in find_markers(data):
        if pos + FRAME_SIZE > len(data) or pos < next_free:
            continue
        frames.append(decode_frame(
            data, pos, index=len(frames),
            chunk_index=chunk_index_for_offset(pos, chunk_offsets)))
        next_free = pos + FRAME_SIZE
    return frames


# ---------------------------------------------------------------------------
# Lookup helpers
# ---------------------------------------------------------------------------

def frame_at_offset(offset: int, frames: Sequence[ParsedFrame]) -> Optional[ParsedFrame]:
    """Binary search for the frame whose 20-byte span contains ``offset``."""
    lo, hi = 0, len(frames) - 1
    while lo <= hi:
        mid = (lo + hi) // 2
        frame = frames[mid]
        if offset < frame.offset:
            hi = mid - 1
        elif offset > frame.end:
            lo = mid + 1
        else:
            return frame
    return None


def build_field_map(data: bytes, frames: Sequence[ParsedFrame]) -> bytearray:
    """Label every byte of ``data`` with the FieldType it belongs to."""
    labels = bytearray(len(data))
    size = len(data)

    def mark(start: int, count: int, label: FieldType):
        for i in range(start, min(start + count, size)):
            labels[i] = label

    for frame in frames:
        pos = frame.offset
        mark(pos, 3, FieldType.MARKER)
        mark(pos + 3, 2, FieldType.TICK)
        mark(pos + 5, 4, FieldType.FRAME_TYPE)
        mark(pos + 9, 1, FieldType.FORMAT)
        mark(pos + DATA_OFFSET, 4,
             FieldType.DATA_POS if frame.is_position_frame else FieldType.DATA_STATE)
        mark(pos + DATA_OFFSET + 4, DATA_SIZE - 4, FieldType.DATA_EXT)
    return labels
