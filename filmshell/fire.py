"""
Weapon fire event scanner.

Fire events are bit-packed at a 4-bit offset in the chunk stream, so every
logical byte straddles two physical bytes:

    logical[i] = (data[i] << 4 | data[i + 1] >> 4) & 0xff

Logical layout from the event start i:
  +0   0x0d          lead
  +1   0x26          player 0 encoding
  +2   any           match type dependent
  +3   0x40..0x43    top 6 bits fixed
  +4   counter       multiple of 4
  +5   slot          1 = primary, 3 = secondary
  +6   weapon id     8 bytes, last 4 always 42c9679f
  +14  octant byte   low 3 bits used
  +15  aim          uint16 BE, octahedral face coordinates

Candidates failing any check are skipped; the scan is probabilistic.
"""

import bisect
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .frames import chunk_index_for_offset
from .octahedral import Vector3, decode_octahedral

EVENT_SPAN = 20
WEAPON_SUFFIX = "42c9679f"
UNKNOWN_WEAPON = "Unknown"

WEAPON_IDS: Dict[str, str] = {
    "48c19d2d42c9679f": "MA40 AR",
    "f408190f42c9679f": "Mk51 Sidekick",
    "2b1824d542c9679f": "BR75",
    "2fb21c8742c9679f": "M392 Bandit",
    "fd98554c42c9679f": "VK78 Commando",
    "0a1992bc42c9679f": "S7 Sniper",
    "b619d84a42c9679f": "CQS48 Bulldog",
    "71ab0a2c42c9679f": "M41 SPNKr",
    "b533957e42c9679f": "Needler",
    "7e53b3c642c9679f": "Pulse Carbine",
    "04e7f00b42c9679f": "Plasma Pistol",
    "c24e549e42c9679f": "Sentinel Beam",
    "3d34488542c9679f": "Heatwave",
    "f5ef3bdb42c9679f": "Stalker Rifle",
    "fcc6aa7642c9679f": "Shock Rifle",
    "7deb133f42c9679f": "Mangler",
    "cb30ec5e42c9679f": "Disruptor",
    "2b1d61e442c9679f": "Ravager",
    "7a11aeef42c9679f": "Skewer",
    "c2a6d5e042c9679f": "Cindershot",
    "1f6ae65542c9679f": "Hydra",
    "8afc085542c9679f": "Gravity Hammer",
    "1488d0bb42c9679f": "Energy Sword",
    "b6dbead842c9679f": "Frag Grenade",
    "c1e1bab042c9679f": "Plasma Grenade",
}


@dataclass(frozen=True)
class FireEvent:
    offset: int
    chunk_index: int
    counter: int
    slot: int
    weapon_id: str
    weapon_name: str
    octant_byte: int
    aim: int
    direction: Vector3

    @property
    def octant(self) -> int:
        return self.octant_byte & 0x07


@dataclass
class FireScanResult:
    events: List[FireEvent] = field(default_factory=list)
    weapon_counts: Counter = field(default_factory=Counter)


@dataclass(frozen=True)
class AimRay:
    origin: Tuple[float, float]
    direction: Vector3
    weapon_name: str
    index: int


# ---------------------------------------------------------------------------
# Nibble-shifted readers
# ---------------------------------------------------------------------------

def read_shifted(data: bytes, pos: int) -> int:
    """Logical byte at a 4-bit offset; 0 when it would run past the end."""
    if pos + 1 >= len(data):
        return 0
    return ((data[pos] << 4) | (data[pos + 1] >> 4)) & 0xFF


def read_shifted_hex(data: bytes, pos: int, count: int) -> str:
    return "".join(f"{read_shifted(data, pos + i):02x}" for i in range(count))


def read_shifted_u16(data: bytes, pos: int) -> int:
    return (read_shifted(data, pos) << 8) | read_shifted(data, pos + 1)


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

def decode_fire_event(data: bytes, i: int, chunk_offsets: Optional[Sequence[int]] = None) -> Optional[FireEvent]:
    """Validate and decode a candidate event at ``i``, or None."""
    if read_shifted(data, i) != 0x0D:
        return None
    if read_shifted(data, i + 1) != 0x26:
        return None
    if read_shifted(data, i + 3) & 0xFC != 0x40:
        return None

    counter = read_shifted(data, i + 4)
    slot = read_shifted(data, i + 5)
    if slot not in (1, 3) or counter % 4 != 0:
        return None

    weapon_id = read_shifted_hex(data, i + 6, 8)
    if not weapon_id.endswith(WEAPON_SUFFIX):
        return None

    octant_byte = read_shifted(data, i + 14)
    aim = read_shifted_u16(data, i + 15)
    return FireEvent(
        offset=i,
        chunk_index=chunk_index_for_offset(i, chunk_offsets),
        counter=counter,
        slot=slot,
        weapon_id=weapon_id,
        weapon_name=WEAPON_IDS.get(weapon_id, UNKNOWN_WEAPON),
        octant_byte=octant_byte,
        aim=aim,
        direction=decode_octahedral(octant_byte, aim),
    )


def scan_fire_events(data: bytes, chunk_offsets: Optional[Sequence[int]] = None) -> FireScanResult:
    """Scan concatenated chunk data for fire events."""
    result = FireScanResult()
    for i in range(len(data) - EVENT_SPAN):
        # Cheap lead check before full decoding.
        if ((data[i] << 4) | (data[i + 1] >> 4)) & 0xFF != 0x0D:
            continue
        event = decode_fire_event(data, i, chunk_offsets)
        if event is None:
            continue
        result.events.append(event)
        result.weapon_counts[event.weapon_name] += 1
    return result


# ---------------------------------------------------------------------------
# Correlation with player positions
# ---------------------------------------------------------------------------

def correlate_fire_events(
    events: Sequence[FireEvent],
    offsets: Sequence[int],
    positions: Sequence[Tuple[float, float]],
) -> List[AimRay]:
    """Attach a world origin to each event.

    ``offsets`` are the ascending byte offsets of the position frames and
    ``positions`` their world (x, y). The origin is linearly interpolated
    between the frames around the event; events before the first or after
    the last frame take that frame's position.
    """
    if not offsets:
        return []

    rays = []
    for index, event in enumerate(events):
        hi = bisect.bisect_left(offsets, event.offset)
        if hi == 0:
            origin = tuple(positions[0])
        elif hi >= len(offsets):
            origin = tuple(positions[-1])
        else:
            lo = hi - 1
            span = offsets[hi] - offsets[lo]
            if span <= 0:
                origin = tuple(positions[lo])
            else:
                t = (event.offset - offsets[lo]) / span
                px, py = positions[lo]
                nx, ny = positions[hi]
                origin = (px + t * (nx - px), py + t * (ny - py))
        rays.append(AimRay(origin, event.direction, event.weapon_name, index))
    return rays
