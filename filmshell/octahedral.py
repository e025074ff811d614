"""
Octahedral direction decoding for fire-event aim data.

The unit sphere is projected onto an octahedron. The octant byte selects a
face (low 3 bits are the X/Y/Z sign bits, set = negative) and the uint16
holds two 8-bit barycentric coordinates u (high byte) and v (low byte).
"""

import math
from typing import NamedTuple


class Vector3(NamedTuple):
    x: float
    y: float
    z: float


UP = Vector3(0.0, 0.0, 1.0)


def decode_octahedral(octant_byte: int, aim: int) -> Vector3:
    """Decode (octant byte, uint16) into a unit direction vector."""
    octant = octant_byte & 0x07
    a = ((aim >> 8) & 0xFF) / 255
    b = (aim & 0xFF) / 255
    c = max(0.0, 1 - a - b)

    x = -a if octant & 1 else a
    y = -b if octant & 2 else b
    z = -c if octant & 4 else c

    length = math.sqrt(x * x + y * y + z * z)
    if length < 1e-10:
        return UP
    return Vector3(x / length, y / length, z / length)
