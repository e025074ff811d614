"""
Map object extraction from decoded MVAR documents.

Placement list layout (root field 3, one struct per object):
  2.0      object id
  3.0-3.2  position x, y, z (0.1x game units)
  5.0-5.1  forward vector x, y
  7        category
"""

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .bond import BondDocument, lookup, lookup_items, lookup_number
from .world import MapBounds

logger = logging.getLogger(__name__)

COORD_SCALE = 10.0
MIN_GAMEPLAY_OBJECTS = 4
GAMEPLAY_BUFFER = 0.2

GAMEPLAY_KEYWORDS = ("Spawn Point", "Flag", "Zone", "Capture", "Ball")
IMPORTANT_NAMES = (
    "Spawn Point [Initial]",
    "Spawn Point [Respawn]",
    "Flag Spawn",
    "Flag Delivery Plate",
    "Zone Capture Plate",
    "Landgrab Capture Zone",
    "Ball Stand",
)
INITIAL_SPAWN = "Spawn Point [Initial]"


@dataclass
class MapObject:
    index: int
    object_id: int
    name: str
    position: Tuple[float, float, float]
    forward: Tuple[float, float]
    heading: float
    category: Optional[int] = None

    @property
    def x(self) -> float:
        return self.position[0]

    @property
    def y(self) -> float:
        return self.position[1]

    @property
    def z(self) -> float:
        return self.position[2]

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "objectId": self.object_id,
            "name": self.name,
            "position": dict(zip("xyz", self.position)),
            "forward": dict(zip("xy", self.forward)),
            "heading": self.heading,
            "category": self.category,
        }


def load_object_names(path: Union[str, Path]) -> Dict[int, str]:
    """Load an id -> name table from a JSON list of {name, id} entries."""
    path = Path(path)
    entries = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(entries, list):
        raise ValueError(f"Object names in {path} must be a JSON list")
    names = {}
    for entry in entries:
        if not isinstance(entry, dict):
            raise ValueError(f"Invalid object name entry in {path}: {entry!r}")
        if "id" in entry and "name" in entry:
            names[int(entry["id"])] = entry["name"]
    logger.debug("Loaded %d object names from %s", len(names), path)
    return names


def extract_objects(doc: BondDocument, names: Optional[Dict[int, str]] = None) -> List[MapObject]:
    """Walk the placement list of an MVAR document.

    Missing fields read as 0 (None for the id and category); ids not in
    ``names`` become ``Unknown (<id>)``.
    """
    names = names or {}
    objects = []
    for i, item in enumerate(lookup_items(doc, 3)):
        object_id = lookup_number(item, 2, 0)
        raw_x = lookup_number(item, 3, 0, default=0)
        raw_y = lookup_number(item, 3, 1, default=0)
        raw_z = lookup_number(item, 3, 2, default=0)
        fwd_x = lookup_number(item, 5, 0, default=0)
        fwd_y = lookup_number(item, 5, 1, default=0)
        category = lookup(item, 7)

        heading = 0.0
        if fwd_x or fwd_y:
            heading = math.degrees(math.atan2(fwd_y, fwd_x))

        name = names.get(object_id) if object_id is not None else None
        if name is None:
            name = f"Unknown ({object_id})"

        # Rotate 90 degrees counter-clockwise: (x, y) -> (-y, x)
        objects.append(MapObject(
            index=i,
            object_id=object_id if object_id is not None else 0,
            name=name,
            position=(
                round(-raw_y * COORD_SCALE, 2),
                round(raw_x * COORD_SCALE, 2),
                round(raw_z * COORD_SCALE, 2),
            ),
            forward=(round(fwd_x, 4), round(fwd_y, 4)),
            heading=round(heading, 2),
            category=category if isinstance(category, int) else None,
        ))
    return objects


def compute_map_bounds(objects: Sequence[MapObject]) -> MapBounds:
    """Bounds from gameplay objects (buffered by 20%) or, failing that, all objects."""
    if not objects:
        return MapBounds(0.0, 0.0, 0.0, 0.0)

    gameplay = [o for o in objects if any(k in o.name for k in GAMEPLAY_KEYWORDS)]
    use_gameplay = len(gameplay) >= MIN_GAMEPLAY_OBJECTS
    source = gameplay if use_gameplay else list(objects)

    min_x = min(o.x for o in source)
    max_x = max(o.x for o in source)
    min_y = min(o.y for o in source)
    max_y = max(o.y for o in source)
    min_z = min(o.z for o in source)
    max_z = max(o.z for o in source)

    if use_gameplay:
        buf_x = (max_x - min_x) * GAMEPLAY_BUFFER
        buf_y = (max_y - min_y) * GAMEPLAY_BUFFER
        min_x, max_x = min_x - buf_x, max_x + buf_x
        min_y, max_y = min_y - buf_y, max_y + buf_y

    return MapBounds(min_x, max_x, min_y, max_y, min_z, max_z)


def filter_important_objects(objects: Sequence[MapObject]) -> List[MapObject]:
    """Spawns, flags and objective markers."""
    return [o for o in objects if any(n in o.name for n in IMPORTANT_NAMES)]


def initial_spawn_points(objects: Sequence[MapObject]) -> List[Tuple[float, float]]:
    """(x, y) of every initial spawn, in placement order (anchor candidates)."""
    return [(o.x, o.y) for o in objects if INITIAL_SPAWN in o.name]
