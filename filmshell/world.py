"""
Mapping accumulated motion into map (world) coordinates.

    world_x = -cum2 * scale_x + offset_x
    world_y =  cum1 * scale_y + offset_y

Scale is calibrated against map bounds, either filling a fixed fraction of
the map (independently per axis or coupled through the channel encoding
ratio) or constrained by the room around a spawn anchor. Without bounds
DEFAULT_SCALE is used.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .motion import MotionSample

logger = logging.getLogger(__name__)

DEFAULT_SCALE = 0.003
MAP_FILL_FACTOR = 0.85
# coord1 is a 16-bit channel, coord2 a 12-bit one.
ENCODING_RATIO = 65536 / 4096
# Axis excursions below this fraction of the extent do not constrain the scale.
ANCHOR_SLACK_THRESHOLD = 0.05

Point = Tuple[float, float]
Scale = Tuple[float, float]


@dataclass(frozen=True)
class MapBounds:
    min_x: float
    max_x: float
    min_y: float
    max_y: float
    min_z: float = 0.0
    max_z: float = 0.0

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @property
    def depth(self) -> float:
        return self.max_z - self.min_z

    @property
    def center(self) -> Point:
        return (self.min_x + self.max_x) / 2, (self.min_y + self.max_y) / 2

    @property
    def usable(self) -> bool:
        return self.width > 0 and self.height > 0

    @property
    def encoding_aspect(self) -> float:
        """Ratio between the X and Y scale in coupled mode."""
        return ENCODING_RATIO * self.width / self.height

    def contains(self, x: float, y: float) -> bool:
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


@dataclass(frozen=True)
class WorldPosition:
    x: float
    y: float
    index: int


@dataclass(frozen=True)
class RawExtent:
    """Bounding box of the cumulative channels (x from cum2, y from cum1)."""
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    @classmethod
    def of(cls, samples: Sequence[MotionSample]) -> "RawExtent":
        xs = [s.cum2 for s in samples]
        ys = [s.cum1 for s in samples]
        return cls(min(xs), max(xs), min(ys), max(ys))


# ---------------------------------------------------------------------------
# Scale calibration
# ---------------------------------------------------------------------------

def fill_fraction_scale(
    samples: Sequence[MotionSample],
    bounds: Optional[MapBounds],
    coupled: bool = False,
) -> Scale:
    """Scale so the path spans MAP_FILL_FACTOR of the map.

    Coupled mode fits Y and derives X through the encoding aspect.
    """
    if not samples or bounds is None or not bounds.usable:
        return DEFAULT_SCALE, DEFAULT_SCALE

    extent = RawExtent.of(samples)
    if coupled:
        if extent.height <= 0:
            return DEFAULT_SCALE, DEFAULT_SCALE
        scale_y = bounds.height * MAP_FILL_FACTOR / extent.height
        return scale_y / bounds.encoding_aspect, scale_y

    if extent.width <= 0 or extent.height <= 0:
        return DEFAULT_SCALE, DEFAULT_SCALE
    return (bounds.width * MAP_FILL_FACTOR / extent.width,
            bounds.height * MAP_FILL_FACTOR / extent.height)


def anchor_constrained_scale(
    samples: Sequence[MotionSample],
    bounds: Optional[MapBounds],
    anchor: Optional[Point],
) -> Scale:
    """Largest coupled scale that keeps the path, started at ``anchor``, on the map.

    Each direction the path travels from its start limits the Y scale by the
    room between the anchor and that edge; X limits go through the encoding
    aspect. Falls back to coupled fill-fraction without an anchor.
    """
    if anchor is None or not samples or bounds is None or not bounds.usable:
        return fill_fraction_scale(samples, bounds, coupled=True)

    extent = RawExtent.of(samples)
    if extent.height <= 0:
        return fill_fraction_scale(samples, bounds, coupled=True)

    aspect = bounds.encoding_aspect
    ax, ay = anchor
    threshold_y = extent.height * ANCHOR_SLACK_THRESHOLD
    threshold_x = extent.width * ANCHOR_SLACK_THRESHOLD

    scale_y = math.inf
    if extent.max_y > threshold_y:
        scale_y = min(scale_y, (bounds.max_y - ay) / extent.max_y)
    if -extent.min_y > threshold_y:
        scale_y = min(scale_y, (ay - bounds.min_y) / -extent.min_y)
    # World X runs opposite to cum2.
    if extent.max_x > threshold_x:
        scale_y = min(scale_y, (ax - bounds.min_x) * aspect / extent.max_x)
    if -extent.min_x > threshold_x:
        scale_y = min(scale_y, (bounds.max_x - ax) * aspect / -extent.min_x)

    if not math.isfinite(scale_y):
        scale_y = DEFAULT_SCALE
    return scale_y / aspect, scale_y


def find_best_spawn_anchor(
    samples: Sequence[MotionSample],
    bounds: Optional[MapBounds],
    candidates: Sequence[Point],
) -> Optional[Point]:
    """Candidate that keeps the most path points on the map when used as start.

    Ties go to the earliest candidate.
    """
    if not samples or not candidates or bounds is None:
        return None

    sx, sy = fill_fraction_scale(samples, bounds, coupled=True)
    disp = [(-s.cum2 * sx, s.cum1 * sy) for s in samples]
    first_x, first_y = disp[0]

    best = None
    best_score = -1
    for cand in candidates:
        off_x = cand[0] - first_x
        off_y = cand[1] - first_y
        inside = sum(1 for x, y in disp if bounds.contains(x + off_x, y + off_y))
        if inside > best_score:
            best, best_score = cand, inside
    logger.debug("Best spawn anchor %s keeps %d/%d points", best, best_score, len(disp))
    return best


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------

def _bbox_center(points: Sequence[Point]) -> Point:
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    return (min(xs) + max(xs)) / 2, (min(ys) + max(ys)) / 2


def scale_motion_to_world(
    samples: Sequence[MotionSample],
    bounds: Optional[MapBounds] = None,
    anchor: Optional[Point] = None,
    coupled: bool = False,
    scale: Optional[Scale] = None,
) -> List[WorldPosition]:
    """Project one player's samples into world coordinates.

    The offset puts the first sample on ``anchor`` when given, otherwise
    centres the path on the map (or on the origin without bounds). With
    ``coupled`` and an anchor the scale is anchor-constrained.
    """
    if not samples:
        return []

    if scale is None:
        if coupled and anchor is not None:
            scale = anchor_constrained_scale(samples, bounds, anchor)
        else:
            scale = fill_fraction_scale(samples, bounds, coupled=coupled)
    sx, sy = scale

    disp = [(-s.cum2 * sx, s.cum1 * sy) for s in samples]
    if anchor is not None:
        off_x, off_y = anchor[0] - disp[0][0], anchor[1] - disp[0][1]
    else:
        cx, cy = _bbox_center(disp)
        if bounds is not None and bounds.width > 0:
            mx, my = bounds.center
            off_x, off_y = mx - cx, my - cy
        else:
            off_x, off_y = -cx, -cy

    return [
        WorldPosition(x + off_x, y + off_y, s.index)
        for (x, y), s in zip(disp, samples)
    ]


def scale_all_players_to_world(
    paths: Sequence[Sequence[MotionSample]],
    bounds: Optional[MapBounds] = None,
    anchor: Optional[Point] = None,
) -> List[List[WorldPosition]]:
    """Project several players with one shared scale and offset.

    Each player's first raw reading is its baseline, so physical position =
    baseline + cumulative motion puts everyone in one frame of reference.
    The anchor, if any, pins the first player's start.
    """
    if not paths:
        return []

    baselines = [(p[0].raw1, p[0].raw2) if p else (0, 0) for p in paths]
    phys = [
        [(b2 + s.cum2, b1 + s.cum1) for s in samples]
        for (b1, b2), samples in zip(baselines, paths)
    ]
    flat = [pt for player in phys for pt in player]
    if not flat:
        return [[] for _ in paths]

    min_x = min(p[0] for p in flat)
    max_x = max(p[0] for p in flat)
    min_y = min(p[1] for p in flat)
    max_y = max(p[1] for p in flat)
    extent_x, extent_y = max_x - min_x, max_y - min_y

    sx = sy = DEFAULT_SCALE
    if bounds is not None and bounds.width > 0 and extent_x > 0 and extent_y > 0:
        sx = bounds.width * MAP_FILL_FACTOR / extent_x
        sy = bounds.height * MAP_FILL_FACTOR / extent_y

    center_x = -(min_x + max_x) / 2 * sx
    center_y = (min_y + max_y) / 2 * sy
    if anchor is not None:
        b1, b2 = baselines[0]
        off_x, off_y = anchor[0] + b2 * sx, anchor[1] - b1 * sy
    elif bounds is not None and bounds.width > 0:
        mx, my = bounds.center
        off_x, off_y = mx - center_x, my - center_y
    else:
        off_x, off_y = -center_x, -center_y

    return [
        [WorldPosition(-px * sx + off_x, py * sy + off_y, s.index)
         for (px, py), s in zip(player, samples)]
        for player, samples in zip(phys, paths)
    ]
