"""
Position-channel reconstruction.

Player positions are stored as two wrapping counters per position frame.
Absolute motion is recovered by differencing consecutive raw values,
folding each delta back into range (wraparound) and summing.

Several incompatible physical encodings exist; each is described by a
ChannelLayout:

  base09          base type 0x09, d0 high nibble 4
                    c1 = d0 << 8 | d1          16 bits
                    c2 = (d2 & 0x0f) << 8 | d3 12 bits
                    per-channel discontinuity threshold 4000
  base09-b3       same frames
                    c1 = (d0 & 1) << 8 | d1    9 bits
                    c2 = d3                    8 bits
                    joint discontinuity threshold 60
  exact-40090005  exact frame type 40090005 (player bits applied),
                  encoded like base09
  40088064        exact frame type 40088064
                    c1 = d0 << 8 | d1          16 bits, asymmetric folds
                    c2 = d2 << 8 | (d3 & 0x7f) 15 bits packed, two fold chains
                    no discontinuity filter

Which layout a film uses is detected from statistics over its base-0x09
position frames (see DETECTION_RULES).
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, NamedTuple, Optional, Sequence, Tuple

from .frames import ParsedFrame

logger = logging.getLogger(__name__)

MIN_PLAYER_FRAMES = 10
MIN_VARIANT_FRAMES = 20
MIN_EXACT_FRAMES = 10
MIN_UNIQUE_VALUES = 20

# Frame rate assumed when the film length is unknown.
DEFAULT_HZ = 60


# ---------------------------------------------------------------------------
# Channels and wrap folding
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Fold:
    """Add ``shift`` to a delta that crosses ``limit``.

    A negative shift applies to deltas above the limit, a positive shift to
    deltas below it.
    """
    limit: int
    shift: int

    def matches(self, delta: int) -> bool:
        if self.shift < 0:
            return delta > self.limit
        return delta < self.limit


@dataclass(frozen=True)
class Channel:
    """One wrapping coordinate counter.

    ``chains`` are applied in order to the running delta; inside a chain
    only the first matching Fold applies.
    """
    name: str
    bits: int
    modulus: int
    chains: Tuple[Tuple[Fold, ...], ...]

    def unwrap(self, delta: int) -> int:
        for chain in self.chains:
            for fold in chain:
                if fold.matches(delta):
                    delta += fold.shift
                    break
        return delta


def symmetric_channel(name: str, bits: int) -> Channel:
    """Channel that folds deltas into [-modulus/2, modulus/2]."""
    m = 1 << bits
    half = m // 2
    return Channel(name, bits, m, ((Fold(half, -m),), (Fold(-half, m),)))


# Asymmetric folds: fast positive movement (grapple) wraps from 16384 up,
# while negative deltas only wrap past half the range.
ADAPTIVE_16BIT = Channel(
    "coord1", 16, 65536,
    ((Fold(16384, -65536), Fold(-32768, 65536)),),
)

# d2 << 8 | (d3 & 0x7f) wraps in both the 16-bit and the 15-bit range.
PACKED_15BIT = Channel(
    "coord2", 15, 32768,
    (
        (Fold(32768, -65536), Fold(16384, -32768)),
        (Fold(-32768, 65536), Fold(-16384, 32768)),
    ),
)


# ---------------------------------------------------------------------------
# Layouts
# ---------------------------------------------------------------------------

def frame_type_for_player(base_hex: str, player: int) -> str:
    """Apply a player index to a 4-byte frame type hex string.

    ``frame_type_for_player('40090005', 1) == '40290005'``
    """
    raw = bytearray(bytes.fromhex(base_hex))
    raw[1] = (raw[1] & 0x1F) | ((player & 0x07) << 5)
    return raw.hex()


def _is_base09_position(frame: ParsedFrame, player: int) -> bool:
    return frame.is_position_frame and frame.player_index == player


def _exact_type(base_hex: str) -> Callable[[ParsedFrame, int], bool]:
    def matches(frame: ParsedFrame, player: int) -> bool:
        return frame.frame_type_hex == frame_type_for_player(base_hex, player)
    return matches


def _decode_base09(frame: ParsedFrame) -> Tuple[int, int]:
    d = frame.data
    return d[0] * 256 + d[1], ((d[2] & 0x0F) << 8) | d[3]


def _decode_b3(frame: ParsedFrame) -> Tuple[int, int]:
    d = frame.data
    return ((d[0] & 1) << 8) | d[1], d[3]


def _decode_88064(frame: ParsedFrame) -> Tuple[int, int]:
    d = frame.data
    return d[0] * 256 + d[1], d[2] * 256 + (d[3] & 0x7F)


@dataclass(frozen=True)
class ChannelLayout:
    """A physical encoding of the two position channels.

    ``threshold`` zeroes deltas whose magnitude exceeds it: each channel on
    its own, or both together when ``joint_threshold`` is set.
    """
    name: str
    matches: Callable[[ParsedFrame, int], bool]
    decode: Callable[[ParsedFrame], Tuple[int, int]]
    channel1: Channel
    channel2: Channel
    threshold: Optional[int] = None
    joint_threshold: bool = False

    def correct(self, delta1: int, delta2: int) -> Tuple[int, int]:
        d1 = self.channel1.unwrap(delta1)
        d2 = self.channel2.unwrap(delta2)
        if self.threshold is None:
            return d1, d2
        if self.joint_threshold:
            if abs(d1) > self.threshold or abs(d2) > self.threshold:
                return 0, 0
            return d1, d2
        if abs(d1) > self.threshold:
            d1 = 0
        if abs(d2) > self.threshold:
            d2 = 0
        return d1, d2

    def select(self, frames: Iterable[ParsedFrame], player: int) -> List[ParsedFrame]:
        return [f for f in frames if self.matches(f, player)]


BASE09 = ChannelLayout(
    "base09", _is_base09_position, _decode_base09,
    symmetric_channel("coord1", 16), symmetric_channel("coord2", 12),
    threshold=4000,
)
BASE09_B3 = ChannelLayout(
    "base09-b3", _is_base09_position, _decode_b3,
    symmetric_channel("coord1", 9), symmetric_channel("coord2", 8),
    threshold=60, joint_threshold=True,
)
EXACT_40090005 = ChannelLayout(
    "exact-40090005", _exact_type("40090005"), _decode_base09,
    symmetric_channel("coord1", 16), symmetric_channel("coord2", 12),
    threshold=4000,
)
TYPE_40088064 = ChannelLayout(
    "40088064", _exact_type("40088064"), _decode_88064,
    ADAPTIVE_16BIT, PACKED_15BIT,
)

LAYOUTS: Dict[str, ChannelLayout] = {
    layout.name: layout
    for layout in (BASE09, BASE09_B3, EXACT_40090005, TYPE_40088064)
}


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

class RawReading(NamedTuple):
    raw1: int
    raw2: int
    offset: int = -1
    tick: int = 0


@dataclass(frozen=True)
class MotionSample:
    index: int
    cum1: int
    cum2: int
    raw1: int
    raw2: int
    offset: int = -1
    tick: int = 0


@dataclass(frozen=True)
class AccumulatorState:
    """Running state of one (player, layout) accumulation."""
    next_index: int = 0
    cum1: int = 0
    cum2: int = 0
    prev: Optional[Tuple[int, int]] = None

    @classmethod
    def from_sample(cls, sample: MotionSample) -> "AccumulatorState":
        """State right after ``sample`` was emitted."""
        return cls(sample.index + 1, sample.cum1, sample.cum2, (sample.raw1, sample.raw2))


def step(
    layout: ChannelLayout,
    state: AccumulatorState,
    raw: Sequence[int],
) -> Tuple[AccumulatorState, MotionSample]:
    """Fold one raw reading into the state, returning the new state and sample."""
    reading = RawReading(*raw)
    cum1, cum2 = state.cum1, state.cum2
    if state.prev is not None:
        d1, d2 = layout.correct(reading.raw1 - state.prev[0], reading.raw2 - state.prev[1])
        cum1 += d1
        cum2 += d2

    sample = MotionSample(
        index=state.next_index,
        cum1=cum1,
        cum2=cum2,
        raw1=reading.raw1,
        raw2=reading.raw2,
        offset=reading.offset,
        tick=reading.tick,
    )
    return AccumulatorState(state.next_index + 1, cum1, cum2, (reading.raw1, reading.raw2)), sample


def accumulate(
    layout: ChannelLayout,
    raws: Iterable[Sequence[int]],
    state: Optional[AccumulatorState] = None,
) -> Iterator[MotionSample]:
    """Yield a MotionSample per raw reading. The first sample is (0, 0)."""
    if state is None:
        state = AccumulatorState()
    for raw in raws:
        state, sample = step(layout, state, raw)
        yield sample


def readings_for(layout: ChannelLayout, frames: Iterable[ParsedFrame], player: int) -> List[RawReading]:
    return [
        RawReading(*layout.decode(f), f.offset, f.tick)
        for f in layout.select(frames, player)
    ]


# ---------------------------------------------------------------------------
# Variant detection
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VariantStats:
    frame_count: int = 0
    b0_pattern_pct: float = 0.0
    b5_pattern_pct: float = 0.0
    unique_b3: int = 0
    unique_c2_9bit: int = 0


@dataclass(frozen=True)
class VariantDetection:
    variant: str
    stats: VariantStats

    @property
    def valid(self) -> bool:
        return self.variant != "invalid"


# (name, priority, predicate); evaluated by ascending priority.
DETECTION_RULES: List[Tuple[str, int, Callable[[VariantStats], bool]]] = [
    ("9bit", 1, lambda s: s.b0_pattern_pct >= 95 and s.b5_pattern_pct >= 95
        and s.unique_c2_9bit >= MIN_UNIQUE_VALUES),
    ("b3variant", 2, lambda s: s.b0_pattern_pct >= 95 and s.b5_pattern_pct < 50
        and s.unique_b3 >= MIN_UNIQUE_VALUES),
    ("standard", 3, lambda s: s.unique_b3 >= MIN_UNIQUE_VALUES),
]


def collect_variant_stats(frames: Iterable[ParsedFrame], player: int = 0) -> VariantStats:
    """Statistics over a player's base-0x09 position frames.

    The b5 pattern only holds for the exact 0005 subtype; when fewer than
    MIN_EXACT_FRAMES of those exist the c1 range decides instead (a 9-bit
    c1 never spans more than 512).
    """
    exact_type = frame_type_for_player("40090005", player)
    b0_values: List[int] = []
    b3_values: List[int] = []
    c1_values: List[int] = []
    exact_b5: List[int] = []
    exact_c2_9bit: List[int] = []

    for f in frames:
        if not _is_base09_position(f, player):
            continue
        d = f.data
        b0_values.append(d[0])
        b3_values.append(d[3])
        c1_values.append(d[0] * 256 + d[1])
        if f.frame_type_hex == exact_type:
            exact_b5.append(d[5])
            exact_c2_9bit.append(((d[5] & 1) << 8) | d[6])

    count = len(b0_values)
    if count < MIN_VARIANT_FRAMES:
        return VariantStats(frame_count=count)

    b0_pct = sum(1 for v in b0_values if v >> 4 in (0, 4)) / count * 100

    if len(exact_b5) >= MIN_EXACT_FRAMES:
        b5_pct = sum(1 for v in exact_b5 if v & 0x1E == 0) / len(exact_b5) * 100
        unique_c2_9bit = len(set(exact_c2_9bit))
    elif max(c1_values) - min(c1_values) > 512:
        b5_pct, unique_c2_9bit = 100.0, 100
    else:
        b5_pct, unique_c2_9bit = 0.0, 0

    return VariantStats(
        frame_count=count,
        b0_pattern_pct=b0_pct,
        b5_pattern_pct=b5_pct,
        unique_b3=len(set(b3_values)),
        unique_c2_9bit=unique_c2_9bit,
    )


def detect_variant(stats: VariantStats) -> VariantDetection:
    """Apply DETECTION_RULES; ``invalid`` when none accepts."""
    if stats.frame_count < MIN_VARIANT_FRAMES:
        return VariantDetection("invalid", stats)
    for name, _priority, accepts in sorted(DETECTION_RULES, key=lambda r: r[1]):
        if accepts(stats):
            return VariantDetection(name, stats)
    return VariantDetection("invalid", stats)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

@dataclass
class PlayerPath:
    player_index: int
    layout: str
    samples: List[MotionSample] = field(default_factory=list)
    variant: str = ""

    def __len__(self) -> int:
        return len(self.samples)


def extract_with_layout(frames: Sequence[ParsedFrame], player: int, name: str) -> PlayerPath:
    """Accumulate a player's frames with an explicitly chosen layout."""
    layout = LAYOUTS.get(name)
    if layout is None:
        raise ValueError(f"Unknown layout {name!r}; expected one of {', '.join(LAYOUTS)}")
    samples = list(accumulate(layout, readings_for(layout, frames, player)))
    return PlayerPath(player, layout.name, samples)


def extract_raw_positions(frames: Sequence[ParsedFrame], player: int = 0) -> PlayerPath:
    """Detect the encoding for ``player`` and return its accumulated path.

    Order of preference: base09 (9bit/standard), base09-b3 when it has at
    least as many frames as 40088064, 40088064 with enough frames, then
    whichever candidate has more frames.
    """
    count_88064 = len(TYPE_40088064.select(frames, player))
    count_base09 = len(BASE09.select(frames, player))
    detection = detect_variant(collect_variant_stats(frames, player))

    logger.debug("P%d frame type detection: 40088064=%d, base-0x09=%d (%s)",
                 player, count_88064, count_base09, detection.variant)

    if detection.variant in ("9bit", "standard"):
        name = BASE09.name
    elif detection.variant == "b3variant" and count_base09 >= count_88064:
        name = BASE09_B3.name
    elif count_88064 >= MIN_VARIANT_FRAMES:
        name = TYPE_40088064.name
    elif count_base09 > count_88064:
        name = BASE09.name
    else:
        name = TYPE_40088064.name

    path = extract_with_layout(frames, player, name)
    path.variant = detection.variant
    logger.debug("P%d using %s (%d samples)", player, name, len(path.samples))
    return path


def detect_players(frames: Iterable[ParsedFrame]) -> List[int]:
    """Player indices with at least MIN_PLAYER_FRAMES motion frames."""
    counts: Dict[int, int] = {}
    for f in frames:
        if f.has_player:
            counts[f.player_index] = counts.get(f.player_index, 0) + 1
    return sorted(p for p, n in counts.items() if n >= MIN_PLAYER_FRAMES)


def extract_all_player_positions(frames: Sequence[ParsedFrame]) -> List[PlayerPath]:
    players = detect_players(frames)
    logger.debug("Detected %d player(s): %s", len(players), players)
    paths = []
    for player in players:
        path = extract_raw_positions(frames, player)
        if path.samples:
            paths.append(path)
    return paths


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

@dataclass
class MotionStats:
    total_frames: int = 0
    duration_seconds: float = 0.0
    calculated_hz: Optional[float] = None
    max_delta_coord1: int = 0
    max_delta_coord2: int = 0
    range_coord1: int = 0
    range_coord2: int = 0


def compute_motion_stats(samples: Sequence[MotionSample], film_length_ms: Optional[int] = None) -> MotionStats:
    """Summarise a path; duration falls back to DEFAULT_HZ without a film length."""
    if not samples:
        return MotionStats()

    cum1 = [s.cum1 for s in samples]
    cum2 = [s.cum2 for s in samples]

    if film_length_ms and film_length_ms > 0:
        duration = film_length_ms / 1000
        hz: Optional[float] = len(samples) / duration
    else:
        duration = len(samples) / DEFAULT_HZ
        hz = None

    last = samples[-1]
    return MotionStats(
        total_frames=len(samples),
        duration_seconds=duration,
        calculated_hz=hz,
        max_delta_coord1=abs(last.cum1),
        max_delta_coord2=abs(last.cum2),
        range_coord1=max(cum1) - min(cum1),
        range_coord2=max(cum2) - min(cum2),
    )
