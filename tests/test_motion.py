import pytest

from filmshell.frames import parse_frames
from filmshell.motion import (
    ADAPTIVE_16BIT,
    BASE09,
    BASE09_B3,
    LAYOUTS,
    PACKED_15BIT,
    TYPE_40088064,
    AccumulatorState,
    MotionStats,
    VariantStats,
    accumulate,
    collect_variant_stats,
    compute_motion_stats,
    detect_players,
    detect_variant,
    extract_all_player_positions,
    extract_raw_positions,
    extract_with_layout,
    frame_type_for_player,
    readings_for,
    step,
    symmetric_channel,
)

from create_test_files import base09_walk, make_88064_frame, make_film, make_position_frame


def frames_of(frame_bytes):
    return parse_frames(make_film(frame_bytes))


# ---------------------------------------------------------------------------
# Wrap folding
# ---------------------------------------------------------------------------

def test_wraparound_delta() -> None:
    samples = list(accumulate(BASE09, [(65530, 10), (5, 10)]))
    assert [(s.cum1, s.cum2) for s in samples] == [(0, 0), (11, 0)]


def test_symmetric_channel_bounds() -> None:
    channel = symmetric_channel("coord2", 12)
    assert channel.modulus == 4096
    assert channel.unwrap(2048) == 2048
    assert channel.unwrap(2049) == -2047
    assert channel.unwrap(-2048) == -2048
    assert channel.unwrap(-2049) == 2047


def test_adaptive_16bit_folds() -> None:
    assert ADAPTIVE_16BIT.unwrap(16384) == 16384
    assert ADAPTIVE_16BIT.unwrap(20000) == 20000 - 65536
    assert ADAPTIVE_16BIT.unwrap(-20000) == -20000
    assert ADAPTIVE_16BIT.unwrap(-40000) == 25536


def test_packed_15bit_folds() -> None:
    assert PACKED_15BIT.unwrap(40000) == 7232
    assert PACKED_15BIT.unwrap(20000) == 20000 - 32768
    assert PACKED_15BIT.unwrap(-20000) == -20000 + 32768
    assert PACKED_15BIT.unwrap(-40000) == -40000 + 65536
    assert PACKED_15BIT.unwrap(100) == 100


def test_per_channel_threshold() -> None:
    assert BASE09.correct(5000, 3) == (0, 3)
    assert BASE09.correct(4000, -3) == (4000, -3)
    # coord2 folds into 12 bits before the threshold applies
    assert BASE09.correct(-3, 4001) == (-3, -95)


def test_joint_threshold() -> None:
    assert BASE09_B3.correct(61, 1) == (0, 0)
    assert BASE09_B3.correct(1, -61) == (0, 0)
    assert BASE09_B3.correct(10, 5) == (10, 5)
    # 9-bit wrap: -500 folds to 12
    assert BASE09_B3.correct(-500, 0) == (12, 0)


def test_no_filter_for_40088064() -> None:
    assert TYPE_40088064.threshold is None
    assert TYPE_40088064.correct(10000, 10000) == (10000, 10000)


def test_frame_type_for_player() -> None:
    assert frame_type_for_player("40090005", 0) == "40090005"
    assert frame_type_for_player("40090005", 1) == "40290005"
    assert frame_type_for_player("40088064", 7) == "40e88064"


# ---------------------------------------------------------------------------
# Accumulation
# ---------------------------------------------------------------------------

def test_first_sample_is_origin() -> None:
    samples = list(accumulate(BASE09, [(0x4500, 300, 10, 1)]))
    assert samples[0].cum1 == 0 and samples[0].cum2 == 0
    assert samples[0].raw1 == 0x4500
    assert samples[0].offset == 10
    assert samples[0].tick == 1


def test_accumulation_resumes_from_prefix() -> None:
    frames = frames_of(base09_walk(30, step=(-7, 11)))
    raws = readings_for(BASE09, frames, 0)
    full = list(accumulate(BASE09, raws))

    prefix = full[:12]
    resumed = list(accumulate(BASE09, raws[12:], AccumulatorState.from_sample(prefix[-1])))
    assert prefix + resumed == full


def test_step_returns_next_state() -> None:
    state, sample = step(BASE09, AccumulatorState(), (100, 200))
    assert sample.index == 0
    assert state == AccumulatorState(1, 0, 0, (100, 200))
    state, sample = step(BASE09, state, (103, 195))
    assert (sample.index, sample.cum1, sample.cum2) == (1, 3, -5)
    assert state.next_index == 2


def test_walk_accumulates_steps() -> None:
    frames = frames_of(base09_walk(25))
    path = extract_with_layout(frames, 0, "base09")
    assert path.layout == "base09"
    assert len(path) == 25
    assert [s.cum1 for s in path.samples] == [3 * i for i in range(25)]
    assert [s.cum2 for s in path.samples] == [5 * i for i in range(25)]
    assert [s.index for s in path.samples] == list(range(25))


def test_coord2_wraps_at_12_bits() -> None:
    frames = frames_of(base09_walk(25, start=(0x4100, 4000), step=(0, 10)))
    path = extract_with_layout(frames, 0, "base09")
    assert path.samples[-1].cum2 == 240


def test_40088064_wrap() -> None:
    frames = frames_of([make_88064_frame(65530, 0x1000, tick=0), make_88064_frame(4, 0x1005, tick=1)])
    path = extract_with_layout(frames, 0, "40088064")
    assert [(s.cum1, s.cum2) for s in path.samples] == [(0, 0), (10, 5)]


def test_unknown_layout() -> None:
    with pytest.raises(ValueError):
        extract_with_layout([], 0, "nope")
    assert set(LAYOUTS) == {"base09", "base09-b3", "exact-40090005", "40088064"}


def test_exact_layout_filters_subtype() -> None:
    frames = frames_of(
        base09_walk(10) + base09_walk(10, start=(0x4800, 50), subtype=(0x00, 0x06)))
    assert len(extract_with_layout(frames, 0, "exact-40090005")) == 10
    assert len(extract_with_layout(frames, 0, "base09")) == 20


# ---------------------------------------------------------------------------
# Variant detection
# ---------------------------------------------------------------------------

def test_detect_standard() -> None:
    frames = frames_of(base09_walk(30))
    stats = collect_variant_stats(frames)
    assert stats.frame_count == 30
    assert stats.b0_pattern_pct == 100
    assert stats.unique_b3 == 30
    detection = detect_variant(stats)
    assert detection.variant == "standard"
    assert detection.valid


def test_detect_9bit() -> None:
    frames = frames_of([
        make_position_frame(0x4100 + i, 100 + i, tick=i, d6=i) for i in range(30)
    ])
    assert detect_variant(collect_variant_stats(frames)).variant == "9bit"


def test_detect_b3variant() -> None:
    frames = frames_of(base09_walk(30, d5=0x02))
    stats = collect_variant_stats(frames)
    assert stats.b5_pattern_pct == 0
    assert detect_variant(stats).variant == "b3variant"


def test_detect_invalid() -> None:
    assert not detect_variant(collect_variant_stats(frames_of(base09_walk(10)))).valid
    flat = frames_of(base09_walk(30, step=(1, 0)))
    assert detect_variant(collect_variant_stats(flat)).variant == "invalid"
    assert detect_variant(VariantStats()).variant == "invalid"


def test_detection_rule_priority() -> None:
    stats = VariantStats(frame_count=50, b0_pattern_pct=100, b5_pattern_pct=100,
                         unique_b3=40, unique_c2_9bit=40)
    assert detect_variant(stats).variant == "9bit"


def test_other_player_frames_ignored_by_stats() -> None:
    frames = frames_of(base09_walk(30, player=1))
    assert collect_variant_stats(frames, 0).frame_count == 0
    assert collect_variant_stats(frames, 1).frame_count == 30


# ---------------------------------------------------------------------------
# Layout selection
# ---------------------------------------------------------------------------

def test_extract_raw_positions_standard() -> None:
    path = extract_raw_positions(frames_of(base09_walk(30)))
    assert path.layout == "base09"
    assert path.variant == "standard"
    assert path.samples[-1].cum1 == 87


def test_extract_raw_positions_b3() -> None:
    path = extract_raw_positions(frames_of(base09_walk(30, d5=0x02)))
    assert path.layout == "base09-b3"


def test_extract_raw_positions_40088064() -> None:
    frames = frames_of([make_88064_frame(1000 + 2 * i, 0x100 + i, tick=i) for i in range(25)])
    path = extract_raw_positions(frames)
    assert path.layout == "40088064"
    assert path.variant == "invalid"
    assert path.samples[-1].cum1 == 48
    assert path.samples[-1].cum2 == 24


def test_extract_raw_positions_fallback_to_larger_count() -> None:
    path = extract_raw_positions(frames_of(base09_walk(15)))
    assert path.layout == "base09"
    assert len(path) == 15


def test_detect_players() -> None:
    frames = frames_of(
        base09_walk(12)
        + base09_walk(5, player=1)
        + [make_88064_frame(i, i, player=3, tick=i) for i in range(10)])
    assert detect_players(frames) == [0, 3]


def test_extract_all_player_positions() -> None:
    walk0 = base09_walk(25)
    walk2 = base09_walk(25, start=(0x4800, 10), step=(-2, 1), player=2)
    interleaved = [f for pair in zip(walk0, walk2) for f in pair]
    paths = extract_all_player_positions(frames_of(interleaved))
    assert [p.player_index for p in paths] == [0, 2]
    assert paths[1].samples[-1].cum1 == -48
    assert paths[1].samples[-1].cum2 == 24


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def test_motion_stats_with_film_length() -> None:
    path = extract_with_layout(frames_of(base09_walk(30)), 0, "base09")
    stats = compute_motion_stats(path.samples, film_length_ms=1000)
    assert stats.total_frames == 30
    assert stats.duration_seconds == 1.0
    assert stats.calculated_hz == 30.0
    assert stats.max_delta_coord1 == 87
    assert stats.range_coord2 == 145


def test_motion_stats_default_rate() -> None:
    path = extract_with_layout(frames_of(base09_walk(30)), 0, "base09")
    stats = compute_motion_stats(path.samples)
    assert stats.duration_seconds == 0.5
    assert stats.calculated_hz is None
    assert compute_motion_stats([]) == MotionStats()
