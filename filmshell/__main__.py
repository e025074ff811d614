#!/usr/bin/env python3
"""
FilmShell CLI

Decode map variant (MVAR) documents and replay film telemetry: frames,
player motion, weapon fire events and map objects.

Usage:
    python -m filmshell decode <mvar>                 # Decode a Bond MVAR document
    python -m filmshell frames <film_dir>             # List telemetry frames
    python -m filmshell motion <film_dir>             # Reconstruct player motion
    python -m filmshell fires <film_dir>              # Scan weapon fire events
    python -m filmshell objects <mvar>                # Extract map objects
    python -m filmshell download <film-metadata.json> # Download film chunks
    python -m filmshell config                        # Show/edit config
"""

import warnings
# Suppress noisy warnings before any imports that trigger them
warnings.filterwarnings("ignore", category=DeprecationWarning, module="urllib3")
warnings.filterwarnings("ignore", message="Unverified HTTPS request")

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional, Tuple

from .bond import BondDocument, bond_hexdump, bond_pretty_print, bond_unpack
from .client import (
    FilmClient,
    FilmConfig,
    concatenate_chunks,
    film_length_ms,
    load_config,
    load_film_chunks,
    read_film_manifest,
    save_config,
)
from .fire import correlate_fire_events, scan_fire_events
from .frames import ParsedFrame, parse_frames
from .motion import (
    LAYOUTS,
    PlayerPath,
    compute_motion_stats,
    detect_players,
    extract_all_player_positions,
    extract_raw_positions,
    extract_with_layout,
)
from .objects import (
    compute_map_bounds,
    extract_objects,
    filter_important_objects,
    initial_spawn_points,
    load_object_names,
)
from .world import (
    MapBounds,
    WorldPosition,
    find_best_spawn_anchor,
    scale_all_players_to_world,
    scale_motion_to_world,
)


# ---------------------------------------------------------------------------
# Output formatting
# ---------------------------------------------------------------------------

class Output:
    """Handle output formatting."""

    def __init__(self, json_mode: bool = False, verbose: bool = False, quiet: bool = False):
        self.json_mode = json_mode
        self.verbose = verbose
        self.quiet = quiet

    def info(self, msg: str):
        if not self.quiet:
            print(msg, file=sys.stderr)

    def error(self, msg: str):
        print(f"ERROR: {msg}", file=sys.stderr)

    def json(self, obj):
        print(json.dumps(obj, indent=2, default=str))

    def document(self, doc: BondDocument, raw_bytes: Optional[bytes] = None):
        if self.json_mode:
            self.json(doc.to_dict())
            return

        print(f"File size:      {doc.file_size}")
        print(f"Outer length:   {doc.outer_length}")
        print(f"Blobs:          {len(doc.blobs)}")
        print()
        print(bond_pretty_print(doc.root))

        nested = doc.nested
        if nested is not None:
            print()
            print(f"Compressed trailer ({nested.compression}, "
                  f"{nested.compressed_size} -> {nested.decompressed_size} bytes):")
            print(bond_pretty_print(nested.document.root, indent=1))

        if self.verbose:
            for blob in doc.blobs:
                print(f"\nBlob #{blob.index} ({blob.length} bytes):")
                print(bond_hexdump(blob.data))
            if raw_bytes:
                print(f"\nHex dump ({len(raw_bytes)} bytes):")
                print(bond_hexdump(raw_bytes))

    def frames(self, frames: List[ParsedFrame], total: int):
        if self.json_mode:
            self.json({"total": total, "frames": [_frame_to_json(f) for f in frames]})
            return

        print(f"{'#':>7}  {'offset':>8}  ch  {'tick':>5}  type      p  fmt  data")
        for f in frames:
            data_hex = " ".join(f"{b:02x}" for b in f.data)
            marker = "*" if f.is_position_frame else " "
            print(f"{f.index:>7}  {f.offset:08x}  {f.chunk_index:>2}  {f.tick:>5}  "
                  f"{f.frame_type_hex}  {f.player_index}  {f.format_byte:02x}  {data_hex} {marker}")
        if len(frames) < total:
            print(f"... {total - len(frames)} more")

    def motion(self, results: List[Tuple[PlayerPath, object, Optional[List[WorldPosition]]]],
               as_list: bool = True):
        """Print (path, stats, world) per player; JSON is a list unless ``as_list`` is off."""
        if self.json_mode:
            docs = [_motion_to_json(path, stats, world) for path, stats, world in results]
            self.json(docs if as_list or not docs else docs[0])
            return

        for path, stats, world in results:
            print(f"Player {path.player_index + 1}  layout={path.layout}"
                  + (f"  variant={path.variant}" if path.variant else ""))
            print(f"  Frames:         {stats.total_frames}")
            print(f"  Duration:       {stats.duration_seconds:.1f}s")
            if stats.calculated_hz is not None:
                print(f"  Rate:           {stats.calculated_hz:.1f} Hz")
            print(f"  Net motion:     {stats.max_delta_coord1} / {stats.max_delta_coord2}")
            print(f"  Range:          {stats.range_coord1} / {stats.range_coord2}")
            if world:
                print(f"  World start:    ({world[0].x:.2f}, {world[0].y:.2f})")
                print(f"  World end:      ({world[-1].x:.2f}, {world[-1].y:.2f})")
            if self.verbose:
                for s in path.samples:
                    print(f"    {s.index:>6}  @{s.offset:08x}  t={s.tick:>5}  "
                          f"raw=({s.raw1}, {s.raw2})  cum=({s.cum1}, {s.cum2})")


def _motion_to_json(path: PlayerPath, stats, world: Optional[List[WorldPosition]]) -> dict:
    result = {
        "player": path.player_index,
        "layout": path.layout,
        "variant": path.variant,
        "stats": asdict(stats),
        "samples": [asdict(s) for s in path.samples],
    }
    if world is not None:
        result["world"] = [asdict(w) for w in world]
    return result


def _frame_to_json(f: ParsedFrame) -> dict:
    result = {
        "index": f.index,
        "offset": f.offset,
        "chunkIndex": f.chunk_index,
        "tick": f.tick,
        "frameType": f.frame_type_hex,
        "subtype": f.subtype_hex,
        "playerIndex": f.player_index,
        "baseType": f.base_type,
        "formatByte": f.format_byte,
        "data": list(f.data),
        "isPositionFrame": f.is_position_frame,
        "hasPlayer": f.has_player,
    }
    if f.is_position_frame:
        result["coord1"] = f.coord1
        result["coord2"] = f.coord2
    return result


def _read_input_bytes(path: str, out: Output) -> bytes:
    data = Path(path).read_bytes()

    # Auto-detect if it's hex-encoded
    try:
        text = data.decode('ascii').strip()
        if text and all(c in '0123456789abcdefABCDEF \n\r\t' for c in text):
            data = bytes.fromhex("".join(text.split()))
            out.info("Detected hex-encoded input, converted to binary")
    except (UnicodeDecodeError, ValueError):
        pass
    return data


def _load_film(film_dir: str) -> Tuple[bytes, List[int]]:
    chunks = load_film_chunks(film_dir)
    if not chunks:
        raise FileNotFoundError(f"No filmChunk<N>_dec files in {film_dir}")
    return concatenate_chunks(chunks)


def _load_map(args, out: Output) -> Tuple[Optional[MapBounds], List[Tuple[float, float]]]:
    """Map bounds and initial spawn candidates from --mvar, if given."""
    if not getattr(args, "mvar", None):
        return None, []
    names = load_object_names(args.names) if args.names else {}
    objects = extract_objects(bond_unpack(Path(args.mvar).read_bytes()), names)
    out.info(f"Map objects: {len(objects)}")
    if not objects:
        return None, []
    return compute_map_bounds(objects), initial_spawn_points(objects)


# ---------------------------------------------------------------------------
# CLI commands
# ---------------------------------------------------------------------------

def cmd_decode(args, config: FilmConfig, out: Output):
    """Decode a Bond MVAR document."""
    data = _read_input_bytes(args.file, out)
    out.info(f"Decoding {len(data)} bytes of Bond Compact Binary v2...")
    doc = bond_unpack(data)
    if doc.root.truncated:
        out.info("Warning: document is truncated")
    out.document(doc, raw_bytes=data)


def cmd_frames(args, config: FilmConfig, out: Output):
    """List telemetry frames of a film."""
    data, offsets = _load_film(args.film_dir)
    out.info(f"Loaded {len(offsets)} chunk(s), {len(data)} bytes")

    frames = parse_frames(data, offsets)
    if args.position_only:
        frames = [f for f in frames if f.is_position_frame]
    if args.player is not None:
        frames = [f for f in frames if f.player_index == args.player]

    out.info(f"Frames: {len(frames)}  players: {detect_players(frames)}")
    shown = frames if args.limit <= 0 else frames[:args.limit]
    out.frames(shown, len(frames))


def cmd_motion(args, config: FilmConfig, out: Output):
    """Reconstruct player motion from a film."""
    data, offsets = _load_film(args.film_dir)
    frames = parse_frames(data, offsets)
    length_ms = film_length_ms(args.film_dir)

    players = [args.player] if args.player is not None else detect_players(frames)
    if not players:
        out.error("No players detected in film")
        sys.exit(1)

    if args.layout:
        paths = [extract_with_layout(frames, player, args.layout) for player in players]
    elif args.player is None:
        paths = extract_all_player_positions(frames)
    else:
        paths = [extract_raw_positions(frames, args.player)]
    for path in paths:
        if not path.samples:
            out.info(f"Player {path.player_index + 1}: no position frames")
    paths = [p for p in paths if p.samples]

    # Several players share one scale and offset, anchored on the first player's spawn
    worlds = [None] * len(paths)
    bounds, candidates = _load_map(args, out)
    if bounds is not None and paths:
        anchor = find_best_spawn_anchor(paths[0].samples, bounds, candidates)
        if len(paths) > 1:
            worlds = scale_all_players_to_world([p.samples for p in paths], bounds, anchor)
        else:
            worlds = [scale_motion_to_world(paths[0].samples, bounds, anchor, coupled=anchor is not None)]

    results = [
        (path, compute_motion_stats(path.samples, length_ms), world)
        for path, world in zip(paths, worlds)
    ]
    out.motion(results, as_list=args.player is None)


def cmd_fires(args, config: FilmConfig, out: Output):
    """Scan a film for weapon fire events."""
    data, offsets = _load_film(args.film_dir)
    result = scan_fire_events(data, offsets)

    rays = []
    if args.correlate:
        path = extract_raw_positions(parse_frames(data, offsets), 0)
        bounds, candidates = _load_map(args, out)
        anchor = find_best_spawn_anchor(path.samples, bounds, candidates)
        world = scale_motion_to_world(path.samples, bounds, anchor, coupled=anchor is not None)
        rays = correlate_fire_events(
            result.events, [s.offset for s in path.samples], [(w.x, w.y) for w in world])

    if out.json_mode:
        payload = {
            "weaponCounts": dict(result.weapon_counts),
            "events": [
                {
                    "offset": e.offset,
                    "chunkIndex": e.chunk_index,
                    "counter": e.counter,
                    "slot": e.slot,
                    "weaponId": e.weapon_id,
                    "weaponName": e.weapon_name,
                    "octantByte": e.octant_byte,
                    "aim": e.aim,
                    "direction": e.direction._asdict(),
                }
                for e in result.events
            ],
        }
        if args.correlate:
            payload["rays"] = [
                {"index": r.index, "origin": list(r.origin), "weaponName": r.weapon_name}
                for r in rays
            ]
        out.json(payload)
        return

    print(f"Fire events: {len(result.events)}")
    for name, count in result.weapon_counts.most_common():
        print(f"  {name:<20} {count}")
    if out.verbose:
        print()
        for e in result.events:
            d = e.direction
            print(f"  {e.offset:08x}  ctr={e.counter:>3}  slot={e.slot}  {e.weapon_name:<16} "
                  f"dir=({d.x:+.3f}, {d.y:+.3f}, {d.z:+.3f})")
    for r in rays:
        print(f"  ray {r.index}: {r.weapon_name} from ({r.origin[0]:.2f}, {r.origin[1]:.2f})")


def cmd_objects(args, config: FilmConfig, out: Output):
    """Extract placed objects from an MVAR document."""
    names = load_object_names(args.names) if args.names else {}
    doc = bond_unpack(_read_input_bytes(args.file, out))
    objects = extract_objects(doc, names)
    if args.important:
        objects = filter_important_objects(objects)
    bounds = compute_map_bounds(objects)

    if out.json_mode:
        out.json({
            "objects": [o.to_dict() for o in objects],
            "bounds": {**asdict(bounds), "width": bounds.width, "height": bounds.height,
                       "depth": bounds.depth, "center": list(bounds.center)},
        })
        return

    print(f"Objects: {len(objects)}")
    for o in objects:
        x, y, z = o.position
        print(f"  {o.index:>4}  {o.name:<32} ({x:9.2f}, {y:9.2f}, {z:9.2f})  heading={o.heading:7.2f}")
    print()
    print(f"Bounds: x [{bounds.min_x:.2f}, {bounds.max_x:.2f}]  y [{bounds.min_y:.2f}, {bounds.max_y:.2f}]  "
          f"{bounds.width:.2f} x {bounds.height:.2f}")


def cmd_download(args, config: FilmConfig, out: Output):
    """Download and inflate the chunks of a film."""
    manifest = read_film_manifest(args.manifest)
    if not manifest.chunks:
        out.error("Film has no downloadable chunks")
        sys.exit(1)

    out_dir = Path(args.output) if args.output else Path(args.manifest).parent
    out.info(f"Downloading {len(manifest.chunks)} chunk(s) to {out_dir}...")
    try:
        results = FilmClient(config).download_film(manifest, out_dir)
    except ConnectionError as e:
        out.error(str(e))
        sys.exit(1)

    if out.json_mode:
        out.json([{**asdict(r), "path": str(r.path) if r.path else None} for r in results])
        return
    for r in results:
        state = "inflated" if r.inflated else ("kept compressed" if r.path else "failed")
        print(f"  [{r.index}] HTTP {r.status}  {r.size} bytes  {state}  ({r.latency_ms:.0f} ms)")


def cmd_config(args, config: FilmConfig, out: Output):
    """Show or update configuration."""
    if args.set_token:
        config.spartan_token = args.set_token if args.set_token != "none" else None
    if args.set_origin:
        config.blob_origin = args.set_origin
    if args.set_proxy:
        config.proxy = args.set_proxy if args.set_proxy != "none" else None
    if args.set_films_dir:
        config.films_dir = args.set_films_dir

    if args.save:
        save_config(config)
        out.info("Config saved")

    if out.json_mode:
        d = asdict(config)
        d["spartan_token"] = "(set)" if config.spartan_token else None
        out.json(d)
    else:
        print(f"Blob origin:      {config.blob_origin}")
        print(f"Spartan token:    {'(set)' if config.spartan_token else '(none)'}")
        print(f"Films dir:        {config.films_dir}")
        print(f"Timeout:          {config.timeout}s")
        print(f"Proxy:            {config.proxy or '(none)'}")
        print(f"Verify SSL:       {config.verify_ssl}")
        print(f"User-Agent:       {config.user_agent}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="filmshell",
        description="FilmShell - map variant and replay film decoder",
    )

    # Global options
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output (debug logging)")
    parser.add_argument("-q", "--quiet", action="store_true", help="Suppress info messages")
    parser.add_argument("-j", "--json", action="store_true", help="JSON output")
    parser.add_argument("--proxy", help="HTTP proxy (e.g., http://127.0.0.1:8080)")
    parser.add_argument("--no-verify", action="store_true", help="Disable TLS certificate verification")
    parser.add_argument("--timeout", type=int, help="Request timeout in seconds")
    parser.add_argument("--token", help="Spartan token for blob downloads")

    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    # decode
    p_decode = subparsers.add_parser("decode", help="Decode a Bond MVAR document")
    p_decode.add_argument("file", help="MVAR file to decode (binary or hex-encoded)")

    # frames
    p_frames = subparsers.add_parser("frames", help="List telemetry frames")
    p_frames.add_argument("film_dir", help="Directory with filmChunk<N>_dec files")
    p_frames.add_argument("--player", type=int, choices=range(8), help="Only this player index")
    p_frames.add_argument("--position-only", action="store_true", help="Only position frames")
    p_frames.add_argument("--limit", type=int, default=50, help="Frames to print (0 = all, default: 50)")

    # motion
    p_motion = subparsers.add_parser("motion", help="Reconstruct player motion")
    p_motion.add_argument("film_dir", help="Directory with filmChunk<N>_dec files")
    p_motion.add_argument("--player", type=int, choices=range(8), help="Player index (default: all detected)")
    p_motion.add_argument("--layout", choices=sorted(LAYOUTS), help="Force a channel layout")
    p_motion.add_argument("--mvar", help="MVAR document used to scale motion to world coordinates")
    p_motion.add_argument("--names", help="objects.json id/name table")

    # fires
    p_fires = subparsers.add_parser("fires", help="Scan weapon fire events")
    p_fires.add_argument("film_dir", help="Directory with filmChunk<N>_dec files")
    p_fires.add_argument("--correlate", action="store_true",
                         help="Attach player 0 positions to each event")
    p_fires.add_argument("--mvar", help="MVAR document used to place ray origins in world coordinates")
    p_fires.add_argument("--names", help="objects.json id/name table")

    # objects
    p_objects = subparsers.add_parser("objects", help="Extract map objects from an MVAR document")
    p_objects.add_argument("file", help="MVAR file")
    p_objects.add_argument("--names", help="objects.json id/name table")
    p_objects.add_argument("--important", action="store_true", help="Only spawns, flags and objectives")

    # download
    p_download = subparsers.add_parser("download", help="Download film chunks")
    p_download.add_argument("manifest", help="film-metadata.json")
    p_download.add_argument("-o", "--output", help="Output directory (default: manifest directory)")

    # config
    p_config = subparsers.add_parser("config", help="Show/edit configuration")
    p_config.add_argument("--set-token", help="Set spartan token (or 'none' to clear)")
    p_config.add_argument("--set-origin", help="Set blob origin")
    p_config.add_argument("--set-proxy", help="Set proxy (or 'none' to clear)")
    p_config.add_argument("--set-films-dir", help="Set default films directory")
    p_config.add_argument("--save", action="store_true", help="Persist to disk")

    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # Load/build config
    config = load_config()

    # Apply CLI overrides
    if args.proxy:
        config.proxy = args.proxy
    if args.no_verify:
        config.verify_ssl = False
    if args.timeout:
        config.timeout = args.timeout
    if args.token:
        config.spartan_token = args.token

    # Output handler
    out = Output(json_mode=args.json, verbose=args.verbose, quiet=args.quiet)

    # Dispatch
    commands = {
        "decode": cmd_decode,
        "frames": cmd_frames,
        "motion": cmd_motion,
        "fires": cmd_fires,
        "objects": cmd_objects,
        "download": cmd_download,
        "config": cmd_config,
    }

    handler = commands.get(args.command)
    if handler:
        try:
            handler(args, config, out)
        except FileNotFoundError as e:
            out.error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            out.info("\nInterrupted")
            sys.exit(130)
        except (ValueError, OSError) as e:
            out.error(str(e))
            if args.verbose:
                import traceback
                traceback.print_exc()
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
