import json
import zlib
from pathlib import Path

import pytest

from filmshell import client
from filmshell.__main__ import build_parser, main

from create_test_files import (
    OBJECT_NAMES,
    SAMPLE_PLACEMENTS,
    base09_walk,
    make_fire_event,
    make_film,
    make_mvar,
    write_object_names,
)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch):
    path = tmp_path / "config" / "config.json"
    monkeypatch.setattr(client, "CONFIG_FILE", path)
    return path


@pytest.fixture
def mvar_file(tmp_path: Path) -> Path:
    path = tmp_path / "map.mvar"
    path.write_bytes(make_mvar(SAMPLE_PLACEMENTS))
    return path


@pytest.fixture
def names_file(tmp_path: Path) -> Path:
    return write_object_names(tmp_path / "objects.json", OBJECT_NAMES)


@pytest.fixture
def film_dir(tmp_path: Path) -> Path:
    film = tmp_path / "film"
    film.mkdir()
    frames = base09_walk(40)
    fire = make_fire_event("48c19d2d42c9679f", aim=0x4020) + b"\x00" * 24
    (film / "filmChunk0_dec").write_bytes(make_film(frames[:20]) + fire)
    (film / "filmChunk1_dec").write_bytes(make_film(frames[20:]))
    return film


def run_json(capsys, argv):
    main(["-q", "-j"] + argv)
    return json.loads(capsys.readouterr().out)


# ---------------------------------------------------------------------------
# decode / objects
# ---------------------------------------------------------------------------

def test_decode_text(capsys, mvar_file: Path) -> None:
    main(["-q", "decode", str(mvar_file)])
    out = capsys.readouterr().out
    assert "Outer length:" in out
    assert "'Test Map'" in out


def test_decode_json(capsys, mvar_file: Path) -> None:
    result = run_json(capsys, ["decode", str(mvar_file)])
    assert result["format"] == "Bond Compact Binary v2"
    assert result["content"]["fields"]["0"]["value"] == "Test Map"


def test_decode_hex_input(capsys, tmp_path: Path) -> None:
    hex_file = tmp_path / "map.hex"
    hex_file.write_text(make_mvar([]).hex() + "\n")
    result = run_json(capsys, ["decode", str(hex_file)])
    assert result["content"]["fields"]["0"]["value"] == "Test Map"


def test_objects_json(capsys, mvar_file: Path, names_file: Path) -> None:
    result = run_json(capsys, ["objects", str(mvar_file), "--names", str(names_file), "--important"])
    assert [o["name"] for o in result["objects"]][:2] == ["Spawn Point [Initial]"] * 2
    assert len(result["objects"]) == 5
    assert result["bounds"]["width"] == pytest.approx(140.0)


def test_objects_text(capsys, mvar_file: Path) -> None:
    main(["-q", "objects", str(mvar_file)])
    out = capsys.readouterr().out
    assert "Objects: 6" in out
    assert "Unknown (1001)" in out


# ---------------------------------------------------------------------------
# film commands
# ---------------------------------------------------------------------------

def test_frames_json(capsys, film_dir: Path) -> None:
    result = run_json(capsys, ["frames", str(film_dir), "--limit", "5"])
    assert result["total"] == 40
    assert len(result["frames"]) == 5
    assert result["frames"][0]["isPositionFrame"]
    assert result["frames"][0]["coord1"] == 0x4100


def test_frames_text(capsys, film_dir: Path) -> None:
    main(["-q", "frames", str(film_dir), "--player", "0", "--position-only"])
    out = capsys.readouterr().out
    assert "40090005" in out
    assert "... 10 more" not in out
    assert "0 more" not in out


def test_motion_json(capsys, film_dir: Path) -> None:
    result = run_json(capsys, ["motion", str(film_dir), "--player", "0"])
    assert result["layout"] == "base09"
    assert result["variant"] == "standard"
    assert len(result["samples"]) == 40
    assert result["samples"][-1]["cum1"] == 39 * 3
    assert result["stats"]["total_frames"] == 40
    assert "world" not in result


def test_motion_with_map(capsys, film_dir: Path, mvar_file: Path, names_file: Path) -> None:
    result = run_json(capsys, ["motion", str(film_dir), "--player", "0",
                               "--mvar", str(mvar_file), "--names", str(names_file)])
    assert len(result["world"]) == 40


def test_motion_players_share_world_scale(capsys, tmp_path: Path, mvar_file: Path, names_file: Path) -> None:
    film = tmp_path / "two_players"
    film.mkdir()
    walk0 = base09_walk(25)
    walk2 = base09_walk(25, start=(0x4800, 10), step=(-2, 1), player=2)
    (film / "filmChunk0_dec").write_bytes(make_film(f for pair in zip(walk0, walk2) for f in pair))

    result = run_json(capsys, ["motion", str(film), "--mvar", str(mvar_file), "--names", str(names_file)])
    assert [r["player"] for r in result] == [0, 2]

    def physical(entry):
        first = entry["samples"][0]
        return [(first["raw2"] + s["cum2"], first["raw1"] + s["cum1"]) for s in entry["samples"]]

    # Fit world = -px * sx + off_x, py * sy + off_y on player 0
    phys0, world0 = physical(result[0]), result[0]["world"]
    sx = -(world0[-1]["x"] - world0[0]["x"]) / (phys0[-1][0] - phys0[0][0])
    sy = (world0[-1]["y"] - world0[0]["y"]) / (phys0[-1][1] - phys0[0][1])
    off_x = world0[0]["x"] + phys0[0][0] * sx
    off_y = world0[0]["y"] - phys0[0][1] * sy

    for entry in result:
        for (px, py), w in zip(physical(entry), entry["world"]):
            assert w["x"] == pytest.approx(-px * sx + off_x)
            assert w["y"] == pytest.approx(py * sy + off_y)

    # Player 0 starts on an initial spawn point
    assert (world0[0]["x"], world0[0]["y"]) in [pytest.approx((50.0, 100.0)), pytest.approx((-50.0, -100.0))]


def test_motion_forced_layout(capsys, film_dir: Path) -> None:
    result = run_json(capsys, ["motion", str(film_dir), "--player", "0", "--layout", "exact-40090005"])
    assert result["layout"] == "exact-40090005"


def test_motion_text_with_film_length(capsys, film_dir: Path) -> None:
    (film_dir / "film-metadata.json").write_text(json.dumps({"CustomData": {"FilmLength": 2000}}))
    main(["-q", "motion", str(film_dir)])
    out = capsys.readouterr().out
    assert "Player 1  layout=base09" in out
    assert "Rate:           20.0 Hz" in out


def test_fires_json(capsys, film_dir: Path) -> None:
    result = run_json(capsys, ["fires", str(film_dir), "--correlate"])
    assert result["weaponCounts"] == {"MA40 AR": 1}
    assert result["events"][0]["chunkIndex"] == 0
    assert len(result["rays"]) == 1


def test_fires_rays_on_map(capsys, film_dir: Path, mvar_file: Path, names_file: Path) -> None:
    map_args = ["--mvar", str(mvar_file), "--names", str(names_file)]
    result = run_json(capsys, ["fires", str(film_dir), "--correlate"] + map_args)
    ox, oy = result["rays"][0]["origin"]
    assert -70.0 <= ox <= 70.0
    assert -140.0 <= oy <= 140.0

    # The event sits between the last frame of chunk 0 and the first of chunk 1
    world = run_json(capsys, ["motion", str(film_dir), "--player", "0"] + map_args)["world"]
    before, after = world[19], world[20]
    assert min(before["x"], after["x"]) - 1e-9 <= ox <= max(before["x"], after["x"]) + 1e-9
    assert min(before["y"], after["y"]) - 1e-9 <= oy <= max(before["y"], after["y"]) + 1e-9


def test_fires_text(capsys, film_dir: Path) -> None:
    main(["-q", "fires", str(film_dir)])
    out = capsys.readouterr().out
    assert "Fire events: 1" in out
    assert "MA40 AR" in out


def test_missing_film_directory(capsys, tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["frames", str(tmp_path / "missing")])
    assert exc.value.code == 1
    assert "ERROR" in capsys.readouterr().err


def test_empty_film_directory(capsys, tmp_path: Path) -> None:
    with pytest.raises(SystemExit) as exc:
        main(["motion", str(tmp_path)])
    assert exc.value.code == 1


# ---------------------------------------------------------------------------
# download / config
# ---------------------------------------------------------------------------

class FakeTransport:
    def __init__(self, config):
        self.config = config

    def get_blob(self, path):
        return 200, zlib.compress(path.encode()), 1.0


def test_download(capsys, tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setattr(client, "FilmTransport", FakeTransport)
    manifest = tmp_path / "film-metadata.json"
    manifest.write_text(json.dumps({
        "BlobStoragePathPrefix": "/films/x/",
        "CustomData": {"Chunks": [{"Index": 0, "FileRelativePath": "/filmChunk0"}]},
    }))
    result = run_json(capsys, ["download", str(manifest), "-o", str(tmp_path / "out")])
    assert result[0]["inflated"] is True
    assert (tmp_path / "out" / "filmChunk0_dec").read_bytes() == b"/films/x/filmChunk0"


def test_download_without_chunks(tmp_path: Path) -> None:
    manifest = tmp_path / "film-metadata.json"
    manifest.write_text("{}")
    with pytest.raises(SystemExit):
        main(["-q", "download", str(manifest)])


def test_config_save(capsys, isolated_config: Path) -> None:
    result = run_json(capsys, ["config", "--set-token", "secret", "--set-films-dir", "films2", "--save"])
    assert result["spartan_token"] == "(set)"
    assert result["films_dir"] == "films2"
    saved = json.loads(isolated_config.read_text())
    assert saved["spartan_token"] == "secret"


def test_cli_overrides(capsys) -> None:
    result = run_json(capsys, ["--timeout", "3", "--no-verify", "--proxy", "http://p:1", "config"])
    assert result["timeout"] == 3
    assert result["verify_ssl"] is False
    assert result["proxy"] == "http://p:1"


def test_no_command(capsys) -> None:
    with pytest.raises(SystemExit) as exc:
        main([])
    assert exc.value.code == 1


def test_parser_layout_choices() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["motion", "film", "--layout", "bogus"])
