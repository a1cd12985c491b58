import json

import pytest
from PIL import Image

from bgstudio import cli
from bgstudio import session as session_mod
from bgstudio.capabilities import Capabilities
from bgstudio.lifecycle import COMPATIBILITY_MODEL_ID, QUALITY_MODEL_ID
from bgstudio.session import Studio

from conftest import FakeLoader


@pytest.fixture
def fake_studio(monkeypatch):
    created = []

    def factory(config):
        studio = Studio(config, loader=FakeLoader(), capabilities=Capabilities(), probe=lambda: False)
        created.append(studio)
        return studio

    monkeypatch.setattr(cli, "Studio", factory)
    return created


def _write_inputs(folder):
    folder.mkdir()
    Image.new("RGB", (8, 4), (0, 0, 200)).save(folder / "one.png")
    Image.new("RGB", (6, 6), (0, 100, 0)).save(folder / "two.jpg")
    (folder / "notes.txt").write_text("skip me")


def test_parse_args_requires_a_source(tmp_path):
    with pytest.raises(SystemExit):
        cli.parse_args(["--output-dir", str(tmp_path)])


def test_parse_args_rejects_two_backgrounds(tmp_path):
    with pytest.raises(SystemExit):
        cli.parse_args(
            [
                "--input-dir", str(tmp_path),
                "--output-dir", str(tmp_path),
                "--background", "#fff",
                "--background-image", str(tmp_path / "bg.png"),
            ]
        )


def test_build_config_from_flags(tmp_path):
    args = cli.parse_args(
        [
            "--input-dir", str(tmp_path),
            "--output-dir", str(tmp_path),
            "--weights-dir", str(tmp_path / "w"),
            "--alpha-threshold", "1.5",
            "--refine-dilate", "-2",
            "--no-refine",
        ]
    )
    config = cli.build_config(args)
    assert config.model_name == COMPATIBILITY_MODEL_ID
    assert config.weights_dir == tmp_path / "w"
    assert config.alpha_threshold == 1.0
    assert config.refine_dilate == 0
    assert config.refine_foreground is False


def test_run_writes_cutouts(tmp_path, fake_studio, capsys):
    _write_inputs(tmp_path / "in")
    out = tmp_path / "out"
    report = tmp_path / "report.json"

    cli.run(["--input-dir", str(tmp_path / "in"), "--output-dir", str(out), "--json", str(report)])

    assert sorted(p.name for p in out.iterdir()) == ["one.png", "two.png"]
    one = Image.open(out / "one.png").convert("RGBA")
    assert one.getpixel((0, 0)) == (0, 0, 200, 255)
    assert one.getpixel((7, 0))[3] == 0
    assert set(json.loads(report.read_text())["timings"]) == {"one.png", "two.jpg"}
    assert "Processed 2 images" in capsys.readouterr().out
    assert fake_studio[0].images == []


def test_run_applies_background_and_effect(tmp_path, fake_studio):
    _write_inputs(tmp_path / "in")
    out = tmp_path / "out"

    cli.run(
        [
            "--input-dir", str(tmp_path / "in"),
            "--output-dir", str(out),
            "--background", "#ff0000",
            "--effect", "brightness",
            "--intensity", "25",
        ]
    )

    one = Image.open(out / "one.png").convert("RGBA")
    assert one.getpixel((0, 0)) == (0, 0, 100, 255)
    assert one.getpixel((7, 0)) == (128, 0, 0, 255)


def test_existing_outputs_are_skipped(tmp_path, fake_studio, capsys):
    _write_inputs(tmp_path / "in")
    out = tmp_path / "out"
    out.mkdir()
    for name in ("one.png", "two.png"):
        (out / name).write_bytes(b"keep")

    cli.run(["--input-dir", str(tmp_path / "in"), "--output-dir", str(out)])

    assert (out / "one.png").read_bytes() == b"keep"
    assert "No images processed" in capsys.readouterr().out


def test_report_names_the_model_actually_used(tmp_path, monkeypatch):
    monkeypatch.setattr(
        cli,
        "Studio",
        lambda config: Studio(
            config,
            loader=FakeLoader(failing={QUALITY_MODEL_ID}),
            capabilities=Capabilities(),
            probe=lambda: True,
        ),
    )
    _write_inputs(tmp_path / "in")
    report = tmp_path / "report.json"

    cli.run(
        [
            "--input-dir", str(tmp_path / "in"),
            "--output-dir", str(tmp_path / "out"),
            "--model", QUALITY_MODEL_ID,
            "--json", str(report),
        ]
    )

    assert json.loads(report.read_text())["model"] == COMPATIBILITY_MODEL_ID


def test_failed_samples_are_removed(tmp_path, fake_studio, monkeypatch, capsys):
    monkeypatch.setattr(session_mod, "fetch_bytes", lambda url: b"not an image")

    cli.run(["--samples", "--output-dir", str(tmp_path / "out")])

    assert fake_studio[0].images == []
    assert list((tmp_path / "out").iterdir()) == []
    output = capsys.readouterr().out
    assert "sample-1.jpg" in output
    assert "No images processed" in output
