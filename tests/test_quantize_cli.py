"""Tests for the job-config CLI"""

import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

import quantize_cli
from quantize_cli import (
    ConfigValidationError,
    detect_mode,
    example_config,
    load_config,
    load_saved_palette,
    main,
    validate_config,
)


@pytest.fixture
def image_file(tmp_path, gradient_image):
    path = tmp_path / "input.png"
    gradient_image.save(path)
    return path


@pytest.fixture
def prefs_file(tmp_path, monkeypatch):
    # Palette library and preferences land in the temp dir.
    monkeypatch.chdir(tmp_path)
    return str(tmp_path / "prefs.json")


def run_cli(*argv):
    with pytest.raises(SystemExit) as exc:
        main(list(argv))
    return exc.value.code


class TestValidateConfig:

    def test_missing_required_fields(self, tmp_path):
        with pytest.raises(ConfigValidationError) as exc:
            validate_config({}, tmp_path / "job.json")
        assert "'input'" in str(exc.value)
        assert "'output'" in str(exc.value)

    def test_not_an_object(self, tmp_path):
        with pytest.raises(ConfigValidationError):
            validate_config(["input"], tmp_path / "job.json")

    @pytest.mark.parametrize("patch,message", [
        ({"mode": "video"}, "Invalid mode"),
        ({"palette": {"num_colors": 0}}, "palette.num_colors"),
        ({"palette": {"num_colors": "many"}}, "palette.num_colors"),
        ({"palette": {"tree": "octree"}}, "Invalid tree variant"),
        ({"palette": {"save_as": ""}}, "palette.save_as"),
        ({"dithering": {"mode": "bayer"}}, "Invalid dither mode"),
        ({"dithering": {"edge_policy": "clamp"}}, "Invalid edge policy"),
        ({"sweep": {"min": 6, "max": 3}}, "sweep.min"),
        ({"final_resize": {"multiplier": 0}}, "final_resize.multiplier"),
        ({"preview": True}, "'preview' must be an object"),
        ({"palette": {"num_colors": 2.9}}, "palette.num_colors"),
        ({"palette": {"num_colors": True}}, "palette.num_colors"),
        ({"palette": {"use": ""}}, "palette.use"),
        ({"palette": {"use": "bw"}, "sweep": {"enabled": True}}, "cannot be combined"),
        ({"dithering": {"enabled": "false"}}, "dithering.enabled"),
        ({"preview": {"side_by_side": 1}}, "preview.side_by_side"),
        ({"sweep": {"enabled": "yes"}}, "sweep.enabled"),
        ({"final_resize": {"enabled": "true"}}, "final_resize.enabled"),
    ])
    def test_invalid_values(self, image_file, patch, message):
        config = {"input": str(image_file), "output": "out.png"}
        config.update(patch)
        with pytest.raises(ConfigValidationError) as exc:
            validate_config(config, image_file.parent / "job.json")
        assert message in str(exc.value)

    def test_defaults_and_relative_paths(self, image_file):
        config = validate_config(
            {"input": "input.png", "output": "out/result.png"},
            image_file.parent / "job.json",
            defaults={"num_colors": 7, "tree": "modified"}
        )

        assert config["input"] == str(image_file.resolve())
        assert config["output"] == str((image_file.parent / "out" / "result.png").resolve())
        assert config["mode"] is None
        assert config["palette"] == {"num_colors": 7, "tree": "modified", "save_as": None, "use": None}
        assert config["dithering"] == {"enabled": True, "mode": "floyd_steinberg", "edge_policy": "skip"}
        assert config["sweep"] == {"enabled": False, "min": 2, "max": 8}
        assert config["preview"] == {"side_by_side": False}
        assert config["final_resize"] == {"enabled": False, "multiplier": 2}

    def test_integral_float_is_accepted(self, image_file):
        config = validate_config(
            {"input": str(image_file), "output": "out.png", "palette": {"num_colors": 4.0}},
            image_file.parent / "job.json"
        )
        assert config["palette"]["num_colors"] == 4
        assert isinstance(config["palette"]["num_colors"], int)

    def test_missing_input_file(self, tmp_path):

        with pytest.raises(ConfigValidationError) as exc:
            validate_config({"input": "nope.png", "output": "out.png"}, tmp_path / "job.json")
        assert "not found" in str(exc.value)

    def test_load_config_rejects_bad_json(self, tmp_path):
        path = tmp_path / "job.json"
        path.write_text("{ not json", encoding='utf-8')
        with pytest.raises(ConfigValidationError) as exc:
            load_config(path)
        assert "Invalid JSON" in str(exc.value)

    def test_example_config_validates(self, image_file):
        config = example_config()
        config["input"] = str(image_file)
        config["output"] = str(image_file.parent / "out.png")
        validated = validate_config(config, image_file.parent / "job.json")
        assert validated["palette"]["num_colors"] == 5


class TestDetectMode:

    def test_folder(self, tmp_path):
        assert detect_mode(tmp_path) == "folder"

    def test_image(self, image_file):
        assert detect_mode(image_file) == "image"

    def test_unknown_extension(self, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("hello")
        with pytest.raises(ConfigValidationError):
            detect_mode(path)


class TestSavedPalettes:

    def test_load_saved_palette(self, tmp_path):
        path = tmp_path / "palette.json"
        path.write_text(json.dumps([{"name": "bw", "colors": ["#000000", "#FFFFFF"]}]),
                        encoding='utf-8')
        assert load_saved_palette("bw", str(path)) == [(0, 0, 0), (255, 255, 255)]

    def test_unknown_name_lists_saved_palettes(self, tmp_path):
        path = tmp_path / "palette.json"
        path.write_text(json.dumps([{"name": "bw", "colors": ["#000000"]},
                                    {"name": "warm", "colors": ["#ff0000"]}]),
                        encoding='utf-8')
        with pytest.raises(ConfigValidationError) as exc:
            load_saved_palette("cold", str(path))
        assert "bw, warm" in str(exc.value)

    def test_malformed_and_empty_palettes(self, tmp_path):
        path = tmp_path / "palette.json"
        path.write_text(json.dumps([{"name": "short", "colors": ["#fff"]},
                                    {"name": "empty", "colors": []}]),
                        encoding='utf-8')
        with pytest.raises(ConfigValidationError, match="malformed"):
            load_saved_palette("short", str(path))
        with pytest.raises(ConfigValidationError, match="no colors"):
            load_saved_palette("empty", str(path))


class TestMain:


    def test_image_job(self, image_file, write_job, prefs_file, gradient_image):
        job = write_job({"input": "input.png", "output": "out.png", "palette": {"num_colors": 4}})

        assert run_cli(str(job), "--quiet", "--prefs", prefs_file) == 0

        out = Image.open(image_file.parent / "out.png")
        assert out.size == gradient_image.size
        assert len(out.getcolors()) <= 4

    def test_preview_and_resize(self, image_file, write_job, prefs_file, gradient_image):
        job = write_job({
            "input": "input.png",
            "output": "out.png",
            "dithering": {"enabled": False},
            "preview": {"side_by_side": True},
            "final_resize": {"enabled": True, "multiplier": 3},
        })

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        out = Image.open(image_file.parent / "out.png")
        assert out.size == (gradient_image.width * 2 * 3, gradient_image.height * 3)
        # Left half of the canvas is the untouched original.
        left = np.array(out)[::3, ::3][:, :gradient_image.width]
        assert np.array_equal(left, np.array(gradient_image))

    def test_sweep_job(self, image_file, write_job, prefs_file):
        job = write_job({
            "input": "input.png",
            "output": "out.png",
            "sweep": {"enabled": True, "min": 2, "max": 4},
        })

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        for n in (2, 3, 4):
            assert (image_file.parent / f"out_{n}.png").exists()
        assert not (image_file.parent / "out.png").exists()

    def test_folder_job(self, tmp_path, write_job, prefs_file, gradient_image, rgba_image):
        src = tmp_path / "src"
        src.mkdir()
        gradient_image.save(src / "a.png")
        rgba_image.save(src / "b.png")
        (src / "readme.txt").write_text("skip me")

        job = write_job({"input": "src", "output": "dst", "palette": {"num_colors": 3}})

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        assert sorted(p.name for p in (tmp_path / "dst").iterdir()) == ["a.png", "b.png"]
        assert Image.open(tmp_path / "dst" / "b.png").mode == 'RGBA'

    def test_sweep_saves_each_palette(self, image_file, write_job, prefs_file):
        job = write_job({
            "input": "input.png",
            "output": "out.png",
            "palette": {"save_as": "grad"},
            "sweep": {"enabled": True, "min": 2, "max": 3},
        })

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        saved = json.loads(Path("palette.json").read_text(encoding='utf-8'))
        assert [p["name"] for p in saved] == ["grad:2", "grad:3"]
        assert len(saved[0]["colors"]) <= 2

    def test_reuses_saved_palette(self, image_file, write_job, prefs_file):
        Path("palette.json").write_text(
            json.dumps([{"name": "bw", "colors": ["#000000", "#ffffff"]}]), encoding='utf-8')
        job = write_job({"input": "input.png", "output": "out.png", "palette": {"use": "bw"}})

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        out = Image.open(image_file.parent / "out.png")
        assert {color for _, color in out.getcolors()} <= {(0, 0, 0), (255, 255, 255)}

    def test_unknown_saved_palette_fails(self, image_file, write_job, prefs_file):
        job = write_job({"input": "input.png", "output": "out.png", "palette": {"use": "nope"}})
        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 1
        assert not (image_file.parent / "out.png").exists()

    def test_save_palette(self, image_file, write_job, prefs_file):

        job = write_job({
            "input": "input.png",
            "output": "out.png",
            "palette": {"num_colors": 4, "save_as": "gradient"},
        })

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        saved = json.loads(Path("palette.json").read_text(encoding='utf-8'))
        assert saved[0]["name"] == "gradient"
        assert 1 <= len(saved[0]["colors"]) <= 4
        assert all(c.startswith("#") and len(c) == 7 for c in saved[0]["colors"])

    def test_prefs_are_updated(self, image_file, write_job, prefs_file):
        job = write_job({"input": "input.png", "output": "out.png"})

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        prefs = json.loads(Path(prefs_file).read_text(encoding='utf-8'))
        assert prefs["recent_files"] == [str((image_file.parent / "out.png").resolve())]
        assert prefs["paths"]["last_input_dir"] == str(image_file.parent.resolve())

    def test_prefs_defaults_apply(self, image_file, write_job, prefs_file):
        Path(prefs_file).write_text(json.dumps({"defaults": {"num_colors": 2}}), encoding='utf-8')
        job = write_job({"input": "input.png", "output": "out.png",
                         "dithering": {"enabled": False}})

        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 0

        out = Image.open(image_file.parent / "out.png")
        assert len(out.getcolors()) <= 2

    def test_invalid_job_fails(self, image_file, write_job, prefs_file):
        job = write_job({"input": "input.png", "output": "out.png", "palette": {"tree": "octree"}})
        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 1

    def test_missing_job_file(self, tmp_path, prefs_file):
        assert run_cli(str(tmp_path / "missing.json"), "-q", "--prefs", prefs_file) == 1

    def test_no_job_file(self, prefs_file):
        assert run_cli("-q", "--prefs", prefs_file) == 1

    def test_example_config_flag(self, prefs_file):
        assert run_cli("--example-config") == 0

    def test_help_flag(self):
        assert run_cli("--help") == 0

    def test_processing_failure_is_reported(self, tmp_path, write_job, prefs_file, monkeypatch):
        (tmp_path / "broken.png").write_bytes(b"not an image")
        job = write_job({"input": "broken.png", "output": "out.png"})
        assert run_cli(str(job), "-q", "--prefs", prefs_file) == 1
        assert not (tmp_path / "out.png").exists()
        assert quantize_cli.logger.name == "mediancut_pie"
