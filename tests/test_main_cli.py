import json
import sys
from fractions import Fraction
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from tilesr.config import CombinePolicy, DenoiseStrength, FeatherMode, SharpenMode, UpscaleConfig
from tilesr.errors import InvalidConfiguration, ModelLoadExhausted
from tilesr.main import build_parser, config_from_args, main, run


def _args(*extra: str):
    return build_parser().parse_args(["--input", "in.mp4", "--output", "out.mp4", *extra])


def test_defaults_produce_default_config() -> None:
    assert config_from_args(_args()) == UpscaleConfig()


def test_flags_map_onto_config() -> None:
    cfg = config_from_args(
        _args(
            "--scale", "3",
            "--overlap", "8",
            "--feather", "linear",
            "--feather-margin", "12",
            "--tile-workers", "2",
            "--drift-guard",
            "--drift-guard-floor", "0.7",
            "--combine-policy", "multiply",
            "--denoise", "medium",
            "--sharpen", "cas",
            "--deband",
            "--temporal-smoothing",
        )
    )
    assert cfg.user_scale_factor == 3.0
    assert cfg.overlap_margin_px == 8
    assert cfg.feather_mode is FeatherMode.LINEAR
    assert cfg.feather_margin_px == 12
    assert cfg.tile_workers == 2
    assert cfg.drift_guard.enabled
    assert cfg.drift_guard.weight_floor == 0.7
    assert cfg.combine_policy is CombinePolicy.MULTIPLY
    assert cfg.postfilter.denoise is DenoiseStrength.MEDIUM
    assert cfg.postfilter.sharpen is SharpenMode.CAS
    assert cfg.postfilter.deband
    assert cfg.postfilter.temporal_smoothing


def test_flags_override_config_file(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"overlap_margin_px": 24, "drift_guard": {"enabled": True}, "postfilter": {"dehalo": True}}),
        encoding="utf-8",
    )
    cfg = config_from_args(_args("--config", str(path), "--overlap", "10", "--no-dehalo"))
    assert cfg.overlap_margin_px == 10
    assert cfg.drift_guard.enabled
    assert not cfg.postfilter.dehalo


def test_invalid_flag_values_are_rejected() -> None:
    with pytest.raises(InvalidConfiguration):
        config_from_args(_args("--tile-workers", "0"))


def test_unknown_model_name_is_rejected_by_the_parser() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["--input", "a", "--output", "b", "--model-name", "nope"])


@pytest.mark.parametrize("error", [InvalidConfiguration("bad overlap"), ModelLoadExhausted("m.pt", [])])
def test_main_exits_1_on_known_errors(error: Exception, capsys) -> None:
    with (
        patch("tilesr.main.check_required_executables"),
        patch("tilesr.main.run", side_effect=error),
        patch.object(sys, "argv", ["tilesr", "--input", "in.mp4", "--output", "out.mp4"]),
    ):
        with pytest.raises(SystemExit) as e:
            main()
    assert e.value.code == 1
    assert "Error:" in capsys.readouterr().out


def test_run_requires_existing_input(tmp_path: Path) -> None:
    args = build_parser().parse_args(["--input", str(tmp_path / "missing.mp4"), "--output", "out.mp4"])
    with pytest.raises(FileNotFoundError):
        run(args)


def test_run_wires_reader_orchestrator_and_writer(tmp_path: Path) -> None:
    input_path = tmp_path / "in.mp4"
    input_path.touch()
    model_path = tmp_path / "tiny.pt"
    model_path.touch()
    output_path = tmp_path / "out.mp4"

    metadata = MagicMock(
        video_width=40,
        video_height=30,
        video_fps=25.0,
        video_fps_exact=Fraction(25),
        num_frames=10,
    )
    backend = MagicMock(device="cpu")
    orchestrator = MagicMock()
    orchestrator.output_size.return_value = (80, 60)
    orchestrator_kwargs: dict = {}

    def make_orchestrator(**kwargs):
        orchestrator_kwargs.update(kwargs)
        return orchestrator

    args = build_parser().parse_args(
        [
            "--input", str(input_path),
            "--output", str(output_path),
            "--model-path", str(model_path),
            "--model-name", "realesrgan-x2",
            "--device", "cpu",
            "--max-frames", "4",
            "--crf", "20",
        ]
    )

    with (
        patch("tilesr.media.get_video_meta_data", return_value=metadata),
        patch("tilesr.upscaler.inference.load_backend", return_value=backend) as load_backend,
        patch("tilesr.pipeline.FrameOrchestrator", side_effect=make_orchestrator),
        patch("tilesr.media.video_reader.VideoReader") as reader_cls,
        patch("tilesr.media.video_writer.VideoWriter") as writer_cls,
        patch("tilesr.progressbar.Progressbar") as progress_cls,
    ):
        run(args)

    strategies = load_backend.call_args.args[2]
    assert [s.name for s in strategies] == ["cpu/fp32"]
    assert orchestrator_kwargs["backend"] is backend
    assert orchestrator_kwargs["config"] == UpscaleConfig()
    assert orchestrator_kwargs["region_masks"] is None

    reader_cls.assert_called_once_with(input_path, device="cpu", max_frames=4)
    writer_kwargs = writer_cls.call_args.kwargs
    assert (writer_kwargs["width"], writer_kwargs["height"]) == (80, 60)
    assert writer_kwargs["fps"] == Fraction(25)
    assert writer_kwargs["crf"] == 20
    progress_cls.assert_called_once_with(total_frames=4, video_fps=25.0)
    orchestrator.run.assert_called_once()


@pytest.mark.parametrize("extra", [["--max-frames", "0"], ["--crf", "60"]])
def test_run_rejects_out_of_range_numbers(tmp_path: Path, extra: list[str]) -> None:
    input_path = tmp_path / "in.mp4"
    input_path.touch()
    model_path = tmp_path / "tiny.pt"
    model_path.touch()
    args = build_parser().parse_args(
        ["--input", str(input_path), "--output", "out.mp4", "--model-path", str(model_path), *extra]
    )
    with pytest.raises(ValueError):
        run(args)


@pytest.mark.parametrize("extra", [["--max-frames", "-1"], ["--crf", "99"]])
def test_main_reports_out_of_range_numbers(tmp_path: Path, extra: list[str], capsys) -> None:
    input_path = tmp_path / "in.mp4"
    input_path.touch()
    model_path = tmp_path / "tiny.pt"
    model_path.touch()
    argv = ["tilesr", "--input", str(input_path), "--output", "out.mp4", "--model-path", str(model_path), *extra]
    with patch("tilesr.main.check_required_executables"), patch.object(sys, "argv", argv):
        with pytest.raises(SystemExit) as e:
            main()
    assert e.value.code == 1
    assert "Error: --" in capsys.readouterr().out
