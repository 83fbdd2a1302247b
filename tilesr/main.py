import argparse
import logging
import shutil
import sys
from pathlib import Path


def check_required_executables() -> None:
    """Check that required external tools are available in PATH."""
    missing = [exe for exe in ("ffprobe",) if shutil.which(exe) is None]
    if missing:
        print(f"Error: Required executable(s) not found in PATH: {', '.join(missing)}")
        print("Please install them and ensure they are available in your system PATH.")
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    from tilesr.config import CombinePolicy, DecodeResample, DenoiseStrength, FeatherMode, SharpenMode
    from tilesr.upscaler.inference import DEFAULT_MODEL, MODEL_REGISTRY

    parser = argparse.ArgumentParser(prog="tilesr")
    parser.add_argument("--input", required=True, type=str, help="Path to input video")
    parser.add_argument("--output", required=True, type=str, help="Path to output video")
    parser.add_argument("--config", type=str, default=None, help="JSON file with upscale settings (flags override it)")
    parser.add_argument("--device", type=str, default="cuda:0")
    parser.add_argument(
        "--fp16",
        default=True,
        action=argparse.BooleanOptionalAction,
        help="Try FP16 inference first on GPU devices.",
    )
    parser.add_argument("--max-frames", type=int, default=None, help="Stop after this many frames")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    model = parser.add_argument_group("Model")
    model.add_argument(
        "--model-name",
        type=str,
        default=DEFAULT_MODEL,
        choices=sorted(MODEL_REGISTRY),
        help=f'Super-resolution model (default: "{DEFAULT_MODEL}")',
    )
    model.add_argument(
        "--model-path",
        type=str,
        default=None,
        help='TorchScript model file (default: "model_weights/<registry filename>")',
    )

    tiling = parser.add_argument_group("Tiling")
    tiling.add_argument("--scale", type=float, default=None, help="Output scale factor (default: 2.0)")
    tiling.add_argument("--overlap", type=int, default=None, help="Tile overlap in source pixels (default: 16)")
    tiling.add_argument("--feather", type=str, default=None, choices=[m.value for m in FeatherMode])
    tiling.add_argument(
        "--feather-margin",
        type=int,
        default=None,
        help="Feather width in output pixels, 0 derives it from the overlap",
    )
    tiling.add_argument("--decode-resample", type=str, default=None, choices=[m.value for m in DecodeResample])
    tiling.add_argument("--tile-workers", type=int, default=None, help="Parallel tile inference threads")

    guard = parser.add_argument_group("Guarding")
    guard.add_argument(
        "--drift-guard",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Blend tiles toward a bicubic baseline when the model drifts",
    )
    guard.add_argument("--drift-guard-floor", type=float, default=None, help="Lowest neural share (default: 0.55)")
    guard.add_argument(
        "--region-weighting",
        default=None,
        action=argparse.BooleanOptionalAction,
        help="Analyse the clip for noise/blocking/banding/text and weight tiles by region",
    )
    guard.add_argument("--combine-policy", type=str, default=None, choices=[m.value for m in CombinePolicy])
    guard.add_argument(
        "--region-adjust-filters",
        default=False,
        action=argparse.BooleanOptionalAction,
        help="Let the region analysis switch on deband/denoise/dehalo",
    )

    filters = parser.add_argument_group("Post filters")
    filters.add_argument("--denoise", type=str, default=None, choices=[m.value for m in DenoiseStrength])
    filters.add_argument("--deband", default=None, action=argparse.BooleanOptionalAction)
    filters.add_argument("--sharpen", type=str, default=None, choices=[m.value for m in SharpenMode])
    filters.add_argument("--sharpen-strength", type=float, default=None)
    filters.add_argument("--dehalo", default=None, action=argparse.BooleanOptionalAction)
    filters.add_argument("--temporal-smoothing", default=None, action=argparse.BooleanOptionalAction)

    encoding = parser.add_argument_group("Encoding")
    encoding.add_argument("--codec", type=str, default="libx264", help='PyAV encoder name (default: "libx264")')
    encoding.add_argument("--crf", type=int, default=18)
    return parser


def config_from_args(args: argparse.Namespace):
    from dataclasses import replace

    from tilesr.config import (
        CombinePolicy,
        DecodeResample,
        DenoiseStrength,
        FeatherMode,
        SharpenMode,
        UpscaleConfig,
    )

    config = UpscaleConfig.from_json(args.config) if args.config else UpscaleConfig()

    def enum_or_none(enum_type, value):
        return None if value is None else enum_type(value)

    drift_guard = config.drift_guard
    if args.drift_guard is not None or args.drift_guard_floor is not None:
        drift_guard = replace(
            drift_guard,
            enabled=drift_guard.enabled if args.drift_guard is None else bool(args.drift_guard),
            weight_floor=drift_guard.weight_floor if args.drift_guard_floor is None else float(args.drift_guard_floor),
        )

    postfilter_overrides = {
        "denoise": enum_or_none(DenoiseStrength, args.denoise),
        "deband": args.deband,
        "sharpen": enum_or_none(SharpenMode, args.sharpen),
        "sharpen_strength": args.sharpen_strength,
        "dehalo": args.dehalo,
        "temporal_smoothing": args.temporal_smoothing,
    }
    postfilter = replace(config.postfilter, **{k: v for k, v in postfilter_overrides.items() if v is not None})

    config = config.with_overrides(
        user_scale_factor=args.scale,
        overlap_margin_px=args.overlap,
        feather_mode=enum_or_none(FeatherMode, args.feather),
        feather_margin_px=args.feather_margin,
        decode_resample=enum_or_none(DecodeResample, args.decode_resample),
        tile_workers=args.tile_workers,
        region_weighting_enabled=args.region_weighting,
        combine_policy=enum_or_none(CombinePolicy, args.combine_policy),
        drift_guard=drift_guard,
        postfilter=postfilter,
    )
    config.validate()
    return config


def main() -> None:
    check_required_executables()

    args = build_parser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    from tilesr.errors import InvalidConfiguration, ModelLoadExhausted

    try:
        run(args)
    except (InvalidConfiguration, ModelLoadExhausted) as e:
        print(f"Error: {e}")
        sys.exit(1)


def run(args: argparse.Namespace) -> None:
    from tilesr.errors import InvalidConfiguration
    from tilesr.guard.region_masker import RegionMasker, region_adjusted
    from tilesr.media import get_video_meta_data
    from tilesr.media.video_reader import VideoReader
    from tilesr.media.video_writer import VideoWriter
    from tilesr.pipeline import FrameOrchestrator
    from tilesr.progressbar import Progressbar
    from tilesr.upscaler.inference import default_strategies, get_model_spec, load_backend

    input_video = Path(args.input)
    if not input_video.exists():
        raise FileNotFoundError(str(input_video))
    output_video = Path(args.output)

    spec = get_model_spec(args.model_name)
    model_path = Path(args.model_path) if args.model_path else Path("model_weights") / spec.filename
    if not model_path.exists():
        raise FileNotFoundError(str(model_path))

    max_frames = args.max_frames
    if max_frames is not None and int(max_frames) <= 0:
        raise InvalidConfiguration("--max-frames must be > 0")

    crf = int(args.crf)
    if not (0 <= crf <= 51):
        raise InvalidConfiguration("--crf must be in [0, 51]")

    config = config_from_args(args)
    metadata = get_video_meta_data(str(input_video))

    region_grid = None
    if config.region_weighting_enabled or args.region_adjust_filters:
        with VideoReader(input_video) as reader:
            masks = RegionMasker().analyze(iter(reader), fps=metadata.video_fps)
        for note in masks.notes:
            logging.getLogger(__name__).info("%s", note)
        if masks.frames_sampled:
            region_grid = masks.grid
        if args.region_adjust_filters:
            config = config.with_overrides(postfilter=region_adjusted(config.postfilter, masks.summary))

    backend = load_backend(model_path, spec, default_strategies(str(args.device), bool(args.fp16)))
    orchestrator = FrameOrchestrator(
        backend=backend,
        config=config,
        region_masks=region_grid,
        device=backend.device,
    )
    out_w, out_h = orchestrator.output_size(metadata.video_width, metadata.video_height)

    total = metadata.num_frames if max_frames is None else min(metadata.num_frames, int(max_frames))
    with (
        VideoReader(input_video, device=backend.device, max_frames=max_frames) as reader,
        VideoWriter(
            output_video,
            width=out_w,
            height=out_h,
            fps=metadata.video_fps_exact,
            codec=str(args.codec),
            crf=crf,
        ) as writer,
    ):
        orchestrator.run(
            reader.frames(),
            writer,
            progress=Progressbar(total_frames=total, video_fps=metadata.video_fps),
        )


if __name__ == "__main__":
    main()
