from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any

from tilesr.errors import InvalidConfiguration


class FeatherMode(Enum):
    LINEAR = "linear"
    COSINE = "cosine"


class CombinePolicy(Enum):
    MIN = "min"
    MULTIPLY = "multiply"


class DecodeResample(Enum):
    NEAREST = "nearest"
    BICUBIC = "bicubic"


class SharpenMode(Enum):
    NONE = "none"
    CAS = "cas"
    UNSHARP = "unsharp"


class DenoiseStrength(Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class DriftGuardConfig:
    enabled: bool = False
    weight_floor: float = 0.55
    color_drift_threshold: float = 6.0
    color_drift_penalty: float = 0.15
    hf_ratio_threshold: float = 1.20
    hf_penalty_slope: float = 0.4
    hf_penalty_cap: float = 0.35
    note_below: float = 0.98

    def validate(self) -> None:
        if not (0.0 <= self.weight_floor <= 1.0):
            raise InvalidConfiguration("drift guard weight floor must be in [0, 1]")
        if self.color_drift_threshold < 0 or self.hf_ratio_threshold < 0:
            raise InvalidConfiguration("drift guard thresholds must be >= 0")
        if self.color_drift_penalty < 0 or self.hf_penalty_slope < 0 or self.hf_penalty_cap < 0:
            raise InvalidConfiguration("drift guard penalties must be >= 0")


@dataclass(frozen=True)
class PostFilterConfig:
    alpha_safe: bool = False
    linearize: bool = False
    exposure: float = 0.0
    tone_map: bool = False
    tone_map_exposure: float = 0.0
    median_prefilter: bool = False
    denoise: DenoiseStrength = DenoiseStrength.NONE
    deband: bool = False
    deband_amount: float = 0.5
    deband_dither: bool = False
    sharpen: SharpenMode = SharpenMode.NONE
    sharpen_strength: float = 0.4
    usm_radius: int = 5
    usm_amount: float = 1.0
    usm_threshold: float = 0.03
    laplacian: bool = False
    laplacian_strength: float = 0.2
    dehalo: bool = False
    dehalo_strength: float = 0.25
    moire: bool = False
    moire_strength: float = 0.2
    encode_srgb: bool = False
    encode_exposure: float = 0.0
    gamma_blend_weight: float = 0.0
    temporal_smoothing: bool = False
    temporal_strength: float = 0.15
    preprocess_tiles: bool = False

    def validate(self) -> None:
        for name in (
            "deband_amount",
            "sharpen_strength",
            "laplacian_strength",
            "dehalo_strength",
            "moire_strength",
            "gamma_blend_weight",
            "temporal_strength",
        ):
            value = float(getattr(self, name))
            if not (0.0 <= value <= 1.0):
                raise InvalidConfiguration(f"{name} must be in [0, 1]")
        if int(self.usm_radius) < 1:
            raise InvalidConfiguration("usm_radius must be >= 1")
        if float(self.usm_amount) < 0:
            raise InvalidConfiguration("usm_amount must be >= 0")


@dataclass(frozen=True)
class UpscaleConfig:
    user_scale_factor: float = 2.0
    overlap_margin_px: int = 16
    feather_mode: FeatherMode = FeatherMode.COSINE
    feather_margin_px: int = 0
    drift_guard: DriftGuardConfig = field(default_factory=DriftGuardConfig)
    region_weighting_enabled: bool = False
    region_weight_floor: float = 0.55
    combine_policy: CombinePolicy = CombinePolicy.MIN
    decode_resample: DecodeResample = DecodeResample.NEAREST
    tile_workers: int = 1
    postfilter: PostFilterConfig = field(default_factory=PostFilterConfig)

    def validate(self) -> None:
        if not (float(self.user_scale_factor) > 0):
            raise InvalidConfiguration("user_scale_factor must be > 0")
        if int(self.overlap_margin_px) < 0:
            raise InvalidConfiguration("overlap_margin_px must be >= 0")
        if int(self.feather_margin_px) < 0:
            raise InvalidConfiguration("feather_margin_px must be >= 0")
        if not (0.0 <= self.region_weight_floor <= 1.0):
            raise InvalidConfiguration("region_weight_floor must be in [0, 1]")
        if int(self.tile_workers) < 1:
            raise InvalidConfiguration("tile_workers must be >= 1")
        self.drift_guard.validate()
        self.postfilter.validate()

    def with_overrides(self, **overrides: Any) -> UpscaleConfig:
        """Return a copy with the non-None overrides applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    def to_dict(self) -> dict[str, Any]:
        return _jsonable(asdict(self))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UpscaleConfig:
        return _build(cls, data)

    @classmethod
    def from_json(cls, path: str | Path) -> UpscaleConfig:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise InvalidConfiguration(f"{path}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise InvalidConfiguration(f"{path}: expected a JSON object")
        return cls.from_dict(data)


_NESTED: dict[str, type] = {
    "drift_guard": DriftGuardConfig,
    "postfilter": PostFilterConfig,
}


def _build(cls: type, data: dict[str, Any]):
    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise InvalidConfiguration(f"unknown {cls.__name__} key(s): {', '.join(unknown)}")

    kwargs: dict[str, Any] = {}
    defaults = cls()
    for name, value in data.items():
        current = getattr(defaults, name)
        if name in _NESTED:
            if not isinstance(value, dict):
                raise InvalidConfiguration(f"{name} must be an object")
            kwargs[name] = _build(_NESTED[name], value)
        elif isinstance(current, Enum):
            try:
                kwargs[name] = type(current)(value)
            except ValueError as e:
                allowed = ", ".join(m.value for m in type(current))
                raise InvalidConfiguration(f"{name}: {value!r} is not one of {allowed}") from e
        elif isinstance(current, bool):
            if not isinstance(value, bool):
                raise InvalidConfiguration(f"{name}: expected true or false, got {value!r}")
            kwargs[name] = value
        else:
            try:
                kwargs[name] = type(current)(value)
            except (TypeError, ValueError) as e:
                raise InvalidConfiguration(f"{name}: expected {type(current).__name__}, got {value!r}") from e
    return cls(**kwargs)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value
