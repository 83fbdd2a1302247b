from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

import torch

from tilesr.errors import InferenceFailed, InvalidConfiguration, ModelLoadExhausted, ModelLoadFailed

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    name: str
    native_scale: int
    filename: str
    tile_size: int = 256
    channels: int = 3


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "realesrgan-x2": ModelSpec(name="realesrgan-x2", native_scale=2, filename="RealESRGAN_x2.pt"),
    "realesrgan-x4": ModelSpec(name="realesrgan-x4", native_scale=4, filename="RealESRGAN_x4.pt"),
    "realesrgan-x8": ModelSpec(name="realesrgan-x8", native_scale=8, filename="RealESRGAN_x8.pt"),
}
DEFAULT_MODEL = "realesrgan-x4"


def get_model_spec(name: str) -> ModelSpec:
    try:
        return MODEL_REGISTRY[str(name).lower()]
    except KeyError:
        raise InvalidConfiguration(
            f"Unsupported model: {name} (choose from {', '.join(sorted(MODEL_REGISTRY))})"
        ) from None


class TorchModuleBackend:
    """Runs a torch module over one tile at a time."""

    def __init__(
        self,
        module: Callable[[torch.Tensor], torch.Tensor],
        *,
        tile_width: int,
        tile_height: int,
        native_scale: int,
        channels: int = 3,
        device: torch.device | str = "cpu",
        fp16: bool = False,
    ) -> None:
        self.module = module
        self.tile_width = int(tile_width)
        self.tile_height = int(tile_height)
        self.native_scale = int(native_scale)
        self.channels = int(channels)
        self.device = torch.device(device)
        self.dtype = torch.float16 if fp16 else torch.float32

    def infer(self, tensor: torch.Tensor) -> torch.Tensor:
        expected_in = (self.channels, self.tile_height, self.tile_width)
        if tuple(tensor.shape) != expected_in:
            raise InferenceFailed(f"input tensor has shape {tuple(tensor.shape)}, expected {expected_in}")
        try:
            with torch.inference_mode():
                x = tensor.unsqueeze(0).to(device=self.device, dtype=self.dtype)
                y = self.module(x)
        except RuntimeError as e:
            raise InferenceFailed(f"inference failed: {e}") from e

        if not isinstance(y, torch.Tensor):
            raise InferenceFailed(f"model returned {type(y).__name__}, expected a tensor")
        if y.dim() == 4:
            y = y[0]
        expected_out = (
            self.channels,
            self.tile_height * self.native_scale,
            self.tile_width * self.native_scale,
        )
        if tuple(y.shape) != expected_out:
            raise InferenceFailed(f"model output has shape {tuple(y.shape)}, expected {expected_out}")
        return y.float()


@dataclass(frozen=True)
class LoadStrategy:
    """One way of bringing a TorchScript model up: device plus precision."""

    device: str
    fp16: bool = False

    @property
    def name(self) -> str:
        return f"{self.device}/{'fp16' if self.fp16 else 'fp32'}"

    def load(self, model_path: Path, spec: ModelSpec) -> TorchModuleBackend:
        device = torch.device(self.device)
        if device.type == "cuda" and not torch.cuda.is_available():
            raise RuntimeError("CUDA is not available")
        module = torch.jit.load(str(model_path), map_location=device)
        module.eval()
        if self.fp16:
            module = module.half()
        backend = TorchModuleBackend(
            module,
            tile_width=spec.tile_size,
            tile_height=spec.tile_size,
            native_scale=spec.native_scale,
            channels=spec.channels,
            device=device,
            fp16=self.fp16,
        )
        # a single probe tile surfaces unsupported ops and precision problems now
        backend.infer(torch.zeros(spec.channels, spec.tile_size, spec.tile_size))
        return backend


def default_strategies(device: str, fp16: bool) -> list[LoadStrategy]:
    strategies: list[LoadStrategy] = []
    if torch.device(device).type != "cpu":
        if fp16:
            strategies.append(LoadStrategy(device=device, fp16=True))
        strategies.append(LoadStrategy(device=device, fp16=False))
    strategies.append(LoadStrategy(device="cpu", fp16=False))
    return strategies


def load_backend(
    model_path: Path,
    spec: ModelSpec,
    strategies: Sequence[LoadStrategy],
) -> TorchModuleBackend:
    """Try each strategy in order and return the first backend that loads."""
    failures: list[ModelLoadFailed] = []
    for strategy in strategies:
        try:
            backend = strategy.load(model_path, spec)
        except (RuntimeError, OSError, ValueError, InferenceFailed) as e:
            failure = ModelLoadFailed(strategy.name, e)
            log.warning("model load via %s failed: %s", strategy.name, e)
            failures.append(failure)
            continue
        log.info("loaded %s (x%d) via %s", spec.name, spec.native_scale, strategy.name)
        return backend
    raise ModelLoadExhausted(str(model_path), failures)
