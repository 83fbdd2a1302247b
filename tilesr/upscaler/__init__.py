from tilesr.upscaler.baseline import BicubicResampler
from tilesr.upscaler.inference import LoadStrategy, TorchModuleBackend, get_model_spec, load_backend

__all__ = [
    "BicubicResampler",
    "LoadStrategy",
    "TorchModuleBackend",
    "get_model_spec",
    "load_backend",
]
