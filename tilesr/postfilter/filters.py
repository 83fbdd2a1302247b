from __future__ import annotations

import torch
import torch.nn.functional as F
from torchvision.transforms.functional import gaussian_blur

# All filters take and return (C, H, W) float images in [0, 1].

_EPS = 1e-6


def _blur(image: torch.Tensor, kernel_size: int, sigma: float) -> torch.Tensor:
    kernel_size = int(kernel_size) | 1
    if min(image.shape[-2:]) <= kernel_size // 2:
        return image
    return gaussian_blur(image.unsqueeze(0), [kernel_size, kernel_size], [sigma, sigma]).squeeze(0)


def _neighbourhood(image: torch.Tensor, size: int = 3) -> torch.Tensor:
    """(C, size*size, H, W) view of each pixel's neighbours, edge-replicated."""
    half = size // 2
    padded = F.pad(image.unsqueeze(0), (half, half, half, half), mode="replicate")
    c, h, w = image.shape
    patches = F.unfold(padded, kernel_size=size)
    return patches.view(c, size * size, h, w)


def unpremultiply_alpha(image: torch.Tensor, alpha: torch.Tensor | None) -> torch.Tensor:
    if alpha is None:
        return image
    return (image / alpha.clamp(min=_EPS)).clamp(0.0, 1.0)


def premultiply_alpha(image: torch.Tensor, alpha: torch.Tensor | None) -> torch.Tensor:
    if alpha is None:
        return image
    return image * alpha


def srgb_to_linear(image: torch.Tensor, exposure: float = 0.0) -> torch.Tensor:
    x = image.clamp(0.0, 1.0)
    linear = torch.where(x <= 0.04045, x / 12.92, ((x + 0.055) / 1.055).pow(2.4))
    return linear * (2.0 ** float(exposure))


def linear_to_srgb(image: torch.Tensor, exposure: float = 0.0) -> torch.Tensor:
    x = (image * (2.0 ** float(exposure))).clamp(0.0, 1.0)
    return torch.where(x <= 0.0031308, x * 12.92, 1.055 * x.pow(1.0 / 2.4) - 0.055)


def tone_map_reinhard(image: torch.Tensor, exposure: float = 0.0) -> torch.Tensor:
    """Extended Reinhard with the white point at the exposure gain (identity at 0 EV)."""
    gain = 2.0 ** float(exposure)
    white = max(1.0, gain)
    x = image * gain
    return (x * (1.0 + x / (white * white)) / (1.0 + x)).clamp(0.0, 1.0)


def median3x3(image: torch.Tensor) -> torch.Tensor:
    return _neighbourhood(image, 3).median(dim=1).values


def deband(image: torch.Tensor, *, threshold: float = 0.02, amount: float = 0.5) -> torch.Tensor:
    """Pull near-flat pixels toward their blurred neighbourhood."""
    smooth = _blur(image, 9, 3.0)
    diff = smooth - image
    flat = diff.abs().amax(dim=0, keepdim=True) < threshold
    return torch.where(flat, image + diff * float(amount), image)


def dithered_deband(
    image: torch.Tensor, *, threshold: float = 0.012, amount: float = 0.25, seed: int = 0
) -> torch.Tensor:
    generator = torch.Generator(device="cpu").manual_seed(int(seed))
    noise = torch.rand(image.shape[-2:], generator=generator).to(image.device, image.dtype)
    dither = (noise - 0.5) / 255.0
    return (deband(image, threshold=threshold, amount=amount) + dither).clamp(0.0, 1.0)


def contrast_adaptive_sharpen(image: torch.Tensor, strength: float) -> torch.Tensor:
    n = _neighbourhood(image, 3)
    # cross neighbours: up, left, right, down
    cross = n[:, [1, 3, 5, 7]]
    lo = torch.minimum(cross.amin(dim=1), image)
    hi = torch.maximum(cross.amax(dim=1), image)
    amp = (torch.minimum(lo, 1.0 - hi) / hi.clamp(min=_EPS)).clamp(0.0, 1.0).sqrt()
    peak = -1.0 / (8.0 - 3.0 * float(strength))
    wgt = amp * peak
    out = (image + wgt * cross.sum(dim=1)) / (1.0 + 4.0 * wgt)
    return out.clamp(0.0, 1.0)


def unsharp_mask(
    image: torch.Tensor, *, radius: int = 5, amount: float = 1.0, threshold: float = 0.03
) -> torch.Tensor:
    detail = image - _blur(image, radius, max(0.5, radius / 3.0))
    mask = detail.abs() > threshold
    return torch.where(mask, image + detail * float(amount), image).clamp(0.0, 1.0)


def laplacian_sharpen(image: torch.Tensor, strength: float) -> torch.Tensor:
    kernel = torch.tensor(
        [[0.0, -1.0, 0.0], [-1.0, 4.0, -1.0], [0.0, -1.0, 0.0]], dtype=image.dtype, device=image.device
    )
    c = image.shape[0]
    weight = kernel.expand(c, 1, 3, 3)
    padded = F.pad(image.unsqueeze(0), (1, 1, 1, 1), mode="replicate")
    edges = F.conv2d(padded, weight, groups=c).squeeze(0)
    return (image + float(strength) * edges).clamp(0.0, 1.0)


def dehalo(image: torch.Tensor, strength: float = 0.25) -> torch.Tensor:
    """Clamp overshoot around edges into the local range of a softened image."""
    soft = _blur(image, 5, 1.5)
    n = _neighbourhood(soft, 3)
    clamped = torch.minimum(torch.maximum(image, n.amin(dim=1)), n.amax(dim=1))
    return torch.lerp(image, clamped, float(strength))


def moire_suppress(image: torch.Tensor, strength: float = 0.2) -> torch.Tensor:
    """Attenuate fine chroma patterns while keeping luma detail."""
    luma_w = torch.tensor([0.299, 0.587, 0.114], dtype=image.dtype, device=image.device).view(3, 1, 1)
    y = (image[:3] * luma_w).sum(dim=0, keepdim=True)
    chroma = image[:3] - y
    soft_chroma = _blur(chroma, 5, 1.5)
    out = image.clone()
    out[:3] = y + torch.lerp(chroma, soft_chroma, float(strength))
    return out.clamp(0.0, 1.0)


def gamma_blend(image: torch.Tensor, original: torch.Tensor, weight: float) -> torch.Tensor:
    """Reintroduce ``weight`` of the unfiltered frame, mixed in linear light."""
    a = srgb_to_linear(image)
    b = srgb_to_linear(original.to(image.device, image.dtype))
    return linear_to_srgb(torch.lerp(a, b, float(weight)))


def temporal_smooth(current: torch.Tensor, previous: torch.Tensor, strength: float = 0.15) -> torch.Tensor:
    return torch.lerp(current, previous.to(current.device, current.dtype), float(strength))
