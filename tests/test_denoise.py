import torch

from tilesr.config import DenoiseStrength
from tilesr.postfilter.denoise import apply_denoise, bilateral_filter


def test_bilateral_filter_reduces_noise() -> None:
    torch.manual_seed(42)
    C, H, W = 3, 32, 32
    clean = torch.zeros(C, H, W)
    clean[:, :H // 2, :W // 2] = 0.2
    clean[:, :H // 2, W // 2:] = 0.5
    clean[:, H // 2:, :W // 2] = 0.7
    clean[:, H // 2:, W // 2:] = 0.9
    noisy = (clean + torch.randn_like(clean) * 0.05).clamp(0, 1)

    denoised = bilateral_filter(noisy, kernel_size=7, sigma_spatial=3.0, sigma_range=0.12)

    assert ((denoised - clean) ** 2).mean() < ((noisy - clean) ** 2).mean()


def test_bilateral_filter_constant_image_unchanged() -> None:
    constant = torch.full((3, 16, 16), 0.5)
    result = bilateral_filter(constant, kernel_size=5, sigma_spatial=2.0, sigma_range=0.10)
    assert torch.allclose(result, constant, atol=1e-6)


def test_bilateral_filter_preserves_edges() -> None:
    image = torch.zeros(3, 32, 32)
    image[:, :, 16:] = 1.0
    denoised = bilateral_filter(image, kernel_size=7, sigma_spatial=3.0, sigma_range=0.08)
    assert denoised[0, 16, 0].item() < 0.05
    assert denoised[0, 16, 31].item() > 0.95


def test_bilateral_filter_batched_matches_single() -> None:
    torch.manual_seed(0)
    a = torch.rand(3, 16, 16)
    b = torch.rand(3, 16, 16)
    single = bilateral_filter(a, kernel_size=5, sigma_spatial=2.0, sigma_range=0.10)
    batched = bilateral_filter(torch.stack([a, b]), kernel_size=5, sigma_spatial=2.0, sigma_range=0.10)
    assert torch.allclose(single, batched[0], atol=1e-6)


def test_bilateral_filter_handles_images_smaller_than_kernel() -> None:
    tiny = torch.rand(3, 2, 2)
    assert bilateral_filter(tiny, kernel_size=7, sigma_spatial=2.0, sigma_range=0.1).shape == tiny.shape


def test_apply_denoise_none_returns_input() -> None:
    x = torch.rand(3, 8, 8)
    assert apply_denoise(x, DenoiseStrength.NONE) is x
    assert apply_denoise(x, DenoiseStrength.HIGH).shape == x.shape


def test_bilateral_filter_keeps_leading_dimensions() -> None:
    torch.manual_seed(3)
    clip = torch.rand(2, 3, 3, 8, 8)
    out = bilateral_filter(clip, kernel_size=3, sigma_spatial=1.0, sigma_range=0.1)
    assert out.shape == clip.shape
    single = bilateral_filter(clip[1, 2], kernel_size=3, sigma_spatial=1.0, sigma_range=0.1)
    assert torch.allclose(out[1, 2], single, atol=1e-6)


def test_bilateral_filter_small_kernel_is_identity() -> None:
    x = torch.rand(3, 4, 4)
    assert bilateral_filter(x, kernel_size=1, sigma_spatial=1.0, sigma_range=0.1) is x
