# sd_sampler/__init__.py
"""Text-to-image latent diffusion sampling with a multi-head attention core."""

from sd_sampler.attention import attention_weights, attn_decoder_mask, qkv_attention
from sd_sampler.errors import (
    AttentionShapeError,
    DownloadError,
    GuidanceShapeError,
    HeadCountError,
    ImageSaveError,
    ModelLoadError,
    SamplerError,
)

__version__ = "0.1.0"

__all__ = [
    "AttentionShapeError",
    "DownloadError",
    "GuidanceShapeError",
    "HeadCountError",
    "ImageSaveError",
    "ModelLoadError",
    "SamplerError",
    "attention_weights",
    "attn_decoder_mask",
    "qkv_attention",
]
