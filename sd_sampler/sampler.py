# sd_sampler/sampler.py
"""
Sampling engine for diffusion inference.

This module drives classifier-free guidance (CFG) sampling on top of:
- a diffusion pipeline (UNet + VAE + tokenizer/text encoder + scheduler)
- DiffusionCore (update rules)
- qkv_attention, reached through the text encoder and the UNet's
  attention processors

Each step runs the UNet twice on the same latent, once with the
unconditional context and once with the prompt context, combines the two
noise predictions and advances the latent one timestep. Steps depend on
each other strictly in order; any failure aborts the whole run.
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import torch

from sd_sampler.backend import Backend
from sd_sampler.config import (
    DEFAULT_SCHEDULER,
    DEVICE,
    GUIDANCE_SCALE,
    IMAGE_SIZE,
    LATENT_CHANNELS,
    LATENT_SCALING,
    NUM_INFERENCE_STEPS,
    NUM_SAMPLES,
    SCHEDULERS,
    VAE_SCALE_FACTOR,
    dtype_for,
    seed_everything,
)
from sd_sampler.diffusion import DiffusionCore
from sd_sampler.errors import GuidanceShapeError
from sd_sampler.layers import encode_text

StepCallback = Callable[[int, torch.Tensor, torch.Tensor], None]


@dataclass(frozen=True)
class SampleConfig:
    """Configuration for a sampling run."""
    num_inference_steps: int = NUM_INFERENCE_STEPS
    guidance_scale: float = GUIDANCE_SCALE
    height: int = IMAGE_SIZE
    width: int = IMAGE_SIZE
    seed: int = 1124
    num_samples: int = NUM_SAMPLES
    scheduler: str = DEFAULT_SCHEDULER

    def __post_init__(self):
        if self.num_inference_steps < 1:
            raise ValueError(f"num_inference_steps must be >= 1, got {self.num_inference_steps}")
        if self.num_samples < 1:
            raise ValueError(f"num_samples must be >= 1, got {self.num_samples}")
        if self.height % VAE_SCALE_FACTOR or self.width % VAE_SCALE_FACTOR:
            raise ValueError(
                f"height and width must be multiples of {VAE_SCALE_FACTOR}, "
                f"got {self.width}x{self.height}"
            )
        if self.scheduler not in SCHEDULERS:
            raise ValueError(f"scheduler must be one of {SCHEDULERS}, got {self.scheduler!r}")


def classifier_free_guidance(
    cond: torch.Tensor,
    uncond: torch.Tensor,
    scale: float,
) -> torch.Tensor:
    """
    Combine conditional and unconditional predictions:

        pred = uncond + scale * (cond - uncond)

    scale = 0 gives the unconditional prediction, scale = 1 the conditional
    one, larger values push further toward the prompt.

    Raises:
        GuidanceShapeError: the two predictions differ in shape or device.
    """
    if cond.shape != uncond.shape:
        raise GuidanceShapeError(
            f"conditional prediction {tuple(cond.shape)} does not match "
            f"unconditional prediction {tuple(uncond.shape)}"
        )
    if cond.device != uncond.device:
        raise GuidanceShapeError(
            f"conditional prediction on {cond.device}, unconditional on {uncond.device}"
        )
    return uncond + scale * (cond - uncond)


def _autocast_if_cuda(device: torch.device):
    """
    Use autocast only when running on CUDA.
    Keeps logs clean on Mac/CPU while still enabling speedups on GPU.
    """
    if device.type == "cuda":
        return torch.autocast(device_type="cuda", dtype=torch.float16)
    return nullcontext()


@torch.no_grad()
def encode_prompt(
    pipe,
    prompt: str,
    negative_prompt: str = "",
    device: torch.device = DEVICE,
    backend: Optional[Backend] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Encode text prompts into conditioning embeddings.

    The negative prompt (empty by default) provides the unconditional
    context.

    Returns:
        (cond_embeds, uncond_embeds), each (1, model_max_length, hidden).
    """
    tokenizer = pipe.tokenizer
    backend = backend or Backend.inference(device)

    def _tokenize(text: str) -> torch.Tensor:
        tokens = tokenizer(
            text,
            padding="max_length",
            truncation=True,
            max_length=tokenizer.model_max_length,
            return_tensors="pt",
        )
        return tokens.input_ids.to(device)

    cond = encode_text(pipe.text_encoder, _tokenize(prompt), backend)
    uncond = encode_text(pipe.text_encoder, _tokenize(negative_prompt), backend)
    return cond, uncond


def _prepare_latents(
    batch_size: int,
    channels: int,
    height: int,
    width: int,
    device: torch.device,
    dtype: torch.dtype,
    seed: int,
) -> torch.Tensor:
    """
    Seeded Gaussian latent of shape (B, C, H/8, W/8).
    """
    generator = torch.Generator(device=device)
    generator.manual_seed(seed)

    h = height // VAE_SCALE_FACTOR
    w = width // VAE_SCALE_FACTOR
    return torch.randn((batch_size, channels, h, w), generator=generator, device=device, dtype=dtype)


def _latent_channels(unet) -> int:
    config = getattr(unet, "config", None)
    return getattr(config, "in_channels", LATENT_CHANNELS)


def _predict_noise(unet, latents, t, context) -> torch.Tensor:
    out = unet(latents, t, encoder_hidden_states=context)
    return out.sample if hasattr(out, "sample") else out


@torch.no_grad()
def denoise(
    pipe,
    latents: torch.Tensor,
    cond_embeds: torch.Tensor,
    uncond_embeds: torch.Tensor,
    cfg: SampleConfig,
    device: torch.device = DEVICE,
    callback: Optional[StepCallback] = None,
) -> torch.Tensor:
    """
    Run the CFG denoising loop from an initial latent.

    The context embeddings are broadcast to the latent batch. Returns the
    latent after the last step.
    """
    pipe.scheduler.set_timesteps(cfg.num_inference_steps, device=device)
    timesteps = pipe.scheduler.timesteps
    core = DiffusionCore(pipe.scheduler)

    batch_size = latents.shape[0]
    cond_embeds = cond_embeds.expand(batch_size, -1, -1)
    uncond_embeds = uncond_embeds.expand(batch_size, -1, -1)

    unet = pipe.unet

    with _autocast_if_cuda(device):
        for i, t in enumerate(timesteps):
            is_last_step = (i == len(timesteps) - 1)
            prev_t = timesteps[i + 1] if not is_last_step else -1

            uncond_pred = _predict_noise(unet, latents, t, uncond_embeds)
            cond_pred = _predict_noise(unet, latents, t, cond_embeds)

            eps = classifier_free_guidance(cond_pred, uncond_pred, cfg.guidance_scale)

            latents = core.step(
                cfg.scheduler, latents, t, prev_t, eps, add_noise=not is_last_step
            )

            if callback is not None:
                callback(i, t, latents)

    return latents


@torch.no_grad()
def sample_latents_cfg(
    pipe,
    prompt: str,
    negative_prompt: str = "",
    cfg: SampleConfig = SampleConfig(),
    device: torch.device = DEVICE,
    callback: Optional[StepCallback] = None,
) -> torch.Tensor:
    """
    Run classifier-free guidance sampling and return final latents of
    shape (num_samples, C, H/8, W/8).

    With the default DDIM update the result depends only on cfg.seed.
    """
    seed_everything(cfg.seed)
    backend = Backend.inference(device)

    cond_embeds, uncond_embeds = encode_prompt(
        pipe=pipe,
        prompt=prompt,
        negative_prompt=negative_prompt,
        device=device,
        backend=backend,
    )

    latents = _prepare_latents(
        batch_size=cfg.num_samples,
        channels=_latent_channels(pipe.unet),
        height=cfg.height,
        width=cfg.width,
        device=device,
        dtype=dtype_for(device),
        seed=cfg.seed,
    )

    return denoise(
        pipe,
        latents,
        cond_embeds,
        uncond_embeds,
        cfg,
        device=device,
        callback=callback,
    )


@torch.no_grad()
def decode_latents(pipe, latents: torch.Tensor) -> List[bytes]:
    """
    Decode latents through the VAE into raw RGB buffers.

    Returns one H*W*3 uint8 buffer per sample, row-major.
    """
    vae = pipe.vae
    scaling = getattr(getattr(vae, "config", None), "scaling_factor", LATENT_SCALING)

    image = vae.decode(latents / scaling).sample
    image = (image / 2 + 0.5).clamp(0, 1)
    image = image.float().cpu().permute(0, 2, 3, 1).numpy()
    image = (image * 255).round().astype("uint8")
    return [sample.tobytes() for sample in image]


@torch.no_grad()
def generate_images(
    pipe,
    prompt: str,
    negative_prompt: str = "",
    cfg: SampleConfig = SampleConfig(),
    device: torch.device = DEVICE,
    callback: Optional[StepCallback] = None,
) -> List[bytes]:
    """
    High-level convenience API: text -> RGB buffers (cfg.width x cfg.height).
    """
    latents = sample_latents_cfg(
        pipe=pipe,
        prompt=prompt,
        negative_prompt=negative_prompt,
        cfg=cfg,
        device=device,
        callback=callback,
    )
    return decode_latents(pipe, latents)
