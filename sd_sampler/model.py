# sd_sampler/model.py
"""
Model download and loading.

download_model fetches the pretrained Stable Diffusion weights into the
local Hugging Face cache; load_pipeline builds the pipeline from that
directory, configures its scheduler and routes every attention block
through qkv_attention.
"""

from __future__ import annotations

import warnings

# Suppress conflicting diffusers dtype warnings (library in API transition)
warnings.filterwarnings("ignore", message=r".*torch_dtype.*is deprecated.*")
warnings.filterwarnings("ignore", message=r".*dtype.*are not expected.*")

import torch
from diffusers import DiffusionPipeline, DDPMScheduler
from huggingface_hub import snapshot_download
from huggingface_hub.utils import HfHubHTTPError, LocalEntryNotFoundError

from sd_sampler.backend import Backend
from sd_sampler.config import CACHE_DIR, DEVICE, MODEL_ID, dtype_for
from sd_sampler.errors import DownloadError, ModelLoadError
from sd_sampler.layers import install_attention_processor

# Configs, tokenizer files and safetensors weights; skips fp16/EMA duplicates and the safety checker
_ALLOW_PATTERNS = ["*.json", "*.txt", "*.safetensors"]
_IGNORE_PATTERNS = ["*fp16*", "*non_ema*", "safety_checker/*"]


def download_model(model_id: str = MODEL_ID, cache_dir: str | None = CACHE_DIR) -> str:
    """
    Ensure the pretrained weights exist locally and return their directory.

    Raises:
        DownloadError: network or storage failure.
    """
    try:
        return snapshot_download(
            repo_id=model_id,
            cache_dir=cache_dir,
            allow_patterns=_ALLOW_PATTERNS,
            ignore_patterns=_IGNORE_PATTERNS,
        )
    except (HfHubHTTPError, LocalEntryNotFoundError, OSError) as err:
        raise DownloadError(f"could not download {model_id!r}: {err}") from err


def load_pipeline(
    path: str = MODEL_ID,
    device: torch.device = DEVICE,
    backend: Backend | None = None,
) -> DiffusionPipeline:
    """
    Load and configure the diffusion pipeline.

    Uses DDPMScheduler for its timestep schedule and alphas_cumprod; the
    update rule itself lives in diffusion.py.

    Raises:
        ModelLoadError: the weights are missing, corrupt or do not match the
            expected architecture.
    """
    dtype = dtype_for(device)
    backend = backend or Backend.inference(device)

    try:
        pipe = DiffusionPipeline.from_pretrained(
            path,
            torch_dtype=dtype,
            safety_checker=None,
            requires_safety_checker=False,
        )
    except (OSError, ValueError, RuntimeError) as err:
        raise ModelLoadError(f"could not load model from {path!r}: {err}") from err

    pipe.scheduler = DDPMScheduler.from_config(pipe.scheduler.config)
    install_attention_processor(pipe.unet, backend)
    install_attention_processor(pipe.vae, backend)

    pipe = pipe.to(device)
    pipe.set_progress_bar_config(disable=True)

    return pipe
