"""Shared fixtures: tiny randomly initialised models, no downloads."""

from types import SimpleNamespace

import pytest
import torch
from diffusers import AutoencoderKL, DDPMScheduler, UNet2DConditionModel
from transformers import CLIPTextConfig, CLIPTextModel

MAX_LENGTH = 16
HIDDEN_SIZE = 32


class CharTokenizer:
    """Maps characters to ids; stands in for the pipeline's CLIPTokenizer."""

    model_max_length = MAX_LENGTH
    bos_token_id = 0
    eos_token_id = 2
    pad_token_id = 1

    def __call__(self, text, padding, truncation, max_length, return_tensors):
        assert padding == "max_length" and truncation and return_tensors == "pt"
        ids = [self.bos_token_id] + [3 + ord(c) % 990 for c in text]
        ids = ids[: max_length - 1] + [self.eos_token_id]
        ids += [self.pad_token_id] * (max_length - len(ids))
        return SimpleNamespace(input_ids=torch.tensor([ids], dtype=torch.long))


@pytest.fixture
def cpu():
    return torch.device("cpu")


@pytest.fixture
def tokenizer():
    return CharTokenizer()


@pytest.fixture
def text_encoder():
    torch.manual_seed(0)
    config = CLIPTextConfig(
        bos_token_id=0,
        eos_token_id=2,
        hidden_size=HIDDEN_SIZE,
        intermediate_size=37,
        layer_norm_eps=1e-05,
        num_attention_heads=4,
        num_hidden_layers=3,
        pad_token_id=1,
        vocab_size=1000,
    )
    return CLIPTextModel(config).eval()


@pytest.fixture
def unet():
    torch.manual_seed(0)
    return UNet2DConditionModel(
        block_out_channels=(32, 64),
        layers_per_block=1,
        sample_size=8,
        in_channels=4,
        out_channels=4,
        down_block_types=("DownBlock2D", "CrossAttnDownBlock2D"),
        up_block_types=("CrossAttnUpBlock2D", "UpBlock2D"),
        cross_attention_dim=HIDDEN_SIZE,
    ).eval()


@pytest.fixture
def vae():
    torch.manual_seed(0)
    return AutoencoderKL(
        block_out_channels=[32, 64],
        in_channels=3,
        out_channels=3,
        down_block_types=["DownEncoderBlock2D", "DownEncoderBlock2D"],
        up_block_types=["UpDecoderBlock2D", "UpDecoderBlock2D"],
        latent_channels=4,
    ).eval()


@pytest.fixture
def pipe(tokenizer, text_encoder, unet, vae):
    from sd_sampler.layers import install_attention_processor

    install_attention_processor(unet)
    install_attention_processor(vae)
    return SimpleNamespace(
        tokenizer=tokenizer,
        text_encoder=text_encoder,
        unet=unet,
        vae=vae,
        scheduler=DDPMScheduler(num_train_timesteps=1000),
    )
