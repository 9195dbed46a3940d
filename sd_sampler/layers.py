# sd_sampler/layers.py
"""
Adapters that route the pretrained model's attention through qkv_attention.

- QKVAttnProcessor plugs into diffusers' Attention blocks (UNet self- and
  cross-attention, autoencoder mid-block attention).
- encode_text runs a transformers CLIPTextModel layer by layer, using the
  causal decoder mask for its self-attention.
- MultiHeadAttention is a standalone self/cross-attention module with its
  own projections, for models assembled outside diffusers.

The adapters never copy weights; they only call the existing projections.
"""

from __future__ import annotations

import math
from typing import Optional

import torch
import torch.nn as nn

from sd_sampler.backend import Backend
from sd_sampler.errors import AttentionShapeError, HeadCountError


class QKVAttnProcessor:
    """
    diffusers attention processor backed by Backend.qkv_attention.

    Mirrors diffusers' reference AttnProcessor step for step (spatial norm,
    4D feature maps, group norm, cross-attention norm, output projection,
    residual and output rescale); only the score/softmax/weighted-sum part
    is swapped out.
    """

    def __init__(self, backend: Optional[Backend] = None):
        self.backend = backend or Backend.inference()

    def __call__(
        self,
        attn,
        hidden_states: torch.Tensor,
        encoder_hidden_states: Optional[torch.Tensor] = None,
        attention_mask: Optional[torch.Tensor] = None,
        temb: Optional[torch.Tensor] = None,
        *args,
        **kwargs,
    ) -> torch.Tensor:
        if attention_mask is not None:
            raise AttentionShapeError(
                "QKVAttnProcessor does not support per-token padding masks"
            )

        residual = hidden_states

        if getattr(attn, "spatial_norm", None) is not None:
            hidden_states = attn.spatial_norm(hidden_states, temb)

        input_ndim = hidden_states.ndim
        if input_ndim == 4:
            batch_size, channel, height, width = hidden_states.shape
            hidden_states = hidden_states.view(batch_size, channel, height * width).transpose(1, 2)

        if attn.group_norm is not None:
            hidden_states = attn.group_norm(hidden_states.transpose(1, 2)).transpose(1, 2)

        query = attn.to_q(hidden_states)

        if encoder_hidden_states is None:
            encoder_hidden_states = hidden_states
        elif attn.norm_cross:
            encoder_hidden_states = attn.norm_encoder_hidden_states(encoder_hidden_states)

        key = attn.to_k(encoder_hidden_states)
        value = attn.to_v(encoder_hidden_states)

        head_dim = key.shape[-1] // attn.heads
        if not math.isclose(attn.scale, head_dim ** -0.5, rel_tol=1e-6):
            raise AttentionShapeError(
                f"custom attention scale {attn.scale} is not supported (head dim {head_dim})"
            )

        hidden_states = self.backend.qkv_attention(query, key, value, n_head=attn.heads)
        hidden_states = hidden_states.to(query.dtype)

        # linear proj, then dropout
        hidden_states = attn.to_out[0](hidden_states)
        hidden_states = attn.to_out[1](hidden_states)

        if input_ndim == 4:
            hidden_states = hidden_states.transpose(-1, -2).reshape(batch_size, channel, height, width)

        if attn.residual_connection:
            hidden_states = hidden_states + residual

        return hidden_states / attn.rescale_output_factor


class MultiHeadAttention(nn.Module):
    """
    Multi-head self- or cross-attention with learned projections.
    """
    def __init__(
        self,
        embed_dim: int,
        num_heads: int,
        context_dim: Optional[int] = None,
        causal: bool = False,
        backend: Optional[Backend] = None,
    ):
        super().__init__()
        if num_heads <= 0 or embed_dim % num_heads != 0:
            raise HeadCountError(embed_dim, num_heads)

        self.embed_dim = embed_dim
        self.num_heads = num_heads
        self.causal = causal
        self.backend = backend or Backend.autodiff()
        context_dim = context_dim or embed_dim

        # Projection layers (query, key, value)
        self.query = nn.Linear(embed_dim, embed_dim, bias=False)
        self.key = nn.Linear(context_dim, embed_dim, bias=False)
        self.value = nn.Linear(context_dim, embed_dim, bias=False)

        # Output projection layer
        self.out_proj = nn.Linear(embed_dim, embed_dim)

    def forward(
        self,
        x: torch.Tensor,
        context: Optional[torch.Tensor] = None,
        mask: Optional[torch.Tensor] = None,
    ) -> torch.Tensor:
        """
        Args:
            x (torch.Tensor): Queries source of shape (B, Tq, embed_dim)
            context (torch.Tensor): Keys/values source of shape (B, Tk, context_dim);
                defaults to x (self-attention)
            mask (torch.Tensor): Optional additive (L, L) mask. When the module is
                causal and no mask is given, the decoder mask is used.

        Returns:
            torch.Tensor: (B, Tq, embed_dim)
        """
        context = x if context is None else context

        q = self.query(x)
        k = self.key(context)
        v = self.value(context)

        if mask is None and self.causal:
            mask = self.backend.attn_decoder_mask(
                max(q.shape[1], k.shape[1]), dtype=q.dtype
            ).to(q.device)

        out = self.backend.qkv_attention(q, k, v, mask=mask, n_head=self.num_heads)
        return self.out_proj(out)


def install_attention_processor(model, backend: Optional[Backend] = None):
    """Replace every attention processor in a diffusers model. Returns the model."""
    model.set_attn_processor(QKVAttnProcessor(backend))
    return model


def _clip_self_attention(
    self_attn,
    hidden_states: torch.Tensor,
    mask: torch.Tensor,
    backend: Backend,
) -> torch.Tensor:
    q = self_attn.q_proj(hidden_states)
    k = self_attn.k_proj(hidden_states)
    v = self_attn.v_proj(hidden_states)
    out = backend.qkv_attention(q, k, v, mask=mask, n_head=self_attn.num_heads)
    return self_attn.out_proj(out)


def encode_text(
    text_encoder,
    input_ids: torch.Tensor,
    backend: Optional[Backend] = None,
) -> torch.Tensor:
    """
    Context embeddings for a batch of token ids.

    Equivalent to `text_encoder(input_ids)[0]` for a CLIPTextModel without a
    padding mask: pre-norm transformer layers with causal self-attention,
    followed by the final layer norm.

    Args:
        text_encoder: CLIPTextModel (or its inner text_model).
        input_ids: (B, T) token ids.
        backend: Execution backend; defaults to inference on input_ids' device.

    Returns:
        (B, T, hidden_size) embeddings.
    """
    backend = backend or Backend.inference(input_ids.device)
    text_model = getattr(text_encoder, "text_model", text_encoder)

    hidden_states = text_model.embeddings(input_ids=input_ids)
    mask = backend.attn_decoder_mask(hidden_states.shape[1], dtype=hidden_states.dtype)

    for layer in text_model.encoder.layers:
        residual = hidden_states
        hidden_states = layer.layer_norm1(hidden_states)
        hidden_states = residual + _clip_self_attention(layer.self_attn, hidden_states, mask, backend)

        residual = hidden_states
        hidden_states = residual + layer.mlp(layer.layer_norm2(hidden_states))

    return text_model.final_layer_norm(hidden_states)
