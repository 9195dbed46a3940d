# sd_sampler/attention.py
"""
Multi-head attention and the causal decoder mask.

These two functions are the numerical core used by every attention layer
in the pipeline: the UNet self/cross-attention blocks, the autoencoder
mid-block and the CLIP text encoder.

Shapes:
    q:    (B, Tq, D)
    k, v: (B, Tk, D)
    mask: (L, L) additive, L >= max(Tq, Tk); 0 = attend, -inf = forbid
    out:  (B, Tq, D)

Q and K are each scaled by (D / n_head) ** -0.25 before the product, which
is the usual 1/sqrt(d_k) split across both operands so the logits stay in
a reasonable range in half precision.
"""

from __future__ import annotations

import functools
from typing import Optional

import torch

from sd_sampler.errors import AttentionShapeError, HeadCountError


def _check_inputs(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    mask: Optional[torch.Tensor],
    n_head: int,
) -> None:
    for name, t in (("q", q), ("k", k), ("v", v)):
        if t.ndim != 3:
            raise AttentionShapeError(
                f"{name} must have shape (batch, seq, dim), got {tuple(t.shape)}"
            )
    if k.shape != v.shape:
        raise AttentionShapeError(
            f"k and v must have the same shape, got {tuple(k.shape)} and {tuple(v.shape)}"
        )
    if q.shape[0] != k.shape[0] or q.shape[2] != k.shape[2]:
        raise AttentionShapeError(
            f"q {tuple(q.shape)} is incompatible with k/v {tuple(k.shape)}"
        )

    n_state = q.shape[2]
    if n_head <= 0 or n_state % n_head != 0:
        raise HeadCountError(n_state, n_head)

    if mask is not None:
        n_qctx, n_ctx = q.shape[1], k.shape[1]
        if mask.ndim != 2 or mask.shape[0] < n_qctx or mask.shape[1] < n_ctx:
            raise AttentionShapeError(
                f"mask {tuple(mask.shape)} does not cover ({n_qctx}, {n_ctx})"
            )


def _split_heads(x: torch.Tensor, n_head: int) -> torch.Tensor:
    # (B, T, D) -> (B, H, T, D/H)
    n_batch, n_ctx, n_state = x.shape
    return x.reshape(n_batch, n_ctx, n_head, n_state // n_head).transpose(1, 2)


def _masked_logits(
    q: torch.Tensor,
    k: torch.Tensor,
    mask: Optional[torch.Tensor],
    n_head: int,
) -> torch.Tensor:
    n_qctx, n_state = q.shape[1], q.shape[2]
    n_ctx = k.shape[1]
    scale = (n_state / n_head) ** -0.25

    q = _split_heads(q, n_head) * scale
    k = (_split_heads(k, n_head) * scale).transpose(-2, -1)

    # (B, H, Tq, hd) @ (B, H, hd, Tk) -> (B, H, Tq, Tk)
    qk = q @ k

    if mask is not None:
        qk = qk + mask[:n_qctx, :n_ctx].to(dtype=qk.dtype)

    return qk


def attention_weights(
    q: torch.Tensor,
    k: torch.Tensor,
    mask: Optional[torch.Tensor] = None,
    n_head: int = 1,
) -> torch.Tensor:
    """
    Softmax attention weights of shape (B, n_head, Tq, Tk).

    Each row is a probability distribution over key positions.
    """
    _check_inputs(q, k, k, mask, n_head)
    return torch.softmax(_masked_logits(q, k, mask, n_head), dim=-1)


def qkv_attention(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    mask: Optional[torch.Tensor] = None,
    n_head: int = 1,
) -> torch.Tensor:
    """
    Multi-head scaled dot-product attention.

    Args:
        q: Queries, (B, Tq, D).
        k: Keys, (B, Tk, D).
        v: Values, (B, Tk, D).
        mask: Optional additive mask; only mask[:Tq, :Tk] is used.
        n_head: Number of heads. Must divide D.

    Returns:
        Attention output, (B, Tq, D), on the device and dtype of the inputs.

    Raises:
        HeadCountError: n_head does not divide D.
        AttentionShapeError: any other shape mismatch.
    """
    _check_inputs(q, k, v, mask, n_head)

    w = torch.softmax(_masked_logits(q, k, mask, n_head), dim=-1)
    v = _split_heads(v, n_head)

    # (B, H, Tq, Tk) @ (B, H, Tk, hd) -> (B, H, Tq, hd) -> (B, Tq, D)
    return (w @ v).transpose(1, 2).flatten(2, 3)


def attn_decoder_mask(
    seq_length: int,
    device: Optional[torch.device | str] = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """
    Additive causal mask of shape (seq_length, seq_length).

    Row i is zero for columns 0..i and -inf for columns i+1.. so position i
    only sees itself and earlier positions. The mask is assembled on the CPU
    from one row vector per position; pass `device` to move it afterwards.
    """
    if seq_length < 0:
        raise ValueError(f"seq_length must be non-negative, got {seq_length}")

    if seq_length == 0:
        mask = torch.zeros((0, 0), dtype=dtype)
    else:
        rows = [
            torch.cat(
                [
                    torch.zeros(i + 1, dtype=dtype),
                    torch.full((seq_length - i - 1,), float("-inf"), dtype=dtype),
                ]
            )
            for i in range(seq_length)
        ]
        mask = torch.stack(rows)

    if device is not None:
        mask = mask.to(device)
    return mask


@functools.lru_cache(maxsize=32)
def cached_decoder_mask(
    seq_length: int,
    device: Optional[torch.device] = None,
    dtype: torch.dtype = torch.float32,
) -> torch.Tensor:
    """Memoised attn_decoder_mask. Callers must not modify the result."""
    return attn_decoder_mask(seq_length, device=device, dtype=dtype)


__all__ = [
    "attention_weights",
    "attn_decoder_mask",
    "cached_decoder_mask",
    "qkv_attention",
]
