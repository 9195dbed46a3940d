# sd_sampler/backend.py
"""
Execution backends for the attention core.

A Backend pairs a compute device with a gradient mode. The attention and
mask algorithms in attention.py are written once against plain tensor
operations; a Backend only decides where tensors live and whether the
autograd graph is recorded while they run.

    Backend.inference("cuda")   # no graph, weights are read-only
    Backend.autodiff("cpu")     # gradients flow through qkv_attention
"""

from __future__ import annotations

from contextlib import nullcontext
from dataclasses import dataclass
from typing import Optional

import torch

from sd_sampler import attention
from sd_sampler.config import DEVICE


@dataclass(frozen=True)
class Backend:
    device: torch.device = DEVICE
    requires_grad: bool = False

    @classmethod
    def inference(cls, device: torch.device | str = DEVICE) -> "Backend":
        return cls(device=torch.device(device), requires_grad=False)

    @classmethod
    def autodiff(cls, device: torch.device | str = DEVICE) -> "Backend":
        return cls(device=torch.device(device), requires_grad=True)

    def grad_context(self):
        """Context manager enabling or disabling autograd for this backend."""
        if self.requires_grad:
            return nullcontext()
        return torch.no_grad()

    def to_device(self, x: torch.Tensor) -> torch.Tensor:
        return x.to(self.device)

    def qkv_attention(
        self,
        q: torch.Tensor,
        k: torch.Tensor,
        v: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        n_head: int = 1,
    ) -> torch.Tensor:
        with self.grad_context():
            return attention.qkv_attention(q, k, v, mask=mask, n_head=n_head)

    def attn_decoder_mask(
        self,
        seq_length: int,
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        # Constants only; never part of the graph.
        return attention.cached_decoder_mask(seq_length, self.device, dtype)
