# sd_sampler/diffusion.py
"""
Latent update rules for the reverse diffusion process.

DiffusionCore wraps a scheduler only to read its `alphas_cumprod`; the
update equations are implemented here so the sampler owns the control
flow of every step.

Key equations implemented:
- x̂_0 from predicted noise: x̂_0 = (x_t - √(1-ᾱ_t)·ε) / √ᾱ_t
- DDIM (η = 0):             x_{t'} = √ᾱ_{t'}·x̂_0 + √(1-ᾱ_{t'})·ε
- DDPM posterior step:      x_{t'} = μ̃(x_t, x̂_0) + σ_t z

References:
- Ho et al., "Denoising Diffusion Probabilistic Models" (2020)
- Song et al., "Denoising Diffusion Implicit Models" (2021)
"""

from __future__ import annotations

from dataclasses import dataclass

import torch


@dataclass(frozen=True)
class DiffusionCore:
    """
    Stateless wrapper around a diffusion scheduler.

    Any object with an `alphas_cumprod` tensor works (diffusers schedulers
    all qualify).
    """
    scheduler: object

    @property
    def alphas_cumprod(self) -> torch.Tensor:
        return self.scheduler.alphas_cumprod

    def alpha_bar(self, t: torch.Tensor | int) -> torch.Tensor:
        """
        ᾱ at timestep t. A negative t means "past the last step", where the
        sample is clean and ᾱ = 1.
        """
        if int(t) < 0:
            return torch.ones((), dtype=self.alphas_cumprod.dtype)
        return self.alphas_cumprod[int(t)]

    def _expand(self, ref: torch.Tensor, a: torch.Tensor) -> torch.Tensor:
        a = a.to(device=ref.device, dtype=ref.dtype)
        while a.ndim < ref.ndim:
            a = a.unsqueeze(-1)
        return a

    def predict_x0_from_eps(self, xt, t, eps):
        a_bar = self._expand(xt, self.alpha_bar(t))
        return (xt - torch.sqrt(1.0 - a_bar) * eps) / torch.sqrt(a_bar)

    def ddim_step(self, xt, t, prev_t, eps):
        """
        Deterministic DDIM step from t to prev_t.

        Pass prev_t = -1 on the final step to land on the x̂_0 estimate.
        """
        a_bar_prev = self._expand(xt, self.alpha_bar(prev_t))
        x0_pred = self.predict_x0_from_eps(xt, t, eps)
        return torch.sqrt(a_bar_prev) * x0_pred + torch.sqrt(1.0 - a_bar_prev) * eps

    def _clip_x0(self, x0_pred: torch.Tensor) -> torch.Tensor:
        config = getattr(self.scheduler, "config", None)
        if not getattr(config, "clip_sample", False):
            return x0_pred
        limit = getattr(config, "clip_sample_range", 1.0)
        return torch.clamp(x0_pred, -limit, limit)

    def ddpm_step(self, xt, t, prev_t, eps, add_noise=True):
        """
        Single DDPM reverse step from t to prev_t.

            α_t = ᾱ_t / ᾱ_{t'}, β_t = 1 - α_t
            μ̃ = √ᾱ_{t'} β_t / (1-ᾱ_t) · x̂_0 + √α_t (1-ᾱ_{t'}) / (1-ᾱ_t) · x_t
            σ_t² = β_t (1-ᾱ_{t'}) / (1-ᾱ_t)

        Noise is drawn from the global torch RNG, so seed it for
        reproducible runs. No noise is added when add_noise is False or
        prev_t <= 0.

        x̂_0 is clipped only when the scheduler config asks for it
        (`clip_sample`); Stable Diffusion latents are not bounded to [-1, 1].
        """
        a_bar = self._expand(xt, self.alpha_bar(t))
        a_bar_prev = self._expand(xt, self.alpha_bar(max(int(prev_t), 0)))

        alpha = a_bar / a_bar_prev
        beta = 1.0 - alpha

        x0_pred = self._clip_x0(self.predict_x0_from_eps(xt, t, eps))

        coef_x0 = torch.sqrt(a_bar_prev) * beta / (1.0 - a_bar)
        coef_xt = torch.sqrt(alpha) * (1.0 - a_bar_prev) / (1.0 - a_bar)
        mean = coef_x0 * x0_pred + coef_xt * xt

        if add_noise and int(prev_t) > 0:
            variance = beta * (1.0 - a_bar_prev) / (1.0 - a_bar)
            return mean + torch.sqrt(variance) * torch.randn_like(xt)

        return mean

    def step(self, kind: str, xt, t, prev_t, eps, add_noise=True):
        if kind == "ddim":
            return self.ddim_step(xt, t, prev_t, eps)
        if kind == "ddpm":
            return self.ddpm_step(xt, t, prev_t, eps, add_noise=add_noise)
        raise ValueError(f"Unknown scheduler: {kind!r}")
