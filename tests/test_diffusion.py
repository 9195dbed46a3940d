"""Tests the DDIM/DDPM latent update rules."""

import pytest
import torch
from diffusers import DDPMScheduler

from sd_sampler.diffusion import DiffusionCore
from sd_sampler.testing import all_close


@pytest.fixture
def core():
    return DiffusionCore(DDPMScheduler(num_train_timesteps=1000))


def _noised(core, t):
    g = torch.Generator().manual_seed(3)
    x0 = torch.rand(2, 4, 8, 8, generator=g) * 2 - 1
    eps = torch.randn(2, 4, 8, 8, generator=g)
    a_bar = core.alpha_bar(t)
    xt = a_bar.sqrt() * x0 + (1 - a_bar).sqrt() * eps
    return x0, eps, xt


def test_alpha_bar_past_last_step_is_one(core):
    assert core.alpha_bar(-1) == 1.0
    assert 0 < core.alpha_bar(999) < core.alpha_bar(0) < 1


def test_predict_x0_inverts_forward_process(core):
    x0, eps, xt = _noised(core, 500)

    assert all_close(actual=core.predict_x0_from_eps(xt, 500, eps), desired=x0, atol=1e-4)


def test_ddim_step_with_true_noise_lands_on_forward_marginal(core):
    x0, eps, xt = _noised(core, 800)

    prev = core.ddim_step(xt, 800, 600, eps)

    a_prev = core.alpha_bar(600)
    expected = a_prev.sqrt() * x0 + (1 - a_prev).sqrt() * eps
    assert all_close(actual=prev, desired=expected, atol=1e-4)


def test_ddim_final_step_returns_x0(core):
    x0, eps, xt = _noised(core, 300)

    assert all_close(actual=core.ddim_step(xt, 300, -1, eps), desired=x0, atol=1e-4)


def test_ddim_accepts_tensor_timesteps(core):
    _, eps, xt = _noised(core, 800)

    a = core.ddim_step(xt, torch.tensor(800), torch.tensor(600), eps)
    b = core.ddim_step(xt, 800, 600, eps)

    assert torch.equal(a, b)


def test_ddpm_without_noise_is_deterministic(core):
    _, eps, xt = _noised(core, 800)

    a = core.ddpm_step(xt, 800, 600, eps, add_noise=False)
    b = core.ddpm_step(xt, 800, 600, eps, add_noise=False)

    assert torch.equal(a, b)


def test_ddpm_noise_follows_global_seed(core):
    _, eps, xt = _noised(core, 800)

    torch.manual_seed(0)
    a = core.ddpm_step(xt, 800, 600, eps)
    torch.manual_seed(0)
    b = core.ddpm_step(xt, 800, 600, eps)

    assert torch.equal(a, b)
    assert not torch.equal(a, core.ddpm_step(xt, 800, 600, eps, add_noise=False))


def test_unknown_update_rule_rejected(core):
    _, eps, xt = _noised(core, 10)

    with pytest.raises(ValueError):
        core.step("euler", xt, 10, 0, eps)


def _latent_beyond_unit_range(core, t):
    x0 = torch.full((1, 4, 2, 2), 3.0)
    eps = torch.zeros_like(x0)
    return x0, eps, core.alpha_bar(t).sqrt() * x0


def test_ddpm_keeps_latents_beyond_unit_range():
    core = DiffusionCore(DDPMScheduler(num_train_timesteps=1000, clip_sample=False))
    x0, eps, xt = _latent_beyond_unit_range(core, 10)

    out = core.ddpm_step(xt, 10, 0, eps, add_noise=False)

    assert all_close(actual=out, desired=core.alpha_bar(0).sqrt() * x0, atol=1e-4)


def test_ddpm_clips_when_scheduler_asks():
    core = DiffusionCore(
        DDPMScheduler(num_train_timesteps=1000, clip_sample=True, clip_sample_range=1.0)
    )
    x0, eps, xt = _latent_beyond_unit_range(core, 10)

    clipped = core.ddpm_step(xt, 10, 0, eps, add_noise=False)

    assert (clipped < core.alpha_bar(0).sqrt() * 3.0 - 0.1).all()
