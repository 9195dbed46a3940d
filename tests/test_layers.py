"""Tests the diffusers and CLIP adapters against the libraries' own forward passes."""

import pytest
import torch
import torch.nn.functional as F

from sd_sampler.attention import attn_decoder_mask
from sd_sampler.errors import AttentionShapeError, HeadCountError
from sd_sampler.layers import (
    MultiHeadAttention,
    QKVAttnProcessor,
    encode_text,
    install_attention_processor,
)
from sd_sampler.testing import all_close


def test_encode_text_matches_clip_forward(text_encoder, tokenizer):
    ids = torch.cat(
        [
            tokenizer("a red cube", "max_length", True, 16, "pt").input_ids,
            tokenizer("", "max_length", True, 16, "pt").input_ids,
        ]
    )

    with torch.no_grad():
        expected = text_encoder(ids)[0]
        actual = encode_text(text_encoder, ids)

    assert actual.shape == (2, 16, 32)
    assert all_close(actual=actual, desired=expected, atol=1e-5, rtol=1e-4)


def test_encode_text_is_causal(text_encoder):
    a = torch.tensor([[0, 10, 11, 12, 2, 1]])
    b = torch.tensor([[0, 10, 11, 99, 98, 97]])

    with torch.no_grad():
        ea = encode_text(text_encoder, a)
        eb = encode_text(text_encoder, b)

    assert all_close(actual=ea[:, :3], desired=eb[:, :3])
    assert not torch.allclose(ea[:, 3:], eb[:, 3:])


def test_unet_processor_matches_default(unet):
    g = torch.Generator().manual_seed(0)
    sample = torch.randn(2, 4, 8, 8, generator=g)
    context = torch.randn(2, 16, 32, generator=g)
    t = torch.tensor(10)

    with torch.no_grad():
        expected = unet(sample, t, encoder_hidden_states=context).sample
        install_attention_processor(unet)
        actual = unet(sample, t, encoder_hidden_states=context).sample

    assert all(isinstance(p, QKVAttnProcessor) for p in unet.attn_processors.values())
    assert all_close(actual=actual, desired=expected, atol=1e-4, rtol=1e-4)


def test_vae_processor_matches_default(vae):
    latents = torch.randn(1, 4, 4, 4, generator=torch.Generator().manual_seed(0))

    with torch.no_grad():
        expected = vae.decode(latents).sample
        install_attention_processor(vae)
        actual = vae.decode(latents).sample

    assert all_close(actual=actual, desired=expected, atol=1e-4, rtol=1e-4)


def test_processor_rejects_padding_mask(unet):
    install_attention_processor(unet)
    attn = next(
        m for name, m in unet.named_modules() if name.endswith("attn1")
    )
    hidden = torch.randn(1, 4, attn.to_q.in_features)

    with pytest.raises(AttentionShapeError):
        attn.processor(attn, hidden, attention_mask=torch.zeros(1, 1, 4))


def _sdpa_reference(layer, x, context, mask=None):
    b, t_q, _ = x.shape
    t_k = context.shape[1]
    h = layer.num_heads
    d = layer.embed_dim // h

    def heads(y, t):
        return y.reshape(b, t, h, d).transpose(1, 2)

    out = F.scaled_dot_product_attention(
        heads(layer.query(x), t_q),
        heads(layer.key(context), t_k),
        heads(layer.value(context), t_k),
        attn_mask=mask,
    )
    return layer.out_proj(out.transpose(1, 2).reshape(b, t_q, layer.embed_dim))


@pytest.mark.parametrize("num_heads", [1, 4])
def test_multi_head_attention_matches_sdpa(num_heads):
    torch.manual_seed(0)
    layer = MultiHeadAttention(32, num_heads)
    x = torch.randn(2, 7, 32)

    with torch.no_grad():
        actual = layer(x)
        expected = _sdpa_reference(layer, x, x)

    assert actual.shape == (2, 7, 32)
    assert all_close(actual=actual, desired=expected, atol=1e-5, rtol=1e-4)


def test_multi_head_cross_attention_matches_sdpa():
    torch.manual_seed(0)
    layer = MultiHeadAttention(32, 4, context_dim=24)
    x = torch.randn(2, 5, 32)
    context = torch.randn(2, 9, 24)

    with torch.no_grad():
        actual = layer(x, context)
        expected = _sdpa_reference(layer, x, context)

    assert actual.shape == (2, 5, 32)
    assert all_close(actual=actual, desired=expected, atol=1e-5, rtol=1e-4)


def test_causal_multi_head_attention_matches_masked_sdpa():
    torch.manual_seed(0)
    layer = MultiHeadAttention(16, 2, causal=True)
    x = torch.randn(1, 6, 16)

    with torch.no_grad():
        causal = layer(x)
        explicit = layer(x, mask=attn_decoder_mask(6))
        expected = _sdpa_reference(layer, x, x, mask=attn_decoder_mask(6))

    assert torch.equal(causal, explicit)
    assert all_close(actual=causal, desired=expected, atol=1e-5, rtol=1e-4)


def test_multi_head_attention_trains():
    torch.manual_seed(0)
    layer = MultiHeadAttention(16, 4)

    layer(torch.randn(2, 3, 16)).pow(2).mean().backward()

    assert all(p.grad is not None for p in layer.parameters())


def test_multi_head_attention_rejects_indivisible_heads():
    with pytest.raises(HeadCountError):
        MultiHeadAttention(10, 3)
