"""Tests the tolerance helper."""

import pytest
import torch

from sd_sampler.testing import all_close, tolerances


def test_default_tolerance_absorbs_rounding():
    x = torch.ones(4)

    assert all_close(actual=x + 1e-7, desired=x)


def test_explicit_zero_tolerance_is_exact():
    x = torch.ones(4)

    assert not all_close(actual=x + 1e-7, desired=x, rtol=0.0, atol=0.0)
    assert all_close(actual=x.clone(), desired=x, rtol=0.0, atol=0.0)


def test_mismatched_dtype_or_shape_is_not_close():
    x = torch.ones(4)

    assert not all_close(actual=x.double(), desired=x)
    assert not all_close(actual=torch.ones(2, 2), desired=x)


@pytest.mark.parametrize("dtype", [torch.float16, torch.bfloat16, torch.float32, torch.float64])
def test_tolerances_loosen_with_precision(dtype):
    rtol, atol = tolerances(dtype)

    assert rtol <= tolerances(torch.bfloat16)[0]
    assert atol > 0


def test_integer_dtype_rejected():
    with pytest.raises(ValueError):
        tolerances(torch.int32)
