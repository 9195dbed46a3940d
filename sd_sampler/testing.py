# sd_sampler/testing.py
"""Comparison helper for the numerical tests."""

from typing import Optional

import torch

# Default (rtol, atol) per dtype, loose enough for reordered reductions
_TOLERANCES = {
    torch.float64: (1e-9, 1e-9),
    torch.float32: (1e-5, 1e-5),
    torch.float16: (1e-3, 1e-3),
    torch.bfloat16: (1e-2, 1e-2),
}


def tolerances(dtype: torch.dtype):
    """(rtol, atol) used by all_close for `dtype`."""
    if dtype not in _TOLERANCES:
        raise ValueError(f"Unsupported dtype: {dtype}")
    return _TOLERANCES[dtype]


def all_close(
    *,
    actual: torch.Tensor,
    desired: torch.Tensor,
    rtol: Optional[float] = None,
    atol: Optional[float] = None,
    equal_nan: bool = False,
) -> bool:
    """
    torch.allclose with dtype-aware defaults.

    Explicit tolerances, including 0, override the defaults. Tensors of
    different dtype or shape never compare equal.
    """
    if actual.dtype != desired.dtype or actual.shape != desired.shape:
        return False

    default_rtol, default_atol = tolerances(desired.dtype)
    return torch.allclose(
        actual,
        desired,
        rtol=default_rtol if rtol is None else rtol,
        atol=default_atol if atol is None else atol,
        equal_nan=equal_nan,
    )


__all__ = [
    "all_close",
    "tolerances",
]
