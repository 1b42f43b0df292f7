"""
Laplace noise by inverse-CDF sampling.

Uniform draws on the open interval (0, 1) are mapped through the Laplace
quantile function, mean + sign(p − ½)·scale·(−ln(1 − |2p − 1|)).
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np
from scipy import stats


def laplace_inverse_cdf(probability, scale: float = 1.0, mean: float = 0.0):
    p = np.asarray(probability, dtype=float)
    if np.any((p <= 0.0) | (p >= 1.0)):
        raise ValueError(f"probability must lie in (0, 1): {probability!r} given")
    scale = float(scale) if scale else 1.0
    out = np.asarray(stats.laplace.ppf(p, loc=float(mean), scale=scale))
    return float(out) if out.ndim == 0 else out


def laplace_noise(
    scale: float,
    size: Union[None, int, Tuple[int, ...]] = None,
    rng: Optional[np.random.Generator] = None,
):
    """Zero-mean Laplace samples of the given scale."""
    rng = rng if rng is not None else np.random.default_rng()
    # open interval: uniform draws of exactly 0 are rejected by the quantile
    u = rng.uniform(np.nextafter(0.0, 1.0), 1.0, size=size)
    return laplace_inverse_cdf(u, scale=scale)
