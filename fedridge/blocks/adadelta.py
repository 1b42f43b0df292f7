from __future__ import annotations

from dataclasses import dataclass

import numpy as np

Array = np.ndarray


@dataclass(frozen=True)
class AdadeltaStep:
    w: Array
    eg2: Array
    edw: Array
    delta_w: Array


def adadelta_step(
    rho: float, eps: float, eg2: Array, edw: Array, w: Array, grad: Array
) -> AdadeltaStep:
    """One ADADELTA update (Zeiler, 2012). Pure: inputs are never modified.

        Eg2 ← ρ·Eg2 + (1−ρ)·g²
        ΔW  ← −sqrt(EdW + ε)/sqrt(Eg2 + ε) · g
        EdW ← ρ·EdW + (1−ρ)·ΔW²
        W   ← W + ΔW
    """
    g = np.asarray(grad, dtype=float)
    eg2_new = rho * np.asarray(eg2, dtype=float) + (1.0 - rho) * g * g
    edw_old = np.asarray(edw, dtype=float)
    delta_w = -(np.sqrt(edw_old + eps) / np.sqrt(eg2_new + eps)) * g
    edw_new = rho * edw_old + (1.0 - rho) * delta_w * delta_w
    return AdadeltaStep(
        w=np.asarray(w, dtype=float) + delta_w,
        eg2=eg2_new,
        edw=edw_new,
        delta_w=delta_w,
    )


def gradient_descent_step(eta: float, w: Array, grad: Array) -> Array:
    """Fixed step-size update W − η·g."""
    return np.asarray(w, dtype=float) - float(eta) * np.asarray(grad, dtype=float)
