# Shared configuration, phase/halt enums and error types for the
# federated ridge regression solver.

from __future__ import annotations

# =========================
# Standard library
# =========================
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence


# ======================================
# Enums
# ======================================
class Phase(Enum):
    """Aggregator round states. Every runner dispatches on these exhaustively."""

    INIT = "init"
    ITERATING = "iterating"
    HALTED_AWAITING_MEANY = "halted_awaiting_mean_y"
    HALTED_AWAITING_FINAL_STATS = "halted_awaiting_final_stats"
    COMPLETE = "complete"


class HaltReason(Enum):
    """Why the optimisation phase stopped."""

    DIVERGENCE = "divergence"
    CONVERGED = "converged"
    MAX_ITERATIONS = "max_iterations"
    NON_FINITE = "non_finite"


# ======================================
# Errors
# ======================================
class ValidationError(ValueError):
    """Fatal input/protocol error. Aborts the run; never retried."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context or {})


# ======================================
# Global configuration
# ======================================
_OPTIMIZERS = ("adadelta", "gd")
_FIT_METHODS = ("exact", "bfgs")


@dataclass
class RegressionConfig:
    """
    Run-level configuration shared by sites, aggregator and simulator.

    Notes
    -----
    • rho/epsilon are copied into the round state at INIT; later edits to the
      config do not affect a run in progress.
    • lambda_/eta of ``None`` on a site mean "use the default below"; an
      explicit 0 is honoured.
    """

    # ---------------- Optimisation ----------------
    optimizer: str = "adadelta"  # {"adadelta","gd"}
    max_iterations: int = 250
    gradient_tolerance: float = 1e-3
    initial_objective: float = 1e15
    rho: float = 0.99
    epsilon: float = 0.04
    initial_w: Optional[Sequence[float]] = None
    seed: Optional[int] = None

    # ---------------- Site defaults ----------------
    default_lambda: float = 0.0
    default_eta: float = 1e-1

    # ---------------- Local fit ----------------
    fit_method: str = "exact"  # {"exact","bfgs"}
    fit_tol: float = 1e-8

    # ---------------- Privacy ----------------
    gradient_noise_scale: float = 0.0

    def __post_init__(self):
        if self.optimizer not in _OPTIMIZERS:
            raise ValueError(
                f"Unknown optimizer '{self.optimizer}'; expected one of {_OPTIMIZERS}"
            )
        if self.fit_method not in _FIT_METHODS:
            raise ValueError(
                f"Unknown fit method '{self.fit_method}'; expected one of {_FIT_METHODS}"
            )
        if not 0.0 < float(self.rho) < 1.0:
            raise ValueError(f"rho must lie in (0, 1), got {self.rho}")
        if float(self.epsilon) <= 0.0:
            raise ValueError(f"epsilon must be positive, got {self.epsilon}")

        # basic param guards
        self.rho = float(self.rho)
        self.epsilon = float(self.epsilon)
        self.max_iterations = int(max(1, self.max_iterations))
        self.gradient_tolerance = float(max(0.0, self.gradient_tolerance))
        self.initial_objective = float(self.initial_objective)
        self.default_lambda = float(self.default_lambda)
        self.default_eta = float(self.default_eta)
        self.fit_tol = float(max(1e-16, self.fit_tol))
        self.gradient_noise_scale = float(max(0.0, self.gradient_noise_scale))
        if self.initial_w is not None:
            self.initial_w = [float(v) for v in self.initial_w]

    def resolve_lambda(self, value: Optional[float]) -> float:
        return self.default_lambda if value is None else float(value)

    def resolve_eta(self, value: Optional[float]) -> float:
        return self.default_eta if value is None else float(value)
