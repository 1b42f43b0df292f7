from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np

from . import regression as R
from .blocks.adadelta import adadelta_step, gradient_descent_step
from .blocks.aux import HaltReason, Phase, RegressionConfig, ValidationError
from .blocks.messages import (
    Deferred,
    FinalResult,
    FinalStatistics,
    GlobalMeanBroadcast,
    GradientContribution,
    IterateBroadcast,
    Kickoff,
    LocalStatistics,
    RegressionStatistics,
    SiteResult,
    StatisticsRequest,
)

Array = np.ndarray
Broadcast = Union[IterateBroadcast, StatisticsRequest, GlobalMeanBroadcast, Deferred, FinalResult]
Contributions = Mapping[str, Any]


# ------------------------------- utilities -------------------------------- #


def _nan_guard(*xs) -> bool:
    """Return True if any value contains NaN or Inf."""
    for x in xs:
        if x is None:
            continue
        if not np.isfinite(np.asarray(x, dtype=float)).all():
            return True
    return False


def _frozen(value) -> Array:
    arr = np.array(value, dtype=float)
    arr.setflags(write=False)
    return arr


def _ordered(contributions: Contributions) -> List[Tuple[str, Any]]:
    """Contributions in site-id order, so every reduction is order independent."""
    return sorted(((str(k), v) for k, v in contributions.items()), key=lambda kv: kv[0])


def assert_num_features(contributions: Contributions, expected: Optional[int] = None) -> None:
    """All reporting sites must agree on the feature count (and match ``expected``)."""
    reported = [
        (site, int(c.num_features))
        for site, c in _ordered(contributions)
        if c is not None and hasattr(c, "num_features")
    ]
    for (prev_site, prev_n), (site, n) in zip(reported, reported[1:]):
        if n != prev_n:
            raise ValidationError(
                f"Site '{site}' reports {n} features, but site '{prev_site}' "
                f"reports {prev_n} features.",
                {"site_ids": [prev_site, site], "num_features": {prev_site: prev_n, site: n}},
            )
    if expected is not None and reported and reported[0][1] != expected:
        site, n = reported[0]
        raise ValidationError(
            f"Site '{site}' reports {n} features, but the run was initialised "
            f"with {expected} features.",
            {"site_ids": [site], "num_features": {site: n}, "expected": expected},
        )


def reject_unexpected_sites(state: "RoundState", contributions: Contributions) -> None:
    """Only sites that kicked off at INIT may contribute to later rounds."""
    unexpected = sorted({str(k) for k in contributions} - set(state.site_ids))
    if unexpected:
        raise ValidationError(
            f"Contributions from sites that did not join the run: {unexpected}; "
            f"registered sites are {list(state.site_ids)}",
            {"site_ids": unexpected, "registered": list(state.site_ids)},
        )


# ----------------------------- round state -------------------------------- #


@dataclass(frozen=True)
class RoundState:
    """
    Aggregator-owned state, handed back verbatim by the orchestrator each round.

    Immutable: every round returns a new instance via ``dataclasses.replace``.
    """

    phase: Phase
    site_ids: Tuple[str, ...]
    num_features: int
    current_w: Array
    previous_w: Array
    previous_objective: float
    current_objective: Optional[float]
    gradient: Array
    eg2: Array
    edw: Array
    delta_w: Array
    rho: float
    epsilon: float
    eta: float
    lambda_: float
    iteration: int
    max_iterations: int
    halt_reason: Optional[HaltReason] = None
    global_mean_y: Optional[float] = None
    covariate_labels: Tuple[str, ...] = ()
    response_label: str = ""
    objective_trace: Tuple[float, ...] = ()

    _ARRAYS = ("current_w", "previous_w", "gradient", "eg2", "edw", "delta_w")

    def __post_init__(self):
        for name in self._ARRAYS:
            object.__setattr__(self, name, _frozen(getattr(self, name)))
        object.__setattr__(self, "phase", Phase(self.phase))
        if self.halt_reason is not None:
            object.__setattr__(self, "halt_reason", HaltReason(self.halt_reason))
        object.__setattr__(self, "site_ids", tuple(str(s) for s in self.site_ids))
        object.__setattr__(self, "covariate_labels", tuple(self.covariate_labels))
        object.__setattr__(self, "objective_trace", tuple(float(v) for v in self.objective_trace))

    def replace(self, **changes) -> "RoundState":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(self):
            v = getattr(self, f.name)
            if isinstance(v, np.ndarray):
                v = v.tolist()
            elif isinstance(v, (Phase, HaltReason)):
                v = v.value
            elif isinstance(v, tuple):
                v = list(v)
            out[f.name] = v
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RoundState":
        names = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


# ======================= Aggregator round runner ========================= #


class AggregatorRoundRunner:
    """
    Cross-site side of the protocol.

    ``run(state, contributions)`` consumes the previous ``RoundState`` (``None``
    for round 0) and this round's contributions keyed by site id, and returns
    ``(new_state, broadcast)``:

        INIT                         -> ITERATING            IterateBroadcast
        ITERATING                    -> ITERATING            IterateBroadcast
                                     -> HALTED_AWAITING_MEANY  StatisticsRequest
        HALTED_AWAITING_MEANY        -> HALTED_AWAITING_FINAL_STATS  GlobalMeanBroadcast
        HALTED_AWAITING_FINAL_STATS  -> COMPLETE             FinalResult

    Statistics phases return the unchanged state and a ``Deferred`` broadcast
    while any site's payload is missing. Feature-count mismatches raise
    ``ValidationError`` in every phase.
    """

    def __init__(
        self,
        config: Optional[RegressionConfig] = None,
        rng: Union[None, int, np.random.Generator] = None,
    ):
        self.cfg = config if config is not None else RegressionConfig()
        self._rng = np.random.default_rng(rng if rng is not None else self.cfg.seed)

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def run(
        self, state: Optional[RoundState], contributions: Contributions
    ) -> Tuple[RoundState, Broadcast]:
        if state is None or state.phase is Phase.INIT:
            return self.initialize(contributions)
        if state.phase is Phase.ITERATING:
            return self.iterate(state, contributions)
        if state.phase is Phase.HALTED_AWAITING_MEANY:
            return self.reduce_mean_y(state, contributions)
        if state.phase is Phase.HALTED_AWAITING_FINAL_STATS:
            return self.reduce_statistics(state, contributions)
        if state.phase is Phase.COMPLETE:
            raise ValidationError("Run is already complete; no further rounds accepted")
        raise TypeError(f"Unhandled phase: {state.phase!r}")

    # ------------------------------ INIT -----------------------------------
    def initialize(self, contributions: Contributions) -> Tuple[RoundState, IterateBroadcast]:
        if not contributions:
            raise ValidationError("At least one site contribution is required to initialise")
        ordered = _ordered(contributions)
        for site, c in ordered:
            if not isinstance(c, Kickoff):
                raise ValidationError(
                    f"Site '{site}' sent {type(c).__name__} during initialisation",
                    {"site_ids": [site]},
                )
        assert_num_features(contributions)

        first = ordered[0][1]
        n = int(first.num_features)
        if self.cfg.initial_w is not None:
            w0 = np.asarray(self.cfg.initial_w, dtype=float)
            if w0.shape != (n,):
                raise ValidationError(
                    f"initial_w has {w0.size} entries, sites report {n} features",
                    {"num_features": n},
                )
        else:
            w0 = self._rng.random(n)

        zeros = np.zeros(n)
        labels = next((c.covariate_labels for _, c in ordered if c.covariate_labels), ())
        state = RoundState(
            phase=Phase.ITERATING,
            site_ids=tuple(site for site, _ in ordered),
            num_features=n,
            current_w=w0,
            previous_w=w0,
            previous_objective=self.cfg.initial_objective,
            current_objective=None,
            gradient=zeros,
            eg2=zeros,
            edw=zeros,
            delta_w=zeros,
            rho=self.cfg.rho,
            epsilon=self.cfg.epsilon,
            eta=float(first.eta),
            lambda_=float(first.lambda_),
            iteration=1,
            max_iterations=self.cfg.max_iterations,
            covariate_labels=labels,
            response_label=first.response_label,
        )
        logging.info(
            f"[Aggregator] initialised {len(ordered)} site(s), {n} features, "
            f"λ={state.lambda_:g}, optimizer={self.cfg.optimizer}"
        )
        return state, IterateBroadcast(current_w=w0, lambda_=state.lambda_, iteration=1)

    # ---------------------------- ITERATING --------------------------------
    def iterate(
        self, state: RoundState, contributions: Contributions
    ) -> Tuple[RoundState, Union[IterateBroadcast, StatisticsRequest]]:
        reject_unexpected_sites(state, contributions)
        ordered = _ordered(contributions)
        for site, c in ordered:
            if not isinstance(c, GradientContribution):
                raise ValidationError(
                    f"Site '{site}' sent {type(c).__name__} during optimisation round "
                    f"{state.iteration}",
                    {"site_ids": [site]},
                )
        missing = sorted(set(state.site_ids) - {site for site, _ in ordered})
        if missing:
            raise ValidationError(
                f"Round {state.iteration} is missing contributions from {missing}",
                {"site_ids": missing},
            )
        assert_num_features(contributions, expected=state.num_features)

        current_objective = math.fsum(float(c.objective) for _, c in ordered)
        grad = np.sum([np.asarray(c.gradient, dtype=float) for _, c in ordered], axis=0)

        if self.cfg.optimizer == "gd":
            new_w = gradient_descent_step(state.eta, state.previous_w, grad)
            eg2, edw, delta_w = state.eg2, state.edw, new_w - state.previous_w
        else:
            step = adadelta_step(
                state.rho, state.epsilon, state.eg2, state.edw, state.previous_w, grad
            )
            new_w, eg2, edw, delta_w = step.w, step.eg2, step.edw, step.delta_w

        grad_norm = float(np.linalg.norm(grad))
        logging.debug(
            f"[Aggregator] round {state.iteration:4d} | obj={current_objective:.6g} "
            f"(prev {state.previous_objective:.6g}) | |g|={grad_norm:.3e}"
        )

        updated = state.replace(
            current_w=new_w,
            current_objective=current_objective,
            gradient=grad,
            eg2=eg2,
            edw=edw,
            delta_w=delta_w,
        )

        reason = self._halt_reason(state, current_objective, grad, grad_norm)
        if reason is not None:
            logging.info(
                f"[Aggregator] optimisation halted at round {state.iteration}: "
                f"{reason.value} (obj={current_objective:.6g}, |g|={grad_norm:.3e})"
            )
            halted = updated.replace(phase=Phase.HALTED_AWAITING_MEANY, halt_reason=reason)
            return halted, StatisticsRequest(current_w=new_w, halt_reason=reason)

        nxt = updated.replace(
            previous_objective=current_objective,
            previous_w=new_w,
            iteration=state.iteration + 1,
            objective_trace=state.objective_trace + (current_objective,),
        )
        return nxt, IterateBroadcast(
            current_w=new_w, lambda_=state.lambda_, iteration=nxt.iteration
        )

    def _halt_reason(
        self, state: RoundState, current_objective: float, grad: Array, grad_norm: float
    ) -> Optional[HaltReason]:
        # first match wins
        if _nan_guard(current_objective, grad):
            return HaltReason.NON_FINITE
        if current_objective > state.previous_objective:
            return HaltReason.DIVERGENCE
        if grad_norm < self.cfg.gradient_tolerance:
            return HaltReason.CONVERGED
        if state.iteration >= state.max_iterations:
            return HaltReason.MAX_ITERATIONS
        return None

    # ---------------------- HALTED_AWAITING_MEANY --------------------------
    def _lagging(self, state: RoundState, contributions: Contributions, expected, ready) -> List[str]:
        lagging = [s for s in state.site_ids if s not in contributions]
        for site, c in _ordered(contributions):
            if not isinstance(c, expected) or not ready(c):
                lagging.append(site)
        return sorted(set(lagging))

    def reduce_mean_y(
        self, state: RoundState, contributions: Contributions
    ) -> Tuple[RoundState, Union[GlobalMeanBroadcast, Deferred]]:
        reject_unexpected_sites(state, contributions)
        assert_num_features(contributions, expected=state.num_features)
        lagging = self._lagging(
            state, contributions, LocalStatistics, lambda c: c.beta_vector is not None
        )
        if lagging:
            logging.warning(f"[Aggregator] mean-of-y reduction deferred; waiting on {lagging}")
            return state, Deferred(phase=state.phase, waiting_on=tuple(lagging))

        ordered = _ordered(contributions)
        total = math.fsum(float(c.local_mean_y) * int(c.local_count) for _, c in ordered)
        count = sum(int(c.local_count) for _, c in ordered)
        global_mean_y = total / count
        logging.info(f"[Aggregator] global mean of y = {global_mean_y:.6g} over {count} rows")

        nxt = state.replace(phase=Phase.HALTED_AWAITING_FINAL_STATS, global_mean_y=global_mean_y)
        return nxt, GlobalMeanBroadcast(current_w=state.current_w, global_mean_y=global_mean_y)

    # ------------------- HALTED_AWAITING_FINAL_STATS -----------------------
    def reduce_statistics(
        self, state: RoundState, contributions: Contributions
    ) -> Tuple[RoundState, Union[FinalResult, Deferred]]:
        reject_unexpected_sites(state, contributions)
        assert_num_features(contributions, expected=state.num_features)
        lagging = self._lagging(state, contributions, FinalStatistics, lambda c: True)
        if lagging:
            logging.warning(f"[Aggregator] final reduction deferred; waiting on {lagging}")
            return state, Deferred(phase=state.phase, waiting_on=tuple(lagging))

        ordered = _ordered(contributions)
        k = state.num_features
        w = np.asarray(state.current_w, dtype=float)

        sse = math.fsum(float(c.sse) for _, c in ordered)
        sst = math.fsum(float(c.sst) for _, c in ordered)
        n_obs = sum(int(c.local_count) for _, c in ordered)
        dof = R.degrees_of_freedom(n_obs, k)
        if dof <= 0:
            raise ValidationError(
                f"Global fit has {n_obs} rows for {k} coefficients",
                {"n_obs": n_obs, "n_features": k},
            )
        var_error = sse / dof
        var_x = np.sum([np.asarray(c.var_x, dtype=float) for _, c in ordered], axis=0)
        with np.errstate(divide="ignore", invalid="ignore"):
            se_beta = np.sqrt(var_error / var_x)
            t_global = w / se_beta
            r2_global = float(1.0 - np.float64(sse) / np.float64(sst))
        p_global = R.p_values(dof, t_global)

        per_site: Dict[str, SiteResult] = {}
        for site, c in ordered:
            orig = c.original
            per_site[site] = SiteResult(
                beta_vector=orig.beta_vector,
                r_squared=c.r_squared,
                t_values=c.t_values,
                p_values=c.p_values,
                degrees_of_freedom=R.degrees_of_freedom(c.local_count, k),
                original=RegressionStatistics(
                    beta_vector=orig.beta_vector,
                    r_squared=orig.r_squared,
                    t_values=orig.t_values,
                    p_values=orig.p_values,
                    degrees_of_freedom=orig.degrees_of_freedom,
                ),
                local_count=int(c.local_count),
            )

        logging.info(
            f"[Aggregator] global R²={r2_global:.6g}, t={np.round(t_global, 4).tolist()}, "
            f"dof={dof}"
        )
        result = FinalResult(
            global_=RegressionStatistics(
                beta_vector=w,
                r_squared=r2_global,
                t_values=t_global,
                p_values=p_global,
                degrees_of_freedom=dof,
            ),
            per_site=per_site,
            halt_reason=state.halt_reason,
            iterations=state.iteration,
            covariate_labels=state.covariate_labels,
            response_label=state.response_label,
            sse=sse,
            sst=sst,
            n_obs=n_obs,
        )
        return state.replace(phase=Phase.COMPLETE), result
