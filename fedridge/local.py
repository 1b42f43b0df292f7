from __future__ import annotations

import logging
from typing import Optional, Union

import numpy as np

from . import regression as R
from .blocks.aux import RegressionConfig, ValidationError
from .blocks.messages import (
    Deferred,
    FinalResult,
    FinalStatistics,
    GlobalMeanBroadcast,
    GradientContribution,
    IterateBroadcast,
    Kickoff,
    LocalStatistics,
    StatisticsRequest,
)
from .blocks.noise import laplace_noise
from .features import PreparedData, SiteInputs, prepare_site_data

Broadcast = Union[
    IterateBroadcast, StatisticsRequest, GlobalMeanBroadcast, Deferred, FinalResult
]
Contribution = Union[Kickoff, GradientContribution, LocalStatistics, FinalStatistics]


class LocalRoundRunner:
    """
    One site's side of the protocol.

    ``run(broadcast)`` is called once per round with the aggregator's last
    broadcast (``None`` before the first round) and returns this site's
    contribution, or ``None`` when there is nothing to send. The only state
    kept between rounds is the preprocessed design matrix and response, built
    on the first call, and the start vector of the iterative local fit.
    Biased X and y are never part of a contribution.

        None                 -> step 0: Kickoff
        IterateBroadcast     -> step 1: GradientContribution
        StatisticsRequest    -> step 2: LocalStatistics
        GlobalMeanBroadcast  -> step 3: FinalStatistics
        Deferred/FinalResult -> None
    """

    def __init__(
        self,
        site_id: str,
        inputs: SiteInputs,
        config: Optional[RegressionConfig] = None,
        rng: Union[None, int, np.random.Generator] = None,
    ):
        self.site_id = str(site_id)
        self.inputs = inputs
        self.cfg = config if config is not None else RegressionConfig()
        self._rng = np.random.default_rng(rng if rng is not None else self.cfg.seed)
        self._data: Optional[PreparedData] = None
        self._fit_start: Optional[np.ndarray] = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    @property
    def data(self) -> PreparedData:
        if self._data is None:
            self._data = prepare_site_data(self.inputs)
            logging.debug(
                f"[Site {self.site_id}] preprocessed {self._data.local_count} rows, "
                f"{self._data.num_features} features"
            )
        return self._data

    @property
    def fit_start(self) -> np.ndarray:
        """Start of the iterative local fit, drawn once so step 2 and its step-3 copy agree."""
        if self._fit_start is None:
            self._fit_start = np.random.default_rng(self.cfg.seed).random(self.data.num_features)
        return self._fit_start

    def run(self, broadcast: Optional[Broadcast] = None) -> Optional[Contribution]:
        try:
            return self._dispatch(broadcast)
        except ValidationError as e:
            # name the failing site; errors from a thread pool otherwise lose it
            raise ValidationError(
                f"[Site {self.site_id}] {e}", {**e.context, "site_id": self.site_id}
            ) from e

    def _dispatch(self, broadcast: Optional[Broadcast]) -> Optional[Contribution]:
        if broadcast is None:
            return self.kickoff()
        if isinstance(broadcast, IterateBroadcast):
            return self.iterate(broadcast)
        if isinstance(broadcast, StatisticsRequest):
            return self.initial_statistics(broadcast)
        if isinstance(broadcast, GlobalMeanBroadcast):
            return self.final_statistics(broadcast)
        if isinstance(broadcast, Deferred):
            logging.debug(f"[Site {self.site_id}] aggregator deferred ({broadcast.phase.value})")
            return None
        if isinstance(broadcast, FinalResult):
            return None
        raise TypeError(f"Unhandled broadcast type: {type(broadcast).__name__}")

    # ---------------------------- step 0 ---------------------------------
    def kickoff(self) -> Kickoff:
        d = self.data
        return Kickoff(
            num_features=d.num_features,
            local_count=d.local_count,
            eta=self.cfg.resolve_eta(self.inputs.eta),
            lambda_=self.cfg.resolve_lambda(self.inputs.lambda_),
            covariate_labels=d.covariate_labels,
            response_label=d.response_label,
        )

    # ---------------------------- step 1 ---------------------------------
    def iterate(self, broadcast: IterateBroadcast) -> GradientContribution:
        d = self.data
        w = np.asarray(broadcast.current_w, dtype=float)
        grad = R.gradient(w, d.biased_x, d.y, broadcast.lambda_)
        obj = R.objective(w, d.biased_x, d.y, broadcast.lambda_)
        if self.cfg.gradient_noise_scale > 0.0:
            grad = grad + laplace_noise(
                self.cfg.gradient_noise_scale, size=grad.shape, rng=self._rng
            )
        logging.debug(
            f"[Site {self.site_id}] round {broadcast.iteration}: "
            f"objective={obj:.6g} |grad|={np.linalg.norm(grad):.3e}"
        )
        return GradientContribution(
            gradient=grad, objective=obj, num_features=d.num_features
        )

    # ---------------------------- step 2 ---------------------------------
    def initial_statistics(self, broadcast: Optional[StatisticsRequest] = None) -> LocalStatistics:
        """Statistics of this site's own fit; the converged W is not used yet."""
        d = self.data
        lam = self.cfg.resolve_lambda(self.inputs.lambda_)
        beta = R.closed_form_fit(
            d.biased_x,
            d.y,
            lam,
            method=self.cfg.fit_method,
            w0=self.fit_start,
            tol=self.cfg.fit_tol,
        )
        dof = R.degrees_of_freedom(d.local_count, d.num_features)
        tvals = R.t_values(d.biased_x, d.y, beta)
        return LocalStatistics(
            num_features=d.num_features,
            local_count=d.local_count,
            local_mean_y=float(np.mean(d.y)),
            beta_vector=beta,
            r_squared=R.r_squared(d.biased_x, d.y, beta),
            t_values=tvals,
            p_values=R.p_values(dof, tvals),
            degrees_of_freedom=dof,
        )

    # ---------------------------- step 3 ---------------------------------
    def final_statistics(self, broadcast: GlobalMeanBroadcast) -> FinalStatistics:
        d = self.data
        w = np.asarray(broadcast.current_w, dtype=float)
        if w.shape[0] != d.num_features:
            raise ValueError(
                f"[Site {self.site_id}] broadcast W has {w.shape[0]} entries, "
                f"expected {d.num_features}"
            )
        dof = R.degrees_of_freedom(d.local_count, d.num_features)
        tvals = R.t_values(d.biased_x, d.y, w)
        r2 = R.r_squared(d.biased_x, d.y, w)
        logging.info(
            f"[Site {self.site_id}] converged W: R²={r2:.6g}, t={np.round(tvals, 4).tolist()}"
        )
        return FinalStatistics(
            num_features=d.num_features,
            local_count=d.local_count,
            sse=R.residual_sum_of_squares(d.biased_x, d.y, w),
            sst=R.total_sum_of_squares(d.y, broadcast.global_mean_y),
            var_x=R.feature_variance(d.biased_x),
            r_squared=r2,
            t_values=tvals,
            p_values=R.p_values(dof, tvals),
            degrees_of_freedom=dof,
            original=self.initial_statistics(),
        )
