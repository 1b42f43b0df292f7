from __future__ import annotations

import logging
import multiprocessing as mp
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence

import numpy as np

from . import regression as R
from .aggregator import AggregatorRoundRunner, RoundState
from .blocks.aux import HaltReason, Phase, RegressionConfig
from .blocks.messages import Deferred, FinalResult
from .features import SiteInputs
from .local import LocalRoundRunner

Array = np.ndarray


# ----------------------------- logging structs ---------------------------- #


@dataclass
class History:
    obj: List[float] = field(default_factory=list)
    grad_norm: List[float] = field(default_factory=list)
    timing: Dict[str, List[float]] = None
    rounds: int = 0
    iters: int = 0
    converged: bool = False
    reason: str = ""

    def __post_init__(self):
        if self.timing is None:
            self.timing = {"local_updates": [], "global_updates": []}

    def as_arrays(self) -> Dict[str, Array]:
        return {
            "obj": np.asarray(self.obj, dtype=float),
            "grad_norm": np.asarray(self.grad_norm, dtype=float),
        }


# ============================ In-process driver =========================== #


class FederatedRidge:
    """
    Drives a set of sites and one aggregator through every round in-process.

    Each round runs every site's ``LocalRoundRunner`` on the last broadcast
    (sequentially, or on a thread pool with ``parallel_mode="threading"``),
    then hands all contributions and the last ``RoundState`` to the
    aggregator. The run ends with the aggregator's ``FinalResult``.

    Usage:
        with FederatedRidge(config, parallel_mode="threading") as fr:
            result = fr.fit({"a": SiteInputs(...), "b": SiteInputs(...)})
    """

    def __init__(
        self,
        config: Optional[RegressionConfig] = None,
        parallel_mode: str = "none",  # 'none', 'threading'
        max_workers: Optional[int] = None,
        callback: Optional[Callable[[int, "FederatedRidge", History], None]] = None,
        verbose: bool = False,
    ):
        if parallel_mode not in ("none", "threading"):
            raise ValueError(f"Unknown parallel_mode '{parallel_mode}'")
        self.cfg = config if config is not None else RegressionConfig()
        self.parallel_mode = str(parallel_mode)
        self.max_workers = max_workers or min(mp.cpu_count(), 8)
        self.callback = callback
        self.verbose = bool(verbose)
        self._executor: Optional[ThreadPoolExecutor] = None

        # State
        self.state_: Optional[RoundState] = None
        self.result_: Optional[FinalResult] = None
        self.history_: Optional[History] = None
        self.coef_: Optional[Array] = None

    def __enter__(self):
        """Context manager entry: create executor if needed."""
        if self.parallel_mode == "threading":
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit: shutdown executor."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # --------------------------- local rounds ------------------------------ #

    def _local_round(self, runners: Dict[str, LocalRoundRunner], broadcast):
        if self.parallel_mode == "none" or self._executor is None:
            return {site: r.run(broadcast) for site, r in runners.items()}
        futures = {site: self._executor.submit(r.run, broadcast) for site, r in runners.items()}
        # result() re-raises a site's failure in the driver
        return {site: f.result() for site, f in futures.items()}

    # -------------------------------- fit ---------------------------------- #

    def fit(self, sites: Mapping[str, SiteInputs]) -> FinalResult:
        """
        Run the whole protocol on ``sites`` (site id -> inputs).

        Returns the final result; ``history_``, ``state_`` and ``coef_`` are
        set as a side effect. Validation errors from any site or from the
        aggregator propagate unchanged.
        """
        if not sites:
            raise ValueError("At least one site is required")
        runners = {
            str(site): LocalRoundRunner(site, inputs, self.cfg, rng=self._site_seed(i))
            for i, (site, inputs) in enumerate(sites.items())
        }
        aggregator = AggregatorRoundRunner(self.cfg)
        hist = History()
        self.history_ = hist

        state: Optional[RoundState] = None
        broadcast = None
        round_no = 0
        while True:
            optimising = state is not None and state.phase is Phase.ITERATING
            t0 = time.time()
            contributions = self._local_round(runners, broadcast)
            t1 = time.time()
            state, broadcast = aggregator.run(state, contributions)
            t2 = time.time()
            hist.timing["local_updates"].append(t1 - t0)
            hist.timing["global_updates"].append(t2 - t1)
            hist.rounds = round_no + 1

            if optimising:
                hist.obj.append(float(state.current_objective))
                hist.grad_norm.append(float(np.linalg.norm(state.gradient)))
                if self.verbose:
                    print(
                        f"[{len(hist.obj):4d}] obj={hist.obj[-1]:.6g} | "
                        f"|g|={hist.grad_norm[-1]:.3e} | t={t2 - t0:.3f}s "
                        f"(loc:{t1 - t0:.3f}, glob:{t2 - t1:.3f})"
                    )

            if isinstance(broadcast, Deferred):
                # in-process sites always answer; a deferral here is a protocol bug
                raise RuntimeError(
                    f"Aggregator deferred in {broadcast.phase.value}; "
                    f"waiting on {list(broadcast.waiting_on)}"
                )

            if state.phase is Phase.HALTED_AWAITING_MEANY and not hist.reason:
                hist.iters = state.iteration
                hist.reason = state.halt_reason.value
                hist.converged = state.halt_reason is HaltReason.CONVERGED
                logging.info(f"[Simulator] optimisation halted: {hist.reason} at round {hist.iters}")
                if self.verbose:
                    print(f"Stopping at iter {hist.iters}: {hist.reason}")

            if self.callback is not None:
                self.callback(round_no, self, hist)

            round_no += 1
            if isinstance(broadcast, FinalResult):
                break

        # let sites observe the final result
        self._local_round(runners, broadcast)

        self.state_ = state
        self.result_ = broadcast
        self.coef_ = np.array(broadcast.global_.beta_vector, dtype=float)
        return broadcast

    def fit_arrays(
        self,
        X_list: Sequence[Array],
        y_list: Sequence[Array],
        site_ids: Optional[Sequence[str]] = None,
        lambda_: Optional[float] = None,
    ) -> FinalResult:
        """Convenience wrapper: one (X, y) pair per site, bias appended per site."""
        K = len(X_list)
        assert K == len(y_list), "X_list and y_list must have same length (K sites)."
        ids = [str(s) for s in site_ids] if site_ids is not None else [f"site{i}" for i in range(K)]
        sites = {
            sid: SiteInputs(
                features=["y"],
                covariates=np.asarray(X, dtype=float),
                response=np.asarray(y, dtype=float),
                valid_fields=None,
                lambda_=lambda_,
            )
            for sid, X, y in zip(ids, X_list, y_list)
        }
        return self.fit(sites)

    def predict(self, X) -> Array:
        """Predictions of the fitted global model; X without the bias column."""
        if self.coef_ is None:
            raise RuntimeError("fit() has not been called")
        X = np.atleast_2d(np.asarray(X, dtype=float))
        return R.apply_model(self.coef_, np.hstack([X, np.ones((X.shape[0], 1))]))

    def _site_seed(self, i: int) -> Optional[int]:
        return None if self.cfg.seed is None else int(self.cfg.seed) + 1 + i
