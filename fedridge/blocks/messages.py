"""
Round payloads exchanged between sites and the aggregator.

Every payload is its own frozen dataclass tagged by ``kind``; runners dispatch
on the concrete type. ``to_dict``/``message_from_dict`` turn payloads into
plain JSON-compatible dicts (arrays -> lists, enums -> values) for whatever
transport carries them. Statistics broadcasts also carry their
``statistics_phase`` (0 or 1) in the dict; it is fixed by ``kind``.

Broadcasts (aggregator -> sites)
    IterateBroadcast      optimisation round: W and λ
    StatisticsRequest     optimisation halted, statistics phase 0
    GlobalMeanBroadcast   statistics phase 1: W and the global mean of y
    Deferred              some sites lag; nothing to do this round
    FinalResult           run complete

Contributions (site -> aggregator)
    Kickoff               round 0 shape/parameter report
    GradientContribution  local gradient and objective at W
    LocalStatistics       statistics phase 0 payload (local fit, mean of y)
    FinalStatistics       statistics phase 1 payload (SSE/SST/diag(XᵀX))
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

import numpy as np

from .aux import HaltReason, Phase

Array = np.ndarray

_REGISTRY: Dict[str, Type["_Message"]] = {}


def _plain(value: Any) -> Any:
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (HaltReason, Phase)):
        return value.value
    if isinstance(value, _Message):
        return value.to_dict()
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


def _frozen_array(value) -> Array:
    arr = np.array(value, dtype=float)
    arr.setflags(write=False)
    return arr


class _Message:
    kind: ClassVar[str] = ""
    _arrays: ClassVar[Tuple[str, ...]] = ()

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.kind:
            _REGISTRY[cls.kind] = cls

    def __post_init__(self):
        for name in self._arrays:
            value = getattr(self, name)
            if value is not None:
                object.__setattr__(self, name, _frozen_array(value))

    def to_dict(self) -> Dict[str, Any]:
        out = {"kind": self.kind} if self.kind else {}
        phase = getattr(type(self), "statistics_phase", None)
        if phase is not None:
            out["statistics_phase"] = phase
        for f in dataclasses.fields(self):
            out[f.name] = _plain(getattr(self, f.name))
        return out

    @classmethod
    def _from_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        names = {f.name for f in dataclasses.fields(cls)}
        return {k: v for k, v in data.items() if k in names}


def message_from_dict(data: Dict[str, Any]) -> "_Message":
    """Inverse of ``to_dict`` for every broadcast and contribution."""
    kind = data.get("kind")
    if kind not in _REGISTRY:
        raise ValueError(f"Unknown message kind: {kind!r}")
    cls = _REGISTRY[kind]
    return cls(**cls._from_fields(data))


# ======================================
# Broadcasts
# ======================================
@dataclass(frozen=True)
class IterateBroadcast(_Message):
    kind: ClassVar[str] = "iterate"
    _arrays: ClassVar[Tuple[str, ...]] = ("current_w",)

    current_w: Array
    lambda_: float
    iteration: int


@dataclass(frozen=True)
class StatisticsRequest(_Message):
    """Optimisation halted; sites fit locally and report their mean of y."""

    kind: ClassVar[str] = "statistics_request"
    _arrays: ClassVar[Tuple[str, ...]] = ("current_w",)
    statistics_phase: ClassVar[int] = 0

    current_w: Array
    halt_reason: HaltReason

    def __post_init__(self):
        super().__post_init__()
        object.__setattr__(self, "halt_reason", HaltReason(self.halt_reason))


@dataclass(frozen=True)
class GlobalMeanBroadcast(_Message):
    kind: ClassVar[str] = "global_mean"
    _arrays: ClassVar[Tuple[str, ...]] = ("current_w",)
    statistics_phase: ClassVar[int] = 1

    current_w: Array
    global_mean_y: float


@dataclass(frozen=True)
class Deferred(_Message):
    """Returned instead of a reduction while some sites have not caught up."""

    kind: ClassVar[str] = "deferred"

    phase: Phase
    waiting_on: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "phase", Phase(self.phase))
        object.__setattr__(self, "waiting_on", tuple(self.waiting_on))


# ======================================
# Contributions
# ======================================
@dataclass(frozen=True)
class Kickoff(_Message):
    kind: ClassVar[str] = "kickoff"

    num_features: int
    local_count: int
    eta: float
    lambda_: float
    covariate_labels: Tuple[str, ...] = ()
    response_label: str = ""

    def __post_init__(self):
        object.__setattr__(self, "covariate_labels", tuple(self.covariate_labels))


@dataclass(frozen=True)
class GradientContribution(_Message):
    kind: ClassVar[str] = "gradient"
    _arrays: ClassVar[Tuple[str, ...]] = ("gradient",)

    gradient: Array
    objective: float
    num_features: int


@dataclass(frozen=True)
class LocalStatistics(_Message):
    kind: ClassVar[str] = "local_statistics"
    _arrays: ClassVar[Tuple[str, ...]] = ("beta_vector", "t_values", "p_values")

    num_features: int
    local_count: int
    local_mean_y: float
    beta_vector: Optional[Array]
    r_squared: float
    t_values: Array
    p_values: Array
    degrees_of_freedom: int


@dataclass(frozen=True)
class FinalStatistics(_Message):
    kind: ClassVar[str] = "final_statistics"
    _arrays: ClassVar[Tuple[str, ...]] = ("var_x", "t_values", "p_values")

    num_features: int
    local_count: int
    sse: float
    sst: float
    var_x: Array
    r_squared: float
    t_values: Array
    p_values: Array
    degrees_of_freedom: int
    original: LocalStatistics

    def __post_init__(self):
        super().__post_init__()
        if isinstance(self.original, dict):
            object.__setattr__(
                self, "original", LocalStatistics(**LocalStatistics._from_fields(self.original))
            )


# ======================================
# Final result
# ======================================
@dataclass(frozen=True)
class RegressionStatistics(_Message):
    """Coefficients and their significance on some dataset."""

    _arrays: ClassVar[Tuple[str, ...]] = ("beta_vector", "t_values", "p_values")

    beta_vector: Array
    r_squared: float
    t_values: Array
    p_values: Array
    degrees_of_freedom: int


@dataclass(frozen=True)
class SiteResult(RegressionStatistics):
    """Converged-W statistics on one site's data; ``original`` is its own fit."""

    original: Optional[RegressionStatistics] = None
    local_count: int = 0

    def __post_init__(self):
        super().__post_init__()
        if isinstance(self.original, dict):
            object.__setattr__(self, "original", _statistics_from_dict(self.original))


@dataclass(frozen=True)
class FinalResult(_Message):
    kind: ClassVar[str] = "final_result"

    global_: RegressionStatistics
    per_site: Dict[str, SiteResult]
    halt_reason: HaltReason
    iterations: int
    covariate_labels: Tuple[str, ...] = ()
    response_label: str = ""
    sse: float = 0.0
    sst: float = 0.0
    n_obs: int = 0
    complete: bool = field(default=True)

    def __post_init__(self):
        if isinstance(self.global_, dict):
            object.__setattr__(self, "global_", _statistics_from_dict(self.global_))
        object.__setattr__(
            self,
            "per_site",
            {
                str(site): (
                    SiteResult(**SiteResult._from_fields(r)) if isinstance(r, dict) else r
                )
                for site, r in self.per_site.items()
            },
        )
        object.__setattr__(self, "halt_reason", HaltReason(self.halt_reason))
        object.__setattr__(self, "covariate_labels", tuple(self.covariate_labels))

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["global"] = out.pop("global_")
        return out

    @classmethod
    def _from_fields(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        if "global" in data:
            data["global_"] = data.pop("global")
        return super()._from_fields(data)


def _statistics_from_dict(data: Dict[str, Any]) -> RegressionStatistics:
    return RegressionStatistics(**RegressionStatistics._from_fields(data))
