import dataclasses

import numpy as np
import pytest

from conftest import final_statistics, local_statistics
from fedridge.aggregator import AggregatorRoundRunner, RoundState
from fedridge.blocks.aux import HaltReason, Phase, RegressionConfig, ValidationError
from fedridge.blocks.messages import (
    Deferred,
    FinalResult,
    GlobalMeanBroadcast,
    GradientContribution,
    IterateBroadcast,
    Kickoff,
    StatisticsRequest,
)


def kickoff(n=2, count=5, lam=0.0):
    return Kickoff(num_features=n, local_count=count, eta=0.1, lambda_=lam)


def grad(g, obj, n=None):
    g = np.asarray(g, dtype=float)
    return GradientContribution(gradient=g, objective=obj, num_features=n or g.size)


@pytest.fixture
def agg():
    return AggregatorRoundRunner(RegressionConfig(initial_w=[0.0, 0.0], max_iterations=3))


@pytest.fixture
def iterating(agg):
    state, _ = agg.run(None, {"a": kickoff(), "b": kickoff()})
    return state


# ------------------------------- INIT ------------------------------------- #


def test_init_state(agg):
    state, bc = agg.run(None, {"a": kickoff(lam=0.3), "b": kickoff()})
    assert state.phase is Phase.ITERATING
    assert state.site_ids == ("a", "b")
    assert state.iteration == 1
    assert state.previous_objective == 1e15
    assert (state.rho, state.epsilon) == (0.99, 0.04)
    np.testing.assert_array_equal(state.eg2, [0.0, 0.0])
    np.testing.assert_array_equal(state.edw, [0.0, 0.0])
    assert isinstance(bc, IterateBroadcast)
    np.testing.assert_array_equal(bc.current_w, [0.0, 0.0])
    assert bc.lambda_ == 0.3


def test_init_random_start_is_seeded():
    first, _ = AggregatorRoundRunner(RegressionConfig(seed=11)).run(None, {"a": kickoff(n=4)})
    again, _ = AggregatorRoundRunner(RegressionConfig(seed=11)).run(None, {"a": kickoff(n=4)})
    assert first.current_w.shape == (4,)
    assert np.all((first.current_w >= 0) & (first.current_w < 1))
    np.testing.assert_array_equal(first.current_w, again.current_w)
    np.testing.assert_array_equal(first.previous_w, first.current_w)


def test_init_requires_a_contribution(agg):
    with pytest.raises(ValidationError, match="At least one site"):
        agg.run(None, {})


def test_init_feature_mismatch(agg):
    with pytest.raises(ValidationError) as err:
        agg.run(None, {"a": kickoff(n=2), "b": kickoff(n=3)})
    assert "Site 'b' reports 3 features, but site 'a' reports 2 features." in str(err.value)
    assert err.value.context == {"site_ids": ["a", "b"], "num_features": {"a": 2, "b": 3}}


def test_init_rejects_wrong_initial_w():
    agg = AggregatorRoundRunner(RegressionConfig(initial_w=[0.0, 0.0, 0.0]))
    with pytest.raises(ValidationError, match="initial_w has 3 entries"):
        agg.run(None, {"a": kickoff(n=2)})


# ----------------------------- ITERATING ---------------------------------- #


def test_iterating_feature_mismatch(agg, iterating):
    with pytest.raises(ValidationError, match="Site 'b' reports 3 features"):
        agg.run(iterating, {"a": grad([1.0, 1.0], 5.0), "b": grad([1.0, 1.0, 1.0], 5.0)})


def test_iterating_width_differs_from_init(agg, iterating):
    with pytest.raises(ValidationError, match="initialised with 2 features"):
        agg.run(iterating, {"a": grad([1.0, 1.0, 1.0], 5.0), "b": grad([1.0, 1.0, 1.0], 5.0)})


def test_iterating_rejects_other_payloads(agg, iterating):
    with pytest.raises(ValidationError, match="sent Kickoff"):
        agg.run(iterating, {"a": kickoff(), "b": grad([1.0, 1.0], 5.0)})


def test_iterating_requires_every_site(agg, iterating):
    with pytest.raises(ValidationError, match="missing contributions"):
        agg.run(iterating, {"a": grad([1.0, 1.0], 5.0)})


def test_continue_round_updates_state(agg, iterating):
    state, bc = agg.run(iterating, {"a": grad([1.0, -2.0], 30.0), "b": grad([1.0, 0.0], 20.0)})
    assert state.phase is Phase.ITERATING
    assert state.iteration == 2
    assert state.previous_objective == 50.0
    assert state.objective_trace == (50.0,)
    np.testing.assert_array_equal(state.gradient, [2.0, -2.0])
    # first ADADELTA step from zero accumulators
    expected = -np.sqrt(0.04) / np.sqrt(0.01 * 4.0 + 0.04) * np.array([2.0, -2.0])
    np.testing.assert_allclose(state.current_w, expected)
    np.testing.assert_allclose(state.previous_w, expected)
    assert isinstance(bc, IterateBroadcast)
    assert bc.iteration == 2
    # the input state is untouched
    assert iterating.iteration == 1
    np.testing.assert_array_equal(iterating.current_w, [0.0, 0.0])


def test_gradient_descent_optimizer():
    agg = AggregatorRoundRunner(RegressionConfig(optimizer="gd", initial_w=[1.0, 1.0]))
    state, _ = agg.run(None, {"a": kickoff()})
    state, _ = agg.run(state, {"a": grad([2.0, -4.0], 10.0)})
    np.testing.assert_allclose(state.current_w, [0.8, 1.4])
    np.testing.assert_array_equal(state.eg2, [0.0, 0.0])


@pytest.mark.parametrize(
    "previous, objective, g, iteration, reason",
    [
        # objective went up: divergence wins over everything else
        (10.0, 11.0, [1e-6, 0.0], 3, HaltReason.DIVERGENCE),
        # small gradient wins over the iteration cap
        (10.0, 9.0, [1e-4, 1e-4], 3, HaltReason.CONVERGED),
        (10.0, 9.0, [1.0, 1.0], 3, HaltReason.MAX_ITERATIONS),
        (10.0, 9.0, [1.0, 1.0], 5, HaltReason.MAX_ITERATIONS),
        (10.0, float("nan"), [1.0, 1.0], 1, HaltReason.NON_FINITE),
        (10.0, 9.0, [np.inf, 1.0], 1, HaltReason.NON_FINITE),
    ],
)
def test_halting_order(agg, iterating, previous, objective, g, iteration, reason):
    state = iterating.replace(previous_objective=previous, iteration=iteration)
    new, bc = agg.run(state, {"a": grad(g, objective), "b": grad([0.0, 0.0], 0.0)})
    assert new.phase is Phase.HALTED_AWAITING_MEANY
    assert new.halt_reason is reason
    assert isinstance(bc, StatisticsRequest)
    assert bc.halt_reason is reason
    assert bc.statistics_phase == 0
    np.testing.assert_array_equal(bc.current_w, new.current_w)
    assert new.iteration == iteration


def test_equal_objective_is_not_divergence(agg, iterating):
    state = iterating.replace(previous_objective=10.0)
    new, bc = agg.run(state, {"a": grad([1.0, 1.0], 6.0), "b": grad([1.0, 1.0], 4.0)})
    assert new.phase is Phase.ITERATING
    assert isinstance(bc, IterateBroadcast)


# ------------------------ statistics phase 0 ------------------------------ #


@pytest.fixture
def halted(iterating):
    return iterating.replace(
        phase=Phase.HALTED_AWAITING_MEANY,
        halt_reason=HaltReason.CONVERGED,
        current_w=[1.0, 2.0],
    )


def test_early_statistics_are_deferred(agg, halted):
    for contributions in (
        {"a": local_statistics(), "b": None},
        {"a": local_statistics()},
        {"a": local_statistics(), "b": grad([1.0, 1.0], 2.0)},
    ):
        state, bc = agg.run(halted, contributions)
        assert state is halted
        assert isinstance(bc, Deferred)
        assert bc.phase is Phase.HALTED_AWAITING_MEANY
        assert bc.waiting_on == ("b",)


def test_missing_beta_vector_is_deferred(agg, halted):
    lagging = dataclasses.replace(local_statistics(), beta_vector=None)
    state, bc = agg.run(halted, {"a": local_statistics(), "b": lagging})
    assert isinstance(bc, Deferred)
    assert bc.waiting_on == ("b",)


def test_global_mean_is_count_weighted(agg, halted):
    state, bc = agg.run(
        halted,
        {
            "a": local_statistics(local_count=100, local_mean_y=10.0),
            "b": local_statistics(local_count=50, local_mean_y=20.0),
        },
    )
    assert state.phase is Phase.HALTED_AWAITING_FINAL_STATS
    assert isinstance(bc, GlobalMeanBroadcast)
    assert bc.statistics_phase == 1
    assert bc.global_mean_y == pytest.approx(40.0 / 3.0)
    np.testing.assert_array_equal(bc.current_w, [1.0, 2.0])


def test_statistics_phase_feature_mismatch(agg, halted):
    with pytest.raises(ValidationError, match="reports 3 features"):
        agg.run(halted, {"a": local_statistics(), "b": local_statistics(num_features=3)})


# ------------------------ statistics phase 1 ------------------------------ #


@pytest.fixture
def awaiting_final(halted):
    return halted.replace(phase=Phase.HALTED_AWAITING_FINAL_STATS, global_mean_y=5.0)


def _final_contributions():
    return {
        "a": final_statistics(local_count=100, sse=50.0, sst=200.0, var_x=[100.0, 4.0]),
        "b": final_statistics(local_count=50, sse=24.0, sst=96.0, var_x=[100.0, 4.0]),
    }


def test_final_reduction(agg, awaiting_final):
    state, result = agg.run(awaiting_final, _final_contributions())
    assert state.phase is Phase.COMPLETE
    assert isinstance(result, FinalResult)
    assert result.complete
    g = result.global_
    np.testing.assert_array_equal(g.beta_vector, [1.0, 2.0])
    # varError = 74/148 = 0.5, se = sqrt(0.5/[200, 8]) = [0.05, 0.25]
    np.testing.assert_allclose(g.t_values, [20.0, 8.0])
    assert g.r_squared == pytest.approx(0.75)
    assert g.degrees_of_freedom == 148
    assert result.per_site["a"].degrees_of_freedom == 98
    assert result.per_site["b"].degrees_of_freedom == 48
    assert (result.sse, result.sst, result.n_obs) == (74.0, 296.0, 150)
    assert result.halt_reason is HaltReason.CONVERGED
    assert result.per_site["a"].original.degrees_of_freedom == 98


def test_final_reduction_deferred(agg, awaiting_final):
    contributions = _final_contributions()
    contributions["a"] = local_statistics(local_count=100)
    state, bc = agg.run(awaiting_final, contributions)
    assert state is awaiting_final
    assert isinstance(bc, Deferred)
    assert bc.waiting_on == ("a",)


def test_reduction_ignores_site_order(agg, halted, awaiting_final):
    means = {
        "a": local_statistics(local_count=7, local_mean_y=1.1),
        "b": local_statistics(local_count=13, local_mean_y=2.3),
        "c": local_statistics(local_count=5, local_mean_y=-0.7),
    }
    halted = halted.replace(site_ids=("a", "b", "c"))
    _, forward = agg.run(halted, means)
    _, backward = agg.run(halted, dict(reversed(list(means.items()))))
    assert forward.global_mean_y == backward.global_mean_y

    finals = {
        "a": final_statistics(local_count=7, sse=1.3, sst=9.1, var_x=[3.1, 7.0]),
        "b": final_statistics(local_count=13, sse=2.7, sst=4.4, var_x=[5.9, 13.0]),
        "c": final_statistics(local_count=5, sse=0.3, sst=1.9, var_x=[0.2, 5.0]),
    }
    awaiting_final = awaiting_final.replace(site_ids=("a", "b", "c"))
    _, r1 = agg.run(awaiting_final, finals)
    _, r2 = agg.run(awaiting_final, dict(reversed(list(finals.items()))))
    assert r1.to_dict() == r2.to_dict()


def test_complete_run_accepts_no_more_rounds(agg, awaiting_final):
    state, _ = agg.run(awaiting_final, _final_contributions())
    with pytest.raises(ValidationError, match="already complete"):
        agg.run(state, _final_contributions())


# ----------------------------- round state -------------------------------- #


def test_round_state_is_transportable(agg, iterating):
    state, _ = agg.run(iterating, {"a": grad([1.0, -2.0], 30.0), "b": grad([1.0, 0.0], 20.0)})
    payload = state.to_dict()
    assert payload["phase"] == "iterating"
    assert isinstance(payload["current_w"], list)
    restored = RoundState.from_dict(payload)
    assert restored.phase is Phase.ITERATING
    assert restored.objective_trace == state.objective_trace
    np.testing.assert_array_equal(restored.eg2, state.eg2)
    np.testing.assert_array_equal(restored.current_w, state.current_w)


def test_round_state_arrays_are_read_only(iterating):
    with pytest.raises(ValueError):
        iterating.current_w[0] = 5.0


# --------------------------- site membership ------------------------------ #


def test_iterating_rejects_site_that_never_joined(agg, iterating):
    with pytest.raises(ValidationError, match="did not join the run") as err:
        agg.run(
            iterating,
            {
                "a": grad([1.0, 1.0], 1.0),
                "b": grad([1.0, 1.0], 1.0),
                "intruder": grad([100.0, 100.0], 1.0),
            },
        )
    assert err.value.context["site_ids"] == ["intruder"]


def test_mean_y_rejects_site_that_never_joined(agg, halted):
    with pytest.raises(ValidationError, match="did not join the run") as err:
        agg.run(
            halted,
            {
                "a": local_statistics(local_count=10, local_mean_y=1.0),
                "b": local_statistics(local_count=10, local_mean_y=1.0),
                "intruder": local_statistics(local_count=1000, local_mean_y=50.0),
            },
        )
    assert err.value.context["site_ids"] == ["intruder"]


def test_final_reduction_rejects_site_that_never_joined(agg, awaiting_final):
    contributions = _final_contributions()
    contributions["intruder"] = final_statistics(local_count=30)
    with pytest.raises(ValidationError, match="did not join the run") as err:
        agg.run(awaiting_final, contributions)
    assert err.value.context == {"site_ids": ["intruder"], "registered": ["a", "b"]}
