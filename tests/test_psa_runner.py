import json

import numpy as np
import pandas as pd
import pytest

from model_config import ModelConfig, default_config
from model_errors import ConfigurationError, InvalidPriorError, InvalidTransitionError
from parameter_sampler import to_parameter_sets
from psa_runner import PSARunner


@pytest.fixture
def runner():
    return PSARunner(default_config().with_overrides(samples=300, cycles=15))


def test_worked_example_end_to_end(worked_config):
    result = PSARunner(worked_config).run()

    assert len(result) == 5
    assert np.allclose(result.costs, 763.0)
    assert np.allclose(result.effects, 1.715)
    assert result.valid.all()
    assert result.failures == {}


def test_same_seed_same_output(runner):
    a = runner.run(seed=42)
    b = runner.run(seed=42)
    assert np.array_equal(a.costs, b.costs)
    assert np.array_equal(a.effects, b.effects)


def test_seed_changes_output(runner):
    a = runner.run(seed=1)
    b = runner.run(seed=2)
    assert not np.allclose(a.costs, b.costs)


@pytest.mark.parametrize("execution", ["sequential", "parallel"])
def test_strategies_agree(runner, execution):
    batched = runner.run(seed=5, execution="batched")
    other = runner.run(seed=5, execution=execution)
    assert np.allclose(batched.costs, other.costs, rtol=1e-12)
    assert np.allclose(batched.effects, other.effects, rtol=1e-12)


def test_outputs_follow_sample_order(runner):
    result = runner.run(n=20, seed=11)
    sets = to_parameter_sets(result.parameters)

    for i in (0, 7, 19):
        outcome = runner.evaluate(sets[i])[0]
        assert result.costs[i] == pytest.approx(outcome.cost)
        assert result.effects[i] == pytest.approx(outcome.effect)


def test_results_are_plausible(runner):
    result = runner.run()
    assert np.isfinite(result.costs).all()
    assert (result.costs > 0).all()
    # at most one QALY per cycle, plus cycle 0
    assert (result.effects < 16).all()


@pytest.mark.parametrize("execution", ["batched", "sequential", "parallel"])
def test_skip_policy_records_failures(uncertain_raw, execution):
    uncertain_raw["execution"] = execution
    uncertain_raw["workers"] = 4
    result = PSARunner(ModelConfig.from_dict(uncertain_raw)).run()

    overfull = (result.parameters["p_HS"] + result.parameters["p_HD"] > 1).to_numpy()
    assert overfull.any() and not overfull.all()
    assert np.array_equal(~result.valid, overfull)
    assert sorted(result.failures) == list(np.flatnonzero(overfull))
    assert np.isnan(result.costs[overfull]).all()
    assert np.isfinite(result.costs[~overfull]).all()

    costs, effects = result.successful()
    assert len(costs) == len(effects) == (~overfull).sum()
    assert not np.isnan(costs).any()


@pytest.mark.parametrize("execution", ["batched", "sequential", "parallel"])
def test_abort_policy_raises_first_failure(uncertain_raw, execution):
    uncertain_raw["execution"] = execution
    uncertain_raw["on_failure"] = "abort"
    config = ModelConfig.from_dict(uncertain_raw)
    runner = PSARunner(config)

    drawn = runner.sampler.draw(config.samples, np.random.default_rng(config.seed))
    first = int(np.flatnonzero((drawn["p_HS"] + drawn["p_HD"] > 1).to_numpy())[0])

    with pytest.raises(InvalidTransitionError) as info:
        runner.run()
    assert info.value.sample == first
    assert info.value.state == "Healthy"


def test_overfull_row_never_reaches_output(worked_raw):
    worked_raw["priors"]["p_HS"] = {"family": "fixed", "params": {"value": 0.7}}
    worked_raw["priors"]["p_HD"] = {"family": "fixed", "params": {"value": 0.5}}
    worked_raw["on_failure"] = "skip"
    result = PSARunner(ModelConfig.from_dict(worked_raw)).run()

    assert not result.valid.any()
    assert len(result.failures) == 5
    assert len(result.successful()[0]) == 0
    assert result.summary().loc["Cost", "n"] == 0


def test_invalid_prior_fails_before_any_sample(worked_raw):
    worked_raw["priors"]["p_SD"] = {"family": "normal", "params": {"mean": 0.4, "sd": 0.1}}
    with pytest.raises(InvalidPriorError):
        PSARunner(ModelConfig.from_dict(worked_raw))


def test_bad_run_arguments(worked_config):
    runner = PSARunner(worked_config)
    with pytest.raises(ConfigurationError):
        runner.run(n=0)
    with pytest.raises(ConfigurationError):
        runner.run(execution="gpu")


def test_summary(runner):
    summary = runner.run().summary()
    assert list(summary.index) == ["Cost", "QALY"]
    cost = summary.loc["Cost"]
    assert cost["lower"] < cost["mean"] < cost["upper"]
    assert cost["n"] == 300


def test_save_writes_outcomes_and_config(tmp_path, worked_config):
    result = PSARunner(worked_config).run()
    result.save(str(tmp_path))

    outcomes = (tmp_path / "psa_outcomes.csv").read_text(encoding="utf-8").splitlines()
    assert outcomes[0] == "sample,cost,effect,valid,failure"
    assert len(outcomes) == 6

    saved = json.loads((tmp_path / "psa_config.json").read_text(encoding="utf-8"))
    assert saved["seed"] == worked_config.seed
    assert saved["samples"] == 5
    assert ModelConfig.from_dict(saved) == result.config


def test_base_case(worked_config):
    outcome, annual = PSARunner(worked_config).base_case()
    assert outcome.cost == pytest.approx(763.0)
    assert outcome.effect == pytest.approx(1.715)
    assert len(annual) == 3
    assert annual["QALY"].sum() == pytest.approx(1.715)


def test_non_finite_cost_or_utility_stops_before_sampling(worked_raw):
    raw = dict(worked_raw, costs={"Healthy": float("nan"), "Sick": 100, "Dead": 0})
    with pytest.raises(ConfigurationError):
        PSARunner(ModelConfig.from_dict(raw)).run()

    worked_raw["utilities"] = {"Healthy": 0.8, "Sick": "u_S", "Dead": 0}
    worked_raw["priors"]["u_S"] = {"family": "normal", "params": {"mean": float("nan"), "sd": 0.1}}
    with pytest.raises(InvalidPriorError):
        PSARunner(ModelConfig.from_dict(worked_raw))


def test_fixed_overfull_row_is_a_configuration_error(worked_raw):
    worked_raw["transitions"] = {"Healthy": {"Sick": 0.7, "Dead": 0.5}, "Sick": {"Dead": "p_SD"}}
    worked_raw["on_failure"] = "skip"
    with pytest.raises(ConfigurationError):
        PSARunner(ModelConfig.from_dict(worked_raw)).run()


def _leak_at(runner, monkeypatch, bad):
    """Make sample `bad` get a matrix whose Healthy row only sums to 0.9."""
    build_batch = runner.builder.build_batch

    def leaky_batch(frame):
        matrices, errors = build_batch(frame)
        matrices = matrices.copy()
        for k, label in enumerate(frame.index):
            if label == bad:
                matrices[k, 0, 0] -= 0.1
        return matrices, errors

    def leaky_build(params):
        matrices, errors = leaky_batch(pd.DataFrame([params.values], index=[params.index]))
        if errors:
            raise errors[0]
        return matrices[0]

    monkeypatch.setattr(runner.builder, "build_batch", leaky_batch)
    monkeypatch.setattr(runner.builder, "build", leaky_build)


@pytest.mark.parametrize("execution", ["batched", "sequential"])
def test_mass_loss_follows_skip_policy(worked_raw, monkeypatch, execution):
    worked_raw["on_failure"] = "skip"
    runner = PSARunner(ModelConfig.from_dict(worked_raw))
    _leak_at(runner, monkeypatch, 2)

    result = runner.run(execution=execution)
    assert result.valid.tolist() == [True, True, False, True, True]
    assert list(result.failures) == [2]
    assert np.isnan(result.costs[2])
    assert np.allclose(result.costs[result.valid], 763.0)


@pytest.mark.parametrize("execution", ["batched", "sequential"])
def test_mass_loss_follows_abort_policy(worked_config, monkeypatch, execution):
    runner = PSARunner(worked_config)
    _leak_at(runner, monkeypatch, 3)

    with pytest.raises(InvalidTransitionError) as info:
        runner.run(execution=execution)
    assert info.value.sample == 3
