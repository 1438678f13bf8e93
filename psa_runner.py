"""
psa_runner.py

Probabilistic sensitivity analysis over the Markov cohort model.

All parameter sets are drawn up front from one seeded generator; the
per-sample pipeline (build matrix -> project cohort -> accumulate outcomes)
then runs under one of three execution strategies:
  - batched:    vectorized across samples, in chunks
  - sequential: one sample at a time
  - parallel:   one sample at a time on a thread pool, each worker owning a
                contiguous slice of sample indices
All three give the same outputs for the same seed.

Failure policy (config.on_failure):
  - abort: the lowest-index failing sample's InvalidTransitionError is raised
           and no result is returned
  - skip:  failing samples are left as NaN, flagged invalid and recorded in
           `failures`; the rest of the batch still runs
Both an invalid transition row and a cohort trace that loses probability
mass count as a failing sample.
"""

import json
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Optional

import numpy as np
import pandas as pd
from loguru import logger

from markov_model import (
    CohortProjector,
    OutcomeAccumulator,
    StateSpace,
    TransitionMatrixBuilder,
    cycle_table,
    discount_weights,
    state_vectors,
)
from model_config import ModelConfig
from model_errors import InvalidTransitionError
from parameter_sampler import ParameterSampler, to_parameter_sets

# Samples projected at once by the batched strategy
BATCH_CHUNK = 10_000


@dataclass
class PSAResult:
    """Per-sample discounted costs and effects, index i = i-th parameter set drawn."""
    name: str
    costs: np.ndarray
    effects: np.ndarray
    valid: np.ndarray
    parameters: pd.DataFrame
    config: ModelConfig
    failures: Dict[int, str] = field(default_factory=dict)

    def __len__(self):
        return len(self.costs)

    def successful(self):
        """Costs and effects of the samples that completed."""
        return self.costs[self.valid], self.effects[self.valid]

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame({
            "sample": np.arange(len(self.costs)),
            "cost": self.costs,
            "effect": self.effects,
            "valid": self.valid,
        })
        frame["failure"] = frame["sample"].map(self.failures)
        return frame

    def summary(self) -> pd.DataFrame:
        """Mean, standard deviation and 95% interval of valid samples."""
        rows = {}
        for label, values in zip(("Cost", "QALY"), self.successful()):
            if len(values) == 0:
                rows[label] = {"mean": np.nan, "sd": np.nan, "lower": np.nan, "upper": np.nan, "n": 0}
                continue
            rows[label] = {
                "mean": float(np.mean(values)),
                "sd": float(np.std(values, ddof=1)) if len(values) > 1 else 0.0,
                "lower": float(np.percentile(values, 2.5)),
                "upper": float(np.percentile(values, 97.5)),
                "n": int(len(values)),
            }
        return pd.DataFrame(rows).T

    def save(self, directory: str) -> None:
        """Write the outcome table and the configuration that produced it."""
        os.makedirs(directory, exist_ok=True)
        self.to_frame().to_csv(os.path.join(directory, "psa_outcomes.csv"), index=False)
        with open(os.path.join(directory, "psa_config.json"), "w", encoding="utf-8") as f:
            json.dump(self.config.model_dump(), f, indent=2)
        logger.info(f"Saved {len(self)} PSA outcomes to {directory}")


class PSARunner:
    """
    Runs the sampler -> builder -> projector -> accumulator pipeline for
    every sample. Configuration problems surface here, before any sample runs.
    """

    def __init__(self, config: ModelConfig):
        config.check()
        self.config = config
        self.state_space = StateSpace.of(config.states)
        self.sampler = ParameterSampler(config.priors, config.probability_parameters())
        self.builder = TransitionMatrixBuilder(self.state_space, config.transitions)
        self.projector = CohortProjector()
        self.accumulator = OutcomeAccumulator()
        self.initial = np.asarray(config.initial_distribution())

    def run(self, n: Optional[int] = None, seed: Optional[int] = None,
            execution: Optional[str] = None) -> PSAResult:
        config = self.config.with_overrides(samples=n, seed=seed, execution=execution)
        n = config.samples
        weights = discount_weights(config.cycles, config.discount_rate)

        logger.info(f"PSA '{config.name}': {n} samples, {config.cycles} cycles, "
                    f"strategy={config.execution}, on_failure={config.on_failure}")
        start = time.perf_counter()

        frame = self.sampler.draw(n, np.random.default_rng(config.seed))
        costs = np.full(n, np.nan)
        effects = np.full(n, np.nan)
        stop_early = config.on_failure == "abort"

        if config.execution == "batched":
            failures = self._run_batched(frame, weights, costs, effects, stop_early)
        elif config.execution == "sequential":
            failures = self._run_slice(frame, np.arange(n), weights, costs, effects, stop_early)
        else:
            failures = self._run_parallel(frame, weights, costs, effects, stop_early, config.workers)

        if failures and stop_early:
            first = min(failures)
            logger.error(f"PSA aborted at sample {first}: {failures[first]}")
            raise failures[first]

        valid = np.ones(n, dtype=bool)
        valid[list(failures)] = False
        if failures:
            logger.warning(f"Skipped {len(failures)} of {n} samples with invalid transitions")
        logger.info(f"PSA '{config.name}' finished in {time.perf_counter() - start:.3f}s")

        return PSAResult(
            name=config.name,
            costs=costs,
            effects=effects,
            valid=valid,
            parameters=frame,
            config=config,
            failures={i: str(exc) for i, exc in sorted(failures.items())},
        )

    def evaluate(self, params):
        """
        Full pipeline for one ParameterSet.
        Returns (SampleOutcome, trace, cost vector, utility vector).
        """
        frame = pd.DataFrame([dict(params.values)])
        weights = discount_weights(self.config.cycles, self.config.discount_rate)

        matrix = self.builder.build(params)
        trace = self.projector.project(matrix, self.initial, self.config.cycles)
        cost = state_vectors(self.state_space, self.config.costs, frame)[0]
        utility = state_vectors(self.state_space, self.config.utilities, frame)[0]
        return self.accumulator.accumulate(trace, cost, utility, weights), trace, cost, utility

    def base_case(self):
        """Single deterministic run at the prior means: (SampleOutcome, per-cycle table)."""
        outcome, trace, cost, utility = self.evaluate(self.sampler.means())
        weights = discount_weights(self.config.cycles, self.config.discount_rate)
        return outcome, cycle_table(trace, cost, utility, weights, self.state_space)

    # --------------------------------------------------------------------------------
    # Execution strategies
    # --------------------------------------------------------------------------------
    def _run_batched(self, frame, weights, costs, effects, stop_early):
        failures = {}
        for lo in range(0, len(frame), BATCH_CHUNK):
            chunk = frame.iloc[lo:lo + BATCH_CHUNK]
            matrices, errors = self.builder.build_batch(chunk)
            failures.update({lo + k: exc for k, exc in errors.items()})
            if failures and stop_early:
                return failures

            ok = np.ones(len(chunk), dtype=bool)
            ok[list(errors)] = False
            if not ok.any():
                continue
            positions = np.flatnonzero(ok)
            traces = self.projector.project_batch(
                matrices[positions], self.initial, self.config.cycles, check=False)

            leaking = self.projector.leaking_samples(traces)
            for k in positions[leaking]:
                failures[lo + int(k)] = InvalidTransitionError(
                    "Cohort trace lost probability mass", sample=lo + int(k))
            if leaking.any() and stop_early:
                return failures
            positions = positions[~leaking]

            c, e = self.accumulator.accumulate_batch(
                traces[~leaking],
                state_vectors(self.state_space, self.config.costs, chunk)[positions],
                state_vectors(self.state_space, self.config.utilities, chunk)[positions],
                weights,
            )
            idx = lo + positions
            costs[idx] = c
            effects[idx] = e
        return failures

    def _run_slice(self, frame, indices, weights, costs, effects, stop_early):
        """Per-sample pipeline over `indices`; writes only at those indices."""
        failures = {}
        if len(indices) == 0:
            return failures
        part = frame.iloc[indices[0]:indices[-1] + 1]
        cost_vectors = state_vectors(self.state_space, self.config.costs, part)
        utility_vectors = state_vectors(self.state_space, self.config.utilities, part)

        for k, params in enumerate(to_parameter_sets(part)):
            i = int(indices[k])
            try:
                matrix = self.builder.build(params)
                trace = self.projector.project(matrix, self.initial, self.config.cycles)
            except InvalidTransitionError as exc:
                failures[i] = InvalidTransitionError(str(exc), state=exc.state, sample=i)
                if stop_early:
                    break
                continue
            outcome = self.accumulator.accumulate(trace, cost_vectors[k], utility_vectors[k], weights)
            costs[i] = outcome.cost
            effects[i] = outcome.effect
        return failures

    def _run_parallel(self, frame, weights, costs, effects, stop_early, workers):
        workers = workers or os.cpu_count() or 1
        slices = [s for s in np.array_split(np.arange(len(frame)), workers) if len(s)]
        logger.debug(f"Running {len(frame)} samples on {len(slices)} workers")

        failures = {}
        with ThreadPoolExecutor(max_workers=len(slices)) as pool:
            futures = [pool.submit(self._run_slice, frame, s, weights, costs, effects, stop_early)
                       for s in slices]
            for future in futures:
                failures.update(future.result())
        return failures
