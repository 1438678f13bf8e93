"""
markov_model.py

Markov cohort model for cost-effectiveness analysis under parameter uncertainty.
This module includes:
  - The ordered state space shared by every vector and matrix
  - Discount weights (1 + r)^-t for each cycle
  - A transition matrix builder driven by a row-defined topology
  - A cohort projector that runs the trace recurrence for one or many samples
  - An outcome accumulator for discounted costs and QALYs

Every batched operation works on a leading sample axis; the single-sample
operations are the batched ones applied to a batch of one.
"""

from dataclasses import dataclass
from typing import Dict, Mapping, Sequence, Tuple

import numpy as np
import pandas as pd

from model_errors import ConfigurationError, DimensionMismatchError, InvalidTransitionError

# Rounding slack for row sums and derived diagonals
TOLERANCE = 1e-9


# --------------------------------------------------------------------------------
# State space and discounting
# --------------------------------------------------------------------------------
@dataclass(frozen=True)
class StateSpace:
    """Ordered health states. Position in `names` is the vector/matrix index."""
    names: Tuple[str, ...]

    def __post_init__(self):
        if not self.names:
            raise ConfigurationError("State space is empty")
        if len(set(self.names)) != len(self.names):
            raise ConfigurationError(f"Duplicate state names in {self.names}")

    @classmethod
    def of(cls, names: Sequence[str]) -> "StateSpace":
        return cls(tuple(names))

    @property
    def size(self) -> int:
        return len(self.names)

    def index(self, name: str) -> int:
        try:
            return self.names.index(name)
        except ValueError:
            raise ConfigurationError(f"Unknown state '{name}'") from None

    def one_hot(self, name: str) -> np.ndarray:
        vec = np.zeros(self.size)
        vec[self.index(name)] = 1.0
        return vec


def discount_weights(cycles: int, rate: float) -> np.ndarray:
    """Weights for cycles 0..cycles; cycle 0 is undiscounted."""
    if cycles < 0:
        raise ConfigurationError(f"Cycle count must be >= 0, got {cycles}")
    if not rate >= 0:
        raise ConfigurationError(f"Discount rate must be >= 0, got {rate}")
    weights = 1.0 / (1.0 + rate) ** np.arange(cycles + 1)
    weights.setflags(write=False)
    return weights


def _resolve(ref, frame: pd.DataFrame) -> np.ndarray:
    """Column of sampled values for a parameter name, or a literal broadcast."""
    if isinstance(ref, str):
        if ref not in frame.columns:
            raise ConfigurationError(f"Parameter '{ref}' is not in the parameter set")
        return frame[ref].to_numpy(dtype=float)
    return np.full(len(frame), float(ref))


def _as_frame(parameter_set) -> pd.DataFrame:
    """One-row frame from a ParameterSet or a plain name -> value mapping."""
    if isinstance(parameter_set, Mapping):
        return pd.DataFrame([dict(parameter_set)], index=[0])
    return pd.DataFrame([dict(parameter_set.values)], index=[parameter_set.index])


def state_vectors(state_space: StateSpace, table: Mapping, frame: pd.DataFrame) -> np.ndarray:
    """
    Per-sample value for each state, shape (n, S).
    `table` maps state -> parameter name or literal, e.g. costs or utilities.
    """
    out = np.zeros((len(frame), state_space.size))
    for state, ref in table.items():
        out[:, state_space.index(state)] = _resolve(ref, frame)
    return out


# --------------------------------------------------------------------------------
# Transition matrix
# --------------------------------------------------------------------------------
class TransitionMatrixBuilder:
    """
    Builds row-stochastic matrices from sampled parameters.

    transitions maps each source state to {destination: parameter name or
    probability}. Only off-diagonal moves are listed; the stay probability is
    whatever is left of the row. States with no entry are absorbing.
    """

    def __init__(self, state_space: StateSpace, transitions: Mapping[str, Mapping]):
        self.state_space = state_space
        self.rows = []
        for source, row in transitions.items():
            i = state_space.index(source)
            moves = []
            for dest, ref in row.items():
                j = state_space.index(dest)
                if i == j:
                    raise ConfigurationError(
                        f"Self-transition for '{source}' is derived, do not list it")
                moves.append((j, ref))
            self.rows.append((i, moves))

    def build_batch(self, frame: pd.DataFrame) -> Tuple[np.ndarray, Dict[int, InvalidTransitionError]]:
        """
        One matrix per row of `frame`, shape (n, S, S), plus the errors found,
        keyed by position. Matrices at error positions must not be used.
        """
        n = len(frame)
        size = self.state_space.size
        matrices = np.zeros((n, size, size))
        # absorbing rows by default, overwritten below for rows with moves
        matrices[:, np.arange(size), np.arange(size)] = 1.0
        errors = {}

        for i, moves in self.rows:
            state = self.state_space.names[i]
            outgoing = np.zeros(n)
            for j, ref in moves:
                p = _resolve(ref, frame)
                bad = ~((p >= 0.0) & (p <= 1.0))
                for k in np.flatnonzero(bad):
                    errors.setdefault(int(k), InvalidTransitionError(
                        f"Probability {state} -> {self.state_space.names[j]} is {p[k]}",
                        state=state, sample=frame.index[k]))
                matrices[:, i, j] = p
                outgoing += p

            stay = 1.0 - outgoing
            for k in np.flatnonzero(stay < -TOLERANCE):
                errors.setdefault(int(k), InvalidTransitionError(
                    f"Outgoing probabilities from '{state}' sum to {outgoing[k]:.6g} > 1",
                    state=state, sample=frame.index[k]))
            # rounding noise only; real violations are reported above
            stay[(stay < 0) & (stay >= -TOLERANCE)] = 0.0
            matrices[:, i, i] = stay

        matrices.setflags(write=False)
        return matrices, errors

    def build(self, parameter_set) -> np.ndarray:
        """Matrix for a single ParameterSet (or plain mapping of values)."""
        matrices, errors = self.build_batch(_as_frame(parameter_set))
        if errors:
            raise errors[0]
        check_row_stochastic(matrices[0])
        return matrices[0]


def check_row_stochastic(matrix: np.ndarray) -> None:
    """Raise InvalidTransitionError unless every row is a probability distribution."""
    matrix = np.asarray(matrix, dtype=float)
    if matrix.ndim != 2 or matrix.shape[0] != matrix.shape[1]:
        raise DimensionMismatchError(f"Transition matrix must be square, got {matrix.shape}")
    if (matrix < 0).any() or (matrix > 1).any():
        raise InvalidTransitionError("Transition matrix has entries outside [0, 1]")
    sums = matrix.sum(axis=1)
    bad = np.flatnonzero(np.abs(sums - 1.0) > TOLERANCE)
    if bad.size:
        raise InvalidTransitionError(f"Row {int(bad[0])} sums to {sums[bad[0]]}")


# --------------------------------------------------------------------------------
# Cohort projection
# --------------------------------------------------------------------------------
class CohortProjector:
    """
    Runs trace[t+1] = trace[t] @ M for a fixed number of cycles.
    Stateless; the recurrence over cycles is sequential, samples are vectorized.
    """

    def project_batch(self, matrices: np.ndarray, initial, cycles: int, check: bool = True) -> np.ndarray:
        """
        Traces of shape (n, cycles + 1, S) for matrices of shape (n, S, S).
        With check=False, mass drift is left for the caller to inspect with
        `leaking_samples`.
        """
        matrices = np.asarray(matrices, dtype=float)
        if matrices.ndim != 3 or matrices.shape[1] != matrices.shape[2]:
            raise DimensionMismatchError(
                f"Expected a stack of square matrices, got shape {matrices.shape}")
        if cycles < 0:
            raise ConfigurationError(f"Cycle count must be >= 0, got {cycles}")
        n, size, _ = matrices.shape
        initial = self._initial(initial, size)

        trace = np.empty((n, cycles + 1, size))
        trace[:, 0, :] = initial
        for t in range(cycles):
            # inflow to each destination from every source state
            trace[:, t + 1, :] = np.einsum("ns,nsd->nd", trace[:, t, :], matrices)

        if check:
            self._check_mass(trace)
        return trace

    def project(self, matrix: np.ndarray, initial, cycles: int) -> np.ndarray:
        """Trace of shape (cycles + 1, S) for one matrix."""
        matrix = np.asarray(matrix, dtype=float)
        if matrix.ndim != 2:
            raise DimensionMismatchError(f"Expected a square matrix, got shape {matrix.shape}")
        return self.project_batch(matrix[np.newaxis], initial, cycles)[0]

    @staticmethod
    def _initial(initial, size):
        initial = np.asarray(initial, dtype=float)
        if initial.shape != (size,):
            raise DimensionMismatchError(
                f"Initial distribution has shape {initial.shape}, expected ({size},)")
        if (initial < 0).any() or abs(initial.sum() - 1.0) > TOLERANCE:
            raise ConfigurationError("Initial distribution must be non-negative and sum to 1")
        return initial

    @staticmethod
    def leaking_samples(traces: np.ndarray) -> np.ndarray:
        """Boolean mask over the sample axis of traces that gained or lost mass."""
        drift = np.abs(traces.sum(axis=-1) - 1.0)
        return (drift > TOLERANCE).any(axis=-1) | (traces < -TOLERANCE).any(axis=(-2, -1))

    @classmethod
    def _check_mass(cls, trace):
        if cls.leaking_samples(trace).any():
            drift = np.abs(trace.sum(axis=-1) - 1.0)
            raise InvalidTransitionError(
                f"Cohort trace lost probability mass (max drift {drift.max():.3g}); "
                f"transition matrix is not row-stochastic")


# --------------------------------------------------------------------------------
# Outcomes
# --------------------------------------------------------------------------------
@dataclass(frozen=True)
class SampleOutcome:
    cost: float
    effect: float


class OutcomeAccumulator:
    """Discounted totals: sum over t of weights[t] * (trace[t] . values)."""

    def accumulate_batch(self, traces, costs, utilities, weights) -> Tuple[np.ndarray, np.ndarray]:
        """
        traces (n, T+1, S); costs and utilities (n, S) or (S,); weights (T+1,).
        Returns discounted total cost and effectiveness, each of shape (n,).
        """
        traces = np.asarray(traces, dtype=float)
        weights = np.asarray(weights, dtype=float)
        n, length, size = traces.shape
        if weights.shape != (length,):
            raise DimensionMismatchError(
                f"Discount weights have shape {weights.shape}, trace has {length} cycles")
        costs = self._per_sample(costs, n, size, "cost")
        utilities = self._per_sample(utilities, n, size, "utility")

        cycle_costs = np.einsum("nts,ns->nt", traces, costs)
        cycle_effects = np.einsum("nts,ns->nt", traces, utilities)
        return cycle_costs @ weights, cycle_effects @ weights

    def accumulate(self, trace, costs, utilities, weights) -> SampleOutcome:
        trace = np.asarray(trace, dtype=float)
        if trace.ndim != 2:
            raise DimensionMismatchError(f"Expected a (cycles, states) trace, got {trace.shape}")
        total_cost, total_effect = self.accumulate_batch(trace[np.newaxis], costs, utilities, weights)
        return SampleOutcome(float(total_cost[0]), float(total_effect[0]))

    @staticmethod
    def _per_sample(values, n, size, label):
        values = np.asarray(values, dtype=float)
        if values.shape[-1:] != (size,) or values.ndim > 2 or (
                values.ndim == 2 and values.shape[0] != n):
            raise DimensionMismatchError(
                f"{label} values have shape {values.shape}, expected ({size},) or ({n}, {size})")
        return np.broadcast_to(values, (n, size))


def cycle_table(trace, costs, utilities, weights, state_space: StateSpace) -> pd.DataFrame:
    """
    Per-cycle report for one trace: occupancy of each state plus the
    discounted cost and QALYs of that cycle.
    """
    trace = np.asarray(trace, dtype=float)
    costs = np.asarray(costs, dtype=float)
    utilities = np.asarray(utilities, dtype=float)
    if len(weights) != len(trace):
        raise DimensionMismatchError(
            f"{len(weights)} discount weights for a trace of {len(trace)} cycles")

    results = []
    for t, cohort in enumerate(trace):
        df = weights[t]
        row = {"Cycle": t}
        row.update(dict(zip(state_space.names, cohort)))
        row["Cost"] = float(cohort @ costs) * df
        row["QALY"] = float(cohort @ utilities) * df
        results.append(row)
    return pd.DataFrame(results)
