"""
model_config.py

Configuration for the Markov cohort PSA model.
This module includes:
  - Prior distribution settings for every sampled parameter
  - The state space and the off-diagonal transition structure
  - Cost and utility assignments per state (sampled parameter or fixed value)
  - Run settings: horizon, discount rate, sample count, seed, execution strategy
  - YAML loading and a built-in Healthy/Sick/Dead model
"""

import math
from typing import Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from model_errors import ConfigurationError

EXECUTION_STRATEGIES = ("batched", "sequential", "parallel")
FAILURE_POLICIES = ("abort", "skip")

# A transition, cost or utility entry is either the name of a sampled
# parameter or a literal number.
ValueRef = Union[float, str]


class PriorConfig(BaseModel):
    """One prior: a distribution family name and its arguments."""
    family: str
    params: Dict[str, float] = Field(default_factory=dict)


class ModelConfig(BaseModel):
    """
    Everything needed to run a PSA: states, transitions, costs, utilities,
    priors and run settings.
    """
    name: str = "Markov cohort"
    states: List[str]
    # source state -> {destination state: parameter name or probability};
    # the diagonal is derived, states without an entry are absorbing
    transitions: Dict[str, Dict[str, ValueRef]] = Field(default_factory=dict)
    costs: Dict[str, ValueRef]
    utilities: Dict[str, ValueRef]
    priors: Dict[str, PriorConfig] = Field(default_factory=dict)
    # starting state name, or a full distribution over states
    initial: Union[str, List[float]]

    cycles: int = 25
    discount_rate: float = 0.03
    samples: int = 1000
    seed: int = 42
    execution: str = "batched"
    on_failure: str = "abort"
    workers: Optional[int] = None

    @classmethod
    def from_dict(cls, raw: dict) -> "ModelConfig":
        try:
            config = cls(**raw)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid model configuration: {exc}") from exc
        config.check()
        return config

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Read a YAML file and validate it."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f)
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Config file not found: {path}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} does not contain a mapping")
        return cls.from_dict(raw)

    def with_overrides(self, **overrides) -> "ModelConfig":
        """Copy with the non-None overrides applied, re-validated."""
        data = self.model_dump()
        data.update({k: v for k, v in overrides.items() if v is not None})
        return ModelConfig.from_dict(data)

    def probability_parameters(self) -> List[str]:
        """Names of sampled parameters used as transition probabilities."""
        names = []
        for row in self.transitions.values():
            for ref in row.values():
                if isinstance(ref, str) and ref not in names:
                    names.append(ref)
        return names

    def initial_distribution(self) -> List[float]:
        if isinstance(self.initial, str):
            return [1.0 if s == self.initial else 0.0 for s in self.states]
        return [float(x) for x in self.initial]

    def check(self) -> None:
        """Semantic validation. Raises ConfigurationError on the first problem."""
        if not self.states:
            raise ConfigurationError("State space is empty")
        if len(set(self.states)) != len(self.states):
            raise ConfigurationError(f"Duplicate state names in {self.states}")
        known = set(self.states)

        for source, row in self.transitions.items():
            if source not in known:
                raise ConfigurationError(f"Transition from unknown state '{source}'")
            for dest, ref in row.items():
                if dest not in known:
                    raise ConfigurationError(f"Transition {source} -> unknown state '{dest}'")
                if dest == source:
                    raise ConfigurationError(
                        f"Self-transition for '{source}' is derived, do not list it")
                self._check_ref(ref, f"transition {source} -> {dest}")
                if not isinstance(ref, str) and not 0.0 <= ref <= 1.0:
                    raise ConfigurationError(
                        f"Probability {source} -> {dest} is {ref}, outside [0, 1]")
            fixed_exits = sum(ref for ref in row.values() if not isinstance(ref, str))
            if fixed_exits > 1.0 + 1e-9:
                raise ConfigurationError(
                    f"Fixed probabilities out of '{source}' sum to {fixed_exits:.6g} > 1")

        for label, table in (("cost", self.costs), ("utility", self.utilities)):
            missing = [s for s in self.states if s not in table]
            if missing:
                raise ConfigurationError(f"No {label} given for states {missing}")
            extra = [s for s in table if s not in known]
            if extra:
                raise ConfigurationError(f"{label} given for unknown states {extra}")
            for state, ref in table.items():
                self._check_ref(ref, f"{label} of '{state}'")

        if isinstance(self.initial, str):
            if self.initial not in known:
                raise ConfigurationError(f"Initial state '{self.initial}' is not a model state")
        else:
            if len(self.initial) != len(self.states):
                raise ConfigurationError(
                    f"Initial distribution has {len(self.initial)} entries, "
                    f"expected {len(self.states)}")
            if any(x < 0 for x in self.initial) or not math.isclose(
                    sum(self.initial), 1.0, abs_tol=1e-9):
                raise ConfigurationError("Initial distribution must be non-negative and sum to 1")

        if self.cycles < 1:
            raise ConfigurationError(f"Cycle count must be positive, got {self.cycles}")
        if self.samples < 1:
            raise ConfigurationError(f"Sample count must be positive, got {self.samples}")
        if not (self.discount_rate >= 0 and math.isfinite(self.discount_rate)):
            raise ConfigurationError(f"Discount rate must be >= 0, got {self.discount_rate}")
        if self.execution not in EXECUTION_STRATEGIES:
            raise ConfigurationError(
                f"Unknown execution strategy '{self.execution}', use one of {EXECUTION_STRATEGIES}")
        if self.on_failure not in FAILURE_POLICIES:
            raise ConfigurationError(
                f"Unknown failure policy '{self.on_failure}', use one of {FAILURE_POLICIES}")
        if self.workers is not None and self.workers < 1:
            raise ConfigurationError(f"Worker count must be positive, got {self.workers}")

    def _check_ref(self, ref, where):
        if isinstance(ref, str):
            if ref not in self.priors:
                raise ConfigurationError(f"Parameter '{ref}' used in {where} has no prior")
        elif not math.isfinite(ref):
            raise ConfigurationError(f"Value {ref} for {where} is not finite")


# --------------------------------------------------------------------------------
# Built-in model
# --------------------------------------------------------------------------------
def default_config() -> ModelConfig:
    """
    Three-state progressive disease model: Healthy -> Sick -> Dead.
    Annual cycles over a 25 year horizon with 3% discounting.
    """
    return ModelConfig.from_dict({
        "name": "Standard care",
        "states": ["Healthy", "Sick", "Dead"],

        # Off-diagonal transition probabilities per year
        "transitions": {
            "Healthy": {"Sick": "p_HS", "Dead": "p_HD"},
            "Sick": {"Dead": "p_SD"},
            # Dead is absorbing
        },

        # Annual cost of each state
        "costs": {"Healthy": "c_H", "Sick": "c_S", "Dead": 0.0},

        # Quality-of-life utilities for each state
        "utilities": {"Healthy": "u_H", "Sick": "u_S", "Dead": 0.0},

        "priors": {
            # Probabilities: Beta(events, non-events)
            "p_HS": {"family": "beta", "params": {"alpha": 30, "beta": 170}},
            "p_HD": {"family": "beta", "params": {"alpha": 10, "beta": 990}},
            "p_SD": {"family": "beta", "params": {"alpha": 60, "beta": 340}},
            # Costs: Gamma(shape, scale), mean = shape * scale
            "c_H": {"family": "gamma", "params": {"shape": 100, "scale": 4}},
            "c_S": {"family": "gamma", "params": {"shape": 25, "scale": 120}},
            # Utilities
            "u_H": {"family": "beta", "params": {"alpha": 90, "beta": 10}},
            "u_S": {"family": "normal", "params": {"mean": 0.55, "sd": 0.05}},
        },

        # Everyone starts healthy
        "initial": "Healthy",
        "cycles": 25,
        "discount_rate": 0.03,
        "samples": 1000,
        "seed": 42,
    })
