"""
parameter_sampler.py

Draws parameter sets from their prior distributions for probabilistic
sensitivity analysis. Every draw goes through an explicit numpy Generator
so a seed fully determines the output.

Domain policy for probability parameters: reject, never clamp.
  - A prior whose support is not contained in [0, 1] is refused when the
    sampler is built.
  - Every drawn value is checked again afterwards; any value outside [0, 1]
    raises InvalidPriorError.
Cost and utility draws may take any finite value; NaN or infinite draws
raise InvalidPriorError.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping

import numpy as np
import pandas as pd
from loguru import logger
from scipy.stats import beta, gamma, lognorm, norm, uniform

from model_errors import ConfigurationError, InvalidPriorError


@dataclass(frozen=True)
class ParameterSet:
    """One sample's parameter values, keyed by parameter name."""
    index: int
    values: Dict[str, float] = field(default_factory=dict)

    def __getitem__(self, name):
        return self.values[name]


class Prior:
    """
    A frozen scipy distribution plus its support.
    `fixed` priors have no distribution and always return their value.
    """

    def __init__(self, name, family, params):
        self.name = name
        self.family = family
        self.params = dict(params)
        self.value = None
        self.dist = None
        try:
            self._freeze()
        except KeyError as exc:
            raise InvalidPriorError(
                f"Prior '{name}' ({family}) is missing argument {exc}") from exc

    def _freeze(self):
        p = self.params
        for arg, value in p.items():
            if not np.isfinite(value):
                raise InvalidPriorError(
                    f"Prior '{self.name}': {self.family} argument '{arg}' is not finite")
        if self.family == "beta":
            self._require_positive("alpha", "beta")
            self.dist = beta(p["alpha"], p["beta"])
        elif self.family == "normal":
            self._require_positive("sd")
            self.dist = norm(loc=p["mean"], scale=p["sd"])
        elif self.family == "gamma":
            self._require_positive("shape", "scale")
            self.dist = gamma(p["shape"], scale=p["scale"])
        elif self.family == "lognormal":
            self._require_positive("sdlog")
            self.dist = lognorm(p["sdlog"], scale=np.exp(p["meanlog"]))
        elif self.family == "uniform":
            if not p["high"] > p["low"]:
                raise InvalidPriorError(f"Prior '{self.name}': uniform needs low < high")
            self.dist = uniform(loc=p["low"], scale=p["high"] - p["low"])
        elif self.family == "fixed":
            self.value = float(p["value"])
        else:
            raise InvalidPriorError(f"Prior '{self.name}': unknown family '{self.family}'")

    def _require_positive(self, *names):
        for arg in names:
            if not self.params[arg] > 0:
                raise InvalidPriorError(
                    f"Prior '{self.name}': {self.family} argument '{arg}' must be positive, "
                    f"got {self.params[arg]}")

    def support(self):
        if self.dist is None:
            return self.value, self.value
        return self.dist.support()

    def mean(self):
        if self.dist is None:
            return self.value
        return float(self.dist.mean())

    def draw(self, n, rng):
        if self.dist is None:
            return np.full(n, self.value)
        return np.asarray(self.dist.rvs(size=n, random_state=rng), dtype=float)


class ParameterSampler:
    """
    Samples every configured parameter independently.

    priors: mapping of name -> PriorConfig (or any object with `family`
            and `params`)
    probability_parameters: names that must stay inside [0, 1]
    """

    def __init__(self, priors: Mapping, probability_parameters=()):
        self.priors = {name: Prior(name, cfg.family, cfg.params)
                       for name, cfg in priors.items()}
        self.probability_parameters = list(probability_parameters)

        for name in self.probability_parameters:
            if name not in self.priors:
                raise ConfigurationError(f"Probability parameter '{name}' has no prior")
            low, high = self.priors[name].support()
            if low < 0 or high > 1:
                raise InvalidPriorError(
                    f"Prior for probability '{name}' ({self.priors[name].family}) "
                    f"has support [{low}, {high}] outside [0, 1]")

    @property
    def names(self) -> List[str]:
        return list(self.priors)

    def draw(self, n: int, rng: np.random.Generator) -> pd.DataFrame:
        """
        Draw n samples as a frame: one row per sample, one column per parameter,
        columns in configuration order.
        """
        if n < 1:
            raise ConfigurationError(f"Sample count must be positive, got {n}")

        columns = {}
        for name, prior in self.priors.items():
            values = prior.draw(n, rng)
            if name in self.probability_parameters:
                bad = ~((values >= 0.0) & (values <= 1.0))
            else:
                bad = ~np.isfinite(values)
            if bad.any():
                first = int(np.flatnonzero(bad)[0])
                raise InvalidPriorError(
                    f"Prior for '{name}' produced {values[first]} at sample {first}")
            columns[name] = values

        logger.debug(f"Drew {n} samples of {len(columns)} parameters")
        return pd.DataFrame(columns, index=pd.RangeIndex(n, name="sample"))

    def sample(self, n: int, seed: int) -> List[ParameterSet]:
        """n independent parameter sets from a fresh generator seeded with `seed`."""
        frame = self.draw(n, np.random.default_rng(seed))
        return to_parameter_sets(frame)

    def means(self) -> ParameterSet:
        """Prior means, used for the deterministic base case."""
        return ParameterSet(0, {name: prior.mean() for name, prior in self.priors.items()})


def to_parameter_sets(frame: pd.DataFrame) -> List[ParameterSet]:
    records = frame.to_dict(orient="records")
    return [ParameterSet(i, {k: float(v) for k, v in rec.items()})
            for i, rec in enumerate(records)]
