"""
model_errors.py

Exceptions raised by the Markov cohort PSA engine.
"""


class ModelError(Exception):
    """Base class for every error raised by the model."""


class ConfigurationError(ModelError):
    """Malformed state space, topology, or run settings. Fatal at startup."""


class InvalidPriorError(ModelError):
    """A prior whose support escapes the domain of its parameter."""


class InvalidTransitionError(ModelError):
    """A transition row that is not a valid probability distribution."""

    def __init__(self, message, state=None, sample=None):
        super().__init__(message)
        self.state = state
        self.sample = sample


class DimensionMismatchError(ModelError):
    """Vector or trace lengths that do not line up with the state space or horizon."""
