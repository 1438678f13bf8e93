# tests/conftest.py
import numpy as np
import pytest
from loguru import logger

from markov_model import StateSpace
from model_config import ModelConfig


@pytest.fixture(autouse=True)
def disable_logger():
    logger.remove()
    logger.add(lambda msg: None)
    yield


@pytest.fixture
def states() -> StateSpace:
    return StateSpace.of(["Healthy", "Sick", "Dead"])


@pytest.fixture
def transitions() -> dict:
    return {
        "Healthy": {"Sick": "p_HS", "Dead": "p_HD"},
        "Sick": {"Dead": "p_SD"},
    }


@pytest.fixture
def worked_matrix() -> np.ndarray:
    return np.array([
        [0.5, 0.3, 0.2],
        [0.0, 0.6, 0.4],
        [0.0, 0.0, 1.0],
    ])


@pytest.fixture
def worked_raw(transitions) -> dict:
    """Healthy/Sick/Dead example with fixed priors: every sample is identical."""
    return {
        "name": "Worked example",
        "states": ["Healthy", "Sick", "Dead"],
        "transitions": transitions,
        "costs": {"Healthy": 400, "Sick": 100, "Dead": 0},
        "utilities": {"Healthy": 0.8, "Sick": 0.5, "Dead": 0},
        "priors": {
            "p_HS": {"family": "fixed", "params": {"value": 0.3}},
            "p_HD": {"family": "fixed", "params": {"value": 0.2}},
            "p_SD": {"family": "fixed", "params": {"value": 0.4}},
        },
        "initial": "Healthy",
        "cycles": 2,
        "discount_rate": 0.0,
        "samples": 5,
        "seed": 1,
    }


@pytest.fixture
def uncertain_raw(transitions) -> dict:
    """Wide priors on Healthy's exits, so roughly half the samples overfill the row."""
    return {
        "name": "Uncertain",
        "states": ["Healthy", "Sick", "Dead"],
        "transitions": transitions,
        "costs": {"Healthy": "c_H", "Sick": "c_S", "Dead": 0},
        "utilities": {"Healthy": "u_H", "Sick": "u_S", "Dead": 0},
        "priors": {
            "p_HS": {"family": "uniform", "params": {"low": 0.0, "high": 1.0}},
            "p_HD": {"family": "uniform", "params": {"low": 0.0, "high": 1.0}},
            "p_SD": {"family": "beta", "params": {"alpha": 60, "beta": 340}},
            "c_H": {"family": "gamma", "params": {"shape": 100, "scale": 4}},
            "c_S": {"family": "gamma", "params": {"shape": 25, "scale": 120}},
            "u_H": {"family": "beta", "params": {"alpha": 90, "beta": 10}},
            "u_S": {"family": "normal", "params": {"mean": 0.55, "sd": 0.05}},
        },
        "initial": "Healthy",
        "cycles": 10,
        "discount_rate": 0.03,
        "samples": 200,
        "seed": 7,
        "on_failure": "skip",
    }


@pytest.fixture
def worked_config(worked_raw) -> ModelConfig:
    return ModelConfig.from_dict(worked_raw)
