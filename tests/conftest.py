"""
Shared fixtures for the gensmc test suite.

Provides reproducible keys, numerical tolerances and a few small models which
are used across the core, Unfold, MCMC and SMC tests.
"""

import jax.random as jrand
import pytest

from gensmc import Unfold, flip, gen, normal


# ============================================================================
# Random Key Fixtures
# ============================================================================


@pytest.fixture
def base_key():
    """Base random key for reproducible tests."""
    return jrand.key(42)


@pytest.fixture
def key_sequence(base_key):
    """Sequence of 10 split random keys."""
    return jrand.split(base_key, 10)


# ============================================================================
# Test Tolerance Fixtures
# ============================================================================


@pytest.fixture
def standard_tolerance():
    """Standard tolerance for float32 density comparisons."""
    return 1e-5


# ============================================================================
# Model Fixtures
# ============================================================================


@pytest.fixture
def latent_obs_model():
    """x ~ N(0, 1), z ~ N(x, 0.1)."""

    @gen
    def model():
        x = normal(0.0, 1.0) @ "x"
        z = normal(x, 0.1) @ "z"
        return x + z

    return model


@pytest.fixture
def branching_model():
    """A model whose address set depends on an earlier choice."""

    @gen
    def model():
        b = flip(0.5) @ "b"
        if b:
            normal(0.0, 1.0) @ "x"
        else:
            normal(0.0, 2.0) @ "y"
        return b

    return model


@pytest.fixture
def counting_chain():
    """An Unfold chain whose kernel records the step index of every invocation.

    Returns `(chain, calls)`; clear `calls` before the operation under test.
    """
    calls = []

    @gen
    def step(t, prev, drift):
        calls.append(t)
        x = normal(prev + drift, 1.0) @ "x"
        normal(x, 0.5) @ "y"
        return x

    return Unfold(step), calls


@pytest.fixture
def linear_gaussian_params():
    """Random walk observed in unit noise: (init_state, a, q, c, r)."""
    return (0.0, 1.0, 1.0, 1.0, 1.0)
