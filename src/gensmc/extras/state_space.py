"""
Scalar linear-Gaussian state space model with exact Kalman filtering.

The model is an `Unfold` chain, so it can be driven step by step by the
particle filter, while `kalman_filter` supplies the exact filtering
distributions and log marginal likelihood to compare against.

Model (q and r are variances):
    x_t = a * x_{t-1} + w_t,  w_t ~ N(0, q),  x_{-1} = init_state
    y_t = c * x_t + v_t,      v_t ~ N(0, r)
"""

import jax
import jax.numpy as jnp
import jax.scipy.stats

from ..core import ChoiceMap, FloatArray, PRNGKey, Unfold, gen
from ..distributions import normal


@gen
def linear_gaussian_step(t, prev_state, a, q, c, r):
    """
    Linear Gaussian state space model kernel.

    Args:
        t: Step index (unused by the dynamics)
        prev_state: Previous latent state (`init_state` at step 0)
        a: State transition coefficient
        q: Process noise variance
        c: Observation coefficient
        r: Observation noise variance

    Returns:
        The new latent state
    """
    state = normal(a * prev_state, jnp.sqrt(q)) @ "state"
    normal(c * state, jnp.sqrt(r)) @ "obs"
    return state


linear_gaussian = Unfold(linear_gaussian_step)


def observation_constraints(observations, start: int = 0) -> ChoiceMap:
    """Constrain `"obs"` at steps `start, start + 1, ...` to `observations`."""
    return ChoiceMap(
        {
            start + i: ChoiceMap({"obs": jnp.asarray(y)})
            for i, y in enumerate(observations)
        }
    )


def filtering_inputs(
    observations,
    init_state,
    a,
    q,
    c,
    r,
) -> tuple[list[tuple], list[ChoiceMap]]:
    """
    Per-iteration model arguments and constraints for `particle_filter`.

    Iteration `t` runs the chain for `t + 1` steps and constrains only the
    observation of the newest step.
    """
    args_seq = [(t + 1, init_state, a, q, c, r) for t in range(len(observations))]
    obs_seq = [observation_constraints([y], start=t) for t, y in enumerate(observations)]
    return args_seq, obs_seq


def sample_linear_gaussian_dataset(
    key: PRNGKey,
    T: int,
    init_state,
    a,
    q,
    c,
    r,
) -> tuple[FloatArray, FloatArray, ChoiceMap]:
    """
    Sample a dataset from the linear Gaussian chain.

    Returns:
        Tuple of (true_states, observations, constraints)
        - true_states: Shape (T,)
        - observations: Shape (T,)
        - constraints: `{t: {"obs": y_t}}` for every step
    """
    trace = linear_gaussian.simulate(key, (T, init_state, a, q, c, r))
    choices = trace.get_choices()
    states = jnp.array([choices.value_at((t, "state")) for t in range(T)])
    observations = jnp.array([choices.value_at((t, "obs")) for t in range(T)])
    return states, observations, observation_constraints(observations)


def kalman_filter(
    observations: FloatArray,
    init_state,
    a,
    q,
    c,
    r,
) -> tuple[FloatArray, FloatArray, FloatArray]:
    """
    Kalman filtering for the scalar linear Gaussian model.

    Computes the filtered state distributions p(x_t | y_{0:t}) and the
    log marginal likelihood of the observations. The filter starts from the
    point mass at `init_state`.

    Returns:
        filtered_means: Filtered state means (T,)
        filtered_vars: Filtered state variances (T,)
        log_marginal: Log marginal likelihood of observations
    """

    def scan_step(carry, y):
        prev_mean, prev_var, cum_log_marginal = carry

        # Predict
        predicted_mean = a * prev_mean
        predicted_var = a**2 * prev_var + q

        # Update with observation y_t
        innovation = y - c * predicted_mean
        innovation_var = c**2 * predicted_var + r
        kalman_gain = predicted_var * c / innovation_var

        filtered_mean = predicted_mean + kalman_gain * innovation
        filtered_var = (1.0 - kalman_gain * c) * predicted_var

        new_log_marginal = cum_log_marginal + jax.scipy.stats.norm.logpdf(
            innovation, 0.0, jnp.sqrt(innovation_var)
        )
        return (filtered_mean, filtered_var, new_log_marginal), (
            filtered_mean,
            filtered_var,
        )

    init_carry = (jnp.asarray(init_state, dtype=float), jnp.array(0.0), jnp.array(0.0))
    (_, _, log_marginal), (filtered_means, filtered_vars) = jax.lax.scan(
        scan_step, init_carry, jnp.asarray(observations, dtype=float)
    )
    return filtered_means, filtered_vars, log_marginal
