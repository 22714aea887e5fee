"""
Sequential Monte Carlo for gensmc.

This module provides a functional layer over an immutable `ParticleCollection`
(`init`, `extend`, `resample`, `maybe_resample`, `rejuvenate`,
`sample_unweighted`) and the `ParticleFilter` controller which threads a
collection through a sequence of observations. Particles are advanced one at
a time through the GFI; with `Unfold` models each extension costs one kernel
step per particle regardless of the length of the history.
"""

from dataclasses import dataclass
from enum import Enum

import jax.numpy as jnp
import jax.random as jrand
import jax.scipy.special

from .core import (
    GFI,
    Any,
    Argdiffs,
    Callable,
    FloatArray,
    PRNGKey,
    Pytree,
    Sequence,
    Trace,
)
from .distributions import categorical, uniform

RESAMPLING_METHODS = ("multinomial", "categorical", "systematic", "stratified")


class FilterCollapse(Exception):
    """Every particle has log-weight `-inf`, or some log-weight is `NaN`."""


class FilterStateError(Exception):
    """A particle filter operation was called in a state which does not allow it."""


def effective_sample_size(log_weights: FloatArray) -> FloatArray:
    """
    Compute the effective sample size from log importance weights.

    Args:
        log_weights: Array of log importance weights

    Returns:
        Effective sample size in [1, num_samples]
    """
    log_weights_normalized = log_weights - jax.scipy.special.logsumexp(log_weights)
    weights_normalized = jnp.exp(log_weights_normalized)
    return 1.0 / jnp.sum(weights_normalized**2)


def check_collapse(log_weights: FloatArray) -> None:
    if bool(jnp.any(jnp.isnan(log_weights))):
        raise FilterCollapse("Some particle log-weights are NaN.")
    if bool(jnp.all(log_weights == -jnp.inf)):
        raise FilterCollapse("Every particle has log-weight -inf.")


def resample_indices(
    key: PRNGKey,
    log_weights: FloatArray,
    n_samples: int,
    method: str = "multinomial",
) -> jnp.ndarray:
    """
    Draw ancestor indices from importance weights.

    Args:
        key: PRNG key
        log_weights: Log importance weights (need not be normalized)
        n_samples: Number of indices to draw
        method: "multinomial" (alias "categorical"), "systematic" or "stratified"

    Returns:
        Integer array of `n_samples` indices into `log_weights`
    """
    if method in ("multinomial", "categorical"):
        return categorical.sample(key, log_weights, sample_shape=(n_samples,))

    if method == "systematic":
        # One shared offset for every stratum.
        u = uniform.sample(key, 0.0, 1.0)
    elif method == "stratified":
        u = uniform.sample(key, 0.0, 1.0, sample_shape=(n_samples,))
    else:
        raise ValueError(
            f"Unknown resampling method: {method}, expected one of {RESAMPLING_METHODS}"
        )

    positions = (jnp.arange(n_samples) + u) / n_samples
    return _inverse_cdf_indices(log_weights, positions)


def _inverse_cdf_indices(log_weights: FloatArray, positions: FloatArray) -> jnp.ndarray:
    """Map positions in [0, 1) to the particles whose CDF interval contains them.

    Intervals are half-open, `[cdf[i-1], cdf[i])`, so a zero-weight particle
    owns an empty interval and is never selected, even at position 0.
    """
    log_weights_normalized = log_weights - jax.scipy.special.logsumexp(log_weights)
    cumsum = jnp.cumsum(jnp.exp(log_weights_normalized))
    indices = jnp.searchsorted(cumsum, positions, side="right")
    return jnp.minimum(indices, log_weights.shape[0] - 1)


@Pytree.dataclass
class ParticleCollection(Pytree):
    """N weighted traces plus the running log marginal likelihood offset.

    The log marginal likelihood estimate is
    `log_ml_offset + logsumexp(log_weights)`. The offset starts at `-log N` and
    absorbs `logsumexp(log_weights)` at every resample, after which every
    log-weight is reset to `log(1/N)`.
    """

    traces: list
    log_weights: FloatArray
    log_ml_offset: FloatArray
    n_samples: int = Pytree.static()

    def effective_sample_size(self) -> FloatArray:
        return effective_sample_size(self.log_weights)

    def log_marginal_likelihood(self) -> FloatArray:
        return self.log_ml_offset + jax.scipy.special.logsumexp(self.log_weights)

    def normalized_weights(self) -> FloatArray:
        return jnp.exp(
            self.log_weights - jax.scipy.special.logsumexp(self.log_weights)
        )


def init(
    key: PRNGKey,
    target_gf: GFI[Any, Any],
    target_args: tuple,
    constraints: Any,
    n_samples: int,
) -> ParticleCollection:
    """
    Initialize a particle collection by importance sampling from the target's
    internal proposal.

    Args:
        key: PRNG key, split once per particle
        target_gf: Target generative function (model)
        target_args: Arguments for target generative function
        constraints: Observations, as a choice map or nested dict
        n_samples: Number of particles (>= 1)

    Returns:
        ParticleCollection with traces and `generate` weights
    """
    if n_samples < 1:
        raise ValueError(f"A particle collection needs n_samples >= 1, got {n_samples}.")
    traces, log_weights = [], []
    for sub_key in jrand.split(key, n_samples):
        tr, w = target_gf.generate(sub_key, target_args, constraints)
        traces.append(tr)
        log_weights.append(w)
    return ParticleCollection(
        traces=traces,
        log_weights=jnp.stack(log_weights),
        log_ml_offset=-jnp.log(jnp.asarray(n_samples, dtype=float)),
        n_samples=n_samples,
    )


def extend(
    key: PRNGKey,
    particles: ParticleCollection,
    args: tuple,
    argdiffs: Argdiffs | None,
    constraints: Any,
) -> ParticleCollection:
    """
    Extension move for a particle collection.

    Each particle is moved to the new arguments with `update`, constraining it
    on the new observations; its log-weight accumulates the update weight.
    When `argdiffs` is None they are computed per particle by comparing the
    new arguments with those stored in the trace.
    """
    traces, log_weights = [], []
    for sub_key, old_trace, old_log_weight in zip(
        jrand.split(key, particles.n_samples),
        particles.traces,
        particles.log_weights,
    ):
        new_trace, w, _, _ = old_trace.update(sub_key, constraints, args, argdiffs)
        traces.append(new_trace)
        log_weights.append(old_log_weight + w)
    return ParticleCollection(
        traces=traces,
        log_weights=jnp.stack(log_weights),
        log_ml_offset=particles.log_ml_offset,
        n_samples=particles.n_samples,
    )


def resample(
    key: PRNGKey,
    particles: ParticleCollection,
    method: str = "multinomial",
) -> ParticleCollection:
    """
    Resample particle collection to combat degeneracy.

    After resampling, weights are reset to uniform (`log(1/N)`) and the
    marginal likelihood offset absorbs the log-sum-exp of the weights before
    resampling.
    """
    check_collapse(particles.log_weights)
    n = particles.n_samples
    indices = resample_indices(key, particles.log_weights, n, method)
    return ParticleCollection(
        traces=[particles.traces[int(i)] for i in indices],
        log_weights=jnp.full(n, -jnp.log(jnp.asarray(n, dtype=float))),
        log_ml_offset=particles.log_ml_offset
        + jax.scipy.special.logsumexp(particles.log_weights),
        n_samples=n,
    )


def maybe_resample(
    key: PRNGKey,
    particles: ParticleCollection,
    ess_threshold: float,
    method: str = "multinomial",
) -> tuple[ParticleCollection, bool]:
    """Resample when the effective sample size falls below `ess_threshold`."""
    check_collapse(particles.log_weights)
    if bool(particles.effective_sample_size() < ess_threshold):
        return resample(key, particles, method), True
    return particles, False


def rejuvenate(
    key: PRNGKey,
    particles: ParticleCollection,
    mcmc_kernel: Callable[[PRNGKey, Trace[Any, Any]], tuple[Trace[Any, Any], Any]],
) -> ParticleCollection:
    """
    Rejuvenate move for particle collection.

    Applies an MCMC kernel `(key, trace) -> (trace, diagnostics)` to each
    particle independently. Weights remain unchanged, since the kernel leaves
    the target invariant.
    """
    traces = [
        mcmc_kernel(sub_key, tr)[0]
        for sub_key, tr in zip(jrand.split(key, particles.n_samples), particles.traces)
    ]
    return ParticleCollection(
        traces=traces,
        log_weights=particles.log_weights,
        log_ml_offset=particles.log_ml_offset,
        n_samples=particles.n_samples,
    )


def sample_unweighted(
    key: PRNGKey,
    particles: ParticleCollection,
    n_draws: int,
) -> list[Trace[Any, Any]]:
    """Draw `n_draws` traces with replacement, proportionally to their weights."""
    check_collapse(particles.log_weights)
    indices = categorical.sample(key, particles.log_weights, sample_shape=(n_draws,))
    return [particles.traces[int(i)] for i in indices]


##############
# Controller #
##############


class FilterStatus(Enum):
    EMPTY = "empty"
    INITIALIZED = "initialized"
    STEPPED = "stepped"


@dataclass
class ParticleFilter:
    """Stateful particle filter over a fixed number of particles.

    Each operation builds a complete staging `ParticleCollection` with the
    functional layer, checks it, and only then replaces `particles`. An
    exception raised while computing a new collection therefore leaves the
    previous one untouched.

    Example:
        >>> pf = ParticleFilter()
        >>> pf.initialize(k0, model, (1, 0.0), {0: {"obs": y0}}, 100)
        >>> pf.maybe_resample(k1, ess_threshold=50.0)
        >>> pf.step(k2, (2, 0.0), None, {1: {"obs": y1}})
        >>> pf.log_marginal_likelihood()
    """

    resample_method: str = "multinomial"
    particles: ParticleCollection | None = None
    status: FilterStatus = FilterStatus.EMPTY
    # Model arguments of the committed collection.
    args: tuple | None = None

    def __post_init__(self):
        if self.resample_method not in RESAMPLING_METHODS:
            raise ValueError(
                f"Unknown resampling method: {self.resample_method}, "
                f"expected one of {RESAMPLING_METHODS}"
            )

    def _current(self, operation: str) -> ParticleCollection:
        if self.particles is None:
            raise FilterStateError(
                f"`{operation}` requires an initialized particle filter "
                f"(status: {self.status.value})."
            )
        return self.particles

    def _commit(
        self,
        staged: ParticleCollection,
        status: FilterStatus,
        args: tuple | None = None,
    ) -> None:
        self.particles = staged
        self.status = status
        if args is not None:
            self.args = args

    def initialize(
        self,
        key: PRNGKey,
        model: GFI[Any, Any],
        args: tuple,
        observations: Any,
        n_particles: int,
    ) -> None:
        staged = init(key, model, args, observations, n_particles)
        check_collapse(staged.log_weights)
        self._commit(staged, FilterStatus.INITIALIZED, args)

    def step(
        self,
        key: PRNGKey,
        args: tuple,
        argdiffs: Argdiffs | None,
        observations: Any,
    ) -> None:
        staged = extend(key, self._current("step"), args, argdiffs, observations)
        check_collapse(staged.log_weights)
        self._commit(staged, FilterStatus.STEPPED, args)

    def maybe_resample(self, key: PRNGKey, ess_threshold: float) -> bool:
        staged, resampled = maybe_resample(
            key, self._current("maybe_resample"), ess_threshold, self.resample_method
        )
        self._commit(staged, self.status)
        return resampled

    def rejuvenate(
        self,
        key: PRNGKey,
        mcmc_kernel: Callable[[PRNGKey, Trace[Any, Any]], tuple[Trace[Any, Any], Any]],
    ) -> None:
        staged = rejuvenate(key, self._current("rejuvenate"), mcmc_kernel)
        self._commit(staged, self.status)

    def sample_unweighted(self, key: PRNGKey, n_draws: int) -> list[Trace[Any, Any]]:
        return sample_unweighted(key, self._current("sample_unweighted"), n_draws)

    def effective_sample_size(self) -> FloatArray:
        return self._current("effective_sample_size").effective_sample_size()

    def log_marginal_likelihood(self) -> FloatArray:
        return self._current("log_marginal_likelihood").log_marginal_likelihood()

    @property
    def traces(self) -> list:
        return self._current("traces").traces

    @property
    def log_weights(self) -> FloatArray:
        return self._current("log_weights").log_weights


def particle_filter(
    key: PRNGKey,
    model: GFI[Any, Any],
    args_seq: Sequence[tuple],
    observations_seq: Sequence[Any],
    n_particles: int,
    ess_threshold: float,
    mcmc_kernel: Callable[[PRNGKey, Trace[Any, Any]], tuple[Trace[Any, Any], Any]]
    | None = None,
    resample_method: str = "multinomial",
) -> ParticleFilter:
    """
    Run a particle filter over a sequence of model arguments and observations.

    The first entries initialize the filter; every later entry performs
    resample-if-needed, an extension step, and (optionally) rejuvenation.

    Args:
        key: PRNG key for the whole run
        model: Target generative function
        args_seq: Model arguments per iteration, e.g. `[(1, s0), (2, s0), ...]`
        observations_seq: Constraints per iteration
        n_particles: Number of particles
        ess_threshold: Resample whenever the ESS drops below this value
        mcmc_kernel: Optional rejuvenation kernel `(key, trace) -> (trace, aux)`
        resample_method: Resampling scheme, see `resample_indices`

    Returns:
        The `ParticleFilter` after the last iteration
    """
    if len(args_seq) != len(observations_seq):
        raise ValueError("args_seq and observations_seq must have the same length.")
    if not args_seq:
        raise ValueError("particle_filter needs at least one iteration.")

    pf = ParticleFilter(resample_method)
    pf.initialize(
        jrand.fold_in(key, 0), model, args_seq[0], observations_seq[0], n_particles
    )
    for t in range(1, len(args_seq)):
        resample_key, step_key, rejuv_key = jrand.split(jrand.fold_in(key, t), 3)
        pf.maybe_resample(resample_key, ess_threshold)
        pf.step(step_key, args_seq[t], None, observations_seq[t])
        if mcmc_kernel is not None:
            pf.rejuvenate(rejuv_key, mcmc_kernel)
    return pf
