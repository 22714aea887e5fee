"""
MCMC (Markov Chain Monte Carlo) inference for gensmc.

This module provides a Metropolis-Hastings step driven by a custom proposal
generative function, a symmetric Gaussian random-walk proposal over a block of
addresses, and a chain driver with burn-in and thinning. Every step goes
through the GFI (`simulate`, `update`, `assess`), so the same kernel works for
`@gen` programs and `Unfold` chains alike.
"""

import jax.numpy as jnp
import jax.random as jrand

from .core import (
    GFI,
    Addr,
    Any,
    BoolArray,
    Callable,
    ChangeTangent,
    ChoiceMap,
    Density,
    NoChange,
    FloatArray,
    PRNGKey,
    Pytree,
    Score,
    Trace,
    Weight,
    as_address,
    check_unused_constraints,
    no_change,
)
from .distributions import normal, uniform


@Pytree.dataclass
class MCMCResult(Pytree):
    """Result of MCMC chain sampling containing traces and diagnostics."""

    traces: list  # Retained traces, after burn-in and thinning
    accepts: BoolArray  # Acceptance decision for each retained step
    acceptance_rate: FloatArray  # Fraction of retained steps which accepted
    n_steps: int = Pytree.static()  # Number of retained steps


def mh(
    key: PRNGKey,
    current_trace: Trace[Any, Any],
    proposal: GFI[Any, Any],
    proposal_args: tuple = (),
) -> tuple[Trace[Any, Any], bool]:
    """
    Single Metropolis-Hastings step with a custom proposal.

    The proposal is a generative function invoked as
    `proposal(current_trace, *proposal_args)`. Its choices are used as
    constraints for `update` on the model, and the discarded values are scored
    under the proposal from the new trace to obtain the backward density.

    Args:
        key: PRNG key for the proposal, the update and the acceptance draw
        current_trace: Current trace state
        proposal: Generative function proposing new values for some addresses
        proposal_args: Extra arguments passed to the proposal after the trace

    Returns:
        `(trace, accepted)`, where `trace` is the new trace if the move was
        accepted and `current_trace` otherwise.
    """
    proposal_key, update_key, accept_key = jrand.split(key, 3)
    target_gf = current_trace.get_gen_fn()
    args = current_trace.get_args()

    fwd = proposal.simulate(proposal_key, (current_trace, *proposal_args))
    new_trace, weight, discard, _ = target_gf.update(
        update_key,
        current_trace,
        args,
        no_change(args),
        fwd.get_choices(),
    )
    # The reverse move only scores the addresses the proposal wrote.
    fwd_choices = fwd.get_choices()
    reverse = ChoiceMap.coerce(discard).restrict(fwd_choices.addresses())
    bwd_score, _ = proposal.assess((new_trace, *proposal_args), reverse)

    log_alpha = weight + bwd_score - fwd.get_score()

    # A NaN ratio compares false, which rejects the move.
    u = uniform.sample(accept_key, 0.0, 1.0)
    accept = bool(jnp.log(u) < log_alpha)
    return (new_trace if accept else current_trace), accept


def mh_kernel(
    proposal: GFI[Any, Any],
    proposal_args: tuple = (),
) -> Callable[[PRNGKey, Trace[Any, Any]], tuple[Trace[Any, Any], bool]]:
    """Close over a proposal to obtain a `(key, trace) -> (trace, accepted)` kernel."""

    def kernel(key: PRNGKey, trace: Trace[Any, Any]) -> tuple[Trace[Any, Any], bool]:
        return mh(key, trace, proposal, proposal_args)

    return kernel


######################
# Gaussian drift     #
######################


@Pytree.dataclass
class DriftTr(Trace[ChoiceMap, None]):
    gen_fn: "GaussianDrift"
    args: tuple
    choices: ChoiceMap
    score: Score

    def get_gen_fn(self) -> "GaussianDrift":
        return self.gen_fn

    def get_choices(self) -> ChoiceMap:
        return self.choices

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> None:
        return None

    def get_score(self) -> Score:
        return self.score


@Pytree.dataclass
class GaussianDrift(GFI[ChoiceMap, None]):
    """Symmetric random-walk proposal over a block of addresses.

    Invoked as `drift(trace)`: each address in the block receives an
    independent `normal(trace[addr], scale)` proposal. Addresses may be
    hierarchical, e.g. `(4, "state")` inside an `Unfold` chain.
    """

    addresses: tuple = Pytree.static()
    scale: float = Pytree.static()

    def _centers(self, trace: Trace[Any, Any]) -> list[Any]:
        choices = trace.get_choices()
        return [choices.value_at(addr) for addr in self.addresses]

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> DriftTr:
        (trace,) = args
        keys = jrand.split(key, len(self.addresses))
        choices = ChoiceMap.empty()
        score = jnp.array(0.0)
        for k, addr, center in zip(keys, self.addresses, self._centers(trace)):
            v = normal.sample(k, center, self.scale)
            score += normal.logpdf(v, center, self.scale)
            choices = choices.merge(ChoiceMap.entry(addr, v))
        return DriftTr(self, args, choices, score)

    def assess(
        self,
        args: tuple,
        x: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[Density, None]:
        (trace,) = args
        x = ChoiceMap.coerce(x)
        logp = jnp.array(0.0)
        for addr, center in zip(self.addresses, self._centers(trace)):
            logp += normal.logpdf(x.value_at(addr), center, self.scale)
        return logp, None

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        x: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[DriftTr, Weight]:
        x = ChoiceMap.coerce(x)
        if x.is_empty():
            return self.simulate(key, args), jnp.array(0.0)
        logp, _ = self.assess(args, x)
        return DriftTr(self, args, x, logp), logp

    def update(
        self,
        key: PRNGKey,
        tr: Trace[ChoiceMap, None],
        args_: tuple,
        argdiffs: tuple[ChangeTangent, ...],
        x_: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[DriftTr, Weight, ChoiceMap, ChangeTangent]:
        (trace,) = args_
        x_ = ChoiceMap.coerce(x_)
        check_unused_constraints(
            [a for a in x_.addresses() if a not in self.addresses], "GaussianDrift"
        )
        old = tr.get_choices()
        choices, discard = ChoiceMap.empty(), ChoiceMap.empty()
        score = jnp.array(0.0)
        for addr, center in zip(self.addresses, self._centers(trace)):
            if x_.has(addr):
                v = x_.value_at(addr)
                discard = discard.merge(ChoiceMap.entry(addr, old.value_at(addr)))
            else:
                v = old.value_at(addr)
            score += normal.logpdf(v, center, self.scale)
            choices = choices.merge(ChoiceMap.entry(addr, v))
        # The return value is always None.
        new_tr = DriftTr(self, args_, choices, score)
        return new_tr, score - tr.get_score(), discard, NoChange


def gaussian_drift(*addresses: Addr, scale: float = 1.0) -> GaussianDrift:
    """Build a `GaussianDrift` proposal over `addresses` with step size `scale`.

    Example:
        >>> kernel = mh_kernel(gaussian_drift("x", ("steps", 3, "z"), scale=0.5))
        >>> trace, accepted = kernel(key, trace)
    """
    if not addresses:
        raise ValueError("gaussian_drift needs at least one address.")
    if scale <= 0:
        raise ValueError(f"gaussian_drift requires scale > 0, got {scale}.")
    return GaussianDrift(tuple(as_address(a) for a in addresses), scale)


def chain(
    mcmc_kernel: Callable[[PRNGKey, Trace[Any, Any]], tuple[Trace[Any, Any], bool]],
):
    """
    Higher-order function that creates MCMC chain algorithms from simple kernels.

    This function transforms a single MCMC move (like `mh_kernel(...)`) into a
    chain with burn-in and thinning. The kernel receives a fresh key per step,
    derived with `jax.random.fold_in`.

    Args:
        mcmc_kernel: Function `(key, trace) -> (trace, accepted)`

    Returns:
        Function that runs the chain and returns an `MCMCResult`
    """

    def run_chain(
        key: PRNGKey,
        initial_trace: Trace[Any, Any],
        n_steps: int,
        *,
        burn_in: int = 0,
        autocorrelation_resampling: int = 1,
    ) -> MCMCResult:
        """
        Run MCMC chain with the configured kernel.

        Args:
            key: PRNG key for the whole chain
            initial_trace: Starting trace
            n_steps: Total number of steps to run (before burn-in/thinning)
            burn_in: Number of initial steps to discard as burn-in
            autocorrelation_resampling: Keep every N-th sample (thinning)

        Returns:
            MCMCResult with traces, acceptances, and acceptance rate
        """
        if autocorrelation_resampling < 1:
            raise ValueError("autocorrelation_resampling must be >= 1.")
        if not 0 <= burn_in < n_steps:
            raise ValueError(
                f"burn_in must lie in [0, n_steps), got burn_in={burn_in}, n_steps={n_steps}."
            )

        trace = initial_trace
        traces, accepts = [], []
        for step in range(n_steps):
            trace, accepted = mcmc_kernel(jrand.fold_in(key, step), trace)
            traces.append(trace)
            accepts.append(accepted)

        # Apply burn-in and thinning
        indices = range(burn_in, n_steps, autocorrelation_resampling)
        final_traces = [traces[i] for i in indices]
        final_accepts = jnp.array([accepts[i] for i in indices], dtype=bool)

        return MCMCResult(
            traces=final_traces,
            accepts=final_accepts,
            acceptance_rate=jnp.mean(final_accepts.astype(float)),
            n_steps=len(final_traces),
        )

    return run_chain
