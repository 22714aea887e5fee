from beartype import BeartypeConf
from beartype.claw import beartype_this_package

conf = BeartypeConf(
    is_color=True,
    is_debug=False,
    is_pep484_tower=True,
    violation_type=TypeError,
)

beartype_this_package(conf=conf)

from .core import (
    GFI,
    AddressConflict,
    AddressNotFound,
    ChoiceMap,
    Distribution,
    DuplicateAddress,
    Fn,
    NoChange,
    Pytree,
    Trace,
    Unfold,
    UnknownChange,
    UnusedConstraint,
    UnusedConstraintWarning,
    constraint_policy,
    diff_args,
    gen,
    get_choices,
    no_change,
    tfp_distribution,
    trace,
    unknown_change,
)
from .distributions import (
    bernoulli,
    beta,
    binomial,
    categorical,
    cauchy,
    dirichlet,
    exponential,
    flip,
    gamma,
    geometric,
    half_normal,
    laplace,
    log_normal,
    multivariate_normal,
    normal,
    poisson,
    student_t,
    uniform,
)
from .mcmc import MCMCResult, chain, gaussian_drift, mh, mh_kernel
from .smc import (
    FilterCollapse,
    FilterStateError,
    ParticleCollection,
    ParticleFilter,
    effective_sample_size,
    particle_filter,
)

__all__ = [
    "GFI",
    "AddressConflict",
    "AddressNotFound",
    "ChoiceMap",
    "Distribution",
    "DuplicateAddress",
    "FilterCollapse",
    "FilterStateError",
    "Fn",
    "MCMCResult",
    "NoChange",
    "ParticleCollection",
    "ParticleFilter",
    "Pytree",
    "Trace",
    "Unfold",
    "UnknownChange",
    "UnusedConstraint",
    "UnusedConstraintWarning",
    "bernoulli",
    "beta",
    "binomial",
    "categorical",
    "cauchy",
    "chain",
    "constraint_policy",
    "diff_args",
    "dirichlet",
    "effective_sample_size",
    "exponential",
    "flip",
    "gamma",
    "gaussian_drift",
    "gen",
    "geometric",
    "get_choices",
    "half_normal",
    "laplace",
    "log_normal",
    "mh",
    "mh_kernel",
    "multivariate_normal",
    "no_change",
    "normal",
    "particle_filter",
    "poisson",
    "student_t",
    "tfp_distribution",
    "trace",
    "uniform",
    "unknown_change",
]
