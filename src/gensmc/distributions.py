"""Primitive distributions.

Each entry is a `Distribution` built with `tfp_distribution` from the JAX
substrate of TensorFlow Probability. Parameters are passed positionally in
the order of the TFP constructor, e.g. `normal(mu, sigma) @ "x"`.
"""

import jax.numpy as jnp

from .core import tfd, tfp_distribution

# Continuous, univariate

normal = tfp_distribution(tfd.Normal, name="normal")
"""Gaussian with parameters `(loc, scale)`."""

uniform = tfp_distribution(tfd.Uniform, name="uniform")
"""Uniform on `[low, high)`."""

beta = tfp_distribution(tfd.Beta, name="beta")
"""Beta on `[0, 1]` with parameters `(concentration1, concentration0)`."""

exponential = tfp_distribution(tfd.Exponential, name="exponential")
"""Exponential with parameter `rate`."""

gamma = tfp_distribution(tfd.Gamma, name="gamma")
"""Gamma with parameters `(concentration, rate)`."""

laplace = tfp_distribution(tfd.Laplace, name="laplace")
"""Laplace with parameters `(loc, scale)`."""

cauchy = tfp_distribution(tfd.Cauchy, name="cauchy")
"""Cauchy with parameters `(loc, scale)`."""

student_t = tfp_distribution(tfd.StudentT, name="student_t")
"""Student's t with parameters `(df, loc, scale)`."""

half_normal = tfp_distribution(tfd.HalfNormal, name="half_normal")
"""Half-normal on the positive reals with parameter `scale`."""

log_normal = tfp_distribution(tfd.LogNormal, name="log_normal")
"""Log-normal; `(loc, scale)` parameterize the underlying Gaussian."""

# Discrete

bernoulli = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p, dtype=jnp.float32),
    name="bernoulli",
)
"""Bernoulli with success probability `p`; values are `0.0` or `1.0`."""

flip = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p, dtype=jnp.bool_),
    name="flip",
)
"""Bernoulli with success probability `p`; values are booleans."""

categorical = tfp_distribution(
    lambda logits: tfd.Categorical(logits=logits),
    name="categorical",
)
"""Categorical over `range(len(logits))` given unnormalized log-probabilities."""

poisson = tfp_distribution(tfd.Poisson, name="poisson")
"""Poisson with parameter `rate`."""

geometric = tfp_distribution(
    lambda p: tfd.Geometric(probs=p),
    name="geometric",
)
"""Number of failures before the first success, success probability `p`."""

binomial = tfp_distribution(
    lambda n, p: tfd.Binomial(total_count=n, probs=p),
    name="binomial",
)
"""Binomial with `n` trials and success probability `p`."""

# Multivariate

multivariate_normal = tfp_distribution(
    tfd.MultivariateNormalFullCovariance,
    name="multivariate_normal",
)
"""Multivariate Gaussian with parameters `(loc, covariance_matrix)`."""

dirichlet = tfp_distribution(tfd.Dirichlet, name="dirichlet")
"""Dirichlet over the simplex with parameter vector `concentration`."""
