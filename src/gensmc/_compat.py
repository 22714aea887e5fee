"""Shims for version skew between JAX and the TFP JAX substrate.

`ensure_jax_tfp_compat` must run before `tensorflow_probability.substrates.jax`
is imported anywhere in the package.
"""

from __future__ import annotations

import jax


def ensure_jax_tfp_compat() -> None:
    """Re-expose ``pytype_aval_mappings`` on ``jax.interpreters.xla``.

    Newer JAX releases only provide the mapping on ``jax.core``, while the TFP
    substrate still looks it up on the XLA interpreter module at import time.
    Calling this more than once is harmless.
    """

    xla = jax.interpreters.xla
    if getattr(xla, "pytype_aval_mappings", None) is None:
        xla.pytype_aval_mappings = jax.core.pytype_aval_mappings
