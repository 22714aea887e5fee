import warnings
from abc import abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import overload

import beartype.typing as btyping
import jax
import jax.numpy as jnp
import jax.random as jrand
import jaxtyping as jtyping
import numpy as np
import penzai.pz as pz
from typing_extensions import dataclass_transform

from ._compat import ensure_jax_tfp_compat

ensure_jax_tfp_compat()

from tensorflow_probability.substrates import jax as tfp  # noqa: E402

tfd = tfp.distributions

##########
# Typing #
##########

Any = btyping.Any
AddrComponent = str | int
Address = btyping.Tuple[AddrComponent, ...]
Addr = AddrComponent | Address
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
FloatArray = jtyping.Float[jtyping.Array, "..."]
IntArray = jtyping.Int[jtyping.Array, "..."]
BoolArray = jtyping.Bool[jtyping.Array, "..."]
Callable = btyping.Callable
Sequence = btyping.Sequence
Iterator = btyping.Iterator
Generic = btyping.Generic
TypeVar = btyping.TypeVar

R = TypeVar("R")
X = TypeVar("X")

#######################
# Probabilistic types #
#######################

Weight = FloatArray
Score = FloatArray
Density = FloatArray

##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system.

    Inheriting this class provides the implementor with the freedom to
    declare how the subfields of a class should behave:

    * `Pytree.static(...)`: the value of the field is embedded in the
    `PyTreeDef` of any instance of the class (Python literals, callables,
    generative functions' source code).
    * `Pytree.field(...)` or no annotation: the value is a pytree child.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """
        Denote that a class (which is inheriting `Pytree`) should be treated
        as a frozen dataclass.

        Examples
        --------

        ```{python}
        from gensmc import Pytree


        @Pytree.dataclass
        # Enforces type annotations on instantiation.
        class MyClass(Pytree):
            my_static_field: int = Pytree.static()
            my_dynamic_field: float


        MyClass(10, 5.0)
        ```
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static.
        Fields which are provided with default values must come after
        required fields in the dataclass declaration."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic.
        Alternatively, one can leave the annotation off in the declaration."""
        return field(**kwargs)


##############
# Exceptions #
##############


class DuplicateAddress(Exception):
    """Attempt to re-write an address within one execution of a generative function.

    Any given address for a random choice may only be written to once. You can choose a
    different name for the choice, or nest it into a scope where it is unique.
    """


class AddressNotFound(KeyError):
    """Attempt to read a value at an address which holds no value."""


class AddressConflict(Exception):
    """Attempt to merge two choice maps which both hold a value at the same address."""


class UnusedConstraint(Exception):
    """Constraints were provided at addresses which the generative function never visited."""


class UnusedConstraintWarning(UserWarning):
    """Warning variant of `UnusedConstraint`, emitted under the `"warn"` policy."""


#################
# Configuration #
#################


@dataclass
class InterpreterConfig:
    # "error" raises `UnusedConstraint`, "warn" emits `UnusedConstraintWarning`.
    unused_constraints: str = "error"


config = InterpreterConfig()

_POLICIES = ("error", "warn")


@contextmanager
def constraint_policy(policy: str):
    """Select how unvisited constraints are reported for the calls made
    inside the `with` block.

    Example:
        >>> with constraint_policy("warn"):
        ...     tr, w = model.generate(key, (), {"typo": 1.0})
    """
    if policy not in _POLICIES:
        raise ValueError(f"Unknown constraint policy {policy!r}, expected one of {_POLICIES}.")
    previous = config.unused_constraints
    config.unused_constraints = policy
    try:
        yield
    finally:
        config.unused_constraints = previous


def check_unused_constraints(unused: list[Any], gen_fn_name: str) -> None:
    if not unused:
        return
    msg = f"{gen_fn_name} never visited the constrained addresses {unused}."
    if config.unused_constraints == "error":
        raise UnusedConstraint(msg)
    warnings.warn(msg, UnusedConstraintWarning, stacklevel=4)


###############
# Choice maps #
###############


def as_address(addr: Addr) -> Address:
    return addr if isinstance(addr, tuple) else (addr,)


@Pytree.dataclass
class ChoiceMap(Pytree):
    """A `ChoiceMap` maps address components to either a value (a leaf) or
    to a nested `ChoiceMap`.

    Hierarchical addresses are tuples of components: `(3, "obs")` names the
    `"obs"` choice made by the callee stored at component `3`. Every query
    accepts either a bare component or a tuple.

    Choice maps are immutable; `merge` and the builders return new maps.

    Example:
        >>> chm = ChoiceMap.d({"x": 1.0, "steps": {0: {"obs": 0.5}}})
        >>> chm["x"]
        1.0
        >>> chm.value_at(("steps", 0, "obs"))
        0.5
        >>> list(chm)
        [(('x',), 1.0), (('steps', 0, 'obs'), 0.5)]
    """

    entries: dict[Any, Any] = Pytree.field(default_factory=dict)

    @staticmethod
    def empty() -> "ChoiceMap":
        return ChoiceMap({})

    @staticmethod
    def entry(addr: Addr, v: Any) -> "ChoiceMap":
        chm = v
        for component in reversed(as_address(addr)):
            chm = ChoiceMap({component: chm})
        assert isinstance(chm, ChoiceMap)
        return chm

    @staticmethod
    def d(d: dict[Any, Any]) -> "ChoiceMap":
        """Build a choice map from a (possibly nested) dictionary. Keys may be
        components or tuple addresses."""
        chm = ChoiceMap.empty()
        for addr, v in d.items():
            v = ChoiceMap.d(v) if isinstance(v, dict) else v
            chm = chm.merge(ChoiceMap.entry(addr, v))
        return chm

    @staticmethod
    def kw(**kwargs) -> "ChoiceMap":
        return ChoiceMap.d(kwargs)

    @staticmethod
    def coerce(x: "ChoiceMap | dict[Any, Any] | None") -> "ChoiceMap":
        if x is None:
            return ChoiceMap.empty()
        if isinstance(x, dict):
            return ChoiceMap.d(x)
        return x

    def _lookup(self, addr: Addr) -> Any:
        path = as_address(addr)
        node = self
        for component in path:
            if not isinstance(node, ChoiceMap) or component not in node.entries:
                raise AddressNotFound(path)
            node = node.entries[component]
        return node

    def get(self, component: AddrComponent) -> Any:
        """Return the leaf or submap stored directly under `component`, or
        `None`. Empty submaps are reported as `None`."""
        v = self.entries.get(component)
        if isinstance(v, ChoiceMap) and v.is_empty():
            return None
        return v

    def value_at(self, addr: Addr) -> Any:
        v = self._lookup(addr)
        if isinstance(v, ChoiceMap):
            raise AddressNotFound(as_address(addr))
        return v

    def has(self, addr: Addr) -> bool:
        node = self
        for component in as_address(addr):
            if not isinstance(node, ChoiceMap) or component not in node.entries:
                return False
            node = node.entries[component]
        return not isinstance(node, ChoiceMap)

    def get_submap(self, addr: Addr) -> "ChoiceMap":
        node = self
        for component in as_address(addr):
            if component not in node.entries:
                return ChoiceMap.empty()
            node = node.entries[component]
            if not isinstance(node, ChoiceMap):
                raise AddressNotFound(as_address(addr))
        return node

    def merge(self, other: "ChoiceMap | dict[Any, Any]") -> "ChoiceMap":
        return self._merge(ChoiceMap.coerce(other), ())

    def _merge(self, other: "ChoiceMap", prefix: Address) -> "ChoiceMap":
        entries = dict(self.entries)
        for component, v in other.entries.items():
            if component not in entries:
                entries[component] = v
                continue
            mine = entries[component]
            # An empty submap holds no value, so the other side wins.
            if isinstance(mine, ChoiceMap) and mine.is_empty():
                entries[component] = v
            elif isinstance(v, ChoiceMap) and v.is_empty():
                continue
            elif isinstance(mine, ChoiceMap) and isinstance(v, ChoiceMap):
                entries[component] = mine._merge(v, (*prefix, component))
            else:
                raise AddressConflict(
                    f"Both choice maps hold a value at address {(*prefix, component)}."
                )
        return ChoiceMap(entries)

    def restrict(self, addresses: Sequence[Addr]) -> "ChoiceMap":
        """Keep only the leaves at `addresses`; addresses without a leaf are skipped."""
        chm = ChoiceMap.empty()
        for addr in addresses:
            if self.has(addr):
                chm = chm.merge(ChoiceMap.entry(addr, self.value_at(addr)))
        return chm

    def items(self) -> Iterator[tuple[Address, Any]]:
        for component, v in self.entries.items():
            if isinstance(v, ChoiceMap):
                for path, leaf in v.items():
                    yield (component, *path), leaf
            else:
                yield (component,), v

    def addresses(self) -> list[Address]:
        return [addr for addr, _ in self.items()]

    def is_empty(self) -> bool:
        return next(self.items(), None) is None

    def to_dict(self) -> dict[Any, Any]:
        return {
            k: v.to_dict() if isinstance(v, ChoiceMap) else v
            for k, v in self.entries.items()
        }

    def __getitem__(self, addr: Addr) -> Any:
        return self._lookup(addr)

    def __contains__(self, addr: Addr) -> bool:
        return self.has(addr)

    def __iter__(self) -> Iterator[tuple[Address, Any]]:
        return self.items()

    def __len__(self) -> int:
        return sum(1 for _ in self.items())

    def __or__(self, other: "ChoiceMap | dict[Any, Any]") -> "ChoiceMap":
        return self.merge(other)


#########
# Diffs #
#########


class ChangeTangent(Pytree):
    """A change descriptor for a value passed to (or returned from) `update`."""


@Pytree.dataclass
class _NoChange(ChangeTangent):
    def __repr__(self):
        return "NoChange"


@Pytree.dataclass
class _UnknownChange(ChangeTangent):
    def __repr__(self):
        return "UnknownChange"


NoChange = _NoChange()
UnknownChange = _UnknownChange()

Argdiffs = btyping.Tuple[ChangeTangent, ...]


def no_change(args: tuple) -> Argdiffs:
    return tuple(NoChange for _ in args)


def unknown_change(args: tuple) -> Argdiffs:
    return tuple(UnknownChange for _ in args)


def static_check_no_change(argdiffs: Argdiffs) -> bool:
    return all(d == NoChange for d in argdiffs)


_NUMERIC = (jax.Array, np.ndarray, np.generic, bool, int, float, complex)


def _same_value(x, y) -> bool:
    if x is y:
        return True
    if isinstance(x, (tuple, list)) and isinstance(y, (tuple, list)):
        return (
            type(x) is type(y)
            and len(x) == len(y)
            and all(_same_value(a, b) for a, b in zip(x, y))
        )
    if isinstance(x, str) and isinstance(y, str):
        return x == y
    if isinstance(x, _NUMERIC) and isinstance(y, _NUMERIC):
        return jnp.shape(x) == jnp.shape(y) and bool(jnp.all(x == y))
    return False


def diff(old: Any, new: Any) -> ChangeTangent:
    """Conservative value-level change check: `NoChange` only when the two values
    are the same object or compare equal leaf by leaf."""
    return NoChange if _same_value(old, new) else UnknownChange


def diff_args(old_args: tuple, new_args: tuple) -> Argdiffs:
    if len(old_args) != len(new_args):
        return unknown_change(new_args)
    return tuple(diff(a, b) for a, b in zip(old_args, new_args))


#######
# GFI #
#######


class Trace(Generic[X, R], Pytree):
    @abstractmethod
    def get_gen_fn(self) -> "GFI[X, R]":
        pass

    @abstractmethod
    def get_choices(self) -> X:
        pass

    @abstractmethod
    def get_args(self) -> tuple:
        pass

    @abstractmethod
    def get_retval(self) -> R:
        pass

    @abstractmethod
    def get_score(self) -> Score:
        pass

    def get_subtrace(self, addr: Addr) -> "Trace[Any, Any]":
        raise AddressNotFound(as_address(addr))

    def update(
        self,
        key: PRNGKey,
        x: Any = None,
        args: tuple | None = None,
        argdiffs: Argdiffs | None = None,
    ) -> "tuple[Trace[X, R], Weight, Any, ChangeTangent]":
        gen_fn = self.get_gen_fn()
        args_ = self.get_args() if args is None else args
        if argdiffs is None:
            argdiffs = diff_args(self.get_args(), args_)
        return gen_fn.update(key, self, args_, argdiffs, x)

    def __getitem__(self, addr: Addr):
        choices = self.get_choices()
        return choices[addr]  # pyright: ignore


def get_choices(x: "Trace[X, R] | X") -> X:
    return x.get_choices() if isinstance(x, Trace) else x


def get_score(x: Trace[X, R]) -> Weight:
    return x.get_score()


def get_retval(x: Trace[X, R]) -> R:
    return x.get_retval()


class GFI(Generic[X, R], Pytree):
    """The generative function interface.

    Every operation which may sample takes an explicit PRNG key as its first
    argument. `update` returns `(new_trace, weight, discard, retdiff)`.
    """

    def __call__(self, *args) -> "Thunk[X, R]":
        return Thunk(self, args)

    @abstractmethod
    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> Trace[X, R]:
        pass

    @abstractmethod
    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        x: Any,
    ) -> tuple[Trace[X, R], Weight]:
        pass

    @abstractmethod
    def assess(
        self,
        args: tuple,
        x: Any,
    ) -> tuple[Density, R]:
        pass

    @abstractmethod
    def update(
        self,
        key: PRNGKey,
        tr: Trace[X, R],
        args_: tuple,
        argdiffs: Argdiffs,
        x_: Any,
    ) -> tuple[Trace[X, R], Weight, Any, ChangeTangent]:
        pass

    def log_density(
        self,
        args: tuple,
        x: Any,
    ) -> Density:
        logp, _ = self.assess(args, x)
        return logp

    def same_as(self, other: "GFI[Any, Any]") -> bool:
        return type(self) is type(other) and (self is other or self == other)


@Pytree.dataclass
class Thunk(Generic[X, R], Pytree):
    gen_fn: GFI[X, R]
    args: tuple

    def __matmul__(self, other: AddrComponent):
        return trace(other, self.gen_fn, self.args)


#################
# Distributions #
#################


@Pytree.dataclass
class Tr(Generic[X], Trace[X, X]):
    gen_fn: "Distribution[X]"
    args: tuple
    value: Any
    score: Score

    def get_gen_fn(self) -> "Distribution[X]":
        return self.gen_fn

    def get_choices(self) -> X:
        return self.value

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> X:
        return self.value

    def get_score(self) -> Score:
        return self.score


@Pytree.dataclass
class Distribution(Generic[X], GFI[X, X]):
    """A `Distribution` is a generative function that implements a probability distribution.

    Distributions are the leaves of probabilistic programs. They implement the
    generative function interface by wrapping a keyful sampling function and a
    log probability density function.

    Mathematical ingredients:
    - A measure kernel P(dx; args) over a measurable space X given arguments args
    - Return value function f(x, args) = x (identity function for distributions)
    - Internal proposal distribution family Q(dx; args, x') = P(dx; args) (prior)

    Attributes:
        sample: A sampling function `sample(key, *params)`
        logpdf: A log probability density function `logpdf(value, *params)`
        name: Optional name for the distribution (used in messages)

    Example:
        >>> import jax.numpy as jnp
        >>> import jax.random as jrand
        >>> from gensmc import Distribution
        >>>
        >>> def sample_normal(key, mu, sigma):
        ...     return mu + sigma * jrand.normal(key)
        >>>
        >>> def logpdf_normal(x, mu, sigma):
        ...     return -0.5 * ((x - mu) / sigma)**2 - jnp.log(sigma) - 0.5 * jnp.log(2 * jnp.pi)
        >>>
        >>> normal = Distribution(sample_normal, logpdf_normal, name="normal")
        >>> trace = normal.simulate(jrand.key(0), (0.0, 1.0))
    """

    sample: Callable[..., Any] = Pytree.static()
    logpdf: Callable[..., Any] = Pytree.static()
    name: str | None = Pytree.static(default=None)

    def _log_density(self, x, args: tuple) -> Density:
        return jnp.asarray(self.logpdf(x, *args), dtype=float)

    def _check_leaf(self, x):
        if isinstance(x, ChoiceMap):
            raise AddressConflict(
                f"{self.name or 'Distribution'} expects a value, but received a choice map."
            )

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> Tr[X]:
        x = self.sample(key, *args)
        return Tr(self, args, x, self._log_density(x, args))

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        x: Any,
    ) -> tuple[Tr[X], Weight]:
        if x is None:
            tr = self.simulate(key, args)
            return tr, jnp.array(0.0)
        else:
            self._check_leaf(x)
            logp = self._log_density(x, args)
            return Tr(self, args, x, logp), logp

    def assess(
        self,
        args: tuple,
        x: Any,
    ) -> tuple[Density, X]:
        self._check_leaf(x)
        return self._log_density(x, args), x

    def update(
        self,
        key: PRNGKey,
        tr: Trace[X, X],
        args_: tuple,
        argdiffs: Argdiffs,
        x_: Any,
    ) -> tuple[Tr[X], Weight, Any, ChangeTangent]:
        x = get_choices(tr)
        if x_ is None:
            if static_check_no_change(argdiffs):
                return tr, jnp.array(0.0), None, NoChange
            log_density_ = self._log_density(x, args_)
            return (
                Tr(self, args_, x, log_density_),
                log_density_ - tr.get_score(),
                None,
                NoChange,
            )
        else:
            self._check_leaf(x_)
            log_density_ = self._log_density(x_, args_)
            return (
                Tr(self, args_, x_, log_density_),
                log_density_ - tr.get_score(),
                x,
                UnknownChange,
            )


def distribution(
    sampler: Callable[..., Any],
    logpdf: Callable[..., Any],
    /,
    name: str | None = None,
) -> Distribution[Any]:
    return Distribution(
        sampler,
        logpdf,
        name,
    )


# Mostly, just use TFP.
def tfp_distribution(
    dist: Callable[..., "tfd.Distribution"],
    /,
    name: str | None = None,
) -> Distribution[Any]:
    def keyful_sampler(key, *args, sample_shape=(), **kwargs):
        d = dist(*args, **kwargs)
        return d.sample(seed=key, sample_shape=sample_shape)

    def logpdf(v, *args, **kwargs):
        d = dist(*args, **kwargs)
        return d.log_prob(v)

    return distribution(
        keyful_sampler,
        logpdf,
        name=name,
    )


######
# Fn #
######


def _check_fresh(addr: AddrComponent, visited) -> None:
    if addr in visited:
        raise DuplicateAddress(
            f"Address {addr!r} was visited more than once in a single execution."
        )


@dataclass
class Simulate:
    key: PRNGKey
    score: Score
    trace_map: dict[Any, Any]

    def __call__(
        self,
        addr: AddrComponent,
        gen_fn: GFI[X, R],
        args: tuple,
    ) -> R:
        _check_fresh(addr, self.trace_map)
        self.key, sub_key = jrand.split(self.key)
        tr = gen_fn.simulate(sub_key, args)
        self.score += tr.get_score()
        self.trace_map[addr] = tr
        return tr.get_retval()


@dataclass
class Generate:
    key: PRNGKey
    choice_map: ChoiceMap
    score: Score
    weight: Weight
    trace_map: dict[Any, Any]

    def __call__(
        self,
        addr: AddrComponent,
        gen_fn: GFI[X, R],
        args: tuple,
    ) -> R:
        _check_fresh(addr, self.trace_map)
        self.key, sub_key = jrand.split(self.key)
        tr, weight = gen_fn.generate(sub_key, args, self.choice_map.get(addr))
        self.weight += weight
        self.score += tr.get_score()
        self.trace_map[addr] = tr
        return tr.get_retval()


@dataclass
class Assess:
    choice_map: ChoiceMap
    logp: Density
    visited: set[Any]

    def __call__(
        self,
        addr: AddrComponent,
        gen_fn: GFI[X, R],
        args: tuple,
    ) -> R:
        _check_fresh(addr, self.visited)
        self.visited.add(addr)
        x = self.choice_map.get(addr)
        if x is None and isinstance(gen_fn, Distribution):
            raise AddressNotFound((addr,))
        logp, r = gen_fn.assess(args, x)
        self.logp += logp
        return r


@dataclass
class Update:
    key: PRNGKey
    trace: "FnTr[Any]"
    choice_map: ChoiceMap
    trace_map: dict[Any, Any]
    discard: dict[Any, Any]
    score: Score
    weight: Weight

    def __call__(
        self,
        addr: AddrComponent,
        gen_fn: GFI[X, R],
        args_: tuple,
    ) -> R:
        _check_fresh(addr, self.trace_map)
        self.key, sub_key = jrand.split(self.key)
        x = self.choice_map.get(addr)
        subtrace = self.trace.subtraces.get(addr)
        if subtrace is not None and subtrace.get_gen_fn().same_as(gen_fn):
            argdiffs = diff_args(subtrace.get_args(), args_)
            tr, w, discard, _ = gen_fn.update(sub_key, subtrace, args_, argdiffs, x)
            if discard is not None and not (
                isinstance(discard, ChoiceMap) and discard.is_empty()
            ):
                self.discard[addr] = discard
        else:
            # A different callee now lives at this address.
            if subtrace is not None:
                self.discard[addr] = get_choices(subtrace)
                self.weight -= subtrace.get_score()
            tr, w = gen_fn.generate(sub_key, args_, x)
        self.trace_map[addr] = tr
        self.score += tr.get_score()
        self.weight += w
        return tr.get_retval()


handler_stack: list[Simulate | Generate | Assess | Update] = []


# Generative function invocation at an address.
def trace(
    addr: AddrComponent,
    gen_fn: GFI[X, R],
    args: tuple,
) -> R:
    if not handler_stack:
        raise RuntimeError(
            "`gen_fn(*args) @ addr` can only be used inside the body of a `@gen` function."
        )
    handler = handler_stack[-1]
    retval = handler(addr, gen_fn, args)
    return retval


def _unused(choice_map: ChoiceMap, visited) -> list[Any]:
    return [
        addr
        for addr, v in choice_map.entries.items()
        if addr not in visited
        and not (isinstance(v, ChoiceMap) and v.is_empty())
    ]


@Pytree.dataclass
class FnTr(Generic[R], Trace[ChoiceMap, R]):
    gen_fn: "Fn[R]"
    args: tuple
    subtraces: dict[Any, Any]
    retval: Any
    score: Score

    def get_gen_fn(self) -> "Fn[R]":
        return self.gen_fn

    def get_choices(self) -> ChoiceMap:
        return ChoiceMap(
            {addr: get_choices(tr) for addr, tr in self.subtraces.items()}
        )

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> R:
        return self.retval

    def get_score(self) -> Score:
        return self.score

    def get_subtrace(self, addr: Addr) -> Trace[Any, Any]:
        first, *rest = as_address(addr)
        if first not in self.subtraces:
            raise AddressNotFound(as_address(addr))
        tr = self.subtraces[first]
        return tr.get_subtrace(tuple(rest)) if rest else tr


@Pytree.dataclass
class Fn(
    Generic[R],
    GFI[ChoiceMap, R],
):
    """A `Fn` is a generative function created from a Python function
    using the `@gen` decorator.

    `Fn` implements the GFI by executing the wrapped function in different execution contexts
    (handlers) that intercept calls to other generative functions via the `@` addressing syntax.
    The body is plain Python: loops, branches and recursion may depend on
    earlier random choices, and every operation re-executes the whole body.

    Mathematical ingredients:
    - Measure kernel P(dx; args) defined by the composition of callees in the function
    - Return value function f(x, args) defined by the function's logic and return statement
    - Internal proposal distribution family Q(dx; args, x') defined by ancestral sampling

    The choice space is a `ChoiceMap` mapping each call-site address to the
    choices made by the callee at that address.

    Attributes:
        source: The original Python function that defines the probabilistic computation

    Example:
        >>> from gensmc import gen, normal
        >>>
        >>> @gen
        >>> def model():
        ...     x = normal(0.0, 1.0) @ "x"
        ...     return normal(x, 0.1) @ "z"
        >>>
        >>> trace, weight = model.generate(jrand.key(0), (), {"z": 0.5})
        >>> trace.get_choices()["x"]
    """

    source: Callable[..., R] = Pytree.static()

    def _run(self, handler, args: tuple):
        handler_stack.append(handler)
        try:
            r = self.source(*args)
        finally:
            handler_stack.pop()
        return r

    def _name(self) -> str:
        return getattr(self.source, "__name__", "Fn")

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> FnTr[R]:
        handler = Simulate(key, jnp.array(0.0), {})
        r = self._run(handler, args)
        return FnTr(self, args, handler.trace_map, r, handler.score)

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        x: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[FnTr[R], Weight]:
        x = ChoiceMap.coerce(x)
        if x.is_empty():
            tr = self.simulate(key, args)
            return tr, jnp.array(0.0)
        handler = Generate(key, x, jnp.array(0.0), jnp.array(0.0), {})
        r = self._run(handler, args)
        check_unused_constraints(_unused(x, handler.trace_map), self._name())
        tr = FnTr(self, args, handler.trace_map, r, handler.score)
        return tr, handler.weight

    def assess(
        self,
        args: tuple,
        x: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[Density, R]:
        x = ChoiceMap.coerce(x)
        handler = Assess(x, jnp.array(0.0), set())
        r = self._run(handler, args)
        check_unused_constraints(_unused(x, handler.visited), self._name())
        return handler.logp, r

    def update(
        self,
        key: PRNGKey,
        tr: Trace[ChoiceMap, R],
        args_: tuple,
        argdiffs: Argdiffs,
        x_: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[FnTr[R], Weight, ChoiceMap, ChangeTangent]:
        assert isinstance(tr, FnTr)
        x_ = ChoiceMap.coerce(x_)
        handler = Update(key, tr, x_, {}, {}, jnp.array(0.0), jnp.array(0.0))
        r = self._run(handler, args_)
        check_unused_constraints(_unused(x_, handler.trace_map), self._name())

        # Addresses which the new execution no longer visits.
        for addr, subtrace in tr.subtraces.items():
            if addr not in handler.trace_map:
                handler.discard[addr] = get_choices(subtrace)
                handler.weight -= subtrace.get_score()

        new_tr = FnTr(self, args_, handler.trace_map, r, handler.score)
        retdiff = diff(tr.get_retval(), r)
        return new_tr, handler.weight, ChoiceMap(handler.discard), retdiff


def gen(fn: Callable[..., R]) -> Fn[R]:
    return Fn(source=fn)


##########
# Unfold #
##########


def _num_steps(args: tuple) -> int:
    if not args:
        raise ValueError("Unfold expects arguments (num_steps, init_state, *shared).")
    n = int(args[0])
    if n < 0:
        raise ValueError(f"Unfold requires num_steps >= 0, got {n}.")
    return n


def _step_addrs(choice_map: ChoiceMap, n: int) -> list[Any]:
    return [
        addr
        for addr, v in choice_map.entries.items()
        if not (isinstance(addr, int) and 0 <= addr < n)
        and not (isinstance(v, ChoiceMap) and v.is_empty())
    ]


@Pytree.dataclass
class UnfoldTr(Trace[ChoiceMap, tuple]):
    gen_fn: "Unfold"
    args: tuple
    subtraces: tuple
    states: tuple
    score: Score

    def get_gen_fn(self) -> "Unfold":
        return self.gen_fn

    def get_choices(self) -> ChoiceMap:
        return ChoiceMap({t: get_choices(tr) for t, tr in enumerate(self.subtraces)})

    def get_args(self) -> tuple:
        return self.args

    def get_retval(self) -> tuple:
        return self.states

    def get_score(self) -> Score:
        return self.score

    def get_subtrace(self, addr: Addr) -> Trace[Any, Any]:
        first, *rest = as_address(addr)
        if not (isinstance(first, int) and 0 <= first < len(self.subtraces)):
            raise AddressNotFound(as_address(addr))
        tr = self.subtraces[first]
        return tr.get_subtrace(tuple(rest)) if rest else tr


@Pytree.dataclass
class Unfold(GFI[ChoiceMap, tuple]):
    """An `Unfold` is a generative function combinator that chains a kernel
    generative function over a growing sequence of states.

    The kernel is invoked as `kernel(t, prev_state, *shared) -> next_state`,
    and the chain is invoked as `chain(num_steps, init_state, *shared)`. The
    choices of step `t` are stored under address `t`; the return value is the
    tuple of produced states.

    Mathematical ingredients:
    - If kernel has measure kernel P_k(dx; t, s, shared), then Unfold has kernel
      P_unfold(dX; n, s_0, shared) = prod_t P_k(dx_t; t, s_t, shared)
      where s_{t+1} = f_k(x_t; t, s_t, shared)
    - Internal proposal family inherits from the kernel's proposal family

    `update` is incremental: steps whose inputs and constraints are unchanged
    are reused together with their stored scores, so extending a chain of
    length L to L + k invokes the kernel k times.

    Attributes:
        kernel: The per-step generative function

    Example:
        >>> @gen
        >>> def step(t, prev, drift):
        ...     return normal(prev + drift, 1.0) @ "x"
        >>>
        >>> chain = Unfold(step)
        >>> tr = chain.simulate(jrand.key(0), (10, 0.0, 0.1))
        >>> tr[(3, "x")]
    """

    kernel: GFI[Any, Any]

    def simulate(
        self,
        key: PRNGKey,
        args: tuple,
    ) -> UnfoldTr:
        n = _num_steps(args)
        _, state, *shared = args
        subtraces, states = [], []
        score = jnp.array(0.0)
        for t in range(n):
            tr = self.kernel.simulate(jrand.fold_in(key, t), (t, state, *shared))
            state = tr.get_retval()
            subtraces.append(tr)
            states.append(state)
            score += tr.get_score()
        return UnfoldTr(self, args, tuple(subtraces), tuple(states), score)

    def generate(
        self,
        key: PRNGKey,
        args: tuple,
        x: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[UnfoldTr, Weight]:
        n = _num_steps(args)
        _, state, *shared = args
        x = ChoiceMap.coerce(x)
        check_unused_constraints(_step_addrs(x, n), "Unfold")
        subtraces, states = [], []
        score, weight = jnp.array(0.0), jnp.array(0.0)
        for t in range(n):
            tr, w = self.kernel.generate(
                jrand.fold_in(key, t), (t, state, *shared), x.get(t)
            )
            state = tr.get_retval()
            subtraces.append(tr)
            states.append(state)
            score += tr.get_score()
            weight += w
        return UnfoldTr(self, args, tuple(subtraces), tuple(states), score), weight

    def assess(
        self,
        args: tuple,
        x: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[Density, tuple]:
        n = _num_steps(args)
        _, state, *shared = args
        x = ChoiceMap.coerce(x)
        check_unused_constraints(_step_addrs(x, n), "Unfold")
        logp = jnp.array(0.0)
        states = []
        for t in range(n):
            density, state = self.kernel.assess((t, state, *shared), x.get(t))
            logp += density
            states.append(state)
        return logp, tuple(states)

    def update(
        self,
        key: PRNGKey,
        tr: Trace[ChoiceMap, tuple],
        args_: tuple,
        argdiffs: Argdiffs,
        x_: ChoiceMap | dict[Any, Any] | None,
    ) -> tuple[UnfoldTr, Weight, ChoiceMap, ChangeTangent]:
        assert isinstance(tr, UnfoldTr)
        n = _num_steps(args_)
        _, state, *shared = args_
        _, init_diff, *shared_diffs = argdiffs
        x_ = ChoiceMap.coerce(x_)
        check_unused_constraints(_step_addrs(x_, n), "Unfold")

        old_n = len(tr.subtraces)
        subtraces, states = list(tr.subtraces[:n]), list(tr.states[:n])
        score, weight = tr.get_score(), jnp.array(0.0)
        discard = {}

        # When shared arguments change, every retained step must be revisited.
        shared_changed = not static_check_no_change(tuple(shared_diffs))
        state_changed = init_diff != NoChange
        any_changed = n != old_n
        for t in range(min(n, old_n)):
            x = x_.get(t)
            if x is None and not (shared_changed or state_changed):
                state = tr.states[t]
                continue
            old = tr.subtraces[t]
            new, w, d, retdiff = self.kernel.update(
                jrand.fold_in(key, t),
                old,
                (t, state, *shared),
                (NoChange, UnknownChange if state_changed else NoChange, *shared_diffs),
                x,
            )
            if d is not None and not (isinstance(d, ChoiceMap) and d.is_empty()):
                discard[t] = d
            state = new.get_retval()
            subtraces[t], states[t] = new, state
            score = score + new.get_score() - old.get_score()
            weight += w
            state_changed = retdiff != NoChange
            any_changed = any_changed or state_changed

        # Steps beyond the new length.
        for t in range(n, old_n):
            old = tr.subtraces[t]
            discard[t] = get_choices(old)
            score -= old.get_score()
            weight -= old.get_score()

        # Newly appended steps.
        for t in range(old_n, n):
            new, w = self.kernel.generate(
                jrand.fold_in(key, t), (t, state, *shared), x_.get(t)
            )
            state = new.get_retval()
            subtraces.append(new)
            states.append(state)
            score += new.get_score()
            weight += w

        new_tr = UnfoldTr(self, args_, tuple(subtraces), tuple(states), score)
        retdiff = UnknownChange if any_changed else NoChange
        return new_tr, weight, ChoiceMap(discard), retdiff
