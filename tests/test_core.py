"""
Test cases for gensmc core functionality: choice maps, distributions, the
direct interpreter (`@gen`) and the weight identities of the GFI.
"""

import jax.numpy as jnp
import jax.random as jrand
import jax.scipy.stats as jstats
import pytest

from gensmc import (
    AddressConflict,
    AddressNotFound,
    ChoiceMap,
    DuplicateAddress,
    NoChange,
    UnknownChange,
    UnusedConstraint,
    UnusedConstraintWarning,
    bernoulli,
    categorical,
    constraint_policy,
    diff_args,
    exponential,
    gen,
    normal,
    poisson,
    uniform,
)
from gensmc.core import config


class TestChoiceMap:
    """Construction and queries of hierarchical choice maps."""

    def test_nested_dict_and_tuple_paths(self):
        chm = ChoiceMap.d({"x": 1.0, "steps": {0: {"obs": 0.5}}, ("steps", 1, "obs"): 0.7})
        assert chm["x"] == 1.0
        assert chm.value_at(("steps", 0, "obs")) == 0.5
        assert chm.value_at(("steps", 1, "obs")) == 0.7
        assert ("steps", 1, "obs") in chm
        assert "steps" not in chm  # a submap, not a leaf
        assert len(chm) == 3

    def test_iteration_in_insertion_order(self):
        chm = ChoiceMap.kw(b=2.0, a=1.0)
        assert list(chm) == [(("b",), 2.0), (("a",), 1.0)]
        assert chm.addresses() == [("b",), ("a",)]

    def test_missing_addresses(self):
        chm = ChoiceMap.d({"x": 1.0, "sub": {"y": 2.0}})
        with pytest.raises(AddressNotFound):
            chm.value_at("z")
        with pytest.raises(AddressNotFound):
            chm.value_at("sub")
        with pytest.raises(AddressNotFound):
            chm["x", "deeper"]
        assert chm.get_submap("nothing").is_empty()
        assert chm.get_submap("sub").value_at("y") == 2.0
        assert chm.get("nothing") is None

    def test_merge(self):
        left = ChoiceMap.d({"a": 1.0, "sub": {"x": 1.0}})
        right = ChoiceMap.d({"b": 2.0, "sub": {"y": 2.0}})
        merged = left | right
        assert merged.to_dict() == {"a": 1.0, "sub": {"x": 1.0, "y": 2.0}, "b": 2.0}
        # Merging does not mutate its inputs.
        assert left.to_dict() == {"a": 1.0, "sub": {"x": 1.0}}

    def test_merge_empty_submap_with_leaf(self):
        """An empty submap holds no value, so a leaf on either side wins."""
        assert ChoiceMap.d({"a": {}}).merge({"a": 1.0}).value_at("a") == 1.0
        assert ChoiceMap.d({"a": 1.0}).merge({"a": {}}).value_at("a") == 1.0
        merged = ChoiceMap.d({"sub": {"x": {}}}) | ChoiceMap.d({("sub", "x"): 2.0})
        assert merged.to_dict() == {"sub": {"x": 2.0}}

    def test_merge_conflict(self):
        with pytest.raises(AddressConflict):
            ChoiceMap.d({"sub": {"x": 1.0}}).merge({"sub": {"x": 2.0}})
        with pytest.raises(AddressConflict):
            ChoiceMap.d({("a", "b"): 1.0, "a": {"b": 3.0}})

    def test_restrict(self):
        chm = ChoiceMap.d({"b": 1.0, "x": 2.0, "sub": {"y": 3.0}})
        kept = chm.restrict([("b",), ("sub", "y"), "missing", "sub"])
        assert kept.to_dict() == {"b": 1.0, "sub": {"y": 3.0}}

    def test_empty(self):
        assert ChoiceMap.empty().is_empty()
        assert ChoiceMap.coerce(None).is_empty()
        assert ChoiceMap.d({"sub": {}}).is_empty()
        assert len(ChoiceMap.empty()) == 0


class TestDiffs:
    def test_diff_args(self):
        x = jnp.array([1.0, 2.0])
        assert diff_args((1, 0.5, x), (1, 0.5, jnp.array([1.0, 2.0]))) == (
            NoChange,
            NoChange,
            NoChange,
        )
        assert diff_args((1, 0.5), (2, 0.5)) == (UnknownChange, NoChange)
        assert diff_args((x,), (jnp.array([1.0]),)) == (UnknownChange,)
        assert diff_args(((1.0, 2.0),), ((1.0, 3.0),)) == (UnknownChange,)
        assert diff_args((1,), (1, 2)) == (UnknownChange, UnknownChange)


class TestDistributions:
    def test_simulate_score_matches_logpdf(self, base_key, standard_tolerance):
        trace = normal.simulate(base_key, (1.0, 2.0))
        x = trace.get_choices()
        expected = jstats.norm.logpdf(x, 1.0, 2.0)
        assert jnp.allclose(trace.get_score(), expected, atol=standard_tolerance)
        assert trace.get_retval() is x

    def test_generate_constrained_and_unconstrained(self, base_key):
        tr, w = exponential.generate(base_key, (2.0,), None)
        assert w == 0.0
        tr, w = exponential.generate(base_key, (2.0,), 0.3)
        assert tr.get_choices() == 0.3
        assert jnp.allclose(w, jnp.log(2.0) - 2.0 * 0.3)
        assert jnp.allclose(w, tr.get_score())

    def test_registry_densities(self):
        density, _ = uniform.assess((0.0, 4.0), 1.0)
        assert jnp.allclose(density, -jnp.log(4.0))
        density, _ = bernoulli.assess((0.25,), 1.0)
        assert jnp.allclose(density, jnp.log(0.25))
        density, _ = categorical.assess((jnp.log(jnp.array([0.2, 0.8])),), 1)
        assert jnp.allclose(density, jnp.log(0.8))
        density, _ = poisson.assess((3.0,), 2.0)
        assert jnp.allclose(density, jstats.poisson.logpmf(2, 3.0))

    def test_support_violation_gives_neg_inf(self):
        density, _ = uniform.assess((0.0, 1.0), 2.0)
        assert density == -jnp.inf

    def test_update_rescores_on_changed_args(self, base_key):
        trace = normal.simulate(base_key, (0.0, 1.0))
        x = trace.get_choices()
        new, w, discard, retdiff = normal.update(
            base_key, trace, (1.0, 1.0), (UnknownChange, NoChange), None
        )
        assert new.get_choices() is x
        assert discard is None
        assert retdiff == NoChange
        expected = jstats.norm.logpdf(x, 1.0, 1.0) - jstats.norm.logpdf(x, 0.0, 1.0)
        assert jnp.allclose(w, expected, atol=1e-5)


class TestFn:
    def test_score_additivity(self, base_key, latent_obs_model, standard_tolerance):
        """The score of an Fn trace is the sum of the log-densities of its choices."""
        trace = latent_obs_model.simulate(base_key, ())
        choices = trace.get_choices()
        x, z = choices["x"], choices["z"]
        manual = jstats.norm.logpdf(x, 0.0, 1.0) + jstats.norm.logpdf(z, x, 0.1)
        assert jnp.allclose(trace.get_score(), manual, atol=standard_tolerance)
        assert jnp.allclose(trace.get_retval(), x + z)

        density, retval = latent_obs_model.assess((), choices)
        assert jnp.allclose(density, trace.get_score(), atol=standard_tolerance)
        assert jnp.allclose(retval, x + z)

    def test_generate_weight_identity(self, base_key, latent_obs_model):
        """The generate weight is the log-density of the constrained choices only."""
        trace, weight = latent_obs_model.generate(base_key, (), {"z": 0.5})
        x = trace["x"]
        assert trace["z"] == 0.5
        assert jnp.allclose(weight, jstats.norm.logpdf(0.5, x, 0.1), atol=1e-4)

    def test_generate_fully_constrained_weight_is_score(self, base_key, latent_obs_model):
        trace, weight = latent_obs_model.generate(base_key, (), {"x": 0.2, "z": 0.1})
        assert jnp.allclose(weight, trace.get_score())
        density, _ = latent_obs_model.assess((), {"x": 0.2, "z": 0.1})
        assert jnp.allclose(weight, density)

    def test_nested_generative_functions(self, base_key):
        @gen
        def inner(mu):
            return normal(mu, 1.0) @ "v"

        @gen
        def outer():
            a = inner(0.0) @ "a"
            b = inner(a) @ "b"
            return b

        trace, weight = outer.generate(base_key, (), {"b": {"v": 1.5}})
        assert trace[("b", "v")] == 1.5
        assert trace.get_retval() == 1.5
        a = trace[("a", "v")]
        assert jnp.allclose(weight, jstats.norm.logpdf(1.5, a, 1.0), atol=1e-5)
        assert trace.get_subtrace(("a", "v")).get_retval() == a

    def test_duplicate_address(self, base_key):
        @gen
        def model():
            normal(0.0, 1.0) @ "x"
            normal(0.0, 1.0) @ "x"

        with pytest.raises(DuplicateAddress):
            model.simulate(base_key, ())

    @pytest.mark.parametrize("operation", ["generate", "assess"])
    def test_duplicate_address_when_constrained(self, base_key, operation):
        @gen
        def model():
            normal(0.0, 1.0) @ "x"
            normal(0.0, 1.0) @ "x"

        with pytest.raises(DuplicateAddress):
            if operation == "generate":
                model.generate(base_key, (), {"x": 0.5})
            else:
                model.assess((), {"x": 0.5})
        # The failed call leaves no handler installed.
        with pytest.raises(RuntimeError):
            normal(0.0, 1.0) @ "x"

    def test_duplicate_address_on_update(self, base_key):
        """An argument change which makes the body reuse an address is rejected."""

        @gen
        def model(repeat):
            normal(0.0, 1.0) @ "x"
            if repeat:
                normal(0.0, 1.0) @ "x"

        trace = model.simulate(base_key, (False,))
        with pytest.raises(DuplicateAddress):
            trace.update(base_key, None, (True,))
        assert model.simulate(base_key, (False,)).get_choices().addresses() == [("x",)]

    def test_trace_outside_fn_body(self):
        with pytest.raises(RuntimeError):
            normal(0.0, 1.0) @ "x"

    def test_assess_missing_address(self, latent_obs_model):
        with pytest.raises(AddressNotFound):
            latent_obs_model.assess((), {"x": 0.0})

    def test_unused_constraint_policies(self, base_key, latent_obs_model):
        with pytest.raises(UnusedConstraint):
            latent_obs_model.generate(base_key, (), {"typo": 1.0})

        with constraint_policy("warn"):
            with pytest.warns(UnusedConstraintWarning):
                trace, weight = latent_obs_model.generate(
                    base_key, (), {"z": 0.5, "typo": 1.0}
                )
        assert trace["z"] == 0.5
        assert config.unused_constraints == "error"

        with pytest.raises(ValueError):
            with constraint_policy("ignore"):
                pass


class TestUpdate:
    def test_update_weight_and_discard(self, base_key, latent_obs_model):
        trace = latent_obs_model.simulate(base_key, ())
        old_x, z = trace["x"], trace["z"]
        new, w, discard, _ = latent_obs_model.update(
            base_key, trace, (), (), {"x": 0.3}
        )
        assert new["x"] == 0.3
        assert new["z"] is z
        assert discard.value_at("x") is old_x
        assert discard.addresses() == [("x",)]
        assert jnp.allclose(w, new.get_score() - trace.get_score(), atol=1e-5)

    def test_reversibility(self, base_key, latent_obs_model):
        """Applying the discard of an update restores the original trace."""
        k1, k2, k3 = jrand.split(base_key, 3)
        trace = latent_obs_model.simulate(k1, ())
        new, w, discard, _ = trace.update(k2, {"x": 0.3, "z": -0.2})
        back, w_back, discard_back, _ = new.update(k3, discard)

        for addr in ["x", "z"]:
            assert back[addr] == trace[addr]
        assert jnp.allclose(back.get_score(), trace.get_score(), atol=1e-5)
        assert jnp.allclose(w_back, -w, atol=1e-5)
        assert discard_back.value_at("x") == 0.3
        assert discard_back.value_at("z") == -0.2

    def test_update_with_changed_args(self, base_key):
        @gen
        def model(mu):
            return normal(mu, 1.0) @ "x"

        trace = model.simulate(base_key, (0.0,))
        x = trace["x"]
        new, w, discard, retdiff = trace.update(base_key, None, (2.0,))
        assert new["x"] is x
        assert discard.is_empty()
        assert retdiff == NoChange
        expected = jstats.norm.logpdf(x, 2.0, 1.0) - jstats.norm.logpdf(x, 0.0, 1.0)
        assert jnp.allclose(w, expected, atol=1e-5)

    def test_disappearing_address(self, base_key, branching_model):
        """Switching a branch discards the old branch and samples the new one."""
        trace, _ = branching_model.generate(base_key, (), {"b": jnp.array(True)})
        old_x = trace["x"]
        new, w, discard, retdiff = trace.update(base_key, {"b": jnp.array(False)})

        assert "x" not in new.get_choices()
        assert "y" in new.get_choices()
        assert discard.value_at("x") is old_x
        assert bool(discard.value_at("b"))
        assert retdiff == UnknownChange

        # The freshly sampled "y" contributes its density to the score but not
        # to the weight.
        y_density = jstats.norm.logpdf(new["y"], 0.0, 2.0)
        expected = new.get_score() - trace.get_score() - y_density
        assert jnp.allclose(w, expected, atol=1e-5)
