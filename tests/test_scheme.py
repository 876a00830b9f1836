"""Tests for slot naming schemes and options."""

import pytest

from fxad import FunctionOptions, ImplicitOptions, IOScheme, OutOfRangeError


class TestIOScheme:
    def test_lookup(self):
        scheme = IOScheme(["x", "p"], ["state", "parameter"])

        assert scheme.name == "customIO"
        assert len(scheme) == 2
        assert scheme.index("p") == 1
        assert scheme.entry(0) == "x"
        assert scheme.entry_names() == "x, p"
        assert scheme.describe(1) == "p 'parameter'"

    def test_describe_without_description(self):
        assert IOScheme(["x"]).describe(0) == "x"

    def test_repr(self):
        assert repr(IOScheme(["a", "b"])) == "customIO(a, b)"

    def test_unknown_name(self):
        with pytest.raises(OutOfRangeError, match="not available"):
            IOScheme(["x"]).index("y")

    def test_index_out_of_range(self):
        with pytest.raises(OutOfRangeError, match="only length 1"):
            IOScheme(["x"]).entry(3)

    def test_description_count_mismatch(self):
        with pytest.raises(ValueError):
            IOScheme(["x", "y"], ["only one"])


class TestFunctionOptions:
    def test_defaults(self):
        opts = FunctionOptions()
        assert opts.number_of_fwd_dir == 1
        assert opts.number_of_adj_dir == 1
        assert opts.ad_mode == "automatic"
        assert not opts.numeric_jacobian
        assert opts.sparse

    def test_from_dict(self):
        opts = FunctionOptions.from_dict({"name": "f", "ad_mode": "adjoint"})
        assert opts.name == "f"
        assert opts.ad_mode == "adjoint"

    def test_from_empty_dict(self):
        assert FunctionOptions.from_dict(None) == FunctionOptions()

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown options"):
            FunctionOptions.from_dict({"verbose": True})

    def test_bad_ad_mode(self):
        with pytest.raises(ValueError, match="ad_mode"):
            FunctionOptions(ad_mode="sideways")

    def test_negative_directions(self):
        with pytest.raises(ValueError, match="non-negative"):
            FunctionOptions(number_of_fwd_dir=-1)

    def test_frozen(self):
        with pytest.raises(AttributeError):
            FunctionOptions().name = "g"


def test_implicit_options_defaults():
    opts = ImplicitOptions()
    assert opts.abstol == 1e-12
    assert opts.max_iter == 50
