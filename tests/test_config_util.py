import json

import numpy as np
import pytest

from cvxbiclust.config_util import load_config, make_gammas
from cvxbiclust.exceptions import (
    CobraError,
    ConfigurationError,
    NumericInstabilityError,
)


def test_load_json_config(tmp_path):
    p = tmp_path / "params.json"
    p.write_text(json.dumps({"phi": 0.3, "k_row": 4, "gammas": [0, 1, 2]}))
    assert load_config(p) == {"phi": 0.3, "k_row": 4, "gammas": [0, 1, 2]}


def test_load_yaml_config_skips_unknown_keys(tmp_path):
    p = tmp_path / "params.yaml"
    p.write_text("phi: 0.25\nk_col: 3\nlearning_rate: 0.1\n")
    cfg = load_config(p, allowed=["phi", "k_col"])
    assert cfg == {"phi": 0.25, "k_col": 3}


def test_empty_yaml_and_none_path(tmp_path):
    p = tmp_path / "empty.yml"
    p.write_text("")
    assert load_config(p) == {}
    assert load_config(None) == {}


def test_config_errors(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.json")

    bad = tmp_path / "params.toml"
    bad.write_text("phi = 1")
    with pytest.raises(ConfigurationError):
        load_config(bad)

    listed = tmp_path / "list.json"
    listed.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        load_config(listed)


def test_make_gammas():
    g = make_gammas(1e-2, 1e2, 5)
    np.testing.assert_allclose(g, [1e-2, 1e-1, 1.0, 1e1, 1e2])
    g0 = make_gammas(1e-2, 1e2, 5, include_zero=True)
    assert g0[0] == 0.0 and g0.size == 6
    assert np.all(np.diff(g0) > 0)


@pytest.mark.parametrize("args", [(0.0, 1.0, 3), (1.0, 1.0, 3), (1.0, 0.5, 3), (1e-2, 1.0, 0)])
def test_make_gammas_rejects_bad_ranges(args):
    with pytest.raises(ConfigurationError):
        make_gammas(*args)


def test_error_context_in_message():
    err = ConfigurationError("phi must be > 0", context={"phi": -1})
    assert str(err) == "phi must be > 0 (Context: phi=-1)"
    assert err.to_dict()["type"] == "ConfigurationError"
    assert isinstance(err, CobraError) and isinstance(err, ValueError)

    nerr = NumericInstabilityError("nan in U", gamma=2.0, index=3)
    assert nerr.gamma == 2.0 and nerr.index == 3 and nerr.points == []
    assert str(nerr) == "nan in U"
