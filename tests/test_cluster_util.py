import numpy as np
import pytest

from cvxbiclust.cluster_util import (
    UnionFind,
    biclust_smooth,
    block_means,
    block_table,
    canon_labels,
    check_labels,
    group_sizes,
    is_coarsening,
    labels_from_edges,
    n_groups,
)
from cvxbiclust.exceptions import ConfigurationError


def test_union_find_merges_and_counts():
    uf = UnionFind(6)
    assert uf.n_sets == 6
    assert uf.union(0, 1)
    assert uf.union(4, 5)
    assert not uf.union(1, 0)
    assert uf.union(1, 5)
    assert uf.n_sets == 3
    assert uf.find(5) == uf.find(0)
    assert uf.labels().tolist() == [0, 0, 1, 2, 0, 0]


def test_union_find_prefers_lower_root_on_equal_size():
    uf = UnionFind(4)
    uf.union(3, 2)
    assert uf.find(3) == 2
    assert uf.find(2) == 2


def test_canon_labels_first_occurrence_order():
    labels, k = canon_labels([5, 5, 2, 7, 2])
    assert labels.tolist() == [0, 0, 1, 2, 1]
    assert k == 3
    empty, k0 = canon_labels([])
    assert empty.size == 0 and k0 == 0


def test_labels_from_edges():
    assert labels_from_edges(5, np.array([[0, 3], [3, 4]])).tolist() == [0, 1, 2, 0, 0]
    assert labels_from_edges(3, np.empty((0, 2), dtype=int)).tolist() == [0, 1, 2]
    assert n_groups([0, 1, 1, 4]) == 3


def test_is_coarsening():
    fine = np.array([0, 0, 1, 2, 3])
    assert is_coarsening(fine, np.array([0, 0, 0, 1, 1]))
    assert is_coarsening(fine, fine)
    assert not is_coarsening(fine, np.array([0, 1, 1, 2, 2]))
    with pytest.raises(ConfigurationError):
        is_coarsening(fine, np.array([0, 1]))


def test_smoother_replaces_blocks_by_means():
    X = np.array(
        [
            [1.0, 3.0, 10.0],
            [3.0, 5.0, 20.0],
            [7.0, 7.0, 0.0],
        ]
    )
    rows = [4, 4, 9]
    cols = [1, 1, 0]
    S = biclust_smooth(X, rows, cols)
    expected = np.array(
        [
            [3.0, 3.0, 15.0],
            [3.0, 3.0, 15.0],
            [7.0, 7.0, 0.0],
        ]
    )
    np.testing.assert_allclose(S, expected)
    # applying it again changes nothing
    np.testing.assert_allclose(biclust_smooth(S, rows, cols), S)

    C, rl, cl = block_means(X, rows, cols)
    assert C.shape == (2, 2)
    assert rl.tolist() == [0, 0, 1]
    assert cl.tolist() == [0, 0, 1]


def test_smoother_trivial_partitions():
    rng = np.random.default_rng(0)
    X = rng.normal(size=(4, 3))
    np.testing.assert_allclose(biclust_smooth(X, np.arange(4), np.arange(3)), X)
    np.testing.assert_allclose(
        biclust_smooth(X, np.zeros(4, dtype=int), np.zeros(3, dtype=int)),
        np.full_like(X, X.mean()),
    )


@pytest.mark.parametrize(
    "labels",
    [[0, 1], [0, 1, 2, 3], [0, -1, 1], [0.5, 1, 2], [[0, 1, 2]]],
)
def test_bad_labels_rejected(labels):
    X = np.ones((3, 2))
    with pytest.raises(ConfigurationError):
        biclust_smooth(X, labels, [0, 0])


def test_check_labels_accepts_integral_floats():
    assert check_labels(np.array([0.0, 2.0, 2.0]), 3).tolist() == [0, 2, 2]


def test_block_table_and_group_sizes():
    X = np.array([[1.0, 2.0], [3.0, 4.0], [5.0, 6.0]])
    df = block_table(X, [0, 0, 1], [0, 1], row_names=["a", "b", "c"], col_names=["x", "y"])
    assert len(df) == 4
    first = df.iloc[0]
    assert first["n_rows"] == 2 and first["n_cols"] == 1 and first["n_cells"] == 2
    assert first["mean"] == pytest.approx(2.0)
    assert first["rows"] == ["a", "b"]
    assert df.iloc[3]["cols"] == ["y"]
    assert df["n_cells"].sum() == X.size

    sizes = group_sizes([1, 1, 0, 1])
    assert sizes.to_dict() == {0: 1, 1: 3}
