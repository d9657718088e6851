import numpy as np
import pytest

from cvxbiclust.exceptions import ConfigurationError, DegenerateGraphError
from cvxbiclust.graph_util import (
    build_graphs,
    build_knn_graph,
    edge_differences,
    graph_summary,
    incidence_matrix,
    knn_indices,
)


def make_two_block_matrix(seed: int = 0, eps: float = 0.05) -> np.ndarray:
    rng = np.random.default_rng(seed)
    X = np.zeros((6, 6))
    X[3:, 3:] = 10.0
    return X + rng.uniform(-eps, eps, size=X.shape)


def test_incidence_reproduces_pairwise_differences():
    rng = np.random.default_rng(1)
    X = rng.normal(size=(7, 5))
    g = build_knn_graph(X, "row", phi=0.5, k=2)
    diffs = edge_differences(g, X)
    expected = X[g.edges[:, 0]] - X[g.edges[:, 1]]
    np.testing.assert_allclose(diffs, expected, rtol=0, atol=1e-12)

    gc = build_knn_graph(X, "col", phi=0.5, k=2)
    diffs_c = edge_differences(gc, X.T)
    expected_c = X.T[gc.edges[:, 0]] - X.T[gc.edges[:, 1]]
    np.testing.assert_allclose(diffs_c, expected_c, rtol=0, atol=1e-12)


def test_incidence_rows_have_one_plus_and_one_minus():
    rng = np.random.default_rng(2)
    X = rng.normal(size=(9, 4))
    g = build_knn_graph(X, "row", phi=1.0, k=3)
    D = g.incidence.toarray()
    assert D.shape == (g.n_edges, 9)
    assert np.all((D == 1.0).sum(axis=1) == 1), "each edge needs exactly one +1"
    assert np.all((D == -1.0).sum(axis=1) == 1), "each edge needs exactly one -1"
    assert np.all((D != 0).sum(axis=1) == 2)
    # +1 at i, -1 at j
    rows = np.arange(g.n_edges)
    assert np.all(D[rows, g.edges[:, 0]] == 1.0)
    assert np.all(D[rows, g.edges[:, 1]] == -1.0)


def test_edges_sorted_and_upper_triangular():
    rng = np.random.default_rng(3)
    X = rng.normal(size=(10, 3))
    g = build_knn_graph(X, "row", phi=0.5, k=3)
    assert np.all(g.edges[:, 0] < g.edges[:, 1])
    order = np.lexsort((g.edges[:, 1], g.edges[:, 0]))
    assert np.array_equal(order, np.arange(g.n_edges))
    assert np.all(g.weights > 0)


def test_full_k_gives_single_component():
    rng = np.random.default_rng(4)
    X = rng.normal(size=(6, 5))
    g = build_knn_graph(X, "row", phi=0.5, k=5)
    assert g.n_components == 1
    assert g.is_connected
    assert g.n_edges == 6 * 5 // 2

    gc = build_knn_graph(X, "col", phi=0.5, k=4)
    assert gc.n_components == 1
    assert gc.n_edges == 5 * 4 // 2


def test_weights_follow_kernel_and_rescaling():
    rng = np.random.default_rng(5)
    X = rng.normal(size=(5, 4))
    phi = 0.7
    g = build_knn_graph(X, "row", phi=phi, k=2)
    p = X.shape[1]
    d2 = np.sum((X[g.edges[:, 0]] - X[g.edges[:, 1]]) ** 2, axis=1)
    pre = np.exp(-phi / p * d2)
    expected = pre / (np.sqrt(p) * pre.sum())
    np.testing.assert_allclose(g.weights, expected, rtol=1e-10)
    assert g.weights.sum() == pytest.approx(1.0 / np.sqrt(p))

    gc = build_knn_graph(X, "col", phi=phi, k=2)
    assert gc.dim == X.shape[0]
    assert gc.weights.sum() == pytest.approx(1.0 / np.sqrt(X.shape[0]))


def test_symmetric_or_keeps_one_sided_neighbours():
    # 1D points 0, 1, 3, 10 with k=1:
    # nn(0)=1, nn(1)=0, nn(2)=1, nn(3)=2 -> edges (0,1), (1,2), (2,3)
    X = np.array([[0.0], [1.0], [3.0], [10.0]])
    g = build_knn_graph(X, "row", phi=0.01, k=1)
    assert g.edges.tolist() == [[0, 1], [1, 2], [2, 3]]
    assert g.n_components == 1


def test_ties_break_toward_lowest_index():
    # identical rows: every distance is 0, so neighbours are the lowest indices
    X = np.ones((5, 3))
    g = build_knn_graph(X, "row", phi=0.5, k=1)
    assert g.edges.tolist() == [[0, 1], [0, 2], [0, 3], [0, 4]]
    # zero-variance axis -> uniform weights, no division by zero
    np.testing.assert_allclose(g.weights, g.weights[0])
    assert g.weights.sum() == pytest.approx(1.0 / np.sqrt(3))

    D2 = np.zeros((4, 4))
    assert knn_indices(D2, 2).tolist() == [[1, 2], [0, 2], [0, 1], [0, 1]]


def test_graph_is_reproducible():
    rng = np.random.default_rng(6)
    X = rng.normal(size=(12, 5))
    g1 = build_knn_graph(X, "row", phi=0.5, k=3)
    g2 = build_knn_graph(X.copy(), "row", phi=0.5, k=3)
    assert np.array_equal(g1.edges, g2.edges)
    assert np.array_equal(g1.weights, g2.weights)
    assert g1.topology_key == g2.topology_key


def test_two_block_graphs_report_two_components():
    X = make_two_block_matrix()
    row_graph, col_graph = build_graphs(X, phi=0.5, k_row=2, k_col=2)
    assert row_graph.n_components == 2
    assert col_graph.n_components == 2
    assert row_graph.component_labels.tolist() == [0, 0, 0, 1, 1, 1]
    assert col_graph.component_labels.tolist() == [0, 0, 0, 1, 1, 1]

    df = graph_summary(row_graph, col_graph)
    assert df["n_components"].tolist() == [2, 2]
    assert df["axis"].tolist() == ["row", "col"]


def test_adjacency_and_laplacian():
    X = np.array([[0.0], [1.0], [3.0], [10.0]])
    g = build_knn_graph(X, "row", phi=0.01, k=1)
    A = g.adjacency().toarray()
    assert np.allclose(A, A.T)
    assert A[0, 1] == pytest.approx(g.weights[0])
    L = g.laplacian()
    # unweighted path-graph Laplacian
    expected = np.array(
        [[1, -1, 0, 0], [-1, 2, -1, 0], [0, -1, 2, -1], [0, 0, -1, 1]],
        dtype=float,
    )
    np.testing.assert_allclose(L, expected)
    assert len(g.to_frame()) == g.n_edges


def test_incidence_matrix_helper():
    D = incidence_matrix(np.array([[0, 2], [1, 2]]), 3).toarray()
    assert D.tolist() == [[1.0, 0.0, -1.0], [0.0, 1.0, -1.0]]


@pytest.mark.parametrize("phi", [0.0, -1.0, np.inf, np.nan])
def test_invalid_phi_rejected(phi):
    X = np.random.default_rng(0).normal(size=(5, 3))
    with pytest.raises(ConfigurationError):
        build_knn_graph(X, "row", phi=phi, k=2)


@pytest.mark.parametrize("k", [0, -2, 1.5, "3", True])
def test_invalid_k_rejected(k):
    X = np.random.default_rng(0).normal(size=(5, 3))
    with pytest.raises(ConfigurationError):
        build_knn_graph(X, "row", phi=0.5, k=k)


def test_k_too_large_fails_or_clamps():
    X = np.random.default_rng(0).normal(size=(5, 3))
    with pytest.raises(DegenerateGraphError):
        build_knn_graph(X, "row", phi=0.5, k=5)
    g = build_knn_graph(X, "row", phi=0.5, k=9, clamp_k=True)
    assert g.k == 4
    assert g.n_components == 1


def test_single_node_axis_is_degenerate():
    X = np.random.default_rng(0).normal(size=(1, 4))
    with pytest.raises(DegenerateGraphError):
        build_knn_graph(X, "row", phi=0.5, k=1)


def test_bad_axis_rejected():
    X = np.random.default_rng(0).normal(size=(4, 4))
    with pytest.raises(ConfigurationError):
        build_knn_graph(X, "diagonal", phi=0.5, k=1)


def test_errors_are_value_errors():
    assert issubclass(ConfigurationError, ValueError)
    assert issubclass(DegenerateGraphError, ValueError)
