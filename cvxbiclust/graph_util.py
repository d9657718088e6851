# k-nearest-neighbour Gaussian-kernel weight graphs over the rows / columns of a matrix
import hashlib
from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import pandas as pd
from scipy.sparse import coo_matrix, csr_matrix
from scipy.sparse.csgraph import connected_components
from sklearn.metrics import pairwise_distances
from sklearn.utils.validation import check_array

from cvxbiclust.cluster_util import canon_labels
from cvxbiclust.exceptions import ConfigurationError, DegenerateGraphError
from cvxbiclust.utils import get_logger, get_n_jobs

logger = get_logger(__name__)

_AXIS_NAMES = {
    0: "row",
    "row": "row",
    "rows": "row",
    1: "col",
    "col": "col",
    "cols": "col",
    "column": "col",
    "columns": "col",
}


def _axis_name(axis) -> str:
    try:
        return _AXIS_NAMES[axis]
    except (KeyError, TypeError):
        raise ConfigurationError(
            f"axis must be 'row'/0 or 'col'/1, got {axis!r}"
        ) from None


@dataclass
class WeightedGraph:
    """
    Sparse undirected weighted graph over the nodes (rows or columns) of one axis.

    edges[e] = (i, j) with i < j, sorted lexicographically; weights[e] > 0.
    incidence is (n_edges, n_nodes) with +1 at column i and -1 at column j of row e,
    so incidence @ M gives M[i] - M[j] for every edge.
    """

    axis: str
    n_nodes: int
    edges: np.ndarray = field(repr=False)
    weights: np.ndarray = field(repr=False)
    incidence: csr_matrix = field(repr=False)
    n_components: int
    component_labels: np.ndarray = field(repr=False)
    phi: float
    k: int
    dim: int

    @property
    def n_edges(self) -> int:
        return int(self.edges.shape[0])

    @property
    def is_connected(self) -> bool:
        return self.n_components == 1

    @property
    def topology_key(self) -> str:
        """Fingerprint of node count + edge list; weights do not enter."""
        h = hashlib.sha1()
        h.update(np.int64(self.n_nodes).tobytes())
        h.update(np.ascontiguousarray(self.edges, dtype=np.int64).tobytes())
        return h.hexdigest()

    def adjacency(self) -> csr_matrix:
        """Symmetric weighted adjacency in CSR form."""
        i, j = self.edges[:, 0], self.edges[:, 1]
        A = coo_matrix(
            (self.weights, (i, j)), shape=(self.n_nodes, self.n_nodes)
        ).tocsr()
        return (A + A.T).tocsr()

    def laplacian(self) -> np.ndarray:
        """Unweighted graph Laplacian D^T D as a dense array."""
        D = self.incidence
        return np.asarray((D.T @ D).toarray(), dtype=np.float64)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            {
                "i": self.edges[:, 0],
                "j": self.edges[:, 1],
                "weight": self.weights,
            }
        )


def incidence_matrix(edges: np.ndarray, n_nodes: int) -> csr_matrix:
    """Signed edge-node incidence: row e = e_i - e_j for edge (i, j)."""
    edges = np.asarray(edges, dtype=np.int64).reshape(-1, 2)
    E = edges.shape[0]
    rows = np.repeat(np.arange(E), 2)
    cols = edges.ravel()
    vals = np.tile(np.array([1.0, -1.0]), E)
    return coo_matrix((vals, (rows, cols)), shape=(E, n_nodes)).tocsr()


def edge_differences(graph: WeightedGraph, M: np.ndarray) -> np.ndarray:
    """Per-edge differences M[i] - M[j]; nodes of the graph index the rows of M."""
    M = np.asarray(M, dtype=np.float64)
    if M.shape[0] != graph.n_nodes:
        raise ConfigurationError(
            f"matrix has {M.shape[0]} rows, graph has {graph.n_nodes} nodes"
        )
    return np.asarray(graph.incidence @ M)


def _check_phi_k(phi: float, k) -> Tuple[float, int]:
    try:
        phi = float(phi)
    except (TypeError, ValueError):
        raise ConfigurationError(f"phi must be a number, got {phi!r}") from None
    if not np.isfinite(phi) or phi <= 0:
        raise ConfigurationError(f"phi must be finite and > 0, got {phi}")
    if isinstance(k, (bool, np.bool_)) or not isinstance(k, (int, np.integer)):
        if not (isinstance(k, float) and float(k).is_integer()):
            raise ConfigurationError(f"k must be an integer, got {k!r}")
    k = int(k)
    if k < 1:
        raise ConfigurationError(f"k must be >= 1, got {k}")
    return phi, k


def knn_indices(D2: np.ndarray, k: int) -> np.ndarray:
    """
    The k nearest neighbours of every node, self excluded.

    Ties are broken toward the lowest index (stable sort on a row of distances
    whose diagonal is set to +inf).
    """
    D = np.array(D2, dtype=np.float64, copy=True)
    np.fill_diagonal(D, np.inf)
    return np.argsort(D, axis=1, kind="stable")[:, :k]


def build_knn_graph(
    X: np.ndarray,
    axis="row",
    phi: float = 0.5,
    k: int = 5,
    *,
    clamp_k: bool = False,
    n_jobs: int = 1,
) -> WeightedGraph:
    """
    Build the k-NN Gaussian-kernel graph over rows (axis='row') or columns
    (axis='col') of X.

    An edge (i, j) is kept when i is among the k nearest neighbours of j OR j is
    among those of i. Its weight is

        exp(-phi / p * ||x_i - x_j||^2) / (sqrt(p) * sum of kept kernel values)

    where p is the length of the compared vectors. Disconnected graphs are
    reported through n_components, never repaired.
    """
    name = _axis_name(axis)
    phi, k = _check_phi_k(phi, k)
    X = check_array(X, dtype=np.float64, ensure_2d=True)

    vectors = X if name == "row" else X.T
    n_nodes, p = vectors.shape
    if n_nodes < 2:
        raise DegenerateGraphError(
            f"{name} graph needs at least 2 nodes, got {n_nodes}",
            {"axis": name},
        )
    if k >= n_nodes:
        if not clamp_k:
            raise DegenerateGraphError(
                f"k={k} must be smaller than the number of {name}s ({n_nodes})",
                {"axis": name, "k": k, "n_nodes": n_nodes},
            )
        logger.warning(
            f"{name} graph: clamping k from {k} to {n_nodes - 1} (n_nodes={n_nodes})"
        )
        k = n_nodes - 1

    D2 = pairwise_distances(
        vectors, metric="sqeuclidean", n_jobs=get_n_jobs(n_jobs)
    )
    D2 = np.maximum(D2, 0.0)
    nbrs = knn_indices(D2, k)

    # symmetric OR of the directed kNN relation
    sel = np.zeros((n_nodes, n_nodes), dtype=bool)
    sel[np.repeat(np.arange(n_nodes), k), nbrs.ravel()] = True
    sel |= sel.T
    edges = np.argwhere(np.triu(sel, k=1)).astype(np.int64)

    pre = np.exp(-(phi / p) * D2[edges[:, 0], edges[:, 1]])
    keep = pre > 0
    if not np.all(keep):
        logger.warning(
            f"{name} graph: dropping {int((~keep).sum())} edges whose kernel value underflowed to 0"
        )
        edges, pre = edges[keep], pre[keep]
    total = float(pre.sum())
    if edges.shape[0] == 0 or not np.isfinite(total) or total <= 0:
        raise DegenerateGraphError(
            f"{name} graph has zero total edge weight",
            {"axis": name, "phi": phi, "k": k, "n_edges": int(edges.shape[0])},
        )
    weights = pre / (np.sqrt(p) * total)

    incidence = incidence_matrix(edges, n_nodes)
    adj = coo_matrix(
        (np.ones(edges.shape[0]), (edges[:, 0], edges[:, 1])),
        shape=(n_nodes, n_nodes),
    ).tocsr()
    n_comp, comp = connected_components(adj, directed=False)
    comp, _ = canon_labels(comp)

    graph = WeightedGraph(
        axis=name,
        n_nodes=int(n_nodes),
        edges=edges,
        weights=weights,
        incidence=incidence,
        n_components=int(n_comp),
        component_labels=comp,
        phi=phi,
        k=int(k),
        dim=int(p),
    )
    logger.info(
        f"{name} graph: n_nodes={n_nodes}, k={k}, phi={phi}, n_edges={graph.n_edges}, "
        f"n_components={graph.n_components}"
    )
    if graph.n_components > 1:
        logger.warning(
            f"{name} graph is disconnected ({graph.n_components} components); "
            f"{name}s in different components can never fuse"
        )
    return graph


def build_graphs(
    X: np.ndarray,
    phi: float = 0.5,
    k_row: int = 5,
    k_col: int = 5,
    *,
    clamp_k: bool = False,
    n_jobs: int = 1,
) -> Tuple[WeightedGraph, WeightedGraph]:
    """Row and column graphs for X with a shared kernel scale."""
    row_graph = build_knn_graph(
        X, "row", phi, k_row, clamp_k=clamp_k, n_jobs=n_jobs
    )
    col_graph = build_knn_graph(
        X, "col", phi, k_col, clamp_k=clamp_k, n_jobs=n_jobs
    )
    return row_graph, col_graph


def graph_summary(
    row_graph: WeightedGraph, col_graph: Optional[WeightedGraph] = None
) -> pd.DataFrame:
    rows = []
    for g in (row_graph, col_graph):
        if g is None:
            continue
        rows.append(
            {
                "axis": g.axis,
                "n_nodes": g.n_nodes,
                "k": g.k,
                "phi": g.phi,
                "n_edges": g.n_edges,
                "n_components": g.n_components,
                "weight_sum": float(g.weights.sum()),
            }
        )
    return pd.DataFrame(rows)
