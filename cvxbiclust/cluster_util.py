import logging
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from cvxbiclust.exceptions import ConfigurationError
from cvxbiclust.utils import get_logger

logger = get_logger(__name__)


class UnionFind:
    """
    Array-backed disjoint-set forest over nodes 0..n-1.

    parent/size live in flat int arrays (no node objects); find uses
    path halving and union joins by size, lower root index on equal size.
    """

    def __init__(self, n: int):
        if n < 0:
            raise ConfigurationError(f"UnionFind size must be >= 0, got {n}")
        self.parent = np.arange(n, dtype=np.int64)
        self.size = np.ones(n, dtype=np.int64)
        self.n_sets = int(n)

    def __len__(self) -> int:
        return int(self.parent.size)

    def find(self, i: int) -> int:
        parent = self.parent
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return int(i)

    def union(self, i: int, j: int) -> bool:
        """Merge the sets of i and j. Returns True if they were distinct."""
        ri, rj = self.find(i), self.find(j)
        if ri == rj:
            return False
        if self.size[ri] < self.size[rj] or (
            self.size[ri] == self.size[rj] and rj < ri
        ):
            ri, rj = rj, ri
        self.parent[rj] = ri
        self.size[ri] += self.size[rj]
        self.n_sets -= 1
        return True

    def labels(self) -> np.ndarray:
        """Canonical labels 0..K-1, numbered by first occurrence."""
        roots = np.fromiter(
            (self.find(i) for i in range(len(self))),
            dtype=np.int64,
            count=len(self),
        )
        labels, _ = canon_labels(roots)
        return labels


def labels_from_edges(n_nodes: int, edges: np.ndarray) -> np.ndarray:
    """Group labels for the connected components of the given edge list."""
    uf = UnionFind(n_nodes)
    for i, j in np.asarray(edges, dtype=np.int64).reshape(-1, 2):
        uf.union(int(i), int(j))
    return uf.labels()


def canon_labels(labels: np.ndarray) -> Tuple[np.ndarray, int]:
    """
    Map arbitrary integer labels to 0..K-1, numbered in order of first
    appearance. Returns (mapped_labels, K).
    """
    labs = np.asarray(labels, dtype=np.int64).ravel()
    if labs.size == 0:
        return labs.copy(), 0
    _, first_idx, inverse = np.unique(
        labs, return_index=True, return_inverse=True
    )
    order = np.argsort(first_idx, kind="stable")
    rank = np.empty_like(order)
    rank[order] = np.arange(order.size)
    return rank[inverse].astype(np.int64), int(order.size)


def n_groups(labels: np.ndarray) -> int:
    return int(np.unique(np.asarray(labels)).size)


def is_coarsening(fine: np.ndarray, coarse: np.ndarray) -> bool:
    """True iff every group of `fine` lies inside a single group of `coarse`."""
    fine = np.asarray(fine)
    coarse = np.asarray(coarse)
    if fine.shape != coarse.shape:
        raise ConfigurationError(
            f"label arrays differ in length: {fine.shape} vs {coarse.shape}"
        )
    pairs = np.unique(np.stack([fine, coarse], axis=1), axis=0)
    return bool(np.unique(pairs[:, 0]).size == pairs.shape[0])


def check_labels(labels, n: int, kind: str = "row") -> np.ndarray:
    """Validate a partition of 0..n-1 given as one label per index."""
    labs = np.asarray(labels)
    if labs.ndim != 1 or labs.shape[0] != n:
        raise ConfigurationError(
            f"{kind} labels must have one entry per {kind} ({n}), got shape {labs.shape}"
        )
    if n == 0:
        raise ConfigurationError(f"no {kind}s to group")
    if not np.issubdtype(labs.dtype, np.integer):
        if not np.all(np.isfinite(labs)) or np.any(labs != np.round(labs)):
            raise ConfigurationError(f"{kind} labels must be integers")
        labs = labs.astype(np.int64)
    if np.any(labs < 0):
        raise ConfigurationError(
            f"{kind} labels must be non-negative; every {kind} needs a group"
        )
    return labs.astype(np.int64)


def log_cluster_sizes(labels, kind="row", log_level="INFO"):
    """Log group membership counts."""
    if not logger.isEnabledFor(getattr(logging, log_level.upper(), logging.INFO)):
        return
    labs, counts = np.unique(labels, return_counts=True)
    logger.log(
        getattr(logging, log_level.upper(), logging.INFO),
        f"[{kind} groups] present={len(labs)}, sizes={dict(zip(labs.tolist(), counts.tolist()))}",
    )


def group_sizes(labels) -> pd.Series:
    """Members per group, indexed by group label."""
    return (
        pd.Series(np.asarray(labels), name="size")
        .value_counts()
        .sort_index()
        .rename_axis("group")
    )


def block_means(
    X: np.ndarray,
    row_labels: np.ndarray,
    col_labels: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Block means C[p, q] = mean of X over (row group p) x (column group q).

    Labels are canonicalized first; returns (C, row_labels, col_labels) with
    the canonical labels so that C[row_labels][:, col_labels] is the smoothed
    matrix.
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise ConfigurationError(f"Expected a 2D matrix, got shape {X.shape}")
    I, J = X.shape
    row_labels, P = canon_labels(check_labels(row_labels, I, "row"))
    col_labels, Q = canon_labels(check_labels(col_labels, J, "column"))

    # one-hot memberships
    U = np.eye(P, dtype=np.float64)[row_labels]  # (I,P)
    V = np.eye(Q, dtype=np.float64)[col_labels]  # (J,Q)

    counts = np.outer(U.sum(axis=0), V.sum(axis=0))  # (P,Q), all >= 1
    sums = U.T @ X @ V  # (P,Q)
    C = sums / counts
    return C, row_labels, col_labels


def biclust_smooth(
    X: np.ndarray,
    row_labels: np.ndarray,
    col_labels: np.ndarray,
) -> np.ndarray:
    """
    Replace every (row group x column group) block of X by its mean.

    X should be the original, unmasked matrix. Applying this twice with the
    same labels gives the same matrix.
    """
    C, rl, cl = block_means(X, row_labels, col_labels)
    Xhat = C[rl][:, cl]
    if logger.isEnabledFor(logging.DEBUG):
        logger.debug(
            f"Smoothed {X.shape} into {C.shape[0]}x{C.shape[1]} blocks"
        )
    return Xhat


def block_table(
    X: np.ndarray,
    row_labels: np.ndarray,
    col_labels: np.ndarray,
    row_names: Optional[list] = None,
    col_names: Optional[list] = None,
) -> pd.DataFrame:
    """One row per bicluster: group ids, sizes and mean of X in the block."""
    C, rl, cl = block_means(X, row_labels, col_labels)
    rsize = np.bincount(rl)
    csize = np.bincount(cl)
    rows = []
    for p in range(C.shape[0]):
        for q in range(C.shape[1]):
            rec = {
                "row_group": p,
                "col_group": q,
                "n_rows": int(rsize[p]),
                "n_cols": int(csize[q]),
                "n_cells": int(rsize[p] * csize[q]),
                "mean": float(C[p, q]),
            }
            if row_names is not None:
                rec["rows"] = [row_names[i] for i in np.flatnonzero(rl == p)]
            if col_names is not None:
                rec["cols"] = [col_names[j] for j in np.flatnonzero(cl == q)]
            rows.append(rec)
    return pd.DataFrame(rows)
