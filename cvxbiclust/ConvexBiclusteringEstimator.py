# Convex biclustering (scikit-learn style): kNN weight graphs, ADMM solution
# path over gamma, hold-out validation and block smoothing.
from concurrent.futures import ProcessPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.base import BaseEstimator, BiclusterMixin
from sklearn.utils.validation import check_array

from cvxbiclust.cluster_util import (
    biclust_smooth,
    block_table,
    canon_labels,
    log_cluster_sizes,
)
from cvxbiclust.config_util import load_config
from cvxbiclust.graph_util import build_graphs, graph_summary
from cvxbiclust.path_util import compute_path, validate_gammas
from cvxbiclust.solver_admm import SolverConfig
from cvxbiclust.utils import get_logger, get_n_jobs
from cvxbiclust.validate_util import check_fraction, validate_path

logger = get_logger(__name__)


class ConvexBiclustering(BaseEstimator, BiclusterMixin):
    """
    Convex biclustering of a dense matrix X (rows x columns).

    For every gamma of an increasing sequence, solve

        min_U 1/2 ||U - X||_F^2 + gamma * sum_rows w_ij ||U_i. - U_j.||
                                + gamma * sum_cols w_kl ||U_.k - U_.l||

    with warm starts, read row/column groups off the fused edges, pick gamma by
    hold-out validation and smooth X over the selected groups.

    Parameters
    ----------
    gammas : sequence of float
        Penalty strengths, non-negative and strictly increasing.
    phi : float, default=0.5
        Gaussian kernel scale of the kNN weights.
    k_row, k_col : int, default=5
        Neighbour counts for the row and column graphs.
    holdout_fraction : float, default=0.1
        Fraction of entries held out for validation, in (0, 1).
    random_state : int or None, default=0
        Seed of the hold-out draw.
    rho, max_iter, abs_tol, rel_tol, adaptive_rho, fusion_tol
        ADMM settings, see SolverConfig.
    mm_iter : int, default=0
        Extra re-imputation rounds per gamma during validation.
    validate : bool, default=True
        Without validation the last gamma is selected.
    clamp_k : bool, default=False
        Clamp k to n_nodes - 1 instead of failing.
    n_jobs : int, default=1
        >1 runs the full path and the validation path in parallel processes
        and parallelizes the distance computations.
    """

    def __init__(
        self,
        gammas: Optional[Sequence[float]] = None,
        phi: float = 0.5,
        k_row: int = 5,
        k_col: int = 5,
        holdout_fraction: float = 0.1,
        random_state: Optional[int] = 0,
        rho: float = 1.0,
        max_iter: int = 1000,
        abs_tol: float = 1e-6,
        rel_tol: float = 1e-5,
        adaptive_rho: bool = True,
        fusion_tol: float = 1e-10,
        mm_iter: int = 0,
        validate: bool = True,
        clamp_k: bool = False,
        n_jobs: int = 1,
    ):
        self.gammas = gammas
        self.phi = phi
        self.k_row = k_row
        self.k_col = k_col
        self.holdout_fraction = holdout_fraction
        self.random_state = random_state
        self.rho = rho
        self.max_iter = max_iter
        self.abs_tol = abs_tol
        self.rel_tol = rel_tol
        self.adaptive_rho = adaptive_rho
        self.fusion_tol = fusion_tol
        self.mm_iter = mm_iter
        self.validate = validate
        self.clamp_k = clamp_k
        self.n_jobs = n_jobs

    # -------- Utilities --------
    def solver_config(self) -> SolverConfig:
        return SolverConfig(
            rho=self.rho,
            max_iter=self.max_iter,
            abs_tol=self.abs_tol,
            rel_tol=self.rel_tol,
            adaptive_rho=self.adaptive_rho,
            fusion_tol=self.fusion_tol,
        ).validate()

    def check_fitted(self):
        if getattr(self, "path_", None) is None:
            raise ValueError("Model has not been fitted yet.")

    # -------- Fit --------
    def fit(self, X: np.ndarray, y: np.ndarray = None):
        X = check_array(X, dtype=np.float64, ensure_2d=True)
        _ = y
        if self.gammas is None:
            raise ValueError("gammas must be provided")
        g = validate_gammas(self.gammas)
        config = self.solver_config()
        if self.validate:
            check_fraction(self.holdout_fraction)
        n_jobs = get_n_jobs(self.n_jobs)

        logger.info(
            f"I={X.shape[0]},J={X.shape[1]},phi={self.phi},k_row={self.k_row},k_col={self.k_col}\n"
            f"n_gammas={g.size},rho={self.rho},max_iter={self.max_iter},"
            f"abs_tol={self.abs_tol},rel_tol={self.rel_tol},validate={self.validate}"
        )

        row_graph, col_graph = build_graphs(
            X, self.phi, self.k_row, self.k_col, clamp_k=self.clamp_k, n_jobs=n_jobs
        )
        path_kwargs = dict(
            X=X, row_graph=row_graph, col_graph=col_graph, gammas=g, config=config
        )
        val_kwargs = dict(
            phi=self.phi,
            k_row=self.k_row,
            k_col=self.k_col,
            fraction=self.holdout_fraction,
            random_state=self.random_state,
            config=config,
            mm_iter=self.mm_iter,
            clamp_k=self.clamp_k,
        )

        validation = None
        if self.validate and n_jobs > 1:
            # the two paths are independent; each stays sequential inside
            with ProcessPoolExecutor(max_workers=2) as executor:
                f_path = executor.submit(compute_path, **path_kwargs)
                f_val = executor.submit(validate_path, X, g, **val_kwargs)
                path = f_path.result()
                validation = f_val.result()
        else:
            path = compute_path(**path_kwargs)
            if self.validate:
                validation = validate_path(X, g, n_jobs=n_jobs, **val_kwargs)

        best = validation.best_index if validation is not None else len(path) - 1
        point = path[best]

        self.row_graph_ = row_graph
        self.col_graph_ = col_graph
        self.path_ = path
        self.validation_ = validation
        self.best_index_ = int(best)
        self.best_gamma_ = float(point.gamma)
        self.row_labels_, self.n_row_clusters_ = canon_labels(point.row_labels)
        self.column_labels_, self.n_col_clusters_ = canon_labels(point.col_labels)
        self.smoothed_ = biclust_smooth(X, self.row_labels_, self.column_labels_)

        # biclusters_ (BiclusterMixin) = every (row group, column group) block
        rows = np.arange(self.n_row_clusters_)[:, None] == self.row_labels_[None, :]
        cols = np.arange(self.n_col_clusters_)[:, None] == self.column_labels_[None, :]
        self.rows_ = np.repeat(rows, self.n_col_clusters_, axis=0)
        self.columns_ = np.tile(cols, (self.n_row_clusters_, 1))

        log_cluster_sizes(self.row_labels_, kind="row")
        log_cluster_sizes(self.column_labels_, kind="col")
        logger.info(
            f"Selected gamma={self.best_gamma_:.4e} (index {self.best_index_}): "
            f"{self.n_row_clusters_} row groups x {self.n_col_clusters_} column groups, "
            f"converged={point.converged}"
        )
        return self

    def fit_predict(self, X, y=None):
        """Fit and return the row labels."""
        return self.fit(X, y).row_labels_

    # -------- Helpers / API --------
    def reconstruct(self) -> np.ndarray:
        """Block-mean smoothed X at the selected gamma."""
        self.check_fitted()
        return self.smoothed_

    def estimate(self, index: Optional[int] = None) -> np.ndarray:
        """Raw ADMM estimate U at path index (default: the selected one)."""
        self.check_fitted()
        return self.path_[self.best_index_ if index is None else index].U

    def path_summary(self) -> pd.DataFrame:
        """One row per gamma: group counts, iterations, convergence, validation error."""
        self.check_fitted()
        if self.validation_ is not None:
            df = self.path_.to_frame()
            df["validation_mse"] = self.validation_.errors
            df["validation_converged"] = self.validation_.converged
        else:
            df = self.path_.to_frame()
        df["selected"] = np.arange(len(df)) == self.best_index_
        return df

    def graph_summary(self) -> pd.DataFrame:
        self.check_fitted()
        return graph_summary(self.row_graph_, self.col_graph_)

    def explain_blocks(self, X: np.ndarray, row_names=None, col_names=None) -> pd.DataFrame:
        """Per-bicluster sizes and means of X under the selected groups."""
        self.check_fitted()
        return block_table(
            X, self.row_labels_, self.column_labels_, row_names, col_names
        )

    @classmethod
    def from_config(cls, config_path: str | Path, **overrides: Any) -> "ConvexBiclustering":
        """Build from a JSON/YAML parameter file; keyword overrides win."""
        kw = load_config(config_path, allowed=cls._get_param_names())
        kw.update(overrides)
        return cls(**kw)

    @classmethod
    def factory(cls, **frozen_kwargs) -> Callable[..., "ConvexBiclustering"]:
        """
        Returns a picklable builder:
            builder(gammas, *, random_state=None, **overrides) -> estimator
        """
        return ConvexBiclusteringBuilder(cls, frozen_kwargs)


class ConvexBiclusteringBuilder:
    """Picklable builder so estimators can be constructed inside worker processes."""

    def __init__(self, estimator_class, frozen_kwargs):
        self.estimator_class = estimator_class
        self.frozen_kwargs = dict(frozen_kwargs)

    def __call__(
        self,
        gammas: Sequence[float],
        *,
        random_state: Optional[int] = None,
        **overrides: Any,
    ) -> ConvexBiclustering:
        kw: Dict[str, Any] = dict(self.frozen_kwargs)
        kw.update(overrides)
        kw["gammas"] = list(gammas)
        if random_state is not None:
            kw["random_state"] = int(random_state)
        logger.info(f"Building estimator with {len(kw['gammas'])} gammas")
        return self.estimator_class(**kw)
