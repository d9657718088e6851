# ADMM solver for convex biclustering
#
#   min_U  1/2 ||U - X||_F^2
#          + gamma * sum_{(i,j) in rows} w_ij ||U[i,:] - U[j,:]||_2
#          + gamma * sum_{(k,l) in cols} w_kl ||U[:,k] - U[:,l]||_2
#
# Splitting: V_row = D_r U, V_col = D_c U^T with scaled duals Lam_row, Lam_col.
import logging
import time
import warnings
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

import numpy as np
from scipy.linalg import eigh
from sklearn.utils.validation import check_array

from cvxbiclust.cluster_util import labels_from_edges, n_groups
from cvxbiclust.exceptions import (
    ConfigurationError,
    ConvergenceWarning,
    NumericInstabilityError,
)
from cvxbiclust.graph_util import WeightedGraph
from cvxbiclust.utils import get_logger, nan_inf_report

logger = get_logger(__name__)


@dataclass
class SolverConfig:
    """ADMM hyperparameters."""

    rho: float = 1.0
    max_iter: int = 1000
    abs_tol: float = 1e-6
    rel_tol: float = 1e-5
    adaptive_rho: bool = True
    rho_mu: float = 10.0
    rho_tau: float = 2.0
    fusion_tol: float = 1e-10
    log_every: int = 50

    def validate(self) -> "SolverConfig":
        if not np.isfinite(self.rho) or self.rho <= 0:
            raise ConfigurationError(f"rho must be finite and > 0, got {self.rho}")
        if int(self.max_iter) < 1:
            raise ConfigurationError(f"max_iter must be >= 1, got {self.max_iter}")
        if self.abs_tol < 0 or self.rel_tol < 0:
            raise ConfigurationError(
                f"tolerances must be >= 0, got abs_tol={self.abs_tol}, rel_tol={self.rel_tol}"
            )
        if self.abs_tol == 0 and self.rel_tol == 0:
            raise ConfigurationError("abs_tol and rel_tol cannot both be 0")
        if self.rho_mu <= 1 or self.rho_tau <= 1:
            raise ConfigurationError(
                f"rho_mu and rho_tau must be > 1, got {self.rho_mu}, {self.rho_tau}"
            )
        if self.fusion_tol < 0:
            raise ConfigurationError(
                f"fusion_tol must be >= 0, got {self.fusion_tol}"
            )
        return self


class FusionFactorization:
    """
    Eigendecompositions of the row and column Laplacians L = D^T D.

    The U-update is the Sylvester system (I + rho L_r) U + rho U L_c = C, which
    diagonalizes in the two eigenbases. Only graph topology enters, so one
    factorization serves every gamma and every rho of a path on the same graphs.
    """

    def __init__(self, row_graph: WeightedGraph, col_graph: WeightedGraph):
        t0 = time.perf_counter()
        self.row_key = row_graph.topology_key
        self.col_key = col_graph.topology_key
        a, Qr = eigh(row_graph.laplacian())
        b, Qc = eigh(col_graph.laplacian())
        # Laplacians are PSD; clip round-off below zero
        self.row_eigvals = np.clip(a, 0.0, None)
        self.col_eigvals = np.clip(b, 0.0, None)
        self.row_eigvecs = Qr
        self.col_eigvecs = Qc
        self._sum_eigvals = self.row_eigvals[:, None] + self.col_eigvals[None, :]
        logger.debug(
            f"Factorized Laplacians {Qr.shape[0]}x{Qr.shape[0]} and "
            f"{Qc.shape[0]}x{Qc.shape[0]} in {time.perf_counter() - t0:.3f}s"
        )

    @property
    def shape(self) -> Tuple[int, int]:
        return self.row_eigvecs.shape[0], self.col_eigvecs.shape[0]

    def matches(self, row_graph: WeightedGraph, col_graph: WeightedGraph) -> bool:
        return (
            self.row_key == row_graph.topology_key
            and self.col_key == col_graph.topology_key
        )

    def solve(self, C: np.ndarray, rho: float) -> np.ndarray:
        """Solve (I + rho L_r) U + rho U L_c = C for U."""
        Qr, Qc = self.row_eigvecs, self.col_eigvecs
        Ct = Qr.T @ C @ Qc
        Ct /= 1.0 + rho * self._sum_eigvals
        return Qr @ Ct @ Qc.T


def get_factorization(
    row_graph: WeightedGraph,
    col_graph: WeightedGraph,
    factorization: Optional[FusionFactorization] = None,
) -> FusionFactorization:
    if factorization is None:
        return FusionFactorization(row_graph, col_graph)
    if not factorization.matches(row_graph, col_graph):
        raise ConfigurationError(
            "factorization was built for different graphs; rebuild it for these graphs"
        )
    return factorization


@dataclass
class SolverState:
    """Everything one ADMM run needs to resume: primal, auxiliaries, scaled duals, rho."""

    U: np.ndarray
    V_row: np.ndarray
    V_col: np.ndarray
    Lam_row: np.ndarray
    Lam_col: np.ndarray
    rho: float
    row_key: str = field(default="", repr=False)
    col_key: str = field(default="", repr=False)

    @classmethod
    def initial(
        cls,
        X: np.ndarray,
        row_graph: WeightedGraph,
        col_graph: WeightedGraph,
        rho: float = 1.0,
    ) -> "SolverState":
        """U = X, auxiliaries at the exact edge differences, zero duals."""
        X = np.asarray(X, dtype=np.float64)
        V_row = np.asarray(row_graph.incidence @ X)
        V_col = np.asarray(col_graph.incidence @ X.T)
        return cls(
            U=X.copy(),
            V_row=V_row,
            V_col=V_col,
            Lam_row=np.zeros_like(V_row),
            Lam_col=np.zeros_like(V_col),
            rho=float(rho),
            row_key=row_graph.topology_key,
            col_key=col_graph.topology_key,
        )

    def copy(self) -> "SolverState":
        return replace(
            self,
            U=self.U.copy(),
            V_row=self.V_row.copy(),
            V_col=self.V_col.copy(),
            Lam_row=self.Lam_row.copy(),
            Lam_col=self.Lam_col.copy(),
        )

    def check_compatible(
        self, X: np.ndarray, row_graph: WeightedGraph, col_graph: WeightedGraph
    ):
        if self.U.shape != X.shape:
            raise ConfigurationError(
                f"warm-start state has shape {self.U.shape}, matrix has {X.shape}"
            )
        if (
            self.row_key != row_graph.topology_key
            or self.col_key != col_graph.topology_key
        ):
            raise ConfigurationError(
                "warm-start state was produced on different graphs"
            )
        if not np.isfinite(self.rho) or self.rho <= 0:
            raise ConfigurationError(f"state rho must be > 0, got {self.rho}")


@dataclass
class SolveResult:
    gamma: float
    state: SolverState = field(repr=False)
    n_iter: int
    converged: bool
    primal_residual: float
    dual_residual: float
    objective: float
    row_labels: np.ndarray = field(repr=False)
    col_labels: np.ndarray = field(repr=False)

    @property
    def U(self) -> np.ndarray:
        return self.state.U

    @property
    def n_row_groups(self) -> int:
        return n_groups(self.row_labels)

    @property
    def n_col_groups(self) -> int:
        return n_groups(self.col_labels)


def check_gamma(gamma) -> float:
    try:
        gamma = float(gamma)
    except (TypeError, ValueError):
        raise ConfigurationError(f"gamma must be a number, got {gamma!r}") from None
    if not np.isfinite(gamma) or gamma < 0:
        raise ConfigurationError(f"gamma must be finite and >= 0, got {gamma}")
    return gamma


def group_soft_threshold(
    Z: np.ndarray, thresholds: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Shrink every row z_e of Z toward 0 by thresholds[e]:
        v_e = max(0, 1 - t_e / ||z_e||) z_e
    Rows whose norm is <= t_e come back exactly zero. Returns (V, row norms of V).
    """
    norms = np.linalg.norm(Z, axis=1)
    scale = np.zeros_like(norms)
    live = norms > thresholds
    scale[live] = 1.0 - thresholds[live] / norms[live]
    V = Z * scale[:, None]
    return V, norms * scale


def convex_biclustering_objective(
    X: np.ndarray,
    U: np.ndarray,
    row_graph: WeightedGraph,
    col_graph: WeightedGraph,
    gamma: float,
) -> float:
    fit = 0.5 * float(np.sum((U - X) ** 2))
    row_pen = float(
        row_graph.weights @ np.linalg.norm(row_graph.incidence @ U, axis=1)
    )
    col_pen = float(
        col_graph.weights @ np.linalg.norm(col_graph.incidence @ U.T, axis=1)
    )
    return fit + gamma * (row_pen + col_pen)


def fused_labels(
    graph: WeightedGraph, V: np.ndarray, fusion_tol: float = 1e-10
) -> np.ndarray:
    """Groups = connected components over the edges whose auxiliary difference is zero."""
    zero = np.linalg.norm(V, axis=1) <= fusion_tol
    return labels_from_edges(graph.n_nodes, graph.edges[zero])


def _check_finite(name_arrays, gamma, it):
    for name, arr in name_arrays:
        if not np.all(np.isfinite(arr)):
            report = nan_inf_report(name, arr)
            logger.error(f"gamma={gamma:.4e} it={it}: non-finite {name}: {report}")
            raise NumericInstabilityError(
                f"non-finite values in {name} at iteration {it}",
                {"gamma": gamma, "iteration": it},
                gamma=gamma,
            )


def solve(
    X: np.ndarray,
    row_graph: WeightedGraph,
    col_graph: WeightedGraph,
    gamma: float,
    state: Optional[SolverState] = None,
    config: Optional[SolverConfig] = None,
    factorization: Optional[FusionFactorization] = None,
) -> SolveResult:
    """
    Run ADMM for one penalty strength.

    `state` warm-starts the iteration and is not modified; the final state is
    returned on the result. Exhausting max_iter emits a ConvergenceWarning and
    returns the last iterate flagged converged=False. NaN/Inf raises
    NumericInstabilityError.
    """
    config = (config or SolverConfig()).validate()
    gamma = check_gamma(gamma)
    X = check_array(X, dtype=np.float64, ensure_2d=True)
    p, n = X.shape
    if row_graph.n_nodes != p or col_graph.n_nodes != n:
        raise ConfigurationError(
            f"graphs ({row_graph.n_nodes} rows, {col_graph.n_nodes} cols) do not match X {X.shape}"
        )
    fact = get_factorization(row_graph, col_graph, factorization)

    if state is None:
        state = SolverState.initial(X, row_graph, col_graph, config.rho)
    else:
        state.check_compatible(X, row_graph, col_graph)
        state = state.copy()

    Dr, Dc = row_graph.incidence, col_graph.incidence
    DrT, DcT = Dr.T.tocsr(), Dc.T.tocsr()
    t_row = gamma * row_graph.weights
    t_col = gamma * col_graph.weights

    U = state.U
    Vr, Vc = state.V_row, state.V_col
    Lr, Lc = state.Lam_row, state.Lam_col
    rho = state.rho

    sqrt_aux = np.sqrt(Vr.size + Vc.size)
    sqrt_u = np.sqrt(U.size)
    r_norm = s_norm = np.inf
    converged = False
    debug = logger.isEnabledFor(logging.DEBUG)
    t0 = time.perf_counter()

    it = 0
    for it in range(1, int(config.max_iter) + 1):
        # --- U-step: fidelity vs. consensus with the auxiliaries ---
        C = X + rho * np.asarray(DrT @ (Vr - Lr)) + rho * np.asarray(DcT @ (Vc - Lc)).T
        U = fact.solve(C, rho)

        # --- V-step: group soft-thresholding per edge ---
        DrU = np.asarray(Dr @ U)
        DcU = np.asarray(Dc @ U.T)
        Vr_prev, Vc_prev = Vr, Vc
        Vr, _ = group_soft_threshold(DrU + Lr, t_row / rho)
        Vc, _ = group_soft_threshold(DcU + Lc, t_col / rho)

        # --- dual ascent ---
        Rr = DrU - Vr
        Rc = DcU - Vc
        Lr = Lr + Rr
        Lc = Lc + Rc

        _check_finite(
            (("U", U), ("V_row", Vr), ("V_col", Vc), ("Lam_row", Lr), ("Lam_col", Lc)),
            gamma,
            it,
        )

        r_norm = float(np.sqrt(np.sum(Rr * Rr) + np.sum(Rc * Rc)))
        Sr = np.asarray(DrT @ (Vr - Vr_prev))
        Sc = np.asarray(DcT @ (Vc - Vc_prev))
        s_norm = rho * float(np.sqrt(np.sum(Sr * Sr) + np.sum(Sc * Sc)))

        eps_pri = sqrt_aux * config.abs_tol + config.rel_tol * max(
            float(np.sqrt(np.sum(DrU * DrU) + np.sum(DcU * DcU))),
            float(np.sqrt(np.sum(Vr * Vr) + np.sum(Vc * Vc))),
        )
        DtLr = np.asarray(DrT @ Lr)
        DtLc = np.asarray(DcT @ Lc)
        eps_dual = sqrt_u * config.abs_tol + config.rel_tol * rho * float(
            np.sqrt(np.sum(DtLr * DtLr) + np.sum(DtLc * DtLc))
        )

        if debug and (it == 1 or it % max(1, config.log_every) == 0):
            logger.debug(
                f"gamma={gamma:.4e} it={it} r={r_norm:.3e}/{eps_pri:.3e} "
                f"s={s_norm:.3e}/{eps_dual:.3e} rho={rho:.3e}"
            )

        if r_norm <= eps_pri and s_norm <= eps_dual:
            converged = True
            break

        # residual balancing; scaled duals follow rho
        if config.adaptive_rho:
            if r_norm > config.rho_mu * s_norm:
                rho *= config.rho_tau
                Lr = Lr / config.rho_tau
                Lc = Lc / config.rho_tau
            elif s_norm > config.rho_mu * r_norm:
                rho /= config.rho_tau
                Lr = Lr * config.rho_tau
                Lc = Lc * config.rho_tau

    out_state = SolverState(
        U=U,
        V_row=Vr,
        V_col=Vc,
        Lam_row=Lr,
        Lam_col=Lc,
        rho=rho,
        row_key=row_graph.topology_key,
        col_key=col_graph.topology_key,
    )
    row_labels = fused_labels(row_graph, Vr, config.fusion_tol)
    col_labels = fused_labels(col_graph, Vc, config.fusion_tol)
    objective = convex_biclustering_objective(X, U, row_graph, col_graph, gamma)

    result = SolveResult(
        gamma=gamma,
        state=out_state,
        n_iter=it,
        converged=converged,
        primal_residual=r_norm,
        dual_residual=s_norm,
        objective=objective,
        row_labels=row_labels,
        col_labels=col_labels,
    )

    if not converged:
        msg = (
            f"ADMM did not converge for gamma={gamma:.4e} within {config.max_iter} "
            f"iterations (primal={r_norm:.3e}, dual={s_norm:.3e})"
        )
        logger.warning(msg)
        warnings.warn(msg, ConvergenceWarning, stacklevel=2)
    else:
        logger.debug(
            f"gamma={gamma:.4e} converged in {it} iterations "
            f"({time.perf_counter() - t0:.3f}s), row_groups={result.n_row_groups}, "
            f"col_groups={result.n_col_groups}, objective={objective:.6e}"
        )
    return result
