# Hold-out validation over a gamma path
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from sklearn.utils.validation import check_array

from cvxbiclust.exceptions import ConfigurationError, NumericInstabilityError
from cvxbiclust.graph_util import WeightedGraph, build_graphs
from cvxbiclust.path_util import (
    BiclusterPath,
    PathPoint,
    compute_path,
    validate_gammas,
)
from cvxbiclust.solver_admm import (
    SolverConfig,
    SolverState,
    get_factorization,
    solve,
)
from cvxbiclust.utils import get_logger

logger = get_logger(__name__)


@dataclass
class ValidationResult:
    gammas: np.ndarray
    errors: np.ndarray  # mean squared error on held-out entries
    sse: np.ndarray
    mask: np.ndarray = field(repr=False)
    fill_value: float
    best_index: int
    converged: np.ndarray = field(repr=False)
    path: BiclusterPath = field(repr=False)

    @property
    def best_gamma(self) -> float:
        return float(self.gammas[self.best_index])

    @property
    def n_holdout(self) -> int:
        return int(self.mask.sum())

    def to_frame(self) -> pd.DataFrame:
        df = self.path.to_frame()
        df["validation_mse"] = self.errors
        df["validation_sse"] = self.sse
        df["is_best"] = np.arange(len(df)) == self.best_index
        return df


def check_fraction(fraction) -> float:
    try:
        fraction = float(fraction)
    except (TypeError, ValueError):
        raise ConfigurationError(
            f"hold-out fraction must be a number, got {fraction!r}"
        ) from None
    if not np.isfinite(fraction) or not (0.0 < fraction < 1.0):
        raise ConfigurationError(
            f"hold-out fraction must lie strictly in (0, 1), got {fraction}"
        )
    return fraction


def make_holdout_mask(
    shape: Tuple[int, int], fraction: float, random_state=None
) -> np.ndarray:
    """
    Boolean mask with round(fraction * size) entries set, sampled uniformly
    without replacement. At least one entry is held out and one is kept.
    """
    fraction = check_fraction(fraction)
    size = int(np.prod(shape))
    if size < 2:
        raise ConfigurationError(
            f"need at least 2 entries to hold some out, got shape {shape}"
        )
    m = int(np.clip(int(round(fraction * size)), 1, size - 1))
    rng = np.random.default_rng(random_state)
    idx = rng.choice(size, size=m, replace=False)
    mask = np.zeros(size, dtype=bool)
    mask[idx] = True
    return mask.reshape(shape)


def mask_matrix(X: np.ndarray, mask: np.ndarray) -> Tuple[np.ndarray, float]:
    """Copy of X with held-out entries set to the mean of the observed ones."""
    X = np.asarray(X, dtype=np.float64)
    mask = np.asarray(mask, dtype=bool)
    if mask.shape != X.shape:
        raise ConfigurationError(
            f"mask shape {mask.shape} must match X shape {X.shape}"
        )
    if not mask.any() or mask.all():
        raise ConfigurationError(
            "mask must hold out at least one entry and keep at least one"
        )
    fill = float(X[~mask].mean())
    Xm = X.copy()
    Xm[mask] = fill
    return Xm, fill


def holdout_errors(
    X: np.ndarray, path: BiclusterPath, mask: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """(MSE, SSE) of every path estimate against X on the held-out entries."""
    truth = np.asarray(X, dtype=np.float64)[mask]
    m = truth.size
    sse = np.array(
        [float(np.sum((pt.U[mask] - truth) ** 2)) for pt in path],
        dtype=np.float64,
    )
    return sse / m, sse


def _compute_mm_path(
    Xm: np.ndarray,
    mask: np.ndarray,
    row_graph: WeightedGraph,
    col_graph: WeightedGraph,
    gammas: np.ndarray,
    config: SolverConfig,
    mm_iter: int,
) -> BiclusterPath:
    """
    Path on a masked matrix where, at each gamma, held-out entries are
    re-imputed from the current estimate and the solve repeated (warm) up to
    mm_iter more times. Graphs stay the ones built on the mean-filled matrix.
    """
    fact = get_factorization(row_graph, col_graph)
    Xw = Xm.copy()
    state: Optional[SolverState] = None
    points: List[PathPoint] = []
    for idx, gamma in enumerate(gammas):
        n_iter = 0
        try:
            for _ in range(mm_iter + 1):
                res = solve(
                    Xw,
                    row_graph,
                    col_graph,
                    gamma,
                    state=state,
                    config=config,
                    factorization=fact,
                )
                state = res.state
                n_iter += res.n_iter
                change = float(np.max(np.abs(Xw[mask] - res.U[mask])))
                Xw[mask] = res.U[mask]
                if change <= config.abs_tol:
                    break
        except NumericInstabilityError as err:
            err.index = idx
            err.gamma = float(gamma)
            err.points = list(points)
            err.context.update({"index": idx, "n_completed": len(points)})
            logger.error(
                f"Numeric instability at gamma={gamma:.4e} (index {idx}); "
                f"aborting MM path after {len(points)} points"
            )
            raise
        points.append(
            PathPoint(
                gamma=float(gamma),
                U=res.state.U.copy(),
                row_labels=res.row_labels,
                col_labels=res.col_labels,
                n_iter=n_iter,
                converged=res.converged,
                objective=res.objective,
                primal_residual=res.primal_residual,
                dual_residual=res.dual_residual,
            )
        )
        logger.info(
            f"[mm {idx + 1}/{gammas.size}] gamma={gamma:.4e} iters={n_iter} "
            f"row_groups={points[-1].n_row_groups} col_groups={points[-1].n_col_groups}"
        )
    path = BiclusterPath(
        points=points, row_graph=row_graph, col_graph=col_graph, final_state=state
    )
    path.coarsening_violations()
    return path


def validate_path(
    X: np.ndarray,
    gammas: Sequence[float],
    phi: float = 0.5,
    k_row: int = 5,
    k_col: int = 5,
    fraction: float = 0.1,
    random_state=0,
    config: Optional[SolverConfig] = None,
    *,
    mask: Optional[np.ndarray] = None,
    mm_iter: int = 0,
    clamp_k: bool = False,
    n_jobs: int = 1,
) -> ValidationResult:
    """
    Hold out a random fraction of entries, fill them with the observed mean,
    build graphs and run the path on the filled matrix, then score every path
    point on the held-out entries of the original X.

    The best index is the first one attaining the smallest held-out MSE.
    """
    X = check_array(X, dtype=np.float64, ensure_2d=True)
    g = validate_gammas(gammas)
    config = (config or SolverConfig()).validate()
    if int(mm_iter) < 0:
        raise ConfigurationError(f"mm_iter must be >= 0, got {mm_iter}")

    if mask is None:
        mask = make_holdout_mask(X.shape, fraction, random_state)
    else:
        check_fraction(fraction)
        # 0/1 integer masks would otherwise index rows, not entries
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != X.shape:
            raise ConfigurationError(
                f"mask shape {mask.shape} must match X shape {X.shape}"
            )
    Xm, fill = mask_matrix(X, mask)
    logger.info(
        f"Validation: holding out {int(mask.sum())}/{mask.size} entries "
        f"(fraction={fraction}), fill value={fill:.4f}"
    )

    row_graph, col_graph = build_graphs(
        Xm, phi, k_row, k_col, clamp_k=clamp_k, n_jobs=n_jobs
    )
    if int(mm_iter) == 0:
        path = compute_path(Xm, row_graph, col_graph, g, config=config)
    else:
        path = _compute_mm_path(
            Xm, mask, row_graph, col_graph, g, config, int(mm_iter)
        )

    errors, sse = holdout_errors(X, path, mask)
    best = int(np.argmin(errors))
    converged = np.array([pt.converged for pt in path], dtype=bool)
    if not converged[best]:
        logger.warning(
            f"Selected gamma={g[best]:.4e} did not converge; treat it with caution"
        )
    logger.info(
        f"Validation best gamma={g[best]:.4e} (index {best}), MSE={errors[best]:.6e}"
    )
    return ValidationResult(
        gammas=g,
        errors=errors,
        sse=sse,
        mask=mask,
        fill_value=fill,
        best_index=best,
        converged=converged,
        path=path,
    )
