import time
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

import numpy as np
import pandas as pd
from tqdm import tqdm

from cvxbiclust.cluster_util import is_coarsening, log_cluster_sizes, n_groups
from cvxbiclust.exceptions import ConfigurationError, NumericInstabilityError
from cvxbiclust.graph_util import WeightedGraph
from cvxbiclust.solver_admm import (
    FusionFactorization,
    SolverConfig,
    SolverState,
    get_factorization,
    solve,
)
from cvxbiclust.utils import get_logger, get_n_jobs

logger = get_logger(__name__)


@dataclass
class PathPoint:
    """Solver output at one penalty strength."""

    gamma: float
    U: np.ndarray = field(repr=False)
    row_labels: np.ndarray = field(repr=False)
    col_labels: np.ndarray = field(repr=False)
    n_iter: int
    converged: bool
    objective: float
    primal_residual: float
    dual_residual: float

    @property
    def n_row_groups(self) -> int:
        return n_groups(self.row_labels)

    @property
    def n_col_groups(self) -> int:
        return n_groups(self.col_labels)


@dataclass
class BiclusterPath:
    """Ordered path points for an increasing gamma sequence on fixed graphs."""

    points: List[PathPoint]
    row_graph: WeightedGraph = field(repr=False)
    col_graph: WeightedGraph = field(repr=False)
    final_state: Optional[SolverState] = field(default=None, repr=False)

    def __len__(self) -> int:
        return len(self.points)

    def __getitem__(self, idx) -> PathPoint:
        return self.points[idx]

    def __iter__(self) -> Iterator[PathPoint]:
        return iter(self.points)

    @property
    def gammas(self) -> np.ndarray:
        return np.array([pt.gamma for pt in self.points], dtype=np.float64)

    @property
    def n_row_groups(self) -> np.ndarray:
        return np.array([pt.n_row_groups for pt in self.points], dtype=np.int64)

    @property
    def n_col_groups(self) -> np.ndarray:
        return np.array([pt.n_col_groups for pt in self.points], dtype=np.int64)

    @property
    def all_converged(self) -> bool:
        return all(pt.converged for pt in self.points)

    def coarsening_violations(self) -> List[int]:
        """
        Indices t where point t is not a coarsening of point t-1 on either axis
        (more groups than before, or a group split apart). Logged, not raised.
        """
        bad = []
        for t in range(1, len(self.points)):
            prev, cur = self.points[t - 1], self.points[t]
            ok = (
                cur.n_row_groups <= prev.n_row_groups
                and cur.n_col_groups <= prev.n_col_groups
                and is_coarsening(prev.row_labels, cur.row_labels)
                and is_coarsening(prev.col_labels, cur.col_labels)
            )
            if not ok:
                bad.append(t)
                logger.warning(
                    f"Partition at gamma={cur.gamma:.4e} (index {t}) is not a coarsening of "
                    f"gamma={prev.gamma:.4e}: rows {prev.n_row_groups}->{cur.n_row_groups}, "
                    f"cols {prev.n_col_groups}->{cur.n_col_groups}"
                )
        return bad

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "gamma": pt.gamma,
                    "n_row_groups": pt.n_row_groups,
                    "n_col_groups": pt.n_col_groups,
                    "n_iter": pt.n_iter,
                    "converged": pt.converged,
                    "objective": pt.objective,
                    "primal_residual": pt.primal_residual,
                    "dual_residual": pt.dual_residual,
                }
                for pt in self.points
            ]
        )


def validate_gammas(gammas: Iterable[float]) -> np.ndarray:
    """Non-empty, finite, non-negative and strictly increasing."""
    try:
        g = np.asarray(list(gammas), dtype=np.float64)
    except (TypeError, ValueError):
        raise ConfigurationError("gammas must be a sequence of numbers") from None
    if g.ndim != 1 or g.size == 0:
        raise ConfigurationError("gammas must be a non-empty 1D sequence")
    if not np.all(np.isfinite(g)):
        raise ConfigurationError("gammas must be finite")
    if np.any(g < 0):
        raise ConfigurationError(f"gammas must be >= 0, got min={g.min()}")
    if g.size > 1 and np.any(np.diff(g) <= 0):
        raise ConfigurationError("gammas must be strictly increasing")
    return g


def compute_path(
    X: np.ndarray,
    row_graph: WeightedGraph,
    col_graph: WeightedGraph,
    gammas: Sequence[float],
    config: Optional[SolverConfig] = None,
    state: Optional[SolverState] = None,
    factorization: Optional[FusionFactorization] = None,
) -> BiclusterPath:
    """
    Solve for every gamma in ascending order, each solve warm-started from the
    previous one's final state. Non-converged points are kept and flagged; a
    NumericInstabilityError stops the path and carries the finished points.
    """
    g = validate_gammas(gammas)
    config = (config or SolverConfig()).validate()
    X = np.asarray(X, dtype=np.float64)
    fact = get_factorization(row_graph, col_graph, factorization)

    logger.info(
        f"Solving path over {g.size} gammas in [{g[0]:.4e}, {g[-1]:.4e}] for X {X.shape}"
    )
    t0 = time.perf_counter()
    points: List[PathPoint] = []
    for idx, gamma in enumerate(g):
        try:
            res = solve(
                X,
                row_graph,
                col_graph,
                gamma,
                state=state,
                config=config,
                factorization=fact,
            )
        except NumericInstabilityError as err:
            err.index = idx
            err.gamma = float(gamma)
            err.points = list(points)
            err.context.update({"index": idx, "n_completed": len(points)})
            logger.error(
                f"Numeric instability at gamma={gamma:.4e} (index {idx}); "
                f"aborting path after {len(points)} points"
            )
            raise
        state = res.state
        pt = PathPoint(
            gamma=float(gamma),
            U=res.state.U.copy(),
            row_labels=res.row_labels,
            col_labels=res.col_labels,
            n_iter=res.n_iter,
            converged=res.converged,
            objective=res.objective,
            primal_residual=res.primal_residual,
            dual_residual=res.dual_residual,
        )
        points.append(pt)
        logger.info(
            f"[{idx + 1}/{g.size}] gamma={gamma:.4e} iters={pt.n_iter} converged={pt.converged} "
            f"row_groups={pt.n_row_groups} col_groups={pt.n_col_groups}"
        )

    path = BiclusterPath(
        points=points, row_graph=row_graph, col_graph=col_graph, final_state=state
    )
    n_bad = sum(not pt.converged for pt in points)
    logger.info(
        f"Path done in {time.perf_counter() - t0:.2f}s; {n_bad}/{len(points)} points did not converge"
    )
    if points:
        log_cluster_sizes(points[-1].row_labels, kind="row")
        log_cluster_sizes(points[-1].col_labels, kind="col")
    path.coarsening_violations()
    return path


def _run_path_job(job: Dict[str, Any]) -> BiclusterPath:
    return compute_path(**job)


def compute_paths(
    jobs: Sequence[Dict[str, Any]],
    n_jobs: int = 1,
    progress: bool = False,
) -> List[BiclusterPath]:
    """
    Run independent paths, each one sequential inside, in parallel processes.
    Every job is a dict of compute_path keyword arguments. Output order follows
    the input order.
    """
    jobs = list(jobs)
    n_jobs = min(get_n_jobs(n_jobs), max(1, len(jobs)))
    logger.info(f"Running {len(jobs)} independent paths with {n_jobs} processes")
    if n_jobs == 1:
        it = tqdm(jobs, desc="paths") if progress else jobs
        return [_run_path_job(job) for job in it]

    with ProcessPoolExecutor(max_workers=n_jobs) as executor:
        results = executor.map(_run_path_job, jobs)
        if progress:
            results = tqdm(results, total=len(jobs), desc="paths")
        return list(results)
