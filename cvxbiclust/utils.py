import sys
import logging
import multiprocessing
from pathlib import Path

import numpy as np


# ---- One base for everything ----
BASE_LOGGER = "cvxbiclust"
_BASE = logging.getLogger(BASE_LOGGER)  # the only logger we configure here


def setup_logging(
    log_path: str | Path | None = None, level: str = "INFO"
) -> logging.Logger:
    """Configure the base logger once (file + console)."""
    if getattr(_BASE, "_configured", False):
        return _BASE

    _BASE.handlers.clear()
    _BASE.setLevel(getattr(logging, level.upper(), logging.INFO))
    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - pid=%(process)d - %(filename)s:%(lineno)d - %(funcName)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Optional file handler
    if log_path:
        fh = logging.FileHandler(str(log_path), encoding="utf-8")
        fh.setFormatter(fmt)
        _BASE.addHandler(fh)

    # Console handler
    sh = logging.StreamHandler(sys.stdout)
    sh.setFormatter(fmt)
    _BASE.addHandler(sh)

    # Do not bubble to the *root* logger
    _BASE.propagate = False
    _BASE._configured = True
    return _BASE


def get_logger(name: str | None = None) -> logging.Logger:
    """Get a child logger that inherits the base handlers."""
    if not name:
        return _BASE
    # modules are named "cvxbiclust.<module>" already
    if name == BASE_LOGGER or name.startswith(BASE_LOGGER + "."):
        return logging.getLogger(name)
    return logging.getLogger(f"{BASE_LOGGER}.{name}")


logger = get_logger(__name__)


def get_n_jobs(n_jobs: int | None) -> int:
    # Determine number of processes
    if n_jobs is None:
        return 1
    if n_jobs == -1:
        n_jobs = multiprocessing.cpu_count()
    elif n_jobs <= 1:
        n_jobs = 1
    return int(n_jobs)


def nan_inf_report(name: str, arr: np.ndarray) -> dict:
    return dict(
        name=name,
        has_nan=bool(np.isnan(arr).any()),
        has_inf=bool(np.isinf(arr).any()),
        max_abs=float(np.max(np.abs(arr))) if arr.size else 0.0,
        frob=float(np.linalg.norm(arr)) if arr.size else 0.0,
    )
