import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import numpy as np
import yaml

from cvxbiclust.exceptions import ConfigurationError
from cvxbiclust.utils import get_logger

logger = get_logger(__name__)


def load_config(
    config_path: str | Path | None, allowed: Optional[Iterable[str]] = None
) -> Dict[str, Any]:
    """
    Load estimator parameters from a JSON or YAML file.

    Example (JSON):
    {
      "gammas": [0.0, 0.1, 1.0, 10.0],
      "phi": 0.5,
      "k_row": 5,
      "k_col": 5,
      "holdout_fraction": 0.1,
      "max_iter": 2000
    }

    Keys outside `allowed` are skipped with a warning.
    """
    if config_path is None:
        return {}

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    if suffix == ".json":
        with config_path.open("r") as f:
            raw = json.load(f)
    elif suffix in (".yml", ".yaml"):
        with config_path.open("r") as f:
            raw = yaml.safe_load(f)
    else:
        raise ConfigurationError(
            f"Unsupported config file extension '{suffix}'. "
            "Use .json, .yaml or .yml."
        )

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigurationError(
            f"Config file {config_path} must hold a mapping, got {type(raw).__name__}"
        )

    allowed = None if allowed is None else set(allowed)
    config: Dict[str, Any] = {}
    for key, val in raw.items():
        if allowed is not None and key not in allowed:
            logger.warning("Unknown parameter '%s' in config file; skipping.", key)
            continue
        config[key] = val
    logger.info(f"Loaded config from {config_path}: {sorted(config)}")
    return config


def make_gammas(
    start: float, stop: float, num: int, include_zero: bool = False
) -> np.ndarray:
    """Log-spaced, strictly increasing gamma sequence from start to stop."""
    if not (np.isfinite(start) and np.isfinite(stop)) or start <= 0 or stop <= start:
        raise ConfigurationError(
            f"need 0 < start < stop for a log-spaced sequence, got start={start}, stop={stop}"
        )
    if int(num) < 1:
        raise ConfigurationError(f"num must be >= 1, got {num}")
    g = np.logspace(np.log10(start), np.log10(stop), int(num))
    if include_zero:
        g = np.concatenate([[0.0], g])
    return g
