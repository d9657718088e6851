"""Error taxonomy for convex biclustering.

- ConfigurationError: invalid phi / k / fraction / gamma sequence / solver settings
- DegenerateGraphError: a k-NN graph that cannot be built (too few nodes, no edges)
- NumericInstabilityError: NaN/Inf in the solver state; fatal for the remaining path
- ConvergenceWarning: the solver hit its iteration budget for one gamma (non-fatal)

Configuration and degeneracy errors are raised before any solving starts.
"""

from typing import Any, Dict, List, Optional

from sklearn.exceptions import ConvergenceWarning as _SklearnConvergenceWarning


class CobraError(Exception):
    """Base class for all errors raised by cvxbiclust."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})

    def __str__(self) -> str:
        base_msg = self.message
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" (Context: {context_str})"
        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
        }


class ConfigurationError(CobraError, ValueError):
    """Invalid parameter value; raised before any computation."""


class DegenerateGraphError(CobraError, ValueError):
    """The requested k-NN graph is empty or cannot be built for this axis."""


class NumericInstabilityError(CobraError, FloatingPointError):
    """NaN or Inf appeared in the solver state.

    Attributes:
        gamma: penalty strength being solved when the state broke
        index: position of that gamma in the path (None outside a path)
        points: path points completed before the failure
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        gamma: Optional[float] = None,
        index: Optional[int] = None,
        points: Optional[List[Any]] = None,
    ):
        super().__init__(message, context)
        self.gamma = gamma
        self.index = index
        self.points = list(points or [])


class ConvergenceWarning(_SklearnConvergenceWarning):
    """The ADMM iteration budget was exhausted before the residuals met tolerance."""
