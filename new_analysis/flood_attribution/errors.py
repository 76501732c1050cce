"""
Error Taxonomy
==============
Structured errors raised by the flood-malaria attribution core.

Configuration and column-availability problems are raised once, during panel
preparation. Computational failures (singular covariance, degenerate exposure
variance) abort only the estimate that hit them; the caller records them as an
``EffectFailure`` and carries on with the remaining cities / scenarios.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, Iterable, Optional

import numpy as np


class FloodAttributionError(Exception):
    """Base class for all errors raised by the attribution core."""


class MissingRequiredColumnError(FloodAttributionError, KeyError):
    """A mandatory input column (response, exposure, city/time keys) is absent."""

    def __init__(self, missing: Iterable[str], available: Optional[Iterable[str]] = None):
        self.missing = sorted(str(c) for c in missing)
        self.available = sorted(str(c) for c in available) if available is not None else None
        msg = f"Required column(s) not found: {self.missing}"
        if self.available is not None:
            msg += f". Available: {self.available}"
        super().__init__(msg)

    def __str__(self):
        # KeyError.__str__ would repr() the message
        return self.args[0]


class MissingProjectionError(FloodAttributionError, KeyError):
    """No projected population for a (city, scenario, year) that needs one."""

    def __str__(self):
        return self.args[0]


class DegenerateExposureError(FloodAttributionError, ValueError):
    """Exposure standard deviation is zero or undefined."""


class SingularCovarianceError(FloodAttributionError, np.linalg.LinAlgError):
    """Covariance submatrix cannot support a reliable quadratic-form evaluation."""


class InvalidBoundOrderingError(FloodAttributionError, AssertionError):
    """``lower <= point <= upper`` failed after an interval transform.

    This is a defect, not a data problem: it must be reported, never published.
    """


class FittingError(FloodAttributionError, RuntimeError):
    """The fixed-effects Poisson fit failed or lacks a requested regressor."""


class UnmatchedGroupKeyWarning(UserWarning):
    """A fixed-effect key has no fitted contribution; it is treated as 0."""


@dataclass(frozen=True)
class EffectFailure:
    """Failure half of an estimator result."""

    key: Any
    stage: str
    error_type: str
    message: str
    defect: bool = False

    @classmethod
    def from_exception(cls, key: Any, stage: str, exc: Exception) -> "EffectFailure":
        return cls(
            key=key,
            stage=stage,
            error_type=type(exc).__name__,
            message=str(exc),
            defect=isinstance(exc, InvalidBoundOrderingError),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
