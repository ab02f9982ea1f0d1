"""Errors raised by torch-rts.

All of them derive from :class:`KalmanError`, so a caller can catch every failure
of the library at once. Each one also derives from the closest builtin (or torch)
exception, so existing ``except ValueError`` / ``except torch.linalg.LinAlgError``
clauses keep working.

Missing observations (all-NaN measures) are not errors: the update is simply skipped.
"""

from __future__ import annotations

import torch.linalg


class KalmanError(Exception):
    """Base class of torch-rts errors."""


class SingularMatrixError(KalmanError, torch.linalg.LinAlgError):
    """A covariance is not positive definite to working precision.

    Raised when the cholesky factorisation of the innovation covariance ``S`` (update)
    or of a predicted covariance (RTS smoothing) fails. This covers singular matrices
    but also invertible ones that are not positive definite (e.g. from a negative
    variance in ``R``).
    """


class DimensionMismatchError(KalmanError, ValueError):
    """Matrices, states or measures have inconsistent shapes."""


class EmptySequenceError(KalmanError, ValueError):
    """A sequence of measures is empty."""


class PartialObservationError(KalmanError, ValueError):
    """A measure is partially NaN.

    By convention a missing measure has *all* its components set to NaN. A measure
    with only some NaN components is neither missing nor valid.
    """
