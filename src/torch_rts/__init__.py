"""Torch-RTS: Kalman filtering and Rauch-Tung-Striebel smoothing in PyTorch.

torch-rts provides a linear-Gaussian state estimation engine: the Kalman filter
predict/update recursion and its backward RTS smoother. It is designed for
tracking, navigation and sensor-fusion, where a hidden state (e.g. position and
velocity) is estimated from noisy and partial measurements.

Key features
------------
- **Three posterior covariance formulas**: Joseph form (default, keeps covariances
  symmetric and positive semi-definite), optimal Kalman, and optimal Kalman forced symmetric.
- **Filtering and RTS smoothing**: online step-by-step filtering, or a forward pass +
  Rauch-Tung-Striebel backward pass over a full sequence.
- **Missing measures**: a measure whose components are all NaN skips the update step.
- **Batch-friendly**: leading dimensions are batch dimensions, many independent
  filters run without Python loops, on CPU or GPU.

Numerical notes
---------------
Gains are computed with Cholesky solves, never with explicit inverses. A covariance
that cannot be factorised raises :class:`~torch_rts.SingularMatrixError`. For precise
results, use ``float64`` models and states.

Getting started
---------------
The core API consists of:
- :class:`~torch_rts.TransitionModel` and :class:`~torch_rts.ObservationModel` holding ``F, Q`` and ``H, R``.
- :class:`~torch_rts.GaussianState` to represent Gaussian means/covariances.
- :class:`~torch_rts.KalmanFilter` with :meth:`~torch_rts.KalmanFilter.predict`,
  :meth:`~torch_rts.KalmanFilter.update`, :meth:`~torch_rts.KalmanFilter.step_with_options`,
  :meth:`~torch_rts.KalmanFilter.filter` and :meth:`~torch_rts.KalmanFilter.smooth`.

:mod:`torch_rts.ckf` builds ready-to-use constant velocity / acceleration models.

Notes on shapes
---------------
torch-rts uses column vectors. State and measurement vectors must have shape
``(..., dim, 1)``. Leading dimensions ``...`` are treated as batch dimensions and may be
broadcastable across operations.
"""

from .errors import (
    DimensionMismatchError,
    EmptySequenceError,
    KalmanError,
    PartialObservationError,
    SingularMatrixError,
)
from .kalman_filter import CovarianceUpdateMethod, ForwardPass, GaussianState, KalmanFilter, StateAndCovariance
from .models import ObservationModel, TransitionModel

__all__ = [
    "CovarianceUpdateMethod",
    "DimensionMismatchError",
    "EmptySequenceError",
    "ForwardPass",
    "GaussianState",
    "KalmanError",
    "KalmanFilter",
    "ObservationModel",
    "PartialObservationError",
    "SingularMatrixError",
    "StateAndCovariance",
    "TransitionModel",
]
__version__ = "0.1.0"
