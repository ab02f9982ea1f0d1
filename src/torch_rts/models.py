"""Linear transition and observation models.

These two small value types are what :class:`~torch_rts.KalmanFilter` consumes:

    x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)    (TransitionModel)
    z_k = H x_k     + v_k,   v_k ~ N(0, R)    (ObservationModel)

Both are frozen: matrices are given once at construction, checked for consistency,
and the transposes ``Fᵀ`` and ``Hᵀ`` are computed once and stored (contiguous).

Leading batch dimensions are allowed (several models at once) as long as they are
broadcastable with the states they are applied to.

Any object exposing the same attributes can be used in place of these classes.
"""

from __future__ import annotations

import dataclasses
from typing import overload

import torch

from .errors import DimensionMismatchError


def _check_square(matrix: torch.Tensor, name: str) -> None:
    if matrix.ndim < 2 or matrix.shape[-1] != matrix.shape[-2]:
        raise DimensionMismatchError(f"{name} should be a square matrix (..., dim, dim). Found {tuple(matrix.shape)}")


@dataclasses.dataclass(frozen=True, eq=False)
class TransitionModel:
    """Time-invariant linear process model.

    Attributes:
        process_matrix (torch.Tensor): Transition matrix ``F``.
            Shape: ``(..., dim_x, dim_x)``
        process_noise (torch.Tensor): Process noise covariance ``Q`` (symmetric PSD).
            Shape: ``(..., dim_x, dim_x)``
        process_matrix_t (torch.Tensor): Transposed transition matrix ``Fᵀ`` (computed at construction).
            Shape: ``(..., dim_x, dim_x)``
    """

    process_matrix: torch.Tensor
    process_noise: torch.Tensor
    process_matrix_t: torch.Tensor = dataclasses.field(init=False, repr=False)

    def __post_init__(self) -> None:
        _check_square(self.process_matrix, "Process matrix F")
        _check_square(self.process_noise, "Process noise Q")
        if self.process_noise.shape[-1] != self.process_matrix.shape[-1]:
            raise DimensionMismatchError(
                f"Process noise Q {tuple(self.process_noise.shape)} does not match "
                f"process matrix F {tuple(self.process_matrix.shape)}"
            )

        object.__setattr__(self, "process_matrix_t", self.process_matrix.mT.contiguous())

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.process_matrix.shape[-1]

    @property
    def device(self) -> torch.device:
        return self.process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        return self.process_matrix.dtype

    @overload
    def to(self, dtype: torch.dtype) -> TransitionModel: ...

    @overload
    def to(self, device: torch.device) -> TransitionModel: ...

    def to(self, fmt):
        """Convert the model to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the model to.

        Returns:
            TransitionModel: The model with the right format
        """
        return TransitionModel(self.process_matrix.to(fmt), self.process_noise.to(fmt))


@dataclasses.dataclass(frozen=True, eq=False)
class ObservationModel:
    """Time-invariant linear measurement model.

    Attributes:
        measurement_matrix (torch.Tensor): Observation matrix ``H``.
            Shape: ``(..., dim_z, dim_x)``
        measurement_noise (torch.Tensor): Measurement noise covariance ``R`` (symmetric PD).
            Shape: ``(..., dim_z, dim_z)``
        measurement_matrix_t (torch.Tensor): Transposed observation matrix ``Hᵀ`` (computed at construction).
            Shape: ``(..., dim_x, dim_z)``
    """

    measurement_matrix: torch.Tensor
    measurement_noise: torch.Tensor
    measurement_matrix_t: torch.Tensor = dataclasses.field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.measurement_matrix.ndim < 2:
            raise DimensionMismatchError(
                "Measurement matrix H should be a matrix (..., dim_z, dim_x). "
                f"Found {tuple(self.measurement_matrix.shape)}"
            )
        _check_square(self.measurement_noise, "Measurement noise R")
        if self.measurement_noise.shape[-1] != self.measurement_matrix.shape[-2]:
            raise DimensionMismatchError(
                f"Measurement noise R {tuple(self.measurement_noise.shape)} does not match "
                f"measurement matrix H {tuple(self.measurement_matrix.shape)}"
            )

        object.__setattr__(self, "measurement_matrix_t", self.measurement_matrix.mT.contiguous())

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.measurement_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.measurement_matrix.shape[-2]

    @property
    def device(self) -> torch.device:
        return self.measurement_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        return self.measurement_matrix.dtype

    @overload
    def to(self, dtype: torch.dtype) -> ObservationModel: ...

    @overload
    def to(self, device: torch.device) -> ObservationModel: ...

    def to(self, fmt):
        """Convert the model to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the model to.

        Returns:
            ObservationModel: The model with the right format
        """
        return ObservationModel(self.measurement_matrix.to(fmt), self.measurement_noise.to(fmt))
