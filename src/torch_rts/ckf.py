"""Helpers for building constant-derivative Kalman filters.

This module provides utilities to construct the classical Kalman filter
models (F, Q) and (H, R) for *constant-derivative motion models* such as:

- constant position (order = 0),
- constant velocity (order = 1),
- constant acceleration (order = 2),
- constant jerk, etc.

The state is composed of a value and its derivatives up to a given order,
for each spatial dimension. The (order+1)-th derivative is modeled as a
continuous white noise of intensity ``q`` (power spectral density), and the
process noise ``Q`` is obtained by integrating it over one time step. For the
constant velocity model, each dimension gets the classical block:

    Q = q * [[dt^3 / 3, dt^2 / 2],
             [dt^2 / 2, dt      ]]

Only the values are observed (not their derivatives).

Example:
    The 2D constant velocity tracker with state ``[x, y, vx, vy]``::

        kf = constant_kalman_filter(measurement_variance=0.01, noise_intensity=100.0, dt=0.01, dtype=torch.float64)

"""

from __future__ import annotations

import math

import torch

from .kalman_filter import CovarianceUpdateMethod, KalmanFilter
from .models import ObservationModel, TransitionModel


def interleave(x: torch.Tensor, size: int) -> torch.Tensor:
    """Interleave tensor along the first dimension.

    This utility reshuffles a tensor along its first dimension by grouping
    consecutive elements of size ``size`` and interleaving them. It switches
    between a state ordered by dimension (``x, x', y, y'``) and a state ordered
    by derivative (``x, y, x', y'``).

    Example:
        >>> x = torch.tensor([[1, 1], [2, 2], [3, 3], [4, 4], [5, 5], [6, 6]])
        >>> interleave(x, 2)
        tensor([[1, 1], [3, 3], [5, 5], [2, 2], [4, 4], [6, 6]])

    Args:
        x (torch.Tensor): Tensor to interleave.
            Shape: ``(B, ...)``
        size: Block size used for interleaving.
            Must divide ``B`` exactly (``B = k * size``).

    Returns:
        torch.Tensor: Interleaved tensor with the same shape as ``x``.
            Shape: ``(B, ...)``

    """
    shape = list(x.shape)
    return x.reshape([-1, size, *shape[1:]]).transpose(0, 1).reshape([-1, *shape[1:]])


def _reorder(matrix: torch.Tensor, order: int) -> torch.Tensor:
    """Switch rows and columns of a block diagonal matrix from by-dimension to by-derivative ordering."""
    return interleave(interleave(matrix, order + 1).T, order + 1).T


def create_ckf_process_matrix(
    order: int, dt=1.0, *, dtype: torch.dtype | None = None, device: torch.device | None = None
) -> torch.Tensor:
    r"""Create the process (transition) matrix ``F`` of a single dimension.

    The state contains derivatives up to order ``order``. Assuming the expected
    (order+1)-th derivative is zero, the Taylor expansion yields:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Examples:
        - First order (constant velocity) with ``dt = 1``::

            [
                [1.0, 1.0],
                [0.0, 1.0],
            ]

        - Second order (constant acceleration) with ``dt = 0.5``::

            [
                [1, 0.5, 0.125],
                [0, 1.0, 0.5],
                [0, 0.0, 1.0],
            ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0.
        dtype (torch.dtype | None): Dtype of the matrix. Default: torch default dtype.
        device (torch.device | None): Device of the matrix. Default: cpu.

    Returns:
        torch.Tensor: Process matrix ``F``
            Shape: ``(order + 1, order + 1)``

    """
    # Taylor coefficients computed in python floats: (1, dt, dt^2 / 2, ... dt^k / k!)
    coefficients = [dt**k / math.factorial(k) for k in range(order + 1)]

    process_matrix = torch.zeros(order + 1, order + 1, dtype=dtype, device=device)
    for i in range(order + 1):
        for j in range(i, order + 1):
            process_matrix[i, j] = coefficients[j - i]
    return process_matrix


def create_ckf_process_noise(
    noise_intensity: float, order: int, dt=1.0, *, dtype: torch.dtype | None = None, device: torch.device | None = None
) -> torch.Tensor:
    r"""Create the process noise covariance matrix ``Q`` of a single dimension.

    The (order+1)-th derivative is a continuous white noise with intensity ``q``.
    Integrating it through the Taylor-expanded dynamics over ``dt`` gives:

    Q_{ij} = q \frac{dt^{2 order + 1 - i - j}}{(order - i)! (order - j)! (2 order + 1 - i - j)}

    For instance, the constant velocity model (``order = 1``) leads to::

        q * [
            [dt^3 / 3, dt^2 / 2],
            [dt^2 / 2, dt],
        ]

    Args:
        noise_intensity (float): Intensity ``q`` of the white noise on the (order+1)-th derivative.
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0.
        dtype (torch.dtype | None): Dtype of the matrix. Default: torch default dtype.
        device (torch.device | None): Device of the matrix. Default: cpu.

    Returns:
        torch.Tensor: Process noise covariance matrix ``Q``.
            Shape: ``(order + 1, order + 1)``.

    """
    process_noise = torch.empty(order + 1, order + 1, dtype=dtype, device=device)
    for i in range(order + 1):
        for j in range(order + 1):
            power = 2 * order + 1 - i - j
            process_noise[i, j] = (
                noise_intensity
                * dt**power
                / (math.factorial(order - i) * math.factorial(order - j) * power)
            )
    return process_noise


def constant_transition_model(
    noise_intensity: float,
    *,
    dim=2,
    order=1,
    dt=1.0,
    order_by_dim=False,
    dtype: torch.dtype | None = None,
    device: torch.device | None = None,
) -> TransitionModel:
    """Create the transition model of a constant-derivative motion.

    The full state dimension is ``(order + 1) * dim``. Each dimension follows the same
    independent dynamics (see `create_ckf_process_matrix` and `create_ckf_process_noise`).

    Args:
        noise_intensity (float): Intensity of the white noise on the (order+1)-th derivative.
        dim (int): Number of independent dimensions (1D, 2D, 3D, …).
            Default: 2.
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity).
        dt (float): Time step duration.
            Default: 1.0.
        order_by_dim (bool): State ordering convention.
            - True: group by dimension (e.g. ``x, x', y, y'``),
            - False: group by derivative order (e.g. ``x, y, x', y'``).
            Default: False.
        dtype (torch.dtype | None): Dtype of the matrices. Default: torch default dtype.
        device (torch.device | None): Device of the matrices. Default: cpu.

    Returns:
        TransitionModel: Model of the constant velocity/acceleration/jerk motion.
    """
    process_matrix = torch.block_diag(
        *(create_ckf_process_matrix(order, dt, dtype=dtype, device=device) for _ in range(dim))
    )
    process_noise = torch.block_diag(
        *(create_ckf_process_noise(noise_intensity, order, dt, dtype=dtype, device=device) for _ in range(dim))
    )

    if not order_by_dim:
        process_matrix = _reorder(process_matrix, order)
        process_noise = _reorder(process_noise, order)

    return TransitionModel(process_matrix.contiguous(), process_noise.contiguous())


def position_observation_model(
    measurement_variance: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    order_by_dim=False,
    dtype: torch.dtype | None = None,
    device: torch.device | None = None,
) -> ObservationModel:
    """Create the observation model of a constant-derivative motion: only values are measured.

    Measurement noise is independent between the different dimensions.

    Args:
        measurement_variance (float | torch.Tensor): Variance of the measurement noise.
            Shape: broadcastable to ``(dim,)``.
        dim (int): Number of independent dimensions (1D, 2D, 3D, …).
            Default: 2.
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity).
        order_by_dim (bool): State ordering convention (See `constant_transition_model`).
            Default: False.
        dtype (torch.dtype | None): Dtype of the matrices. Default: torch default dtype.
        device (torch.device | None): Device of the matrices. Default: cpu.

    Returns:
        ObservationModel: Model measuring the values (not the derivatives).
    """
    measurement_variance = torch.broadcast_to(
        torch.as_tensor(measurement_variance, dtype=dtype, device=device), (dim,)
    )

    state_dim = (order + 1) * dim
    measurement_matrix = torch.eye(dim, state_dim, dtype=dtype, device=device)
    measurement_noise = torch.diag(measurement_variance)

    if order_by_dim:
        measurement_matrix = interleave(measurement_matrix.T, dim).T

    return ObservationModel(measurement_matrix.contiguous(), measurement_noise.contiguous())


def constant_kalman_filter(  # noqa: PLR0913
    measurement_variance: float | torch.Tensor,
    noise_intensity: float,
    *,
    dim=2,
    order=1,
    dt=1.0,
    order_by_dim=False,
    covariance_update=CovarianceUpdateMethod.JOSEPH_FORM,
    dtype: torch.dtype | None = None,
    device: torch.device | None = None,
) -> KalmanFilter:
    """Create a constant-derivative Kalman filter.

    The state consists of values and their derivatives up to a given order,
    for each spatial dimension. For example:

    - ``order = 0``: position only
    - ``order = 1``: position + velocity
    - ``order = 2``: position + velocity + acceleration

    Args:
        measurement_variance (float | torch.Tensor): Variance of the measurement noise.
            Shape: broadcastable to ``(dim,)``.
        noise_intensity (float): Intensity of the white noise on the (order+1)-th derivative.
        dim (int): Number of independent dimensions (1D, 2D, 3D, …).
            Default: 2.
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity).
        dt (float): Time step duration.
            Default: 1.0.
        order_by_dim (bool): State ordering convention (See `constant_transition_model`).
            Default: False.
        covariance_update (CovarianceUpdateMethod): Default posterior covariance formula.
            Default: CovarianceUpdateMethod.JOSEPH_FORM
        dtype (torch.dtype | None): Dtype of the matrices. Default: torch default dtype.
        device (torch.device | None): Device of the matrices. Default: cpu.

    Returns:
        KalmanFilter: Filter configured for constant velocity/acceleration/jerk models.

    """
    return KalmanFilter(
        constant_transition_model(
            noise_intensity, dim=dim, order=order, dt=dt, order_by_dim=order_by_dim, dtype=dtype, device=device
        ),
        position_observation_model(
            measurement_variance, dim=dim, order=order, order_by_dim=order_by_dim, dtype=dtype, device=device
        ),
        covariance_update=covariance_update,
    )
