from __future__ import annotations

import dataclasses
import enum
import logging
from typing import Sequence, overload

import torch
import torch.linalg

from . import _printing
from .errors import DimensionMismatchError, EmptySequenceError, PartialObservationError, SingularMatrixError
from .models import ObservationModel, TransitionModel

# Note on numerics:
# Gains are never computed from an explicit inverse. Both S (update) and the predicted covariance (RTS smoothing)
# are symmetric positive definite: they are factorised with cholesky, and the gain is found with cholesky_solve.
# A failed factorisation is reported as a SingularMatrixError rather than propagating NaNs.

logger = logging.getLogger(__name__)


@dataclasses.dataclass(frozen=True, eq=False)
class GaussianState:
    """Gaussian state for Kalman filtering (the State-and-Covariance value).

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Conventions:
    - State/measurement vectors are **column vectors** with shape ``(..., dim, 1)``.
      This avoids ambiguity with batched matrix multiplications.
    - Leading dimensions ``...`` are treated as **batch dimensions** and may be
      broadcastable across operations. Stacked sequences use the first one as time.

    States are immutable: every filtering/smoothing operation returns a new state
    and never modifies its inputs.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance), only supplied by the user.
            Shape: ``(..., dim, dim)``
            It is used by the Mahalanobis distance and the likelihoods, and carried by `clone`,
            indexing and `to`. Filtering and smoothing never compute it: their results hold ``None``.
            If ``None``, it is computed when needed.
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    @property
    def dim(self) -> int:
        """Dimension of the distribution."""
        return self.mean.shape[-2]

    def clone(self) -> GaussianState:
        """Return a deep copy of the state.

        Uses ``Tensor.clone()`` on all stored tensors.

        Returns:
            GaussianState: The cloned state
        """
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def __getitem__(self, idx) -> GaussianState:
        """Index/slice along batch (or time) dimensions.

        Args:
            idx (Any): Index/slice applied to the leading dimensions.

        Returns:
            GaussianState: Indexed GaussianState.
        """
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )

    def is_symmetric(self, rtol=1e-10) -> torch.Tensor:
        """Check that the covariance is numerically symmetric.

        The largest absolute difference between ``P`` and ``Pᵀ`` must be below
        ``rtol`` times the largest absolute coefficient of ``P``.

        Args:
            rtol (float): Relative tolerance.
                Default: 1e-10 (suited to float64)

        Returns:
            torch.Tensor: Boolean result for each batch element.
                Shape: ``(...)``
        """
        error = (self.covariance - self.covariance.mT).abs().amax(dim=(-2, -1))
        return error <= rtol * self.covariance.abs().amax(dim=(-2, -1))

    def is_positive_semidefinite(self, rtol=1e-10) -> torch.Tensor:
        """Check that the covariance has no significantly negative eigenvalue.

        Eigenvalues are computed from the symmetric part of ``P``. The smallest must be
        above ``-rtol`` times the largest absolute eigenvalue.

        Args:
            rtol (float): Relative tolerance.
                Default: 1e-10 (suited to float64)

        Returns:
            torch.Tensor: Boolean result for each batch element.
                Shape: ``(...)``
        """
        eigenvalues = torch.linalg.eigvalsh(0.5 * (self.covariance + self.covariance.mT))
        return eigenvalues.amin(dim=-1) >= -rtol * eigenvalues.abs().amax(dim=-1)

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute squared Mahalanobis distance to a measure.

        Computes:

            MAHA^2 = (x - μ)^T P^{-1} (x - μ)

        Broadcasting:
            Batch dimensions of ``measure`` and the state must be broadcastable.
            This allows to compare multiple states and measures at once.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Squared Mahalanobis distance for broadcasted measures & states
            Shape: ``(...)``
        """
        diff = self.mean - measure  # Should be broadcastable
        precision = self.covariance.inverse() if self.precision is None else self.precision
        return (diff.mT @ precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute Mahalanobis distance to a measure.

        It takes the square root of the squared Mahalanobis distance.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Mahalanobis distance for broadcasted measures & states
            Shape: ``(...)``
        """
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of the given measure under the Gaussian distribution.

        For dimension ``dim``:

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Applied to the projection of a predicted state (see `KalmanFilter.project`), this is
        the likelihood of a measure given the past ones.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Log-likelihood for broadcasted measures & states
            Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        log_det = torch.linalg.slogdet(self.covariance).logabsdet
        pi = torch.tensor(torch.pi, device=log_det.device, dtype=log_det.dtype)
        return -0.5 * (self.dim * torch.log(2 * pi) + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the likelihood of the given measure under the Gaussian distribution.

        It takes the exponential of the log-likelihood.

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``

        Returns:
            torch.Tensor: Likelihood for broadcasted measures & states
            Shape: ``(...)``
        """
        return self.log_likelihood(measure).exp()


StateAndCovariance = GaussianState


class CovarianceUpdateMethod(enum.Enum):
    """Formula used to compute the posterior covariance in `KalmanFilter.update`.

    With ``K`` the Kalman gain:

    - ``JOSEPH_FORM``: P' = (I - K H) P (I - K H)ᵀ + K R Kᵀ
      Symmetric and positive semi-definite by construction, even with rounding errors in ``K``.
    - ``OPTIMAL_KALMAN``: P' = (I - K H) P
      Fewest operations, but may lose symmetry/positiveness under rounding.
    - ``OPTIMAL_KALMAN_FORCED_SYMMETRIC``: the optimal Kalman form averaged with its transpose.
    """

    JOSEPH_FORM = "joseph_form"
    OPTIMAL_KALMAN = "optimal_kalman"
    OPTIMAL_KALMAN_FORCED_SYMMETRIC = "optimal_kalman_forced_symmetric"


@dataclasses.dataclass(frozen=True, eq=False)
class ForwardPass:
    """Result of a forward filtering pass, as required by RTS smoothing.

    Attributes:
        predicted (GaussianState): Prior states x_k | z_{1:k-1} for each time step.
            Shape (mean): ``(T, ..., dim_x, 1)``
            Shape (covariance): ``(T, ..., dim_x, dim_x)``
        filtered (GaussianState): Posterior states x_k | z_{1:k} for each time step.
            Shape (mean): ``(T, ..., dim_x, 1)``
            Shape (covariance): ``(T, ..., dim_x, dim_x)``
    """

    predicted: GaussianState
    filtered: GaussianState

    def __len__(self) -> int:
        return self.filtered.mean.shape[0]


def _stack(states: Sequence[GaussianState]) -> GaussianState:
    """Stack states along a new leading time dimension (shapes are broadcasted first)."""
    return GaussianState(
        torch.stack(torch.broadcast_tensors(*(state.mean for state in states))),
        torch.stack(torch.broadcast_tensors(*(state.covariance for state in states))),
    )


class KalmanFilter:
    """Batch-friendly linear Kalman filter and Rauch-Tung-Striebel smoother in PyTorch.

    This class estimates the latent state of a linear dynamical system under Gaussian noise:

        x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)
        z_k = H x_k     + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (dimension ``dim_x``),
    - ``z_k`` is the measure (dimension ``dim_z``),
    - ``F``, ``Q`` are given by the transition model,
    - ``H``, ``R`` are given by the observation model.

    The filter only holds references to both (immutable) models and a default covariance
    update method. Every method is a pure function of its inputs: a filter can be shared
    between independent runs or threads.

    Missing measures are encoded with NaN: a measure whose components are all NaN is
    considered missing, and the update step is skipped (the prediction becomes the posterior).

    Shape conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Matrices have shape ``(..., dim, dim)`` (or ``(..., dim_z, dim_x)`` for ``H``).
    - Leading ``...`` batch dimensions may be broadcastable, enabling fast batched filtering & smoothing.

    Numerical notes:
    - Run in float64 for precise results. Models built in float32 can be converted with `to`.
    - Joseph form is the default covariance update. It is about 50% slower than the optimal Kalman
    form, but it preserves symmetry and positiveness of the covariances.

    Attributes:
        transition_model (TransitionModel): Process model (``F``, ``Q``).
        observation_model (ObservationModel): Measurement model (``H``, ``R``).
        covariance_update (CovarianceUpdateMethod): Default posterior covariance formula.
            Default: CovarianceUpdateMethod.JOSEPH_FORM
    """

    def __init__(
        self,
        transition_model: TransitionModel,
        observation_model: ObservationModel,
        *,
        covariance_update: CovarianceUpdateMethod | str = CovarianceUpdateMethod.JOSEPH_FORM,
    ) -> None:
        if observation_model.measurement_matrix.shape[-1] != transition_model.process_matrix.shape[-1]:
            raise DimensionMismatchError(
                f"Measurement matrix H {tuple(observation_model.measurement_matrix.shape)} is not compatible "
                f"with the state dimension of the process matrix F {tuple(transition_model.process_matrix.shape)}"
            )

        # We do not check that device/dtype are shared (but they should be)
        self.transition_model = transition_model
        self.observation_model = observation_model
        self.covariance_update = CovarianceUpdateMethod(covariance_update)

    @property
    def process_matrix(self) -> torch.Tensor:
        """Process/Transition matrix ``F``."""
        return self.transition_model.process_matrix

    @property
    def process_noise(self) -> torch.Tensor:
        """Process noise covariance ``Q``."""
        return self.transition_model.process_noise

    @property
    def measurement_matrix(self) -> torch.Tensor:
        """Projection/Measurement matrix ``H``."""
        return self.observation_model.measurement_matrix

    @property
    def measurement_noise(self) -> torch.Tensor:
        """Measurement noise covariance ``R``."""
        return self.observation_model.measurement_noise

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.measurement_matrix.shape[-2]

    @property
    def device(self) -> torch.device:
        """Device of the Kalman filter."""
        return self.process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the Kalman filter."""
        return self.process_matrix.dtype

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter: ...

    def to(self, fmt):
        """Convert a Kalman filter to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter: The filter with the right format
        """
        return KalmanFilter(
            self.transition_model.to(fmt),
            self.observation_model.to(fmt),
            covariance_update=self.covariance_update,
        )

    @staticmethod
    def _check_state(state: GaussianState, dim: int) -> None:
        if state.mean.shape[-2:] != (dim, 1) or state.covariance.shape[-2:] != (dim, dim):
            raise DimensionMismatchError(
                f"Expected a state of dimension {dim} (mean: (..., {dim}, 1), covariance: (..., {dim}, {dim})). "
                f"Found mean: {tuple(state.mean.shape)}, covariance: {tuple(state.covariance.shape)}"
            )

    def _missing(self, measure: torch.Tensor) -> torch.Tensor:
        """Find missing measures (all components are NaN).

        Returns:
            torch.Tensor: Boolean mask of missing measures.
                Shape: ``(...)``
        """
        if measure.shape[-2:] != (self.measure_dim, 1):
            raise DimensionMismatchError(
                f"Expected a measure of shape (..., {self.measure_dim}, 1). Found {tuple(measure.shape)}"
            )

        nan = torch.isnan(measure[..., 0])
        missing = nan.all(dim=-1)
        if (nan.any(dim=-1) & ~missing).any():
            raise PartialObservationError(
                "Some measures are only partially NaN. A missing measure should have all its components set to NaN."
            )
        return missing

    def predict(
        self,
        state: GaussianState,
        *,
        process_matrix: torch.Tensor | None = None,
        process_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Compute the predicted (prior) state.

        From a state x_{k-1} | ... ~ N(mu_{k-1}, P_{k-1}), it applies the process model:

            x_k = F x_{k-1} + w_k,   w_k ~ N(0, Q)

        leading to a prior state on the next timestep x_k | ... ~ N(mu_k, P_k) with:

            mu_k = F mu_{k-1}
            P_k = F P_{k-1} Fᵀ + Q

        Broadcasting:
            Batch dimensions of ``state``, ``process_matrix`` and ``process_noise`` must be broadcastable.
            It supports multiple states / models as long as it broadcasts correctly.

        Args:
            state (GaussianState): Current state estimation.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            process_matrix (torch.Tensor | None): Optional override for registered process matrix ``F``.
                Shape: ``(..., dim_x, dim_x)``
            process_noise (torch.Tensor | None): Optional override for registered process noise ``Q``.
                Shape: ``(..., dim_x, dim_x)``

        Returns:
            GaussianState: Predicted prior state on the next time frame.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        """
        if process_matrix is None:
            process_matrix = self.transition_model.process_matrix
            process_matrix_t = self.transition_model.process_matrix_t
        else:
            process_matrix_t = process_matrix.mT
        if process_noise is None:
            process_noise = self.transition_model.process_noise

        self._check_state(state, process_matrix.shape[-1])

        mean = process_matrix @ state.mean
        covariance = process_matrix @ state.covariance @ process_matrix_t + process_noise

        return GaussianState(mean, covariance)

    def project(
        self,
        state: GaussianState,
        *,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Project a state into measurement space (usually the predicted state).

        From a state x_k | ... ~ N(mu_k, P_k), it applies the measurement model:

            z_k = H x_k + v_k,   v_k ~ N(0, R)

        leading to a Gaussian state over ``z``: z_k | ... ~ N(y_k, S_k) with:

            y_k = H mu_k
            S_k = H P_k Hᵀ + R

        ``S_k`` is the innovation covariance.

        Broadcasting:
            Batch dimensions of ``state``, ``measurement_matrix`` and ``measurement_noise`` must be broadcastable.

        Args:
            state (GaussianState): Current state estimation, typically the results of `predict`.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measurement_matrix (torch.Tensor | None): Optional override for registered projection matrix ``H``.
                Shape: ``(..., dim_z, dim_x)``
            measurement_noise (torch.Tensor | None): Optional override for registered projection noise ``R``.
                Shape: ``(..., dim_z, dim_z)``

        Returns:
            GaussianState: Projected state in the measurement space.
                Shape (mean): ``(..., dim_z, 1)``
                Shape (covariance): ``(..., dim_z, dim_z)``

        """
        if measurement_matrix is None:
            measurement_matrix = self.observation_model.measurement_matrix
            measurement_matrix_t = self.observation_model.measurement_matrix_t
        else:
            measurement_matrix_t = measurement_matrix.mT
        if measurement_noise is None:
            measurement_noise = self.observation_model.measurement_noise

        self._check_state(state, measurement_matrix.shape[-1])

        mean = measurement_matrix @ state.mean
        covariance = measurement_matrix @ state.covariance @ measurement_matrix_t + measurement_noise

        return GaussianState(mean, covariance)

    def update(  # noqa: PLR0913
        self,
        state: GaussianState,
        measure: torch.Tensor,
        method: CovarianceUpdateMethod | str | None = None,
        *,
        projection: GaussianState | None = None,
        measurement_matrix: torch.Tensor | None = None,
        measurement_noise: torch.Tensor | None = None,
    ) -> GaussianState:
        """Update a state estimate using a new measure.

        Given a state x_k | ... ~ N(mu_k, P_k) and a new observation z_k. It
        computes the posterior state x_k | ..., z_k ~ N(mu'_k, P'_k), accounting
        for the new measure z_k.

        `update` follows three main steps:
        1. Computing the measure expected distribution z_k | ... ~ N(y_k, S_k) with `project`.
        2. Kalman gain computation: K = P_k Hᵀ S_k^{-1}, solving S_k Kᵀ = H P_kᵀ with a cholesky
           decomposition of S_k (no explicit inverse).
        3. Incorporate z_k information in the state:
            mu'_k = mu_k + K (z_k - y_k)
            P'_k = (I - K H) P_k (I - K H)ᵀ + K R Kᵀ   [JOSEPH_FORM]
            P'_k = (I - K H) P_k                      [OPTIMAL_KALMAN]
            P'_k = (P'_k + P'_kᵀ) / 2 of the former   [OPTIMAL_KALMAN_FORCED_SYMMETRIC]

        The measure is used as is: see `step_with_options` for missing (NaN) measures.

        Broadcasting:
            Batch dimensions of ``state``, `measure``, ``projection``, ``measurement_matrix`` and ``measurement_noise``
            must be broadcastable.
            It supports multiple states, measures and models as long as it broadcasts correctly.

        Example:
        ```python
            # Update each state with each measure: states are not aligned with measures
            state = GaussianState(torch.randn(50, 5, 1), covariance)  # 50 states
            measure = torch.randn(20, 1, 3, 1)  # 20 measures

            new_state = kf.update(state, measure)
            new_state.mean  # Shape: (20, 50, 5, 1)  # Update for each measure and each state
            new_state.covariance  # Shape: (50, 5, 5)  # WARNING: The cov does not depend on the measure
        ```

        Args:
            state (GaussianState): Current state estimation, typically the results of `predict`.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor): Measure of the state `z_k` (column vector).
                Shape: ``(..., dim_z, 1)``
            method (CovarianceUpdateMethod | str | None): Posterior covariance formula.
                Default: None (The filter's `covariance_update`)
            projection (GaussianState | None): Optional precomputed projection from `project`.
            measurement_matrix (torch.Tensor | None): Optional override for registered projection matrix ``H``.
                Shape: ``(..., dim_z, dim_x)``
            measurement_noise (torch.Tensor | None): Optional override for registered projection noise ``R``.
                Shape: ``(..., dim_z, dim_z)``

        Returns:
            GaussianState: Updated posterior state.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        Raises:
            SingularMatrixError: If the innovation covariance ``S`` is not positive definite.

        """
        method = self.covariance_update if method is None else CovarianceUpdateMethod(method)
        if measurement_matrix is None:
            measurement_matrix = self.observation_model.measurement_matrix
        if measurement_noise is None:
            measurement_noise = self.observation_model.measurement_noise
        if projection is None:
            projection = self.project(state, measurement_matrix=measurement_matrix, measurement_noise=measurement_noise)

        self._check_state(state, measurement_matrix.shape[-1])
        if measure.shape[-2:] != projection.mean.shape[-2:]:
            raise DimensionMismatchError(
                f"Expected a measure of shape (..., {projection.mean.shape[-2]}, 1). Found {tuple(measure.shape)}"
            )

        residual = measure - projection.mean

        chol_decomposition, info = torch.linalg.cholesky_ex(projection.covariance)
        if info.any():
            raise SingularMatrixError("The innovation covariance S is not positive definite. Cannot compute the gain.")

        kalman_gain = torch.cholesky_solve(measurement_matrix @ state.covariance.mT, chol_decomposition).mT

        mean = state.mean + kalman_gain @ residual

        identity = torch.eye(state.covariance.shape[-1], dtype=state.covariance.dtype, device=state.covariance.device)
        factor = identity - kalman_gain @ measurement_matrix
        if method is CovarianceUpdateMethod.JOSEPH_FORM:
            covariance = factor @ state.covariance @ factor.mT + kalman_gain @ measurement_noise @ kalman_gain.mT
        else:
            covariance = factor @ state.covariance
            if method is CovarianceUpdateMethod.OPTIMAL_KALMAN_FORCED_SYMMETRIC:
                covariance = 0.5 * (covariance + covariance.mT)

        return GaussianState(mean, covariance)

    def _update_or_skip(
        self, state: GaussianState, measure: torch.Tensor, method: CovarianceUpdateMethod | str | None
    ) -> GaussianState:
        """Update the state, except for missing measures where the state is returned unchanged."""
        missing = self._missing(measure)

        if not missing.any():
            return self.update(state, measure, method)

        if missing.all():
            logger.debug("Missing measure: update skipped")
            return state

        if logger.isEnabledFor(logging.DEBUG):  # Avoid a device sync otherwise
            logger.debug(
                "%d missing measures out of %d: their update is skipped", missing.sum().item(), missing.numel()
            )

        # Update everything with a dummy measure, then keep the state where the measure is missing
        updated = self.update(state, torch.where(missing[..., None, None], torch.zeros_like(measure), measure), method)
        mask = missing[..., None, None]
        return GaussianState(
            torch.where(mask, state.mean, updated.mean),
            torch.where(mask, state.covariance, updated.covariance),
        )

    def step_with_options(
        self, state: GaussianState, measure: torch.Tensor, method: CovarianceUpdateMethod | str
    ) -> GaussianState:
        """Run a full filtering step: predict, then update with the measure.

        If all the components of the measure are NaN, the measure is missing: the update is
        skipped and the predicted state is returned (uncertainty grows instead of shrinking).
        With batched measures, this is decided independently for each measure.

        The result is exactly ``update(predict(state), measure, method)`` for valid measures.

        Args:
            state (GaussianState): Posterior state at time k-1.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measure (torch.Tensor): Measure at time k (possibly NaN).
                Shape: ``(..., dim_z, 1)``
            method (CovarianceUpdateMethod | str): Posterior covariance formula.

        Returns:
            GaussianState: Posterior state at time k.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``

        Raises:
            SingularMatrixError: If the innovation covariance is not positive definite.
            PartialObservationError: If a measure is only partially NaN.
            DimensionMismatchError: If the state or the measure has unexpected dimensions.
        """
        return self._update_or_skip(self.predict(state), measure, method)

    def step(self, state: GaussianState, measure: torch.Tensor) -> GaussianState:
        """Run `step_with_options` with the filter's default covariance update."""
        return self.step_with_options(state, measure, self.covariance_update)

    def _prepare(
        self, state: GaussianState, measures: torch.Tensor | Sequence[torch.Tensor]
    ) -> tuple[GaussianState, torch.Tensor | Sequence[torch.Tensor]]:
        if len(measures) == 0:
            raise EmptySequenceError("At least one measure is required.")

        # Convert state to the right dtype and device
        return state.to(self.dtype).to(self.device), measures

    def filter(
        self,
        state: GaussianState,
        measures: torch.Tensor | Sequence[torch.Tensor],
        method: CovarianceUpdateMethod | str | None = None,
        *,
        update_first=False,
        return_all=False,
    ) -> GaussianState:
        """Run the classic predict/update loop over a sequence of measures.

        This is a convenience method for common use cases. It assumes:
        - A fixed model over time (constant ``F, Q, H, R``).
        - Measurements are already aligned with the batch of states.
        - Measurements may contain NaNs: if all the components of a measure are NaN,
          the corresponding state is **not** updated at that timestep.

        For more complex filtering approaches, one should directly implements filtering with
        dedicated `predict` and `update` calls. (e.g., supporting time varying models; aligning
        measures with states).

        Args:
            state (GaussianState): Initial state, before seeing any of the measures.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measures (torch.Tensor | Sequence[torch.Tensor]): Sequence of measures over time.
                Shape: ``(T, ..., dim_z, 1)``
            method (CovarianceUpdateMethod | str | None): Posterior covariance formula.
                Default: None (The filter's `covariance_update`)
            update_first (bool): If True, skip the prediction step on the first timestep, such that the initial state
                corresponds to the prior at t=0.
                Default: False (the initial state is the posterior at t=-1, as in `step_with_options`)
            return_all (bool): If True, return the posterior state at every timestep as a single `GaussianState`
                with a leading time dimension.
                If False, it only returns the last posterior state.
                Default: False

        Returns:
            GaussianState: Either the last posterior state, or all the posterior states.
                Shape (mean): ``([T, ]..., dim_x, 1)``
                Shape (covariance): ``([T, ]..., dim_x, dim_x)``

        Raises:
            EmptySequenceError: If there is no measure.
        """
        state, measures = self._prepare(state, measures)
        method = self.covariance_update if method is None else method

        states: list[GaussianState] = []
        for t, measure in enumerate(measures):
            # Convert on the fly the measure to avoid to store them all in cuda memory
            measure = measure.to(self.dtype).to(self.device, non_blocking=True)  # noqa: PLW2901

            if t or not update_first:
                state = self.step_with_options(state, measure, method)
            else:  # Do not predict on the first t
                state = self._update_or_skip(state, measure, method)

            if return_all:
                states.append(state)

        if return_all:
            return _stack(states)

        return state

    def forward(
        self,
        state: GaussianState,
        measures: torch.Tensor | Sequence[torch.Tensor],
        method: CovarianceUpdateMethod | str | None = None,
    ) -> ForwardPass:
        """Run the filtering loop and keep both predicted and filtered states.

        Each step is the same as `step_with_options`: the filtered states are the ones
        `filter(..., return_all=True)` would return.

        Args:
            state (GaussianState): Initial state (posterior at t=-1).
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measures (torch.Tensor | Sequence[torch.Tensor]): Sequence of measures over time.
                Shape: ``(T, ..., dim_z, 1)``
            method (CovarianceUpdateMethod | str | None): Posterior covariance formula.
                Default: None (The filter's `covariance_update`)

        Returns:
            ForwardPass: Predicted and filtered states over time.

        Raises:
            EmptySequenceError: If there is no measure.
        """
        state, measures = self._prepare(state, measures)
        method = self.covariance_update if method is None else method

        predicted: list[GaussianState] = []
        filtered: list[GaussianState] = []
        for measure in measures:
            measure = measure.to(self.dtype).to(self.device, non_blocking=True)  # noqa: PLW2901

            prior = self.predict(state)
            state = self._update_or_skip(prior, measure, method)

            predicted.append(prior)
            filtered.append(state)

        logger.debug("Forward pass done over %d time steps", len(filtered))

        return ForwardPass(_stack(predicted), _stack(filtered))

    def rts_smooth(self, filtered: GaussianState, predicted: GaussianState | None = None) -> GaussianState:
        """Apply Rauch-Tung-Striebel (RTS) smoothing to filtered states.

        Input is assumed to be the sequence of **filtered (posterior) states** over time,
        typically obtained with `filter(return_all=True)` or `forward`.

        The last smoothed state is the last filtered state. Then, going backward in time:

            C_k = P_k Fᵀ (P^-_{k+1})^{-1}
            mu^s_k = mu_k + C_k (mu^s_{k+1} - mu^-_{k+1})
            P^s_k = P_k + C_k (P^s_{k+1} - P^-_{k+1}) C_kᵀ

        where ``(mu^-_{k+1}, P^-_{k+1})`` is the prediction from time k. The gain is obtained with
        a cholesky solve against ``P^-_{k+1}``.

        Notes:
            - Uses a fixed model over time (constant ``F, Q``).
            - The time dimension is assumed to be the first dimension of ``mean`` and ``covariance``.
            - Inputs are not modified: a new state is returned.

        Args:
            filtered (GaussianState): Filtered states over time.
                Shape (mean): ``(T, ..., dim_x, 1)``
                Shape (covariance): ``(T, ..., dim_x, dim_x)``
            predicted (GaussianState | None): Predicted states over time (see `forward`).
                Only ``predicted[1:]`` is used. If None, they are recomputed from the filtered states.
                Shape (mean): ``(T, ..., dim_x, 1)``
                Shape (covariance): ``(T, ..., dim_x, dim_x)``

        Returns:
            GaussianState: All smoothed states in time, with the same shapes as the input.
                Shape (mean): ``(T, ..., dim_x, 1)``
                Shape (covariance): ``(T, ..., dim_x, dim_x)``

        Raises:
            EmptySequenceError: If there is no filtered state.
            SingularMatrixError: If a predicted covariance is not positive definite.
        """
        length = filtered.mean.shape[0]
        if length == 0:
            raise EmptySequenceError("At least one filtered state is required.")

        means = [filtered.mean[-1].clone()]
        covariances = [filtered.covariance[-1].clone()]

        # Iterate backward to update all states (except the last one which is already fine)
        for t in range(length - 2, -1, -1):
            current = filtered[t]
            prior = self.predict(current) if predicted is None else predicted[t + 1]

            chol_decomposition, info = torch.linalg.cholesky_ex(prior.covariance)
            if info.any():
                raise SingularMatrixError(f"The predicted covariance at time {t + 1} is not positive definite.")

            # C_k = P_k Fᵀ (P^-)^{-1}  <=>  P^- C_kᵀ = F P_kᵀ
            gain = torch.cholesky_solve(self.process_matrix @ current.covariance.mT, chol_decomposition).mT

            means.append(current.mean + gain @ (means[-1] - prior.mean))
            covariances.append(current.covariance + gain @ (covariances[-1] - prior.covariance) @ gain.mT)

        logger.debug("Backward pass done over %d time steps", length)

        return GaussianState(
            torch.stack(torch.broadcast_tensors(*means[::-1])),
            torch.stack(torch.broadcast_tensors(*covariances[::-1])),
        )

    def smooth(
        self,
        state: GaussianState,
        measures: torch.Tensor | Sequence[torch.Tensor],
        method: CovarianceUpdateMethod | str | None = None,
    ) -> GaussianState:
        """Estimate the states at all timesteps given all the measures (RTS smoother).

        It runs `forward`, then `rts_smooth` on the predicted and filtered states.
        Missing measures (all NaN) are supported: the states at these times are reconstructed
        from the neighboring measures (with a larger uncertainty).

        Args:
            state (GaussianState): Initial state (posterior at t=-1).
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            measures (torch.Tensor | Sequence[torch.Tensor]): Sequence of measures over time.
                Shape: ``(T, ..., dim_z, 1)``
            method (CovarianceUpdateMethod | str | None): Posterior covariance formula of the forward pass.
                Default: None (The filter's `covariance_update`)

        Returns:
            GaussianState: Smoothed states over time.
                Shape (mean): ``(T, ..., dim_x, 1)``
                Shape (covariance): ``(T, ..., dim_x, dim_x)``

        Raises:
            EmptySequenceError: If there is no measure.
            SingularMatrixError: If a covariance is not positive definite.
        """
        forward = self.forward(state, measures, method)
        return self.rts_smooth(forward.filtered, forward.predicted)

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        header = (
            f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim}, "
            f"Covariance update: {self.covariance_update.value})"
        )

        process = _printing.format_pair("Process", "F", self.process_matrix, "Q", self.process_noise, linewidth=80)
        measurement = _printing.format_pair(
            "Measurement", "H", self.measurement_matrix, "R", self.measurement_noise, linewidth=100
        )

        n_char = max(len(line) for line in (process + "\n" + measurement).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, process, measurement])
