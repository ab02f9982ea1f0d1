"""Test mathematical concepts about KF."""

from __future__ import annotations

import pytest
import torch

from torch_rts import CovarianceUpdateMethod, GaussianState, KalmanFilter, ObservationModel, TransitionModel
from torch_rts.ckf import constant_kalman_filter


def _spd_matrix(dim: int, batch: tuple[int, ...] = ()) -> torch.Tensor:
    # Construct a symmetric positive definite covariance.
    cov = torch.randn(*batch, dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 1e-2 * torch.eye(dim, dtype=torch.float64)


def random_kf(dim_x: int, dim_z: int, process_matrix: torch.Tensor | None = None) -> KalmanFilter:
    if process_matrix is None:
        process_matrix = torch.randn(dim_x, dim_x, dtype=torch.float64)
    return KalmanFilter(
        TransitionModel(process_matrix, _spd_matrix(dim_x)),
        ObservationModel(torch.randn(dim_z, dim_x, dtype=torch.float64), _spd_matrix(dim_z)),
    )


def _reference_filter(kf: KalmanFilter, state: GaussianState, measures: torch.Tensor) -> torch.Tensor:
    """Textbook Kalman filter with explicit inverses, returns the filtered means."""
    process_matrix, process_noise = kf.process_matrix, kf.process_noise
    measurement_matrix, measurement_noise = kf.measurement_matrix, kf.measurement_noise
    identity = torch.eye(kf.state_dim, dtype=torch.float64)

    mean, covariance = state.mean, state.covariance
    means = []
    for measure in measures:
        mean = process_matrix @ mean
        covariance = process_matrix @ covariance @ process_matrix.T + process_noise

        innovation_covariance = measurement_matrix @ covariance @ measurement_matrix.T + measurement_noise
        gain = covariance @ measurement_matrix.T @ torch.linalg.inv(innovation_covariance)
        mean = mean + gain @ (measure - measurement_matrix @ mean)
        covariance = (identity - gain @ measurement_matrix) @ covariance

        means.append(mean)

    return torch.stack(means)


def test_predict_increase_uncertainty():
    dim_x, dim_z = 3, 1
    kf = random_kf(dim_x, dim_z, process_matrix=torch.eye(dim_x, dtype=torch.float64))
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))

    predicted = kf.predict(s)

    assert torch.linalg.det(predicted.covariance) > torch.linalg.det(s.covariance)

    predicted_2 = kf.predict(predicted)

    assert torch.linalg.det(predicted_2.covariance) > torch.linalg.det(predicted.covariance)

    projected = kf.project(predicted)
    projected_2 = kf.project(predicted_2)

    assert projected_2.covariance.item() > projected.covariance.item()


def test_predict_with_identity_and_no_noise_is_unchanged():
    dim_x, dim_z = 4, 2
    kf = KalmanFilter(
        TransitionModel(torch.eye(dim_x, dtype=torch.float64), torch.zeros(dim_x, dim_x, dtype=torch.float64)),
        ObservationModel(torch.randn(dim_z, dim_x, dtype=torch.float64), _spd_matrix(dim_z)),
    )
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))

    predicted = kf.predict(s)

    assert torch.equal(predicted.mean, s.mean)
    assert torch.equal(predicted.covariance, s.covariance)


def test_operations_do_not_modify_inputs():
    dim_x, dim_z = 3, 2
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))
    copy = s.clone()
    measures = torch.randn(5, dim_z, 1, dtype=torch.float64)
    measures[2] = torch.nan

    kf.step(s, measures[0])
    forward = kf.forward(s, measures)
    kf.rts_smooth(forward.filtered, forward.predicted)
    kf.smooth(s, measures)

    assert torch.equal(s.mean, copy.mean)
    assert torch.equal(s.covariance, copy.covariance)


def test_update_reduce_uncertainty():
    dim_x, dim_z = 2, 1
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))
    measure = torch.randn(dim_z, 1, dtype=torch.float64)

    updated = kf.update(s, measure)

    assert torch.linalg.det(updated.covariance) < torch.linalg.det(s.covariance)

    updated_2 = kf.update(updated, measure)

    assert torch.linalg.det(updated_2.covariance) < torch.linalg.det(updated.covariance)

    projected = kf.project(updated)
    projected_2 = kf.project(updated_2)

    assert projected_2.covariance.item() < projected.covariance.item()


def test_update_is_order_independent():
    dim_x, dim_z = 4, 2
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))
    measure = torch.randn(dim_z, 1, dtype=torch.float64)
    measure_2 = torch.randn(dim_z, 1, dtype=torch.float64)

    updated = kf.update(kf.update(s, measure), measure_2)
    updated_2 = kf.update(kf.update(s, measure_2), measure)

    assert torch.allclose(updated.mean, updated_2.mean)
    assert torch.allclose(updated.covariance, updated_2.covariance)


def test_several_predict_can_be_reduced_to_one():
    dim_x, dim_z = 3, 2
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))

    predicted = kf.predict(kf.predict(s))
    predicted_2 = kf.predict(
        s,
        process_matrix=kf.process_matrix @ kf.process_matrix,
        process_noise=kf.process_matrix @ kf.process_noise @ kf.process_matrix.mT + kf.process_noise,
    )

    assert torch.allclose(predicted.mean, predicted_2.mean)
    assert torch.allclose(predicted.covariance, predicted_2.covariance)


def test_filter_covariance_convergence():
    dim_x, dim_z = 2, 2
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))

    for _ in range(20):
        s = kf.step(s, torch.randn(dim_z, 1, dtype=torch.float64))

    covariance = s.covariance

    s = kf.step(s, torch.randn(dim_z, 1, dtype=torch.float64))

    assert torch.allclose(covariance, s.covariance)


def test_filter_mean_convergence_for_converged_measure():
    dim_x, dim_z = 6, 2
    kf = random_kf(dim_x, dim_z, process_matrix=torch.eye(dim_x, dtype=torch.float64))
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))

    # Always the same measure, and process is identity. It should converge
    measure = torch.randn(dim_z, 1, dtype=torch.float64)

    for _ in range(20):
        s = kf.step(s, measure)

    assert torch.allclose(kf.project(s).mean, measure)


@pytest.mark.parametrize("method", list(CovarianceUpdateMethod))
def test_update_methods_are_equivalent(method: CovarianceUpdateMethod):
    dim_x, dim_z = 3, 3
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))
    measure = torch.randn(dim_z, 1, dtype=torch.float64)

    updated = kf.update(s, measure, CovarianceUpdateMethod.OPTIMAL_KALMAN)
    updated_method = kf.update(s, measure, method)

    assert torch.allclose(updated.mean, updated_method.mean)
    assert torch.allclose(updated.covariance, updated_method.covariance)


def test_forced_symmetric_is_exactly_symmetric():
    dim_x, dim_z = 5, 2
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))

    updated = kf.update(s, torch.randn(dim_z, 1, dtype=torch.float64), "optimal_kalman_forced_symmetric")

    assert torch.equal(updated.covariance, updated.covariance.mT)


@pytest.mark.parametrize("method", list(CovarianceUpdateMethod))
def test_step_is_predict_then_update(method: CovarianceUpdateMethod):
    dim_x, dim_z = 4, 2
    kf = random_kf(dim_x, dim_z)
    s = GaussianState(torch.randn(dim_x, 1, dtype=torch.float64), _spd_matrix(dim_x))
    measure = torch.randn(dim_z, 1, dtype=torch.float64)

    stepped = kf.step_with_options(s, measure, method)
    expected = kf.update(kf.predict(s), measure, method)

    # Bit for bit
    assert torch.equal(stepped.mean, expected.mean)
    assert torch.equal(stepped.covariance, expected.covariance)


@pytest.mark.parametrize("method", list(CovarianceUpdateMethod))
def test_update_methods_match_reference_trajectory(cv_kf, initial_state, simulate, method):
    measures = simulate(100, 0.1)

    expected = _reference_filter(cv_kf, initial_state, measures)

    state = initial_state
    for t, measure in enumerate(measures):
        state = cv_kf.step_with_options(state, measure, method)
        torch.testing.assert_close(state.mean, expected[t], rtol=1e-8, atol=1e-12)

    # The batch `filter` follows the same path
    filtered = cv_kf.filter(initial_state, measures, method)
    assert torch.equal(filtered.mean, state.mean)
    assert torch.equal(filtered.covariance, state.covariance)


@pytest.mark.parametrize("method", list(CovarianceUpdateMethod))
def test_joseph_form_is_symmetric_and_positive(method):
    # Ill-conditioned problem: very precise measures and a large initial uncertainty
    kf = constant_kalman_filter(1e-6, 100.0, dt=0.01, dtype=torch.float64)
    state = GaussianState(torch.zeros(4, 1, dtype=torch.float64), 100.0 * torch.eye(4, dtype=torch.float64))
    measures = 0.1 * torch.randn(100, 2, 1, dtype=torch.float64)

    # Apply Joseph form on the inputs met along the trajectory of each method
    for measure in measures:
        predicted = kf.predict(state)

        joseph = kf.update(predicted, measure, CovarianceUpdateMethod.JOSEPH_FORM)
        assert joseph.is_symmetric(rtol=1e-10)
        assert joseph.is_positive_semidefinite(rtol=1e-10)

        state = kf.update(predicted, measure, method)


def test_joseph_form_holds_when_optimal_form_does_not():
    # The optimal form is only valid for the optimal gain. With a gain computed from a wrong
    # (too small) innovation covariance, it is no longer positive, while Joseph form still is.
    kf = KalmanFilter(
        TransitionModel(torch.eye(2, dtype=torch.float64), torch.zeros(2, 2, dtype=torch.float64)),
        ObservationModel(torch.tensor([[1.0, 0.0]], dtype=torch.float64), torch.ones(1, 1, dtype=torch.float64)),
    )
    s = GaussianState(torch.zeros(2, 1, dtype=torch.float64), torch.eye(2, dtype=torch.float64))
    measure = torch.ones(1, 1, dtype=torch.float64)
    projection = GaussianState(kf.project(s).mean, 0.1 * torch.ones(1, 1, dtype=torch.float64))  # Instead of 2.0

    optimal = kf.update(s, measure, CovarianceUpdateMethod.OPTIMAL_KALMAN, projection=projection)
    joseph = kf.update(s, measure, CovarianceUpdateMethod.JOSEPH_FORM, projection=projection)

    # K = [10, 0]ᵀ: (I - K H) P = diag(-9, 1)
    assert torch.allclose(optimal.covariance, torch.diag(torch.tensor([-9.0, 1.0], dtype=torch.float64)))
    assert not optimal.is_positive_semidefinite()

    # (I - K H) P (I - K H)ᵀ + K R Kᵀ = diag(81 + 100, 1)
    assert torch.allclose(joseph.covariance, torch.diag(torch.tensor([181.0, 1.0], dtype=torch.float64)))
    assert joseph.is_symmetric()
    assert joseph.is_positive_semidefinite()
