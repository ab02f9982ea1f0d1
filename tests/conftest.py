import pytest
import torch

from torch_rts import GaussianState, KalmanFilter
from torch_rts.ckf import constant_kalman_filter

DT = 0.01


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")


@pytest.fixture
def cv_kf() -> KalmanFilter:
    """2D constant velocity tracker, state [x, y, vx, vy], only positions are measured."""
    return constant_kalman_filter(0.01, 100.0, dt=DT, dtype=torch.float64)


@pytest.fixture
def initial_state() -> GaussianState:
    return GaussianState(
        torch.tensor([0.0, 0.0, 10.0, -5.0], dtype=torch.float64)[:, None],
        0.1 * torch.eye(4, dtype=torch.float64),
    )


@pytest.fixture
def simulate():
    """Build noisy position measures of the true constant velocity trajectory starting from `initial_state`."""

    def _simulate(length: int, measurement_std: float) -> torch.Tensor:
        generator = torch.Generator().manual_seed(42)
        t = DT * torch.arange(1, length + 1, dtype=torch.float64)
        positions = torch.stack([10.0 * t, -5.0 * t], dim=-1)[..., None]  # (T, 2, 1)
        noise = torch.randn(positions.shape, generator=generator, dtype=torch.float64)
        return positions + measurement_std * noise

    return _simulate
