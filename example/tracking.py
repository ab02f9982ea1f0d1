"""Example tracking a 2D target with a constant velocity model, then smoothing the whole track"""

import argparse
import logging
from typing import Tuple

import matplotlib.pyplot as plt
import torch

import torch_rts
from torch_rts.ckf import constant_kalman_filter


def simulate_trajectory(
    n: int, dt: float, measurement_std: float, noise_intensity: float
) -> Tuple[torch.Tensor, torch.Tensor]:
    """Create a 2D trajectory following a (noisy) constant velocity model and its position measures

    Returns:
        torch.Tensor: True positions
            Shape: (T, 2, 1)
        torch.Tensor: Measured positions
            Shape: (T, 2, 1)
    """
    position = torch.zeros(2, 1, dtype=torch.float64)
    velocity = torch.tensor([[10.0], [-5.0]], dtype=torch.float64)
    traj = torch.empty(n, 2, 1, dtype=torch.float64)
    for t in range(n):
        velocity = velocity + (noise_intensity * dt) ** 0.5 * torch.randn_like(velocity)
        position = position + velocity * dt
        traj[t] = position
    return traj, traj + measurement_std * torch.randn_like(traj)


def main(n: int, dt: float, measurement_std: float, noise_intensity: float, gap: int):
    kf = constant_kalman_filter(measurement_std**2, noise_intensity, dt=dt, dtype=torch.float64)
    print(kf)

    traj, measures = simulate_trajectory(n, dt, measurement_std, noise_intensity)
    if gap:
        measures[n // 2 : n // 2 + gap] = torch.nan  # The target is not seen in the middle of the track

    # Known start, unknown velocity
    initial_state = torch_rts.GaussianState(
        torch.zeros(kf.state_dim, 1, dtype=torch.float64),
        torch.diag(torch.tensor([1e-4, 1e-4, 100.0, 100.0], dtype=torch.float64)),
    )

    # Online tracking: one step for each new measure
    state = initial_state
    online = []
    for measure in measures:
        state = kf.step(state, measure)
        online.append(state.mean)

    # Offline: the whole track at once
    forward = kf.forward(initial_state, measures)
    smoothed = kf.rts_smooth(forward.filtered, forward.predicted)

    assert torch.allclose(torch.stack(online), forward.filtered.mean)

    print(f"Filtering MSE: {(forward.filtered.mean[:, :2] - traj).pow(2).mean()}")
    print(f"Smoothing MSE: {(smoothed.mean[:, :2] - traj).pow(2).mean()}")

    plt.figure(figsize=(24, 16))
    plt.plot(traj[:, 0, 0], traj[:, 1, 0], color="k", label="True trajectory")
    plt.plot(measures[:, 0, 0], measures[:, 1, 0], "o", color="r", markersize=2.0, label="Observed trajectory")
    plt.plot(forward.filtered.mean[:, 0, 0], forward.filtered.mean[:, 1, 0], color="y", label="Filtered trajectory")
    plt.plot(smoothed.mean[:, 0, 0], smoothed.mean[:, 1, 0], color="g", label="Smoothed trajectory")
    plt.xlabel("x")
    plt.ylabel("y")
    plt.legend(loc="upper right")

    # Uncertainty on x over time
    time = dt * torch.arange(n)
    plt.figure(figsize=(24, 16))
    plt.plot(time, traj[:, 0, 0], color="k", label="True x")
    for states, color, label in ((forward.filtered, "y", "Filtering"), (smoothed, "g", "Smoothing")):
        mini = states.mean[:, 0, 0] - 3 * states.covariance[:, 0, 0].sqrt()
        maxi = states.mean[:, 0, 0] + 3 * states.covariance[:, 0, 0].sqrt()
        plt.plot(time, states.mean[:, 0, 0], color=color, label=f"Estimated x ({label})")
        plt.fill_between(time, mini, maxi, color=color, alpha=0.5)
    plt.xlabel("t")
    plt.ylabel("x")
    plt.legend(loc="upper right")

    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Kalman filter example, tracking then smoothing a 2D trajectory")
    parser.add_argument("--n", default=200, type=int, help="Number of measures")
    parser.add_argument("--dt", default=0.01, type=float, help="Time between two measures")
    parser.add_argument("--noise", default=0.1, type=float, help="Observation noise (std)")
    parser.add_argument("--intensity", default=100.0, type=float, help="Process noise intensity")
    parser.add_argument("--gap", default=20, type=int, help="Number of missing measures in the middle")
    parser.add_argument("--debug", action="store_true", help="Log each skipped update")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.WARNING)

    main(args.n, args.dt, args.noise, args.intensity, args.gap)
