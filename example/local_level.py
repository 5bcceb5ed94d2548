"""Example filtering/smoothing a local level model, with maximum-likelihood estimation of its noises"""

import argparse
import logging
import math

import matplotlib.pyplot as plt
import torch

import torch_srkf


def generate_data(n: int, level_std: float, noise: float) -> tuple[torch.Tensor, torch.Tensor]:
    """Generate a random walk observed with noise:

    x(t+1) = x(t) + level_std * N(0, 1)
    y(t) = x(t) + noise * N(0, 1)

    Args:
        n (int): Size of the sequence to generate
        level_std (float): Standard deviation of the level increments
        noise (float): Gaussian noise standard deviation

    Returns:
        torch.Tensor: x(t) state of the system
            Shape: (n, 1)
        torch.Tensor: y(t) measure for each state
            Shape: (n, 1)
    """
    x = torch.cumsum(level_std * torch.randn(n, 1, dtype=torch.float64), dim=0)
    return x, x + noise * torch.randn_like(x)


def negative_log_likelihood(psi: torch.Tensor, model: torch_srkf.StateSpaceModel) -> torch.Tensor:
    """Gaussian negative log-likelihood, ignoring the first (diffuse) innovation"""
    innovations, innovation_covariances = torch_srkf.log_likelihood_inputs(psi, model)
    innovations, innovation_covariances = innovations[1:], innovation_covariances[1:]

    return 0.5 * (
        innovations.shape[0] * innovations.shape[1] * math.log(2 * math.pi)
        + torch.logdet(innovation_covariances).sum()
        + (innovations.mT @ torch.linalg.solve(innovation_covariances, innovations)).sum()
    )


def fit(model: torch_srkf.StateSpaceModel, steps: int) -> torch.Tensor:
    """Estimate psi = (sqrt(H), sqrt(Q)) by maximum likelihood"""
    psi = torch.ones(torch_srkf.n_parameters(1, 1), dtype=torch.float64, requires_grad=True)
    optimizer = torch.optim.LBFGS([psi], max_iter=steps, line_search_fn="strong_wolfe")

    def closure():
        optimizer.zero_grad()
        loss = negative_log_likelihood(psi, model)
        loss.backward()
        return loss

    optimizer.step(closure)
    return psi.detach().abs()


def main(n: int, level_std: float, noise: float, steps: int):
    print("Parameters")
    print(f"Level std: {level_std}")
    print(f"Measurement noise: {noise}")
    print("Data: y(t) = x(t) + measurement_noise * N(0, 1), with x a random walk")
    print(f"Using {n} points")

    x, y = generate_data(n, level_std, noise)
    model = torch_srkf.StateSpaceModel(y, [[1.0]], [[1.0]], [[1.0]])

    psi = fit(model, steps)
    print(f"Estimated measurement noise: {psi[0].item()}")
    print(f"Estimated level std: {psi[1].item()}")

    noise_covariance, level_covariance = torch_srkf.statespace_covariance(
        psi, 1, 1, torch_srkf.FilterVariant.COVARIANCE
    )
    covariance = torch_srkf.StateSpaceCovariance(noise_covariance, level_covariance)
    filtered, smoothed = torch_srkf.kalman_filter_and_smoother(model, covariance)

    print(f"Steady state reached at t={filtered.t_steady} (gain: {filtered.kalman_gain[-1].item():.4f})")
    print(f"Prediction MSE: {(filtered.predicted_mean[1:, :, 0] - x[1:]).pow(2).mean()}")
    print(f"Smoothing MSE: {(smoothed.mean[:, :, 0] - x).pow(2).mean()}")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(x[:, 0], color="k", label="True level")
    plt.plot(range(1, n), filtered.predicted_mean[1:, 0, 0], color="y", label="Predicted level")
    plt.plot(smoothed.mean[:, 0, 0], color="g", label="Smoothed level")
    plt.plot(y[:, 0], "o", color="r", markersize=2.0, label="Observed level - y = x + noise * N(0, 1)")

    mini = filtered.predicted_mean[1:, 0, 0] - 3 * filtered.predicted_covariance[1:n, 0, 0].sqrt()
    maxi = filtered.predicted_mean[1:, 0, 0] + 3 * filtered.predicted_covariance[1:n, 0, 0].sqrt()
    plt.fill_between(range(1, n), mini, maxi, color="y", alpha=0.5)
    mini = smoothed.mean[:, 0, 0] - 3 * smoothed.covariance[:, 0, 0].clamp_min(0).sqrt()
    maxi = smoothed.mean[:, 0, 0] + 3 * smoothed.covariance[:, 0, 0].clamp_min(0).sqrt()
    plt.fill_between(range(n), mini, maxi, color="g", alpha=0.5)

    plt.xlabel("t")
    plt.ylabel("x")

    plt.legend(loc="upper right")
    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Square-root Kalman filter example, on a noisy random walk")
    parser.add_argument("--n", default=500, type=int, help="Number of points")
    parser.add_argument("--level", default=0.5, type=float, help="Standard deviation of the level increments")
    parser.add_argument("--noise", default=2.0, type=float, help="Observation noise")
    parser.add_argument("--steps", default=50, type=int, help="Maximum number of LBFGS iterations")
    parser.add_argument("--verbose", action="store_true", help="Log the filter internals")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    main(args.n, args.level, args.noise, args.steps)
