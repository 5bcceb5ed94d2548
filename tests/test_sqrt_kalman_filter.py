import pytest
import torch

from torch_srkf import DimensionError, KalmanFilter, StateSpaceModel, sqrt_kalman_filter
from torch_srkf.linalg import gram


def _is_lower_triangular(matrix: torch.Tensor) -> bool:
    return torch.equal(torch.triu(matrix, diagonal=1), torch.zeros_like(matrix))


def test_filter_shapes(random_system):
    model, covariance = random_system
    n, p, m, _ = model.dims

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky())
    filtered = sqrt_filter.assemble()

    assert len(sqrt_filter) == n
    assert len(sqrt_filter.sqrt_predicted_covariance) == n + 1
    assert len(filtered) == n
    assert filtered.predicted_mean.shape == (n, m, 1)
    assert filtered.innovation.shape == (n, p, 1)
    assert filtered.predicted_covariance.shape == (n + 1, m, m)
    assert filtered.innovation_covariance.shape == (n, p, p)
    assert filtered.kalman_gain.shape == (n, m, p)


def test_filter_initialization(random_system):
    model, covariance = random_system
    m = model.dims.m

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky(), diffuse_scale=10.0)

    assert torch.equal(sqrt_filter.predicted_mean[0], torch.zeros(m, 1, dtype=torch.float64))
    assert torch.equal(sqrt_filter.sqrt_predicted_covariance[0], 10.0 * torch.eye(m, dtype=torch.float64))
    assert torch.equal(sqrt_filter.innovation[0], model.observations[0])


def test_filter_factors_are_triangular_and_psd(random_system):
    model, covariance = random_system

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky(), tol=0.0, diffuse_scale=10.0)

    for factor in sqrt_filter.sqrt_predicted_covariance + sqrt_filter.sqrt_innovation_covariance:
        assert _is_lower_triangular(factor)
        assert (torch.diagonal(factor) >= 0).all()
        assert torch.linalg.eigvalsh(gram(factor)).min() > -1e-10


def test_filter_mean_recursion(random_system):
    model, covariance = random_system
    transition = model.transition_matrix

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky())

    for t in range(len(model) - 1):
        innovation = model.observations[t] - model.observation_matrix[t] @ sqrt_filter.predicted_mean[t]
        assert torch.allclose(sqrt_filter.innovation[t], innovation)
        assert torch.allclose(
            sqrt_filter.predicted_mean[t + 1],
            transition @ sqrt_filter.predicted_mean[t] + sqrt_filter.kalman_gain[t] @ innovation,
        )


def test_filter_gain_from_cross_factor(random_system):
    model, covariance = random_system

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky(), diffuse_scale=10.0)

    for t in range(len(model)):
        sqrt_f = sqrt_filter.sqrt_innovation_covariance[t]
        assert torch.allclose(sqrt_filter.kalman_gain[t] @ sqrt_f, sqrt_filter.cross_factor[t])


@pytest.mark.parametrize("system", ["random_system", "time_varying_system"])
def test_filter_matches_covariance_form(system, request):
    model, covariance = request.getfixturevalue(system)

    filtered = sqrt_kalman_filter(model, *covariance.cholesky(), tol=0.0, diffuse_scale=10.0).assemble()
    expected = KalmanFilter.from_covariance(model, covariance, joseph_update=True).filter(tol=0.0, diffuse_scale=10.0)

    assert not filtered.steady_state
    assert filtered.t_steady == len(model)
    assert torch.allclose(filtered.predicted_mean, expected.predicted_mean, rtol=1e-8, atol=1e-10)
    assert torch.allclose(filtered.innovation, expected.innovation, rtol=1e-8, atol=1e-10)
    assert torch.allclose(filtered.predicted_covariance, expected.predicted_covariance, rtol=1e-8, atol=1e-10)
    assert torch.allclose(filtered.innovation_covariance, expected.innovation_covariance, rtol=1e-8, atol=1e-10)
    assert torch.allclose(filtered.kalman_gain, expected.kalman_gain, rtol=1e-8, atol=1e-10)


def test_filter_matches_covariance_form_with_diffuse_prior(local_level):
    model, covariance = local_level

    filtered = sqrt_kalman_filter(model, *covariance.cholesky(), tol=0.0).assemble()
    expected = KalmanFilter.from_covariance(model, covariance, joseph_update=True).filter(tol=0.0)

    assert torch.allclose(filtered.predicted_mean, expected.predicted_mean, rtol=1e-8, atol=1e-8)
    assert torch.allclose(filtered.predicted_covariance, expected.predicted_covariance, rtol=1e-8, atol=1e-8)
    assert torch.allclose(filtered.innovation_covariance, expected.innovation_covariance, rtol=1e-8, atol=1e-8)
    assert torch.allclose(filtered.kalman_gain, expected.kalman_gain, rtol=1e-8, atol=1e-8)


def test_local_level_steady_state(local_level):
    model, covariance = local_level
    n = len(model)

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky())
    filtered = sqrt_filter.assemble()
    t_steady = sqrt_filter.t_steady

    assert sqrt_filter.steady_state
    assert 0 < t_steady < n - 1

    # Closed form steady state for H = 1, Q = 0.5
    assert abs(filtered.kalman_gain[t_steady].item() - 0.5) < 1e-4
    assert abs(filtered.innovation_covariance[t_steady].item() - 2.0) < 1e-4
    assert abs(filtered.predicted_covariance[n].item() - 1.0) < 1e-4

    # Before the steady state, the prior is still diffuse
    assert filtered.predicted_covariance[0].item() == pytest.approx(1e12)
    assert filtered.kalman_gain[0].item() == pytest.approx(1.0)


def test_frozen_after_steady_state(local_level):
    model, covariance = local_level
    n = len(model)

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky())
    t_steady = sqrt_filter.t_steady

    for t in range(t_steady, n):
        assert sqrt_filter.sqrt_innovation_covariance[t] is sqrt_filter.sqrt_innovation_covariance[t_steady]
        assert sqrt_filter.kalman_gain[t] is sqrt_filter.kalman_gain[t_steady]
        assert sqrt_filter.cross_factor[t] is sqrt_filter.cross_factor[t_steady]

    for t in range(t_steady + 1, n + 1):
        assert sqrt_filter.sqrt_predicted_covariance[t] is sqrt_filter.sqrt_predicted_covariance[t_steady + 1]

    # Means are still propagated
    assert not torch.equal(sqrt_filter.predicted_mean[n - 1], sqrt_filter.predicted_mean[n - 2])


def test_null_tolerance_disables_steady_state(local_level):
    model, covariance = local_level

    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky(), tol=0.0)

    assert not sqrt_filter.steady_state
    assert sqrt_filter.t_steady == len(model)


def test_steady_state_at_first_step(local_level):
    model, covariance = local_level

    # The prior already is the steady state: P = 1
    sqrt_filter = sqrt_kalman_filter(model, *covariance.cholesky(), diffuse_scale=1.0)

    assert sqrt_filter.steady_state
    assert sqrt_filter.t_steady == 0
    assert torch.allclose(sqrt_filter.kalman_gain[-1], torch.tensor([[0.5]], dtype=torch.float64))


def test_singular_innovation_covariance():
    # Nothing is observed and the observation noise is null: F = 0
    observations = torch.randn(5, 1, dtype=torch.float64)
    model = StateSpaceModel(observations, torch.zeros(1, 1), torch.eye(1), torch.eye(1)).to(torch.float64)
    sqrt_h = torch.zeros(1, 1, dtype=torch.float64)
    sqrt_q = torch.ones(1, 1, dtype=torch.float64)

    sqrt_filter = sqrt_kalman_filter(model, sqrt_h, sqrt_q, tol=0.0)
    filtered = sqrt_filter.assemble()

    assert torch.equal(filtered.innovation_covariance, torch.zeros(5, 1, 1, dtype=torch.float64))
    assert torch.equal(filtered.kalman_gain, torch.zeros(5, 1, 1, dtype=torch.float64))
    assert torch.equal(filtered.innovation, observations[..., None])
    assert torch.isfinite(filtered.predicted_covariance).all()


def test_filter_invalid_factors(random_system):
    model, covariance = random_system
    sqrt_h, sqrt_q = covariance.cholesky()

    with pytest.raises(DimensionError):
        sqrt_kalman_filter(model, sqrt_q[:1, :1], sqrt_q)

    with pytest.raises(DimensionError):
        sqrt_kalman_filter(model, sqrt_h, torch.eye(3, dtype=torch.float64))
