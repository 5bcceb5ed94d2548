import pytest
import torch

from torch_srkf import StateSpaceCovariance, StateSpaceModel


def spd_matrix(dim: int) -> torch.Tensor:
    # Construct a well-conditioned symmetric positive definite covariance.
    cov = torch.randn(dim, dim, dtype=torch.float64)
    return cov @ cov.mT + 0.5 * torch.eye(dim, dtype=torch.float64)


@pytest.fixture(autouse=True)
def deterministic():
    torch.manual_seed(0)
    torch.cuda.manual_seed_all(0)
    torch.use_deterministic_algorithms(True)


def pytest_runtest_setup(item):
    if "cuda" in item.keywords and not torch.cuda.is_available():
        pytest.skip("CUDA not available")


@pytest.fixture
def local_level() -> tuple[StateSpaceModel, StateSpaceCovariance]:
    """Random walk observed with noise, H = 1 and Q = 0.5.

    Steady state: P = 1, F = 2, K = 0.5.
    """
    n = 50
    level = torch.cumsum(0.5**0.5 * torch.randn(n, dtype=torch.float64), dim=0)
    observations = (level + torch.randn(n, dtype=torch.float64))[:, None]

    model = StateSpaceModel(observations, [[1.0]], [[1.0]], [[1.0]])
    return model, StateSpaceCovariance([[1.0]], [[0.5]])


@pytest.fixture
def random_system() -> tuple[StateSpaceModel, StateSpaceCovariance]:
    """Stable multivariate system with n = 30, p = 2, m = 3, r = 2."""
    n, p, m, r = 30, 2, 3, 2
    transition = 0.8 * torch.linalg.qr(torch.randn(m, m, dtype=torch.float64))[0]

    model = StateSpaceModel(
        torch.randn(n, p, dtype=torch.float64),
        torch.randn(p, m, dtype=torch.float64),
        transition,
        torch.randn(m, r, dtype=torch.float64),
    )
    return model, StateSpaceCovariance(spd_matrix(p), spd_matrix(r))


@pytest.fixture
def time_varying_system(random_system) -> tuple[StateSpaceModel, StateSpaceCovariance]:
    """Same system as `random_system` with a different observation matrix at each step."""
    model, covariance = random_system
    n, p, m, _ = model.dims

    model = StateSpaceModel(
        model.observations,
        torch.randn(n, p, m, dtype=torch.float64),
        model.transition_matrix,
        model.disturbance_matrix,
    )
    return model, covariance
