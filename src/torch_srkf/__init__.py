"""Torch-SRKF: Square-root Kalman filtering and smoothing for state-space models in PyTorch.

torch-srkf filters and smooths linear Gaussian state-space models

    y_t       = Z_t α_t + ε_t,   ε_t ~ N(0, H)
    α_{t+1}   = T α_t + R η_t,   η_t ~ N(0, Q)

by propagating square-root factors of the covariance matrices. Each step re-triangularizes
the stacked factors with a QR factorization, so reconstructed covariances stay symmetric
positive semi-definite even when the recursion starts from a very diffuse prior.

Key features
------------
- **Square-root filter**: big-kappa diffuse prior, steady-state detection and fixed-gain mode.
- **Square-root smoother**: fixed-interval backward pass, aware of the steady-state regime.
- **Estimation helpers**: covariance parameterization from free parameters, and the innovations
  ``(v, F)`` needed to evaluate the Gaussian log-likelihood.
- **Covariance-form variant**: classic Kalman filter and RTS smoother sharing the same conventions.

Numerical notes
---------------
The diffuse prior (``κ = 1e6``) squares to ``1e12`` in the covariances: use ``float64``.
Non-tensor inputs are converted to ``float64`` automatically.

Getting started
---------------
The core API consists of:
- :class:`~torch_srkf.StateSpaceModel` and :class:`~torch_srkf.StateSpaceCovariance` to describe the model.
- :func:`~torch_srkf.kalman_filter_and_smoother` to filter and smooth a model with known covariances.
- :func:`~torch_srkf.statespace_covariance` and :func:`~torch_srkf.log_likelihood_inputs` for
  maximum-likelihood estimation.

Notes on shapes
---------------
torch-srkf uses column vectors. States have shape ``(m, 1)``, observations ``(p, 1)``.
Filtered and smoothed outputs carry a leading time dimension.
"""

from .covariance import FilterVariant, n_parameters, statespace_covariance
from .estimation import kalman_filter_and_smoother, log_likelihood_inputs
from .kalman_filter import GaussianState, KalmanFilter
from .sqrt_kalman import (
    DEFAULT_TOL,
    DIFFUSE_SCALE,
    SquareRootFilter,
    SquareRootSmoother,
    sqrt_kalman_filter,
    sqrt_smoother,
)
from .state_space import CovarianceError, DimensionError, Dimensions, StateSpaceCovariance, StateSpaceModel
from .states import FilteredState, SmoothedState

__all__ = [
    "DEFAULT_TOL",
    "DIFFUSE_SCALE",
    "CovarianceError",
    "DimensionError",
    "Dimensions",
    "FilterVariant",
    "FilteredState",
    "GaussianState",
    "KalmanFilter",
    "SmoothedState",
    "SquareRootFilter",
    "SquareRootSmoother",
    "StateSpaceCovariance",
    "StateSpaceModel",
    "kalman_filter_and_smoother",
    "log_likelihood_inputs",
    "n_parameters",
    "sqrt_kalman_filter",
    "sqrt_smoother",
    "statespace_covariance",
]

__version__ = "0.1.0"
