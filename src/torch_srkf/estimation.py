"""Entry points used by parameter estimation and post-estimation analysis.

`log_likelihood_inputs` is the inner function of a maximum-likelihood search: it maps
free covariance parameters to the innovations and their covariances, from which the
caller computes the Gaussian log-likelihood. `kalman_filter_and_smoother` runs a full
forward/backward pass for a model with known covariances and returns the assembled states.
"""

from __future__ import annotations

import logging

import torch

from .covariance import FilterVariant, statespace_covariance
from .kalman_filter import KalmanFilter
from .sqrt_kalman import DEFAULT_TOL, sqrt_kalman_filter, sqrt_smoother
from .state_space import StateSpaceCovariance, StateSpaceModel
from .states import FilteredState, SmoothedState

logger = logging.getLogger(__name__)


def log_likelihood_inputs(
    psi: torch.Tensor,
    model: StateSpaceModel,
    variant: FilterVariant = FilterVariant.SQUARE_ROOT,
    *,
    tol=DEFAULT_TOL,
) -> tuple[torch.Tensor, torch.Tensor]:
    """Innovations and innovation covariances of the model for the parameters ``psi``.

    Args:
        psi (torch.Tensor): Free covariance parameters (see `statespace_covariance`).
        model (StateSpaceModel): Observations and system matrices.
        variant (FilterVariant): Filter to run.
            Default: SQUARE_ROOT
        tol (float): Steady-state tolerance of the filter.
            Default: 1e-5

    Returns:
        torch.Tensor: Innovations ``v``.
            Shape: ``(n, p, 1)``
        torch.Tensor: Innovation covariances ``F``.
            Shape: ``(n, p, p)``
    """
    dims = model.dims
    noise, disturbance = statespace_covariance(psi, dims.p, dims.r, variant)
    noise = noise.to(model.device, model.dtype)
    disturbance = disturbance.to(model.device, model.dtype)

    if variant is FilterVariant.SQUARE_ROOT:
        filtered = sqrt_kalman_filter(model, noise, disturbance, tol=tol).assemble()
    elif variant is FilterVariant.COVARIANCE:
        filtered = KalmanFilter(model, noise, disturbance, joseph_update=True).filter(tol=tol)
    else:
        raise NotImplementedError(f"Unsupported filter variant: {variant}")

    return filtered.innovation, filtered.innovation_covariance


def kalman_filter_and_smoother(
    model: StateSpaceModel,
    covariance: StateSpaceCovariance,
    variant: FilterVariant = FilterVariant.SQUARE_ROOT,
    *,
    tol=DEFAULT_TOL,
) -> tuple[FilteredState, SmoothedState]:
    """Filter and smooth the model, and assemble full covariance outputs.

    Args:
        model (StateSpaceModel): Observations and system matrices.
        covariance (StateSpaceCovariance): Observation and disturbance covariances ``H`` and ``Q``.
        variant (FilterVariant): Filter and smoother to run.
            Default: SQUARE_ROOT
        tol (float): Steady-state tolerance of the filter.
            Default: 1e-5

    Returns:
        FilteredState: Predicted states, innovations and gains.
        SmoothedState: Smoothed states.

    Raises:
        DimensionError: If the covariances do not match the model dimensions.
        CovarianceError: If ``H`` or ``Q`` is not positive definite (SQUARE_ROOT only).
    """
    covariance.check(model.dims)
    covariance = covariance.to(model.dtype).to(model.device)
    logger.debug("Filtering and smoothing %d steps with the %s variant", len(model), variant)

    if variant is FilterVariant.SQUARE_ROOT:
        sqrt_h, sqrt_q = covariance.cholesky()
        sqrt_filter = sqrt_kalman_filter(model, sqrt_h, sqrt_q, tol=tol)
        return sqrt_filter.assemble(), sqrt_smoother(model, sqrt_filter).assemble()

    if variant is FilterVariant.COVARIANCE:
        kalman_filter = KalmanFilter.from_covariance(model, covariance, joseph_update=True)
        filtered = kalman_filter.filter(tol=tol)
        return filtered, kalman_filter.rts_smooth(filtered)

    raise NotImplementedError(f"Unsupported filter variant: {variant}")
