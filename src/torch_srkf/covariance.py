"""Covariance factor builder.

Maps a flat vector of free parameters ``psi`` (as searched by a maximum-likelihood optimizer)
to the noise covariances of a state-space model. ``H`` is parameterized through a lower
triangular factor ``sqrtH`` and ``Q`` through a block-diagonal factor ``sqrtQ`` made of
``r / p`` lower triangular blocks with the same pattern as ``sqrtH``. Both factors are filled
column by column over their lower triangle.

Only the parameter count is validated: positive-definiteness of the resulting covariances
is left to the caller.
"""

from __future__ import annotations

import enum
import logging

import torch

from .linalg import gram
from .state_space import DimensionError

logger = logging.getLogger(__name__)


class FilterVariant(enum.Enum):
    """Kalman recursion used to filter and smooth a model.

    SQUARE_ROOT propagates Cholesky-type factors of the covariances (guaranteed PSD).
    COVARIANCE propagates the covariances themselves (classic Kalman filter).
    """

    SQUARE_ROOT = "square_root"
    COVARIANCE = "covariance"


def n_triangular(dim: int) -> int:
    """Number of free entries of a ``(dim, dim)`` lower triangular matrix."""
    return dim * (dim + 1) // 2


def n_parameters(p: int, r: int) -> int:
    """Number of free parameters expected by :func:`statespace_covariance`."""
    return n_triangular(p) + (r // p) * n_triangular(p)


def lower_triangular(values: torch.Tensor, dim: int) -> torch.Tensor:
    """Fill a ``(dim, dim)`` lower triangular matrix column by column.

    Example:
        >>> lower_triangular(torch.tensor([1.0, 2.0, 3.0]), 2)
        tensor([[1., 0.],
                [2., 3.]])

    Args:
        values (torch.Tensor): Entries of the lower triangle, in column-major order.
            Shape: ``(dim * (dim + 1) / 2,)``
        dim (int): Dimension of the matrix.

    Returns:
        torch.Tensor: Lower triangular matrix.
            Shape: ``(dim, dim)``
    """
    # Upper triangle indices are ordered row by row: transposed, they run over the lower triangle column by column
    cols, rows = torch.triu_indices(dim, dim, device=values.device)
    matrix = values.new_zeros(dim, dim)
    matrix[rows, cols] = values
    return matrix


def statespace_covariance(
    psi: torch.Tensor, p: int, r: int, variant: FilterVariant = FilterVariant.SQUARE_ROOT
) -> tuple[torch.Tensor, torch.Tensor]:
    """Build the observation and disturbance covariances from free parameters.

    The first ``p(p+1)/2`` parameters fill ``sqrtH``, the next ``(r/p) p(p+1)/2`` fill the
    ``r/p`` diagonal blocks of ``sqrtQ`` (block after block).

    The construction only relies on differentiable tensor operations: gradients flow back to
    ``psi`` when it requires them.

    Args:
        psi (torch.Tensor): Free parameters.
            Shape: ``(p(p+1)/2 + (r/p) p(p+1)/2,)``
        p (int): Observation dimension.
        r (int): State disturbance dimension. Must be a multiple of ``p``.
        variant (FilterVariant): Filter that consumes the covariances.
            SQUARE_ROOT returns the factors ``(sqrtH, sqrtQ)``, COVARIANCE the full ``(H, Q)``.
            Default: SQUARE_ROOT

    Returns:
        torch.Tensor: ``sqrtH`` or ``H``.
            Shape: ``(p, p)``
        torch.Tensor: ``sqrtQ`` or ``Q``.
            Shape: ``(r, r)``

    Raises:
        DimensionError: If ``r`` is not a multiple of ``p`` or if ``psi`` has the wrong length.
    """
    if not isinstance(psi, torch.Tensor):
        psi = torch.as_tensor(psi, dtype=torch.float64)

    if p < 1 or r < 1 or r % p:
        raise DimensionError(f"Disturbance dimension r={r} should be a multiple of observation dimension p={p}")
    if psi.shape != (n_parameters(p, r),):
        raise DimensionError(f"Expected {n_parameters(p, r)} parameters for p={p}, r={r}. Found {tuple(psi.shape)}")

    size = n_triangular(p)
    sqrt_h = lower_triangular(psi[:size], p)
    sqrt_q = torch.block_diag(*(lower_triangular(psi[size * (k + 1) : size * (k + 2)], p) for k in range(r // p)))

    logger.debug("Building %s covariances (p=%d, r=%d)", variant, p, r)

    if variant is FilterVariant.SQUARE_ROOT:
        return sqrt_h, sqrt_q
    if variant is FilterVariant.COVARIANCE:
        return gram(sqrt_h), gram(sqrt_q)

    raise NotImplementedError(f"Unsupported filter variant: {variant}")
