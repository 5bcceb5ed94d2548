"""Dense linear algebra helpers shared by the filters and smoothers."""

from __future__ import annotations

from collections.abc import Sequence

import torch


def gram(factor: torch.Tensor) -> torch.Tensor:
    """Reconstruct ``M Mᵀ`` from a (square-root) factor ``M``.

    Args:
        factor (torch.Tensor): Factor(s) to expand.
            Shape: ``(..., rows, cols)``

    Returns:
        torch.Tensor: Gram product(s).
            Shape: ``(..., rows, rows)``
    """
    return factor @ factor.mT


def gram_in_time(factors: Sequence[torch.Tensor]) -> torch.Tensor:
    """Stack a time-ordered sequence of factors and expand each of them with :func:`gram`.

    Args:
        factors (Sequence[torch.Tensor]): One factor per time step.
            Shape: ``(rows, cols)`` each

    Returns:
        torch.Tensor: Gram products stacked along a leading time dimension.
            Shape: ``(len(factors), rows, rows)``
    """
    return gram(torch.stack(tuple(factors)))


def lower_triangularize(stacked: torch.Tensor) -> torch.Tensor:
    """Compute ``U G`` for an orthogonal ``G`` such that ``U G`` is lower triangular.

    ``G`` is the orthogonal factor of the QR factorization ``Uᵀ = G Rf``, hence ``U G = Rfᵀ``.
    Only the leading ``(rows, rows)`` block of ``U G`` is returned, the remaining columns are zero.
    Columns are flipped so that the diagonal is non-negative (this keeps ``G`` orthogonal),
    which makes successive factors directly comparable.

    In particular ``U Uᵀ = (U G)(U G)ᵀ``: the returned block is a square-root factor of ``U Uᵀ``.

    Args:
        stacked (torch.Tensor): Wide matrix ``U``.
            Shape: ``(rows, cols)`` with ``cols >= rows``

    Returns:
        torch.Tensor: Lower triangular square-root factor of ``U Uᵀ``.
            Shape: ``(rows, rows)``
    """
    _, upper = torch.linalg.qr(stacked.mT, mode="reduced")
    diagonal = torch.diagonal(upper, dim1=-2, dim2=-1)
    sign = torch.where(diagonal < 0, -torch.ones_like(diagonal), torch.ones_like(diagonal))
    return upper.mT * sign[..., None, :]


def max_relative_change(new: torch.Tensor, old: torch.Tensor) -> float:
    """Largest elementwise relative change ``|(new - old) / new|``.

    Entries that did not change at all (including structural zeros of triangular factors)
    contribute 0. Other entries are divided by ``new`` as is: a near-zero entry of ``new``
    can blow up the relative change.

    Args:
        new (torch.Tensor): Most recent value.
        old (torch.Tensor): Previous value (same shape).

    Returns:
        float: Maximum absolute relative change.
    """
    change = new - old
    relative = torch.where(change == 0, torch.zeros_like(change), change / new)
    return relative.abs().max().item()


def is_steady(new: torch.Tensor, old: torch.Tensor, tol: float) -> bool:
    """Check whether a covariance (factor) recursion has converged.

    Returns:
        bool: True iff :func:`max_relative_change` is strictly less than ``tol``.
    """
    return max_relative_change(new, old) < tol
