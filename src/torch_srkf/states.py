"""Filtered and smoothed states in standard (full covariance) form."""

from __future__ import annotations

import dataclasses
from typing import overload

import torch


@dataclasses.dataclass(frozen=True)
class FilteredState:
    """Output of a forward Kalman pass, with full covariance matrices.

    All tensors carry a leading time dimension. The predicted state at time ``t`` is the
    one-step-ahead prediction ``α_t | y_0, ..., y_{t-1}``.

    Attributes:
        predicted_mean (torch.Tensor): Predicted state means ``a``.
            Shape: ``(n, m, 1)``
        innovation (torch.Tensor): Innovations ``v``.
            Shape: ``(n, p, 1)``
        predicted_covariance (torch.Tensor): Predicted state covariances ``P``.
            Shape: ``(n + 1, m, m)``
        innovation_covariance (torch.Tensor): Innovation covariances ``F``.
            Shape: ``(n, p, p)``
        kalman_gain (torch.Tensor): Kalman gains ``K = T P Zᵀ F⁻¹``.
            Shape: ``(n, m, p)``
        steady_state (bool): Whether the covariance recursion converged.
        t_steady (int): Step at which steady state was detected (``n`` if never).
    """

    predicted_mean: torch.Tensor
    innovation: torch.Tensor
    predicted_covariance: torch.Tensor
    innovation_covariance: torch.Tensor
    kalman_gain: torch.Tensor
    steady_state: bool
    t_steady: int

    def __len__(self) -> int:
        return self.predicted_mean.shape[0]

    @overload
    def to(self, dtype: torch.dtype) -> FilteredState: ...

    @overload
    def to(self, device: torch.device) -> FilteredState: ...

    def to(self, fmt):
        """Convert the filtered state to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            FilteredState: The filtered state with the right format
        """
        return FilteredState(
            self.predicted_mean.to(fmt),
            self.innovation.to(fmt),
            self.predicted_covariance.to(fmt),
            self.innovation_covariance.to(fmt),
            self.kalman_gain.to(fmt),
            self.steady_state,
            self.t_steady,
        )


@dataclasses.dataclass(frozen=True)
class SmoothedState:
    """Output of a backward smoothing pass: ``α_t | y_0, ..., y_{n-1} ~ N(mean_t, covariance_t)``.

    Attributes:
        mean (torch.Tensor): Smoothed state means ``α̂``.
            Shape: ``(n, m, 1)``
        covariance (torch.Tensor): Smoothed state covariances ``V``.
            Shape: ``(n, m, m)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor

    def __len__(self) -> int:
        return self.mean.shape[0]
