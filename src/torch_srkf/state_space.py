"""Linear Gaussian state-space model definitions.

The model follows the usual (Durbin & Koopman) notation:

    y_t       = Z_t α_t + ε_t,   ε_t ~ N(0, H)
    α_{t+1}   = T α_t + R η_t,   η_t ~ N(0, Q)

with ``n`` time points, observations of dimension ``p``, a state of dimension ``m``
and a disturbance of dimension ``r``.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import NamedTuple, overload

import torch

logger = logging.getLogger(__name__)


class DimensionError(ValueError):
    """Inputs are not conformable with the declared dimensions."""


class CovarianceError(ValueError):
    """A covariance matrix could not be factorized (not positive definite)."""


class Dimensions(NamedTuple):
    """Dimensions ``(n, p, m, r)`` of a state-space model."""

    n: int
    p: int
    m: int
    r: int


def _as_tensor(value) -> torch.Tensor:
    if isinstance(value, torch.Tensor):
        return value
    return torch.as_tensor(value, dtype=torch.float64)


@dataclasses.dataclass(frozen=True)
class StateSpaceModel:
    """Observations and system matrices of a linear Gaussian state-space model.

    Shapes are validated (and normalized) at construction. Any inconsistency raises
    a :class:`DimensionError` before a single filtering step is run.

    Attributes:
        observations (torch.Tensor): Observation series ``y``.
            Shape: ``(n, p)`` or ``(n, p, 1)``, stored as ``(n, p, 1)``.
        observation_matrix (torch.Tensor): Observation loading ``Z``, possibly time-varying.
            Shape: ``(p, m)`` or ``(n, p, m)``, stored as ``(n, p, m)``.
        transition_matrix (torch.Tensor): State transition ``T``.
            Shape: ``(m, m)``
        disturbance_matrix (torch.Tensor): State disturbance loading ``R``.
            Shape: ``(m, r)``
    """

    observations: torch.Tensor
    observation_matrix: torch.Tensor
    transition_matrix: torch.Tensor
    disturbance_matrix: torch.Tensor

    def __post_init__(self) -> None:
        observations = _as_tensor(self.observations)
        observation_matrix = _as_tensor(self.observation_matrix)
        transition_matrix = _as_tensor(self.transition_matrix)
        disturbance_matrix = _as_tensor(self.disturbance_matrix)

        if observations.ndim == 2:
            observations = observations[..., None]
        if observations.ndim != 3 or observations.shape[-1] != 1:
            raise DimensionError(f"Observations should have shape (n, p) or (n, p, 1). Found {observations.shape}")
        n, p = observations.shape[:2]
        if n == 0 or p == 0:
            raise DimensionError(f"Observations should not be empty. Found {observations.shape}")

        if transition_matrix.ndim != 2 or transition_matrix.shape[0] != transition_matrix.shape[1]:
            raise DimensionError(f"Transition matrix should be square (m, m). Found {transition_matrix.shape}")
        m = transition_matrix.shape[0]

        if disturbance_matrix.ndim != 2 or disturbance_matrix.shape[0] != m:
            raise DimensionError(f"Disturbance matrix should have shape ({m}, r). Found {disturbance_matrix.shape}")

        if observation_matrix.ndim == 2:
            observation_matrix = observation_matrix.expand(n, *observation_matrix.shape)
        if observation_matrix.shape != (n, p, m):
            raise DimensionError(
                f"Observation matrix should have shape ({p}, {m}) or ({n}, {p}, {m}). Found {observation_matrix.shape}"
            )

        # Frozen dataclass: normalized tensors are set through object.__setattr__
        object.__setattr__(self, "observations", observations)
        object.__setattr__(self, "observation_matrix", observation_matrix)
        object.__setattr__(self, "transition_matrix", transition_matrix)
        object.__setattr__(self, "disturbance_matrix", disturbance_matrix)

    @property
    def dims(self) -> Dimensions:
        """Dimensions ``(n, p, m, r)`` of the model."""
        n, p, m = self.observation_matrix.shape
        return Dimensions(n, p, m, self.disturbance_matrix.shape[-1])

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the model."""
        return self.transition_matrix.dtype

    @property
    def device(self) -> torch.device:
        """Device of the model."""
        return self.transition_matrix.device

    def __len__(self) -> int:
        return self.observations.shape[0]

    @overload
    def to(self, dtype: torch.dtype) -> StateSpaceModel: ...

    @overload
    def to(self, device: torch.device) -> StateSpaceModel: ...

    def to(self, fmt):
        """Convert the model to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the model to.

        Returns:
            StateSpaceModel: The model with the right format
        """
        return StateSpaceModel(
            self.observations.to(fmt),
            self.observation_matrix.to(fmt),
            self.transition_matrix.to(fmt),
            self.disturbance_matrix.to(fmt),
        )


@dataclasses.dataclass(frozen=True)
class StateSpaceCovariance:
    """Full (non-factored) noise covariances of a state-space model.

    Attributes:
        observation_noise (torch.Tensor): Observation noise covariance ``H``.
            Shape: ``(p, p)``
        disturbance_noise (torch.Tensor): State disturbance covariance ``Q``.
            Shape: ``(r, r)``
    """

    observation_noise: torch.Tensor
    disturbance_noise: torch.Tensor

    def __post_init__(self) -> None:
        object.__setattr__(self, "observation_noise", _as_tensor(self.observation_noise))
        object.__setattr__(self, "disturbance_noise", _as_tensor(self.disturbance_noise))

    def check(self, dims: Dimensions) -> None:
        """Raise a :class:`DimensionError` if the covariances do not match ``dims``."""
        if self.observation_noise.shape != (dims.p, dims.p):
            raise DimensionError(
                f"Observation noise should have shape ({dims.p}, {dims.p}). Found {self.observation_noise.shape}"
            )
        if self.disturbance_noise.shape != (dims.r, dims.r):
            raise DimensionError(
                f"Disturbance noise should have shape ({dims.r}, {dims.r}). Found {self.disturbance_noise.shape}"
            )

    @overload
    def to(self, dtype: torch.dtype) -> StateSpaceCovariance: ...

    @overload
    def to(self, device: torch.device) -> StateSpaceCovariance: ...

    def to(self, fmt):
        """Convert the covariances to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the covariances to.

        Returns:
            StateSpaceCovariance: The covariances with the right format
        """
        return StateSpaceCovariance(self.observation_noise.to(fmt), self.disturbance_noise.to(fmt))

    def cholesky(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Lower triangular square-root factors ``(sqrtH, sqrtQ)`` of ``H`` and ``Q``.

        Raises:
            CovarianceError: If ``H`` or ``Q`` is not positive definite.
        """
        factors = []
        for name, covariance in (("H", self.observation_noise), ("Q", self.disturbance_noise)):
            factor, info = torch.linalg.cholesky_ex(covariance)
            if info.item():
                raise CovarianceError(f"Cholesky factorization of {name} failed: not positive definite")
            factors.append(factor)

        logger.debug("Factorized H %s and Q %s", tuple(factors[0].shape), tuple(factors[1].shape))
        return factors[0], factors[1]
