from __future__ import annotations

import dataclasses
import logging
from typing import overload

import torch
import torch.linalg

from .linalg import is_steady, max_relative_change
from .sqrt_kalman import DEFAULT_TOL, DIFFUSE_SCALE
from .state_space import DimensionError, StateSpaceCovariance, StateSpaceModel
from .states import FilteredState, SmoothedState

logger = logging.getLogger(__name__)

# Note on numerics:
# This is the classic covariance form of the Kalman filter. With the big-kappa diffuse prior,
# the standard update P - K Z P suffers from cancellation on the first steps (P ~ κ²):
# use the Joseph form (joseph_update=True) in that case, or the square-root filter.


@dataclasses.dataclass
class GaussianState:
    """Gaussian state for Kalman filtering.

    This dataclass stores a multivariate Gaussian distribution:

        x ~ N(mean, covariance)

    Conventions:
    - State/measurement vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Leading dimensions ``...`` are treated as batch (or time) dimensions.

    In addition, an optional precision matrix (inverse covariance) can be stored.
    When present, it is re-used by `KalmanFilter.update` instead of inverting the covariance again.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(..., dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def __getitem__(self, idx) -> GaussianState:
        """Index/slice along leading dimensions.

        Args:
            idx (Any): Index/slice applied to the leading dimensions.

        Returns:
            GaussianState: Indexed GaussianState.
        """
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )


class KalmanFilter:
    """Covariance-form Kalman filter and RTS smoother for a :class:`StateSpaceModel`.

    It estimates the latent state of the linear Gaussian system:

        y_t       = Z_t α_t + ε_t,   ε_t ~ N(0, H)
        α_{t+1}   = T α_t + R η_t,   η_t ~ N(0, Q)

    by propagating the covariance matrices themselves. It follows the same conventions
    as :func:`~torch_srkf.sqrt_kalman.sqrt_kalman_filter` (diffuse prior, prediction-form gain,
    steady-state detection), so that both variants produce the same :class:`FilteredState`.

    Attributes:
        model (StateSpaceModel): Observations and system matrices.
        measurement_noise (torch.Tensor): Observation noise covariance ``H``.
            Shape: ``(p, p)``
        disturbance_noise (torch.Tensor): State disturbance covariance ``Q``.
            Shape: ``(r, r)``
        process_noise (torch.Tensor): Noise covariance in state space ``R Q Rᵀ``.
            Shape: ``(m, m)``
        joseph_update (bool): If True, use the Joseph form covariance update for improved numerical stability.
            Default: False
    """

    def __init__(
        self,
        model: StateSpaceModel,
        measurement_noise: torch.Tensor,
        disturbance_noise: torch.Tensor,
        *,
        joseph_update=False,
    ) -> None:
        StateSpaceCovariance(measurement_noise, disturbance_noise).check(model.dims)

        self.model = model
        self.measurement_noise = measurement_noise
        self.disturbance_noise = disturbance_noise
        self.process_noise = model.disturbance_matrix @ disturbance_noise @ model.disturbance_matrix.mT
        self.joseph_update = joseph_update

    @classmethod
    def from_covariance(
        cls, model: StateSpaceModel, covariance: StateSpaceCovariance, *, joseph_update=False
    ) -> KalmanFilter:
        """Build a filter from a :class:`StateSpaceCovariance`."""
        return cls(model, covariance.observation_noise, covariance.disturbance_noise, joseph_update=joseph_update)

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self.model.dims.m

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self.model.dims.p

    def predict(self, state: GaussianState) -> GaussianState:
        """Compute the predicted (prior) state on the next time step.

        From a posterior state α_t | y_0..y_t ~ N(mu_t, P_t):

            mu_{t+1} = T mu_t
            P_{t+1} = T P_t Tᵀ + R Q Rᵀ

        Args:
            state (GaussianState): Current posterior state.
                Shape (mean): ``(m, 1)``
                Shape (covariance): ``(m, m)``

        Returns:
            GaussianState: Predicted state on the next time step.
        """
        transition = self.model.transition_matrix
        mean = transition @ state.mean
        covariance = transition @ state.covariance @ transition.mT + self.process_noise
        return GaussianState(mean, covariance)

    def project(self, state: GaussianState, t: int, *, precompute_precision=True) -> GaussianState:
        """Project a (predicted) state at time ``t`` into measurement space.

            y_t = Z_t mu_t
            F_t = Z_t P_t Z_tᵀ + H

        Args:
            state (GaussianState): Predicted state at time ``t``.
            t (int): Time step (selects ``Z_t``).
            precompute_precision (bool): If True, store ``F_t⁻¹`` in the returned state's ``precision``.
                Default: True

        Returns:
            GaussianState: Distribution of the measure at time ``t``.
                Shape (mean): ``(p, 1)``
                Shape (covariance): ``(p, p)``
        """
        measurement_matrix = self.model.observation_matrix[t]

        mean = measurement_matrix @ state.mean
        covariance = measurement_matrix @ state.covariance @ measurement_matrix.mT + self.measurement_noise

        return GaussianState(mean, covariance, covariance.inverse() if precompute_precision else None)

    def update(
        self, state: GaussianState, measure: torch.Tensor, t: int, *, projection: GaussianState | None = None
    ) -> GaussianState:
        """Update a predicted state with the measure at time ``t``.

        1. Project the state: y_t | ... ~ N(Z_t mu_t, F_t) (see `project`)
        2. Kalman gain (update form): G = P_t Z_tᵀ F_t⁻¹
        3. mu'_t = mu_t + G (y_t - Z_t mu_t)
           P'_t = (I - G Z_t) P_t   OR [JOSEPH_UPDATE] P'_t = (I - G Z_t) P_t (I - G Z_t)ᵀ + G H Gᵀ

        Args:
            state (GaussianState): Predicted state at time ``t``.
            measure (torch.Tensor): Measure ``y_t``.
                Shape: ``(p, 1)``
            t (int): Time step.
            projection (GaussianState | None): Optional precomputed projection from `project`.

        Returns:
            GaussianState: Updated posterior state.
        """
        measurement_matrix = self.model.observation_matrix[t]
        if projection is None:
            projection = self.project(state, t)

        residual = measure - projection.mean

        if projection.precision is None:
            # Solve F Gᵀ = (P Zᵀ)ᵀ rather than inverting F
            chol_decomposition, _ = torch.linalg.cholesky_ex(projection.covariance)
            kalman_gain = torch.cholesky_solve(measurement_matrix @ state.covariance.mT, chol_decomposition).mT
        else:
            kalman_gain = state.covariance @ measurement_matrix.mT @ projection.precision

        mean = state.mean + kalman_gain @ residual

        if self.joseph_update:
            factor = torch.eye(self.state_dim, dtype=mean.dtype, device=mean.device) - kalman_gain @ measurement_matrix
            covariance = factor @ state.covariance @ factor.mT + kalman_gain @ self.measurement_noise @ kalman_gain.mT
        else:
            covariance = state.covariance - kalman_gain @ measurement_matrix @ state.covariance

        return GaussianState(mean, covariance)

    def filter(self, *, tol=DEFAULT_TOL, diffuse_scale=DIFFUSE_SCALE) -> FilteredState:
        """Run the predict/update loop over the whole observation series.

        Starts from the diffuse prior ``a_0 = 0``, ``P_0 = κ² I`` and records at each step the
        predicted state, the innovation, its covariance and the gain ``K_t = T P_t Z_tᵀ F_t⁻¹``.
        Once ``P`` stops changing (relative change below ``tol``), ``P``, ``F`` and ``K`` are frozen
        and only the means are propagated: a_{t+1} = T a_t + K v_t.

        Args:
            tol (float): Relative tolerance on ``P`` to detect steady state. 0 disables it.
                Default: 1e-5
            diffuse_scale (float): Scale ``κ`` of the diffuse prior.
                Default: 1e6

        Returns:
            FilteredState: Time-stacked outputs of the filter.
        """
        n, _, m, _ = self.model.dims
        dtype, device = self.model.dtype, self.model.device
        transition = self.model.transition_matrix

        mean = torch.zeros(m, 1, dtype=dtype, device=device)
        covariance = diffuse_scale**2 * torch.eye(m, dtype=dtype, device=device)

        means: list[torch.Tensor] = []
        innovations: list[torch.Tensor] = []
        covariances = [covariance]
        innovation_covariances: list[torch.Tensor] = []
        gains: list[torch.Tensor] = []

        steady_state = False
        t_steady = n

        for t, measure in enumerate(self.model.observations):
            measurement_matrix = self.model.observation_matrix[t]
            innovation = measure - measurement_matrix @ mean

            if not steady_state:
                state = GaussianState(mean, covariance)
                projection = self.project(state, t)
                innovation_covariance = projection.covariance
                gain = transition @ covariance @ measurement_matrix.mT @ projection.precision
                next_covariance = self.predict(self.update(state, measure, t, projection=projection)).covariance

                if is_steady(next_covariance, covariance, tol):
                    steady_state = True
                    t_steady = t
                    logger.debug(
                        "Steady state reached at t=%d (relative change: %.3e)",
                        t,
                        max_relative_change(next_covariance, covariance),
                    )

                covariance = next_covariance

            means.append(mean)
            innovations.append(innovation)
            covariances.append(covariance)
            innovation_covariances.append(innovation_covariance)
            gains.append(gain)

            mean = transition @ mean + gain @ innovation

        return FilteredState(
            torch.stack(means),
            torch.stack(innovations),
            torch.stack(covariances),
            torch.stack(innovation_covariances),
            torch.stack(gains),
            steady_state,
            t_steady,
        )

    def posterior(self, filtered: FilteredState) -> GaussianState:
        """Filtered (posterior) states ``α_t | y_0, ..., y_t`` from the predicted ones.

        Args:
            filtered (FilteredState): Output of `filter`.

        Returns:
            GaussianState: Posterior states over time.
                Shape (mean): ``(n, m, 1)``
                Shape (covariance): ``(n, m, m)``
        """
        if len(filtered) != len(self.model):
            raise DimensionError(f"Expected {len(self.model)} filtered steps. Found {len(filtered)}")

        states = [
            self.update(GaussianState(filtered.predicted_mean[t], filtered.predicted_covariance[t]), measure, t)
            for t, measure in enumerate(self.model.observations)
        ]
        return GaussianState(
            torch.stack([state.mean for state in states]), torch.stack([state.covariance for state in states])
        )

    def rts_smooth(self, filtered: FilteredState) -> SmoothedState:
        """Apply Rauch-Tung-Striebel (RTS) smoothing to the filter output.

        The posterior states are first recovered with `posterior`, then smoothed backward:

            G_t  = P_{t|t} Tᵀ P_{t+1}⁻¹
            α̂_t  = a_{t|t} + G_t (α̂_{t+1} - T a_{t|t})
            V_t  = P_{t|t} + G_t (V_{t+1} - P_{t+1}) G_tᵀ

        with ``P_{t+1} = T P_{t|t} Tᵀ + R Q Rᵀ``. The last posterior state is already smoothed.

        Args:
            filtered (FilteredState): Output of `filter`.

        Returns:
            SmoothedState: Smoothed means and covariances.
        """
        state = self.posterior(filtered)
        transition = self.model.transition_matrix
        out = GaussianState(state.mean.clone(), state.covariance.clone())

        # Iterate backward to update all states (except the last one which is already fine)
        for t in range(state.mean.shape[0] - 2, -1, -1):
            cov_at_process = state.covariance[t] @ transition.mT
            predicted_covariance = transition @ cov_at_process + self.process_noise

            kalman_gain = cov_at_process @ predicted_covariance.inverse()
            out.mean[t] += kalman_gain @ (out.mean[t + 1] - transition @ state.mean[t])
            out.covariance[t] += kalman_gain @ (out.covariance[t + 1] - predicted_covariance) @ kalman_gain.mT

        return SmoothedState(out.mean, out.covariance)
