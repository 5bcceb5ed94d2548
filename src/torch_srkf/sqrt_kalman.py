"""Square-root Kalman filter and smoother.

Rather than the covariance matrices themselves, the recursions propagate square-root factors
``S`` (with ``S Sᵀ`` the covariance of interest). Each step stacks the current factors in an
auxiliary matrix and re-triangularizes it with an orthogonal transformation (QR factorization),
so the reconstructed covariances stay symmetric positive semi-definite whatever the rounding
errors.

The filter starts from a big-kappa diffuse prior ``a_0 = 0``, ``sqrtP_0 = κ I``. For
time-invariant systems the covariance recursion converges: once the predicted factor stops
changing (within a relative tolerance) the filter freezes the factors and the gain, and only
propagates the means.

Notations (time indices are 0-based, ``t = 0, ..., n-1``):
- ``a_t``, ``sqrtP_t``: predicted state mean and covariance factor,
- ``v_t``, ``sqrtF_t``: innovation and its covariance factor,
- ``K_t = T P_t Zᵀ F_t⁻¹``: Kalman gain (prediction form),
- ``U2star_t``: cross term with ``K_t = U2star_t sqrtF_t⁻¹``.
"""

from __future__ import annotations

import dataclasses
import logging

import torch
import torch.linalg

from .linalg import gram, gram_in_time, is_steady, lower_triangularize, max_relative_change
from .state_space import DimensionError, StateSpaceModel
from .states import FilteredState, SmoothedState

logger = logging.getLogger(__name__)

DEFAULT_TOL = 1e-5
DIFFUSE_SCALE = 1e6


@dataclasses.dataclass(frozen=True)
class SquareRootFilter:
    """Output of the square-root Kalman filter.

    Each field is an ordered sequence with one tensor per time step. After steady state, the
    factors and the gain are shared (same tensor) across all the following steps.

    Attributes:
        predicted_mean (tuple[torch.Tensor, ...]): ``a_t`` for t = 0..n-1.
            Shape: ``(m, 1)`` each
        innovation (tuple[torch.Tensor, ...]): ``v_t`` for t = 0..n-1.
            Shape: ``(p, 1)`` each
        sqrt_predicted_covariance (tuple[torch.Tensor, ...]): ``sqrtP_t`` for t = 0..n.
            Shape: ``(m, m)`` each
        sqrt_innovation_covariance (tuple[torch.Tensor, ...]): ``sqrtF_t`` for t = 0..n-1.
            Shape: ``(p, p)`` each
        kalman_gain (tuple[torch.Tensor, ...]): ``K_t`` for t = 0..n-1.
            Shape: ``(m, p)`` each
        cross_factor (tuple[torch.Tensor, ...]): ``U2star_t`` for t = 0..n-1.
            Shape: ``(m, p)`` each
        steady_state (bool): Whether steady state was reached.
        t_steady (int): Step at which steady state was detected, ``n`` if never.
    """

    predicted_mean: tuple[torch.Tensor, ...]
    innovation: tuple[torch.Tensor, ...]
    sqrt_predicted_covariance: tuple[torch.Tensor, ...]
    sqrt_innovation_covariance: tuple[torch.Tensor, ...]
    kalman_gain: tuple[torch.Tensor, ...]
    cross_factor: tuple[torch.Tensor, ...]
    steady_state: bool
    t_steady: int

    def __len__(self) -> int:
        return len(self.predicted_mean)

    def assemble(self) -> FilteredState:
        """Expand the square-root factors into full covariance matrices.

        Returns:
            FilteredState: Time-stacked means, innovations, covariances and gains.
        """
        return FilteredState(
            torch.stack(self.predicted_mean),
            torch.stack(self.innovation),
            gram_in_time(self.sqrt_predicted_covariance),
            gram_in_time(self.sqrt_innovation_covariance),
            torch.stack(self.kalman_gain),
            self.steady_state,
            self.t_steady,
        )


@dataclasses.dataclass(frozen=True)
class SquareRootSmoother:
    """Output of the square-root smoother.

    Attributes:
        smoothed_mean (tuple[torch.Tensor, ...]): ``α̂_t`` for t = 0..n-1.
            Shape: ``(m, 1)`` each
        smoothed_covariance (tuple[torch.Tensor, ...]): ``V_t`` for t = 0..n-1.
            Shape: ``(m, m)`` each
        smoothing_vector (tuple[torch.Tensor, ...]): Backward vector ``r_t`` for t = 0..n (``r_n = 0``).
            Shape: ``(m, 1)`` each
        sqrt_smoothing_covariance (tuple[torch.Tensor, ...]): ``sqrtN_t`` for t = 0..n (``sqrtN_n = 0``).
            Shape: ``(m, m)`` each
    """

    smoothed_mean: tuple[torch.Tensor, ...]
    smoothed_covariance: tuple[torch.Tensor, ...]
    smoothing_vector: tuple[torch.Tensor, ...]
    sqrt_smoothing_covariance: tuple[torch.Tensor, ...]

    def __len__(self) -> int:
        return len(self.smoothed_mean)

    def assemble(self) -> SmoothedState:
        """Stack the smoothed means and covariances along time.

        Returns:
            SmoothedState: Time-stacked smoothed means and covariances.
        """
        return SmoothedState(torch.stack(self.smoothed_mean), torch.stack(self.smoothed_covariance))


def sqrt_kalman_filter(
    model: StateSpaceModel,
    sqrt_h: torch.Tensor,
    sqrt_q: torch.Tensor,
    *,
    tol=DEFAULT_TOL,
    diffuse_scale=DIFFUSE_SCALE,
) -> SquareRootFilter:
    """Run the square-root Kalman filter over the whole observation series.

    At each step (until steady state), the auxiliary matrix

        U = [ Z_t sqrtP_t   sqrtH   0      ]
            [ T sqrtP_t     0       R sqrtQ]

    is lower-triangularized (``Ustar = U G`` with ``G`` orthogonal) and

        sqrtF_t     = Ustar[:p, :p]
        U2star_t    = Ustar[p:, :p]
        sqrtP_{t+1} = Ustar[p:, p:]
        K_t         = U2star_t sqrtF_t⁺        (pseudo-inverse)
        a_{t+1}     = T a_t + K_t v_t

    The pseudo-inverse never raises: a singular ``sqrtF_t`` yields a best-effort gain.

    Args:
        model (StateSpaceModel): Observations and system matrices.
        sqrt_h (torch.Tensor): Square-root factor of the observation noise covariance ``H``.
            Shape: ``(p, p)``
        sqrt_q (torch.Tensor): Square-root factor of the disturbance covariance ``Q``.
            Shape: ``(r, r)``
        tol (float): Relative tolerance on ``sqrtP`` to detect steady state. 0 disables it.
            Default: 1e-5
        diffuse_scale (float): Scale ``κ`` of the diffuse prior ``sqrtP_0 = κ I``.
            Default: 1e6

    Returns:
        SquareRootFilter: Per-step means, innovations, factors and gains.

    Raises:
        DimensionError: If the factors do not match the model dimensions.
    """
    n, p, m, r = model.dims
    if sqrt_h.shape != (p, p) or sqrt_q.shape != (r, r):
        raise DimensionError(
            f"Expected factors of shape ({p}, {p}) and ({r}, {r}). Found {sqrt_h.shape} and {sqrt_q.shape}"
        )

    dtype, device = model.dtype, model.device
    transition = model.transition_matrix

    # Constant blocks of U
    top_right = torch.cat([sqrt_h, torch.zeros(p, r, dtype=dtype, device=device)], dim=1)
    bottom_right = torch.cat([torch.zeros(m, p, dtype=dtype, device=device), model.disturbance_matrix @ sqrt_q], dim=1)

    mean = torch.zeros(m, 1, dtype=dtype, device=device)
    sqrt_p = diffuse_scale * torch.eye(m, dtype=dtype, device=device)

    means: list[torch.Tensor] = []
    innovations: list[torch.Tensor] = []
    sqrt_ps = [sqrt_p]
    sqrt_fs: list[torch.Tensor] = []
    gains: list[torch.Tensor] = []
    cross_factors: list[torch.Tensor] = []

    steady_state = False
    t_steady = n

    for t in range(n):
        measurement_matrix = model.observation_matrix[t]
        innovation = model.observations[t] - measurement_matrix @ mean

        if not steady_state:
            stacked = torch.cat(
                [
                    torch.cat([measurement_matrix @ sqrt_p, top_right], dim=1),
                    torch.cat([transition @ sqrt_p, bottom_right], dim=1),
                ],
                dim=0,
            )
            triangular = lower_triangularize(stacked)
            sqrt_f = triangular[:p, :p]
            cross_factor = triangular[p:, :p]
            gain = cross_factor @ torch.linalg.pinv(sqrt_f)
            sqrt_p_next = triangular[p:, p:]

            if is_steady(sqrt_p_next, sqrt_p, tol):
                steady_state = True
                t_steady = t
                logger.debug(
                    "Steady state reached at t=%d (relative change: %.3e)",
                    t,
                    max_relative_change(sqrt_p_next, sqrt_p),
                )

            sqrt_p = sqrt_p_next

        means.append(mean)
        innovations.append(innovation)
        sqrt_ps.append(sqrt_p)
        sqrt_fs.append(sqrt_f)
        gains.append(gain)
        cross_factors.append(cross_factor)

        mean = transition @ mean + gain @ innovation

    return SquareRootFilter(
        tuple(means),
        tuple(innovations),
        tuple(sqrt_ps),
        tuple(sqrt_fs),
        tuple(gains),
        tuple(cross_factors),
        steady_state,
        t_steady,
    )


def _smoother_step(
    measurement_matrix: torch.Tensor,
    transition: torch.Tensor,
    innovation: torch.Tensor,
    sqrt_f: torch.Tensor,
    gain: torch.Tensor,
    predicted_mean: torch.Tensor,
    predicted_covariance: torch.Tensor,
    smoothing_vector: torch.Tensor,
    sqrt_smoothing_covariance: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
    """Single backward step: from ``(r_{t+1}, sqrtN_{t+1})`` to ``(r_t, sqrtN_t, α̂_t, V_t)``."""
    inv_sqrt_f = torch.linalg.pinv(sqrt_f)
    reduction = transition - gain @ measurement_matrix  # L_t

    # F⁻¹ = sqrtF⁻ᵀ sqrtF⁻¹
    smoothing_vector = (
        measurement_matrix.mT @ inv_sqrt_f.mT @ inv_sqrt_f @ innovation + reduction.mT @ smoothing_vector
    )
    sqrt_smoothing_covariance = lower_triangularize(
        torch.cat([measurement_matrix.mT @ inv_sqrt_f.mT, reduction.mT @ sqrt_smoothing_covariance], dim=1)
    )

    mean = predicted_mean + predicted_covariance @ smoothing_vector
    covariance = (
        predicted_covariance - predicted_covariance @ gram(sqrt_smoothing_covariance) @ predicted_covariance
    )
    return smoothing_vector, sqrt_smoothing_covariance, mean, covariance


def sqrt_smoother(model: StateSpaceModel, sqrt_filter: SquareRootFilter) -> SquareRootSmoother:
    """Run the square-root fixed-interval smoother backward over the filter output.

    Starting from ``r_n = 0`` and ``sqrtN_n = 0``, for t = n-1 down to 0:

        L_t      = T - K_t Z_t
        r_t      = Z_tᵀ F_t⁻¹ v_t + L_tᵀ r_{t+1}
        sqrtN_t  = triangularized [Z_tᵀ sqrtF_t⁻ᵀ, L_tᵀ sqrtN_{t+1}]
        α̂_t      = a_t + P_t r_t
        V_t      = P_t - P_t N_t P_t

    From the last step down to ``t_steady``, the frozen steady-state ``sqrtF``, ``K`` and ``P``
    are used. Before ``t_steady``, the time-varying factors of the filter are used instead,
    the gain being recomputed from ``U2star_t`` and ``sqrtF_t``.

    Args:
        model (StateSpaceModel): The model that was filtered.
        sqrt_filter (SquareRootFilter): Output of :func:`sqrt_kalman_filter` on ``model``.

    Returns:
        SquareRootSmoother: Smoothed means and covariances with the backward recursion terms.
    """
    n, _, m, _ = model.dims
    dtype, device = model.dtype, model.device
    transition = model.transition_matrix

    smoothing_vector = torch.zeros(m, 1, dtype=dtype, device=device)
    sqrt_smoothing_covariance = torch.zeros(m, m, dtype=dtype, device=device)

    smoothing_vectors = [smoothing_vector]
    sqrt_smoothing_covariances = [sqrt_smoothing_covariance]
    means: list[torch.Tensor] = []
    covariances: list[torch.Tensor] = []

    # Steady regime: frozen factors and gain
    sqrt_f_steady = sqrt_filter.sqrt_innovation_covariance[-1]
    gain_steady = sqrt_filter.kalman_gain[-1]
    covariance_steady = gram(sqrt_filter.sqrt_predicted_covariance[-1])

    logger.debug("Smoothing %d steady steps and %d pre-steady steps", n - sqrt_filter.t_steady, sqrt_filter.t_steady)

    for t in range(n - 1, sqrt_filter.t_steady - 1, -1):
        smoothing_vector, sqrt_smoothing_covariance, mean, covariance = _smoother_step(
            model.observation_matrix[t],
            transition,
            sqrt_filter.innovation[t],
            sqrt_f_steady,
            gain_steady,
            sqrt_filter.predicted_mean[t],
            covariance_steady,
            smoothing_vector,
            sqrt_smoothing_covariance,
        )
        smoothing_vectors.append(smoothing_vector)
        sqrt_smoothing_covariances.append(sqrt_smoothing_covariance)
        means.append(mean)
        covariances.append(covariance)

    # Pre-steady regime, down to the terminal step t = 0
    for t in range(sqrt_filter.t_steady - 1, -1, -1):
        sqrt_f = sqrt_filter.sqrt_innovation_covariance[t]
        smoothing_vector, sqrt_smoothing_covariance, mean, covariance = _smoother_step(
            model.observation_matrix[t],
            transition,
            sqrt_filter.innovation[t],
            sqrt_f,
            sqrt_filter.cross_factor[t] @ torch.linalg.pinv(sqrt_f),
            sqrt_filter.predicted_mean[t],
            gram(sqrt_filter.sqrt_predicted_covariance[t]),
            smoothing_vector,
            sqrt_smoothing_covariance,
        )
        smoothing_vectors.append(smoothing_vector)
        sqrt_smoothing_covariances.append(sqrt_smoothing_covariance)
        means.append(mean)
        covariances.append(covariance)

    # Collected backward: reverse to chronological order
    return SquareRootSmoother(
        tuple(reversed(means)),
        tuple(reversed(covariances)),
        tuple(reversed(smoothing_vectors)),
        tuple(reversed(sqrt_smoothing_covariances)),
    )
