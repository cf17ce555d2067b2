import numpy as np

from instantgp.utils.least_squares import CostFunction


class PairwiseDirectionError(CostFunction):
    """Direction residual between two positions up to a free scale.

        r = d - s * (p2 - p1)

    Used both for camera-to-camera constraints (p1, p2 are camera centers) and
    for point-to-camera constraints (p1 is the camera center, p2 the point).
    The measurement is the unit direction d expressed in the world frame.
    """
    NUM_RESIDUALS = 3
    PARAMETER_BLOCK_SIZES = (3, 3, 1)

    def __init__(self, direction):
        super().__init__(direction)

    @staticmethod
    def EvaluateBatch(measurements, position1, position2, scale, compute_jacobians=True):
        diff = position2 - position1
        residuals = measurements - scale * diff
        if not compute_jacobians:
            return residuals, None
        J1 = scale[:, :, np.newaxis] * np.eye(3)
        J2 = -J1
        Js = -diff[:, :, np.newaxis]
        return residuals, [J1, J2, Js]

    @staticmethod
    def EvaluateTorch(measurements, position1, position2, scale):
        return measurements - scale * (position2 - position1)


class PositionPriorError(CostFunction):
    """Whitened distance of a position to its prior.

        r = L (c - c_prior)

    L is the square root of the information matrix, i.e. L^T L = Sigma^-1.
    The measurement packs [c_prior (3), L (9, row-major)].
    """
    NUM_RESIDUALS = 3
    PARAMETER_BLOCK_SIZES = (3,)

    def __init__(self, prior_position, sqrt_information):
        prior_position = np.asarray(prior_position, dtype=np.float64).reshape(3)
        sqrt_information = np.asarray(sqrt_information, dtype=np.float64).reshape(3, 3)
        super().__init__(np.concatenate([prior_position, sqrt_information.ravel()]))

    @staticmethod
    def EvaluateBatch(measurements, position, compute_jacobians=True):
        prior = measurements[:, :3]
        L = measurements[:, 3:].reshape(-1, 3, 3)
        residuals = np.einsum('kij,kj->ki', L, position - prior)
        if not compute_jacobians:
            return residuals, None
        return residuals, [L.copy()]

    @staticmethod
    def EvaluateTorch(measurements, position):
        prior = measurements[:, :3]
        L = measurements[:, 3:].reshape(-1, 3, 3)
        return (L @ (position - prior).unsqueeze(-1)).squeeze(-1)
