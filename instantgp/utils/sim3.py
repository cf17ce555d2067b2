import numpy as np


class Sim3d:
    """Similarity transform x -> scale * R @ x + t."""

    def __init__(self, scale=1.0, rotation=None, translation=None):
        self.scale = float(scale)
        self.rotation = np.eye(3) if rotation is None else np.asarray(rotation, dtype=np.float64)
        self.translation = np.zeros(3) if translation is None else np.asarray(translation, dtype=np.float64)

    def TransformPoints(self, points):
        points = np.asarray(points, dtype=np.float64)
        return self.scale * points @ self.rotation.T + self.translation

    def TransformCovariance(self, covariance):
        return self.scale ** 2 * self.rotation @ covariance @ self.rotation.T

    def Inverse(self):
        rotation_inv = self.rotation.T
        return Sim3d(1.0 / self.scale, rotation_inv, -rotation_inv @ self.translation / self.scale)

    def IsIdentity(self):
        return (self.scale == 1.0 and np.array_equal(self.rotation, np.eye(3))
                and not np.any(self.translation))

    def __repr__(self):
        return f"Sim3d(scale={self.scale}, translation={self.translation.tolist()})"


def AlignBoundingBox(positions, bbox):
    """Similarity that places the extent of `positions` inside `bbox`.

    The center of the positions' extent goes to the box center and the scale is the
    smallest ratio between box extent and position extent over the three axes.
    """
    positions = np.asarray(positions, dtype=np.float64).reshape(-1, 3)
    bbox_min = np.asarray(bbox[0], dtype=np.float64)
    bbox_max = np.asarray(bbox[1], dtype=np.float64)
    if len(positions) == 0:
        return Sim3d()

    positions_min, positions_max = positions.min(axis=0), positions.max(axis=0)
    extent = positions_max - positions_min
    box_extent = bbox_max - bbox_min
    valid = extent > 1e-12
    scale = float(np.min(box_extent[valid] / extent[valid])) if np.any(valid) else 1.0
    box_center = 0.5 * (bbox_min + bbox_max)
    return Sim3d(scale, np.eye(3), box_center - scale * 0.5 * (positions_min + positions_max))
