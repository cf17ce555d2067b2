"""Tests for the similarity transform helpers."""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from instantgp.utils.sim3 import AlignBoundingBox, Sim3d


class TestSim3d:

    def test_inverse(self):
        transform = Sim3d(2.5, Rotation.from_euler('xyz', [0.1, -0.4, 1.2]).as_matrix(), [1., -2., 3.])
        points = np.random.default_rng(0).normal(size=(10, 3))
        roundtrip = transform.Inverse().TransformPoints(transform.TransformPoints(points))
        assert np.allclose(roundtrip, points)

    def test_single_point(self):
        transform = Sim3d(2., None, [1., 0., 0.])
        assert np.allclose(transform.TransformPoints([1., 1., 1.]), [3., 2., 2.])

    def test_covariance(self):
        transform = Sim3d(3.)
        assert np.allclose(transform.TransformCovariance(np.eye(3)), 9. * np.eye(3))

    def test_identity(self):
        assert Sim3d().IsIdentity()
        assert not Sim3d(2.).IsIdentity()


class TestAlignBoundingBox:

    def test_extent_fits_the_box(self):
        positions = np.array([[10., 20., 30.], [14., 21., 30.5], [12., 22., 31.]])
        bbox = ((-100., -100., -100.), (100., 100., 100.))
        transform = AlignBoundingBox(positions, bbox)
        aligned = transform.TransformPoints(positions)
        # x has the largest extent and fills the box
        assert transform.scale == pytest.approx(200. / 4.)
        assert np.all(aligned >= -100. - 1e-9) and np.all(aligned <= 100. + 1e-9)
        assert aligned[:, 0].min() == pytest.approx(-100.)
        assert aligned[:, 0].max() == pytest.approx(100.)

    def test_single_position(self):
        transform = AlignBoundingBox([[5., 5., 5.]], ((0., 0., 0.), (2., 2., 2.)))
        assert transform.scale == 1.
        assert np.allclose(transform.TransformPoints([5., 5., 5.]), [1., 1., 1.])

    def test_no_positions(self):
        assert AlignBoundingBox(np.zeros((0, 3)), ((0., 0., 0.), (1., 1., 1.))).IsIdentity()
