"""Synthetic scenes shared by the tests."""

import numpy as np
import pytest
from scipy.spatial.transform import Rotation

from instantgp.scene.defs import CameraModelId, Cameras, ImagePair, Images, Tracks, ViewGraph


def make_world2cam(rotation, center):
    world2cam = np.eye(4)
    world2cam[:3, :3] = rotation
    world2cam[:3, 3] = -rotation @ center
    return world2cam


def make_scene(centers, points, rotations=None, calibrated=True, observations=None, pairs=None):
    """Noise-free scene with exact bearings and relative translations.

    Args:
        centers: (N, 3) true camera centers
        points: (M, 3) true track points
        rotations: (N, 3, 3) world to camera rotations, random by default
        observations: per track list of observing image ids, all images by default
        pairs: list of (image_id1, image_id2), all pairs by default
    """
    centers = np.asarray(centers, dtype=np.float64)
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    num_images, num_points = len(centers), len(points)
    if rotations is None:
        rotations = Rotation.random(num_images, 7).as_matrix().reshape(num_images, 3, 3)
    if observations is None:
        observations = [list(range(num_images)) for _ in range(num_points)]
    if pairs is None:
        pairs = [(i, j) for i in range(num_images) for j in range(i + 1, num_images)]

    cameras = Cameras()
    cameras.append(CameraModelId.SIMPLE_PINHOLE, [500., 320., 240.], 640, 480, calibrated)

    images = Images()
    for image_id in range(num_images):
        bearings = (points - centers[image_id]) @ rotations[image_id].T
        bearings /= np.linalg.norm(bearings, axis=1, keepdims=True)
        images.append(cam_id=0, is_registered=True,
                      world2cam=make_world2cam(rotations[image_id], centers[image_id]),
                      features_undist=bearings)

    tracks = Tracks()
    for track_id in range(num_points):
        obs = np.array([[image_id, track_id] for image_id in observations[track_id]], dtype=np.int32).reshape(-1, 2)
        tracks.append(points[track_id], is_initialized=True, observations=obs)

    view_graph = ViewGraph()
    for image_id1, image_id2 in pairs:
        R1, R2 = rotations[image_id1], rotations[image_id2]
        cam1to2 = np.eye(4)
        cam1to2[:3, :3] = R2 @ R1.T
        cam1to2[:3, 3] = R2 @ (centers[image_id1] - centers[image_id2])
        pair = ImagePair(image_id1, image_id2)
        pair.set_cam1to2(cam1to2)
        view_graph.add_pair(pair)

    return view_graph, cameras, images, tracks


def umeyama(src, dst):
    """Similarity (s, R, t) minimizing |s R src + t - dst|."""
    src_mean, dst_mean = src.mean(axis=0), dst.mean(axis=0)
    src_c, dst_c = src - src_mean, dst - dst_mean
    U, D, Vt = np.linalg.svd(dst_c.T @ src_c / len(src))
    S = np.eye(3)
    if np.linalg.det(U) * np.linalg.det(Vt) < 0:
        S[2, 2] = -1
    R = U @ S @ Vt
    s = np.trace(np.diag(D) @ S) / src_c.var(axis=0).sum()
    t = dst_mean - s * R @ src_mean
    return s, R, t


def similarity_error(src, dst):
    """Largest residual after aligning src onto dst, relative to the extent of dst."""
    s, R, t = umeyama(src, dst)
    aligned = s * src @ R.T + t
    extent = np.linalg.norm(dst.max(axis=0) - dst.min(axis=0))
    return np.max(np.linalg.norm(aligned - dst, axis=1)) / extent


@pytest.fixture
def scene_geometry():
    rng = np.random.default_rng(0)
    centers = rng.uniform(-5, 5, (6, 3))
    points = rng.uniform(-3, 3, (25, 3))
    return centers, points


@pytest.fixture
def scene(scene_geometry):
    centers, points = scene_geometry
    return make_scene(centers, points)
