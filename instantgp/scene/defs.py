import numpy as np
import cv2
from enum import Enum
from dataclasses import dataclass, field
from typing import List, Optional, Union
from scipy.spatial.transform import Rotation as R


# ============================================================================
# Pose Prior
# ============================================================================

@dataclass
class PosePrior:
    """Externally supplied position estimate of an image (world frame)."""
    position: np.ndarray
    position_covariance: np.ndarray = field(default_factory=lambda: np.eye(3))

    def __post_init__(self):
        self.position = np.asarray(self.position, dtype=np.float64).reshape(3)
        self.position_covariance = np.asarray(self.position_covariance, dtype=np.float64).reshape(3, 3)

    def is_valid(self) -> bool:
        return bool(np.all(np.isfinite(self.position)))


# ============================================================================
# Struct-of-Arrays (SoA) Image Container
# ============================================================================

class ImageView:
    """A lightweight view of a single image in the Images container.

    Changes to this view are reflected in the underlying container.
    """
    def __init__(self, container: 'Images', index: int):
        self._container = container
        self._index = index

    @property
    def id(self) -> int:
        return int(self._container.ids[self._index])

    @property
    def cam_id(self) -> int:
        return int(self._container.cam_ids[self._index])

    @property
    def is_registered(self) -> bool:
        return bool(self._container.is_registered[self._index])

    @is_registered.setter
    def is_registered(self, value: bool):
        self._container.is_registered[self._index] = value

    @property
    def world2cam(self) -> np.ndarray:
        return self._container.world2cams[self._index]

    @world2cam.setter
    def world2cam(self, value: np.ndarray):
        self._container.world2cams[self._index] = value

    @property
    def features(self) -> np.ndarray:
        return self._container.features[self._index]

    @property
    def features_undist(self) -> np.ndarray:
        return self._container.features_undist[self._index]

    @property
    def pose_prior(self) -> Optional[PosePrior]:
        return self._container.pose_priors[self._index]

    @pose_prior.setter
    def pose_prior(self, value: Optional[PosePrior]):
        self._container.pose_priors[self._index] = value

    def center(self) -> np.ndarray:
        """Camera center in world coordinates."""
        w2c = self.world2cam
        return w2c[:3, :3].T @ -w2c[:3, 3]


class Images:
    """Struct-of-Arrays container for image poses and observations.

    The image id is the index into the container. Orientations in
    `world2cams[:, :3, :3]` are treated as fixed by global positioning;
    only the translations of solved images are rewritten.

    Usage:
        images = Images(num_images=10)
        images.world2cams[0] = np.eye(4)
        img = images[0]
        print(img.center())
    """

    def __init__(self, num_images: int = 0):
        self.num_images = num_images

        # Scalar attributes (N,)
        self.ids = np.arange(num_images, dtype=np.int32)
        self.cam_ids = np.full(num_images, -1, dtype=np.int32)
        self.is_registered = np.zeros(num_images, dtype=bool)

        # Matrix attributes (N, 4, 4)
        self.world2cams = np.tile(np.eye(4), (num_images, 1, 1))

        # Variable-length arrays (list of arrays)
        # features are pixels (K, 2), features_undist are unit bearings (K, 3)
        self.features = [np.zeros((0, 2)) for _ in range(num_images)]
        self.features_undist = [np.zeros((0, 3)) for _ in range(num_images)]

        self.pose_priors: List[Optional[PosePrior]] = [None] * num_images

    def __len__(self) -> int:
        return self.num_images

    def __getitem__(self, index: int) -> ImageView:
        """Get a view of a single image."""
        if index < 0 or index >= self.num_images:
            raise IndexError(f"Image index {index} out of range [0, {self.num_images})")
        return ImageView(self, index)

    def __iter__(self):
        for idx in range(self.num_images):
            yield ImageView(self, idx)

    def append(self,
               cam_id: int = -1,
               is_registered: bool = False,
               world2cam: Optional[np.ndarray] = None,
               features: Optional[np.ndarray] = None,
               features_undist: Optional[np.ndarray] = None,
               pose_prior: Optional[PosePrior] = None) -> int:
        """Append a new image to the container.

        Returns:
            Id (index) of the newly added image.
        """
        idx = self.num_images
        self.num_images += 1

        self.ids = np.append(self.ids, idx).astype(np.int32)
        self.cam_ids = np.append(self.cam_ids, cam_id).astype(np.int32)
        self.is_registered = np.append(self.is_registered, is_registered)

        w2c = world2cam if world2cam is not None else np.eye(4)
        self.world2cams = np.concatenate([self.world2cams, w2c[np.newaxis, :, :]], axis=0)

        self.features.append(features if features is not None else np.zeros((0, 2)))
        self.features_undist.append(features_undist if features_undist is not None else np.zeros((0, 3)))
        self.pose_priors.append(pose_prior)

        return idx

    def get_registered_mask(self) -> np.ndarray:
        """Get boolean mask of registered images."""
        return self.is_registered

    def get_registered_indices(self) -> np.ndarray:
        """Get indices of registered images."""
        return np.where(self.is_registered)[0]

    def get_centers_batch(self, indices: Optional[np.ndarray] = None) -> np.ndarray:
        """Get camera centers in world coordinates as a batch.

        Args:
            indices: Optional array of image indices. If None, returns all.

        Returns:
            Array of shape (N, 3) or (len(indices), 3).
        """
        w2cs = self.world2cams if indices is None else self.world2cams[indices]
        Rs = w2cs[:, :3, :3]
        t = w2cs[:, :3, 3]
        # centers = -R^T @ t
        return np.einsum('nij,nj->ni', Rs.transpose(0, 2, 1), -t)

    def set_centers_batch(self, centers: np.ndarray, indices: np.ndarray):
        """Write camera centers back as extrinsic translations (t = -R c)."""
        if centers.shape[0] != len(indices):
            raise ValueError(f"Got {centers.shape[0]} centers for {len(indices)} images")
        Rs = self.world2cams[indices, :3, :3]
        self.world2cams[indices, :3, 3] = -np.einsum('nij,nj->ni', Rs, centers)

    def has_pose_prior(self) -> np.ndarray:
        return np.array([prior is not None and prior.is_valid() for prior in self.pose_priors], dtype=bool)

    def Validate(self, cameras: 'Cameras'):
        """Every registered image must reference a valid camera."""
        for image_id in self.get_registered_indices():
            cam_id = int(self.cam_ids[image_id])
            if cam_id < 0 or cam_id >= len(cameras):
                raise ValueError(f"Registered image {image_id} references invalid camera {cam_id}")


# ============================================================================
# Struct-of-Arrays (SoA) Track Container
# ============================================================================

class TrackView:
    """A lightweight view of a single track in the Tracks container."""
    def __init__(self, container: 'Tracks', index: int):
        self._container = container
        self._index = index

    @property
    def id(self) -> int:
        return int(self._container.ids[self._index])

    @property
    def xyz(self) -> np.ndarray:
        return self._container.xyzs[self._index]

    @xyz.setter
    def xyz(self, value: np.ndarray):
        self._container.xyzs[self._index] = value

    @property
    def is_initialized(self) -> bool:
        return bool(self._container.is_initialized[self._index])

    @is_initialized.setter
    def is_initialized(self, value: bool):
        self._container.is_initialized[self._index] = value

    @property
    def observations(self) -> np.ndarray:
        return self._container.observations[self._index]

    @observations.setter
    def observations(self, value: np.ndarray):
        self._container.observations[self._index] = value


class Tracks:
    """Struct-of-Arrays container for track points and their observations.

    Each observation row is (image_id, feature_id), the feature indexing into
    `images.features_undist[image_id]`.
    """

    def __init__(self, num_tracks: int = 0):
        self.num_tracks = num_tracks

        self.ids = np.arange(num_tracks, dtype=np.int32)
        self.is_initialized = np.zeros(num_tracks, dtype=bool)

        # 3D positions (N, 3)
        self.xyzs = np.zeros((num_tracks, 3), dtype=np.float64)

        # Variable-length observations (list of arrays)
        self.observations = [np.zeros((0, 2), dtype=np.int32) for _ in range(num_tracks)]

    def __len__(self) -> int:
        return self.num_tracks

    def __getitem__(self, index: int) -> TrackView:
        """Get a view of a single track."""
        if index < 0 or index >= self.num_tracks:
            raise IndexError(f"Track index {index} out of range [0, {self.num_tracks})")
        return TrackView(self, index)

    def __iter__(self):
        for idx in range(self.num_tracks):
            yield TrackView(self, idx)

    def append(self,
               xyz: Optional[np.ndarray] = None,
               is_initialized: bool = False,
               observations: Optional[np.ndarray] = None) -> int:
        """Append a new track to the container.

        Returns:
            Id (index) of the newly added track.
        """
        idx = self.num_tracks
        self.num_tracks += 1

        self.ids = np.append(self.ids, idx).astype(np.int32)
        self.is_initialized = np.append(self.is_initialized, is_initialized)

        xyz_val = xyz if xyz is not None else np.zeros(3)
        self.xyzs = np.vstack([self.xyzs, np.asarray(xyz_val, dtype=np.float64).reshape(1, 3)])

        obs_val = observations if observations is not None else np.zeros((0, 2), dtype=np.int32)
        self.observations.append(np.asarray(obs_val, dtype=np.int32).reshape(-1, 2))

        return idx


# ============================================================================
# Image Pair
# ============================================================================

class ImagePair:
    def __init__(
        self,
        image_id1: int = -1,
        image_id2: int = -1,
        is_valid: bool = True,
        weight: float = 0.0,
        rotation: Optional[np.ndarray] = None,
        translation: Optional[np.ndarray] = None,
    ):
        self.image_id1 = image_id1
        self.image_id2 = image_id2
        self.is_valid = is_valid
        self.weight = weight
        # below are in the form of image 1 to image 2 (cam2_from_cam1), quaternion in xyzw
        self.rotation = rotation if rotation is not None else np.array([0., 0., 0., 1.])
        self.translation = np.asarray(translation, dtype=np.float64) if translation is not None else np.zeros(3)

    def set_cam1to2(self, cam1to2: np.ndarray) -> None:
        rotation_matrix = cam1to2[:3, :3]
        self.rotation = R.from_matrix(rotation_matrix).as_quat(canonical=False)
        self.translation = cam1to2[:3, 3].copy()


# ============================================================================
# Camera Models
# ============================================================================

class CameraModelId(Enum):
    INVALID = -1
    SIMPLE_PINHOLE = 0
    PINHOLE = 1
    SIMPLE_RADIAL = 2
    RADIAL = 3
    OPENCV = 4

def get_camera_model_info(model_id):
    # focal / pp / k / p list which entries of the params vector hold each quantity
    if model_id == CameraModelId.SIMPLE_PINHOLE:
        return {'name': 'SIMPLE_PINHOLE', 'num_params': 3, 'focal': [0], 'pp': [1, 2], 'k': [], 'p': []}
    elif model_id == CameraModelId.PINHOLE:
        return {'name': 'PINHOLE', 'num_params': 4, 'focal': [0, 1], 'pp': [2, 3], 'k': [], 'p': []}
    elif model_id == CameraModelId.SIMPLE_RADIAL:
        return {'name': 'SIMPLE_RADIAL', 'num_params': 4, 'focal': [0], 'pp': [1, 2], 'k': [3], 'p': []}
    elif model_id == CameraModelId.RADIAL:
        return {'name': 'RADIAL', 'num_params': 5, 'focal': [0], 'pp': [1, 2], 'k': [3, 4], 'p': []}
    elif model_id == CameraModelId.OPENCV:
        return {'name': 'OPENCV', 'num_params': 8, 'focal': [0, 1], 'pp': [2, 3], 'k': [4, 5], 'p': [6, 7]}
    else:
        raise NotImplementedError(f"Unsupported camera model {model_id}")


class CameraView:
    """Lightweight read-only view over the Cameras container."""

    def __init__(self, container: 'Cameras', index: int):
        self._container = container
        self._index = index

    @property
    def id(self) -> int:
        # Camera ID is the same as index
        return self._index

    @property
    def model_id(self) -> CameraModelId:
        return CameraModelId(int(self._container.model_ids[self._index]))

    @property
    def model(self) -> str:
        return get_camera_model_info(self.model_id)['name']

    @property
    def width(self) -> int:
        return int(self._container.widths[self._index])

    @property
    def height(self) -> int:
        return int(self._container.heights[self._index])

    @property
    def has_prior_focal_length(self) -> bool:
        return bool(self._container.has_prior_focal_length[self._index])

    @property
    def focal_length(self) -> np.ndarray:
        return self._container.focal_lengths[self._index]

    @property
    def principal_point(self) -> np.ndarray:
        return self._container.principal_points[self._index]

    def img2cam(self, xy: np.ndarray) -> np.ndarray:
        return self._container.img2cam(xy, self._index)


class Cameras:
    """Struct-of-Arrays container for camera intrinsics.

    Read-only for global positioning; only `has_prior_focal_length` matters
    there, it decides which robust loss the camera's point terms receive.
    """

    def __init__(self, num_cameras: int = 0):
        self.num_cameras = num_cameras
        self.model_ids = np.full(num_cameras, CameraModelId.INVALID.value, dtype=np.int32)
        self.widths = np.zeros(num_cameras, dtype=np.int32)
        self.heights = np.zeros(num_cameras, dtype=np.int32)
        self.has_prior_focal_length = np.zeros(num_cameras, dtype=bool)
        self.focal_lengths = np.zeros((num_cameras, 2), dtype=np.float64)
        self.principal_points = np.zeros((num_cameras, 2), dtype=np.float64)
        self.k_params = np.zeros((num_cameras, 2), dtype=np.float64)
        self.p_params = np.zeros((num_cameras, 2), dtype=np.float64)

    def __len__(self) -> int:
        return self.num_cameras

    def __getitem__(self, index: int) -> CameraView:
        if index < 0 or index >= self.num_cameras:
            raise IndexError(f"Camera index {index} out of range [0, {self.num_cameras})")
        return CameraView(self, index)

    def __iter__(self):
        for idx in range(self.num_cameras):
            yield CameraView(self, idx)

    def append(self,
               model_id: CameraModelId = CameraModelId.SIMPLE_PINHOLE,
               params: Optional[Union[np.ndarray, List[float]]] = None,
               width: int = 0,
               height: int = 0,
               has_prior_focal_length: bool = False) -> int:
        idx = self.num_cameras
        self.num_cameras += 1
        self.model_ids = np.append(self.model_ids, model_id.value).astype(np.int32)
        self.widths = np.append(self.widths, width).astype(np.int32)
        self.heights = np.append(self.heights, height).astype(np.int32)
        self.has_prior_focal_length = np.append(self.has_prior_focal_length, has_prior_focal_length)
        self.focal_lengths = np.vstack([self.focal_lengths, np.ones((1, 2))])
        self.principal_points = np.vstack([self.principal_points, np.zeros((1, 2))])
        self.k_params = np.vstack([self.k_params, np.zeros((1, 2))])
        self.p_params = np.vstack([self.p_params, np.zeros((1, 2))])
        if params is not None:
            self.set_params(idx, params)
        return idx

    def set_params(self, index: int, params: Union[np.ndarray, List[float]]):
        params = np.asarray(params, dtype=np.float64)
        info = get_camera_model_info(CameraModelId(int(self.model_ids[index])))
        if len(params) != info['num_params']:
            raise ValueError(f"{info['name']} expects {info['num_params']} params, got {len(params)}")

        focal_indices = info['focal']
        if len(focal_indices) == 1:
            f = params[focal_indices[0]]
            self.focal_lengths[index] = np.array([f, f], dtype=np.float64)
        else:
            self.focal_lengths[index] = params[focal_indices]

        self.principal_points[index] = params[info['pp']]

        self.k_params[index] = 0
        if len(info['k']) > 0:
            self.k_params[index, :len(info['k'])] = params[info['k']]

        self.p_params[index] = 0
        if len(info['p']) == 2:
            self.p_params[index] = params[info['p']]

    def img2cam(self, xy: np.ndarray, camera_index: int) -> np.ndarray:
        """Pixel coordinates (K, 2) to normalized image coordinates (K, 2)."""
        xy = np.asarray(xy, dtype=np.float64).reshape(-1, 2)
        model_id = CameraModelId(int(self.model_ids[camera_index]))
        focal_length = self.focal_lengths[camera_index]
        principal_point = self.principal_points[camera_index]
        k = self.k_params[camera_index]
        p = self.p_params[camera_index]

        if model_id == CameraModelId.SIMPLE_PINHOLE:
            return (xy - principal_point) / focal_length[0]
        elif model_id == CameraModelId.PINHOLE:
            return (xy - principal_point) / focal_length
        elif model_id in (CameraModelId.SIMPLE_RADIAL, CameraModelId.RADIAL, CameraModelId.OPENCV):
            if len(xy) == 0:
                return np.zeros((0, 2))
            K = np.array([[focal_length[0], 0, principal_point[0]],
                          [0, focal_length[1], principal_point[1]],
                          [0, 0, 1]], dtype=np.float64)
            if model_id == CameraModelId.SIMPLE_RADIAL:
                dist_coeffs = np.array([k[0], 0, 0, 0], dtype=np.float64)
            elif model_id == CameraModelId.RADIAL:
                dist_coeffs = np.array([k[0], k[1], 0, 0], dtype=np.float64)
            else:
                dist_coeffs = np.array([k[0], k[1], p[0], p[1]], dtype=np.float64)
            return cv2.undistortPoints(np.expand_dims(xy, axis=1), K, dist_coeffs).reshape(-1, 2)
        else:
            raise NotImplementedError(f"Unsupported camera model {model_id}")


# ============================================================================
# View Graph
# ============================================================================

class ViewGraph:
    def __init__(self):
        self.image_pairs = {} # includes: (image_id1, image_id2) -> ImagePair

    @property
    def num_pairs(self) -> int:
        return len(self.image_pairs)

    def add_pair(self, image_pair: ImagePair):
        self.image_pairs[(image_pair.image_id1, image_pair.image_id2)] = image_pair

