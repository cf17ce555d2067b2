import time
import pickle
import numpy as np

from instantgp.scene.defs import ViewGraph
from instantgp.controllers.config import Config
from instantgp.processors.image_undistortion import UndistortImages
from instantgp.processors.reconstruction_normalizer import NormalizeReconstruction
from instantgp.processors.global_positioning import GlobalPositioner
from instantgp.utils.log import log

def save_checkpoint(path, view_graph, cameras, images, tracks):
    try:
        log(f"Saving checkpoint to {path}...")
        with open(path, 'wb') as f:
            pickle.dump((view_graph, cameras, images, tracks), f)
        log(f"Successfully saved checkpoint to {path}.")
        return True
    except OSError as e:
        log(f"Error saving checkpoint to {path}: {e}")
        return False

def load_checkpoint(path):
    try:
        log(f"Loading checkpoint from {path}...")
        with open(path, 'rb') as f:
            data = pickle.load(f)
        if len(data) != 4:
            raise ValueError("Unknown checkpoint format, expected (view_graph, cameras, images, tracks)")
        view_graph, cameras, images, tracks = data
        log(f"Successfully loaded checkpoint from {path}.")
        return view_graph, cameras, images, tracks
    except (OSError, pickle.UnpicklingError, EOFError, ValueError, TypeError) as e:
        log(f"Error loading checkpoint from {path}: {e}")
        return None, None, None, None

def UpdatePosePriorsCovariance(images, std):
    """Overwrite the position covariance of every pose prior with diag(std^2)."""
    covariance = np.diag(np.square(np.asarray(std, dtype=np.float64)))
    num_updated = 0
    for prior in images.pose_priors:
        if prior is None:
            continue
        prior.position_covariance = covariance.copy()
        num_updated += 1
    log(f"Overwrote the covariance of {num_updated} position priors")

def SolveGlobalPositioning(view_graph:ViewGraph, cameras, images, tracks, config:Config):
    log(f"Starting global positioning with {len(images)} images, {view_graph.num_pairs} pairs and {len(tracks)} tracks.")
    images.Validate(cameras)

    if config.POSE_PRIOR_OPTIONS['overwrite_position_priors_covariance']:
        UpdatePosePriorsCovariance(images, [config.POSE_PRIOR_OPTIONS['prior_position_std_x'],
                                            config.POSE_PRIOR_OPTIONS['prior_position_std_y'],
                                            config.POSE_PRIOR_OPTIONS['prior_position_std_z']])

    if config.MAPPER_OPTIONS['undistort_features']:
        missing = [image_id for image_id in images.get_registered_indices()
                   if len(images.features_undist[image_id]) == 0 and len(images.features[image_id]) > 0]
        if missing:
            log(f"Undistorting {len(missing)} images...")
            start_undistort = time.time()
            UndistortImages(cameras, images, missing)
            log(f"Undistortion took {time.time() - start_undistort:.4f} seconds")

    print('-------------------------------------')
    log('Running global positioning ...')
    print('-------------------------------------')
    start_time = time.time()
    gp_engine = GlobalPositioner(config.GetGlobalPositionerOptions())
    success = gp_engine.Solve(view_graph, cameras, images, tracks)
    log(f'Global positioning took: {time.time() - start_time:.4f} seconds')
    if not success:
        log('ERROR: Global positioning failed')
        return False

    if config.MAPPER_OPTIONS['normalize_reconstruction']:
        log("Normalizing reconstruction...")
        NormalizeReconstruction(images, tracks,
                                extent=config.MAPPER_OPTIONS['normalize_extent'],
                                p0=config.MAPPER_OPTIONS['normalize_p0'],
                                p1=config.MAPPER_OPTIONS['normalize_p1'])
    return True
