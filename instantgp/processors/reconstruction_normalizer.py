import numpy as np

def NormalizeReconstruction(images, tracks, image_ids=None, extent=10., p0=0.1, p1=0.9):
    """Center the camera positions at their robust mean and scale to `extent`.

    The robust range is taken between the p0 and p1 percentiles of the camera
    centers (per axis). Only the images in `image_ids` (registered images by
    default) define the transform and get updated; all track points follow.
    Returns the applied (mean_coord, scale).
    """
    if image_ids is None:
        image_ids = images.get_registered_indices()
    image_ids = np.asarray(image_ids, dtype=np.int64)
    if len(image_ids) == 0:
        return np.zeros(3), 1.

    coords = images.get_centers_batch(image_ids)
    coords_sorted = np.sort(coords, axis=0)
    P0 = int(p0 * (coords.shape[0] - 1)) if coords.shape[0] > 3 else 0
    P1 = int(p1 * (coords.shape[0] - 1)) if coords.shape[0] > 3 else coords.shape[0] - 1
    bbox_min = coords_sorted[P0]
    bbox_max = coords_sorted[P1]
    mean_coord = np.mean(coords_sorted[P0:P1+1], axis=0)

    scale = 1.
    old_extent = np.linalg.norm(bbox_max - bbox_min)
    if old_extent >= 1e-6:
        scale = extent / old_extent

    coords = (coords - mean_coord) * scale
    images.set_centers_batch(coords, image_ids)
    tracks.xyzs[:] = (tracks.xyzs - mean_coord) * scale
    return mean_coord, scale
