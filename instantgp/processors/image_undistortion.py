import numpy as np

def UndistortImages(cameras, images, image_ids=None):
    """Compute unit bearings in the camera frame from pixel features.

    Args:
        cameras: Cameras container
        images: Images container, `features_undist` is overwritten in place
        image_ids: optional subset of images to process, all images by default
    """
    if image_ids is None:
        image_ids = range(len(images))
    for image_id in image_ids:
        cam_id = images.cam_ids[image_id]
        if cam_id < 0:
            continue
        features = images.features[image_id]
        if len(features) == 0:
            images.features_undist[image_id] = np.zeros((0, 3))
            continue

        # image coordinates to normalized camera coordinates
        features_undist = cameras.img2cam(features, cam_id)
        features_undist = np.hstack([features_undist, np.ones((features_undist.shape[0], 1))])
        features_undist = features_undist / np.linalg.norm(features_undist, axis=1, keepdims=True)

        images.features_undist[image_id] = features_undist
