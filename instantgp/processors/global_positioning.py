import numpy as np

from instantgp.controllers.config import ConstraintType, GlobalPositionerOptions
from instantgp.scene.defs import Cameras, Images, Tracks, ViewGraph
from instantgp.utils.cost_function import PairwiseDirectionError, PositionPriorError
from instantgp.utils.least_squares import (ParameterBlockOrdering, Problem, ScaledLoss, Solve,
                                           SolverOptions, SolverStrategy, SolverSummary, TerminationType)
from instantgp.utils.log import log, warn
from instantgp.utils.sim3 import AlignBoundingBox, Sim3d

# lower bound of every scale variable
MIN_SCALE = 1e-5
EPS = 1e-12


class GlobalPositioner():
    """Jointly estimates camera centers and track points from directions.

    Camera orientations are fixed. Every constraint says that a unit direction
    d (known in the world frame) points from one position to another, up to an
    unknown positive scale:

        camera to camera:  d = -R2^T t12,   r = d - s * (c2 - c1)
        point to camera:   d = R^T f,       r = d - s * (X - c)

    The positions are recovered up to a global similarity.
    """

    def __init__(self, options: GlobalPositionerOptions = None):
        self.options = options if options is not None else GlobalPositionerOptions()
        self.problem = None

    def GetOptions(self):
        return self.options

    def Solve(self, view_graph: ViewGraph, cameras: Cameras, images: Images, tracks: Tracks) -> bool:
        opts = self.options
        if len(images.get_registered_indices()) == 0:
            log("ERROR: Number of registered images = 0")
            return False
        images.Validate(cameras)

        usable_pairs = self.CollectUsablePairs(view_graph, images)
        valid_tracks = self.CollectValidTracks(images, tracks)
        if opts.constraint_type == ConstraintType.ONLY_CAMERAS and len(usable_pairs) == 0:
            log("ERROR: Number of usable image pairs = 0")
            return False
        if opts.constraint_type == ConstraintType.ONLY_POINTS and len(valid_tracks) == 0:
            log("ERROR: Number of tracks = 0")
            return False
        if len(usable_pairs) == 0 and len(valid_tracks) == 0:
            log("ERROR: Neither image pairs nor tracks can constrain the positions")
            return False

        log("Setting up the global positioner problem")
        self.SetupProblem(images, tracks, usable_pairs, valid_tracks)
        self.InitializeRandomPositions(view_graph, images, tracks)
        if opts.UsesCameraConstraints():
            self.AddCameraToCameraConstraints(view_graph, images)
        if opts.UsesPointConstraints():
            self.AddPointToCameraConstraints(cameras, images, tracks)
        if opts.use_prior_position:
            self.AddPositionPriorConstraints(images)
        if self.problem.NumResidualBlocks() == 0:
            log("ERROR: No residuals were added to the global positioner problem")
            self.ClearProblem()
            return False

        self.AddCamerasAndPointsToParameterGroups(images, tracks)
        self.ParameterizeVariables(images, tracks)

        log("Solving the global positioner problem")
        solver_options = self.CreateSolverOptions(images)
        summary = SolverSummary()
        Solve(solver_options, self.problem, summary)
        log(summary.BriefReport())

        if not summary.IsSolutionUsable():
            log(f"ERROR: Global positioning failed: {summary.message}")
            self.ClearProblem()
            return False
        if summary.termination_type == TerminationType.NO_CONVERGENCE:
            warn("Global positioning did not converge, keeping the last iterate")

        self.ConvertResults(images, tracks)
        self.ClearProblem()
        return True

    def CollectUsablePairs(self, view_graph, images):
        num_images = len(images)
        usable_pairs = []
        for pair in view_graph.image_pairs.values():
            if not pair.is_valid:
                continue
            id1, id2 = int(pair.image_id1), int(pair.image_id2)
            if id1 == id2 or not (0 <= id1 < num_images and 0 <= id2 < num_images):
                continue
            if not (images.is_registered[id1] and images.is_registered[id2]):
                continue
            translation = np.asarray(pair.translation, dtype=np.float64)
            if not np.all(np.isfinite(translation)) or np.linalg.norm(translation) < EPS:
                continue
            usable_pairs.append(pair)
        return usable_pairs

    def CollectValidTracks(self, images, tracks):
        """Track ids with enough registered observations over >= 2 images."""
        num_images = len(images)
        min_views = self.options.min_num_view_per_track
        valid_tracks = []
        self.num_valid_observations = 0
        for track_id in range(len(tracks)):
            image_ids = tracks.observations[track_id][:, 0]
            in_range = (image_ids >= 0) & (image_ids < num_images)
            image_ids = image_ids[in_range]
            image_ids = image_ids[images.is_registered[image_ids]]
            if len(image_ids) < min_views or len(np.unique(image_ids)) < 2:
                continue
            valid_tracks.append(track_id)
            self.num_valid_observations += len(image_ids)
        return valid_tracks

    def SetupProblem(self, images, tracks, usable_pairs, valid_tracks):
        opts = self.options
        self.random_generator = np.random.default_rng(opts.seed)
        self.problem = Problem()
        self.usable_pairs = usable_pairs if opts.UsesCameraConstraints() else []
        self.valid_tracks = valid_tracks if opts.UsesPointConstraints() else []

        # parameter blocks are row views into these arenas, the views are kept
        # so that the problem sees the same block object every time
        self.centers = images.get_centers_batch()
        self.center_blocks = [self.centers[i] for i in range(len(images))]
        self.points = tracks.xyzs.astype(np.float64, copy=True).reshape(-1, 3)
        self.point_blocks = [self.points[i] for i in range(len(tracks))]

        capacity = len(self.usable_pairs)
        if opts.UsesPointConstraints():
            capacity += self.num_valid_observations
        self.scales = np.ones(capacity, dtype=np.float64)
        self.scale_blocks = []

        self.cameras_bbox_from_prior_frame = Sim3d()

    def NewScale(self, value):
        index = len(self.scale_blocks)
        if index >= len(self.scales):
            raise RuntimeError(f"Scale arena is full ({len(self.scales)} scales)")
        self.scales[index] = value
        block = self.scales[index:index + 1]
        self.scale_blocks.append(block)
        return block

    def InitializeRandomPositions(self, view_graph, images, tracks):
        opts = self.options
        constrained = np.zeros(len(images), dtype=bool)
        for pair in self.usable_pairs:
            constrained[pair.image_id1] = True
            constrained[pair.image_id2] = True
        for track_id in self.valid_tracks:
            image_ids = tracks.observations[track_id][:, 0]
            image_ids = image_ids[(image_ids >= 0) & (image_ids < len(images))]
            constrained[image_ids[images.is_registered[image_ids]]] = True
        self.constrained_positions = constrained

        if opts.generate_random_positions and opts.optimize_positions:
            bbox_min, bbox_max = (np.array(corner) for corner in opts.cameras_bbox)
            # one draw per image regardless of its state keeps the stream stable
            draws = self.random_generator.uniform(bbox_min, bbox_max, size=(len(images), 3))
            self.centers[constrained] = draws[constrained]

            prior_ids = np.where(constrained & images.has_pose_prior())[0]
            if len(prior_ids) > 0:
                prior_positions = np.array([images.pose_priors[i].position for i in prior_ids])
                self.cameras_bbox_from_prior_frame = AlignBoundingBox(prior_positions, opts.cameras_bbox)
                self.centers[prior_ids] = self.cameras_bbox_from_prior_frame.TransformPoints(prior_positions)
                log(f"Initialized {len(prior_ids)} positions from pose priors, "
                    f"alignment {self.cameras_bbox_from_prior_frame}")

        if len(self.valid_tracks) > 0:
            track_ids = np.array(self.valid_tracks)
            if opts.generate_random_points and opts.optimize_points:
                bbox_min, bbox_max = (np.array(corner) for corner in opts.points_bbox)
                self.points[track_ids] = self.random_generator.uniform(bbox_min, bbox_max, size=(len(track_ids), 3))
            else:
                self.points[track_ids] = self.cameras_bbox_from_prior_frame.TransformPoints(tracks.xyzs[track_ids])

        log(f"Constrained positions: {int(constrained.sum())}")

    def AddCameraToCameraConstraints(self, view_graph, images):
        opts = self.options
        loss_function = opts.CreateLossFunction()
        for pair in self.usable_pairs:
            image_id1, image_id2 = int(pair.image_id1), int(pair.image_id2)
            R2 = images.world2cams[image_id2, :3, :3]
            direction = -(R2.T @ pair.translation)
            direction = direction / np.linalg.norm(direction)

            scale_value = 1.
            if not opts.generate_scales:
                diff = self.centers[image_id2] - self.centers[image_id1]
                sq_norm = diff @ diff
                if sq_norm > EPS:
                    scale_value = max(MIN_SCALE, direction @ diff / sq_norm)
            scale = self.NewScale(scale_value)

            self.problem.AddResidualBlock(PairwiseDirectionError(direction), loss_function,
                                          [self.center_blocks[image_id1], self.center_blocks[image_id2], scale])
            self.problem.SetParameterLowerBound(scale, 0, MIN_SCALE)

        log(f"{self.problem.NumResidualBlocks()} camera to camera constraints were added to the position estimation problem.")

    def AddPointToCameraConstraints(self, cameras, images, tracks):
        opts = self.options
        num_cam_to_cam = self.problem.NumResidualBlocks()
        num_pt_to_cam = self.num_valid_observations

        loss_function = opts.CreateLossFunction()
        weight_scale_pt = 1.
        if opts.constraint_type == ConstraintType.POINTS_AND_CAMERAS_BALANCED and num_cam_to_cam > 0 and num_pt_to_cam > 0:
            weight_scale_pt = opts.constraint_reweight_scale * num_cam_to_cam / num_pt_to_cam
        log(f"Point to camera weight scaled: {weight_scale_pt}")

        if opts.constraint_type == ConstraintType.POINTS_AND_CAMERAS_BALANCED:
            self.loss_function_ptcam_calibrated = ScaledLoss(loss_function, weight_scale_pt)
        else:
            self.loss_function_ptcam_calibrated = loss_function
        self.loss_function_ptcam_uncalibrated = ScaledLoss(loss_function, 0.5 * weight_scale_pt)

        for track_id in self.valid_tracks:
            self.AddTrackToProblem(track_id, cameras, images, tracks)

        log(f"{self.problem.NumResidualBlocks() - num_cam_to_cam} point to camera constraints were added to the position estimation problem.")

    def AddTrackToProblem(self, track_id, cameras, images, tracks):
        opts = self.options
        for image_id, feature_id in tracks.observations[track_id]:
            if image_id < 0 or image_id >= len(images) or not images.is_registered[image_id]:
                continue
            features = images.features_undist[image_id]
            if feature_id < 0 or feature_id >= len(features):
                warn(f"Track {track_id} references missing feature {feature_id} of image {image_id}")
                continue
            feature = np.asarray(features[feature_id], dtype=np.float64)
            if feature.shape[0] == 2:
                feature = np.append(feature, 1.)
            if not np.all(np.isfinite(feature)) or np.linalg.norm(feature) < EPS:
                warn(f"Skipping non-finite bearing of track {track_id} in image {image_id}")
                continue

            R = images.world2cams[image_id, :3, :3]
            direction = R.T @ feature
            direction = direction / np.linalg.norm(direction)

            scale_value = 1.
            if not opts.generate_scales and tracks.is_initialized[track_id]:
                trans_calc = self.points[track_id] - self.centers[image_id]
                sq_norm = trans_calc @ trans_calc
                if sq_norm > EPS:
                    scale_value = max(MIN_SCALE, direction @ trans_calc / sq_norm)
            scale = self.NewScale(scale_value)

            if cameras.has_prior_focal_length[images.cam_ids[image_id]]:
                loss_function = self.loss_function_ptcam_calibrated
            else:
                loss_function = self.loss_function_ptcam_uncalibrated
            self.problem.AddResidualBlock(PairwiseDirectionError(direction), loss_function,
                                          [self.center_blocks[image_id], self.point_blocks[track_id], scale])
            self.problem.SetParameterLowerBound(scale, 0, MIN_SCALE)

    def AddPositionPriorConstraints(self, images):
        prior_frame_to_bbox = self.cameras_bbox_from_prior_frame
        num_added = 0
        for image_id in np.where(self.constrained_positions & images.has_pose_prior())[0]:
            prior = images.pose_priors[image_id]
            covariance = prior_frame_to_bbox.TransformCovariance(prior.position_covariance)
            try:
                sqrt_information = np.linalg.inv(np.linalg.cholesky(covariance))
            except np.linalg.LinAlgError:
                warn(f"Pose prior covariance of image {image_id} is not positive definite, skipping")
                continue
            position = prior_frame_to_bbox.TransformPoints(prior.position)
            self.problem.AddResidualBlock(PositionPriorError(position, sqrt_information), None,
                                          [self.center_blocks[image_id]])
            num_added += 1
        log(f"{num_added} position prior constraints were added to the position estimation problem.")

    def AddCamerasAndPointsToParameterGroups(self, images, tracks):
        self.parameter_ordering = ParameterBlockOrdering()
        # scales are eliminated first, then points, then cameras
        for scale in self.scale_blocks:
            self.parameter_ordering.AddElementToGroup(scale, 0)

        group_id = 1
        point_blocks = [self.point_blocks[t] for t in self.valid_tracks if self.problem.HasParameterBlock(self.point_blocks[t])]
        if len(point_blocks) > 0:
            for point in point_blocks:
                self.parameter_ordering.AddElementToGroup(point, group_id)
            group_id += 1

        for center in self.center_blocks:
            if self.problem.HasParameterBlock(center):
                self.parameter_ordering.AddElementToGroup(center, group_id)

    def ParameterizeVariables(self, images, tracks):
        opts = self.options
        if not opts.optimize_positions:
            for center in self.center_blocks:
                if self.problem.HasParameterBlock(center):
                    self.problem.SetParameterBlockConstant(center)
        if not opts.optimize_points:
            for track_id in self.valid_tracks:
                if self.problem.HasParameterBlock(self.point_blocks[track_id]):
                    self.problem.SetParameterBlockConstant(self.point_blocks[track_id])
        if not opts.optimize_scales:
            for scale in self.scale_blocks:
                self.problem.SetParameterBlockConstant(scale)

    def CreateSolverOptions(self, images):
        opts = self.options
        strategy = SolverStrategy.CPU_SPARSE
        device = 'cpu'
        num_registered = len(images.get_registered_indices())
        if opts.use_gpu and num_registered >= opts.min_num_images_gpu_solver:
            try:
                import torch
            except ImportError:
                torch = None
            if torch is not None and torch.cuda.is_available():
                strategy = SolverStrategy.GPU_SPARSE
                gpu_index = opts.gpu_index.split(',')[0].strip()
                device = 'cuda:0' if gpu_index in ('', '-1') else f'cuda:{gpu_index}'
            else:
                warn("Requested to use GPU for optimization, but no CUDA device is available. Falling back to CPU.")
        log(f"Using {strategy.name} solver on {device}")

        return SolverOptions(max_num_iterations=opts.max_num_iterations,
                             function_tolerance=opts.function_tolerance,
                             gradient_tolerance=opts.gradient_tolerance,
                             parameter_tolerance=opts.parameter_tolerance,
                             strategy=strategy,
                             device=device,
                             minimizer_progress_to_stdout=opts.minimizer_progress_to_stdout,
                             linear_solver_ordering=self.parameter_ordering)

    def ConvertResults(self, images, tracks):
        bbox_to_prior_frame = self.cameras_bbox_from_prior_frame.Inverse()

        image_ids = np.array([i for i, center in enumerate(self.center_blocks)
                              if self.problem.HasParameterBlock(center) and not self.problem.IsParameterBlockConstant(center)],
                             dtype=np.int64)
        if len(image_ids) > 0:
            images.set_centers_batch(bbox_to_prior_frame.TransformPoints(self.centers[image_ids]), image_ids)

        track_ids = np.array([t for t in self.valid_tracks
                              if self.problem.HasParameterBlock(self.point_blocks[t])
                              and not self.problem.IsParameterBlockConstant(self.point_blocks[t])],
                             dtype=np.int64)
        if len(track_ids) > 0:
            tracks.xyzs[track_ids] = bbox_to_prior_frame.TransformPoints(self.points[track_ids])
            tracks.is_initialized[track_ids] = True

        log(f"Updated {len(image_ids)} camera positions and {len(track_ids)} points")

    def ClearProblem(self):
        self.problem = None
        self.centers = self.points = self.scales = None
        self.center_blocks, self.point_blocks, self.scale_blocks = [], [], []
