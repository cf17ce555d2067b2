import copy
import json
import os
from dataclasses import dataclass, fields
from enum import Enum

from instantgp.config.default import CONFIG
from instantgp.utils.least_squares import HuberLoss


class ConstraintType(Enum):
    ONLY_POINTS = 0
    ONLY_CAMERAS = 1
    POINTS_AND_CAMERAS_BALANCED = 2
    POINTS_AND_CAMERAS = 3


@dataclass(frozen=True)
class OptimizationBaseOptions:
    thres_loss_function: float = 1e-1
    max_num_iterations: int = 100
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    minimizer_progress_to_stdout: bool = False

    def CreateLossFunction(self):
        return HuberLoss(self.thres_loss_function)

    @classmethod
    def from_dict(cls, options: dict):
        names = {f.name for f in fields(cls)}
        unknown = set(options) - names
        if unknown:
            raise ValueError(f"Unknown options for {cls.__name__}: {sorted(unknown)}")
        return cls(**options)

    def __post_init__(self):
        if self.thres_loss_function <= 0:
            raise ValueError(f"thres_loss_function has to be positive: {self.thres_loss_function}")
        if self.max_num_iterations < 1:
            raise ValueError(f"max_num_iterations has to be at least 1: {self.max_num_iterations}")


def _ParseBoundingBox(name, bbox):
    try:
        bbox_min, bbox_max = (tuple(float(v) for v in corner) for corner in bbox)
    except (TypeError, ValueError):
        raise ValueError(f"{name} has to be a pair of 3D corners, got {bbox}")
    if len(bbox_min) != 3 or len(bbox_max) != 3:
        raise ValueError(f"{name} has to be a pair of 3D corners, got {bbox}")
    if any(lo >= hi for lo, hi in zip(bbox_min, bbox_max)):
        raise ValueError(f"{name} min corner has to be below the max corner, got {bbox}")
    return bbox_min, bbox_max


@dataclass(frozen=True)
class GlobalPositionerOptions(OptimizationBaseOptions):
    generate_random_positions: bool = True
    generate_random_points: bool = True
    generate_scales: bool = True
    optimize_positions: bool = True
    optimize_points: bool = True
    optimize_scales: bool = True
    use_gpu: bool = True
    gpu_index: str = '-1'
    min_num_images_gpu_solver: int = 50
    min_num_view_per_track: int = 3
    seed: int = 1
    cameras_bbox: tuple = ((-100., -100., -100.), (100., 100., 100.))
    points_bbox: tuple = ((-100., -100., -100.), (100., 100., 100.))
    constraint_type: ConstraintType = ConstraintType.ONLY_POINTS
    constraint_reweight_scale: float = 1.
    use_prior_position: bool = False

    def __post_init__(self):
        super().__post_init__()
        constraint_type = self.constraint_type
        if isinstance(constraint_type, str):
            try:
                constraint_type = ConstraintType[constraint_type.upper()]
            except KeyError:
                raise ValueError(f"Unknown constraint type: {self.constraint_type}, "
                                 f"expected one of {[t.name for t in ConstraintType]}")
        elif not isinstance(constraint_type, ConstraintType):
            raise ValueError(f"Unknown constraint type: {constraint_type}")
        object.__setattr__(self, 'constraint_type', constraint_type)
        object.__setattr__(self, 'cameras_bbox', _ParseBoundingBox('cameras_bbox', self.cameras_bbox))
        object.__setattr__(self, 'points_bbox', _ParseBoundingBox('points_bbox', self.points_bbox))
        object.__setattr__(self, 'gpu_index', str(self.gpu_index))
        if self.constraint_reweight_scale <= 0:
            raise ValueError(f"constraint_reweight_scale has to be positive: {self.constraint_reweight_scale}")
        if self.min_num_view_per_track < 2:
            raise ValueError(f"min_num_view_per_track has to be at least 2: {self.min_num_view_per_track}")

    def UsesCameraConstraints(self):
        return self.constraint_type != ConstraintType.ONLY_POINTS

    def UsesPointConstraints(self):
        return self.constraint_type != ConstraintType.ONLY_CAMERAS


class Config:
    """Option dictionaries for the positioning stage.

    Starts from the defaults in config/default.py; a JSON file passed as
    manual_config_name overrides individual options, e.g.

        {"GLOBAL_POSITIONER_OPTIONS": {"constraint_type": "ONLY_CAMERAS"}}
    """
    def __init__(self, manual_config_name=None):
        self.OPTIONS = copy.deepcopy(CONFIG)
        if manual_config_name is not None:
            self.LoadOverrides(manual_config_name)

    def LoadOverrides(self, path):
        if not os.path.exists(path):
            raise ValueError(f"Config file not found: {path}")
        with open(path, 'r') as f:
            overrides = json.load(f)
        for section, values in overrides.items():
            if section not in self.OPTIONS:
                raise ValueError(f"Unknown config section: {section}")
            for key, value in values.items():
                if key not in self.OPTIONS[section]:
                    raise ValueError(f"Unknown option {key} in config section {section}")
                self.OPTIONS[section][key] = value

    @property
    def GLOBAL_POSITIONER_OPTIONS(self):
        return self.OPTIONS['GLOBAL_POSITIONER_OPTIONS']

    @property
    def POSE_PRIOR_OPTIONS(self):
        return self.OPTIONS['POSE_PRIOR_OPTIONS']

    @property
    def MAPPER_OPTIONS(self):
        return self.OPTIONS['MAPPER_OPTIONS']

    def GetGlobalPositionerOptions(self):
        return GlobalPositionerOptions.from_dict(self.GLOBAL_POSITIONER_OPTIONS)
