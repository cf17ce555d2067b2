"""Tests for the configuration layer."""

import json

import pytest

from instantgp.controllers.config import Config, ConstraintType, GlobalPositionerOptions, OptimizationBaseOptions
from instantgp.utils.least_squares import HuberLoss


class TestGlobalPositionerOptions:

    def test_defaults(self):
        options = GlobalPositionerOptions()
        assert options.constraint_type == ConstraintType.ONLY_POINTS
        assert options.seed == 1
        assert options.min_num_view_per_track == 3
        assert options.min_num_images_gpu_solver == 50
        assert options.gpu_index == '-1'
        assert options.thres_loss_function == pytest.approx(0.1)
        assert options.cameras_bbox == ((-100., -100., -100.), (100., 100., 100.))
        assert not options.use_prior_position

    def test_defaults_match_config(self):
        assert Config().GetGlobalPositionerOptions() == GlobalPositionerOptions()

    def test_options_are_immutable(self):
        options = GlobalPositionerOptions()
        with pytest.raises(AttributeError):
            options.seed = 2

    def test_constraint_type_from_string(self):
        options = GlobalPositionerOptions.from_dict({'constraint_type': 'points_and_cameras_balanced'})
        assert options.constraint_type == ConstraintType.POINTS_AND_CAMERAS_BALANCED
        assert options.UsesCameraConstraints() and options.UsesPointConstraints()

    def test_invalid_constraint_type(self):
        with pytest.raises(ValueError):
            GlobalPositionerOptions.from_dict({'constraint_type': 'ONLY_LINES'})

    def test_unknown_option(self):
        with pytest.raises(ValueError):
            GlobalPositionerOptions.from_dict({'random_positions': True})

    @pytest.mark.parametrize('bbox', [((0, 0, 0), (0, 1, 1)), ((1, 1), (2, 2)), 'box'])
    def test_invalid_bounding_box(self, bbox):
        with pytest.raises(ValueError):
            GlobalPositionerOptions(cameras_bbox=bbox)

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            GlobalPositionerOptions(constraint_reweight_scale=0.)
        with pytest.raises(ValueError):
            GlobalPositionerOptions(thres_loss_function=-1.)
        with pytest.raises(ValueError):
            GlobalPositionerOptions(min_num_view_per_track=1)

    def test_gpu_index_is_a_string(self):
        assert GlobalPositionerOptions(gpu_index=2).gpu_index == '2'

    def test_loss_function(self):
        loss = OptimizationBaseOptions(thres_loss_function=0.5).CreateLossFunction()
        assert isinstance(loss, HuberLoss)
        assert loss.threshold == 0.5


class TestConfig:

    def test_overrides(self, tmp_path):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps({'GLOBAL_POSITIONER_OPTIONS': {'constraint_type': 'ONLY_CAMERAS', 'seed': 7},
                                    'MAPPER_OPTIONS': {'normalize_reconstruction': True}}))
        config = Config(str(path))
        options = config.GetGlobalPositionerOptions()
        assert options.constraint_type == ConstraintType.ONLY_CAMERAS
        assert options.seed == 7
        assert config.MAPPER_OPTIONS['normalize_reconstruction']

    def test_defaults_are_not_shared(self):
        first = Config()
        first.GLOBAL_POSITIONER_OPTIONS['seed'] = 99
        assert Config().GLOBAL_POSITIONER_OPTIONS['seed'] == 1

    @pytest.mark.parametrize('overrides', [{'UNKNOWN_OPTIONS': {}}, {'GLOBAL_POSITIONER_OPTIONS': {'unknown': 1}}])
    def test_unknown_keys(self, tmp_path, overrides):
        path = tmp_path / 'config.json'
        path.write_text(json.dumps(overrides))
        with pytest.raises(ValueError):
            Config(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValueError):
            Config(str(tmp_path / 'missing.json'))
