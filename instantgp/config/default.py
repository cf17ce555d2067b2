CONFIG = {
    'GLOBAL_POSITIONER_OPTIONS': {
        'generate_random_positions': True,
        'generate_random_points': True,
        'generate_scales': True,
        'optimize_positions': True,
        'optimize_points': True,
        'optimize_scales': True,
        'use_gpu': True,
        'gpu_index': '-1',
        'min_num_images_gpu_solver': 50,
        'min_num_view_per_track': 3,
        'seed': 1,
        'cameras_bbox': [[-100., -100., -100.], [100., 100., 100.]],
        'points_bbox': [[-100., -100., -100.], [100., 100., 100.]],
        'constraint_type': 'ONLY_POINTS',
        'constraint_reweight_scale': 1.,
        'use_prior_position': False,
        'thres_loss_function': 1e-1,
        'max_num_iterations': 100,
        'function_tolerance': 1e-6,
        'gradient_tolerance': 1e-10,
        'parameter_tolerance': 1e-8,
        'minimizer_progress_to_stdout': False,
    },
    'POSE_PRIOR_OPTIONS': {
        'overwrite_position_priors_covariance': False,
        'prior_position_std_x': 1.,
        'prior_position_std_y': 1.,
        'prior_position_std_z': 1.,
    },
    'MAPPER_OPTIONS': {
        'undistort_features': True,
        'normalize_reconstruction': False,
        'normalize_extent': 10.,
        'normalize_p0': 0.1,
        'normalize_p1': 0.9,
    },
}
