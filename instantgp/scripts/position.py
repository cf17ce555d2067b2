import sys
import time
from argparse import ArgumentParser

from instantgp.controllers.config import Config, ConstraintType
from instantgp.controllers.global_mapper import SolveGlobalPositioning, load_checkpoint, save_checkpoint

def run_positioning(argv=None):
    parser = ArgumentParser(description='Estimate global camera and point positions of a scene checkpoint')
    parser.add_argument('--checkpoint_path', required=True, help='Pickled (view_graph, cameras, images, tracks) to position')
    parser.add_argument('--output_path', required=True, help='Path to write the positioned checkpoint to')
    parser.add_argument('--constraint_type', choices=[t.name for t in ConstraintType], help='Which constraints to use')
    parser.add_argument('--manual_config_name', help='JSON file with option overrides')
    parser.add_argument('--seed', type=int, help='Seed of the random initialization')
    parser.add_argument('--disable_gpu', action='store_true', help='Always use the CPU solver')
    parser.add_argument('--normalize', action='store_true', help='Normalize the reconstruction after positioning')
    parser.add_argument('--prior_position_std_x', type=float, help='Overwrite the x std of all position priors')
    parser.add_argument('--prior_position_std_y', type=float, help='Overwrite the y std of all position priors')
    parser.add_argument('--prior_position_std_z', type=float, help='Overwrite the z std of all position priors')
    args = parser.parse_args(argv)

    try:
        config = Config(args.manual_config_name)
    except ValueError as e:
        print(f'Invalid configuration: {e}', file=sys.stderr)
        return 1

    # Override config with command line arguments
    if args.constraint_type is not None:
        config.GLOBAL_POSITIONER_OPTIONS['constraint_type'] = args.constraint_type
    if args.seed is not None:
        config.GLOBAL_POSITIONER_OPTIONS['seed'] = args.seed
    if args.disable_gpu:
        config.GLOBAL_POSITIONER_OPTIONS['use_gpu'] = False
    if args.normalize:
        config.MAPPER_OPTIONS['normalize_reconstruction'] = True
    stds = {'prior_position_std_x': args.prior_position_std_x,
            'prior_position_std_y': args.prior_position_std_y,
            'prior_position_std_z': args.prior_position_std_z}
    if any(std is not None for std in stds.values()):
        config.POSE_PRIOR_OPTIONS['overwrite_position_priors_covariance'] = True
        for key, std in stds.items():
            if std is None:
                continue
            if std <= 0:
                print(f'Invalid {key}: {std}, has to be positive', file=sys.stderr)
                return 1
            config.POSE_PRIOR_OPTIONS[key] = std

    try:
        config.GetGlobalPositionerOptions()
    except ValueError as e:
        print(f'Invalid configuration: {e}', file=sys.stderr)
        return 1

    view_graph, cameras, images, tracks = load_checkpoint(args.checkpoint_path)
    if view_graph is None:
        print('Invalid checkpoint path, please check the provided path', file=sys.stderr)
        return 1

    start_time = time.time()
    try:
        success = SolveGlobalPositioning(view_graph, cameras, images, tracks, config)
    except ValueError as e:
        print(f'Invalid scene: {e}', file=sys.stderr)
        return 1
    print('Global positioning done in', time.time() - start_time, 'seconds')
    if not success:
        return 1

    if not save_checkpoint(args.output_path, view_graph, cameras, images, tracks):
        return 1
    print('Positioned scene written to', args.output_path)
    return 0

def entrypoint():
    # Entry point for pyproject.toml
    sys.exit(run_positioning())

if __name__ == '__main__':
    entrypoint()
