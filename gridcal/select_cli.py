import argparse
import logging
from pathlib import Path

from gridcal import config, input
from gridcal.coverage import CalibrationSession, EmptyPoolError, SetOptimizer
from gridcal.patterns import PatternDetector


_logger = logging.getLogger('gridcal.cli')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description='Detects blob-grid calibration patterns and selects the frames which best cover the field of view.')
    parser.add_argument(
        'image_directory', action='store', type=Path,
        help="Path to the folder containing the calibration images.")
    parser.add_argument(
        'rows', action='store', type=int, nargs='?', default=None,
        help="Number of patch rows of the pattern (not needed with --config).")
    parser.add_argument(
        'cols', action='store', type=int, nargs='?', default=None,
        help="Number of patch columns of the pattern (not needed with --config).")
    parser.add_argument(
        '--config', dest='config', action='store', type=Path, default=None,
        help='TOML detection configuration ([pattern], [detection], [mser]). Its [pattern] table replaces rows & cols.')
    parser.add_argument(
        '--filters', dest='filter_config', action='store', type=Path, default=None,
        help='TOML configuration of the patch filter pipeline.')
    parser.add_argument(
        '--mode', action='store', default='score-based',
        help='Optimization mode, e.g. all-patterns, first-n, random-set, score-based, enhanced-mcm, '
             'best-of-random, exhaustive-search, random-seed (or the numeric code).')
    parser.add_argument(
        '--budget', action='store', type=int, default=config.MAX_PATTERNS_PER_SET,
        help='Max. number of frames to select.')
    parser.add_argument(
        '--seed', action='store', type=int, default=None,
        help='Seed of the random number generator.')
    parser.add_argument(
        '--workers', action='store', type=int, default=None,
        help='Number of worker threads.')
    parser.add_argument(
        '--verbose', '-v', action='store_true',
        help='Enable debug logging.')
    return parser.parse_args(argv)


def _load_geometry(args):
    """Returns (geometry, params, patch_params) from the configuration file
    or the rows & cols arguments."""
    if args.config is not None:
        return config.load_toml(args.config)
    if args.rows is None or args.cols is None:
        raise config.ConfigurationError('Pattern rows & cols are required unless --config is given.')
    return config.PatternGeometry(config.PatternSize(args.rows, args.cols)), None, None


def select_frames_cli(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format='[%(levelname)s] %(message)s')
    try:
        geometry, params, patch_params = _load_geometry(args)
        optimizer = SetOptimizer(args.mode, budget=args.budget, seed=args.seed,
                                 max_workers=args.workers)
        source = input.ImageSource(args.image_directory)
    except (config.ConfigurationError, FileNotFoundError) as e:
        _logger.error(f'Invalid configuration: {e}')
        return 2
    except (input.DirectoryNotFoundError, input.NoImageDirectoryError) as e:
        _logger.error(f'Invalid image directory: {e}')
        return 2

    detector = PatternDetector(geometry, params, patch_params)
    if args.filter_config is not None:
        detector.pipeline.load_toml(args.filter_config)

    first = source[0].image
    session = CalibrationSession(detector, first, max_workers=args.workers)
    session.add_frames(source.named_images())
    _logger.info(f'{len(session.candidates)} of {len(source)} frames contain the pattern.')
    try:
        selection = session.select(optimizer)
    except EmptyPoolError:
        _logger.error('The pattern could not be detected in any frame.')
        return 1
    for name, score in zip(selection.names, selection.scores):
        print(f'{name}\t{score:.5f}')
    return 0


if __name__ == '__main__':
    raise SystemExit(select_frames_cli())
