"""Configuration types shared by the detection and selection stages.

All configuration objects validate their parameters upon construction and
raise a :class:`ConfigurationError` if they are malformed. Thus, invalid
settings are reported before any image is processed.
"""
import dataclasses
import logging
import numpy as np
import toml
from dataclasses import dataclass
from enum import Enum, IntEnum


_logger = logging.getLogger('gridcal.config')


# Upper bound of the sub-pixel corner search radius
MAX_SEARCH_DIST = 3
# Min. distance (in pixels) between a pattern point and the image border
MIN_DISTANCE_FROM_EDGE = 2
DEFAULT_CORRECTION_FACTOR = 0.5
# Limits used when collecting/selecting frames for calibration
MAX_FRAMES_TO_LOAD = 1000
MAX_PATTERNS_TO_KEEP = 500
MAX_CANDIDATE_PATTERNS = 100
MAX_PATTERNS_PER_SET = 10


class ConfigurationError(Exception):
    """Invalid or malformed configuration parameters."""
    pass


class CornerLayout(Enum):
    """Where the corners of a patch grid are located.

    * lattice: Cells tile the pattern (standard chessboard corner semantics),
      neighboring cells share their corners. The corner grid has one more
      row and column than the patch grid.
    * mask: Isolated squares (e.g. a mask with square holes), each cell owns
      its 4 corners. The corner grid has twice as many rows and columns.
    """
    LATTICE = 'lattice'
    MASK = 'mask'


class CornerDetector(IntEnum):
    """Variants of the sub-pixel corner search."""
    REGULAR = 0
    MASK = 3
    EXTENDED = 5
    INVERTED = 10


class OptimizationMode(IntEnum):
    """Strategies to select the calibration frames."""
    ALL_PATTERNS = 0
    RANDOM_SET = 1
    FIRST_N = 2
    ENHANCED_MCM = 3
    BEST_OF_RANDOM = 4
    EXHAUSTIVE_SEARCH = 5
    RANDOM_SEED = 6
    SCORE_BASED = 7


def enum_to_str(value: Enum) -> str:
    """Returns the configuration file representation, e.g. 'score-based'."""
    return value.name.lower().replace('_', '-')


def parse_enum(enum_cls, value):
    """Converts the given name, code or member to a member of `enum_cls`.

    Names are matched case-insensitively, hyphens and underscores are
    interchangeable (i.e. 'score-based' is parsed as SCORE_BASED).

    Raises:
        ConfigurationError: If the value cannot be mapped.
    """
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip().upper().replace('-', '_')
        if key in enum_cls.__members__:
            return enum_cls[key]
    try:
        return enum_cls(value)
    except ValueError:
        pass
    raise ConfigurationError(f'Cannot convert `{value}` to {enum_cls.__name__}!')


def _is_int(value) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


@dataclass(frozen=True)
class PatternSize:
    """Number of patch rows & columns of the calibration pattern."""
    rows: int
    cols: int

    def __post_init__(self):
        if not _is_int(self.rows) or not _is_int(self.cols):
            raise ConfigurationError(f'Pattern dimensions must be integers, got {self.rows}x{self.cols}.')
        if self.rows <= 0 or self.cols <= 0:
            raise ConfigurationError(f'Pattern dimensions must be positive, got {self.rows}x{self.cols}.')

    @property
    def num_patches(self) -> int:
        return self.rows * self.cols

    def __str__(self) -> str:
        return f'{self.rows}x{self.cols}'


@dataclass(frozen=True)
class PatternGeometry:
    """Patch grid topology and the layout of the corners.

    Unit grid coordinates are used throughout: the cell at (row, col) is
    centered at (col + 0.5, row + 0.5), i.e. the cell pitch is 1.

    fill_ratio: Side length of a mask square relative to the cell pitch,
        only used for the `mask` layout.
    """
    size: PatternSize
    layout: CornerLayout = CornerLayout.LATTICE
    fill_ratio: float = 0.5

    def __post_init__(self):
        if not isinstance(self.size, PatternSize):
            raise ConfigurationError('Geometry requires a PatternSize.')
        if not isinstance(self.layout, CornerLayout):
            object.__setattr__(self, 'layout', parse_enum(CornerLayout, self.layout))
        if self.layout == CornerLayout.MASK and not (0.0 < self.fill_ratio < 1.0):
            raise ConfigurationError(f'Mask fill ratio must be within (0, 1), got {self.fill_ratio}.')

    @property
    def rows(self) -> int:
        return self.size.rows

    @property
    def cols(self) -> int:
        return self.size.cols

    @property
    def corner_grid_size(self) -> PatternSize:
        """Dimensions of the (row-major) corner grid."""
        if self.layout == CornerLayout.LATTICE:
            return PatternSize(self.rows + 1, self.cols + 1)
        return PatternSize(2 * self.rows, 2 * self.cols)

    @property
    def num_corners(self) -> int:
        return self.corner_grid_size.num_patches

    def unit_centres(self) -> np.ndarray:
        """Returns the Nx2 unit coordinates of the cell centres (row-major)."""
        rr, cc = np.mgrid[0:self.rows, 0:self.cols]
        return np.column_stack((cc.ravel() + 0.5, rr.ravel() + 0.5)).astype(np.float64)

    def _corner_axis(self, num_cells: int) -> np.ndarray:
        if self.layout == CornerLayout.LATTICE:
            return np.arange(num_cells + 1, dtype=np.float64)
        half = self.fill_ratio / 2.0
        coords = np.empty((2 * num_cells,), dtype=np.float64)
        coords[0::2] = np.arange(num_cells) + 0.5 - half
        coords[1::2] = np.arange(num_cells) + 0.5 + half
        return coords

    def unit_corners(self) -> np.ndarray:
        """Returns the Nx2 unit coordinates of all corners (row-major)."""
        xs = self._corner_axis(self.cols)
        ys = self._corner_axis(self.rows)
        gx, gy = np.meshgrid(xs, ys)
        return np.column_stack((gx.ravel(), gy.ravel()))

    def cell_corner_indices(self, row: int, col: int) -> tuple:
        """Returns the row-major corner indices (top-left, top-right,
        bottom-right, bottom-left) of the given cell."""
        if not (0 <= row < self.rows and 0 <= col < self.cols):
            raise IndexError(f'Cell ({row}, {col}) is outside the {self.size} grid.')
        ncols = self.corner_grid_size.cols
        if self.layout == CornerLayout.LATTICE:
            top, left = row, col
        else:
            top, left = 2 * row, 2 * col
        return (top * ncols + left, top * ncols + left + 1,
                (top + 1) * ncols + left + 1, (top + 1) * ncols + left)


@dataclass(frozen=True)
class PatchParameterGroup:
    """Sensitivity parameters of the MSER blob detector."""
    delta: float = 7.5
    max_variation: float = 0.25
    min_diversity: float = 0.20
    max_evolution: int = 200
    area_threshold: float = 1.01
    min_margin: float = 0.003
    edge_blur_size: int = 5

    def __post_init__(self):
        if self.delta <= 0:
            raise ConfigurationError(f'MSER delta must be > 0, got {self.delta}.')
        if self.max_variation <= 0:
            raise ConfigurationError(f'MSER max. variation must be > 0, got {self.max_variation}.')
        if not (0 <= self.min_diversity < 1):
            raise ConfigurationError(f'MSER min. diversity must be within [0, 1), got {self.min_diversity}.')
        if not _is_int(self.max_evolution) or self.max_evolution <= 0:
            raise ConfigurationError(f'MSER max. evolution must be a positive integer, got {self.max_evolution}.')
        if self.area_threshold <= 0:
            raise ConfigurationError(f'MSER area threshold must be > 0, got {self.area_threshold}.')
        if self.min_margin < 0:
            raise ConfigurationError(f'MSER min. margin must be >= 0, got {self.min_margin}.')
        if not _is_int(self.edge_blur_size) or self.edge_blur_size < 0:
            raise ConfigurationError(f'MSER edge blur size must be a non-negative integer, got {self.edge_blur_size}.')


@dataclass(frozen=True)
class DetectionParams:
    """Parametrization of the per-frame detection pipeline.

    correction_factor:  Blend weight of the predicted corner location during
                        iterative refinement, within [0, 1].

    max_refinement_iterations, refinement_tolerance: Stop criteria of the
                        refinement loop (tolerance in pixels).

    detector:           Variant of the sub-pixel corner search.

    search_dist:        Radius of the sub-pixel search window, clamped to
                        [1, MAX_SEARCH_DIST].

    min_dist, max_dist: Valid range for the distance between adjacent grid
                        points (in pixels).

    min_border:         Required margin between pattern points and the image
                        border.

    bin_tolerance:      Max. deviation (in cells) when binning patches into
                        grid rows & columns.

    correct_centres:    Use intensity-weighted patch centroids.

    min_sharpness:      Reject blurred frames (variance of the Laplacian),
                        set to 0 to disable.
    """
    correction_factor: float = DEFAULT_CORRECTION_FACTOR
    max_refinement_iterations: int = 20
    refinement_tolerance: float = 0.01
    detector: CornerDetector = CornerDetector.REGULAR
    search_dist: int = MAX_SEARCH_DIST
    min_dist: float = 3.0
    max_dist: float = 1000.0
    min_border: int = MIN_DISTANCE_FROM_EDGE
    bin_tolerance: float = 0.3
    correct_centres: bool = True
    min_sharpness: float = 0.0

    def __post_init__(self):
        if not (0.0 <= self.correction_factor <= 1.0):
            raise ConfigurationError(f'Correction factor must be within [0, 1], got {self.correction_factor}.')
        if not _is_int(self.max_refinement_iterations) or self.max_refinement_iterations < 0:
            raise ConfigurationError('Refinement iteration cap must be a non-negative integer.')
        if self.refinement_tolerance <= 0:
            raise ConfigurationError('Refinement tolerance must be > 0.')
        if not isinstance(self.detector, CornerDetector):
            object.__setattr__(self, 'detector', parse_enum(CornerDetector, self.detector))
        if self.search_dist < 1:
            raise ConfigurationError(f'Search distance must be >= 1, got {self.search_dist}.')
        if self.min_dist < 0 or self.max_dist <= self.min_dist:
            raise ConfigurationError(f'Invalid distance range [{self.min_dist}, {self.max_dist}].')
        if self.min_border < 0:
            raise ConfigurationError('Min. border must be >= 0.')
        if not (0.0 < self.bin_tolerance < 0.5):
            raise ConfigurationError(f'Bin tolerance must be within (0, 0.5), got {self.bin_tolerance}.')
        if self.min_sharpness < 0:
            raise ConfigurationError('Min. sharpness must be >= 0.')


def _from_dict(cls, config: dict, **converters):
    """Constructs the dataclass `cls` from a (TOML) dictionary."""
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = [k for k in config if k not in names]
    if unknown:
        raise ConfigurationError(f'Unknown {cls.__name__} parameter(s): {", ".join(unknown)}')
    kwargs = dict(config)
    for key, conv in converters.items():
        if key in kwargs:
            kwargs[key] = conv(kwargs[key])
    return cls(**kwargs)


def geometry_to_dict(geometry: PatternGeometry) -> dict:
    d = {
        'rows': geometry.rows,
        'cols': geometry.cols,
        'layout': geometry.layout.value
    }
    if geometry.layout == CornerLayout.MASK:
        d['fill_ratio'] = geometry.fill_ratio
    return d


def geometry_from_dict(config: dict) -> PatternGeometry:
    if 'rows' not in config or 'cols' not in config:
        raise ConfigurationError('Pattern configuration requires `rows` and `cols`.')
    size = PatternSize(config['rows'], config['cols'])
    return PatternGeometry(size, layout=parse_enum(CornerLayout, config.get('layout', 'lattice')),
                           fill_ratio=config.get('fill_ratio', 0.5))


def params_to_dict(params: DetectionParams) -> dict:
    d = dataclasses.asdict(params)
    d['detector'] = enum_to_str(params.detector)
    return d


def params_from_dict(config: dict) -> DetectionParams:
    return _from_dict(DetectionParams, config,
                      detector=lambda v: parse_enum(CornerDetector, v))


def save_toml(filename, geometry: PatternGeometry, params: DetectionParams = None,
              patch_params: PatchParameterGroup = None) -> None:
    """Stores the detection configuration as TOML file."""
    config = {'pattern': geometry_to_dict(geometry)}
    if params is not None:
        config['detection'] = params_to_dict(params)
    if patch_params is not None:
        config['mser'] = dataclasses.asdict(patch_params)
    with open(filename, 'w') as fp:
        toml.dump(config, fp)


def load_toml(filename):
    """Loads a detection configuration.

    Returns:
        tuple ``(geometry, params, patch_params)``, where missing sections
        (``[detection]``, ``[mser]``) are replaced by their defaults.
    """
    _logger.info(f'Loading detection configuration from `{filename}`')
    config = toml.load(filename)
    if 'pattern' not in config:
        raise ConfigurationError(f'Configuration `{filename}` lacks the [pattern] table.')
    geometry = geometry_from_dict(config['pattern'])
    params = params_from_dict(config.get('detection', dict()))
    patch_params = _from_dict(PatchParameterGroup, config.get('mser', dict()))
    return geometry, params, patch_params
