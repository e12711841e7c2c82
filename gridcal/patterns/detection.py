"""Per-frame detection of blob-grid calibration patterns."""
import logging
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum

from ..config import ConfigurationError, DetectionParams, PatchParameterGroup,\
    PatternGeometry, PatternSize
from ..patches import PatchExtractor, PatchFilterPipeline
from .corners import CornerEstimator, correct_patch_centres
from .topology import GridTopology, PatchTopologySolver, reorder_patches
from .verification import check_acutance, verify_corners, verify_patches


_logger = logging.getLogger('gridcal.detection')


class DetectionStatus(Enum):
    """Outcome of processing a single frame."""
    OK = 'ok'
    INSUFFICIENT_PATCHES = 'insufficient-patches'
    AMBIGUOUS_TOPOLOGY = 'ambiguous-topology'
    GEOMETRIC_REJECTION = 'geometric-rejection'
    BLURRED = 'blurred'


@dataclass
class DetectionResult:
    """Detection result of a single frame.

    centres:        Row-major patch centres (float32, Nx2), only set on success.
    corners:        Row-major corners, only set by corner detection.
    topology:       Grid assignment of the filtered patches.
    converged:      Whether the iterative corner refinement converged.
    num_refined:    Number of corners snapped by the sub-pixel search.
    num_candidates: Number of patches extracted before filtering.
    failed_filter:  Name of the patch filter which left too few patches.
    """
    status: DetectionStatus
    centres: np.ndarray = field(default=None, repr=False)
    corners: np.ndarray = field(default=None, repr=False)
    topology: GridTopology = field(default=None, repr=False)
    converged: bool = False
    num_refined: int = 0
    num_candidates: int = 0
    failed_filter: str = None

    @property
    def success(self) -> bool:
        return self.status == DetectionStatus.OK

    @property
    def points(self) -> np.ndarray:
        """Returns the corners if available, the centres otherwise."""
        return self.corners if self.corners is not None else self.centres


class PatternDetector(object):
    """Locates a grid of patches within an image.

    Processing steps: blob extraction (MSER), patch filtering, topology
    solving (row-major ordering), and - for :meth:`find_pattern_corners` -
    corner interpolation, iterative refinement, and sub-pixel snapping.
    Each step may reject the frame, which is reported via the
    :class:`DetectionStatus` of the result.

    The detector does not keep any per-frame state, so a single instance can
    be shared by multiple worker threads.
    """
    def __init__(self, geometry, params: DetectionParams = None,
                 patch_params: PatchParameterGroup = None,
                 pipeline: PatchFilterPipeline = None,
                 min_area: int = None, max_area: int = None):
        if isinstance(geometry, PatternSize):
            geometry = PatternGeometry(geometry)
        if not isinstance(geometry, PatternGeometry):
            raise ConfigurationError('Detector requires a PatternSize or PatternGeometry.')
        self.geometry = geometry
        self.params = DetectionParams() if params is None else params
        self.extractor = PatchExtractor(patch_params, min_area=min_area, max_area=max_area)
        self.pipeline = PatchFilterPipeline.default() if pipeline is None else pipeline
        self.solver = PatchTopologySolver(self.params.bin_tolerance)
        if self.supports_corners:
            self.corner_estimator = CornerEstimator(geometry, self.params)
        else:
            self.corner_estimator = None

    @property
    def pattern_size(self) -> PatternSize:
        return self.geometry.size

    @property
    def supports_corners(self) -> bool:
        """Corners can only be estimated for grids with at least 2x2 cells."""
        return self.geometry.rows >= 2 and self.geometry.cols >= 2

    def find_pattern_centres(self, image: np.ndarray) -> DetectionResult:
        """Returns the row-major patch centres (if the pattern is visible)."""
        if image is None:
            return DetectionResult(DetectionStatus.INSUFFICIENT_PATCHES)
        if not check_acutance(image, self.params.min_sharpness):
            _logger.debug('Rejecting blurred frame.')
            return DetectionResult(DetectionStatus.BLURRED)
        candidates = self.extractor.extract(image)
        filtered = self.pipeline.apply(candidates, self.pattern_size)
        if not filtered.success:
            if len(filtered.patches) > self.pattern_size.num_patches:
                # Filters could not reduce the clutter, the grid cannot be
                # determined unambiguously
                status = DetectionStatus.AMBIGUOUS_TOPOLOGY
            else:
                status = DetectionStatus.INSUFFICIENT_PATCHES
            _logger.debug(f'Patch filtering failed ({len(candidates)} candidates, '
                          f'{len(filtered.patches)} remaining): {status.value}')
            return DetectionResult(status, num_candidates=len(candidates),
                                   failed_filter=filtered.failed_filter)
        if self.params.correct_centres:
            centres = correct_patch_centres(image, filtered.patches)
        else:
            centres = np.array([p.centroid2f for p in filtered.patches], dtype=np.float32)
        topology = self.solver.solve(centres, self.pattern_size)
        if topology is None:
            return DetectionResult(DetectionStatus.AMBIGUOUS_TOPOLOGY, num_candidates=len(candidates))
        ordered = reorder_patches(self.pattern_size, topology.row_indices,
                                  topology.col_indices, centres).astype(np.float32)
        if not verify_patches(image, self.pattern_size, ordered, self.params.min_dist,
                              self.params.max_dist, self.params.min_border):
            return DetectionResult(DetectionStatus.GEOMETRIC_REJECTION, topology=topology,
                                   num_candidates=len(candidates))
        return DetectionResult(DetectionStatus.OK, centres=ordered, topology=topology,
                               num_candidates=len(candidates))

    def find_pattern_corners(self, image: np.ndarray) -> DetectionResult:
        """Detects the patches, then estimates and refines the row-major
        corners.

        Raises:
            ConfigurationError: If the pattern has less than 2 rows or columns.
        """
        if self.corner_estimator is None:
            raise ConfigurationError(f'Corner detection requires at least 2x2 patches, got {self.pattern_size}.')
        result = self.find_pattern_centres(image)
        if not result.success:
            return result
        estimate = self.corner_estimator.estimate(image, result.centres)
        if not estimate.converged:
            _logger.warning(f'Corner refinement stopped after {estimate.refinement.iterations} '
                            f'iterations without convergence.')
        result.converged = estimate.converged
        result.num_refined = estimate.num_refined
        if not verify_corners(image, self.geometry, estimate.corners, self.params.min_dist,
                              self.params.max_dist, self.params.min_border):
            result.status = DetectionStatus.GEOMETRIC_REJECTION
            result.centres = None
            return result
        result.corners = estimate.corners
        return result

    def process(self, image: np.ndarray) -> DetectionResult:
        """Runs the full detection, i.e. corners for 2D grids and centres for
        single-row (or single-column) patterns."""
        if self.supports_corners:
            return self.find_pattern_corners(image)
        return self.find_pattern_centres(image)


def detect_frames(detector: PatternDetector, images, max_workers: int = None) -> list:
    """Processes all images on a thread pool.

    Returns:
        list of :class:`DetectionResult`, in the same order as the images.
    """
    images = list(images)
    if not images:
        return list()
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        results = list(executor.map(detector.process, images))
    num_ok = sum(1 for r in results if r.success)
    _logger.info(f'Detected the pattern in {num_ok}/{len(results)} frames.')
    return results
