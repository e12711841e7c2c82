"""Geometric sanity checks of detected point grids.

All checks are pure predicates, i.e. they neither modify their inputs nor
raise for implausible detections (they return False instead).
"""
import cv2
import logging
import numpy as np
from vito import imutils

from ..common import grid_neighbors, image_size, numpy2cvpts, points2numpy
from ..config import MIN_DISTANCE_FROM_EDGE, PatternGeometry, PatternSize


_logger = logging.getLogger('gridcal.verification')


def pattern_in_frame(img_size, points, min_border: int = MIN_DISTANCE_FROM_EDGE) -> bool:
    """Returns True if all points lie at least `min_border` pixels inside
    the image.

    Args:
        img_size: Image (np.ndarray) or its size as (width, height).
        points: Nx2 point coordinates.
    """
    width, height = image_size(img_size)
    pts = points2numpy(points, dtype=np.float64)
    if pts.shape[0] == 0:
        return True
    if not np.all(np.isfinite(pts)):
        return False
    inside_x = (pts[:, 0] >= min_border) & (pts[:, 0] <= width - 1 - min_border)
    inside_y = (pts[:, 1] >= min_border) & (pts[:, 1] <= height - 1 - min_border)
    return bool(np.all(inside_x & inside_y))


def verify_pattern(img_size, grid_size: PatternSize, points,
                   min_dist: float, max_dist: float) -> bool:
    """Checks the spacing of a row-major point grid.

    Every pair of horizontally or vertically adjacent points must be between
    `min_dist` and `max_dist` pixels apart. The point count must match the
    grid size and all coordinates must be finite.
    """
    pts = points2numpy(points, dtype=np.float64)
    if pts.shape[0] != grid_size.num_patches:
        _logger.debug(f'Point count mismatch: {pts.shape[0]} vs. {grid_size.num_patches}.')
        return False
    if not np.all(np.isfinite(pts)):
        _logger.debug('Grid contains non-finite coordinates.')
        return False
    if img_size is not None:
        width, height = image_size(img_size)
        if np.any(pts < -max_dist) or np.any(pts[:, 0] > width + max_dist)\
                or np.any(pts[:, 1] > height + max_dist):
            _logger.debug('Grid points lie far outside of the image.')
            return False
    for idx1, idx2 in grid_neighbors(grid_size.rows, grid_size.cols):
        dist = np.linalg.norm(pts[idx1] - pts[idx2])
        if dist < min_dist or dist > max_dist:
            _logger.debug(f'Invalid spacing {dist:.1f}px between grid points #{idx1} and #{idx2}.')
            return False
    return True


def quads_convex(geometry: PatternGeometry, corners) -> bool:
    """Returns True if the corner quadrilateral of every cell is convex."""
    pts = points2numpy(corners)
    for r in range(geometry.rows):
        for c in range(geometry.cols):
            quad = pts[list(geometry.cell_corner_indices(r, c))]
            if not cv2.isContourConvex(numpy2cvpts(quad)):
                _logger.debug(f'Quad of cell ({r}, {c}) is not convex.')
                return False
    return True


def verify_corners(img_size, geometry: PatternGeometry, corners,
                   min_dist: float, max_dist: float,
                   min_border: int = MIN_DISTANCE_FROM_EDGE) -> bool:
    """Checks the spacing, the convexity of each cell, and that the corners
    are not too close to the image border."""
    if not verify_pattern(img_size, geometry.corner_grid_size, corners, min_dist, max_dist):
        return False
    if not quads_convex(geometry, corners):
        return False
    if img_size is not None and not pattern_in_frame(img_size, corners, min_border):
        _logger.debug('Corners are too close to the image border.')
        return False
    return True


def verify_patches(img_size, pattern_size: PatternSize, centres,
                   min_dist: float, max_dist: float,
                   min_border: int = MIN_DISTANCE_FROM_EDGE) -> bool:
    """Checks the spacing of the (row-major) patch centres and that they
    lie within the image."""
    if not verify_pattern(img_size, pattern_size, centres, min_dist, max_dist):
        return False
    if img_size is not None and not pattern_in_frame(img_size, centres, min_border):
        _logger.debug('Patch centres are too close to the image border.')
        return False
    return True


def sharpness(image: np.ndarray) -> float:
    """Returns the variance of the Laplacian, a simple focus measure."""
    gray = imutils.grayscale(image)
    return float(cv2.Laplacian(gray, cv2.CV_64F).var())


def check_acutance(image: np.ndarray, min_sharpness: float) -> bool:
    """Returns False if the image is too blurry (disabled for
    ``min_sharpness <= 0``)."""
    if min_sharpness <= 0:
        return True
    return sharpness(image) >= min_sharpness
