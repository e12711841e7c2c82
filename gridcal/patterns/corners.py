"""Estimation & refinement of the pattern corners, based on the patch
centroids."""
import cv2
import logging
import numpy as np
from dataclasses import dataclass, field
from vito import imutils

from ..common import apply_homography, fit_homography, numpy2cvpts, perspective_transform, points2numpy
from ..config import ConfigurationError, CornerDetector, DetectionParams, MAX_SEARCH_DIST, PatternGeometry


_logger = logging.getLogger('gridcal.corners')


@dataclass
class RefinementResult:
    """Outcome of the iterative corner refinement.

    If `converged` is False, the iteration cap was reached before the max.
    corner displacement dropped below the tolerance. The corners are still
    the best available estimate, but with degraded confidence.
    """
    corners: np.ndarray = field(repr=False)
    iterations: int
    converged: bool
    max_displacement: float


def _require_2d_grid(geometry: PatternGeometry) -> None:
    if geometry.rows < 2 or geometry.cols < 2:
        raise ValueError(f'Corner estimation requires at least 2x2 patches, got {geometry.size}.')


def _as_uint8_gray(image: np.ndarray) -> np.ndarray:
    gray = imutils.grayscale(image)
    if gray.dtype != np.uint8:
        gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    return gray


def interpolate_corner_locations(centres, geometry: PatternGeometry) -> np.ndarray:
    """Estimates all corners (row-major) from the row-major patch centroids.

    For each corner, the homography between the unit grid and the image is
    computed from the 2x2 block of cells nearest to it. Interior corners
    are thus interpolated from their 4 surrounding cells, whereas corners at
    the pattern boundary are extrapolated from the closest block.
    """
    _require_2d_grid(geometry)
    rows, cols = geometry.rows, geometry.cols
    img_centres = points2numpy(centres, dtype=np.float64)
    if img_centres.shape[0] != geometry.size.num_patches:
        raise ValueError(f'Expected {geometry.size.num_patches} centres, got {img_centres.shape[0]}.')
    unit_centres = geometry.unit_centres()
    unit_corners = geometry.unit_corners()
    block_cols = np.clip(np.floor(unit_corners[:, 0] - 0.5), 0, cols - 2).astype(np.int64)
    block_rows = np.clip(np.floor(unit_corners[:, 1] - 0.5), 0, rows - 2).astype(np.int64)
    corners = np.zeros(unit_corners.shape, dtype=np.float64)
    for block in np.unique(block_rows * cols + block_cols):
        r0, c0 = divmod(int(block), cols)
        cells = [r0 * cols + c0, r0 * cols + c0 + 1,
                 (r0 + 1) * cols + c0 + 1, (r0 + 1) * cols + c0]
        H = perspective_transform(unit_centres[cells], img_centres[cells])
        mask = (block_rows == r0) & (block_cols == c0)
        corners[mask] = apply_homography(H, unit_corners[mask])
    return corners.astype(np.float32)


def group_points_in_quads(geometry: PatternGeometry, corners) -> np.ndarray:
    """Converts the row-major corners to quad-clustered order, i.e. the
    corners of each cell (top-left, top-right, bottom-right, bottom-left)
    are adjacent. Cells are visited in row-major order.

    For the lattice layout, shared corners are repeated for each cell.
    """
    pts = points2numpy(corners, dtype=np.asarray(corners).dtype)
    if pts.shape[0] != geometry.num_corners:
        raise ValueError(f'Expected {geometry.num_corners} corners, got {pts.shape[0]}.')
    indices = [idx for r in range(geometry.rows) for c in range(geometry.cols)
               for idx in geometry.cell_corner_indices(r, c)]
    return pts[indices].copy()


def ungroup_points_from_quads(geometry: PatternGeometry, quads) -> np.ndarray:
    """Inverse of :func:`group_points_in_quads`.

    Corners shared by several cells are merged by their median, which
    recovers the exact values if all copies are identical.
    """
    pts = points2numpy(quads, dtype=np.asarray(quads).dtype)
    expected = 4 * geometry.size.num_patches
    if pts.shape[0] != expected:
        raise ValueError(f'Expected {expected} quad points, got {pts.shape[0]}.')
    copies = [list() for _ in range(geometry.num_corners)]
    qidx = 0
    for r in range(geometry.rows):
        for c in range(geometry.cols):
            for idx in geometry.cell_corner_indices(r, c):
                copies[idx].append(qidx)
                qidx += 1
    corners = np.empty((geometry.num_corners, 2), dtype=pts.dtype)
    for idx, sources in enumerate(copies):
        if len(sources) == 1:
            corners[idx] = pts[sources[0]]
        else:
            corners[idx] = np.median(pts[sources], axis=0)
    return corners


def _corner_neighborhoods(geometry: PatternGeometry) -> list:
    """Returns, for each corner, the indices of its neighbors in the corner
    grid (3x3 neighborhood, widened to 5x5 where fewer than 5 neighbors
    exist)."""
    grid = geometry.corner_grid_size
    neighborhoods = list()
    for r in range(grid.rows):
        for c in range(grid.cols):
            for radius in (1, 2):
                nb = [rr * grid.cols + cc
                      for rr in range(max(0, r - radius), min(grid.rows, r + radius + 1))
                      for cc in range(max(0, c - radius), min(grid.cols, c + radius + 1))
                      if (rr, cc) != (r, c)]
                if len(nb) >= 5:
                    break
            neighborhoods.append(nb)
    return neighborhoods


def refine_corner_positions(corners, geometry: PatternGeometry,
                            correction_factor: float,
                            max_iterations: int = 20,
                            tolerance: float = 0.01) -> RefinementResult:
    """Iteratively corrects the corners via local homographies.

    In each pass, every corner is predicted by the homography fitted (least
    squares) to its neighboring corners and blended with its previous
    location: ``new = f * predicted + (1 - f) * previous``. A low correction
    factor `f` converges slowly but stable, a high one converges fast but may
    oscillate on noisy input.

    The loop stops as soon as the max. corner displacement of a pass drops
    below `tolerance` (pixels) or after `max_iterations` passes.
    """
    if not (0.0 <= correction_factor <= 1.0):
        raise ConfigurationError(f'Correction factor must be within [0, 1], got {correction_factor}.')
    current = points2numpy(corners, dtype=np.float64).copy()
    if current.shape[0] != geometry.num_corners:
        raise ValueError(f'Expected {geometry.num_corners} corners, got {current.shape[0]}.')
    unit = geometry.unit_corners()
    neighborhoods = _corner_neighborhoods(geometry)
    iterations = 0
    displacement = np.inf
    converged = False
    while iterations < max_iterations:
        predicted = current.copy()
        for idx, nb in enumerate(neighborhoods):
            H = fit_homography(unit[nb], current[nb])
            if H is None:
                continue
            predicted[idx] = apply_homography(H, unit[idx])[0]
        if not np.all(np.isfinite(predicted)):
            predicted = np.where(np.isfinite(predicted), predicted, current)
        updated = correction_factor * predicted + (1.0 - correction_factor) * current
        displacement = float(np.max(np.linalg.norm(updated - current, axis=1)))
        current = updated
        iterations += 1
        if displacement < tolerance:
            converged = True
            break
    if not converged:
        _logger.debug(f'Corner refinement did not converge within {max_iterations} iterations '
                      f'(displacement {displacement:.3f}px).')
    return RefinementResult(corners=current.astype(np.float32), iterations=iterations,
                            converged=converged, max_displacement=displacement)


def _subpix(gray: np.ndarray, points: np.ndarray, search_dist: int) -> np.ndarray:
    criteria = (cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER, 30, 0.001)
    win_size = (search_dist, search_dist)
    zero_zone = (-1, -1)
    pts = numpy2cvpts(points).copy()
    return cv2.cornerSubPix(gray, pts, win_size, zero_zone, criteria).reshape(-1, 2)


def _snap_to_mask_vertices(gray: np.ndarray, corners: np.ndarray,
                           geometry: PatternGeometry, max_snap: float) -> np.ndarray:
    """Moves each corner onto the closest vertex of the (locally binarized)
    blob of its cell."""
    quads = group_points_in_quads(geometry, corners).reshape(-1, 4, 2)
    snapped = quads.astype(np.float32).copy()
    height, width = gray.shape[:2]
    margin = int(np.ceil(2 * max_snap)) + 2
    for qidx, quad in enumerate(quads):
        left = max(0, int(np.floor(quad[:, 0].min())) - margin)
        top = max(0, int(np.floor(quad[:, 1].min())) - margin)
        right = min(width, int(np.ceil(quad[:, 0].max())) + margin + 1)
        bottom = min(height, int(np.ceil(quad[:, 1].max())) + margin + 1)
        if right - left < 3 or bottom - top < 3:
            continue
        roi = gray[top:bottom, left:right]
        _, bw = cv2.threshold(roi, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)
        center = quad.mean(axis=0) - np.array([left, top])
        cx = int(np.clip(round(center[0]), 0, roi.shape[1] - 1))
        cy = int(np.clip(round(center[1]), 0, roi.shape[0] - 1))
        if bw[cy, cx] == 0:
            # Bright blob on dark background
            bw = cv2.bitwise_not(bw)
        cnts = cv2.findContours(bw, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        cnts = cnts[0] if len(cnts) == 2 else cnts[1]
        blob = None
        for cnt in cnts:
            if cv2.pointPolygonTest(cnt, (float(center[0]), float(center[1])), False) >= 0:
                blob = cnt
                break
        if blob is None:
            continue
        approx = cv2.approxPolyDP(blob, 0.05 * cv2.arcLength(blob, True), True)
        vertices = approx.reshape(-1, 2).astype(np.float32) + np.array([left, top], dtype=np.float32)
        for k in range(4):
            dists = np.linalg.norm(vertices - quad[k], axis=1)
            best = int(np.argmin(dists))
            if dists[best] <= max_snap:
                snapped[qidx, k] = vertices[best]
    return ungroup_points_from_quads(geometry, snapped.reshape(-1, 2))


def find_best_corners(image: np.ndarray, corners, geometry: PatternGeometry = None,
                      detector: CornerDetector = CornerDetector.REGULAR,
                      search_dist: int = MAX_SEARCH_DIST):
    """Sub-pixel corner search around the given estimates.

    Args:
        image: Grayscale or color image.
        corners: Nx2 corner estimates.
        geometry: Required for the mask-based variant.
        detector: Variant of the corner search:
            * REGULAR: OpenCV's sub-pixel chessboard corner search.
            * INVERTED: the same on the contrast-inverted image.
            * EXTENDED: a coarse search with a doubled window, followed by the
              regular search.
            * MASK: snaps the corners to the polygon vertices of the locally
              binarized cell blob first.
        search_dist: Search window radius, clamped to [1, MAX_SEARCH_DIST].

    Returns:
        tuple ``(refined, num_refined)``. Corners which would move further
        than the search window allows keep their estimate, `num_refined`
        counts the successfully refined corners.
    """
    detector = CornerDetector(detector)
    search_dist = int(np.clip(search_dist, 1, MAX_SEARCH_DIST))
    src = points2numpy(corners).copy()
    if src.shape[0] == 0:
        return src, 0
    gray = _as_uint8_gray(image)
    max_shift = search_dist * np.sqrt(2.0)
    if detector == CornerDetector.INVERTED:
        gray = cv2.bitwise_not(gray)
    if detector == CornerDetector.MASK:
        if geometry is None:
            raise ValueError('The mask-based corner search requires the pattern geometry.')
        start = _snap_to_mask_vertices(gray, src, geometry, 2 * search_dist)
        max_shift *= 2
    elif detector == CornerDetector.EXTENDED:
        start = _subpix(gray, src, 2 * search_dist)
        max_shift *= 2
    else:
        start = src
    refined = _subpix(gray, start, search_dist)
    shift = np.linalg.norm(refined - src, axis=1)
    valid = np.isfinite(shift) & (shift <= max_shift)
    dst = np.where(valid[:, np.newaxis], refined, src).astype(np.float32)
    return dst, int(np.sum(valid))


def correct_patch_centres(image: np.ndarray, patches: list, dilation: int = 2) -> np.ndarray:
    """Returns the intensity-weighted sub-pixel centroids of the patches.

    The weights are the intensity differences to the local background level
    (median of a ring around the slightly dilated hull), which makes the
    centroid robust to partially covered boundary pixels. The patch polarity
    (dark on bright or vice versa) is determined per patch.
    """
    gray = _as_uint8_gray(image).astype(np.float32)
    height, width = gray.shape[:2]
    centres = np.array([p.centroid2f for p in patches], dtype=np.float64).reshape(-1, 2)
    kernel = np.ones((2 * dilation + 1, 2 * dilation + 1), dtype=np.uint8)
    ring_kernel = np.ones((2 * dilation + 5, 2 * dilation + 5), dtype=np.uint8)
    for idx, patch in enumerate(patches):
        x, y, w, h = patch.bounding_rect
        pad = 2 * dilation + 4
        left, top = max(0, x - pad), max(0, y - pad)
        right, bottom = min(width, x + w + pad), min(height, y + h + pad)
        roi = gray[top:bottom, left:right]
        inner = np.zeros(roi.shape, dtype=np.uint8)
        cv2.fillConvexPoly(inner, patch.hull.reshape(-1, 2) - np.array([left, top], dtype=np.int32), 1)
        mask = cv2.dilate(inner, kernel)
        ring = cv2.dilate(mask, ring_kernel) - mask
        if not np.any(ring) or not np.any(inner):
            continue
        background = float(np.median(roi[ring > 0]))
        foreground = float(np.mean(roi[inner > 0]))
        weights = (background - roi) if foreground < background else (roi - background)
        weights = np.clip(weights, 0, None) * mask
        moments = cv2.moments(weights.astype(np.float32))
        if moments['m00'] <= 0:
            continue
        centres[idx, 0] = moments['m10'] / moments['m00'] + left
        centres[idx, 1] = moments['m01'] / moments['m00'] + top
    return centres.astype(np.float32)


@dataclass
class CornerEstimate:
    """Corners of a single detection.

    initial:    Interpolated from the patch centroids.
    refinement: Result of the iterative local homography correction.
    corners:    Final (sub-pixel) corners, row-major.
    num_refined: Number of corners snapped by the sub-pixel search.
    """
    corners: np.ndarray = field(repr=False)
    initial: np.ndarray = field(repr=False)
    refinement: RefinementResult
    num_refined: int

    @property
    def converged(self) -> bool:
        return self.refinement.converged


class CornerEstimator(object):
    """Converts a grid of cell centroids into the grid of cell corners."""
    def __init__(self, geometry: PatternGeometry, params: DetectionParams = None):
        if geometry.rows < 2 or geometry.cols < 2:
            raise ConfigurationError(f'Corner estimation requires at least 2x2 patches, got {geometry.size}.')
        self.geometry = geometry
        self.params = DetectionParams() if params is None else params

    def estimate(self, image: np.ndarray, centres) -> CornerEstimate:
        """Interpolates, refines and (if an image is given) snaps the corners."""
        initial = interpolate_corner_locations(centres, self.geometry)
        refinement = refine_corner_positions(initial, self.geometry, self.params.correction_factor,
                                             self.params.max_refinement_iterations,
                                             self.params.refinement_tolerance)
        if image is None:
            return CornerEstimate(refinement.corners, initial, refinement, 0)
        corners, num_refined = find_best_corners(image, refinement.corners, self.geometry,
                                                 self.params.detector, self.params.search_dist)
        return CornerEstimate(corners, initial, refinement, num_refined)
