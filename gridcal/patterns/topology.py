"""Assignment of (unordered) patch centroids to grid rows and columns."""
import cv2
import itertools
import logging
import numpy as np
from dataclasses import dataclass, field
from enum import Enum

from ..common import GridIndex, apply_homography, perspective_transform, points2numpy
from ..config import PatternSize


_logger = logging.getLogger('gridcal.topology')


class CellRole(Enum):
    """Position of a cell within the grid."""
    CORNER = 'corner'
    EDGE = 'edge'
    INTERIOR = 'interior'


def cell_role(pattern_size: PatternSize, row: int, col: int) -> CellRole:
    """Returns the role of the cell at (row, col)."""
    at_row_border = row in (0, pattern_size.rows - 1)
    at_col_border = col in (0, pattern_size.cols - 1)
    if at_row_border and at_col_border:
        return CellRole.CORNER
    if at_row_border or at_col_border:
        return CellRole.EDGE
    return CellRole.INTERIOR


@dataclass
class GridTopology:
    """Grid assignment of the patches.

    row_indices, col_indices: Grid position of each input patch.
    order:      Index of the input patch for each cell (row-major).
    row_axis, col_axis: Unit vectors (image space) along which the column
                and row indices increase, respectively.
    max_residual: Largest distance (in cells) between a projected centroid
                and its bin.
    """
    pattern_size: PatternSize
    row_indices: np.ndarray
    col_indices: np.ndarray
    order: np.ndarray
    row_axis: np.ndarray
    col_axis: np.ndarray
    max_residual: float = 0.0
    roles: list = field(init=False, repr=False)

    def __post_init__(self):
        self.roles = [cell_role(self.pattern_size, r, c)
                      for r in range(self.pattern_size.rows)
                      for c in range(self.pattern_size.cols)]

    def grid_index(self, patch_index: int) -> GridIndex:
        return GridIndex(row=int(self.row_indices[patch_index]),
                         col=int(self.col_indices[patch_index]))

    def role(self, row: int, col: int) -> CellRole:
        return self.roles[row * self.pattern_size.cols + col]

    def cells_with_role(self, role: CellRole) -> list:
        """Returns the row-major indices of all cells with the given role."""
        return [idx for idx, r in enumerate(self.roles) if r == role]


def _unit(vec: np.ndarray) -> np.ndarray:
    length = np.linalg.norm(vec)
    if length <= 0:
        return np.zeros((2,), dtype=np.float64)
    return vec / length


def _polygon_area(pts: np.ndarray) -> float:
    x = pts[:, 0]
    y = pts[:, 1]
    return 0.5 * abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1)))


def _interior_angles(polygon: np.ndarray) -> np.ndarray:
    prev = np.roll(polygon, 1, axis=0) - polygon
    nxt = np.roll(polygon, -1, axis=0) - polygon
    cosines = np.sum(prev * nxt, axis=1) / np.maximum(
        np.linalg.norm(prev, axis=1) * np.linalg.norm(nxt, axis=1), 1e-12)
    return np.arccos(np.clip(cosines, -1, 1))


def outer_quadrilateral(points: np.ndarray, max_candidates: int = 12) -> np.ndarray:
    """Returns the 4 convex hull vertices spanning the largest quadrilateral
    (in hull order), or None if the points are (nearly) collinear."""
    hull = cv2.convexHull(points2numpy(points)).reshape(-1, 2).astype(np.float64)
    if hull.shape[0] < 4:
        return None
    candidates = np.arange(hull.shape[0])
    if hull.shape[0] > max_candidates:
        # The grid's outer cells are the sharpest hull vertices, the others
        # are (close to) collinear with the pattern's border.
        angles = _interior_angles(hull)
        candidates = np.sort(np.argsort(angles, kind='stable')[:max_candidates])
    best_area, best_quad = 0.0, None
    for combo in itertools.combinations(candidates, 4):
        quad = hull[list(combo)]
        area = _polygon_area(quad)
        if area > best_area:
            best_area, best_quad = area, quad
    if best_quad is None or best_area <= 1e-9:
        return None
    return best_quad


class PatchTopologySolver(object):
    """Determines the row & column of each patch centroid.

    The 4 outer corner cells of the grid span the largest quadrilateral of
    the centroids' convex hull. Their homography to the unit grid projects
    all centroids onto the grid axes, where they are binned into rows and
    columns. Among the valid labelings of the corner cells, we choose the
    one whose row axis points right and whose column axis points down (as
    far as possible), which yields the canonical row-major order.

    Two patches falling into the same bin (or a centroid deviating by more
    than `bin_tolerance` cells from its bin) render the topology ambiguous,
    i.e. :meth:`solve` returns None.
    """
    def __init__(self, bin_tolerance: float = 0.3):
        self.bin_tolerance = bin_tolerance

    def solve(self, centroids, pattern_size: PatternSize) -> GridTopology:
        pts = points2numpy(centroids, dtype=np.float64)
        if pts.shape[0] != pattern_size.num_patches:
            _logger.debug(f'Cannot solve topology: {pts.shape[0]} centroids for a {pattern_size} grid.')
            return None
        if not np.all(np.isfinite(pts)):
            return None
        # Process in lexicographic order, so the result depends only on the
        # set of centroids (not on their input order)
        perm = np.lexsort((pts[:, 1], pts[:, 0]))
        sorted_pts = pts[perm]
        if pattern_size.rows == 1 or pattern_size.cols == 1:
            solution = self._solve_line(sorted_pts, pattern_size)
        else:
            solution = self._solve_grid(sorted_pts, pattern_size)
        if solution is None:
            return None
        rows_s, cols_s, row_axis, col_axis, residual = solution
        row_indices = np.empty((pts.shape[0],), dtype=np.int64)
        col_indices = np.empty((pts.shape[0],), dtype=np.int64)
        row_indices[perm] = rows_s
        col_indices[perm] = cols_s
        order = np.empty((pts.shape[0],), dtype=np.int64)
        order[row_indices * pattern_size.cols + col_indices] = np.arange(pts.shape[0])
        return GridTopology(pattern_size, row_indices, col_indices, order,
                            row_axis, col_axis, residual)

    def _solve_line(self, pts: np.ndarray, pattern_size: PatternSize):
        num = pts.shape[0]
        if num == 1:
            return (np.zeros((1,), dtype=np.int64), np.zeros((1,), dtype=np.int64),
                    np.array([1.0, 0.0]), np.array([0.0, 1.0]), 0.0)
        mean = pts.mean(axis=0)
        centered = pts - mean
        _, _, vt = np.linalg.svd(centered, full_matrices=False)
        direction = vt[0]
        # Lines run left-to-right or top-to-bottom
        dominant = 0 if abs(direction[0]) >= abs(direction[1]) else 1
        if direction[dominant] < 0:
            direction = -direction
        proj = centered @ direction
        order = np.argsort(proj, kind='stable')
        gaps = np.diff(proj[order])
        spacing = float(np.median(gaps))
        if spacing <= 0:
            _logger.debug('Ambiguous topology: patches of a single line overlap.')
            return None
        # Each centroid may deviate by the tolerance from its (locally)
        # regular position, thus a gap may deviate by twice the tolerance.
        residual = float(np.max(np.abs(gaps / spacing - 1.0))) / 2.0
        if residual > self.bin_tolerance:
            _logger.debug(f'Ambiguous topology: irregular line spacing (residual {residual:.2f}).')
            return None
        positions = np.empty((num,), dtype=np.int64)
        positions[order] = np.arange(num)
        normal = np.array([-direction[1], direction[0]])
        if pattern_size.rows == 1:
            return (np.zeros((num,), dtype=np.int64), positions, direction, normal, residual)
        return (positions, np.zeros((num,), dtype=np.int64), -normal, direction, residual)

    def _solve_grid(self, pts: np.ndarray, pattern_size: PatternSize):
        quad = outer_quadrilateral(pts)
        if quad is None:
            _logger.debug('Ambiguous topology: degenerate centroid distribution.')
            return None
        rows, cols = pattern_size.rows, pattern_size.cols
        unit_quad = np.array([[0, 0], [cols - 1, 0], [cols - 1, rows - 1], [0, rows - 1]],
                             dtype=np.float32)
        # Labelings of the outer cells as (top-left, top-right, bottom-right,
        # bottom-left), most canonical first. Mirrored labelings (negative
        # handedness in image coordinates) are never valid.
        labelings = list()
        for start in range(4):
            for step in (1, -1):
                labeled = quad[[(start + step * i) % 4 for i in range(4)]]
                row_axis = _unit(labeled[1] - labeled[0])
                col_axis = _unit(labeled[3] - labeled[0])
                if row_axis[0] * col_axis[1] - row_axis[1] * col_axis[0] <= 0:
                    continue
                labelings.append((round(-(row_axis[0] + col_axis[1]), 9), labeled[0, 1], labeled[0, 0],
                                  labeled, row_axis, col_axis))
        labelings.sort(key=lambda lbl: lbl[:3])
        for _, _, _, labeled, row_axis, col_axis in labelings:
            H = perspective_transform(labeled, unit_quad)
            binned = self._bin(apply_homography(H, pts), pattern_size)
            if binned is not None:
                rows_b, cols_b, residual = binned
                return rows_b, cols_b, row_axis, col_axis, residual
        _logger.debug('Ambiguous topology: no consistent row/column assignment.')
        return None

    def _bin(self, projected: np.ndarray, pattern_size: PatternSize):
        """Bins the unit grid coordinates, returns (rows, cols, residual) or
        None if the assignment is not unique."""
        if not np.all(np.isfinite(projected)):
            return None
        cols = np.rint(projected[:, 0]).astype(np.int64)
        rows = np.rint(projected[:, 1]).astype(np.int64)
        if np.any(cols < 0) or np.any(cols >= pattern_size.cols)\
                or np.any(rows < 0) or np.any(rows >= pattern_size.rows):
            return None
        deviation = np.sqrt((projected[:, 0] - cols)**2 + (projected[:, 1] - rows)**2)
        bins = rows * pattern_size.cols + cols
        winners = dict()
        for idx in np.argsort(deviation, kind='stable'):
            # The patch closest to the bin center wins, any other patch
            # mapped to the same bin renders the topology ambiguous
            if bins[idx] in winners:
                return None
            winners[bins[idx]] = idx
        residual = float(np.max(deviation))
        if residual > self.bin_tolerance:
            return None
        return rows, cols, residual


def reorder_patches(pattern_size: PatternSize, row_indices, col_indices,
                    centres) -> np.ndarray:
    """Re-orders the centres row by row, left to right.

    Args:
        pattern_size: Grid dimensions.
        row_indices, col_indices: Grid position of each centre, both must
            hold exactly ``rows * cols`` entries.
        centres: The (unordered) Nx2 centres.

    Raises:
        ValueError: If the index sequences do not match the pattern size,
            contain out-of-range indices or duplicate grid positions.
    """
    num = pattern_size.num_patches
    pts = points2numpy(centres, dtype=np.float64)
    rows = np.asarray(row_indices, dtype=np.int64).ravel()
    cols = np.asarray(col_indices, dtype=np.int64).ravel()
    if not (rows.shape[0] == cols.shape[0] == pts.shape[0] == num):
        raise ValueError(f'Expected {num} centres & indices, got {pts.shape[0]} centres, '
                         f'{rows.shape[0]} row and {cols.shape[0]} column indices.')
    if np.any(rows < 0) or np.any(rows >= pattern_size.rows)\
            or np.any(cols < 0) or np.any(cols >= pattern_size.cols):
        raise ValueError(f'Grid index out of range for a {pattern_size} pattern.')
    flat = rows * pattern_size.cols + cols
    if np.unique(flat).shape[0] != num:
        raise ValueError('Duplicate grid positions.')
    ordered = np.empty((num, 2), dtype=np.float64)
    ordered[flat] = pts
    return ordered


def sort_patches(centres, pattern_size: PatternSize, bin_tolerance: float = 0.3):
    """Solves the topology and returns the row-major ordered centres.

    Returns:
        tuple ``(ordered_centres, topology)`` or ``(None, None)`` if the
        topology is ambiguous.
    """
    topology = PatchTopologySolver(bin_tolerance).solve(centres, pattern_size)
    if topology is None:
        return None, None
    return reorder_patches(pattern_size, topology.row_indices, topology.col_indices,
                           centres), topology
