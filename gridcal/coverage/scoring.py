"""Coverage statistics of the detected calibration points.

A good calibration set observes the pattern across the whole field of view
and at various distances from the image centre. The
:class:`CoverageAccumulator` keeps track of the points which have already
been selected, :func:`obtain_set_score` rates how much a new point set would
improve the coverage.
"""
import cv2
import logging
import threading
import numpy as np
from collections import namedtuple
from vito import imvis

from ..common import image_size, points2numpy


_logger = logging.getLogger('gridcal.coverage')


CoverageSnapshot = namedtuple('CoverageSnapshot', 'distribution_map bin_map radial_distribution num_sets')


def saturate(counts: np.ndarray) -> np.ndarray:
    """Diminishing returns: the 1st observation of a cell counts 1/2, the 2nd
    adds 1/6, etc."""
    counts = np.asarray(counts, dtype=np.float64)
    return counts / (1.0 + counts)


def gaussian_prior(radius: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian weight of the normalized distance from the image centre."""
    return np.exp(-np.asarray(radius, dtype=np.float64)**2 / (2.0 * sigma**2))


class CoverageAccumulator(object):
    """Running coverage statistics.

    * Distribution map: number of point sets whose convex hull covers each
      cell of a (`map_shape`) grid over the image.
    * Bin map: number of points within each cell of a coarse (`bin_shape`)
      grid.
    * Radial distribution: number of points per distance bin, based on the
      normalized distance from the image centre (0 at the centre, 1 at the
      image corners).

    All statistics only grow. The accumulation methods are serialized via a
    lock (there must be only one writer per accumulator). Use :meth:`copy`
    to obtain independent accumulators for concurrent scoring.
    """
    def __init__(self, img_size, map_shape: tuple = (48, 64), bin_shape: tuple = (10, 10),
                 radial_bins: int = 20, sigma: float = 0.7,
                 distribution_weight: float = 1.0, bin_weight: float = 1.0,
                 radial_weight: float = 1.0):
        self.image_size = image_size(img_size)
        if self.image_size[0] <= 0 or self.image_size[1] <= 0:
            raise ValueError(f'Invalid image size {self.image_size}.')
        if sigma <= 0 or radial_bins < 1:
            raise ValueError('Sigma and the number of radial bins must be positive.')
        self.map_shape = tuple(map_shape)
        self.bin_shape = tuple(bin_shape)
        self.radial_bins = radial_bins
        self.sigma = sigma
        self.distribution_weight = distribution_weight
        self.bin_weight = bin_weight
        self.radial_weight = radial_weight
        self.distribution_map = np.zeros(self.map_shape, dtype=np.int32)
        self.bin_map = np.zeros(self.bin_shape, dtype=np.int32)
        self.radial_distribution = np.zeros((radial_bins,), dtype=np.int32)
        self.num_sets = 0
        self._lock = threading.Lock()
        self._map_weights = self._grid_weights(self.map_shape)
        self._bin_weights = self._grid_weights(self.bin_shape)
        centres = (np.arange(radial_bins) + 0.5) / radial_bins
        self._radial_weights = gaussian_prior(centres, sigma)

    def _grid_weights(self, shape: tuple) -> np.ndarray:
        rows, cols = shape
        v = (np.arange(rows) + 0.5) / rows * 2.0 - 1.0
        u = (np.arange(cols) + 0.5) / cols * 2.0 - 1.0
        uu, vv = np.meshgrid(u, v)
        return gaussian_prior(np.sqrt(uu**2 + vv**2) / np.sqrt(2.0), self.sigma)

    def _grid_cells(self, points: np.ndarray, shape: tuple) -> tuple:
        """Returns the (row, col) cells of the points (clipped to the grid)."""
        width, height = self.image_size
        rows, cols = shape
        c = np.clip(np.floor(points[:, 0] / width * cols), 0, cols - 1).astype(np.int64)
        r = np.clip(np.floor(points[:, 1] / height * rows), 0, rows - 1).astype(np.int64)
        return r, c

    def _valid_points(self, points) -> np.ndarray:
        pts = points2numpy(points, dtype=np.float64)
        return pts[np.all(np.isfinite(pts), axis=1)]

    def distribution_increment(self, points) -> np.ndarray:
        """Returns the 0/1 map of cells covered by the points' convex hull."""
        pts = self._valid_points(points)
        mask = np.zeros(self.map_shape, dtype=np.uint8)
        if pts.shape[0] == 0:
            return mask.astype(np.int32)
        width, height = self.image_size
        scaled = pts * np.array([self.map_shape[1] / width, self.map_shape[0] / height])
        if pts.shape[0] >= 3:
            hull = cv2.convexHull(scaled.astype(np.float32)).reshape(-1, 2)
            cv2.fillConvexPoly(mask, np.floor(hull).astype(np.int32), 1)
        # Also mark each point's cell (the hull may be degenerate or smaller
        # than a single cell)
        r, c = self._grid_cells(pts, self.map_shape)
        mask[r, c] = 1
        return mask.astype(np.int32)

    def bin_increment(self, points) -> np.ndarray:
        """Returns the number of points per coarse bin."""
        pts = self._valid_points(points)
        counts = np.zeros(self.bin_shape, dtype=np.int32)
        r, c = self._grid_cells(pts, self.bin_shape)
        np.add.at(counts, (r, c), 1)
        return counts

    def normalized_radius(self, points) -> np.ndarray:
        """Distance from the image centre, 1 at the image corners."""
        pts = self._valid_points(points)
        width, height = self.image_size
        u = (pts[:, 0] / width) * 2.0 - 1.0
        v = (pts[:, 1] / height) * 2.0 - 1.0
        return np.sqrt(u**2 + v**2) / np.sqrt(2.0)

    def radial_increment(self, points) -> np.ndarray:
        """Returns the number of points per radial bin."""
        radius = self.normalized_radius(points)
        bins = np.clip(np.floor(radius * self.radial_bins), 0, self.radial_bins - 1).astype(np.int64)
        return np.bincount(bins, minlength=self.radial_bins).astype(np.int32)

    def add_to_distribution_map(self, points) -> None:
        increment = self.distribution_increment(points)
        with self._lock:
            self.distribution_map += increment

    def add_to_bin_map(self, points) -> None:
        increment = self.bin_increment(points)
        with self._lock:
            self.bin_map += increment

    def add_to_radial_distribution(self, points) -> None:
        increment = self.radial_increment(points)
        with self._lock:
            self.radial_distribution += increment

    def add_point_set(self, points) -> None:
        """Accumulates all statistics of the given point set."""
        dist = self.distribution_increment(points)
        bins = self.bin_increment(points)
        radial = self.radial_increment(points)
        with self._lock:
            self.distribution_map += dist
            self.bin_map += bins
            self.radial_distribution += radial
            self.num_sets += 1

    def snapshot(self) -> CoverageSnapshot:
        """Returns a consistent copy of the current statistics."""
        with self._lock:
            return CoverageSnapshot(self.distribution_map.copy(), self.bin_map.copy(),
                                    self.radial_distribution.copy(), self.num_sets)

    def copy(self):
        """Returns an independent accumulator with the same configuration
        and statistics."""
        other = CoverageAccumulator(self.image_size, self.map_shape, self.bin_shape,
                                    self.radial_bins, self.sigma, self.distribution_weight,
                                    self.bin_weight, self.radial_weight)
        snap = self.snapshot()
        other.distribution_map = snap.distribution_map
        other.bin_map = snap.bin_map
        other.radial_distribution = snap.radial_distribution
        other.num_sets = snap.num_sets
        return other

    def _weighted_saturation(self, counts: np.ndarray, weights: np.ndarray) -> float:
        return float(np.sum(weights * saturate(counts)) / np.sum(weights))

    def _quality(self, dist: np.ndarray, bins: np.ndarray, radial: np.ndarray) -> float:
        return self.distribution_weight * self._weighted_saturation(dist, self._map_weights)\
            + self.bin_weight * self._weighted_saturation(bins, self._bin_weights)\
            + self.radial_weight * self._weighted_saturation(radial, self._radial_weights)

    def quality(self) -> float:
        """Returns the coverage quality of the accumulated point sets."""
        snap = self.snapshot()
        return self._quality(snap.distribution_map, snap.bin_map, snap.radial_distribution)

    def quality_with(self, point_sets) -> float:
        """Returns the quality after (hypothetically) adding all given point
        sets. The accumulator is not modified."""
        return self._quality(*self._with_sets(self.snapshot(), point_sets))

    def gain(self, point_sets) -> float:
        """Returns the quality improvement of (hypothetically) adding all
        given point sets, based on a single consistent snapshot."""
        snap = self.snapshot()
        before = self._quality(snap.distribution_map, snap.bin_map, snap.radial_distribution)
        after = self._quality(*self._with_sets(snap, point_sets))
        return max(0.0, after - before)

    def _with_sets(self, snap: CoverageSnapshot, point_sets) -> tuple:
        dist = snap.distribution_map.copy()
        bins = snap.bin_map.copy()
        radial = snap.radial_distribution.copy()
        for points in point_sets:
            dist += self.distribution_increment(points)
            bins += self.bin_increment(points)
            radial += self.radial_increment(points)
        return dist, bins, radial


def obtain_set_score(accumulator: CoverageAccumulator, points) -> float:
    """Rates how much the point set would improve the coverage.

    The score is the quality gain of (hypothetically) adding the set, thus it
    is non-negative and higher for sets covering under-represented image
    regions or distances. The accumulator is not modified.
    """
    return accumulator.gain([points])


def aggregate_score(accumulator: CoverageAccumulator, point_sets) -> float:
    """Quality gain of adding all the point sets (independent of their
    order)."""
    return accumulator.gain(point_sets)


def prep_for_display(distribution_map: np.ndarray, output_size: tuple = None,
                     blur_sigma: float = 1.0) -> np.ndarray:
    """Renders a coverage map as pseudocolored RGB image.

    Args:
        distribution_map: 2D histogram, e.g. the accumulator's distribution
            or bin map.
        output_size: Optional (width, height) of the rendering.
        blur_sigma: Standard deviation of the Gaussian smoothing (in map
            cells), 0 to disable.
    """
    values = np.asarray(distribution_map, dtype=np.float32)
    if values.ndim != 2:
        raise ValueError('Only 2D maps can be rendered.')
    if blur_sigma > 0:
        values = cv2.GaussianBlur(values, (0, 0), blur_sigma)
    max_val = float(values.max()) if values.size > 0 else 0.0
    if max_val > 0:
        values = values / max_val
    if output_size is not None:
        values = cv2.resize(values, tuple(output_size), interpolation=cv2.INTER_NEAREST)
    return imvis.pseudocolor(values, limits=[0.0, 1.0])
