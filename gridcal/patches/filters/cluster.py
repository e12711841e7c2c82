import logging
import numpy as np
from ...common import nearest_neighbor_distances, pairwise_distances
from ...config import PatternSize
from .filter_base import PatchFilter, positive, register_filter


_logger = logging.getLogger('gridcal.patches')


def _centroids(patches: list) -> np.ndarray:
    return np.array([p.centroid2f for p in patches], dtype=np.float64).reshape(-1, 2)


class ClusterFilter(PatchFilter):
    """Discards patches which cannot belong to the grid cluster.

    The consensus of the cluster is given by the median nearest neighbor
    spacing and the median patch area. A patch is rejected if
    * it has fewer than `min_neighbors` other patches within
      `neighbor_factor` times the median spacing (scattered false positive), or
    * its area differs by more than `area_factor` from the median area.

    If `min_neighbors` is None, it is derived from the pattern size, i.e. 2
    neighbors for 2D grids, 1 for single rows/columns.
    """

    @staticmethod
    def filter_name() -> str:
        return 'cluster'

    @staticmethod
    def display_name() -> str:
        return 'Cluster Filter'

    def __init__(self):
        super().__init__()
        self.neighbor_factor = None
        self.area_factor = None
        self.min_neighbors = None
        self.set_neighbor_factor(2.0)
        self.set_area_factor(5.0)

    def required_neighbors(self, pattern_size: PatternSize) -> int:
        if self.min_neighbors is not None:
            return self.min_neighbors
        if pattern_size.num_patches == 1:
            return 0
        if pattern_size.rows == 1 or pattern_size.cols == 1:
            return 1
        return 2

    def apply(self, patches: list, pattern_size: PatternSize) -> list:
        if not self.enabled or patches is None:
            return patches
        if len(patches) < 2:
            return patches
        centroids = _centroids(patches)
        spacing = float(np.median(nearest_neighbor_distances(centroids, k=1)))
        dists = pairwise_distances(centroids)
        np.fill_diagonal(dists, np.inf)
        num_neighbors = np.sum(dists <= self.neighbor_factor * spacing, axis=1)
        areas = np.array([p.area for p in patches])
        median_area = float(np.median(areas))
        keep = (num_neighbors >= self.required_neighbors(pattern_size))\
            & (areas <= self.area_factor * median_area)\
            & (areas >= median_area / self.area_factor)
        return [p for p, k in zip(patches, keep) if k]

    def set_neighbor_factor(self, factor: float) -> None:
        self.neighbor_factor = positive('neighbor_factor', factor)

    def set_area_factor(self, factor: float) -> None:
        factor = positive('area_factor', factor)
        if factor < 1:
            raise ValueError(f'Area factor must be >= 1, got {factor}.')
        self.area_factor = factor

    def set_min_neighbors(self, num: int) -> None:
        if num is not None and num < 0:
            raise ValueError(f'Min. number of neighbors must be >= 0, got {num}.')
        self.min_neighbors = num

    def set_configuration(self, config: dict) -> None:
        super().set_configuration(config)
        if 'neighbor_factor' in config:
            self.set_neighbor_factor(config['neighbor_factor'])
        if 'area_factor' in config:
            self.set_area_factor(config['area_factor'])
        if 'min_neighbors' in config:
            self.set_min_neighbors(config['min_neighbors'])

    def get_configuration(self) -> dict:
        d = {
            'neighbor_factor': self.neighbor_factor,
            'area_factor': self.area_factor
        }
        # TOML has no null value, thus the automatic mode is stored by
        # omitting the entry.
        if self.min_neighbors is not None:
            d['min_neighbors'] = self.min_neighbors
        d.update(super().get_configuration())
        return d

    def __str__(self) -> str:
        return f'{type(self).display_name()} (neighbors@{self.neighbor_factor:.1f}, area x{self.area_factor:.1f})'


class ReduceCluster(PatchFilter):
    """Iteratively removes the most deviant patch until exactly
    ``rows * cols`` patches remain.

    The deviation of a patch combines its mean distance to the `k` nearest
    neighbors (relative to the median over all patches) and the log ratio
    between its area and the median area. Patches outside the grid have
    larger neighbor distances, spurious blobs deviate in size.

    If `max_excess` is set, the reduction is only performed if the set is
    close enough to the expected size, i.e. at most `max_excess` patches too
    many. Otherwise, the patches are returned unchanged.
    """

    @staticmethod
    def filter_name() -> str:
        return 'reduce'

    @staticmethod
    def display_name() -> str:
        return 'Cluster Reduction'

    def __init__(self):
        super().__init__()
        self.num_neighbors = None
        self.max_excess = None
        self.set_num_neighbors(4)

    def deviations(self, patches: list) -> np.ndarray:
        """Returns the deviation score of each patch."""
        centroids = _centroids(patches)
        knn = nearest_neighbor_distances(centroids, k=self.num_neighbors)
        spread = knn.mean(axis=1)
        spread_ref = max(float(np.median(spread)), 1e-6)
        areas = np.array([max(p.area, 1e-6) for p in patches])
        return spread / spread_ref + np.abs(np.log(areas / np.median(areas)))

    def apply(self, patches: list, pattern_size: PatternSize) -> list:
        if not self.enabled or patches is None:
            return patches
        target = pattern_size.num_patches
        excess = len(patches) - target
        if excess <= 0:
            return patches
        if self.max_excess is not None and excess > self.max_excess:
            _logger.debug(f'Skipping reduction, {excess} patches too many (max. {self.max_excess}).')
            return patches
        reduced = list(patches)
        while len(reduced) > target:
            if target == 1 and len(reduced) == 2:
                # Deviation is symmetric for 2 patches, keep the more typical one
                del reduced[1]
                break
            worst = int(np.argmax(self.deviations(reduced)))
            del reduced[worst]
        return reduced

    def set_num_neighbors(self, num: int) -> None:
        if num < 1:
            raise ValueError(f'Number of neighbors must be >= 1, got {num}.')
        self.num_neighbors = int(num)

    def set_max_excess(self, num: int) -> None:
        if num is not None and num < 0:
            raise ValueError(f'Max. excess must be >= 0, got {num}.')
        self.max_excess = num

    def set_configuration(self, config: dict) -> None:
        super().set_configuration(config)
        if 'num_neighbors' in config:
            self.set_num_neighbors(config['num_neighbors'])
        if 'max_excess' in config:
            self.set_max_excess(config['max_excess'])

    def get_configuration(self) -> dict:
        d = {'num_neighbors': self.num_neighbors}
        if self.max_excess is not None:
            d['max_excess'] = self.max_excess
        d.update(super().get_configuration())
        return d

    def __str__(self) -> str:
        excess = 'any' if self.max_excess is None else str(self.max_excess)
        return f'{type(self).display_name()} (k={self.num_neighbors}, excess={excess})'


register_filter(ClusterFilter.filter_name(), ClusterFilter)
register_filter(ReduceCluster.filter_name(), ReduceCluster)
