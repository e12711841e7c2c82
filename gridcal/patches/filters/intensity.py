import numpy as np
from ...config import PatternSize
from .filter_base import PatchFilter, positive, register_filter


class VarianceFilter(PatchFilter):
    """Discards patches with a large internal intensity variance.

    Pattern cells are (more or less) homogeneous regions, whereas textured
    background regions mistakenly detected as blobs exhibit a high intensity
    variance. A patch is rejected if its variance exceeds
    ``max(floor, factor * median variance)``.
    """

    @staticmethod
    def filter_name() -> str:
        return 'variance'

    @staticmethod
    def display_name() -> str:
        return 'Variance Filter'

    def __init__(self):
        super().__init__()
        self.factor = None
        self.floor = None
        self.set_factor(4.0)
        self.set_floor(100.0)

    def threshold(self, patches: list) -> float:
        """Returns the variance limit for the given patch set."""
        median = float(np.median([p.var_intensity for p in patches]))
        return max(self.floor, self.factor * median)

    def apply(self, patches: list, pattern_size: PatternSize) -> list:
        if not self.enabled or patches is None:
            return patches
        if len(patches) == 0:
            return patches
        limit = self.threshold(patches)
        return [p for p in patches if p.var_intensity <= limit]

    def set_factor(self, factor: float) -> None:
        self.factor = positive('factor', factor)

    def set_floor(self, floor: float) -> None:
        floor = float(floor)
        if floor < 0:
            raise ValueError(f'Variance floor must be >= 0, got {floor}.')
        self.floor = floor

    def set_configuration(self, config: dict) -> None:
        super().set_configuration(config)
        if 'factor' in config:
            self.set_factor(config['factor'])
        if 'floor' in config:
            self.set_floor(config['floor'])

    def get_configuration(self) -> dict:
        d = {
            'factor': self.factor,
            'floor': self.floor
        }
        d.update(super().get_configuration())
        return d

    def __str__(self) -> str:
        return f'{type(self).display_name()} (factor={self.factor:.1f}, floor={self.floor:.1f})'


register_filter(VarianceFilter.filter_name(), VarianceFilter)
