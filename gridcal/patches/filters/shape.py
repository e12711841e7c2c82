from ...config import PatternSize
from .filter_base import PatchFilter, positive, register_filter


class ShapeFilter(PatchFilter):
    """Discards patches which are not shaped like a pattern cell.

    Cells are squares or circles (possibly perspectively distorted). Thus,
    we reject overly elongated shapes (ratio of the equivalent ellipse axes,
    computed from the second order moments) and shapes which fill only a
    small part of their min. enclosing rectangle (e.g. triangles, crosses).
    """

    @staticmethod
    def filter_name() -> str:
        return 'shape'

    @staticmethod
    def display_name() -> str:
        return 'Shape Filter'

    def __init__(self):
        super().__init__()
        self.max_elongation = None
        self.min_rectangularity = None
        self.set_max_elongation(4.0)
        self.set_min_rectangularity(0.6)

    def is_valid(self, patch) -> bool:
        return patch.elongation() <= self.max_elongation\
            and patch.rectangularity() >= self.min_rectangularity

    def apply(self, patches: list, pattern_size: PatternSize) -> list:
        if not self.enabled or patches is None:
            return patches
        return [p for p in patches if self.is_valid(p)]

    def set_max_elongation(self, value: float) -> None:
        value = float(value)
        if value < 1:
            raise ValueError(f'Max. elongation must be >= 1, got {value}.')
        self.max_elongation = value

    def set_min_rectangularity(self, value: float) -> None:
        value = float(value)
        if not (0 <= value <= 1):
            raise ValueError(f'Min. rectangularity must be within [0, 1], got {value}.')
        self.min_rectangularity = value

    def set_configuration(self, config: dict) -> None:
        super().set_configuration(config)
        if 'max_elongation' in config:
            self.set_max_elongation(config['max_elongation'])
        if 'min_rectangularity' in config:
            self.set_min_rectangularity(config['min_rectangularity'])

    def get_configuration(self) -> dict:
        d = {
            'max_elongation': self.max_elongation,
            'min_rectangularity': self.min_rectangularity
        }
        d.update(super().get_configuration())
        return d

    def __str__(self) -> str:
        return f'{type(self).display_name()} (elongation<={self.max_elongation:.1f}, rectangularity>={self.min_rectangularity:.2f})'


class EnclosureFilter(PatchFilter):
    """Resolves nested detections.

    MSER often reports the same blob at several (slightly different) intensity
    levels, and occasionally a region which encloses several pattern cells.
    For each pair where one hull contains the other's centroid:
    * if the area ratio is at most `duplicate_ratio`, both are the same blob
      and the inner one is discarded,
    * otherwise the outer (enclosing) one is discarded.
    """

    @staticmethod
    def filter_name() -> str:
        return 'enclosure'

    @staticmethod
    def display_name() -> str:
        return 'Enclosure Filter'

    def __init__(self):
        super().__init__()
        self.duplicate_ratio = None
        self.set_duplicate_ratio(1.5)

    def apply(self, patches: list, pattern_size: PatternSize) -> list:
        if not self.enabled or patches is None:
            return patches
        # Visit larger patches first, ties are resolved by position to
        # keep the result independent of the input order.
        order = sorted(range(len(patches)),
                       key=lambda i: (-patches[i].area, float(patches[i].centroid2f[0]),
                                      float(patches[i].centroid2f[1])))
        rects = [p.bounding_rect for p in patches]
        removed = set()
        for outer in order:
            if outer in removed:
                continue
            for inner in order:
                if inner == outer or inner in removed:
                    continue
                if patches[inner].area > patches[outer].area:
                    continue
                if not _rect_contains(rects[outer], patches[inner].centroid2f)\
                        or not patches[outer].contains(patches[inner].centroid2f):
                    continue
                ratio = patches[outer].area / max(patches[inner].area, 1e-6)
                if ratio <= self.duplicate_ratio:
                    removed.add(inner)
                else:
                    removed.add(outer)
                    break
        return [p for idx, p in enumerate(patches) if idx not in removed]

    def set_duplicate_ratio(self, ratio: float) -> None:
        ratio = positive('duplicate_ratio', ratio)
        if ratio < 1:
            raise ValueError(f'Duplicate area ratio must be >= 1, got {ratio}.')
        self.duplicate_ratio = ratio

    def set_configuration(self, config: dict) -> None:
        super().set_configuration(config)
        if 'duplicate_ratio' in config:
            self.set_duplicate_ratio(config['duplicate_ratio'])

    def get_configuration(self) -> dict:
        d = {'duplicate_ratio': self.duplicate_ratio}
        d.update(super().get_configuration())
        return d

    def __str__(self) -> str:
        return f'{type(self).display_name()} (duplicates<={self.duplicate_ratio:.2f})'


def _rect_contains(rect, pt) -> bool:
    left, top, width, height = rect
    return (left <= pt[0] <= left + width) and (top <= pt[1] <= top + height)


register_filter(ShapeFilter.filter_name(), ShapeFilter)
register_filter(EnclosureFilter.filter_name(), EnclosureFilter)
