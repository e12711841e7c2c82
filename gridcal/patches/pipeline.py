import logging
import toml
from dataclasses import dataclass, field

from ..config import PatternSize
from . import filters


_logger = logging.getLogger('gridcal.patches')


@dataclass
class FilterResult:
    """Outcome of the patch filter pipeline.

    success:        True if exactly ``rows * cols`` patches remain.
    patches:        The remaining patches.
    failed_filter:  Name of the filter after which too few patches were left
                    (None if the pipeline did not stop early).
    counts:         Number of patches after each applied filter.
    """
    success: bool
    patches: list = field(repr=False)
    failed_filter: str = None
    counts: list = field(default_factory=list)


class PatchFilterPipeline(object):
    """The patch reduction pipeline.

    This class holds a list of filters which are subsequently applied to the
    candidate patches of an image. The pipeline stops early as soon as fewer
    patches than required by the pattern remain.
    """
    def __init__(self):
        self.filters = list()

    @classmethod
    def default(cls):
        """Returns the standard pipeline: variance, shape, enclosure,
        cluster, and reduction filter (in this order)."""
        pipeline = cls()
        for fname in ['variance', 'shape', 'enclosure', 'cluster', 'reduce']:
            pipeline.add_filter(filters.create_filter(fname))
        return pipeline

    def num_filters(self) -> int:
        """Returns the number of filters."""
        return len(self.filters)

    def add_filter(self, filter: filters.PatchFilter) -> None:
        """Adds the filter to the end of the pipeline."""
        _logger.info(f'Adding patch filter #{len(self.filters) + 1}: {filter}')
        self.filters.append(filter)

    def set_enabled(self, index: int, enabled: bool) -> None:
        """Enables/disables the filter at the given index.

        If index is None or < 0, then the flag will be applied to the whole
        pipeline.
        """
        if (index is None) or (index < 0):
            for f in self.filters:
                f.set_enabled(enabled)
        else:
            self.filters[index].set_enabled(enabled)

    def swap_previous(self, index: int) -> None:
        """Swaps filter at index with filter at index-1."""
        self.filters[index], self.filters[index-1] = self.filters[index-1], self.filters[index]

    def swap_next(self, index: int) -> None:
        """Swaps filter at index with filter at index+1."""
        self.filters[index], self.filters[index+1] = self.filters[index+1], self.filters[index]

    def remove(self, index: int) -> None:
        """Removes filter at the given index."""
        del self.filters[index]

    def apply(self, patches: list, pattern_size: PatternSize) -> FilterResult:
        """Applies all filters subsequently to the given patches."""
        target = pattern_size.num_patches
        patches = list() if patches is None else list(patches)
        counts = list()
        if len(patches) < target:
            return FilterResult(False, patches, None, counts)
        for f in self.filters:
            patches = f.apply(patches, pattern_size)
            counts.append(len(patches))
            if len(patches) < target:
                _logger.debug(f'{f} left only {len(patches)} of {target} required patches.')
                return FilterResult(False, patches, type(f).filter_name(), counts)
        return FilterResult(len(patches) == target, patches, None, counts)

    def get_configuration(self) -> dict:
        """Returns a dictionary holding the complete pipeline configuration,
        which can be restored via :meth:`set_configuration`."""
        return {
            'patch_filters': {
                'filters': [f.get_configuration() for f in self.filters]
            }
        }

    def set_configuration(self, config: dict) -> None:
        """Replaces all filters by the ones configured as entries of the
        table ``[[patch_filters.filters]]``."""
        self.filters.clear()
        for filter_config in config['patch_filters']['filters']:
            f = filters.create_filter(filter_config['filter'])
            f.set_configuration(filter_config)
            self.add_filter(f)

    def save_toml(self, filename) -> None:
        """Stores the pipeline as TOML configuration."""
        with open(filename, 'w') as fp:
            toml.dump(self.get_configuration(), fp)

    def load_toml(self, filename) -> None:
        """Loads the pipeline from the given TOML file."""
        _logger.info(f'Loading the patch filter pipeline from `{filename}`')
        self.set_configuration(toml.load(filename))

    def __str__(self) -> str:
        return ' -> '.join(str(f) for f in self.filters)
