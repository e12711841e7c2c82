"""Filters of the patch reduction pipeline."""

# import everything is done to ensure each implemented filter is registered
# and can thus be created via :func:`gridcal.patches.filters.create_filter()`.

from gridcal.patches.filters.filter_base import *
from gridcal.patches.filters.intensity import *
from gridcal.patches.filters.shape import *
from gridcal.patches.filters.cluster import *
