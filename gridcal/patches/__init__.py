"""Blob (patch) extraction and the patch reduction pipeline."""
from .patch import Patch, PatchExtractor, find_all_patches, hull_intensity_statistics
from .pipeline import FilterResult, PatchFilterPipeline
from . import filters
