import pytest
import numpy as np
from gridcal.config import PatchParameterGroup, PatternSize
from gridcal.patches import PatchExtractor, PatchFilterPipeline, filters, find_all_patches
from tests.gridcal_test_utils import BACKGROUND, grid_patches, make_patch, render_squares


def test_patch_extraction():
    image, centres, _ = render_squares(3, 4)
    patches = PatchExtractor().extract(image)
    assert len(patches) >= 12
    for p in patches:
        assert p.area > 0
        assert p.num_pixels > 0
        assert p.hull.ndim == 3
    # Each square is found
    for centre in centres:
        dists = [np.linalg.norm(p.centroid2f - centre) for p in patches]
        assert min(dists) < 0.5
    # Homogeneous squares
    best = [patches[int(np.argmin([np.linalg.norm(p.centroid2f - c) for p in patches]))]
            for c in centres]
    for p in best:
        assert p.var_intensity < 1.0
        assert p.mean_intensity < 100

    # Empty & invalid inputs are valid
    assert PatchExtractor().extract(np.full((100, 120), BACKGROUND, dtype=np.uint8)) == list()
    assert PatchExtractor().extract(None) == list()
    # Color and float images are supported
    color = np.dstack((image, image, image))
    assert len(PatchExtractor(PatchParameterGroup(delta=5.0)).extract(color)) >= 12
    assert len(find_all_patches(image.astype(np.float32) / 255.0, PatternSize(3, 4))) >= 12


def test_area_limits():
    gray = np.zeros((100, 200), dtype=np.uint8)
    assert PatchExtractor().area_limits(gray) == (9, 4000)
    assert PatchExtractor(min_area=50, max_area=500).area_limits(gray) == (50, 500)


def test_default_pipeline():
    pipeline = PatchFilterPipeline.default()
    assert [f.filter_name() for f in pipeline.filters] == ['variance', 'shape', 'enclosure', 'cluster', 'reduce']
    assert pipeline.num_filters() == 5
    assert str(pipeline).startswith('Variance Filter')

    image, _, _ = render_squares(4, 5)
    patches = PatchExtractor().extract(image)
    result = pipeline.apply(patches, PatternSize(4, 5))
    assert result.success
    assert len(result.patches) == 20
    assert result.failed_filter is None
    assert len(result.counts) == 5


def test_pipeline_failures():
    pipeline = PatchFilterPipeline.default()
    patches = grid_patches(2, 3)
    # Not enough input patches
    result = pipeline.apply(patches, PatternSize(3, 3))
    assert not result.success
    assert result.counts == list()
    # Early stop, the shape filter removes the elongated patches
    patches = patches + [make_patch(400, 400 + 20 * i, 40, 4) for i in range(3)]
    result = pipeline.apply(patches, PatternSize(3, 3))
    assert not result.success
    assert result.failed_filter == 'shape'
    assert len(result.patches) == 6
    # Without reduction, too many patches remain
    patches = grid_patches(3, 3)
    pipeline.set_enabled(4, False)
    result = pipeline.apply(patches + [make_patch(100 + 3 * 40, 100, 20)], PatternSize(3, 3))
    assert not result.success
    assert result.failed_filter is None
    assert len(result.patches) == 10
    assert pipeline.apply(None, PatternSize(1, 1)).success is False


def test_pipeline_editing():
    pipeline = PatchFilterPipeline.default()
    pipeline.swap_next(0)
    assert [f.filter_name() for f in pipeline.filters[:2]] == ['shape', 'variance']
    pipeline.swap_previous(1)
    assert [f.filter_name() for f in pipeline.filters[:2]] == ['variance', 'shape']
    pipeline.remove(0)
    assert pipeline.num_filters() == 4
    pipeline.set_enabled(None, False)
    assert all(not f.enabled for f in pipeline.filters)
    pipeline.set_enabled(-1, True)
    assert all(f.enabled for f in pipeline.filters)


def test_pipeline_toml(tmp_path):
    pipeline = PatchFilterPipeline.default()
    pipeline.filters[0].set_factor(2.5)
    pipeline.filters[3].set_min_neighbors(1)
    pipeline.filters[4].set_max_excess(7)
    pipeline.set_enabled(1, False)
    fn = tmp_path / 'filters.toml'
    pipeline.save_toml(fn)

    restored = PatchFilterPipeline()
    restored.load_toml(fn)
    assert restored.get_configuration() == pipeline.get_configuration()
    assert restored.filters[0].factor == pytest.approx(2.5)
    assert not restored.filters[1].enabled
    assert restored.filters[3].min_neighbors == 1
    assert restored.filters[4].max_excess == 7

    with pytest.raises(KeyError):
        restored.set_configuration({'patch_filters': {'filters': [{'filter': 'no-such-filter'}]}})
