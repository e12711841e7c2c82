import pytest
import numpy as np
from gridcal import config
from gridcal.config import ConfigurationError, CornerDetector, CornerLayout, DetectionParams,\
    OptimizationMode, PatchParameterGroup, PatternGeometry, PatternSize


def test_pattern_size():
    ps = PatternSize(3, 4)
    assert ps.num_patches == 12
    assert str(ps) == '3x4'
    for rows, cols in [(0, 3), (3, 0), (-1, 2), (2.5, 3), ('3', 4)]:
        with pytest.raises(ConfigurationError):
            PatternSize(rows, cols)


def test_geometry_lattice():
    geo = PatternGeometry(PatternSize(2, 3))
    assert geo.layout == CornerLayout.LATTICE
    assert geo.corner_grid_size == PatternSize(3, 4)
    assert geo.num_corners == 12
    centres = geo.unit_centres()
    assert centres.shape == (6, 2)
    assert np.allclose(centres[0], [0.5, 0.5])
    assert np.allclose(centres[5], [2.5, 1.5])
    corners = geo.unit_corners()
    assert np.allclose(corners[0], [0, 0])
    assert np.allclose(corners[-1], [3, 2])
    # Cell (1, 2) is spanned by lattice corners (1, 2), (1, 3), (2, 3), (2, 2)
    assert geo.cell_corner_indices(1, 2) == (6, 7, 11, 10)
    with pytest.raises(IndexError):
        geo.cell_corner_indices(2, 0)


def test_geometry_mask():
    geo = PatternGeometry(PatternSize(2, 3), layout='mask', fill_ratio=0.5)
    assert geo.layout == CornerLayout.MASK
    assert geo.corner_grid_size == PatternSize(4, 6)
    corners = geo.unit_corners()
    assert np.allclose(corners[0], [0.25, 0.25])
    assert np.allclose(corners[1], [0.75, 0.25])
    assert np.allclose(corners[-1], [2.75, 1.75])
    assert geo.cell_corner_indices(0, 1) == (2, 3, 9, 8)
    with pytest.raises(ConfigurationError):
        PatternGeometry(PatternSize(2, 3), layout=CornerLayout.MASK, fill_ratio=1.0)
    with pytest.raises(ConfigurationError):
        PatternGeometry(PatternSize(2, 3), layout='hexagonal')


def test_parse_enum():
    assert config.parse_enum(OptimizationMode, 'score-based') == OptimizationMode.SCORE_BASED
    assert config.parse_enum(OptimizationMode, 'Enhanced_MCM') == OptimizationMode.ENHANCED_MCM
    assert config.parse_enum(OptimizationMode, 5) == OptimizationMode.EXHAUSTIVE_SEARCH
    assert config.parse_enum(CornerDetector, CornerDetector.INVERTED) == CornerDetector.INVERTED
    assert config.parse_enum(CornerDetector, 10) == CornerDetector.INVERTED
    assert config.enum_to_str(OptimizationMode.BEST_OF_RANDOM) == 'best-of-random'
    for invalid in ['foo', 42, None, '']:
        with pytest.raises(ConfigurationError):
            config.parse_enum(OptimizationMode, invalid)


def test_parameter_validation():
    pg = PatchParameterGroup()
    assert pg.delta == pytest.approx(7.5)
    assert pg.max_evolution == 200
    with pytest.raises(ConfigurationError):
        PatchParameterGroup(delta=0)
    with pytest.raises(ConfigurationError):
        PatchParameterGroup(min_diversity=1.0)
    with pytest.raises(ConfigurationError):
        PatchParameterGroup(edge_blur_size=-1)

    params = DetectionParams()
    assert params.correction_factor == pytest.approx(config.DEFAULT_CORRECTION_FACTOR)
    assert params.search_dist == config.MAX_SEARCH_DIST
    assert params.min_border == config.MIN_DISTANCE_FROM_EDGE
    assert DetectionParams(detector='inverted').detector == CornerDetector.INVERTED
    for kwargs in [{'correction_factor': 1.5}, {'correction_factor': -0.1},
                   {'search_dist': 0}, {'min_dist': 10, 'max_dist': 5},
                   {'bin_tolerance': 0.5}, {'detector': 'foo'},
                   {'refinement_tolerance': 0}, {'min_sharpness': -1}]:
        with pytest.raises(ConfigurationError):
            DetectionParams(**kwargs)


def test_toml_roundtrip(tmp_path):
    geo = PatternGeometry(PatternSize(4, 6), layout=CornerLayout.MASK, fill_ratio=0.4)
    params = DetectionParams(correction_factor=0.3, detector=CornerDetector.EXTENDED, min_dist=5.0)
    patch_params = PatchParameterGroup(delta=5.0, min_margin=0.01)
    fn = tmp_path / 'detection.toml'
    config.save_toml(fn, geo, params, patch_params)
    geo2, params2, patch_params2 = config.load_toml(fn)
    assert geo2 == geo
    assert params2 == params
    assert patch_params2 == patch_params

    # Missing sections fall back to the defaults
    config.save_toml(fn, PatternGeometry(PatternSize(2, 2)))
    geo3, params3, patch_params3 = config.load_toml(fn)
    assert geo3.size == PatternSize(2, 2)
    assert params3 == DetectionParams()
    assert patch_params3 == PatchParameterGroup()


def test_toml_invalid(tmp_path):
    fn = tmp_path / 'invalid.toml'
    fn.write_text('[detection]\ncorrection_factor = 0.5\n')
    with pytest.raises(ConfigurationError):
        config.load_toml(fn)
    fn.write_text('[pattern]\nrows = 3\ncols = 4\n[detection]\nno_such_param = 1\n')
    with pytest.raises(ConfigurationError):
        config.load_toml(fn)
    fn.write_text('[pattern]\nrows = 3\ncols = 4\n[detection]\ndetector = "fancy"\n')
    with pytest.raises(ConfigurationError):
        config.load_toml(fn)
