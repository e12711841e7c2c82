import pytest
import numpy as np
from gridcal.config import ConfigurationError, CornerLayout, DetectionParams, PatternGeometry, PatternSize
from gridcal.patterns import DetectionStatus, PatternDetector, detect_frames
from tests.gridcal_test_utils import BACKGROUND, render_squares


def test_find_pattern_centres():
    image, expected, _ = render_squares(4, 5)
    detector = PatternDetector(PatternSize(4, 5))
    result = detector.find_pattern_centres(image)
    assert result.success
    assert result.status == DetectionStatus.OK
    assert result.centres.shape == (20, 2)
    assert result.centres.dtype == np.float32
    assert result.corners is None
    assert np.max(np.linalg.norm(result.centres - expected, axis=1)) < 0.5
    assert result.num_candidates >= 20
    assert np.array_equal(result.points, result.centres)

    # Uncorrected centroids
    detector = PatternDetector(PatternSize(4, 5), DetectionParams(correct_centres=False))
    result = detector.find_pattern_centres(image)
    assert result.success
    assert np.max(np.linalg.norm(result.centres - expected, axis=1)) < 0.5


def test_find_pattern_corners():
    image, centres, corners = render_squares(3, 4, pitch=40, side=20)
    geo = PatternGeometry(PatternSize(3, 4), CornerLayout.MASK, fill_ratio=0.5)
    detector = PatternDetector(geo)
    assert detector.supports_corners
    result = detector.process(image)
    assert result.success
    assert result.converged
    assert result.corners.shape == (48, 2)
    assert result.num_refined == 48
    assert np.max(np.linalg.norm(result.centres - centres, axis=1)) < 0.5
    assert np.max(np.linalg.norm(result.corners - corners, axis=1)) < 1.0
    assert np.array_equal(result.points, result.corners)


def test_detection_failures():
    detector = PatternDetector(PatternSize(4, 5))
    # Nothing to detect
    blank = np.full((480, 640), BACKGROUND, dtype=np.uint8)
    result = detector.process(blank)
    assert not result.success
    assert result.status == DetectionStatus.INSUFFICIENT_PATCHES
    assert result.centres is None
    assert detector.process(None).status == DetectionStatus.INSUFFICIENT_PATCHES

    # Partially occluded pattern
    occluded, _, _ = render_squares(4, 5, skip={(1, 1), (2, 3), (3, 4)})
    result = detector.process(occluded)
    assert result.status == DetectionStatus.INSUFFICIENT_PATCHES
    assert result.failed_filter is not None or result.num_candidates < 20

    # Wrong pattern size
    image, _, _ = render_squares(4, 5)
    assert not PatternDetector(PatternSize(5, 5)).process(image).success

    # Blur gate
    blurred, _, _ = render_squares(4, 5, blur_sigma=5.0)
    strict = PatternDetector(PatternSize(4, 5), DetectionParams(min_sharpness=1e6))
    assert strict.process(blurred).status == DetectionStatus.BLURRED

    # Pattern spacing outside the valid range
    picky = PatternDetector(PatternSize(4, 5), DetectionParams(min_dist=50.0))
    assert picky.process(image).status == DetectionStatus.GEOMETRIC_REJECTION


def test_line_patterns():
    image, expected, _ = render_squares(1, 6, pitch=50)
    detector = PatternDetector(PatternSize(1, 6))
    assert not detector.supports_corners
    result = detector.process(image)
    assert result.success
    assert result.corners is None
    assert np.max(np.linalg.norm(result.centres - expected, axis=1)) < 0.5
    with pytest.raises(ConfigurationError):
        detector.find_pattern_corners(image)
    with pytest.raises(ConfigurationError):
        PatternDetector('4x5')


def test_detect_frames():
    image, expected, _ = render_squares(4, 5)
    shifted, expected_shifted, _ = render_squares(4, 5, offset=(300, 200))
    blank = np.full((480, 640), BACKGROUND, dtype=np.uint8)
    detector = PatternDetector(PatternSize(4, 5))
    results = detect_frames(detector, [image, blank, shifted, image], max_workers=3)
    assert [r.success for r in results] == [True, False, True, True]
    assert np.max(np.linalg.norm(results[0].centres - expected, axis=1)) < 0.5
    assert np.max(np.linalg.norm(results[2].centres - expected_shifted, axis=1)) < 0.5
    assert np.array_equal(results[0].centres, results[3].centres)
    assert detect_frames(detector, []) == list()
