import cv2
import logging
import numpy as np
from dataclasses import dataclass, field
from vito import imutils

from ..config import PatchParameterGroup, PatternSize


_logger = logging.getLogger('gridcal.patches')


@dataclass(eq=False)
class Patch:
    """A detected blob, i.e. an MSER region augmented by geometric and
    intensity descriptors.

    hull:           Convex boundary polygon, Nx1x2 int32 (OpenCV contour).
    centroid:       Integer pixel location of the centroid.
    centroid2f:     Sub-pixel centroid as float32 array [x, y].
    moments:        Moments of the hull, see ``cv2.moments``.
    area:           Area of the hull in pixels.
    num_pixels:     Number of pixels of the underlying region.
    mean_intensity, var_intensity: Intensity statistics over the hull interior.
    """
    hull: np.ndarray = field(repr=False)
    centroid: tuple
    centroid2f: np.ndarray
    moments: dict = field(repr=False)
    area: float
    num_pixels: int
    mean_intensity: float
    var_intensity: float

    @classmethod
    def from_region(cls, region: np.ndarray, gray: np.ndarray):
        """Wraps the pixel coordinates of a single region into a patch.

        Returns None for degenerate regions (e.g. collinear pixels).
        """
        pts = np.asarray(region, dtype=np.int32).reshape(-1, 1, 2)
        hull = cv2.convexHull(pts)
        moments = cv2.moments(hull)
        if moments['m00'] <= 0:
            return None
        cx = moments['m10'] / moments['m00']
        cy = moments['m01'] / moments['m00']
        mean, var = hull_intensity_statistics(gray, hull)
        return cls(hull=hull,
                   centroid=(int(round(cx)), int(round(cy))),
                   centroid2f=np.array([cx, cy], dtype=np.float32),
                   moments=moments,
                   area=float(moments['m00']),
                   num_pixels=int(pts.shape[0]),
                   mean_intensity=mean,
                   var_intensity=var)

    def contains(self, point) -> bool:
        """Returns True if the point lies inside (or on) the hull."""
        pt = (float(point[0]), float(point[1]))
        return cv2.pointPolygonTest(self.hull, pt, False) >= 0

    @property
    def bounding_rect(self) -> tuple:
        """Returns the upright bounding box (left, top, width, height)."""
        return cv2.boundingRect(self.hull)

    def elongation(self) -> float:
        """Ratio between the major and minor axis of the equivalent ellipse,
        derived from the central second order moments."""
        m = self.moments
        a = m['mu20'] / m['m00']
        b = m['mu11'] / m['m00']
        c = m['mu02'] / m['m00']
        common = np.sqrt(4 * b * b + (a - c)**2)
        lmax = (a + c + common) / 2
        lmin = (a + c - common) / 2
        if lmin <= 1e-12:
            return np.inf
        return float(np.sqrt(lmax / lmin))

    def rectangularity(self) -> float:
        """Ratio between the hull area and the area of its min. enclosing
        rotated rectangle (1 for squares, pi/4 for circles)."""
        (_, _), (w, h), _ = cv2.minAreaRect(self.hull)
        if w * h <= 0:
            return 0.0
        return float(self.area / (w * h))


def hull_intensity_statistics(gray: np.ndarray, hull: np.ndarray) -> tuple:
    """Returns mean & variance of the intensities within the convex polygon."""
    left, top, width, height = cv2.boundingRect(hull)
    roi = gray[top:top+height, left:left+width]
    mask = np.zeros(roi.shape[:2], dtype=np.uint8)
    cv2.fillConvexPoly(mask, hull.reshape(-1, 2) - np.array([left, top], dtype=np.int32), 255)
    mean, stddev = cv2.meanStdDev(roi, mask=mask)
    return float(mean[0, 0]), float(stddev[0, 0]**2)


class PatchExtractor(object):
    """Finds everything blob-like in an image.

    Wraps OpenCV's MSER detector, each detected region is converted into a
    :class:`Patch`. No geometric filtering is applied.

    The MSER area limits can be specified in pixels. Otherwise, they will be
    derived from the image size via `min_area_ratio` and `max_area_ratio`.
    """
    def __init__(self, params: PatchParameterGroup = None,
                 min_area: int = None, max_area: int = None,
                 min_area_ratio: float = 5e-5, max_area_ratio: float = 0.2):
        self.params = PatchParameterGroup() if params is None else params
        self.min_area = min_area
        self.max_area = max_area
        self.min_area_ratio = min_area_ratio
        self.max_area_ratio = max_area_ratio

    def area_limits(self, gray: np.ndarray) -> tuple:
        """Returns the (min, max) region area in pixels for this image."""
        num_px = gray.shape[0] * gray.shape[1]
        min_area = self.min_area if self.min_area is not None\
            else max(9, int(self.min_area_ratio * num_px))
        max_area = self.max_area if self.max_area is not None\
            else max(min_area + 1, int(self.max_area_ratio * num_px))
        return min_area, max_area

    def detect_regions(self, gray: np.ndarray) -> list:
        """Returns the pixel coordinates (Nx2) of all MSER regions."""
        min_area, max_area = self.area_limits(gray)
        p = self.params
        # A new detector instance per call keeps the extractor stateless (and
        # thus safe to share between worker threads).
        mser = cv2.MSER_create(int(p.delta), min_area, max_area,
                               p.max_variation, p.min_diversity, p.max_evolution,
                               p.area_threshold, p.min_margin, p.edge_blur_size)
        regions, _ = mser.detectRegions(gray)
        return list(regions)

    def extract(self, image: np.ndarray) -> list:
        """Returns the list of all patches found in the given image."""
        if image is None:
            return list()
        gray = imutils.grayscale(image)
        if gray.dtype != np.uint8:
            gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
        patches = list()
        for region in self.detect_regions(gray):
            patch = Patch.from_region(region, gray)
            if patch is not None:
                patches.append(patch)
        _logger.debug(f'Extracted {len(patches)} patches.')
        return patches


def find_all_patches(image: np.ndarray, pattern_size: PatternSize,
                     params: PatchParameterGroup = None) -> list:
    """Finds all patches of the image (using the default area limits)."""
    patches = PatchExtractor(params).extract(image)
    if len(patches) < pattern_size.num_patches:
        _logger.debug(f'Only {len(patches)} patches found, pattern {pattern_size} requires {pattern_size.num_patches}.')
    return patches
