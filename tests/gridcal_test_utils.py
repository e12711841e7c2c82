import os
import cv2
import numpy as np
from pathlib import Path

from gridcal.patches import Patch

TESTS_DIR = Path(os.path.dirname(__file__)).absolute()

FOREGROUND = 30
BACKGROUND = 220


def render_squares(rows: int, cols: int, pitch: int = 40, side: int = 20,
                   offset: tuple = (60, 50), image_size: tuple = (640, 480),
                   skip: set = None, blur_sigma: float = 0.0):
    """Renders a grid of dark, pixel-aligned squares on a bright background.

    Args:
        pitch: Distance between neighboring square centers.
        side: Side length of each square, i.e. ``fill_ratio = side / pitch``.
        offset: (x, y) of the top-left pixel of the first square.
        skip: Set of (row, col) cells which should not be drawn.

    Returns:
        tuple ``(image, centres, corners)``, where the centres (Nx2) and the
        corners (4 per cell, row-major corner grid of the mask layout) hold
        the ground truth in pixel-center coordinates.
    """
    width, height = image_size
    image = np.full((height, width), BACKGROUND, dtype=np.uint8)
    centres = list()
    corner_rows = [list() for _ in range(2 * rows)]
    for r in range(rows):
        for c in range(cols):
            x0 = offset[0] + c * pitch
            y0 = offset[1] + r * pitch
            x1, y1 = x0 + side, y0 + side
            if skip is None or (r, c) not in skip:
                image[y0:y1, x0:x1] = FOREGROUND
            centres.append(((x0 + x1) / 2 - 0.5, (y0 + y1) / 2 - 0.5))
            corner_rows[2 * r].extend([(x0 - 0.5, y0 - 0.5), (x1 - 0.5, y0 - 0.5)])
            corner_rows[2 * r + 1].extend([(x0 - 0.5, y1 - 0.5), (x1 - 0.5, y1 - 0.5)])
    if blur_sigma > 0:
        image = cv2.GaussianBlur(image, (0, 0), blur_sigma)
    corners = np.array([pt for row in corner_rows for pt in row], dtype=np.float64)
    return image, np.array(centres, dtype=np.float64), corners


def grid_points(rows: int, cols: int, pitch: float = 40.0, offset: tuple = (100.0, 80.0),
                H: np.ndarray = None) -> np.ndarray:
    """Returns the row-major cell centres of a (optionally warped) grid."""
    rr, cc = np.mgrid[0:rows, 0:cols]
    pts = np.column_stack((cc.ravel() * pitch + offset[0], rr.ravel() * pitch + offset[1]))
    if H is not None:
        pts = cv2.perspectiveTransform(pts.reshape(-1, 1, 2).astype(np.float64), H).reshape(-1, 2)
    return pts.astype(np.float64)


def tilted_homography() -> np.ndarray:
    """A moderate perspective distortion (rotation + tilt)."""
    src = np.array([[100, 80], [500, 80], [500, 400], [100, 400]], dtype=np.float32)
    dst = np.array([[130, 70], [520, 120], [480, 420], [90, 380]], dtype=np.float32)
    return cv2.getPerspectiveTransform(src, dst)


def make_patch(cx: int, cy: int, width: int, height: int = None,
               var: float = 0.0, mean: float = FOREGROUND) -> Patch:
    """Creates an axis-aligned rectangular patch without rendering."""
    height = width if height is None else height
    left, top = cx - width // 2, cy - height // 2
    hull = np.array([[left, top], [left + width, top], [left + width, top + height], [left, top + height]],
                    dtype=np.int32).reshape(-1, 1, 2)
    moments = cv2.moments(hull)
    centroid2f = np.array([moments['m10'] / moments['m00'], moments['m01'] / moments['m00']],
                          dtype=np.float32)
    return Patch(hull=hull, centroid=(int(round(centroid2f[0])), int(round(centroid2f[1]))),
                 centroid2f=centroid2f, moments=moments, area=float(moments['m00']),
                 num_pixels=width * height, mean_intensity=mean, var_intensity=var)


def grid_patches(rows: int, cols: int, pitch: int = 40, side: int = 20,
                 offset: tuple = (100, 100)) -> list:
    """Returns the (row-major) patches of a regular grid."""
    return [make_patch(offset[0] + c * pitch, offset[1] + r * pitch, side)
            for r in range(rows) for c in range(cols)]


def cluster_points(center: tuple, extent: tuple, num: int = 20, rng=None) -> np.ndarray:
    """Returns a 4x5 grid of `num` points spanning the given extent (w, h)."""
    cols = 5
    rows = int(np.ceil(num / cols))
    xs = np.linspace(center[0] - extent[0] / 2, center[0] + extent[0] / 2, cols)
    ys = np.linspace(center[1] - extent[1] / 2, center[1] + extent[1] / 2, rows)
    gx, gy = np.meshgrid(xs, ys)
    pts = np.column_stack((gx.ravel(), gy.ravel()))[:num]
    if rng is not None:
        pts = pts + rng.uniform(-1, 1, size=pts.shape)
    return pts.astype(np.float32)
