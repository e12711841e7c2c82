import cv2
import numpy as np
from collections import namedtuple


GridIndex = namedtuple('GridIndex', 'row col')


def points2numpy(points, dtype=np.float32) -> np.ndarray:
    """Returns the given 2d points as Nx2 array.

    OpenCV bindings often return points as Nx1x2 arrays, these are
    flattened accordingly.
    """
    assert points is not None
    pts = np.asarray(points, dtype=dtype)
    return pts.reshape(-1, 2)


def numpy2cvpts(points: np.ndarray) -> np.ndarray:
    """Returns the Nx1x2 float32 representation required by most OpenCV
    point-processing functions."""
    return points2numpy(points).reshape(-1, 1, 2)


def image_size(x) -> tuple:
    """Returns the (width, height) of the given image or size tuple."""
    if isinstance(x, np.ndarray):
        height, width = x.shape[:2]
        return (width, height)
    elif isinstance(x, (list, tuple)):
        return (x[0], x[1])
    raise RuntimeError('Cannot interpret input (must be either np.ndarray, list, or tuple)')


def perspective_transform(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Returns the homography mapping exactly 4 src points onto dst."""
    return cv2.getPerspectiveTransform(points2numpy(src), points2numpy(dst))


def fit_homography(src: np.ndarray, dst: np.ndarray) -> np.ndarray:
    """Least-squares homography estimate from >= 4 correspondences.

    Returns None if the estimate fails (e.g. degenerate configurations).
    """
    src = points2numpy(src)
    dst = points2numpy(dst)
    if src.shape[0] < 4 or src.shape[0] != dst.shape[0]:
        return None
    if src.shape[0] == 4:
        return perspective_transform(src, dst)
    H, _ = cv2.findHomography(src, dst, 0)
    return H


def apply_homography(H: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Projects the Nx2 points, returns an Nx2 float64 array."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
    return cv2.perspectiveTransform(pts, np.asarray(H, dtype=np.float64)).reshape(-1, 2)


def pairwise_distances(points: np.ndarray) -> np.ndarray:
    """Returns the NxN matrix of euclidean distances."""
    pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    diff = pts[:, np.newaxis, :] - pts[np.newaxis, :, :]
    return np.sqrt(np.sum(diff**2, axis=2))


def nearest_neighbor_distances(points: np.ndarray, k: int = 1) -> np.ndarray:
    """Returns the NxK distances to the k nearest neighbors (sorted)."""
    dists = pairwise_distances(points)
    np.fill_diagonal(dists, np.inf)
    k = min(k, max(0, dists.shape[0] - 1))
    return np.sort(dists, axis=1)[:, :k]


def grid_neighbors(rows: int, cols: int):
    """Yields the row-major index pairs of all horizontally and vertically
    adjacent grid nodes."""
    for r in range(rows):
        for c in range(cols):
            idx = r * cols + c
            if c + 1 < cols:
                yield idx, idx + 1
            if r + 1 < rows:
                yield idx, idx + cols
