import numpy as np
import pytest
import cv2
from pathlib import Path
from gridcal.input import DirectoryNotFoundError, ImageSource, NoImageDirectoryError, is_image_filename
from tests.gridcal_test_utils import render_squares


def _write_images(folder: Path, num: int) -> list:
    names = list()
    for idx in range(num):
        image, _, _ = render_squares(2, 3, offset=(60 + 20 * idx, 50))
        name = f'frame-{idx:02d}.png'
        cv2.imwrite(str(folder / name), image)
        names.append(name)
    (folder / 'notes.txt').write_text('not an image')
    return names


def test_invalid_sources():
    with pytest.raises(DirectoryNotFoundError):
        ImageSource('foo-dir')
    with pytest.raises(DirectoryNotFoundError):
        ImageSource(__file__)
    with pytest.raises(NoImageDirectoryError):
        ImageSource(Path(__file__).parent)


def test_image_filenames():
    assert is_image_filename('a.png')
    assert is_image_filename(Path('dir') / 'B.JPG')
    assert not is_image_filename('a.txt')
    assert not is_image_filename('png')


def test_image_source(tmp_path):
    names = _write_images(tmp_path, 3)
    img_source = ImageSource(tmp_path)
    assert len(img_source) == 3
    assert img_source.files == names

    frame = img_source[1]
    assert frame.index == 1
    assert frame.filename == names[1]
    assert frame.image.ndim == 2
    assert frame.image.dtype == np.uint8
    assert frame.image.shape == (480, 640)

    pairs = list(img_source.named_images())
    assert [name for name, _ in pairs] == names
    assert np.array_equal(pairs[1][1], frame.image)

    # Only the first frames are used
    img_source = ImageSource(tmp_path, max_frames=2)
    assert img_source.files == names[:2]
