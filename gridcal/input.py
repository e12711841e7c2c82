import logging
from collections import namedtuple
from pathlib import Path
from vito import imutils

from .config import MAX_FRAMES_TO_LOAD


_logger = logging.getLogger('gridcal.input')


Frame = namedtuple('Frame', 'index filename image')


IMAGE_EXTENSIONS = ['.bmp', '.jpeg', '.jpg', '.png', '.pgm', '.ppm', '.tif', '.tiff', '.webp']


def is_image_filename(f) -> bool:
    """Returns True if the filename has a supported image extension."""
    return Path(f).suffix.lower() in IMAGE_EXTENSIONS


class DirectoryNotFoundError(Exception):
    """Wrong directory path."""
    pass


class NoImageDirectoryError(Exception):
    """Directory contains no (supported) image files."""
    pass


class ImageSource(object):
    """Grayscale frames of a calibration sequence stored in a local folder.

    Files are visited in sorted order, at most `max_frames` of them. Images
    are loaded on access, nothing is cached.
    """
    def __init__(self, folder, max_frames: int = MAX_FRAMES_TO_LOAD):
        folder = Path(folder)
        if not folder.is_dir():
            raise DirectoryNotFoundError(f'Image folder `{folder}` does not exist!')
        files = sorted(f.name for f in folder.iterdir() if is_image_filename(f))
        if not files:
            raise NoImageDirectoryError(f'No image files found in folder `{folder}`!')
        if len(files) > max_frames:
            _logger.warning(f'Folder `{folder}` contains {len(files)} images, only the first {max_frames} will be used.')
            files = files[:max_frames]
        self.folder = folder
        self.files = files

    def __len__(self) -> int:
        return len(self.files)

    def __getitem__(self, index: int) -> Frame:
        filename = self.files[index]
        return Frame(index, filename, imutils.imread(self.folder / filename, mode='L'))

    def named_images(self):
        """Yields (filename, image) pairs, e.g. for
        :meth:`~gridcal.coverage.CalibrationSession.add_frames`."""
        for idx in range(len(self)):
            frame = self[idx]
            yield frame.filename, frame.image
