import logging
import numpy as np

from ..config import MAX_PATTERNS_TO_KEEP
from ..patterns.detection import PatternDetector, detect_frames
from .optimization import Candidate, EmptyPoolError, Selection, SetOptimizer, random_culling
from .scoring import CoverageAccumulator


_logger = logging.getLogger('gridcal.session')


class CalibrationSession(object):
    """Collects the detections of a calibration sequence and selects the
    frames to be used for calibration.

    The session owns the coverage accumulator, which is only modified via
    :meth:`accept` (i.e. by the session's single writer). Detection results
    of rejected frames are counted but not kept.
    """
    def __init__(self, detector: PatternDetector, img_size, max_workers: int = None,
                 max_patterns: int = MAX_PATTERNS_TO_KEEP, **accumulator_kwargs):
        self.detector = detector
        self.accumulator = CoverageAccumulator(img_size, **accumulator_kwargs)
        self.max_workers = max_workers
        self.max_patterns = max_patterns
        self.candidates = list()
        self.accepted = list()
        self.num_rejected = 0

    def add_frames(self, frames) -> int:
        """Detects the pattern in all (name, image) pairs.

        Successful detections become candidates. If there are more than
        `max_patterns` candidates, they are randomly culled.

        Returns:
            Number of new candidates.
        """
        frames = list(frames)
        names = [name for name, _ in frames]
        results = detect_frames(self.detector, [image for _, image in frames], self.max_workers)
        num_added = 0
        for name, result in zip(names, results):
            if result.success:
                self.candidates.append(Candidate(name=name, points=result.points))
                num_added += 1
            else:
                self.num_rejected += 1
                _logger.debug(f'Rejected frame `{name}`: {result.status.value}')
        if len(self.candidates) > self.max_patterns:
            _logger.info(f'Keeping {self.max_patterns} of {len(self.candidates)} candidates.')
            self.candidates = random_culling(self.max_patterns, self.candidates)
        return num_added

    def add_candidate(self, name: str, points) -> None:
        """Adds an already detected point set to the pool."""
        self.candidates.append(Candidate(name=name, points=np.asarray(points, dtype=np.float32)))

    def accept(self, candidate: Candidate) -> None:
        """Accumulates the candidate's coverage statistics."""
        self.accumulator.add_point_set(candidate.points)
        self.accepted.append(candidate)

    def select(self, optimizer: SetOptimizer = None) -> Selection:
        """Selects from the (not yet accepted) candidates and accepts the
        chosen ones.

        Raises:
            EmptyPoolError: If there are no candidates.
        """
        if optimizer is None:
            optimizer = SetOptimizer()
        if not self.candidates:
            raise EmptyPoolError('The session has no candidates to select from.')
        selection = optimizer.select(self.candidates, self.accumulator)
        chosen = [self.candidates[idx] for idx in selection.indices]
        for candidate in chosen:
            self.accept(candidate)
        selected = set(selection.indices)
        self.candidates = [c for idx, c in enumerate(self.candidates) if idx not in selected]
        return selection

    @property
    def coverage(self) -> float:
        """Coverage quality of the accepted sets."""
        return self.accumulator.quality()
