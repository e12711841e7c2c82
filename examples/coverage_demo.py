import logging
import numpy as np
import cv2
from vito import imvis

from gridcal.config import CornerLayout, PatternGeometry, PatternSize
from gridcal.coverage import CalibrationSession, SetOptimizer, prep_for_display
from gridcal.patterns import PatternDetector


def render_frame(rng, rows=4, cols=5, image_size=(640, 480)):
    """Renders a randomly placed & slightly warped square grid."""
    width, height = image_size
    pitch, side = 40, 20
    img = np.full((height, width), 220, dtype=np.uint8)
    pw, ph = cols * pitch, rows * pitch
    ox = rng.uniform(20, width - pw - 20)
    oy = rng.uniform(20, height - ph - 20)
    src = np.float32([[0, 0], [pw, 0], [pw, ph], [0, ph]])
    dst = src + np.float32([ox, oy]) + rng.uniform(-8, 8, size=(4, 2)).astype(np.float32)
    H = cv2.getPerspectiveTransform(src, dst)
    for r in range(rows):
        for c in range(cols):
            x0 = c * pitch + (pitch - side) / 2
            y0 = r * pitch + (pitch - side) / 2
            square = np.float32([[[x0, y0], [x0 + side, y0], [x0 + side, y0 + side], [x0, y0 + side]]])
            warped = cv2.perspectiveTransform(square, H).reshape(-1, 2)
            cv2.fillConvexPoly(img, np.round(warped).astype(np.int32), 30)
    return img


def demo_selection(num_frames=40, budget=8):
    rng = np.random.default_rng(42)
    geometry = PatternGeometry(PatternSize(4, 5), CornerLayout.MASK, fill_ratio=0.5)
    detector = PatternDetector(geometry)
    print(detector.pipeline)

    session = CalibrationSession(detector, (640, 480))
    session.add_frames((f'frame-{i:02d}', render_frame(rng)) for i in range(num_frames))
    print(f'{len(session.candidates)} candidates, {session.num_rejected} rejected frames')

    for mode in ['first-n', 'score-based']:
        selection = SetOptimizer(mode, budget=budget).select(session.candidates, session.accumulator)
        print(f'{mode}: {", ".join(selection.names)} (gain {selection.aggregate_score:.3f})')

    session.select(SetOptimizer('enhanced-mcm', budget=budget))
    print(f'Coverage quality: {session.coverage:.3f}')
    imvis.imshow(prep_for_display(session.accumulator.distribution_map, output_size=(640, 480)),
                 title='Distribution map', wait_ms=-1)


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO,
                        format='[%(levelname)s] %(message)s')
    demo_selection()
