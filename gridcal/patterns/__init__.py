"""Pattern detection: topology, corner estimation and verification."""
from .topology import CellRole, GridTopology, PatchTopologySolver, cell_role, reorder_patches, sort_patches
from .corners import CornerEstimate, CornerEstimator, RefinementResult, correct_patch_centres,\
    find_best_corners, group_points_in_quads, interpolate_corner_locations, refine_corner_positions,\
    ungroup_points_from_quads
from .verification import check_acutance, pattern_in_frame, quads_convex, sharpness, verify_corners,\
    verify_pattern, verify_patches
from .detection import DetectionResult, DetectionStatus, PatternDetector, detect_frames
