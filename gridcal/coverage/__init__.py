"""Coverage statistics & selection of the calibration frames."""
from .scoring import CoverageAccumulator, CoverageSnapshot, aggregate_score, gaussian_prior,\
    obtain_set_score, prep_for_display, saturate
from .optimization import Candidate, EmptyPoolError, Selection, SelectionStrategy, SetOptimizer,\
    generate_random_index_array, random_culling, register_strategy, strategy_class, unregister_strategy
from .session import CalibrationSession
