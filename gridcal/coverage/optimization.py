"""Selection of the calibration frames.

Given a pool of detected point sets, the :class:`SetOptimizer` picks a subset
which maximizes the coverage gain w.r.t. a :class:`CoverageAccumulator`. The
selection strategies are registered per :class:`OptimizationMode`, similar to
the patch filters.
"""
import itertools
import logging
import math
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from ..config import ConfigurationError, MAX_CANDIDATE_PATTERNS, MAX_PATTERNS_PER_SET,\
    OptimizationMode, parse_enum
from .scoring import CoverageAccumulator, aggregate_score, obtain_set_score


_logger = logging.getLogger('gridcal.optimization')


class EmptyPoolError(Exception):
    """The candidate pool is empty, thus nothing can be selected."""
    pass


@dataclass(eq=False)
class Candidate:
    """A detected point set (e.g. the corners of a single frame)."""
    name: str
    points: np.ndarray = field(repr=False)


@dataclass
class Selection:
    """Result of the set optimization.

    indices:    Pool indices of the selected candidates (in selection order).
    names:      Names of the selected candidates.
    scores:     Marginal score of each candidate at the time it is added.
    aggregate_score: Coverage gain of the whole selection.
    """
    indices: list
    names: list
    scores: list
    aggregate_score: float
    mode: OptimizationMode = None

    def __len__(self) -> int:
        return len(self.indices)


def generate_random_index_array(num_indices: int, max_index: int, rng=None) -> np.ndarray:
    """Returns `num_indices` unique random indices within [0, max_index).

    Raises:
        ValueError: If more indices are requested than available.
    """
    if num_indices < 0 or num_indices > max_index:
        raise ValueError(f'Cannot draw {num_indices} unique indices from [0, {max_index}).')
    if rng is None:
        rng = np.random.default_rng()
    return rng.choice(max_index, size=num_indices, replace=False)


def random_culling(max_search: int, items, *parallel, rng=None):
    """Randomly reduces the items to (at most) `max_search` entries.

    Any number of additional sequences can be passed, which will be culled
    in lock-step (i.e. the same positions are kept). Sampling is done
    without replacement and preserves the relative order.

    Returns:
        The culled items (as list), or a tuple of lists if parallel
        sequences were given.

    Raises:
        ValueError: If the sequences differ in length.
    """
    num = len(items)
    for seq in parallel:
        if len(seq) != num:
            raise ValueError(f'Sequences differ in length: {len(seq)} vs. {num} items.')
    if num <= max_search:
        keep = list(range(num))
    else:
        keep = np.sort(generate_random_index_array(max(0, max_search), num, rng)).tolist()
    culled = [[seq[i] for i in keep] for seq in (items,) + parallel]
    if not parallel:
        return culled[0]
    return tuple(culled)


class SelectionStrategy(object):
    """Base class of the selection strategies.

    A strategy returns the pool indices (in selection order) of at most
    `optimizer.budget` candidates. It must not modify the accumulator.
    """
    mode = None

    def __init__(self, optimizer):
        self.optimizer = optimizer

    def select(self, pool: list, accumulator: CoverageAccumulator) -> list:
        raise NotImplementedError(f'Strategy {type(self).__name__} does not override `select`.')

    def subset_size(self, pool: list) -> int:
        return min(self.optimizer.budget, len(pool))

    def evaluate_subsets(self, pool: list, accumulator: CoverageAccumulator, subsets: list) -> list:
        """Returns the aggregate score of each subset, evaluated on the
        optimizer's worker pool."""
        def _score(subset):
            return aggregate_score(accumulator, [pool[i].points for i in subset])
        if self.optimizer.max_workers == 1 or len(subsets) < 2:
            return [_score(s) for s in subsets]
        with ThreadPoolExecutor(max_workers=self.optimizer.max_workers) as executor:
            return list(executor.map(_score, subsets))

    def best_subset(self, pool: list, accumulator: CoverageAccumulator, subsets: list) -> list:
        scores = self.evaluate_subsets(pool, accumulator, subsets)
        best = int(np.argmax(scores))
        return list(subsets[best])


class AllPatterns(SelectionStrategy):
    mode = OptimizationMode.ALL_PATTERNS

    def select(self, pool, accumulator):
        return list(range(len(pool)))


class FirstN(SelectionStrategy):
    mode = OptimizationMode.FIRST_N

    def select(self, pool, accumulator):
        return list(range(self.subset_size(pool)))


class RandomSet(SelectionStrategy):
    mode = OptimizationMode.RANDOM_SET

    def select(self, pool, accumulator):
        indices = generate_random_index_array(self.subset_size(pool), len(pool), self.optimizer.rng)
        return sorted(int(i) for i in indices)


class RandomSeed(RandomSet):
    """Random set, reproducible via the (required) seed."""
    mode = OptimizationMode.RANDOM_SEED


class ScoreBased(SelectionStrategy):
    """Greedy selection: repeatedly adds the candidate with the highest
    coverage gain."""
    mode = OptimizationMode.SCORE_BASED

    def select(self, pool, accumulator):
        working = accumulator.copy()
        remaining = list(range(len(pool)))
        selected = list()
        while remaining and len(selected) < self.optimizer.budget:
            scores = [obtain_set_score(working, pool[i].points) for i in remaining]
            idx = remaining.pop(int(np.argmax(scores)))
            selected.append(idx)
            working.add_point_set(pool[idx].points)
        return selected


class EnhancedMCM(SelectionStrategy):
    """Greedy selection with a one-step look-ahead.

    The `lookahead_width` best candidates are rated by their own gain plus
    the best gain achievable in the next step.
    """
    mode = OptimizationMode.ENHANCED_MCM

    def select(self, pool, accumulator):
        working = accumulator.copy()
        remaining = list(range(len(pool)))
        selected = list()
        width = max(1, self.optimizer.lookahead_width)
        while remaining and len(selected) < self.optimizer.budget:
            scores = np.array([obtain_set_score(working, pool[i].points) for i in remaining])
            shortlist = np.argsort(-scores, kind='stable')[:width]
            if len(selected) + 1 < self.optimizer.budget and len(remaining) > 1:
                combined = list()
                for pos in shortlist:
                    ahead = working.copy()
                    ahead.add_point_set(pool[remaining[pos]].points)
                    follow_up = max(obtain_set_score(ahead, pool[i].points)
                                    for i in remaining if i != remaining[pos])
                    combined.append(scores[pos] + follow_up)
                pos = int(shortlist[int(np.argmax(combined))])
            else:
                pos = int(shortlist[0])
            idx = remaining.pop(pos)
            selected.append(idx)
            working.add_point_set(pool[idx].points)
        return selected


class BestOfRandom(SelectionStrategy):
    """Evaluates `num_random_trials` random subsets, keeps the best one."""
    mode = OptimizationMode.BEST_OF_RANDOM

    def select(self, pool, accumulator):
        return self.random_trials(pool, accumulator, self.optimizer.num_random_trials)

    def random_trials(self, pool, accumulator, num_trials: int) -> list:
        k = self.subset_size(pool)
        if k == len(pool):
            return list(range(k))
        subsets = [sorted(int(i) for i in generate_random_index_array(k, len(pool), self.optimizer.rng))
                   for _ in range(max(1, num_trials))]
        return self.best_subset(pool, accumulator, subsets)


class ExhaustiveSearch(BestOfRandom):
    """Evaluates all subsets (with at most `exhaustive_size_cap` elements).

    Falls back to best-of-random (with `max_evaluations` trials) if there
    are too many combinations.
    """
    mode = OptimizationMode.EXHAUSTIVE_SEARCH

    def select(self, pool, accumulator):
        k = min(self.subset_size(pool), self.optimizer.exhaustive_size_cap)
        num_combinations = math.comb(len(pool), k)
        if num_combinations > self.optimizer.max_evaluations:
            _logger.warning(f'Exhaustive search would require {num_combinations} evaluations, '
                            f'falling back to {self.optimizer.max_evaluations} random trials.')
            return self.random_trials(pool, accumulator, self.optimizer.max_evaluations)
        subsets = [list(c) for c in itertools.combinations(range(len(pool)), k)]
        return self.best_subset(pool, accumulator, subsets)


__REGISTERED_STRATEGIES = dict()

def register_strategy(mode: OptimizationMode, cls) -> None:
    """Registers the strategy class for the given mode.

    Raises:
        KeyError: If a strategy has already been registered for this mode.
        ValueError: If `cls` is not a SelectionStrategy subclass.
    """
    global __REGISTERED_STRATEGIES
    if mode in __REGISTERED_STRATEGIES:
        raise KeyError(f'A strategy for mode `{mode.name}` has already been registered.')
    if not isinstance(cls, type) or cls == SelectionStrategy or not issubclass(cls, SelectionStrategy):
        raise ValueError(f'Strategy for {mode.name} is not a SelectionStrategy subclass.')
    __REGISTERED_STRATEGIES[mode] = cls


def unregister_strategy(mode: OptimizationMode) -> None:
    global __REGISTERED_STRATEGIES
    __REGISTERED_STRATEGIES.pop(mode)


def strategy_class(mode: OptimizationMode):
    """Returns the strategy class registered for the given mode."""
    if mode not in __REGISTERED_STRATEGIES:
        raise KeyError(f'No strategy has been registered for mode `{mode}`!')
    return __REGISTERED_STRATEGIES[mode]


for _cls in [AllPatterns, RandomSet, FirstN, EnhancedMCM, BestOfRandom,
             ExhaustiveSearch, RandomSeed, ScoreBased]:
    register_strategy(_cls.mode, _cls)


def _as_candidate(idx: int, item) -> Candidate:
    if isinstance(item, Candidate):
        return item
    return Candidate(name=str(idx), points=np.asarray(item))


class SetOptimizer(object):
    """Selects the calibration frames.

    Args:
        mode: The selection strategy (OptimizationMode member, code or name).
        budget: Max. number of selected candidates.
        seed: Seed of the random number generator, required for RANDOM_SEED.
        lookahead_width: Number of candidates considered by the look-ahead
            of ENHANCED_MCM.
        num_random_trials: Number of subsets drawn by BEST_OF_RANDOM.
        exhaustive_size_cap: Max. subset size of EXHAUSTIVE_SEARCH.
        max_evaluations: Max. number of subsets evaluated by
            EXHAUSTIVE_SEARCH.
        max_workers: Thread pool size to evaluate subsets (None lets the
            executor decide, 1 disables the pool).
        max_candidates: Larger pools are randomly culled before the
            (non-trivial) strategies run.

    Raises:
        ConfigurationError: For invalid parameters.
    """
    def __init__(self, mode=OptimizationMode.SCORE_BASED, budget: int = MAX_PATTERNS_PER_SET,
                 seed: int = None, lookahead_width: int = 5, num_random_trials: int = 100,
                 exhaustive_size_cap: int = 4, max_evaluations: int = 10000,
                 max_workers: int = None, max_candidates: int = MAX_CANDIDATE_PATTERNS):
        self.mode = parse_enum(OptimizationMode, mode)
        if budget < 1:
            raise ConfigurationError(f'Budget must be >= 1, got {budget}.')
        if self.mode == OptimizationMode.RANDOM_SEED and seed is None:
            raise ConfigurationError('Optimization mode random-seed requires a seed.')
        if lookahead_width < 1 or num_random_trials < 1 or exhaustive_size_cap < 1\
                or max_evaluations < 1 or max_candidates < 1:
            raise ConfigurationError('Optimizer limits must be >= 1.')
        self.budget = budget
        self.seed = seed
        self.rng = None
        self.lookahead_width = lookahead_width
        self.num_random_trials = num_random_trials
        self.exhaustive_size_cap = exhaustive_size_cap
        self.max_evaluations = max_evaluations
        self.max_workers = max_workers
        self.max_candidates = max_candidates

    def select(self, pool, accumulator: CoverageAccumulator) -> Selection:
        """Returns the selected subset of the pool.

        Raises:
            EmptyPoolError: If the pool is empty.
        """
        # Seeded selections are reproducible across calls
        self.rng = np.random.default_rng(self.seed)
        pool = [_as_candidate(idx, item) for idx, item in enumerate(pool)]
        if not pool:
            raise EmptyPoolError('Cannot select from an empty candidate pool.')
        positions = list(range(len(pool)))
        if len(pool) > self.max_candidates and self.mode not in (OptimizationMode.ALL_PATTERNS,
                                                                  OptimizationMode.FIRST_N):
            _logger.info(f'Culling {len(pool)} candidates to {self.max_candidates}.')
            positions, candidates = random_culling(self.max_candidates, positions, pool, rng=self.rng)
        else:
            candidates = pool
        strategy = strategy_class(self.mode)(self)
        local = strategy.select(candidates, accumulator)
        indices = [positions[i] for i in local]
        # Marginal scores in selection order
        working = accumulator.copy()
        scores = list()
        for idx in indices:
            scores.append(obtain_set_score(working, pool[idx].points))
            working.add_point_set(pool[idx].points)
        total = aggregate_score(accumulator, [pool[idx].points for idx in indices])
        _logger.info(f'Selected {len(indices)}/{len(pool)} candidates via {self.mode.name} '
                     f'(coverage gain {total:.4f}).')
        return Selection(indices=indices, names=[pool[idx].name for idx in indices],
                         scores=scores, aggregate_score=total, mode=self.mode)
