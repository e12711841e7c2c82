import itertools
import logging
import pytest
import numpy as np
from gridcal.config import ConfigurationError, OptimizationMode
from gridcal.coverage import Candidate, CoverageAccumulator, EmptyPoolError, SelectionStrategy,\
    SetOptimizer, aggregate_score, generate_random_index_array, random_culling, register_strategy,\
    strategy_class, unregister_strategy
from tests.gridcal_test_utils import cluster_points


IMAGE_SIZE = (640, 480)


def _scenario_pool(seed: int = 0) -> tuple:
    """50 frames observing the image centre and 5 frames near the border."""
    rng = np.random.default_rng(seed)
    pool = list()
    for idx in range(50):
        center = (320 + rng.uniform(-4, 4), 240 + rng.uniform(-4, 4))
        pool.append(Candidate(f'center-{idx:02d}', cluster_points(center, (96, 72), rng=rng)))
    border_centers = [(90, 70), (550, 70), (550, 410), (90, 410), (320, 60)]
    border = list()
    for idx, center in enumerate(border_centers):
        border.append(Candidate(f'border-{idx}', cluster_points(center, (80, 60), rng=rng)))
    # Interleave the border frames with the central ones
    for idx, candidate in enumerate(border):
        pool.insert(7 + 11 * idx, candidate)
    return pool, [c.name for c in border]


def _small_pool() -> list:
    centers = [(320, 240), (100, 100), (540, 100), (320, 250), (540, 380), (100, 380)]
    return [Candidate(f'frame-{i}', cluster_points(c, (80, 60))) for i, c in enumerate(centers)]


def test_random_index_array():
    rng = np.random.default_rng(0)
    indices = generate_random_index_array(10, 20, rng)
    assert len(indices) == 10
    assert len(set(indices.tolist())) == 10
    assert np.all((indices >= 0) & (indices < 20))
    assert len(generate_random_index_array(5, 5)) == 5
    with pytest.raises(ValueError):
        generate_random_index_array(6, 5)


def test_random_culling():
    items = list(range(100))
    names = [f'item-{i}' for i in items]
    rng = np.random.default_rng(1)
    culled_items, culled_names = random_culling(10, items, names, rng=rng)
    assert len(culled_items) == 10
    assert len(set(culled_items)) == 10
    assert all(i in items for i in culled_items)
    # Relative order is preserved
    assert culled_items == sorted(culled_items)
    # Lock-step
    assert culled_names == [f'item-{i}' for i in culled_items]

    # Reproducible with the same seed
    again = random_culling(10, items, rng=np.random.default_rng(1))
    assert again == culled_items

    # Nothing to cull
    assert random_culling(10, items[:5]) == items[:5]
    assert random_culling(0, items) == list()
    with pytest.raises(ValueError):
        random_culling(10, items, names[:-1])


def test_optimizer_configuration():
    with pytest.raises(ConfigurationError):
        SetOptimizer(OptimizationMode.RANDOM_SEED)
    with pytest.raises(ConfigurationError):
        SetOptimizer('no-such-mode')
    with pytest.raises(ConfigurationError):
        SetOptimizer(budget=0)
    with pytest.raises(ConfigurationError):
        SetOptimizer(lookahead_width=0)
    assert SetOptimizer('random-seed', seed=3).mode == OptimizationMode.RANDOM_SEED
    optimizer = SetOptimizer(budget=7)
    assert optimizer.mode == OptimizationMode.SCORE_BASED
    assert optimizer.budget == 7
    for mode in OptimizationMode:
        assert issubclass(strategy_class(mode), SelectionStrategy)
        assert strategy_class(mode).mode == mode


def test_strategy_registration():
    with pytest.raises(KeyError):
        register_strategy(OptimizationMode.SCORE_BASED, strategy_class(OptimizationMode.SCORE_BASED))
    cls = strategy_class(OptimizationMode.FIRST_N)
    unregister_strategy(OptimizationMode.FIRST_N)
    with pytest.raises(KeyError):
        strategy_class(OptimizationMode.FIRST_N)
    # Only SelectionStrategy subclasses can be registered
    for invalid in [object, SelectionStrategy, 'first-n']:
        with pytest.raises(ValueError):
            register_strategy(OptimizationMode.FIRST_N, invalid)
    register_strategy(OptimizationMode.FIRST_N, cls)
    assert strategy_class(OptimizationMode.FIRST_N) is cls


def test_empty_pool():
    acc = CoverageAccumulator(IMAGE_SIZE)
    for mode in OptimizationMode:
        with pytest.raises(EmptyPoolError):
            SetOptimizer(mode, seed=0).select(list(), acc)


def test_simple_modes():
    pool = _small_pool()
    acc = CoverageAccumulator(IMAGE_SIZE)
    selection = SetOptimizer(OptimizationMode.ALL_PATTERNS, budget=2).select(pool, acc)
    assert selection.indices == list(range(6))
    selection = SetOptimizer(OptimizationMode.FIRST_N, budget=4).select(pool, acc)
    assert selection.indices == [0, 1, 2, 3]
    assert selection.names == ['frame-0', 'frame-1', 'frame-2', 'frame-3']
    assert len(selection) == 4
    assert selection.mode == OptimizationMode.FIRST_N

    sel1 = SetOptimizer(OptimizationMode.RANDOM_SEED, budget=3, seed=11).select(pool, acc)
    sel2 = SetOptimizer(OptimizationMode.RANDOM_SEED, budget=3, seed=11).select(pool, acc)
    assert sel1.indices == sel2.indices
    # Repeated calls on the same optimizer yield the same subset
    optimizer = SetOptimizer(OptimizationMode.RANDOM_SEED, budget=3, seed=11)
    assert optimizer.select(pool, acc).indices == sel1.indices
    assert optimizer.select(pool, acc).indices == sel1.indices
    assert len(set(sel1.indices)) == 3
    sel = SetOptimizer(OptimizationMode.RANDOM_SET, budget=10).select(pool, acc)
    assert sorted(sel.indices) == list(range(6))
    # Raw point arrays are accepted as candidates
    sel = SetOptimizer(OptimizationMode.FIRST_N, budget=1).select([c.points for c in pool], acc)
    assert sel.names == ['0']
    # The accumulator is not modified
    assert acc.num_sets == 0
    assert acc.quality() == pytest.approx(0.0)


def test_score_based():
    pool = _small_pool()
    acc = CoverageAccumulator(IMAGE_SIZE)
    selection = SetOptimizer(OptimizationMode.SCORE_BASED, budget=5).select(pool, acc)
    assert len(selection.indices) == 5
    assert len(set(selection.indices)) == 5
    assert all(s >= 0 for s in selection.scores)
    # The second central frame is the least useful one
    assert not (0 in selection.indices and 3 in selection.indices)
    # Aggregate score is non-decreasing while adding frames
    prefix_scores = [aggregate_score(acc, [pool[i].points for i in selection.indices[:k]])
                     for k in range(len(selection.indices) + 1)]
    assert all(b >= a - 1e-12 for a, b in zip(prefix_scores, prefix_scores[1:]))
    assert selection.aggregate_score == pytest.approx(prefix_scores[-1])
    assert sum(selection.scores) == pytest.approx(selection.aggregate_score)


def test_exhaustive_search():
    pool = _small_pool()
    acc = CoverageAccumulator(IMAGE_SIZE)
    exhaustive = SetOptimizer(OptimizationMode.EXHAUSTIVE_SEARCH, budget=2, max_workers=2).select(pool, acc)
    assert len(exhaustive.indices) == 2
    best = max(aggregate_score(acc, [pool[i].points for i in combo])
               for combo in itertools.combinations(range(len(pool)), 2))
    assert exhaustive.aggregate_score == pytest.approx(best)
    greedy = SetOptimizer(OptimizationMode.SCORE_BASED, budget=2).select(pool, acc)
    assert exhaustive.aggregate_score >= greedy.aggregate_score - 1e-12


def test_exhaustive_fallback(caplog):
    pool = _small_pool() * 2
    acc = CoverageAccumulator(IMAGE_SIZE)
    optimizer = SetOptimizer(OptimizationMode.EXHAUSTIVE_SEARCH, budget=3, seed=2, max_evaluations=5)
    with caplog.at_level(logging.WARNING, logger='gridcal.optimization'):
        selection = optimizer.select(pool, acc)
    assert 'falling back' in caplog.text
    assert len(set(selection.indices)) == 3


def test_best_of_random():
    pool = _small_pool()
    acc = CoverageAccumulator(IMAGE_SIZE)
    sel1 = SetOptimizer(OptimizationMode.BEST_OF_RANDOM, budget=3, seed=5, num_random_trials=20).select(pool, acc)
    sel2 = SetOptimizer(OptimizationMode.BEST_OF_RANDOM, budget=3, seed=5, num_random_trials=20,
                        max_workers=1).select(pool, acc)
    assert sel1.indices == sel2.indices
    assert len(set(sel1.indices)) == 3
    # The budget exceeds the pool
    assert SetOptimizer(OptimizationMode.BEST_OF_RANDOM, budget=10).select(pool, acc).indices == list(range(6))


@pytest.mark.parametrize('mode', [OptimizationMode.SCORE_BASED, OptimizationMode.ENHANCED_MCM])
def test_border_frames_are_selected(mode):
    pool, border_names = _scenario_pool()
    acc = CoverageAccumulator(IMAGE_SIZE, bin_shape=(10, 10))
    selection = SetOptimizer(mode, budget=10).select(pool, acc)
    assert len(selection.indices) == 10
    assert len(set(selection.indices)) == 10
    for name in border_names:
        assert name in selection.names


def test_candidate_culling():
    pool = [Candidate(f'frame-{i}', cluster_points((100 + i, 100 + i), (40, 30))) for i in range(30)]
    acc = CoverageAccumulator(IMAGE_SIZE)
    selection = SetOptimizer(OptimizationMode.SCORE_BASED, budget=3, seed=0, max_candidates=8).select(pool, acc)
    assert len(set(selection.indices)) == 3
    assert all(0 <= idx < 30 for idx in selection.indices)
    assert selection.names == [pool[idx].name for idx in selection.indices]
