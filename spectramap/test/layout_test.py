import threading
import pytest
import numpy as np
import scipy.sparse
from spectramap.reduction.layouts import ( find_ab_params, make_epochs_per_sample, learning_rate_schedule, sample_edges,
                                          is_neighbor, partition_edges, optimize_layout_euclidean )
from spectramap.reduction.utils import worker_rng_states, resolve_threads
from spectramap.test.conftest import fuzzy_graph

def layout_problem( X: np.ndarray, n_epochs: int, seed: int = 0 ):
    graph = fuzzy_graph( X, 10 )
    head, tail, weights = sample_edges( graph.adjacency, n_epochs )
    init = np.random.RandomState( seed ).uniform( -10.0, 10.0, (X.shape[0], 2) ).astype( np.float32 )
    return graph, head, tail, make_epochs_per_sample( weights, n_epochs ), init

def run_layout( X: np.ndarray, n_epochs: int = 30, seed: int = 11, **kwargs ):
    graph, head, tail, epochs_per_sample, init = layout_problem( X, max( n_epochs, 1 ) )
    a, b = find_ab_params( 1.0, 0.1 )
    embedding = init.copy()
    run = optimize_layout_euclidean( embedding, graph.adjacency, head, tail, n_epochs, epochs_per_sample, a, b, seed, **kwargs )
    return init, run

def test_ab_params_for_default_curve():
    a, b = find_ab_params( 1.0, 0.1 )
    assert a == pytest.approx( 1.577, abs=1e-2 )
    assert b == pytest.approx( 0.895, abs=1e-2 )

def test_epochs_per_sample_proportional_to_weight():
    result = make_epochs_per_sample( np.array( [1.0, 0.5, 0.25] ), 10 )
    np.testing.assert_allclose( result, [1.0, 2.0, 4.0] )

def test_learning_rate_schedule_is_linear():
    assert learning_rate_schedule( 0, 200, 1.0 ) == 1.0
    assert learning_rate_schedule( 100, 200, 1.0 ) == pytest.approx( 0.5 )
    assert learning_rate_schedule( 50, 100, 1.0, 0.5 ) == pytest.approx( 0.75 )
    rates = [ learning_rate_schedule( n, 10, 1.0 ) for n in range( 10 ) ]
    assert all( r1 > r2 for r1, r2 in zip( rates, rates[1:] ) )

def test_weak_edges_are_dropped():
    adjacency = scipy.sparse.csr_matrix( np.array( [ [0.0, 1.0, 0.001], [1.0, 0.0, 0.5], [0.001, 0.5, 0.0] ] ) )
    head, tail, weights = sample_edges( adjacency, 100 )
    assert weights.min() >= 0.01
    assert set( zip( head.tolist(), tail.tolist() ) ) == { (0, 1), (1, 0), (1, 2), (2, 1) }

def test_is_neighbor_binary_search():
    adjacency = scipy.sparse.csr_matrix( np.array( [ [0, 1, 0, 1], [1, 0, 0, 0], [0, 0, 0, 1], [1, 0, 1, 0] ], dtype=np.float32 ) )
    indptr, indices = adjacency.indptr.astype( np.int64 ), adjacency.indices.astype( np.int64 )
    assert is_neighbor( indptr, indices, 0, 3 )
    assert not is_neighbor( indptr, indices, 0, 2 )
    assert not is_neighbor( indptr, indices, 1, 3 )
    assert is_neighbor( indptr, indices, 3, 2 )

def test_reproducible_partition_groups_edges_by_owner():
    head = np.array( [0, 1, 2, 3, 4, 5, 6, 7] )
    order, bounds = partition_edges( np.arange( 8 )[::-1].copy(), head, 3, "reproducible" )
    assert bounds.tolist() == [0, 3, 6, 8]
    for w in range( 3 ):
        assert np.all( head[ order[ bounds[w]:bounds[w+1] ] ] % 3 == w )
    order, bounds = partition_edges( np.arange( 8 ), head, 3, "fast" )
    assert bounds[0] == 0 and bounds[-1] == 8

def test_worker_streams_are_seeded():
    states = worker_rng_states( 42, 4 )
    assert states.shape == (4, 3)
    np.testing.assert_array_equal( states, worker_rng_states( 42, 4 ) )
    assert len( { tuple(s) for s in states.tolist() } ) == 4
    assert not np.array_equal( states, worker_rng_states( 43, 4 ) )
    assert resolve_threads( 1 ) == 1

def test_zero_epochs_leave_coordinates_untouched(blob):
    init, run = run_layout( blob, n_epochs=0 )
    np.testing.assert_array_equal( run.embedding, init )
    assert run.epochs_completed == 0 and not run.cancelled

def test_reproducible_mode_is_deterministic(blob):
    _, first = run_layout( blob, concurrency="reproducible", n_threads=2 )
    _, second = run_layout( blob, concurrency="reproducible", n_threads=2 )
    np.testing.assert_array_equal( first.embedding, second.embedding )
    _, other_seed = run_layout( blob, seed=12, concurrency="reproducible", n_threads=2 )
    assert not np.array_equal( first.embedding, other_seed.embedding )

def test_fast_mode_runs_all_epochs(blob):
    init, run = run_layout( blob, n_epochs=20, concurrency="fast" )
    assert run.epochs_completed == 20
    assert np.all( np.isfinite( run.embedding ) )
    assert not np.array_equal( run.embedding, init )

def test_cancellation_between_epochs(blob):
    stop = threading.Event()
    def on_epoch( epoch, n_epochs, embedding ):
        if epoch == 3: stop.set()
    _, run = run_layout( blob, n_epochs=30, stop_event=stop, epoch_callback=on_epoch )
    assert run.cancelled
    assert run.epochs_completed == 3

def test_early_stop_on_small_movement(blob):
    _, run = run_layout( blob, n_epochs=30, convergence_tol=1e6 )
    assert run.stopped_early
    assert run.epochs_completed == 1

def test_unknown_concurrency_mode(blob):
    with pytest.raises( ValueError ):
        run_layout( blob, concurrency="locked" )

def test_modes_apply_the_same_attraction():
    adjacency = scipy.sparse.csr_matrix( np.array( [ [0.0, 1.0], [1.0, 0.0] ], dtype=np.float32 ) )
    head, tail = np.array( [0, 1] ), np.array( [1, 0] )
    a, b = find_ab_params( 1.0, 0.1 )
    contraction = {}
    for mode in ( "fast", "reproducible" ):
        embedding = np.array( [ [0.0, 0.0], [3.0, 0.0] ], dtype=np.float32 )
        run = optimize_layout_euclidean( embedding, adjacency, head, tail, 2, np.ones( 2 ), a, b, 0,
                                         initial_alpha=0.1, concurrency=mode, n_threads=1 )
        contraction[mode] = 3.0 - np.linalg.norm( run.embedding[1] - run.embedding[0] )
    assert contraction["fast"] > 0.0
    assert contraction["reproducible"] == pytest.approx( contraction["fast"], rel=0.05 )
