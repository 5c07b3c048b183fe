import pytest
import numpy as np
import scipy.sparse
from scipy.sparse.linalg import ArpackNoConvergence
from spectramap.util.errors import NumericDegradation
from spectramap.reduction import spectral
from spectramap.reduction.spectral import ( spectral_layout, spectral_basis, diffusion_map, diffusion_time, noisy_scale_coords,
                                           select_solver, component_layout )
from spectramap.test.conftest import fuzzy_graph

def two_cliques( n: int ) -> scipy.sparse.csr_matrix:
    clique = scipy.sparse.csr_matrix( np.ones( (n, n) ) - np.eye( n ) )
    return scipy.sparse.block_diag( [ clique, clique ] ).tocsr()

def test_disconnected_cliques_get_finite_coordinates():
    adjacency = two_cliques( 10 )
    layout = spectral_layout( adjacency, 2, 0 )
    assert layout.shape == (20, 2)
    assert np.all( np.isfinite( layout ) )
    centers = np.vstack( [ layout[:10].mean( axis=0 ), layout[10:].mean( axis=0 ) ] )
    assert np.linalg.norm( centers[0] - centers[1] ) > 0.1

def test_disconnected_layout_with_tiny_component():
    clique = scipy.sparse.csr_matrix( np.ones( (12, 12) ) - np.eye( 12 ) )
    pair = scipy.sparse.csr_matrix( np.array( [ [0.0, 1.0], [1.0, 0.0] ] ) )
    adjacency = scipy.sparse.block_diag( [ clique, pair, clique ] ).tocsr()
    data = np.random.default_rng(0).normal( size=(26, 3) )
    degradations = []
    with pytest.warns( NumericDegradation ):
        layout = spectral_layout( adjacency, 2, 1, data=data, degradations=degradations )
    assert len( degradations ) == 1
    assert layout.shape == (26, 2)
    assert np.all( np.isfinite( layout ) )

def test_graph_too_small_for_spectral_solve():
    adjacency = scipy.sparse.csr_matrix( np.ones( (3, 3) ) - np.eye( 3 ) )
    degradations = []
    with pytest.warns( NumericDegradation ):
        layout = spectral_layout( adjacency, 2, 0, degradations=degradations )
    assert layout.shape == (3, 2)
    assert len( degradations ) == 1

def test_component_layout_uses_unit_axes_for_few_components():
    meta = component_layout( None, 2, np.array( [0, 1] ), 3, 0 )
    np.testing.assert_array_equal( meta, np.eye( 3 )[:2] )
    labels = np.repeat( np.arange( 5 ), 4 )
    data = np.random.default_rng(1).normal( size=(20, 4) ) + labels[:, None] * 5.0
    meta = component_layout( data, 5, labels, 2, 0 )
    assert meta.shape == (5, 2)
    assert np.all( np.isfinite( meta ) )

def test_solvers_agree_on_eigenvalues(blob):
    graph = fuzzy_graph( blob, 15 )
    dense = spectral_basis( graph.adjacency, 3, solver="dense" )
    arpack = spectral_basis( graph.adjacency, 3, solver="arpack" )
    assert dense.solver == "dense" and arpack.solver == "arpack"
    np.testing.assert_allclose( dense.eigenvalues[0], 1.0, atol=1e-6 )
    np.testing.assert_allclose( dense.eigenvalues, arpack.eigenvalues, atol=1e-2 )
    np.testing.assert_allclose( dense.laplacian_eigenvalues, 1.0 - dense.eigenvalues )
    randomized = spectral_basis( graph.adjacency, 3, solver="randomized", random_state=0 )
    np.testing.assert_allclose( randomized.eigenvalues[0], 1.0, atol=1e-2 )

def test_solver_selection():
    assert select_solver( "auto", 100, 3, 2000 ) == "dense"
    assert select_solver( "auto", 5000, 3, 2000 ) == "arpack"
    assert select_solver( "arpack", 4, 3, 2000 ) == "dense"
    assert select_solver( "randomized", 5000, 3, 2000 ) == "randomized"
    with pytest.raises( ValueError ):
        select_solver( "lobpcg", 100, 3, 2000 )

def test_eigensolver_failure_falls_back_to_random(blob, monkeypatch):
    def no_convergence( *args, **kwargs ):
        raise ArpackNoConvergence( "no convergence", np.zeros(0), np.zeros( (0, 0) ) )
    monkeypatch.setattr( spectral, "eigsh", no_convergence )
    graph = fuzzy_graph( blob, 15 )
    degradations = []
    with pytest.warns( NumericDegradation ):
        layout = spectral_layout( graph, 2, 0, solver="arpack", degradations=degradations )
    assert len( degradations ) == 1
    assert layout.shape == (blob.shape[0], 2)
    assert np.all( np.abs( layout ) <= 10.0 )

def test_noisy_scale_coords():
    coords = np.random.default_rng(2).normal( size=(50, 2) )
    scaled = noisy_scale_coords( coords, 0 )
    assert scaled.dtype == np.float32
    np.testing.assert_allclose( np.abs( scaled ).max(), 10.0, atol=1e-3 )
    np.testing.assert_array_equal( scaled, noisy_scale_coords( coords, 0 ) )

def test_diffusion_time():
    assert diffusion_time( np.array( [1.0, 0.9, 0.81] ) ) == pytest.approx( 1.0 )
    assert diffusion_time( np.array( [1.0, 0.5, 0.5] ) ) == 5.0
    assert diffusion_time( np.array( [1.0, 0.99, 0.98999] ) ) == 5.0
    assert diffusion_time( np.array( [1.0, 0.9, -0.1] ) ) == 1.0
    assert diffusion_time( np.array( [1.0, 0.8, 0.2] ) ) == pytest.approx( np.log( 0.9 ) / np.log( 0.25 ) )

def test_diffusion_map_scaling(two_clusters):
    X, labels = two_clusters
    graph = fuzzy_graph( X, 15 )
    t1 = diffusion_map( graph, 2, 0, t=1.0 )
    t2 = diffusion_map( graph, 2, 0, t=2.0 )
    assert t1.shape == (X.shape[0], 2) and t1.dtype == np.float32
    assert np.all( np.abs( t1 ) <= 5.0 )
    W = graph.adjacency + scipy.sparse.identity( X.shape[0], format="csr" )
    lambdas = spectral_basis( W, 3, solver="dense" ).eigenvalues
    lambdas = lambdas / lambdas[0]
    for j in range( 2 ):
        unclipped = ( np.abs( t1[:, j] ) < 4.9 ) & ( np.abs( t1[:, j] ) > 1e-3 )
        ratio = t2[unclipped, j] / t1[unclipped, j]
        np.testing.assert_allclose( ratio, lambdas[j + 1], rtol=1e-2, atol=1e-3 )

def test_diffusion_map_separates_bridged_blobs():
    rng = np.random.default_rng(5)
    left = rng.normal( size=(150, 2) ) + [ -4.0, 0.0 ]
    right = rng.normal( size=(150, 2) ) + [ 4.0, 0.0 ]
    bridge = np.column_stack( [ np.linspace( -4.0, 4.0, 41 ), np.zeros( 41 ) ] )
    X = np.vstack( [ left, right, bridge ] ).astype( np.float32 )
    graph = fuzzy_graph( X, 15 )
    assert graph.n_components() == 1
    first = diffusion_map( graph, 2, 0, alpha=0.5 )[:, 0]
    assert first[:150].mean() * first[150:300].mean() < 0.0

def test_diffusion_map_on_tiny_graph_degrades():
    adjacency = scipy.sparse.csr_matrix( np.array( [ [0.0, 1.0], [1.0, 0.0] ] ) )
    with pytest.warns( NumericDegradation ):
        embedding = diffusion_map( adjacency, 2, 0 )
    assert embedding.shape == (2, 2)
    assert np.all( np.abs( embedding ) <= 5.0 )
