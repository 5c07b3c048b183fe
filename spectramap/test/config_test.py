import os
import logging
import pytest
import numpy as np
import xarray as xa
from spectramap import configure, cfg, lgm, rm, ngm, EmbeddingResult
from spectramap.util.config import sysconfig, Configuration
from spectramap.util.errors import InputError, NumericDegradation, degradation
from spectramap.graph.skl import skNeighborIndex

def test_configuration_defaults():
    conf = configure()
    assert conf.UMAP.n_neighbors == 15
    assert conf.UMAP.concurrency == "fast"
    assert conf.UMAP.random_state is None
    assert sysconfig().ReductionManager.method == "umap"

def test_configuration_overrides():
    configure( overrides=[ "UMAP.n_neighbors=30", "ReductionManager.ndim=3", "NeighborGraphManager.index=skl" ] )
    assert cfg().UMAP.n_neighbors == 30
    assert rm().ndim == 3
    assert ngm().index == "skl"

def test_configuration_must_be_loaded():
    Configuration.reset()
    with pytest.raises( RuntimeError ):
        cfg()

def test_manager_parameters_follow_configuration():
    configure( overrides=[ "UMAP.min_dist=0.25", "ReductionManager.nepochs=7", "NeighborGraphManager.metric=minkowski-3" ] )
    mapper = rm().getUMapper()
    assert mapper.min_dist == 0.25
    assert mapper.n_epochs == 7
    assert mapper.metric == "minkowski"
    assert mapper.metric_kwds == dict( p=3 )
    assert rm().getUMapper( n_epochs=3 ).n_epochs == 3

def test_umap_embedding_returns_labelled_array():
    configure( overrides=[ "ReductionManager.nepochs=20", "NeighborGraphManager.index=skl", "UMAP.random_state=0" ] )
    values = np.random.default_rng(0).normal( size=(120, 6) ).astype( np.float32 )
    samples = np.arange( 1000, 1120 )
    point_data = xa.DataArray( values, dims=[ 'samples', 'band' ], coords=dict( samples=samples, band=np.arange(6) ), attrs=dict( dsid="test-data" ) )
    embedding = rm().umap_embedding( point_data )
    assert embedding.dims == ( 'samples', 'model' )
    assert embedding.shape == ( 120, 2 )
    np.testing.assert_array_equal( embedding.coords['samples'].values, samples )
    assert embedding.attrs['dsid'] == "test-data"
    assert isinstance( rm().result, EmbeddingResult )
    assert rm().result.epochs_completed == 20

def test_dmap_embedding_from_ndarray():
    configure( overrides=[ "NeighborGraphManager.index=skl" ] )
    values = np.random.default_rng(1).normal( size=(80, 4) ).astype( np.float32 )
    embedding = rm().embedding( values, method="diffusion" )
    assert embedding.dims == ( 'samples', 'model' )
    assert embedding.attrs['method'] == "diffusion"
    with pytest.raises( NotImplementedError ):
        rm().embedding( values, method="tsne" )

def test_manager_without_configuration_uses_defaults():
    ngm().index = "skl"
    values = np.random.default_rng(2).normal( size=(60, 4) ).astype( np.float32 )
    embedding = rm().umap_embedding( values, n_epochs=5, random_state=0 )
    assert embedding.shape == ( 60, 2 )

def test_log_file(tmp_path):
    lgm().init_logging( "spectramap", "test", log_root=str(tmp_path), timestamp_logs=False )
    lgm().log( "graph built" )
    lgm().warn( "solver slow" )
    lgm().debug( "epoch detail" )
    lgm().setLevel( logging.DEBUG )
    lgm().debug( "sample detail" )
    lgm().close()
    with open( lgm().log_file ) as log_file:
        content = log_file.read()
    assert "graph built" in content
    assert "WARNING: solver slow" in content
    assert "epoch detail" not in content
    assert "sample detail" in content
    assert os.path.dirname( lgm().log_file ) == os.path.join( str(tmp_path), "test" )

def test_error_messages():
    err = InputError( "bad vectors", step="validate", points=range( 12 ) )
    assert str( err ).startswith( "[validate] bad vectors" )
    assert "(+2 more)" in str( err )
    assert isinstance( err, ValueError )
    record = []
    with pytest.warns( NumericDegradation ):
        degradation( "fell back", record )
    assert record == [ "fell back" ]

def test_manager_builds_index_with_mapper_metric():
    ngm().index = "skl"
    values = np.random.default_rng(4).normal( size=(80, 4) ).astype( np.float32 ) + 5.0
    rm().umap_embedding( values, metric="cosine", n_epochs=1, random_state=0 )
    _, expected_D = skNeighborIndex( "cosine" ).fit( values ).neighbor_graph( 15 )
    assert rm().result.knn_dists.max() <= 2.0
    np.testing.assert_allclose( rm().result.knn_dists, expected_D, rtol=1e-5, atol=1e-6 )

def test_manager_seeds_the_neighbor_index():
    values = np.random.default_rng(5).normal( size=(120, 6) ).astype( np.float32 )
    params = dict( n_epochs=3, concurrency="reproducible", n_threads=1 )
    first = rm().umap_embedding( values, **params )
    seed = first.attrs['seed']
    assert isinstance( seed, int )
    first_knn = rm().result.knn_indices
    second = rm().umap_embedding( values, random_state=seed, **params )
    np.testing.assert_array_equal( rm().result.knn_indices, first_knn )
    np.testing.assert_array_equal( second.values, first.values )
