import pytest
import numpy as np
from spectramap.model.base import SMSingletonConfigurable
from spectramap.util.config import Configuration
from spectramap.graph.skl import skNeighborIndex
from spectramap.reduction.fuzzy import fuzzy_simplicial_set

@pytest.fixture(autouse=True)
def fresh_singletons():
    SMSingletonConfigurable.reset_all()
    Configuration.reset()
    yield
    SMSingletonConfigurable.reset_all()
    Configuration.reset()

@pytest.fixture
def two_clusters():
    rng = np.random.default_rng(7)
    n_per_cluster, n_features = 250, 10
    X = np.vstack( [ rng.normal( 0.0, 1.0, (n_per_cluster, n_features) ),
                     rng.normal( 12.0, 1.0, (n_per_cluster, n_features) ) ] ).astype( np.float32 )
    labels = np.repeat( [0, 1], n_per_cluster )
    return X, labels

@pytest.fixture
def blob():
    return np.random.default_rng(3).normal( size=(300, 5) ).astype( np.float32 )

def knn( X: np.ndarray, k: int ):
    return skNeighborIndex().fit( X ).neighbor_graph( k )

def fuzzy_graph( X: np.ndarray, k: int = 15, **kwargs ):
    I, D = knn( X, k )
    return fuzzy_simplicial_set( I, D, k, **kwargs )
