from sklearn.neighbors import NearestNeighbors as skNearestNeighbors
import numpy as np
from typing import Tuple
from .base import NeighborIndex
from spectramap.util.logs import lgm
import time

class skNeighborIndex(NeighborIndex):

    def __init__(self, metric: str = "euclidean", **kwargs ):
        NeighborIndex.__init__( self, metric, **kwargs )
        self.n_jobs: int = kwargs.get( 'n_jobs', -1 )
        self.nodes: np.ndarray = None
        self._knn_graph: skNearestNeighbors = None

    @property
    def knn_graph(self) -> skNearestNeighbors:
        return self.getGraph()

    def fit(self, X: np.ndarray ) -> "skNeighborIndex":
        self.nodes = X
        self.n_points = X.shape[0]
        self._knn_graph = None
        self._graphs = {}
        return self

    def getGraph(self) -> skNearestNeighbors:
        if self._knn_graph is None:
            t0 = time.time()
            self._knn_graph = skNearestNeighbors( metric=self.metric, metric_params=(self.metric_kwds or None), n_jobs=self.n_jobs )
            self._knn_graph.fit( self.nodes )
            lgm().log(f"skNearestNeighbors fit in {time.time()-t0} sec, njobs = {self.n_jobs}")
        return self._knn_graph

    def _self_query(self, n_neighbors: int ) -> Tuple[np.ndarray,np.ndarray]:
        t0 = time.time()
        D, I = self.knn_graph.kneighbors( self.nodes, n_neighbors, return_distance=True )
        dt = (time.time() - t0)
        lgm().log( f"Computed NN skGraph with {n_neighbors} neighbors and {self.n_points} verts in {dt} sec ({dt / 60} min)" )
        return I, D

    def query(self, X: np.ndarray, n_neighbors: int ) -> Tuple[np.ndarray,np.ndarray]:
        D, I = self.knn_graph.kneighbors( X, n_neighbors, return_distance=True )
        return I, D
