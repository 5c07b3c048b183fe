from pynndescent import NNDescent
import numpy as np
from typing import Optional, Tuple
from .base import NeighborIndex
from spectramap.util.logs import lgm, log_timing
import time

class nndNeighborIndex(NeighborIndex):

    def __init__(self, metric: str = "euclidean", **kwargs ):
        NeighborIndex.__init__( self, metric, **kwargs )
        self.random_state: Optional[int] = kwargs.get( 'random_state', None )
        self.n_jobs: int = kwargs.get( 'n_jobs', -1 )
        self.max_candidates: int = kwargs.get( 'max_candidates', 60 )
        self.nodes: np.ndarray = None
        self._knn_graph: NNDescent = None
        self._n_neighbors = 0

    def fit(self, X: np.ndarray ) -> "nndNeighborIndex":
        self.nodes = X
        self.n_points = X.shape[0]
        self._knn_graph = None
        self._graphs = {}
        return self

    @log_timing
    def getGraph(self, n_neighbors: int ) -> NNDescent:
        if (self._knn_graph is None) or (self._n_neighbors < n_neighbors):
            t0 = time.time()
            n_trees = 5 + int(round((self.n_points) ** 0.5 / 20.0))
            n_iters = max(5, 2 * int(round(np.log2(self.n_points))))
            kwargs = dict( n_trees=n_trees, n_iters=n_iters, n_neighbors=n_neighbors, max_candidates=self.max_candidates,
                           metric=self.metric, random_state=self.random_state, n_jobs=self.n_jobs )
            if self.metric_kwds: kwargs['metric_kwds'] = self.metric_kwds
            lgm().log( f"Computing NN-Graph with parms= {kwargs}, nodes shape = {self.nodes.shape}" )
            self._knn_graph = NNDescent( self.nodes, **kwargs )
            self._n_neighbors = n_neighbors
            dt = (time.time()-t0)
            lgm().log(f"Computed NN Graph with {n_neighbors} neighbors and {self.n_points} verts in {dt} sec ({dt / 60} min)")
        return self._knn_graph

    def _self_query(self, n_neighbors: int ) -> Tuple[np.ndarray,np.ndarray]:
        I, D = self.getGraph( n_neighbors ).neighbor_graph
        return I[:,:n_neighbors], D[:,:n_neighbors]

    def query(self, X: np.ndarray, n_neighbors: int ) -> Tuple[np.ndarray,np.ndarray]:
        return self.getGraph( n_neighbors ).query( X, k=n_neighbors )
