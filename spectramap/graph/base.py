import numpy as np
from typing import Dict, Tuple
from spectramap.util.errors import InputError
from spectramap.util.logs import lgm

class NeighborIndex(object):
    """Approximate (or exact) nearest-neighbor search over a fixed point set.

    Subclasses implement ``fit`` and ``query``; the base class derives the
    per-point neighbor lists used by the graph builder, with each point's
    own entry removed, so every row holds exactly ``k`` neighbors sorted by
    ascending distance.
    """

    def __init__(self, metric: str = "euclidean", **kwargs ):
        self.metric = metric
        self.metric_kwds: Dict = kwargs.get( 'metric_kwds', {} )
        self.n_points = 0
        self._graphs: Dict[int,Tuple[np.ndarray,np.ndarray]] = {}

    def fit(self, X: np.ndarray ) -> "NeighborIndex":
        raise NotImplementedError()

    def query(self, X: np.ndarray, n_neighbors: int ) -> Tuple[np.ndarray,np.ndarray]:
        raise NotImplementedError()

    def _self_query(self, n_neighbors: int ) -> Tuple[np.ndarray,np.ndarray]:
        raise NotImplementedError()

    def neighbor_graph(self, k: int ) -> Tuple[np.ndarray,np.ndarray]:
        if k not in self._graphs:
            if k > self.n_points - 1:
                raise InputError( f"cannot query {k} neighbors among {self.n_points} points", step="neighbors" )
            I, D = self._self_query( k + 1 )
            I, D = drop_self( np.asarray(I), np.asarray(D) )
            self._graphs[k] = check_neighbor_graph( I, D, self.n_points, k )
            lgm().log( f"{self.__class__.__name__}: computed {k}-NN graph over {self.n_points} points" )
        return self._graphs[k]

    def neighbors(self, point_id: int, k: int ) -> Tuple[np.ndarray,np.ndarray]:
        if (point_id < 0) or (point_id >= self.n_points):
            raise InputError( f"point id out of range [0,{self.n_points})", step="neighbors", points=[point_id] )
        I, D = self.neighbor_graph( k )
        return I[point_id], D[point_id]

class PrecomputedNeighborIndex(NeighborIndex):
    """Serves neighbor lists computed elsewhere (self entries already excluded)."""

    def __init__(self, indices: np.ndarray, distances: np.ndarray, **kwargs ):
        NeighborIndex.__init__( self, kwargs.get( 'metric', 'precomputed' ) )
        self._indices = np.asarray( indices, dtype=np.int64 )
        self._distances = np.asarray( distances, dtype=np.float32 )
        if self._indices.ndim != 2 or self._indices.shape != self._distances.shape:
            raise InputError( f"neighbor indices {self._indices.shape} and distances {self._distances.shape} must be matching 2-D arrays", step="neighbors" )
        self.n_points = self._indices.shape[0]
        check_neighbor_graph( self._indices, self._distances, self.n_points, self._indices.shape[1] )

    def fit(self, X: np.ndarray ) -> "PrecomputedNeighborIndex":
        if X.shape[0] != self.n_points:
            raise InputError( f"precomputed neighbors cover {self.n_points} points, data has {X.shape[0]}", step="neighbors" )
        return self

    def neighbor_graph(self, k: int ) -> Tuple[np.ndarray,np.ndarray]:
        if k > self._indices.shape[1]:
            raise InputError( f"precomputed neighbor lists hold {self._indices.shape[1]} neighbors, {k} requested", step="neighbors" )
        return self._indices[:,:k], self._distances[:,:k]

def drop_self( I: np.ndarray, D: np.ndarray ) -> Tuple[np.ndarray,np.ndarray]:
    n_points, n_cols = I.shape
    self_mask = ( I == np.arange( n_points )[:,None] )
    drop_col = np.where( self_mask.any( axis=1 ), self_mask.argmax( axis=1 ), n_cols - 1 )
    keep = np.ones( I.shape, dtype=bool )
    keep[ np.arange( n_points ), drop_col ] = False
    return I[keep].reshape( n_points, n_cols - 1 ), D[keep].reshape( n_points, n_cols - 1 )

def check_neighbor_graph( I: np.ndarray, D: np.ndarray, n_points: int, k: int ) -> Tuple[np.ndarray,np.ndarray]:
    if I.shape != (n_points, k) or D.shape != (n_points, k):
        raise InputError( f"neighbor graph must have shape ({n_points},{k}), got {I.shape} / {D.shape}", step="neighbors" )
    bad_index = np.flatnonzero( ((I < 0) | (I >= n_points)).any( axis=1 ) )
    if bad_index.size > 0:
        raise InputError( "neighbor index returned out-of-range neighbor ids", step="neighbors", points=bad_index )
    bad_dist = np.flatnonzero( (~np.isfinite(D) | (D < 0)).any( axis=1 ) )
    if bad_dist.size > 0:
        raise InputError( "neighbor index returned invalid distances", step="neighbors", points=bad_dist )
    self_loops = np.flatnonzero( (I == np.arange( n_points )[:,None]).any( axis=1 ) )
    if self_loops.size > 0:
        raise InputError( "neighbor lists must not contain the point itself", step="neighbors", points=self_loops )
    return I.astype( np.int32 ), D.astype( np.float32 )
