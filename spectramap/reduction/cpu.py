import time
import threading
import joblib
import numpy as np
from typing import Callable, List, Optional, Tuple
from sklearn.utils import check_random_state, check_array
from spectramap.util.logs import lgm, log_timing
from spectramap.util.errors import InputError, resource_guard
from spectramap.graph.base import NeighborIndex
from spectramap.graph.manager import create_index
from .base import UMAP
from .fuzzy import NeighborGraph, fuzzy_simplicial_set
from .spectral import spectral_layout, diffusion_map, noisy_scale_coords, random_layout
from .layouts import find_ab_params, make_epochs_per_sample, sample_edges, optimize_layout_euclidean
from .utils import validate_points, resolve_seed, clamp_neighbors, stat

def _frozen( array: Optional[np.ndarray], dtype=None ) -> Optional[np.ndarray]:
    if array is None: return None
    result = np.array( array, dtype=dtype, order="C", copy=True )
    result.setflags( write=False )
    return result

class EmbeddingResult(object):
    """Read-only snapshot of a completed embedding run.

    Exposes the final coordinates (N x d, float32, row-major by point id), the
    fuzzy graph, and the raw neighbor lists it was built from; none of them can be
    modified, so they are safe to share between threads.
    """

    def __init__(self, embedding: np.ndarray, init_embedding: np.ndarray, graph: NeighborGraph, knn_indices: np.ndarray, knn_dists: np.ndarray,
                 a: Optional[float], b: Optional[float], seed: int, n_epochs: int, epochs_completed: int, stopped_early: bool,
                 cancelled: bool, degradations: List[str], input_hash: str, method: str ):
        self.embedding = _frozen( embedding, np.float32 )
        self.init_embedding = _frozen( init_embedding, np.float32 )
        self.graph = graph
        self.knn_indices = _frozen( knn_indices )
        self.knn_dists = _frozen( knn_dists )
        self.a = a
        self.b = b
        self.seed = seed
        self.n_epochs = n_epochs
        self.epochs_completed = epochs_completed
        self.stopped_early = stopped_early
        self.cancelled = cancelled
        self.degradations = tuple( degradations )
        self.input_hash = input_hash
        self.method = method

    @property
    def shape(self) -> Tuple[int,int]:
        return self.embedding.shape

    @property
    def degraded(self) -> bool:
        return len( self.degradations ) > 0

    def edge_list(self) -> Tuple[np.ndarray,np.ndarray,np.ndarray]:
        return self.graph.edge_list()

    def __repr__(self):
        return f"EmbeddingResult(method={self.method}, shape={self.shape}, epochs={self.epochs_completed}/{self.n_epochs}, seed={self.seed})"

class cpUMAP(UMAP):

    _stop_event: Optional[threading.Event] = None

    def cancel(self):
        """Request the running optimization to stop at the next epoch boundary."""
        if self._stop_event is None: self._stop_event = threading.Event()
        self._stop_event.set()

    def _neighbor_graph( self, X: np.ndarray, n_neighbors: int, index: Optional[NeighborIndex], seed: int ) -> Tuple[np.ndarray,np.ndarray]:
        if index is None:
            index = create_index( self.index, self.metric, metric_kwds=self._metric_kwds, random_state=seed, n_jobs=self.n_threads )
        if index.n_points == 0:
            index.fit( X )
        elif index.n_points != X.shape[0]:
            raise InputError( f"neighbor index covers {index.n_points} points, data has {X.shape[0]}", step="neighbors" )
        return index.neighbor_graph( n_neighbors )

    def _build_graph( self, X: np.ndarray, index: Optional[NeighborIndex], seed: int, degradations: List[str] ) -> Tuple[NeighborGraph,np.ndarray,np.ndarray]:
        n_neighbors = clamp_neighbors( self.n_neighbors, X.shape[0] )
        with resource_guard( "neighbors" ):
            knn_indices, knn_dists = self._neighbor_graph( X, n_neighbors, index, seed )
        with resource_guard( "graph" ):
            graph = fuzzy_simplicial_set( knn_indices, knn_dists, n_neighbors, set_op_mix_ratio=self.set_op_mix_ratio,
                        local_connectivity=self.local_connectivity, bandwidth=self.bandwidth, n_iter=self.calibration_iter,
                        tolerance=self.calibration_tol, degradations=degradations )
        return graph, knn_indices, knn_dists

    def _initialize( self, X: np.ndarray, graph: NeighborGraph, seed: int, degradations: List[str] ) -> np.ndarray:
        random_state = check_random_state( seed )
        solver_args = dict( solver=self.eig_solver, maxiter=self.eig_maxiter, tol=self.eig_tol, dense_limit=self.dense_limit, degradations=degradations )
        if isinstance( self.init, np.ndarray ):
            try:
                init = check_array( self.init, dtype=np.float32, order="C", ensure_all_finite=True )
            except ValueError as err:
                raise InputError( f"invalid init array: {err}", step="init" )
            if init.shape != (X.shape[0], self._n_components):
                raise InputError( f"init array has shape {init.shape}, expected {(X.shape[0], self._n_components)}", step="init" )
            lgm().log( f"Executing UMAP on existing initialization, init shape = {init.shape}" )
            return init.copy()
        with resource_guard( "init" ):
            if self.init == "random":
                init = random_layout( X.shape[0], self._n_components, random_state ).astype( np.float32 )
            elif self.init == "diffusion":
                coords = diffusion_map( graph, self._n_components, random_state, alpha=self.diffusion_alpha, t=self.diffusion_time, **solver_args )
                init = noisy_scale_coords( coords, random_state )
            else:
                coords = spectral_layout( graph, self._n_components, random_state, data=X, **solver_args )
                init = noisy_scale_coords( coords, random_state )
        lgm().log( f"Completed UMAP {self.init} initialization, init shape = {init.shape}, range = {stat(init)}" )
        return np.ascontiguousarray( init, dtype=np.float32 )

    def _prepare( self, X ) -> Tuple[np.ndarray,int,str]:
        self._validate_parameters()
        X = validate_points( X )
        seed = resolve_seed( self.random_state )
        return X, seed, joblib.hash( X )

    @log_timing
    def embed( self, X: np.ndarray, index: Optional[NeighborIndex] = None, stop_event: Optional[threading.Event] = None,
               epoch_callback: Optional[Callable[[int,int,np.ndarray],None]] = None ) -> EmbeddingResult:
        """Embed X into ``n_components`` dimensions.

        Parameters
        ----------
        X : array, shape (n_samples, n_features)
            One sample per row.

        index : NeighborIndex (optional)
            Neighbor search capability; fitted on X if it has not been fitted yet.
            By default the configured index type is built over X.

        stop_event : threading.Event (optional)
            Cooperative cancellation flag checked between epochs; ``cancel()`` sets it.

        epoch_callback : callable (optional)
            Called as ``epoch_callback(epoch, n_epochs, embedding)`` after each epoch.
        """
        t0 = time.time()
        self._stop_event = threading.Event() if stop_event is None else stop_event
        X, seed, input_hash = self._prepare( X )
        degradations: List[str] = []
        lgm().log( f"Computing umap embedding: input shape = {X.shape}, n_neighbors = {self.n_neighbors}, nepochs = {self._n_epochs}, "
                   f"alpha = {self.learning_rate}, init = {self.init if isinstance(self.init,str) else 'array'}, seed = {seed}" )

        graph, knn_indices, knn_dists = self._build_graph( X, index, seed, degradations )

        if self.a is None or self.b is None:
            a, b = find_ab_params( self.spread, self.min_dist )
        else:
            a, b = float(self.a), float(self.b)

        init_embedding = self._initialize( X, graph, seed, degradations )
        embedding = init_embedding.copy()
        epochs_completed, stopped_early, cancelled = 0, False, False
        if self._n_epochs > 0 and graph.n_edges > 0:
            with resource_guard( "optimize" ):
                head, tail, weights = sample_edges( graph.adjacency, self._n_epochs )
                epochs_per_sample = make_epochs_per_sample( weights, self._n_epochs )
                run = optimize_layout_euclidean( embedding, graph.adjacency, head, tail, self._n_epochs, epochs_per_sample, a, b, seed,
                        gamma=self.repulsion_strength, initial_alpha=self.learning_rate, final_alpha=self.final_learning_rate,
                        negative_sample_rate=self.negative_sample_rate, concurrency=self.concurrency, n_threads=self.n_threads,
                        convergence_tol=self.convergence_tol, stop_event=self._stop_event, epoch_callback=epoch_callback )
            embedding, epochs_completed, stopped_early, cancelled = run

        lgm().log( f"umap embedding complete, result shape = {embedding.shape}, time = {time.time()-t0:.3f} sec" )
        return EmbeddingResult( embedding, init_embedding, graph, knn_indices, knn_dists, a, b, seed, self._n_epochs, epochs_completed,
                                stopped_early, cancelled, degradations, input_hash, "umap" )

    @log_timing
    def embed_diffusion( self, X: np.ndarray, index: Optional[NeighborIndex] = None ) -> EmbeddingResult:
        """Diffusion map embedding of X: the fuzzy graph's diffusion coordinates, without layout optimization."""
        X, seed, input_hash = self._prepare( X )
        degradations: List[str] = []
        graph, knn_indices, knn_dists = self._build_graph( X, index, seed, degradations )
        with resource_guard( "init" ):
            embedding = diffusion_map( graph, self._n_components, check_random_state( seed ), alpha=self.diffusion_alpha, t=self.diffusion_time,
                                       solver=self.eig_solver, maxiter=self.eig_maxiter, tol=self.eig_tol, dense_limit=self.dense_limit,
                                       degradations=degradations )
        return EmbeddingResult( embedding, embedding, graph, knn_indices, knn_dists, None, None, seed, 0, 0, False, False,
                                degradations, input_hash, "diffusion" )
