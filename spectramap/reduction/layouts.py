import time
import threading
import numba
import numpy as np
import scipy.sparse
from scipy.optimize import curve_fit
from typing import Callable, NamedTuple, Optional, Tuple
from spectramap.util.logs import lgm
from .utils import tau_rand_int, clip, rdist, resolve_threads, worker_rng_states

CONCURRENCY_MODES = ( "fast", "reproducible" )

class LayoutRun(NamedTuple):
    embedding: np.ndarray
    epochs_completed: int
    stopped_early: bool
    cancelled: bool

def find_ab_params(spread, min_dist):
    """Fit a, b params for the differentiable curve used in lower
    dimensional fuzzy simplicial complex construction. We want the
    smooth curve (from a pre-defined family with simple gradient) that
    best matches an offset exponential decay.
    """

    def curve(x, a, b):
        return 1.0 / (1.0 + a * x ** (2 * b))

    xv = np.linspace(0, spread * 3, 300)
    yv = np.zeros(xv.shape)
    yv[xv < min_dist] = 1.0
    yv[xv >= min_dist] = np.exp(-(xv[xv >= min_dist] - min_dist) / spread)
    params, covar = curve_fit(curve, xv, yv)
    return float(params[0]), float(params[1])

def make_epochs_per_sample(weights, n_epochs):
    """Given a set of weights and number of epochs generate the number of
    epochs per sample for each weight.

    Parameters
    ----------
    weights: array of shape (n_1_simplices)
        The weights of how much we wish to sample each 1-simplex.

    n_epochs: int
        The total number of epochs we want to train for.

    Returns
    -------
    An array of number of epochs per sample, one for each 1-simplex.
    """
    result = -1.0 * np.ones(weights.shape[0], dtype=np.float64)
    n_samples = n_epochs * (weights / weights.max())
    result[n_samples > 0] = float(n_epochs) / n_samples[n_samples > 0]
    return result

def learning_rate_schedule( epoch: int, n_epochs: int, initial_alpha: float, final_alpha: float = 0.0 ) -> float:
    if n_epochs <= 0: return initial_alpha
    return initial_alpha + (final_alpha - initial_alpha) * (float(epoch) / float(n_epochs))

def sample_edges( adjacency: scipy.sparse.spmatrix, n_epochs: int ) -> Tuple[np.ndarray,np.ndarray,np.ndarray]:
    """Directed edge list of the graph, without the edges too weak to be sampled even once in ``n_epochs``."""
    graph = scipy.sparse.coo_matrix( adjacency )
    if n_epochs <= 0 or graph.nnz == 0:
        return graph.row.astype(np.int32), graph.col.astype(np.int32), graph.data.astype(np.float64)
    keep = graph.data >= ( graph.data.max() / float(n_epochs) )
    n_dropped = graph.nnz - int( np.count_nonzero( keep ) )
    if n_dropped > 0: lgm().log( f"  LAYOUT: dropped {n_dropped} of {graph.nnz} edges below weight {graph.data.max()/n_epochs:.3e}" )
    return graph.row[keep].astype(np.int32), graph.col[keep].astype(np.int32), graph.data[keep].astype(np.float64)

@numba.njit()
def is_neighbor(indptr, indices, j, k):
    lo = indptr[j]
    hi = indptr[j + 1]
    while lo < hi:
        mid = (lo + hi) // 2
        if indices[mid] < k:
            lo = mid + 1
        else:
            hi = mid
    return lo < indptr[j + 1] and indices[lo] == k

@numba.njit(fastmath=True)
def _process_edge(
    current,
    other,
    write_other,
    j,
    i,
    indptr,
    indices,
    tail_embedding,
    n_vertices,
    epochs_per_sample,
    epoch_of_next_sample,
    epochs_per_negative_sample,
    epoch_of_next_negative_sample,
    a,
    b,
    gamma,
    alpha,
    rng_state,
    n,
):
    dim = current.shape[0]
    dist_squared = rdist(current, other)

    if dist_squared > 0.0:
        grad_coeff = -2.0 * a * b * pow(dist_squared, b - 1.0)
        grad_coeff /= a * pow(dist_squared, b) + 1.0
    else:
        grad_coeff = 0.0

    # Owner-only updates also take the pull the head receives as tail of the reverse edge.
    pull = 1.0 if write_other else 2.0
    for d in range(dim):
        grad_d = clip(grad_coeff * (current[d] - other[d]))
        current[d] += pull * grad_d * alpha
        if write_other:
            other[d] += -grad_d * alpha

    epoch_of_next_sample[i] += epochs_per_sample[i]

    n_neg_samples = int(
        (n - epoch_of_next_negative_sample[i]) / epochs_per_negative_sample[i]
    )

    for p in range(n_neg_samples):
        k = tau_rand_int(rng_state) % n_vertices
        if k == j or is_neighbor(indptr, indices, j, k):
            continue

        negative = tail_embedding[k]
        dist_squared = rdist(current, negative)

        if dist_squared > 0.0:
            grad_coeff = 2.0 * gamma * b
            grad_coeff /= (0.001 + dist_squared) * (
                a * pow(dist_squared, b) + 1
            )
        else:
            grad_coeff = 0.0

        for d in range(dim):
            if grad_coeff > 0.0:
                grad_d = clip(grad_coeff * (current[d] - negative[d]))
            else:
                grad_d = 4.0
            current[d] += grad_d * alpha

    epoch_of_next_negative_sample[i] += (
        n_neg_samples * epochs_per_negative_sample[i]
    )

@numba.njit(fastmath=True, parallel=True)
def _optimize_layout_fast_epoch(
    embedding,
    head,
    tail,
    order,
    block_bounds,
    indptr,
    indices,
    n_vertices,
    epochs_per_sample,
    epoch_of_next_sample,
    epochs_per_negative_sample,
    epoch_of_next_negative_sample,
    a,
    b,
    gamma,
    alpha,
    rng_states,
    n,
):
    # Workers share the embedding and update it without synchronization.
    for w in numba.prange(rng_states.shape[0]):
        rng_state = rng_states[w]
        for p in range(block_bounds[w], block_bounds[w + 1]):
            i = order[p]
            if epoch_of_next_sample[i] <= n:
                j = head[i]
                k = tail[i]
                _process_edge(
                    embedding[j], embedding[k], True, j, i, indptr, indices, embedding, n_vertices,
                    epochs_per_sample, epoch_of_next_sample, epochs_per_negative_sample,
                    epoch_of_next_negative_sample, a, b, gamma, alpha, rng_state, n,
                )

@numba.njit(fastmath=True, parallel=True)
def _optimize_layout_reproducible_epoch(
    embedding,
    snapshot,
    head,
    tail,
    order,
    block_bounds,
    indptr,
    indices,
    n_vertices,
    epochs_per_sample,
    epoch_of_next_sample,
    epochs_per_negative_sample,
    epoch_of_next_negative_sample,
    a,
    b,
    gamma,
    alpha,
    rng_states,
    n,
):
    # Block w holds only edges whose head is owned by worker w: each worker writes
    # its own points and reads every other coordinate from the epoch-start snapshot.
    for w in numba.prange(rng_states.shape[0]):
        rng_state = rng_states[w]
        for p in range(block_bounds[w], block_bounds[w + 1]):
            i = order[p]
            if epoch_of_next_sample[i] <= n:
                j = head[i]
                k = tail[i]
                _process_edge(
                    embedding[j], snapshot[k], False, j, i, indptr, indices, snapshot, n_vertices,
                    epochs_per_sample, epoch_of_next_sample, epochs_per_negative_sample,
                    epoch_of_next_negative_sample, a, b, gamma, alpha, rng_state, n,
                )

def partition_edges( permutation: np.ndarray, head: np.ndarray, n_workers: int, concurrency: str ) -> Tuple[np.ndarray,np.ndarray]:
    """Split one epoch's edge order into one block per worker: (edge ids, block bounds)."""
    if concurrency == "fast":
        bounds = np.linspace( 0, permutation.shape[0], n_workers + 1 ).astype( np.int64 )
        return permutation, bounds
    owners = head[permutation] % n_workers
    order = permutation[ np.argsort( owners, kind="stable" ) ]
    bounds = np.searchsorted( np.sort( owners ), np.arange( n_workers + 1 ) ).astype( np.int64 )
    return order, bounds

def optimize_layout_euclidean(
    embedding: np.ndarray,
    adjacency: scipy.sparse.csr_matrix,
    head: np.ndarray,
    tail: np.ndarray,
    n_epochs: int,
    epochs_per_sample: np.ndarray,
    a: float,
    b: float,
    seed: int,
    gamma: float = 1.0,
    initial_alpha: float = 1.0,
    final_alpha: float = 0.0,
    negative_sample_rate: float = 5.0,
    concurrency: str = "fast",
    n_threads: int = -1,
    convergence_tol: float = 0.0,
    stop_event: Optional[threading.Event] = None,
    epoch_callback: Optional[Callable[[int,int,np.ndarray],None]] = None,
) -> LayoutRun:
    """Improve an embedding using stochastic gradient descent to minimize the
    fuzzy set cross entropy between the 1-skeletons of the high dimensional
    and low dimensional fuzzy simplicial sets. In practice this is done by
    sampling edges based on their membership strength (with the (1-p) terms
    coming from negative sampling similar to word2vec).

    Parameters
    ----------
    embedding: array of shape (n_samples, n_components)
        The initial embedding, improved in place.
    adjacency: csr matrix with sorted indices
        The full graph; negative samples adjacent to the head are skipped.
    head, tail: arrays of shape (n_1_simplices)
        The indices of the heads and tails of the sampled 1-simplices.
    n_epochs: int
        The number of training epochs to use in optimization.
    epochs_per_sample: array of shape (n_1_simplices)
        A float value of the number of epochs per 1-simplex. 1-simplices with
        weaker membership strength will have more epochs between being sampled.
    a, b: float
        Parameters of the differentiable approximation of the low dimensional membership curve.
    seed: int
        Master seed: drives the per-epoch edge permutations and the per-worker negative sampling streams.
    gamma: float (optional, default 1.0)
        Weight to apply to negative samples.
    initial_alpha, final_alpha: float
        End points of the linear learning rate schedule.
    negative_sample_rate: int (optional, default 5)
        Number of negative samples to use per positive sample.
    concurrency: "fast" or "reproducible"
        "fast" lets workers update shared coordinates without synchronization;
        "reproducible" partitions point ownership among workers and double buffers
        coordinates per epoch, giving identical results for a fixed seed and thread count.
    n_threads: int
        Number of workers, -1 for all cores.
    convergence_tol: float
        Stop early when no coordinate moves more than this over an epoch (0 disables).
    stop_event: threading.Event (optional)
        Checked between epochs; when set the run stops and is flagged as cancelled.
    epoch_callback: callable (optional)
        Called as ``epoch_callback(epoch, n_epochs, embedding)`` after each completed epoch.

    Returns
    -------
    LayoutRun
        The embedding with the number of completed epochs and the stop flags.
    """
    if concurrency not in CONCURRENCY_MODES:
        raise ValueError( f"Unknown concurrency mode '{concurrency}', expected one of {CONCURRENCY_MODES}" )
    if n_epochs <= 0 or head.shape[0] == 0:
        return LayoutRun( embedding, 0, False, False )

    n_vertices = embedding.shape[0]
    n_workers = resolve_threads( n_threads )
    rng_states = worker_rng_states( seed, n_workers )
    permutation_rng = np.random.RandomState( seed )
    indptr = np.ascontiguousarray( adjacency.indptr, dtype=np.int64 )
    indices = np.ascontiguousarray( adjacency.indices, dtype=np.int64 )
    head = np.ascontiguousarray( head, dtype=np.int64 )
    tail = np.ascontiguousarray( tail, dtype=np.int64 )

    epochs_per_negative_sample = epochs_per_sample / negative_sample_rate
    epoch_of_next_negative_sample = epochs_per_negative_sample.copy()
    epoch_of_next_sample = epochs_per_sample.copy()

    snapshot = np.empty_like( embedding ) if (concurrency == "reproducible" or convergence_tol > 0.0) else None
    epochs_completed, stopped_early, cancelled = 0, False, False
    report_step = max( 1, n_epochs // 10 )
    saved_threads = numba.get_num_threads()
    numba.set_num_threads( n_workers )
    t0 = time.time()
    lgm().log( f" >>> Embed n_epochs={n_epochs}, alpha={initial_alpha}->{final_alpha}, edges={head.shape[0]}, workers={n_workers}, mode={concurrency}" )
    try:
        for n in range( n_epochs ):
            if (stop_event is not None) and stop_event.is_set():
                lgm().log( f"  LAYOUT: cancelled after {n} of {n_epochs} epochs" )
                cancelled = True
                break
            alpha = learning_rate_schedule( n, n_epochs, initial_alpha, final_alpha )
            order, bounds = partition_edges( permutation_rng.permutation( head.shape[0] ), head, n_workers, concurrency )
            if snapshot is not None: snapshot[:] = embedding
            if concurrency == "fast":
                _optimize_layout_fast_epoch(
                    embedding, head, tail, order, bounds, indptr, indices, n_vertices,
                    epochs_per_sample, epoch_of_next_sample, epochs_per_negative_sample,
                    epoch_of_next_negative_sample, a, b, gamma, alpha, rng_states, n,
                )
            else:
                _optimize_layout_reproducible_epoch(
                    embedding, snapshot, head, tail, order, bounds, indptr, indices, n_vertices,
                    epochs_per_sample, epoch_of_next_sample, epochs_per_negative_sample,
                    epoch_of_next_negative_sample, a, b, gamma, alpha, rng_states, n,
                )
            epochs_completed = n + 1
            if epoch_callback is not None:
                epoch_callback( epochs_completed, n_epochs, embedding )
            if convergence_tol > 0.0:
                movement = float( np.abs( embedding - snapshot ).max() )
                if movement < convergence_tol:
                    lgm().log( f"  LAYOUT: converged at epoch {epochs_completed}, max movement = {movement:.3e}" )
                    stopped_early = True
                    break
            if n % report_step == 0:
                lgm().debug( f"\tcompleted {n} / {n_epochs} epochs" )
    finally:
        numba.set_num_threads( saved_threads )
    lgm().log( f"  LAYOUT: {epochs_completed} epochs completed in {time.time()-t0:.3f} sec" )
    return LayoutRun( embedding, epochs_completed, stopped_early, cancelled )
