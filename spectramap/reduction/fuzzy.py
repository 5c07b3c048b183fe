import time
import numba
import numpy as np
import scipy.sparse
import scipy.sparse.csgraph
from typing import Tuple
from spectramap.util.logs import lgm
from spectramap.util.errors import degradation
from .utils import quantiles

SMOOTH_K_TOLERANCE = 1e-5
MIN_K_DIST_SCALE = 1e-3
MIN_SIGMA = 1e-12
NPY_INFINITY = np.inf

@numba.njit(
    locals={
        "psum": numba.types.float64,
        "lo": numba.types.float64,
        "mid": numba.types.float64,
        "hi": numba.types.float64,
    },
    parallel=True,
    fastmath=True,
)
def smooth_knn_dist(distances, k, n_iter=64, local_connectivity=1.0, bandwidth=1.0, tolerance=SMOOTH_K_TOLERANCE):
    """Compute a continuous version of the distance to the kth nearest
    neighbor. That is, this is similar to knn-distance but allows continuous
    k values rather than requiring an integral k. In essence we are simply
    computing the distance such that the cardinality of fuzzy set we generate
    is k.

    Parameters
    ----------
    distances: array of shape (n_samples, n_neighbors)
        Distances to nearest neighbors for each samples. Each row should be a
        sorted list of distances to a given samples nearest neighbors, with
        the sample itself excluded.

    k: float
        The number of nearest neighbors to approximate for.

    n_iter: int (optional, default 64)
        We need to binary search for the correct distance value. This is the
        max number of iterations to use in such a search.

    local_connectivity: int (optional, default 1)
        The local connectivity required -- i.e. the number of nearest
        neighbors that should be assumed to be connected at a local level.
        The higher this value the more connected the manifold becomes
        locally. In practice this should be not more than the local intrinsic
        dimension of the manifold.

    bandwidth: float (optional, default 1)
        The target bandwidth of the kernel, larger values will produce
        larger return values.

    tolerance: float (optional, default 1e-5)
        Accepted gap between the membership cardinality and log2(k) * bandwidth.

    Returns
    -------
    knn_dist: array of shape (n_samples,)
        The distance to kth nearest neighbor, as suitably approximated.

    nn_dist: array of shape (n_samples,)
        The distance to the 1st nearest neighbor for each point.

    converged: array of shape (n_samples,)
        False where the search ran out of iterations; the last estimate is kept.
    """
    target = np.log2(k) * bandwidth
    rho = np.zeros(distances.shape[0], dtype=np.float64)
    result = np.zeros(distances.shape[0], dtype=np.float64)
    converged = np.zeros(distances.shape[0], dtype=np.bool_)

    mean_distances = np.mean(distances)

    for i in numba.prange(distances.shape[0]):
        lo = 0.0
        hi = NPY_INFINITY
        mid = 1.0

        ith_distances = distances[i]
        non_zero_dists = ith_distances[ith_distances > 0.0]
        if non_zero_dists.shape[0] >= local_connectivity:
            index = int(np.floor(local_connectivity))
            interpolation = local_connectivity - index
            if index > 0:
                rho[i] = non_zero_dists[index - 1]
                if interpolation > SMOOTH_K_TOLERANCE:
                    rho[i] += interpolation * (
                        non_zero_dists[index] - non_zero_dists[index - 1]
                    )
            else:
                rho[i] = interpolation * non_zero_dists[0]
        elif non_zero_dists.shape[0] > 0:
            rho[i] = np.max(non_zero_dists)

        for n in range(n_iter):

            psum = 0.0
            for j in range(distances.shape[1]):
                d = distances[i, j] - rho[i]
                if d > 0:
                    psum += np.exp(-(d / mid))
                else:
                    psum += 1.0

            if np.fabs(psum - target) < tolerance:
                converged[i] = True
                break

            if psum > target:
                hi = mid
                mid = (lo + hi) / 2.0
            else:
                lo = mid
                if hi == NPY_INFINITY:
                    mid *= 2
                else:
                    mid = (lo + hi) / 2.0

        result[i] = mid

        if rho[i] > 0.0:
            mean_ith_distances = np.mean(ith_distances)
            if result[i] < MIN_K_DIST_SCALE * mean_ith_distances:
                result[i] = MIN_K_DIST_SCALE * mean_ith_distances
        else:
            if result[i] < MIN_K_DIST_SCALE * mean_distances:
                result[i] = MIN_K_DIST_SCALE * mean_distances
        if result[i] < MIN_SIGMA:
            result[i] = MIN_SIGMA

    return result, rho, converged


@numba.njit(
    locals={
        "val": numba.types.float32,
    },
    parallel=True,
    fastmath=True,
)
def compute_membership_strengths(knn_indices, knn_dists, sigmas, rhos):
    """Construct the membership strength data for the 1-skeleton of each local
    fuzzy simplicial set -- this is formed as a sparse matrix where each row is
    a local fuzzy simplicial set, with a membership strength for the
    1-simplex to each other data point.

    Parameters
    ----------
    knn_indices: array of shape (n_samples, n_neighbors)
        The indices on the ``n_neighbors`` closest points in the dataset.

    knn_dists: array of shape (n_samples, n_neighbors)
        The distances to the ``n_neighbors`` closest points in the dataset.

    sigmas: array of shape(n_samples)
        The normalization factor derived from the metric tensor approximation.

    rhos: array of shape(n_samples)
        The local connectivity adjustment.

    Returns
    -------
    rows: array of shape (n_samples * n_neighbors)
        Row data for the resulting sparse matrix (coo format)

    cols: array of shape (n_samples * n_neighbors)
        Column data for the resulting sparse matrix (coo format)

    vals: array of shape (n_samples * n_neighbors)
        Entries for the resulting sparse matrix (coo format)
    """
    n_samples = knn_indices.shape[0]
    n_neighbors = knn_indices.shape[1]

    rows = np.zeros(knn_indices.size, dtype=np.int32)
    cols = np.zeros(knn_indices.size, dtype=np.int32)
    vals = np.zeros(knn_indices.size, dtype=np.float32)

    for i in numba.prange(n_samples):
        for j in range(n_neighbors):
            if knn_indices[i, j] == -1:
                continue  # We didn't get the full knn for i
            if knn_indices[i, j] == i:
                val = 0.0
            elif knn_dists[i, j] - rhos[i] <= 0.0 or sigmas[i] == 0.0:
                val = 1.0
            else:
                val = np.exp(-((knn_dists[i, j] - rhos[i]) / (sigmas[i])))
                if val > 1.0:
                    val = 1.0

            rows[i * n_neighbors + j] = i
            cols[i * n_neighbors + j] = knn_indices[i, j]
            vals[i * n_neighbors + j] = val

    return rows, cols, vals


class NeighborGraph(object):
    """The symmetrized fuzzy neighbor graph: an immutable, undirected, weighted
    adjacency over ``n_vertices`` points, stored as CSR with sorted indices.
    """

    def __init__(self, adjacency: scipy.sparse.csr_matrix, sigmas: np.ndarray = None, rhos: np.ndarray = None, converged: np.ndarray = None ):
        adjacency = adjacency.tocsr()
        adjacency.sort_indices()
        adjacency.data.setflags( write=False )
        self._adjacency = adjacency
        self.sigmas = sigmas
        self.rhos = rhos
        self.converged = converged

    @property
    def adjacency(self) -> scipy.sparse.csr_matrix:
        return self._adjacency

    @property
    def n_vertices(self) -> int:
        return self._adjacency.shape[0]

    @property
    def n_edges(self) -> int:
        return self._adjacency.nnz

    def edge_list(self) -> Tuple[np.ndarray,np.ndarray,np.ndarray]:
        coo = self._adjacency.tocoo()
        return coo.row.astype(np.int32), coo.col.astype(np.int32), coo.data.astype(np.float32)

    def is_symmetric(self) -> bool:
        return (self._adjacency != self._adjacency.T).nnz == 0

    def degrees(self) -> np.ndarray:
        return np.asarray( self._adjacency.sum( axis=1 ) ).ravel()

    def n_components(self) -> int:
        return scipy.sparse.csgraph.connected_components( self._adjacency, directed=False )[0]

    def subgraph(self, vertices: np.ndarray ) -> scipy.sparse.csr_matrix:
        return self._adjacency[vertices][:, vertices].tocsr()

    def __repr__(self):
        return f"NeighborGraph(n_vertices={self.n_vertices}, n_edges={self.n_edges})"


def fuzzy_simplicial_set(
    knn_indices,
    knn_dists,
    n_neighbors,
    set_op_mix_ratio=1.0,
    local_connectivity=1.0,
    bandwidth=1.0,
    n_iter=64,
    tolerance=SMOOTH_K_TOLERANCE,
    degradations=None,
):
    """Given the k-nearest neighbors of every point, compute the fuzzy
    simplicial set (here represented as a fuzzy graph in the form of a sparse
    matrix) associated to the data. This is done by locally approximating
    geodesic distance at each point, creating a fuzzy simplicial set for each
    such point, and then combining all the local fuzzy simplicial sets into a
    global one via a fuzzy union.

    Parameters
    ----------
    knn_indices: array of shape (n_samples, n_neighbors)
        The indices of the k-nearest neighbors of each point, self excluded.

    knn_dists: array of shape (n_samples, n_neighbors)
        The matching distances, sorted ascending along each row.

    n_neighbors: int
        The number of neighbors to use to approximate geodesic distance.

    set_op_mix_ratio: float (optional, default 1.0)
        Interpolate between (fuzzy) union and intersection as the set operation
        used to combine local fuzzy simplicial sets to obtain a global fuzzy
        simplicial sets. Both fuzzy set operations use the product t-norm.
        The value of this parameter should be between 0.0 and 1.0; a value of
        1.0 will use a pure fuzzy union, while 0.0 will use a pure fuzzy
        intersection.

    local_connectivity: int (optional, default 1)
        The local connectivity required -- i.e. the number of nearest
        neighbors that should be assumed to be connected at a local level.

    degradations: list (optional)
        Collects a message when the bandwidth search fails for some points.

    Returns
    -------
    fuzzy_simplicial_set: NeighborGraph
        The (i, j) entry of the adjacency is the membership strength of the
        1-simplex between the ith and jth sample points.
    """
    t0 = time.time()
    n_samples = knn_indices.shape[0]
    knn_indices = np.ascontiguousarray( knn_indices, dtype=np.int64 )
    knn_dists = np.ascontiguousarray( knn_dists, dtype=np.float64 )

    sigmas, rhos, converged = smooth_knn_dist(
        knn_dists, float(n_neighbors), n_iter=n_iter, local_connectivity=float(local_connectivity),
        bandwidth=float(bandwidth), tolerance=float(tolerance),
    )
    n_failed = int( np.count_nonzero( ~converged ) )
    if n_failed > 0:
        failed = np.flatnonzero( ~converged )
        degradation( f"bandwidth search did not converge for {n_failed} of {n_samples} points "
                     f"(first: {failed[:5].tolist()}), keeping the last sigma estimate", degradations )
    lgm().log( f"  GRAPH: sigma quantiles {{{quantiles(sigmas)}}}, rho quantiles {{{quantiles(rhos)}}}" )

    rows, cols, vals = compute_membership_strengths( knn_indices, knn_dists, sigmas, rhos )

    result = scipy.sparse.coo_matrix( (vals, (rows, cols)), shape=(n_samples, n_samples) ).tocsr()
    result.setdiag( 0.0 )
    result.eliminate_zeros()

    transpose = result.transpose().tocsr()
    prod_matrix = result.multiply(transpose)

    result = (
        set_op_mix_ratio * (result + transpose - prod_matrix)
        + (1.0 - set_op_mix_ratio) * prod_matrix
    ).tocsr()

    np.clip( result.data, 0.0, 1.0, out=result.data )
    result.eliminate_zeros()
    result = result.astype( np.float32 )

    lgm().log( f"  GRAPH: {n_samples} vertices, {result.nnz} directed entries, built in {time.time()-t0:.3f} sec" )
    return NeighborGraph( result, sigmas, rhos, converged )
