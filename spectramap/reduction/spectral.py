import time
import numpy as np
import scipy.linalg
import scipy.sparse
import scipy.sparse.csgraph
from scipy.sparse.linalg import eigsh, ArpackError
from sklearn.utils import check_random_state
from sklearn.utils.extmath import randomized_svd
from sklearn.metrics import pairwise_distances
from typing import List, Optional, Tuple
from spectramap.util.logs import lgm, log_timing
from spectramap.util.errors import degradation
from .utils import quantiles

SOLVERS = ( "auto", "dense", "arpack", "randomized" )

class SpectralBasis(object):
    """Leading eigenpairs of the symmetric normalized affinity D^-1/2 W D^-1/2,
    sorted by decreasing eigenvalue, with the vertex degrees they were built from.
    Equivalently, the smallest eigenpairs of the normalized Laplacian (eigenvalue 1 - lambda).
    """

    def __init__(self, eigenvalues: np.ndarray, eigenvectors: np.ndarray, degrees: np.ndarray, solver: str ):
        self.eigenvalues = eigenvalues
        self.eigenvectors = eigenvectors
        self.degrees = degrees
        self.solver = solver

    @property
    def laplacian_eigenvalues(self) -> np.ndarray:
        return 1.0 - self.eigenvalues

    def __len__(self):
        return self.eigenvalues.shape[0]

class SolverFailure(Exception):
    pass

def normalized_affinity( adjacency: scipy.sparse.spmatrix ) -> Tuple[scipy.sparse.csr_matrix,np.ndarray]:
    W = scipy.sparse.csr_matrix( adjacency, dtype=np.float64 )
    degrees = np.asarray( W.sum( axis=1 ) ).ravel()
    inv_sqrt = 1.0 / np.sqrt( np.maximum( degrees, np.finfo(np.float64).tiny ) )
    D = scipy.sparse.diags( inv_sqrt )
    return ( D @ W @ D ).tocsr(), degrees

def select_solver( solver: str, n_vertices: int, k: int, dense_limit: int ) -> str:
    if solver not in SOLVERS:
        raise ValueError( f"Unknown eigensolver '{solver}', expected one of {SOLVERS}" )
    if k >= n_vertices - 1: return "dense"
    if solver == "auto":
        return "dense" if n_vertices <= dense_limit else "arpack"
    return solver

def spectral_basis( adjacency: scipy.sparse.spmatrix, k: int, solver: str = "auto", maxiter: int = 0, tol: float = 1e-4,
                    dense_limit: int = 2000, random_state: int = 0 ) -> SpectralBasis:
    """Compute the k leading eigenpairs of the normalized affinity of ``adjacency``.

    Raises SolverFailure when the iterative solver does not converge or yields
    non-finite values; the callers substitute a random layout.
    """
    S, degrees = normalized_affinity( adjacency )
    n = S.shape[0]
    k = min( k, n )
    method = select_solver( solver, n, k, dense_limit )
    maxiter = maxiter if maxiter > 0 else 5 * n
    try:
        if method == "dense":
            evals, evecs = scipy.linalg.eigh( S.toarray() )
            order = np.argsort( evals )[::-1][:k]
            evals, evecs = evals[order], evecs[:, order]
        elif method == "arpack":
            L = scipy.sparse.identity( n, format="csr" ) - S
            ncv = min( n, max( 2 * k + 1, int( np.sqrt( n ) ) ) )
            lvals, evecs = eigsh( L, k, which="SM", ncv=ncv, tol=tol, v0=np.ones( n ), maxiter=maxiter )
            order = np.argsort( lvals )
            evals, evecs = 1.0 - lvals[order], evecs[:, order]
        else:
            shifted = S + scipy.sparse.identity( n, format="csr" )
            U, s, _ = randomized_svd( shifted, n_components=k, n_oversamples=max( 10, k ), n_iter=max( 4, min( maxiter, 20 ) ),
                                      random_state=random_state )
            evals, evecs = s - 1.0, U
    except (ArpackError, scipy.linalg.LinAlgError) as err:
        raise SolverFailure( f"{method} eigensolver failed on {n} vertices: {err}" ) from err
    if not ( np.isfinite( evals ).all() and np.isfinite( evecs ).all() ):
        raise SolverFailure( f"{method} eigensolver returned non-finite values on {n} vertices" )
    lgm().log( f"  SPECTRAL[{method}]: n={n}, k={k}, eigenvalues = {np.array2string( evals, precision=4 )}" )
    return SpectralBasis( evals, evecs, degrees, method )

def random_layout( n_points: int, dim: int, random_state, scale: float = 10.0 ) -> np.ndarray:
    return check_random_state( random_state ).uniform( low=-scale, high=scale, size=(n_points, dim) )

def noisy_scale_coords( coords: np.ndarray, random_state, max_coord: float = 10.0, noise: float = 0.0001 ) -> np.ndarray:
    random_state = check_random_state( random_state )
    max_abs = np.abs( coords ).max()
    expansion = max_coord / max_abs if max_abs > 0 else 1.0
    coords = ( expansion * coords ).astype( np.float32 )
    return coords + random_state.normal( scale=noise, size=coords.shape ).astype( np.float32 )

def component_layout( data: Optional[np.ndarray], n_components: int, component_labels: np.ndarray, dim: int, random_state ) -> np.ndarray:
    """Place the connected components relative to one another: one offset per component."""
    if n_components <= dim:
        return np.eye( dim )[:n_components]
    if data is not None:
        centroids = np.vstack( [ data[component_labels == label].mean( axis=0 ) for label in range( n_components ) ] )
        sq_dists = pairwise_distances( centroids, metric="sqeuclidean" )
        scale = np.median( sq_dists[ sq_dists > 0 ] ) if np.any( sq_dists > 0 ) else 1.0
        affinity = np.exp( -sq_dists / scale )
        try:
            basis = spectral_basis( scipy.sparse.csr_matrix( affinity ), dim + 1, solver="dense" )
            meta = basis.eigenvectors[:, 1:dim + 1]
            max_abs = np.abs( meta ).max()
            if meta.shape[1] == dim and max_abs > 0:
                return meta / max_abs
        except SolverFailure as err:
            lgm().log( f"  SPECTRAL: component meta-layout failed ({err}), placing components at random" )
    directions = check_random_state( random_state ).normal( size=(n_components, dim) )
    return directions / np.linalg.norm( directions, axis=1, keepdims=True )

def multi_component_layout( data: Optional[np.ndarray], adjacency: scipy.sparse.csr_matrix, n_components: int, component_labels: np.ndarray,
                            dim: int, random_state, degradations: Optional[List[str]] = None, **solver_args ) -> np.ndarray:
    random_state = check_random_state( random_state )
    result = np.empty( (adjacency.shape[0], dim), dtype=np.float64 )
    meta_embedding = component_layout( data, n_components, component_labels, dim, random_state )
    if n_components > 1:
        distances = pairwise_distances( meta_embedding )
        data_range = distances[ distances > 0.0 ].min() / 2.0
    else:
        data_range = 1.0

    tiny = []
    for label in range( n_components ):
        members = np.flatnonzero( component_labels == label )
        component_graph = adjacency[members][:, members].tocsr()
        if members.size < 2 * dim or members.size <= dim + 1:
            tiny.append( members.size )
            result[members] = random_state.uniform( low=-data_range, high=data_range, size=(members.size, dim) ) + meta_embedding[label]
            continue
        try:
            basis = spectral_basis( component_graph, dim + 1, random_state=random_state.randint( np.iinfo(np.int32).max ), **solver_args )
            component_embedding = basis.eigenvectors[:, 1:dim + 1]
            max_abs = np.abs( component_embedding ).max()
            expansion = data_range / max_abs if max_abs > 0 else 1.0
            result[members] = component_embedding * expansion + meta_embedding[label]
        except SolverFailure as err:
            degradation( f"spectral initialisation failed for a component of {members.size} points ({err}), using random initialisation", degradations )
            result[members] = random_state.uniform( low=-data_range, high=data_range, size=(members.size, dim) ) + meta_embedding[label]
    if tiny:
        degradation( f"{len(tiny)} components with {sum(tiny)} points are too small for a spectral solve, using random initialisation", degradations )
    return result

@log_timing
def spectral_layout( graph, dim: int, random_state, data: Optional[np.ndarray] = None, solver: str = "auto", maxiter: int = 0,
                     tol: float = 1e-4, dense_limit: int = 2000, degradations: Optional[List[str]] = None ) -> np.ndarray:
    """Warm start for the layout optimizer: the leading nontrivial eigenvectors
    of the normalized graph Laplacian, computed per connected component.

    Parameters
    ----------
    graph: NeighborGraph or sparse matrix
        The symmetric fuzzy graph.

    dim: int
        The dimension of the space into which to embed.

    random_state: int or numpy RandomState
        Seeds the randomized solver and any random fallback.

    data: array of shape (n_samples, n_features) (optional)
        Source vectors; used only to position disconnected components.

    Returns
    -------
    embedding: array of shape (n_samples, dim)
        Unscaled spectral coordinates, or a uniform random layout in [-10, 10]
        if the eigensolver failed.
    """
    adjacency = graph.adjacency if hasattr( graph, "adjacency" ) else scipy.sparse.csr_matrix( graph )
    random_state = check_random_state( random_state )
    n_vertices = adjacency.shape[0]
    solver_args = dict( solver=solver, maxiter=maxiter, tol=tol, dense_limit=dense_limit )
    n_components, labels = scipy.sparse.csgraph.connected_components( adjacency, directed=False )
    if n_components > 1:
        lgm().log( f"  SPECTRAL: graph has {n_components} connected components, embedding them separately" )
        return multi_component_layout( data, adjacency, n_components, labels, dim, random_state, degradations, **solver_args )
    if n_vertices <= dim + 1:
        degradation( f"graph of {n_vertices} points is too small for a spectral solve in {dim} dimensions, using random initialisation", degradations )
        return random_layout( n_vertices, dim, random_state )
    try:
        basis = spectral_basis( adjacency, dim + 1, random_state=random_state.randint( np.iinfo(np.int32).max ), **solver_args )
        return basis.eigenvectors[:, 1:dim + 1]
    except SolverFailure as err:
        degradation( f"spectral initialisation failed ({err}), using random initialisation", degradations )
        return random_layout( n_vertices, dim, random_state )

def diffusion_time( eigenvalues: np.ndarray ) -> float:
    """Smallest time at which the second diffusion coordinate has decayed to 90% of the first, capped at 5."""
    if eigenvalues.shape[0] < 3 or eigenvalues[1] <= 0.0:
        return 1.0
    ratio = eigenvalues[2] / eigenvalues[1]
    if ratio <= 0.0:
        return 1.0
    if ratio >= 1.0:
        return 5.0
    return min( 5.0, np.log( 0.9 ) / np.log( ratio ) )

@log_timing
def diffusion_map( graph, dim: int, random_state, alpha: float = 0.0, t: Optional[float] = None, solver: str = "auto", maxiter: int = 0,
                   tol: float = 1e-4, dense_limit: int = 2000, degradations: Optional[List[str]] = None ) -> np.ndarray:
    """Diffusion map embedding of the fuzzy graph (Coifman & Lafon, 2006).

    Unit self loops are added to the affinity, which is renormalized by
    (q_i q_j)^alpha with q the vertex degrees; coordinate j of point i is
    lambda_j^t u_ij / sqrt(d_i / sum(d)), clipped to [-5, 5].
    """
    t0 = time.time()
    adjacency = graph.adjacency if hasattr( graph, "adjacency" ) else scipy.sparse.csr_matrix( graph )
    random_state = check_random_state( random_state )
    n_vertices = adjacency.shape[0]
    if not ( 0.0 <= alpha <= 1.0 ):
        lgm().log( f"  DMAP: alpha={alpha} outside [0,1], using 0" )
        alpha = 0.0
    W = scipy.sparse.csr_matrix( adjacency, dtype=np.float64 ) + scipy.sparse.identity( n_vertices, format="csr" )
    if alpha > 0.0:
        q = np.asarray( W.sum( axis=1 ) ).ravel()
        lgm().log( f"  DMAP: density quantiles {{{quantiles(q)}}}" )
        Q = scipy.sparse.diags( q ** -alpha )
        W = ( Q @ W @ Q ).tocsr()
    k = max( dim + 1, 3 )
    if n_vertices <= k:
        degradation( f"diffusion map needs more than {k} points, got {n_vertices}; using random coordinates", degradations )
        return random_layout( n_vertices, dim, random_state, scale=5.0 ).astype( np.float32 )
    try:
        basis = spectral_basis( W, k, solver=solver, maxiter=maxiter, tol=tol, dense_limit=dense_limit,
                                random_state=random_state.randint( np.iinfo(np.int32).max ) )
    except SolverFailure as err:
        degradation( f"diffusion map eigensolver failed ({err}), using random coordinates", degradations )
        return random_layout( n_vertices, dim, random_state, scale=5.0 ).astype( np.float32 )

    lambdas = basis.eigenvalues / basis.eigenvalues[0]
    time_scale = diffusion_time( lambdas ) if t is None else float( t )
    lgm().log( f"  DMAP: applying diffusion time {time_scale:.3e}, normalized eigenvalues = {np.array2string( lambdas, precision=4 )}" )
    scales = np.sign( lambdas[1:dim + 1] ) * np.abs( lambdas[1:dim + 1] ) ** time_scale
    weights = np.sqrt( basis.degrees / basis.degrees.sum() )
    embedding = basis.eigenvectors[:, 1:dim + 1] * scales[None, :] / weights[:, None]
    lgm().log( f"  DMAP: scale quantiles {{{quantiles( np.abs(embedding).max( axis=1 ) )}}}, computed in {time.time()-t0:.3f} sec" )
    return np.clip( embedding, -5.0, 5.0 ).astype( np.float32 )
