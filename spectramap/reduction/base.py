import numpy as np
from sklearn.base import BaseEstimator
from typing import Optional
from spectramap.util.errors import InputError
from .spectral import SOLVERS
from .layouts import CONCURRENCY_MODES

INIT_METHODS = ( "spectral", "diffusion", "random" )
INDEX_TYPES = ( "nnd", "skl" )

class UMAP(BaseEstimator):
    """Uniform Manifold Approximation and Projection

    Finds a low dimensional embedding of the data that approximates
    an underlying manifold.

    Parameters
    ----------
    n_neighbors: int (optional, default 15)
        The size of local neighborhood (in terms of number of neighboring
        sample points) used for manifold approximation. Clamped to N-1.

    n_components: int (optional, default 2)
        The dimension of the space to embed into.

    n_epochs: int (optional, default 200)
        The number of training epochs used in optimizing the low dimensional
        embedding; 0 returns the initialisation unchanged.

    learning_rate, final_learning_rate: float (optional, default 1.0, 0.0)
        End points of the linearly annealed learning rate.

    init: string or array (optional, default 'spectral')
        How to initialize the low dimensional embedding:
            * 'spectral': normalized Laplacian eigenvectors of the fuzzy graph
            * 'diffusion': diffusion map coordinates of the fuzzy graph
            * 'random': uniform random positions
            * A numpy array of initial embedding positions.

    min_dist, spread: float (optional, default 0.1, 1.0)
        Shape of the low dimensional membership curve; ``a`` and ``b`` are
        fitted from them unless given.

    concurrency: string (optional, default 'fast')
        'fast' runs the optimizer with unsynchronized shared updates,
        'reproducible' gives identical results for a fixed seed and thread count.

    random_state: int (optional, default None)
        The master seed. None draws a fresh seed, recorded in the result.
    """

    def __init__(
        self,
        n_neighbors=15,
        n_components=2,
        metric="euclidean",
        metric_kwds=None,
        index="nnd",
        n_epochs=200,
        learning_rate=1.0,
        final_learning_rate=0.0,
        init="spectral",
        min_dist=0.1,
        spread=1.0,
        set_op_mix_ratio=1.0,
        local_connectivity=1.0,
        bandwidth=1.0,
        repulsion_strength=1.0,
        negative_sample_rate=5,
        a=None,
        b=None,
        random_state=None,
        concurrency="fast",
        n_threads=-1,
        eig_solver="auto",
        eig_maxiter=0,
        eig_tol=1e-4,
        dense_limit=2000,
        calibration_iter=64,
        calibration_tol=1e-5,
        convergence_tol=0.0,
        diffusion_alpha=0.0,
        diffusion_time=None,
    ):
        self.n_neighbors = n_neighbors
        self.n_components = n_components
        self.metric = metric
        self.metric_kwds = metric_kwds
        self.index = index
        self.n_epochs = n_epochs
        self.learning_rate = learning_rate
        self.final_learning_rate = final_learning_rate
        self.init = init
        self.min_dist = min_dist
        self.spread = spread
        self.set_op_mix_ratio = set_op_mix_ratio
        self.local_connectivity = local_connectivity
        self.bandwidth = bandwidth
        self.repulsion_strength = repulsion_strength
        self.negative_sample_rate = negative_sample_rate
        self.a = a
        self.b = b
        self.random_state = random_state
        self.concurrency = concurrency
        self.n_threads = n_threads
        self.eig_solver = eig_solver
        self.eig_maxiter = eig_maxiter
        self.eig_tol = eig_tol
        self.dense_limit = dense_limit
        self.calibration_iter = calibration_iter
        self.calibration_tol = calibration_tol
        self.convergence_tol = convergence_tol
        self.diffusion_alpha = diffusion_alpha
        self.diffusion_time = diffusion_time

    def _validate_parameters(self):
        def fail( msg: str ):
            raise InputError( msg, step="configure" )
        if self.set_op_mix_ratio < 0.0 or self.set_op_mix_ratio > 1.0:
            fail("set_op_mix_ratio must be between 0.0 and 1.0")
        if self.repulsion_strength < 0.0:
            fail("repulsion_strength cannot be negative")
        if self.min_dist > self.spread:
            fail("min_dist must be less than or equal to spread")
        if self.min_dist < 0.0:
            fail("min_dist cannot be negative")
        if not isinstance(self.init, str) and not isinstance(self.init, np.ndarray):
            fail("init must be a string or ndarray")
        if isinstance(self.init, str) and self.init not in INIT_METHODS:
            fail(f"string init values must be one of {INIT_METHODS}")
        if isinstance(self.init, np.ndarray) and (self.init.ndim != 2 or self.init.shape[1] != self.n_components):
            fail("init ndarray must match n_components value")
        if self.negative_sample_rate < 0:
            fail("negative sample rate must be positive")
        if self.learning_rate < 0.0 or self.final_learning_rate < 0.0:
            fail("learning_rate must be positive")
        if self.n_neighbors < 2:
            fail("n_neighbors must be greater than 1")
        if int(self.n_components) != self.n_components or self.n_components < 1:
            fail("n_components must be a positive integer")
        if int(self.n_epochs) != self.n_epochs or self.n_epochs < 0:
            fail("n_epochs must be a nonnegative integer")
        if self.concurrency not in CONCURRENCY_MODES:
            fail(f"concurrency must be one of {CONCURRENCY_MODES}")
        if self.eig_solver not in SOLVERS:
            fail(f"eig_solver must be one of {SOLVERS}")
        if self.index not in INDEX_TYPES:
            fail(f"index must be one of {INDEX_TYPES}")
        if self.eig_tol < 0.0 or self.eig_maxiter < 0:
            fail("eig_tol and eig_maxiter cannot be negative")
        if self.calibration_iter < 1:
            fail("calibration_iter must be at least 1")
        if self.local_connectivity < 0.0 or self.bandwidth <= 0.0:
            fail("local_connectivity must be nonnegative and bandwidth positive")
        if self.convergence_tol < 0.0:
            fail("convergence_tol cannot be negative")
        if self.diffusion_alpha < 0.0 or self.diffusion_alpha > 1.0:
            fail("diffusion_alpha must be between 0.0 and 1.0")
        if self.diffusion_time is not None and self.diffusion_time <= 0.0:
            fail("diffusion_time must be positive")
        self._n_components = int(self.n_components)
        self._n_epochs = int(self.n_epochs)
        self._metric_kwds = {} if self.metric_kwds is None else dict(self.metric_kwds)
