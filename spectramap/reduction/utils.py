import numba
import numpy as np
from typing import Optional, Tuple
from sklearn.utils import check_array
from spectramap.util.errors import InputError
from spectramap.util.logs import lgm

INT32_MIN = np.iinfo(np.int32).min + 1
INT32_MAX = np.iinfo(np.int32).max - 1

@numba.njit()
def tau_rand_int(state):
    """A fast (pseudo)-random number generator.

    Parameters
    ----------
    state: array of int64, shape (3,)
        The internal state of the rng, advanced in place.

    Returns
    -------
    A (pseudo)-random int32 value
    """
    state[0] = (((state[0] & 4294967294) << 12) & 0xFFFFFFFF) ^ (
        (((state[0] << 13) & 0xFFFFFFFF) ^ state[0]) >> 19
    )
    state[1] = (((state[1] & 4294967288) << 4) & 0xFFFFFFFF) ^ (
        (((state[1] << 2) & 0xFFFFFFFF) ^ state[1]) >> 25
    )
    state[2] = (((state[2] & 4294967280) << 17) & 0xFFFFFFFF) ^ (
        (((state[2] << 3) & 0xFFFFFFFF) ^ state[2]) >> 11
    )

    return state[0] ^ state[1] ^ state[2]

@numba.njit()
def clip(val):
    if val > 4.0:
        return 4.0
    elif val < -4.0:
        return -4.0
    else:
        return val

@numba.njit(fastmath=True)
def rdist(x, y):
    result = 0.0
    dim = x.shape[0]
    for i in range(dim):
        diff = x[i] - y[i]
        result += diff * diff
    return result

def resolve_seed( random_state: Optional[int] ) -> int:
    # None never falls back on the process-wide numpy generator
    if random_state is None:
        return int( np.random.SeedSequence().entropy % (2 ** 32) )
    if isinstance( random_state, np.random.RandomState ):
        return int( random_state.randint( 0, INT32_MAX ) )
    return int( random_state )

def resolve_threads( n_threads: int ) -> int:
    max_threads = numba.config.NUMBA_NUM_THREADS
    if n_threads is None or n_threads <= 0:
        return max_threads
    return min( int(n_threads), max_threads )

def worker_rng_states( seed: int, n_workers: int ) -> np.ndarray:
    """One independent xorshift state per worker, derived from the master seed and the worker index."""
    streams = np.random.SeedSequence( seed ).spawn( n_workers )
    states = np.empty( (n_workers, 3), dtype=np.int64 )
    for iW, stream in enumerate( streams ):
        words = stream.generate_state( 3, dtype=np.uint32 ).astype( np.int64 )
        # the taus88 components need seeds above 1, 7 and 15 respectively
        states[iW] = words | np.array( [ 2, 8, 16 ], dtype=np.int64 )
    return states

def validate_points( X, min_points: int = 2 ) -> np.ndarray:
    try:
        X = check_array( X, dtype=np.float32, order="C", ensure_all_finite=False, ensure_min_samples=1 )
    except ValueError as err:
        raise InputError( f"malformed feature array: {err}" )
    bad_rows = np.flatnonzero( ~np.isfinite(X).all( axis=1 ) )
    if bad_rows.size > 0:
        raise InputError( f"{bad_rows.size} feature vectors contain NaN or Inf values", points=bad_rows )
    if X.shape[0] < min_points:
        raise InputError( f"at least {min_points} points are required, got {X.shape[0]}" )
    return X

def clamp_neighbors( n_neighbors: int, n_points: int ) -> int:
    if n_neighbors > n_points - 1:
        lgm().log( f"n_neighbors={n_neighbors} exceeds N-1={n_points-1}, clamping" )
        return n_points - 1
    return n_neighbors

def stat( x: np.ndarray ) -> str:
    return f"[{x.min():.3e}, {x.max():.3e}] mean={x.mean():.3e}"

def quantiles( x: np.ndarray, q: Tuple[float,...] = (0.05, 0.5, 0.95, 0.99) ) -> str:
    values = np.quantile( x, q )
    return ", ".join( f"{qi}: {vi:.2e}" for qi, vi in zip( q, values ) )
