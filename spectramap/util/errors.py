import numpy as np
from warnings import warn
from contextlib import contextmanager
from typing import List, Optional, Sequence
from spectramap.util.logs import lgm

class SpectramapError(Exception):
    pass

class InputError(SpectramapError, ValueError):
    """Malformed input detected before (or while) building the neighbor graph.

    ``step`` names the pipeline stage that rejected the input and ``points``
    lists the offending point indices, when the failure can be attributed to
    particular points.
    """

    def __init__(self, msg: str, step: str = "validate", points: Optional[Sequence[int]] = None ):
        self.step = step
        self.points: np.ndarray = np.asarray( [] if points is None else points, dtype=np.int64 )
        if self.points.size > 0:
            shown = ", ".join( str(p) for p in self.points[:10] )
            more = "" if self.points.size <= 10 else f" (+{self.points.size-10} more)"
            msg = f"{msg} [points: {shown}{more}]"
        super(InputError, self).__init__( f"[{step}] {msg}" )

class ResourceExhaustion(SpectramapError, MemoryError):

    def __init__(self, step: str, detail: str = "" ):
        self.step = step
        super(ResourceExhaustion, self).__init__( f"[{step}] out of memory {detail}".strip() )

class NumericDegradation(UserWarning):
    pass

def degradation( msg: str, record: Optional[List[str]] = None ):
    """Report a recovered numeric problem: warn, log, and append to ``record``."""
    lgm().warn( msg )
    warn( msg, NumericDegradation, stacklevel=3 )
    if record is not None:
        record.append( msg )

@contextmanager
def resource_guard( step: str ):
    """Re-raise out-of-memory failures inside ``step`` as ResourceExhaustion."""
    try:
        yield
    except ResourceExhaustion:
        raise
    except MemoryError as err:
        raise ResourceExhaustion( step, str(err) ) from err
