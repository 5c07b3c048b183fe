from .util.config import configure, cfg
from .util.logs import lgm
from .util.errors import InputError, ResourceExhaustion, NumericDegradation, SpectramapError
from .graph.base import NeighborIndex, PrecomputedNeighborIndex
from .graph.manager import ngm
from .reduction.base import UMAP
from .reduction.cpu import cpUMAP, EmbeddingResult
from .reduction.embedding import ReductionManager, rm

__version__ = "0.1"
