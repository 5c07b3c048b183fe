import numpy as np
import xarray as xa
from typing import Dict, Optional, Tuple, Union
import threading
import traitlets as tl
from spectramap.model.base import SMSingletonConfigurable
from spectramap.util.logs import lgm
from .base import NeighborIndex

def ngm() -> "NeighborGraphManager":
    return NeighborGraphManager.instance()

def create_index( index_type: str, metric: str = "euclidean", **kwargs ) -> NeighborIndex:
    if index_type == "nnd":
        from .cpu import nndNeighborIndex
        return nndNeighborIndex( metric, **kwargs )
    elif index_type == "skl":
        from .skl import skNeighborIndex
        return skNeighborIndex( metric, **kwargs )
    else:
        raise NotImplementedError( f"Error, unimplemented neighbor index type: {index_type}")

class NeighborGraphManager(SMSingletonConfigurable):
    nneighbors = tl.Int( 15 ).tag(config=True,sync=True)
    metric = tl.Unicode("euclidean").tag(config=True,sync=True)
    index = tl.Unicode("nnd").tag(config=True,sync=True)

    def __init__(self):
        super(NeighborGraphManager, self).__init__()
        self.instances: Dict[Tuple,NeighborIndex] = {}
        self.condition = threading.Condition()

    def reset(self):
        with self.condition:
            self.instances = {}

    def getNeighborIndex( self, point_data: Union[xa.DataArray,np.ndarray], reset: bool = False, **kwargs ) -> NeighborIndex:
        if reset: self.reset()
        dsid = point_data.attrs.get('dsid','global') if isinstance( point_data, xa.DataArray ) else kwargs.pop( 'dsid', 'global' )
        metric_specs = kwargs.pop( 'metric', self.metric ).split("-")
        index_kwargs = dict( **kwargs )
        if len( metric_specs ) > 1: index_kwargs['metric_kwds'] = dict( p=int(metric_specs[1]) )
        index_type = index_kwargs.pop( 'index', self.index )
        key = ( dsid, index_type, metric_specs[0], tuple( sorted( (index_kwargs.get('metric_kwds') or {}).items() ) ), index_kwargs.get( 'random_state' ) )
        with self.condition:
            result: Optional[NeighborIndex] = self.instances.get( key, None )
            if (result is None) or (result.n_points != point_data.shape[0]):
                lgm().log( f"Get neighbor index for dsid {dsid}: type={index_type}, metric={metric_specs[0]}" )
                values = point_data.values if isinstance( point_data, xa.DataArray ) else point_data
                result = create_index( index_type, metric_specs[0], **index_kwargs ).fit( np.ascontiguousarray( values, dtype=np.float32 ) )
                self.instances[key] = result
                lgm().log( f"COMPLETED NeighborIndex: shape={point_data.shape}, args={index_kwargs}" )
        return result
