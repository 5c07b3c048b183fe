import xarray as xa
import traitlets as tl
import numpy as np
from omegaconf import OmegaConf
from typing import Dict, Optional, Union
from spectramap.util.logs import lgm, log_timing, exception_handled
from spectramap.util.config import Configuration, cfg
from spectramap.model.base import SMSingletonConfigurable
from spectramap.graph.manager import ngm
from .utils import resolve_seed

def rm() -> "ReductionManager":
    return ReductionManager.instance()

class ReductionManager(SMSingletonConfigurable):
    method = tl.Unicode("umap").tag(config=True,sync=True)
    init = tl.Unicode("spectral").tag(config=True,sync=True)
    nepochs = tl.Int( 200 ).tag(config=True,sync=True)
    alpha = tl.Float( 1.0 ).tag(config=True,sync=True)
    ndim = tl.Int( 2 ).tag(config=True,sync=True)

    def __init__(self, **kwargs):
        super(ReductionManager, self).__init__(**kwargs)
        self._mapper = None
        self.result = None

    def umap_parameters( self, **kwargs ) -> Dict:
        params = OmegaConf.to_container( cfg().UMAP, resolve=True ) if Configuration.initialized() and ("UMAP" in cfg()) else {}
        params.update( n_components=self.ndim, n_epochs=self.nepochs, learning_rate=self.alpha, init=self.init,
                       n_neighbors=ngm().nneighbors, metric=ngm().metric, index=ngm().index )
        params.update( kwargs )
        return params

    def getUMapper( self, **kwargs ):
        from .cpu import cpUMAP
        params = self.umap_parameters( **kwargs )
        metric_specs = params['metric'].split("-")
        if len( metric_specs ) > 1:
            params['metric'] = metric_specs[0]
            params['metric_kwds'] = dict( p=int(metric_specs[1]) )
        params["random_state"] = resolve_seed( params.get( "random_state" ) )
        self._mapper = cpUMAP( **params )
        return self._mapper

    def cancel(self):
        if self._mapper is not None:
            self._mapper.cancel()

    def neighbor_index( self, point_data: Union[xa.DataArray,np.ndarray], mapper ):
        reset = not ( isinstance( point_data, xa.DataArray ) and ('dsid' in point_data.attrs) )
        return ngm().getNeighborIndex( point_data, reset=reset, metric=mapper.metric, metric_kwds=(mapper.metric_kwds or {}), index=mapper.index,
                                       random_state=mapper.random_state, n_jobs=mapper.n_threads )

    @log_timing
    def umap_embedding( self, point_data: Union[xa.DataArray,np.ndarray], **kwargs ) -> xa.DataArray:
        mapper = self.getUMapper( **kwargs )
        lgm().log( f"Executing UMAP embedding with input data shape = {point_data.shape}, ndim = {mapper.n_components}, nepochs = {mapper.n_epochs}" )
        self.result = mapper.embed( self.values( point_data ), index=self.neighbor_index( point_data, mapper ) )
        return self.wrap_embedding( point_data, self.result.embedding )

    @log_timing
    def dmap_embedding( self, point_data: Union[xa.DataArray,np.ndarray], **kwargs ) -> xa.DataArray:
        mapper = self.getUMapper( **kwargs )
        lgm().log( f"Executing diffusion map embedding with input data shape = {point_data.shape}, ndim = {mapper.n_components}" )
        self.result = mapper.embed_diffusion( self.values( point_data ), index=self.neighbor_index( point_data, mapper ) )
        return self.wrap_embedding( point_data, self.result.embedding )

    @exception_handled
    def embedding( self, point_data: Union[xa.DataArray,np.ndarray], **kwargs ) -> xa.DataArray:
        method = kwargs.pop( 'method', self.method )
        if method == "umap":        return self.umap_embedding( point_data, **kwargs )
        elif method == "diffusion": return self.dmap_embedding( point_data, **kwargs )
        raise NotImplementedError( f"Unknown reduction method: {method}" )

    @staticmethod
    def values( point_data: Union[xa.DataArray,np.ndarray] ) -> np.ndarray:
        return point_data.values if isinstance( point_data, xa.DataArray ) else point_data

    def wrap_embedding( self, point_data: Union[xa.DataArray,np.ndarray], embedding: np.ndarray ) -> xa.DataArray:
        ax_model = np.arange( embedding.shape[1] )
        if isinstance( point_data, xa.DataArray ):
            sdim = point_data.dims[0]
            ax_samples = point_data.coords[sdim].values if sdim in point_data.coords else np.arange( embedding.shape[0] )
            attrs = dict( point_data.attrs )
        else:
            ax_samples, attrs = np.arange( embedding.shape[0] ), {}
        attrs.update( method=self.result.method, seed=self.result.seed, epochs=self.result.epochs_completed )
        return xa.DataArray( embedding, dims=['samples','model'], coords=dict( samples=ax_samples, model=ax_model ), attrs=attrs )
