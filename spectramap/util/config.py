import hydra, os
from omegaconf import DictConfig, OmegaConf
from traitlets.config.loader import Config
from typing import Optional, Sequence

CONF_DIR = os.path.join( os.path.dirname( os.path.dirname( os.path.realpath(__file__) ) ), "conf" )

def cfg() -> DictConfig:
    return Configuration.instance().cfg

def sysconfig() -> Config:
    return Configuration.instance().sysconfig

def configure( config_name: str = "spectramap", config_dir: Optional[str] = None, overrides: Sequence[str] = () ) -> DictConfig:
    if config_dir is None: config_dir = CONF_DIR
    Configuration.init( config_name, config_dir, overrides )
    return cfg()

class Configuration:
    _instance = None
    _instantiated = None

    def __init__(self, config_name: str, config_dir: str, overrides: Sequence[str] = () ):
        with hydra.initialize_config_dir( version_base=None, config_dir=os.path.abspath(config_dir) ):
            self.cfg: DictConfig = hydra.compose( config_name, overrides=list(overrides) )

    @property
    def sysconfig(self) -> Config:
        return Config( OmegaConf.to_container( self.cfg, resolve=True ) )

    @classmethod
    def init(cls, config_name: str, config_dir: str, overrides: Sequence[str] = () ):
        inst = cls( config_name, config_dir, overrides )
        cls._instance = inst
        cls._instantiated = cls

    @classmethod
    def initialized(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def reset(cls):
        cls._instance = None
        cls._instantiated = None

    @classmethod
    def instance(cls) -> "Configuration":
        if cls._instance is None:
            raise RuntimeError( "Configuration has not been loaded, call spectramap.configure() first" )
        return cls._instance
