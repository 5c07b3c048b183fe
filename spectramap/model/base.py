import traitlets.config as tlc
from typing import List

class SMSingletonConfigurable(tlc.Configurable):
    config_instances: List["SMSingletonConfigurable"] = []
    _instance = None
    _instantiated = None

    def __init__(self, *args, **kwargs ):
        super(SMSingletonConfigurable, self).__init__( **kwargs )
        self._contingent_configuration_()
        self.config_instances.append( self )

    @classmethod
    def instance(cls, *args, **kwargs):
        if cls._instance is None:
            inst = cls(*args, **kwargs)
            cls._instance = inst
            cls._instantiated = cls
        return cls._instance

    @classmethod
    def reset_instance(cls):
        inst = cls._instance
        if inst is not None and inst in cls.config_instances:
            cls.config_instances.remove( inst )
        cls._instance = None
        cls._instantiated = None

    def _contingent_configuration_(self):
        from spectramap.util.config import Configuration, sysconfig
        if Configuration.initialized():
            self.update_config( sysconfig() )

    @classmethod
    def reset_all(cls):
        for inst in list( cls.config_instances ):
            inst.__class__.reset_instance()
        cls.config_instances.clear()
