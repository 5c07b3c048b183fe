import os, time, logging, traceback
import traitlets as tl
from functools import wraps
from datetime import datetime
from typing import Optional
from spectramap.model.base import SMSingletonConfigurable

def lgm() -> "LogManager":
    return LogManager.instance()

def exception_handled(func):
    @wraps(func)
    def wrapper( *args, **kwargs ):
        try:
            return func( *args, **kwargs )
        except Exception as err:
            lgm().exception( f" Error in {func.__name__}: {err}" )
            raise
    return wrapper

def log_timing(f):
    @wraps(f)
    def wrap(*args, **kw):
        ts = time.time()
        try:
            return f(*args, **kw)
        except Exception:
            lgm().exception( f" Error in {f.__name__}:" )
            raise
        finally:
            lgm().log( f'EXEC {f.__name__} took: {time.time()-ts:3.4f} sec' )
    return wrap

class LogManager(SMSingletonConfigurable):
    """Writes timestamped records to a per-run log file.

    Before ``init_logging`` opens a file, records go to the standard
    ``spectramap`` logger, so library code can always call ``lgm().log``.
    """
    level = tl.Unicode("INFO").tag(config=True)

    def __init__(self):
        super(LogManager, self).__init__()
        self._level: int = logging.getLevelName( self.level.upper() )
        self._stream = None
        self._fallback = logging.getLogger("spectramap")
        self.log_dir: Optional[str] = None
        self.log_file: Optional[str] = None

    def setLevel(self, level: int ):
        self._level = level

    def init_logging(self, name: str, mode: str, log_root: Optional[str] = None, timestamp_logs: bool = True, overwrite: bool = True ):
        if log_root is None: log_root = os.path.join( os.path.expanduser("~"), ".spectramap", "logging" )
        stamp = datetime.now().strftime("%j%H%M%S") if timestamp_logs else "00000"
        suffix = "" if overwrite else f"-{os.getpid()}"
        self.close()
        self.log_dir = os.path.join( log_root, mode )
        os.makedirs( self.log_dir, 0o777, exist_ok=True )
        self.log_file = os.path.join( self.log_dir, f"{name}{suffix}.{stamp}.log" )
        self._stream = open( self.log_file, 'w' )
        print( f"Opening log file:  '{self.log_file}'" )

    def close(self):
        if self._stream is not None:
            self._stream.flush()
            self._stream.close()
            self._stream = None

    def _emit(self, msg: str, level: int ):
        if self._stream is None:
            self._fallback.log( level, msg )
        else:
            self._stream.write( f"[{datetime.now().strftime('%H:%M:%S')}] {msg}\n" )
            self._stream.flush()

    def log( self, msg: str, **kwargs ):
        if kwargs.get( 'print', False ): print( msg, flush=True )
        if self._level <= logging.INFO:
            self._emit( msg, logging.INFO )

    def debug(self, msg: str, **kwargs ):
        if self._level <= logging.DEBUG:
            if kwargs.get( 'print', False ): print( msg, flush=True )
            self._emit( msg, logging.DEBUG )

    def warn(self, msg: str, **kwargs ):
        if kwargs.get( 'print', False ): print( msg, flush=True )
        self._emit( f"WARNING: {msg}", logging.WARNING )

    def exception(self, msg: str, **kwargs ):
        self._emit( f"\n{msg}\n{traceback.format_exc()}", logging.ERROR )
