from .config import *
from .core import *
from .jitter import *
from .probe import *
from .relay import *
from .version import __version__
