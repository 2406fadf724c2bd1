from .ps2float import *
from .ps2float import __all__
