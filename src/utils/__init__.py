"""
Utility modules for the multi-track estimator.
"""

from .math_utils import *
from .config_loader import ConfigLoader, CircularIncludeError, load_config
