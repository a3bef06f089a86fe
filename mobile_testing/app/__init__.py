"""Application-level utilities (configuration, filesystem layout)."""

from .configuration import Configuration, get_configuration, load_configuration, reset_configuration
from .environment import Paths, build_default_paths
