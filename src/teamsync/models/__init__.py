"""Record types and collection descriptors."""

from .records import *  # noqa: F401,F403
from .collections import *  # noqa: F401,F403
from . import records, collections

__all__ = records.__all__ + collections.__all__
