"""
Compiler: ModelGraph -> Schedule.
"""

from .mapper import HardwareMapper, WEIGHT_ELEMENT_BITS
from .cache import ScheduleCache

__all__ = [
    'HardwareMapper',
    'ScheduleCache',
    'WEIGHT_ELEMENT_BITS',
]
