from .base import ClockEdge, SignalInterface
from .sim import SimulatedTarget
