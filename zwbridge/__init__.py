"""Bridge classes of the Z-Wave to Qth bridge."""

from .Broker import Broker as Broker
from .ValueBridge import ValueBridge as ValueBridge
from .NodeBridge import NodeBridge as NodeBridge
from .NetworkBridge import NetworkBridge as NetworkBridge
from .Driver import Driver as Driver
