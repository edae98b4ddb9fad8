from .base import Transport, ReceiveCallback
from .memory import MemoryTransport, DropFilter
