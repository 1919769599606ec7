from pipe_engine.transport.interface import Transport, TransportRequest
from pipe_engine.transport.http import HttpxTransport

__all__ = ["HttpxTransport", "Transport", "TransportRequest"]
