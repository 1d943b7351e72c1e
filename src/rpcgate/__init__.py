"""rpcgate · Protocol-Adapter für Remote-Operationen über stdio und HTTP/SSE."""

__version__ = "0.3.0"

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "rpcgate"
