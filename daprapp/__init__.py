"""Application-side callback services for a Dapr sidecar, over WSGI or a gRPC callback server."""

__version__ = "0.1.0"
__all__ = [
    "common",
    "subscription",
    "registrar",
    "grpc_events",
    "http_events",
    "grpc_service",
    "http_service",
]