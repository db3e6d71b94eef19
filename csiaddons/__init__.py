"""CSI-Addons sidecar: driver client, node registration, gRPC services and helpers."""

__version__ = "0.1.0"