"""Helpers for inspecting gRPC status errors."""

from __future__ import annotations

import grpc


class StatusError(Exception):
    """An error that carries a gRPC status code and message."""

    def __init__(self, code: grpc.StatusCode, message: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.name} desc = {self.message}"


def _status_of(err: BaseException | None) -> tuple[grpc.StatusCode, str] | None:
    """Return (code, message) when ``err`` carries a gRPC status, else None."""
    if err is None:
        return grpc.StatusCode.OK, ""
    if isinstance(err, StatusError):
        return err.code, err.message
    if isinstance(err, grpc.RpcError):
        code = getattr(err, "code", None)
        details = getattr(err, "details", None)
        if callable(code) and callable(details):
            return code(), details() or ""
    return None


def get_error_message(err: BaseException | None) -> str:
    """Return the status message of a gRPC error, or ``str(err)`` otherwise."""
    status = _status_of(err)
    if status is None:
        return str(err)
    return status[1]


def is_unimplemented_error(err: BaseException | None) -> bool:
    """Return True if ``err`` is a gRPC error with the UNIMPLEMENTED code."""
    status = _status_of(err)
    if status is None:
        return False
    return status[0] == grpc.StatusCode.UNIMPLEMENTED