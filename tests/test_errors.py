import grpc
import pytest

from csiaddons.errors import StatusError, get_error_message, is_unimplemented_error


class _CallError(grpc.RpcError):
    def __init__(self, code, details):
        super().__init__(details)
        self._code = code
        self._details = details

    def code(self):
        return self._code

    def details(self):
        return self._details


@pytest.mark.parametrize(
    "err, want",
    [
        (None, ""),
        (StatusError(grpc.StatusCode.ABORTED, "aborted"), "aborted"),
        (ValueError("aborted"), "aborted"),
        (_CallError(grpc.StatusCode.ABORTED, "aborted"), "aborted"),
    ],
)
def test_get_error_message(err, want):
    assert get_error_message(err) == want


@pytest.mark.parametrize(
    "err, want",
    [
        (None, False),
        (StatusError(grpc.StatusCode.UNIMPLEMENTED, "unimplemented"), True),
        (StatusError(grpc.StatusCode.NOT_FOUND, "not found"), False),
        (ValueError("new error"), False),
        (_CallError(grpc.StatusCode.UNIMPLEMENTED, "unimplemented"), True),
    ],
)
def test_is_unimplemented_error(err, want):
    assert is_unimplemented_error(err) is want


def test_status_error_keeps_code_and_message():
    err = StatusError(grpc.StatusCode.NOT_FOUND, "not found")
    assert err.code == grpc.StatusCode.NOT_FOUND
    assert err.message == "not found"
    assert "not found" in str(err)