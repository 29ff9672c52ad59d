from typing import Optional


class VmError(Exception):
    """
    Base class for every error raised by the control plane.

    `rest_code` is the stable identifier callers match on; messages are for
    humans and may change.
    """

    rest_code = "VmError"


class VmNotFoundError(VmError):
    """The VM does not exist, or is hidden by do_not_inventory."""

    rest_code = "VmNotFound"


class VmNotRunningError(VmError):
    rest_code = "ENOTRUNNING"


class VmValidationError(VmError, ValueError):
    rest_code = "ValidationFailed"


class VmProtocolError(VmError):
    """A backend answered with a payload we could not parse."""

    rest_code = "ProtocolError"

    def __init__(self, message: str, raw: Optional[str] = None) -> None:
        super().__init__(message)
        self.raw = raw


class VmBackendError(VmError):
    """
    Unclassified backend failure: non-zero exit from vmadm, or a non-2xx
    answer from the daemon that matched no known pattern.
    """

    rest_code = "BackendError"

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        signal: Optional[int] = None,
        stderr: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.signal = signal
        self.stderr = stderr


class VmOperationError(VmError):
    """An asynchronous LXD operation settled with a failure status."""

    rest_code = "OperationFailed"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class VmOperationTimeoutError(VmError):
    rest_code = "OperationTimeout"


class VmEventStreamError(VmError):
    rest_code = "EventStreamError"


class VmNotSupportedError(VmError, NotImplementedError):
    """The operation is not available on the configured backend."""

    rest_code = "NotImplemented"
