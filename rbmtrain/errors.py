"""Exceptions raised by compute backends and caught by the initializer/trainer.

Initialization errors can only come out of ComputeBackend.init. Anything that goes wrong afterwards is a
BackendOperationFailed. None of these are retried: the device session is assumed to be broken.
User cancellation is *not* an error; it is reported through StopReason.USER_CANCELLED.
"""


class RBMError(Exception):
    """Base class for everything that aborts an initializer or training run."""
    category = "ERROR"

    def describe(self) -> list[str]:
        """Log lines for this failure, in the same style for every error type."""
        return [f"{self.category}... {self}"]


class BackendInitError(RBMError):
    """The backend could not set up its device-side mirrors of data, parameters and scratch memory."""


class InsufficientHostMemory(BackendInitError):
    def describe(self) -> list[str]:
        lines = ["ERROR... Insufficient memory"]
        if str(self):
            lines.append(str(self))
        return lines


class InsufficientDeviceMemory(BackendInitError):
    category = "Warning"

    def describe(self) -> list[str]:
        lines = ["Warning... Insufficient device memory."]
        if str(self):
            lines.append(str(self))
        return lines


class DeviceError(BackendInitError):
    category = "Warning"

    def describe(self) -> list[str]:
        lines = ["Warning... Device error.",
                 "           This is an unexpected error which should never happen."]
        if str(self):
            lines.append(str(self))
        return lines


class BackendOperationFailed(RBMError):
    def __init__(self,
                 operation: str,
                 reason: str = ""):
        """A backend call failed partway through initialization trials or training.

        Parameters:
            operation: Name of the backend operation, e.g. 'update_weights'.
            reason: Whatever the backend knows about why. May be empty.
        """
        self.operation = operation
        self.reason = reason
        message = f"{operation} failed" if not reason else f"{operation} failed: {reason}"
        super().__init__(message)
