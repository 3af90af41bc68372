from __future__ import annotations

FAILED_TO_READ_REDIS_CONNECTION = "Failed to read the Redis connection string from configuration."
FAILED_TO_READ_FILTERS = "Failed to read the capture filter expression from configuration."
UNSUPPORTED_OS = "The host platform cannot run the packet capture library."
NO_DEVICES_FOUND = "No capture devices were found on this host."
NO_SUCH_INTERFACE = "No such interface:"
STOP_TIMED_OUT = "Capture session did not finish tearing down in time."


class AgentError(ValueError):
    """Base for failures surfaced to the control surface with a human-readable reason."""

    status_code = 403

    @property
    def reason(self) -> str:
        return str(self)


class MissingSinkConfig(AgentError):
    def __init__(self, message: str = FAILED_TO_READ_REDIS_CONNECTION) -> None:
        super().__init__(message)


class UnsupportedPlatform(AgentError):
    def __init__(self, message: str = UNSUPPORTED_OS) -> None:
        super().__init__(message)


class NoDevicesFound(AgentError):
    def __init__(self, message: str = NO_DEVICES_FOUND) -> None:
        super().__init__(message)


class NoSuchInterface(AgentError):
    def __init__(self, adapter: str) -> None:
        super().__init__(f"{NO_SUCH_INTERFACE} {adapter}")
        self.adapter = adapter


class MissingFilter(AgentError):
    def __init__(self, message: str = FAILED_TO_READ_FILTERS) -> None:
        super().__init__(message)


class CaptureOpenError(AgentError):
    """A device or filter could not be acquired while opening a capture session."""


class SinkUnavailable(AgentError):
    status_code = 503


class StopTimedOut(AgentError):
    status_code = 504

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"{STOP_TIMED_OUT} timeout_s={timeout_seconds:g}")
        self.timeout_seconds = timeout_seconds
