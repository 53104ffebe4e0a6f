"""
Errors
======
Exception taxonomy for the execution engine.

Only ConfigurationError and RuntimeUnavailable abort an invocation. Everything
else is captured into the affected unit's ExecutionOutcome by the scheduler,
and CleanupFailure is only ever logged.

A nonzero exit from a unit's command is NOT an exception: it is an ordinary
``failure`` outcome.
"""


class FleetError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(FleetError):
    """Malformed unit or resource request, rejected before any launch."""


class ResourceExhausted(FleetError):
    """The resource pool could not grant capacity within the caller's patience."""


class RuntimeUnavailable(FleetError):
    """The container runtime cannot be reached. Fatal to the invocation."""


class LaunchFailure(FleetError):
    """The container runtime rejected a launch configuration."""


class ImageNotFound(LaunchFailure):
    """The requested image is not present on the host."""

    def __init__(self, image: str) -> None:
        self.image = image
        super().__init__(f"Image '{image}' not found. Build or pull it first.")


class ContainerNotRunning(FleetError):
    """A command was requested against a container that is not running."""

    def __init__(self, container_id: str, status: str) -> None:
        self.container_id = container_id
        self.status = status
        super().__init__(f"Container {container_id} is not running (status: {status})")


class CleanupFailure(FleetError):
    """A container or scratch artifact could not be removed."""
