"""
Error taxonomy for the reconciliation kernel.

Every error carries a `transient` flag. Transient errors are retried with
backoff by the reconciler loop; non-transient errors stay attached to the
Application's status until something changes (new source revision, operator
action).
"""

from typing import Optional


class GitOpsError(Exception):
    """Base class for all kernel errors."""

    transient = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SourceUnavailable(GitOpsError):
    """Repository could not be reached, authenticated against, or resolved."""

    transient = True


class RenderValidationError(GitOpsError):
    """A revision contains a malformed or unsupported resource specification."""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource

    def __str__(self) -> str:
        if self.resource:
            return f"{self.resource}: {self.message}"
        return self.message


class PlatformUnavailable(GitOpsError):
    """The target platform did not answer, or answered with a server error."""

    transient = True


class ResourceApplyError(GitOpsError):
    """The platform rejected an operation on a single resource."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class ConflictError(GitOpsError):
    """The live object changed between observation and write."""

    transient = True

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class InvalidTransition(GitOpsError):
    """An application phase change not allowed by the state machine."""
    pass


class ApplicationNotFound(GitOpsError):
    """No application is registered under the given name."""
    pass


class ApplicationExists(GitOpsError):
    """An application with the same name is already registered."""
    pass


class UnknownDestination(GitOpsError):
    """An application targets a cluster the kernel does not manage."""
    pass
