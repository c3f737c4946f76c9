from __future__ import annotations

from typing import Optional


class StagehandError(Exception):
    """Base class for every error raised by stagehand."""


class ConfigurationError(StagehandError, ValueError):
    """Raised before any mutation when the declared state is invalid."""


class ConnectivityError(StagehandError):
    """Raised when none of the connectivity endpoints answer."""


class VerificationTimeout(StagehandError):
    """A health probe did not succeed within its deadline."""

    def __init__(self, target: str, timeout: float):
        super().__init__(f"{target} did not become healthy within {timeout:g}s")
        self.target = target
        self.timeout = timeout


class ProviderError(StagehandError):
    """A provider could not read or change the state of one resource."""

    def __init__(self, resource_id: str, reason: str):
        super().__init__(f"{resource_id}: {reason}")
        self.resource_id = resource_id
        self.reason = reason


class ProviderInspectError(ProviderError):
    """Current state could not be read; callers assume the resource is absent."""


class ProviderApplyError(ProviderError):
    """A mutating operation failed.

    ``transient`` marks failures worth retrying (network, daemon start-up),
    ``recoverable`` marks failures the provider already worked around, and
    ``remediation`` is the command an operator can run by hand.
    """

    transient = False

    def __init__(
        self,
        resource_id: str,
        reason: str,
        *,
        transient: Optional[bool] = None,
        recoverable: bool = False,
        remediation: Optional[str] = None,
    ):
        super().__init__(resource_id, reason)
        if transient is not None:
            self.transient = transient
        self.recoverable = recoverable
        self.remediation = remediation


class InstallFailed(ProviderApplyError):
    transient = True


class ServiceStartFailed(ProviderApplyError):
    transient = True


class ImportFailed(ProviderApplyError):
    pass


class PullFailed(ProviderApplyError):
    transient = True


class ContainerStartFailed(ProviderApplyError):
    transient = True


class ConfigWriteFailed(ProviderApplyError):
    pass
