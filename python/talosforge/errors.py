"""
talosforge/errors.py

Exception hierarchy shared across the reconciler, sequencers and cleanup.

Cloud-adapter errors live next to the adapter contract (talosforge.cloud.adapter)
and subprocess failures are CommandError (talosforge.utils.async_command_runner).
"""

from __future__ import annotations

from typing import Dict, List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from talosforge.models.bootstrap import DiagnosticsReport


class TalosforgeError(Exception):
    """Base class for all errors raised by talosforge."""


class ConfigurationError(TalosforgeError):
    """The desired-state configuration is malformed or inconsistent."""


class ReconcileStepError(TalosforgeError):
    """
    Wraps a failure of one reconciliation step.

    Attributes:
        step: Name of the failed step (e.g. "network", "firewall").
        resource: Name of the resource or node the step was acting on, if any.
    """

    def __init__(
        self, step: str, cause: BaseException, resource: Optional[str] = None
    ) -> None:
        target = f" ({resource})" if resource else ""
        super().__init__(f"step '{step}'{target} failed: {cause}")
        self.step = step
        self.resource = resource
        self.__cause__ = cause


class PollTimeoutError(TalosforgeError):
    """A bounded polling loop exhausted its deadline."""

    def __init__(
        self, description: str, timeout: float, last_error: Optional[BaseException]
    ) -> None:
        detail = f" (last error: {last_error})" if last_error else ""
        super().__init__(f"timed out after {timeout:.1f}s waiting for {description}{detail}")
        self.description = description
        self.timeout = timeout
        self.last_error = last_error


class SecretsCorruptedError(TalosforgeError):
    """A persisted secrets file exists but cannot be parsed or validated."""


class BootstrapError(TalosforgeError):
    """
    A control-plane bootstrap step failed fatally.

    Attributes:
        node: The node name the failure relates to, if any.
        diagnostics: Connectivity/service snapshot collected after the failure.
    """

    def __init__(
        self,
        message: str,
        node: Optional[str] = None,
        diagnostics: Optional[DiagnosticsReport] = None,
    ) -> None:
        super().__init__(message)
        self.node = node
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        base = super().__str__()
        if self.diagnostics is None:
            return base
        return f"{base}\n{self.diagnostics.summary()}"


class NodeRebootError(BootstrapError):
    """A node never came back after the configuration-triggered reboot."""


class CertificateMismatchError(BootstrapError):
    """The node answers, but rejects the generated client certificate."""


class EtcdAlreadyBootstrappedError(BootstrapError):
    """An etcd bootstrap was attempted against an already-bootstrapped cluster."""


class NodeCountMismatchError(BootstrapError):
    """Fewer nodes than expected reported in after the readiness timeout."""


class CredentialError(TalosforgeError):
    """A kubeconfig is missing required sections or points at the wrong endpoint."""


class AddonInstallError(TalosforgeError):
    """
    One or more addons failed to install.

    Attributes:
        failures: Mapping of addon name to the error it failed with.
    """

    def __init__(self, failures: Dict[str, BaseException]) -> None:
        names = ", ".join(sorted(failures))
        details = "; ".join(f"{name}: {err}" for name, err in sorted(failures.items()))
        super().__init__(f"addon installation failed for: {names} ({details})")
        self.failures = failures


class QuorumError(TalosforgeError):
    """Replacing a control-plane node would break etcd quorum."""


class UpgradeVerificationError(TalosforgeError):
    """Nodes do not report the target versions after an upgrade."""


class CleanupError(TalosforgeError):
    """
    Accumulated failures from the ordered teardown.

    Attributes:
        errors: Every failure seen during the name-based deletion.
        sweep_succeeded: Whether the label-based fallback sweep completed.
    """

    def __init__(self, errors: List[BaseException], sweep_succeeded: bool) -> None:
        sweep = "succeeded" if sweep_succeeded else "failed"
        joined = "; ".join(str(e) for e in errors)
        super().__init__(
            f"cleanup encountered {len(errors)} error(s), label sweep {sweep}: {joined}"
        )
        self.errors = errors
        self.sweep_succeeded = sweep_succeeded
