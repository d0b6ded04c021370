"""Error model - Actionable errors with remediation hints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class AgentError(Exception):
    """
    Base error with context and remediation guidance.

    All errors should be actionable - tell the caller what went wrong
    and what they can do about it. Subclasses exist so callers can catch
    a category (transport, protocol, timeout...) without matching codes.
    """

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str = ""

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "remediation": self.remediation,
        }


@dataclass
class AutomationConnectionError(AgentError):
    """Socket-level failure: missing path, refused, or not connected."""


@dataclass
class TransportError(AgentError):
    """Short read/write on an otherwise open connection."""


@dataclass
class ProtocolError(AgentError):
    """Unexpected sentinel, tag, or reply shape."""


@dataclass
class AgentTimeoutError(AgentError):
    """A wall-clock deadline elapsed."""


@dataclass
class ResultTimeoutError(AgentTimeoutError):
    """Guest test runner did not finish its result log in time."""


@dataclass
class BootTimeoutError(AgentTimeoutError):
    """Emulator did not answer on its automation socket in time."""


@dataclass
class BootFailedError(AgentError):
    """Every boot attempt failed."""


@dataclass
class LaunchError(AgentError):
    """Emulator process could not be started."""


@dataclass
class BuildError(AgentError):
    """External build step failed."""


@dataclass
class ArtifactNotFoundError(AgentError):
    """Expected build artifact is missing."""


@dataclass
class ConfigError(AgentError):
    """Invalid or unresolvable configuration."""


# Specific error constructors for common cases


def connect_error(path: str, reason: str) -> AutomationConnectionError:
    """Create error for a failed automation socket connection."""
    return AutomationConnectionError(
        code="ERR_CONNECT",
        message=f"Cannot connect to automation socket {path}: {reason}",
        context={"path": path, "reason": reason},
        remediation="Ensure the emulator is running with --automation and the socket exists.",
    )


def not_connected_error(path: str) -> AutomationConnectionError:
    """Create error for a call issued without a live connection."""
    return AutomationConnectionError(
        code="ERR_NOT_CONNECTED",
        message=f"Not connected to automation socket {path}",
        context={"path": path},
        remediation="Call connect() first or reboot the emulator.",
    )


def transport_error(operation: str, reason: str) -> TransportError:
    """Create error for a short read or write."""
    return TransportError(
        code="ERR_TRANSPORT",
        message=f"Transport failure during {operation}: {reason}",
        context={"operation": operation, "reason": reason},
        remediation="The emulator may have crashed; reconnect or restart it.",
    )


def protocol_error(message: str, **context: Any) -> ProtocolError:
    """Create error for a malformed reply."""
    return ProtocolError(
        code="ERR_PROTOCOL",
        message=message,
        context=context,
        remediation="Check that the emulator build matches this client's protocol version.",
    )


def result_timeout_error(path: str, elapsed_s: float) -> ResultTimeoutError:
    """Create error for a result log that never completed."""
    return ResultTimeoutError(
        code="ERR_TIMEOUT",
        message=f"Tests did not complete within {elapsed_s:.1f} seconds",
        context={"path": path, "elapsed_s": round(elapsed_s, 2)},
        remediation="Increase --timeout or take a screenshot to see whether the app launched.",
    )


def boot_timeout_error(socket_path: str, timeout_s: float) -> BootTimeoutError:
    """Create error for an emulator that never answered ping."""
    return BootTimeoutError(
        code="ERR_TIMEOUT",
        message=f"Emulator did not respond within {timeout_s:g} seconds",
        context={"socket_path": socket_path, "timeout_s": timeout_s},
        remediation="Check the emulator log; the boot may have hung.",
    )


def boot_failed_error(attempts: int, last_error: BaseException | None) -> BootFailedError:
    """Create error for exhausted boot retries."""
    return BootFailedError(
        code="ERR_BOOT_FAILED",
        message=f"Failed to start emulator after {attempts} attempts",
        context={"attempts": attempts, "last_error": str(last_error) if last_error else None},
        remediation="Check ROM and disk configuration, or start the emulator manually "
        "and pass --use-existing.",
    )


def emulator_not_found_error(candidates: list[str]) -> LaunchError:
    """Create error for a missing emulator binary."""
    return LaunchError(
        code="ERR_EMULATOR_NOT_FOUND",
        message="BasiliskII not found",
        context={"candidates": candidates},
        remediation="Install BasiliskII or set MACEMU_AGENT_EMULATOR_BINARY.",
    )


def launch_failed_error(binary: str, reason: str) -> LaunchError:
    """Create error for a binary that exists but would not start."""
    return LaunchError(
        code="ERR_LAUNCH_FAILED",
        message=f"Failed to launch {binary}: {reason}",
        context={"binary": binary, "reason": reason},
        remediation="Check the binary is executable and its prefs are valid.",
    )


def build_failed_error(target: str, output: str) -> BuildError:
    """Create error for a failed build."""
    return BuildError(
        code="ERR_BUILD_FAILED",
        message=f"Build failed for {target}",
        context={"target": target, "output": output[-2000:]},
        remediation="Run the build manually to see the full compiler output.",
    )


def artifact_not_found_error(path: str) -> ArtifactNotFoundError:
    """Create error for a missing build artifact."""
    return ArtifactNotFoundError(
        code="ERR_ARTIFACT_NOT_FOUND",
        message=f"Test app not found: {path}",
        context={"path": path},
        remediation="Build the target first or drop --skip-build.",
    )


def config_error(message: str, remediation: str, **context: Any) -> ConfigError:
    """Create error for invalid configuration."""
    return ConfigError(
        code="ERR_CONFIG",
        message=message,
        context=context,
        remediation=remediation,
    )


def stage_failed_error(source: str, destination: str, reason: str) -> AgentError:
    """Create error for a failed copy into the shared folder."""
    return AgentError(
        code="ERR_STAGE_FAILED",
        message=f"Failed to copy {source} to {destination}: {reason}",
        context={"source": source, "destination": destination, "reason": reason},
        remediation="Check the shared folder exists and is writable.",
    )
