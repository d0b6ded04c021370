"""Configuration - harness settings, shared-folder discovery, and test suites."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from macemu_agent.errors import config_error

logger = structlog.get_logger()

ENV_PREFIX = "MACEMU_AGENT_"
DEFAULT_SOCKET_PATH = "/tmp/basilisk_automation.sock"
DEFAULT_EMULATOR_NAME = "BasiliskII"
APP_BUNDLE_BINARY = "/Applications/BasiliskII.app/Contents/MacOS/BasiliskII"


def retro68_root(home: Path | None = None) -> Path:
    return (home or Path.home()) / ".retro68"


def installer_config_file(home: Path | None = None) -> Path:
    return retro68_root(home) / "config.json"


def emulators_dir(home: Path | None = None) -> Path:
    return retro68_root(home) / "emulators"


def m68k_toolchain_file(home: Path | None = None) -> Path:
    return (
        retro68_root(home)
        / "Retro68-build/toolchain/m68k-apple-macos/cmake/retro68.toolchain.cmake"
    )


class HarnessSettings(BaseModel):
    """Everything a test run needs to know about its environment."""

    socket_path: str = DEFAULT_SOCKET_PATH
    shared_folder: Path | None = None
    emulator_name: str = DEFAULT_EMULATOR_NAME
    emulator_binary: Path | None = None
    emulator_candidates: list[Path] = Field(
        default_factory=lambda: [Path(APP_BUNDLE_BINARY)]
    )
    emulator_log: Path | None = None

    boot_attempts: int = Field(default=3, ge=1)
    boot_window_s: float = Field(default=30.0, gt=0)
    boot_poll_s: float = Field(default=1.0, gt=0)
    os_settle_s: float = Field(default=8.0, ge=0)
    boot_cooldown_s: float = Field(default=2.0, ge=0)
    kill_grace_s: float = Field(default=5.0, ge=0)

    result_poll_s: float = Field(default=1.0, gt=0)
    inter_target_pause_s: float = Field(default=2.0, ge=0)
    volume_name: str = "Unix"

    def binary_candidates(self) -> list[Path]:
        """Explicit binary first, then the configured fallbacks."""
        if self.emulator_binary is not None:
            return [self.emulator_binary, *self.emulator_candidates]
        return list(self.emulator_candidates)

    def require_shared_folder(self) -> Path:
        if self.shared_folder is None:
            raise config_error(
                "Could not determine shared folder path.",
                "Specify it with --shared-folder or configure it in emulator settings.",
            )
        return self.shared_folder


_ENV_FIELDS = {
    "SOCKET_PATH": "socket_path",
    "SHARED_FOLDER": "shared_folder",
    "EMULATOR_NAME": "emulator_name",
    "EMULATOR_BINARY": "emulator_binary",
    "EMULATOR_LOG": "emulator_log",
    "BOOT_ATTEMPTS": "boot_attempts",
    "BOOT_WINDOW_S": "boot_window_s",
    "OS_SETTLE_S": "os_settle_s",
    "VOLUME_NAME": "volume_name",
}


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for suffix, field_name in _ENV_FIELDS.items():
        raw = environ.get(ENV_PREFIX + suffix)
        if raw:
            values[field_name] = raw
    return values


def read_installer_config(home: Path | None = None) -> dict[str, Any]:
    """Load ~/.retro68/config.json, or {} when absent or unreadable."""
    path = installer_config_file(home)
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("installer_config_unreadable", path=str(path), error=str(exc))
        return {}
    return data if isinstance(data, dict) else {}


def find_shared_folder(
    explicit: str | Path | None = None,
    *,
    home: Path | None = None,
    environ: dict[str, str] | None = None,
) -> Path | None:
    """Resolve the host side of the emulator's shared volume.

    Order: explicit value, environment, installer config, the ``extfs``
    line of BasiliskII prefs, then the installer's default folder.
    """
    if explicit:
        return Path(explicit).expanduser()

    env = os.environ if environ is None else environ
    from_env = env.get(ENV_PREFIX + "SHARED_FOLDER")
    if from_env:
        return Path(from_env).expanduser()

    emulators = read_installer_config(home).get("emulators") or {}
    configured = emulators.get("basiliskSharedFolder") if isinstance(emulators, dict) else None
    if configured:
        return Path(configured)

    prefs = (home or Path.home()) / ".basilisk_ii_prefs"
    if prefs.is_file():
        for line in prefs.read_text(encoding="utf-8", errors="replace").splitlines():
            if line.startswith("extfs "):
                candidate = Path(line[len("extfs ") :].strip())
                if candidate.exists():
                    return candidate

    default = emulators_dir(home) / "shared"
    if default.exists():
        return default
    return None


def load_settings(
    *,
    home: Path | None = None,
    environ: dict[str, str] | None = None,
    **overrides: Any,
) -> HarnessSettings:
    """Build settings from defaults, environment, and explicit overrides.

    Overrides whose value is None are ignored so CLI options can be passed
    straight through.
    """
    env = dict(os.environ if environ is None else environ)
    values = _env_overrides(env)
    values.update({key: value for key, value in overrides.items() if value is not None})
    if values.get("shared_folder") is None:
        values["shared_folder"] = find_shared_folder(home=home, environ=env)
    try:
        return HarnessSettings(**values)
    except ValidationError as exc:
        raise config_error(
            f"Invalid settings: {exc.error_count()} error(s)",
            f"Check {ENV_PREFIX}* environment variables and command options.",
            errors=[str(err.get("msg")) for err in exc.errors()],
        ) from exc


class TestTarget(BaseModel):
    """One guest-side test program."""

    __test__ = False
    model_config = ConfigDict(frozen=True)

    name: str
    log_file: str
    display_name: str = ""
    build_target: str = ""
    binary_name: str = ""

    @model_validator(mode="after")
    def fill_derived_names(self) -> TestTarget:
        """Derive build and binary names from the app name when omitted."""
        if not self.display_name:
            object.__setattr__(self, "display_name", self.name)
        if not self.build_target:
            object.__setattr__(self, "build_target", f"{self.name}_APPL")
        if not self.binary_name:
            object.__setattr__(self, "binary_name", f"{self.name}.bin")
        return self

    @property
    def artifact_name(self) -> str:
        """File CMake produces for the app (resource-fork bundle)."""
        return f"{self.name}.APPL"


class TestSuite(BaseModel):
    """A named, ordered list of test targets."""

    __test__ = False

    name: str
    description: str = ""
    targets: list[TestTarget]

    @model_validator(mode="after")
    def require_unique_targets(self) -> TestSuite:
        names = [target.name for target in self.targets]
        if len(names) != len(set(names)):
            raise ValueError("Target names must be unique within a suite")
        return self

    def select(self, query: str = "all") -> list[TestTarget]:
        """Pick ``all`` targets or the first whose name contains ``query``."""
        if query.lower() == "all":
            return list(self.targets)
        needle = query.lower()
        for target in self.targets:
            if needle in target.name.lower():
                return [target]
        available = ", ".join(target.name for target in self.targets)
        raise config_error(
            f"Unknown test: {query}",
            f"Available tests: {available}, all",
            query=query,
        )


DEFAULT_SUITE = TestSuite(
    name="notion",
    description="Notion app tests (block parsing, reducer)",
    targets=[
        TestTarget(
            name="TestParsing", display_name="Block Parsing Tests", log_file="test_parsing.log"
        ),
        TestTarget(
            name="TestReducer1",
            display_name="Reducer Tests (Part 1)",
            log_file="test_reducer1.log",
        ),
        TestTarget(
            name="TestReducer2",
            display_name="Reducer Tests (Part 2)",
            log_file="test_reducer2.log",
        ),
        TestTarget(
            name="TestReducer3",
            display_name="Reducer Tests (Part 3)",
            log_file="test_reducer3.log",
        ),
    ],
)


def load_suite(path: str | Path | None = None) -> TestSuite:
    """Load a suite manifest (JSON), or the built-in suite when path is None."""
    if path is None:
        return DEFAULT_SUITE
    manifest = Path(path).expanduser()
    try:
        return TestSuite.model_validate_json(manifest.read_text(encoding="utf-8"))
    except OSError as exc:
        raise config_error(
            f"Cannot read suite manifest {manifest}: {exc}",
            "Check the --suite path.",
            path=str(manifest),
        ) from exc
    except ValidationError as exc:
        raise config_error(
            f"Invalid suite manifest {manifest}",
            "Each target needs at least 'name' and 'log_file'.",
            path=str(manifest),
            errors=[str(err.get("msg")) for err in exc.errors()],
        ) from exc
