"""Tests for the CMake builder and artifact staging."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from macemu_agent.config import TestTarget
from macemu_agent.errors import AgentError, ArtifactNotFoundError, BuildError
from macemu_agent.runner.build import CMakeBuilder, stage_artifact

EXEC = "macemu_agent.runner.build.asyncio.create_subprocess_exec"


def _proc(returncode: int = 0, stderr: bytes = b"") -> MagicMock:
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(b"", stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


@pytest.fixture
def target() -> TestTarget:
    return TestTarget(name="TestParsing", log_file="test_parsing.log")


class TestCMakeBuilder:
    """Tests for CMakeBuilder."""

    @pytest.mark.asyncio
    async def test_configures_then_makes(self, tmp_path: Path, target: TestTarget) -> None:
        """Should run cmake once on a fresh tree, then make the target."""
        toolchain = tmp_path / "retro68.toolchain.cmake"
        builder = CMakeBuilder(tmp_path, toolchain)
        calls: list[tuple[str, ...]] = []

        async def fake_exec(*args: str, **kwargs: object) -> MagicMock:
            calls.append(args)
            if args[0] == "make":
                (builder.build_dir / "TestParsing.APPL").write_bytes(b"app")
            return _proc()

        with patch(EXEC, side_effect=fake_exec):
            artifact = await builder.build(target)

        assert calls == [
            ("cmake", "..", f"-DCMAKE_TOOLCHAIN_FILE={toolchain}"),
            ("make", "TestParsing_APPL", "-j4"),
        ]
        assert artifact == tmp_path / "build" / "TestParsing.APPL"

    @pytest.mark.asyncio
    async def test_skips_configure_when_cached(self, tmp_path: Path, target: TestTarget) -> None:
        """Should not rerun cmake when CMakeCache.txt exists."""
        builder = CMakeBuilder(tmp_path)
        builder.build_dir.mkdir()
        (builder.build_dir / "CMakeCache.txt").write_text("")
        (builder.build_dir / "TestParsing.APPL").write_bytes(b"app")

        with patch(EXEC, AsyncMock(return_value=_proc())) as mock_exec:
            await builder.build(target)

        assert mock_exec.await_count == 1
        assert mock_exec.await_args.args[0] == "make"

    @pytest.mark.asyncio
    async def test_make_failure(self, tmp_path: Path, target: TestTarget) -> None:
        """Should raise BuildError with the compiler output."""
        builder = CMakeBuilder(tmp_path)
        builder.build_dir.mkdir()
        (builder.build_dir / "CMakeCache.txt").write_text("")

        with (
            patch(EXEC, AsyncMock(return_value=_proc(2, b"parser.c:10: error"))),
            pytest.raises(BuildError) as exc_info,
        ):
            await builder.build(target)

        assert exc_info.value.code == "ERR_BUILD_FAILED"
        assert "parser.c:10" in exc_info.value.context["output"]

    @pytest.mark.asyncio
    async def test_missing_tool(self, tmp_path: Path, target: TestTarget) -> None:
        """Should raise BuildError when cmake is not installed."""
        builder = CMakeBuilder(tmp_path)

        with (
            patch(EXEC, AsyncMock(side_effect=FileNotFoundError("cmake"))),
            pytest.raises(BuildError),
        ):
            await builder.build(target)

    @pytest.mark.asyncio
    async def test_missing_artifact(self, tmp_path: Path, target: TestTarget) -> None:
        """Should raise ArtifactNotFoundError when make succeeds without output."""
        builder = CMakeBuilder(tmp_path)
        builder.build_dir.mkdir()
        (builder.build_dir / "CMakeCache.txt").write_text("")

        with (
            patch(EXEC, AsyncMock(return_value=_proc())),
            pytest.raises(ArtifactNotFoundError),
        ):
            await builder.build(target)


class TestStageArtifact:
    """Tests for stage_artifact."""

    def test_copies_without_suffix(self, tmp_path: Path) -> None:
        """Should copy TestParsing.APPL to shared/TestParsing."""
        artifact = tmp_path / "TestParsing.APPL"
        artifact.write_bytes(b"resource fork")
        shared = tmp_path / "shared"
        shared.mkdir()
        (shared / "TestParsing").write_bytes(b"old build")

        destination = stage_artifact(artifact, shared, "TestParsing")

        assert destination == shared / "TestParsing"
        assert destination.read_bytes() == b"resource fork"

    def test_missing_artifact(self, tmp_path: Path) -> None:
        """Should raise ArtifactNotFoundError."""
        with pytest.raises(ArtifactNotFoundError):
            stage_artifact(tmp_path / "absent.APPL", tmp_path, "absent")

    def test_unwritable_destination(self, tmp_path: Path) -> None:
        """Should raise a staging error when the shared folder is missing."""
        artifact = tmp_path / "TestParsing.APPL"
        artifact.write_bytes(b"x")

        with pytest.raises(AgentError) as exc_info:
            stage_artifact(artifact, tmp_path / "no-such-dir", "TestParsing")

        assert exc_info.value.code == "ERR_STAGE_FAILED"
