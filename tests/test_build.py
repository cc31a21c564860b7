from __future__ import annotations

import os
import stat
import tarfile
from datetime import timedelta
from pathlib import Path

import pytest
from docker.errors import APIError

from conftest import DOCKERFILE_CONTENT, STARTUP_CONTENT, FakeRuntime, failing_build, make_scripts
from gameserver_manager.build_context import BuildContextAssembler
from gameserver_manager.docker_client import format_build_log
from gameserver_manager.errors import ImageBuildError, ScriptWriteError
from gameserver_manager.image_builder import ImageBuilder, pack_build_context
from gameserver_manager.models import ScriptKind, ScriptRecord, utcnow
from gameserver_manager.store import InMemoryScriptStore


def test_assemble_writes_present_scripts(tmp_path: Path) -> None:
    assembler = BuildContextAssembler(InMemoryScriptStore(make_scripts("alpha")), tmp_path)

    directory = assembler.assemble("alpha")

    assert directory == tmp_path / "alpha"
    assert (directory / "Dockerfile").read_text() == DOCKERFILE_CONTENT
    assert (directory / "start.sh").read_text() == STARTUP_CONTENT
    assert not (directory / "server.config").exists()
    mode = (directory / "start.sh").stat().st_mode
    assert mode & stat.S_IXUSR


def test_assemble_uses_newest_script_and_keeps_game_files(tmp_path: Path) -> None:
    store = InMemoryScriptStore(make_scripts("alpha"))
    assembler = BuildContextAssembler(store, tmp_path)
    directory = assembler.assemble("alpha")
    (directory / "world").mkdir()
    (directory / "world" / "level.dat").write_bytes(b"\x00\x01")

    store.add(
        ScriptRecord(
            server_id="alpha",
            kind=ScriptKind.DOCKERFILE,
            content="FROM debian:12\n",
            created_at=utcnow() + timedelta(seconds=1),
        )
    )
    assembler.assemble("alpha")

    assert (directory / "Dockerfile").read_text() == "FROM debian:12\n"
    assert (directory / "world" / "level.dat").read_bytes() == b"\x00\x01"


def test_assemble_without_scripts_creates_empty_directory(tmp_path: Path) -> None:
    directory = BuildContextAssembler(InMemoryScriptStore(), tmp_path).assemble("alpha")

    assert directory.is_dir()
    assert list(directory.iterdir()) == []


def test_assemble_reports_unwritable_directory(tmp_path: Path) -> None:
    blocker = tmp_path / "servers"
    blocker.write_text("not a directory")
    assembler = BuildContextAssembler(InMemoryScriptStore(make_scripts("alpha")), blocker)

    with pytest.raises(ScriptWriteError) as exc:
        assembler.assemble("alpha")
    assert exc.value.server_id == "alpha"


def test_pack_build_context_skips_game_files(tmp_path: Path) -> None:
    (tmp_path / "Dockerfile").write_text(DOCKERFILE_CONTENT)
    (tmp_path / "server.config").write_text("motd=hello\n")
    (tmp_path / "world").mkdir()
    (tmp_path / "world" / "region.mca").write_bytes(os.urandom(64))

    with tarfile.open(fileobj=pack_build_context(tmp_path), mode="r") as tar:
        assert sorted(tar.getnames()) == ["Dockerfile", "server.config"]


def test_build_returns_tag(tmp_path: Path) -> None:
    (tmp_path / "Dockerfile").write_text(DOCKERFILE_CONTENT)
    runtime = FakeRuntime()

    tag = ImageBuilder(runtime, image_prefix="games").build("alpha", tmp_path)

    assert tag == "games-alpha"
    assert runtime.builds == [("games-alpha", ["Dockerfile"])]


def test_build_requires_dockerfile(tmp_path: Path) -> None:
    runtime = FakeRuntime()

    with pytest.raises(ImageBuildError):
        ImageBuilder(runtime).build("alpha", tmp_path)
    assert runtime.build_calls == 0


def test_build_failure_carries_build_log(tmp_path: Path) -> None:
    (tmp_path / "Dockerfile").write_text(DOCKERFILE_CONTENT)
    runtime = FakeRuntime()
    runtime.build_error = failing_build("The command '/bin/sh -c make' returned a non-zero code: 1")

    with pytest.raises(ImageBuildError) as exc:
        ImageBuilder(runtime).build("alpha", tmp_path)

    assert "non-zero code" in exc.value.message
    assert exc.value.build_log == "Step 1/3 : FROM alpine:3.19\nreturned a non-zero code: 1"


def test_build_daemon_error(tmp_path: Path) -> None:
    (tmp_path / "Dockerfile").write_text(DOCKERFILE_CONTENT)
    runtime = FakeRuntime()
    runtime.build_error = APIError("connection refused")

    with pytest.raises(ImageBuildError) as exc:
        ImageBuilder(runtime).build("alpha", tmp_path)
    assert exc.value.build_log == ""


def test_format_build_log_skips_empty_chunks() -> None:
    log = [{"stream": "Step 1/2\n"}, {"aux": {"ID": "sha256:abc"}}, {"stream": "done\n"}]

    assert format_build_log(log) == "Step 1/2\ndone"
    assert format_build_log(None) == ""
