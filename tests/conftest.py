"""Shared fixtures for the test suite."""

import stat
from pathlib import Path

import pytest

from fakes import CUBE_STL
from shapesmith.config import Settings


def _write_script(path: Path, body: str) -> str:
    path.write_text("#!/bin/sh\n" + body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_openscad(tmp_path):
    """Executable that mimics ``openscad -o out.stl in.scad`` by writing a cube mesh."""
    stl_source = tmp_path / "cube.stl"
    stl_source.write_text(CUBE_STL)
    return _write_script(tmp_path / "openscad-ok", f'cp "{stl_source}" "$2"\n')


@pytest.fixture
def failing_openscad(tmp_path):
    """Executable that reports a syntax error and exits non-zero."""
    return _write_script(tmp_path / "openscad-fail", 'echo "ERROR: Parser error in line 1" >&2\nexit 1\n')


@pytest.fixture
def hanging_openscad(tmp_path):
    """Executable that never finishes on its own."""
    return _write_script(tmp_path / "openscad-hang", "exec sleep 30\n")


@pytest.fixture
def silent_openscad(tmp_path):
    """Executable that succeeds without writing anything."""
    return _write_script(tmp_path / "openscad-silent", "exit 0\n")


@pytest.fixture
def work_dir(tmp_path):
    """Parent directory for compiler temp directories, so leftovers can be checked."""
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def settings():
    """Settings that never touch the real environment."""
    return Settings(
        anthropic_api_key="test-key",
        onshape_access_key="access",
        onshape_secret_key="secret",
        cognito_user_pool_id="us-west-2_TestPool",
        cognito_client_id="test-client",
        max_turns=5,
    )
