"""Shared pytest fixtures for all tests."""

import os
import stat
import sys

import pytest
from fastapi.testclient import TestClient

from server import create_app
from webfiles_backend.config import ServerConfig
from webfiles_backend.security import PathResolver


@pytest.fixture
def root_dir(tmp_path):
    """
    Create the managed root directory.

    Args:
        tmp_path: pytest tmp_path fixture

    Returns:
        Resolved path of an empty root directory
    """
    root = tmp_path / 'srv' / 'files'
    root.mkdir(parents=True)
    return root.resolve()


@pytest.fixture
def temp_dir(tmp_path):
    """Directory for temporary folder-download archives."""
    path = tmp_path / 'temp'
    path.mkdir()
    return path.resolve()


@pytest.fixture
def resolver(root_dir):
    """PathResolver confined to root_dir."""
    return PathResolver(root_dir)


@pytest.fixture
def write_script(tmp_path):
    """
    Factory writing a shell script that stands in for 7za.

    The script receives the same arguments as 7za: a -t7z <output> <input> -y.

    Returns:
        Callable(body, name='7za', executable=True) -> Path
    """
    def _write(body, name='7za', executable=True):
        path = tmp_path / 'bin' / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text('#!/bin/sh\n' + body + '\n')
        mode = stat.S_IRUSR | stat.S_IWUSR
        if executable:
            mode |= stat.S_IXUSR
        os.chmod(path, mode)
        return path

    return _write


@pytest.fixture
def fake_compressor(write_script):
    """Executable that writes a small placeholder archive at its output argument."""
    return write_script('printf "fake 7z archive" > "$3"')


@pytest.fixture
def config(root_dir, temp_dir, fake_compressor):
    """ServerConfig pointing at temporary directories and the fake compressor."""
    return ServerConfig(
        root_dir=root_dir,
        temp_dir=temp_dir,
        compressor_path=fake_compressor,
        sweep_interval_seconds=3600,
        static_dir=None,
    )


@pytest.fixture
def client(config):
    """FastAPI test client with the application lifespan running."""
    with TestClient(create_app(config)) as test_client:
        yield test_client


def pytest_report_header(config):
    return f'platform: {sys.platform}'
