"""Shared fixtures for launcher tests.

Provides mocks for platform detection and subprocess calls, plus factory
fixtures for settings and launcher instances rooted in a temp directory.
"""

import sys
from pathlib import Path
from unittest.mock import patch, MagicMock

import pytest

# Ensure project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from start import Console, DependencyInstaller, LauncherSettings, ProcessLauncher, ToolInstaller


def make_result(returncode: int = 0, stdout: str = "", stderr: str = "") -> MagicMock:
    """Create a mock subprocess.CompletedProcess."""
    result = MagicMock()
    result.returncode = returncode
    result.stdout = stdout
    result.stderr = stderr
    return result


# ---------------------------------------------------------------------------
# Console / settings
# ---------------------------------------------------------------------------

@pytest.fixture
def console():
    """Console with color disabled."""
    return Console(color_enabled=False)


@pytest.fixture
def settings_factory(tmp_path):
    """Factory for LauncherSettings rooted at tmp_path.

    Usage:
        settings = settings_factory(backend=True, frontend=False)
    """
    def _factory(backend: bool = True, frontend: bool = True, **overrides):
        if backend:
            (tmp_path / "python").mkdir(exist_ok=True)
        if frontend:
            (tmp_path / "frontend").mkdir(exist_ok=True)
        overrides.setdefault("frontend_startup_delay", 0)
        return LauncherSettings(project_root=tmp_path, **overrides)
    return _factory


@pytest.fixture
def settings(settings_factory):
    return settings_factory()


@pytest.fixture
def launcher(settings, console):
    return ProcessLauncher(settings, console)


@pytest.fixture
def dependency_installer(settings, console):
    return DependencyInstaller(settings, console)


@pytest.fixture
def installer_factory(console):
    """Factory for ToolInstaller pinned to a platform name."""
    def _factory(platform_name: str = "Linux") -> ToolInstaller:
        inst = ToolInstaller(console)
        inst.platform_name = platform_name
        return inst
    return _factory


# ---------------------------------------------------------------------------
# Platform mock fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_linux():
    """Patch platform.system() to return 'Linux'."""
    with patch("start.platform.system", return_value="Linux"):
        yield


# ---------------------------------------------------------------------------
# Subprocess mock fixture
# ---------------------------------------------------------------------------

@pytest.fixture
def mock_subprocess():
    """Patch subprocess.run with a configurable MagicMock.

    The mock returns returncode=0 and empty stdout/stderr by default.
    Tests can override via mock_subprocess.return_value or side_effect.
    """
    with patch("start.subprocess.run", return_value=make_result(0)) as mock_run:
        yield mock_run


@pytest.fixture
def fake_popen():
    """Patch subprocess.Popen; each call returns a distinct fake process."""
    pids = iter(range(4242, 4342))

    def _make(*args, **kwargs):
        proc = MagicMock()
        proc.pid = next(pids)
        proc.poll.return_value = None
        proc.wait.return_value = 0
        return proc

    with patch("start.subprocess.Popen", side_effect=_make) as mock_popen:
        yield mock_popen
