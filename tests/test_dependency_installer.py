"""Tests for DependencyInstaller.

subprocess.run is mocked; only the subproject directories are real.
"""

import pytest
from unittest.mock import patch, MagicMock

from start import DependencyInstaller, DependencyInstallError


def _make_result(returncode: int = 0) -> MagicMock:
    result = MagicMock()
    result.returncode = returncode
    return result


def _commands(mock_run):
    return [(c.args[0], c.kwargs.get("cwd")) for c in mock_run.call_args_list]


# ============================================================================
# TestMissingSubprojects
# ============================================================================

class TestMissingSubprojects:

    def test_missing_backend_is_skipped(self, settings_factory, console, mock_subprocess, capsys):
        settings = settings_factory(backend=False)
        assert DependencyInstaller(settings, console).install_backend() is False
        mock_subprocess.assert_not_called()
        out = capsys.readouterr().out
        assert f"[WARN]  Backend directory not found: {settings.backend_dir}. Skipping" in out

    def test_missing_frontend_is_skipped(self, settings_factory, console, mock_subprocess, capsys):
        settings = settings_factory(frontend=False)
        assert DependencyInstaller(settings, console).install_frontend() is False
        mock_subprocess.assert_not_called()
        assert "Frontend directory not found" in capsys.readouterr().out

    def test_install_all_with_nothing_present(self, settings_factory, console, mock_subprocess):
        settings = settings_factory(backend=False, frontend=False)
        DependencyInstaller(settings, console).install_all()
        mock_subprocess.assert_not_called()


# ============================================================================
# TestBackendSync
# ============================================================================

class TestBackendSync:

    def test_plain_uv_sync(self, dependency_installer, settings, mock_subprocess, capsys):
        assert dependency_installer.install_backend() is True
        assert _commands(mock_subprocess) == [(["uv", "sync"], str(settings.backend_dir))]
        assert "[ OK ]  Python dependencies synced" in capsys.readouterr().out

    def test_prepare_script_and_init_db(self, dependency_installer, settings, mock_subprocess):
        backend = settings.backend_dir
        (backend / "scripts").mkdir()
        (backend / "scripts" / "prepare_envs.sh").write_text("uv sync\n")
        init_db = backend / "valuecell" / "server" / "db"
        init_db.mkdir(parents=True)
        (init_db / "init_db.py").write_text("")

        dependency_installer.install_backend()

        assert _commands(mock_subprocess) == [
            (["bash", "scripts/prepare_envs.sh"], str(backend)),
            (["uv", "run", "valuecell/server/db/init_db.py"], str(backend)),
        ]

    def test_failed_step_is_fatal(self, dependency_installer, mock_subprocess):
        mock_subprocess.return_value = _make_result(2)
        with pytest.raises(DependencyInstallError, match="uv sync"):
            dependency_installer.install_backend()

    def test_failed_prepare_skips_init_db(self, dependency_installer, settings, mock_subprocess):
        backend = settings.backend_dir
        (backend / "scripts").mkdir()
        (backend / "scripts" / "prepare_envs.sh").write_text("exit 1\n")
        init_db = backend / "valuecell" / "server" / "db"
        init_db.mkdir(parents=True)
        (init_db / "init_db.py").write_text("")
        mock_subprocess.return_value = _make_result(1)

        with pytest.raises(DependencyInstallError):
            dependency_installer.install_backend()
        assert mock_subprocess.call_count == 1


# ============================================================================
# TestFrontendInstall
# ============================================================================

class TestFrontendInstall:

    def test_bun_install(self, dependency_installer, settings, mock_subprocess, capsys):
        assert dependency_installer.install_frontend() is True
        assert _commands(mock_subprocess) == [(["bun", "install"], str(settings.frontend_dir))]
        assert "Frontend dependencies installed" in capsys.readouterr().out

    def test_failure_is_fatal(self, dependency_installer, mock_subprocess):
        mock_subprocess.return_value = _make_result(1)
        with pytest.raises(DependencyInstallError, match="bun install"):
            dependency_installer.install_frontend()


# ============================================================================
# TestInstallAll
# ============================================================================

class TestInstallAll:

    def test_backend_before_frontend(self, dependency_installer, mock_subprocess):
        dependency_installer.install_all()
        assert [c.args[0][0] for c in mock_subprocess.call_args_list] == ["uv", "bun"]

    def test_missing_backend_still_installs_frontend(self, settings_factory, console, mock_subprocess):
        settings = settings_factory(backend=False)
        DependencyInstaller(settings, console).install_all()
        assert _commands(mock_subprocess) == [(["bun", "install"], str(settings.frontend_dir))]
