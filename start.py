#!/usr/bin/env python3
"""
ValueCell - Development Launcher

Checks the two external tools the project needs (bun and uv), installs the
backend and frontend dependencies, then starts both services as child
processes and stops them again on exit or Ctrl+C.

Usage:
    python start.py                  # Backend + frontend
    python start.py --no-frontend    # Backend only
    python start.py --no-backend     # Frontend only
    python start.py --backend-bg     # Backend in background (no frontend)
    python start.py --stop-backend   # Stop a background backend

Tool installation:
    - macOS: missing tools are installed via Homebrew
    - Linux: missing tools are installed with their official install scripts
    - other platforms: install bun and uv manually

Environment Variables (prefix VALUECELL_):
    - VALUECELL_BACKEND_DIR: Backend subproject (default: python/)
    - VALUECELL_FRONTEND_DIR: Frontend subproject (default: frontend/)
    - VALUECELL_FRONTEND_STARTUP_DELAY: Seconds to wait after starting the frontend
    - VALUECELL_AGENT_DEBUG_MODE: Exported to the backend as AGENT_DEBUG_MODE
    - VALUECELL_COLOR: Set to false to disable colored output
"""

import argparse
import atexit
import os
import platform
import signal
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ============================================================================
# Constants
# ============================================================================

SCRIPT_DIR = Path(__file__).resolve().parent

BACKEND_PID_FILE = '.backend_pid'
BACKEND_LOG_FILE = 'backend.log'

BACKEND_PREPARE_SCRIPT = Path('scripts') / 'prepare_envs.sh'
BACKEND_INIT_DB_SCRIPT = Path('valuecell') / 'server' / 'db' / 'init_db.py'
BACKEND_MODULE = 'valuecell.server.main'

HOMEBREW_URL = 'https://brew.sh/'
HOMEBREW_INSTALL_HINT = (
    '/bin/bash -c "$(curl -fsSL https://raw.githubusercontent.com/Homebrew/install/HEAD/install.sh)"'
)


# ANSI color codes
class Color:
    RESET = '\033[0m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'


# ============================================================================
# Exception Classes
# ============================================================================

class LauncherError(Exception):
    """Fatal failure that stops the launcher with exit code 1."""
    pass


class ToolInstallError(LauncherError):
    """A required tool is missing and could not be installed."""
    pass


class DependencyInstallError(LauncherError):
    """A subproject's dependency step exited non-zero."""
    pass


# ============================================================================
# Configuration
# ============================================================================

class LauncherSettings(BaseSettings):
    """Launcher settings loaded from VALUECELL_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix='VALUECELL_',
        env_file=SCRIPT_DIR / '.env',
        env_file_encoding='utf-8',
        extra='ignore',
    )

    project_root: Path = SCRIPT_DIR
    backend_dir: Path = Path('python')
    frontend_dir: Path = Path('frontend')

    # Give the frontend dev server a moment before the backend takes the terminal
    frontend_startup_delay: float = 5.0

    agent_debug_mode: bool = True
    color: bool = True

    @model_validator(mode='after')
    def _resolve_dirs(self) -> 'LauncherSettings':
        if not self.backend_dir.is_absolute():
            self.backend_dir = self.project_root / self.backend_dir
        if not self.frontend_dir.is_absolute():
            self.frontend_dir = self.project_root / self.frontend_dir
        return self

    @property
    def pid_file(self) -> Path:
        return self.backend_dir / BACKEND_PID_FILE

    @property
    def log_file(self) -> Path:
        return self.backend_dir / BACKEND_LOG_FILE


def env_file_location(platform_name: Optional[str] = None) -> Path:
    """Return where the backend reads its .env file on this OS.

    The backend creates it from .env.example on first run; the launcher
    only reports the location.
    """
    platform_name = platform_name or platform.system()
    home = Path.home()
    if platform_name == 'Darwin':
        return home / 'Library' / 'Application Support' / 'ValueCell' / '.env'
    if platform_name == 'Windows':
        appdata = os.environ.get('APPDATA')
        base = Path(appdata) if appdata else home / 'AppData' / 'Roaming'
        return base / 'ValueCell' / '.env'
    return home / '.config' / 'valuecell' / '.env'


# ============================================================================
# Console
# ============================================================================

class Console:
    """Severity-tagged terminal output."""

    def __init__(self, color_enabled: bool = True):
        self.color_enabled = color_enabled

    def _colorize(self, text: str, color: str) -> str:
        if not self.color_enabled:
            return text
        return f"{color}{text}{Color.RESET}"

    def info(self, message: str):
        print(f"{self._colorize('[INFO]', Color.BLUE)}  {message}", flush=True)

    def success(self, message: str):
        print(f"{self._colorize('[ OK ]', Color.GREEN)}  {message}", flush=True)

    def warn(self, message: str):
        print(f"{self._colorize('[WARN]', Color.YELLOW)}  {message}", flush=True)

    def error(self, message: str):
        print(f"{self._colorize('[ERR ]', Color.RED)}  {message}", file=sys.stderr, flush=True)

    def blank(self):
        print(flush=True)


# ============================================================================
# Utility: Atomic File Write
# ============================================================================

def atomic_write(target: Path, content: str):
    """Write content to a file atomically via a temp file + rename."""
    tmp_path = target.with_suffix(target.suffix + '.tmp')
    tmp_path.write_text(content)
    tmp_path.replace(target)


# ============================================================================
# Process utilities
# ============================================================================

def _pid_alive(pid: int) -> bool:
    """Signal-0 probe. A process owned by another user still counts as alive."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def _terminate_pid(pid: int) -> bool:
    """Send SIGTERM to a process group, falling back to the single process.

    Returns False if the process was already gone.
    """
    try:
        if platform.system() != 'Windows':
            try:
                os.killpg(pid, signal.SIGTERM)
                return True
            except (ProcessLookupError, PermissionError):
                # Not a group leader (or not ours); signal the process itself
                pass
        os.kill(pid, signal.SIGTERM)
        return True
    except (ProcessLookupError, PermissionError, OSError):
        return False


# ============================================================================
# ToolInstaller
# ============================================================================

@dataclass(frozen=True)
class ToolSpec:
    """How to find and install one external tool."""

    name: str
    brew_formula: str
    install_script: Optional[str] = None
    install_shell: str = 'bash'
    bin_dir: Optional[str] = None  # Relative to $HOME


TOOLS = (
    ToolSpec('bun', 'oven-sh/bun/bun', 'https://bun.sh/install', 'bash', '.bun/bin'),
    ToolSpec('uv', 'uv', 'https://astral.sh/uv/install.sh', 'sh', '.local/bin'),
)


class ToolInstaller:
    """Check-then-install for bun and uv.

    macOS installs through Homebrew, Linux through each tool's install
    script. Anything else has to be installed by hand.
    """

    def __init__(self, console: Console, tools: Sequence[ToolSpec] = TOOLS):
        self.console = console
        self.tools = tuple(tools)
        self.platform_name = platform.system()

    def _is_command_available(self, cmd: str) -> bool:
        """Check if a command is available on PATH."""
        try:
            result = subprocess.run(
                ['which', cmd] if self.platform_name != 'Windows' else ['where', cmd],
                capture_output=True,
                timeout=5,
            )
            return result.returncode == 0
        except (OSError, subprocess.SubprocessError):
            return False

    def _tool_version(self, cmd: str) -> str:
        try:
            result = subprocess.run(
                [cmd, '--version'],
                capture_output=True,
                text=True,
                timeout=10,
            )
        except (OSError, subprocess.SubprocessError):
            return 'version unknown'
        lines = (result.stdout or '').strip().splitlines()
        if result.returncode != 0 or not lines:
            return 'version unknown'
        return lines[0]

    def _prepend_path(self, directory: Path):
        os.environ['PATH'] = str(directory) + os.pathsep + os.environ.get('PATH', '')

    # ------------------------------------------------------------------
    # Per-platform installers
    # ------------------------------------------------------------------

    def _ensure_homebrew(self):
        if not self._is_command_available('brew'):
            self.console.error(f"Homebrew is not installed. Please install Homebrew: {HOMEBREW_URL}")
            self.console.error(f"Example install: {HOMEBREW_INSTALL_HINT}")
            raise ToolInstallError('Homebrew is required to install tools on macOS')

    def _install_macos(self, tool: ToolSpec):
        self._ensure_homebrew()
        self.console.info(f"Installing {tool.name} via Homebrew...")
        result = subprocess.run(['brew', 'install', tool.brew_formula])
        if result.returncode != 0:
            self.console.warn(f"brew install {tool.brew_formula} exited with code {result.returncode}")

    def _install_linux(self, tool: ToolSpec):
        self.console.info(f"Detected Linux, auto-installing {tool.name}...")
        if not tool.install_script:
            self.console.warn(f"Unknown tool: {tool.name}")
            return

        result = subprocess.run(
            ['bash', '-c', f'curl -fsSL {tool.install_script} | {tool.install_shell}'],
        )
        if result.returncode != 0:
            self.console.warn(f"{tool.name} install script exited with code {result.returncode}")

        # The install scripts only edit shell profiles; make the binary visible now
        if tool.bin_dir and not self._is_command_available(tool.name):
            bin_dir = Path.home() / tool.bin_dir
            binary = bin_dir / tool.name
            if binary.is_file() and os.access(binary, os.X_OK):
                self._prepend_path(bin_dir)

    def ensure_tool(self, tool: ToolSpec):
        """Make sure a tool is on PATH, installing it if possible.

        Raises ToolInstallError when the tool is still missing afterwards.
        """
        if self._is_command_available(tool.name):
            self.console.success(f"{tool.name} is installed ({self._tool_version(tool.name)})")
            return

        if self.platform_name == 'Darwin':
            self._install_macos(tool)
        elif self.platform_name == 'Linux':
            self._install_linux(tool)
        else:
            self.console.warn(
                f"{tool.name} not installed. Auto-install is not provided on this OS. "
                "Please install manually and retry."
            )
            raise ToolInstallError(f"{tool.name} is not installed")

        if self._is_command_available(tool.name):
            self.console.success(f"{tool.name} installed successfully")
            return

        raise ToolInstallError(f"{tool.name} installation failed. Please install manually and retry.")

    def ensure_all(self):
        for tool in self.tools:
            self.ensure_tool(tool)


# ============================================================================
# DependencyInstaller
# ============================================================================

class DependencyInstaller:
    """Installs backend (uv) and frontend (bun) dependencies."""

    def __init__(self, settings: LauncherSettings, console: Console):
        self.settings = settings
        self.console = console

    def _run_step(self, cmd: List[str], cwd: Path):
        result = subprocess.run(cmd, cwd=str(cwd))
        if result.returncode != 0:
            raise DependencyInstallError(
                f"'{' '.join(cmd)}' failed in {cwd} (exit code {result.returncode})"
            )

    def install_backend(self) -> bool:
        """Sync the backend environment. Returns False if the subproject is absent."""
        backend_dir = self.settings.backend_dir
        if not backend_dir.is_dir():
            self.console.warn(f"Backend directory not found: {backend_dir}. Skipping")
            return False

        self.console.info("Sync Python dependencies (uv sync)...")
        if (backend_dir / BACKEND_PREPARE_SCRIPT).is_file():
            self._run_step(['bash', str(BACKEND_PREPARE_SCRIPT)], backend_dir)
        else:
            self._run_step(['uv', 'sync'], backend_dir)

        if (backend_dir / BACKEND_INIT_DB_SCRIPT).is_file():
            self._run_step(['uv', 'run', BACKEND_INIT_DB_SCRIPT.as_posix()], backend_dir)

        self.console.success("Python dependencies synced")
        return True

    def install_frontend(self) -> bool:
        """Run bun install. Returns False if the subproject is absent."""
        frontend_dir = self.settings.frontend_dir
        if not frontend_dir.is_dir():
            self.console.warn(f"Frontend directory not found: {frontend_dir}. Skipping")
            return False

        self.console.info("Install frontend dependencies (bun install)...")
        self._run_step(['bun', 'install'], frontend_dir)
        self.console.success("Frontend dependencies installed")
        return True

    def install_all(self):
        self.install_backend()
        self.install_frontend()


# ============================================================================
# ProcessLauncher
# ============================================================================

class ProcessLauncher:
    """Starts the frontend and backend and tears them down again.

    A detached backend outlives the launcher and is tracked through the
    PID file; everything else is tracked in memory.
    """

    def __init__(self, settings: LauncherSettings, console: Console):
        self.settings = settings
        self.console = console
        self.frontend: Optional[subprocess.Popen] = None
        self.backend: Optional[subprocess.Popen] = None
        self.backend_detached = False
        self._cleaned_up = False

    def _backend_env(self) -> dict:
        env = os.environ.copy()
        env['AGENT_DEBUG_MODE'] = 'true' if self.settings.agent_debug_mode else 'false'
        return env

    def _backend_command(self) -> List[str]:
        return ['uv', 'run', 'python', '-m', BACKEND_MODULE]

    def _popen_session_kwargs(self) -> dict:
        # New session so the whole child group can be signalled at once
        if platform.system() == 'Windows':
            return {'creationflags': subprocess.CREATE_NEW_PROCESS_GROUP}
        return {'start_new_session': True}

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_frontend(self) -> Optional[subprocess.Popen]:
        frontend_dir = self.settings.frontend_dir
        if not frontend_dir.is_dir():
            self.console.warn("Frontend directory not found; skipping frontend start")
            return None

        self.console.info("Starting frontend dev server (bun run dev)...")
        self.frontend = subprocess.Popen(
            ['bun', 'run', 'dev'],
            cwd=str(frontend_dir),
            **self._popen_session_kwargs(),
        )
        self.console.info(f"Frontend PID: {self.frontend.pid}")
        return self.frontend

    def start_backend(self, detached: bool = False) -> Optional[subprocess.Popen]:
        backend_dir = self.settings.backend_dir
        if not backend_dir.is_dir():
            self.console.warn("Backend directory not found; skipping backend start")
            return None

        debug = 'true' if self.settings.agent_debug_mode else 'false'

        if detached:
            self.console.info(f"Starting backend in background mode with debug (AGENT_DEBUG_MODE={debug})...")
            log_file = self.settings.log_file
            with open(log_file, 'w') as log:
                process = subprocess.Popen(
                    self._backend_command(),
                    cwd=str(backend_dir),
                    env=self._backend_env(),
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    **self._popen_session_kwargs(),
                )
            atomic_write(self.settings.pid_file, f"{process.pid}\n")
            self.backend = process
            self.backend_detached = True
            self.console.success(f"Backend started in background with PID: {process.pid}")
            self.console.info(f"Logs are being written to: {log_file}")
            return process

        self.console.info(f"Starting backend in debug mode (AGENT_DEBUG_MODE={debug})...")
        self.backend = subprocess.Popen(
            self._backend_command(),
            cwd=str(backend_dir),
            env=self._backend_env(),
            **self._popen_session_kwargs(),
        )
        self.backend_detached = False
        return self.backend

    def wait(self):
        """Block until the attached services exit."""
        if self.backend is not None and not self.backend_detached:
            self.backend.wait()
        if self.frontend is not None:
            self.frontend.wait()

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def stop_backend(self, quiet: bool = False) -> bool:
        """Stop the background backend recorded in the PID file.

        The PID file is removed whether or not the process was still
        running. Returns True only if a live process was signalled.
        """
        pid_file = self.settings.pid_file
        if not pid_file.is_file():
            if not quiet:
                self.console.warn("No backend PID file found. Backend may not be running in background.")
            return False

        raw = pid_file.read_text().strip()
        try:
            pid = int(raw)
        except ValueError:
            self.console.warn(f"Backend PID file {pid_file} is invalid ({raw!r}); removing it")
            pid_file.unlink(missing_ok=True)
            return False

        if _pid_alive(pid):
            self.console.info(f"Stopping backend process with PID: {pid}")
            _terminate_pid(pid)
            pid_file.unlink(missing_ok=True)
            self.console.success("Backend stopped successfully")
            return True

        self.console.warn(f"Backend process with PID {pid} is not running")
        pid_file.unlink(missing_ok=True)
        return False

    def _stop_process(self, process: Optional[subprocess.Popen]):
        if process is None or process.poll() is not None:
            return
        _terminate_pid(process.pid)

    def cleanup(self, stop_detached: bool = True):
        """Stop frontend, in-memory backend, then the PID-file backend.

        Runs once; later calls return immediately.
        """
        if self._cleaned_up:
            return
        self._cleaned_up = True

        self.console.blank()
        self.console.info("Stopping services...")
        self._stop_process(self.frontend)
        if not self.backend_detached or stop_detached:
            self._stop_process(self.backend)
        if stop_detached:
            self.stop_backend(quiet=True)
        self.console.success("Stopped")


# ============================================================================
# SignalHandler
# ============================================================================

class SignalHandler:
    """Runs cleanup on SIGINT/SIGTERM and exits with 128 + signum."""

    def __init__(self, launcher: ProcessLauncher):
        self.launcher = launcher

    def setup(self):
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        self.launcher.cleanup(stop_detached=True)
        sys.exit(128 + signum)


# ============================================================================
# CLI
# ============================================================================

@dataclass(frozen=True)
class LaunchPlan:
    start_frontend: bool
    start_backend: bool
    backend_detached: bool


def resolve_plan(args: argparse.Namespace) -> LaunchPlan:
    """Turn CLI flags into which services to start and how.

    --backend-bg wins over --no-backend and always drops the frontend.
    """
    if args.backend_bg:
        return LaunchPlan(start_frontend=False, start_backend=True, backend_detached=True)
    return LaunchPlan(
        start_frontend=not args.no_frontend,
        start_backend=not args.no_backend,
        backend_detached=False,
    )


class LauncherArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that exits with status 1 on bad input."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def create_argument_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser."""
    parser = LauncherArgumentParser(
        prog='start.py',
        description=f"""
ValueCell - Development Launcher

  - Checks whether bun and uv are installed; missing tools are installed
    via Homebrew on macOS and via their install scripts on Linux.
  - Then installs backend and frontend dependencies and starts services.
  - Environment variables are loaded from system path:
    * macOS: {env_file_location('Darwin')}
    * Linux: {env_file_location('Linux')}
    * Windows: %APPDATA%\\ValueCell\\.env
  - The .env file will be auto-created from .env.example on first run.
  - Debug mode is automatically enabled (AGENT_DEBUG_MODE=true) for local development.
""",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
        epilog="""
Examples:
  python start.py                  # Start backend + frontend
  python start.py --no-frontend    # Start backend only
  python start.py --backend-bg     # Start backend in background, logs to python/backend.log
  python start.py --stop-backend   # Stop the background backend
        """
    )

    parser.add_argument(
        '--no-frontend',
        action='store_true',
        help='Start backend only'
    )
    parser.add_argument(
        '--no-backend',
        action='store_true',
        help='Start frontend only'
    )
    parser.add_argument(
        '--backend-bg',
        action='store_true',
        help='Start backend in background mode (implies --no-frontend)'
    )
    parser.add_argument(
        '--stop-backend',
        action='store_true',
        help='Stop background backend process'
    )

    return parser


# ============================================================================
# Main Entry Point
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point. Returns the process exit code."""
    settings = LauncherSettings()
    console = Console(color_enabled=settings.color and sys.stdout.isatty())

    parser = create_argument_parser()
    args, unknown = parser.parse_known_args(argv)
    if unknown:
        console.error(f"Unknown argument: {unknown[0]}")
        parser.print_help()
        return 1

    launcher = ProcessLauncher(settings, console)

    if args.stop_backend:
        launcher.stop_backend()
        return 0

    plan = resolve_plan(args)

    # Registered before any install step so an interrupted install also cleans up
    SignalHandler(launcher).setup()
    atexit.register(launcher.cleanup, stop_detached=not plan.backend_detached)

    console.info(f"Environment file: {env_file_location()}")

    try:
        ToolInstaller(console).ensure_all()
        DependencyInstaller(settings, console).install_all()

        if plan.start_frontend and launcher.start_frontend() is not None:
            time.sleep(settings.frontend_startup_delay)

        if plan.start_backend:
            launcher.start_backend(detached=plan.backend_detached)
    except LauncherError as e:
        console.error(str(e))
        return 1
    except OSError as e:
        console.error(f"Fatal error: {e}")
        return 1

    if not plan.backend_detached:
        launcher.wait()
    return 0


def cli():
    sys.exit(main())


if __name__ == '__main__':
    cli()
