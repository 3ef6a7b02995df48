"""Process launching and monitoring for agent processes.

Background launches are fire-and-forget: the child gets its own session so
the CLI can exit, and the only channels back are files in the state dir
(log, session id) plus the PID.
"""

import logging
import os
import shlex
import shutil
import signal
import subprocess
import time
from pathlib import Path

from work_pipeline.core.errors import LaunchError
from work_pipeline.store.models import LaunchResult

logger = logging.getLogger(__name__)

LOG_FILE = ".agent-log"
SESSION_ID_FILE = ".session-id"
RUNNER_SCRIPT = ".agent-runner.sh"

PIPELINE_FILES = (LOG_FILE, SESSION_ID_FILE, RUNNER_SCRIPT)

_PROXY_VARS = ("https_proxy", "http_proxy", "all_proxy")

# Popen objects for children spawned by this process (keyed by PID)
_active_processes: dict[int, subprocess.Popen] = {}


def proxy_env(environ: dict[str, str] | None = None) -> dict[str, str]:
    """AGENT_*_PROXY variables captured from the caller's environment."""
    environ = os.environ if environ is None else environ
    return {
        f"AGENT_{name.upper()}": environ.get(name) or environ.get(name.upper()) or ""
        for name in _PROXY_VARS
    }


def render_runner_script(command: list[str], work_dir: str | Path, env: dict[str, str]) -> str:
    """Shell script that restores proxy settings and execs the agent command."""
    lines = [
        "#!/bin/bash",
        f"cd {shlex.quote(str(work_dir))}",
        "",
        "# Proxy settings from environment (passed via AGENT_* vars)",
    ]
    for name in _PROXY_VARS:
        lines.append(f'export {name}="${{AGENT_{name.upper()}:-}}"')
    if env:
        lines.append("")
        for key, value in env.items():
            lines.append(f"export {key}={shlex.quote(value)}")
    lines += ["", f"exec {shlex.join(command)}", ""]
    return "\n".join(lines)


def launch(
    command: list[str],
    work_dir: str | Path,
    session_id: str,
    background: bool = True,
    state_dir: str | Path | None = None,
    env: dict[str, str] | None = None,
    log_name: str = LOG_FILE,
) -> LaunchResult:
    """Start command in work_dir.

    In background mode the command runs detached through a runner script with
    stdout/stderr appended to ``<state_dir>/<log_name>``. In foreground mode it
    inherits the terminal and this call returns once it exits.
    """
    work_dir = Path(work_dir)
    state_dir = Path(state_dir) if state_dir else work_dir
    env = env or {}

    if not work_dir.is_dir():
        raise LaunchError(f"Working directory does not exist: {work_dir}")
    if shutil.which(command[0]) is None:
        raise LaunchError(
            f"Agent binary not found: {command[0]}",
            hint="Install it or point WP_AGENT_BINARY at it.",
        )

    state_dir.mkdir(parents=True, exist_ok=True)
    session_id_file = state_dir / SESSION_ID_FILE
    session_id_file.write_text(session_id + "\n", encoding="utf-8")

    if not background:
        return _launch_foreground(command, work_dir, session_id, session_id_file, env)

    log_file = state_dir / log_name
    runner_script = state_dir / RUNNER_SCRIPT
    runner_script.write_text(render_runner_script(command, work_dir, env), encoding="utf-8")
    runner_script.chmod(0o755)

    try:
        with open(log_file, "a") as log:
            proc = subprocess.Popen(
                [str(runner_script)],
                cwd=work_dir,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                env={**os.environ, **proxy_env()},
                start_new_session=True,
            )
    except OSError as e:
        raise LaunchError(f"Failed to start agent in {work_dir}: {e}") from e

    _active_processes[proc.pid] = proc
    logger.info("Agent started in background (PID %s), log: %s", proc.pid, log_file)

    return LaunchResult(
        pid=proc.pid,
        session_id=session_id,
        log_file=str(log_file),
        runner_script=str(runner_script),
        session_id_file=str(session_id_file),
    )


def _launch_foreground(
    command: list[str],
    work_dir: Path,
    session_id: str,
    session_id_file: Path,
    env: dict[str, str],
) -> LaunchResult:
    try:
        proc = subprocess.Popen(command, cwd=work_dir, env={**os.environ, **env})
    except OSError as e:
        raise LaunchError(f"Failed to start agent in {work_dir}: {e}") from e
    exit_code = proc.wait()
    logger.info("Foreground agent (PID %s) exited with %s", proc.pid, exit_code)
    return LaunchResult(
        pid=proc.pid,
        session_id=session_id,
        session_id_file=str(session_id_file),
        exit_code=exit_code,
    )


# ── Liveness and termination ─────────────────────────────────────────────────


def is_alive(pid: int | None) -> bool:
    """Check if a process exists, whoever owns it."""
    if not pid or pid <= 0:
        return False
    proc = _active_processes.get(pid)
    if proc is not None and proc.poll() is not None:
        # Our own child: poll() reaps it so it doesn't linger as a zombie
        _active_processes.pop(pid, None)
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it


def wait_for_exit(pid: int, timeout: float, interval: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not is_alive(pid):
            return True
        time.sleep(interval)
    return not is_alive(pid)


def stop(pid: int, force: bool = False, timeout: float = 5.0) -> bool:
    """Send SIGTERM (SIGKILL if force) and wait up to timeout for the PID to go away.

    Returns True if the process exited in time or was already gone.
    """
    if not is_alive(pid):
        return True

    sig = signal.SIGKILL if force else signal.SIGTERM
    try:
        if os.getpgid(pid) == pid:
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)
    except ProcessLookupError:
        return True
    except PermissionError:
        logger.warning("Not permitted to signal PID %s", pid)
        return False

    exited = wait_for_exit(pid, timeout)
    if not exited:
        logger.warning("PID %s still running %.1fs after %s", pid, timeout, sig.name)
    return exited


# ── Filesystem channels ──────────────────────────────────────────────────────


def read_session_id(state_dir: str | Path) -> str | None:
    path = Path(state_dir) / SESSION_ID_FILE
    if not path.exists():
        return None
    try:
        return path.read_text(encoding="utf-8").strip() or None
    except OSError:
        return None


def tail_log(log_file: str | Path, lines: int = 10) -> list[str]:
    """Last non-empty lines of a log file; empty if it can't be read."""
    path = Path(log_file)
    if not path.exists():
        return []
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [line for line in content.splitlines() if line.strip()][-lines:]
