"""Agent platform adapters.

The set of platforms is closed: claude, opencode, cursor, codex. Callers go
through ``PlatformAdapter`` and branch on capabilities such as
``supports_multi_agent()``, never on the concrete class.
"""

import shlex
from pathlib import Path
from uuid import uuid4

from work_pipeline.config import Config
from work_pipeline.core import launcher
from work_pipeline.core.errors import UnsupportedPlatformError
from work_pipeline.store.models import LaunchResult

PLATFORMS = ("claude", "opencode", "cursor", "codex")

CONFIG_DIRS = {
    "claude": ".claude",
    "opencode": ".opencode",
    "cursor": ".cursor",
    "codex": ".codex",
}

DEFAULT_PROMPT = "Start the pipeline"


class PlatformAdapter:
    """Capability interface shared by every platform."""

    def __init__(self, platform: str):
        self.platform = platform

    @property
    def config_dir(self) -> str:
        return CONFIG_DIRS[self.platform]

    def supports_multi_agent(self) -> bool:
        return False

    def agent_file_path(self, agent_type: str, repo_root: str | Path) -> Path:
        return Path(repo_root) / self.config_dir / "agents" / f"{agent_type}.md"

    def agent_file_exists(self, agent_type: str, repo_root: str | Path) -> bool:
        return self.agent_file_path(agent_type, repo_root).exists()

    def launch_agent(
        self,
        agent_type: str,
        work_dir: str | Path,
        background: bool = True,
        prompt: str = DEFAULT_PROMPT,
        session_id: str | None = None,
        state_dir: str | Path | None = None,
        env: dict[str, str] | None = None,
        verbose: bool = False,
        log_name: str = launcher.LOG_FILE,
    ) -> LaunchResult:
        raise UnsupportedPlatformError(
            f"Platform '{self.platform}' does not support launching agents. "
            f"Currently supported: {', '.join(supported_platforms())}"
        )

    def resume_command(self, work_dir: str | Path, session_id: str | None = None) -> str | None:
        return None


class ClaudeAdapter(PlatformAdapter):
    """Claude Code: ``claude -p --agent <type> --session-id <id> ...``."""

    def __init__(self, binary: str = "claude"):
        super().__init__("claude")
        self.binary = binary

    def supports_multi_agent(self) -> bool:
        return True

    def build_args(
        self, agent_type: str, session_id: str, prompt: str, verbose: bool = False
    ) -> list[str]:
        args = [
            "-p",
            "--agent",
            agent_type,
            "--session-id",
            session_id,
            "--dangerously-skip-permissions",
            "--output-format",
            "stream-json",
        ]
        if verbose:
            args.append("--verbose")
        args.append(prompt)
        return args

    def launch_agent(
        self,
        agent_type: str,
        work_dir: str | Path,
        background: bool = True,
        prompt: str = DEFAULT_PROMPT,
        session_id: str | None = None,
        state_dir: str | Path | None = None,
        env: dict[str, str] | None = None,
        verbose: bool = False,
        log_name: str = launcher.LOG_FILE,
    ) -> LaunchResult:
        session_id = session_id or str(uuid4())
        command = [self.binary, *self.build_args(agent_type, session_id, prompt, verbose)]
        return launcher.launch(
            command,
            work_dir,
            session_id,
            background=background,
            state_dir=state_dir,
            env={"CLAUDE_NON_INTERACTIVE": "1", **(env or {})},
            log_name=log_name,
        )

    def resume_command(self, work_dir: str | Path, session_id: str | None = None) -> str | None:
        sid = session_id or launcher.read_session_id(work_dir)
        if not sid:
            return None
        return f"cd {shlex.quote(str(work_dir))} && {shlex.quote(self.binary)} --resume {shlex.quote(sid)}"


def supported_platforms() -> list[str]:
    return ["claude"]


def detect_platform(repo_root: str | Path) -> str | None:
    """First platform (in priority order) whose config dir exists in the repo."""
    for platform in PLATFORMS:
        if (Path(repo_root) / CONFIG_DIRS[platform]).is_dir():
            return platform
    return None


def get_adapter(platform: str, config: Config | None = None) -> PlatformAdapter:
    if platform not in PLATFORMS:
        raise UnsupportedPlatformError(
            f"Unknown platform '{platform}'. Expected one of: {', '.join(PLATFORMS)}"
        )
    if platform == "claude":
        return ClaudeAdapter(binary=config.agent_binary if config else "claude")
    return PlatformAdapter(platform)


def get_platform_adapter(repo_root: str | Path, config: Config | None = None) -> PlatformAdapter:
    """Adapter for the configured platform, or the one detected from the repo."""
    platform = (config.platform if config else None) or detect_platform(repo_root)
    if not platform:
        raise UnsupportedPlatformError(
            "Could not detect platform. Ensure you have a platform config directory "
            "(e.g. .claude/) in your project root."
        )
    return get_adapter(platform, config)
