"""Configuration loading from environment variables and the worktree YAML file."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from work_pipeline.core.paths import get_workflow_dir

logger = logging.getLogger(__name__)

WORKTREE_CONFIG_FILE = "worktree.yaml"


@dataclass
class Config:
    repo_path: Path | None = None
    developer: str | None = None
    platform: str | None = None
    agent_binary: str = "claude"
    stop_timeout: float = 5.0
    log_tail_lines: int = 10

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if repo := os.environ.get("WP_REPO_PATH"):
            config.repo_path = Path(repo)

        config.developer = os.environ.get("WP_DEVELOPER") or None
        config.platform = os.environ.get("WP_PLATFORM") or None

        if binary := os.environ.get("WP_AGENT_BINARY"):
            config.agent_binary = binary

        if timeout := os.environ.get("WP_STOP_TIMEOUT"):
            config.stop_timeout = float(timeout)

        if tail := os.environ.get("WP_LOG_TAIL"):
            config.log_tail_lines = int(tail)

        return config


def get_config() -> Config:
    return Config.from_env()


@dataclass
class WorktreeConfig:
    """Declarative worktree setup, read from ``.workflow/worktree.yaml``."""

    worktree_dir: str = "../worktrees"
    copy: list[str] = field(default_factory=list)
    post_create: list[str] = field(default_factory=list)
    verify: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> "WorktreeConfig":
        config = cls()
        if data.get("worktree_dir"):
            config.worktree_dir = str(data["worktree_dir"])
        config.copy = _str_list(data.get("copy"))
        config.post_create = _str_list(data.get("post_create"))
        config.verify = _str_list(data.get("verify"))
        return config


def _str_list(value) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v is not None and str(v).strip()]


def load_worktree_config(repo_root: str | Path) -> WorktreeConfig:
    """Load the worktree config. A missing or malformed file yields the defaults."""
    path = get_workflow_dir(repo_root) / WORKTREE_CONFIG_FILE
    if not path.exists():
        return WorktreeConfig()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Could not load %s, using defaults: %s", path, e)
        return WorktreeConfig()

    if data is None:
        return WorktreeConfig()
    if not isinstance(data, dict):
        logger.warning("Expected a mapping in %s, using defaults", path)
        return WorktreeConfig()
    return WorktreeConfig.from_dict(data)


def get_worktree_base_dir(repo_root: str | Path, config: WorktreeConfig | None = None) -> Path:
    """Absolute directory under which branch worktrees are created."""
    config = config or load_worktree_config(repo_root)
    base = Path(config.worktree_dir).expanduser()
    if not base.is_absolute():
        base = Path(repo_root) / base
    return Path(os.path.normpath(base))
