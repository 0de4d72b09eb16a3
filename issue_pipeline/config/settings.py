"""
Configuration system using Pydantic for type-safe, layered project settings.

Each command resolves its configuration exactly once from three YAML maps,
merged in order so later layers win:

1. ``pipeline.yaml`` - global defaults shared by every project
2. ``pipeline.local.yaml`` - machine-local overrides (tokens, paths)
3. ``projects/<name>.yaml`` - the project's own values

The merged mapping is validated into a frozen ``ProjectSettings`` that is
passed down to every component. Nothing re-reads configuration while a
command runs.

External-facing values (repository, channels, webhooks) are optional at load
time and checked lazily through the ``require_*`` helpers, so a project can
run ``status`` before its Board is wired up.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from issue_pipeline.enums import IssueType
from issue_pipeline.exceptions import ConfigurationError, NotFoundError, UsageError

DEFAULTS_FILE = "pipeline.yaml"
LOCAL_FILE = "pipeline.local.yaml"
PROJECTS_DIR = "projects"

_PROJECT_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_set(value: Any) -> bool:
    """True for a non-empty value; empty secrets count as unset."""
    if isinstance(value, SecretStr):
        return bool(value.get_secret_value().strip())
    return bool(value)


class TrackerConfig(BaseModel):
    """Issue tracker (GitHub) configuration.

    Supports environment references for the token:
    - token: "${GITHUB_TOKEN}"
    """

    model_config = ConfigDict(frozen=True)

    repo: str | None = Field(default=None, description="Repository as owner/name")
    token: SecretStr | None = Field(default=None, description="API token")
    base_url: str = Field(default="https://api.github.com", description="API base URL (GitHub Enterprise)")
    web_url: str = Field(default="https://github.com", description="Web URL used to build PR links")
    merge_strategy: Literal["squash", "merge", "rebase"] = Field(default="squash")
    delete_branch: bool = Field(default=True, description="Delete the head branch after merge")
    submit_reviews: bool = Field(default=False, description="Submit approve/reject as Tracker PR reviews")
    timeout: float = Field(default=30.0, gt=0, description="Seconds allowed per Tracker call")

    @field_validator("repo")
    @classmethod
    def validate_repo(cls, value: str | None) -> str | None:
        if value and value.count("/") != 1:
            raise ValueError(f"repo must look like owner/name, got: {value}")
        return value or None

    def pr_url(self, pr: int) -> str:
        return f"{self.web_url.rstrip('/')}/{self.repo}/pull/{pr}"


class ForumTags(BaseModel):
    """Board forum tag ids applied to issue threads."""

    model_config = ConfigDict(frozen=True)

    bug: str | None = None
    feature: str | None = None
    task: str | None = None
    resolved: str | None = Field(default=None, description="Applied when a thread is archived")

    def for_type(self, issue_type: IssueType) -> str | None:
        return getattr(self, issue_type.value)


class BoardConfig(BaseModel):
    """Chat platform (Discord) configuration.

    The forum channel hosts one thread per issue. Webhooks post messages;
    the bot token is only needed for thread creation, archival and tagging.
    """

    model_config = ConfigDict(frozen=True)

    guild_id: str | None = None
    forum_channel: str | None = None
    review_channel: str | None = None
    deploy_channel: str | None = None
    bot_token: SecretStr | None = None
    forum_webhook: SecretStr | None = None
    reviews_webhook: SecretStr | None = None
    deploy_webhook: SecretStr | None = Field(default=None, description="Optional deploy announcements")
    api_base_url: str = Field(default="https://discord.com/api/v10")
    timeout: float = Field(default=15.0, gt=0, description="Seconds allowed per Board call")
    tags: ForumTags = Field(default_factory=ForumTags)

    def thread_link(self, thread: str) -> str:
        return f"https://discord.com/channels/{self.guild_id}/{thread}"


class IdentityConfig(BaseModel):
    """Sender names used on the Board.

    Agents act on messages from ``action`` and ignore messages from ``info``.
    The two names must differ or a worker's completion broadcast could
    re-trigger the worker.
    """

    model_config = ConfigDict(frozen=True)

    action: str = Field(default="Pipeline")
    info: str = Field(default="Pipeline Status")
    reviewer: str | None = Field(default=None, description="Board user id mentioned on review requests")

    @model_validator(mode="after")
    def validate_distinct(self) -> IdentityConfig:
        if self.action.strip().lower() == self.info.strip().lower():
            raise ValueError("identities.action and identities.info must be different names")
        return self


class WorkerEntry(BaseModel):
    """A roster member declared in configuration."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Board user id")
    name: str = Field(default="")

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value: Any) -> Any:
        # Board ids are large integers; YAML would otherwise parse them as int.
        return str(value) if isinstance(value, int) else value


class WorkersConfig(BaseModel):
    """Worker pool configuration."""

    model_config = ConfigDict(frozen=True)

    roster: list[WorkerEntry] = Field(default_factory=list)
    default_worker: str = Field(default="worker", min_length=1, description="Used when the roster is empty")

    @model_validator(mode="after")
    def validate_unique(self) -> WorkersConfig:
        ids = [w.id for w in self.roster]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate worker ids in roster: {', '.join(duplicates)}")
        return self


class DrafterConfig(BaseModel):
    """External agent used to draft issue text.

    ``command`` is an argv template; ``{prompt}`` and ``{session_id}`` are
    substituted per call.
    """

    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    command: list[str] = Field(
        default_factory=lambda: [
            "openclaw",
            "agent",
            "--session-id",
            "{session_id}",
            "--message",
            "{prompt}",
        ]
    )
    timeout: float = Field(default=120.0, gt=0)


class DeployConfig(BaseModel):
    """Shell steps run after a successful merge."""

    model_config = ConfigDict(frozen=True)

    steps: list[str] = Field(default_factory=list)
    working_dir: str | None = None
    step_timeout: float = Field(default=900.0, gt=0)


class ProjectSettings(BaseSettings):
    """Resolved configuration for one project and one command invocation."""

    model_config = SettingsConfigDict(
        env_prefix="PIPELINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    name: str
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    board: BoardConfig = Field(default_factory=BoardConfig)
    identities: IdentityConfig = Field(default_factory=IdentityConfig)
    workers: WorkersConfig = Field(default_factory=WorkersConfig)
    drafter: DrafterConfig = Field(default_factory=DrafterConfig)
    deploy: DeployConfig = Field(default_factory=DeployConfig)
    auto_merge: bool = Field(default=True, description="Default auto-merge flag for new issues")
    state_dir: str | None = Field(default=None, description="Overrides where the state file lives")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not _PROJECT_NAME.match(value):
            raise ValueError(f"invalid project name: {value!r}")
        return value

    def require_repo(self) -> str:
        """Return the Tracker repository or fail with a configuration error."""
        if not self.tracker.repo:
            raise ConfigurationError(f"tracker.repo is not set for project '{self.name}'")
        return self.tracker.repo

    def require_board(self, *keys: str) -> None:
        """Fail unless every named Board setting is present."""
        missing = [k for k in keys if not is_set(getattr(self.board, k))]
        if missing:
            names = ", ".join(f"board.{k}" for k in missing)
            raise ConfigurationError(f"{names} not set for project '{self.name}'")

    def state_path(self, home: Path) -> Path:
        base = Path(self.state_dir).expanduser() if self.state_dir else home / PROJECTS_DIR
        return base / f"{self.name}.state.json"


# =============================================================================
# Layer loading
# =============================================================================


@dataclass(frozen=True)
class ConfigLayers:
    """The three configuration maps for one project, lowest precedence first."""

    defaults: Mapping[str, Any] = field(default_factory=dict)
    local: Mapping[str, Any] = field(default_factory=dict)
    project: Mapping[str, Any] = field(default_factory=dict)

    def merged(self) -> dict[str, Any]:
        return deep_merge(deep_merge(self.defaults, self.local), self.project)


def pipeline_home(home: str | Path | None = None) -> Path:
    """Directory holding global config and the ``projects/`` folder."""
    if home is not None:
        return Path(home).expanduser()
    env_home = os.getenv("PIPELINE_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path.home() / ".config" / "issue-pipeline"


def project_file(name: str, home: Path) -> Path:
    if not _PROJECT_NAME.match(name):
        raise UsageError(f"Invalid project name: {name!r}")
    return home / PROJECTS_DIR / f"{name}.yaml"


def list_projects(home: Path) -> list[str]:
    """Names of all projects that have a config file under ``home``."""
    projects_dir = home / PROJECTS_DIR
    if not projects_dir.is_dir():
        return []
    return sorted(p.stem for p in projects_dir.glob("*.yaml") if p.stem != "example")


def load_layers(name: str, home: Path) -> ConfigLayers:
    """Read the three configuration layers for a project.

    Raises:
        NotFoundError: If the project has no config file
        ConfigurationError: If any layer is unreadable or not a mapping
    """
    path = project_file(name, home)
    if not path.exists():
        raise NotFoundError(f"Project '{name}' not found at {path}")
    return ConfigLayers(
        defaults=read_yaml(home / DEFAULTS_FILE, required=False),
        local=read_yaml(home / LOCAL_FILE, required=False),
        project=read_yaml(path, required=True),
    )


def resolve_settings(name: str, layers: ConfigLayers) -> ProjectSettings:
    """Merge the layers and validate them into a ``ProjectSettings``."""
    merged = layers.merged()
    merged["name"] = name
    try:
        return ProjectSettings(**merged)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration for project '{name}': {e}") from e


def load_project_settings(name: str, home: str | Path | None = None) -> ProjectSettings:
    """Load and resolve configuration for one command invocation."""
    return resolve_settings(name, load_layers(name, pipeline_home(home)))


def read_yaml(path: Path, required: bool = True) -> dict[str, Any]:
    """Read a YAML mapping with ``${VAR}`` environment interpolation.

    Args:
        path: File to read
        required: If False, a missing file yields an empty mapping

    Raises:
        ConfigurationError: If the file is missing (when required), unreadable,
            references an unset environment variable, or is not a mapping
    """
    if not path.exists():
        if required:
            raise ConfigurationError(f"Configuration file not found: {path}")
        return {}

    try:
        content = path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file: {path}") from e

    try:
        content = interpolate_env_vars(content)
    except ValueError as e:
        raise ConfigurationError(f"Invalid environment variable reference in {path}: {e}") from e

    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML syntax in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration in {path} must be a YAML mapping")
    return data


def interpolate_env_vars(content: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` with environment values.

    YAML comment lines are left untouched so templates can document the
    syntax.

    Raises:
        ValueError: If a referenced variable is unset and has no default
    """
    pattern = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")

    def replace_var(match: re.Match[str]) -> str:
        value = os.getenv(match.group(1))
        if value is not None:
            return value
        if match.group(2) is not None:
            return match.group(2)
        raise ValueError(f"Environment variable {match.group(1)} is not set")

    def process_line(line: str) -> str:
        if line.lstrip().startswith("#"):
            return line
        return pattern.sub(replace_var, line)

    return "\n".join(process_line(line) for line in content.split("\n"))


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new mapping with ``override`` merged over ``base``.

    Nested mappings merge key by key; any other value (including lists)
    from ``override`` replaces the one in ``base``. Neither input is mutated.
    """
    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result
