"""
Chatdesk - Configuration Management

Handles the projects file, the settings file and the paths the runtime
reads from. Projects live in ~/.config/chatdesk/projects.json, which the
activity tracker shares for its time-tracking aggregates.
"""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from chatdesk.exceptions import ConfigError, ProjectNotFoundError


def _config_dir() -> Path:
    if override := os.environ.get("CHATDESK_CONFIG_DIR"):
        return Path(override).expanduser()
    return Path.home() / ".config" / "chatdesk"


def _claude_dir() -> Path:
    if override := os.environ.get("CHATDESK_CLAUDE_DIR"):
        return Path(override).expanduser()
    return Path.home() / ".claude"


# Configuration paths
CONFIG_DIR = _config_dir()
PROJECTS_FILE = CONFIG_DIR / "projects.json"
SETTINGS_FILE = CONFIG_DIR / "settings.json"
CLAUDE_DIR = _claude_dir()
CLAUDE_PROJECTS_DIR = CLAUDE_DIR / "projects"

PERMISSION_MODES = ("default", "acceptEdits", "plan", "bypassPermissions", "alwaysAllow")


def slugify(name: str) -> str:
    """Turn a project name into a stable id."""
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "project"


@dataclass
class Project:
    """A local project whose chat sessions are tracked."""

    name: str
    path: str
    id: str = ""

    def __post_init__(self) -> None:
        # Expand ~ in path
        self.path = str(Path(self.path).expanduser())
        if not self.id:
            self.id = slugify(self.name)

    @property
    def full_path(self) -> Path:
        """Get the full path as a Path object."""
        return Path(self.path)

    def contains(self, cwd: str | Path) -> bool:
        """Check whether cwd is the project directory or below it."""
        try:
            Path(cwd).expanduser().resolve().relative_to(self.full_path.resolve())
        except ValueError:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"id": self.id, "name": self.name, "path": self.path}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Project":
        """Create Project from dictionary."""
        path = data["path"]
        return cls(
            name=data.get("name") or Path(path).name,
            path=path,
            id=data.get("id", ""),
        )


@dataclass
class Settings:
    """User preferences applied to new chat sessions."""

    default_model: str = ""
    default_permission_mode: str = "default"
    max_turns: int = 100
    setting_sources: list[str] = field(default_factory=lambda: ["user", "project", "local"])
    naming_model: str = "haiku"
    generate_tab_names: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "defaultModel": self.default_model,
            "defaultPermissionMode": self.default_permission_mode,
            "maxTurns": self.max_turns,
            "settingSources": self.setting_sources,
            "namingModel": self.naming_model,
            "generateTabNames": self.generate_tab_names,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        settings = cls(
            default_model=data.get("defaultModel", ""),
            default_permission_mode=data.get("defaultPermissionMode", "default"),
            max_turns=int(data.get("maxTurns", 100)),
            setting_sources=list(data.get("settingSources", ["user", "project", "local"])),
            naming_model=data.get("namingModel", "haiku"),
            generate_tab_names=bool(data.get("generateTabNames", True)),
        )
        if settings.default_permission_mode not in PERMISSION_MODES:
            raise ConfigError(
                f"Unknown permission mode '{settings.default_permission_mode}'",
                {"valid": list(PERMISSION_MODES)},
            )
        return settings


@dataclass
class ChatDeskConfig:
    """Main configuration container for chatdesk."""

    projects: list[Project] = field(default_factory=list)
    settings: Settings = field(default_factory=Settings)
    projects_file: Path = field(default_factory=lambda: PROJECTS_FILE)
    settings_file: Path = field(default_factory=lambda: SETTINGS_FILE)
    claude_projects_dir: Path = field(default_factory=lambda: CLAUDE_PROJECTS_DIR)

    # Activity tracking timings (seconds)
    idle_timeout: float = 15 * 60
    sleep_gap: float = 2 * 60
    heartbeat_interval: float = 30.0
    midnight_check_interval: float = 30.0
    save_debounce: float = 0.5
    output_activity_throttle: float = 1.0

    def get_project(self, key: str) -> Project:
        """
        Get a project by id, name or path.

        Raises:
            ProjectNotFoundError: If project not found
        """
        for project in self.projects:
            if project.id == key or project.name.lower() == key.lower():
                return project
        expanded = str(Path(key).expanduser())
        for project in self.projects:
            if project.path == expanded:
                return project

        raise ProjectNotFoundError(
            f"Project '{key}' not found",
            {"available": [p.id for p in self.projects]},
        )

    def project_for_path(self, cwd: str | Path) -> Project | None:
        """Return the most specific project containing cwd, if any."""
        matches = [p for p in self.projects if p.contains(cwd)]
        if not matches:
            return None
        return max(matches, key=lambda p: len(p.path))

    def add_project(self, project: Project) -> None:
        """Add a new project to the configuration."""
        for existing in self.projects:
            if existing.id == project.id:
                raise ConfigError(
                    f"Project '{project.id}' already exists",
                    {"existing_path": existing.path},
                )
        self.projects.append(project)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}", {"error": str(e)})
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {path}")
    return data


def load_config(
    projects_file: Path | None = None,
    settings_file: Path | None = None,
) -> ChatDeskConfig:
    """
    Load configuration from the projects and settings files.

    Returns:
        ChatDeskConfig with all settings loaded

    Raises:
        ConfigError: If a file is invalid
    """
    config = ChatDeskConfig()
    if projects_file is not None:
        config.projects_file = projects_file
    if settings_file is not None:
        config.settings_file = settings_file

    if config.projects_file.exists():
        data = _read_json(config.projects_file)
        try:
            for project_data in data.get("projects", []):
                config.projects.append(Project.from_dict(project_data))
        except KeyError as e:
            raise ConfigError(
                "Missing required field in project config",
                {"field": str(e)},
            )

    if config.settings_file.exists():
        config.settings = Settings.from_dict(_read_json(config.settings_file))

    return config


def save_settings(config: ChatDeskConfig) -> None:
    """Write the settings file."""
    config.settings_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config.settings_file, "w", encoding="utf-8") as f:
        json.dump(config.settings.to_dict(), f, indent=2)
