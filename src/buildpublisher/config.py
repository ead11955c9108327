from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_RECOVERY_SECONDS = 600


@dataclass(slots=True)
class PathsConfig:
    home: Path
    state: Path
    db: Path
    log: Path


@dataclass(slots=True)
class PublishingConfig:
    recovery_seconds: float = DEFAULT_RECOVERY_SECONDS
    max_redirects: int = 10
    timeout_seconds: float = 60
    timezone: str | None = None


@dataclass(slots=True)
class TargetConfig:
    name: str
    url: str
    login: str | None = None
    password: str | None = None

    @property
    def base_url(self) -> str:
        return self.url if self.url.endswith("/") else self.url + "/"

    @property
    def requires_authentication(self) -> bool:
        return bool(self.login and self.login.strip())


@dataclass(slots=True)
class ProjectRule:
    name: str
    target: str | None = None
    publish_unstable: bool = False
    publish_failed: bool = False


@dataclass(slots=True)
class AppConfig:
    paths: PathsConfig
    publishing: PublishingConfig
    targets: list[TargetConfig]
    projects: list[ProjectRule] = field(default_factory=list)

    def target(self, name: str) -> TargetConfig | None:
        for target in self.targets:
            if target.name == name:
                return target
        return None

    def rule_for(self, project_name: str) -> ProjectRule | None:
        for rule in self.projects:
            if rule.name == project_name:
                return rule
        return None


def _require(mapping: dict, key: str, section: str) -> object:
    if key not in mapping:
        raise ValueError(f"Missing `{section}.{key}` in config")
    return mapping[key]


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def load_config(path: str | Path) -> AppConfig:
    config_path = Path(path).expanduser().resolve()
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config root must be a mapping")

    paths_raw = _require(raw, "paths", "root")
    publishing_raw = raw.get("publishing", {}) or {}
    targets_raw = _require(raw, "targets", "root")
    projects_raw = raw.get("projects", []) or []

    if not isinstance(paths_raw, dict):
        raise ValueError("`paths` must be a mapping")
    if not isinstance(publishing_raw, dict):
        raise ValueError("`publishing` must be a mapping")
    if not isinstance(targets_raw, list) or not targets_raw:
        raise ValueError("`targets` must be a non-empty list")
    if not isinstance(projects_raw, list):
        raise ValueError("`projects` must be a list")

    def to_path(key: str, default: str | None = None) -> Path:
        value = paths_raw.get(key, default) if default is not None else _require(paths_raw, key, "paths")
        output = Path(str(value)).expanduser()
        if not output.is_absolute():
            output = config_path.parent / output
        return output

    state = to_path("state")
    paths = PathsConfig(
        home=to_path("home"),
        state=state,
        db=to_path("db", str(state / "buildpublisher.db")),
        log=to_path("log", str(state / "buildpublisher.log")),
    )

    publishing = PublishingConfig(
        recovery_seconds=float(publishing_raw.get("recovery_seconds", DEFAULT_RECOVERY_SECONDS)),
        max_redirects=int(publishing_raw.get("max_redirects", 10)),
        timeout_seconds=float(publishing_raw.get("timeout_seconds", 60)),
        timezone=_optional_str(publishing_raw.get("timezone")),
    )
    if publishing.recovery_seconds < 0:
        raise ValueError("`publishing.recovery_seconds` must be >= 0")
    if publishing.max_redirects < 0:
        raise ValueError("`publishing.max_redirects` must be >= 0")
    if publishing.timeout_seconds <= 0:
        raise ValueError("`publishing.timeout_seconds` must be > 0")

    targets: list[TargetConfig] = []
    seen_names: set[str] = set()
    for idx, item in enumerate(targets_raw):
        if not isinstance(item, dict):
            raise ValueError(f"`targets[{idx}]` must be a mapping")
        url = str(_require(item, "url", f"targets[{idx}]")).strip()
        if not url:
            raise ValueError(f"`targets[{idx}].url` must not be empty")
        target = TargetConfig(
            name=_optional_str(item.get("name")) or url,
            url=url,
            login=_optional_str(item.get("login")),
            password=_optional_str(item.get("password")),
        )
        if target.name in seen_names:
            raise ValueError(f"Duplicate target name: {target.name}")
        seen_names.add(target.name)
        targets.append(target)

    projects: list[ProjectRule] = []
    for idx, item in enumerate(projects_raw):
        if not isinstance(item, dict):
            raise ValueError(f"`projects[{idx}]` must be a mapping")
        rule = ProjectRule(
            name=str(_require(item, "name", f"projects[{idx}]")),
            target=_optional_str(item.get("target")),
            publish_unstable=bool(item.get("publish_unstable", False)),
            publish_failed=bool(item.get("publish_failed", False)),
        )
        if rule.target is not None and rule.target not in seen_names:
            raise ValueError(f"`projects[{idx}].target` names unknown target: {rule.target}")
        projects.append(rule)

    return AppConfig(paths=paths, publishing=publishing, targets=targets, projects=projects)


def ensure_local_paths(config: AppConfig) -> None:
    config.paths.home.mkdir(parents=True, exist_ok=True)
    config.paths.state.mkdir(parents=True, exist_ok=True)
    config.paths.db.parent.mkdir(parents=True, exist_ok=True)
    config.paths.log.parent.mkdir(parents=True, exist_ok=True)
