from __future__ import annotations

import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

CONFIG_FILE = "config.xml"
BUILD_RECORD = "build.xml"
BUILDS_DIR = "builds"
CHILDREN_DIR = "modules"

# Worst last.
RESULT_ORDER = ("SUCCESS", "UNSTABLE", "FAILURE", "NOT_BUILT", "ABORTED")


class CatalogError(LookupError):
    pass


def worst_result(results: list[str]) -> str | None:
    ranked = [result for result in results if result in RESULT_ORDER]
    if not ranked:
        return None
    return max(ranked, key=RESULT_ORDER.index)


def _read_kind(config_path: Path) -> str:
    try:
        return ET.parse(config_path).getroot().tag
    except (ET.ParseError, OSError):
        return "project"


@dataclass(slots=True, eq=False)
class Project:
    name: str
    root_dir: Path
    parent: Project | None = None
    kind: str = "project"
    children: list[Project] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        if self.parent is None:
            return self.name
        return f"{self.parent.full_name}/{self.name}"

    @property
    def path_segments(self) -> list[str]:
        if self.parent is None:
            return [self.name]
        return [*self.parent.path_segments, self.name]

    @property
    def config_path(self) -> Path:
        return self.root_dir / CONFIG_FILE

    @property
    def builds_dir(self) -> Path:
        return self.root_dir / BUILDS_DIR

    @property
    def is_composite(self) -> bool:
        return bool(self.children)

    def child(self, name: str) -> Project | None:
        for child in self.children:
            if child.name == name:
                return child
        return None

    def __repr__(self) -> str:
        return f"Project({self.full_name!r})"


@dataclass(slots=True, eq=False)
class Build:
    project: Project
    number: int
    root_dir: Path

    @property
    def key(self) -> tuple[str, int]:
        return (self.project.full_name, self.number)

    @property
    def record_path(self) -> Path:
        return self.root_dir / BUILD_RECORD

    @property
    def build_id(self) -> str:
        try:
            node = ET.parse(self.record_path).getroot().find("id")
        except (ET.ParseError, OSError):
            node = None
        if node is not None and node.text and node.text.strip():
            return node.text.strip()
        return str(self.number)

    @property
    def result(self) -> str | None:
        try:
            node = ET.parse(self.record_path).getroot().find("result")
        except (ET.ParseError, OSError):
            return None
        if node is None or not (node.text or "").strip():
            return None
        return (node.text or "").strip()

    @property
    def children(self) -> list[Build]:
        output: list[Build] = []
        for child in self.project.children:
            root = child.builds_dir / str(self.number)
            if (root / BUILD_RECORD).is_file():
                output.append(Build(child, self.number, root))
        return output

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Build):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        return f"Build({self.project.full_name!r}, #{self.number})"

    def __str__(self) -> str:
        return f"{self.project.full_name} #{self.number}"


class BuildCatalog:
    def __init__(self, home: Path) -> None:
        self.home = home
        self.jobs_dir = home / "jobs"

    def _load_project(self, root_dir: Path, parent: Project | None) -> Project:
        project = Project(
            name=root_dir.name,
            root_dir=root_dir,
            parent=parent,
            kind=_read_kind(root_dir / CONFIG_FILE),
        )
        children_dir = root_dir / CHILDREN_DIR
        if children_dir.is_dir():
            for child_dir in sorted(children_dir.iterdir()):
                if (child_dir / CONFIG_FILE).is_file():
                    project.children.append(self._load_project(child_dir, project))
        return project

    def iter_projects(self) -> Iterator[Project]:
        if not self.jobs_dir.is_dir():
            return
        for project_dir in sorted(self.jobs_dir.iterdir()):
            if (project_dir / CONFIG_FILE).is_file():
                yield self._load_project(project_dir, None)

    def get_project(self, full_name: str) -> Project | None:
        segments = [segment for segment in full_name.split("/") if segment]
        if not segments:
            return None
        root_dir = self.jobs_dir / segments[0]
        if not (root_dir / CONFIG_FILE).is_file():
            return None
        project = self._load_project(root_dir, None)
        for segment in segments[1:]:
            child = project.child(segment)
            if child is None:
                return None
            project = child
        return project

    def get_build(self, full_name: str, number: int) -> Build | None:
        project = self.get_project(full_name)
        if project is None:
            return None
        root = project.builds_dir / str(number)
        if not (root / BUILD_RECORD).is_file():
            return None
        return Build(project, number, root)

    def require_build(self, full_name: str, number: int) -> Build:
        build = self.get_build(full_name, number)
        if build is None:
            raise CatalogError(f"build not found: {full_name} #{number}")
        return build
