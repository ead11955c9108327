from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from pathlib import Path
from typing import Callable

from .app_logging import log_with_fields
from .catalog import Build
from .models import StatusRecord
from .status import StatusTracker
from .utils import atomic_write_text

BuildResolver = Callable[[str, int], "Build | None"]


def read_queue_file(path: Path) -> list[tuple[str, int]]:
    if not path.exists():
        return []
    raw = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"{path}: queue file must hold a list")
    entries: list[tuple[str, int]] = []
    for item in raw:
        if not isinstance(item, dict) or "project" not in item or "build" not in item:
            continue
        entries.append((str(item["project"]), int(item["build"])))
    return entries


def write_queue_file(path: Path, entries: list[tuple[str, int]]) -> None:
    payload = [{"project": project, "build": number} for project, number in entries]
    atomic_write_text(path, json.dumps(payload, indent=2) + "\n")


class RequestQueue:
    """Insertion-ordered set of builds waiting for one target."""

    def __init__(self, target_name: str, path: Path, status: StatusTracker, logger: logging.Logger) -> None:
        self.target_name = target_name
        self.path = path
        self.status = status
        self.logger = logger
        self._items: OrderedDict[tuple[str, int], Build] = OrderedDict()
        self._condition = threading.Condition()
        self._closed = False

    def __len__(self) -> int:
        with self._condition:
            return len(self._items)

    def __contains__(self, build: object) -> bool:
        if not isinstance(build, Build):
            return False
        with self._condition:
            return build.key in self._items

    def snapshot(self) -> list[Build]:
        with self._condition:
            return list(self._items.values())

    def restore(self, resolve: BuildResolver) -> int:
        try:
            entries = read_queue_file(self.path)
        except (OSError, ValueError) as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "queue_restore_failed",
                target=self.target_name,
                path=str(self.path),
                error=str(exc),
            )
            return 0
        restored = 0
        with self._condition:
            for project_name, number in entries:
                build = resolve(project_name, number)
                if build is None:
                    log_with_fields(
                        self.logger,
                        logging.INFO,
                        "queued_build_gone",
                        target=self.target_name,
                        project=project_name,
                        build=number,
                    )
                    continue
                if build.key not in self._items:
                    self._items[build.key] = build
                    restored += 1
            self._persist()
            self._condition.notify_all()
        return restored

    def enqueue(self, build: Build, status: StatusRecord) -> bool:
        with self._condition:
            added = build.key not in self._items
            if added:
                self._items[build.key] = build
            self.status.set_status(build, status)
            self._persist()
            self._condition.notify_all()
            return added

    def next_blocking(self) -> Build | None:
        """Head of the queue, left in place. ``None`` once the queue is closed."""
        with self._condition:
            while not self._items and not self._closed:
                self._condition.wait()
            if self._closed:
                return None
            return next(iter(self._items.values()))

    def remove(self, build: Build, final_status: StatusRecord) -> bool:
        with self._condition:
            if build.key not in self._items:
                return False
            del self._items[build.key]
            self._persist()
            self.status.set_status(build, final_status)
            return True

    def update_status(self, build: Build, status: StatusRecord) -> bool:
        """Write ``status`` only while ``build`` is still queued."""
        with self._condition:
            if build.key not in self._items:
                return False
            self.status.set_status(build, status)
            return True

    def move_to_tail(self, build: Build, status: StatusRecord | None = None) -> None:
        with self._condition:
            if build.key in self._items:
                self._items.move_to_end(build.key)
                self._persist()
                if status is not None:
                    self.status.set_status(build, status)

    def close(self) -> None:
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def reopen(self) -> None:
        with self._condition:
            self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _persist(self) -> None:
        try:
            write_queue_file(self.path, list(self._items.keys()))
        except OSError as exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "queue_save_failed",
                target=self.target_name,
                path=str(self.path),
                error=str(exc),
            )
