from __future__ import annotations

import logging
import time
from typing import Callable

import requests

from .app_logging import log_with_fields
from .catalog import Build, BuildCatalog
from .config import AppConfig, ProjectRule
from .models import Dead, ErrorRecoveryWait, Idle, StatusRecord, pending
from .status import StatusTracker, requeue_state
from .store import Store
from .target import PostAction, RemoteTarget


class UnknownTargetError(KeyError):
    pass


class Publisher:
    def __init__(
        self,
        config: AppConfig,
        catalog: BuildCatalog,
        logger: logging.Logger,
        *,
        store: Store | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.config = config
        self.catalog = catalog
        self.logger = logger
        self.store = store
        self.session_factory = session_factory
        self.status = StatusTracker(logger)
        self.post_actions: list[PostAction] = []
        self.targets: dict[str, RemoteTarget] = {}
        self.running = False
        self._load_targets()

    def _load_targets(self) -> None:
        self.targets = {}
        for target_config in self.config.targets:
            target = RemoteTarget(
                target_config,
                state_dir=self.config.paths.state,
                status=self.status,
                logger=self.logger,
                publishing=self.config.publishing,
                store=self.store,
                post_actions=self.post_actions,
                session_factory=self.session_factory,
            )
            target.restore_queue(self.catalog.get_build)
            self.targets[target.name] = target

    def add_post_action(self, action: PostAction) -> None:
        self.post_actions.append(action)

    def get_target(self, name: str) -> RemoteTarget:
        target = self.targets.get(name)
        if target is None:
            raise UnknownTargetError(name)
        return target

    def start(self) -> None:
        for target in self.targets.values():
            target.start_worker()
        self.running = True

    def stop(self, timeout: float | None = 5.0) -> None:
        for target in self.targets.values():
            target.stop(timeout)
        self.running = False

    def reload(self, config: AppConfig) -> None:
        was_running = self.running
        self.stop()
        self.config = config
        self._load_targets()
        if was_running:
            self.start()

    def rule_for(self, build: Build) -> ProjectRule:
        rule = self.config.rule_for(build.project.full_name)
        return rule if rule is not None else ProjectRule(name=build.project.full_name)

    def target_name_for(self, rule: ProjectRule) -> str | None:
        if rule.target is not None:
            return rule.target
        if len(self.config.targets) == 1:
            return self.config.targets[0].name
        return None

    def on_build_completed(self, build: Build) -> RemoteTarget | None:
        """Queue a finished build according to its project's publishing rule."""
        if build.project.parent is not None:
            # Child builds follow their parent.
            return None
        rule = self.rule_for(build)
        result = build.result
        if (result == "UNSTABLE" and not rule.publish_unstable) or (result == "FAILURE" and not rule.publish_failed):
            log_with_fields(
                self.logger,
                logging.INFO,
                "build_not_published",
                project=build.project.full_name,
                build=build.number,
                result=result,
            )
            return None
        target_name = self.target_name_for(rule)
        target = self.targets.get(target_name) if target_name is not None else None
        if target is None:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "no_target_for_project",
                project=build.project.full_name,
                build=build.number,
                target=target_name,
            )
            return None
        target.publish_new_build(build)
        return target

    def publish_again(self, build: Build, target_name: str) -> StatusRecord:
        target = self.get_target(target_name)
        previous = self.status.get_status(build, target_name)
        if previous is None:
            record = pending(target_name)
        else:
            record = previous.with_state(requeue_state(previous.state))
        target.publish_build(build, record)
        return record

    def abort_transfer(self, build: Build, target_name: str) -> bool:
        return self.get_target(target_name).abort_transfer(build)

    def retry_now(self, target_name: str) -> bool:
        return self.get_target(target_name).retry_now()

    def resurrect(self, target_name: str) -> bool:
        target = self.get_target(target_name)
        if target.worker_alive():
            return False
        target.start_worker()
        return True

    def is_drained(self) -> bool:
        """True when no target has work it could do right now."""
        for target in self.targets.values():
            state = target.state
            if isinstance(state, (ErrorRecoveryWait, Dead)):
                continue
            if len(target.queue) or not isinstance(state, Idle):
                return False
        return True

    def wait_until_drained(self, timeout: float | None = None, poll_seconds: float = 0.05) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_drained():
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(poll_seconds)
        return True
