from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING, Callable

from .app_logging import log_with_fields
from .catalog import Build
from .models import (
    IDLE,
    Dead,
    ErrorRecoveryWait,
    Publishing,
    WorkerState,
    failure_pending,
    in_progress,
    interrupted,
    pending,
    succeeded,
)
from .remote_sync import ParentProjectMissing
from .store import Store
from .transfer import PublishError, TransferAborted

if TYPE_CHECKING:
    from .target import RemoteTarget


class PublishingWorker:
    """Drains one target's queue, one build at a time."""

    def __init__(
        self,
        target: RemoteTarget,
        *,
        recovery_seconds: float,
        logger: logging.Logger,
        store: Store | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.target = target
        self.recovery_seconds = recovery_seconds
        self.logger = logger
        self.store = store
        self.clock = clock
        self.state: WorkerState = IDLE
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self._thread = threading.Thread(
            target=self.run,
            name=f"build-publisher-{target.name}",
            daemon=True,
        )

    def start(self) -> None:
        self._thread.start()

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        if self._thread.is_alive():
            self._thread.join(timeout)

    def stop(self) -> None:
        self._stopping.set()
        self._wake.set()

    def retry_now(self) -> None:
        self._wake.set()

    def run(self) -> None:
        try:
            while not self._stopping.is_set():
                self._set_state(IDLE)
                build = self.target.queue.next_blocking()
                if build is None or self._stopping.is_set():
                    break
                self.publish(build)
        except Exception as exc:
            self._set_state(Dead(exc))
            log_with_fields(
                self.logger,
                logging.CRITICAL,
                "worker_dead",
                exc_info=exc,
                target=self.target.name,
                error=str(exc),
            )

    def publish(self, build: Build) -> None:
        target = self.target
        target.client.reset_abort()
        self._set_state(Publishing(build))
        if not target.queue.update_status(build, in_progress(target.name)):
            # Removed by the operator after it was picked up.
            log_with_fields(
                self.logger,
                logging.INFO,
                "build_no_longer_queued",
                target=target.name,
                project=build.project.full_name,
                build=build.number,
            )
            return
        self._event(build, "publish_started")

        try:
            self._transmit(build)
        except ParentProjectMissing as exc:
            # Retrying cannot help until someone publishes the parent.
            target.queue.remove(build, interrupted(target.name, str(exc)))
            self._event(build, "publish_interrupted", error=str(exc))
            log_with_fields(
                self.logger,
                logging.WARNING,
                "parent_project_missing",
                target=target.name,
                project=build.project.full_name,
                build=build.number,
            )
            return
        except TransferAborted as exc:
            if self._stopping.is_set():
                # Shutdown, not the operator: the build stays at the head of the queue.
                target.queue.update_status(build, pending(target.name))
                self._event(build, "publish_postponed", error=str(exc))
                return
            target.queue.remove(build, interrupted(target.name, "Build transmission was aborted by user"))
            self._event(build, "publish_aborted", error=str(exc))
            log_with_fields(
                self.logger,
                logging.INFO,
                "publish_aborted",
                target=target.name,
                project=build.project.full_name,
                build=build.number,
            )
            return
        except (PublishError, OSError) as exc:
            self._recover(build, exc)
            return

        self._run_post_actions(build)
        target.queue.remove(build, succeeded(target.name))
        self._event(build, "published")
        log_with_fields(
            self.logger,
            logging.INFO,
            "build_published",
            target=target.name,
            project=build.project.full_name,
            build=build.number,
        )

    def _transmit(self, build: Build) -> None:
        target = self.target
        target.synchronizer.synchronize(build.project)
        with target.packager.package_to_tempfile(build) as (archive_path, summary):
            if summary.aborted:
                raise TransferAborted(f"{build}: packaging aborted")
            target.client.send_build(build, archive_path, timezone=target.timezone)
        if target.client.aborted or build not in target.queue:
            raise TransferAborted(f"{build}: removed while being transmitted")
        for child in build.children:
            target.publish_new_build(child)

    def _run_post_actions(self, build: Build) -> None:
        for action in list(self.target.post_actions):
            try:
                action(build, self.target)
            except Exception as exc:
                log_with_fields(
                    self.logger,
                    logging.WARNING,
                    "post_action_failed",
                    exc_info=exc,
                    target=self.target.name,
                    project=build.project.full_name,
                    build=build.number,
                    action=getattr(action, "__name__", type(action).__name__),
                    error=str(exc),
                )

    def _recover(self, build: Build, exc: BaseException) -> None:
        target = self.target
        failed_request = getattr(exc, "failed_request", None)
        self._wake.clear()
        target.queue.move_to_tail(build, failure_pending(target.name, exc))
        deadline = self.clock() + self.recovery_seconds
        self._set_state(ErrorRecoveryWait(deadline, build, exc, failed_request))
        self._event(
            build,
            "publish_failed",
            error=str(exc),
            response=failed_request.diagnostics() if failed_request is not None else None,
        )
        log_with_fields(
            self.logger,
            logging.WARNING,
            "publish_failed",
            target=target.name,
            project=build.project.full_name,
            build=build.number,
            error=str(exc),
            retry_in_seconds=self.recovery_seconds,
        )
        self._sleep_until(deadline)

    def _sleep_until(self, deadline: float) -> None:
        while not self._stopping.is_set():
            remaining = deadline - self.clock()
            if remaining <= 0:
                return
            if self._wake.wait(remaining):
                if not self._stopping.is_set():
                    log_with_fields(self.logger, logging.INFO, "retry_requested", target=self.target.name)
                return

    def _set_state(self, state: WorkerState) -> None:
        self.state = state
        if self.store is None:
            return
        if isinstance(state, Publishing):
            self.store.update_target_state(
                self.target.name,
                status=state.name,
                current_project=state.build.project.full_name,
                current_build=state.build.number,
            )
        elif isinstance(state, ErrorRecoveryWait):
            self.store.update_target_state(
                self.target.name,
                status=state.name,
                current_project=state.build.project.full_name,
                current_build=state.build.number,
                retry_at=state.deadline,
                last_error=str(state.cause),
            )
        elif isinstance(state, Dead):
            self.store.update_target_state(self.target.name, status=state.name, last_error=str(state.cause))
        else:
            self.store.update_target_state(self.target.name, status=state.name)

    def _event(self, build: Build, event_type: str, **details: object) -> None:
        if self.store is not None:
            self.store.add_event(self.target.name, build.project.full_name, build.number, event_type, details)
