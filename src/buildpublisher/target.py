from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable

import requests

from .app_logging import log_with_fields
from .archive import ArchivePackager
from .catalog import Build
from .config import PublishingConfig, TargetConfig
from .models import IDLE, Publishing, StatusRecord, WorkerState, interrupted, pending
from .remote_sync import RemoteSynchronizer
from .request_queue import BuildResolver, RequestQueue
from .status import StatusTracker
from .store import Store
from .transfer import TransferClient
from .utils import safe_file_name
from .worker import PublishingWorker

PostAction = Callable[[Build, "RemoteTarget"], None]


def queue_file_path(state_dir: Path, target_name: str) -> Path:
    return state_dir / f"queue-{safe_file_name(target_name)}.json"


class RemoteTarget:
    def __init__(
        self,
        config: TargetConfig,
        *,
        state_dir: Path,
        status: StatusTracker,
        logger: logging.Logger,
        publishing: PublishingConfig | None = None,
        store: Store | None = None,
        post_actions: list[PostAction] | None = None,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ) -> None:
        self.config = config
        self.publishing = publishing or PublishingConfig()
        self.status = status
        self.logger = logger
        self.store = store
        self.post_actions: list[PostAction] = post_actions if post_actions is not None else []
        self.client = TransferClient(
            config,
            timeout_seconds=self.publishing.timeout_seconds,
            max_redirects=self.publishing.max_redirects,
            session_factory=session_factory,
        )
        self.synchronizer = RemoteSynchronizer(self.client, logger)
        self.packager = ArchivePackager(self.client.abort_event)
        self.queue = RequestQueue(config.name, queue_file_path(state_dir, config.name), status, logger)
        self.worker: PublishingWorker | None = None

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def url(self) -> str:
        return self.config.base_url

    @property
    def requires_authentication(self) -> bool:
        return self.config.requires_authentication

    @property
    def timezone(self) -> str | None:
        return self.publishing.timezone

    @property
    def state(self) -> WorkerState:
        if self.worker is None:
            return IDLE
        return self.worker.state

    def worker_alive(self) -> bool:
        return self.worker is not None and self.worker.is_alive()

    def restore_queue(self, resolve: BuildResolver) -> int:
        restored = self.queue.restore(resolve)
        log_with_fields(self.logger, logging.INFO, "queue_restored", target=self.name, builds=restored)
        return restored

    def start_worker(self) -> PublishingWorker:
        """Start a worker unless one is already alive; also used to resurrect a dead one."""
        if self.worker is not None and self.worker.is_alive():
            return self.worker
        self.queue.reopen()
        self.worker = PublishingWorker(
            self,
            recovery_seconds=self.publishing.recovery_seconds,
            logger=self.logger,
            store=self.store,
        )
        self.worker.start()
        log_with_fields(self.logger, logging.INFO, "worker_started", target=self.name, queued=len(self.queue))
        return self.worker

    def stop(self, timeout: float | None = 5.0) -> None:
        self.queue.close()
        if self.worker is not None:
            self.worker.stop()
            if isinstance(self.worker.state, Publishing):
                self.client.abort()
            self.worker.join(timeout)
        self.client.close()

    def publish_new_build(self, build: Build) -> bool:
        return self.publish_build(build, pending(self.name))

    def publish_build(self, build: Build, status: StatusRecord) -> bool:
        added = self.queue.enqueue(build, status)
        if added and self.store is not None:
            self.store.add_event(self.name, build.project.full_name, build.number, "queued", {"state": status.state.value})
        log_with_fields(
            self.logger,
            logging.INFO,
            "build_queued" if added else "build_already_queued",
            target=self.name,
            project=build.project.full_name,
            build=build.number,
            state=status.state.value,
        )
        return added

    def remove_request(self, build: Build, status: StatusRecord) -> bool:
        return self.queue.remove(build, status)

    def postpone_request(self, build: Build, status: StatusRecord | None = None) -> None:
        self.queue.move_to_tail(build, status)

    def queued_builds(self) -> list[Build]:
        return self.queue.snapshot()

    def retry_now(self) -> bool:
        if self.worker is None or not self.worker.is_alive():
            return False
        self.worker.retry_now()
        return True

    def abort_transfer(self, build: Build) -> bool:
        """Take ``build`` out of the queue, cancelling its transfer if it is in flight."""
        state = self.state
        in_flight = isinstance(state, Publishing) and state.build == build
        message = "Build transmission was aborted by user" if in_flight else "Build was removed from queue by user"
        removed = self.queue.remove(build, interrupted(self.name, message))
        if in_flight:
            self.client.abort()
        if removed or in_flight:
            if self.store is not None:
                self.store.add_event(self.name, build.project.full_name, build.number, "removed", {"in_flight": in_flight})
            log_with_fields(
                self.logger,
                logging.INFO,
                "build_removed",
                target=self.name,
                project=build.project.full_name,
                build=build.number,
                in_flight=in_flight,
            )
        return removed
