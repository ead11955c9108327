from __future__ import annotations

import argparse
import logging
import sys
import time
from datetime import UTC, datetime

from .app_logging import LOGGER_NAME, log_with_fields, setup_logger
from .catalog import Build, BuildCatalog
from .config import AppConfig, ensure_local_paths, load_config
from .publisher import Publisher
from .request_queue import read_queue_file
from .status import StatusTracker, render
from .store import Store
from .target import queue_file_path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="buildpublisher", description="Publish finished builds to remote servers")
    parser.add_argument("--config", required=True, help="Path to buildpublisher YAML config")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run one publishing worker per target")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Publish what is queued, then exit (failed builds stay queued)",
    )
    subparsers.add_parser("status", help="Show queues and worker states")

    def add_build_args(sub: argparse.ArgumentParser, *, target_required: bool) -> None:
        sub.add_argument("--project", required=True, help="Full project name, e.g. app or app/module")
        sub.add_argument("--build", required=True, type=int, help="Build number")
        sub.add_argument("--target", required=target_required, help="Target name")

    trigger = subparsers.add_parser("trigger", help="Apply the build-completion rules to a build")
    add_build_args(trigger, target_required=False)
    enqueue = subparsers.add_parser("enqueue", help="Queue a build on a target")
    add_build_args(enqueue, target_required=True)
    again = subparsers.add_parser("publish-again", help="Queue an already processed build again")
    add_build_args(again, target_required=True)
    remove = subparsers.add_parser("remove", help="Remove a build from a target's queue")
    add_build_args(remove, target_required=True)
    return parser


def _open_runtime(config: AppConfig) -> tuple[Store, Publisher]:
    ensure_local_paths(config)
    logger = setup_logger(config.paths.log)
    store = Store(config.paths.db)
    store.init_schema()
    publisher = Publisher(config, BuildCatalog(config.paths.home), logger, store=store)
    return store, publisher


def _resolve_build(publisher: Publisher, project: str, number: int) -> Build | None:
    build = publisher.catalog.get_build(project, number)
    if build is None:
        print(f"build not found: {project} #{number}", file=sys.stderr)
    return build


def cmd_run(config: AppConfig, *, once: bool = False) -> int:
    store, publisher = _open_runtime(config)
    try:
        publisher.start()
        if once:
            publisher.wait_until_drained()
            return 0
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        log_with_fields(logging.getLogger(LOGGER_NAME), logging.INFO, "shutdown", reason="keyboard_interrupt")
        return 0
    finally:
        publisher.stop()
        store.close()


def _format_retry(retry_at: float | None) -> str:
    if retry_at is None:
        return ""
    return " retry_at=" + datetime.fromtimestamp(retry_at, UTC).isoformat()


def cmd_status(config: AppConfig) -> int:
    ensure_local_paths(config)
    store = Store(config.paths.db)
    catalog = BuildCatalog(config.paths.home)
    tracker = StatusTracker(logging.getLogger(LOGGER_NAME))
    try:
        store.init_schema()
        print("Queues:")
        for target in config.targets:
            try:
                entries = read_queue_file(queue_file_path(config.paths.state, target.name))
            except (OSError, ValueError) as exc:
                print(f"  {target.name} ({target.base_url}): queue file unreadable: {exc}")
                continue
            print(f"  {target.name} ({target.base_url}): {len(entries)} queued")
            for project, number in entries:
                build = catalog.get_build(project, number)
                record = tracker.get_status(build, target.name) if build is not None else None
                state = record.state.value if record is not None else "unknown"
                print(f"    {project} #{number} {state}")

        print("\nWorkers:")
        states = store.list_target_states()
        if not states:
            print("  (no worker state yet)")
        for row in states:
            build = f" build={row['current_project']}#{row['current_build']}" if row["current_project"] else ""
            error = f" error={row['last_error']}" if row["last_error"] else ""
            print(
                "  "
                f"{row['target_name']}: status={row['status']}{build} "
                f"updated={row['updated_at']}{_format_retry(row['retry_at'])}{error}"
            )
        return 0
    finally:
        store.close()


def cmd_trigger(config: AppConfig, project: str, number: int) -> int:
    store, publisher = _open_runtime(config)
    try:
        build = _resolve_build(publisher, project, number)
        if build is None:
            return 2
        target = publisher.on_build_completed(build)
        if target is None:
            print(f"{build} was not queued")
            return 0
        print(f"queued {build} on {target.name}")
        return 0
    finally:
        publisher.stop()
        store.close()


def cmd_enqueue(config: AppConfig, project: str, number: int, target_name: str, *, again: bool = False) -> int:
    store, publisher = _open_runtime(config)
    try:
        if target_name not in publisher.targets:
            print(f"unknown target: {target_name}", file=sys.stderr)
            return 2
        build = _resolve_build(publisher, project, number)
        if build is None:
            return 2
        if again:
            record = publisher.publish_again(build, target_name)
            print(f"queued {build} on {target_name} again\n{render(record)}")
        else:
            publisher.get_target(target_name).publish_new_build(build)
            print(f"queued {build} on {target_name}")
        return 0
    finally:
        publisher.stop()
        store.close()


def cmd_remove(config: AppConfig, project: str, number: int, target_name: str) -> int:
    store, publisher = _open_runtime(config)
    try:
        if target_name not in publisher.targets:
            print(f"unknown target: {target_name}", file=sys.stderr)
            return 2
        build = _resolve_build(publisher, project, number)
        if build is None:
            return 2
        if not publisher.abort_transfer(build, target_name):
            print(f"{build} is not queued on {target_name}", file=sys.stderr)
            return 2
        print(f"removed {build} from {target_name}")
        return 0
    finally:
        publisher.stop()
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = load_config(args.config)

    if args.command == "run":
        return cmd_run(config, once=bool(args.once))
    if args.command == "status":
        return cmd_status(config)
    if args.command == "trigger":
        return cmd_trigger(config, args.project, args.build)
    if args.command == "enqueue":
        return cmd_enqueue(config, args.project, args.build, args.target)
    if args.command == "publish-again":
        return cmd_enqueue(config, args.project, args.build, args.target, again=True)
    if args.command == "remove":
        return cmd_remove(config, args.project, args.build, args.target)
    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
