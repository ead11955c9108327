from __future__ import annotations

import logging
import threading
import xml.etree.ElementTree as ET

from .app_logging import log_with_fields
from .catalog import Build
from .models import StatusRecord, StatusState
from .utils import atomic_write_bytes

STATUS_TAG = "publishingStatus"
ACTIONS_TAG = "actions"

ACTION_REMOVE = "remove from queue"
ACTION_ABORT = "abort transmission"
ACTION_PUBLISH_AGAIN = "publish again"


def strip_status_elements(root: ET.Element) -> int:
    removed = 0
    for actions in root.findall(ACTIONS_TAG):
        for node in actions.findall(STATUS_TAG):
            actions.remove(node)
            removed += 1
        if removed and len(actions) == 0 and not (actions.text or "").strip():
            root.remove(actions)
    return removed


def _record_from_element(node: ET.Element) -> StatusRecord | None:
    try:
        state = StatusState(node.get("state", ""))
    except ValueError:
        return None
    message = node.findtext("message") or ""
    error = node.findtext("error")
    return StatusRecord(state=state, message=message, target_name=node.get("target", ""), error=error)


def available_action(state: StatusState) -> str:
    if state in {StatusState.PENDING, StatusState.FAILURE_PENDING}:
        return ACTION_REMOVE
    if state == StatusState.IN_PROGRESS:
        return ACTION_ABORT
    return ACTION_PUBLISH_AGAIN


def render(record: StatusRecord) -> str:
    lines = [record.message, f"[{record.target_name}] {record.state.value}: {available_action(record.state)}"]
    if record.error:
        lines.extend(["", record.error])
    return "\n".join(lines)


def requeue_state(previous: StatusState) -> StatusState:
    """State a record gets when an operator publishes the build again."""
    if previous == StatusState.FAILURE:
        return StatusState.FAILURE_PENDING
    return StatusState.PENDING


class StatusTracker:
    def __init__(self, logger: logging.Logger) -> None:
        self.logger = logger
        self._lock = threading.RLock()

    def set_status(self, build: Build, record: StatusRecord) -> None:
        with self._lock:
            try:
                tree = ET.parse(build.record_path)
                root = tree.getroot()
                actions = root.find(ACTIONS_TAG)
                if actions is None:
                    actions = ET.SubElement(root, ACTIONS_TAG)
                for node in actions.findall(STATUS_TAG):
                    if node.get("target") == record.target_name:
                        actions.remove(node)
                node = ET.SubElement(
                    actions,
                    STATUS_TAG,
                    {"target": record.target_name, "state": record.state.value},
                )
                ET.SubElement(node, "message").text = record.message
                if record.error:
                    ET.SubElement(node, "error").text = record.error
                atomic_write_bytes(build.record_path, ET.tostring(root, encoding="utf-8", xml_declaration=True))
            except (ET.ParseError, OSError) as exc:
                # The build may have been deleted underneath us.
                log_with_fields(
                    self.logger,
                    logging.ERROR,
                    "status_write_failed",
                    build=str(build),
                    target=record.target_name,
                    state=record.state.value,
                    error=str(exc),
                )

    def list_statuses(self, build: Build) -> list[StatusRecord]:
        with self._lock:
            try:
                root = ET.parse(build.record_path).getroot()
            except (ET.ParseError, OSError):
                return []
        output: list[StatusRecord] = []
        for actions in root.findall(ACTIONS_TAG):
            for node in actions.findall(STATUS_TAG):
                record = _record_from_element(node)
                if record is not None:
                    output.append(record)
        return output

    def get_status(self, build: Build, target_name: str) -> StatusRecord | None:
        for record in self.list_statuses(build):
            if record.target_name == target_name:
                return record
        return None

    def clear_status(self, build: Build, target_name: str) -> bool:
        with self._lock:
            try:
                root = ET.parse(build.record_path).getroot()
            except (ET.ParseError, OSError):
                return False
            removed = False
            for actions in root.findall(ACTIONS_TAG):
                for node in actions.findall(STATUS_TAG):
                    if node.get("target") == target_name:
                        actions.remove(node)
                        removed = True
            if removed:
                atomic_write_bytes(build.record_path, ET.tostring(root, encoding="utf-8", xml_declaration=True))
            return removed
