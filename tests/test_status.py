from pathlib import Path
from tempfile import TemporaryDirectory
import unittest
import xml.etree.ElementTree as ET

from buildpublisher.catalog import BuildCatalog
from buildpublisher.models import (
    ErrorRecoveryWait,
    StatusRecord,
    StatusState,
    failure_pending,
    pending,
    succeeded,
)
from buildpublisher.status import (
    StatusTracker,
    available_action,
    render,
    requeue_state,
    strip_status_elements,
)

from support import quiet_logger, write_build, write_project


class StatusTrackerTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        home = Path(self._temp_dir.name)
        app = write_project(home / "jobs", "app")
        write_build(app, 1)
        self.build = BuildCatalog(home).require_build("app", 1)
        self.tracker = StatusTracker(quiet_logger())

    def tearDown(self) -> None:
        self._temp_dir.cleanup()

    def test_one_record_per_target(self) -> None:
        self.tracker.set_status(self.build, pending("public"))
        self.tracker.set_status(self.build, pending("mirror"))
        self.tracker.set_status(self.build, succeeded("public"))

        records = self.tracker.list_statuses(self.build)
        self.assertEqual(sorted(record.target_name for record in records), ["mirror", "public"])
        public = self.tracker.get_status(self.build, "public")
        assert public is not None
        self.assertEqual(public.state, StatusState.SUCCESS)
        self.assertEqual(public.message, "Build transmission was successfully completed")

        root = ET.parse(self.build.record_path).getroot()
        self.assertEqual(root.findtext("result"), "SUCCESS")
        self.assertEqual(len(root.findall("actions/publishingStatus")), 2)

    def test_error_is_kept(self) -> None:
        try:
            raise RuntimeError("remote exploded")
        except RuntimeError as exc:
            record = failure_pending("public", exc)
        self.tracker.set_status(self.build, record)
        stored = self.tracker.get_status(self.build, "public")
        assert stored is not None
        self.assertEqual(stored.state, StatusState.FAILURE_PENDING)
        self.assertIn("RuntimeError: remote exploded", stored.error or "")

    def test_clear_status(self) -> None:
        self.tracker.set_status(self.build, pending("public"))
        self.assertTrue(self.tracker.clear_status(self.build, "public"))
        self.assertFalse(self.tracker.clear_status(self.build, "public"))
        self.assertIsNone(self.tracker.get_status(self.build, "public"))

    def test_missing_record_does_not_raise(self) -> None:
        self.build.record_path.unlink()
        self.tracker.set_status(self.build, pending("public"))
        self.assertEqual(self.tracker.list_statuses(self.build), [])


class StatusHelpersTest(unittest.TestCase):
    def test_strip_status_elements(self) -> None:
        root = ET.fromstring(
            "<build><actions><publishingStatus target='a' state='PENDING'/></actions>"
            "<result>SUCCESS</result></build>"
        )
        self.assertEqual(strip_status_elements(root), 1)
        self.assertIsNone(root.find("actions"))

        root = ET.fromstring(
            "<build><actions><other/><publishingStatus target='a' state='PENDING'/></actions></build>"
        )
        self.assertEqual(strip_status_elements(root), 1)
        self.assertIsNotNone(root.find("actions/other"))

    def test_available_actions(self) -> None:
        self.assertEqual(available_action(StatusState.PENDING), "remove from queue")
        self.assertEqual(available_action(StatusState.FAILURE_PENDING), "remove from queue")
        self.assertEqual(available_action(StatusState.IN_PROGRESS), "abort transmission")
        for state in (StatusState.SUCCESS, StatusState.FAILURE, StatusState.INTERRUPTED):
            self.assertEqual(available_action(state), "publish again")

    def test_requeue_state(self) -> None:
        self.assertEqual(requeue_state(StatusState.FAILURE), StatusState.FAILURE_PENDING)
        self.assertEqual(requeue_state(StatusState.SUCCESS), StatusState.PENDING)
        self.assertEqual(requeue_state(StatusState.INTERRUPTED), StatusState.PENDING)

    def test_render(self) -> None:
        record = StatusRecord(StatusState.FAILURE, "Error during build publishing", "public", error="trace")
        self.assertEqual(
            render(record),
            "Error during build publishing\n[public] FAILURE: publish again\n\ntrace",
        )

    def test_recovery_wait_remaining(self) -> None:
        state = ErrorRecoveryWait(deadline=100.0, build=None, cause=RuntimeError("x"))
        self.assertEqual(state.remaining_seconds(now=40.0), 60.0)
        self.assertEqual(state.remaining_seconds(now=140.0), 0.0)
        self.assertIn("RuntimeError: x", state.stack_trace())


if __name__ == "__main__":
    unittest.main()
