from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from buildpublisher.catalog import BuildCatalog
from buildpublisher.config import TargetConfig
from buildpublisher.transfer import (
    ServerFailure,
    TransferAborted,
    TransferClient,
    TransferRequest,
    TransportFailure,
    job_url,
)

from support import FakeRemote, write_build, write_child_project, write_project


class TransferClientTest(unittest.TestCase):
    def setUp(self) -> None:
        self.remote = FakeRemote()
        self.url = self.remote.start()
        self.client = TransferClient(TargetConfig(name="remote", url=self.url), max_redirects=3)

    def tearDown(self) -> None:
        self.client.close()
        self.remote.stop()

    def test_probe(self) -> None:
        self.remote.projects[("app",)] = b""
        self.assertEqual(self.client.probe(self.url + "job/app"), 200)
        self.assertEqual(self.client.probe(self.url + "job/other"), 404)

    def test_redirect_keeps_method_and_body(self) -> None:
        self.remote.projects[("app",)] = b""
        self.remote.redirects["/old/config"] = "/job/app/config-accept"
        self.client.post_xml(self.url + "old/config", b"<project/>")
        self.assertEqual(self.remote.projects[("app",)], b"<project/>")
        self.assertEqual(self.remote.paths_requested("POST"), ["/old/config", "/job/app/config-accept"])

    def test_redirects_are_bounded(self) -> None:
        self.remote.redirects["/loop"] = "/loop"
        with self.assertRaises(ServerFailure) as ctx:
            self.client.probe(self.url + "loop")
        self.assertIn("more than 3 redirects", str(ctx.exception))
        self.assertEqual(self.remote.paths_requested("GET"), ["/loop"] * 4)

    def test_error_status_carries_response(self) -> None:
        self.remote.overrides[("POST", "/broken")] = 500
        with self.assertRaises(ServerFailure) as ctx:
            self.client.post_xml(self.url + "broken", b"<x/>")
        failed = ctx.exception.failed_request
        assert failed is not None
        self.assertEqual(failed.status_code, 500)
        self.assertIn("HTTP 500", failed.diagnostics())
        self.assertIn("status 500", failed.diagnostics())

    def test_form_login_before_each_request(self) -> None:
        client = TransferClient(TargetConfig(name="remote", url=self.url, login="alice", password="pw"))
        try:
            self.assertEqual(client.probe(self.url), 200)
            self.assertEqual(client.probe(self.url), 200)
        finally:
            client.close()
        self.assertEqual(len(self.remote.credentials), 2)
        form = self.remote.credentials[0]
        self.assertEqual(form["j_username"], ["alice"])
        self.assertEqual(form["j_password"], ["pw"])
        self.assertEqual(form["action"], ["login"])
        self.assertEqual(self.remote.paths_requested()[:3], ["/loginEntry", "/j_security_check", "/"])

    def test_unreachable_remote(self) -> None:
        self.remote.stop()
        with self.assertRaises(TransportFailure):
            self.client.probe(self.url)

    def test_aborted_client_refuses_requests(self) -> None:
        self.client.abort()
        with self.assertRaises(TransferAborted):
            self.client.probe(self.url)
        self.client.reset_abort()
        self.assertEqual(self.client.probe(self.url), 200)

    def test_execute_without_raise(self) -> None:
        response = self.client.execute(TransferRequest("GET", self.url + "nowhere"), raise_for_status=False)
        self.assertEqual(response.status_code, 404)


class SendBuildTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_dir = TemporaryDirectory()
        home = Path(self._temp_dir.name)
        app = write_project(home / "jobs", "my app")
        write_child_project(app, "core")
        write_build(app, 4)
        self.build = BuildCatalog(home).require_build("my app", 4)
        self.archive = home / "build.tar"
        self.archive.write_bytes(b"tar-bytes" * 100)
        self.remote = FakeRemote()
        self.url = self.remote.start()
        self.remote.projects[("my app",)] = b""
        self.client = TransferClient(TargetConfig(name="remote", url=self.url))

    def tearDown(self) -> None:
        self.client.close()
        self.remote.stop()
        self._temp_dir.cleanup()

    def test_job_url_quotes_segments(self) -> None:
        child = self.build.project.children[0]
        self.assertEqual(job_url("http://host/", child), "http://host/job/my%20app/core")

    def test_send_build(self) -> None:
        self.client.send_build(self.build, self.archive, timezone="Europe/Prague")
        self.assertEqual(len(self.remote.received), 1)
        received = self.remote.received[0]
        self.assertEqual(received["project"], ("my app",))
        self.assertEqual(received["body"], b"tar-bytes" * 100)
        self.assertEqual(received["headers"]["content-type"], "application/x-tar")
        self.assertEqual(received["headers"]["x-build-id"], "4")
        self.assertEqual(received["headers"]["x-build-timezone"], "Europe/Prague")

    def test_missing_receipt_is_a_failure(self) -> None:
        self.remote.confirm_receipt = False
        with self.assertRaises(ServerFailure) as ctx:
            self.client.send_build(self.build, self.archive)
        self.assertEqual(str(ctx.exception), "Remote instance didn't confirm receiving this build")

    def test_wrong_receipt_is_a_failure(self) -> None:
        self.remote.receipt_override = "someone-else"
        with self.assertRaises(ServerFailure):
            self.client.send_build(self.build, self.archive)

    def test_redirected_upload_resends_the_archive(self) -> None:
        self.remote.redirects["/job/my%20app/build-accept"] = "/job/my%20app/build-accept/"
        self.client.send_build(self.build, self.archive)
        self.assertEqual(self.remote.received[0]["body"], b"tar-bytes" * 100)


if __name__ == "__main__":
    unittest.main()
