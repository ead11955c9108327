from __future__ import annotations

import logging
import xml.etree.ElementTree as ET

from .app_logging import log_with_fields
from .catalog import Project
from .transfer import PublishError, ServerFailure, TransferClient, job_url
from .utils import join_url, quote_segment

INCOMING_BUILDS_PROPERTY = "buildpublisher.IncomingBuildsProperty"
MAIL_NOTIFIER_TAGS = frozenset({"mailer", "mavenMailer"})
PUBLISHER_TAGS = frozenset({"buildPublisher", "mavenBuildPublisher"})
STEP_CONTAINERS = ("publishers", "reporters")


class ParentProjectMissing(PublishError):
    """A child project's parent is absent remotely; retrying will not help."""


def prepare_config(project: Project) -> bytes:
    """Configuration as the remote copy should see it: no triggers, mailers or publishers."""
    raw = project.config_path.read_bytes()
    try:
        root = ET.fromstring(raw)
    except ET.ParseError:
        return raw

    for container_tag in STEP_CONTAINERS:
        for container in list(root.iter(container_tag)):
            for node in list(container):
                if node.tag in MAIL_NOTIFIER_TAGS or node.tag in PUBLISHER_TAGS:
                    container.remove(node)

    properties = root.find("properties")
    if properties is None:
        properties = ET.SubElement(root, "properties")
    if not any(node.tag == INCOMING_BUILDS_PROPERTY for node in properties):
        ET.SubElement(properties, INCOMING_BUILDS_PROPERTY)

    for triggers in root.findall("triggers"):
        root.remove(triggers)

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class RemoteSynchronizer:
    def __init__(self, client: TransferClient, logger: logging.Logger) -> None:
        self.client = client
        self.logger = logger

    @property
    def base_url(self) -> str:
        return self.client.target.base_url

    def project_exists(self, url: str) -> bool:
        status = self.client.probe(url)
        if status < 300:
            return True
        if status in {400, 404}:
            return False
        raise ServerFailure(f"{url}: server responded with status {status}")

    def assert_reachable(self) -> None:
        if not self.project_exists(self.base_url):
            raise ServerFailure(f"{self.base_url}: URL doesn't exist")

    def synchronize(self, project: Project) -> None:
        self.assert_reachable()
        if project.parent is not None:
            # Siblings run independently; only publishing the parent may create it.
            parent_url = job_url(self.base_url, project.parent)
            if not self.project_exists(parent_url):
                raise ParentProjectMissing(
                    "The parent project doesn't exist on the remote instance. "
                    "Please create it (e.g. by publishing the parent build) and try again."
                )
            return
        self.create_or_update(project)
        self.synchronize_children(project)

    def create_or_update(self, project: Project) -> None:
        project_url = job_url(self.base_url, project)
        if not self.project_exists(project_url):
            create_url = join_url(self.base_url, f"createItem?name={quote_segment(project.name)}")
            self.client.post_xml(create_url, None)
            log_with_fields(
                self.logger,
                logging.INFO,
                "remote_project_created",
                target=self.client.target.name,
                project=project.full_name,
            )
        self.client.post_xml(join_url(project_url, "config-accept"), prepare_config(project))

    def synchronize_children(self, project: Project) -> None:
        project_url = job_url(self.base_url, project)
        for child in project.children:
            accept_url = join_url(project_url, f"module-accept?name={quote_segment(child.name)}")
            self.client.post_xml(accept_url, prepare_config(child))
            self.synchronize_children(child)
