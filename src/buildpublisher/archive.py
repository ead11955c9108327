from __future__ import annotations

import io
import os
import tarfile
import tempfile
import threading
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from .catalog import BUILD_RECORD, Build, worst_result
from .status import strip_status_elements


@dataclass(slots=True)
class ArchiveSummary:
    files_written: int
    bytes_written: int
    aborted: bool


class _AbortableReader:
    """Feeds tarfile exactly ``size`` bytes, zero-filling once aborted."""

    def __init__(self, handle: BinaryIO, size: int, abort_event: threading.Event) -> None:
        self.handle = handle
        self.remaining = size
        self.abort_event = abort_event

    def read(self, size: int = -1) -> bytes:
        if size < 0 or size > self.remaining:
            size = self.remaining
        if size == 0:
            return b""
        if self.abort_event.is_set():
            chunk = b""
        else:
            chunk = self.handle.read(size)
        if len(chunk) < size:
            chunk += b"\0" * (size - len(chunk))
        self.remaining -= size
        return chunk


def iter_build_files(build_root: Path) -> list[Path]:
    files: list[Path] = []
    for current, dirnames, filenames in os.walk(build_root):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(current) / filename
            if path.is_symlink() or not path.is_file():
                continue
            if path.parent == build_root and filename == BUILD_RECORD:
                continue
            files.append(path)
    return files


def rewrite_metadata(build: Build) -> bytes:
    raw = build.record_path.read_bytes()
    try:
        root = ET.fromstring(raw)
    except ET.ParseError:
        return raw
    strip_status_elements(root)
    if build.project.is_composite:
        node = root.find("result")
        if node is None or not (node.text or "").strip():
            child_results = [result for result in (child.result for child in build.children) if result]
            if node is None:
                node = ET.SubElement(root, "result")
            node.text = worst_result(child_results) or "SUCCESS"
    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class ArchivePackager:
    """Tar stream of a build directory, metadata record last."""

    def __init__(self, abort_event: threading.Event | None = None) -> None:
        self.abort_event = abort_event or threading.Event()

    def write(self, build: Build, fileobj: BinaryIO) -> ArchiveSummary:
        root = build.root_dir
        prefix = root.name
        files_written = 0
        bytes_written = 0
        aborted = False
        with tarfile.open(fileobj=fileobj, mode="w|", format=tarfile.GNU_FORMAT) as tar:
            for path in iter_build_files(root):
                if self.abort_event.is_set():
                    aborted = True
                    break
                arcname = f"{prefix}/{path.relative_to(root).as_posix()}"
                info = tar.gettarinfo(str(path), arcname=arcname)
                info.uname = info.gname = ""
                with path.open("rb") as handle:
                    tar.addfile(info, _AbortableReader(handle, info.size, self.abort_event))
                files_written += 1
                bytes_written += info.size
            if not aborted and self.abort_event.is_set():
                aborted = True
            if not aborted:
                metadata = rewrite_metadata(build)
                info = tarfile.TarInfo(f"{prefix}/{BUILD_RECORD}")
                info.size = len(metadata)
                info.mode = 0o644
                info.mtime = int(build.record_path.stat().st_mtime)
                tar.addfile(info, io.BytesIO(metadata))
                files_written += 1
                bytes_written += info.size
        return ArchiveSummary(files_written=files_written, bytes_written=bytes_written, aborted=aborted)

    @contextmanager
    def package_to_tempfile(self, build: Build) -> Iterator[tuple[Path, ArchiveSummary]]:
        fd, name = tempfile.mkstemp(prefix="buildpublisher_", suffix=".tar")
        path = Path(name)
        try:
            with os.fdopen(fd, "wb") as handle:
                summary = self.write(build, handle)
            yield path, summary
        finally:
            path.unlink(missing_ok=True)
