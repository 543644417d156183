import io
import logging
import shlex
import tarfile
import time
from pathlib import PurePosixPath
from typing import Dict, Iterable, Optional

from docker.errors import DockerException, ImageNotFound, NotFound
from docker.types import Mount

from ..runner.errors import RunnerError
from .client import ENGINE_ERRORS

logger = logging.getLogger(__name__)

HELPER_IMAGE = "alpine:latest"
MOUNT_POINT = "/data"
COPY_SOURCE = "/source"
MANAGED_LABEL = "botfleet.managed"

_COPY_SCRIPT = f"""\
set -e
cd {COPY_SOURCE}
find . -type f | while IFS= read -r f; do
    mkdir -p "{MOUNT_POINT}/$(dirname "$f")"
    cp "$f" "{MOUNT_POINT}/$f.partial"
    mv -f "{MOUNT_POINT}/$f.partial" "{MOUNT_POINT}/$f"
done
"""

# uid/gid of the user freqtrade images run as
FREQTRADE_UID = 1000


class VolumeError(DockerException):
    """A helper container did not complete its volume operation."""


def _safe_relative(path: str) -> str:
    rel = PurePosixPath(path)
    if rel.is_absolute() or not rel.parts or ".." in rel.parts:
        raise ValueError(f"invalid volume path: {path!r}")
    return str(rel)


def build_tar(files: Dict[str, bytes], uid: int = FREQTRADE_UID) -> bytes:
    """Tar archive of `files` including entries for every parent directory."""
    buf = io.BytesIO()
    now = time.time()
    dirs = set()
    for name in files:
        for parent in PurePosixPath(_safe_relative(name)).parents:
            if str(parent) != ".":
                dirs.add(str(parent))

    with tarfile.open(fileobj=buf, mode="w") as tar:
        for directory in sorted(dirs):
            info = tarfile.TarInfo(directory)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            info.uid = info.gid = uid
            info.mtime = now
            tar.addfile(info)
        for name, content in files.items():
            info = tarfile.TarInfo(_safe_relative(name))
            info.size = len(content)
            info.mode = 0o644
            info.uid = info.gid = uid
            info.mtime = now
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def read_tar_member(chunks: Iterable[bytes]) -> bytes:
    """Contents of the single file in a get_archive stream."""
    with tarfile.open(fileobj=io.BytesIO(b"".join(chunks)), mode="r") as tar:
        for member in tar.getmembers():
            if member.isfile():
                return tar.extractfile(member).read()
    raise FileNotFoundError("archive contains no regular file")


class VolumeHelper:
    """
    Reads and writes named volumes through short-lived helper containers,
    which works the same against a local or a remote daemon.
    """

    def __init__(self, client, image: str = HELPER_IMAGE):
        self.client = client
        self.image = image

    def ensure_image(self):
        try:
            self.client.images.get(self.image)
        except ImageNotFound:
            logger.info(f"Pulling helper image {self.image}")
            self.client.images.pull(self.image)

    def ensure_volume(self, volume: str, labels: Optional[Dict[str, str]] = None):
        try:
            self.client.volumes.get(volume)
        except NotFound:
            logger.info(f"Creating volume {volume}")
            self.client.volumes.create(name=volume, labels={MANAGED_LABEL: "true", **(labels or {})})

    def _helper(self, volume: str, command, read_only: bool):
        self.ensure_image()
        return self.client.containers.create(
            self.image,
            command=command,
            mounts=[Mount(target=MOUNT_POINT, source=volume, type="volume", read_only=read_only)],
            labels={MANAGED_LABEL: "true", "botfleet.component": "volume-helper"},
            network_mode="none",
        )

    def write_files(self, volume: str, files: Dict[str, bytes]):
        if not files:
            return
        archive = build_tar(files)
        container = self._helper(volume, ["true"], read_only=False)
        try:
            if not container.put_archive(MOUNT_POINT, archive):
                raise VolumeError(f"failed to copy files into volume {volume}")
        finally:
            container.remove(force=True)

    def read_file(self, volume: str, path: str) -> bytes:
        container = self._helper(volume, ["true"], read_only=True)
        try:
            stream, _ = container.get_archive(f"{MOUNT_POINT}/{_safe_relative(path)}")
            return read_tar_member(stream)
        finally:
            container.remove(force=True)

    def remove_path(self, volume: str, path: str):
        target = f"{MOUNT_POINT}/{_safe_relative(path)}"
        container = self._helper(volume, ["rm", "-rf", target], read_only=False)
        try:
            container.start()
            result = container.wait()
            if result.get("StatusCode", 0) != 0:
                logs = container.logs(stdout=True, stderr=True).decode(errors="replace")
                raise VolumeError(f"removing {shlex.quote(target)} exited with code {result['StatusCode']}: {logs}")
        finally:
            container.remove(force=True)

    def copy_volume(self, source: str, target: str):
        """
        Copy every file of `source` into `target`, replacing existing files.

        Each file is written under a temporary name and renamed into place,
        so readers of `target` never see a partial file.
        """
        self.ensure_image()
        container = self.client.containers.create(
            self.image,
            command=["sh", "-c", _COPY_SCRIPT],
            mounts=[
                Mount(target=COPY_SOURCE, source=source, type="volume", read_only=True),
                Mount(target=MOUNT_POINT, source=target, type="volume"),
            ],
            labels={MANAGED_LABEL: "true", "botfleet.component": "volume-helper"},
            network_mode="none",
        )
        try:
            container.start()
            result = container.wait()
            if result.get("StatusCode", 0) != 0:
                logs = container.logs(stdout=True, stderr=True).decode(errors="replace")
                raise VolumeError(f"copying {source} into {target} exited with code {result['StatusCode']}: {logs}")
        finally:
            container.remove(force=True)

    def remove_volume(self, volume: str):
        try:
            self.client.volumes.get(volume).remove(force=True)
        except NotFound:
            pass


class DockerVolumeWriter:
    """Config file writer backed by one named volume."""

    def __init__(self, helper: VolumeHelper, volume: str):
        self.helper = helper
        self.volume = volume

    def write_files(self, files: Dict[str, bytes]) -> None:
        try:
            self.helper.ensure_volume(self.volume)
            self.helper.write_files(self.volume, files)
        except ENGINE_ERRORS as e:
            raise RunnerError("InjectConfig", "", e, retryable=True) from e
        except ValueError as e:
            raise RunnerError("InjectConfig", "", e) from e

    def remove_directory(self, relative_path: str) -> None:
        try:
            self.helper.remove_path(self.volume, relative_path)
        except ENGINE_ERRORS as e:
            raise RunnerError("RemoveConfig", relative_path, e, retryable=True) from e
