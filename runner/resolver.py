"""Runner script resolution.

Order of preference for a job type:

1. the script package the broker has activated for it (downloaded once per
   version into ``<scripts_dir>/<job_type>/<version>/`` and reused afterwards)
2. the script bundled with the runner (``local_entry``)

Any failure while installing or resolving a broker package is raised as
``ScriptInstallError`` / ``ScriptResolutionError``; the caller fails the job
instead of silently falling back. Only an explicit "no package" answer from
the broker selects the bundled script.
"""
from __future__ import annotations

import asyncio
import hashlib
import io
import re
import shutil
import tarfile
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Optional

import structlog
from filelock import FileLock, Timeout

from domain.models import Job

from .bootstrap import RUNNER_SCRIPT_RESOLUTIONS_TOTAL
from .broker_client import BrokerClient
from .errors import ScriptInstallError, ScriptResolutionError
from .local_entry import local_runner_script_entry

ENTRY_CANDIDATES = ("__main__.py", "main.py")
INSTALLED_MARKER = ".installed"
LOCK_TIMEOUT_SECONDS = 120

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(value: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", value).strip("._")
    return cleaned or "_"


@dataclass(frozen=True)
class ResolvedScript:
    entry: Path
    source: str  # "dynamic" | "local"
    version: Optional[str] = None


class ScriptResolver:
    def __init__(self, broker: BrokerClient, scripts_dir: Path | str) -> None:
        self.broker = broker
        self.scripts_dir = Path(scripts_dir)
        self.logger = structlog.get_logger().bind(component="script_resolver")

    async def resolve(self, job: Job) -> ResolvedScript:
        try:
            package = await self.broker.install_activated_runner_script(job.job_type)
        except Exception as exc:
            raise ScriptInstallError(
                f"Failed to install runner script [event={job.job_type}, id={job.job_id}]: {exc}"
            ) from exc

        if package:
            try:
                resolved = await self.install(job.job_type, package)
            except (ScriptInstallError, ScriptResolutionError):
                raise
            except Exception as exc:
                raise ScriptInstallError(
                    f"Failed to install runner script [event={job.job_type}, id={job.job_id}]: {exc}"
                ) from exc
            RUNNER_SCRIPT_RESOLUTIONS_TOTAL.labels(source="dynamic").inc()
            return resolved

        entry = local_runner_script_entry(job.job_type)
        RUNNER_SCRIPT_RESOLUTIONS_TOTAL.labels(source="local").inc()
        self.logger.debug("runner_script_local", job_type=job.job_type, entry=str(entry))
        return ResolvedScript(entry=entry, source="local")

    async def install(self, job_type: str, package: dict[str, Any]) -> ResolvedScript:
        url = str(package["url"])
        sha256 = package.get("sha256")
        version = str(package.get("version") or sha256 or "latest")
        target = self.scripts_dir / _safe_name(job_type) / _safe_name(version)

        if not (target / INSTALLED_MARKER).exists():
            data = await self.broker.download(url)
            if sha256 and hashlib.sha256(data).hexdigest() != str(sha256).lower():
                raise ScriptInstallError(f"checksum mismatch for {job_type}@{version}")
            await asyncio.to_thread(self._unpack, data, url, target)
            self.logger.info("runner_script_installed", job_type=job_type, version=version, path=str(target))

        entry = self._find_entry(target, package.get("entry"))
        return ResolvedScript(entry=entry, source="dynamic", version=version)

    # ------------------------------------------------------------
    # Unpacking (runs in a thread; guarded by a file lock so concurrent
    # runners sharing SCRIPTS_DIR never see a half-written package)
    # ------------------------------------------------------------
    def _unpack(self, data: bytes, url: str, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(str(target) + ".lock", timeout=LOCK_TIMEOUT_SECONDS)
        try:
            with lock:
                if (target / INSTALLED_MARKER).exists():
                    return
                staging = target.with_name(target.name + ".staging")
                shutil.rmtree(staging, ignore_errors=True)
                staging.mkdir(parents=True)
                try:
                    _extract(data, url, staging)
                    shutil.rmtree(target, ignore_errors=True)
                    staging.rename(target)
                except BaseException:
                    shutil.rmtree(staging, ignore_errors=True)
                    raise
                (target / INSTALLED_MARKER).write_text(url, encoding="utf-8")
        except Timeout as exc:
            raise ScriptInstallError(f"timed out waiting for install lock {lock.lock_file}") from exc

    def _find_entry(self, root: Path, declared: Any) -> Path:
        root = root.resolve()
        if declared:
            candidate = (root / str(declared)).resolve()
            if root not in candidate.parents or not candidate.is_file():
                raise ScriptResolutionError(f"declared entry {declared!r} not found in {root}")
            return candidate
        search = [root]
        children = [p for p in root.iterdir() if p.is_dir() and not p.name.startswith(".")]
        if len(children) == 1:
            # tarballs usually wrap everything in a single top-level directory
            search.append(children[0])
        for base in search:
            for name in ENTRY_CANDIDATES:
                if (base / name).is_file():
                    return base / name
        raise ScriptResolutionError(f"no entry point ({', '.join(ENTRY_CANDIDATES)}) found in {root}")


def _check_member(name: str) -> None:
    path = PurePosixPath(name)
    if path.is_absolute() or ".." in path.parts:
        raise ScriptInstallError(f"unsafe path in script archive: {name!r}")


def _extract(data: bytes, url: str, dest: Path) -> None:
    buffer = io.BytesIO(data)
    if zipfile.is_zipfile(buffer):
        with zipfile.ZipFile(buffer) as zf:
            for name in zf.namelist():
                _check_member(name)
            zf.extractall(dest)
        return
    buffer.seek(0)
    try:
        with tarfile.open(fileobj=buffer, mode="r:*") as tf:
            members = tf.getmembers()
            for member in members:
                _check_member(member.name)
                if member.issym() or member.islnk():
                    raise ScriptInstallError(f"links are not allowed in script archives: {member.name!r}")
            if hasattr(tarfile, "data_filter"):
                tf.extractall(dest, members=members, filter="data")
            else:  # pragma: no cover - interpreters without extraction filters
                tf.extractall(dest, members=members)
        return
    except tarfile.ReadError:
        pass
    if url.split("?", 1)[0].endswith(".py"):
        (dest / "main.py").write_bytes(data)
        return
    raise ScriptInstallError(f"unsupported script archive format: {url}")
