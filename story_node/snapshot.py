"""
Replace the node's chain state with a snapshot from one of the mirrors.

RUNNING -> STOPPED -> WIPED -> DOWNLOADING -> RESTORED -> RUNNING

Each step either completes or raises; nothing after a failed step runs. The
validator signing-state file is copied out of the data directory before the
wipe and must be back in place before either service is started again.
"""

import enum
import logging
import shutil
from pathlib import Path
from typing import Callable, Iterable, Optional

import requests
from tabulate import tabulate

from story_node.errors import CommandError, CriticalStateError, InvalidChoiceError, ServiceError, SnapshotError
from story_node.runner import ShellRunner
from story_node.services import ServiceController
from story_node.settings import Mirror, NodeSettings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class SnapshotState(enum.Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    WIPED = "wiped"
    DOWNLOADING = "downloading"
    RESTORED = "restored"


def mirror_table(settings: NodeSettings) -> str:
    rows = [[m.key, m.label] for m in settings.mirrors.values()]
    return tabulate(rows, headers=["#", "Source"], tablefmt="simple")


def select_mirror(settings: NodeSettings, choice: str) -> Mirror:
    choice = (choice or "").strip()
    mirror = settings.mirrors.get(choice)
    if mirror is None:
        keys = " or ".join(settings.mirrors)
        raise InvalidChoiceError(f"Invalid choice {choice!r}, expected {keys}. Exiting.")
    return mirror


class ArchiveFetcher:
    """Streams an lz4 tarball over HTTP straight into `lz4 -d | tar -x`"""

    def __init__(self, runner: ShellRunner, session: Optional[requests.Session] = None, timeout: float = 60):
        self.runner = runner
        self.session = session or requests.Session()
        self.timeout = timeout

    def _chunks(self, response) -> Iterable[bytes]:
        received = 0
        next_report = 1024 ** 3
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            received += len(chunk)
            if received >= next_report:
                logger.info(f"  ... {received / 1024 ** 3:.1f} GiB received")
                next_report += 1024 ** 3
            yield chunk

    def __call__(self, url: str, target_dir: Path):
        try:
            target_dir.mkdir(parents=True, exist_ok=True)
            with self.session.get(url, stream=True, timeout=self.timeout, allow_redirects=True) as r:
                r.raise_for_status()
                self.runner.feed_pipeline(
                    [["lz4", "-c", "-d", "-"], ["tar", "-x", "-C", str(target_dir)]],
                    self._chunks(r),
                )
        except requests.RequestException as e:
            raise SnapshotError(f"download of {url} failed: {e}", step="download")
        except CommandError as e:
            raise SnapshotError(f"extraction of {url} into {target_dir} failed: {e}", step="download")
        except OSError as e:
            raise SnapshotError(f"cannot prepare {target_dir}: {e.strerror or e}", step="download")


class SnapshotInstaller:

    def __init__(
        self,
        settings: NodeSettings,
        controller: ServiceController,
        fetch: Callable[[str, Path], None],
    ):
        self.settings = settings
        self.controller = controller
        self.fetch = fetch
        self.state = SnapshotState.RUNNING

    @property
    def services(self):
        return [self.settings.story_service, self.settings.geth_service]

    def stop_services(self):
        for name in self.services:
            logger.info(f"Stopping {name} service...")
            try:
                self.controller.stop(name)
            except ServiceError as e:
                raise SnapshotError(f"Failed to stop {name} service: {e.message}", step="stop")
        self.state = SnapshotState.STOPPED

    def backup_signing_state(self):
        s = self.settings
        logger.info(f"Backing up {s.signing_state.name}...")
        try:
            shutil.copy2(s.signing_state, s.signing_state_backup)
        except OSError as e:
            raise SnapshotError(f"Failed to backup {s.signing_state}: {e.strerror or e}", step="backup")

    def wipe(self):
        logger.info("Removing existing data directories...")
        for path in (self.settings.story_data_dir, self.settings.chaindata_dir):
            try:
                shutil.rmtree(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                raise SnapshotError(f"Failed to remove {path}: {e.strerror or e}", step="wipe")
        self.state = SnapshotState.WIPED

    def download(self, mirror: Mirror):
        self.state = SnapshotState.DOWNLOADING
        s = self.settings
        targets = [
            ("Story", mirror.story_url, s.story_home),
            ("Story-Geth", mirror.geth_url, s.geth_data_dir),
        ]
        for label, url, target in targets:
            logger.info(f"Downloading and extracting {label} data from {mirror.label}...")
            try:
                self.fetch(url, target)
            except SnapshotError:
                raise
            except Exception as e:
                raise SnapshotError(f"Failed to download or extract {label} data: {e}", step="download")

    def restore_signing_state(self):
        s = self.settings
        logger.info(f"Restoring {s.signing_state.name}...")
        if not s.signing_state_backup.is_file():
            raise CriticalStateError(
                f"backup {s.signing_state_backup} is missing; refusing to restart a validator "
                "without its signing state (risk of double signing). Restore it manually.",
                step="restore",
            )
        try:
            s.story_data_dir.mkdir(parents=True, exist_ok=True)
            shutil.move(str(s.signing_state_backup), str(s.signing_state))
        except OSError as e:
            raise CriticalStateError(f"Failed to restore {s.signing_state}: {e.strerror or e}", step="restore")
        self.state = SnapshotState.RESTORED

    def restart_services(self):
        if self.state is not SnapshotState.RESTORED:
            raise CriticalStateError("signing state was not restored; services stay stopped", step="restart")
        started = []
        for name in self.services:
            logger.info(f"Restarting {name} service...")
            try:
                self.controller.restart(name)
            except ServiceError as e:
                for other in started:
                    try:
                        self.controller.stop(other)
                    except ServiceError as stop_err:
                        logger.error(f"Could not stop {other} after failed restart: {stop_err.message}")
                raise SnapshotError(f"Failed to restart {name} service: {e.message}", step="restart")
            started.append(name)
        self.state = SnapshotState.RUNNING

    def run(self, choice: str) -> Mirror:
        """Full replace; `choice` is validated before anything is stopped"""
        mirror = select_mirror(self.settings, choice)
        self.stop_services()
        self.backup_signing_state()
        self.wipe()
        self.download(mirror)
        self.restore_signing_state()
        self.restart_services()
        logger.info("Snapshot installed, services restarted.")
        return mirror
