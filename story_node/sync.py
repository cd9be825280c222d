import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests

from story_node.config_patcher import read_value
from story_node.errors import HeightUnavailable, InstallerError
from story_node.settings import NodeSettings

logger = logging.getLogger(__name__)

HEIGHT_RE = re.compile(r"^[0-9]+$")


@dataclass(frozen=True)
class SyncSample:
    local_height: int
    reference_height: int
    timestamp: float

    @property
    def remaining(self) -> int:
        return max(0, self.reference_height - self.local_height)

    @property
    def synced(self) -> bool:
        return self.remaining == 0


def parse_height(payload: Any) -> int:
    """`result.sync_info.latest_block_height` of a CometBFT /status document"""
    try:
        raw = payload["result"]["sync_info"]["latest_block_height"]
    except (KeyError, TypeError):
        raise HeightUnavailable("latest_block_height missing from status response")
    raw = str(raw).strip() if isinstance(raw, (str, int)) and not isinstance(raw, bool) else ""
    if not HEIGHT_RE.match(raw):
        raise HeightUnavailable(f"not a block height: {raw!r}")
    return int(raw)


def local_status_url(settings: NodeSettings) -> str:
    laddr = read_value(settings.config_toml, "laddr", section="rpc")
    if not laddr:
        raise InstallerError(f"no [rpc] laddr found in {settings.config_toml}")
    port = laddr.rsplit(":", 1)[-1]
    if not port.isdigit():
        raise InstallerError(f"cannot read the RPC port from laddr = {laddr!r}")
    return f"http://localhost:{port}/status"


class SyncMonitor:
    """Polls the local and a reference /status endpoint until the gap is zero"""

    def __init__(
        self,
        local_url: str,
        reference_url: str,
        session: Optional[requests.Session] = None,
        interval: float = 5.0,
        timeout: float = 10.0,
        max_failures: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.local_url = local_url
        self.reference_url = reference_url
        self.session = session or requests.Session()
        self.interval = interval
        self.timeout = timeout
        self.max_failures = max_failures
        self.sleep = sleep
        self.clock = clock

    def fetch_height(self, url: str) -> int:
        try:
            r = self.session.get(url, timeout=self.timeout)
            r.raise_for_status()
            payload = r.json()
        except (requests.RequestException, ValueError) as e:
            raise HeightUnavailable(f"{url}: {e}")
        return parse_height(payload)

    def sample(self) -> SyncSample:
        local = self.fetch_height(self.local_url)
        reference = self.fetch_height(self.reference_url)
        return SyncSample(local, reference, self.clock())

    def run(self) -> Optional[SyncSample]:
        """
        Block until the node is synchronized and return the final sample.
        Bad samples are retried forever unless max_failures is set, in which
        case None is returned once that many consecutive samples failed.
        """
        failures = 0
        while True:
            try:
                sample = self.sample()
            except HeightUnavailable as e:
                failures += 1
                logger.warning("Invalid block height data. Retrying...")
                logger.debug(str(e))
                if self.max_failures is not None and failures >= self.max_failures:
                    logger.error(f"Giving up after {failures} failed samples")
                    return None
                self.sleep(self.interval)
                continue
            failures = 0

            logger.info(
                f"Your node height: {sample.local_height} | "
                f"Network height: {sample.reference_height} | "
                f"Remaining blocks: {sample.remaining}"
            )
            if sample.synced:
                logger.info("Your node is synchronized")
                return sample
            self.sleep(self.interval)


def monitor_for(settings: NodeSettings, session: Optional[requests.Session] = None) -> SyncMonitor:
    return SyncMonitor(
        local_status_url(settings),
        settings.reference_status_url,
        session=session,
        interval=settings.poll_interval,
    )
