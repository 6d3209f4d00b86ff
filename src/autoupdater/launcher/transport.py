from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from autoupdater.common.config import UpdaterConfig
from autoupdater.common.errors import TransportError
from autoupdater.common.security import validate_trusted_url


log = logging.getLogger(__name__)


class Transport(Protocol):
    def download(self, url: str, destination: Path) -> int: ...


class HttpTransport:
    def __init__(self, config: UpdaterConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()
        retry = Retry(
            total=config.max_retries,
            connect=config.max_retries,
            read=config.max_retries,
            status=config.max_retries,
            backoff_factor=0.5,
            status_forcelist=(429, 500, 502, 503, 504),
            allowed_methods=frozenset({"GET", "HEAD"}),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

    def _validate(self, url: str) -> None:
        validate_trusted_url(url, self.config.trusted_hosts, allow_http=self.config.allow_insecure_http)

    def download(self, url: str, destination: Path) -> int:
        self._validate(url)
        log.info("Downloading %s", url)
        bytes_done = 0
        try:
            with self.session.get(
                url,
                stream=True,
                timeout=(self.config.connect_timeout_seconds, self.config.read_timeout_seconds),
            ) as resp:
                resp.raise_for_status()
                self._validate(str(resp.url))
                destination.parent.mkdir(parents=True, exist_ok=True)
                with destination.open("wb") as fh:
                    for chunk in resp.iter_content(chunk_size=self.config.download_chunk_size):
                        if chunk:
                            fh.write(chunk)
                            bytes_done += len(chunk)
        except requests.RequestException as exc:
            raise TransportError(f"Download failed for {url}: {exc}") from exc
        log.debug("Downloaded %s bytes from %s", bytes_done, url)
        return bytes_done
