"""Loaders that supply blocklist rules from memory, local files or HTTP."""

from __future__ import annotations

import contextlib
import hashlib
import logging
import os
import tempfile
import time
from typing import Optional

import httpx

from .base import BlocklistLoader

log = logging.getLogger(__name__)

HTTP_TIMEOUT = 30 * 60.0


def _split_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _read_file_lines(filename: str) -> list[str]:
    with open(filename, encoding="utf-8", errors="replace", newline="") as f:
        return _split_lines(f.read())


class StaticLoader(BlocklistLoader):
    """A fixed ruleset held in memory."""

    def __init__(self, rules) -> None:
        self.rules = list(rules)

    def load(self) -> list[str]:
        return list(self.rules)


class FileLoader(BlocklistLoader):
    """Reads rules from a local file, one per line."""

    def __init__(self, filename: str, allow_failure: bool = False) -> None:
        self.filename = filename
        self.allow_failure = allow_failure
        self._last_success: list[str] = []

    def load(self) -> list[str]:
        log.debug("loading blocklist from %s", self.filename)
        try:
            rules = _read_file_lines(self.filename)
        except OSError as exc:
            if self.allow_failure:
                log.warning(
                    "failed to load blocklist %s, continuing with previous ruleset: %s",
                    self.filename,
                    exc,
                )
                return list(self._last_success)
            self._last_success = []
            raise
        self._last_success = rules
        log.debug("completed loading blocklist from %s", self.filename)
        return list(rules)


class HTTPLoader(BlocklistLoader):
    """Reads rules from a server via HTTP(S), optionally caching them on disk.

    With a cache directory, the first load is served from the cached copy if
    there is one; later loads always go to the server.
    """

    def __init__(
        self,
        url: str,
        cache_dir: str = "",
        allow_failure: bool = False,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self.cache_dir = cache_dir
        self.allow_failure = allow_failure
        self._client = client
        self._from_disk = bool(cache_dir)
        self._last_success: list[str] = []

    def load(self) -> list[str]:
        log.debug("loading blocklist from %s", self.url)
        try:
            rules = self._load()
        except (OSError, httpx.HTTPError) as exc:
            if self.allow_failure:
                log.warning(
                    "failed to load blocklist %s, continuing with previous ruleset: %s",
                    self.url,
                    exc,
                )
                return list(self._last_success)
            self._last_success = []
            raise
        self._last_success = rules
        return list(rules)

    def cache_filename(self) -> str:
        """Path of the cache file: the SHA256 of the URL inside the cache directory."""
        name = hashlib.sha256(self.url.encode()).hexdigest()
        return os.path.join(self.cache_dir, name)

    def _load(self) -> list[str]:
        if self._from_disk:
            self._from_disk = False
            start = time.monotonic()
            try:
                rules = _read_file_lines(self.cache_filename())
            except OSError as exc:
                log.warning(
                    "unable to load cached list from disk, loading from upstream: %s", exc
                )
            else:
                log.debug(
                    "loaded blocklist from cache-dir in %.3fs", time.monotonic() - start
                )
                return rules

        start = time.monotonic()
        text = self._fetch()
        rules = _split_lines(text)
        log.debug("completed loading blocklist in %.3fs", time.monotonic() - start)

        if self.cache_dir:
            try:
                self._write_to_disk(rules)
            except OSError as exc:
                log.error("failed to write rules to cache: %s", exc)
        return rules

    def _fetch(self) -> str:
        if self._client is not None:
            response = self._client.get(self.url)
        else:
            with httpx.Client(follow_redirects=True, timeout=HTTP_TIMEOUT) as client:
                response = client.get(self.url)
        if not 200 <= response.status_code <= 299:
            raise httpx.HTTPStatusError(
                f"got unexpected status code {response.status_code} from {self.url}",
                request=response.request,
                response=response,
            )
        return response.text

    def _write_to_disk(self, rules: list[str]) -> None:
        fd, tmp_name = tempfile.mkstemp(prefix="routedns", dir=self.cache_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                f.write("".join(rule + "\n" for rule in rules))
            os.replace(tmp_name, self.cache_filename())
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.remove(tmp_name)