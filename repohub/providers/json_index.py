from __future__ import annotations

import gzip
import json
import logging
from typing import Any

import requests

from repohub.core.config import AppConfig, FetcherConfig
from repohub.core.errors import UpstreamFetchError
from repohub.providers.base import FetchProgress
from repohub.sync.models import PackageRecord
from repohub.sync.scopes import SyncScope, get_scope

logger = logging.getLogger("fetch")

USER_AGENT = "repohub-sync/0.1"


def pick(item: Any, path: str) -> Any:
    """Resolve a dotted path ("versions.stable") inside nested dicts."""
    if not path:
        return item
    cur = item
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value).strip()


class JsonIndexFetcher:
    """Fetch a whole registry listing published as one JSON document.

    Works for sources like Homebrew's ``formula.json`` or the AUR metadata
    dump; field names are configurable dotted paths.
    """

    def __init__(self, scope: SyncScope, cfg: FetcherConfig, session: requests.Session | None = None):
        self.scope = scope
        self.cfg = cfg
        self.session = session or requests.Session()

    def _download(self) -> Any:
        try:
            res = self.session.get(
                self.cfg.url,
                timeout=self.cfg.timeout_sec,
                headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
            )
            res.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamFetchError(f"{self.scope.key}: request failed: {e}") from e

        body = res.content
        if self.cfg.url.endswith(".gz"):
            try:
                body = gzip.decompress(body)
            except OSError as e:
                raise UpstreamFetchError(f"{self.scope.key}: invalid gzip payload: {e}") from e
        try:
            return json.loads(body)
        except ValueError as e:
            raise UpstreamFetchError(f"{self.scope.key}: invalid JSON payload: {e}") from e

    def fetch(self, progress: FetchProgress) -> list[PackageRecord]:
        logger.info("fetch_started scope=%s url=%s", self.scope.key, self.cfg.url)
        doc = self._download()
        items = pick(doc, self.cfg.records_path)
        if not isinstance(items, list):
            raise UpstreamFetchError(
                f"{self.scope.key}: expected a list at '{self.cfg.records_path or '<root>'}', "
                f"got {type(items).__name__}"
            )

        repository = None if self.scope.platform_wide else self.scope.repository
        total = len(items)
        records: list[PackageRecord] = []
        skipped = 0
        for i, item in enumerate(items, start=1):
            name = _as_text(pick(item, self.cfg.name_field))
            if not name:
                skipped += 1
                continue
            records.append(
                PackageRecord(
                    platform_id=self.scope.platform_id,
                    repository=repository,
                    name=name,
                    version=_as_text(pick(item, self.cfg.version_field)),
                    description=_as_text(pick(item, self.cfg.description_field)),
                )
            )
            progress(i, total, name)

        if total:
            progress(total, total, "")
        logger.info("fetch_completed scope=%s packages=%s skipped=%s", self.scope.key, len(records), skipped)
        return records


def build_fetchers(cfg: AppConfig) -> dict[str, JsonIndexFetcher]:
    fetchers: dict[str, JsonIndexFetcher] = {}
    for key, fetcher_cfg in cfg.fetchers.items():
        scope = get_scope(key)
        fetchers[scope.key] = JsonIndexFetcher(scope, fetcher_cfg)
    return fetchers
