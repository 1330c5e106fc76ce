from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import requests

from .tasks import Progress


logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"
RELEASES_URL = "https://api.github.com/repos/{repo}/releases/latest"
DEFAULT_REPO = "landaire/wows-toolkit"
CHUNK_SIZE = 64 * 1024
TIMEOUT = 30


@dataclass(frozen=True)
class Release:
    tag: str
    asset_url: str
    asset_name: str


def _version_tuple(tag: str) -> tuple[int, ...]:
    parts = []
    for piece in tag.lstrip("vV").split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def is_newer(tag: str, current: str) -> bool:
    return _version_tuple(tag) > _version_tuple(current)


def fetch_latest_release(repo: str = DEFAULT_REPO, session: Any = None, asset_suffix: str = ".exe") -> Optional[Release]:
    http = session or requests
    response = http.get(RELEASES_URL.format(repo=repo), timeout=TIMEOUT)
    response.raise_for_status()
    data = response.json()
    for asset in data.get("assets", []):
        name = str(asset.get("name", ""))
        if name.endswith(asset_suffix):
            return Release(
                tag=str(data.get("tag_name", "")),
                asset_url=str(asset.get("browser_download_url", "")),
                asset_name=name,
            )
    logger.info("Release %s has no %s asset", data.get("tag_name"), asset_suffix)
    return None


def download_file(
    url: str,
    dest_dir: Path,
    report: Callable[[Progress], None],
    session: Any = None,
    chunk_size: int = CHUNK_SIZE,
) -> Path:
    """Stream ``url`` into ``dest_dir``, reporting a monotonic 0.0-1.0 fraction."""
    http = session or requests
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    name = Path(urlparse(url).path).name or "update.bin"
    target = dest_dir / name
    partial = dest_dir / (name + ".part")

    response = http.get(url, stream=True, timeout=TIMEOUT)
    response.raise_for_status()
    total = int(response.headers.get("content-length") or 0)
    received = 0
    report(Progress(0.0, name))
    with partial.open("wb") as handle:
        for chunk in response.iter_content(chunk_size=chunk_size):
            if not chunk:
                continue
            handle.write(chunk)
            received += len(chunk)
            if total:
                report(Progress(min(1.0, received / total), name))
    os.replace(partial, target)
    report(Progress(1.0, name))
    logger.info("Downloaded %s (%d bytes)", target, received)
    return target
