"""
Asset Cache Manager
===================

Keeps the unpacked runner bundle in the runner directory in sync with the
latest upstream release.

The release listing is reduced to a canonical record

  {"tag": <tag_name>, "assets": [{"name": ..., "url": ...}, ...]}

whose SHA-1 is stored in `.release-hash`. Same hash → nothing to do, so a
container restart never downloads anything; a new release → wipe the old
bundle and unpack the new one.
"""

from __future__ import annotations
import hashlib
import json
import logging
import re
import shutil
import subprocess
from pathlib import Path
from typing import Optional

import requests

from .api_client import ApiClient
from .errors import AssetError
from .privilege import RuntimeIdentity

log = logging.getLogger(__name__)

MARKER_FILE    = ".release-hash"
ASSET_PATTERN  = re.compile(r"linux-x64")
BUNDLE_DIRS    = ("bin", "externals")
DOWNLOAD_CHUNK = 1024 * 1024


def release_record(release: dict) -> dict:
    return {
        "tag":    release.get("tag_name"),
        "assets": [
            {"name": a.get("name"), "url": a.get("browser_download_url")}
            for a in release.get("assets") or []
        ],
    }


def release_fingerprint(release: dict) -> str:
    canonical = json.dumps(release_record(release), separators=(",", ":"))
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def select_asset(release: dict) -> Optional[dict]:
    for asset in release.get("assets") or []:
        if ASSET_PATTERN.search(asset.get("name") or "") and asset.get("browser_download_url"):
            return asset
    return None


class AssetCache:
    def __init__(
        self,
        client:       ApiClient,
        runner_dir:   Path,
        releases_url: str,
        identity:     Optional[RuntimeIdentity] = None,
    ):
        self.client       = client
        self.runner_dir   = Path(runner_dir)
        self.releases_url = releases_url
        self.identity     = identity

    @property
    def marker(self) -> Path:
        return self.runner_dir / MARKER_FILE

    def ensure_asset(self, credential: Optional[str] = None) -> Path:
        """Make sure the latest runner release is unpacked. Idempotent."""
        log.info("Determining runner asset (linux x64) from the releases API")
        self.client.credential = credential
        resp = self.client.call_json("GET", self.releases_url)
        if not resp.ok or not isinstance(resp.data, dict):
            raise AssetError(f"Failed to list runner releases — {resp.describe()}")

        release = resp.data
        asset = select_asset(release)
        if asset is None:
            raise AssetError(
                f"Failed to determine runner download URL from releases API "
                f"(tag {release.get('tag_name')!r}, message {release.get('message')!r})"
            )

        fingerprint = release_fingerprint(release)
        if self._cached_fingerprint() == fingerprint:
            log.info(f"Runner {release.get('tag_name')} already installed (release hash: {fingerprint})")
            return self.runner_dir

        self._bootstrap(asset, fingerprint)
        return self.runner_dir

    def _cached_fingerprint(self) -> Optional[str]:
        if not self.marker.is_file():
            return None
        return self.marker.read_text().strip()

    def _bootstrap(self, asset: dict, fingerprint: str):
        log.info(f"Bootstrapping runner {asset['name']} (release hash: {fingerprint})")
        self.runner_dir.mkdir(parents=True, exist_ok=True)
        self._clear_bundle()

        tarball = self.runner_dir / asset["name"]
        try:
            self._download(asset["browser_download_url"], tarball)
            result = subprocess.run(
                ["tar", "xzf", str(tarball), "-C", str(self.runner_dir)],
                capture_output=True, text=True, timeout=600,
            )
            if result.returncode != 0:
                raise AssetError(f"Failed to unpack {tarball.name}: {result.stderr[:300]}")
        finally:
            tarball.unlink(missing_ok=True)

        self.marker.write_text(f"{fingerprint}\n")
        self._hand_over()

    def _clear_bundle(self):
        for name in BUNDLE_DIRS:
            shutil.rmtree(self.runner_dir / name, ignore_errors=True)
        for script in self.runner_dir.glob("*.sh"):
            script.unlink(missing_ok=True)

    def _download(self, url: str, dest: Path):
        log.info(f"Downloading {url}")
        try:
            with self.client.session.get(url, stream=True, timeout=self.client.timeout) as resp:
                resp.raise_for_status()
                with open(dest, "wb") as fh:
                    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        fh.write(chunk)
        except requests.RequestException as e:
            raise AssetError(f"Failed to download runner from {url}: {e}")

    def _hand_over(self):
        """chown the bundle to the runtime user so config.sh can write into it."""
        if self.identity is None:
            return
        result = subprocess.run(
            ["chown", "-R", f"{self.identity.uid}:{self.identity.gid}", str(self.runner_dir)],
            capture_output=True, text=True, timeout=120,
        )
        if result.returncode != 0:
            log.warning(f"chown of {self.runner_dir} failed: {result.stderr[:200]}")
