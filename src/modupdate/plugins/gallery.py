"""
Module Update Manager - Gallery Plugin
Queries and installs packages from a NuGet v2 (OData) gallery feed such as
the PowerShell Gallery.
"""

import tempfile
import threading
import zipfile
from pathlib import Path
from typing import Optional
from xml.etree import ElementTree as ET
import logging

import requests

from modupdate.core.version import PackageVersion, parse_version, highest_version, versions_equal
from .base import (
    RepositoryPlugin,
    RepositoryError,
    RemoteVersion,
    InstallResult,
)
from .nupkg import extract_package

logger = logging.getLogger(__name__)

ATOM_NS = "http://www.w3.org/2005/Atom"
DATA_NS = "http://schemas.microsoft.com/ado/2007/08/dataservices"
META_NS = "http://schemas.microsoft.com/ado/2007/08/dataservices/metadata"

USER_AGENT = "ModuleUpdateManager/1.0"
MAX_PAGES = 20


class GalleryPlugin(RepositoryPlugin):
    """Plugin for NuGet v2 gallery feeds."""

    DEFAULT_URL = "https://www.powershellgallery.com/api/v2"

    def __init__(self, name: str, config: dict):
        """
        Initialize the gallery plugin.

        Args:
            name: Repository name.
            config: Configuration dict with:
                - url: Feed base URL (defaults to the PowerShell Gallery)
                - timeout: Seconds per feed request
                - download_timeout: Seconds per package download
        """
        super().__init__(name, config)
        self.url = config.get("url", self.DEFAULT_URL).rstrip("/")
        self.timeout = float(config.get("timeout", 30))
        self.download_timeout = float(config.get("download_timeout", 300))
        self._cache: dict[str, list[dict]] = {}
        self._lock = threading.Lock()

    @property
    def source_type(self) -> str:
        return "gallery"

    def _get(self, url: str, **kwargs) -> requests.Response:
        """GET with the plugin's headers, mapping transport errors to RepositoryError."""
        kwargs.setdefault("timeout", self.timeout)
        try:
            return requests.get(url, headers={"User-Agent": USER_AGENT}, **kwargs)
        except requests.Timeout as e:
            raise RepositoryError(self.name, f"request timed out: {url}", timed_out=True) from e
        except requests.RequestException as e:
            raise RepositoryError(self.name, f"connection error: {e}") from e

    def _parse_feed(self, text: str) -> tuple[list[dict], Optional[str]]:
        """Parse one Atom page into entries and the next-page link."""
        try:
            root = ET.fromstring(text)
        except ET.ParseError as e:
            raise RepositoryError(self.name, f"invalid feed response: {e}") from e

        entries = []
        for entry in root.findall(f"{{{ATOM_NS}}}entry"):
            props = entry.find(f"{{{META_NS}}}properties")
            if props is None:
                continue
            raw_version = props.findtext(f"{{{DATA_NS}}}Version")
            version = parse_version(raw_version)
            if version is None:
                logger.debug(f"{self.name}: skipping unparsable version {raw_version!r}")
                continue

            author = props.findtext(f"{{{DATA_NS}}}Authors") or entry.findtext(
                f"{{{ATOM_NS}}}author/{{{ATOM_NS}}}name"
            )
            content = entry.find(f"{{{ATOM_NS}}}content")
            entries.append({
                "version": version,
                "author": author.strip() if author else None,
                "download_url": content.get("src") if content is not None else None,
            })

        next_link = None
        for link in root.findall(f"{{{ATOM_NS}}}link"):
            if link.get("rel") == "next":
                next_link = link.get("href")
        return entries, next_link

    def _fetch_versions(self, package_name: str) -> list[dict]:
        """Fetch every published version of a package (cached per run)."""
        key = package_name.lower()
        with self._lock:
            if key in self._cache:
                return self._cache[key]

        url = f"{self.url}/FindPackagesById()"
        params = {"id": f"'{package_name}'"}
        versions: list[dict] = []

        for _ in range(MAX_PAGES):
            response = self._get(url, params=params)
            if response.status_code == 404:
                break
            if response.status_code != 200:
                raise RepositoryError(
                    self.name, f"HTTP {response.status_code} for {package_name}"
                )
            entries, next_link = self._parse_feed(response.text)
            versions.extend(entries)
            if not next_link:
                break
            url, params = next_link, None

        logger.debug(f"{self.name}: {len(versions)} versions of {package_name}")
        with self._lock:
            self._cache[key] = versions
        return versions

    def _latest(self, package_name: str, prerelease: bool) -> Optional[RemoteVersion]:
        candidates = [
            e for e in self._fetch_versions(package_name)
            if e["version"].is_prerelease == prerelease
        ]
        latest = highest_version(e["version"] for e in candidates)
        if latest is None:
            return None
        entry = next(e for e in candidates if e["version"] is latest)
        return RemoteVersion(version=latest, repository=self.name, author=entry["author"])

    def find_latest(self, package_name: str) -> Optional[RemoteVersion]:
        return self._latest(package_name, prerelease=False)

    def find_latest_prerelease(self, package_name: str) -> Optional[RemoteVersion]:
        return self._latest(package_name, prerelease=True)

    def _download_url(self, package_name: str, version: PackageVersion) -> str:
        with self._lock:
            known = self._cache.get(package_name.lower(), [])
        for entry in known:
            if entry["download_url"] and versions_equal(entry["version"], version):
                return entry["download_url"]
        return f"{self.url}/package/{package_name}/{version}"

    def install(self, package_name: str, version: PackageVersion, destination: Path) -> InstallResult:
        """Download the package archive and extract it under the destination root."""
        url = self._download_url(package_name, version)
        tmp_file = None
        try:
            response = self._get(url, stream=True, timeout=self.download_timeout)
            if response.status_code != 200:
                return InstallResult(
                    success=False,
                    error_message=f"Download failed: HTTP {response.status_code}"
                )

            with tempfile.NamedTemporaryFile(suffix=".nupkg", delete=False) as f:
                tmp_file = Path(f.name)
                for chunk in response.iter_content(chunk_size=65536):
                    f.write(chunk)

            logger.info(f"Downloaded {package_name} {version} from {self.name}")
            target = extract_package(tmp_file, destination, package_name, version)
            return InstallResult(success=True, new_version=str(version), install_path=target)

        except RepositoryError as e:
            return InstallResult(success=False, error_message=str(e))
        except requests.RequestException as e:
            return InstallResult(success=False, error_message=f"Download failed: {e}")
        except (zipfile.BadZipFile, ValueError, OSError) as e:
            return InstallResult(success=False, error_message=f"Extraction failed: {e}")
        finally:
            if tmp_file and tmp_file.exists():
                try:
                    tmp_file.unlink()
                except OSError as e:
                    logger.warning(f"Failed to clean up {tmp_file}: {e}")
