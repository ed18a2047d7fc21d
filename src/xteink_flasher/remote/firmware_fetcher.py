"""Remote firmware downloads (official builds and CrossPoint releases)."""

import logging
from typing import Dict, Optional

import httpx

from xteink_flasher.core.errors import (
    AssetNotFound,
    FirmwareDownloadError,
    UnsupportedFirmwareRequest,
)

logger = logging.getLogger(__name__)

OFFICIAL_FIRMWARE_URLS: Dict[str, str] = {
    "en": "http://gotaserver.xteink.com/api/download/ESP32C3/V3.1.1/V3.1.1-EN.bin",
    "ch": "http://47.122.74.33:5000/api/download/ESP32C3/V3.1.4/V3.1.4-CH-X4.bin",
}

COMMUNITY_RELEASE_APIS: Dict[str, str] = {
    "crosspoint": "https://api.github.com/repos/daveallie/crosspoint-reader/releases/latest",
}

FIRMWARE_ASSET_SUFFIX = "firmware.bin"
DEFAULT_TIMEOUT = 60.0


class FirmwareFetcher:
    """
    Downloads firmware images over HTTP.

    Args:
        client: httpx client to use (one is created if None)
        timeout: Request timeout in seconds
    """

    def __init__(self, client: Optional[httpx.Client] = None, timeout: float = DEFAULT_TIMEOUT):
        self.client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "FirmwareFetcher":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _get(self, url: str) -> httpx.Response:
        logger.info(f"GET {url}")
        try:
            response = self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise FirmwareDownloadError(f"Download failed: {e}", details={"url": url})
        return response

    def fetch_official_firmware(self, region: str) -> bytes:
        """
        Download the official firmware for a region.

        Args:
            region: "en" (English) or "ch" (Chinese)

        Raises:
            UnsupportedFirmwareRequest: If the region is unknown
            FirmwareDownloadError: If the HTTP request fails
        """
        url = OFFICIAL_FIRMWARE_URLS.get(region.strip().lower())
        if url is None:
            raise UnsupportedFirmwareRequest(
                f"Unsupported official firmware region '{region}'",
                details={"known": sorted(OFFICIAL_FIRMWARE_URLS)},
            )
        data = self._get(url).content
        logger.info(f"Downloaded {len(data):,} bytes of official {region} firmware")
        return data

    def fetch_community_firmware(self, name: str) -> bytes:
        """
        Download the latest release of a community firmware.

        Args:
            name: Firmware name ("CrossPoint")

        Raises:
            UnsupportedFirmwareRequest: If the firmware name is unknown
            AssetNotFound: If the latest release has no firmware.bin asset
            FirmwareDownloadError: If an HTTP request fails
        """
        api_url = COMMUNITY_RELEASE_APIS.get(name.strip().lower())
        if api_url is None:
            raise UnsupportedFirmwareRequest(f"Unsupported community firmware '{name}'")

        try:
            release = self._get(api_url).json()
        except ValueError as e:
            raise FirmwareDownloadError(f"Invalid release metadata: {e}", details={"url": api_url})

        asset = next(
            (a for a in release.get("assets", []) if a.get("name", "").endswith(FIRMWARE_ASSET_SUFFIX)),
            None,
        )
        if asset is None:
            raise AssetNotFound(
                f"{name} firmware asset not found",
                details={"release": release.get("tag_name", "")},
            )

        logger.info(f"Latest {name} release {release.get('tag_name', '?')}: {asset['name']}")
        data = self._get(asset["browser_download_url"]).content
        logger.info(f"Downloaded {len(data):,} bytes of {name} firmware")
        return data
