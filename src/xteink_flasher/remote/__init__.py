"""Remote firmware sources."""

from .firmware_fetcher import (
    FirmwareFetcher,
    OFFICIAL_FIRMWARE_URLS,
    COMMUNITY_RELEASE_APIS,
)

__all__ = [
    "FirmwareFetcher",
    "OFFICIAL_FIRMWARE_URLS",
    "COMMUNITY_RELEASE_APIS",
]
