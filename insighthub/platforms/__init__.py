"""Platform adapter registry."""

from typing import Optional

import httpx

from insighthub.config import get_settings
from insighthub.errors import ValidationFailure
from insighthub.platforms.base import PlatformAdapter
from insighthub.platforms.google_ads import GoogleAdsAdapter
from insighthub.platforms.google_analytics import GoogleAnalyticsAdapter
from insighthub.platforms.linkedin_ads import LinkedInAdsAdapter
from insighthub.platforms.meta_ads import MetaAdsAdapter

ADAPTERS: dict[str, type[PlatformAdapter]] = {
    cls.platform: cls
    for cls in (GoogleAnalyticsAdapter, GoogleAdsAdapter, MetaAdsAdapter, LinkedInAdsAdapter)
}

SUPPORTED_PLATFORMS = tuple(ADAPTERS)


def get_adapter(platform: str, http_client: Optional[httpx.AsyncClient] = None) -> PlatformAdapter:
    adapter_cls = ADAPTERS.get(platform)
    if adapter_cls is None:
        raise ValidationFailure(f"Unsupported platform: {platform}")
    return adapter_cls.from_settings(get_settings(), http_client=http_client)


def platform_display_name(platform: str) -> str:
    adapter_cls = ADAPTERS.get(platform)
    return adapter_cls.display_name if adapter_cls else platform
