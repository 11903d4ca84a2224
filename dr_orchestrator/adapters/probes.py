"""
Region reachability probes
"""

from typing import Optional

import httpx

from ..logging_adapter import get_safe_logger

logger = get_safe_logger("dr_orchestrator.probes")


class HttpRegionProbe:
    """GETs a region's health endpoint; any 2xx counts as reachable"""

    def __init__(self, region: str, url: str, timeout: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.region = region
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def check(self) -> bool:
        response = await self._client.get(self.url)
        if response.is_success:
            return True
        logger.warning("region_probe_unhealthy", region=self.region, url=self.url,
                       status_code=response.status_code)
        return False

    async def aclose(self) -> None:
        await self._client.aclose()


class StaticRegionProbe:
    """Probe for regions without a health endpoint; always reachable"""

    def __init__(self, region: str):
        self.region = region

    async def check(self) -> bool:
        return True
