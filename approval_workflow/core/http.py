import logging
from typing import Any, Optional

import httpx

from approval_workflow.core.config import settings

logger = logging.getLogger(__name__)


class ServiceClient:
    """
    내부 서비스 REST 호출 공통 부분.
    client를 주입하면 그대로 쓰고(테스트, 커넥션 재사용),
    없으면 호출마다 AsyncClient를 열고 닫는다.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url
        self._client = client

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if self._client is not None:
            return await self._send(self._client, method, path, **kwargs)
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        ) as client:
            return await self._send(client, method, path, **kwargs)

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> httpx.Response:
        resp = await client.request(method, path, **kwargs)
        logger.debug("%s %s -> %s", method, path, resp.status_code)
        resp.raise_for_status()
        return resp
