"""History loader: REST fetch of a room's backlog on entry."""
import logging
from datetime import datetime
from typing import List, Optional

import httpx
from pydantic import ValidationError

from teamchat.errors import HistoryFetchError
from teamchat.schemas import HistoryResponse, Message

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


class HistoryLoader:
    """Reads ``GET /workspaces/{id}/messages`` with the session's bearer token.

    Args:
        api_url: Base URL of the relay's HTTP API.
        token: Bearer credential.
        client: Optional shared ``httpx.AsyncClient``. When omitted the loader
            creates one and closes it in ``aclose()``.
        page_size: Number of messages requested per fetch.
    """

    def __init__(
        self,
        api_url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        page_size: int = 50,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.page_size = page_size
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch(
        self,
        workspace_id: str,
        before: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Message]:
        """Fetch a page of the room's backlog, oldest first.

        Raises:
            HistoryFetchError: On network failure, a non-200 answer, or a
                body that does not parse.
        """
        params = {"limit": limit or self.page_size}
        if before is not None:
            params["before"] = before.isoformat()

        url = f"{self.api_url}/workspaces/{workspace_id}/messages"
        try:
            resp = await self._client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except httpx.HTTPError as e:
            raise HistoryFetchError(str(e) or type(e).__name__, workspace_id) from e

        if resp.status_code != 200:
            raise HistoryFetchError(f"HTTP {resp.status_code}", workspace_id, resp.status_code)

        try:
            body = HistoryResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise HistoryFetchError(f"Invalid response body: {e}", workspace_id) from e

        logger.debug(f"[History] Loaded {len(body.messages)} messages for {workspace_id}")
        return body.messages

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
