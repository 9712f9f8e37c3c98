# services/render_client.py
# ============================================================================
# VIRTUAL STAGING SERVICE — RENDERING CLIENT
# ============================================================================
# Purpose: Talk to the Virtual Staging AI API
#
# - render()           POST /render/create (blocks until done when asked to)
# - create_variation() POST /render/create-variation
# - request()          raw round-trip for the pass-through endpoints
# - download()         fetch a finished asset fully into memory
#
# FAILURE HANDLING:
# - Single attempt, no retries; the transport timeout is the only timeout
# - Provider payloads ride along on RenderFailed for server-side logs
# ============================================================================

import logging
from typing import Any, Dict, Optional

import httpx

from pipeline.errors import ConfigurationError, DownloadFailed, RenderFailed
from schemas.staging import ProviderResponse, RenderRequest, RenderResult

logger = logging.getLogger("VirtualStaging.RenderClient")


class VirtualStagingClient:
    """Async client for the rendering provider. Construct once per process and inject."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.virtualstagingai.app/v1",
        timeout_seconds: float = 300.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def aclose(self):
        await self._client.aclose()

    def _auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ConfigurationError("Missing Virtual Staging API key", details="VSAI_API_KEY")
        # Sent per request so it never leaks to result-asset hosts
        return {"Authorization": f"Api-Key {self.api_key}"}

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> ProviderResponse:
        """One raw call. Transport errors propagate as httpx.HTTPError."""
        response = await self._client.request(
            method,
            self._url(path),
            params=params,
            json=json,
            headers=self._auth_headers(),
        )
        return ProviderResponse(
            ok=response.is_success,
            status=response.status_code,
            data=self._parse_body(response),
        )

    async def _create(self, path: str, payload: Dict[str, Any], params: Optional[Dict[str, Any]] = None) -> RenderResult:
        try:
            response = await self.request("POST", path, params=params, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Virtual Staging transport error on {path}: {e}")
            raise RenderFailed("Failed to contact Virtual Staging API", details={"error": str(e)}) from e

        data = response.data if isinstance(response.data, dict) else {}
        result_url = data.get("result_image_url")

        if not response.ok or not result_url:
            logger.error(f"Virtual Staging {path} returned no result (status {response.status}): {response.data}")
            raise RenderFailed(details=response.data, status=response.status)

        # Provider ids arrive as JSON numbers or strings
        render_id = data.get("render_id")
        return RenderResult(
            result_image_url=str(result_url),
            render_id=str(render_id) if render_id is not None else None,
            raw=data,
        )

    async def render(self, render_request: RenderRequest) -> RenderResult:
        logger.info(
            f"Rendering {render_request.room_type}/{render_request.style} "
            f"(watermark={render_request.add_watermark})"
        )
        return await self._create("/render/create", render_request.to_payload())

    async def create_variation(
        self,
        render_id: str,
        add_watermark: bool = False,
        wait_for_completion: bool = True,
    ) -> RenderResult:
        payload = {
            "render_id": render_id,
            "wait_for_completion": wait_for_completion,
            "add_virtually_staged_watermark": add_watermark,
        }
        result = await self._create("/render/create-variation", payload)
        if not result.render_id:
            result = result.model_copy(update={"render_id": str(render_id)})
        return result

    async def download(self, url: str) -> bytes:
        """Fetch ``url`` fully into memory."""
        try:
            response = await self._client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            logger.error(f"Failed to download {url}: {e}")
            raise DownloadFailed(details={"url": url, "error": str(e)}) from e

        if not response.is_success:
            logger.error(f"Failed to download asset ({response.status_code}): {url}")
            raise DownloadFailed(details={"url": url, "status": response.status_code})

        return response.content
