# FILE: storefront/services/fulfillment_service.py
"""
HTTP client for the external fulfillment services.

- generation / edit: n8n-style webhooks, one request that blocks until the
  image is ready.
- watermark removal: task API; create a remote task, then poll it.

Every failure surfaces as FulfillmentError. Overall deadlines are enforced by
the caller with asyncio.wait_for, which cancels the in-flight request.
"""
import asyncio
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from storefront.core.config import (
    GENERATION_WEBHOOK_URL,
    EDIT_WEBHOOK_URL,
    WATERMARK_API_URL,
    WATERMARK_API_KEY,
    FULFILLMENT_TIMEOUT_SECONDS,
    FULFILLMENT_HTTP_TIMEOUT_SECONDS,
    WATERMARK_POLL_MAX_ATTEMPTS,
    WATERMARK_POLL_BASE_INTERVAL,
    WATERMARK_POLL_MAX_INTERVAL,
)
from storefront.core.errors import FulfillmentError

logger = logging.getLogger("storefront.fulfillment")

# Negative task states reported by the watermark API
REMOTE_STATE_MESSAGES = {
    -7: "Invalid file (corrupt or unsupported format)",
    -5: "File exceeds the size limit (50MB max)",
    -3: "Download failed (check that the URL is reachable)",
    -2: "Upload failed",
    -1: "Processing failed",
}


def poll_delay(attempt: int, base: float = WATERMARK_POLL_BASE_INTERVAL, cap: float = WATERMARK_POLL_MAX_INTERVAL) -> float:
    """2s, 4s, 8s, 16s, 16s ... with +/-10% jitter."""
    delay = min(base * (2 ** attempt), cap)
    return delay + delay * 0.2 * (random.random() - 0.5)


def _first_str(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_generation_outputs(body: Dict[str, Any]) -> List[str]:
    """Output references from a generation webhook response, in order."""
    for key in ("generated_images", "images", "data"):
        value = body.get(key)
        if isinstance(value, list):
            refs = [v.strip() for v in value if isinstance(v, str) and v.strip()]
            if refs:
                return refs

    single = _first_str(body.get("generated_image_url")) or _first_str(body.get("data"))
    return [single] if single else []


def parse_edit_output(body: Dict[str, Any]) -> Optional[str]:
    images = body.get("images")
    first = images[0] if isinstance(images, list) and images else None
    return _first_str(body.get("edit_image")) or _first_str(body.get("image")) or _first_str(first)


def _decode(resp: httpx.Response, service: str) -> Dict[str, Any]:
    if resp.status_code < 200 or resp.status_code >= 300:
        raise FulfillmentError(
            f"{service} returned HTTP {resp.status_code}",
            {"status": resp.status_code, "body": resp.text[:200]},
        )
    text = resp.text
    if not text or not text.strip():
        raise FulfillmentError(f"{service} returned an empty response")
    try:
        body = json.loads(text)
    except ValueError:
        raise FulfillmentError(f"{service} returned invalid JSON", {"body": text[:200]})
    if not isinstance(body, dict):
        raise FulfillmentError(f"{service} returned an unexpected payload", {"body": text[:200]})
    return body


class FulfillmentClient:
    def __init__(
        self,
        generation_url: str = GENERATION_WEBHOOK_URL,
        edit_url: str = EDIT_WEBHOOK_URL,
        watermark_url: str = WATERMARK_API_URL,
        watermark_api_key: str = WATERMARK_API_KEY,
        webhook_timeout: float = FULFILLMENT_TIMEOUT_SECONDS,
        http_timeout: float = FULFILLMENT_HTTP_TIMEOUT_SECONDS,
        poll_attempts: int = WATERMARK_POLL_MAX_ATTEMPTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.generation_url = generation_url
        self.edit_url = edit_url
        self.watermark_url = watermark_url.rstrip("/")
        self.watermark_api_key = watermark_api_key
        self.webhook_timeout = httpx.Timeout(webhook_timeout, connect=http_timeout)
        self.http_timeout = http_timeout
        self.poll_attempts = poll_attempts
        self._transport = transport
        self._sleep = sleep

    def _client(self, timeout) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _post_webhook(self, url: str, payload: Dict[str, Any], service: str) -> Dict[str, Any]:
        try:
            async with self._client(self.webhook_timeout) as client:
                resp = await client.post(url, json=payload)
        except httpx.TimeoutException:
            raise FulfillmentError(f"{service} timed out")
        except httpx.HTTPError as e:
            raise FulfillmentError(f"{service} unreachable: {e}")
        return _decode(resp, service)

    # ─────────────────────────────────────────────
    # WEBHOOKS
    # ─────────────────────────────────────────────

    async def generate(self, payload: Dict[str, Any]) -> List[str]:
        body = await self._post_webhook(self.generation_url, payload, "Generation service")
        outputs = parse_generation_outputs(body)
        if not outputs:
            logger.error(f"Generation response without image: {json.dumps(body)[:300]}")
            raise FulfillmentError("Generation service returned no image")
        return outputs

    async def edit(self, payload: Dict[str, Any]) -> str:
        body = await self._post_webhook(self.edit_url, payload, "Edit service")
        output = parse_edit_output(body)
        if not output:
            logger.error(f"Edit response without image: {json.dumps(body)[:300]}")
            raise FulfillmentError("Edit service returned no image")
        return output

    # ─────────────────────────────────────────────
    # WATERMARK TASK API
    # ─────────────────────────────────────────────

    async def _create_remote_task(self, client: httpx.AsyncClient, original_ref: str) -> str:
        try:
            resp = await client.post(
                self.watermark_url,
                json={"url": original_ref, "sync": 0},
                headers={"X-API-KEY": self.watermark_api_key},
            )
        except httpx.HTTPError as e:
            raise FulfillmentError(f"Watermark service unreachable: {e}")

        try:
            body = resp.json()
        except ValueError:
            raise FulfillmentError("Watermark service returned invalid JSON", {"body": resp.text[:200]})

        if body.get("status") != 200:
            raise FulfillmentError(body.get("message") or f"Watermark task creation failed: {body.get('status')}")

        task_id = (body.get("data") or {}).get("task_id")
        if not task_id:
            raise FulfillmentError("Watermark task creation returned no task_id")
        return str(task_id)

    async def remove_watermark(
        self,
        original_ref: str,
        remote_task_id: Optional[str] = None,
        on_remote_task: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> str:
        """
        Return the result URL for ``original_ref``.

        An existing ``remote_task_id`` is polled instead of creating a new remote
        task; a newly created id is handed to ``on_remote_task`` before polling
        starts so a retry can resume it.
        """
        if not self.watermark_api_key:
            raise FulfillmentError("WATERMARK_API_KEY is not configured")

        async with self._client(self.http_timeout) as client:
            if not remote_task_id:
                remote_task_id = await self._create_remote_task(client, original_ref)
                logger.info(f"Created remote watermark task {remote_task_id}")
                if on_remote_task:
                    await on_remote_task(remote_task_id)
            else:
                logger.info(f"Resuming remote watermark task {remote_task_id}")

            for attempt in range(self.poll_attempts):
                await self._sleep(poll_delay(attempt))

                try:
                    resp = await client.get(
                        f"{self.watermark_url}/{remote_task_id}",
                        headers={"X-API-KEY": self.watermark_api_key},
                    )
                    body = resp.json()
                except httpx.TimeoutException:
                    logger.warning(f"Poll #{attempt + 1} for {remote_task_id} timed out, retrying")
                    continue
                except ValueError:
                    logger.warning(f"Poll #{attempt + 1} for {remote_task_id} returned invalid JSON, retrying")
                    continue
                except httpx.HTTPError as e:
                    raise FulfillmentError(f"Watermark service unreachable: {e}")

                if body.get("status") != 200:
                    raise FulfillmentError(body.get("message") or f"Watermark poll failed: {body.get('status')}")

                data = body.get("data") or {}
                state = data.get("state")
                progress = data.get("progress")

                if state == 1 and progress == 100:
                    result = _first_str(data.get("file"))
                    if not result:
                        raise FulfillmentError("Watermark task finished without a file")
                    return result
                if isinstance(state, int) and state < 0:
                    raise FulfillmentError(REMOTE_STATE_MESSAGES.get(state, f"Unexpected task state: {state}"))

                logger.debug(f"Poll #{attempt + 1} for {remote_task_id}: state={state} progress={progress}")

        raise FulfillmentError("Polling timed out: result not ready")
