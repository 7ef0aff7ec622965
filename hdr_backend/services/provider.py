#  HDR Backend - Enhancement Provider Client
#
#  Async client for the AutoEnhance v3 API: orders, brackets, pre-signed
#  uploads, HDR process dispatch and artifact download.
#  Also home of the shared retry-with-backoff primitive.
#
#  Depends on: config.py, exceptions.py
#  Used by:    container.py, services/orders.py, services/uploads.py,
#              services/processing.py, services/completion.py

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import parse_qsl, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from hdr_backend.config import RETRY_ATTEMPTS, RETRY_BACKOFF_SECONDS
from hdr_backend.exceptions import ProviderError, ProviderUnavailableError

logger = logging.getLogger("hdr.provider")

T = TypeVar("T")

# Content type the pre-signed bracket URLs are signed for
UPLOAD_CONTENT_TYPE = "application/octet-stream"


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S",
)

# strptime's %f takes at most 6 digits; RFC3339Nano sends 9
_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def parse_timestamp(value: str) -> datetime:
    """Parse a provider timestamp in any of the formats it has been seen to emit.

    Naive timestamps are treated as UTC. Raises ValueError when nothing matches.
    """
    text = _FRACTION_RE.sub(r".\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    for fmt in _TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    raise ValueError(f"failed to parse time: {value}")


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class _ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ProviderImage(_ProviderModel):
    image_id: str
    image_name: str = ""
    order_id: str | None = None
    status: str | None = None
    status_reason: str | None = None
    enhance_type: str | None = None
    enhance: bool | None = None
    sky_replacement: bool | None = None
    vertical_correction: bool | None = None
    lens_correction: bool | None = None
    window_pull_type: str | None = None
    upscale: bool | None = None
    privacy: bool | None = None
    cloud_type: str | None = None
    ai_version: str | None = None
    downloaded: bool | None = None
    date_added: int | None = None
    scene: str | None = None
    rating: int | None = None
    preset_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, v):
        return v or {}


class ProviderOrder(_ProviderModel):
    order_id: str
    name: str = ""
    status: str | None = None
    is_processing: bool = False
    is_merging: bool = False
    is_deleted: bool = False
    total_images: int = 0
    created_at: datetime | None = None
    last_updated_at: datetime | None = None
    images: list[ProviderImage] = Field(default_factory=list)

    @field_validator("created_at", "last_updated_at", mode="before")
    @classmethod
    def _parse_time(cls, v):
        if v is None or v == "":
            return None
        if isinstance(v, str):
            return parse_timestamp(v)
        return v

    @field_validator("total_images", mode="before")
    @classmethod
    def _coerce_total(cls, v):
        # Sent as a float by the provider
        return int(v or 0)

    @field_validator("images", mode="before")
    @classmethod
    def _none_images(cls, v):
        return v or []


class ProviderOrderPage(_ProviderModel):
    orders: list[ProviderOrder] = Field(default_factory=list)
    next_offset: str | None = None
    per_page: int | None = None


class ProviderBracket(_ProviderModel):
    bracket_id: str
    image_id: str | None = None
    order_id: str | None = None
    name: str = ""
    upload_url: str | None = None
    is_uploaded: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("metadata", mode="before")
    @classmethod
    def _none_metadata(cls, v):
        return v or {}


# ---------------------------------------------------------------------------
# Retry primitive
# ---------------------------------------------------------------------------

def _is_transient(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, ProviderError):
        code = exc.status_code
        return code is None or code >= 500 or code in (408, 429)
    return False


async def retry(
    fn: Callable[[], Awaitable[T]],
    attempts: int = RETRY_ATTEMPTS,
    backoff: list[float] | None = None,
) -> T:
    """Call fn up to `attempts` times with exponential backoff (1s, 2s, 4s).

    No sleep follows the final attempt. Non-transient provider errors
    (4xx other than 408/429, malformed payloads) are raised immediately.
    """
    schedule = backoff if backoff is not None else RETRY_BACKOFF_SECONDS
    last_exc: Exception | None = None
    for i in range(attempts):
        try:
            return await fn()
        except (ProviderError, httpx.TransportError) as e:
            if not _is_transient(e):
                raise
            last_exc = e
            if i < attempts - 1:
                delay = schedule[min(i, len(schedule) - 1)]
                logger.warning(
                    "Provider call failed (attempt %d/%d), retrying in %ss: %s",
                    i + 1, attempts, delay, e,
                )
                await asyncio.sleep(delay)

    status = last_exc.status_code if isinstance(last_exc, ProviderError) else None
    body = last_exc.body if isinstance(last_exc, ProviderError) else ""
    raise ProviderUnavailableError(
        f"failed after {attempts} retries: {last_exc}", status_code=status, body=body,
    ) from last_exc


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class AutoEnhanceClient:
    """Typed wrapper over the provider's REST API.

    Every method fails fast with ProviderError on an unexpected status;
    callers decide whether to wrap the call in retry().
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, api_key: str):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key

    # --- plumbing ---

    async def _request(
        self,
        method: str,
        path: str,
        action: str,
        *,
        ok: tuple[int, ...] = (200,),
        json: dict | None = None,
        params: dict | None = None,
    ) -> httpx.Response:
        resp = await self._http.request(
            method,
            f"{self._base_url}{path}",
            headers={"x-api-key": self._api_key},
            json=json,
            params=params,
        )
        if resp.status_code not in ok:
            raise ProviderError(f"failed to {action}", status_code=resp.status_code, body=resp.text)
        return resp

    @staticmethod
    def _decode(model: type[BaseModel], resp: httpx.Response, action: str):
        try:
            return model.model_validate(resp.json())
        except (ValueError, ValidationError) as e:
            raise ProviderError(
                f"failed to decode {action} response: {e}",
                status_code=resp.status_code,
                body=resp.text[:500],
            ) from e

    # --- orders ---

    async def create_order(self, name: str | None = None, order_id: str | None = None) -> ProviderOrder:
        body: dict[str, Any] = {}
        if name:
            body["name"] = name
        if order_id:
            body["order_id"] = order_id
        resp = await self._request("POST", "/v3/orders/", "create order", json=body)
        return self._decode(ProviderOrder, resp, "create order")

    async def get_order(self, order_id: str) -> ProviderOrder:
        resp = await self._request("GET", f"/v3/orders/{order_id}", "get order")
        return self._decode(ProviderOrder, resp, "get order")

    async def update_order(self, order_id: str, name: str) -> ProviderOrder:
        resp = await self._request("PATCH", f"/v3/orders/{order_id}", "update order", json={"name": name})
        return self._decode(ProviderOrder, resp, "update order")

    async def delete_order(self, order_id: str) -> None:
        await self._request("DELETE", f"/v3/orders/{order_id}", "delete order", ok=(200, 204))

    async def list_orders(self, offset: str | None = None, per_page: int | None = None) -> ProviderOrderPage:
        params: dict[str, Any] = {}
        if offset:
            params["offset"] = offset
        if per_page:
            params["per_page"] = per_page
        resp = await self._request("GET", "/v3/orders/", "list orders", params=params)
        data = resp.json()
        pagination = data.get("pagination") or {}
        try:
            return ProviderOrderPage(
                orders=data.get("orders") or [],
                next_offset=pagination.get("next_offset"),
                per_page=pagination.get("per_page"),
            )
        except ValidationError as e:
            raise ProviderError(f"failed to decode list orders response: {e}",
                                status_code=resp.status_code) from e

    # --- brackets ---

    async def create_bracket(self, order_id: str, name: str, metadata: dict | None = None) -> ProviderBracket:
        body: dict[str, Any] = {"name": name, "order_id": order_id}
        if metadata:
            body["metadata"] = metadata
        resp = await self._request("POST", "/v3/brackets/", "create bracket", json=body)
        return self._decode(ProviderBracket, resp, "create bracket")

    async def get_bracket(self, bracket_id: str) -> ProviderBracket:
        resp = await self._request("GET", f"/v3/brackets/{bracket_id}", "get bracket")
        return self._decode(ProviderBracket, resp, "get bracket")

    async def get_order_brackets(self, order_id: str) -> list[ProviderBracket]:
        resp = await self._request("GET", f"/v3/orders/{order_id}/brackets", "get order brackets")
        try:
            items = resp.json().get("brackets") or []
            return [ProviderBracket.model_validate(b) for b in items]
        except (ValueError, AttributeError, ValidationError) as e:
            raise ProviderError(f"failed to decode get order brackets response: {e}",
                                status_code=resp.status_code) from e

    async def delete_bracket(self, bracket_id: str) -> None:
        await self._request("DELETE", f"/v3/brackets/{bracket_id}", "delete bracket", ok=(200, 204))

    async def upload_blob(self, upload_url: str, data: bytes, content_type: str = UPLOAD_CONTENT_TYPE) -> None:
        """PUT bytes to a pre-signed URL.

        Lower-case x-amz-* query parameters (object metadata, security token)
        were hoisted into the URL at signing time and must also travel as
        headers for the signature to validate. The capitalised X-Amz-*
        auth parameters stay in the query string only.
        """
        headers = {"Content-Type": content_type}
        for key, value in parse_qsl(urlsplit(upload_url).query, keep_blank_values=False):
            if key.startswith("x-amz-"):
                headers[key] = value
        resp = await self._http.put(upload_url, content=data, headers=headers)
        if resp.status_code not in (200, 204):
            raise ProviderError("failed to upload file", status_code=resp.status_code, body=resp.text)

    # --- processing ---

    async def process_order(self, order_id: str, params: dict) -> ProviderOrder:
        resp = await self._request("POST", f"/v3/orders/{order_id}/process", "process order", json=params)
        try:
            return ProviderOrder.model_validate(resp.json())
        except (ValueError, ValidationError):
            # Some deployments answer with a bare acknowledgement
            return ProviderOrder(order_id=order_id)

    # --- images ---

    async def get_image(self, image_id: str) -> ProviderImage:
        resp = await self._request("GET", f"/v3/images/{image_id}", "get image")
        return self._decode(ProviderImage, resp, "get image")

    @staticmethod
    def _download_params(
        format: str | None,
        preview: bool | None,
        watermark: bool | None,
        finetune: bool | None,
        max_width: int | None,
        scale: float | None,
    ) -> dict:
        params = {
            "format": format,
            "preview": preview,
            "watermark": watermark,
            "finetune": finetune,
            "max_width": max_width,
            "scale": scale,
        }
        return {k: v for k, v in params.items() if v is not None and v != ""}

    async def download_enhanced(
        self,
        image_id: str,
        *,
        format: str | None = "jpeg",
        preview: bool | None = None,
        watermark: bool | None = None,
        finetune: bool | None = None,
        max_width: int | None = None,
        scale: float | None = None,
    ) -> bytes:
        params = self._download_params(format, preview, watermark, finetune, max_width, scale)
        resp = await self._request(
            "GET", f"/v3/images/{image_id}/enhanced", "download enhanced image", params=params,
        )
        return resp.content

    async def download_original(
        self,
        image_id: str,
        *,
        format: str | None = "jpeg",
        preview: bool | None = None,
        watermark: bool | None = None,
        finetune: bool | None = None,
        max_width: int | None = None,
        scale: float | None = None,
    ) -> bytes:
        params = self._download_params(format, preview, watermark, finetune, max_width, scale)
        resp = await self._request(
            "GET", f"/v3/images/{image_id}/original", "download original image", params=params,
        )
        return resp.content
