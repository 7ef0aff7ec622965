#  HDR Backend - Provider Client Tests
#
#  Tests for timestamp parsing, the retry primitive and the AutoEnhance
#  client's wire behavior (headers, status handling, pre-signed uploads).
#
#  Depends on: hdr_backend/services/provider.py
#  Used by:    pytest

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from hdr_backend.exceptions import ProviderError, ProviderUnavailableError
from hdr_backend.services.provider import (
    AutoEnhanceClient,
    ProviderOrder,
    parse_timestamp,
    retry,
)
from tests.fakes import BLOB_HOST, PROVIDER_URL


class TestParseTimestamp:
    @pytest.mark.parametrize("raw", [
        "2024-05-01T10:00:00Z",
        "2024-05-01T10:00:00+00:00",
        "2024-05-01T10:00:00.123456789Z",
        "2024-05-01T10:00:00.5",
        "2024-05-01T10:00:00",
    ])
    def test_accepted_formats(self, raw):
        parsed = parse_timestamp(raw)
        assert parsed.tzinfo is not None
        assert parsed.replace(microsecond=0) == datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

    def test_offset_preserved(self):
        parsed = parse_timestamp("2024-05-01T12:00:00+02:00")
        assert parsed == datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError, match="failed to parse time"):
            parse_timestamp("yesterday")

    def test_order_model_coerces_provider_quirks(self):
        order = ProviderOrder.model_validate({
            "order_id": "o1",
            "total_images": 2.0,
            "images": None,
            "created_at": "",
            "last_updated_at": "2024-05-01T10:00:00.1Z",
            "unexpected": "ignored",
        })
        assert order.total_images == 2
        assert order.images == []
        assert order.created_at is None
        assert order.last_updated_at.year == 2024


class TestRetry:
    async def test_returns_first_success(self):
        fn = AsyncMock(side_effect=[ProviderError("x", 503), "ok"])
        assert await retry(fn, backoff=[0]) == "ok"
        assert fn.await_count == 2

    async def test_exhaustion_wraps_last_error(self):
        fn = AsyncMock(side_effect=ProviderError("failed to get order", 502, "bad gateway"))
        with pytest.raises(ProviderUnavailableError) as exc_info:
            await retry(fn, attempts=3, backoff=[0])
        assert fn.await_count == 3
        assert str(exc_info.value).startswith("failed after 3 retries: failed to get order")
        assert exc_info.value.status_code == 502
        assert exc_info.value.body == "bad gateway"

    async def test_client_errors_not_retried(self):
        fn = AsyncMock(side_effect=ProviderError("nope", 404, "missing"))
        with pytest.raises(ProviderError) as exc_info:
            await retry(fn, backoff=[0])
        assert fn.await_count == 1
        assert not isinstance(exc_info.value, ProviderUnavailableError)

    @pytest.mark.parametrize("status", [408, 429, 500])
    async def test_transient_statuses_retried(self, status):
        fn = AsyncMock(side_effect=[ProviderError("x", status), "ok"])
        assert await retry(fn, backoff=[0]) == "ok"

    async def test_transport_errors_retried(self):
        fn = AsyncMock(side_effect=[httpx.ConnectError("refused"), "ok"])
        assert await retry(fn, backoff=[0]) == "ok"

    async def test_backoff_schedule_and_no_trailing_sleep(self, monkeypatch):
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)

        monkeypatch.setattr("hdr_backend.services.provider.asyncio.sleep", fake_sleep)
        fn = AsyncMock(side_effect=ProviderError("x", 500))
        with pytest.raises(ProviderUnavailableError):
            await retry(fn, attempts=3, backoff=[1, 2, 4])
        assert sleeps == [1, 2]


class TestClientWire:
    async def test_api_key_header_on_every_call(self, fake_provider):
        seen = []

        def spy(request):
            seen.append(request.headers.get("x-api-key"))
            return fake_provider.handler(request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(spy))
        client = AutoEnhanceClient(http, PROVIDER_URL, "secret-key")
        order = await client.create_order("Listing")
        await client.get_order(order.order_id)
        await http.aclose()
        assert seen == ["secret-key", "secret-key"]

    async def test_non_2xx_raises_with_status_and_body(self, provider_client):
        with pytest.raises(ProviderError) as exc_info:
            await provider_client.get_order("does-not-exist")
        assert exc_info.value.status_code == 404
        assert str(exc_info.value) == "failed to get order (status 404): order not found"

    async def test_delete_accepts_204(self, provider_client, fake_provider):
        order = fake_provider.add_order()
        await provider_client.delete_order(order["order_id"])
        assert order["order_id"] not in fake_provider.orders

    async def test_update_and_list_orders(self, provider_client, fake_provider):
        order = fake_provider.add_order(name="Old")
        updated = await provider_client.update_order(order["order_id"], "New")
        assert updated.name == "New"
        page = await provider_client.list_orders(per_page=50)
        assert [o.order_id for o in page.orders] == [order["order_id"]]
        assert page.per_page == 50

    async def test_malformed_body_is_provider_error(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, text="<html>oops</html>")
        ))
        client = AutoEnhanceClient(http, PROVIDER_URL, "k")
        with pytest.raises(ProviderError, match="failed to decode get order response"):
            await client.get_order("o1")
        await http.aclose()

    async def test_process_tolerates_bare_acknowledgement(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, text="accepted")
        ))
        client = AutoEnhanceClient(http, PROVIDER_URL, "k")
        result = await client.process_order("o1", {"images": []})
        assert result.order_id == "o1"
        await http.aclose()

    async def test_download_params_drop_unset_values(self, provider_client, fake_provider):
        order = fake_provider.add_order()
        image = fake_provider.add_image(order["order_id"], status="completed")
        data = await provider_client.download_enhanced(image["image_id"], max_width=800, watermark=False)
        assert data == fake_provider.enhanced[image["image_id"]]
        assert fake_provider.download_params[-1] == {
            "format": "jpeg", "watermark": "false", "max_width": "800",
        }


class TestPresignedUpload:
    async def test_lowercase_amz_params_become_headers(self, provider_client, fake_provider):
        order = fake_provider.add_order()
        bracket = await provider_client.create_bracket(order["order_id"], "a.jpg")
        await provider_client.upload_blob(bracket.upload_url, b"raw-bytes")

        data, headers = fake_provider.blobs[bracket.bracket_id]
        assert data == b"raw-bytes"
        assert headers["content-type"] == "application/octet-stream"
        assert headers["x-amz-meta-order"] == order["order_id"]
        assert "x-amz-signature" not in headers
        assert "x-amz-algorithm" not in headers

    async def test_upload_failure_raises(self, provider_client, fake_provider):
        fake_provider.fail("upload", 403)
        with pytest.raises(ProviderError) as exc_info:
            await provider_client.upload_blob(f"https://{BLOB_HOST}/uploads/x?X-Amz-Signature=s", b"d")
        assert exc_info.value.status_code == 403
