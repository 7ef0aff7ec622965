#  HDR Backend - Object Store Client
#
#  Blob storage on the Supabase Storage REST API.
#  Objects live at users/<user_id>/orders/<order_id>/<filename>.
#
#  Depends on: config.py, exceptions.py
#  Used by:    container.py, services/completion.py, services/orders.py,
#              services/downloads.py

import logging

import httpx

from hdr_backend.exceptions import ObjectStoreError

logger = logging.getLogger("hdr.storage")

# Page size for prefix listings
_LIST_LIMIT = 1000


def order_prefix(user_id: str, order_id: str) -> str:
    return f"users/{user_id}/orders/{order_id}"


def storage_path(user_id: str, order_id: str, filename: str) -> str:
    return f"{order_prefix(user_id, order_id)}/{filename}"


class ObjectStore:
    """Uploads, deletes and addresses blobs in one storage bucket.

    The credential is either the publishable key (bucket protected by
    row-level security policies) or the service-role key; which one is a
    deployment setting resolved in the container.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, bucket: str, api_key: str):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._api_key = api_key

    def _headers(self, **extra: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "apikey": self._api_key,
            **extra,
        }

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{path}"

    async def upload(
        self,
        user_id: str,
        order_id: str,
        filename: str,
        data: bytes,
        content_type: str = "image/jpeg",
    ) -> tuple[str, str]:
        """Write bytes (overwriting in place) and return (storage_path, public_url)."""
        path = storage_path(user_id, order_id, filename)
        try:
            resp = await self._http.post(
                f"{self._base_url}/storage/v1/object/{self._bucket}/{path}",
                content=data,
                headers=self._headers(**{"Content-Type": content_type, "x-upsert": "true"}),
            )
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"failed to upload file: {e}") from e
        if resp.status_code not in (200, 201):
            raise ObjectStoreError(
                f"failed to upload file: status {resp.status_code}, body: {resp.text}"
            )
        logger.info("Stored %s (%d bytes)", path, len(data))
        return path, self.public_url(path)

    async def delete(self, path: str) -> None:
        await self._remove([path])

    async def _remove(self, paths: list[str]) -> None:
        try:
            resp = await self._http.request(
                "DELETE",
                f"{self._base_url}/storage/v1/object/{self._bucket}",
                json={"prefixes": paths},
                headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise ObjectStoreError(f"failed to delete files: {e}") from e
        if resp.status_code != 200:
            raise ObjectStoreError(
                f"failed to delete files: status {resp.status_code}, body: {resp.text}"
            )

    async def list_prefix(self, prefix: str) -> list[str]:
        """Return full object paths directly under prefix."""
        paths: list[str] = []
        offset = 0
        while True:
            try:
                resp = await self._http.post(
                    f"{self._base_url}/storage/v1/object/list/{self._bucket}",
                    json={"prefix": prefix, "limit": _LIST_LIMIT, "offset": offset},
                    headers=self._headers(),
                )
            except httpx.HTTPError as e:
                raise ObjectStoreError(f"failed to list files: {e}") from e
            if resp.status_code != 200:
                raise ObjectStoreError(
                    f"failed to list files: status {resp.status_code}, body: {resp.text}"
                )
            entries = resp.json() or []
            paths.extend(f"{prefix}/{entry['name']}" for entry in entries if entry.get("name"))
            if len(entries) < _LIST_LIMIT:
                return paths
            offset += _LIST_LIMIT

    async def delete_order_prefix(self, user_id: str, order_id: str) -> int:
        """Delete every object stored for an order. Returns the number removed."""
        paths = await self.list_prefix(order_prefix(user_id, order_id))
        if paths:
            await self._remove(paths)
        logger.info("Removed %d object(s) for order %s", len(paths), order_id)
        return len(paths)
