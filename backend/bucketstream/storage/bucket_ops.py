"""
Bucket-scoped JSON API calls: listing one page of objects and deleting
single objects.
"""
import json
import logging
from typing import Any, AsyncIterator, Dict, Mapping, Optional
from urllib.parse import quote

from bucketstream.storage.channel import RequestChannel
from bucketstream.storage.errors import MalformedResponse, error_for_status
from bucketstream.storage.models import ListPage, ObjectRef, RequestDescriptor

logger = logging.getLogger(__name__)


class BucketOperations:
    """List and delete calls against `{base}/b/{bucket}/o`."""

    def __init__(self, channels: RequestChannel, bucket_base_url: str):
        self._channels = channels
        self._bucket_base_url = bucket_base_url.rstrip("/")

    def objects_uri(self, bucket: str) -> str:
        return f"{self._bucket_base_url}/{quote(bucket, safe='')}/o"

    async def list_page(self, bucket: str, query: Optional[Mapping[str, Any]] = None) -> ListPage:
        """
        Fetch a single page of object names.

        Args:
            bucket: Bucket name
            query: List parameters (prefix, delimiter, maxResults, pageToken, versions, ...)

        Returns:
            ListPage whose next_query is set when the service reported a
            nextPageToken (pass it back to fetch the following page)

        Raises:
            NotFound: Bucket does not exist
            UpstreamError: Any other error status
            MalformedResponse: Body is not a JSON object
        """
        query = dict(query or {})
        descriptor = RequestDescriptor(uri=self.objects_uri(bucket), method="GET", query=query)
        meta, body = await self._channels.fetch(descriptor)
        if meta.is_error:
            raise error_for_status(meta.status_code, f"Listing {bucket} failed (HTTP {meta.status_code})")

        payload = self._decode(body, bucket)
        items = payload.get("items") or []
        names = [item["name"] for item in items if isinstance(item, dict) and "name" in item]

        next_query = None
        if payload.get("nextPageToken"):
            next_query = {**query, "pageToken": payload["nextPageToken"]}

        logger.debug(f"Listed {len(names)} objects in {bucket}")
        return ListPage(names=names, next_query=next_query, raw=payload)

    async def iter_pages(
        self,
        bucket: str,
        query: Optional[Mapping[str, Any]] = None
    ) -> AsyncIterator[ListPage]:
        """Follow nextPageToken until the listing is exhausted."""
        next_query: Optional[Dict[str, Any]] = dict(query or {})
        while next_query is not None:
            page = await self.list_page(bucket, next_query)
            yield page
            next_query = page.next_query

    async def delete(self, ref: ObjectRef) -> None:
        """
        Delete one object.

        Raises:
            NotFound: Object does not exist
            UpstreamError: Any other error status
        """
        descriptor = RequestDescriptor(
            uri=f"{self.objects_uri(ref.bucket)}/{quote(ref.key, safe='')}",
            method="DELETE",
        )
        channel = self._channels.open(descriptor)
        try:
            meta = await channel.drain()
        except BaseException:
            await channel.abort()
            raise
        if meta.is_error:
            raise error_for_status(meta.status_code, f"Deleting {ref} failed (HTTP {meta.status_code})")
        logger.debug(f"Deleted {ref}")

    @staticmethod
    def _decode(body: bytes, bucket: str) -> Dict[str, Any]:
        if not body:
            return {}
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedResponse(f"Listing {bucket} returned a malformed body: {e}") from e
        if not isinstance(payload, dict):
            raise MalformedResponse(f"Listing {bucket} returned a non-object JSON body")
        return payload
