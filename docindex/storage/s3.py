"""
S3 Blob Store

Objects are written under  s3://<bucket>/<prefix>/<uuid><ext>  and the full
key is the blob reference. Keys are built server-side; a reference that does
not live under the configured prefix is rejected (InvalidBlobReference,
permanent) before any S3 call. A missing object stays StorageUnavailable:
it may be an eventual-consistency gap.
"""

from __future__ import annotations

import logging

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from docindex.core.errors import InvalidBlobReference, StorageUnavailable
from docindex.storage.blob import BlobStore, new_blob_name

logger = logging.getLogger(__name__)

_MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})


class S3BlobStore(BlobStore):
    """
    Synchronous boto3 client; the pipeline runs inside worker threads so a
    blocking client is the natural fit.
    """

    def __init__(
        self,
        bucket: str,
        prefix: str = "documents",
        *,
        region_name: str | None = None,
        client=None,
    ) -> None:
        self._bucket = bucket
        self._prefix = prefix.strip("/")
        self._s3 = client or boto3.client("s3", region_name=region_name)

    def _key(self, blob_ref: str) -> str:
        if (
            not blob_ref.startswith(f"{self._prefix}/")
            or ".." in blob_ref
            or blob_ref.count("/") != self._prefix.count("/") + 1
        ):
            raise InvalidBlobReference(blob_ref)
        return blob_ref

    def store(self, data: bytes, mime_type: str) -> str:
        key = f"{self._prefix}/{new_blob_name(mime_type)}"
        try:
            self._s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=mime_type,
                ServerSideEncryption="AES256",
            )
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 upload failed | key=%s error=%s", key, exc)
            raise StorageUnavailable(str(exc)) from exc

        logger.info("S3 upload ok | bucket=%s key=%s size=%d", self._bucket, key, len(data))
        return key

    def fetch(self, blob_ref: str) -> bytes:
        key = self._key(blob_ref)
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=key)
            return resp["Body"].read()
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code", "")
            if code in _MISSING_CODES:
                logger.warning("S3 object missing | key=%s code=%s", key, code)
                raise StorageUnavailable(f"blob not found: {key}") from exc
            logger.error("S3 download failed | key=%s code=%s", key, code)
            raise StorageUnavailable(str(exc)) from exc
        except BotoCoreError as exc:
            logger.error("S3 download failed | key=%s error=%s", key, exc)
            raise StorageUnavailable(str(exc)) from exc

    def delete(self, blob_ref: str) -> None:
        # DeleteObject on a missing key succeeds, which gives us the no-op semantics
        key = self._key(blob_ref)
        try:
            self._s3.delete_object(Bucket=self._bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            logger.error("S3 delete failed | key=%s error=%s", key, exc)
            raise StorageUnavailable(str(exc)) from exc
        logger.info("S3 object deleted | key=%s", key)
