"""Blob storage for dataset uploads and evidence files.

Objects are stored under ``<tenant_id>/<category>/<YYYY-MM-DD>/<uuid>_<name>``.
The category is the dataset type for evidence files. The SHA-256 returned by
``put`` is computed over exactly the bytes handed to the store, and S3BlobStore
also sends it as the object's ChecksumSHA256 so the server rejects any upload
whose stored bytes differ.

Implementations:
- S3BlobStore       — aioboto3 client for AWS S3 or MinIO
- InMemoryBlobStore — process-local dict, for development and tests
"""

import base64
import hashlib
import uuid
from datetime import UTC, datetime

import aioboto3
from botocore.exceptions import ClientError

from compliance_pilot.core.interfaces import StoredBlob
from compliance_pilot.observability import get_logger

logger = get_logger(__name__)


def build_object_path(name: str, tenant_id: uuid.UUID, category: str) -> str:
    """Build a unique tenant- and category-scoped object path."""
    date_part = datetime.now(UTC).strftime("%Y-%m-%d")
    return f"{tenant_id}/{category}/{date_part}/{uuid.uuid4()}_{name}"


class S3BlobStore:
    """S3-compatible blob store backed by aioboto3.

    A client is opened per operation from a shared aioboto3 Session.

    Args:
        bucket: Target bucket.
        endpoint_url: S3-compatible endpoint (MinIO). None for AWS S3.
        access_key: Access key id.
        secret_key: Secret access key.
        region: Region name.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
    ) -> None:
        self._bucket = bucket
        self._endpoint_url = endpoint_url or None
        self._region = region
        self._session = aioboto3.Session(
            aws_access_key_id=access_key or None,
            aws_secret_access_key=secret_key or None,
            region_name=region,
        )

    def _client(self):  # type: ignore[no-untyped-def]
        return self._session.client("s3", endpoint_url=self._endpoint_url)

    async def ensure_bucket(self) -> None:
        """Create the bucket if it does not exist yet."""
        async with self._client() as s3:
            try:
                await s3.head_bucket(Bucket=self._bucket)
                return
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code")
                if code not in ("404", "NoSuchBucket", "NotFound"):
                    raise
            create_kwargs: dict[str, object] = {"Bucket": self._bucket}
            if self._region != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": self._region
                }
            await s3.create_bucket(**create_kwargs)
            logger.info("Created blob bucket", bucket=self._bucket)

    async def put(
        self,
        data: bytes,
        name: str,
        tenant_id: uuid.UUID,
        category: str,
        content_type: str = "application/octet-stream",
    ) -> StoredBlob:
        """Upload bytes and return their path and SHA-256.

        Raises:
            botocore.exceptions.ClientError: If the upload is rejected.
        """
        digest = hashlib.sha256(data).digest()
        path = build_object_path(name, tenant_id, category)

        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=path,
                Body=data,
                ContentType=content_type,
                ChecksumSHA256=base64.b64encode(digest).decode("ascii"),
                Metadata={"sha256": digest.hex()},
            )

        logger.info(
            "Blob stored",
            path=path,
            size=len(data),
            tenant_id=str(tenant_id),
        )
        return StoredBlob(path=path, content_hash=digest.hex(), size=len(data))

    async def get(self, path: str) -> bytes:
        async with self._client() as s3:
            response = await s3.get_object(Bucket=self._bucket, Key=path)
            async with response["Body"] as stream:
                return await stream.read()

    async def delete(self, path: str) -> None:
        async with self._client() as s3:
            await s3.delete_object(Bucket=self._bucket, Key=path)
        logger.info("Blob deleted", path=path)


class InMemoryBlobStore:
    """Process-local blob store. Contents do not survive a restart."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str] = {}

    async def put(
        self,
        data: bytes,
        name: str,
        tenant_id: uuid.UUID,
        category: str,
        content_type: str = "application/octet-stream",
    ) -> StoredBlob:
        path = build_object_path(name, tenant_id, category)
        self.objects[path] = bytes(data)
        self.content_types[path] = content_type
        return StoredBlob(
            path=path,
            content_hash=hashlib.sha256(data).hexdigest(),
            size=len(data),
        )

    async def get(self, path: str) -> bytes:
        try:
            return self.objects[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    async def delete(self, path: str) -> None:
        if self.objects.pop(path, None) is None:
            raise FileNotFoundError(path)
        self.content_types.pop(path, None)
