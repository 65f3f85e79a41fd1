"""Object store client - streaming access to containers of blobs."""

import abc
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

import urllib3
from minio import Minio
from minio.commonconfig import ComposeSource
from minio.error import InvalidResponseError, MinioException, S3Error, ServerError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ObjectInfo:
    size: int
    content_type: Optional[str] = None
    etag: Optional[str] = None


class AbstractObjectStore(abc.ABC):
    """Abstract object store.

    ``put_stream`` is atomic from a reader's point of view: data is written
    under a staging key, finalized onto the real key with a server-side
    ``copy`` and the staging object is removed afterwards. A failure while
    writing leaves nothing under the final name.
    """

    def put_stream(self, container: str, key: str, stream: BinaryIO, content_type: Optional[str] = None) -> None:
        staging_key = self.staging_key(key)
        try:
            self._write(container, staging_key, stream, content_type)
            self.copy(container, staging_key, container, key)
        finally:
            self._discard(container, staging_key)

    @staticmethod
    def staging_key(key: str) -> str:
        return f"{key}.{uuid.uuid4().hex}.partial"

    def exists(self, container: str, key: str) -> bool:
        try:
            self.stat(container, key)
        except NotFoundError:
            return False
        return True

    def _discard(self, container: str, staging_key: str) -> None:
        try:
            self.delete(container, staging_key)
        except ObjectStoreError as e:
            logger.warning(f"Could not remove staging object {container}/{staging_key}: {e}")

    @abc.abstractmethod
    @contextmanager
    def get_stream(self, container: str, key: str) -> Iterator[BinaryIO]:
        """Open a readable binary stream on an object; released on exit."""
        raise NotImplementedError

    @abc.abstractmethod
    def _write(self, container: str, key: str, stream: BinaryIO, content_type: Optional[str]) -> None:
        """Write a stream of unknown length under ``key``."""
        raise NotImplementedError

    @abc.abstractmethod
    def copy(self, src_container: str, src_key: str, dst_container: str, dst_key: str) -> None:
        """Server-side copy; the destination appears whole or not at all."""
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, container: str, key: str) -> None:
        """Remove an object. Removing a missing object is not an error."""
        raise NotImplementedError

    @abc.abstractmethod
    def stat(self, container: str, key: str) -> ObjectInfo:
        raise NotImplementedError

    @abc.abstractmethod
    def ensure_container(self, container: str) -> None:
        raise NotImplementedError


NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NoSuchObject", "ResourceNotFound"})
ACCESS_DENIED_CODES = frozenset({
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "SignatureDoesNotMatch",
})


@contextmanager
def translate_errors(container: str, key: str):
    """Map minio / urllib3 failures onto the store's error kinds."""
    location = f"{container}/{key}"
    try:
        yield
    except S3Error as e:
        if e.code in NOT_FOUND_CODES:
            raise NotFoundError(f"{location} not found ({e.code})") from e
        if e.code in ACCESS_DENIED_CODES:
            raise AccessDeniedError(f"Access denied to {location} ({e.code})") from e
        raise TransientStoreError(f"Storage error on {location}: {e.code}") from e
    except (ServerError, InvalidResponseError, MinioException) as e:
        raise TransientStoreError(f"Storage error on {location}: {e}") from e
    except (urllib3.exceptions.HTTPError, OSError) as e:
        raise TransientStoreError(f"Network error on {location}: {e}") from e


class MinIOObjectStore(AbstractObjectStore):
    """MinIO / S3 implementation of the object store."""

    def __init__(self, client: Minio, part_size: int = 10 * 1024 * 1024):
        self.client = client
        self.part_size = part_size

    def ensure_container(self, container: str) -> None:
        """Ensure the bucket exists, create if it doesn't."""
        with translate_errors(container, ""):
            if not self.client.bucket_exists(bucket_name=container):
                self.client.make_bucket(bucket_name=container)
                logger.info(f"Created MinIO bucket: {container}")

    @contextmanager
    def get_stream(self, container: str, key: str) -> Iterator[BinaryIO]:
        with translate_errors(container, key):
            response = self.client.get_object(bucket_name=container, object_name=key)
        try:
            yield response
        finally:
            response.close()
            response.release_conn()

    def _write(self, container: str, key: str, stream: BinaryIO, content_type: Optional[str]) -> None:
        # length=-1 makes minio stream a multipart upload; nothing is visible
        # under the key until the upload completes
        with translate_errors(container, key):
            self.client.put_object(
                bucket_name=container,
                object_name=key,
                data=stream,
                length=-1,
                part_size=self.part_size,
                content_type=content_type or "application/octet-stream",
            )

    def copy(self, src_container: str, src_key: str, dst_container: str, dst_key: str) -> None:
        # compose_object also handles sources above the 5 GiB single-copy limit
        with translate_errors(dst_container, dst_key):
            self.client.compose_object(
                bucket_name=dst_container,
                object_name=dst_key,
                sources=[ComposeSource(bucket_name=src_container, object_name=src_key)],
            )

    def delete(self, container: str, key: str) -> None:
        with translate_errors(container, key):
            self.client.remove_object(bucket_name=container, object_name=key)

    def stat(self, container: str, key: str) -> ObjectInfo:
        with translate_errors(container, key):
            result = self.client.stat_object(bucket_name=container, object_name=key)
        return ObjectInfo(size=result.size, content_type=result.content_type, etag=result.etag)


class ObjectStoreError(Exception):
    """Base exception for object store failures."""
    pass


class TransientStoreError(ObjectStoreError):
    """Network or server-side failure; retryable."""
    pass


class NotFoundError(ObjectStoreError):
    """Container or object does not exist."""
    pass


class AccessDeniedError(ObjectStoreError):
    """Credentials are not allowed to perform the operation."""
    pass
