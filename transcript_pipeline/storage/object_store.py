"""S3-compatible object storage client for audio downloads.

Resolves ``gs://bucket/key`` and ``s3://bucket/key`` locators and fetches
them with boto3. GCS objects are read through the interoperability
endpoint (https://storage.googleapis.com) using HMAC keys.
"""

from __future__ import annotations

import logging
import os
from urllib.parse import urlparse

import boto3
from botocore.exceptions import ClientError

from transcript_pipeline.utils.errors import AudioFetchError, TransientAudioFetchError

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://storage.googleapis.com"
SUPPORTED_SCHEMES = ("gs", "s3")
TRANSIENT_ERROR_CODES = (
    "SlowDown",
    "RequestTimeout",
    "ServiceUnavailable",
    "InternalError",
    "500",
    "503",
)


def parse_locator(uri: str) -> tuple[str, str]:
    """Split a storage locator into (bucket, key).

    Raises:
        AudioFetchError: If the scheme is unsupported or bucket/key is missing.
    """
    parsed = urlparse(uri or "")
    if parsed.scheme not in SUPPORTED_SCHEMES:
        raise AudioFetchError(
            f"Unsupported storage locator '{uri}' (expected gs:// or s3://)",
            key=uri,
        )
    bucket = parsed.netloc
    key = parsed.path.lstrip("/")
    if not bucket or not key:
        raise AudioFetchError(f"Storage locator '{uri}' needs bucket and key", key=uri)
    return bucket, key


class ObjectStore:
    """S3-compatible download client.

    Reads configuration from environment variables:
        OBJECT_STORE_ENDPOINT, OBJECT_STORE_ACCESS_KEY_ID,
        OBJECT_STORE_SECRET_ACCESS_KEY
    """

    def __init__(
        self,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        self.endpoint_url = endpoint_url or os.environ.get(
            "OBJECT_STORE_ENDPOINT", DEFAULT_ENDPOINT
        )
        self.access_key_id = access_key_id or os.environ.get(
            "OBJECT_STORE_ACCESS_KEY_ID", ""
        )
        self.secret_access_key = secret_access_key or os.environ.get(
            "OBJECT_STORE_SECRET_ACCESS_KEY", ""
        )

        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            region_name="auto",
        )

    def fetch_object(self, uri: str) -> bytes:
        """Download the object at ``uri``.

        Raises:
            AudioFetchError: If the locator is invalid or the object cannot
                be retrieved (a missing object is reported as such).
            TransientAudioFetchError: If the store throttles or times out.
        """
        bucket, key = parse_locator(uri)
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
            data = response["Body"].read()
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code", "Unknown")
            if error_code in ("NoSuchKey", "404", "NotFound"):
                raise AudioFetchError(
                    f"Audio object not found at '{uri}'", key=uri
                ) from exc
            if error_code in TRANSIENT_ERROR_CODES:
                raise TransientAudioFetchError(
                    f"Object store unavailable for '{uri}': {error_code}", key=uri
                ) from exc
            raise AudioFetchError(
                f"Failed to fetch object '{uri}': {error_code}", key=uri
            ) from exc
        logger.info("Fetched %d bytes from %s", len(data), uri)
        return data
