"""Where rendered contract PDFs are kept.

Two backends share the same small interface:

    store(contract_id, data) -> location
    load(location) -> bytes        (FileNotFoundError when nothing is there)

The location string is what ends up in `Contract.pdfStorageLocation`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import ClientError

from .config import AWS_REGION, S3_ENDPOINT_URL, STORAGE_LOCAL_BASE_PATH, STORAGE_S3_BUCKET_NAME, STORAGE_TYPE

logger = logging.getLogger(__name__)

S3_KEY_PREFIX = "contracts/"


def document_name(contract_id: str) -> str:
    return f"{contract_id.lower()}.pdf"


class DocumentStorage(Protocol):
    def store(self, contract_id: str, data: bytes) -> str: ...

    def load(self, location: str) -> bytes: ...


class LocalStorage:
    """Writes `{base_path}/{contract-id}.pdf` and returns the absolute path."""

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def store(self, contract_id: str, data: bytes) -> str:
        self.base_path.mkdir(parents=True, exist_ok=True)
        path = (self.base_path / document_name(contract_id)).resolve()
        path.write_bytes(data)
        logger.info("[Storage] Wrote %d bytes to %s", len(data), path)
        return str(path)

    def load(self, location: str) -> bytes:
        return Path(location).read_bytes()


class S3Storage:
    """Uploads to `s3://{bucket}/contracts/{contract-id}.pdf`."""

    scheme = "s3"

    def __init__(self, bucket: str, client=None):
        if not bucket:
            raise ValueError("STORAGE_S3_BUCKET_NAME must be set when STORAGE_TYPE=s3")
        self.bucket = bucket
        self.client = client or boto3.client("s3", region_name=AWS_REGION, endpoint_url=S3_ENDPOINT_URL)

    def _key_from_location(self, location: str) -> str:
        prefix = f"{self.scheme}://{self.bucket}/"
        if not location.startswith(prefix):
            raise FileNotFoundError(location)
        return location[len(prefix):]

    def store(self, contract_id: str, data: bytes) -> str:
        key = S3_KEY_PREFIX + document_name(contract_id)
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType="application/pdf")
        location = f"{self.scheme}://{self.bucket}/{key}"
        logger.info("[Storage] Uploaded %d bytes to %s", len(data), location)
        return location

    def load(self, location: str) -> bytes:
        key = self._key_from_location(location)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise FileNotFoundError(location) from e
            raise
        return response["Body"].read()


def create_storage() -> DocumentStorage:
    """Build the backend selected by STORAGE_TYPE."""
    if STORAGE_TYPE == "s3":
        return S3Storage(STORAGE_S3_BUCKET_NAME)
    if STORAGE_TYPE != "local":
        raise ValueError(f"Unsupported STORAGE_TYPE: {STORAGE_TYPE!r} (expected 'local' or 's3')")
    return LocalStorage(STORAGE_LOCAL_BASE_PATH)
