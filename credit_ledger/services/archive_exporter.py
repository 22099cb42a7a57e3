"""
Archive Exporter - writes retired operation logs to S3 as gzip Parquet.

The reaper only deletes a batch after `export()` returned, so any failure
here must raise.
"""

import asyncio
import hashlib
import io
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Protocol

import boto3
import pandas as pd
from botocore.exceptions import BotoCoreError, ClientError
from structlog import get_logger

from credit_ledger.db.models import OperationLog
from credit_ledger.exceptions import ArchiveExportError

logger = get_logger(__name__)

ARCHIVE_COLUMNS = (
    "req_id",
    "uid",
    "cost",
    "status",
    "result_ref",
    "error_code",
    "error_message",
    "duration_ms",
    "created_at",
    "updated_at",
    "completed_at",
)


class ArchiveExporter(Protocol):
    async def export(self, rows: Sequence[OperationLog]) -> str:
        """Persist the rows to cold storage and return where they went."""
        ...


def operations_to_parquet(rows: Sequence[OperationLog]) -> bytes:
    """Serialize operation logs to gzip-compressed Parquet."""
    df = pd.DataFrame(
        [{column: getattr(row, column) for column in ARCHIVE_COLUMNS} for row in rows],
        columns=list(ARCHIVE_COLUMNS),
    )
    buffer = io.BytesIO()
    df.to_parquet(buffer, compression="gzip", index=False)
    return buffer.getvalue()


class S3ArchiveExporter:
    """Uploads each batch as its own object under `{prefix}/{year}/{month}/`."""

    def __init__(self, bucket: str, prefix: str, region: str) -> None:
        self.bucket = bucket
        self.prefix = prefix.rstrip("/")
        self.region = region
        self._client = None

    def _s3(self):  # type: ignore[no-untyped-def]
        if self._client is None:
            self._client = boto3.client("s3", region_name=self.region)
        return self._client

    async def export(self, rows: Sequence[OperationLog]) -> str:
        """
        Raises:
            ArchiveExportError: Serialization, upload or verification failed
        """
        if not rows:
            raise ArchiveExportError("Nothing to export")
        return await asyncio.to_thread(self._export_sync, rows)

    def _export_sync(self, rows: Sequence[OperationLog]) -> str:
        now = datetime.now(UTC)
        try:
            payload = operations_to_parquet(rows)
        except (ValueError, ImportError) as exc:
            raise ArchiveExportError(f"Parquet serialization failed: {exc}") from exc

        checksum = hashlib.sha256(payload).hexdigest()
        key = (
            f"{self.prefix}/{now.year}/{now.month:02d}/"
            f"operation_logs-{now.strftime('%Y%m%dT%H%M%S')}-{checksum[:12]}.parquet.gz"
        )

        s3 = self._s3()
        try:
            s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=payload,
                StorageClass="INTELLIGENT_TIERING",
                ContentType="application/octet-stream",
                Metadata={
                    "archive-version": "1.0",
                    "source": "credit-ledger",
                    "records": str(len(rows)),
                    "checksum-sha256": checksum,
                    "created-at": now.isoformat(),
                },
            )
            head = s3.head_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as exc:
            raise ArchiveExportError(f"Upload to s3://{self.bucket}/{key} failed: {exc}") from exc

        if head.get("ContentLength") != len(payload):
            raise ArchiveExportError(f"Size mismatch for s3://{self.bucket}/{key}")

        logger.info(
            "archive_uploaded",
            s3_key=key,
            records=len(rows),
            size_bytes=len(payload),
            checksum=checksum,
        )
        return f"s3://{self.bucket}/{key}"
