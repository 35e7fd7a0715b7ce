"""
Export destinations.

A sink receives one numbered part per batch and assembles them on finalize.
Writing the same part number twice replaces the earlier part, so a batch
retried after a crash never duplicates output.

Batches of one job run in separate queue invocations that may land on
different Functions instances, so deployed apps use BlobExportSink. The local
sink serves development and tests.
"""

import csv
import io
import os
import shutil
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import (
    BlobBlock,
    BlobSasPermissions,
    ContainerClient,
    ContentSettings,
    generate_blob_sas,
)

from ..config import get_config
from ..constants import ExportFormat, ExportSinkKind
from ..db.db_base import utc_now
from ..exceptions import BatchError
from ..utils.json_utils import dumps
from ..utils.logger import get_logger

EXTENSIONS = {ExportFormat.CSV: "csv", ExportFormat.JSON: "jsonl"}
CONTENT_TYPES = {ExportFormat.CSV: "text/csv", ExportFormat.JSON: "application/x-ndjson"}


class ExportSink(ABC):
    """Destination for export parts."""

    @abstractmethod
    def write_part(
        self,
        job_id: str,
        part_number: int,
        records: List[Dict[str, Any]],
        export_format: ExportFormat,
        columns: List[str],
    ) -> None:
        """Write (or overwrite) one part; part numbers start at 1."""

    @abstractmethod
    def finalize(self, job_id: str, part_count: int, export_format: ExportFormat) -> str:
        """Assemble parts 1..part_count and return the output location."""

    @abstractmethod
    def abort(self, job_id: str) -> None:
        """Discard any parts written for the job."""


def render_records(
    records: List[Dict[str, Any]],
    export_format: ExportFormat,
    columns: List[str],
    include_header: bool,
) -> str:
    if ExportFormat(export_format) == ExportFormat.JSON:
        return "".join(dumps(record) + "\n" for record in records)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, extrasaction="ignore", lineterminator="\n")
    if include_header:
        writer.writeheader()
    for record in records:
        writer.writerow({column: _cell(record.get(column)) for column in columns})
    return buffer.getvalue()


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return dumps(value)
    return value


class LocalFileExportSink(ExportSink):
    """Writes parts and the assembled export under a base directory."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir or get_config().export.output_dir)
        self.logger = get_logger()

    def _parts_dir(self, job_id: str) -> Path:
        return self.base_dir / job_id / "parts"

    def _part_path(self, job_id: str, part_number: int, export_format: ExportFormat) -> Path:
        ext = EXTENSIONS[ExportFormat(export_format)]
        return self._parts_dir(job_id) / f"part-{part_number:05d}.{ext}"

    def write_part(self, job_id, part_number, records, export_format, columns) -> None:
        path = self._part_path(job_id, part_number, export_format)
        content = render_records(records, export_format, columns, include_header=part_number == 1)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise BatchError(
                f"Failed to write export part {part_number}",
                cause=e,
                export_job_id=job_id,
                part_number=part_number,
            ) from e

    def finalize(self, job_id, part_count, export_format) -> str:
        ext = EXTENSIONS[ExportFormat(export_format)]
        output_path = self.base_dir / job_id / f"export.{ext}"
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, "w", encoding="utf-8", newline="") as output:
                for part_number in range(1, part_count + 1):
                    part_path = self._part_path(job_id, part_number, export_format)
                    with open(part_path, "r", encoding="utf-8", newline="") as part:
                        shutil.copyfileobj(part, output)
            shutil.rmtree(self._parts_dir(job_id), ignore_errors=True)
        except OSError as e:
            raise BatchError(
                "Failed to assemble export output", cause=e, export_job_id=job_id
            ) from e

        self.logger.info(
            "Export output assembled",
            extra={"export_job_id": job_id, "parts": part_count, "path": str(output_path)},
        )
        return str(output_path)

    def abort(self, job_id) -> None:
        shutil.rmtree(self.base_dir / job_id, ignore_errors=True)


class BlobExportSink(ExportSink):
    """
    Stages every part as a block of one block blob in Azure Storage.

    Staging a block id again replaces the earlier block. finalize commits the
    staged blocks in part order, which assembles the export without copying
    data, and returns a read-only SAS link when the account key is known.
    """

    def __init__(
        self,
        container_client: Optional[ContainerClient] = None,
        link_expiry_days: Optional[int] = None,
    ):
        config = get_config()
        self.container_name = config.export.blob_container
        self.link_expiry = timedelta(days=link_expiry_days or config.export.link_expiry_days)
        self._container = container_client
        self.logger = get_logger()

    @property
    def container(self) -> ContainerClient:
        if self._container is None:
            self._container = ContainerClient.from_connection_string(
                conn_str=get_config().queue.connection_string,
                container_name=self.container_name,
            )
        return self._container

    @staticmethod
    def blob_name(job_id: str, export_format: ExportFormat) -> str:
        return f"{job_id}/export.{EXTENSIONS[ExportFormat(export_format)]}"

    @staticmethod
    def block_id(part_number: int) -> str:
        # Block ids of one blob must all have the same length
        return f"part-{part_number:05d}"

    def write_part(self, job_id, part_number, records, export_format, columns) -> None:
        content = render_records(records, export_format, columns, include_header=part_number == 1)
        if not content:
            return

        blob = self.container.get_blob_client(self.blob_name(job_id, export_format))
        data = content.encode("utf-8")
        try:
            try:
                blob.stage_block(block_id=self.block_id(part_number), data=data)
            except ResourceNotFoundError:
                self._create_container()
                blob.stage_block(block_id=self.block_id(part_number), data=data)
        except AzureError as e:
            raise BatchError(
                f"Failed to stage export part {part_number}",
                cause=e,
                export_job_id=job_id,
                part_number=part_number,
            ) from e

    def _create_container(self) -> None:
        self.logger.info(
            "Export container not found, creating it", extra={"container": self.container_name}
        )
        try:
            self.container.create_container()
        except ResourceExistsError:
            self.logger.debug(
                "Export container created concurrently", extra={"container": self.container_name}
            )

    def finalize(self, job_id, part_count, export_format) -> str:
        name = self.blob_name(job_id, export_format)
        blob = self.container.get_blob_client(name)
        try:
            try:
                committed, uncommitted = blob.get_block_list("all")
                staged = {block.id for block in committed} | {block.id for block in uncommitted}
            except ResourceNotFoundError:
                # Every part was empty
                staged = set()
            block_ids = [
                self.block_id(n) for n in range(1, part_count + 1) if self.block_id(n) in staged
            ]
            blob.commit_block_list(
                [BlobBlock(block_id=block_id) for block_id in block_ids],
                content_settings=ContentSettings(
                    content_type=CONTENT_TYPES[ExportFormat(export_format)]
                ),
            )
        except AzureError as e:
            raise BatchError(
                "Failed to commit export output", cause=e, export_job_id=job_id
            ) from e

        self.logger.info(
            "Export output committed",
            extra={"export_job_id": job_id, "parts": part_count, "blocks": len(block_ids)},
        )
        return self._download_url(blob, name)

    def _download_url(self, blob, name: str) -> str:
        account_key = getattr(getattr(self.container, "credential", None), "account_key", None)
        if not account_key:
            return blob.url
        sas = generate_blob_sas(
            account_name=self.container.account_name,
            container_name=self.container_name,
            blob_name=name,
            account_key=account_key,
            permission=BlobSasPermissions(read=True),
            expiry=utc_now() + self.link_expiry,
        )
        return f"{blob.url}?{sas}"

    def abort(self, job_id) -> None:
        for export_format in ExportFormat:
            blob = self.container.get_blob_client(self.blob_name(job_id, export_format))
            try:
                blob.delete_blob()
            except ResourceNotFoundError:
                # Nothing committed; staged blocks expire on the service side
                continue
            except AzureError as e:
                raise BatchError(
                    "Failed to delete export output", cause=e, export_job_id=job_id
                ) from e


def build_sink(kind: Optional[ExportSinkKind] = None) -> ExportSink:
    """Sink for the configured storage kind."""
    kind = ExportSinkKind(kind or get_config().export.sink)
    if kind == ExportSinkKind.LOCAL:
        return LocalFileExportSink()
    return BlobExportSink()
