"""
Export processing: dispatch, paged sources and output sinks.

The batch worker lives in processing.export_worker and is imported from there.
"""

from .dispatcher import JobDispatcher, QueueJobDispatcher
from .export_sinks import BlobExportSink, ExportSink, LocalFileExportSink, build_sink
from .export_sources import (
    ConversationExportSource,
    ExportPage,
    ExportSource,
    MessageExportSource,
    build_source,
)

__all__ = [
    "BlobExportSink",
    "ConversationExportSource",
    "ExportPage",
    "ExportSink",
    "ExportSource",
    "JobDispatcher",
    "LocalFileExportSink",
    "MessageExportSource",
    "QueueJobDispatcher",
    "build_sink",
    "build_source",
]
