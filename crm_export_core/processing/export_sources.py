"""
Paged readers for exportable CRM records.

Each source turns an opaque cursor into one page of records plus the cursor
for the next page. A next cursor of None means the upstream has no more data.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..clients.crm_client import CRMClient
from ..constants import ExportType
from ..schemas.billing_schemas import ItemCounts
from ..schemas.export_job_schemas import ExportFilters

SAMPLE_PAGE_SIZE = 100


class ExportPage(BaseModel):
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[str] = None
    total: Optional[int] = None


def _drop_empty(params: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in params.items() if v not in (None, "")}


class ExportSource(ABC):
    """Reads one export type from the CRM."""

    export_type: ExportType
    columns: List[str]

    def __init__(self, client: CRMClient, page_size: int):
        self.client = client
        self.page_size = page_size

    @abstractmethod
    def fetch_page(
        self,
        access_token: str,
        location_id: str,
        filters: ExportFilters,
        cursor: Optional[str],
        limit: Optional[int] = None,
    ) -> ExportPage:
        """Fetch the page that starts at `cursor` (None for the first page)."""

    @abstractmethod
    def count_items(self, access_token: str, location_id: str, filters: ExportFilters) -> ItemCounts:
        """Estimate billable item counts from the first page."""


class MessageExportSource(ExportSource):
    """Messages via the export endpoint, paged by upstream-issued cursors."""

    export_type = ExportType.MESSAGES
    columns = [
        "id",
        "conversationId",
        "contactId",
        "type",
        "messageType",
        "direction",
        "status",
        "body",
        "dateAdded",
    ]

    def _params(
        self, location_id: str, filters: ExportFilters, cursor: Optional[str], limit: int
    ) -> Dict[str, Any]:
        return _drop_empty(
            {
                "locationId": location_id,
                "limit": limit,
                "cursor": cursor,
                "channel": filters.channel,
                "startDate": filters.start_date.isoformat() if filters.start_date else None,
                "endDate": filters.end_date.isoformat() if filters.end_date else None,
                "contactId": filters.contact_id,
                "conversationId": filters.conversation_id,
            }
        )

    def fetch_page(self, access_token, location_id, filters, cursor, limit=None) -> ExportPage:
        data = self.client.export_messages(
            access_token, self._params(location_id, filters, cursor, limit or self.page_size)
        )
        return ExportPage(
            items=data.get("messages") or [],
            next_cursor=data.get("nextCursor") or None,
            total=data.get("total"),
        )

    @staticmethod
    def is_email(message: Dict[str, Any]) -> bool:
        message_type = str(message.get("type") or message.get("messageType") or "").lower()
        return "email" in message_type or message_type == "3"

    def count_items(self, access_token, location_id, filters) -> ItemCounts:
        """
        Count messages split into email and text.

        The split is measured on the first page and extrapolated to the
        reported total.
        """
        page = self.fetch_page(access_token, location_id, filters, None, SAMPLE_PAGE_SIZE)
        sample = page.items
        total = page.total or len(sample)

        email_count = sum(1 for message in sample if self.is_email(message))
        text_count = len(sample) - email_count

        if sample and total > len(sample):
            ratio = total / len(sample)
            return ItemCounts(
                sms_messages=round(text_count * ratio), email_messages=round(email_count * ratio)
            )
        return ItemCounts(sms_messages=text_count, email_messages=email_count)


class ConversationExportSource(ExportSource):
    """
    Conversations via the search endpoint.

    Search pages by offset, so the cursor is the decimal offset of the next
    record.
    """

    export_type = ExportType.CONVERSATIONS
    columns = [
        "id",
        "contactId",
        "fullName",
        "email",
        "phone",
        "type",
        "lastMessageType",
        "lastMessageDirection",
        "lastMessageBody",
        "lastMessageDate",
        "unreadCount",
        "dateAdded",
        "dateUpdated",
    ]

    def _params(
        self, location_id: str, filters: ExportFilters, offset: int, limit: int
    ) -> Dict[str, Any]:
        return _drop_empty(
            {
                "locationId": location_id,
                "limit": limit,
                "skip": offset or None,
                "query": filters.query,
                "id": filters.conversation_id,
                "contactId": filters.contact_id,
                "status": filters.status,
                "lastMessageType": filters.last_message_type,
                "lastMessageDirection": filters.last_message_direction,
                "sortBy": filters.sort_by,
            }
        )

    def fetch_page(self, access_token, location_id, filters, cursor, limit=None) -> ExportPage:
        offset = int(cursor) if cursor else 0
        limit = limit or self.page_size
        data = self.client.search_conversations(
            access_token, self._params(location_id, filters, offset, limit)
        )
        items = data.get("conversations") or []
        total = data.get("total")

        next_offset = offset + len(items)
        has_more = len(items) == limit and (total is None or next_offset < total)
        return ExportPage(
            items=items, next_cursor=str(next_offset) if has_more else None, total=total
        )

    def count_items(self, access_token, location_id, filters) -> ItemCounts:
        page = self.fetch_page(access_token, location_id, filters, None, SAMPLE_PAGE_SIZE)
        return ItemCounts(conversations=page.total or len(page.items))


def build_source(export_type: ExportType, client: CRMClient, page_size: int) -> ExportSource:
    if ExportType(export_type) == ExportType.MESSAGES:
        return MessageExportSource(client, page_size)
    return ConversationExportSource(client, page_size)
