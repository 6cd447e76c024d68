"""Call history schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel


class CallRecordResponse(BaseModel):
    id: int
    call_id: str
    line_number: str
    caller_number: str
    callee_number: str
    direction: str
    status: str
    duration_seconds: int
    billed_minutes: int
    free_minutes: int
    cost: Decimal
    call_time: datetime
    record_url: Optional[str] = None
    chat_history: Optional[List[dict[str, Any]]] = None
    assistant_id: Optional[int] = None

    class Config:
        from_attributes = True


class CallHistoryResponse(BaseModel):
    """One page of call history.

    Pass ``snapshot`` (and optionally ``next_cursor``) back to keep paging
    over the same set of calls.
    """

    history: List[CallRecordResponse]
    current_page: int
    total_count: int
    total_pages: int
    has_more: bool
    snapshot: Optional[str] = None
    next_cursor: Optional[str] = None
