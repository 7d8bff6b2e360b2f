"""
API Routes for the Inventory Audit Ledger

Write endpoint (append-only, no PATCH, no PUT, no DELETE):
- POST /api/ledger/events            - Append an event from the inventory app

Query endpoints:
- GET  /api/ledger/chain             - Full chain in index order
- GET  /api/ledger/entries/{index}   - One entry
- GET  /api/ledger/events            - Search (newest first)
- GET  /api/ledger/audit/{event_id}  - Audit trail of one domain record
- GET  /api/ledger/stats             - Counts and time span
- GET  /api/ledger/export/csv        - CSV export

Verification:
- GET  /api/ledger/chain/verify      - Verify now (no alert)
- POST /api/ledger/force-verify      - Verify now and alert on tampering
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

from ..core import (
    AlertDispatcher,
    ChainVerifier,
    LedgerEntryFactory,
    LedgerInputError,
    LedgerReader,
)
from ..core.reader import DEFAULT_SEARCH_LIMIT
from ..schemas import LedgerEntry, VerificationReport


router = APIRouter(prefix="/api/ledger", tags=["Ledger"])


# ============================================================
# Dependencies
# ============================================================

def get_factory(request: Request) -> LedgerEntryFactory:
    return request.app.state.factory


def get_verifier(request: Request) -> ChainVerifier:
    return request.app.state.verifier


def get_reader(request: Request) -> LedgerReader:
    return request.app.state.reader


def get_dispatcher(request: Request) -> AlertDispatcher:
    return request.app.state.dispatcher


# ============================================================
# Request/Response Models
# ============================================================

class AppendEventRequest(BaseModel):
    """A domain event to record."""
    event_type: str = Field(..., min_length=1, examples=["STOCK_IN"])
    event_id: str = Field(..., min_length=1)
    collection_name: str = Field(..., min_length=1, examples=["StockIn"])
    payload: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None


class ForceVerifyResponse(VerificationReport):
    """Verification result plus whether an operator alert went out."""
    alert_sent: bool = Field(False, alias="alertSent")


class LedgerStatsResponse(BaseModel):
    """Aggregate ledger statistics."""
    model_config = ConfigDict(populate_by_name=True)

    total_entries: int = Field(..., alias="totalEntries")
    unverified_entries: int = Field(..., alias="unverifiedEntries")
    event_type_breakdown: dict[str, int] = Field(..., alias="eventTypeBreakdown")
    first_entry_time: Optional[datetime] = Field(None, alias="firstEntryTime")
    last_entry_time: Optional[datetime] = Field(None, alias="lastEntryTime")


# ============================================================
# Write Endpoint
# ============================================================

@router.post(
    "/events",
    response_model=LedgerEntry,
    status_code=status.HTTP_201_CREATED,
    summary="Append an event",
)
def append_event(body: AppendEventRequest, request: Request):
    """
    Record one domain event as a new chained, signed entry.

    Returns 503 if the ledger store is unavailable; the event is NOT recorded.
    """
    try:
        return get_factory(request).append(
            event_type=body.event_type,
            event_id=body.event_id,
            collection_name=body.collection_name,
            payload=body.payload,
            user_id=body.user_id,
        )
    except LedgerInputError as e:
        raise HTTPException(
            status_code=422,
            detail=str(e),
        )


# ============================================================
# Query Endpoints
# ============================================================

@router.get("/chain", response_model=list[LedgerEntry], summary="Full chain")
def get_chain(request: Request):
    """All entries in index order."""
    return get_reader(request).list_chain()


@router.get("/entries/{index}", response_model=LedgerEntry, summary="One entry")
def get_entry(index: int, request: Request):
    entry = get_reader(request).get_entry(index)
    if entry is None:
        raise HTTPException(status_code=404, detail="Ledger entry not found")
    return entry


@router.get("/events", response_model=list[LedgerEntry], summary="Search entries")
def search_events(
    request: Request,
    event_type: Optional[str] = None,
    collection_name: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(DEFAULT_SEARCH_LIMIT, ge=1, le=1000),
):
    """Most recent entries matching every given filter, newest first."""
    return get_reader(request).search(
        event_type=event_type,
        collection_name=collection_name,
        user_id=user_id,
        limit=limit,
    )


@router.get("/audit/{event_id}", response_model=list[LedgerEntry], summary="Audit trail")
def get_audit_trail(event_id: str, request: Request):
    """Every entry recorded for one domain record, oldest first."""
    return get_reader(request).audit_trail(event_id)


@router.get("/stats", response_model=LedgerStatsResponse, summary="Ledger statistics")
def get_stats(request: Request):
    return LedgerStatsResponse(**get_reader(request).stats())


@router.get("/export/csv", summary="CSV export")
def export_csv(request: Request):
    return Response(
        content=get_reader(request).export_csv(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="ledger_export.csv"'},
    )


# ============================================================
# Verification Endpoints
# ============================================================

@router.get("/chain/verify", response_model=VerificationReport, summary="Verify the chain")
def verify_chain(request: Request):
    """
    Run a full verification now.

    Flagged entries are marked unverified. No alert is sent.
    """
    return get_verifier(request).verify()


@router.post("/force-verify", response_model=ForceVerifyResponse, summary="Verify and alert")
def force_verify(request: Request):
    """
    Run a full verification now and alert the operator on tampering.

    alertSent is False when the chain is intact, when no alert channel is
    configured, or when delivery failed.
    """
    report = get_verifier(request).verify()
    alert_sent = False
    if not report.is_valid:
        alert_sent = get_dispatcher(request).dispatch(report.tampered_entries)

    return ForceVerifyResponse(
        **report.model_dump(),
        alert_sent=alert_sent,
    )
