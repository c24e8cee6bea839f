from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException

from sheet_analyst.application import get_analysis_service
from sheet_analyst.core.schema import AnalyzeRequest, AnalyzeResponse, analyze_response
from sheet_analyst.domain.tables import WorkbookRef

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sheets", tags=["sheets"])


@router.post("/analyze", response_model=AnalyzeResponse)
async def analyze_sheets(payload: AnalyzeRequest) -> AnalyzeResponse:
    logger.info(
        "event=request route=analyze chat_id=%s user=%s files=%s",
        payload.chat_id,
        payload.user_email,
        len(payload.files),
    )
    service = get_analysis_service()
    refs = [WorkbookRef(url=item.signed_url, declared_type=item.type) for item in payload.files]
    report = await service.analyze(payload.chat_id, payload.messages, refs)
    return analyze_response(report)


@router.get("/sessions/{chat_id}")
async def get_session(chat_id: str) -> dict:
    service = get_analysis_service()
    snapshot = service.describe_session(chat_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="session not found")
    return snapshot


@router.delete("/sessions/{chat_id}")
async def close_session(chat_id: str) -> dict:
    service = get_analysis_service()
    if not service.close_session(chat_id):
        raise HTTPException(status_code=404, detail="session not found")
    return {"chat_id": chat_id, "state": "closed"}
