"""
Document ingestion: store the upload, then analyze it inline.

The document is created in "processing" state and always leaves this module
as "completed" or "failed"; a provider failure is recorded on the document
rather than raised to the uploader.
"""

import logging
from pathlib import Path
from typing import Optional

from ..analyst import AnalysisError, DocumentAnalysis, analyze_document, is_configured
from ..archivist import (
    AnalysisStatus,
    BaseStorage,
    Business,
    Document,
    EntityType,
    InsightType,
)
from ..archivist.models import new_id
from ..common.broadcast import publish
from ..config.settings import settings

logger = logging.getLogger(__name__)

FAILED_ANALYSIS = {"error": "Analysis failed"}


class DocumentTooLargeError(ValueError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Document is {size} bytes; limit is {limit}")


def _stored_name(file_name: str) -> str:
    """Opaque on-disk name; only the original extension is kept."""
    suffix = Path(file_name).suffix.lower()
    if not suffix.isascii() or len(suffix) > 10:
        suffix = ""
    return f"{new_id()}{suffix}"


def _save_upload(data: bytes, file_name: str) -> str:
    upload_dir = Path(settings.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    path = upload_dir / _stored_name(file_name)
    path.write_bytes(data)
    return str(path)


async def _business_context(
    storage: BaseStorage,
    uploader_id: str,
    deal_id: Optional[str],
    business_id: Optional[str],
) -> Optional[Business]:
    """The business a document is about: explicit, via the deal's match, or the uploader's own."""
    if business_id:
        return await storage.get_business_by_id(business_id)
    if deal_id:
        deal = await storage.get_deal_by_id(deal_id)
        match = await storage.get_match_by_id(deal.match_id) if deal else None
        if match is not None:
            return await storage.get_business_by_id(match.business_id)
    return await storage.get_business_by_owner_id(uploader_id)


async def _record_risk_assessment(
    storage: BaseStorage,
    document: Document,
    analysis: DocumentAnalysis,
    business: Optional[Business],
    deal_id: Optional[str],
) -> None:
    if business is not None:
        entity_type, entity_id = EntityType.BUSINESS, business.id
    elif deal_id:
        entity_type, entity_id = EntityType.DEAL, deal_id
    else:
        return

    try:
        await storage.create_ai_insight({
            "entity_type": entity_type,
            "entity_id": entity_id,
            "insight_type": InsightType.RISK_ASSESSMENT,
            "insights": {"documentId": document.id, **analysis.to_json_dict()},
            "confidence": analysis.valuation.confidence,
        })
    except Exception as e:
        logger.warning(f"Failed to record risk assessment for document {document.id}: {e}")


async def ingest_document(
    storage: BaseStorage,
    uploader_id: str,
    file_name: str,
    file_type: str,
    data: bytes,
    document_type: str,
    deal_id: Optional[str] = None,
    business_id: Optional[str] = None,
) -> Document:
    """Persist an uploaded document and run AI analysis on it.

    Args:
        storage: Storage backend
        uploader_id: User uploading the file
        file_name: Original file name
        file_type: MIME type reported by the client
        data: Raw file bytes
        document_type: DocumentType value
        deal_id: Deal the document belongs to, if any
        business_id: Business the document describes, if any

    Returns:
        The document after analysis, status "completed" or "failed"

    Raises:
        DocumentTooLargeError: data exceeds settings.max_upload_bytes
    """
    if len(data) > settings.max_upload_bytes:
        raise DocumentTooLargeError(len(data), settings.max_upload_bytes)

    file_path = _save_upload(data, file_name)
    document = await storage.create_document({
        "deal_id": deal_id,
        "business_id": business_id,
        "uploader_id": uploader_id,
        "file_name": file_name,
        "file_type": file_type,
        "file_size": len(data),
        "file_path": file_path,
        "document_type": document_type,
        "ai_analysis_status": AnalysisStatus.PROCESSING,
    })
    logger.info(f"Stored document {document.id} ({file_name}, {len(data)} bytes)")

    business = await _business_context(storage, uploader_id, deal_id, business_id)
    content = data.decode("utf-8", errors="replace")

    try:
        analysis = await analyze_document(content, document.document_type, business)
    except AnalysisError as e:
        logger.error(f"Analysis failed for document {document.id}: {e}")
        return await storage.update_document_analysis(
            document.id,
            FAILED_ANALYSIS,
            status=AnalysisStatus.FAILED,
        )

    document = await storage.update_document_analysis(
        document.id,
        analysis.to_json_dict(),
        risk_flags=analysis.risk_flags,
        status=AnalysisStatus.COMPLETED,
    )

    if is_configured():
        await _record_risk_assessment(storage, document, analysis, business, deal_id)

    if deal_id:
        await publish(deal_id, {
            "type": "document_analyzed",
            "dealId": deal_id,
            "documentId": document.id,
            "status": document.ai_analysis_status,
        })
    return document
