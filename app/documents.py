"""
Document bookkeeping for a single stage.

Status moves pending -> uploaded|received -> approved|rejected. Rejected
documents can be submitted again. Optional documents can jump straight to
approved through skip_optional_document. There is no
"approve document" operation here.
"""

from abc import ABC, abstractmethod
from typing import Optional

from app.errors import AlreadyTerminal, CannotSkipRequired, UnknownDocument
from app.logging_config import get_logger
from app.models import ComplianceDocument, DocumentStatus, StageInstance, utcnow
from app.progress import percent

logger = get_logger("app.documents")

SKIPPED_FILE_NAME = "Skipped (Optional)"


class DocumentSink(ABC):
    """Where uploaded file bytes go. The engine only tracks status."""

    @abstractmethod
    async def persist(self, file_name: str, content: bytes, metadata: Optional[dict] = None) -> str:
        """Store the file and return a storage reference."""


def _get_document(stage: StageInstance, document_id: str) -> ComplianceDocument:
    document = stage.find_document(document_id)
    if document is None:
        logger.warning(f"Unknown document '{document_id}' for stage {stage.id.value}")
        raise UnknownDocument(
            f"Document '{document_id}' is not part of the {stage.id.value} checklist"
        )
    return document


def _ensure_not_approved(stage: StageInstance, document: ComplianceDocument) -> None:
    if document.status == DocumentStatus.APPROVED:
        logger.warning(f"Document '{document.id}' in {stage.id.value} is already approved")
        raise AlreadyTerminal(f"{document.label} has already been approved")


def stage_document_progress(stage: StageInstance) -> int:
    """Share of the checklist (required or not) in a satisfied status."""
    satisfied = sum(1 for doc in stage.documents if doc.is_satisfied)
    return percent(satisfied, len(stage.documents))


def all_required_satisfied(stage: StageInstance) -> bool:
    return all(doc.is_satisfied for doc in stage.documents if doc.required)


def _record(
    stage: StageInstance,
    document: ComplianceDocument,
    status: DocumentStatus,
    file_name: str,
) -> ComplianceDocument:
    document.status = status
    document.file_name = file_name
    document.upload_date = utcnow()
    document.rejection_reason = None
    stage.progress = stage_document_progress(stage)

    logger.info(
        f"Document '{document.id}' in {stage.id.value} -> {status.value} "
        f"(stage progress {stage.progress}%, required satisfied: {all_required_satisfied(stage)})"
    )
    return document


def check_submittable(stage: StageInstance, document_id: str) -> ComplianceDocument:
    """Raise unless the document exists and can still be submitted."""
    document = _get_document(stage, document_id)
    _ensure_not_approved(stage, document)
    return document


def submit_document(stage: StageInstance, document_id: str, file_name: str) -> ComplianceDocument:
    """Partner upload. Validates before touching any state."""
    document = check_submittable(stage, document_id)
    return _record(stage, document, DocumentStatus.UPLOADED, file_name)


def mark_received(stage: StageInstance, document_id: str, file_name: str) -> ComplianceDocument:
    """Administrative path, e.g. the partner emailed the document in."""
    document = _get_document(stage, document_id)
    _ensure_not_approved(stage, document)
    return _record(stage, document, DocumentStatus.RECEIVED, file_name)


def skip_optional_document(stage: StageInstance, document_id: str) -> ComplianceDocument:
    document = _get_document(stage, document_id)
    if document.required:
        logger.warning(f"Cannot skip required document: {document_id}")
        raise CannotSkipRequired(f"{document.label} is required and cannot be skipped")
    _ensure_not_approved(stage, document)
    return _record(stage, document, DocumentStatus.APPROVED, SKIPPED_FILE_NAME)

