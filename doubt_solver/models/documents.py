# doubt_solver/models/documents.py
from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

FileType = Literal["pdf", "doc", "docx", "jpg", "jpeg", "png", "gif"]
ProcessingStatus = Literal["pending", "processing", "completed", "failed"]

# processing -> processing lets a recovered job run again after a restart
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "failed"},
    "processing": {"processing", "completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def source_states_for(target: str) -> list[str]:
    return [state for state, targets in ALLOWED_TRANSITIONS.items() if target in targets]


class DocumentRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: Optional[str] = Field(default=None, alias="_id")
    user_id: str
    original_name: str
    file_type: FileType
    url: str
    storage_key: str
    file_size: int  # in bytes
    extracted_text: str = ""
    processing_status: ProcessingStatus = "pending"
    processing_error: Optional[str] = None
    uploaded_at: datetime = Field(default_factory=utcnow)
    processed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _text_only_when_completed(self):
        if self.extracted_text and self.processing_status != "completed":
            raise ValueError("extracted_text may only be set on a completed document")
        return self

    def to_mongo(self) -> dict:
        return self.model_dump(exclude={"id"})

    def text_preview(self, length: int = 500) -> str:
        if not self.extracted_text:
            return ""
        return self.extracted_text[:length] + "..."


class UploadResponse(BaseModel):
    documentId: str
    filename: str
    fileType: str
    fileSize: int
    processingStatus: ProcessingStatus


class DocumentStatusOut(BaseModel):
    documentId: str
    filename: str
    fileType: str
    fileSize: int
    processingStatus: ProcessingStatus
    processingError: Optional[str] = None
    extractedText: str = ""
    uploadedAt: datetime
    processedAt: Optional[datetime] = None

    @classmethod
    def from_record(cls, doc: DocumentRecord, include_preview: bool = True) -> "DocumentStatusOut":
        return cls(
            documentId=doc.id,
            filename=doc.original_name,
            fileType=doc.file_type,
            fileSize=doc.file_size,
            processingStatus=doc.processing_status,
            processingError=doc.processing_error,
            extractedText=doc.text_preview() if include_preview else "",
            uploadedAt=doc.uploaded_at,
            processedAt=doc.processed_at,
        )


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=-(-total // limit) if limit else 0)


class DocumentListOut(BaseModel):
    documents: list[DocumentStatusOut]
    pagination: Pagination
