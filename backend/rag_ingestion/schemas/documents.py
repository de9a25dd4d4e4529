"""
Document Ingestion — Pydantic Schemas

Inputs and outputs of DocumentIngestionService:
  - IngestionOptions  : what the caller hands to ingest()
  - IngestionResult   : structured outcome, always returned (never raised)
  - Enums for provenance, storage partitioning and the document state machine
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class SourceType(str, Enum):
    """Provenance of an ingested document."""
    STANDARD    = "standard"      # tender standards
    PROPOSAL    = "proposal"      # vendor proposals
    REQUIREMENT = "requirement"   # requirement specs
    CONFLUENCE  = "confluence"    # external feed
    SHAREPOINT  = "sharepoint"    # external feed


class Category(str, Enum):
    """Storage path partition and access filter."""
    DELIVERY     = "delivery"
    PRODUCT      = "product"
    ARCHITECTURE = "architecture"
    ENGINEERING  = "engineering"
    PROCUREMENT  = "procurement"
    SECURITY     = "security"
    SHARED       = "shared"


class DocumentStatus(str, Enum):
    """
    Maps to documents.status.
    Transitions: processing → indexed | failed ; failed → processing (re-index)
    """
    PROCESSING = "processing"
    INDEXED    = "indexed"
    FAILED     = "failed"


class IngestionStatus(str, Enum):
    SUCCESS = "success"
    FAILED  = "failed"


# ---------------------------------------------------------------------------
# Free-form metadata carried onto every chunk's index entry
# ---------------------------------------------------------------------------

class DocumentMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    tags:          Optional[list[str]] = None
    vendor:        Optional[str] = None
    project:       Optional[str] = None
    section_title: Optional[str] = Field(None, alias="sectionTitle")
    page_number:   Optional[int] = Field(None, alias="pageNumber")

    def to_record(self) -> dict[str, Any]:
        """Serialize with camelCase aliases, dropping unset keys."""
        return self.model_dump(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# ingest() input
# ---------------------------------------------------------------------------

class IngestionOptions(BaseModel):
    """
    Everything ingest() needs for one document.

    document_id switches ingest() into re-index mode: the existing record and
    blob are reused and content bytes are not uploaded again.
    """
    source_type:  SourceType
    source_id:    Optional[str] = None
    category:     Optional[Category] = None
    file_name:    str = Field(..., min_length=1, max_length=255)
    content:      bytes = b""
    text_content: str = ""
    metadata:     DocumentMetadata = Field(default_factory=DocumentMetadata)
    document_id:  Optional[UUID] = None

    @field_validator("file_name")
    @classmethod
    def _strip_directories(cls, value: str) -> str:
        name = value.replace("\\", "/").rsplit("/", 1)[-1].strip()
        if not name or name in (".", ".."):
            raise ValueError("file_name must contain a file name")
        return name

    @property
    def is_reindex(self) -> bool:
        return self.document_id is not None


# ---------------------------------------------------------------------------
# ingest() output
# ---------------------------------------------------------------------------

class IngestionResult(BaseModel):
    """Structured outcome of ingest(); failures are reported, not raised."""
    document_id:    UUID
    blob_url:       str = ""
    chunks_indexed: int = 0
    total_tokens:   int = 0
    status:         IngestionStatus
    error:          Optional[str] = None
    ocr_enriched:   bool = False

    @property
    def ok(self) -> bool:
        return self.status is IngestionStatus.SUCCESS

    @classmethod
    def failed(cls, document_id: UUID, error: str) -> "IngestionResult":
        return cls(document_id=document_id, status=IngestionStatus.FAILED, error=error)
