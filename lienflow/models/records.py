"""
Pydantic schemas for filings as they move through the pipeline.

``DiscoveredFiling`` is what a listing scan sees, ``LienRecord`` is the fully
extracted row delivered to the sink, and ``ExtractionCursor`` is the
resumption point within a paginated listing.
"""

from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field

NEVER_LAPSES = "12/31/9999"


class RecordError(str, Enum):
    """Why a record is partial."""

    PANEL_FAILED = "panel_failed"
    HISTORY_FAILED = "history_failed"
    NO_DOWNLOAD_AVAILABLE = "no_download_available"
    ROW_FAILED = "row_failed"


class DiscoveredFiling(BaseModel):
    """Identity of a filing seen on a listing page."""

    model_config = ConfigDict(frozen=True)

    source: str = Field(description="Source identifier, e.g. ca_sos")
    file_number: str = Field(min_length=1, description="File number as listed")
    filing_date: str = Field(description="Filing date as listed (MM/DD/YYYY)")


class LienRecord(BaseModel):
    """
    One extracted filing.

    A record carrying an ``error`` tag is a best-effort partial result: the
    fields that could be read are filled, the rest are empty strings. It is
    still delivered downstream.

    Example:
        {
            "state": "CA",
            "source": "ca_sos",
            "ucc_type": "Federal Tax Lien",
            "file_number": "U260005937931",
            "debtor_name": "JOHN SMITH",
            "filing_date": "01/20/2026",
            "lapse_date": "12/31/9999",
            "pdf_filename": "U260005937931_01202026.pdf",
            "processed": true,
            "error": null
        }
    """

    model_config = ConfigDict(extra="ignore", validate_default=True)

    state: str = Field(default="CA", description="Two-letter state code")
    source: str = Field(default="", description="Source identifier")
    county: str = Field(default="", description="County, when the source is county level")
    ucc_type: str = Field(default="", description="UCC filing type")
    debtor_name: str = Field(default="")
    debtor_address: str = Field(default="")
    file_number: str = Field(description="File number")
    secured_party_name: str = Field(default="")
    secured_party_address: str = Field(default="")
    status: str = Field(default="", description="Filing status as listed")
    filing_date: str = Field(default="", description="MM/DD/YYYY")
    lapse_date: str = Field(default="", description=f"MM/DD/YYYY or {NEVER_LAPSES}")
    document_type: str = Field(default="", description="Document type from the history view")
    pdf_filename: str = Field(default="", description="Downloaded document name, empty if none")
    processed: bool = Field(default=False, description="All extraction steps ran")
    error: str | None = Field(default=None, description="Partial-result tag")

    @property
    def is_partial(self) -> bool:
        return bool(self.error)

    @classmethod
    def partial(cls, file_number: str, error: RecordError | str, **fields: str) -> Self:
        """Build a partial record tagged with ``error``."""
        tag = error.value if isinstance(error, RecordError) else error
        return cls(file_number=file_number, error=tag, processed=False, **fields)

    def discovered(self) -> DiscoveredFiling:
        """Identity of this record for the job queue."""
        return DiscoveredFiling(
            source=self.source,
            file_number=self.file_number,
            filing_date=self.filing_date,
        )


class ExtractionCursor(BaseModel):
    """
    Resumption point inside a paginated listing.

    ``page`` is 1-based, ``row_index`` is the 0-based index of the next row
    to process on that page.
    """

    model_config = ConfigDict(frozen=True)

    page: int = Field(default=1, ge=1)
    row_index: int = Field(default=0, ge=0)

    def as_tuple(self) -> tuple[int, int]:
        return (self.page, self.row_index)
