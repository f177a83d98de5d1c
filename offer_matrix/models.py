"""Pydantic models for offer groups, matrix columns and view preferences.

Wire models (Program, OfferGroup, Job, ShareLink, ShareView) mirror the
JSON contract of the extraction backend and ignore unknown fields so that
backend additions never break parsing. Column and ViewPreferences are the
engine's own state.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

IDENTITY_SEPARATOR = "::"


def identity_key(source_file: str, insurer: str | None, program_code: str | None) -> str:
    """Column identity: ``sourceFile :: insurer :: programCode``."""
    return IDENTITY_SEPARATOR.join([source_file or "", insurer or "", program_code or ""])


# ---------------------------------------------------------------------------
# Backend wire models
# ---------------------------------------------------------------------------


class Program(BaseModel):
    """One insurer program inside an offer group."""

    model_config = ConfigDict(extra="ignore")

    row_id: int | None = None
    id: int | None = None
    insurer: str | None = None
    program_code: str | None = None
    base_sum_eur: float | None = None
    premium_eur: float | None = None
    payment_method: str | None = None
    features: dict[str, Any] = Field(default_factory=dict)

    @property
    def backend_id(self) -> int | None:
        """Prefer ``row_id``, fall back to ``id``."""
        return self.row_id if self.row_id is not None else self.id


class GroupStatus(str, Enum):
    PARSED = "parsed"
    SUCCESS = "success"
    ERROR = "error"


class OfferGroup(BaseModel):
    """All programs extracted from one source document."""

    model_config = ConfigDict(extra="ignore")

    source_file: str
    inquiry_id: int | None = None
    status: GroupStatus | None = None
    error: str | None = None
    programs: list[Program] = Field(default_factory=list)

    @property
    def failed(self) -> bool:
        return not self.programs and (self.status == GroupStatus.ERROR or bool(self.error))


class JobError(BaseModel):
    document_id: str
    error: str


class Job(BaseModel):
    """Extraction job progress."""

    model_config = ConfigDict(extra="ignore")

    total: int = 0
    done: int = 0
    errors: list[JobError] = Field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.done >= self.total


class ShareRole(str, Enum):
    INSURER = "insurer"
    BROKER = "broker"


class ShareLink(BaseModel):
    """Response of share creation."""

    model_config = ConfigDict(extra="ignore")

    token: str
    url: str
    title: str | None = None
    expires_at: str | None = None


class ShareView(BaseModel):
    """Offers and preferences resolved from a share token."""

    model_config = ConfigDict(extra="ignore")

    token: str
    offers: list[OfferGroup] = Field(default_factory=list)
    view_prefs: ViewPreferences = Field(default_factory=lambda: ViewPreferences())
    editable: bool = False
    title: str | None = None
    company_name: str | None = None
    employees_count: int | None = None


# ---------------------------------------------------------------------------
# Matrix columns
# ---------------------------------------------------------------------------


class ColumnType(str, Enum):
    PROGRAM = "program"
    ERROR = "error"


class Column(BaseModel):
    """One matrix column: a (source file, insurer, program code) offer."""

    id: str
    label: str
    source_file: str
    type: ColumnType = ColumnType.PROGRAM
    row_id: int | None = None
    insurer: str | None = None
    program_code: str | None = None
    premium_eur: float | None = None
    base_sum_eur: float | None = None
    payment_method: str | None = None
    features: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    @property
    def is_error(self) -> bool:
        return self.type == ColumnType.ERROR

    @property
    def natural_identity(self) -> str:
        """Identity derived from the current insurer/program code."""
        return identity_key(self.source_file, self.insurer, self.program_code)


# Fields a user may change on a program column.
EDITABLE_FIELDS = (
    "premium_eur",
    "base_sum_eur",
    "payment_method",
    "insurer",
    "program_code",
    "features",
)

NUMERIC_FIELDS = ("premium_eur", "base_sum_eur")

# Stored value -> Latvian label shown in the matrix.
PAYMENT_METHOD_LABELS: dict[str, str] = {
    "monthly": "Cenrāža programma",
    "quarterly": "100% apmaksa līgumiestādēs",
    "yearly": "100% apmaksa līgumiestādēs un ja pakalpojums ir nopirkts",
    "one-time": "Procentuāla programma",
}


def payment_method_label(value: str | None) -> str:
    if not value:
        return "—"
    return PAYMENT_METHOD_LABELS.get(value, value)


# ---------------------------------------------------------------------------
# View preferences
# ---------------------------------------------------------------------------


class ViewPreferences(BaseModel):
    """Column order plus hidden feature rows: the unit of persistence."""

    model_config = ConfigDict(frozen=True)

    order: list[str] = Field(default_factory=list)
    hidden: frozenset[str] = Field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.order and not self.hidden


ShareView.model_rebuild()


# ---------------------------------------------------------------------------
# Edits
# ---------------------------------------------------------------------------


class EditState(str, Enum):
    """Per-column mutation lifecycle."""

    CLEAN = "clean"
    PENDING = "pending"
    RECONCILING = "reconciling"


class EditOutcome(str, Enum):
    NOOP = "noop"
    SAVED = "saved"
    FAILED = "failed"


class PendingEdit(BaseModel):
    """An edit applied locally but not yet confirmed by a reconcile."""

    column_identity: str
    changes: dict[str, Any]
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    persisted: bool = False
    # Engine write counter at the time the save returned.
    write_seq: int | None = None
