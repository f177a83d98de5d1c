"""API request/response models for the offer matrix sidecar.

These models define the HTTP contract. They wrap the domain models
(Column, ViewPreferences, ShareLink) with rendered cells and edit state.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .models import Column, EditOutcome, EditState, ShareRole

# ---------------------------------------------------------------------------
# Shared
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Standard error envelope."""

    code: str
    message: str
    detail: str | None = None
    retryable: bool = False


class HealthResponse(BaseModel):
    """Response for GET /health."""

    status: str = "ok"
    version: str
    backend: str
    columns: int = 0
    polling: bool = False
    dev_mode: bool = False


# ---------------------------------------------------------------------------
# Matrix view
# ---------------------------------------------------------------------------


class ColumnView(BaseModel):
    """One rendered column: header values plus one display string per row."""

    column: Column
    state: EditState = EditState.CLEAN
    editable: bool = True
    payment_method_label: str = ""
    cells: dict[str, str] = Field(default_factory=dict)


class SectionsView(BaseModel):
    main: list[str] = Field(default_factory=list)
    addons: list[str] = Field(default_factory=list)
    leftovers: list[str] = Field(default_factory=list)


class MatrixResponse(BaseModel):
    """Response for GET /api/v1/matrix and GET /api/v1/matrix/share/{token}."""

    columns: list[ColumnView]
    sections: SectionsView
    hidden: list[str] = Field(default_factory=list)
    order: list[str] = Field(default_factory=list)
    read_only: bool = False
    failed_documents: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class EditRequest(BaseModel):
    """Body for PATCH /api/v1/matrix/columns/{identity}.

    Numeric fields accept strings such as "1 234,56 €".
    """

    premium_eur: float | str | None = None
    base_sum_eur: float | str | None = None
    payment_method: str | None = None
    insurer: str | None = None
    program_code: str | None = None
    features: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class EditResponse(BaseModel):
    outcome: EditOutcome
    identity: str
    state: EditState


class MoveRequest(BaseModel):
    from_key: str
    to_key: str


class ToggleHiddenRequest(BaseModel):
    feature: str = Field(..., min_length=1)


class PreferencesBody(BaseModel):
    """Body of GET/PUT /api/v1/matrix/preferences.

    On PUT, a non-empty ``token`` wins over ``order``/``hidden``.
    """

    order: list[str] = Field(default_factory=list)
    hidden: list[str] = Field(default_factory=list)
    token: str | None = None


# ---------------------------------------------------------------------------
# Shares
# ---------------------------------------------------------------------------


class ShareRequest(BaseModel):
    """Body for POST /api/v1/matrix/share."""

    editable: bool = False
    role: ShareRole = ShareRole.BROKER
    insurer_only: str | None = None
    allow_edit_fields: list[str] = Field(default_factory=list)
    expires_in_hours: int | None = Field(default=None, ge=0)
    title: str | None = None
