"""Offer Matrix Sidecar API.

FastAPI application exposing one matrix session (a job or a set of source
documents) to a browser UI.

Endpoints:
    GET    /health                                — health check
    GET    /api/v1/matrix                         — rendered matrix
    POST   /api/v1/matrix/refresh                 — refetch + reconcile
    PATCH  /api/v1/matrix/columns/{identity}      — edit one column
    DELETE /api/v1/matrix/columns/{identity}      — delete one column
    POST   /api/v1/matrix/order/move              — drag-and-drop reorder
    POST   /api/v1/matrix/hidden/toggle           — hide/show a feature row
    GET    /api/v1/matrix/preferences             — order + hidden (+ token)
    PUT    /api/v1/matrix/preferences             — replace order + hidden
    POST   /api/v1/matrix/share                   — create a share link
    GET    /api/v1/matrix/share/{token}           — read-only shared matrix
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__, prefs
from .api_models import (
    ColumnView,
    EditRequest,
    EditResponse,
    ErrorResponse,
    HealthResponse,
    MatrixResponse,
    MoveRequest,
    PreferencesBody,
    SectionsView,
    ShareRequest,
    ToggleHiddenRequest,
)
from .backend import OfferBackend, create_backend
from .columns import batch_errors, editable
from .config import MatrixSettings, get_settings
from .errors import (
    DecodeError,
    IdentityResolutionError,
    MatrixError,
    PersistenceError,
    UnknownColumnError,
    ValidationError,
)
from .matrix import OfferMatrix
from .models import EditOutcome, EditState, ShareLink, ViewPreferences, payment_method_label
from .poller import OfferPoller
from .prefs import create_preference_store
from .reconcile import ReconciliationEngine

logger = logging.getLogger("offer_matrix.api")

_STATUS_CODES: dict[type[MatrixError], int] = {
    ValidationError: 400,
    DecodeError: 400,
    UnknownColumnError: 404,
    IdentityResolutionError: 409,
    PersistenceError: 502,
}


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------


@dataclass
class MatrixSession:
    """Shared state created during app startup and injected into the router."""

    settings: MatrixSettings
    backend: OfferBackend
    matrix: OfferMatrix
    engine: ReconciliationEngine
    poller: OfferPoller | None = None
    notices: deque[MatrixError] = field(default_factory=lambda: deque(maxlen=50))

    def last_persistence_error(self) -> PersistenceError:
        for error in reversed(self.notices):
            if isinstance(error, PersistenceError):
                return error
        return PersistenceError("Save failed")


def create_session(
    settings: MatrixSettings,
    backend: OfferBackend | None = None,
    *,
    document_ids: Sequence[str] = (),
    job_id: str | None = None,
) -> MatrixSession:
    if backend is None:
        backend = create_backend(
            settings.backend_url,
            headers=settings.tenant_headers(),
            timeout=settings.request_timeout,
            share_base_url=settings.share_base_url,
        )
    notices: deque[MatrixError] = deque(maxlen=50)

    def notify(error: MatrixError) -> None:
        logger.warning("Matrix action failed: %s", error)
        notices.append(error)

    matrix = OfferMatrix()
    engine = ReconciliationEngine(
        matrix,
        backend,
        document_ids=document_ids,
        job_id=job_id,
        notifier=notify,
        share_token=settings.share_token or None,
        preference_store=create_preference_store(settings.prefs_dir),
        context_name=settings.context_name,
    )
    poller = (
        OfferPoller(engine, job_id=job_id, interval=settings.poll_interval_seconds)
        if job_id
        else None
    )
    return MatrixSession(
        settings=settings,
        backend=backend,
        matrix=matrix,
        engine=engine,
        poller=poller,
        notices=notices,
    )


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_matrix(
    matrix: OfferMatrix, engine: ReconciliationEngine | None = None
) -> MatrixResponse:
    view = matrix.view()
    columns = []
    for column in view.columns:
        columns.append(
            ColumnView(
                column=column,
                state=engine.state_of(column.id) if engine else EditState.CLEAN,
                editable=editable(column) and not matrix.read_only,
                payment_method_label=payment_method_label(column.payment_method),
                cells={key: view.cell(column, key).display() for key in view.rows},
            )
        )
    failures = batch_errors(view.columns)
    return MatrixResponse(
        columns=columns,
        sections=SectionsView(
            main=view.sections.main,
            addons=view.sections.addons,
            leftovers=view.sections.leftovers,
        ),
        hidden=sorted(view.hidden),
        order=[c.id for c in view.columns],
        read_only=matrix.read_only,
        failed_documents=failures.failures if failures else {},
    )


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def create_matrix_router(session: MatrixSession) -> APIRouter:
    router = APIRouter(prefix="/api/v1/matrix", tags=["matrix"])
    settings = session.settings

    @router.get("", response_model=MatrixResponse)
    async def get_matrix():
        return render_matrix(session.matrix, session.engine)

    @router.post("/refresh", response_model=MatrixResponse)
    async def refresh():
        if not await session.engine.reconcile():
            logger.info("Refresh skipped or failed; serving current view")
        return render_matrix(session.matrix, session.engine)

    @router.patch("/columns/{identity:path}", response_model=EditResponse)
    async def edit_column(identity: str, body: EditRequest):
        outcome = await session.engine.submit_edit(identity, body.changes())
        if outcome == EditOutcome.FAILED:
            raise session.last_persistence_error()
        current = session.engine.resolve(identity)
        return EditResponse(
            outcome=outcome,
            identity=current,
            state=session.engine.state_of(current),
        )

    @router.delete("/columns/{identity:path}", response_model=EditResponse)
    async def delete_column(identity: str):
        outcome = await session.engine.delete_column(identity)
        if outcome == EditOutcome.FAILED:
            raise session.last_persistence_error()
        return EditResponse(outcome=outcome, identity=identity, state=EditState.CLEAN)

    @router.post("/order/move", response_model=MatrixResponse)
    async def move_column(body: MoveRequest):
        for key in (body.from_key, body.to_key):
            if session.engine.resolve(key) not in session.matrix:
                raise UnknownColumnError(key)
        session.engine.move(body.from_key, body.to_key)
        return render_matrix(session.matrix, session.engine)

    @router.post("/hidden/toggle", response_model=MatrixResponse)
    async def toggle_hidden(body: ToggleHiddenRequest):
        session.engine.toggle_hidden(body.feature)
        return render_matrix(session.matrix, session.engine)

    @router.get("/preferences", response_model=PreferencesBody)
    async def get_preferences():
        current = session.matrix.preferences()
        return PreferencesBody(
            order=current.order,
            hidden=sorted(current.hidden),
            token=prefs.encode(current),
        )

    @router.put("/preferences", response_model=PreferencesBody)
    async def put_preferences(body: PreferencesBody):
        if body.token:
            loaded = prefs.decode_strict(body.token)
        else:
            loaded = ViewPreferences(order=body.order, hidden=frozenset(body.hidden))
        session.matrix.load_preferences(loaded)
        session.engine.save_preferences()
        return await get_preferences()

    @router.post("/share", response_model=ShareLink)
    async def create_share(body: ShareRequest):
        expires = body.expires_in_hours
        if expires is None:
            expires = (
                settings.insurer_share_ttl_hours
                if body.insurer_only
                else settings.share_ttl_hours
            )
        link = await session.engine.create_share(
            editable=body.editable,
            role=body.role,
            insurer_only=body.insurer_only,
            allow_edit_fields=body.allow_edit_fields,
            expires_in_hours=expires,
            title=body.title,
        )
        if link is None:
            raise session.last_persistence_error()
        return link

    @router.get("/share/{token}", response_model=MatrixResponse)
    async def get_share(token: str, hf: str | None = Query(default=None)):
        shared = await session.backend.fetch_share(token)
        if shared is None:
            raise HTTPException(status_code=404, detail="Share not found or expired")
        matrix = OfferMatrix.from_groups(shared.offers, shared.view_prefs, read_only=True)
        if hf:
            matrix.set_hidden(prefs.decode_hidden(hf))
        return render_matrix(matrix)

    return router


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------


def create_app(
    settings: MatrixSettings | None = None,
    backend: OfferBackend | None = None,
    *,
    document_ids: Sequence[str] = (),
    job_id: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()

    session = create_session(settings, backend, document_ids=document_ids, job_id=job_id)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting offer matrix sidecar v%s", __version__)
        await session.engine.reconcile()
        if session.poller is not None:
            session.poller.start()
        yield
        if session.poller is not None:
            session.poller.stop()
        await session.engine.close()
        await session.backend.aclose()
        logger.info("Offer matrix sidecar stopped")

    app = FastAPI(
        title="Offer Matrix Sidecar",
        version=__version__,
        description="Side-by-side comparison of extracted insurance offers.",
        lifespan=lifespan,
    )
    app.state.session = session

    # CORS
    origins = ["*"] if settings.dev_mode else ["http://localhost:3000", "http://localhost:8080"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------
    # Exception handlers
    # -----------------------------------------------------------------

    @app.exception_handler(MatrixError)
    async def matrix_error_handler(request: Request, exc: MatrixError) -> JSONResponse:
        status_code = next(
            (code for cls, code in _STATUS_CODES.items() if isinstance(exc, cls)), 400
        )
        return JSONResponse(
            status_code=status_code,
            content=ErrorResponse(
                code=exc.code,
                message=str(exc),
                detail=getattr(exc, "field", None),
                retryable=exc.retryable,
            ).model_dump(),
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                code="INTERNAL_ERROR",
                message="An unexpected error occurred",
                detail=str(exc) if settings.dev_mode else None,
            ).model_dump(),
        )

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health():
        return HealthResponse(
            version=__version__,
            backend=type(session.backend).__name__,
            columns=len(session.matrix),
            polling=session.poller is not None and session.poller.is_running,
            dev_mode=settings.dev_mode,
        )

    app.include_router(create_matrix_router(session))
    return app
