"""Offer Matrix — side-by-side comparison of extracted insurance offers.

Turns per-document extraction results into a matrix of offer columns and
canonical feature rows, keeps user order and hidden rows across refreshes,
and reconciles optimistic edits with the extraction backend.

Usage:
    from offer_matrix import OfferMatrix, ReconciliationEngine, create_backend

    backend = create_backend("https://extract.example.com")
    matrix = OfferMatrix()
    engine = ReconciliationEngine(matrix, backend, document_ids=["bta.pdf", "ergo.pdf"])
    await engine.reconcile()
    await engine.submit_edit("bta.pdf::BTA::Pamata", {"premium_eur": "123,45"})
    view = matrix.view()

Sidecar:
    python -m offer_matrix serve --documents bta.pdf ergo.pdf
"""

__version__ = "0.4.0"

from .backend import HttpOfferBackend, InMemoryOfferBackend, OfferBackend, create_backend
from .columns import build_columns
from .config import MatrixSettings, get_settings
from .errors import (
    DecodeError,
    IdentityResolutionError,
    MatrixError,
    PartialBatchError,
    PersistenceError,
    UnknownColumnError,
    ValidationError,
)
from .features import (
    ADDON_ORDER,
    HIDE_IN_TABLE,
    KEY_ALIASES,
    MAIN_FEATURE_ORDER,
    FeatureSections,
    FeatureValue,
    ValueKind,
    canonicalize,
    classify,
)
from .matrix import MatrixView, OfferMatrix
from .models import (
    Column,
    ColumnType,
    EditOutcome,
    EditState,
    Job,
    OfferGroup,
    Program,
    ShareLink,
    ShareRole,
    ShareView,
    ViewPreferences,
)
from .poller import OfferPoller
from .reconcile import ReconciliationEngine
from .api import create_app

__all__ = [
    "__version__",
    # Core
    "Column",
    "ColumnType",
    "MatrixView",
    "OfferGroup",
    "OfferMatrix",
    "Program",
    "ReconciliationEngine",
    "ViewPreferences",
    "build_columns",
    # Features
    "ADDON_ORDER",
    "HIDE_IN_TABLE",
    "KEY_ALIASES",
    "MAIN_FEATURE_ORDER",
    "FeatureSections",
    "FeatureValue",
    "ValueKind",
    "canonicalize",
    "classify",
    # Edits
    "EditOutcome",
    "EditState",
    # Backend
    "HttpOfferBackend",
    "InMemoryOfferBackend",
    "Job",
    "OfferBackend",
    "OfferPoller",
    "ShareLink",
    "ShareRole",
    "ShareView",
    "create_backend",
    # Errors
    "DecodeError",
    "IdentityResolutionError",
    "MatrixError",
    "PartialBatchError",
    "PersistenceError",
    "UnknownColumnError",
    "ValidationError",
    # API
    "MatrixSettings",
    "create_app",
    "get_settings",
]
