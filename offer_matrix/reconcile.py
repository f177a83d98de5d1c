"""Optimistic Reconciliation Engine — local edits vs. authoritative refetches.

Edit pipeline (``submit_edit``):

    validate → resolve row id → diff vs. server → optimistic apply
             → persist → reconcile → (share regenerate, fire-and-forget)

Every step before the first ``await`` of the persist call runs
synchronously, so the UI shows the edit with zero latency. Each column moves
through CLEAN → PENDING → RECONCILING → CLEAN; a second edit to the same
column queues behind the first on a per-column lock.

Reconciliation always merges fresh server data first and replays pending
edits on top of it, so a refetch that raced ahead of a slow write can never
silently drop the edit. A pending edit is cleared only once the server data
reflects it.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any
from urllib.parse import urlencode

from . import ordering
from .backend import OfferBackend
from .columns import batch_errors, build_columns
from .errors import (
    IdentityResolutionError,
    MatrixError,
    PersistenceError,
    UnknownColumnError,
    ValidationError,
)
from .features import canonicalize, canonicalize_bag, classify
from .matrix import OfferMatrix
from .models import (
    EDITABLE_FIELDS,
    NUMERIC_FIELDS,
    Column,
    EditOutcome,
    EditState,
    OfferGroup,
    PendingEdit,
    ShareLink,
    ShareRole,
)
from .prefs import PreferenceStore, share_query

logger = logging.getLogger("offer_matrix.reconcile")

Notifier = Callable[[MatrixError], None]

# ---------------------------------------------------------------------------
# Validation / normalization
# ---------------------------------------------------------------------------

_CURRENCY = re.compile(r"(€|euro|eur)", re.IGNORECASE)
_SPACES = re.compile(r"[\s  ']")
_NUMBER = re.compile(r"-?(\d+(\.\d*)?|\.\d+)")
_CENT = 0.005 + 1e-9


def parse_amount(value: Any, field: str) -> float:
    """Parse a user-typed amount: "1 234,56 €" → 1234.56.

    Strips currency symbols and thousands separators; a lone comma is a
    decimal comma. Anything left that is not a plain number is rejected.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = _SPACES.sub("", _CURRENCY.sub("", str(value)))
        if "," in text and "." in text:
            if text.rfind(",") > text.rfind("."):
                text = text.replace(".", "").replace(",", ".")
            else:
                text = text.replace(",", "")
        elif text.count(",") == 1:
            text = text.replace(",", ".")
        elif text.count(",") > 1 or text.count(".") > 1:
            text = text.replace(",", "").replace(".", "")
        if not _NUMBER.fullmatch(text):
            raise ValidationError(f"{field} must be a number", field=field)
        number = float(text)
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a number", field=field)
    return number


def normalize_changes(changes: Mapping[str, Any]) -> dict[str, Any]:
    """Validate a raw change set from the edit form.

    Blank numeric inputs mean "unchanged". Feature keys are canonicalized.
    Raises ValidationError before anything touches the network.
    """
    out: dict[str, Any] = {}
    for key, value in changes.items():
        if key not in EDITABLE_FIELDS:
            logger.debug("Ignoring non-editable field %s", key)
            continue
        if key in NUMERIC_FIELDS:
            if value is None or str(value).strip() == "":
                continue
            out[key] = parse_amount(value, key)
        elif key == "features":
            if value is None:
                continue
            if not isinstance(value, Mapping):
                raise ValidationError("features must be a mapping", field="features")
            out[key] = canonicalize_bag(value)
        else:
            out[key] = "" if value is None else str(value).strip()
    return out


def _differs(column: Column, key: str, value: Any) -> bool:
    if key in NUMERIC_FIELDS:
        current = getattr(column, key)
        return current is None or not math.isclose(float(current), value)
    if key == "features":
        bag = canonicalize_bag(column.features)
        return any(bag.get(k) != v for k, v in value.items())
    return (getattr(column, key) or "") != value


def compute_diff(
    known: Column, patch: Mapping[str, Any], current: Column | None = None
) -> dict[str, Any]:
    """Fields of ``patch`` that differ from the last known server state.

    Feature edits may be partial; they are laid over the bag the user is
    looking at (``current``) and a change sends the whole canonicalized bag,
    which also migrates raw labels to canonical keys on the server.
    """
    current = current or known
    diff: dict[str, Any] = {}
    for key, value in patch.items():
        if key == "features":
            proposed = {**canonicalize_bag(current.features), **value}
            if proposed != canonicalize_bag(known.features):
                diff[key] = proposed
        elif _differs(known, key, value):
            diff[key] = value
    return diff


def apply_changes(column: Column, changes: Mapping[str, Any]) -> Column:
    """Column with ``changes`` merged in and its identity re-derived."""
    update = dict(changes)
    if "features" in update:
        update["features"] = {**canonicalize_bag(column.features), **update["features"]}
    updated = column.model_copy(update=update, deep=True)
    if {"insurer", "program_code"} & changes.keys():
        updated = updated.model_copy(
            update={
                "id": updated.natural_identity,
                "label": updated.insurer or updated.source_file,
            }
        )
    return updated


def _stored_as(server: Column, key: str, value: Any) -> bool:
    # Backends round amounts to cents and may store "v" as True or {"value": "v"}.
    if key in NUMERIC_FIELDS:
        current = getattr(server, key)
        return current is not None and abs(float(current) - value) <= _CENT
    if key == "features":
        bag = canonicalize_bag(server.features)
        return all(classify(bag.get(k)) == classify(v) for k, v in value.items())
    return not _differs(server, key, value)


def reflects(server: Column, changes: Mapping[str, Any]) -> bool:
    """True once the server column carries every value of ``changes``.

    Compared the way the matrix renders them, so a backend that normalizes
    what it stores still confirms the edit.
    """
    return all(_stored_as(server, k, v) for k, v in changes.items())


def _log_notifier(error: MatrixError) -> None:
    logger.warning("Matrix action failed: %s", error)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Owns pending edits for one OfferMatrix and keeps it consistent with the backend."""

    def __init__(
        self,
        matrix: OfferMatrix,
        backend: OfferBackend,
        *,
        document_ids: Sequence[str] | None = None,
        job_id: str | None = None,
        notifier: Notifier | None = None,
        share_token: str | None = None,
        preference_store: PreferenceStore | None = None,
        context_name: str = "default",
    ) -> None:
        self.matrix = matrix
        self.backend = backend
        self.document_ids = list(document_ids or [])
        self.job_id = job_id
        self.share_token = share_token
        self._notify = notifier or _log_notifier
        # Shared views (read-only or share-token sessions) never touch local preferences.
        self._store = None if matrix.read_only or share_token else preference_store
        self._context_name = context_name

        # Last authoritative columns, keyed by the identity the server knows.
        self._server: dict[str, Column] = {c.id: c for c in matrix.columns}
        # Unconfirmed edits and their optimistic columns, keyed by current identity.
        self._pending: dict[str, PendingEdit] = {}
        self._optimistic: dict[str, Column] = {}
        # Current identity -> identity the server still knows (identity-changing edits).
        self._bases: dict[str, str] = {}
        # Old identity -> new identity, so callers holding a stale key still resolve.
        self._aliases: dict[str, str] = {}
        self._states: dict[str, EditState] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._tombstones: set[str] = set()
        # Bumped on every successful write; refetches started later are authoritative.
        self._writes = 0
        self._background: set[asyncio.Task] = set()
        self._closed = False

        if self._store is not None:
            saved = self._store.load(context_name)
            if not saved.is_empty:
                matrix.load_preferences(saved)

    # ----- introspection -----

    def state_of(self, identity: str) -> EditState:
        return self._states.get(self.resolve(identity), EditState.CLEAN)

    def pending(self) -> dict[str, PendingEdit]:
        return dict(self._pending)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def write_marker(self) -> int:
        """Take before a refetch; pass to ``apply_refresh(snapshot=...)``."""
        return self._writes

    def resolve(self, identity: str) -> str:
        """Follow identity renames to the column's current key.

        A live column always wins over a stale alias with the same key.
        """
        if identity in self.matrix:
            return identity
        seen = set()
        while identity in self._aliases and identity not in seen:
            seen.add(identity)
            identity = self._aliases[identity]
        return identity

    def _lock(self, identity: str) -> asyncio.Lock:
        return self._locks.setdefault(identity, asyncio.Lock())

    def _editable_column(self, identity: str) -> Column:
        column = self.matrix.get(self.resolve(identity))
        if column is None:
            raise UnknownColumnError(identity)
        if column.is_error:
            raise ValidationError("Error columns cannot be edited or deleted")
        return column

    async def _row_id(self, column: Column) -> int:
        if column.row_id is not None:
            return column.row_id
        base = self._bases.get(column.id, column.id)
        known = self._server.get(base, column)
        row_id = await self.backend.resolve_column_row_id(
            known.source_file, known.insurer, known.program_code
        )
        if row_id is None:
            raise IdentityResolutionError(column.id)
        # Write back so later edits skip the lookup.
        current = self.matrix.get(column.id)
        if current is not None:
            self.matrix.replace_column(column.id, current.model_copy(update={"row_id": row_id}))
        if base in self._server:
            self._server[base] = self._server[base].model_copy(update={"row_id": row_id})
        if column.id in self._optimistic:
            self._optimistic[column.id] = self._optimistic[column.id].model_copy(
                update={"row_id": row_id}
            )
        return row_id

    # ----- edits -----

    def _plan(self, column: Column, patch: Mapping[str, Any]):
        base = self._bases.get(column.id, column.id)
        server = self._server.get(base, column)
        previous = self._pending.get(column.id)
        # Written-but-unconfirmed values count as server state.
        known = (
            apply_changes(server, previous.changes)
            if previous is not None and previous.persisted
            else server
        )
        diff = compute_diff(known, patch, column)
        carried = (
            {k: v for k, v in previous.changes.items() if k not in patch}
            if previous is not None and not previous.persisted
            else {}
        )
        return base, previous, known, diff, {**carried, **diff}

    async def submit_edit(self, identity: str, changes: Mapping[str, Any]) -> EditOutcome:
        """Validate, apply optimistically, persist and reconcile one edit.

        Raises ValidationError, IdentityResolutionError or UnknownColumnError
        without touching state. Persistence failures go to the notifier and
        return ``EditOutcome.FAILED``; the optimistic values stay visible
        until a later save succeeds or ``discard_edit`` is called.
        """
        self._editable_column(identity)
        patch = normalize_changes(changes)

        lock = self._lock(self.resolve(identity))
        async with lock:
            column = self._editable_column(identity)
            base, previous, known, diff, to_send = self._plan(column, patch)

            if not to_send:
                if previous is not None and not previous.persisted:
                    logger.info("Edit on %s reverts unsaved changes", column.id)
                    self.discard_edit(column.id)
                logger.debug("No changes to save for %s", column.id)
                return EditOutcome.NOOP

            if column.row_id is None:
                row_id = await self._row_id(column)
                column = self._editable_column(column.id)
                base, previous, known, diff, to_send = self._plan(column, patch)
                if not to_send:
                    return EditOutcome.NOOP
            else:
                row_id = column.row_id

            target = apply_changes(known, to_send).model_copy(update={"row_id": row_id})
            if target.id != column.id and target.id in self.matrix:
                raise ValidationError(
                    f"Another column already uses {target.id!r}", field="program_code"
                )

            # Optimistic apply: synchronous, before any network await.
            replay = (
                {**previous.changes, **diff}
                if previous is not None and previous.persisted
                else to_send
            )
            self._pending.pop(column.id, None)
            self._optimistic.pop(column.id, None)
            self._bases.pop(column.id, None)
            self._states.pop(column.id, None)
            self.matrix.replace_column(column.id, target)
            if target.id != column.id:
                self._aliases[column.id] = target.id
                self._aliases.pop(target.id, None)
                self._locks[target.id] = lock
            pending = PendingEdit(column_identity=target.id, changes=replay)
            self._pending[target.id] = pending
            self._optimistic[target.id] = target
            self._bases[target.id] = base
            self._states[target.id] = EditState.PENDING

            outcome = EditOutcome.SAVED
            try:
                await self.backend.patch_offer(row_id, to_send)
                self._writes += 1
                pending.persisted = True
                pending.write_seq = self._writes
                logger.info("Saved %s (%s)", target.id, ", ".join(sorted(to_send)))
            except PersistenceError as e:
                outcome = EditOutcome.FAILED
                self._notify(e)
            except Exception as e:
                logger.exception("Unexpected error persisting %s", target.id)
                outcome = EditOutcome.FAILED
                self._notify(PersistenceError(str(e)))

            if self._closed:
                return outcome

            self._states[target.id] = EditState.RECONCILING
            await self.reconcile()
            current = self.resolve(target.id)
            if current in self._pending:
                self._states[current] = EditState.PENDING
            else:
                self._states.pop(current, None)

        if outcome == EditOutcome.SAVED and self.share_token:
            self._spawn(self._regenerate_share())
        return outcome

    def discard_edit(self, identity: str) -> bool:
        """Drop a pending edit (e.g. after a failed save) and show server values."""
        identity = self.resolve(identity)
        if self._pending.pop(identity, None) is None:
            return False
        self._optimistic.pop(identity, None)
        self._states.pop(identity, None)
        base = self._bases.pop(identity, identity)
        server = self._server.get(base)
        if identity in self.matrix:
            if server is not None:
                self.matrix.replace_column(identity, server)
                if base != identity:
                    self._aliases[identity] = base
                    self._aliases.pop(base, None)
                    self._locks.setdefault(base, self._lock(identity))
            else:
                self.matrix.remove_column(identity)
        return True

    async def delete_column(self, identity: str) -> EditOutcome:
        """Resolve, remove immediately, persist, reconcile.

        No ghost rows: the column leaves the list and the order at once. If
        the delete fails the column is put back in its old slot.
        """
        self._editable_column(identity)
        lock = self._lock(self.resolve(identity))
        async with lock:
            column = self._editable_column(identity)
            row_id = await self._row_id(column)

            removed = self.matrix.remove_column(column.id)
            pending = self._pending.pop(column.id, None)
            optimistic = self._optimistic.pop(column.id, None)
            self._states.pop(column.id, None)
            base = self._bases.pop(column.id, column.id)
            self._tombstones.update({column.id, base})

            outcome = EditOutcome.SAVED
            try:
                await self.backend.delete_offer(row_id)
                logger.info("Deleted %s", column.id)
            except Exception as e:
                outcome = EditOutcome.FAILED
                self._tombstones.difference_update({column.id, base})
                if removed is not None and not self._closed:
                    self.matrix.restore_column(*removed)
                    if pending is not None:
                        self._pending[column.id] = pending
                        self._optimistic[column.id] = optimistic
                        self._bases[column.id] = base
                        self._states[column.id] = EditState.PENDING
                if not isinstance(e, PersistenceError):
                    logger.exception("Unexpected error deleting %s", column.id)
                    e = PersistenceError(str(e))
                self._notify(e)

            if not self._closed:
                await self.reconcile()
        return outcome

    # ----- refresh / reconcile -----

    async def fetch_groups(self) -> list[OfferGroup] | None:
        """Authoritative offer groups for this matrix, or None if nothing to fetch."""
        if self.job_id:
            return await self.backend.list_offers_by_job(self.job_id)
        if self.document_ids:
            return await self.backend.list_offers_by_documents(self.document_ids)
        return None

    async def reconcile(self) -> bool:
        """Refetch and merge. Returns False when the refetch failed or was skipped."""
        snapshot = self.write_marker
        try:
            groups = await self.fetch_groups()
        except Exception as e:
            logger.warning("Reconcile refetch failed, keeping current view: %s", e)
            return False
        if groups is None or self._closed:
            return False
        self.apply_refresh(groups, snapshot=snapshot)
        return True

    def apply_refresh(self, groups: Iterable[OfferGroup], *, snapshot: int | None = None) -> None:
        """Merge fresh server data, then replay pending edits on top of it.

        ``snapshot`` is ``write_marker`` taken before the refetch started.
        Saved edits written before that point are settled by whatever the
        server now holds for the row, even if it normalized the values.
        Without a snapshot they clear only once the server reflects them.
        """
        if self._closed:
            return
        fresh = build_columns(groups)
        self._tombstones &= {c.id for c in fresh}
        fresh = [c for c in fresh if c.id not in self._tombstones]

        self._server = {c.id: c for c in fresh}
        columns: dict[str, Column] = {c.id: c for c in fresh}

        for identity, pending in list(self._pending.items()):
            base = self._bases.get(identity, identity)
            server = self._server_row(columns, identity, base)
            if pending.persisted and server is not None:
                settled = (
                    snapshot is not None
                    and pending.write_seq is not None
                    and pending.write_seq <= snapshot
                )
                if settled or reflects(server, pending.changes):
                    logger.debug("Pending edit on %s confirmed by server", identity)
                    self._forget(identity)
                    if server.id != identity and identity in self.matrix:
                        self._aliases[identity] = server.id
                        self.matrix.dispatch(
                            ordering.RenameIdentity(identity, server.id, tuple(columns))
                        )
                    continue
            if identity in columns:
                columns[identity] = apply_changes(columns[identity], pending.changes)
            elif base in columns:
                replayed = apply_changes(columns[base], pending.changes)
                columns = {
                    (replayed.id if k == base else k): (replayed if k == base else v)
                    for k, v in columns.items()
                }
            else:
                # Refetch lags behind the write: keep the optimistic copy.
                columns[identity] = self._optimistic[identity]

        # A live column owns its key again; drop renames that pointed away from it.
        for key in [k for k in self._aliases if k in columns]:
            logger.debug("Dropping alias %s -> %s", key, self._aliases[key])
            del self._aliases[key]
            self._locks.pop(key, None)

        self.matrix.replace_columns(columns.values())

        failures = batch_errors(fresh)
        if failures is not None:
            logger.info("%s", failures)

    def _server_row(self, columns: dict[str, Column], identity: str, base: str) -> Column | None:
        if identity in columns:
            return columns[identity]
        if base in columns:
            return columns[base]
        optimistic = self._optimistic.get(identity)
        if optimistic is None or optimistic.row_id is None:
            return None
        return next((c for c in columns.values() if c.row_id == optimistic.row_id), None)

    def _forget(self, identity: str) -> None:
        self._pending.pop(identity, None)
        self._optimistic.pop(identity, None)
        self._bases.pop(identity, None)

    # ----- preferences / shares -----

    def save_preferences(self) -> bool:
        """Persist the current order and hidden set locally (not in shared views)."""
        if self._store is None:
            return False
        self._store.save(self._context_name, self.matrix.preferences())
        return True

    def move(self, from_key: str, to_key: str) -> None:
        self.matrix.move(self.resolve(from_key), self.resolve(to_key))
        self.save_preferences()

    def toggle_hidden(self, feature: str) -> None:
        self.matrix.toggle_hidden(canonicalize(feature))
        self.save_preferences()

    async def create_share(
        self,
        *,
        editable: bool = False,
        role: ShareRole = ShareRole.BROKER,
        insurer_only: str | None = None,
        allow_edit_fields: Sequence[str] = (),
        expires_in_hours: int | None = None,
        title: str | None = None,
    ) -> ShareLink | None:
        """Create a share over the visible documents; the URL carries the hidden set."""
        prefs = self.matrix.preferences()
        document_ids = list(
            dict.fromkeys(c.source_file for c in self.matrix.ordered_columns() if not c.is_error)
        )
        try:
            link = await self.backend.create_share(
                document_ids,
                prefs,
                editable=editable,
                role=role,
                insurer_only=insurer_only,
                allow_edit_fields=allow_edit_fields,
                expires_in_hours=expires_in_hours,
                title=title or (f"Confirmation – {insurer_only}" if insurer_only else None),
            )
        except MatrixError as e:
            self._notify(e)
            return None
        query = share_query(prefs)
        if query:
            sep = "&" if "?" in link.url else "?"
            link = link.model_copy(update={"url": f"{link.url}{sep}{urlencode(query)}"})
        logger.info("Created share %s over %d document(s)", link.token, len(document_ids))
        return link

    async def _regenerate_share(self) -> None:
        try:
            await self.backend.regenerate_share(self.share_token, self.matrix.preferences())
        except Exception as e:
            logger.warning("Share %s regeneration failed: %s", self.share_token, e)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def close(self) -> None:
        """Teardown: later results are ignored; background share refreshes finish."""
        self._closed = True
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
