"""OfferMatrix — the in-memory matrix one UI session renders.

Holds the current column list (arrival order) and the ViewState, and routes
every order/visibility change through ``ordering.reduce``. All mutation is
synchronous; the reconciliation engine awaits network calls between these
calls, never inside them.

    matrix = OfferMatrix.from_groups(groups)
    view = matrix.view()
    for key in view.rows:
        cells = [view.cell(col, key) for col in view.columns]
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from . import ordering
from .columns import build_columns, editable
from .errors import UnknownColumnError
from .features import FeatureSections, FeatureValue, classify, feature_sections, lookup
from .features import present_keys as _present_keys
from .models import Column, OfferGroup, ViewPreferences
from .ordering import ViewState

logger = logging.getLogger("offer_matrix.matrix")


@dataclass(frozen=True)
class MatrixView:
    """Render-ready snapshot: ordered columns and filtered rows."""

    columns: list[Column]
    sections: FeatureSections
    hidden: frozenset[str] = field(default_factory=frozenset)

    @property
    def rows(self) -> list[str]:
        return self.sections.all_rows

    def cell(self, column: Column, key: str) -> FeatureValue:
        return classify(lookup(column, key))

    def can_edit(self, column: Column) -> bool:
        return editable(column)


class OfferMatrix:
    """Columns plus view state for one matrix instance."""

    def __init__(
        self,
        columns: Iterable[Column] = (),
        prefs: ViewPreferences | None = None,
        *,
        read_only: bool = False,
    ) -> None:
        self.read_only = read_only
        self._columns: dict[str, Column] = {}
        self._state = ViewState.from_preferences(prefs) if prefs else ViewState()
        self.replace_columns(columns)

    @classmethod
    def from_groups(
        cls,
        groups: Iterable[OfferGroup],
        prefs: ViewPreferences | None = None,
        *,
        read_only: bool = False,
    ) -> OfferMatrix:
        return cls(build_columns(groups), prefs, read_only=read_only)

    # ----- state access -----

    @property
    def state(self) -> ViewState:
        return self._state

    @property
    def columns(self) -> list[Column]:
        """Columns in arrival order."""
        return list(self._columns.values())

    @property
    def keys(self) -> list[str]:
        return list(self._columns)

    def __contains__(self, identity: str) -> bool:
        return identity in self._columns

    def __len__(self) -> int:
        return len(self._columns)

    def column(self, identity: str) -> Column:
        try:
            return self._columns[identity]
        except KeyError:
            raise UnknownColumnError(identity) from None

    def get(self, identity: str) -> Column | None:
        return self._columns.get(identity)

    def ordered_columns(self) -> list[Column]:
        return [self._columns[k] for k in ordering.project(self._state.order, self._columns)]

    def present_keys(self) -> set[str]:
        return _present_keys(self._columns.values())

    def sections(self) -> FeatureSections:
        return feature_sections(self.present_keys(), self._state.hidden)

    def view(self) -> MatrixView:
        return MatrixView(
            columns=self.ordered_columns(),
            sections=self.sections(),
            hidden=self._state.hidden,
        )

    def preferences(self) -> ViewPreferences:
        return self._state.to_preferences()

    # ----- transitions -----

    def dispatch(self, event: ordering.OrderEvent) -> ViewState:
        self._state = ordering.reduce(self._state, event)
        return self._state

    def replace_columns(self, columns: Iterable[Column]) -> None:
        """Swap in a freshly built column list (wholesale refresh)."""
        fresh: dict[str, Column] = {}
        for column in columns:
            if column.id in fresh:
                logger.warning("Dropping duplicate column identity %s", column.id)
                continue
            fresh[column.id] = column
        self._columns = fresh
        self.dispatch(ordering.Refresh(tuple(fresh)))

    def replace_column(self, identity: str, column: Column) -> None:
        """Replace one column in place; a changed identity keeps its slot."""
        if identity not in self._columns:
            raise UnknownColumnError(identity)
        rebuilt: dict[str, Column] = {}
        for key, existing in self._columns.items():
            if key == identity:
                rebuilt[column.id] = column
            elif key != column.id:
                rebuilt[key] = existing
        self._columns = rebuilt
        if column.id != identity:
            self.dispatch(ordering.RenameIdentity(identity, column.id, tuple(rebuilt)))

    def remove_column(self, identity: str) -> tuple[Column, int] | None:
        """Drop a column from the list and the stored order.

        Returns the column and its stored-order index so a failed delete can
        put it back.
        """
        column = self._columns.pop(identity, None)
        if column is None:
            return None
        order = self._state.order
        index = order.index(identity) if identity in order else len(order)
        self.dispatch(ordering.Remove(identity))
        return column, index

    def restore_column(self, column: Column, index: int) -> None:
        self._columns[column.id] = column
        order = [k for k in self._state.order if k != column.id]
        order.insert(min(index, len(order)), column.id)
        self._state = ViewState(tuple(order), self._state.hidden)

    def move(self, from_key: str, to_key: str) -> None:
        self.dispatch(ordering.ManualMove(from_key, to_key))

    def toggle_hidden(self, feature: str) -> None:
        self.dispatch(ordering.ToggleHidden(feature))

    def set_hidden(self, features: Iterable[str]) -> None:
        self.dispatch(ordering.SetHidden(frozenset(features)))

    def load_preferences(self, prefs: ViewPreferences) -> None:
        """Transplant preferences (local snapshot or share), then re-merge."""
        self.dispatch(ordering.Load(prefs))
        self.dispatch(ordering.Refresh(tuple(self._columns)))

    def prune(self) -> None:
        """Forget stored order entries for columns that are gone."""
        self.dispatch(ordering.Prune(tuple(self._columns)))
