"""Order & Visibility Manager — a pure reducer over column order and hidden rows.

    reduce(ViewState, event) -> ViewState

The stored order is a superset of what is rendered: keys of columns that
vanish from a refresh stay in storage (a refresh window may briefly return
nothing) and are only dropped by an explicit Prune. The render order is
``project(state.order, current_keys)``, which equals ``merge(stored,
current_keys)``.

The invariant everything here protects: a user's manual ordering survives
arbitrary insertions and removals of unrelated columns, and an edit that
changes a column's identity keeps the column in its slot.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .models import ViewPreferences


@dataclass(frozen=True)
class ViewState:
    order: tuple[str, ...] = ()
    hidden: frozenset[str] = field(default_factory=frozenset)

    def to_preferences(self) -> ViewPreferences:
        return ViewPreferences(order=list(self.order), hidden=self.hidden)

    @classmethod
    def from_preferences(cls, prefs: ViewPreferences) -> ViewState:
        return cls(order=tuple(dict.fromkeys(prefs.order)), hidden=frozenset(prefs.hidden))


# ---------------------------------------------------------------------------
# Pure list operations
# ---------------------------------------------------------------------------


def merge(prev_order: Sequence[str], new_keys: Iterable[str]) -> list[str]:
    """Surviving keys in their previous order, then genuinely new keys."""
    new_keys = list(dict.fromkeys(new_keys))
    new_set = set(new_keys)
    prev_set = set(prev_order)
    survivors = [k for k in dict.fromkeys(prev_order) if k in new_set]
    return survivors + [k for k in new_keys if k not in prev_set]


def project(order: Sequence[str], keys: Iterable[str]) -> list[str]:
    """Render order for the current columns."""
    return merge(order, keys)


def extend(order: Sequence[str], keys: Iterable[str]) -> list[str]:
    """Stored order after a refresh: keep everything, stable-append new keys."""
    known = set(order)
    out = list(dict.fromkeys(order))
    for key in dict.fromkeys(keys):
        if key not in known:
            out.append(key)
            known.add(key)
    return out


def move_before(order: Sequence[str], from_key: str, to_key: str) -> list[str]:
    """Drag ``from_key`` so it sits immediately before ``to_key``."""
    out = list(order)
    if from_key == to_key or from_key not in out or to_key not in out:
        return out
    out.remove(from_key)
    out.insert(out.index(to_key), from_key)
    return out


def rename(order: Sequence[str], old_key: str, new_key: str) -> list[str]:
    """Swap an identity in place; a stale copy of ``new_key`` elsewhere is dropped."""
    if old_key == new_key:
        return list(order)
    out = [k for k in order if k != new_key]
    if old_key in out:
        out[out.index(old_key)] = new_key
    return out


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Refresh:
    keys: tuple[str, ...]


@dataclass(frozen=True)
class ManualMove:
    from_key: str
    to_key: str


@dataclass(frozen=True)
class RenameIdentity:
    old_key: str
    new_key: str
    keys: tuple[str, ...]


@dataclass(frozen=True)
class ToggleHidden:
    feature: str


@dataclass(frozen=True)
class SetHidden:
    features: frozenset[str]


@dataclass(frozen=True)
class Prune:
    keys: tuple[str, ...]


@dataclass(frozen=True)
class Remove:
    key: str


@dataclass(frozen=True)
class Load:
    prefs: ViewPreferences


OrderEvent = (
    Refresh | ManualMove | RenameIdentity | ToggleHidden | SetHidden | Prune | Remove | Load
)


def reduce(state: ViewState, event: OrderEvent) -> ViewState:
    """Apply one event. Never mutates ``state``."""
    if isinstance(event, Refresh):
        return ViewState(tuple(extend(state.order, event.keys)), state.hidden)
    if isinstance(event, ManualMove):
        return ViewState(tuple(move_before(state.order, event.from_key, event.to_key)), state.hidden)
    if isinstance(event, RenameIdentity):
        renamed = rename(state.order, event.old_key, event.new_key)
        return ViewState(tuple(extend(renamed, event.keys)), state.hidden)
    if isinstance(event, ToggleHidden):
        return ViewState(state.order, state.hidden ^ {event.feature})
    if isinstance(event, SetHidden):
        return ViewState(state.order, frozenset(event.features))
    if isinstance(event, Prune):
        keep = set(event.keys)
        return ViewState(tuple(k for k in state.order if k in keep), state.hidden)
    if isinstance(event, Remove):
        return ViewState(tuple(k for k in state.order if k != event.key), state.hidden)
    if isinstance(event, Load):
        return ViewState.from_preferences(event.prefs)
    raise TypeError(f"Unknown order event: {event!r}")


def initial_state(keys: Iterable[str], hidden: Iterable[str] = ()) -> ViewState:
    """First-seen columns in arrival order."""
    return reduce(ViewState(hidden=frozenset(hidden)), Refresh(tuple(keys)))
