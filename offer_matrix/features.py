"""Feature Canonicalizer — raw feature labels → canonical matrix rows.

Source documents (OCR'd PDFs, spreadsheets, manual edits) label the same
benefit in many ways: English vs Latvian, abbreviations ("MR", "CT"),
older template wording. Every label is mapped through KEY_ALIASES to one
canonical key, and canonical keys are rendered in a fixed order:

    MAIN_FEATURE_ORDER   the main comparison table
    ADDON_ORDER          the "Papildus programmas" block
    leftovers            anything present but not catalogued ("Citi lauki")

Keys in HIDE_IN_TABLE exist in the data but are shown in the column header
(program name, base sum, premium), never as rows.

Unknown labels pass through unchanged, so new feature names show up as
leftover rows without a code change.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Column

HIGH_TECH_EXAMS = (
    "Augsto tehnoloģiju izmeklējumi, piem., MR, CT, limits, ja ir (reižu skaits vai EUR)"
)
DIAGNOSTICS = "Maksas diagnostika, piem., rentgens, elektrokradiogramma, USG, utml."

# ---------------------------------------------------------------------------
# Catalogue
# ---------------------------------------------------------------------------

MAIN_FEATURE_ORDER: list[str] = [
    "Pamatsumma",
    "Pakalpojuma apmaksas veids",
    "Pacientu iemaksa",
    "Maksas ģimenes ārsta mājas vizītes, limits EUR",
    "Maksas ģimenes ārsta, internista, terapeita un pediatra konsultācija, limits EUR",
    "Maksas ārsta-specialista konsultācija, limits EUR",
    "Profesora, docenta, internista konsultācija, limits EUR",
    "Homeopāts",
    "Psihoterapeits",
    "Sporta ārsts",
    "ONLINE ārstu konsultācijas",
    "Laboratoriskie izmeklējumi",
    DIAGNOSTICS,
    HIGH_TECH_EXAMS,
    "Obligātās veselības pārbaudes, limits EUR",
    "Ārstnieciskās manipulācijas",
    "Medicīniskās izziņas",
    "Fizikālā terapija",
    "Procedūras",
    "Vakcinācija, limits EUR",
    "Maksas grūtnieču aprūpe",
    "Maksas onkoloģiskā, hematoloģiskā ārstēšana",
    "Neatliekamā palīdzība valsts un privātā (limits privātai, EUR)",
    "Maksas stacionārie pakalpojumi, limits EUR",
    "Maksas stacionārā rehabilitācija, limits EUR",
    "Ambulatorā rehabilitācija",
    "Piemaksa par plastikāta kartēm, EUR",
]

ADDON_ORDER: list[str] = [
    "Zobārstniecība ar 50% atlaidi (pamatpolise)",
    "Zobārstniecība ar 50% atlaidi (pp)",
    "Vakcinācija pret ērcēm un gripu",
    "Ambulatorā rehabilitācija (pp)",
    "Medikamenti ar 50% atlaidi",
    "Sports",
    "Kritiskās saslimšanas",
    "Maksas stacionārie pakalpojumi, limits EUR (pp)",
    "Optika 50%, limits EUR",
]

# Header/meta fields: present in feature bags, rendered in the column header.
HIDE_IN_TABLE: frozenset[str] = frozenset(
    {
        "Programmas nosaukums",
        "Apdrošinājuma summa pamatpolisei, EUR",
        "Pamatpolises prēmija 1 darbiniekam, EUR",
    }
)

# Left: label as it appears in source bags   Right: canonical key
KEY_ALIASES: dict[str, str] = {
    # English
    "Remote consultations": "ONLINE ārstu konsultācijas",
    "Online consultations": "ONLINE ārstu konsultācijas",
    "Physical therapy": "Fizikālā terapija",
    "Psychologist": "Psihoterapeits",
    "Homeopath": "Homeopāts",
    "Sports doctor": "Sporta ārsts",
    "Laboratory tests": "Laboratoriskie izmeklējumi",
    "Patient co-payment": "Pacientu iemaksa",
    "Payment method": "Pakalpojuma apmaksas veids",
    # Latvian variants / typos
    "Psihologs / Psihoterapeits": "Psihoterapeits",
    "Psihoterapeits (vai mentāla veselība)": "Psihoterapeits",
    "Maksas diagnostika": DIAGNOSTICS,
    "Maksas ģimenes ārsta mājas vizītes, imits EUR": (
        "Maksas ģimenes ārsta mājas vizītes, limits EUR"
    ),
    "Maksas ārsta-specialista konsultācija, imits EUR": (
        "Maksas ārsta-specialista konsultācija, limits EUR"
    ),
    # high-tech exams
    "Augsto tehnoloģiju izmeklējumi": HIGH_TECH_EXAMS,
    "Augsto tehnoloģiju izmeklējumi, piem., MR, CT, limits (reižu skaits vai EUR)": (
        HIGH_TECH_EXAMS
    ),
    "Augsto tehnoloģiju izmeklējumi, piem., MRT, CT, limits, ja ir (reižu skaits vai EUR)": (
        HIGH_TECH_EXAMS
    ),
    "Augsto tehnoloģiju izmeklējumi, piem., MRG, CT, limits, ja ir (reižu skaits vai EUR)": (
        HIGH_TECH_EXAMS
    ),
    "MR": HIGH_TECH_EXAMS,
    "MRT": HIGH_TECH_EXAMS,
    "MRG": HIGH_TECH_EXAMS,
    "CT": HIGH_TECH_EXAMS,
    # add-ons
    "Zobārstniecība ar 50% atlaidi, apdrošinājuma summa (pp)": (
        "Zobārstniecība ar 50% atlaidi (pp)"
    ),
    "Dental 50% (add-on)": "Zobārstniecība ar 50% atlaidi (pp)",
    "Tick and flu vaccination": "Vakcinācija pret ērcēm un gripu",
    "Critical illness": "Kritiskās saslimšanas",
    "Medicines 50% discount": "Medikamenti ar 50% atlaidi",
}


def canonicalize(raw_label: str) -> str:
    """Map a raw feature label to its canonical key.

    Total and idempotent: every alias target is itself a fixed point,
    unknown labels are returned trimmed but otherwise unchanged.
    """
    label = raw_label.strip()
    return KEY_ALIASES.get(label, label)


def unwrap(value: Any) -> Any:
    """Flatten ``{"value": x}`` wrappers some extractors emit."""
    while isinstance(value, Mapping) and "value" in value:
        value = value["value"]
    return value


def lookup(column: Column, canonical_key: str) -> Any:
    """Resolve a column's value for a canonical row, or None.

    Bags may hold either the raw historical label or an already canonical
    one, so try the key itself, then its canonical form, then canonicalize
    every stored key.
    """
    bag = column.features or {}
    if canonical_key in bag:
        return unwrap(bag[canonical_key])
    canon = canonicalize(canonical_key)
    if canon in bag:
        return unwrap(bag[canon])
    for raw_key, value in bag.items():
        if canonicalize(raw_key) == canon:
            return unwrap(value)
    return None


def canonicalize_bag(features: Mapping[str, Any]) -> dict[str, Any]:
    """Re-key a feature bag by canonical key. Later raw keys win on clashes."""
    return {canonicalize(k): v for k, v in features.items()}


def present_keys(columns: Iterable[Column]) -> set[str]:
    """Canonical keys present in at least one program column."""
    keys: set[str] = set()
    for column in columns:
        if column.is_error:
            continue
        keys.update(canonicalize(k) for k in (column.features or {}))
    return keys


def visible_order(present: Iterable[str], hidden: Iterable[str] = ()) -> list[str]:
    """Catalogued rows to render: MAIN then ADDON, present, not suppressed, not hidden."""
    present = set(present)
    hidden = set(hidden)
    return [
        key
        for key in (*MAIN_FEATURE_ORDER, *ADDON_ORDER)
        if key in present and key not in HIDE_IN_TABLE and key not in hidden
    ]


@dataclass(frozen=True)
class FeatureSections:
    """Row keys grouped the way the matrix renders them."""

    main: list[str] = field(default_factory=list)
    addons: list[str] = field(default_factory=list)
    leftovers: list[str] = field(default_factory=list)

    @property
    def all_rows(self) -> list[str]:
        return [*self.main, *self.addons, *self.leftovers]


def feature_sections(present: Iterable[str], hidden: Iterable[str] = ()) -> FeatureSections:
    present = set(present)
    hidden = set(hidden)
    addon_set = set(ADDON_ORDER)
    ordered = visible_order(present, hidden)
    known = set(MAIN_FEATURE_ORDER) | addon_set | HIDE_IN_TABLE
    return FeatureSections(
        main=[k for k in ordered if k not in addon_set],
        addons=[k for k in ordered if k in addon_set],
        leftovers=sorted(k for k in present if k not in known and k not in hidden),
    )


# ---------------------------------------------------------------------------
# Cell values
# ---------------------------------------------------------------------------

_TRUE_MARKERS = frozenset({"v", "yes", "jā", "✓"})
_FALSE_MARKERS = frozenset({"-", "no", "nē", "—"})


class ValueKind(str, Enum):
    BOOL = "bool"
    NUMBER = "number"
    TEXT = "text"
    MISSING = "missing"


@dataclass(frozen=True)
class FeatureValue:
    """Tagged cell value."""

    kind: ValueKind
    value: bool | float | str | None = None

    @property
    def is_check(self) -> bool:
        return self.kind == ValueKind.BOOL and self.value is True

    @property
    def is_minus(self) -> bool:
        return self.kind == ValueKind.MISSING or (
            self.kind == ValueKind.BOOL and self.value is False
        )

    def display(self) -> str:
        if self.is_check:
            return "✓"
        if self.is_minus:
            return "—"
        if self.kind == ValueKind.NUMBER and float(self.value).is_integer():
            return str(int(self.value))
        return str(self.value)


MISSING = FeatureValue(ValueKind.MISSING)


def classify(value: Any) -> FeatureValue:
    """Turn a raw bag value into a FeatureValue."""
    value = unwrap(value)
    if value is None:
        return MISSING
    if isinstance(value, bool):
        return FeatureValue(ValueKind.BOOL, value)
    if isinstance(value, (int, float)):
        return FeatureValue(ValueKind.NUMBER, float(value))
    text = str(value).strip()
    if not text:
        return MISSING
    lowered = text.lower()
    if lowered in _TRUE_MARKERS:
        return FeatureValue(ValueKind.BOOL, True)
    if lowered in _FALSE_MARKERS:
        return FeatureValue(ValueKind.BOOL, False)
    return FeatureValue(ValueKind.TEXT, text)
