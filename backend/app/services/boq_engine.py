"""
BOQ Aggregation Engine — groups raw takeoff quantities into DPWH pay-item
Bill of Quantities lines.

For each raw quantity line (one measured quantity from one design element) the
pay item is resolved, the line is grouped under the normalized pay-item number,
and each group is summed into one BOQ line that keeps every contributing raw
line id for traceability.

Pay-item resolution, first hit wins:
  1. tag "dpwh:<item>" (or "payItem:<item>")
  2. assumption text "DPWH Item: <item>"
  3. resource key that is itself a pay-item number ("902 (1) a2")
  4. trade default (Concrete → 900 (1) a, Rebar → 902 (1) a2, Formwork → 903 (1))

Validation is per line / per group: unresolvable lines, negative quantities and
unit mismatches inside a group are reported as ValidationIssue records and
excluded, the rest of the run carries on.
"""
import logging
import math
import re
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.services.classification_engine import classify, normalize_part_label, part_rank
from app.services.errors import ValidationIssue
from app.services.perf_monitor import timed

logger = logging.getLogger("estimator-boq")


# ── Pay-item defaults and trade → part fallback ───────────────────────────────

TRADE_DEFAULT_PAY_ITEMS: Dict[str, str] = {
    "Concrete": "900 (1) a",
    "Rebar": "902 (1) a2",
    "Formwork": "903 (1)",
}

TRADE_PARTS: Dict[str, str] = {
    "Earthwork": "C",
    "Concrete": "D",
    "Rebar": "D",
    "Formwork": "D",
    "Structural": "D",
    "Foundation": "D",
    "Finishes": "E",
    "Painting": "E",
    "Carpentry": "E",
    "Doors & Windows": "E",
    "Glass & Glazing": "E",
    "Roofing": "E",
    "Waterproofing": "E",
    "Masonry": "E",
    "Hardware": "E",
    "Plumbing": "F",
    "MEPF": "G",
}

# ── Unit synonyms ─────────────────────────────────────────────────────────────
UNIT_SYNONYMS: Dict[str, str] = {
    "cu.m": "Cubic Meter", "cu.m.": "Cubic Meter", "cu m": "Cubic Meter", "m3": "Cubic Meter",
    "m³": "Cubic Meter", "cubic meter": "Cubic Meter", "cubic meters": "Cubic Meter",
    "sq.m": "Square Meter", "sq.m.": "Square Meter", "sq m": "Square Meter", "m2": "Square Meter",
    "m²": "Square Meter", "square meter": "Square Meter", "square meters": "Square Meter",
    "lin.m": "Linear Meter", "l.m": "Linear Meter", "l.m.": "Linear Meter", "lm": "Linear Meter",
    "m": "Linear Meter", "linear meter": "Linear Meter", "linear meters": "Linear Meter",
    "kg": "Kilogram", "kgs": "Kilogram", "kilogram": "Kilogram", "kilograms": "Kilogram",
    "ls": "Lump Sum", "l.s.": "Lump Sum", "l.s": "Lump Sum", "lump sum": "Lump Sum",
    "each": "Each", "ea": "Each", "pc": "Each", "pcs": "Each", "piece": "Each", "pieces": "Each",
}

_PAY_ITEM_TAG_PREFIXES = ("dpwh:", "payItem:")
_ASSUMPTION_RE = re.compile(r"DPWH Item:\s*([^,]+)")
_PAY_ITEM_KEY_RE = re.compile(r"^\s*\d+\s*(\(|$)")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class RawQuantityLine:
    """One measured quantity derived from one design element."""
    id: str
    source_element_id: str
    trade: str
    resource_key: str
    quantity: float
    unit: str
    formula_text: str = ""
    inputs_snapshot: Dict[str, Any] = field(default_factory=dict)
    tags: List[str] = field(default_factory=list)
    assumptions: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RawQuantityLine":
        return cls(
            id=str(data.get("id") or ""),
            source_element_id=str(data.get("source_element_id") or ""),
            trade=str(data.get("trade") or ""),
            resource_key=str(data.get("resource_key") or ""),
            quantity=float(data.get("quantity") or 0.0),
            unit=str(data.get("unit") or ""),
            formula_text=data.get("formula_text") or "",
            inputs_snapshot=dict(data.get("inputs_snapshot") or {}),
            tags=list(data.get("tags") or []),
            assumptions=list(data.get("assumptions") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BOQLine:
    """One standardized pay-item quantity. No pricing fields."""
    id: str
    pay_item_number: str
    description: str
    unit: str
    quantity: float
    part: str
    part_name: str
    subcategory: str
    source_raw_line_ids: List[str]
    tags: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BOQLine":
        return cls(
            id=data["id"],
            pay_item_number=data["pay_item_number"],
            description=data.get("description", ""),
            unit=data.get("unit", ""),
            quantity=float(data.get("quantity", 0.0)),
            part=data.get("part", ""),
            part_name=data.get("part_name", ""),
            subcategory=data.get("subcategory", ""),
            source_raw_line_ids=list(data.get("source_raw_line_ids") or []),
            tags=list(data.get("tags") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AggregationResult:
    boq_lines: List[BOQLine]
    validation_errors: List[ValidationIssue]


@dataclass
class _Group:
    pay_item_number: str
    lines: List[RawQuantityLine] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Normalizers
# ---------------------------------------------------------------------------

def normalize_pay_item_number(item_number: str) -> str:
    """
    Canonical pay-item spelling used as the grouping key:
    trim, collapse whitespace, close the gap after ")" and uppercase.
        "900 (1) c"  → "900 (1)C"
        " 902  (1) a2" → "902 (1)A2"
    """
    text = re.sub(r"\s+", " ", (item_number or "").strip())
    text = re.sub(r"\)\s+(?=[A-Za-z0-9])", ")", text)
    return text.upper()


def normalize_unit(unit: str) -> str:
    text = (unit or "").strip()
    return UNIT_SYNONYMS.get(text.lower(), text)


def boq_line_id(pay_item_number: str) -> str:
    return "boq_" + re.sub(r"[^A-Za-z0-9]", "_", pay_item_number)


def _tag_value(tags: Iterable[str], prefixes: Tuple[str, ...]) -> Optional[str]:
    for tag in tags:
        for prefix in prefixes:
            if tag.startswith(prefix):
                value = tag[len(prefix):].strip()
                if value:
                    return value
    return None


def resolve_pay_item(line: RawQuantityLine) -> Optional[str]:
    """Pay-item number for one raw line, or None when nothing identifies it."""
    tagged = _tag_value(line.tags, _PAY_ITEM_TAG_PREFIXES)
    if tagged:
        return tagged
    for assumption in line.assumptions:
        match = _ASSUMPTION_RE.search(assumption)
        if match:
            return match.group(1).strip()
    if _PAY_ITEM_KEY_RE.match(line.resource_key or ""):
        return line.resource_key.strip()
    return TRADE_DEFAULT_PAY_ITEMS.get(line.trade)


def _explicit_part(group: _Group) -> Optional[str]:
    """part:<X> tag on any contributing line, else the trade fallback for non-numeric items."""
    for line in group.lines:
        part = normalize_part_label(_tag_value(line.tags, ("part:",)))
        if part:
            return part
    if not re.match(r"^\d", group.pay_item_number):
        for line in group.lines:
            letter = TRADE_PARTS.get(line.trade)
            if letter:
                return f"PART {letter}"
    return None


def _category_hint(group: _Group) -> Optional[str]:
    for line in group.lines:
        hint = _tag_value(line.tags, ("category:",))
        if hint:
            return hint
    return group.lines[0].trade or None


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

@timed("aggregate")
def aggregate(
    raw_lines: Iterable[RawQuantityLine],
    catalog: Optional[Dict[str, Dict[str, Any]]] = None,
) -> AggregationResult:
    """
    Group raw quantity lines by pay item and sum them into BOQ lines.

    Args:
        raw_lines: RawQuantityLine records from one calculation run.
        catalog:   optional {pay_item_number: {"description": .., "unit": ..}}.

    Returns:
        AggregationResult with BOQ lines in canonical part → subcategory →
        first-seen order, and the per-item validation issues.
    """
    catalog_index = {
        normalize_pay_item_number(k): v for k, v in (catalog or {}).items()
    }
    issues: List[ValidationIssue] = []
    groups: Dict[str, _Group] = {}
    seen_ids: set = set()

    for line in raw_lines:
        if not line.id:
            issues.append(ValidationIssue(
                code="missing_id", message="Raw quantity line has no id", ref=line.resource_key or None,
            ))
            continue
        if line.id in seen_ids:
            issues.append(ValidationIssue(
                code="duplicate_raw_line_id",
                message=f"Raw quantity line id {line.id} repeats; only the first is counted",
                ref=line.id,
            ))
            continue
        seen_ids.add(line.id)
        if not math.isfinite(line.quantity) or line.quantity < 0:
            issues.append(ValidationIssue(
                code="negative_quantity",
                message=f"Quantity {line.quantity} is not a non-negative number",
                ref=line.id,
            ))
            continue
        raw_item = resolve_pay_item(line)
        if not raw_item:
            issues.append(ValidationIssue(
                code="missing_pay_item",
                message=f"No pay item for trade '{line.trade}' / resource '{line.resource_key}'",
                ref=line.id,
            ))
            continue
        key = normalize_pay_item_number(raw_item)
        groups.setdefault(key, _Group(pay_item_number=key)).lines.append(line)

    built: List[Tuple[BOQLine, int]] = []
    subcategory_order: Dict[Tuple[str, str], int] = {}
    used_ids: Dict[str, int] = {}

    for key, group in groups.items():
        units = {normalize_unit(l.unit) for l in group.lines}
        if len(units) > 1:
            issues.append(ValidationIssue(
                code="unit_mismatch",
                message=f"Pay item {key} mixes units {sorted(units)}",
                ref=key,
            ))
            continue

        classification = classify(key, _category_hint(group), _explicit_part(group))
        part = classification["part"]
        subcategory = classification["subcategory"]
        order = subcategory_order.setdefault((part, subcategory), len(subcategory_order))

        line_id = boq_line_id(key)
        if line_id in used_ids:
            used_ids[line_id] += 1
            line_id = f"{line_id}_{used_ids[line_id]}"
        else:
            used_ids[line_id] = 1

        catalog_entry = catalog_index.get(key) or {}
        tags = [f"dpwh:{key}"]
        for l in group.lines:
            if l.trade and f"trade:{l.trade}" not in tags:
                tags.append(f"trade:{l.trade}")
        for l in group.lines:
            for tag in l.tags:
                if tag not in tags:
                    tags.append(tag)

        built.append((
            BOQLine(
                id=line_id,
                pay_item_number=key,
                description=catalog_entry.get("description") or group.lines[0].resource_key or key,
                unit=units.pop(),
                quantity=math.fsum(l.quantity for l in group.lines),
                part=part,
                part_name=classification["part_name"],
                subcategory=subcategory,
                source_raw_line_ids=[l.id for l in group.lines],
                tags=tags,
            ),
            order,
        ))

    # Stable sort keeps first-seen order inside each subcategory
    built.sort(key=lambda item: (part_rank(item[0].part), item[1]))
    boq_lines = [b for b, _ in built]

    if issues:
        logger.warning(
            f"BOQ aggregation: {len(issues)} validation issue(s) across "
            f"{len(groups)} pay item group(s)"
        )
    logger.info(f"BOQ aggregation produced {len(boq_lines)} line(s)")
    return AggregationResult(boq_lines=boq_lines, validation_errors=issues)


# ---------------------------------------------------------------------------
# Run summary
# ---------------------------------------------------------------------------

_TRADE_TOTAL_KEYS: Dict[str, str] = {
    "Concrete": "total_concrete",
    "Rebar": "total_rebar",
    "Formwork": "total_formwork",
    "Earthwork": "total_earthwork",
}


def summarize(raw_lines: List[RawQuantityLine], boq_lines: List[BOQLine]) -> Dict[str, Any]:
    """Headline totals for a calculation run (concrete m³, rebar kg, formwork m², ...)."""
    totals = {k: 0.0 for k in _TRADE_TOTAL_KEYS.values()}
    for line in raw_lines:
        key = _TRADE_TOTAL_KEYS.get(line.trade)
        if key and math.isfinite(line.quantity) and line.quantity >= 0:
            totals[key] += line.quantity

    by_part: Dict[str, int] = {}
    for b in boq_lines:
        by_part[b.part] = by_part.get(b.part, 0) + 1

    return {
        **{k: round(v, 3) for k, v in totals.items()},
        "takeoff_line_count": len(raw_lines),
        "boq_line_count": len(boq_lines),
        "boq_lines_by_part": by_part,
    }
