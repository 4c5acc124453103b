"""
CostingEngine — DUPA-style unit costing and BOQ pricing for DPWH pay items.

Covers:
  - Per-unit resource costing (labor, equipment incl. minor tools, materials)
  - Markup rollup: direct cost → OCM + CP (both on direct) → VAT on subtotal
  - Incremental recompute when only a line quantity changes
  - DPWH markup brackets by total direct cost (D.O. 204 s.2015)
  - Whole BOQ pricing with placeholder lines for unmapped pay items
  - Cost summary and price delta between two estimates

Percentages are decimal fractions inside this module (12 % ⇒ 0.12).
normalize_percentage() converts whole-number input at the boundary.
"""
import logging
import math
from dataclasses import dataclass, field, asdict, replace
from typing import Any, Dict, Iterable, List, Optional

from app.services.boq_engine import BOQLine, normalize_pay_item_number
from app.services.errors import ValidationError, ValidationIssue
from app.services.perf_monitor import timed

logger = logging.getLogger("estimator-costing")


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
_DEFAULT_VAT_PCT: float = 0.12                # Philippine VAT
_DEFAULT_MINOR_TOOLS_PCT: float = 0.10        # of labor cost, when enabled

# (direct cost ceiling PHP, OCM, CP); last bracket is open-ended
_DPWH_MARKUP_BRACKETS = [
    (1_000_000.0, 0.15, 0.10),
    (5_000_000.0, 0.12, 0.08),
    (15_000_000.0, 0.10, 0.07),
    (50_000_000.0, 0.08, 0.06),
    (math.inf, 0.05, 0.05),
]


def _money(value: float) -> float:
    return round(value, 2)


# ---------------------------------------------------------------------------
# Resource line items
# ---------------------------------------------------------------------------

@dataclass
class LaborItem:
    designation: str
    persons: float
    hours: float
    hourly_rate: float
    amount: float = 0.0


@dataclass
class EquipmentItem:
    description: str
    units: float
    hours: float
    hourly_rate: float
    amount: float = 0.0


@dataclass
class MaterialItem:
    description: str
    quantity: float
    unit_cost: float
    unit: str = ""
    amount: float = 0.0


@dataclass
class RateTable:
    """Per-pay-item DUPA resource inputs for ONE unit of the pay item."""
    pay_item_number: str
    labor_items: List[LaborItem] = field(default_factory=list)
    equipment_items: List[EquipmentItem] = field(default_factory=list)
    material_items: List[MaterialItem] = field(default_factory=list)
    include_minor_tools: bool = False
    minor_tools_pct: float = _DEFAULT_MINOR_TOOLS_PCT
    description: Optional[str] = None
    unit: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RateTable":
        return cls(
            pay_item_number=data["pay_item_number"],
            labor_items=[
                LaborItem(
                    designation=l.get("designation", ""),
                    persons=float(l.get("persons", 0)),
                    hours=float(l.get("hours", 0)),
                    hourly_rate=float(l.get("hourly_rate", 0)),
                )
                for l in data.get("labor_items") or []
            ],
            equipment_items=[
                EquipmentItem(
                    description=e.get("description", ""),
                    units=float(e.get("units", 0)),
                    hours=float(e.get("hours", 0)),
                    hourly_rate=float(e.get("hourly_rate", 0)),
                )
                for e in data.get("equipment_items") or []
            ],
            material_items=[
                MaterialItem(
                    description=m.get("description", ""),
                    quantity=float(m.get("quantity", 0)),
                    unit_cost=float(m.get("unit_cost", 0)),
                    unit=m.get("unit", ""),
                )
                for m in data.get("material_items") or []
            ],
            include_minor_tools=bool(data.get("include_minor_tools", False)),
            minor_tools_pct=normalize_percentage(
                data.get("minor_tools_pct", _DEFAULT_MINOR_TOOLS_PCT), "minor_tools_pct"
            ),
            description=data.get("description"),
            unit=data.get("unit"),
        )


# ---------------------------------------------------------------------------
# Breakdown / priced line
# ---------------------------------------------------------------------------

@dataclass
class CostBreakdown:
    labor_cost: float
    equipment_cost: float
    minor_tools_cost: float
    material_cost: float
    direct_cost: float
    ocm_cost: float
    cp_cost: float
    subtotal_with_markup: float
    vat_cost: float
    total_unit_cost: float
    quantity: float
    total_amount: float
    labor_items: List[LaborItem] = field(default_factory=list)
    equipment_items: List[EquipmentItem] = field(default_factory=list)
    material_items: List[MaterialItem] = field(default_factory=list)


@dataclass
class CostLine:
    """One priced BOQ line owned by exactly one cost estimate."""
    pay_item_number: str
    description: str
    unit: str
    part: str
    subcategory: str
    quantity: float
    boq_line_id: Optional[str] = None
    source_raw_line_ids: List[str] = field(default_factory=list)
    rates_missing: bool = False
    labor_cost: float = 0.0
    equipment_cost: float = 0.0
    minor_tools_cost: float = 0.0
    material_cost: float = 0.0
    direct_cost: float = 0.0
    ocm_cost: float = 0.0
    cp_cost: float = 0.0
    subtotal_with_markup: float = 0.0
    vat_cost: float = 0.0
    total_unit_cost: float = 0.0
    total_amount: float = 0.0
    labor_items: List[LaborItem] = field(default_factory=list)
    equipment_items: List[EquipmentItem] = field(default_factory=list)
    material_items: List[MaterialItem] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CostLine":
        payload = dict(data)
        payload["labor_items"] = [LaborItem(**l) for l in data.get("labor_items") or []]
        payload["equipment_items"] = [EquipmentItem(**e) for e in data.get("equipment_items") or []]
        payload["material_items"] = [MaterialItem(**m) for m in data.get("material_items") or []]
        payload["source_raw_line_ids"] = list(data.get("source_raw_line_ids") or [])
        return cls(**payload)


# ---------------------------------------------------------------------------
# Percentages and markup brackets
# ---------------------------------------------------------------------------

def normalize_percentage(value: Any, name: str = "percentage") -> float:
    """
    Boundary conversion to a decimal fraction.
        12   → 0.12   (whole-number percent)
        0.12 → 0.12   (already a fraction)
    Negative or non-numeric input raises ValidationError.
    """
    try:
        pct = float(value)
    except (TypeError, ValueError):
        raise ValidationError(
            f"{name} must be numeric",
            [ValidationIssue(code="invalid_percentage", message=f"{name}={value!r}", ref=name)],
        )
    if not math.isfinite(pct) or pct < 0:
        raise ValidationError(
            f"{name} must be a non-negative number",
            [ValidationIssue(code="invalid_percentage", message=f"{name}={value!r}", ref=name)],
        )
    return pct / 100.0 if pct >= 1 else pct


@dataclass
class MarkupRates:
    ocm_pct: float
    cp_pct: float
    vat_pct: float


def dpwh_markup_rates(total_direct_cost: float) -> MarkupRates:
    """
    OCM/CP fractions for the project's cost bracket; VAT is always 12 %.
        ≤ ₱1M  → 15 % / 10 %     ≤ ₱5M  → 12 % / 8 %
        ≤ ₱15M → 10 % / 7 %      ≤ ₱50M → 8 % / 6 %
        above  → 5 % / 5 %
    """
    for ceiling, ocm, cp in _DPWH_MARKUP_BRACKETS:
        if total_direct_cost <= ceiling:
            return MarkupRates(ocm_pct=ocm, cp_pct=cp, vat_pct=_DEFAULT_VAT_PCT)
    # NaN compares false against every ceiling
    _, ocm, cp = _DPWH_MARKUP_BRACKETS[-1]
    return MarkupRates(ocm_pct=ocm, cp_pct=cp, vat_pct=_DEFAULT_VAT_PCT)


# ---------------------------------------------------------------------------
# Core computation
# ---------------------------------------------------------------------------

def _check_non_negative(value: float, code: str, ref: str, issues: List[ValidationIssue]) -> None:
    if not math.isfinite(value) or value < 0:
        issues.append(ValidationIssue(code=code, message=f"{ref} = {value} must be ≥ 0", ref=ref))


def _check_fraction(value: float, name: str, issues: List[ValidationIssue]) -> None:
    if not math.isfinite(value) or value < 0 or value >= 1:
        issues.append(ValidationIssue(
            code="percentage_out_of_range",
            message=f"{name} = {value} must be a fraction in [0, 1); normalize whole percents first",
            ref=name,
        ))


def compute_cost(
    labor: Iterable[LaborItem],
    equipment: Iterable[EquipmentItem],
    material: Iterable[MaterialItem],
    quantity: float,
    ocm_pct: float,
    cp_pct: float,
    vat_pct: float,
    minor_tools_pct: float = 0.0,
) -> CostBreakdown:
    """
    Full cost breakdown for `quantity` units of one pay item.

    Resource costs are per ONE unit of the pay item and independent of quantity:
        labor     = Σ persons × hours × hourly_rate
        equipment = Σ units × hours × hourly_rate  (+ minor tools = labor × minor_tools_pct)
        material  = Σ quantity × unit_cost
        direct    = labor + equipment + material
        ocm = direct × ocm_pct;  cp = direct × cp_pct
        subtotal  = direct + ocm + cp
        vat       = subtotal × vat_pct
        total_unit_cost = subtotal + vat
        total_amount    = total_unit_cost × quantity
    Every money stage is rounded to 2 decimals before feeding the next.

    Raises ValidationError on negative quantities/rates and on percentages
    outside [0, 1).
    """
    labor = list(labor)
    equipment = list(equipment)
    material = list(material)
    issues: List[ValidationIssue] = []

    _check_non_negative(quantity, "negative_quantity", "quantity", issues)
    for name, pct in (("ocm_pct", ocm_pct), ("cp_pct", cp_pct),
                      ("vat_pct", vat_pct), ("minor_tools_pct", minor_tools_pct)):
        _check_fraction(pct, name, issues)
    for item in labor:
        for attr in ("persons", "hours", "hourly_rate"):
            _check_non_negative(getattr(item, attr), "negative_rate", f"labor[{item.designation}].{attr}", issues)
    for item in equipment:
        for attr in ("units", "hours", "hourly_rate"):
            _check_non_negative(getattr(item, attr), "negative_rate", f"equipment[{item.description}].{attr}", issues)
    for item in material:
        for attr in ("quantity", "unit_cost"):
            _check_non_negative(getattr(item, attr), "negative_rate", f"material[{item.description}].{attr}", issues)
    if issues:
        raise ValidationError("Invalid costing input", issues)

    labor_items = [replace(l, amount=_money(l.persons * l.hours * l.hourly_rate)) for l in labor]
    equipment_items = [replace(e, amount=_money(e.units * e.hours * e.hourly_rate)) for e in equipment]
    material_items = [replace(m, amount=_money(m.quantity * m.unit_cost)) for m in material]

    labor_cost = _money(math.fsum(l.amount for l in labor_items))
    minor_tools_cost = _money(labor_cost * minor_tools_pct)
    equipment_cost = _money(math.fsum(e.amount for e in equipment_items) + minor_tools_cost)
    material_cost = _money(math.fsum(m.amount for m in material_items))

    direct_cost = _money(labor_cost + equipment_cost + material_cost)
    ocm_cost = _money(direct_cost * ocm_pct)
    cp_cost = _money(direct_cost * cp_pct)
    subtotal = _money(direct_cost + ocm_cost + cp_cost)
    vat_cost = _money(subtotal * vat_pct)
    total_unit_cost = _money(subtotal + vat_cost)

    return CostBreakdown(
        labor_cost=labor_cost,
        equipment_cost=equipment_cost,
        minor_tools_cost=minor_tools_cost,
        material_cost=material_cost,
        direct_cost=direct_cost,
        ocm_cost=ocm_cost,
        cp_cost=cp_cost,
        subtotal_with_markup=subtotal,
        vat_cost=vat_cost,
        total_unit_cost=total_unit_cost,
        quantity=quantity,
        total_amount=_money(total_unit_cost * quantity),
        labor_items=labor_items,
        equipment_items=equipment_items,
        material_items=material_items,
    )


def recompute_on_quantity_change(line: CostLine, new_quantity: float) -> CostLine:
    """
    O(1) update for a quantity edit: the per-unit breakdown is kept as is and
    only total_amount = total_unit_cost × new_quantity is recomputed.
    """
    if not isinstance(new_quantity, (int, float)) or not math.isfinite(new_quantity) or new_quantity < 0:
        raise ValidationError(
            "Quantity must be a non-negative number",
            [ValidationIssue(code="negative_quantity", message=f"quantity={new_quantity!r}",
                             ref=line.pay_item_number)],
        )
    return replace(
        line,
        quantity=new_quantity,
        total_amount=_money(line.total_unit_cost * new_quantity),
    )


def build_cost_summary(lines: List[CostLine]) -> Dict[str, Any]:
    """
    Project totals (per-unit costs × line quantity):
        total_direct_cost, total_ocm, total_cp, subtotal_with_markup,
        total_vat, grand_total (= Σ total_amount), rate_items_count.
    """
    total_direct = _money(math.fsum(l.direct_cost * l.quantity for l in lines))
    total_ocm = _money(math.fsum(l.ocm_cost * l.quantity for l in lines))
    total_cp = _money(math.fsum(l.cp_cost * l.quantity for l in lines))
    total_vat = _money(math.fsum(l.vat_cost * l.quantity for l in lines))
    return {
        "total_direct_cost": total_direct,
        "total_ocm": total_ocm,
        "total_cp": total_cp,
        "subtotal_with_markup": _money(total_direct + total_ocm + total_cp),
        "total_vat": total_vat,
        "grand_total": _money(math.fsum(l.total_amount for l in lines)),
        "rate_items_count": len(lines),
    }


def calculate_delta(base_grand_total: float, current_grand_total: float) -> Dict[str, float]:
    """Price delta of a newer estimate against its base estimate."""
    delta = _money(current_grand_total - base_grand_total)
    pct = round(delta / base_grand_total * 100.0, 2) if base_grand_total else 0.0
    return {
        "base_grand_total": _money(base_grand_total),
        "current_grand_total": _money(current_grand_total),
        "delta": delta,
        "delta_percentage": pct,
    }


# ---------------------------------------------------------------------------
# BOQ pricing
# ---------------------------------------------------------------------------

@dataclass
class PricingResult:
    lines: List[CostLine]
    cost_summary: Dict[str, Any]
    markups: MarkupRates
    unmapped_pay_items: List[str]
    validation_errors: List[ValidationIssue]


class CostingEngine:
    """
    Prices a BOQ against per-pay-item rate tables.

    Markups given here (or per call) win; any that are None are taken from
    the DPWH bracket of the estimate's total direct cost.
    """

    def __init__(
        self,
        ocm_pct: Optional[float] = None,
        cp_pct: Optional[float] = None,
        vat_pct: Optional[float] = None,
    ):
        self.ocm_pct = None if ocm_pct is None else normalize_percentage(ocm_pct, "ocm_pct")
        self.cp_pct = None if cp_pct is None else normalize_percentage(cp_pct, "cp_pct")
        self.vat_pct = _DEFAULT_VAT_PCT if vat_pct is None else normalize_percentage(vat_pct, "vat_pct")

    def resolve_markups(
        self,
        total_direct_cost: float,
        ocm_pct: Optional[float] = None,
        cp_pct: Optional[float] = None,
        vat_pct: Optional[float] = None,
    ) -> MarkupRates:
        bracket = dpwh_markup_rates(total_direct_cost)

        def pick(explicit, default, fallback, name):
            if explicit is not None:
                return normalize_percentage(explicit, name)
            return default if default is not None else fallback

        return MarkupRates(
            ocm_pct=pick(ocm_pct, self.ocm_pct, bracket.ocm_pct, "ocm_pct"),
            cp_pct=pick(cp_pct, self.cp_pct, bracket.cp_pct, "cp_pct"),
            vat_pct=pick(vat_pct, self.vat_pct, bracket.vat_pct, "vat_pct"),
        )

    @staticmethod
    def _placeholder(boq: BOQLine) -> CostLine:
        return CostLine(
            pay_item_number=boq.pay_item_number,
            description=boq.description or "No rate table found",
            unit=boq.unit,
            part=boq.part,
            subcategory=boq.subcategory,
            quantity=boq.quantity,
            boq_line_id=boq.id,
            source_raw_line_ids=list(boq.source_raw_line_ids),
            rates_missing=True,
        )

    @timed("price_boq")
    def price_boq(
        self,
        boq_lines: Iterable[BOQLine],
        rate_tables: Iterable[RateTable],
        ocm_pct: Optional[float] = None,
        cp_pct: Optional[float] = None,
        vat_pct: Optional[float] = None,
    ) -> PricingResult:
        """
        Two passes: direct costs first (their total picks the markup bracket),
        then the full breakdown per line. Lines whose inputs fail validation
        become placeholders and their issues are collected.
        """
        boq_lines = list(boq_lines)
        tables: Dict[str, RateTable] = {}
        for table in rate_tables:
            tables.setdefault(normalize_pay_item_number(table.pay_item_number), table)

        issues: List[ValidationIssue] = []
        unmapped: List[str] = []
        priceable: Dict[int, RateTable] = {}
        direct_total = 0.0

        for idx, boq in enumerate(boq_lines):
            table = tables.get(normalize_pay_item_number(boq.pay_item_number))
            if table is None:
                unmapped.append(boq.pay_item_number)
                continue
            minor = table.minor_tools_pct if table.include_minor_tools else 0.0
            try:
                direct = compute_cost(
                    table.labor_items, table.equipment_items, table.material_items,
                    boq.quantity, 0.0, 0.0, 0.0, minor,
                )
            except ValidationError as exc:
                for issue in exc.issues:
                    issue.ref = f"{boq.pay_item_number}: {issue.ref}"
                issues.extend(exc.issues)
                continue
            priceable[idx] = table
            direct_total += direct.direct_cost * boq.quantity

        markups = self.resolve_markups(direct_total, ocm_pct, cp_pct, vat_pct)
        lines: List[CostLine] = []

        for idx, boq in enumerate(boq_lines):
            table = priceable.get(idx)
            if table is None:
                lines.append(self._placeholder(boq))
                continue
            minor = table.minor_tools_pct if table.include_minor_tools else 0.0
            b = compute_cost(
                table.labor_items, table.equipment_items, table.material_items,
                boq.quantity, markups.ocm_pct, markups.cp_pct, markups.vat_pct, minor,
            )
            lines.append(CostLine(
                pay_item_number=boq.pay_item_number,
                description=table.description or boq.description,
                unit=table.unit or boq.unit,
                part=boq.part,
                subcategory=boq.subcategory,
                quantity=boq.quantity,
                boq_line_id=boq.id,
                source_raw_line_ids=list(boq.source_raw_line_ids),
                labor_cost=b.labor_cost,
                equipment_cost=b.equipment_cost,
                minor_tools_cost=b.minor_tools_cost,
                material_cost=b.material_cost,
                direct_cost=b.direct_cost,
                ocm_cost=b.ocm_cost,
                cp_cost=b.cp_cost,
                subtotal_with_markup=b.subtotal_with_markup,
                vat_cost=b.vat_cost,
                total_unit_cost=b.total_unit_cost,
                total_amount=b.total_amount,
                labor_items=b.labor_items,
                equipment_items=b.equipment_items,
                material_items=b.material_items,
            ))

        summary = build_cost_summary(lines)
        logger.info(
            f"Priced {len(lines)} BOQ line(s): direct ₱{summary['total_direct_cost']:,.2f}, "
            f"OCM {markups.ocm_pct:.0%} CP {markups.cp_pct:.0%} VAT {markups.vat_pct:.0%}, "
            f"{len(unmapped)} unmapped"
        )
        return PricingResult(
            lines=lines,
            cost_summary=summary,
            markups=markups,
            unmapped_pay_items=unmapped,
            validation_errors=issues,
        )
