"""
Classification Engine — maps a DPWH pay-item number + category hint to its
standard Part and subcategory, and defines the canonical Part ordering.

Resolution order:
  1. explicit, recognized part label carried by the record (normalized to "PART X")
  2. numeric prefix of the item number against the leading-digit table
  3. default part (PART A: GENERAL)

Pure functions, no I/O. Unknown input never raises; it classifies to the default.
"""
import re
from typing import Dict, Iterable, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Part table
# ---------------------------------------------------------------------------
PART_NAMES: Dict[str, str] = {
    "PART A": "GENERAL",
    "PART B": "OTHER GENERAL REQUIREMENTS",
    "PART C": "EARTHWORK",
    "PART D": "REINFORCED CONCRETE / BUILDINGS",
    "PART E": "FINISHINGS AND OTHER CIVIL WORKS",
    "PART F": "ELECTRICAL",
    "PART G": "MECHANICAL",
}

DEFAULT_PART = "PART A"
DEFAULT_SUBCATEGORY = "Other Works"

# (lower bound inclusive, upper bound exclusive, part); checked in order
_PREFIX_RANGES: List[Tuple[int, float, str]] = [
    (800, 900, "PART C"),
    (900, 1000, "PART D"),
    (1000, 1100, "PART E"),
    (1100, 1500, "PART F"),
    (1500, float("inf"), "PART G"),
]

# Subcategory used when a part has no category hint
_PART_DEFAULT_SUBCATEGORY: Dict[str, str] = {
    "PART C": "Earthwork",
    "PART D": "Concrete Works",
    "PART E": "Other Finishes",
    "PART F": "Metal & Electrical Works",
    "PART G": "Marine & Other Works",
}

# Keyword rules per part, first match wins.
# Each rule is (any-of keywords, all-of keywords, subcategory).
_SUBCATEGORY_RULES: Dict[str, List[Tuple[Tuple[str, ...], Tuple[str, ...], str]]] = {
    "PART C": [
        (("clearing", "grubbing"), (), "Clearing and Grubbing"),
        ((), ("removal", "tree"), "Removal of Trees"),
        ((), ("removal", "structure"), "Removal of Structures"),
        (("excavat",), (), "Excavation"),
        (("embankment", "fill"), (), "Embankment"),
        (("site development", "site-development"), (), "Site Development"),
    ],
    "PART D": [
        (("formwork",), (), "Formwork"),
        (("reinforc", "rebar"), (), "Reinforcing Steel"),
        (("precast",), (), "Precast Concrete"),
    ],
    "PART E": [
        (("termite",), (), "Termite Control"),
        (("plumbing", "drainage", "sewer", "water", "pipe"), (), "Plumbing Works"),
        (("door", "window"), (), "Doors and Windows"),
        (("glass", "glazing"), (), "Glass and Glazing"),
        (("tile", "tiling"), (), "Tiling Works"),
        (("floor",), (), "Flooring"),
        (("plaster",), (), "Plastering Works"),
        (("ceiling",), (), "Ceiling Works"),
        (("paint", "coating", "varnish"), (), "Painting Works"),
        (("railing",), (), "Railings"),
        (("masonry", "chb", "block"), (), "Masonry Works"),
        (("roofing",), (), "Roofing Works"),
        (("insulation",), (), "Insulation"),
        (("waterproof",), (), "Waterproofing"),
    ],
    "PART F": [
        (("electric", "wiring", "conduit"), (), "Electrical Works"),
        (("steel", "metal"), (), "Metal Works"),
    ],
}

_PART_LABEL_RE = re.compile(r"^\s*(?:part(?![a-z])\s*[-_:]?\s*)?([a-z])\s*(?::.*)?$", re.IGNORECASE)
_PREFIX_RE = re.compile(r"^\s*(\d+)")


# ---------------------------------------------------------------------------
# Label helpers
# ---------------------------------------------------------------------------

def normalize_part_label(label: Optional[str]) -> Optional[str]:
    """
    Normalize "d", "D", "PART D", "Part-D", "part:d" or "PART D: REINFORCED ..."
    to "PART D". Returns None when the label is not a recognizable part.
    """
    if not label:
        return None
    match = _PART_LABEL_RE.match(label)
    if not match:
        return None
    return f"PART {match.group(1).upper()}"


def part_name(part: str) -> str:
    return PART_NAMES.get(part, part.replace("PART ", "").strip() or "UNCLASSIFIED")


def item_number_prefix(item_number: Optional[str]) -> Optional[int]:
    """Leading integer of a pay-item number: "900 (1) a" → 900, "1046 (3)" → 1046."""
    if not item_number:
        return None
    match = _PREFIX_RE.match(item_number)
    return int(match.group(1)) if match else None


def part_for_item_number(item_number: Optional[str]) -> str:
    prefix = item_number_prefix(item_number)
    if prefix is None:
        return DEFAULT_PART
    for low, high, part in _PREFIX_RANGES:
        if low <= prefix < high:
            return part
    return DEFAULT_PART


def _subcategory(part: str, category_hint: Optional[str]) -> str:
    if not category_hint:
        return _PART_DEFAULT_SUBCATEGORY.get(part, DEFAULT_SUBCATEGORY)
    hint = category_hint.lower()
    for any_of, all_of, subcategory in _SUBCATEGORY_RULES.get(part, []):
        if any_of and any(k in hint for k in any_of):
            return subcategory
        if all_of and all(k in hint for k in all_of):
            return subcategory
    # No keyword matched: the hint itself is the subcategory
    return category_hint


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def classify(
    item_number: Optional[str],
    category_hint: Optional[str] = None,
    explicit_part: Optional[str] = None,
) -> Dict[str, str]:
    """
    Classify a pay item.

    Returns {"part": "PART X", "part_name": ..., "subcategory": ...}.
    Empty, missing or "-" item numbers resolve to PART A with the hint (or
    "Other Works") as subcategory, unless an explicit part label is given.
    """
    part = normalize_part_label(explicit_part)
    number = (item_number or "").strip()
    if part is None:
        if not number or number == "-":
            return {
                "part": DEFAULT_PART,
                "part_name": PART_NAMES[DEFAULT_PART],
                "subcategory": category_hint or DEFAULT_SUBCATEGORY,
            }
        part = part_for_item_number(number)
    return {
        "part": part,
        "part_name": part_name(part),
        "subcategory": _subcategory(part, category_hint),
    }


def part_rank(part: str) -> Tuple[int, int]:
    """
    Sort key for a part label: (0, letter index) for recognized parts,
    (1, 0) for anything else so unrecognized parts trail in input order
    under a stable sort.
    """
    normalized = normalize_part_label(part)
    if normalized is None:
        return (1, 0)
    return (0, ord(normalized[-1]) - ord("A"))


def sort_parts(parts: Iterable[str]) -> List[str]:
    """Stable ordering A, B, C, ... with unrecognized parts last."""
    return sorted(parts, key=part_rank)
