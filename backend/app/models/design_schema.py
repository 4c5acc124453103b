"""
Design snapshot schema — the frozen, quantity-producing design state carried by
a takeoff version.

Each design-data category (grid, levels, structural elements, finishes,
roofing, schedule items) is its own strict model so a category can gain fields
without touching the others. Boundaries are tagged unions keyed on `type`.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ── Grid / levels ─────────────────────────────────────────────────────────────

class GridLine(_Strict):
    label: str
    offset: float = Field(..., description="Distance from grid origin in metres")


class GridSnapshot(_Strict):
    x_lines: List[GridLine] = Field(default_factory=list)
    y_lines: List[GridLine] = Field(default_factory=list)


class Level(_Strict):
    label: str
    elevation: float = Field(..., description="Elevation in metres")


# ── Structural elements ───────────────────────────────────────────────────────

class BarSpec(_Strict):
    count: Optional[int] = None
    diameter: Optional[float] = None
    spacing: Optional[float] = None


class RebarConfig(_Strict):
    main_bars: Optional[BarSpec] = None
    stirrups: Optional[BarSpec] = None
    secondary_bars: Optional[BarSpec] = None
    dpwh_rebar_item: Optional[str] = None


class ElementTemplate(_Strict):
    id: str
    type: Literal["beam", "slab", "column", "foundation"]
    name: str
    properties: Dict[str, float] = Field(default_factory=dict)
    dpwh_item_number: Optional[str] = None
    rebar_config: Optional[RebarConfig] = None


class Placement(_Strict):
    grid_ref: List[str] = Field(default_factory=list)
    level_id: str
    end_level_id: Optional[str] = None
    custom_geometry: Dict[str, float] = Field(default_factory=dict)


class ElementInstance(_Strict):
    id: str
    template_id: str
    placement: Placement
    tags: List[str] = Field(default_factory=list)


# ── Finishing works ───────────────────────────────────────────────────────────

class GridRectBoundary(_Strict):
    type: Literal["gridRect"] = "gridRect"
    grid_x: List[str] = Field(..., min_length=2, max_length=2)
    grid_y: List[str] = Field(..., min_length=2, max_length=2)


class PolygonBoundary(_Strict):
    type: Literal["polygon"] = "polygon"
    points: List[List[float]] = Field(..., min_length=3)


Boundary = Annotated[Union[GridRectBoundary, PolygonBoundary], Field(discriminator="type")]


class Space(_Strict):
    id: str
    name: str
    level_id: str
    boundary: Boundary
    area_m2: float = 0.0
    perimeter_m: float = 0.0
    tags: List[str] = Field(default_factory=list)


class Opening(_Strict):
    id: str
    level_id: str
    space_id: Optional[str] = None
    wall_surface_id: Optional[str] = None
    type: Literal["door", "window", "vent", "louver", "other"]
    width_m: float
    height_m: float
    qty: int = 1
    tags: List[str] = Field(default_factory=list)


class FinishType(_Strict):
    id: str
    category: Literal["floor", "wall", "ceiling", "plaster", "paint"]
    finish_name: str
    dpwh_item_number: str
    unit: str
    waste_percent: Optional[float] = None
    notes: Optional[str] = None


class SpaceFinishAssignment(_Strict):
    id: str
    space_id: str
    finish_type_id: str
    scope: str
    height_m: Optional[float] = None
    waste_percent: Optional[float] = None


class WallSurface(_Strict):
    id: str
    name: str
    grid_axis: Literal["X", "Y"]
    grid_label: str
    span: List[str] = Field(..., min_length=2, max_length=2)
    level_start: str
    level_end: str
    surface_type: Literal["exterior", "interior", "both"]
    facing: Optional[Literal["north", "south", "east", "west"]] = None
    tags: List[str] = Field(default_factory=list)


class WallSurfaceFinishAssignment(_Strict):
    id: str
    wall_surface_id: str
    finish_type_id: str
    scope: str
    side: Optional[Literal["single", "both"]] = None
    waste_percent: Optional[float] = None


# ── Roofing ───────────────────────────────────────────────────────────────────

class SectionSpec(_Strict):
    section: str
    weight_kg_per_m: float


class TrussDesign(_Strict):
    truss_type: Literal["howe", "fink", "kingpost"]
    span_mm: float
    middle_rise_mm: float
    overhang_mm: float = 0.0
    spacing_mm: float
    vertical_web_count: int = 0
    top_chord: SectionSpec
    bottom_chord: SectionSpec
    web: SectionSpec
    building_length_mm: float
    purlin_spacing_mm: Optional[float] = None
    purlin: Optional[SectionSpec] = None
    dpwh_item_mappings: Dict[str, str] = Field(default_factory=dict)


class RoofType(_Strict):
    id: str
    name: str
    dpwh_item_number: str
    unit: str = "Square Meter"
    area_basis: Literal["slopeArea", "planArea"] = "slopeArea"
    lap_allowance_percent: float = 0.0
    waste_percent: float = 0.0


class RoofSlope(_Strict):
    mode: Literal["ratio", "degrees"]
    value: float


class RoofPlane(_Strict):
    id: str
    name: str
    level_id: str
    boundary: Boundary
    slope: RoofSlope
    roof_type_id: str
    tags: List[str] = Field(default_factory=list)


# ── Schedule items ────────────────────────────────────────────────────────────

class ScheduleItem(_Strict):
    id: str
    category: str = Field(..., description="e.g. doors, plumbing, earthworks-excavation")
    dpwh_item_number: str
    description_override: Optional[str] = None
    unit: str
    qty: float = Field(..., ge=0)
    tags: List[str] = Field(default_factory=list)


# ── Whole snapshot ────────────────────────────────────────────────────────────

class DesignSnapshot(_Strict):
    """Every category a takeoff version freezes. Missing categories are empty."""
    grid: GridSnapshot = Field(default_factory=GridSnapshot)
    levels: List[Level] = Field(default_factory=list)
    element_templates: List[ElementTemplate] = Field(default_factory=list)
    element_instances: List[ElementInstance] = Field(default_factory=list)
    spaces: List[Space] = Field(default_factory=list)
    openings: List[Opening] = Field(default_factory=list)
    finish_types: List[FinishType] = Field(default_factory=list)
    space_finish_assignments: List[SpaceFinishAssignment] = Field(default_factory=list)
    wall_surfaces: List[WallSurface] = Field(default_factory=list)
    wall_surface_finish_assignments: List[WallSurfaceFinishAssignment] = Field(default_factory=list)
    truss_design: Optional[TrussDesign] = None
    roof_types: List[RoofType] = Field(default_factory=list)
    roof_planes: List[RoofPlane] = Field(default_factory=list)
    schedule_items: List[ScheduleItem] = Field(default_factory=list)


# Column name on TakeoffVersion for each snapshot category
SNAPSHOT_FIELDS: List[str] = list(DesignSnapshot.model_fields.keys())


def snapshot_to_columns(snapshot: DesignSnapshot) -> Dict[str, Any]:
    """JSON-ready column values, one per category."""
    return snapshot.model_dump(mode="json")
