"""Catalogue of map themes and the remote layers each one composes."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from .. import settings

MAPPROD3 = "https://mapprod3.environment.nsw.gov.au/arcgis/rest/services/Planning"
PORTAL_HOSTED = "https://portal.data.nsw.gov.au/arcgis/rest/services/Hosted"
NSW_IMAGERY_URL = "https://maps.six.nsw.gov.au/arcgis/rest/services/public/NSW_Imagery/MapServer"
NSW_CADASTRE_URL = "https://maps.six.nsw.gov.au/arcgis/rest/services/public/NSW_Cadastre/MapServer"

DEFAULT_SIZE = 2048


@dataclass(frozen=True)
class VectorStyle:
    """How the features of a queried layer are painted."""

    fill: Optional[str] = None
    stroke: str = "#000000"
    width: float = 2
    dash: Optional[Tuple[int, ...]] = None
    point_radius: float = 8
    point_fill: Optional[str] = None
    point_stroke: Optional[str] = None
    color_strategy: str = "static"  # static | lookup | hash_code
    color_field: Optional[str] = None
    color_map: Optional[Mapping[str, str]] = None
    default_color: Optional[str] = None
    label_field: Optional[str] = None
    label_fill: str = "#f8d265"
    label_stroke: str = "#000000"


@dataclass(frozen=True)
class LayerConfig:
    """One remote layer: where it lives and how it is requested and drawn."""

    id: str
    kind: str  # wms | export | query | historical
    url: str
    layer_id: Optional[int] = None
    layers: Optional[str] = None
    opacity: float = 1.0
    dpi: int = 300
    format: str = "png32"
    transparent: bool = True
    bbox_sr: int = 3857
    image_sr: int = 3857
    in_sr: int = 3857
    out_sr: Optional[int] = None
    out_fields: str = "*"
    where: str = "1=1"
    response_format: str = "geojson"  # geojson | json
    timeout: Optional[float] = None
    token: Optional[str] = None  # portal | gpr | embedded
    project_layer_id: Optional[int] = None
    fallback_url: Optional[str] = None
    fallback_kind: Optional[str] = None  # wms | export
    fallback_format: str = "png32"
    fallback_transparent: bool = False
    fallback_sr: int = 102100
    feature_key: Optional[str] = None
    feature_value_field: Optional[str] = None
    property_defaults: Optional[Mapping[str, str]] = None
    dedupe_fields: Optional[Tuple[str, ...]] = None
    draw: bool = True
    style: VectorStyle = field(default_factory=VectorStyle)

    @property
    def query_url(self) -> str:
        base = self.url.rstrip("/")
        if base.endswith("/query"):
            return base
        if self.layer_id is None:
            return f"{base}/query"
        return f"{base}/{self.layer_id}/query"

    @property
    def export_url(self) -> str:
        return f"{self.url.rstrip('/')}/export"


@dataclass(frozen=True)
class LegendEntry:
    label: str
    color: str
    kind: str = "fill"  # fill | line | dashed-line | point
    stroke: Optional[str] = None


@dataclass(frozen=True)
class BoundaryStyle:
    stroke: str
    width: float
    dash: Optional[Tuple[int, ...]] = None
    label_fill: str = "rgba(255, 0, 0, 0.7)"


SITE_BOUNDARY = BoundaryStyle(stroke="#FF0000", width=6)
DEVELOPABLE_BOUNDARY = BoundaryStyle(
    stroke="#02d1b8", width=12, dash=(20, 10), label_fill="rgba(0, 255, 255, 0.7)"
)


@dataclass(frozen=True)
class ThemeConfig:
    id: str
    label: str
    layers: Tuple[LayerConfig, ...] = ()
    width: int = DEFAULT_SIZE
    height: int = DEFAULT_SIZE
    padding: float = 0.3
    base_opacity: float = 0.7
    background: Optional[str] = None
    legend_title: Optional[str] = None
    legend: Tuple[LegendEntry, ...] = ()
    legend_position: str = "bottom-right"
    draw_regularity: bool = False
    site_style: BoundaryStyle = SITE_BOUNDARY
    developable_style: BoundaryStyle = DEVELOPABLE_BOUNDARY

    def metadata(self) -> dict:
        """Return a serialisable metadata payload for clients."""
        return {
            "id": self.id,
            "label": self.label,
            "width": self.width,
            "height": self.height,
            "padding": self.padding,
            "layers": [layer.id for layer in self.layers],
            "legendTitle": self.legend_title,
            "featureKeys": [layer.feature_key for layer in self.layers if layer.feature_key],
        }


def aerial_layer() -> LayerConfig:
    """Primary Metromap WMS with the NSW imagery export as fallback."""
    return LayerConfig(
        id="aerial",
        kind="wms",
        url=settings.metromap_service_url(),
        layers="Australia_latest",
        format="image/png",
        dpi=300,
        fallback_url=NSW_IMAGERY_URL,
        fallback_kind="export",
        fallback_format="png32",
        fallback_transparent=False,
        fallback_sr=102100,
    )


def _planning_export(layer_id: str, service: str, number: int, opacity: float = 0.7, **kwargs) -> LayerConfig:
    return LayerConfig(
        id=layer_id,
        kind="export",
        url=f"{MAPPROD3}/{service}/MapServer",
        layer_id=number,
        opacity=opacity,
        bbox_sr=kwargs.pop("bbox_sr", 4283),
        image_sr=kwargs.pop("image_sr", 3857),
        **kwargs,
    )


PTAL_COLORS: Dict[str, str] = {
    "1 - Low": "rgba(255, 255, 0, 0.7)",
    "2 - Low-Medium": "rgba(255, 200, 0, 0.7)",
    "3 - Medium": "rgba(255, 150, 0, 0.7)",
    "4 - Medium-High": "rgba(255, 100, 0, 0.7)",
    "5 - High": "rgba(255, 50, 0, 0.7)",
    "6 - Very High": "rgba(255, 0, 0, 0.7)",
}
PTAL_DEFAULT_COLOR = "rgba(128, 128, 128, 0.7)"

ACID_SULFATE_LEGEND = (
    LegendEntry("Class 1", "rgba(0, 197, 255, 1)"),
    LegendEntry("Class 2", "rgba(255, 0, 197, 1)"),
    LegendEntry("Class 2b", "rgba(255, 0, 120, 1)"),
    LegendEntry("Class 3", "rgba(255, 190, 232, 1)"),
    LegendEntry("Class 4", "rgba(223, 115, 255, 1)"),
    LegendEntry("Class 5", "rgba(255, 255, 190, 1)"),
    LegendEntry("Non Standard", "rgba(110, 110, 110, 1)"),
)

BUSHFIRE_LEGEND = (
    LegendEntry("Vegetation Category 1", "#FF0000"),
    LegendEntry("Vegetation Category 2", "#FFD37F"),
    LegendEntry("Vegetation Category 3", "#FFFF00"),
    LegendEntry("Vegetation Buffer", "#FFAA00"),
)


def build_themes() -> List[ThemeConfig]:
    return [
        ThemeConfig(id="aerial", label="Aerial", padding=0.2, base_opacity=1.0),
        ThemeConfig(
            id="zoning",
            label="Land Zoning",
            padding=0.2,
            layers=(_planning_export("zoning", "EPI_Primary_Planning_Layers", 2),),
        ),
        ThemeConfig(
            id="fsr",
            label="Floor Space Ratio",
            padding=0.2,
            layers=(_planning_export("fsr", "Principal_Planning_Layers", 4),),
        ),
        ThemeConfig(
            id="hob",
            label="Height of Buildings",
            padding=0.2,
            layers=(_planning_export("hob", "Principal_Planning_Layers", 7),),
        ),
        ThemeConfig(
            id="heritage",
            label="Heritage",
            layers=(_planning_export("heritage", "EPI_Development_Control_Layers", 11, opacity=0.8),),
            legend_title="Heritage",
            legend=(LegendEntry("Heritage Item", "rgba(150, 75, 0, 0.8)"),),
        ),
        ThemeConfig(
            id="bushfire",
            label="Bushfire Prone Land",
            layers=(
                _planning_export("bushfire", "Protection", 1, opacity=0.8, bbox_sr=4283, image_sr=4283),
            ),
            legend_title="Bushfire Prone Land",
            legend=BUSHFIRE_LEGEND,
        ),
        ThemeConfig(
            id="acid_sulfate",
            label="Acid Sulfate Soils",
            layers=(_planning_export("acid_sulfate", "EPI_Planning_Layers", 10, opacity=0.8),),
            legend_title="Acid Sulfate Soil Risk",
            legend=ACID_SULFATE_LEGEND,
        ),
        ThemeConfig(
            id="contour",
            label="Contours",
            base_opacity=0.3,
            layers=(
                LayerConfig(
                    id="contour",
                    kind="export",
                    url="https://spatial.industry.nsw.gov.au/arcgis/rest/services/PUBLIC/Contours/MapServer",
                    layer_id=0,
                    bbox_sr=4283,
                    image_sr=4283,
                ),
            ),
        ),
        ThemeConfig(
            id="biodiversity",
            label="Biodiversity Values",
            layers=(
                LayerConfig(
                    id="biodiversity",
                    kind="export",
                    url="https://www.lmbc.nsw.gov.au/arcgis/rest/services/BV/BiodiversityValues/MapServer",
                    layer_id=0,
                    dpi=96,
                    opacity=0.8,
                ),
                LayerConfig(
                    id="biodiversity_features",
                    kind="query",
                    url="https://www.lmbc.nsw.gov.au/arcgis/rest/services/BV/BiodiversityValues/MapServer",
                    layer_id=0,
                    feature_key="site_suitability__biodiversityFeatures",
                    draw=False,
                ),
            ),
            legend_title="Biodiversity",
            legend=(LegendEntry("Biodiversity Values", "rgba(255, 0, 197, 0.8)"),),
        ),
        ThemeConfig(
            id="flood",
            label="Flood Extents",
            layers=(
                LayerConfig(
                    id="pmf",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/NSW_PMF_Extents/FeatureServer/0",
                    token="portal",
                    out_sr=4326,
                    feature_key="site_suitability__pmfFeatures",
                    style=VectorStyle(fill="rgba(100, 149, 237, 0.2)", stroke="rgba(100, 149, 237, 0.5)", width=2),
                ),
                LayerConfig(
                    id="flood_1aep",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/nsw_1aep_flood_extents/FeatureServer/0",
                    token="portal",
                    out_sr=4326,
                    feature_key="site_suitability__floodFeatures",
                    style=VectorStyle(fill="rgba(30, 144, 255, 0.4)", stroke="rgba(30, 144, 255, 0.8)", width=2),
                ),
            ),
            legend_title="Flood Extents",
            legend=(
                LegendEntry("1% AEP Flood Extent", "rgba(30, 144, 255, 0.4)", stroke="rgba(30, 144, 255, 0.8)"),
                LegendEntry("Probable Maximum Flood", "rgba(100, 149, 237, 0.2)", stroke="rgba(100, 149, 237, 0.5)"),
            ),
        ),
        ThemeConfig(
            id="contamination",
            label="Contaminated Land",
            layers=(
                LayerConfig(
                    id="epa_contaminated_sites",
                    kind="export",
                    url="https://maptest2.environment.nsw.gov.au/arcgis/rest/services/EPA/EPACS/MapServer",
                    layer_id=1,
                    opacity=0.8,
                ),
                LayerConfig(
                    id="epa_contaminated_sites_features",
                    kind="query",
                    url="https://maptest2.environment.nsw.gov.au/arcgis/rest/services/EPA/EPACS/MapServer",
                    layer_id=1,
                    feature_key="site_suitability__contaminationFeatures",
                    style=VectorStyle(
                        stroke="#000000",
                        point_fill="#f8d265",
                        point_stroke="#000000",
                        point_radius=10,
                        label_field="SiteName",
                    ),
                ),
                LayerConfig(
                    id="notified_sites_features",
                    kind="query",
                    url="https://mapprod2.environment.nsw.gov.au/arcgis/rest/services/EPA/Contaminated_land_notified_sites/MapServer",
                    layer_id=0,
                    feature_key="site_suitability__additionalContaminationFeatures",
                    style=VectorStyle(
                        stroke="#000000",
                        point_fill="#f8d265",
                        point_stroke="#000000",
                        point_radius=10,
                        label_field="SiteName",
                    ),
                ),
            ),
            legend_title="Contamination",
            legend=(LegendEntry("Contaminated / Notified Site", "#f8d265", kind="point", stroke="#000000"),),
        ),
        ThemeConfig(
            id="ptal",
            label="Public Transport Accessibility Level",
            layers=(
                LayerConfig(
                    id="ptal",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/ptal_dec20_gdb__(1)/FeatureServer/0",
                    token="portal",
                    out_sr=4326,
                    feature_key="ptalValues",
                    feature_value_field="ptal",
                    style=VectorStyle(
                        color_strategy="lookup",
                        color_field="ptal",
                        color_map=PTAL_COLORS,
                        default_color=PTAL_DEFAULT_COLOR,
                        width=2,
                    ),
                ),
            ),
            legend_title="PTAL Legend",
            legend=tuple(
                LegendEntry(label, PTAL_COLORS[label]) for label in sorted(PTAL_COLORS, reverse=True)
            ),
        ),
        ThemeConfig(
            id="roads",
            label="Road Network",
            base_opacity=0.3,
            layers=(
                LayerConfig(
                    id="roads",
                    kind="query",
                    url="https://portal.data.nsw.gov.au/arcgis/rest/services/RoadSegment/MapServer/0/query",
                    in_sr=4283,
                    out_sr=4283,
                    out_fields="ROADNAMEST,FUNCTION,LANECOUNT",
                    response_format="json",
                    timeout=settings.SLOW_SERVICE_TIMEOUT,
                    feature_key="site_suitability__roadFeatures",
                    dedupe_fields=("roadnamest", "function"),
                    style=VectorStyle(
                        stroke="#FF6B00",
                        width=5,
                        color_strategy="hash_code",
                        color_field="FUNCTION",
                    ),
                ),
            ),
        ),
        ThemeConfig(
            id="power",
            label="Power Infrastructure",
            padding=0.2,
            base_opacity=0.4,
            layers=(
                LayerConfig(
                    id="power",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/NSW_Electricity_Infrastructure/FeatureServer/0",
                    token="embedded",
                    project_layer_id=19976,
                    feature_key="site_suitability__powerFeatures",
                    style=VectorStyle(stroke="#FFBD33", width=4, point_fill="#FFBD33", point_stroke="#CC7A00"),
                ),
            ),
            legend_title="Power Infrastructure",
            legend_position="top-right",
            legend=(
                LegendEntry("Overhead Line", "#FFBD33", kind="line"),
                LegendEntry("Underground Line", "#FFBD33", kind="dashed-line"),
                LegendEntry("Power Point", "#FFBD33", kind="point", stroke="#CC7A00"),
            ),
        ),
        ThemeConfig(
            id="sewer",
            label="Sewer Mains",
            padding=0.2,
            layers=(
                LayerConfig(
                    id="sewer",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/NSW_Water_Sewer_Infrastructure/FeatureServer/11",
                    token="embedded",
                    project_layer_id=14112,
                    feature_key="site_suitability__sewerFeatures",
                    style=VectorStyle(stroke="#8B4513", width=4, point_fill="#8B4513", point_stroke="#603311"),
                ),
            ),
            legend_title="Sewer Infrastructure",
            legend=(
                LegendEntry("Sewer Main", "#8B4513", kind="line"),
                LegendEntry("Manhole/Pit", "#8B4513", kind="point", stroke="#603311"),
            ),
        ),
        ThemeConfig(
            id="water",
            label="Water Mains",
            padding=0.2,
            layers=(
                LayerConfig(
                    id="water",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/NSW_Water_Sewer_Infrastructure/FeatureServer/1",
                    token="embedded",
                    project_layer_id=14102,
                    feature_key="site_suitability__waterFeatures",
                    style=VectorStyle(stroke="#1E90FF", width=4, point_fill="#1E90FF", point_stroke="#0000CD"),
                ),
            ),
            legend_title="Water Infrastructure",
            legend=(
                LegendEntry("Water Main", "#1E90FF", kind="line"),
                LegendEntry("Hydrant/Valve", "#1E90FF", kind="point", stroke="#0000CD"),
            ),
        ),
        ThemeConfig(
            id="tec",
            label="Threatened Ecological Communities",
            layers=(
                LayerConfig(
                    id="tec",
                    kind="export",
                    url="https://mapprod1.environment.nsw.gov.au/arcgis/rest/services/EDP/TECs_GreaterSydney/MapServer",
                    layer_id=0,
                    opacity=0.8,
                    bbox_sr=4283,
                    image_sr=3857,
                ),
                LayerConfig(
                    id="tec_features",
                    kind="query",
                    url="https://mapprod1.environment.nsw.gov.au/arcgis/rest/services/EDP/TECs_GreaterSydney/MapServer",
                    layer_id=0,
                    in_sr=4283,
                    out_sr=4283,
                    feature_key="site_suitability__tecFeatures",
                    draw=False,
                ),
            ),
        ),
        ThemeConfig(
            id="gpr",
            label="Government Property Register",
            layers=(
                LayerConfig(
                    id="gpr",
                    kind="export",
                    url="https://arcgis.paggis.nsw.gov.au/arcgis/rest/services/GPR/GPR_shared/MapServer",
                    layer_id=2,
                    dpi=96,
                    format="png",
                    opacity=0.8,
                    bbox_sr=4283,
                    image_sr=3857,
                    token="gpr",
                ),
                LayerConfig(
                    id="gpr_features",
                    kind="query",
                    url="https://arcgis.paggis.nsw.gov.au/arcgis/rest/services/GPR/GPR_shared/MapServer",
                    layer_id=2,
                    in_sr=4283,
                    out_sr=4283,
                    out_fields="AGENCY_NAME,PROPERTY_NAME,PRIMARY_USE_TYPE,IMPROVEMENTS,OBJECTID",
                    token="gpr",
                    feature_key="site_suitability__gprFeatures",
                    property_defaults={
                        "AGENCY_NAME": "Unknown Agency",
                        "PROPERTY_NAME": "Unnamed Property",
                        "PRIMARY_USE_TYPE": "Unknown Use",
                        "IMPROVEMENTS": "No improvements data",
                    },
                    draw=False,
                ),
            ),
        ),
        ThemeConfig(
            id="geoscape",
            label="Building Footprints",
            layers=(
                LayerConfig(
                    id="geoscape_buildings",
                    kind="query",
                    url=f"{PORTAL_HOSTED}/BLDS_Mar24_Geoscape/FeatureServer/0",
                    token="embedded",
                    project_layer_id=20976,
                    feature_key="site_suitability__geoscapeFeatures",
                    style=VectorStyle(fill="rgba(255, 165, 0, 0.6)", stroke="rgba(204, 122, 0, 0.9)", width=2),
                ),
            ),
            legend_title="Buildings",
            legend=(LegendEntry("Building Footprint", "rgba(255, 165, 0, 0.6)"),),
        ),
        ThemeConfig(
            id="regularity",
            label="Site Regularity",
            padding=0.2,
            layers=(
                LayerConfig(
                    id="cadastre",
                    kind="export",
                    url=NSW_CADASTRE_URL,
                    layer_id=9,
                    opacity=0.8,
                ),
            ),
            draw_regularity=True,
        ),
        ThemeConfig(
            id="historical",
            label="Historical Imagery",
            padding=0.2,
            base_opacity=0.0,
            background="#FFFFFF",
            layers=(
                LayerConfig(
                    id="historical_imagery",
                    kind="historical",
                    url=settings.metromap_service_url(),
                    format="image/png",
                    feature_key="historical_imagery__year",
                ),
            ),
        ),
    ]


THEMES: List[ThemeConfig] = build_themes()
THEME_MAP: Dict[str, ThemeConfig] = {theme.id: theme for theme in THEMES}


def get_theme(theme_id: str) -> ThemeConfig:
    try:
        return THEME_MAP[theme_id.strip().lower()]
    except KeyError:
        raise KeyError(f"Unknown theme '{theme_id}'") from None


def list_themes() -> List[dict]:
    return [theme.metadata() for theme in THEMES]
