from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ScreenshotRequest(BaseModel):
    site: Optional[Dict[str, Any]] = None
    developableArea: Optional[Dict[str, Any]] = None
    useDevelopableAreaForBounds: bool = False
    showLabels: bool = False
    # Host platform project layers, keyed by id or listed with a "layer" field.
    layerTree: Optional[Any] = None

    @field_validator("site", "developableArea")
    @classmethod
    def check_geojson(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is None:
            return value
        if value.get("type") not in ("Feature", "FeatureCollection"):
            raise ValueError("must be a GeoJSON Feature or FeatureCollection")
        return value


class ReportRequest(ScreenshotRequest):
    themes: List[str] = Field(..., min_length=1, max_length=25)


class ScreenshotResponse(BaseModel):
    theme: str
    image: Optional[str] = None
    features: Dict[str, Any] = Field(default_factory=dict)
    siteProperties: Dict[str, Any] = Field(default_factory=dict)


class ReportResponse(BaseModel):
    results: List[ScreenshotResponse]
    siteProperties: Dict[str, Any] = Field(default_factory=dict)


class ThemeInfo(BaseModel):
    id: str
    label: str
    width: int
    height: int
    padding: float
    layers: List[str]
    legendTitle: Optional[str] = None
    featureKeys: List[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="allow")


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None
    request_id: Optional[str] = None


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: Optional[str] = None
