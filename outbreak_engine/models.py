"""Data models for crop disease sighting reports and derived outbreak data

Reports enter the system as untrusted diagnosis payloads and are validated into
strict pydantic models before anything is persisted.
"""

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)


class Severity(str, Enum):
    """Severity reported by the diagnosis collaborator"""
    MILD = "Mild"
    MODERATE = "Moderate"
    SEVERE = "Severe"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class ReportValidationError(ValueError):
    """Raised when a diagnosis payload cannot be turned into a Report"""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class ReportNotFoundError(KeyError):
    """Raised when a report id is unknown"""


class ReportOwnershipError(PermissionError):
    """Raised when someone other than the submitter tries to resolve a report"""


def normalize_key(value: Optional[str]) -> str:
    """Normalize free text into a grouping key (trimmed, lowercase)"""
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def combo_key(region: str, crop: str, disease: str) -> str:
    """Build the "region|crop|diseaseKey" key of a regional counter"""
    return "|".join(normalize_key(part) for part in (region, crop, disease))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ViewerLocation(BaseModel):
    """Geographic location of a viewer"""
    lat: float = Field(..., ge=-90.0, le=90.0)
    lon: float = Field(..., ge=-180.0, le=180.0)


class DiagnosisEvent(BaseModel):
    """A completed diagnosis as produced by the diagnosis collaborator"""
    model_config = ConfigDict(extra="ignore")

    disease: str
    crop: str
    severity: Severity
    region: str
    lat: Optional[float] = None
    lon: Optional[float] = None

    @field_validator("disease", "crop", "region", mode="before")
    @classmethod
    def _require_text(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("must be a non-empty string")
        return value.strip()

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().capitalize()
        return value

    @field_validator("lat", "lon", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any, info) -> Optional[float]:
        # Malformed coordinates only cost the report its geotag
        if value is None or value == "" or isinstance(value, bool):
            return None
        try:
            coordinate = float(value)
        except (TypeError, ValueError):
            logger.warning(f"Dropping malformed {info.field_name}={value!r}")
            return None

        limit = 90.0 if info.field_name == "lat" else 180.0
        if not math.isfinite(coordinate) or abs(coordinate) > limit:
            logger.warning(f"Dropping out-of-range {info.field_name}={value!r}")
            return None
        return coordinate

    @model_validator(mode="after")
    def _pair_coordinates(self) -> "DiagnosisEvent":
        if (self.lat is None) != (self.lon is None):
            self.lat = None
            self.lon = None
        return self


def validate_diagnosis(payload: Union[DiagnosisEvent, Dict[str, Any]]) -> DiagnosisEvent:
    """Validate a raw diagnosis payload

    Raises:
        ReportValidationError: when required fields are missing or invalid
    """
    if isinstance(payload, DiagnosisEvent):
        return payload
    if not isinstance(payload, dict):
        raise ReportValidationError(f"Diagnosis payload must be a mapping, got {type(payload).__name__}")

    try:
        return DiagnosisEvent.model_validate(payload)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        raise ReportValidationError(
            f"Invalid diagnosis payload: {', '.join(fields) or 'unknown fields'}",
            errors=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()],
        ) from e


class Report(BaseModel):
    """A geotagged (or not) disease sighting"""
    id: str
    disease: str
    disease_key: str
    crop: str
    severity: Severity
    region: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    created_at: datetime = Field(default_factory=utc_now)
    resolved: bool = False
    owner_id: Optional[str] = None

    @property
    def is_geotagged(self) -> bool:
        return self.lat is not None and self.lon is not None

    @property
    def is_active(self) -> bool:
        return not self.resolved

    @classmethod
    def from_event(cls, event: DiagnosisEvent, report_id: str,
                   owner_id: Optional[str] = None,
                   created_at: Optional[datetime] = None) -> "Report":
        return cls(
            id=report_id,
            disease=event.disease,
            disease_key=normalize_key(event.disease),
            crop=event.crop,
            severity=event.severity,
            region=event.region,
            lat=event.lat,
            lon=event.lon,
            created_at=created_at or utc_now(),
            owner_id=owner_id,
        )


class ProneAlert(BaseModel):
    """Regional saturation alert for a (region, crop, disease) combination"""
    id: Optional[str] = None
    combo_key: str
    region: str
    crop: str
    disease: str
    count: int
    timestamp: datetime = Field(default_factory=utc_now)


class OutbreakCluster(BaseModel):
    """Active reports sharing a disease and a coarse location cell"""
    cluster_key: str
    disease_key: str
    disease: str
    crops: List[str] = Field(default_factory=list)
    region: str
    lat: float
    lon: float
    count: int
    severity: Severity
    report_ids: List[str] = Field(default_factory=list)


class GlobalTrackerEntry(BaseModel):
    """Active reports of one disease across every region"""
    disease_key: str
    disease: str
    count: int
    crops: List[str] = Field(default_factory=list)
    regions: List[str] = Field(default_factory=list)
