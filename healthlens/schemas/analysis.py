from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

FacilityType = Literal["Hospital", "Clinic", "Pharmacy"]
Trend = Literal["Increasing", "Stable", "Decreasing", "Unknown"]
AlertCategory = Literal["Disease Outbreak", "Environmental", "Weather", "Public Advisory", "Other"]
Severity = Literal["Low", "Medium", "High", "Critical"]
RiskLevel = Literal["Low", "Moderate", "High"]
Likelihood = Literal["Low", "Medium", "High"]
Urgency = Literal["Self-care", "Consult a doctor", "Emergency"]
BotAction = Literal["navigate", "speak"]


class ApiModel(BaseModel):
    """camelCase on the wire (browser client), snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---- Location / image hazard analysis ----

class Hazard(ApiModel):
    hazard: str
    description: str = ""


class Disease(ApiModel):
    name: str
    cause: str = ""
    precautions: list[str] = []


class LocationAnalysis(ApiModel):
    location_name: str
    hazards: list[Hazard] = []
    diseases: list[Disease] = []
    summary: str = ""


class LocationReport(ApiModel):
    analysis: LocationAnalysis
    illustrative_image: str | None = Field(None, description="data: URL of a synthetic view; absent if generation failed")


# ---- Prescription ----

class Medicine(ApiModel):
    name: str
    dosage: str = ""
    purpose: str = ""


class Video(ApiModel):
    title: str
    url: str


class PrescriptionAnalysis(ApiModel):
    summary: str = ""
    medicines: list[Medicine] = []
    precautions: list[str] = []
    videos: list[Video] = []


# ---- Mental health ----

class Concern(ApiModel):
    name: str
    explanation: str = ""


class CopingStrategy(ApiModel):
    title: str
    description: str = ""


class MentalHealthResult(ApiModel):
    summary: str = ""
    potential_concerns: list[Concern] = []
    coping_strategies: list[CopingStrategy] = []
    recommendation: str = ""


# ---- Symptoms ----

class PossibleCondition(ApiModel):
    name: str
    likelihood: Likelihood = "Low"
    description: str = ""


class SymptomAnalysis(ApiModel):
    summary: str = ""
    possible_conditions: list[PossibleCondition] = []
    recommended_actions: list[str] = []
    urgency: Urgency = "Consult a doctor"
    disclaimer: str = ""


# ---- City snapshot / forecast / alerts ----

class Source(ApiModel):
    uri: str
    title: str = ""


class SnapshotDisease(ApiModel):
    name: str
    summary: str = ""
    reported_cases: str = ""
    affected_demographics: str = ""
    trend: Trend = "Unknown"


class CityHealthSnapshot(ApiModel):
    city_name: str
    country: str = ""
    last_updated: str = ""
    overall_summary: str = ""
    diseases: list[SnapshotDisease] = []
    data_disclaimer: str = ""
    sources: list[Source] = []


class ForecastRisk(ApiModel):
    name: str
    level: RiskLevel = "Low"
    advice: str = ""


class HealthForecast(ApiModel):
    location_name: str
    summary: str = ""
    air_quality: str = ""
    uv_index: str = ""
    weather: str = ""
    risks: list[ForecastRisk] = []
    recommendations: list[str] = []


class Alert(ApiModel):
    title: str
    summary: str = ""
    location: str = ""
    category: AlertCategory = "Other"
    severity: Severity = "Medium"
    date: str = ""
    source: Source | None = None


# ---- Chat bot / geocoding / facilities ----

class BotCommand(ApiModel):
    action: BotAction
    page: str | None = None  # set only when action == "navigate"
    response_text: str


class GeocodeResult(ApiModel):
    lat: float
    lng: float
    resolved_name: str


class Facility(ApiModel):
    name: str
    type: FacilityType
    lat: float
    lng: float
    url: str | None = None
    distance: str | None = None  # "850 m" / "2.4 km", computed locally
    distance_km: float | None = None


# ---- Request bodies ----

class CoordinatesRequest(ApiModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class LocationRequest(CoordinatesRequest):
    language: str = "English"
    known_name: str | None = Field(None, max_length=200)


class ForecastRequest(CoordinatesRequest):
    language: str = "English"


class MentalHealthRequest(ApiModel):
    answers: dict[str, str] = Field(..., min_length=1)
    language: str = "English"


class SymptomsRequest(ApiModel):
    symptoms: str = Field(..., min_length=1, max_length=4000)
    language: str = "English"


class BotCommandRequest(ApiModel):
    message: str = Field(..., min_length=1, max_length=2000)
    language: str = "English"
    available_pages: list[str] = []
