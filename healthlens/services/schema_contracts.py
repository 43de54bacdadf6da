"""
Response schemas passed to Gemini structured-output mode (response_schema), one per
analysis kind. The model follows them most of the time, not always, so each contract can
also check a parsed payload and report what is off. Problems are reported, not raised;
the gateway defaults every field regardless.
"""
import copy
import logging
from dataclasses import dataclass
from typing import Any, Mapping, get_args

from healthlens.schemas.analysis import (
    AlertCategory,
    BotAction,
    FacilityType,
    Likelihood,
    RiskLevel,
    Severity,
    Trend,
    Urgency,
)

logger = logging.getLogger(__name__)

FACILITY_TYPES: tuple[str, ...] = get_args(FacilityType)
TRENDS: tuple[str, ...] = get_args(Trend)
ALERT_CATEGORIES: tuple[str, ...] = get_args(AlertCategory)
SEVERITIES: tuple[str, ...] = get_args(Severity)
RISK_LEVELS: tuple[str, ...] = get_args(RiskLevel)
LIKELIHOODS: tuple[str, ...] = get_args(Likelihood)
URGENCIES: tuple[str, ...] = get_args(Urgency)
BOT_ACTIONS: tuple[str, ...] = get_args(BotAction)


@dataclass(frozen=True)
class SchemaContract:
    name: str
    version: str
    definition: Mapping[str, Any]

    @property
    def cache_prefix(self) -> str:
        return f"{self.name}:{self.version}"

    def response_schema(self) -> dict:
        """Fresh copy for GenerateContentConfig(response_schema=...)."""
        return copy.deepcopy(dict(self.definition))

    def validate(self, payload: Any) -> list[str]:
        return _check(self.definition, payload, "$")

    def report(self, payload: Any) -> None:
        problems = self.validate(payload)
        if problems:
            logger.warning(
                "%s response deviates from schema (%s problems): %s",
                self.name, len(problems), "; ".join(problems[:5]),
            )


def _check(schema: Mapping[str, Any], value: Any, path: str) -> list[str]:
    kind = schema.get("type")
    if kind == "OBJECT":
        if not isinstance(value, dict):
            return [f"{path}: expected object"]
        problems = [f"{path}.{f}: missing" for f in schema.get("required", []) if value.get(f) is None]
        for field, sub in schema.get("properties", {}).items():
            if value.get(field) is not None:
                problems.extend(_check(sub, value[field], f"{path}.{field}"))
        return problems
    if kind == "ARRAY":
        if not isinstance(value, list):
            return [f"{path}: expected array"]
        problems = []
        for i, item in enumerate(value):
            problems.extend(_check(schema.get("items", {}), item, f"{path}[{i}]"))
        return problems
    if kind == "STRING":
        if not isinstance(value, str):
            return [f"{path}: expected string, got {type(value).__name__}"]
        if "enum" in schema and value not in schema["enum"]:
            return [f"{path}: {value!r} not in {list(schema['enum'])}"]
        return []
    if kind == "NUMBER":
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return [f"{path}: expected number"]
        return []
    return []


def _string(enum: tuple[str, ...] | None = None) -> dict:
    out: dict[str, Any] = {"type": "STRING"}
    if enum:
        out["enum"] = list(enum)
    return out


def _string_list() -> dict:
    return {"type": "ARRAY", "items": _string()}


def _obj(properties: dict, required: list[str] | None = None) -> dict:
    return {"type": "OBJECT", "properties": properties, "required": required if required is not None else list(properties)}


def _array(items: dict) -> dict:
    return {"type": "ARRAY", "items": items}


_SOURCE = _obj({"uri": _string(), "title": _string()})

LOCATION_ANALYSIS = SchemaContract(
    name="loc",
    version="v5",
    definition=_obj({
        "locationName": _string(),
        "hazards": _array(_obj({"hazard": _string(), "description": _string()})),
        "diseases": _array(_obj({"name": _string(), "cause": _string(), "precautions": _string_list()})),
        "summary": _string(),
    }),
)

GEOCODE = SchemaContract(
    name="geocode",
    version="v2",
    definition=_obj({"lat": {"type": "NUMBER"}, "lng": {"type": "NUMBER"}, "foundLocationName": _string()}),
)

FACILITIES = SchemaContract(
    name="hospitals",
    version="v6",
    definition=_array(_obj(
        {
            "name": _string(),
            "type": _string(FACILITY_TYPES),
            "lat": {"type": "NUMBER"},
            "lng": {"type": "NUMBER"},
            "url": _string(),
        },
        ["name", "type", "lat", "lng"],
    )),
)

CITY_SNAPSHOT = SchemaContract(
    name="city",
    version="v3",
    definition=_obj({
        "cityName": _string(),
        "country": _string(),
        "lastUpdated": _string(),
        "overallSummary": _string(),
        "diseases": _array(_obj({
            "name": _string(),
            "summary": _string(),
            "reportedCases": _string(),
            "affectedDemographics": _string(),
            "trend": _string(TRENDS),
        })),
        "dataDisclaimer": _string(),
        "sources": _array(_SOURCE),
    }),
)

MENTAL_HEALTH = SchemaContract(
    name="mental",
    version="v1",
    definition=_obj({
        "summary": _string(),
        "potentialConcerns": _array(_obj({"name": _string(), "explanation": _string()})),
        "copingStrategies": _array(_obj({"title": _string(), "description": _string()})),
        "recommendation": _string(),
    }),
)

PRESCRIPTION = SchemaContract(
    name="prescription",
    version="v1",
    definition=_obj(
        {
            "summary": _string(),
            "medicines": _array(_obj({"name": _string(), "dosage": _string(), "purpose": _string()}, ["name"])),
            "precautions": _string_list(),
            "videos": _array(_obj({"title": _string(), "url": _string()})),
        },
        ["summary", "medicines", "precautions"],
    ),
)

HEALTH_FORECAST = SchemaContract(
    name="forecast",
    version="v2",
    definition=_obj(
        {
            "locationName": _string(),
            "summary": _string(),
            "airQuality": _string(),
            "uvIndex": _string(),
            "weather": _string(),
            "risks": _array(_obj({"name": _string(), "level": _string(RISK_LEVELS), "advice": _string()})),
            "recommendations": _string_list(),
        },
        ["locationName", "summary", "risks", "recommendations"],
    ),
)

ALERTS = SchemaContract(
    name="alerts",
    version="v2",
    definition=_array(_obj(
        {
            "title": _string(),
            "summary": _string(),
            "location": _string(),
            "category": _string(ALERT_CATEGORIES),
            "severity": _string(SEVERITIES),
            "date": _string(),
            "source": _SOURCE,
        },
        ["title", "summary", "category", "severity"],
    )),
)

SYMPTOMS = SchemaContract(
    name="symptoms",
    version="v1",
    definition=_obj({
        "summary": _string(),
        "possibleConditions": _array(_obj({
            "name": _string(),
            "likelihood": _string(LIKELIHOODS),
            "description": _string(),
        })),
        "recommendedActions": _string_list(),
        "urgency": _string(URGENCIES),
        "disclaimer": _string(),
    }),
)

BOT_COMMAND = SchemaContract(
    name="bot",
    version="v1",
    definition=_obj(
        {"action": _string(BOT_ACTIONS), "page": _string(), "responseText": _string()},
        ["action", "responseText"],
    ),
)
