"""
Analysis Gateway: every Gemini-backed analysis the app offers.
Each operation: cache lookup -> one or more provider calls (each through call_with_retry)
-> tolerant JSON parse -> sanitized, defaulted record -> cache write when the reply parsed.
Grounded operations (facilities, alerts, city snapshot) call twice: a Search/Maps grounded
call first, then a structured-output call that turns its text + grounding chunks into JSON.
Grounded responses cannot be schema constrained, hence the second call.
"""
import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from google.genai import types
from pydantic import BaseModel, TypeAdapter, ValidationError

from healthlens.config import Settings, get_settings
from healthlens.schemas.analysis import (
    Alert,
    BotCommand,
    CityHealthSnapshot,
    Concern,
    CopingStrategy,
    Disease,
    Facility,
    ForecastRisk,
    GeocodeResult,
    Hazard,
    HealthForecast,
    LocationAnalysis,
    LocationReport,
    Medicine,
    MentalHealthResult,
    PossibleCondition,
    PrescriptionAnalysis,
    SnapshotDisease,
    Source,
    SymptomAnalysis,
    Video,
)
from healthlens.services import schema_contracts as contracts
from healthlens.services.analysis_cache import AnalysisCache, MemoryAnalysisCache, cache_key
from healthlens.services.genai_client import first_inline_image, grounding_chunks, grounding_json, response_text
from healthlens.services.geo import rank_facilities
from healthlens.services.retry import call_with_retry
from healthlens.services.sanitizer import (
    enum_field,
    number_field,
    object_list,
    parse_json_reply,
    string_list,
    text_field,
    to_display_string,
)

logger = logging.getLogger(__name__)

DEFAULT_FACILITY_NAME = "Medical Center"
BOT_FALLBACK_REPLY = "Sorry, I couldn't understand that. Could you rephrase?"
NO_SUMMARY = "No summary available."

HAZARD_IMAGE_PROMPT = """Perform an environmental health hazard analysis of this photo.
Identify visible hazards (standing water, waste, smoke, mould, contamination, pests and similar),
the diseases they can cause with their cause and precautions, and a short overall summary.
Use locationName for a short description of the scene. Respond in {language}. Return JSON."""

LOCATION_PROMPT = """Perform an environmental health analysis for coordinates {lat}, {lng} (Context: {context}).
List the main environmental hazards of the area, the diseases commonly associated with them
(cause and precautions for each) and a short summary. locationName must be a plain place name.
Respond in {language}. Return JSON."""

ILLUSTRATION_PROMPT = "Synthetic satellite view of the biome at latitude {lat}, longitude {lng}. High detail."

FACILITY_SEARCH_PROMPT = """I need a list of the 10 nearest verified medical facilities (Hospitals, Clinics, or Pharmacies)
near GPS {lat}, {lng}. Use the Maps tool. For each, provide its official name, type, and exact coordinates."""

FACILITY_STRUCTURE_PROMPT = """Extract verified medical facilities into a JSON array.
Use the provided grounding data: {chunks}. Source: "{source}"
Each item: name (plain string), type (Hospital, Clinic or Pharmacy), lat, lng and url if known."""

PRESCRIPTION_PROMPT = """Read this prescription. Extract every medicine with its dosage and purpose,
general precautions, and up to 3 helpful educational video links (title, url) about the medicines.
Write a short plain-language summary. Respond in {language}. Return JSON."""

MENTAL_HEALTH_PROMPT = """Perform a supportive mental wellness reflection based on these check-in answers:
{answers}
Summarize, list potential concerns (name and explanation), practical coping strategies and one
recommendation. This is not a diagnosis; be gentle and non-judgemental. Respond in {language}. Return JSON."""

SYMPTOM_PROMPT = """Analyze these symptoms: "{symptoms}".
Give a summary, possible conditions with likelihood (Low, Medium, High), recommended actions,
an urgency level (Self-care, Consult a doctor, Emergency) and a short disclaimer that this is not
medical advice. Respond in {language}. Return JSON."""

GEOCODE_PROMPT = 'Geocode "{query}". Return JSON with lat, lng and foundLocationName (plain place name).'

SNAPSHOT_SEARCH_PROMPT = """Health snapshot for {city}, {country}: current disease activity, reported cases,
affected demographics and trends, with sources. Use Google Search."""

SNAPSHOT_STRUCTURE_PROMPT = """Structure into CityHealthSnapshot JSON. Source: "{source}".
Grounding sources: {chunks}. Ensure cityName is "{city}" and country is "{country}".
trend must be one of Increasing, Stable, Decreasing, Unknown. Respond in {language}."""

FORECAST_PROMPT = """Health briefing for coordinates {lat}, {lng}: air quality, UV index, weather,
seasonal health risks (name, level Low/Moderate/High, advice) and recommendations for today.
locationName must be a plain place name. Respond in {language}. Return JSON."""

LIVE_ALERTS_SEARCH_PROMPT = "Find 8 current global health alerts (outbreaks, environmental and public advisories). Use Google Search."

LOCAL_ALERTS_SEARCH_PROMPT = "Find current local health alerts near GPS {lat}, {lng} (outbreaks, air and water quality, weather, advisories). Use Google Search."

ALERTS_STRUCTURE_PROMPT = """Structure into a JSON Alert array: "{source}".
Grounding sources: {chunks}. category: Disease Outbreak, Environmental, Weather, Public Advisory or Other.
severity: Low, Medium, High or Critical. Respond in {language}."""

BOT_SYSTEM_INSTRUCTION = """Assistant mode for a health app. Pages: [{pages}].
If the user wants to open a page, answer with action "navigate" and page set to one of the pages.
Otherwise answer with action "speak". responseText is a short spoken reply in {language}. JSON only."""

_FACILITY_LIST = TypeAdapter(list[Facility])
_ALERT_LIST = TypeAdapter(list[Alert])


class AnalysisGateway:
    """
    Holds the Gemini client and the cache. Construct once per process
    (see main.lifespan) and share; the cache is the only mutable state.
    """

    def __init__(
        self,
        client: Any,
        cache: AnalysisCache | None = None,
        settings: Settings | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._client = client
        self._cache = cache if cache is not None else MemoryAnalysisCache()
        self._settings = settings or get_settings()
        self._sleep = sleep

    @property
    def cache(self) -> AnalysisCache:
        return self._cache

    # ---- Plumbing ----

    async def _generate(self, *, model: str, contents: Any, config: types.GenerateContentConfig | None = None) -> Any:
        async def _call():
            return await self._client.aio.models.generate_content(model=model, contents=contents, config=config)

        return await call_with_retry(
            _call,
            self._settings.ai_retry_max_attempts,
            self._settings.ai_retry_initial_delay_ms,
            jitter=self._settings.ai_retry_jitter,
            sleep=self._sleep,
        )

    @staticmethod
    def _json_config(
        contract: contracts.SchemaContract, system_instruction: str | None = None
    ) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            system_instruction=system_instruction,
            response_mime_type="application/json",
            response_schema=contract.response_schema(),
        )

    @staticmethod
    def _search_config() -> types.GenerateContentConfig:
        return types.GenerateContentConfig(tools=[types.Tool(google_search=types.GoogleSearch())])

    @staticmethod
    def _maps_config(lat: float, lng: float) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            tools=[types.Tool(google_maps=types.GoogleMaps())],
            tool_config=types.ToolConfig(
                retrieval_config=types.RetrievalConfig(lat_lng=types.LatLng(latitude=lat, longitude=lng))
            ),
        )

    async def _structured(
        self, prompt: Any, contract: contracts.SchemaContract, default: Any, **kwargs
    ) -> tuple[Any, bool]:
        """One structured-output call; returns (JSON shaped like default, whether the reply parsed)."""
        model = kwargs.pop("model", self._settings.gemini_model)
        response = await self._generate(model=model, contents=prompt, config=self._json_config(contract, **kwargs))
        data, parsed = parse_json_reply(response_text(response), default)
        if parsed:
            contract.report(data)
        return data, parsed

    async def _grounded_then_structured(
        self,
        search_prompt: str,
        search_config: types.GenerateContentConfig,
        build_structure_prompt: Callable[[str, str], str],
        contract: contracts.SchemaContract,
        default: Any,
        search_model: str | None = None,
    ) -> tuple[Any, list, bool]:
        """Grounded call, then a structured call over its text and grounding chunks."""
        search = await self._generate(
            model=search_model or self._settings.gemini_model, contents=search_prompt, config=search_config
        )
        chunks = grounding_chunks(search)
        prompt = build_structure_prompt(response_text(search), grounding_json(search))
        data, parsed = await self._structured(prompt, contract, default)
        return data, chunks, parsed

    async def _cached(self, key: str, model: type[BaseModel] | TypeAdapter) -> Any | None:
        raw = await self._cache.get(key)
        if raw is None:
            return None
        try:
            if isinstance(model, TypeAdapter):
                return model.validate_python(raw)
            return model.model_validate(raw)
        except ValidationError as e:
            logger.warning("Discarding cached %s with outdated shape: %s", key, e.error_count())
            return None

    async def _store(self, key: str, value: BaseModel | list, ttl_minutes: int, parsed: bool = True) -> None:
        """Cache a result built from a real reply; defaults built from an unparseable one are not kept."""
        if not parsed:
            logger.info("Not caching %s: built from an unparseable model reply", key)
            return
        if isinstance(value, list):
            snapshot = [v.model_dump(mode="json") for v in value]
        else:
            snapshot = value.model_dump(mode="json")
        await self._cache.set(key, snapshot, ttl_minutes)

    # ---- Image based (no cache, no grounding) ----

    async def analyze_image(self, image_bytes: bytes, language: str = "English", mime_type: str = "image/jpeg") -> LocationAnalysis:
        contents = [
            types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            types.Part.from_text(text=HAZARD_IMAGE_PROMPT.format(language=language)),
        ]
        data, _ = await self._structured(contents, contracts.LOCATION_ANALYSIS, {})
        return _location_analysis(data, "Uploaded Image")

    async def analyze_prescription(
        self, image_bytes: bytes, language: str = "English", mime_type: str = "image/jpeg"
    ) -> PrescriptionAnalysis:
        contents = [
            types.Part.from_bytes(data=image_bytes, mime_type=mime_type),
            types.Part.from_text(text=PRESCRIPTION_PROMPT.format(language=language)),
        ]
        data, _ = await self._structured(contents, contracts.PRESCRIPTION, {})
        videos = []
        for v in object_list(data, "videos"):
            url = text_field(v, "url").strip()
            if url.startswith(("http://", "https://")):
                videos.append(Video(title=text_field(v, "title", url), url=url))
        return PrescriptionAnalysis(
            summary=text_field(data, "summary", NO_SUMMARY),
            medicines=[
                Medicine(
                    name=text_field(m, "name", "Unnamed Medicine"),
                    dosage=text_field(m, "dosage"),
                    purpose=text_field(m, "purpose"),
                )
                for m in object_list(data, "medicines")
            ],
            precautions=string_list(data, "precautions"),
            videos=videos,
        )

    # ---- Location ----

    async def analyze_location_by_coordinates(
        self, lat: float, lng: float, language: str = "English", known_name: Any = None
    ) -> LocationReport:
        """
        Analysis and illustrative image run concurrently. The analysis failing fails the
        operation; the image failing only leaves illustrative_image empty.
        """
        key = cache_key(contracts.LOCATION_ANALYSIS.cache_prefix, lat, lng, language)
        cached = await self._cached(key, LocationReport)
        if cached is not None:
            return cached

        context = to_display_string(known_name, "")
        analysis_call = self._structured(
            LOCATION_PROMPT.format(lat=lat, lng=lng, context=context or "unknown", language=language),
            contracts.LOCATION_ANALYSIS,
            {},
        )
        image_call = self._generate(
            model=self._settings.gemini_image_model,
            contents=ILLUSTRATION_PROMPT.format(lat=lat, lng=lng),
        )
        analysis_result, image_result = await asyncio.gather(analysis_call, image_call, return_exceptions=True)
        if isinstance(analysis_result, BaseException):
            raise analysis_result
        analysis_data, parsed = analysis_result

        illustrative_image = None
        if isinstance(image_result, BaseException):
            logger.warning("Illustrative image for %s,%s failed (continuing without): %s", lat, lng, image_result)
        else:
            illustrative_image = first_inline_image(image_result)

        report = LocationReport(
            analysis=_location_analysis(analysis_data, context or "Selected Area"),
            illustrative_image=illustrative_image,
        )
        await self._store(key, report, self._settings.location_cache_ttl_minutes, parsed)
        return report

    async def geocode_location(self, query: str) -> GeocodeResult:
        key = cache_key(contracts.GEOCODE.cache_prefix, query)
        cached = await self._cached(key, GeocodeResult)
        if cached is not None:
            return cached

        data, parsed = await self._structured(GEOCODE_PROMPT.format(query=query), contracts.GEOCODE, {})
        result = GeocodeResult(
            lat=number_field(data, "lat") or 0.0,
            lng=number_field(data, "lng") or 0.0,
            resolved_name=text_field(data, "foundLocationName", query),
        )
        await self._store(key, result, self._settings.geocode_cache_ttl_minutes, parsed)
        return result

    # ---- Facilities (Maps grounded) ----

    async def find_facilities_by_coordinates(self, lat: float, lng: float) -> list[Facility]:
        """Facilities near a point, unordered and without distance."""
        key = cache_key(contracts.FACILITIES.cache_prefix, lat, lng)
        cached = await self._cached(key, _FACILITY_LIST)
        if cached is not None:
            return cached

        raw, _, parsed = await self._grounded_then_structured(
            FACILITY_SEARCH_PROMPT.format(lat=lat, lng=lng),
            self._maps_config(lat, lng),
            lambda source, chunks: FACILITY_STRUCTURE_PROMPT.format(chunks=chunks, source=source),
            contracts.FACILITIES,
            [],
            search_model=self._settings.gemini_maps_model,
        )
        facilities = [f for f in (_facility(item) for item in raw) if f is not None]
        await self._store(key, facilities, self._settings.facilities_cache_ttl_minutes, parsed)
        return facilities

    async def find_nearby_facilities(self, lat: float, lng: float) -> list[Facility]:
        """Facilities nearest first, with distance labels."""
        return rank_facilities(lat, lng, await self.find_facilities_by_coordinates(lat, lng))

    # ---- Free-text analyses (no cache) ----

    async def analyze_mental_health(self, answers: dict[str, str], language: str = "English") -> MentalHealthResult:
        prompt = MENTAL_HEALTH_PROMPT.format(answers=json.dumps(answers, ensure_ascii=False), language=language)
        data, _ = await self._structured(
            prompt, contracts.MENTAL_HEALTH, {}, model=self._settings.gemini_reasoning_model
        )
        return MentalHealthResult(
            summary=text_field(data, "summary", "Summary unavailable."),
            potential_concerns=[
                Concern(name=text_field(c, "name", "Concern"), explanation=text_field(c, "explanation"))
                for c in object_list(data, "potentialConcerns")
            ],
            coping_strategies=[
                CopingStrategy(title=text_field(s, "title", "Strategy"), description=text_field(s, "description"))
                for s in object_list(data, "copingStrategies")
            ],
            recommendation=text_field(data, "recommendation", "Focus on your daily well-being."),
        )

    async def analyze_symptoms(self, symptoms: str, language: str = "English") -> SymptomAnalysis:
        data, _ = await self._structured(
            SYMPTOM_PROMPT.format(symptoms=symptoms.replace('"', "'"), language=language), contracts.SYMPTOMS, {}
        )
        return SymptomAnalysis(
            summary=text_field(data, "summary", NO_SUMMARY),
            possible_conditions=[
                PossibleCondition(
                    name=text_field(c, "name", "Unspecified condition"),
                    likelihood=enum_field(c, "likelihood", contracts.LIKELIHOODS, "Low"),
                    description=text_field(c, "description"),
                )
                for c in object_list(data, "possibleConditions")
            ],
            recommended_actions=string_list(data, "recommendedActions"),
            urgency=enum_field(data, "urgency", contracts.URGENCIES, "Consult a doctor"),
            disclaimer=text_field(data, "disclaimer", "This is not medical advice. Consult a healthcare professional."),
        )

    # ---- City snapshot / forecast (cached) ----

    async def get_city_health_snapshot(self, city: str, country: str, language: str = "English") -> CityHealthSnapshot:
        key = cache_key(contracts.CITY_SNAPSHOT.cache_prefix, city, country, language)
        cached = await self._cached(key, CityHealthSnapshot)
        if cached is not None:
            return cached

        data, chunks, parsed = await self._grounded_then_structured(
            SNAPSHOT_SEARCH_PROMPT.format(city=city, country=country),
            self._search_config(),
            lambda source, chunk_json: SNAPSHOT_STRUCTURE_PROMPT.format(
                source=source, chunks=chunk_json, city=city, country=country, language=language
            ),
            contracts.CITY_SNAPSHOT,
            {},
        )
        sources = [s for s in (_source(item) for item in object_list(data, "sources")) if s is not None]
        if not sources:
            sources = [s for s in (_source(c.get("web")) for c in chunks if isinstance(c, dict)) if s is not None]
        snapshot = CityHealthSnapshot(
            city_name=text_field(data, "cityName", city),
            country=text_field(data, "country", country),
            last_updated=text_field(data, "lastUpdated"),
            overall_summary=text_field(data, "overallSummary", NO_SUMMARY),
            diseases=[
                SnapshotDisease(
                    name=text_field(d, "name", "Unnamed disease"),
                    summary=text_field(d, "summary"),
                    reported_cases=text_field(d, "reportedCases", "Unknown"),
                    affected_demographics=text_field(d, "affectedDemographics"),
                    trend=enum_field(d, "trend", contracts.TRENDS, "Unknown"),
                )
                for d in object_list(data, "diseases")
            ],
            data_disclaimer=text_field(data, "dataDisclaimer"),
            sources=sources,
        )
        await self._store(key, snapshot, self._settings.city_snapshot_cache_ttl_minutes, parsed)
        return snapshot

    async def get_health_forecast(self, lat: float, lng: float, language: str = "English") -> HealthForecast:
        key = cache_key(contracts.HEALTH_FORECAST.cache_prefix, lat, lng, language)
        cached = await self._cached(key, HealthForecast)
        if cached is not None:
            return cached

        data, parsed = await self._structured(
            FORECAST_PROMPT.format(lat=lat, lng=lng, language=language), contracts.HEALTH_FORECAST, {}
        )
        forecast = HealthForecast(
            location_name=text_field(data, "locationName", "Current Area"),
            summary=text_field(data, "summary", NO_SUMMARY),
            air_quality=text_field(data, "airQuality"),
            uv_index=text_field(data, "uvIndex"),
            weather=text_field(data, "weather"),
            risks=[
                ForecastRisk(
                    name=text_field(r, "name", "Health risk"),
                    level=enum_field(r, "level", contracts.RISK_LEVELS, "Low"),
                    advice=text_field(r, "advice"),
                )
                for r in object_list(data, "risks")
            ],
            recommendations=string_list(data, "recommendations"),
        )
        await self._store(key, forecast, self._settings.forecast_cache_ttl_minutes, parsed)
        return forecast

    # ---- Alerts (Search grounded, cached, force_refresh skips the read) ----

    async def get_live_health_alerts(self, force_refresh: bool = False, language: str = "English") -> list[Alert]:
        key = cache_key(contracts.ALERTS.cache_prefix, "global", language)
        return await self._alerts(key, LIVE_ALERTS_SEARCH_PROMPT, language, force_refresh)

    async def get_local_health_alerts(
        self, lat: float, lng: float, force_refresh: bool = False, language: str = "English"
    ) -> list[Alert]:
        key = cache_key(contracts.ALERTS.cache_prefix, "local", lat, lng, language)
        return await self._alerts(key, LOCAL_ALERTS_SEARCH_PROMPT.format(lat=lat, lng=lng), language, force_refresh)

    async def _alerts(self, key: str, search_prompt: str, language: str, force_refresh: bool) -> list[Alert]:
        if not force_refresh:
            cached = await self._cached(key, _ALERT_LIST)
            if cached is not None:
                return cached

        raw, _, parsed = await self._grounded_then_structured(
            search_prompt,
            self._search_config(),
            lambda source, chunks: ALERTS_STRUCTURE_PROMPT.format(source=source, chunks=chunks, language=language),
            contracts.ALERTS,
            [],
        )
        alerts = [_alert(item) for item in raw if isinstance(item, dict)]
        await self._store(key, alerts, self._settings.alerts_cache_ttl_minutes, parsed)
        return alerts

    # ---- Chat bot ----

    async def get_bot_command(self, text: str, language: str = "English", available_pages: Sequence[str] = ()) -> BotCommand:
        """navigate only to a page the caller offered; anything else becomes speak."""
        pages = [p for p in available_pages if p]
        data, _ = await self._structured(
            text,
            contracts.BOT_COMMAND,
            {},
            model=self._settings.gemini_reasoning_model,
            system_instruction=BOT_SYSTEM_INSTRUCTION.format(pages=", ".join(pages), language=language),
        )
        action = enum_field(data, "action", contracts.BOT_ACTIONS, "speak")
        page = text_field(data, "page").strip() or None
        reply = text_field(data, "responseText").strip() or BOT_FALLBACK_REPLY
        if action == "navigate" and page not in pages:
            logger.info("Bot asked to navigate to unknown page %r, replying instead", page)
            action = "speak"
        if action != "navigate":
            page = None
        return BotCommand(action=action, page=page, response_text=reply)


# ---- Record builders: every text field goes through the sanitizer ----


def _location_analysis(data: Any, fallback_name: str) -> LocationAnalysis:
    return LocationAnalysis(
        location_name=text_field(data, "locationName", fallback_name),
        hazards=[
            Hazard(hazard=text_field(h, "hazard", "Unspecified hazard"), description=text_field(h, "description"))
            for h in object_list(data, "hazards")
        ],
        diseases=[
            Disease(
                name=text_field(d, "name", "Unnamed condition"),
                cause=text_field(d, "cause"),
                precautions=string_list(d, "precautions"),
            )
            for d in object_list(data, "diseases")
        ],
        summary=text_field(data, "summary", NO_SUMMARY),
    )


def _facility_type(value: Any) -> str:
    text = to_display_string(value, "").strip().lower()
    for option in contracts.FACILITY_TYPES:
        if option.lower() == text:
            return option
    if "pharm" in text or "chemist" in text or "drug" in text:
        return "Pharmacy"
    if "hosp" in text:
        return "Hospital"
    return "Clinic"


def _facility(item: Any) -> Facility | None:
    """None when the model gave no usable coordinates."""
    if not isinstance(item, dict):
        return None
    lat = number_field(item, "lat")
    lng = number_field(item, "lng")
    if lat is None or lng is None or not (-90 <= lat <= 90 and -180 <= lng <= 180):
        logger.info("Dropping facility without usable coordinates: %.120s", to_display_string(item))
        return None
    url = text_field(item, "url").strip()
    return Facility(
        name=text_field(item, "name", DEFAULT_FACILITY_NAME).strip() or DEFAULT_FACILITY_NAME,
        type=_facility_type(item.get("type")),
        lat=lat,
        lng=lng,
        url=url if url.startswith(("http://", "https://")) else None,
    )


def _source(item: Any) -> Source | None:
    if not isinstance(item, dict):
        return None
    uri = text_field(item, "uri").strip()
    if not uri:
        return None
    return Source(uri=uri, title=text_field(item, "title", uri))


def _alert(item: dict) -> Alert:
    return Alert(
        title=text_field(item, "title", "Health alert"),
        summary=text_field(item, "summary"),
        location=text_field(item, "location"),
        category=enum_field(item, "category", contracts.ALERT_CATEGORIES, "Other"),
        severity=enum_field(item, "severity", contracts.SEVERITIES, "Medium"),
        date=text_field(item, "date"),
        source=_source(item.get("source")),
    )
