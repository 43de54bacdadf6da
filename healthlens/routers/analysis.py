"""
Analysis endpoints under /api/analysis, backed by AnalysisGateway:
- POST /image, /prescription: multipart image, no cache
- POST /location, /facilities, /forecast: coordinates, cached
- POST /mental-health, /symptoms, /bot-command: free text
- GET  /geocode, /city-snapshot, /alerts, /alerts/local
"""
import logging
from collections.abc import Awaitable
from typing import TypeVar

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status

from healthlens.config import get_settings
from healthlens.schemas.analysis import (
    Alert,
    BotCommand,
    BotCommandRequest,
    CityHealthSnapshot,
    CoordinatesRequest,
    Facility,
    ForecastRequest,
    GeocodeResult,
    HealthForecast,
    LocationAnalysis,
    LocationReport,
    LocationRequest,
    MentalHealthRequest,
    MentalHealthResult,
    PrescriptionAnalysis,
    SymptomAnalysis,
    SymptomsRequest,
)
from healthlens.services.gateway import AnalysisGateway
from healthlens.services.retry import UpstreamExhaustedError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/analysis", tags=["analysis"])

T = TypeVar("T")

ALLOWED_IMAGE_TYPES = {"image/png", "image/jpeg", "image/jpg", "image/webp", "image/gif", "image/heic"}


def get_gateway(request: Request) -> AnalysisGateway:
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI service is not configured.",
        )
    return gateway


async def _run(operation: str, call: Awaitable[T]) -> T:
    """Await a gateway call; map provider failures to 503 (busy) / 502 (anything else)."""
    try:
        return await call
    except UpstreamExhaustedError as e:
        logger.warning("AI %s rate limited after %s attempts", operation, e.attempts)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI service is busy. Please try again in a minute.",
        ) from e
    except Exception as e:
        logger.exception("AI %s failed", operation)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="AI service temporarily unavailable. Please try again later.",
        ) from e


async def _read_image(image: UploadFile) -> tuple[bytes, str]:
    ct = (image.content_type or "").split(";")[0].strip().lower()
    if ct not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="File must be an image (png, jpeg, webp, gif, heic).",
        )
    image_bytes = await image.read()
    if not image_bytes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Image is empty.")
    max_bytes = get_settings().max_image_bytes
    if len(image_bytes) > max_bytes:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Image too large (max {max_bytes // (1024 * 1024)} MB).",
        )
    return image_bytes, "image/jpeg" if ct == "image/jpg" else ct


# ---------- Health ----------


@router.get("/health")
async def analysis_health(request: Request):
    """Which cache backend is active and whether the AI provider is configured."""
    gateway = getattr(request.app.state, "gateway", None)
    if gateway is None:
        return {"ai": "unconfigured", "cache": None}
    out = {"ai": "ok", "cache": gateway.cache.backend}
    if gateway.cache.backend == "redis":
        from healthlens.core.redis import redis_status
        out.update(await redis_status())
    return out


# ---------- Images ----------


@router.post("/image", response_model=LocationAnalysis)
async def analyze_image(
    image: UploadFile = File(...),
    language: str = Form(default="English", max_length=64),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    """Environmental hazard scan of a photo."""
    image_bytes, mime = await _read_image(image)
    return await _run("image analysis", gateway.analyze_image(image_bytes, language, mime))


@router.post("/prescription", response_model=PrescriptionAnalysis)
async def analyze_prescription(
    image: UploadFile = File(...),
    language: str = Form(default="English", max_length=64),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    image_bytes, mime = await _read_image(image)
    return await _run("prescription analysis", gateway.analyze_prescription(image_bytes, language, mime))


# ---------- Coordinates ----------


@router.post("/location", response_model=LocationReport)
async def analyze_location(body: LocationRequest, gateway: AnalysisGateway = Depends(get_gateway)):
    """Area hazards and diseases plus an illustrative image when generation succeeds."""
    return await _run(
        "location analysis",
        gateway.analyze_location_by_coordinates(body.lat, body.lng, body.language, body.known_name),
    )


@router.post("/facilities", response_model=list[Facility])
async def nearby_facilities(body: CoordinatesRequest, gateway: AnalysisGateway = Depends(get_gateway)):
    """Hospitals, clinics and pharmacies nearest first, with distance labels."""
    return await _run("facility search", gateway.find_nearby_facilities(body.lat, body.lng))


@router.post("/forecast", response_model=HealthForecast)
async def health_forecast(body: ForecastRequest, gateway: AnalysisGateway = Depends(get_gateway)):
    return await _run("health forecast", gateway.get_health_forecast(body.lat, body.lng, body.language))


@router.get("/geocode", response_model=GeocodeResult)
async def geocode(
    q: str = Query(..., min_length=1, max_length=200),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    return await _run("geocoding", gateway.geocode_location(q))


@router.get("/city-snapshot", response_model=CityHealthSnapshot)
async def city_snapshot(
    city: str = Query(..., min_length=1, max_length=120),
    country: str = Query("", max_length=120),
    language: str = Query("English", max_length=64),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    return await _run("city snapshot", gateway.get_city_health_snapshot(city, country, language))


# ---------- Alerts ----------


@router.get("/alerts", response_model=list[Alert])
async def live_alerts(
    force_refresh: bool = False,
    language: str = Query("English", max_length=64),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    return await _run("live alerts", gateway.get_live_health_alerts(force_refresh, language))


@router.get("/alerts/local", response_model=list[Alert])
async def local_alerts(
    lat: float = Query(..., ge=-90, le=90),
    lng: float = Query(..., ge=-180, le=180),
    force_refresh: bool = False,
    language: str = Query("English", max_length=64),
    gateway: AnalysisGateway = Depends(get_gateway),
):
    return await _run("local alerts", gateway.get_local_health_alerts(lat, lng, force_refresh, language))


# ---------- Free text ----------


@router.post("/mental-health", response_model=MentalHealthResult)
async def mental_health(body: MentalHealthRequest, gateway: AnalysisGateway = Depends(get_gateway)):
    return await _run("mental health check-in", gateway.analyze_mental_health(body.answers, body.language))


@router.post("/symptoms", response_model=SymptomAnalysis)
async def symptoms(body: SymptomsRequest, gateway: AnalysisGateway = Depends(get_gateway)):
    return await _run("symptom analysis", gateway.analyze_symptoms(body.symptoms, body.language))


@router.post("/bot-command", response_model=BotCommand, response_model_exclude_none=True)
async def bot_command(body: BotCommandRequest, gateway: AnalysisGateway = Depends(get_gateway)):
    """Chat bot: navigate to one of available_pages, or just speak a reply."""
    return await _run("bot command", gateway.get_bot_command(body.message, body.language, body.available_pages))
