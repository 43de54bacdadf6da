"""
Gemini client construction and response helpers.
Uses google-genai with either an AI Studio API key or Vertex AI.
"""
import base64
import json
import logging
from pathlib import Path
from typing import Any

from healthlens.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Lazy client to avoid import/credentials errors at import time
_gemini_client = None


class ProviderNotConfiguredError(RuntimeError):
    """Neither an API key nor a Vertex AI project is configured."""


def is_configured(settings: Settings) -> bool:
    return bool(settings.gemini_api_key.strip() or settings.vertex_project_id.strip())


def get_client(settings: Settings | None = None):
    global _gemini_client
    if _gemini_client is not None:
        return _gemini_client
    try:
        from google import genai
    except ImportError as e:
        raise RuntimeError(
            "Google GenAI not installed. pip install google-genai google-auth"
        ) from e

    settings = settings or get_settings()
    if settings.gemini_api_key.strip():
        _gemini_client = genai.Client(api_key=settings.gemini_api_key.strip())
        return _gemini_client

    if not settings.vertex_project_id:
        raise ProviderNotConfiguredError("gemini_api_key or vertex_project_id must be configured")

    credentials = None
    if settings.vertex_credentials_path:
        from google.oauth2 import service_account

        path = Path(settings.vertex_credentials_path)
        if path.is_file():
            credentials = service_account.Credentials.from_service_account_file(
                str(path),
                scopes=["https://www.googleapis.com/auth/cloud-platform"],
            )
        else:
            logger.warning("vertex_credentials_path %s not found, using ADC", path)

    _gemini_client = genai.Client(
        vertexai=True,
        project=settings.vertex_project_id,
        location=settings.vertex_location,
        credentials=credentials,
    )
    return _gemini_client


# ---- Response helpers (tolerant of partial / empty responses) ----


def _first_candidate(response: Any) -> Any:
    candidates = getattr(response, "candidates", None) or []
    return candidates[0] if candidates else None


def _parts(response: Any) -> list:
    candidate = _first_candidate(response)
    content = getattr(candidate, "content", None) if candidate is not None else None
    return list(getattr(content, "parts", None) or [])


def response_text(response: Any) -> str:
    """Concatenated text of the first candidate; empty string if there is none."""
    if response is None:
        return ""
    try:
        text = getattr(response, "text", None)
    except (ValueError, AttributeError):
        text = None
    if text:
        return text
    return "".join(getattr(p, "text", None) or "" for p in _parts(response))


def _to_plain(value: Any) -> Any:
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, (dict, list, str, int, float, bool)) or value is None:
        return value
    return str(value)


def grounding_chunks(response: Any) -> list:
    """Grounding chunks (web / maps sources) of the first candidate as plain JSON values."""
    candidate = _first_candidate(response)
    metadata = getattr(candidate, "grounding_metadata", None) if candidate is not None else None
    chunks = getattr(metadata, "grounding_chunks", None) or []
    return [_to_plain(c) for c in chunks]


def grounding_json(response: Any) -> str:
    return json.dumps(grounding_chunks(response), ensure_ascii=False, default=str)


def first_inline_image(response: Any) -> str | None:
    """data: URL for the first inline image part, or None."""
    for part in _parts(response):
        inline = getattr(part, "inline_data", None)
        data = getattr(inline, "data", None) if inline is not None else None
        if not data:
            continue
        mime = getattr(inline, "mime_type", None) or "image/png"
        if isinstance(data, (bytes, bytearray)):
            encoded = base64.b64encode(data).decode("ascii")
        else:
            encoded = str(data)
        return f"data:{mime};base64,{encoded}"
    return None
