import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import httpx

from .config import get_settings
from .errors import TransientCollaboratorError
from .models import Library

logger = logging.getLogger("mediasort.ai")

LINE_RESPONSE_CONFIDENCE = 75
_LINE_PATTERN = re.compile(r"^\s*(\d+)\s*\|\s*(.+)$", re.MULTILINE)


class AIResponseParseError(ValueError):
    """The model answered, but not in a form that names a candidate library."""


@dataclass(frozen=True)
class AIChoice:
    library_index: int
    confidence: int
    reason: str


def _default_base_url(provider: str) -> str:
    if provider == "openai":
        return "https://api.openai.com/v1"
    if provider == "anthropic":
        return "https://api.anthropic.com/v1"
    if provider == "ollama":
        return "http://localhost:11434"
    return ""


def _headers(provider: str) -> Dict[str, str]:
    settings = get_settings()
    headers = {"Content-Type": "application/json"}
    if provider == "anthropic":
        if settings.ai_api_key:
            headers["x-api-key"] = settings.ai_api_key
        headers["anthropic-version"] = "2023-06-01"
    elif settings.ai_api_key:
        headers["Authorization"] = f"Bearer {settings.ai_api_key}"
    return headers


_SENSITIVE_KEYS = {
    "api_key",
    "apikey",
    "authorization",
    "access_token",
    "token",
    "secret",
    "password",
    "x-api-key",
}


def _mask_value(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str):
        if len(value) <= 4:
            return "****"
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _mask_sensitive_payload(payload: Any) -> Any:
    if isinstance(payload, dict):
        masked: Dict[str, Any] = {}
        for key, value in payload.items():
            if str(key).lower() in _SENSITIVE_KEYS:
                masked[key] = _mask_value(value)
            else:
                masked[key] = _mask_sensitive_payload(value)
        return masked
    if isinstance(payload, list):
        return [_mask_sensitive_payload(item) for item in payload]
    return payload


def _mask_secrets_in_text(text: str) -> str:
    masked = re.sub(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s\"']+", r"\1***", text)
    masked = re.sub(r"(?i)(x-api-key\s*[:=]\s*)[^\s\"']+", r"\1***", masked)
    masked = re.sub(r"(?i)(api_?key\s*[:=]\s*)[^\s\"'&]+", r"\1***", masked)
    masked = re.sub(r"\bsk-[A-Za-z0-9\-]{8,}\b", "sk-***", masked)
    return masked


def _sanitize_response_body(text: str) -> str:
    trimmed = (text or "").strip()
    if not trimmed:
        return ""
    try:
        parsed = json.loads(trimmed)
    except json.JSONDecodeError:
        return _mask_secrets_in_text(trimmed)
    try:
        return json.dumps(_mask_sensitive_payload(parsed), ensure_ascii=True)
    except (TypeError, ValueError):
        return _mask_secrets_in_text(trimmed)


def _raise_for_status_with_detail(response: httpx.Response, url: str) -> None:
    """Raise with a masked body excerpt; 5xx and 429 become transient."""
    try:
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        detail = _sanitize_response_body(response.text)
        if len(detail) > 800:
            detail = detail[:800] + "..."
        message = f"{exc} | url={_mask_secrets_in_text(url)}"
        if detail:
            message = f"{message} | body={detail}"
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientCollaboratorError(message) from exc
        raise httpx.HTTPStatusError(message, request=exc.request, response=exc.response) from exc


def _extract_json(text: str) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    candidate = text.strip()
    if candidate.startswith("```"):
        parts = candidate.split("```")
        if len(parts) >= 3:
            candidate = parts[1].strip()
            if candidate.startswith("json"):
                candidate = candidate[4:].strip()
    try:
        loaded = json.loads(candidate)
        return loaded if isinstance(loaded, dict) else None
    except json.JSONDecodeError:
        pass
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start != -1 and end != -1 and end > start:
        try:
            loaded = json.loads(candidate[start : end + 1])
            return loaded if isinstance(loaded, dict) else None
        except json.JSONDecodeError:
            return None
    return None


def _clamp_confidence(value: Any, default: int) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if 0 < number <= 1:
        number *= 100
    return max(0, min(100, int(round(number))))


def parse_choice(text: str, candidate_count: int) -> AIChoice:
    """Read ``{"library": n, ...}`` JSON or a ``NUMBER|REASON`` line; numbers are 1-based."""
    extracted = _extract_json(text)
    if extracted is not None:
        raw_number = extracted.get("library", extracted.get("library_number"))
        try:
            number = int(raw_number)
        except (TypeError, ValueError):
            raise AIResponseParseError(f"Missing library number in {text[:200]!r}")
        reason = str(extracted.get("reason") or "").strip() or "AI classification"
        confidence = _clamp_confidence(extracted.get("confidence"), LINE_RESPONSE_CONFIDENCE)
    else:
        match = _LINE_PATTERN.search(text or "")
        if not match:
            raise AIResponseParseError(f"Unrecognised AI response {text[:200]!r}")
        number = int(match.group(1))
        reason = match.group(2).strip()[:200]
        confidence = LINE_RESPONSE_CONFIDENCE
    if not 1 <= number <= candidate_count:
        raise AIResponseParseError(f"Library number {number} outside 1-{candidate_count}")
    return AIChoice(library_index=number - 1, confidence=confidence, reason=f"AI: {reason}")


def build_classification_prompt(metadata: Dict[str, Any], libraries: Sequence[Library]) -> str:
    media_type = metadata.get("media_type") or "item"
    keywords = ", ".join(str(k) for k in (metadata.get("keywords") or [])[:10])
    genres = ", ".join(str(g) for g in metadata.get("genres") or [])
    library_lines = "\n".join(
        f"{index}. {library.name} ({library.media_type})"
        + (f" - {library.description}" if library.description else "")
        for index, library in enumerate(libraries, start=1)
    )
    return (
        f"You are a media classification assistant. Decide which library this {media_type} belongs in.\n\n"
        "Media information:\n"
        f"- Title: {metadata.get('title') or 'Unknown'}\n"
        f"- Year: {metadata.get('year') or 'Unknown'}\n"
        f"- Genres: {genres or 'Unknown'}\n"
        f"- Certification: {metadata.get('certification') or 'Unknown'}\n"
        f"- Original language: {metadata.get('original_language') or 'Unknown'}\n"
        f"- Keywords: {keywords or 'None'}\n"
        f"- Overview: {metadata.get('overview') or ''}\n\n"
        f"Available libraries:\n{library_lines}\n\n"
        f"Respond with ONLY valid JSON: "
        f'{{"library": <number 1-{len(libraries)}>, "confidence": <0-100>, "reason": "<max 100 chars>"}}\n'
        "If you cannot produce JSON, answer on one line as NUMBER|REASON."
    )


class AIClient:
    def __init__(self, client: httpx.AsyncClient, semaphore: asyncio.Semaphore, retries: int = 1) -> None:
        self._client = client
        self._semaphore = semaphore
        self._retries = max(0, retries)

    async def _generate(self, prompt: str) -> str:
        settings = get_settings()
        provider = settings.ai_provider.lower()
        if provider in ("", "none"):
            raise ValueError("AI_PROVIDER is not configured")
        if not settings.ai_model:
            raise ValueError("AI_MODEL is required for classification")
        base_url = (settings.ai_base_url or _default_base_url(provider)).rstrip("/")
        if not base_url:
            raise ValueError("AI_BASE_URL is required for this provider")

        if provider == "ollama":
            url = f"{base_url}/api/generate"
            payload: Dict[str, Any] = {
                "model": settings.ai_model,
                "prompt": prompt,
                "stream": False,
                "options": {"temperature": settings.ai_temperature},
            }
        elif provider == "anthropic":
            url = f"{base_url}/messages"
            payload = {
                "model": settings.ai_model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": settings.ai_max_tokens,
                "temperature": settings.ai_temperature,
            }
        else:
            url = f"{base_url}/chat/completions"
            payload = {
                "model": settings.ai_model,
                "messages": [{"role": "user", "content": prompt}],
                "max_tokens": settings.ai_max_tokens,
                "temperature": settings.ai_temperature,
            }

        try:
            async with self._semaphore:
                response = await self._client.post(
                    url,
                    headers=_headers(provider),
                    json=payload,
                    timeout=settings.ai_timeout,
                )
        except httpx.TransportError as exc:
            raise TransientCollaboratorError(f"AI request failed: {exc.__class__.__name__}: {exc}") from exc
        _raise_for_status_with_detail(response, url)

        try:
            data = response.json()
        except ValueError as exc:
            raise AIResponseParseError(
                f"AI response JSON decode failed (status {response.status_code})"
            ) from exc
        if provider == "ollama":
            return str(data.get("response") or "")
        if provider == "anthropic":
            return "".join(
                block.get("text", "")
                for block in data.get("content") or []
                if isinstance(block, dict) and block.get("type") == "text"
            )
        choices = data.get("choices") or []
        message = (choices[0].get("message") or {}) if choices else {}
        return str(message.get("content") or "")

    async def classify(self, prompt: str, candidates: Sequence[Library]) -> AIChoice:
        if not candidates:
            raise ValueError("No candidate libraries")
        attempt = 0
        while True:
            try:
                text = await self._generate(prompt)
                break
            except TransientCollaboratorError as exc:
                if attempt >= self._retries:
                    logger.warning("AI classify failed after %s attempts: %s", attempt + 1, exc)
                    raise
                wait = 2**attempt
                logger.warning(
                    "AI classify failed on attempt %s/%s: %s. Retrying in %ss",
                    attempt + 1,
                    self._retries + 1,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)
                attempt += 1
        return parse_choice(text, len(candidates))

    async def health_check(self) -> bool:
        """Cheap reachability probe used by the worker loop for backpressure."""
        settings = get_settings()
        provider = settings.ai_provider.lower()
        if provider in ("", "none"):
            return False
        if provider == "anthropic":
            return bool(settings.ai_api_key)
        base_url = (settings.ai_base_url or _default_base_url(provider)).rstrip("/")
        url = f"{base_url}/api/tags" if provider == "ollama" else f"{base_url}/models"
        try:
            response = await self._client.get(
                url,
                headers=_headers(provider),
                timeout=settings.ai_health_timeout,
            )
        except httpx.HTTPError as exc:
            logger.debug("AI health probe failed: %s", exc)
            return False
        return response.status_code == 200
