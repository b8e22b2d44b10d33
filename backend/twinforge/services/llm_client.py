"""
LLM Client Abstraction
Single entry point for all vision-model calls in the scan pipeline.
Primary: OpenAI gpt-4o through litellm (photos passed as URLs, JSON mode)
Fallback: optional second model from LLM_FALLBACK_MODEL, disabled when unset
"""
import os
import re
import json
import logging
from typing import Optional
import litellm

from twinforge.services.errors import ReplyParseError, UpstreamAIError

logger = logging.getLogger("twinforge-llm")

VISION_MODEL = os.getenv("LLM_VISION_MODEL", "gpt-4o")
FALLBACK_MODEL = os.getenv("LLM_FALLBACK_MODEL", "")
LLM_TIMEOUT_S = float(os.getenv("LLM_TIMEOUT_S", "90"))

# Suppress litellm verbose logging
litellm.set_verbose = False

_FENCE_OPEN = re.compile(r"^`{3}(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE = re.compile(r"\s*`{3}$")


def describe_upstream_error(status: Optional[int], body: str = "") -> str:
    """Map an upstream HTTP status (and body text) to a user-facing message."""
    if status == 400:
        return "Format de photo non supporté par l'IA. Utilisez des photos JPEG de bonne qualité."
    if status == 401:
        return "Problème d'authentification avec le service IA. Réessayez dans quelques instants."
    if status == 429:
        return "Nos serveurs IA sont très sollicités. Patientez 30 secondes et réessayez."
    if status in (500, 502, 503):
        return "Service IA temporairement indisponible. Réessayez dans quelques minutes."
    if status == 413:
        return "Photos trop volumineuses pour l'analyse IA. Utilisez des images plus petites."
    lowered = (body or "").lower()
    if "timeout" in lowered or "timed out" in lowered:
        return "Délai d'analyse IA dépassé. Vérifiez votre connexion et réessayez."
    if "rate limit" in lowered:
        return "Limite d'utilisation IA atteinte. Patientez quelques minutes."
    return f"Erreur IA ({status}). Réessayez ou contactez le support."


def classify_upstream_error(exc: Exception) -> UpstreamAIError:
    """Wrap a litellm / transport exception into an UpstreamAIError."""
    status = getattr(exc, "status_code", None)
    detail = str(exc)
    lowered = detail.lower()

    if isinstance(exc, litellm.Timeout) or "timeout" in lowered or "timed out" in lowered:
        kind = "timeout"
    elif isinstance(exc, litellm.AuthenticationError) or status in (401, 403):
        kind = "auth"
    elif isinstance(exc, litellm.RateLimitError) or status == 429:
        kind = "rate_limit"
    elif status == 413:
        kind = "size"
    elif isinstance(exc, litellm.BadRequestError) or status == 400:
        kind = "format"
    elif isinstance(status, int) and status >= 500:
        kind = "server"
    else:
        kind = "other"

    return UpstreamAIError(
        kind=kind,
        user_message=describe_upstream_error(status, detail),
        status_code=status,
        detail=detail,
    )


def build_vision_messages(prompt: str, image_urls: list[str]) -> list[dict]:
    content: list[dict] = [{"type": "text", "text": prompt}]
    for url in image_urls:
        if url:
            content.append({"type": "image_url", "image_url": {"url": url}})
    return [{"role": "user", "content": content}]


async def complete_with_vision(
    prompt: str,
    image_urls: list[str],
    temperature: float = 0.1,
    max_tokens: int = 2000,
    json_mode: bool = True,
) -> str:
    """
    Vision-capable LLM call. Photos are referenced by URL, never inlined.
    Returns the response content string; raises UpstreamAIError when every
    configured model fails or the reply is empty.
    """
    kwargs = {
        "messages": build_vision_messages(prompt, image_urls),
        "temperature": temperature,
        "max_tokens": max_tokens,
        "timeout": LLM_TIMEOUT_S,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    models = [VISION_MODEL] + ([FALLBACK_MODEL] if FALLBACK_MODEL else [])
    last_error: Optional[UpstreamAIError] = None

    for model in models:
        try:
            response = await litellm.acompletion(model=model, **kwargs)
        except Exception as e:
            last_error = classify_upstream_error(e)
            logger.warning(
                f"Vision model {model} failed ({type(e).__name__}, kind={last_error.kind}): {e}"
            )
            continue

        content = response.choices[0].message.content if response.choices else None
        if not content:
            finish = response.choices[0].finish_reason if response.choices else None
            logger.error(f"Vision model {model} returned empty content (finish_reason={finish})")
            last_error = UpstreamAIError(
                kind="empty_reply",
                user_message="Réponse IA vide. Réessayez dans quelques instants.",
                detail=f"empty content, finish_reason={finish}",
            )
            continue
        return content

    raise last_error


def parse_json_reply(content: str) -> dict:
    """
    Decode a model reply into a dict. Tolerates markdown code fences and
    leading / trailing prose around the JSON object.
    """
    text = (content or "").strip()
    text = _FENCE_CLOSE.sub("", _FENCE_OPEN.sub("", text))

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        text = text[start:end + 1]

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        raise ReplyParseError(f"AI reply is not valid JSON: {e.msg}") from e

    if not isinstance(parsed, dict):
        raise ReplyParseError(f"AI reply is {type(parsed).__name__}, expected an object")
    return parsed
