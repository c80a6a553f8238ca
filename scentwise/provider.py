"""Text-generation adapter for fragrance recommendations (Gemini API).

Supports a real mode (forwarding to the generateContent endpoint) and a stub
mode that returns a canned response when the provider is configured with
"stub": true and no API key is set.
"""

from typing import Any, Dict, List

import httpx

from scentwise.config import ProviderConfig
from scentwise.models import ChatMessage, RecommendRequest

CHAT_SYSTEM_PROMPT = (
    "You are ScentWise AI, a fragrance advisor with encyclopedic knowledge of "
    "designer, niche and artisanal perfumery. Give specific recommendations "
    "with fragrance names, brands, key notes, price ranges and reasons. "
    "Format fragrance names in **bold** and keep a conversational tone."
)

PHOTO_SYSTEM_PROMPT = (
    "You are ScentWise, a fragrance consultant who matches scents to personal "
    "style. Analyze the uploaded photo: clothing style, color palette, "
    "accessories and overall aesthetic. Recommend exactly 5 fragrances. For "
    "each include **Fragrance Name** by Brand, key notes (top/heart/base), "
    "price range ($, $$, $$$) and why it matches. End with 2 budget alternatives."
)

NO_RESPONSE = "No response generated."

_STUB_RESPONSE = (
    "This is a stub recommendation from the gateway. "
    "Configure a valid API key to get real recommendations."
)


class ProviderNotConfigured(Exception):
    """Raised when no API key is available and stub mode is off."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(detail)


def build_parts(request: RecommendRequest) -> List[Dict[str, Any]]:
    """Build the Gemini content parts for a recommendation request."""
    if request.mode == "photo":
        return [
            {
                "inlineData": {
                    "mimeType": request.image_mime or "image/jpeg",
                    "data": request.image_base64,
                }
            },
            {"text": PHOTO_SYSTEM_PROMPT + "\n\nAnalyze this style and recommend matching fragrances."},
        ]

    messages: List[ChatMessage] = request.messages or []
    last = messages[-1].content if messages else ""
    history = "\n".join(
        "{}: {}".format("User" if m.role == "user" else "Assistant", m.content)
        for m in messages[:-1]
    )
    text = CHAT_SYSTEM_PROMPT
    if history:
        text += "\n\nConversation so far:\n" + history
    text += "\n\nUser: " + last
    return [{"text": text}]


async def call_provider(provider: ProviderConfig, request: RecommendRequest) -> str:
    """Generate a recommendation and return its text.

    Args:
        provider: Provider configuration (base URL, API key env, etc.).
        request: The validated recommendation request.

    Returns:
        The generated text.

    Raises:
        ProviderNotConfigured: If there is no API key and stub mode is off.
        httpx.HTTPStatusError: If the provider returns a non-2xx response.
        httpx.HTTPError: If the provider cannot be reached.
    """
    api_key = provider.api_key

    if not api_key:
        if provider.stub:
            return _STUB_RESPONSE
        raise ProviderNotConfigured(
            "{} is not set for provider {}".format(provider.api_key_env, provider.name)
        )

    return await _real_request(provider, request, api_key)


async def _real_request(
    provider: ProviderConfig,
    request: RecommendRequest,
    api_key: str,
) -> str:
    """Forward the request to the generateContent endpoint."""
    url = "{}/models/{}:generateContent".format(
        provider.base_url.rstrip("/"), provider.default_model
    )
    headers = {
        "x-goog-api-key": api_key,
        "Content-Type": "application/json",
    }
    payload = {
        "contents": [{"parts": build_parts(request)}],
        "generationConfig": {
            "maxOutputTokens": provider.max_output_tokens,
            "temperature": provider.temperature,
        },
    }

    async with httpx.AsyncClient(timeout=provider.timeout) as client:
        resp = await client.post(url, json=payload, headers=headers)
        resp.raise_for_status()

    data = resp.json()

    candidates = data.get("candidates") or [{}]
    parts = (candidates[0].get("content") or {}).get("parts") or [{}]
    return parts[0].get("text") or NO_RESPONSE
