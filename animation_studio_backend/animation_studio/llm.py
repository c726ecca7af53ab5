import json, logging
from typing import Optional

import httpx
from pydantic import ValidationError

from .errors import ConfigurationError, EmptyResponse, MalformedResponse, ServiceError
from .media import ImagePayload
from .models import StructuredPrompt
from .settings import GEMINI_API_BASE, GEMINI_API_KEY, GEMINI_MODEL, GEMINI_TEMPERATURE, GEMINI_TIMEOUT_S

logger = logging.getLogger(__name__)


def _strip_fences(text: str) -> str:
    # responseMimeType should prevent fences, but some models still wrap the JSON
    text = text.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    return text.strip()


def parse_candidate_text(data: dict) -> str:
    candidates = data.get("candidates") or []
    if not candidates:
        feedback = data.get("promptFeedback")
        raise EmptyResponse(f"Generation service returned no candidates (promptFeedback={feedback})")
    if not isinstance(candidates, list) or not isinstance(candidates[0], dict):
        raise MalformedResponse("Generation service returned malformed candidates")
    content = candidates[0].get("content") or {}
    if not isinstance(content, dict):
        raise MalformedResponse("Generation candidate content is not an object")
    parts = content.get("parts") or []
    if not isinstance(parts, list):
        raise MalformedResponse("Generation candidate parts is not a list")
    text = "".join(
        part["text"] for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str)
    )
    if not text.strip():
        reason = candidates[0].get("finishReason")
        raise EmptyResponse(f"Generation service returned an empty candidate (finishReason={reason})")
    return text


def parse_structured_prompt(text: str) -> StructuredPrompt:
    try:
        payload = json.loads(_strip_fences(text))
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Generation output is not valid JSON: {e}")
    if not isinstance(payload, dict):
        raise MalformedResponse(f"Generation output must be a JSON object, got {type(payload).__name__}")
    try:
        return StructuredPrompt.model_validate(payload)
    except ValidationError as e:
        raise MalformedResponse(f"Generation output does not match the scene schema: {e}")


class GeminiClient:
    """Single-shot client for Gemini generateContent with a JSON response schema."""

    def __init__(self, api_key: str, model: str = GEMINI_MODEL, api_base: str = GEMINI_API_BASE,
                 timeout: float = GEMINI_TIMEOUT_S, temperature: float = GEMINI_TEMPERATURE,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.temperature = temperature
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.api_base}/models/{self.model}:generateContent"

    def _headers(self):
        return {"x-goog-api-key": self.api_key, "Content-Type": "application/json"}

    def build_body(self, instruction: str, schema: dict, image: Optional[ImagePayload] = None) -> dict:
        parts = [{"text": instruction}]
        if image is not None:
            parts.append(image.to_inline_data())
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": self.temperature,
                "responseMimeType": "application/json",
                "responseSchema": schema,
            },
        }

    async def generate(self, instruction: str, schema: dict, image: Optional[ImagePayload] = None) -> StructuredPrompt:
        logger.info(f"Calling Gemini {self.model} (image attached: {image is not None})")
        body = self.build_body(instruction, schema, image)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                r = await client.post(self.url, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            logger.error(f"Gemini request failed: {e}")
            raise ServiceError(0, str(e) or e.__class__.__name__)

        if r.status_code >= 400:
            logger.error(f"Gemini returned {r.status_code}: {r.text[:500]}")
            raise ServiceError(r.status_code, r.text)

        try:
            data = r.json()
        except ValueError as e:
            raise MalformedResponse(f"Generation service returned a non-JSON body: {e}")
        if not isinstance(data, dict):
            raise MalformedResponse("Generation service returned an unexpected envelope")

        prompt = parse_structured_prompt(parse_candidate_text(data))
        logger.info("Successfully received structured prompt from Gemini")
        return prompt


_client = None


def get_generation_client() -> GeminiClient:
    global _client
    if _client is None:
        if not GEMINI_API_KEY:
            raise ConfigurationError("GEMINI_API_KEY is not set; please configure your .env")
        _client = GeminiClient(api_key=GEMINI_API_KEY)
    return _client
