import time, asyncio, logging
from typing import Optional

import httpx

from .errors import ConfigurationError, SynthesisError
from .models import StructuredPrompt
from .settings import (
    REPLICATE_API_TOKEN,
    REPLICATE_POLL_INTERVAL_MS,
    REPLICATE_POLL_TIMEOUT_S,
    REPLICATE_VIDEO_MODEL,
    SAMPLE_VIDEO_URL,
    VIDEO_BACKEND,
)

logger = logging.getLogger(__name__)

REPLICATE_API = "https://api.replicate.com/v1"


def prompt_to_text(prompt: StructuredPrompt) -> str:
    """Flatten a structured prompt into the single text prompt video models take."""
    pieces = []
    if prompt.scene_summary:
        pieces.append(prompt.scene_summary)
    if prompt.animation_style:
        style = prompt.animation_style
        pieces.append(", ".join(v for v in (style.style, style.color_palette, style.tone) if v))
    if prompt.setting:
        s = prompt.setting
        pieces.append(", ".join(v for v in (s.location, s.time_of_day, s.environment) if v))
    for ch in prompt.characters:
        pieces.append(" ".join(v for v in (ch.name, ch.description, ch.action) if v))
    if prompt.action and prompt.action.primary_action:
        pieces.append(prompt.action.primary_action)
    if prompt.camera:
        cam = prompt.camera
        camera = ", ".join(v for v in (cam.shot_type, cam.movement, cam.angle) if v)
        if camera:
            pieces.append(f"camera: {camera}")
    return ". ".join(p for p in pieces if p)


class VideoSynthesizer:
    async def synthesize(self, prompt: StructuredPrompt) -> str:
        raise NotImplementedError


class StubVideoSynthesizer(VideoSynthesizer):
    """Returns the same sample clip for every prompt."""

    def __init__(self, video_url: str = SAMPLE_VIDEO_URL, delay_s: float = 0.0):
        self.video_url = video_url
        self.delay_s = delay_s

    async def synthesize(self, prompt: StructuredPrompt) -> str:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        logger.info(f"Stub synthesis for page {prompt.page_number}: {self.video_url}")
        return self.video_url


def _parse_selector(selector: str):
    # "owner/name" or "owner/name:version" -> model endpoint; bare hash -> version
    owner_name, _, version = selector.partition(":")
    if "/" in owner_name:
        owner, name = owner_name.split("/", 1)
        if version:
            return "version", {"version": version}
        return "model", {"owner": owner, "name": name}
    return "version", {"version": selector}


def _json_body(response: httpx.Response, stage: str) -> dict:
    try:
        body = response.json()
    except ValueError as e:
        logger.error(f"Replicate {stage} returned a non-JSON body: {response.text[:200]}")
        raise SynthesisError(f"Replicate {stage} returned a non-JSON body: {e}")
    if not isinstance(body, dict):
        raise SynthesisError(f"Replicate {stage} returned an unexpected body: {response.text[:200]}")
    return body


class ReplicateVideoSynthesizer(VideoSynthesizer):
    """Creates one Replicate prediction per prompt and polls it to a terminal status."""

    def __init__(self, api_token: str, model: str,
                 poll_interval_ms: int = REPLICATE_POLL_INTERVAL_MS,
                 poll_timeout_s: int = REPLICATE_POLL_TIMEOUT_S,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_token = api_token
        self.model = model
        self.poll_interval_ms = poll_interval_ms
        self.poll_timeout_s = poll_timeout_s
        self._transport = transport

    def _headers(self):
        return {"Authorization": f"Token {self.api_token}", "Content-Type": "application/json"}

    async def synthesize(self, prompt: StructuredPrompt) -> str:
        text = prompt_to_text(prompt)
        logger.info(f"Starting Replicate video synthesis for prompt: {text[:100]}...")
        json_body = {"input": {"prompt": text}}
        mode, data = _parse_selector(self.model)
        if mode == "version":
            json_body["version"] = data["version"]
            url = f"{REPLICATE_API}/predictions"
        else:
            url = f"{REPLICATE_API}/models/{data['owner']}/{data['name']}/predictions"

        try:
            async with httpx.AsyncClient(timeout=30, transport=self._transport) as client:
                r = await client.post(url, headers=self._headers(), json=json_body)
                if r.status_code >= 400:
                    logger.error(f"Replicate create failed {r.status_code}: {r.text}")
                    raise SynthesisError(f"Replicate create failed {r.status_code}: {r.text}")
                pred_id = _json_body(r, "create").get("id")
                if not pred_id:
                    raise SynthesisError(f"Replicate create returned no prediction id: {r.text}")
                logger.info(f"Replicate prediction created with ID: {pred_id}")
                return await self._wait(client, pred_id)
        except httpx.HTTPError as e:
            logger.error(f"Replicate request failed: {e}")
            raise SynthesisError(f"Replicate request failed: {e}")

    async def _wait(self, client: httpx.AsyncClient, pred_id: str) -> str:
        start = time.time()
        while True:
            s = await client.get(f"{REPLICATE_API}/predictions/{pred_id}", headers=self._headers())
            if s.status_code >= 400:
                logger.error(f"Replicate status failed {s.status_code}: {s.text}")
                raise SynthesisError(f"Replicate status failed {s.status_code}: {s.text}")
            body = _json_body(s, "status")
            status = body.get("status")
            logger.info(f"Replicate prediction {pred_id} status: {status}")

            if status in ("succeeded", "failed", "canceled"):
                if status != "succeeded":
                    raise SynthesisError(f"Replicate failed: {status}. error={body.get('error')}")
                output = body.get("output")
                if isinstance(output, list) and output and isinstance(output[0], str) and output[0]:
                    return output[0]
                if isinstance(output, str) and output:
                    return output
                raise SynthesisError("Replicate succeeded but no output URL")
            if time.time() - start > self.poll_timeout_s:
                raise SynthesisError("Replicate polling timeout")
            await asyncio.sleep(self.poll_interval_ms / 1000.0)


_synthesizer = None


def get_video_synthesizer() -> VideoSynthesizer:
    global _synthesizer
    if _synthesizer is None:
        if VIDEO_BACKEND == "replicate":
            if not REPLICATE_API_TOKEN or not REPLICATE_VIDEO_MODEL:
                raise ConfigurationError("REPLICATE_API_TOKEN and REPLICATE_VIDEO_MODEL must be set for VIDEO_BACKEND=replicate")
            _synthesizer = ReplicateVideoSynthesizer(REPLICATE_API_TOKEN, REPLICATE_VIDEO_MODEL)
        else:
            _synthesizer = StubVideoSynthesizer()
    return _synthesizer
