"""Analysis gateway: turns frames and sensor readings into verdicts."""

import base64
import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Union

import requests
from pydantic import BaseModel, ConfigDict, Field, StrictBool, ValidationError

from .interfaces import AnalysisProviderInterface, AnalysisRequest
from .error_handler import AnalysisMalformed, AnalysisUnavailable
from ..config.defaults import PROVIDER_SETTINGS, SYSTEM_CONSTANTS
from ..models.incident import FrameSample, Sample, SensorSample, Verdict
from ..logging_config import get_logger

logger = get_logger("analysis_gateway")

FRAME_PROMPT = """You are an expert in analyzing images to detect car accidents.

You will receive a photo. Decide whether a car accident has occurred based on the visual evidence.
Look for signs of a crash, such as damaged vehicles, debris on the road, emergency vehicles, or smoke.

Respond with a JSON object only, with exactly these keys:
{"isAccident": true or false, "confidence": number between 0 and 1, "reason": "what you see that supports the decision"}"""

SENSOR_PROMPT = """You are an expert in vehicle crash detection from phone motion sensors.

You will receive accelerometer (m/s^2) and gyroscope (rad/s) readings as x/y/z triples, and sometimes a location.
Sudden large deceleration spikes, violent rotation, or a rollover pattern indicate a crash.

Respond with a JSON object only, with exactly these keys:
{"isAccident": true or false, "confidence": number between 0 and 1, "reason": "which readings support the decision"}

Readings:
"""


class VerdictSchema(BaseModel):
    """Wire shape of a provider verdict."""
    model_config = ConfigDict(populate_by_name=True)

    is_accident: StrictBool = Field(alias="isAccident")
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""


def _extract_json(text: str) -> Any:
    """Pull a JSON value out of a model response (handles markdown code blocks)."""
    text = text.strip()
    m = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
    if m:
        text = m.group(1).strip()
    return json.loads(text)


def _triple(values, names=("x", "y", "z")) -> Dict[str, float]:
    return {name: float(value) for name, value in zip(names, values)}


def build_request(sample: Sample) -> AnalysisRequest:
    """Encode a sample into a provider-neutral request."""
    if isinstance(sample, FrameSample):
        encoded = base64.b64encode(sample.data).decode("ascii")
        return AnalysisRequest(
            kind="frame",
            payload=f"data:{sample.mime_type};base64,{encoded}",
            mime_type=sample.mime_type
        )

    if isinstance(sample, SensorSample):
        readings: Dict[str, Any] = {
            "accelerometer": _triple(sample.accel),
            "gyroscope": _triple(sample.gyro),
            "captured_at": sample.captured_at.isoformat()
        }
        if sample.location is not None:
            readings["location"] = _triple(sample.location, ("latitude", "longitude", "accuracy"))
        return AnalysisRequest(kind="sensor", payload=json.dumps(readings), mime_type="application/json")

    raise TypeError(f"Unsupported sample type: {type(sample).__name__}")


def parse_verdict(raw: Union[str, bytes, Dict[str, Any]]) -> Verdict:
    """Validate a raw provider response against the verdict schema."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")

    if isinstance(raw, str):
        try:
            raw = _extract_json(raw)
        except json.JSONDecodeError as e:
            raise AnalysisMalformed(f"Provider response is not JSON: {e}") from e

    if not isinstance(raw, dict):
        raise AnalysisMalformed(f"Provider response is not a JSON object: {type(raw).__name__}")

    try:
        parsed = VerdictSchema.model_validate(raw)
    except ValidationError as e:
        raise AnalysisMalformed(f"Provider response failed verdict validation: {e}") from e

    return Verdict(
        is_accident=parsed.is_accident,
        confidence=parsed.confidence,
        reason=parsed.reason.strip()
    )


class AnalysisGateway:
    """Uniform ``analyze(sample) -> Verdict`` in front of an analysis provider.

    Failures surface as AnalysisUnavailable or AnalysisMalformed; nothing
    is retried here.
    """

    def __init__(self, provider: AnalysisProviderInterface):
        self.provider = provider
        self.request_count = 0
        self.failure_count = 0

    def analyze(self, sample: Sample) -> Verdict:
        request = build_request(sample)
        self.request_count += 1
        logger.debug(f"Submitting {request.kind} sample for analysis "
                     f"(payload {len(request.payload)} chars)")

        try:
            raw = self.provider.submit(request)
            verdict = parse_verdict(raw)
        except (AnalysisUnavailable, AnalysisMalformed):
            self.failure_count += 1
            raise
        except requests.RequestException as e:
            self.failure_count += 1
            raise AnalysisUnavailable(f"Analysis provider unreachable: {e}") from e

        logger.info(f"Verdict: accident={verdict.is_accident}, "
                    f"confidence={verdict.confidence:.2f}, reason={verdict.reason!r}")
        return verdict

    def get_stats(self) -> Dict[str, Any]:
        return {
            "requests": self.request_count,
            "failures": self.failure_count,
            "provider": type(self.provider).__name__
        }


@dataclass
class AnalysisProviderConfig:
    """Configuration for the Gemini analysis provider."""
    api_key: str = ""
    model: str = PROVIDER_SETTINGS["gemini_model"]
    api_base: str = PROVIDER_SETTINGS["gemini_api_base"]
    timeout_seconds: float = SYSTEM_CONSTANTS["HTTP_TIMEOUT_SECONDS"]

    @classmethod
    def from_env(cls) -> "AnalysisProviderConfig":
        return cls(
            api_key=os.getenv("GOOGLE_API_KEY", "").strip(),
            model=os.getenv("GEMINI_MODEL", "").strip() or PROVIDER_SETTINGS["gemini_model"]
        )


class GeminiAnalysisProvider(AnalysisProviderInterface):
    """Gemini ``generateContent`` over HTTP."""

    def __init__(self, config: AnalysisProviderConfig):
        self.config = config

    def submit(self, request: AnalysisRequest) -> str:
        if not self.config.api_key:
            raise AnalysisUnavailable("Analysis provider API key not configured")

        payload = {
            "contents": [{"parts": self._build_parts(request)}],
            "generationConfig": {"responseMimeType": "application/json"}
        }
        url = f"{self.config.api_base}/models/{self.config.model}:generateContent"

        try:
            response = requests.post(
                url,
                params={"key": self.config.api_key},
                json=payload,
                timeout=self.config.timeout_seconds
            )
        except requests.RequestException as e:
            raise AnalysisUnavailable(f"Analysis provider unreachable: {e}") from e

        if response.status_code != 200:
            raise AnalysisUnavailable(
                f"Analysis provider returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            body = response.json()
            return body["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AnalysisMalformed(f"Unexpected provider envelope: {e}") from e

    def _build_parts(self, request: AnalysisRequest) -> List[Dict[str, Any]]:
        if request.kind == "frame":
            header, _, data = request.payload.partition(",")
            mime_type = request.mime_type or header[len("data:"):].split(";")[0]
            return [
                {"text": FRAME_PROMPT},
                {"inline_data": {"mime_type": mime_type, "data": data}}
            ]

        if request.kind == "sensor":
            return [{"text": SENSOR_PROMPT + request.payload}]

        raise ValueError(f"Unknown analysis request kind: {request.kind}")
