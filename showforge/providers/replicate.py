"""Replicate prediction client for image and video generation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Final

import httpx

from showforge.jobs.errors import ProviderRequestError, TransientNetworkError
from showforge.jobs.models import JobKind, JobStatus
from showforge.providers.base import GenerationProvider, LaunchReceipt, LaunchRequest, ProviderStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplicateModel:
  """Input shape for one Replicate model."""

  path: str
  defaults: dict[str, Any] = field(default_factory=dict)
  reference_field: str | None = None
  reference_is_list: bool = True


REPLICATE_MODELS: Final[dict[str, ReplicateModel]] = {
  "openai/gpt-image-1": ReplicateModel(path="openai/gpt-image-1", defaults={"quality": "high", "aspect_ratio": "1:1", "background": "auto", "moderation": "low", "number_of_images": 1}, reference_field="input_images"),
  "openai/sora-2": ReplicateModel(path="openai/sora-2", defaults={"seconds": 12, "aspect_ratio": "landscape"}, reference_field="input_reference", reference_is_list=False),
  "openai/sora-2-pro": ReplicateModel(path="openai/sora-2-pro", defaults={"seconds": 12, "aspect_ratio": "landscape", "resolution": "1080p", "quality": "high"}, reference_field="input_reference", reference_is_list=False),
  "google/veo-3.1": ReplicateModel(path="google/veo-3.1", defaults={"aspect_ratio": "16:9", "duration": 8, "resolution": "1080p", "generate_audio": True}, reference_field="reference_images"),
}

DEFAULT_MODEL_BY_KIND: Final[dict[JobKind, str]] = {"portrait": "openai/gpt-image-1", "poster": "openai/gpt-image-1", "video": "openai/sora-2", "trailer": "openai/sora-2"}

_STATUS_MAP: Final[dict[str, JobStatus]] = {"starting": "starting", "processing": "processing", "succeeded": "succeeded", "failed": "failed", "canceled": "failed", "aborted": "failed"}


def resolve_model(kind: JobKind, model: str | None) -> ReplicateModel:
  """Return the model definition, accepting unknown models with no defaults."""
  name = model or DEFAULT_MODEL_BY_KIND[kind]
  return REPLICATE_MODELS.get(name, ReplicateModel(path=name))


def extract_output_url(output: Any) -> str | None:
  """Pull the first media URL out of a Replicate output payload."""
  if isinstance(output, str):
    return output or None
  if isinstance(output, list) and output:
    return extract_output_url(output[0])
  if isinstance(output, dict):
    url = output.get("url")
    return url if isinstance(url, str) and url else None
  return None


def _decode_body(response: httpx.Response) -> dict[str, Any] | None:
  """Parse a prediction payload; None when the body is not a JSON object."""
  try:
    data = response.json()
  except ValueError:
    return None
  return data if isinstance(data, dict) else None


class ReplicateProvider(GenerationProvider):
  """Launch and poll Replicate predictions over its HTTP API."""

  name = "replicate"
  moderation_markers = ("E005", "flagged as sensitive")

  def __init__(self, *, api_token: str | None, base_url: str = "https://api.replicate.com/v1", timeout_seconds: float = 30.0, openai_api_key: str | None = None, transport: httpx.AsyncBaseTransport | None = None) -> None:
    if not api_token:
      raise ValueError("REPLICATE_API_TOKEN environment variable is required")
    self._api_token = api_token
    self._base_url = base_url.rstrip("/")
    self._timeout = timeout_seconds
    self._openai_api_key = openai_api_key
    self._transport = transport

  def _build_client(self) -> httpx.AsyncClient:
    headers = {"Authorization": f"Bearer {self._api_token}", "Content-Type": "application/json"}
    return httpx.AsyncClient(base_url=self._base_url, headers=headers, timeout=self._timeout, transport=self._transport, trust_env=False)

  def build_input(self, request: LaunchRequest) -> tuple[ReplicateModel, dict[str, Any]]:
    """Assemble the prediction input for a launch request."""
    model = resolve_model(request.kind, request.model)
    payload: dict[str, Any] = {"prompt": request.prompt, **model.defaults, **request.params}

    # Reference media is optional; each model names the field differently.
    if request.reference_urls and model.reference_field:
      payload[model.reference_field] = list(request.reference_urls) if model.reference_is_list else request.reference_urls[0]

    # gpt-image-1 on Replicate bills against the caller's own OpenAI key.
    if model.path.startswith("openai/gpt-image") and self._openai_api_key:
      payload.setdefault("openai_api_key", self._openai_api_key)
    return model, payload

  async def launch(self, request: LaunchRequest) -> LaunchReceipt:
    model, payload = self.build_input(request)
    url = f"/models/{model.path}/predictions"
    logger.info("Launching %s prediction on %s (correlation %s)", request.kind, model.path, request.correlation_id)

    try:
      async with self._build_client() as client:
        response = await client.post(url, json={"input": payload})
    except httpx.TransportError as exc:
      raise TransientNetworkError(f"Replicate launch for {model.path} could not be sent: {exc}") from exc
    except httpx.HTTPError as exc:
      raise ProviderRequestError(f"Replicate launch for {model.path} failed: {exc}") from exc

    if response.status_code >= 400:
      raise ProviderRequestError(f"Replicate launch for {model.path} failed: {response.status_code} {response.reason_phrase} - {response.text[:500]}", status_code=response.status_code)

    data = _decode_body(response)
    if data is None:
      raise ProviderRequestError(f"Replicate launch for {model.path} returned an unreadable body: {response.text[:200]}", status_code=response.status_code)
    job_id = data.get("id")
    if not job_id:
      raise ProviderRequestError("Replicate did not return a prediction id.", status_code=response.status_code)

    status = _STATUS_MAP.get(str(data.get("status") or "starting"), "starting")
    if status not in ("starting", "processing"):
      status = "starting"
    return LaunchReceipt(job_id=str(job_id), status=status, model=model.path)

  async def fetch_status(self, job_id: str) -> ProviderStatus:
    try:
      async with self._build_client() as client:
        response = await client.get(f"/predictions/{job_id}")
    except httpx.HTTPError as exc:
      raise TransientNetworkError(f"Replicate status check for {job_id} failed: {exc}") from exc

    if response.status_code == 404:
      return ProviderStatus(status=None, error_detail=f"Prediction {job_id} was not found.")
    if response.status_code >= 400:
      # Status endpoints are read-only; any other error is treated as a blip and retried next tick.
      raise TransientNetworkError(f"Replicate status check for {job_id} returned {response.status_code} {response.reason_phrase}")

    data = _decode_body(response)
    if data is None:
      raise TransientNetworkError(f"Replicate status check for {job_id} returned an unreadable body: {response.text[:200]}")
    raw_status = data.get("status")
    if raw_status is None:
      return ProviderStatus(status=None, error_detail="Replicate returned no prediction status.")

    status = _STATUS_MAP.get(str(raw_status))
    if status is None:
      logger.debug("Treating unknown Replicate status %r for %s as processing", raw_status, job_id)
      status = "processing"

    returned_id = str(data["id"]) if data.get("id") else None
    model = data.get("model")
    if status == "succeeded":
      return ProviderStatus(status="succeeded", output_url=extract_output_url(data.get("output")), model=model, job_id=returned_id)
    if status == "failed":
      detail = data.get("error") or ("Prediction was canceled." if raw_status in ("canceled", "aborted") else "Prediction failed.")
      return ProviderStatus(status="failed", error_detail=str(detail), model=model, job_id=returned_id)
    return ProviderStatus(status=status, model=model, job_id=returned_id)
