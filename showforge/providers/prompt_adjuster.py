"""OpenAI-backed prompt adjuster used after repeated moderation rejections."""

from __future__ import annotations

import json
import logging
from typing import Final

import openai
from openai import AsyncOpenAI

from showforge.jobs.errors import PromptAdjustmentError
from showforge.providers.base import PromptAdjuster, PromptAdjustment, PromptAdjustmentRequest

logger = logging.getLogger(__name__)

_CONTEXT_BY_KIND: Final[dict[str, str]] = {
  "portrait": "character portrait image generation (for a TV show character headshot/portrait)",
  "trailer": "video trailer generation (for a TV show promotional trailer)",
  "video": "character showcase video generation (short video clip of a TV show character)",
  "poster": "key art poster image generation (for a TV show promotional poster)",
  "episode-still": "episode scene still image generation (a keyframe from a TV episode scene)",
  "episode-clip": "episode scene video clip generation (a short video clip of a TV episode scene)",
}


def intensity_guidance(attempt_number: int) -> str:
  """Scale how boldly the prompt may be rewritten with the attempt number."""
  if attempt_number >= 6:
    return f"This is attempt #{attempt_number}, so make MORE SIGNIFICANT changes while still preserving the core intent. The previous lighter adjustments haven't worked."
  if attempt_number >= 4:
    return f"This is attempt #{attempt_number}, so make moderate creative adjustments while keeping the essential character and scene intact."
  return f"This is attempt #{attempt_number}, make only slight, surgical adjustments - change as little as possible."


def build_system_prompt(request: PromptAdjustmentRequest) -> str:
  context = _CONTEXT_BY_KIND.get(request.generation_kind, "media generation")
  error_line = f'The original error was: "{request.last_error_text}"' if request.last_error_text else ""
  return f"""You are an expert prompt engineer specializing in {context}.

Your task is to SLIGHTLY and CREATIVELY adjust a prompt that has been flagged by content moderation systems, WITHOUT changing the fundamental goal or artistic intent.

{intensity_guidance(request.attempt_number)}

ADJUSTMENT GUIDELINES:
1. Preserve the core narrative, characters, and visual style
2. Replace potentially triggering words with softer synonyms (for example "fight" becomes "confrontation", "blood" becomes "scarlet")
3. Add framing that emphasizes artistic or theatrical context
4. Use industry-standard terms like "cinematic", "theatrical", "dramatic"
5. Soften character descriptions that might trigger while keeping recognizability

The adjusted prompt should still produce nearly identical results artistically.

{error_line}

Return an adjusted prompt that maintains the creative vision while being more likely to pass content moderation."""


class OpenAIPromptAdjuster(PromptAdjuster):
  """Ask a chat model for a moderation-friendlier rewrite of a prompt."""

  def __init__(self, *, api_key: str | None = None, model: str = "gpt-4o-2024-08-06", client: AsyncOpenAI | None = None) -> None:
    if client is None and not api_key:
      raise ValueError("OPENAI_API_KEY environment variable is required")
    self._model = model
    self._client = client or AsyncOpenAI(api_key=api_key)

  async def adjust(self, request: PromptAdjustmentRequest) -> PromptAdjustment:
    context = _CONTEXT_BY_KIND.get(request.generation_kind, "media generation")
    user_prompt = (
      f"Please adjust this prompt for {context}:\n\n---\n{request.original_prompt}\n---\n\n"
      "Provide an adjusted version that will pass moderation while achieving the same artistic result. "
      'Respond with JSON in this exact format: {"adjustedPrompt": "...", "adjustmentReason": "...", "confidenceLevel": "high"|"medium"|"low"}'
    )
    logger.info("Requesting prompt adjustment for %s (attempt %s, prompt length %s)", request.generation_kind, request.attempt_number, len(request.original_prompt))

    try:
      completion = await self._client.chat.completions.create(
        model=self._model,
        messages=[{"role": "system", "content": build_system_prompt(request)}, {"role": "user", "content": user_prompt}],
        response_format={"type": "json_object"},
        temperature=0.7,
        max_tokens=4000,
      )
    except openai.OpenAIError as exc:
      raise PromptAdjustmentError(f"Prompt adjustment request failed: {exc}") from exc

    message = completion.choices[0].message
    refusal = getattr(message, "refusal", None)
    if refusal:
      logger.warning("Prompt adjustment refused: %s", refusal)
      return PromptAdjustment(success=False, refusal=refusal)

    content = message.content or ""
    if not content:
      raise PromptAdjustmentError("Prompt adjustment returned no content.")
    try:
      parsed = json.loads(content)
    except json.JSONDecodeError as exc:
      raise PromptAdjustmentError(f"Prompt adjustment returned invalid JSON: {exc}") from exc

    adjusted = parsed.get("adjustedPrompt") if isinstance(parsed, dict) else None
    if not isinstance(adjusted, str) or not adjusted.strip():
      return PromptAdjustment(success=False, refusal="No adjusted prompt in response.")

    reason = parsed.get("adjustmentReason")
    confidence = parsed.get("confidenceLevel")
    logger.info("Prompt adjusted (confidence %s): %s", confidence, reason)
    return PromptAdjustment(success=True, adjusted_prompt=adjusted.strip(), adjustment_reason=reason if isinstance(reason, str) else None, confidence_level=confidence if isinstance(confidence, str) else None)
