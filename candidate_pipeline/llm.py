from __future__ import annotations

import os
from typing import List, Optional

try:
    import google.generativeai as genai  # type: ignore
except ImportError as exc:  # pragma: no cover - ensures clear error when dependency missing
    raise ImportError(
        "google-generativeai is required. Install dependencies via 'pip install -e .'."
    ) from exc

MAX_CONTEXT_TOKENS = 8192
MAX_OUTPUT_TOKENS = 700
TEMPERATURE = 0.5
TOP_P = 1.0

SYSTEM_INSTRUCTION = (
    "You are an expert role-adaptive hiring evaluator. Be concise, evidence-driven, "
    f"and output valid JSON only. Keep response within {MAX_OUTPUT_TOKENS} tokens."
)


class LLMRequestError(RuntimeError):
    """Provider call failed. ``retry_after`` is the server's wait hint in seconds, if sent."""
    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


def retry_after_seconds(exc: BaseException) -> Optional[float]:
    """Positive numeric ``Retry-After`` header on an HTTP-backed provider error."""
    headers = getattr(getattr(exc, "response", None), "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds > 0 else None


class EvaluationLLM:
    """Gemini-backed client that returns the raw JSON verdict for a prompt."""

    def __init__(self, api_key: str | None = None, model_name: str | None = None) -> None:
        self.api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not self.api_key:
            raise RuntimeError("GEMINI_API_KEY environment variable is required to use Gemini.")
        genai.configure(api_key=self.api_key)
        self.model_name = model_name or os.getenv("GEMINI_MODEL_NAME", "gemini-2.5-flash")
        self._model: genai.GenerativeModel | None = None

    def _model_instance(self) -> genai.GenerativeModel:
        if self._model is None:
            self._model = genai.GenerativeModel(self.model_name, system_instruction=SYSTEM_INSTRUCTION)
        return self._model

    def complete(self, prompt: str) -> str:
        """Run one evaluation prompt.

        Raises:
            LLMRequestError: On request failure, with the provider message kept
                so callers can classify rate limits and oversized prompts
        """
        model = self._model_instance()
        try:
            response = model.generate_content(
                f"Context window limit is {MAX_CONTEXT_TOKENS} tokens. {prompt}",
                generation_config={
                    "temperature": TEMPERATURE,
                    "top_p": TOP_P,
                    "max_output_tokens": MAX_OUTPUT_TOKENS,
                    "response_mime_type": "application/json",
                },
            )
        except Exception as exc:
            raise LLMRequestError(f"Gemini request failed: {exc}", retry_after_seconds(exc)) from exc

        return self._extract_text(response)

    @staticmethod
    def _extract_text(response) -> str:
        try:
            text = (response.text or "").strip()
            if text:
                return text
        except ValueError:
            # The helper raised because no textual parts existed; fall back to manual parsing
            pass

        fragments: List[str] = []
        candidates = getattr(response, "candidates", None) or []
        for candidate in candidates:
            parts = []
            content = getattr(candidate, "content", None)
            if content is not None and hasattr(content, "parts"):
                parts = content.parts or []
            elif hasattr(candidate, "parts"):
                parts = candidate.parts or []

            for part in parts:
                text_value = getattr(part, "text", None)
                if text_value:
                    fragments.append(text_value)

        return "\n".join(fragments).strip()
