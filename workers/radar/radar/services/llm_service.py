import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

import requests

from radar.config_manager import get_worker_config
from radar.text_utils import MalformedResponseError, extract_json_object

logger = logging.getLogger(__name__)


class InferenceError(Exception):
    """Base class for failures talking to the inference service."""


class InferenceTimeoutError(InferenceError):
    pass


class InferenceConnectionError(InferenceError):
    """Connection-level failure. `reason` is 'refused', 'reset' or 'unknown'."""

    def __init__(self, message: str, reason: str = "unknown"):
        super().__init__(message)
        self.reason = reason


class ModelNotFoundError(InferenceError):
    pass


# Failures a caller can recover from by retrying with another model
TRANSIENT_ERRORS = (InferenceTimeoutError, InferenceConnectionError, ModelNotFoundError)

# Everything generate_json may raise for a bad call
LLM_ERRORS = (InferenceError, MalformedResponseError)


@dataclass(frozen=True)
class GenerationOptions:
    purpose: str
    temperature: float = 0.3
    max_tokens: int = 1000
    context_window: int = 4096
    json_output: bool = False
    timeout: int = 60


SIMILARITY_OPTIONS = GenerationOptions("similarity", temperature=0.1, max_tokens=1000, context_window=6144, json_output=True)
DIFFERENCE_OPTIONS = GenerationOptions("difference", temperature=0.2, max_tokens=1000, context_window=4096, json_output=True, timeout=120)
GENERATION_OPTIONS = GenerationOptions("generation", temperature=0.1, max_tokens=2000, context_window=10240, json_output=True, timeout=180)
UPDATE_OPTIONS = GenerationOptions("update", temperature=0.3, max_tokens=3000, context_window=12288, json_output=True, timeout=180)
CLASSIFICATION_OPTIONS = GenerationOptions("classification", temperature=0.3, max_tokens=2000, context_window=2048, json_output=True)


def _connection_reason(error: Exception) -> str:
    message = str(error).lower()
    if "refused" in message:
        return "refused"
    if "reset" in message or "aborted" in message or "hang up" in message:
        return "reset"
    return "unknown"


class OllamaBackend:
    """Plain HTTP client for an Ollama server (/api/generate, non-streaming)."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def generate(self, model: str, prompt: str, options: GenerationOptions) -> str:
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": options.temperature,
                "num_predict": options.max_tokens,
                "num_ctx": options.context_window,
            },
        }
        if options.json_output:
            payload["format"] = "json"

        try:
            response = self.session.post(
                f"{self.base_url}/api/generate",
                json=payload,
                timeout=options.timeout,
            )
        except requests.Timeout as e:
            raise InferenceTimeoutError(f"Ollama request timed out after {options.timeout}s") from e
        except requests.ConnectionError as e:
            raise InferenceConnectionError(f"Ollama connection failed at {self.base_url}: {e}", _connection_reason(e)) from e

        if response.status_code == 404:
            raise ModelNotFoundError(f"Model '{model}' not found on {self.base_url}")
        if response.status_code >= 400:
            raise InferenceError(f"Ollama returned HTTP {response.status_code}: {response.text[:200]}")

        try:
            body = response.json()
        except ValueError as e:
            raise MalformedResponseError("Ollama returned a non-JSON envelope") from e

        text = body.get("response")
        if not text or not text.strip():
            raise MalformedResponseError("Ollama returned an empty response")
        return text

    def check_connection(self) -> bool:
        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=5)
            return response.status_code == 200
        except requests.RequestException:
            return False


class GeminiBackend:
    """Google Gen AI SDK on the Vertex AI backend."""

    def __init__(self, project: str, location: str):
        from google import genai

        if not project:
            raise ValueError("GOOGLE_CLOUD_PROJECT environment variable is required for the gemini provider")

        self.client = genai.Client(
            vertexai=True,
            project=project,
            location=location
        )

    def generate(self, model: str, prompt: str, options: GenerationOptions) -> str:
        from google.genai import errors, types

        config = types.GenerateContentConfig(
            temperature=options.temperature,
            max_output_tokens=options.max_tokens,
            response_mime_type="application/json" if options.json_output else None,
            http_options=types.HttpOptions(timeout=options.timeout * 1000),
        )

        try:
            response = self.client.models.generate_content(
                model=model,
                contents=prompt,
                config=config,
            )
        except errors.ClientError as e:
            if getattr(e, "code", None) == 404:
                raise ModelNotFoundError(f"Model '{model}' not found: {e}") from e
            raise InferenceError(f"Gemini request failed: {e}") from e
        except errors.APIError as e:
            raise InferenceError(f"Gemini request failed: {e}") from e
        except Exception as e:
            # Transport errors surface from the SDK's HTTP client untyped
            if "timeout" in str(e).lower() or "timed out" in str(e).lower():
                raise InferenceTimeoutError(f"Gemini request timed out after {options.timeout}s") from e
            raise InferenceConnectionError(f"Gemini connection failed: {e}", _connection_reason(e)) from e

        text = response.text
        if not text or not text.strip():
            raise MalformedResponseError("Gemini returned an empty response")
        return text

    def check_connection(self) -> bool:
        return True


class LLMService:
    """
    Inference client shared by story grouping, fusion and categorization.

    A single call type: prompt plus GenerationOptions in, text out. Transient
    failures and unparseable JSON are retried once with the fallback model
    when one is configured.
    """

    def __init__(self, backend=None, model: Optional[str] = None, fallback_model: Optional[str] = None,
                 malformed_retries: Optional[int] = None):
        config = get_worker_config()

        if backend is None:
            backend = self._create_backend(config)

        self.backend = backend
        self.model_name = model or (config.gemini_model if config.llm_provider == "gemini" else config.llm_model)
        self.fallback_model = fallback_model if fallback_model is not None else config.llm_fallback_model
        self.malformed_retries = config.llm_malformed_retries if malformed_retries is None else malformed_retries
        self.timeouts = {
            "similarity": config.llm_similarity_timeout,
            "difference": config.llm_difference_timeout,
            "generation": config.llm_generation_timeout,
            "update": config.llm_generation_timeout,
            "classification": config.llm_classification_timeout,
        }

    @staticmethod
    def _create_backend(config):
        provider = config.llm_provider.lower()
        if provider == "ollama":
            logger.info(f"Using Ollama inference at {config.ollama_url}")
            return OllamaBackend(config.ollama_url)
        if provider == "gemini":
            logger.info(f"Using Gemini inference on Vertex AI ({config.gemini_location})")
            return GeminiBackend(config.google_cloud_project, config.gemini_location)
        raise ValueError(f"Unsupported LLM provider: {config.llm_provider}")

    def _with_timeout(self, options: GenerationOptions) -> GenerationOptions:
        timeout = self.timeouts.get(options.purpose)
        if timeout and timeout != options.timeout:
            return replace(options, timeout=timeout)
        return options

    def _models(self):
        models = [self.model_name]
        if self.fallback_model and self.fallback_model != self.model_name:
            models.append(self.fallback_model)
        return models

    def generate_text(self, prompt: str, options: GenerationOptions) -> str:
        """Send the prompt, falling back to the secondary model on transient errors."""
        options = self._with_timeout(options)
        models = self._models()

        for attempt, model in enumerate(models):
            try:
                return self.backend.generate(model, prompt, options)
            except TRANSIENT_ERRORS as e:
                if attempt + 1 < len(models):
                    logger.warning(f"⚠️ {options.purpose} call failed on {model} ({e}), retrying with {models[attempt + 1]}")
                    continue
                logger.error(f"❌ {options.purpose} call failed on {model}: {e}")
                raise

    def generate_json(self, prompt: str, options: GenerationOptions) -> Dict[str, Any]:
        """Send the prompt and return the first JSON object found in the reply."""
        attempts = 1 + max(self.malformed_retries, 0)
        last_error: Optional[MalformedResponseError] = None

        for attempt in range(attempts):
            try:
                response = self.generate_text(prompt, options)
                return extract_json_object(response)
            except MalformedResponseError as e:
                last_error = e
                logger.warning(f"Malformed {options.purpose} response (attempt {attempt + 1}/{attempts}): {e}")

        raise last_error

    def check_connection(self) -> bool:
        return self.backend.check_connection()
