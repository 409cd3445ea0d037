"""
Clients for the external scene analysis service.

Two interchangeable implementations of the AnalysisService protocol:

- HttpAnalysisService posts the camelCase request contract to a remote JSON
  endpoint;
- OpenAIAnalysisService calls an LLM directly in JSON mode.

Both translate transport problems into AnalysisServiceError (or
AnalysisTimeoutError) and shape problems into AnalysisSchemaError, so the
orchestrator only ever sees AnalysisFailure subclasses for retryable faults.
"""

from typing import Optional, Protocol, runtime_checkable

import httpx
import openai

from scenebreak.analysis.prompts import SCENE_ANALYSIS_SYSTEM_PROMPT, build_user_prompt
from scenebreak.analysis.schema import parse_analysis_payload
from scenebreak.config import Settings, get_settings
from scenebreak.models import AnalysisRequest, AnalysisResult
from scenebreak.utils.errors import (
    AnalysisServiceError,
    AnalysisTimeoutError,
    ConfigurationError,
    MissingConfigurationError,
)
from scenebreak.utils.logging import get_logger, log_performance

logger = get_logger(__name__)

MAX_ERROR_BODY = 300


@runtime_checkable
class AnalysisService(Protocol):
    """Anything that turns an AnalysisRequest into a validated AnalysisResult."""

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        ...


class HttpAnalysisService:
    """Remote analysis endpoint over HTTP."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.url = url or self.settings.analysis_service_url
        if not self.url:
            raise MissingConfigurationError("SCENEBREAK_ANALYSIS_SERVICE_URL")
        self.api_key = api_key or self.settings.analysis_api_key
        self.timeout = timeout or self.settings.analysis_timeout_seconds

        # Client will be initialized lazily
        self._client = client

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(headers=headers, timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpAnalysisService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @log_performance
    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        client = self._ensure_client()
        try:
            response = await client.post(self.url, json=request.to_wire())
        except httpx.TimeoutException:
            raise AnalysisTimeoutError(request.scene_number, self.timeout)
        except httpx.HTTPError as e:
            raise AnalysisServiceError(f"Analysis service request failed: {e}")

        if not response.is_success:
            raise AnalysisServiceError(
                f"Analysis service returned {response.status_code}: "
                f"{response.text[:MAX_ERROR_BODY]}",
                status_code=response.status_code,
            )
        return parse_analysis_payload(response.text)


class OpenAIAnalysisService:
    """Direct LLM analysis through the OpenAI SDK."""

    def __init__(
        self,
        model_name: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: Optional[int] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        """
        Initialize the service.

        Args:
            model_name: Chat model used for analysis
            temperature: Generation temperature
            max_tokens: Completion token limit
            settings: Settings override
        """
        self.settings = settings or get_settings()
        self.model_name = model_name or self.settings.analysis_model
        self.temperature = temperature
        self.max_tokens = max_tokens or self.settings.analysis_max_tokens

        # LLM client will be initialized lazily
        self._llm_client = None

    def _ensure_llm_client(self) -> None:
        """Ensure LLM client is initialized."""
        if self._llm_client is None:
            if not self.settings.openai_api_key:
                raise MissingConfigurationError("OPENAI_API_KEY")
            try:
                self._llm_client = openai.AsyncOpenAI(
                    api_key=self.settings.openai_api_key,
                    timeout=self.settings.analysis_timeout_seconds,
                    max_retries=0,
                )
            except Exception as e:
                raise ConfigurationError(f"Failed to initialize OpenAI client: {str(e)}")

    async def aclose(self) -> None:
        if self._llm_client is not None:
            await self._llm_client.close()
            self._llm_client = None

    async def __aenter__(self) -> "OpenAIAnalysisService":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    @log_performance
    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        self._ensure_llm_client()
        messages = [
            {"role": "system", "content": SCENE_ANALYSIS_SYSTEM_PROMPT},
            {"role": "user", "content": build_user_prompt(request)},
        ]

        try:
            response = await self._llm_client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                response_format={"type": "json_object"},
            )
        except openai.APITimeoutError:
            raise AnalysisTimeoutError(request.scene_number, self.settings.analysis_timeout_seconds)
        except openai.APIStatusError as e:
            raise AnalysisServiceError(f"LLM request rejected: {e.message}", status_code=e.status_code)
        except openai.APIConnectionError as e:
            raise AnalysisServiceError(f"LLM connection failed: {e}")

        content = response.choices[0].message.content or ""
        return parse_analysis_payload(content)


def build_analysis_service(settings: Optional[Settings] = None) -> AnalysisService:
    """HTTP service when a URL is configured, otherwise the direct LLM client."""
    settings = settings or get_settings()
    if settings.analysis_service_url:
        return HttpAnalysisService(settings=settings)
    if settings.openai_api_key:
        return OpenAIAnalysisService(settings=settings)
    raise MissingConfigurationError("SCENEBREAK_ANALYSIS_SERVICE_URL or OPENAI_API_KEY")
