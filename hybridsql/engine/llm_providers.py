# HybridSQL - LLM Provider Abstraction
# ====================================
"""
LLM Provider System
==================
Structured-output generation with a unified interface:
- Claude (Anthropic API) - Primary
- Mock (testing)

Every call names a pydantic output model. The provider asks the backend for
an object matching the model's JSON schema and validates the reply with
pydantic; anything that does not validate raises GenerationError so the
model selector can roll back to a stronger model.
"""

import os
import time
import json
import hashlib
import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .errors import GenerationError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

STRUCTURED_TOOL_NAME = "emit_result"


# =============================================================================
# CONFIGURATION
# =============================================================================

class LLMProvider(str, Enum):
    """Supported LLM providers."""
    CLAUDE = "claude"  # Primary - Cloud LLM via Anthropic API
    MOCK = "mock"      # For testing


@dataclass
class LLMConfig:
    """Configuration for the LLM provider."""
    provider: LLMProvider = LLMProvider.CLAUDE
    temperature: float = 0.1
    max_tokens: int = 2000
    timeout: int = 60
    max_retries: int = 2

    # Claude/Anthropic settings
    anthropic_api_key: Optional[str] = None
    claude_model: str = "claude-sonnet-4-20250514"

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Create config from environment variables."""
        provider_str = os.getenv("LLM_PROVIDER", "claude").lower()
        try:
            provider = LLMProvider(provider_str)
        except ValueError:
            logger.warning(f"Unknown LLM_PROVIDER '{provider_str}', defaulting to claude")
            provider = LLMProvider.CLAUDE

        return cls(
            provider=provider,
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.1")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "2000")),
            timeout=int(os.getenv("LLM_TIMEOUT_SECONDS", "60")),
            max_retries=int(os.getenv("LLM_MAX_RETRIES", "2")),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            claude_model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-20250514"),
        )


@dataclass
class StructuredRequest:
    """Request for a structured object."""
    system_prompt: str
    user_prompt: str
    output_model: Type[BaseModel]
    temperature: Optional[float] = None  # provider default when None
    model: Optional[str] = None
    max_tokens: Optional[int] = None

    def for_model(self, model: str) -> "StructuredRequest":
        """Copy of this request targeting another model."""
        return replace(self, model=model)

    @property
    def prompt_hash(self) -> str:
        return hashlib.sha256(
            f"{self.system_prompt}\n{self.user_prompt}".encode()
        ).hexdigest()[:16]


# =============================================================================
# BASE LLM PROVIDER
# =============================================================================

class BaseLLMProvider(ABC):
    """Abstract base class for LLM providers."""

    def __init__(self, config: Optional[LLMConfig] = None):
        self.config = config or LLMConfig()

    @abstractmethod
    def generate_object(self, request: StructuredRequest) -> BaseModel:
        """
        Generate an instance of request.output_model.

        Args:
            request: Structured request

        Returns:
            Validated instance of request.output_model

        Raises:
            GenerationError: On malformed output or backend fault
        """
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Check if the provider is available."""
        pass

    @abstractmethod
    def get_provider_name(self) -> str:
        pass

    def _validate(self, request: StructuredRequest, data: Any, model_name: str) -> BaseModel:
        """Validate raw output against the requested model."""
        if isinstance(data, request.output_model):
            return data
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except ValueError as e:
                raise GenerationError(model_name, f"output is not JSON: {e}") from e
        try:
            return request.output_model.model_validate(data)
        except ValidationError as e:
            raise GenerationError(
                model_name,
                f"output does not match {request.output_model.__name__}: "
                f"{e.error_count()} validation error(s)",
                {'errors': e.errors(include_url=False)}
            ) from e


# =============================================================================
# CLAUDE PROVIDER
# =============================================================================

class ClaudeProvider(BaseLLMProvider):
    """Claude provider using the Anthropic Messages API with a forced tool."""

    def __init__(self, config: LLMConfig):
        super().__init__(config)
        self.api_key = config.anthropic_api_key
        self._client = None
        self._client_lock = threading.Lock()

    def get_provider_name(self) -> str:
        return "claude"

    def _get_client(self):
        """Get or create Anthropic client."""
        with self._client_lock:
            if self._client is None:
                if not self.api_key:
                    raise ValueError(
                        "ANTHROPIC_API_KEY not set. "
                        "Please set the environment variable."
                    )
                import anthropic
                self._client = anthropic.Anthropic(
                    api_key=self.api_key,
                    timeout=float(self.config.timeout),
                    max_retries=self.config.max_retries
                )
        return self._client

    def is_available(self) -> bool:
        """Check if Claude API is available."""
        if not self.api_key:
            return False
        try:
            self._get_client()
            return True
        except Exception as e:
            logger.debug(f"Claude client unavailable: {e}")
            return False

    def generate_object(self, request: StructuredRequest) -> BaseModel:
        """Generate a structured object using a single forced tool call."""
        model = request.model or self.config.claude_model
        start_time = time.time()
        client = self._get_client()

        tool = {
            "name": STRUCTURED_TOOL_NAME,
            "description": f"Return the result as a {request.output_model.__name__} object.",
            "input_schema": request.output_model.model_json_schema(),
        }

        logger.info(
            f"Claude call: model={model}, output={request.output_model.__name__}, "
            f"prompt_hash={request.prompt_hash}"
        )

        try:
            response = client.messages.create(
                model=model,
                max_tokens=request.max_tokens or self.config.max_tokens,
                system=request.system_prompt,
                messages=[{"role": "user", "content": request.user_prompt}],
                temperature=(request.temperature if request.temperature is not None
                             else self.config.temperature),
                tools=[tool],
                tool_choice={"type": "tool", "name": STRUCTURED_TOOL_NAME},
            )
        except Exception as e:
            error_msg = str(e)
            if "authentication" in error_msg.lower() or "api key" in error_msg.lower():
                reason = f"authentication failed: {error_msg}"
            elif "rate" in error_msg.lower():
                reason = f"rate limited: {error_msg}"
            else:
                reason = f"API error: {error_msg}"
            raise GenerationError(model, reason) from e

        tool_input = None
        for block in response.content or []:
            if getattr(block, 'type', None) == "tool_use" and block.name == STRUCTURED_TOOL_NAME:
                tool_input = block.input
                break

        if tool_input is None:
            raise GenerationError(model, f"no structured output (stop_reason={response.stop_reason})")

        result = self._validate(request, tool_input, model)
        generation_time = (time.time() - start_time) * 1000
        logger.debug(f"Claude {model} produced {request.output_model.__name__} in {generation_time:.0f}ms")
        return result


# =============================================================================
# MOCK PROVIDER (for testing)
# =============================================================================

ScriptedResponse = Union[BaseModel, Dict[str, Any], Exception, Callable[[StructuredRequest], Any]]


class MockProvider(BaseLLMProvider):
    """
    Mock provider returning scripted objects per output model.

    Example:
        provider = MockProvider()
        provider.script(QueryAnalysis, {"feasibility": {...}, "routing": {...}})
        provider.script(GeneratedSQL, lambda req: GeneratedSQL(sql="SELECT 1"))
        provider.script(Vote, [vote_a, vote_b, RuntimeError("evaluator down")])

    A list is consumed in order and its last element repeats. Exceptions
    are raised; callables receive the request.
    """

    def __init__(self, config: Optional[LLMConfig] = None):
        super().__init__(config or LLMConfig(provider=LLMProvider.MOCK))
        self._scripts: Dict[Type[BaseModel], Deque[ScriptedResponse]] = {}
        self._lock = threading.Lock()
        self.calls: List[StructuredRequest] = []

    def get_provider_name(self) -> str:
        return "mock"

    def is_available(self) -> bool:
        return True

    def script(self, output_model: Type[BaseModel],
               response: Union[ScriptedResponse, List[ScriptedResponse]]) -> "MockProvider":
        """Set the response(s) for an output model."""
        responses = response if isinstance(response, list) else [response]
        with self._lock:
            self._scripts[output_model] = deque(responses)
        return self

    def calls_for(self, output_model: Type[BaseModel]) -> List[StructuredRequest]:
        with self._lock:
            return [c for c in self.calls if c.output_model is output_model]

    def generate_object(self, request: StructuredRequest) -> BaseModel:
        model = request.model or "mock-model"
        with self._lock:
            self.calls.append(request)
            queue = self._scripts.get(request.output_model)
            if not queue:
                raise GenerationError(
                    model, f"no scripted response for {request.output_model.__name__}"
                )
            response = queue.popleft() if len(queue) > 1 else queue[0]

        if isinstance(response, Exception):
            raise response
        if callable(response) and not isinstance(response, BaseModel):
            response = response(request)
        return self._validate(request, response, model)


# =============================================================================
# PROVIDER FACTORY
# =============================================================================

def create_llm_provider(config: Optional[LLMConfig] = None) -> BaseLLMProvider:
    """
    Create an LLM provider based on configuration.

    Args:
        config: LLM configuration (uses env vars if not provided)

    Returns:
        Configured LLM provider (Claude or Mock)
    """
    if config is None:
        config = LLMConfig.from_env()

    logger.info(f"Creating LLM provider: {config.provider.value}")

    if config.provider == LLMProvider.MOCK:
        return MockProvider(config)

    provider = ClaudeProvider(config)
    if not provider.is_available():
        logger.error("Claude API not available - check ANTHROPIC_API_KEY")
        raise ValueError(
            "Claude API key not configured. "
            "Please set ANTHROPIC_API_KEY in your environment."
        )
    return provider
