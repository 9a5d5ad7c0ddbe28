"""
Model gateway: uniform request/response access to an Ollama-compatible chat backend

Owns the retry/backoff policy and response parsing (deliberation trace,
usage counters, fenced-block artifacts). It knows nothing about journeys or
stages; callers build prompts and interpret the text.
"""
import asyncio
import json
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, TypeVar

import httpx
from pydantic import BaseModel, Field

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.config import Settings
from context_engine.core.errors import (ErrorKind, ModelGatewayError,
                                        PipelineCancelled, classify_error,
                                        is_transient)
from context_engine.core.logging_config import LoggingConfig
from context_engine.core.response_parsing import extract_artifacts
from context_engine.core.tracing import add_span_attributes, get_tracer
from context_engine.models.artifact import Artifact

logger = LoggingConfig.get_logger(__name__)

T = TypeVar("T")


class ModelRole(str, Enum):
    """Model selector; each role maps to a configured model name"""
    FAST = "fast"
    BALANCED = "balanced"
    DEEP = "deep"


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ModelRequest(BaseModel):
    """Request sent through the gateway"""
    prompt: str
    role: ModelRole = ModelRole.BALANCED
    model: Optional[str] = Field(default=None, description="Explicit model name, overrides role")
    max_output_tokens: int = Field(default=2000, ge=1)
    extended_deliberation: bool = False
    deliberation_budget: Optional[int] = Field(default=None, ge=0)
    stream: bool = False
    system_prompt: Optional[str] = None
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)


class ModelResponse(BaseModel):
    """Final response returned by the gateway"""
    text: str
    deliberation_trace: Optional[str] = None
    artifacts: List[Artifact] = Field(default_factory=list)
    usage: Usage = Field(default_factory=Usage)
    model: str = ""
    duration_ms: float = 0.0


class StreamChunk(BaseModel):
    """Stream delta forwarded to callers; "reset" means discard everything received so far"""
    type: Literal["content", "deliberation", "reset"]
    content: str
    is_complete: bool = False


class StreamPhase(str, Enum):
    IDLE = "idle"
    DELIBERATING = "deliberating"
    RESPONDING = "responding"
    COMPLETE = "complete"


class StreamAccumulator:
    """
    Incremental state over inbound stream events

    Transitions: idle -> deliberating -> responding -> complete; deliberation
    may be skipped. Text and deliberation deltas are concatenated separately.
    """

    def __init__(self):
        self.phase = StreamPhase.IDLE
        self._text_parts: List[str] = []
        self._deliberation_parts: List[str] = []
        self.usage = Usage()

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def deliberation(self) -> Optional[str]:
        joined = "".join(self._deliberation_parts)
        return joined or None

    def feed(self, event: Dict[str, Any]) -> List[StreamChunk]:
        """
        Apply one stream event

        Args:
            event: Decoded NDJSON event from the backend

        Returns:
            Chunks to forward to the caller's callback
        """
        if self.phase == StreamPhase.COMPLETE:
            raise ModelGatewayError("Received stream event after completion")

        if event.get("error"):
            message = str(event["error"])
            kind = ErrorKind.TRANSIENT_NETWORK if is_transient(RuntimeError(message)) else ErrorKind.UNKNOWN
            raise ModelGatewayError(f"Backend stream error: {message}", kind=kind)

        chunks: List[StreamChunk] = []
        message = event.get("message") or {}

        thinking = message.get("thinking")
        if thinking:
            if self.phase == StreamPhase.RESPONDING:
                logger.debug("Deliberation delta received after response text started")
            else:
                self.phase = StreamPhase.DELIBERATING
            self._deliberation_parts.append(thinking)
            chunks.append(StreamChunk(type="deliberation", content=thinking))

        content = message.get("content")
        if content:
            if self.phase == StreamPhase.DELIBERATING:
                chunks.append(StreamChunk(type="deliberation", content="", is_complete=True))
            self.phase = StreamPhase.RESPONDING
            self._text_parts.append(content)
            chunks.append(StreamChunk(type="content", content=content))

        if event.get("done"):
            self.usage = Usage(
                input_tokens=int(event.get("prompt_eval_count") or 0),
                output_tokens=int(event.get("eval_count") or 0),
            )
            self.phase = StreamPhase.COMPLETE
            chunks.append(StreamChunk(type="content", content="", is_complete=True))

        return chunks

    def ensure_complete(self):
        """Raise if the stream closed before the final event"""
        if self.phase != StreamPhase.COMPLETE:
            raise ModelGatewayError(
                f"Stream ended before completion (phase={self.phase.value})",
                kind=ErrorKind.TRANSIENT_NETWORK,
            )


class ModelCallResult:
    """Success/failure value returned by ModelGateway.try_execute"""

    def __init__(
        self,
        response: Optional[ModelResponse] = None,
        error: Optional[BaseException] = None,
        error_kind: Optional[ErrorKind] = None,
    ):
        self.response = response
        self.error = error
        self.error_kind = error_kind

    @property
    def ok(self) -> bool:
        return self.response is not None

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error is not None else ""

    @classmethod
    def success(cls, response: ModelResponse) -> "ModelCallResult":
        return cls(response=response)

    @classmethod
    def failure(cls, error: BaseException, kind: ErrorKind) -> "ModelCallResult":
        return cls(error=error, error_kind=kind)


ChunkCallback = Callable[[StreamChunk], None]


class ModelGateway:
    """
    Client for the model backend with retry on transient network errors

    No state is shared between calls apart from the pooled HTTP client.
    """

    def __init__(
        self,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the gateway

        Args:
            settings: Backend URL, model names, timeouts and retry policy
            transport: Optional httpx transport (tests inject httpx.MockTransport)
        """
        self.settings = settings
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.tracer = get_tracer(__name__)

    @property
    def max_attempts(self) -> int:
        return self.settings.llm_max_retries

    def resolve_model(self, request: ModelRequest) -> str:
        """Select the concrete model name for a request"""
        if request.model:
            return request.model.strip()
        return {
            ModelRole.FAST: self.settings.model_fast,
            ModelRole.BALANCED: self.settings.model_balanced,
            ModelRole.DEEP: self.settings.model_deep,
        }[request.role]

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt"""
        delay = self.settings.llm_retry_base_delay_seconds * (2 ** (attempt - 1))
        return min(delay, self.settings.llm_retry_max_delay_seconds)

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create the pooled HTTP client"""
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.settings.ollama_api_key:
                headers["Authorization"] = f"Bearer {self.settings.ollama_api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.settings.ollama_url,
                timeout=self.settings.llm_timeout_seconds,
                headers=headers,
                transport=self._transport,
                limits=httpx.Limits(
                    max_keepalive_connections=5,
                    max_connections=10,
                ),
            )
        return self._client

    def _build_payload(self, request: ModelRequest, model: str, stream: bool) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        # The backend has no separate deliberation budget; it shares num_predict
        num_predict = request.max_output_tokens
        if request.extended_deliberation:
            budget = request.deliberation_budget
            if budget is None:
                budget = self.settings.deliberation_budget_default
            num_predict += budget

        temperature = request.temperature
        if temperature is None:
            temperature = self.settings.llm_temperature

        return {
            "model": model,
            "messages": messages,
            "stream": stream,
            "think": request.extended_deliberation,
            "options": {
                "num_predict": num_predict,
                "temperature": temperature,
            },
        }

    async def execute(
        self,
        request: ModelRequest,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelResponse:
        """
        Execute a request against the backend

        Transient network errors are retried with exponential backoff up to
        the configured number of attempts; other errors, and the last
        transient error after exhaustion, propagate unchanged. A retried
        stream restarts from scratch: on_chunk first receives a "reset"
        chunk, then the deltas of the new attempt.

        Args:
            request: Prompt, model selector and output options
            on_chunk: Callback for stream deltas (streaming requests only)
            cancel_token: Optional cancellation token

        Returns:
            ModelResponse
        """
        model = self.resolve_model(request)
        with self.tracer.start_as_current_span("model_gateway.execute") as span:
            add_span_attributes(
                span,
                model=model,
                stream=request.stream,
                extended_deliberation=request.extended_deliberation,
                max_output_tokens=request.max_output_tokens,
            )
            if request.stream:
                streams_started = 0

                async def operation() -> ModelResponse:
                    nonlocal streams_started
                    if streams_started and on_chunk is not None:
                        on_chunk(StreamChunk(type="reset", content=""))
                    streams_started += 1
                    return await self._execute_stream(request, model, on_chunk, cancel_token)
            else:
                operation = lambda: self._execute_once(request, model, cancel_token)

            response = await self._with_retry(operation, model, cancel_token)
            add_span_attributes(
                span,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            )
            return response

    async def try_execute(
        self,
        request: ModelRequest,
        on_chunk: Optional[ChunkCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelCallResult:
        """
        Execute a request and return the outcome as data

        Only PipelineCancelled escapes; every backend failure becomes a
        failed ModelCallResult carrying the classified error kind.
        """
        try:
            response = await self.execute(request, on_chunk=on_chunk, cancel_token=cancel_token)
        except PipelineCancelled:
            raise
        except Exception as e:
            kind = classify_error(e)
            logger.warning(
                f"Model call failed ({kind.value}): {e}",
                extra={"error_kind": kind.value, "model": self.resolve_model(request)},
            )
            return ModelCallResult.failure(e, kind)
        return ModelCallResult.success(response)

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        model: str,
        cancel_token: Optional[CancellationToken],
    ) -> T:
        for attempt in range(1, self.max_attempts + 1):
            check_cancelled(cancel_token)
            try:
                return await operation()
            except PipelineCancelled:
                raise
            except Exception as e:
                if not is_transient(e):
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        f"Network error persisted after {self.max_attempts} attempts for model {model}: {e}"
                    )
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    f"Network error on attempt {attempt}/{self.max_attempts} for model {model}, "
                    f"retrying in {delay:.1f}s: {e}"
                )
                if cancel_token is not None:
                    await cancel_token.sleep(delay)
                else:
                    await asyncio.sleep(delay)
        raise ModelGatewayError(f"Failed to execute request after {self.max_attempts} attempts")

    async def _execute_once(
        self,
        request: ModelRequest,
        model: str,
        cancel_token: Optional[CancellationToken],
    ) -> ModelResponse:
        payload = self._build_payload(request, model, stream=False)
        client = self._get_client()

        logger.info(f"Sending request to {self.settings.ollama_url}/api/chat with model={model}")
        started = time.monotonic()
        response = await client.post("/api/chat", json=payload)
        response.raise_for_status()
        check_cancelled(cancel_token)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ModelGatewayError(f"Backend returned non-JSON body: {e}") from e

        if data.get("error"):
            raise ModelGatewayError(f"Backend error: {data['error']}")

        message = data.get("message") or {}
        text = message.get("content") or ""
        duration_ms = (time.monotonic() - started) * 1000
        logger.info(f"Response received from {model} in {duration_ms:.0f}ms")

        return ModelResponse(
            text=text,
            deliberation_trace=message.get("thinking") or None,
            artifacts=extract_artifacts(text),
            usage=Usage(
                input_tokens=int(data.get("prompt_eval_count") or 0),
                output_tokens=int(data.get("eval_count") or 0),
            ),
            model=model,
            duration_ms=duration_ms,
        )

    async def _execute_stream(
        self,
        request: ModelRequest,
        model: str,
        on_chunk: Optional[ChunkCallback],
        cancel_token: Optional[CancellationToken],
    ) -> ModelResponse:
        payload = self._build_payload(request, model, stream=True)
        client = self._get_client()
        accumulator = StreamAccumulator()

        logger.info(f"Starting streaming request with model={model}")
        started = time.monotonic()
        async with client.stream("POST", "/api/chat", json=payload) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                check_cancelled(cancel_token)
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping undecodable stream line: {line[:80]}")
                    continue
                for chunk in accumulator.feed(event):
                    if on_chunk is not None:
                        on_chunk(chunk)
        accumulator.ensure_complete()

        text = accumulator.text
        duration_ms = (time.monotonic() - started) * 1000
        logger.info(f"Stream from {model} completed in {duration_ms:.0f}ms")

        return ModelResponse(
            text=text,
            deliberation_trace=accumulator.deliberation,
            artifacts=extract_artifacts(text),
            usage=accumulator.usage,
            model=model,
            duration_ms=duration_ms,
        )

    async def health_check(self) -> bool:
        """Check if the backend answers its model listing endpoint"""
        try:
            response = await self._get_client().get("/api/tags", timeout=5.0)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    async def aclose(self):
        """Close the pooled HTTP client"""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ModelGateway":
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()
