"""
Pytest configuration and fixtures
"""
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional, Union

import httpx
import pytest

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Never export spans from unit tests
os.environ.setdefault("ENABLE_TRACING", "false")

from context_engine.core.cancellation import CancellationToken, check_cancelled
from context_engine.core.config import Settings
from context_engine.core.errors import ModelGatewayError, classify_error
from context_engine.core.model_gateway import (ModelCallResult, ModelGateway,
                                               ModelRequest, ModelResponse)
from context_engine.models.stage import Stage, StageType

ScriptItem = Union[str, Exception, None]


class ScriptedGateway:
    """
    Stand-in for ModelGateway that answers from a script

    Each call pops the next scripted item (text, or an exception to report as
    a failed call). A responder callable, when given, is consulted first and
    may route by prompt content.
    """

    def __init__(
        self,
        responses: Optional[List[ScriptItem]] = None,
        responder: Optional[Callable[[ModelRequest], ScriptItem]] = None,
        default: ScriptItem = None,
    ):
        self.responses = list(responses or [])
        self.responder = responder
        self.default = default
        self.requests: List[ModelRequest] = []

    @property
    def call_count(self) -> int:
        return len(self.requests)

    async def try_execute(
        self,
        request: ModelRequest,
        on_chunk=None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelCallResult:
        check_cancelled(cancel_token)
        self.requests.append(request)
        if self.responder is not None:
            item = self.responder(request)
        elif self.responses:
            item = self.responses.pop(0)
        else:
            item = self.default

        if item is None:
            item = ModelGatewayError("scripted gateway has no response")
        if isinstance(item, Exception):
            return ModelCallResult.failure(item, classify_error(item))
        return ModelCallResult.success(ModelResponse(text=item, model="scripted"))


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with no backoff delay"""
    return Settings(
        _env_file=None,
        ollama_url="http://ollama.test",
        llm_retry_base_delay_seconds=0.0,
        llm_retry_max_delay_seconds=0.0,
        enable_tracing=False,
    )


@pytest.fixture
def scripted_gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def failing_gateway(settings) -> ModelGateway:
    """A real gateway whose backend always answers 503"""
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "service unavailable"})

    return ModelGateway(settings, transport=httpx.MockTransport(handler))


def make_stage(
    ordinal: int,
    stage_type: StageType = StageType.DISCOVERING,
    result: Optional[str] = None,
    prompt: str = "",
) -> Stage:
    if result is None:
        result = (
            f"Stage {ordinal} explored the problem space in detail. "
            "Discovered: response caching reduces median latency for repeated queries.\n"
            "- Important: eviction policy choice dominates cache hit ratio\n"
        )
    return Stage(
        id=f"stage-{ordinal}",
        journey_id="journey-1",
        ordinal=ordinal,
        type=stage_type,
        prompt=prompt,
        result=result,
    )


@pytest.fixture
def stage_factory():
    return make_stage


@pytest.fixture
def gateway_factory():
    return ScriptedGateway
