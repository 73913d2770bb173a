"""
Agent loop

One conversation turn as an async generator. The model is called with the
conversation and the agent's tools; every tool it asks for is run and the
results go back to it, until it answers without asking for tools or the
iteration budget runs out. In the latter case it gets one last call, without
tools, to sum up.

The loop yields events as it goes and always ends with exactly one
AgentFinished (AgentComplete, AgentCancelled or AgentError) carrying the full
text, every ToolCall and the AgentTrace. AgentService turns those into a
ChatResponse or SSE frames and writes the turn to the agent's memory and
tool log tables.
"""

import asyncio
import copy
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional, Union

import anthropic
from sqlalchemy.ext.asyncio import AsyncSession

from agentable.config.llm_models import supports_temperature
from agentable.schemas.agent import AgentIteration, AgentTrace, TokenUsage, ToolCall, ToolDefinition
from agentable.tools.executor import ToolOutcome, iterate_tool
from agentable.tools.registry import ToolConfig, ToolProgress, tools_to_anthropic_format

logger = logging.getLogger(__name__)

# Context key under which tools find the turn's CancellationToken
CANCELLATION_KEY = "_cancellation_token"

FINAL_SUMMARY_PROMPT = (
    "You have used all the tool calls available for this turn. "
    "Answer now from the tool results above, without calling any more tools."
)


class CancellationToken:
    """Set by the caller (or a tool) to stop the loop at its next checkpoint."""

    def __init__(self):
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def check(self) -> None:
        if self._cancelled:
            raise asyncio.CancelledError("Agent turn cancelled")


# =============================================================================
# Events
# =============================================================================

@dataclass
class AgentEvent:
    pass


@dataclass
class AgentThinking(AgentEvent):
    message: str


@dataclass
class AgentTextDelta(AgentEvent):
    """A chunk of streamed text (stream_text=True)."""
    text: str


@dataclass
class AgentMessage(AgentEvent):
    """The text of one whole model response (stream_text=False)."""
    text: str
    iteration: int


@dataclass
class AgentToolStart(AgentEvent):
    tool_name: str
    tool_input: Dict[str, Any]
    tool_use_id: str


@dataclass
class AgentToolProgress(AgentEvent):
    tool_name: str
    stage: str
    message: str
    progress: float


@dataclass
class AgentToolComplete(AgentEvent):
    call: ToolCall


@dataclass
class AgentFinished(AgentEvent):
    text: str
    tool_calls: List[ToolCall]
    trace: AgentTrace


@dataclass
class AgentComplete(AgentFinished):
    pass


@dataclass
class AgentCancelled(AgentFinished):
    pass


@dataclass
class AgentError(AgentFinished):
    error: str = ""


# =============================================================================
# Turn state
# =============================================================================

class _Turn:
    """Everything one run of the loop accumulates: text, tool calls, usage and trace iterations."""

    def __init__(
        self,
        model: str,
        max_tokens: int,
        max_iterations: int,
        temperature: float,
        system_prompt: str,
        tools: Dict[str, ToolConfig],
        context: Dict[str, Any],
        messages: List[Dict],
    ):
        self.trace_id = str(uuid.uuid4())
        self.text = ""
        self.tool_calls: List[ToolCall] = []
        self.usage = TokenUsage()
        self.iterations: List[AgentIteration] = []

        self._started = time.monotonic()
        self._config = {
            "model": model,
            "max_tokens": max_tokens,
            "max_iterations": max_iterations,
            "temperature": temperature,
            "system_prompt": system_prompt,
            "tools": [
                ToolDefinition(name=t.name, description=t.description, input_schema=t.input_schema)
                for t in tools.values()
            ],
            # Underscore keys hold live objects (the cancellation token)
            "context": {k: _jsonable(v) for k, v in context.items() if not k.startswith("_")},
            "initial_messages": copy.deepcopy(messages),
        }

    def add_usage(self, response: Any) -> TokenUsage:
        usage = TokenUsage(
            input_tokens=getattr(response.usage, "input_tokens", 0) or 0,
            output_tokens=getattr(response.usage, "output_tokens", 0) or 0,
        )
        self.usage.input_tokens += usage.input_tokens
        self.usage.output_tokens += usage.output_tokens
        return usage

    def end_paragraph(self) -> bool:
        """Separate the text of consecutive responses. True when a separator was added."""
        if self.text and not self.text.endswith("\n\n"):
            self.text += "\n\n"
            return True
        return False

    def record(
        self,
        iteration: int,
        sent: List[Dict],
        response: Any,
        usage: TokenUsage,
        api_call_ms: int,
        calls: Optional[List[ToolCall]] = None,
    ) -> None:
        calls = calls or []
        self.iterations.append(AgentIteration(
            iteration=iteration,
            messages_to_model=sent,
            response_content=_content_blocks(response),
            stop_reason=response.stop_reason or ("tool_use" if calls else "end_turn"),
            usage=usage,
            api_call_ms=api_call_ms,
            tool_calls=calls,
        ))
        self.tool_calls.extend(calls)

    def finish(self, event_type, outcome: str, error_message: Optional[str] = None, **fields) -> AgentFinished:
        peak = max((it.usage.input_tokens for it in self.iterations), default=0)
        trace = AgentTrace(
            trace_id=self.trace_id,
            **self._config,
            iterations=self.iterations,
            final_text=self.text,
            total_iterations=len(self.iterations),
            outcome=outcome,
            error_message=error_message,
            total_input_tokens=self.usage.input_tokens,
            total_output_tokens=self.usage.output_tokens,
            total_duration_ms=int((time.monotonic() - self._started) * 1000),
            peak_input_tokens=peak or None,
        )
        return event_type(text=self.text, tool_calls=list(self.tool_calls), trace=trace, **fields)


# =============================================================================
# Loop
# =============================================================================

async def run_agent_loop(
    client: anthropic.AsyncAnthropic,
    model: str,
    max_tokens: int,
    max_iterations: int,
    system_prompt: str,
    messages: List[Dict],
    tools: Dict[str, ToolConfig],
    db: AsyncSession,
    context: Optional[Dict[str, Any]] = None,
    cancellation_token: Optional[CancellationToken] = None,
    stream_text: bool = False,
    temperature: float = 0.7,
) -> AsyncGenerator[AgentEvent, None]:
    """
    Run one turn. `messages` must end with the user's message and is
    extended in place with the assistant/tool exchanges.

    Tools receive `context` plus the cancellation token under CANCELLATION_KEY.
    `temperature` is left out for models that do not accept it.
    """
    context = dict(context or {})
    token = cancellation_token or CancellationToken()
    context.setdefault(CANCELLATION_KEY, token)

    turn = _Turn(model, max_tokens, max_iterations, temperature, system_prompt, tools, context, messages)
    request: Dict[str, Any] = {
        "model": model,
        "max_tokens": max_tokens,
        "system": system_prompt,
        "messages": messages,
    }
    if supports_temperature(model):
        request["temperature"] = temperature
    if tools:
        request["tools"] = tools_to_anthropic_format(list(tools.values()))
    logger.info(f"Agent turn {turn.trace_id}: model={model} tools={sorted(tools)}")

    yield AgentThinking(message="Starting...")

    try:
        for iteration in range(1, max_iterations + 1):
            if token.is_cancelled:
                yield turn.finish(AgentCancelled, "cancelled")
                return

            sent = copy.deepcopy(messages)
            started = time.monotonic()
            response = None
            async for item in _ask_model(client, request, stream_text, token):
                if isinstance(item, str):
                    turn.text += item
                    yield AgentTextDelta(text=item)
                else:
                    response = item
            api_call_ms = int((time.monotonic() - started) * 1000)
            usage = turn.add_usage(response)

            if not stream_text:
                text = _response_text(response)
                if text:
                    turn.text += text
                    yield AgentMessage(text=text, iteration=iteration)

            token.check()

            tool_uses = [b for b in response.content if b.type == "tool_use"]
            if not tool_uses:
                turn.record(iteration, sent, response, usage, api_call_ms)
                logger.info(f"Agent turn {turn.trace_id} answered after {iteration} model calls")
                yield turn.finish(AgentComplete, "complete")
                return

            calls: List[ToolCall] = []
            for block in tool_uses:
                async for event in _run_tool(block, tools, db, context, token):
                    if isinstance(event, AgentToolComplete):
                        calls.append(event.call)
                    yield event
            turn.record(iteration, sent, response, usage, api_call_ms, calls)

            messages.append({"role": "assistant", "content": _content_blocks(response)})
            messages.append({"role": "user", "content": [c.to_result_block() for c in calls]})

            if turn.end_paragraph() and stream_text:
                yield AgentTextDelta(text="\n\n")

        logger.warning(f"Agent turn {turn.trace_id} used all {max_iterations} iterations; asking for a final answer")
        messages.append({"role": "user", "content": FINAL_SUMMARY_PROMPT})
        final_request = {k: v for k, v in request.items() if k != "tools"}
        sent = copy.deepcopy(messages)
        turn.text = ""

        started = time.monotonic()
        response = None
        async for item in _ask_model(client, final_request, stream_text, token):
            if isinstance(item, str):
                turn.text += item
                yield AgentTextDelta(text=item)
            else:
                response = item
        if not stream_text:
            turn.text = _response_text(response)
        turn.record(
            max_iterations + 1, sent, response, turn.add_usage(response),
            int((time.monotonic() - started) * 1000),
        )
        yield turn.finish(AgentComplete, "max_iterations")

    except asyncio.CancelledError:
        logger.info(f"Agent turn {turn.trace_id} cancelled")
        yield turn.finish(AgentCancelled, "cancelled")
    except Exception as e:
        logger.error(f"Agent turn {turn.trace_id} failed: {e}", exc_info=True)
        yield turn.finish(AgentError, "error", error_message=str(e), error=describe_model_error(e))


async def _ask_model(
    client: anthropic.AsyncAnthropic,
    request: Dict[str, Any],
    stream_text: bool,
    token: CancellationToken,
) -> AsyncGenerator[Union[str, Any], None]:
    """Yield text chunks when streaming, then the final Message."""
    if not stream_text:
        yield await client.messages.create(**request)
        return

    async with client.messages.stream(**request) as stream:
        async for event in stream:
            token.check()
            if event.type == "content_block_delta":
                chunk = getattr(event.delta, "text", None)
                if chunk:
                    yield chunk
        yield await stream.get_final_message()


async def _run_tool(
    block: Any,
    tools: Dict[str, ToolConfig],
    db: AsyncSession,
    context: Dict[str, Any],
    token: CancellationToken,
) -> AsyncGenerator[AgentEvent, None]:
    """Run one tool_use block. Ends with an AgentToolComplete carrying its ToolCall."""
    tool_input = block.input or {}
    yield AgentToolStart(tool_name=block.name, tool_input=tool_input, tool_use_id=block.id)
    started = time.monotonic()

    config = tools.get(block.name)
    if config is None:
        outcome = ToolOutcome(text=f"Unknown tool: {block.name}", is_error=True)
    else:
        token.check()
        outcome = None
        async for item in iterate_tool(config, tool_input, db, context):
            token.check()
            if isinstance(item, ToolProgress):
                yield AgentToolProgress(
                    tool_name=block.name,
                    stage=item.stage,
                    message=item.message,
                    progress=item.progress,
                )
            else:
                outcome = item

    if outcome.is_error:
        logger.warning(f"Tool {block.name} failed: {outcome.text}")
    yield AgentToolComplete(call=ToolCall(
        tool_use_id=block.id,
        tool_name=block.name,
        tool_input=tool_input,
        output=outcome.text,
        data=_jsonable(outcome.data),
        is_error=outcome.is_error,
        execution_ms=int((time.monotonic() - started) * 1000),
    ))


def _response_text(response: Any) -> str:
    return "".join(b.text for b in response.content if b.type == "text")


def _content_blocks(response: Any) -> List[Dict[str, Any]]:
    blocks = []
    for b in response.content:
        if b.type == "text":
            blocks.append({"type": "text", "text": b.text})
        elif b.type == "tool_use":
            blocks.append({"type": "tool_use", "id": b.id, "name": b.name, "input": b.input})
    return blocks


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return str(value)


def describe_model_error(e: Exception) -> str:
    """Message for the caller when a turn fails, keyed on the anthropic exception type."""
    if isinstance(e, anthropic.AuthenticationError):
        return "Model API rejected the API key; check ANTHROPIC_API_KEY."
    if isinstance(e, anthropic.RateLimitError):
        return "Model API rate limit reached; try again shortly."
    if isinstance(e, anthropic.APITimeoutError):
        return "Model API request timed out."
    if isinstance(e, anthropic.APIConnectionError):
        return "Could not connect to the model API."
    if isinstance(e, anthropic.APIStatusError):
        return f"Model API error {e.status_code}: {e.message}"
    return f"{type(e).__name__}: {e}"
