"""
Shared test helpers: a scripted stand-in for anthropic.AsyncAnthropic and
builders for the response objects it returns.
"""

import copy
from types import SimpleNamespace
from typing import Any, Dict, List, Optional


def text_block(text: str):
    return SimpleNamespace(type="text", text=text)


def tool_use_block(name: str, tool_input: Dict[str, Any], block_id: str = "toolu_1"):
    return SimpleNamespace(type="tool_use", id=block_id, name=name, input=tool_input)


def make_response(*blocks, stop_reason: Optional[str] = None, input_tokens: int = 10, output_tokens: int = 5):
    if stop_reason is None:
        stop_reason = "tool_use" if any(b.type == "tool_use" for b in blocks) else "end_turn"
    return SimpleNamespace(
        id="msg_test",
        model="claude-test",
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def text_response(text: str, **kwargs):
    return make_response(text_block(text), **kwargs)


def tool_response(name: str, tool_input: Dict[str, Any], block_id: str = "toolu_1", text: Optional[str] = None):
    blocks = [text_block(text)] if text else []
    blocks.append(tool_use_block(name, tool_input, block_id))
    return make_response(*blocks)


class FakeStream:
    """Async context manager mimicking client.messages.stream()."""

    def __init__(self, response):
        self._response = response

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for block in self._response.content:
            if block.type == "text":
                yield SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(text=block.text))

    async def get_final_message(self):
        return self._response


class FakeMessages:
    def __init__(self, responses: List[Any], default: Any = None):
        self.responses = list(responses)
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def _next(self, kwargs):
        self.calls.append(copy.deepcopy(kwargs))
        if self.responses:
            response = self.responses.pop(0)
        elif self.default is not None:
            response = self.default
        else:
            raise AssertionError("FakeAnthropic ran out of scripted responses")
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(kwargs)
        return response

    async def create(self, **kwargs):
        return self._next(kwargs)

    def stream(self, **kwargs):
        return FakeStream(self._next(kwargs))


class FakeAnthropic:
    """
    Returns scripted responses in order. An Exception in the script is
    raised instead; a callable is called with the request kwargs.
    """

    def __init__(self, responses: Optional[List[Any]] = None, default: Any = None):
        self.messages = FakeMessages(responses or [], default=default)

    def script(self, *responses):
        self.messages.responses.extend(responses)

    @property
    def calls(self) -> List[Dict[str, Any]]:
        return self.messages.calls
