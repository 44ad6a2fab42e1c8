"""Turning generated request outputs into chat and completion responses.

Responses are plain dictionaries laid out like the OpenAI chat and text
completion objects, ready to be serialised by whatever transport carries
them to the client.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

Response = dict[str, Any]

_CHAT_CHUNK = "chat.completion.chunk"
_CHAT_RESULT = "chat.completion"
_TEXT_COMPLETION = "text_completion"
_ASSISTANT = "assistant"


class StatusCode(enum.IntEnum):
    """Outcome of generating a request on an inference instance."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    RESOURCE_EXHAUSTED = 5
    UNAUTHENTICATED = 6
    UNAVAILABLE = 7
    UNIMPLEMENTED = 8


@dataclass
class Status:
    """A status code with an explanatory message."""

    code: StatusCode = StatusCode.OK
    message: str = ""

    def ok(self) -> bool:
        """Return True when the status reports success."""
        return self.code == StatusCode.OK


@dataclass
class Usage:
    """Token counts for one request."""

    num_prompt_tokens: int = 0
    num_generated_tokens: int = 0
    num_total_tokens: int = 0


@dataclass
class LogProbData:
    """The log probability of a single token."""

    token: str = ""
    token_id: int = 0
    logprob: float = 0.0
    finished_token: bool = False


@dataclass
class LogProb(LogProbData):
    """A token's log probability with the most likely alternatives."""

    top_logprobs: Optional[list[LogProbData]] = None


@dataclass
class SequenceOutput:
    """Text generated for one sequence of a request."""

    index: int = 0
    text: str = ""
    token_ids: list[int] = field(default_factory=list)
    finish_reason: Optional[str] = None
    logprobs: Optional[list[LogProb]] = None


@dataclass
class RequestOutput:
    """Everything an instance reports back for a request at one step."""

    request_id: str = ""
    service_request_id: str = ""
    status: Optional[Status] = None
    outputs: list[SequenceOutput] = field(default_factory=list)
    usage: Optional[Usage] = None
    finished: bool = False


class CallData:
    """The client side of one request: collects what is sent to it.

    Once the call is finished, or the client has gone away, every further
    write or finish is refused and returns False.
    """

    def __init__(self) -> None:
        self.responses: list[Response] = []
        self.finished = False
        self.error: Optional[tuple[Any, str]] = None
        self._cancelled = False
        self._lock = threading.Lock()

    def cancel(self) -> None:
        """Mark the client as disconnected."""
        with self._lock:
            self._cancelled = True

    def _closed(self) -> bool:
        return self.finished or self._cancelled

    def write(self, response: Response) -> bool:
        """Send one response to the client."""
        with self._lock:
            if self._closed():
                return False
            self.responses.append(response)
            return True

    def finish(self) -> bool:
        """End the call successfully."""
        with self._lock:
            if self._closed():
                return False
            self.finished = True
            return True

    def write_and_finish(self, response: Response) -> bool:
        """Send a final response and end the call."""
        with self._lock:
            if self._closed():
                return False
            self.responses.append(response)
            self.finished = True
            return True

    def finish_with_error(self, code: Any, message: str) -> bool:
        """End the call with an error status."""
        with self._lock:
            if self._closed():
                return False
            self.error = (code, message)
            self.finished = True
            return True


def _header(obj: str, request_id: str, created_time: int, model: str) -> Response:
    return {
        "object": obj,
        "id": request_id,
        "created": created_time,
        "model": model,
        "choices": [],
    }


def _usage(usage: Usage) -> dict[str, int]:
    return {
        "prompt_tokens": int(usage.num_prompt_tokens),
        "completion_tokens": int(usage.num_generated_tokens),
        "total_tokens": int(usage.num_total_tokens),
    }


def _logprob_entry(data: LogProbData) -> dict[str, Any]:
    return {"token": data.token, "token_id": data.token_id, "logprob": data.logprob}


def _chat_logprobs(logprobs: list[LogProb]) -> dict[str, Any]:
    content = []
    for lp in logprobs:
        entry = _logprob_entry(lp)
        if lp.top_logprobs is not None:
            entry["top_logprobs"] = [_logprob_entry(t) for t in lp.top_logprobs]
        content.append(entry)
    return {"content": content}


def _completion_logprobs(logprobs: list[LogProb]) -> dict[str, Any]:
    return {
        "tokens": [lp.token for lp in logprobs],
        "token_ids": [lp.token_id for lp in logprobs],
        "token_logprobs": [lp.logprob for lp in logprobs],
    }


class ResponseHandler:
    """Builds chat and completion responses and sends them to the client."""

    def send_chat_delta(
        self,
        call_data: CallData,
        first_message_sent: set[int],
        include_usage: bool,
        request_id: str,
        created_time: int,
        model: str,
        output: RequestOutput,
    ) -> bool:
        """Stream one step of a chat request as chunks.

        ``first_message_sent`` holds the sequence indexes that already got
        their opening assistant chunk and is updated in place.
        """
        for seq in output.outputs:
            index = seq.index

            if index not in first_message_sent:
                response = _header(_CHAT_CHUNK, request_id, created_time, model)
                response["choices"].append(
                    {"index": index, "delta": {"role": _ASSISTANT, "content": ""}}
                )
                first_message_sent.add(index)
                if not call_data.write(response):
                    return False

            if seq.text:
                response = _header(_CHAT_CHUNK, request_id, created_time, model)
                choice: dict[str, Any] = {"index": index}
                if seq.logprobs:
                    choice["logprobs"] = _chat_logprobs(seq.logprobs)
                choice["delta"] = {"content": seq.text}
                response["choices"].append(choice)
                if not call_data.write(response):
                    return False

            if seq.finish_reason is not None:
                response = _header(_CHAT_CHUNK, request_id, created_time, model)
                response["choices"].append(
                    {"index": index, "delta": {}, "finish_reason": seq.finish_reason}
                )
                if not call_data.write(response):
                    return False

        if include_usage and output.usage is not None:
            response = _header(_CHAT_CHUNK, request_id, created_time, model)
            response["usage"] = _usage(output.usage)
            if not call_data.write(response):
                return False

        if output.finished:
            return call_data.finish()
        return True

    def send_chat_result(
        self,
        call_data: CallData,
        request_id: str,
        created_time: int,
        model: str,
        req_output: RequestOutput,
    ) -> bool:
        """Send the complete answer to a non-streaming chat request."""
        response = _header(_CHAT_RESULT, request_id, created_time, model)
        for seq in req_output.outputs:
            choice: dict[str, Any] = {"index": seq.index}
            if seq.logprobs:
                choice["logprobs"] = _chat_logprobs(seq.logprobs)
            choice["message"] = {"role": _ASSISTANT, "content": seq.text}
            if seq.finish_reason is not None:
                choice["finish_reason"] = seq.finish_reason
            response["choices"].append(choice)

        if req_output.usage is not None:
            response["usage"] = _usage(req_output.usage)

        return call_data.write_and_finish(response)

    def send_completion_delta(
        self,
        call_data: CallData,
        include_usage: bool,
        request_id: str,
        created_time: int,
        model: str,
        output: RequestOutput,
    ) -> bool:
        """Stream one step of a text completion request as chunks."""
        for seq in output.outputs:
            if seq.text:
                response = _header(_TEXT_COMPLETION, request_id, created_time, model)
                choice: dict[str, Any] = {"index": seq.index, "text": seq.text}
                if seq.logprobs:
                    choice["logprobs"] = _completion_logprobs(seq.logprobs)
                response["choices"].append(choice)
                if not call_data.write(response):
                    return False

            if seq.finish_reason is not None:
                response = _header(_TEXT_COMPLETION, request_id, created_time, model)
                response["choices"].append(
                    {"index": seq.index, "text": "", "finish_reason": seq.finish_reason}
                )
                if not call_data.write(response):
                    return False

        if include_usage and output.usage is not None:
            response = _header(_TEXT_COMPLETION, request_id, created_time, model)
            response["usage"] = _usage(output.usage)
            if not call_data.write(response):
                return False

        if output.finished:
            return call_data.finish()
        return True

    def send_completion_result(
        self,
        call_data: CallData,
        request_id: str,
        created_time: int,
        model: str,
        req_output: RequestOutput,
    ) -> bool:
        """Send the complete answer to a non-streaming completion request."""
        response = _header(_TEXT_COMPLETION, request_id, created_time, model)
        for seq in req_output.outputs:
            choice: dict[str, Any] = {"index": seq.index, "text": seq.text}
            if seq.logprobs:
                choice["logprobs"] = _completion_logprobs(seq.logprobs)
            if seq.finish_reason is not None:
                choice["finish_reason"] = seq.finish_reason
            response["choices"].append(choice)

        if req_output.usage is not None:
            response["usage"] = _usage(req_output.usage)

        return call_data.write_and_finish(response)