"""The dispatch service: instance registry front end and output routing.

``XllmRpcServiceImpl`` keeps the instance manager and routes generated
outputs back to the clients that asked for them. ``XllmRpcService`` is the
RPC surface. It takes requests as plain dictionaries shaped like the wire
messages and returns replies in the same form.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional

from xllm_dispatch.etcd_client import KeyValueStore
from xllm_dispatch.instance_mgr import InstanceMgr
from xllm_dispatch.response_handler import (
    CallData,
    LogProb,
    LogProbData,
    RequestOutput,
    ResponseHandler,
    SequenceOutput,
    Status,
    StatusCode,
    Usage,
)
from xllm_dispatch.types import (
    ErrorCode,
    InstanceMetaInfo,
    InstancesPair,
    InstanceType,
    RpcServiceConfig,
)

logger = logging.getLogger(__name__)

OutputCallback = Callable[[RequestOutput], bool]

DEFAULT_OUTPUT_THREADS = 128
_TRUE_WORDS = frozenset({"1", "true", "yes", "on"})


class GrpcStatusCode(enum.IntEnum):
    """Status codes reported to clients when a call ends."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


_GRPC_BY_STATUS = {
    StatusCode.OK: GrpcStatusCode.OK,
    StatusCode.CANCELLED: GrpcStatusCode.CANCELLED,
    StatusCode.UNKNOWN: GrpcStatusCode.UNKNOWN,
    StatusCode.INVALID_ARGUMENT: GrpcStatusCode.INVALID_ARGUMENT,
    StatusCode.DEADLINE_EXCEEDED: GrpcStatusCode.DEADLINE_EXCEEDED,
    StatusCode.RESOURCE_EXHAUSTED: GrpcStatusCode.RESOURCE_EXHAUSTED,
    StatusCode.UNAUTHENTICATED: GrpcStatusCode.UNAUTHENTICATED,
    StatusCode.UNAVAILABLE: GrpcStatusCode.UNAVAILABLE,
    StatusCode.UNIMPLEMENTED: GrpcStatusCode.UNIMPLEMENTED,
}


def to_grpc_status_code(code: Any) -> GrpcStatusCode:
    """Map a generation status code to the client-facing status code."""
    try:
        return _GRPC_BY_STATUS[StatusCode(code)]
    except (ValueError, KeyError):
        logger.warning("Unknown status code: %s", code)
        return GrpcStatusCode.UNKNOWN


def _get_bool_env(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_WORDS


@dataclass
class ServiceConfig:
    """Settings the service reports to instances."""

    enable_decode_response_to_service: bool = False


class XllmRpcServiceImpl:
    """Instance management plus routing of generated outputs to clients.

    Outputs of one request are always handled on the same worker thread,
    so their order is preserved.
    """

    def __init__(
        self,
        config: RpcServiceConfig,
        store: Optional[KeyValueStore] = None,
        *,
        start_detector: bool = True,
        num_output_threads: int = DEFAULT_OUTPUT_THREADS,
    ) -> None:
        if num_output_threads <= 0:
            raise ValueError("num_output_threads must be positive")
        self._enable_decode_response_to_service = _get_bool_env(
            "ENABLE_DECODE_RESPONSE_TO_SERVICE", False
        )
        self._instance_mgr = InstanceMgr(config, store, start_detector=start_detector)
        self._response_handler = ResponseHandler()

        self._callbacks: dict[str, OutputCallback] = {}
        self._callback_lock = threading.Lock()

        self._executors = [
            ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"output-{i}")
            for i in range(num_output_threads)
        ]
        self._thread_of_request: dict[str, int] = {}
        self._next_thread = 0
        self._thread_map_lock = threading.Lock()

    def __enter__(self) -> XllmRpcServiceImpl:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Wait for pending outputs to be delivered and stop all workers."""
        for executor in self._executors:
            executor.shutdown(wait=True)
        self._instance_mgr.close()

    def heartbeat(self, instance_name: str) -> ErrorCode:
        return self._instance_mgr.heartbeat(instance_name)

    def register_instance(
        self, instance_name: str, metainfo: InstanceMetaInfo
    ) -> ErrorCode:
        return self._instance_mgr.register_instance(instance_name, metainfo)

    def update_instance_metainfo(
        self, instance_name: str, metainfo: InstanceMetaInfo
    ) -> ErrorCode:
        return self._instance_mgr.update_instance_metainfo(instance_name, metainfo)

    def get_instance_info(self, instance_name: str) -> InstanceMetaInfo:
        return self._instance_mgr.get_instance_info(instance_name)

    def select_instances_pair(self, only_prefill: bool = False) -> InstancesPair:
        return self._instance_mgr.select_instances_pair(only_prefill)

    def get_static_decode_list(self, instance_name: str) -> list[str]:
        return self._instance_mgr.get_static_decode_list(instance_name)

    def get_config(self) -> ServiceConfig:
        return ServiceConfig(self._enable_decode_response_to_service)

    def handle_generation(self, request_output: RequestOutput) -> bool:
        """Queue an output for delivery; return False if the request is unknown."""
        request_id = request_output.service_request_id
        with self._callback_lock:
            callback = self._callbacks.get(request_id)
        if callback is None:
            logger.error(
                "Can not found the callback for the received request output, "
                "request id is: %s",
                request_id,
            )
            return False

        with self._thread_map_lock:
            thread_idx = self._thread_of_request.get(request_id)
        if thread_idx is None:
            logger.error(
                "Can not found the thread for the received request output, "
                "request id is: %s",
                request_id,
            )
            return False

        def deliver() -> None:
            if not callback(request_output) or request_output.finished:
                self.finish_request(request_id)

        self._executors[thread_idx].submit(deliver)
        return True

    def finish_request(self, service_request_id: str) -> None:
        """Forget a request's callback and worker assignment."""
        with self._callback_lock:
            self._callbacks.pop(service_request_id, None)
        with self._thread_map_lock:
            self._thread_of_request.pop(service_request_id, None)

    def _record(self, service_request_id: str, callback: OutputCallback) -> bool:
        with self._callback_lock:
            if service_request_id in self._callbacks:
                logger.error(
                    "The request ID already exists. Requests with the same ID "
                    "are not allowed. %s",
                    service_request_id,
                )
                return False
            self._callbacks[service_request_id] = callback
        with self._thread_map_lock:
            self._thread_of_request[service_request_id] = self._next_thread
            self._next_thread = (self._next_thread + 1) % len(self._executors)
        return True

    @staticmethod
    def _failed(call_data: CallData, req_output: RequestOutput) -> Optional[bool]:
        status = req_output.status
        if status is not None and not status.ok():
            return call_data.finish_with_error(
                to_grpc_status_code(status.code), status.message
            )
        return None

    def record_chat_request(
        self,
        call_data: CallData,
        service_request_id: str,
        stream: bool,
        model: str,
        include_usage: bool,
    ) -> bool:
        """Register a chat request whose outputs will arrive later."""
        first_message_sent: set[int] = set()
        created_time = int(time.time())
        handler = self._response_handler

        def callback(req_output: RequestOutput) -> bool:
            failed = self._failed(call_data, req_output)
            if failed is not None:
                return failed
            if stream:
                return handler.send_chat_delta(
                    call_data,
                    first_message_sent,
                    include_usage,
                    service_request_id,
                    created_time,
                    model,
                    req_output,
                )
            return handler.send_chat_result(
                call_data, service_request_id, created_time, model, req_output
            )

        return self._record(service_request_id, callback)

    def record_completion_request(
        self,
        call_data: CallData,
        service_request_id: str,
        stream: bool,
        model: str,
        include_usage: bool,
    ) -> bool:
        """Register a text completion request whose outputs will arrive later."""
        created_time = int(time.time())
        handler = self._response_handler

        def callback(req_output: RequestOutput) -> bool:
            failed = self._failed(call_data, req_output)
            if failed is not None:
                return failed
            if stream:
                return handler.send_completion_delta(
                    call_data,
                    include_usage,
                    service_request_id,
                    created_time,
                    model,
                    req_output,
                )
            return handler.send_completion_result(
                call_data, service_request_id, created_time, model, req_output
            )

        return self._record(service_request_id, callback)


def _instance_type(value: Any) -> InstanceType:
    if value is None:
        return InstanceType.DEFAULT
    try:
        kind = InstanceType[value] if isinstance(value, str) else InstanceType(value)
    except (KeyError, ValueError):
        return InstanceType.DEFAULT
    return kind if kind in (InstanceType.PREFILL, InstanceType.DECODE) else InstanceType.DEFAULT


def _logprob_data(data: dict[str, Any]) -> LogProbData:
    return LogProbData(
        token=data.get("token", ""),
        token_id=data.get("token_id", 0),
        logprob=data.get("logprob", 0.0),
        finished_token=data.get("finished_token", False),
    )


def _sequence_output(output: dict[str, Any]) -> SequenceOutput:
    seq = SequenceOutput(
        index=output.get("index", 0),
        text=output.get("text", ""),
        token_ids=list(output.get("token_ids", [])),
    )
    if output.get("finish_reason"):
        seq.finish_reason = output["finish_reason"]
    raw_logprobs = output.get("logprobs") or []
    if raw_logprobs:
        logprobs = []
        for raw in raw_logprobs:
            data = _logprob_data(raw.get("log_prob_data", {}))
            lp = LogProb(
                token=data.token,
                token_id=data.token_id,
                logprob=data.logprob,
                finished_token=data.finished_token,
            )
            tops = raw.get("top_logprobs") or []
            if tops:
                lp.top_logprobs = [_logprob_data(t) for t in tops]
            logprobs.append(lp)
        seq.logprobs = logprobs
    return seq


def _request_output(gen: dict[str, Any]) -> RequestOutput:
    out = RequestOutput(
        request_id=gen.get("req_id", ""),
        service_request_id=gen.get("service_req_id", ""),
        finished=bool(gen.get("finished", False)),
    )
    gen_status = gen.get("gen_status")
    if gen_status is not None:
        raw_code = gen_status.get("status_code", 0)
        try:
            code: Any = StatusCode(raw_code)
        except ValueError:
            code = raw_code
        out.status = Status(code, gen_status.get("status_msg", ""))
    usage = gen.get("usage")
    if usage is not None:
        out.usage = Usage(
            num_prompt_tokens=usage.get("num_prompt_tokens", 0),
            num_generated_tokens=usage.get("num_generated_tokens", 0),
            num_total_tokens=usage.get("num_total_tokens", 0),
        )
    out.outputs = [_sequence_output(o) for o in gen.get("outputs", [])]
    return out


class XllmRpcService:
    """RPC surface translating wire-shaped dictionaries to service calls."""

    def __init__(self, service: XllmRpcServiceImpl) -> None:
        self._service = service

    def hello(self) -> dict[str, bool]:
        return {"ok": True}

    def register_instance(self, request: dict[str, Any]) -> dict[str, int]:
        """Register an instance described by the request."""
        name = request.get("name", "")
        metainfo = InstanceMetaInfo(
            name=name,
            rpc_address=request.get("rpc_address", ""),
            type=_instance_type(request.get("type")),
            cluster_ids=list(request.get("cluster_ids", [])),
            addrs=list(request.get("addrs", [])),
            k_cache_ids=list(request.get("k_cache_ids", [])),
            v_cache_ids=list(request.get("v_cache_ids", [])),
            dp_size=request.get("dp_size", 0),
        )
        code = self._service.register_instance(name, metainfo)
        return {"status_code": int(code)}

    def get_instance_info(self, request: dict[str, Any]) -> dict[str, Any]:
        """Describe the named instance; unknown names give an empty description."""
        info = self._service.get_instance_info(request.get("name", ""))
        return {
            "name": info.name,
            "rpc_address": info.rpc_address,
            "type": _instance_type(info.type).name,
            "cluster_ids": list(info.cluster_ids),
            "addrs": list(info.addrs),
            "k_cache_ids": list(info.k_cache_ids),
            "v_cache_ids": list(info.v_cache_ids),
            "dp_size": info.dp_size,
        }

    def heartbeat(self, request: dict[str, Any]) -> dict[str, bool]:
        self._service.heartbeat(request.get("name", ""))
        return {"ok": True}

    def get_static_decode_list(self, request: dict[str, Any]) -> dict[str, list[str]]:
        return {"names": self._service.get_static_decode_list(request.get("name", ""))}

    def generations(self, request: dict[str, Any]) -> dict[str, list[dict[str, bool]]]:
        """Accept generated outputs; report for each whether it was routed."""
        statuses = [
            {"ok": self._service.handle_generation(_request_output(gen))}
            for gen in request.get("gens", [])
        ]
        return {"all_status": statuses}

    def get_config(self) -> dict[str, bool]:
        config = self._service.get_config()
        return {
            "enable_decode_response_to_service": config.enable_decode_response_to_service
        }