import pytest

from xllm_dispatch.response_handler import (
    CallData,
    RequestOutput,
    SequenceOutput,
    Status,
    StatusCode,
    Usage,
)
from xllm_dispatch.service import (
    GrpcStatusCode,
    ServiceConfig,
    XllmRpcService,
    XllmRpcServiceImpl,
    to_grpc_status_code,
)
from xllm_dispatch.types import ErrorCode, InstanceMetaInfo, InstanceType, RpcServiceConfig


@pytest.fixture
def impl():
    service = XllmRpcServiceImpl(
        RpcServiceConfig(), start_detector=False, num_output_threads=4
    )
    yield service
    service.close()


def test_register_instance(impl):
    name = "127.0.0.1@nic0"
    metainfo = InstanceMetaInfo(name, "127.0.0.1:7777", InstanceType.PREFILL)
    assert impl.register_instance(name, metainfo) == ErrorCode.OK
    metainfo.type = InstanceType.DECODE
    assert impl.register_instance(name, metainfo) == ErrorCode.INSTANCE_EXISTED


def test_update_instance_metainfo(impl):
    name = "127.0.0.1@nic0"
    metainfo = InstanceMetaInfo(name, "127.0.0.1:7777", InstanceType.PREFILL)
    assert impl.register_instance(name, metainfo) == ErrorCode.OK
    metainfo.type = InstanceType.DECODE
    assert impl.update_instance_metainfo(name, metainfo) == ErrorCode.OK

    name2 = "127.0.0.1@nic2"
    assert (
        impl.update_instance_metainfo(name2, metainfo)
        == ErrorCode.INSTANCE_NOT_EXISTED
    )


def test_heartbeat_unknown_instance(impl):
    assert impl.heartbeat("nobody") == ErrorCode.INSTANCE_NOT_EXISTED


def test_select_pair_and_decode_list(impl):
    impl.register_instance("p", InstanceMetaInfo("p", "", InstanceType.PREFILL))
    impl.register_instance("d", InstanceMetaInfo("d", "", InstanceType.DECODE))
    pair = impl.select_instances_pair(False)
    assert pair.prefill_instance_http_addr == "p"
    assert pair.decode_instance_http_addr == "d"
    assert impl.get_static_decode_list("p") == ["d"]


@pytest.mark.parametrize(
    "code, expected",
    [
        (StatusCode.OK, GrpcStatusCode.OK),
        (StatusCode.CANCELLED, GrpcStatusCode.CANCELLED),
        (StatusCode.RESOURCE_EXHAUSTED, GrpcStatusCode.RESOURCE_EXHAUSTED),
        (StatusCode.UNAVAILABLE, GrpcStatusCode.UNAVAILABLE),
        (StatusCode.UNAUTHENTICATED, GrpcStatusCode.UNAUTHENTICATED),
        (StatusCode.UNIMPLEMENTED, GrpcStatusCode.UNIMPLEMENTED),
        (99, GrpcStatusCode.UNKNOWN),
    ],
)
def test_to_grpc_status_code(code, expected):
    assert to_grpc_status_code(code) == expected


def test_config_from_environment(monkeypatch):
    monkeypatch.setenv("ENABLE_DECODE_RESPONSE_TO_SERVICE", "true")
    with XllmRpcServiceImpl(
        RpcServiceConfig(), start_detector=False, num_output_threads=1
    ) as service:
        assert service.get_config() == ServiceConfig(True)


def test_config_default(monkeypatch):
    monkeypatch.delenv("ENABLE_DECODE_RESPONSE_TO_SERVICE", raising=False)
    with XllmRpcServiceImpl(
        RpcServiceConfig(), start_detector=False, num_output_threads=1
    ) as service:
        assert service.get_config().enable_decode_response_to_service is False


def test_handle_generation_unknown_request(impl):
    assert impl.handle_generation(RequestOutput(service_request_id="x")) is False


def test_duplicate_record_rejected(impl):
    assert impl.record_chat_request(CallData(), "r1", True, "m", False) is True
    assert impl.record_completion_request(CallData(), "r1", True, "m", False) is False


def test_streaming_chat_delivered_in_order(impl):
    call = CallData()
    assert impl.record_chat_request(call, "r1", True, "m", False)
    first = RequestOutput(
        service_request_id="r1", outputs=[SequenceOutput(index=0, text="Hel")]
    )
    second = RequestOutput(
        service_request_id="r1",
        outputs=[SequenceOutput(index=0, text="lo", finish_reason="stop")],
        finished=True,
    )
    assert impl.handle_generation(first)
    assert impl.handle_generation(second)
    impl.close()
    contents = [
        r["choices"][0]["delta"].get("content") for r in call.responses
    ]
    assert contents == ["", "Hel", "lo", None]
    assert call.responses[-1]["choices"][0]["finish_reason"] == "stop"
    assert call.finished is True
    assert impl.handle_generation(RequestOutput(service_request_id="r1")) is False


def test_non_stream_completion(impl):
    call = CallData()
    impl.record_completion_request(call, "c1", False, "m", False)
    impl.handle_generation(
        RequestOutput(
            service_request_id="c1",
            outputs=[SequenceOutput(index=0, text="done", finish_reason="length")],
            usage=Usage(2, 3, 5),
            finished=True,
        )
    )
    impl.close()
    assert len(call.responses) == 1
    response = call.responses[0]
    assert response["object"] == "text_completion"
    assert response["choices"][0]["text"] == "done"
    assert response["usage"] == {
        "prompt_tokens": 2,
        "completion_tokens": 3,
        "total_tokens": 5,
    }


def test_rpc_register_and_get_info(impl):
    rpc = XllmRpcService(impl)
    reply = rpc.register_instance(
        {
            "name": "inst",
            "rpc_address": "127.0.0.1:9000",
            "type": "DECODE",
            "cluster_ids": [1, 2],
            "addrs": ["a", "b"],
            "k_cache_ids": [3],
            "v_cache_ids": [4],
            "dp_size": 2,
        }
    )
    assert reply == {"status_code": int(ErrorCode.OK)}
    again = rpc.register_instance({"name": "inst"})
    assert again == {"status_code": int(ErrorCode.INSTANCE_EXISTED)}
    info = rpc.get_instance_info({"name": "inst"})
    assert info == {
        "name": "inst",
        "rpc_address": "127.0.0.1:9000",
        "type": "DECODE",
        "cluster_ids": [1, 2],
        "addrs": ["a", "b"],
        "k_cache_ids": [3],
        "v_cache_ids": [4],
        "dp_size": 2,
    }
    assert rpc.get_static_decode_list({"name": "x"}) == {"names": ["inst"]}


def test_rpc_unknown_instance_info_is_empty(impl):
    rpc = XllmRpcService(impl)
    info = rpc.get_instance_info({"name": "missing"})
    assert info["name"] == ""
    assert info["type"] == "DEFAULT"


def test_rpc_simple_calls(impl):
    rpc = XllmRpcService(impl)
    assert rpc.hello() == {"ok": True}
    assert rpc.heartbeat({"name": "nobody"}) == {"ok": True}
    assert rpc.get_config() == {"enable_decode_response_to_service": False}


def test_rpc_generations(impl):
    rpc = XllmRpcService(impl)
    call = CallData()
    impl.record_chat_request(call, "g1", False, "m", False)
    reply = rpc.generations(
        {
            "gens": [
                {
                    "req_id": "inner",
                    "service_req_id": "g1",
                    "finished": True,
                    "usage": {
                        "num_prompt_tokens": 1,
                        "num_generated_tokens": 2,
                        "num_total_tokens": 3,
                    },
                    "outputs": [
                        {
                            "index": 0,
                            "text": "hi",
                            "token_ids": [7],
                            "finish_reason": "stop",
                            "logprobs": [
                                {
                                    "log_prob_data": {
                                        "token": "hi",
                                        "token_id": 7,
                                        "logprob": -0.5,
                                    },
                                    "top_logprobs": [
                                        {"token": "ho", "token_id": 8, "logprob": -1.5}
                                    ],
                                }
                            ],
                        }
                    ],
                },
                {"service_req_id": "unknown"},
            ]
        }
    )
    assert reply == {"all_status": [{"ok": True}, {"ok": False}]}
    impl.close()
    choice = call.responses[0]["choices"][0]
    assert choice["message"] == {"role": "assistant", "content": "hi"}
    assert choice["finish_reason"] == "stop"
    entry = choice["logprobs"]["content"][0]
    assert entry["token_id"] == 7
    assert entry["top_logprobs"] == [{"token": "ho", "token_id": 8, "logprob": -1.5}]
    assert call.responses[0]["usage"]["total_tokens"] == 3


def test_invalid_thread_count():
    with pytest.raises(ValueError):
        XllmRpcServiceImpl(RpcServiceConfig(), start_detector=False, num_output_threads=0)