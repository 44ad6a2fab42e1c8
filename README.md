# xllm_dispatch

`xllm_dispatch` coordinates disaggregated LLM serving. Prefill and decode
instances register with it and send heartbeats. It chooses an instance pair for
each request and sends the generated output back to the client that made the
request.

It is a library. It has no dependencies outside the standard library.

## Modules

- `xllm_dispatch.types` holds the shared value types: `ErrorCode`, `InstanceType`,
  `InstanceMetaInfo`, `InstancesPair`, `InstanceIdentityInfo` and
  `RpcServiceConfig`.
- `xllm_dispatch.disagg_pd_policy` chooses instances for requests.
  - `DisaggPdPolicy` is the abstract base. It keeps the prefill slots and the
    decode slots. `DEFAULT` instances share the prefill slots.
  - `RoundRobinDisaggPdPolicy` takes the live instances in turn and skips slots
    whose instance has been removed.
  - `select_instances_pair(only_prefill=True)` returns the first live prefill
    instance and leaves the decode address empty.
- `xllm_dispatch.etcd_client` keeps instance identities in a store.
  - `KeyValueStore` is the abstract store interface, with `put`, `get`, `ls`
    and `rm`.
  - `InMemoryStore` is a thread-safe implementation of that interface.
  - `EtcdClient` writes and reads `InstanceIdentityInfo` as JSON documents
    under keys such as `XLLM:PREFILL:<name>`.
  - Any failure raises `EtcdError`.
- `xllm_dispatch.instance_mgr` provides `InstanceMgr`, the instance registry.
  - It covers registering, updating, looking up and heartbeating instances.
  - A background thread removes instances that stay silent for longer than
    `RpcServiceConfig.detect_disconnected_instance_interval` seconds (default
    15). You can also trigger removal by calling
    `expire_disconnected(now_ms=...)`.
  - Pass `start_detector=False` to run without the background thread.
  - The only supported `disagg_pd_policy` is `"RR"`. An empty value also selects
    `"RR"`.
- `xllm_dispatch.response_handler` provides `ResponseHandler`.
  - It turns `RequestOutput` values into dictionaries shaped like chat and text
    completion responses, either streamed as chunks or sent whole.
  - It writes them to a `CallData`, which records what was sent and refuses to
    write after the call has finished or been cancelled.
- `xllm_dispatch.service` provides `XllmRpcServiceImpl` and `XllmRpcService`.
  - `XllmRpcServiceImpl` wraps the registry and routes generated outputs to
    recorded requests (`record_chat_request`, `record_completion_request`,
    `handle_generation`).
  - Each request's outputs are handled on a single worker thread, so they keep
    their order.
  - `XllmRpcService` accepts request messages as plain dictionaries and returns
    dictionaries.
  - `get_config()` reports whether the environment variable
    `ENABLE_DECODE_RESPONSE_TO_SERVICE` is set to a true value (`1`, `true`,
    `yes`, `on`).

Log messages go through the standard `logging` module. Detailed traces are
logged at `DEBUG` level.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from xllm_dispatch.response_handler import CallData, RequestOutput, SequenceOutput
from xllm_dispatch.service import XllmRpcServiceImpl
from xllm_dispatch.types import ErrorCode, InstanceMetaInfo, InstanceType, RpcServiceConfig

service = XllmRpcServiceImpl(RpcServiceConfig())

info = InstanceMetaInfo("127.0.0.1@nic0", "127.0.0.1:7777", InstanceType.PREFILL)
assert service.register_instance("127.0.0.1@nic0", info) is ErrorCode.OK
print(service.select_instances_pair(False).prefill_instance_http_addr)

call = CallData()
service.record_chat_request(call, "req-1", True, "demo-model", False)
service.handle_generation(
    RequestOutput(
        service_request_id="req-1",
        outputs=[SequenceOutput(index=0, text="Hello", finish_reason="stop")],
        finished=True,
    )
)

service.close()  # waits for pending outputs to be delivered
print(call.responses, call.finished)
```

## Metadata store

If `RpcServiceConfig` has no `etcd_addr` and no store is passed, instance
metadata is kept only in memory.

To persist identities, pass a `KeyValueStore` as the `store` argument of
`InstanceMgr` or `XllmRpcServiceImpl`. `InMemoryStore` is one such store.
Setting `etcd_addr` without passing a store raises `ValueError`.

## What it does not do

- It includes no network server and no command-line program. `XllmRpcService`
  only translates dictionaries. Binding it to a transport is up to the caller.
- It includes no client for an etcd server. Only the `KeyValueStore` interface
  and the in-memory implementation are provided.
- It does no tokenization and does not apply chat templates.
- The round-robin policy's `reallocate_instances_type` and `allocate_pd_pairs`
  return empty mappings.