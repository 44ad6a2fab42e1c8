"""Instance registry, prefill/decode dispatch and response routing for LLM serving."""

__version__ = "0.1.0"

__all__ = [
    "types",
    "disagg_pd_policy",
    "etcd_client",
    "instance_mgr",
    "response_handler",
    "service",
]