import pytest

from xllm_dispatch.disagg_pd_policy import DisaggPdPolicy, RoundRobinDisaggPdPolicy
from xllm_dispatch.types import InstanceMetaInfo, InstanceType


def _info(name, kind):
    return InstanceMetaInfo(name, "", kind)


@pytest.fixture
def policy():
    return RoundRobinDisaggPdPolicy()


def test_base_policy_is_abstract():
    with pytest.raises(TypeError):
        DisaggPdPolicy()


def test_empty_policy_selects_nothing(policy):
    pair = policy.select_instances_pair()
    assert pair.prefill_instance_http_addr == ""
    assert pair.decode_instance_http_addr == ""


def test_round_robin_cycles_both_sides(policy):
    for name in ("p0", "p1"):
        policy.insert_instance(name, _info(name, InstanceType.PREFILL))
    for name in ("d0", "d1", "d2"):
        policy.insert_instance(name, _info(name, InstanceType.DECODE))
    picks = [policy.select_instances_pair() for _ in range(6)]
    assert [p.prefill_instance_http_addr for p in picks] == ["p0", "p1"] * 3
    assert [p.decode_instance_http_addr for p in picks] == ["d0", "d1", "d2"] * 2


def test_default_instances_serve_as_prefill(policy):
    policy.insert_instance("x", _info("x", InstanceType.DEFAULT))
    pair = policy.select_instances_pair()
    assert pair.prefill_instance_http_addr == "x"
    assert pair.decode_instance_http_addr == ""


def test_duplicate_insert_rejected(policy):
    assert policy.insert_instance("p", _info("p", InstanceType.PREFILL))
    assert not policy.insert_instance("p", _info("p", InstanceType.PREFILL))
    names = {policy.select_instances_pair().prefill_instance_http_addr for _ in range(4)}
    assert names == {"p"}


def test_removed_instance_is_skipped(policy):
    for name in ("p0", "p1"):
        policy.insert_instance(name, _info(name, InstanceType.PREFILL))
    assert policy.remove_instance("p0", InstanceType.PREFILL)
    picks = [policy.select_instances_pair().prefill_instance_http_addr for _ in range(3)]
    assert picks == ["p1", "p1", "p1"]


def test_all_removed_selects_nothing(policy):
    policy.insert_instance("d", _info("d", InstanceType.DECODE))
    policy.remove_instance("d", InstanceType.DECODE)
    assert policy.select_instances_pair().decode_instance_http_addr == ""


def test_remove_unknown_returns_false(policy):
    assert not policy.remove_instance("ghost", InstanceType.DECODE)


def test_update_replaces_info(policy):
    policy.insert_instance("p", _info("p", InstanceType.PREFILL))
    replacement = InstanceMetaInfo("p-new", "", InstanceType.PREFILL)
    assert policy.update_instance("p", replacement)
    assert policy.select_instances_pair().prefill_instance_http_addr == "p-new"


def test_update_unknown_returns_false(policy):
    assert not policy.update_instance("ghost", _info("ghost", InstanceType.DECODE))


def test_update_on_other_side_fails(policy):
    policy.insert_instance("p", _info("p", InstanceType.PREFILL))
    assert not policy.update_instance("p", _info("p", InstanceType.DECODE))


def test_only_prefill_returns_first_live(policy):
    for name in ("p0", "p1"):
        policy.insert_instance(name, _info(name, InstanceType.PREFILL))
    policy.insert_instance("d0", _info("d0", InstanceType.DECODE))
    policy.remove_instance("p0", InstanceType.PREFILL)
    for _ in range(2):
        pair = policy.select_instances_pair(only_prefill=True)
        assert pair.prefill_instance_http_addr == "p1"
        assert pair.decode_instance_http_addr == ""


def test_reinsert_after_remove(policy):
    policy.insert_instance("p", _info("p", InstanceType.PREFILL))
    policy.remove_instance("p", InstanceType.PREFILL)
    assert policy.insert_instance("p", _info("p", InstanceType.PREFILL))
    assert policy.select_instances_pair().prefill_instance_http_addr == "p"


def test_allocation_hooks_return_empty(policy):
    assert policy.reallocate_instances_type() == {}
    assert policy.allocate_pd_pairs() == {}