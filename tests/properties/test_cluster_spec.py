"""Property-based tests for cluster definitions.

Feature: kina-cluster, Property 5: Node naming
"""

import re

import pytest
from hypothesis import given
from hypothesis import strategies as st
from pydantic import ValidationError

from kina.models.cluster import MAX_CLUSTER_NAME_LENGTH, ClusterSpec
from kina.models.node import NodeRole

DNS_LABEL = re.compile(r"[a-z0-9]([-a-z0-9]*[a-z0-9])?")


@st.composite
def cluster_name(draw):
    """Generate valid cluster names."""
    alphabet = "abcdefghijklmnopqrstuvwxyz0123456789"
    length = draw(st.integers(min_value=1, max_value=MAX_CLUSTER_NAME_LENGTH))
    if length == 1:
        return draw(st.sampled_from(alphabet))
    middle = draw(st.text(alphabet=alphabet + "-", min_size=length - 2, max_size=length - 2))
    return draw(st.sampled_from(alphabet)) + middle + draw(st.sampled_from(alphabet))


@given(
    name=cluster_name(),
    control_planes=st.integers(min_value=1, max_value=5),
    workers=st.integers(min_value=0, max_value=20),
)
def test_property_5_node_names(name, control_planes, workers):
    """
    Feature: kina-cluster, Property 5: Node naming

    Every cluster definition yields unique DNS-label node names, the primary
    control plane first and all control planes before any worker.
    """
    spec = ClusterSpec(name=name, control_planes=control_planes, workers=workers)
    names = spec.node_names()

    assert len(names) == spec.total_nodes
    assert len({n for n, _ in names}) == len(names)
    assert names[0] == (f"{name}-control-plane", NodeRole.CONTROL_PLANE)
    roles = [role for _, role in names]
    assert roles == [NodeRole.CONTROL_PLANE] * control_planes + [NodeRole.WORKER] * workers
    for node_name, _ in names:
        assert len(node_name) <= 63
        assert DNS_LABEL.fullmatch(node_name)


@given(name=st.text(min_size=1, max_size=10).filter(lambda x: not DNS_LABEL.fullmatch(x)))
def test_invalid_cluster_name_rejected(name):
    """Names that are not lowercase DNS labels are rejected."""
    with pytest.raises(ValidationError):
        ClusterSpec(name=name)


@given(subnet=st.sampled_from(["10.244.0.1/16", "300.0.0.0/8", "fd00::/64", "not-a-cidr"]))
def test_invalid_pod_subnet_rejected(subnet):
    with pytest.raises(ValidationError):
        ClusterSpec(name="dev", pod_subnet=subnet)
