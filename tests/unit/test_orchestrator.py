"""Tests for the cluster lifecycle orchestrator."""

import threading

import pytest
from fakes import CERTIFICATE_KEY, FakeClusterAPI

from kina.exceptions import (
    AlreadyProvisioned,
    BootstrapError,
    ClusterBusyError,
    DeleteError,
    ImageLoadError,
    MultiNodeUnsupported,
    NetworkConfigTimeout,
    NotFoundError,
    OperationCancelled,
    ProvisionError,
)
from kina.locks import ClusterLock
from kina.models.cluster import ClusterHealth, ClusterSpec, ClusterState
from kina.models.network import CNI_CONFIG_PATH
from kina.models.node import ExecResult, NodeRole, NodeState
from kina.providers.base import IMAGE_ARCHIVE_PATH


def test_single_node_cluster_becomes_ready(provider, make_orchestrator, config):
    """A one-node cluster ends Ready with a kubeconfig and the ptp network installed."""
    api = FakeClusterAPI(csrs=[FakeClusterAPI.serving_request("test-control-plane")])
    orchestrator = make_orchestrator(provider, api)

    cluster = orchestrator.create(ClusterSpec(name="test", pod_subnet="10.244.0.0/16"))

    assert cluster.state == ClusterState.READY
    assert [n.state for n in cluster.nodes] == [NodeState.READY]
    assert cluster.endpoint == "https://192.168.64.2:6443"
    assert cluster.kubeconfig_path == config.kubeconfig_dir / "test"
    assert cluster.kubeconfig_path.exists()
    assert cluster.warnings == []

    conflist = provider.files[("test-control-plane", CNI_CONFIG_PATH)]
    assert '"subnet": "10.244.0.0/16"' in conflist
    assert '"type": "ptp"' in conflist
    assert api.approved == ["csr-test-control-plane"]


def test_single_node_cluster_removes_control_plane_taint(provider, make_orchestrator):
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))

    commands = provider.commands_for("test-control-plane")
    assert any("taint nodes test-control-plane" in c for c in commands)
    assert any(c.startswith("kubeadm init --config=/kind/kubeadm.conf --skip-phases=preflight") for c in commands)


def test_kubeconfig_server_points_at_node(provider, make_orchestrator, config):
    orchestrator = make_orchestrator(provider)
    cluster = orchestrator.create(ClusterSpec(name="test"))

    content = cluster.kubeconfig_path.read_text()
    assert "server: https://192.168.64.2:6443" in content
    assert "name: test-admin" in content
    assert "current-context: test" in content
    assert "test-admin" in (config.kubeconfig_dir / "config").read_text()


def test_multi_node_unsupported_creates_nothing(provider, make_orchestrator):
    """A 2-node spec on a single-node backend fails before any node exists."""
    orchestrator = make_orchestrator(provider)

    with pytest.raises(MultiNodeUnsupported):
        orchestrator.create(ClusterSpec(name="pair", workers=1))

    assert provider.provision_calls == 0
    assert provider.list_nodes("pair") == []


def test_bootstrap_failure_rolls_back(provider, make_orchestrator, config):
    """A failing kubeadm init leaves the cluster Failed with zero nodes."""
    provider.exec_results["kubeadm init --config"] = ExecResult(stderr="init exploded", exit_code=1)
    orchestrator = make_orchestrator(provider)

    with pytest.raises(BootstrapError, match="kubeadm init failed"):
        orchestrator.create(ClusterSpec(name="broken"))

    cluster = orchestrator.get("broken")
    assert cluster.state == ClusterState.FAILED
    assert cluster.nodes[0].state == NodeState.FAILED
    assert provider.list_nodes("broken") == []
    assert not (config.kubeconfig_dir / "broken").exists()


def test_certificate_timeout_still_ready_with_warning(provider, make_orchestrator):
    """No CSR ever shows up: the cluster is still Ready but carries a warning."""
    orchestrator = make_orchestrator(provider, FakeClusterAPI(csrs=[]))

    cluster = orchestrator.create(ClusterSpec(name="test"))

    assert cluster.state == ClusterState.READY
    assert any("serving certificates were not approved" in w for w in cluster.warnings)
    assert cluster.kubeconfig_path.exists()


def test_csr_approval_can_be_disabled(provider, make_orchestrator, config):
    config.approve_csrs = False
    api = FakeClusterAPI(csrs=[FakeClusterAPI.serving_request("test-control-plane")])
    orchestrator = make_orchestrator(provider, api)

    cluster = orchestrator.create(ClusterSpec(name="test"))

    assert cluster.state == ClusterState.READY
    assert api.approved == []


def test_partial_provision_failure_cleans_up(multi_node_provider, make_orchestrator):
    """Nodes created before a provisioning error are deleted."""
    multi_node_provider.fail_provision_after = 1
    orchestrator = make_orchestrator(multi_node_provider)

    with pytest.raises(ProvisionError):
        orchestrator.create(ClusterSpec(name="half", workers=2))

    assert multi_node_provider.list_nodes("half") == []
    assert "half-control-plane" in multi_node_provider.deleted


def test_network_timeout_rolls_back(provider, make_orchestrator, config):
    api = FakeClusterAPI(ready=False)
    orchestrator = make_orchestrator(provider, api)

    with pytest.raises(NetworkConfigTimeout):
        orchestrator.create(ClusterSpec(name="slow"))

    assert orchestrator.get("slow").state == ClusterState.FAILED
    assert provider.list_nodes("slow") == []
    assert not (config.kubeconfig_dir / "slow").exists()


def test_cleanup_failure_is_logged_not_raised(provider, make_orchestrator, caplog):
    """The original error surfaces even when rollback cannot delete a node."""
    provider.exec_results["kubeadm init --config"] = ExecResult(stderr="nope", exit_code=1)
    provider.delete_failures.add("stuck-control-plane")
    orchestrator = make_orchestrator(provider)

    with pytest.raises(BootstrapError):
        orchestrator.create(ClusterSpec(name="stuck"))

    assert "failed to delete node 'stuck-control-plane'" in caplog.text


def test_cancellation_rolls_back(provider, make_orchestrator):
    cancel = threading.Event()
    provider.after_provision = cancel.set
    orchestrator = make_orchestrator(provider)

    with pytest.raises(OperationCancelled):
        orchestrator.create(ClusterSpec(name="cancelled"), cancel=cancel)

    assert orchestrator.get("cancelled").state == ClusterState.FAILED
    assert provider.list_nodes("cancelled") == []


def test_keyboard_interrupt_rolls_back(provider, make_orchestrator):
    provider.exec_results["kubeadm init --config"] = KeyboardInterrupt()
    orchestrator = make_orchestrator(provider)

    with pytest.raises(KeyboardInterrupt):
        orchestrator.create(ClusterSpec(name="interrupted"))

    assert provider.list_nodes("interrupted") == []


def test_existing_cluster_is_not_touched(provider, make_orchestrator):
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))

    with pytest.raises(AlreadyProvisioned):
        orchestrator.create(ClusterSpec(name="test"))

    assert [h.name for h in provider.list_nodes("test")] == ["test-control-plane"]
    assert provider.deleted == []


def test_nodes_appearing_during_provision_are_not_deleted(provider, make_orchestrator, monkeypatch):
    """Nodes created by someone else between the existence check and provisioning stay."""
    orchestrator = make_orchestrator(provider)

    def racing_provision(spec):
        provider.add_node(spec.primary_node_name, spec.name)
        raise AlreadyProvisioned(f"Cluster '{spec.name}' already has nodes")

    monkeypatch.setattr(provider, "provision", racing_provision)

    with pytest.raises(AlreadyProvisioned):
        orchestrator.create(ClusterSpec(name="raced"))

    assert [h.name for h in provider.list_nodes("raced")] == ["raced-control-plane"]
    assert provider.deleted == []
    assert orchestrator.get("raced").state == ClusterState.FAILED


def test_busy_cluster_rejected(provider, make_orchestrator, config):
    orchestrator = make_orchestrator(provider)

    with ClusterLock(config.lock_dir, "test"):
        with pytest.raises(ClusterBusyError):
            orchestrator.create(ClusterSpec(name="test"))

    assert provider.provision_calls == 0


def test_multi_node_joins_after_primary(multi_node_provider, make_orchestrator):
    orchestrator = make_orchestrator(multi_node_provider)

    cluster = orchestrator.create(ClusterSpec(name="multi", control_planes=2, workers=1))

    assert cluster.state == ClusterState.READY
    assert all(n.state == NodeState.READY for n in cluster.nodes)

    cp2 = multi_node_provider.commands_for("multi-control-plane2")
    joins = [c for c in cp2 if c.startswith("kubeadm join")]
    assert len(joins) == 1
    assert f"--control-plane --certificate-key {CERTIFICATE_KEY}" in joins[0]

    worker = multi_node_provider.commands_for("multi-worker1")
    worker_joins = [c for c in worker if c.startswith("kubeadm join")]
    assert len(worker_joins) == 1
    assert "--control-plane" not in worker_joins[0]

    # No taint removal on multi-node clusters
    primary = multi_node_provider.commands_for("multi-control-plane")
    assert not any("taint nodes" in c for c in primary)


def test_every_node_gets_identical_conflist(multi_node_provider, make_orchestrator):
    orchestrator = make_orchestrator(multi_node_provider)
    orchestrator.create(ClusterSpec(name="multi", workers=2))

    contents = {
        content for (node, path), content in multi_node_provider.files.items() if path == CNI_CONFIG_PATH
    }
    assert len(contents) == 1


def test_delete_unknown_cluster_is_noop(provider, make_orchestrator):
    orchestrator = make_orchestrator(provider)

    orchestrator.delete("ghost")
    orchestrator.delete("ghost")

    assert provider.deleted == []


def test_delete_ready_cluster(provider, make_orchestrator, config):
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))

    orchestrator.delete("test")

    assert orchestrator.get("test").state == ClusterState.DELETED
    assert provider.list_nodes("test") == []
    assert not (config.kubeconfig_dir / "test").exists()
    assert "test-admin" not in (config.kubeconfig_dir / "config").read_text()

    # Deleting again is a no-op
    orchestrator.delete("test")
    assert orchestrator.get("test").state == ClusterState.DELETED


def test_delete_discovers_cluster_from_backend(provider, make_orchestrator):
    make_orchestrator(provider).create(ClusterSpec(name="test"))

    fresh = make_orchestrator(provider)
    assert fresh.list_clusters() == ["test"]
    fresh.delete("test")

    assert provider.list_nodes("test") == []
    assert fresh.get("test").state == ClusterState.DELETED


def test_delete_failure_surfaces(provider, make_orchestrator):
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))
    provider.delete_failures.add("test-control-plane")

    with pytest.raises(DeleteError) as exc_info:
        orchestrator.delete("test")

    assert exc_info.value.failures == {"test-control-plane": "device busy"}
    assert orchestrator.get("test").state == ClusterState.FAILED

    provider.delete_failures.clear()
    orchestrator.delete("test")
    assert orchestrator.get("test").state == ClusterState.DELETED


def test_approve_certificates_for_existing_cluster(provider, make_orchestrator):
    api = FakeClusterAPI(csrs=[])
    orchestrator = make_orchestrator(provider, api)
    orchestrator.create(ClusterSpec(name="test"))

    api.csrs.append(FakeClusterAPI.serving_request("test-control-plane", name="csr-late"))
    report = orchestrator.approve_certificates("test")

    assert report.complete
    assert report.approved == ["test-control-plane"]
    assert "csr-late" in api.approved


def test_status_of_running_cluster(provider, make_orchestrator, config):
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))

    status = orchestrator.status("test")

    assert status.health == ClusterHealth.RUNNING
    assert status.endpoint == "https://192.168.64.2:6443"
    assert status.kubeconfig_path == config.kubeconfig_dir / "test"
    assert [n.name for n in status.nodes] == ["test-control-plane"]


def test_status_reports_stopped_and_degraded_nodes(multi_node_provider, make_orchestrator):
    multi_node_provider.add_node("lab-control-plane", "lab")
    worker = multi_node_provider.add_node("lab-worker1", "lab", NodeRole.WORKER)
    orchestrator = make_orchestrator(multi_node_provider)

    multi_node_provider.nodes[worker.name] = worker.model_copy(update={"status": "stopped"})
    assert orchestrator.status("lab").health == ClusterHealth.DEGRADED
    assert orchestrator.status("lab").kubeconfig_path is None

    for name, handle in list(multi_node_provider.nodes.items()):
        multi_node_provider.nodes[name] = handle.model_copy(update={"status": "stopped"})
    assert orchestrator.status("lab").health == ClusterHealth.STOPPED


def test_status_unknown_cluster(provider, make_orchestrator):
    with pytest.raises(NotFoundError, match="not found"):
        make_orchestrator(provider).status("ghost")


def test_load_image_into_every_node(multi_node_provider, make_orchestrator):
    multi_node_provider.images["my-app:dev"] = b"image-bytes"
    orchestrator = make_orchestrator(multi_node_provider)
    orchestrator.create(ClusterSpec(name="multi", workers=2))

    loaded = orchestrator.load_image("multi", "my-app:dev")

    assert loaded == ["multi-control-plane", "multi-worker1", "multi-worker2"]
    for node_name in loaded:
        assert multi_node_provider.copied[(node_name, IMAGE_ARCHIVE_PATH)] == b"image-bytes"
        commands = multi_node_provider.commands_for(node_name)
        assert f"ctr -n k8s.io images import {IMAGE_ARCHIVE_PATH}" in commands
        assert commands[-1] == f"rm -f {IMAGE_ARCHIVE_PATH}"


def test_load_image_from_archive_skips_export(provider, make_orchestrator, tmp_path):
    archive = tmp_path / "app.tar"
    archive.write_bytes(b"saved-earlier")
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))

    orchestrator.load_image("test", "my-app:dev", archive=archive)

    assert provider.copied[("test-control-plane", IMAGE_ARCHIVE_PATH)] == b"saved-earlier"


def test_load_unknown_image_touches_no_node(provider, make_orchestrator):
    orchestrator = make_orchestrator(provider)
    orchestrator.create(ClusterSpec(name="test"))

    with pytest.raises(ImageLoadError, match="Failed to export image 'missing:latest'"):
        orchestrator.load_image("test", "missing:latest")

    assert provider.copied == {}


def test_load_image_reports_every_failed_node(multi_node_provider, make_orchestrator):
    multi_node_provider.images["my-app:dev"] = b"image-bytes"
    orchestrator = make_orchestrator(multi_node_provider)
    orchestrator.create(ClusterSpec(name="multi", workers=1))
    multi_node_provider.exec_results["images import"] = ExecResult(stderr="ctr: content digest mismatch", exit_code=1)

    with pytest.raises(ImageLoadError) as exc_info:
        orchestrator.load_image("multi", "my-app:dev")

    assert "into 2 node(s)" in exc_info.value.message
    assert "multi-worker1: Failed to import image archive" in exc_info.value.details
    # The archive is cleaned up on failure too
    assert f"rm -f {IMAGE_ARCHIVE_PATH}" in multi_node_provider.commands_for("multi-worker1")


def test_load_image_into_unknown_cluster(provider, make_orchestrator):
    provider.images["my-app:dev"] = b"image-bytes"

    with pytest.raises(NotFoundError, match="Cluster 'ghost' not found"):
        make_orchestrator(provider).load_image("ghost", "my-app:dev")


def test_load_image_missing_archive(provider, make_orchestrator, tmp_path):
    with pytest.raises(NotFoundError, match="Image archive not found"):
        make_orchestrator(provider).load_image("test", "my-app:dev", archive=tmp_path / "nope.tar")
