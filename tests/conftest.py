"""Pytest configuration and shared fixtures."""

import pytest
from fakes import FakeClusterAPI, FakeProvider
from hypothesis import Verbosity, settings

from kina.config import KinaConfig, PollPolicy
from kina.kubeconfig import KubeconfigManager
from kina.orchestrator import ClusterOrchestrator

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")


def fast_policy(attempts: int = 3) -> PollPolicy:
    """Poll policy that never sleeps."""
    return PollPolicy(timeout=5, initial_wait=0, max_wait=0, attempts=attempts)


@pytest.fixture
def config(tmp_path):
    """kina configuration rooted in a temporary directory with instant polling."""
    return KinaConfig(
        kubeconfig_dir=tmp_path / "kube",
        state_dir=tmp_path / "state",
        boot=fast_policy(),
        address=fast_policy(),
        node_ready=fast_policy(),
        csr=fast_policy(),
        service_restart=fast_policy(),
    )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def multi_node_provider():
    return FakeProvider(multi_node=True)


@pytest.fixture
def cluster_api():
    return FakeClusterAPI()


@pytest.fixture
def make_orchestrator(config, cluster_api):
    """Build an orchestrator around a provider, sharing the fake cluster API."""

    def _make(provider, api=None):
        api = api or cluster_api
        return ClusterOrchestrator(
            provider,
            config,
            cluster_api_factory=lambda kubeconfig: api,
            kubeconfig=KubeconfigManager(config.kubeconfig_dir),
        )

    return _make
