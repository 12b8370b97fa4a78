"""
talosforge/tests/conftest.py

Fixtures wiring the in-memory fakes from `talosforge.tests.fakes` together.
Every test runs with TCP dials replaced, so nothing leaves the process.
"""

from typing import Any
from unittest.mock import AsyncMock

import pytest

from talosforge.deployment.reconciler import Reconciler
from talosforge.models.settings import ProviderSettings, Timeouts
from talosforge.tests.fakes import FakeCloud, FakeImageBuilder, FakeKubernetes, FakeNodeOS


@pytest.fixture(autouse=True)
def no_network(monkeypatch: pytest.MonkeyPatch) -> None:
    """Replace TCP dials with immediate success (waits) and failure (diagnostics)."""
    monkeypatch.setattr("talosforge.deployment.bootstrap.wait_for_port", AsyncMock())
    monkeypatch.setattr("talosforge.deployment.bootstrap.wait_for_port_closed", AsyncMock())
    monkeypatch.setattr(
        "talosforge.deployment.diagnostics.is_port_open", AsyncMock(return_value=False)
    )


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def node_os() -> FakeNodeOS:
    return FakeNodeOS()


@pytest.fixture
def kube(cloud: FakeCloud, node_os: FakeNodeOS) -> FakeKubernetes:
    return FakeKubernetes(cloud, node_os)


@pytest.fixture
def image_builder(cloud: FakeCloud) -> FakeImageBuilder:
    return FakeImageBuilder(cloud)


@pytest.fixture
def timeouts() -> Timeouts:
    return Timeouts(
        port_wait=1.0,
        port_poll=0.01,
        reboot_start=0.01,
        reboot=1.0,
        node_ready=1.0,
        node_ready_poll=0.01,
        kubernetes_api=1.0,
        addon=1.0,
        addon_poll=0.01,
        etcd_membership=1.0,
        health_retry=0.01,
        dial=0.1,
    )


@pytest.fixture
def settings(tmp_path: Any) -> ProviderSettings:
    return ProviderSettings(hcloud_token="test-token", state_dir=tmp_path / "state")


@pytest.fixture
def renderer() -> AsyncMock:
    return AsyncMock(return_value="---\n")


@pytest.fixture
def reconciler(
    cloud: FakeCloud,
    node_os: FakeNodeOS,
    kube: FakeKubernetes,
    image_builder: FakeImageBuilder,
    settings: ProviderSettings,
    timeouts: Timeouts,
    renderer: AsyncMock,
) -> Reconciler:
    return Reconciler(
        cloud,
        node_os,
        image_builder,
        settings,
        timeouts=timeouts,
        k8s_factory=lambda _: kube,
        public_ip_resolver=AsyncMock(return_value="203.0.113.250"),
        chart_renderer=renderer,
    )
