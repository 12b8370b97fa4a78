"""
talosforge/tests/test_bootstrap.py

Control-plane bootstrap: configuration applied once per node, etcd bootstrapped
once per cluster, failures carry diagnostics.
"""

from pathlib import Path
from typing import Tuple
from unittest.mock import AsyncMock

import pytest

from talosforge.deployment.bootstrap import BootstrapSequencer, node_target
from talosforge.deployment.images import ImageCoordinator
from talosforge.deployment.infrastructure import InfrastructureReconciler
from talosforge.errors import (
    BootstrapError,
    CertificateMismatchError,
    NodeCountMismatchError,
    NodeRebootError,
    PollTimeoutError,
)
from talosforge.models.bootstrap import BootstrapState
from talosforge.models.cloud import Certificate, InfrastructureState
from talosforge.models.cluster_spec import ClusterSpec
from talosforge.models.settings import Timeouts
from talosforge.secrets.generator import TalosConfigGenerator
from talosforge.secrets.node_secrets import generate_secrets
from talosforge.tests.fakes import (
    FakeCloud,
    FakeImageBuilder,
    FakeKubernetes,
    FakeNodeOS,
    make_spec,
)
from talosforge.utils import naming
from talosforge.utils.async_command_runner import CommandError
from talosforge.utils.talos import NodeUnreachableError


async def _provision(
    cloud: FakeCloud, builder: FakeImageBuilder, spec: ClusterSpec
) -> Tuple[InfrastructureState, TalosConfigGenerator, bytes]:
    infra = await InfrastructureReconciler(cloud, ImageCoordinator(cloud, builder)).reconcile(spec)
    generator = TalosConfigGenerator(
        spec, generate_secrets("v1.9.5"), infra.endpoint, infra.api_load_balancer.private_ip
    )
    return infra, generator, generator.get_client_config()


@pytest.fixture
def sequencer(
    cloud: FakeCloud, node_os: FakeNodeOS, kube: FakeKubernetes, timeouts: Timeouts, tmp_path: Path
) -> BootstrapSequencer:
    return BootstrapSequencer(cloud, node_os, lambda _: kube, timeouts, tmp_path)


@pytest.mark.asyncio
async def test_etcd_is_bootstrapped_exactly_once_across_runs(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
    tmp_path: Path,
) -> None:
    spec = make_spec(control_plane=3)
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)

    credential = await sequencer.bootstrap(spec, infra, generator, talosconfig)
    assert node_os.bootstrap_calls == ["demo-control-plane-1"]
    assert node_os.members == {
        "demo-control-plane-1",
        "demo-control-plane-2",
        "demo-control-plane-3",
    }
    assert naming.state_marker_name("demo") in cloud.names("certificate")
    assert credential.host == infra.endpoint
    assert (tmp_path / "demo" / "kubeconfig").read_bytes() == credential.kubeconfig

    again = await sequencer.bootstrap(spec, infra, generator, talosconfig)
    assert node_os.bootstrap_calls == ["demo-control-plane-1"]
    assert sorted(node_os.apply_calls) == sorted(node_os.members)
    assert again.server == credential.server


@pytest.mark.asyncio
async def test_marker_prevents_a_second_bootstrap(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    await cloud.create_certificate(
        Certificate(name="demo-state", certificate="", private_key="")
    )
    nodes = [node_target(s) for s in infra.control_plane]
    assert not await sequencer.bootstrap_etcd_once("demo", nodes, talosconfig)
    assert node_os.bootstrap_calls == []


@pytest.mark.asyncio
async def test_missing_marker_is_restored_when_etcd_has_members(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    await sequencer.bootstrap(spec, infra, generator, talosconfig)
    await cloud.delete_certificate("demo-state")

    nodes = [node_target(s) for s in infra.control_plane]
    assert not await sequencer.bootstrap_etcd_once("demo", nodes, talosconfig)
    assert "demo-state" in cloud.names("certificate")
    assert len(node_os.bootstrap_calls) == 1


@pytest.mark.asyncio
async def test_detect_state(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    node = node_target(infra.control_plane[0])

    assert await sequencer.detect_state(node, talosconfig) is BootstrapState.UNCONFIGURED
    state = await sequencer.configure_node(
        node, generator.generate_control_plane_config([], node.name), talosconfig
    )
    assert state is BootstrapState.CONFIGURED_UNBOOTSTRAPPED
    assert (
        await sequencer.detect_state(node, talosconfig)
        is BootstrapState.CONFIGURED_UNBOOTSTRAPPED
    )
    await node_os.bootstrap_etcd(node.public_ip, talosconfig)
    assert (
        await sequencer.detect_state(node, talosconfig) is BootstrapState.CONFIGURED_BOOTSTRAPPED
    )


@pytest.mark.asyncio
async def test_certificate_mismatch_fails_with_diagnostics(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    stranger = node_os.node(infra.control_plane[0].public_ipv4 or "")
    stranger.configured = True
    stranger.reject_auth = True

    with pytest.raises(CertificateMismatchError) as info:
        await sequencer.bootstrap(spec, infra, generator, talosconfig)
    assert info.value.node == "demo-control-plane-1"
    assert info.value.diagnostics is not None
    assert "Diagnostics:" in str(info.value)
    assert node_os.apply_calls == []


@pytest.mark.asyncio
async def test_node_that_never_returns_from_reboot(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    sequencer: BootstrapSequencer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    monkeypatch.setattr(
        "talosforge.deployment.bootstrap.wait_for_port",
        AsyncMock(side_effect=[None, PollTimeoutError("port", 1.0, None)]),
    )
    node = node_target(infra.control_plane[0])
    with pytest.raises(NodeRebootError):
        await sequencer.configure_node(
            node, generator.generate_control_plane_config([], node.name), talosconfig
        )


@pytest.mark.asyncio
async def test_unreachable_node_os_api(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    sequencer: BootstrapSequencer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    monkeypatch.setattr(
        "talosforge.deployment.bootstrap.wait_for_port",
        AsyncMock(side_effect=PollTimeoutError("port", 1.0, None)),
    )
    with pytest.raises(BootstrapError) as info:
        await sequencer.bootstrap(spec, infra, generator, talosconfig)
    assert info.value.diagnostics is not None
    assert all(not check.reachable for check in info.value.diagnostics.ports)


@pytest.mark.asyncio
async def test_wait_for_nodes_reports_the_shortfall(
    kube: FakeKubernetes, sequencer: BootstrapSequencer
) -> None:
    with pytest.raises(NodeCountMismatchError) as info:
        await sequencer.wait_for_nodes(kube, 2, require_ready=True, timeout=0.05)
    assert "0 registered" in str(info.value)


@pytest.mark.asyncio
async def test_workers_are_configured_concurrently(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
) -> None:
    spec = make_spec(workers=3)
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    await sequencer.bootstrap(spec, infra, generator, talosconfig)
    await sequencer.configure_workers(spec, infra, generator, talosconfig)

    assert sorted(node_os.apply_calls) == [
        "demo-control-plane-1",
        "demo-worker-1",
        "demo-worker-2",
        "demo-worker-3",
    ]
    workers = [n for n in node_os.nodes.values() if n.machine_type == "worker"]
    assert len(workers) == 3
    assert node_os.members == {"demo-control-plane-1"}


@pytest.mark.asyncio
async def test_already_bootstrapped_response_is_accepted(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    node = node_target(infra.control_plane[0])
    await sequencer.configure_node(
        node, generator.generate_control_plane_config([], node.name), talosconfig
    )
    node_os.bootstrapped = True

    assert not await sequencer.bootstrap_etcd_once("demo", [node], talosconfig)
    assert node_os.bootstrap_calls == []
    assert "demo-state" in cloud.names("certificate")


@pytest.mark.asyncio
async def test_failed_config_apply_names_the_node_and_carries_diagnostics(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    failure = CommandError("talosctl apply-config failed", 1, "unknown field")
    monkeypatch.setattr(node_os, "apply_config_insecure", AsyncMock(side_effect=failure))

    with pytest.raises(BootstrapError) as info:
        await sequencer.bootstrap(spec, infra, generator, talosconfig)
    assert info.value.node == "demo-control-plane-1"
    assert info.value.diagnostics is not None
    assert info.value.__cause__ is failure
    assert node_os.bootstrap_calls == []


@pytest.mark.asyncio
async def test_failed_etcd_bootstrap_carries_diagnostics(
    cloud: FakeCloud,
    image_builder: FakeImageBuilder,
    node_os: FakeNodeOS,
    sequencer: BootstrapSequencer,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    spec = make_spec()
    infra, generator, talosconfig = await _provision(cloud, image_builder, spec)
    address = infra.control_plane[0].public_ipv4 or ""
    monkeypatch.setattr(
        node_os,
        "bootstrap_etcd",
        AsyncMock(side_effect=NodeUnreachableError("connection refused", address)),
    )

    with pytest.raises(BootstrapError) as info:
        await sequencer.bootstrap(spec, infra, generator, talosconfig)
    assert info.value.node == "demo-control-plane-1"
    assert info.value.diagnostics is not None
    assert isinstance(info.value.__cause__, NodeUnreachableError)
    assert naming.state_marker_name("demo") not in cloud.names("certificate")
