"""
talosforge/tests/test_infrastructure.py

Provider resource convergence against the in-memory cloud.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from talosforge.cloud.adapter import (
    ResourceAlreadyExistsError,
    TransientCloudError,
    cloud_retry,
    ensure,
)
from talosforge.deployment.images import ImageCoordinator
from talosforge.deployment.infrastructure import InfrastructureReconciler
from talosforge.errors import ReconcileStepError
from talosforge.models.cloud import Network, Server, Subnet
from talosforge.tests.fakes import FakeCloud, FakeImageBuilder, make_spec
from talosforge.utils import naming


def _reconciler(cloud: FakeCloud, builder: FakeImageBuilder, ip: str = "203.0.113.200"):
    return InfrastructureReconciler(
        cloud, ImageCoordinator(cloud, builder), AsyncMock(return_value=ip)
    )


@pytest.mark.asyncio
async def test_first_run_creates_everything(cloud: FakeCloud, image_builder: FakeImageBuilder) -> None:
    spec = make_spec(control_plane=3, workers=2, ssh_public_key="ssh-ed25519 AAAA test")
    infra = await _reconciler(cloud, image_builder).reconcile(spec)

    assert cloud.names("network") == {"demo-net"}
    assert cloud.names("firewall") == {"demo-fw"}
    assert cloud.names("placement_group") == {"demo-control-plane-pg"}
    assert cloud.names("load_balancer") == {"demo-kube"}
    assert cloud.names("ssh_key") == {"demo-key"}
    assert cloud.names("server") == {
        "demo-control-plane-1",
        "demo-control-plane-2",
        "demo-control-plane-3",
        "demo-worker-1",
        "demo-worker-2",
    }
    assert [s.private_ip for s in infra.control_plane] == ["10.0.64.1", "10.0.64.2", "10.0.64.3"]
    assert infra.api_load_balancer.private_ip == "10.0.64.254"
    assert infra.endpoint == infra.api_load_balancer.public_ipv4
    assert image_builder.builds == ["amd64"]

    server = cloud.store["server"]["demo-control-plane-1"]
    assert server.placement_group_id == infra.placement_groups["control-plane"].id
    assert server.ssh_key_ids == [infra.ssh_key.id]
    assert server.labels[naming.ROLE_LABEL] == naming.ROLE_CONTROL_PLANE
    assert server.labels[naming.OS_VERSION_LABEL] == "v1.9.5"
    assert cloud.store["server"]["demo-worker-1"].placement_group_id is None


@pytest.mark.asyncio
async def test_second_run_creates_nothing(cloud: FakeCloud, image_builder: FakeImageBuilder) -> None:
    spec = make_spec(control_plane=3, workers=1, public_vip=True)
    reconciler = _reconciler(cloud, image_builder)
    first = await reconciler.reconcile(spec)
    created = list(cloud.created)

    second = await reconciler.reconcile(spec)
    assert cloud.created == created
    assert image_builder.builds == ["amd64"]
    assert [s.id for s in second.control_plane] == [s.id for s in first.control_plane]
    assert second.api_load_balancer.id == first.api_load_balancer.id
    assert second.floating_ip.server_id == first.control_plane[0].id


@pytest.mark.asyncio
async def test_failure_midway_is_resumed(cloud: FakeCloud, image_builder: FakeImageBuilder) -> None:
    spec = make_spec(control_plane=1)
    reconciler = _reconciler(cloud, image_builder)
    cloud.fail_next["create_firewall"] = RuntimeError("quota exceeded")

    with pytest.raises(ReconcileStepError) as info:
        await reconciler.reconcile(spec)
    assert info.value.step == "firewall"
    assert info.value.resource == "demo-fw"
    assert cloud.names("network") == {"demo-net"}
    assert cloud.names("server") == set()

    infra = await reconciler.reconcile(spec)
    assert cloud.created.count("network:demo-net") == 1
    assert cloud.names("firewall") == {"demo-fw"}
    assert [s.name for s in infra.control_plane] == ["demo-control-plane-1"]


@pytest.mark.asyncio
async def test_scale_out_adds_only_new_members(
    cloud: FakeCloud, image_builder: FakeImageBuilder
) -> None:
    reconciler = _reconciler(cloud, image_builder)
    await reconciler.reconcile(make_spec(control_plane=1, workers=1))
    before = {n: s.id for n, s in cloud.store["server"].items()}

    await reconciler.reconcile(make_spec(control_plane=1, workers=3))
    assert {n for n in cloud.store["server"]} == set(before) | {"demo-worker-2", "demo-worker-3"}
    assert all(cloud.store["server"][n].id == i for n, i in before.items())


@pytest.mark.asyncio
async def test_members_beyond_count_are_reported_not_deleted(
    cloud: FakeCloud, image_builder: FakeImageBuilder, caplog: pytest.LogCaptureFixture
) -> None:
    reconciler = _reconciler(cloud, image_builder)
    await reconciler.reconcile(make_spec(control_plane=1, workers=2))
    infra = await reconciler.reconcile(make_spec(control_plane=1, workers=1))

    assert "demo-worker-2" in cloud.names("server")
    assert [s.name for s in infra.workers["worker"]] == ["demo-worker-1"]
    assert "beyond its count" in caplog.text


@pytest.mark.asyncio
async def test_missing_subnet_is_added(cloud: FakeCloud, image_builder: FakeImageBuilder) -> None:
    reconciler = _reconciler(cloud, image_builder)
    await reconciler.reconcile(make_spec(control_plane=1))
    spec = make_spec(
        control_plane=1,
        worker_pools=[
            {"name": "small", "server_type": "cx22", "count": 1},
            {"name": "large", "server_type": "cx42", "count": 1},
        ],
    )
    infra = await reconciler.reconcile(spec)
    assert [s.ip_range for s in infra.network.subnets] == [
        "10.0.64.0/25",
        "10.0.64.128/25",
        "10.0.65.0/25",
        "10.0.65.128/25",
    ]
    assert cloud.store["server"]["demo-large-1"].private_ip == "10.0.65.129"


@pytest.mark.asyncio
async def test_firewall_rules_follow_the_current_address(
    cloud: FakeCloud, image_builder: FakeImageBuilder
) -> None:
    spec = make_spec(firewall={"api_source": [], "use_current_ipv4": True})
    await _reconciler(cloud, image_builder, "203.0.113.1").reconcile(spec)
    assert cloud.store["firewall"]["demo-fw"].rules[0].source_ips == ["203.0.113.1/32"]

    await _reconciler(cloud, image_builder, "203.0.113.2").reconcile(spec)
    firewall = cloud.store["firewall"]["demo-fw"]
    assert [r.source_ips for r in firewall.rules] == [["203.0.113.2/32"]] * 2
    assert firewall.apply_to_label_selectors == ["talosforge.io/cluster=demo"]
    assert cloud.created.count("firewall:demo-fw") == 1


@pytest.mark.asyncio
async def test_api_load_balancer_health_checks(
    cloud: FakeCloud, image_builder: FakeImageBuilder
) -> None:
    spec = make_spec(load_balancer={"ingress_enabled": True})
    infra = await _reconciler(cloud, image_builder).reconcile(spec)

    api = infra.api_load_balancer
    assert [s.listen_port for s in api.services] == [6443, 50000]
    check = api.services[0].health_check
    assert check.http is not None
    assert (check.http.path, check.http.status_codes, check.http.tls) == ("/version", ["401"], True)
    assert api.target_label_selector == naming.role_selector("demo", naming.ROLE_CONTROL_PLANE)

    assert infra.ingress_load_balancer is not None
    assert infra.ingress_load_balancer.private_ip == "10.0.64.253"
    assert [s.listen_port for s in infra.ingress_load_balancer.services] == [80, 443]


@pytest.mark.asyncio
async def test_existing_snapshot_is_reused(cloud: FakeCloud, image_builder: FakeImageBuilder) -> None:
    spec = make_spec(worker_pools=[{"name": "arm", "server_type": "cax21", "count": 1}])
    await _reconciler(cloud, image_builder).reconcile(spec)
    assert sorted(image_builder.builds) == ["amd64", "arm64"]

    other = make_spec(name="other", worker_pools=[{"name": "arm", "server_type": "cax21", "count": 1}])
    await _reconciler(cloud, image_builder).reconcile(other)
    assert sorted(image_builder.builds) == ["amd64", "arm64"]


@pytest.mark.asyncio
async def test_ensure_resolves_concurrent_creation() -> None:
    created = Subnet(ip_range="10.0.64.0/25")
    get = AsyncMock(side_effect=[None, created])
    create = AsyncMock(side_effect=ResourceAlreadyExistsError("subnet", "x"))
    assert await ensure("subnet", "x", get, create) is created
    assert get.await_count == 2


@pytest.mark.asyncio
async def test_cloud_retry_retries_transient_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("talosforge.utils.async_retry.asyncio.sleep", AsyncMock())
    attempts = []

    @cloud_retry
    async def _call() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise TransientCloudError("rate limited")
        return "ok"

    assert await _call() == "ok"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_pool_failure_is_raised_after_every_member_settles(
    cloud: FakeCloud, image_builder: FakeImageBuilder, monkeypatch: pytest.MonkeyPatch
) -> None:
    create = cloud.create_server

    async def _create(server: Server) -> Server:
        if server.name == "demo-control-plane-1":
            raise RuntimeError("resource unavailable")
        await asyncio.sleep(0.05)
        return await create(server)

    monkeypatch.setattr(cloud, "create_server", _create)
    with pytest.raises(ReconcileStepError) as info:
        await _reconciler(cloud, image_builder).reconcile(make_spec(control_plane=3))
    assert (info.value.step, info.value.resource) == ("server", "demo-control-plane-1")
    assert cloud.names("server") == {"demo-control-plane-2", "demo-control-plane-3"}


@pytest.mark.asyncio
async def test_resource_returned_without_an_id_fails_its_step(
    cloud: FakeCloud, image_builder: FakeImageBuilder, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _create(network: Network) -> Network:
        return network

    monkeypatch.setattr(cloud, "create_network", _create)
    with pytest.raises(ReconcileStepError) as info:
        await _reconciler(cloud, image_builder).reconcile(make_spec())
    assert (info.value.step, info.value.resource) == ("network", "demo-net")
    assert "without an id" in str(info.value)
    assert cloud.names("server") == set()
