from __future__ import annotations

import pytest

from bleproxy.core.errors import UnknownIdentifierError
from bleproxy.core.model import CharacteristicProperty, ProxyConfig
from bleproxy.core.topology import Topology
from tests.fakes import BATTERY, BATTERY_LEVEL, HEART_RATE, HR_CONTROL, HR_MEASUREMENT


def _bind_all(topology: Topology, *, remote: bool = True, mirror: bool = False, reverse: bool = False) -> None:
    services = list(topology.services)
    if reverse:
        services.reverse()
    for service in services:
        characteristics = list(service.characteristics)
        if reverse:
            characteristics.reverse()
        for characteristic in characteristics:
            if remote:
                topology.bind_remote(service.id, characteristic.id, f"r:{characteristic.id}")
            if mirror:
                topology.bind_mirror(service.id, characteristic.id, f"m:{characteristic.id}")
        if remote:
            topology.bind_remote(service.id, None, f"r:{service.id}")
        if mirror:
            topology.bind_mirror(service.id, None, f"m:{service.id}")


def test_build_preserves_configured_order(config: ProxyConfig) -> None:
    topology = Topology.build(config)

    assert [s.id for s in topology.services] == [HEART_RATE, BATTERY]
    assert [c.id for c in topology.service(HEART_RATE).characteristics] == [HR_MEASUREMENT, HR_CONTROL]
    assert not topology.is_remote_complete()
    assert not topology.is_complete()


def test_bind_unknown_identifier_rejected(config: ProxyConfig) -> None:
    topology = Topology.build(config)

    with pytest.raises(UnknownIdentifierError):
        topology.bind_remote("0000ffff-0000-1000-8000-00805f9b34fb", None, "handle")
    with pytest.raises(UnknownIdentifierError):
        topology.bind_mirror(HEART_RATE, BATTERY_LEVEL, "handle")
    with pytest.raises(UnknownIdentifierError):
        topology.characteristic("00002aff-0000-1000-8000-00805f9b34fb")


def test_completeness_requires_both_handles(config: ProxyConfig) -> None:
    topology = Topology.build(config)

    _bind_all(topology, remote=True)
    assert topology.is_remote_complete()
    assert not topology.is_complete()

    _bind_all(topology, remote=False, mirror=True)
    assert topology.is_complete()
    assert all(c.usable for c in topology.characteristics())


def test_completeness_is_independent_of_bind_order(config: ProxyConfig) -> None:
    topology = Topology.build(config)

    _bind_all(topology, remote=True, mirror=True, reverse=True)

    assert topology.is_complete()


def test_missing_characteristic_keeps_topology_incomplete(config: ProxyConfig) -> None:
    topology = Topology.build(config)
    _bind_all(topology, remote=True, mirror=True)
    topology.service(HEART_RATE).characteristic(HR_CONTROL).remote_handle = None

    assert not topology.is_complete()


def test_bind_remote_records_properties(config: ProxyConfig) -> None:
    topology = Topology.build(config)
    properties = CharacteristicProperty.READ | CharacteristicProperty.NOTIFY

    topology.bind_remote(BATTERY, BATTERY_LEVEL, "handle", properties=properties)

    assert topology.characteristic(BATTERY_LEVEL).properties == properties


def test_snapshot_does_not_share_bindings(config: ProxyConfig) -> None:
    topology = Topology.build(config)
    _bind_all(topology, remote=True)

    snapshot = topology.snapshot()
    snapshot.bind_mirror(BATTERY, BATTERY_LEVEL, "mirror")

    assert snapshot.characteristic(BATTERY_LEVEL).remote_handle == f"r:{BATTERY_LEVEL}"
    assert topology.characteristic(BATTERY_LEVEL).mirror_handle is None
