"""Scan-result-to-target matching logic."""

from __future__ import annotations

from bleproxy.core.model import DiscoveredDevice


def _same_name(candidate: str | None, target_name: str) -> bool:
    if not candidate:
        return False
    return candidate.strip().lower() == target_name.strip().lower()


def match_reason(device: DiscoveredDevice, target_name: str) -> str | None:
    if _same_name(device.name, target_name):
        return "name"
    if _same_name(device.local_name, target_name):
        return "local_name"
    return None


def matches_target(device: DiscoveredDevice, target_name: str) -> bool:
    return match_reason(device, target_name) is not None
