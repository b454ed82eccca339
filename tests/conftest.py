"""Shared test fixtures for writer-gateway."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from writer_gateway.config import GatewayConfig
from writer_gateway.gateway import Gateway
from writer_gateway.persistence import ConversationSink
from writer_gateway.testing import FakeUpstreamPath, StaticSnapshotSource
from writer_gateway.types import RateLimitSnapshot

GatewayFactory = Callable[..., Gateway]


@pytest.fixture
def test_config(monkeypatch: pytest.MonkeyPatch) -> GatewayConfig:
    """Return a GatewayConfig with test defaults (no real API key needed)."""
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    monkeypatch.setenv("GATEWAY_API_KEY", "test-key-fake")
    monkeypatch.setenv("GATEWAY_TRACE_ENABLED", "false")
    return GatewayConfig(_env_file=None)  # type: ignore[call-arg]


@pytest.fixture
def primary() -> FakeUpstreamPath:
    return FakeUpstreamPath("primary", text="hello from primary")


@pytest.fixture
def fallback() -> FakeUpstreamPath:
    return FakeUpstreamPath("fallback", text="hello from fallback")


@pytest.fixture
def snapshot_source() -> StaticSnapshotSource:
    """Account with credits left and no hard limit."""
    return StaticSnapshotSource(RateLimitSnapshot(label="test", usage=1.0, limit=None))


@pytest.fixture
def exhausted_source() -> StaticSnapshotSource:
    """Paid account whose usage reached its limit."""
    return StaticSnapshotSource(RateLimitSnapshot(label="test", usage=10.0, limit=10.0))


@pytest.fixture
def make_gateway(
    test_config: GatewayConfig,
    primary: FakeUpstreamPath,
    fallback: FakeUpstreamPath,
    snapshot_source: StaticSnapshotSource,
) -> GatewayFactory:
    """Build a Gateway around fakes; keyword arguments override any collaborator."""

    def _make(
        *,
        config: GatewayConfig | None = None,
        sink: ConversationSink | None = None,
        **overrides: Any,
    ) -> Gateway:
        return Gateway(
            config or test_config,
            primary=overrides.get("primary", primary),
            fallback=overrides.get("fallback", fallback),
            account=overrides.get("account", snapshot_source),
            sink=sink,
        )

    return _make
