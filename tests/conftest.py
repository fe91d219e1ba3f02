"""Shared fixtures: a mocked transport and registry-bound metric types."""

import time
from unittest.mock import MagicMock

import pytest

from influxer.client import Transport
from influxer.metrics.base import Metrics, before_write
from influxer.metrics.registry import SchemaRegistry


@pytest.fixture
def transport() -> MagicMock:
    """Transport double recording writes; queries return no points."""
    client = MagicMock(spec=Transport)
    client.query.return_value = {}
    return client


@pytest.fixture
def registry(transport: MagicMock) -> SchemaRegistry:
    return SchemaRegistry(client=transport)


@pytest.fixture
def dummy_metrics_cls(registry: SchemaRegistry) -> type:
    """Metric type requiring ``user_id`` and ``dummy_id``, stamped on write."""

    class DummyMetrics(
        Metrics,
        registry=registry,
        attributes=("user_id", "dummy_id"),
        required=("user_id", "dummy_id"),
    ):
        @before_write
        def stamp(self) -> None:
            self.time = time.time()

    return DummyMetrics


@pytest.fixture
def dummies_cls(registry: SchemaRegistry) -> type:
    """Metric type writing to the ``dummies`` series without validation rules."""

    class Dummies(Metrics, registry=registry, series="dummies"):
        pass

    Dummies.declare_attributes("user_id", "dummy_id")
    return Dummies
