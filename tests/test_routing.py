import asyncio
import logging
from unittest.mock import MagicMock

import pytest
from openrouteservice import exceptions as ors_exceptions

import manito.routing as routing
from manito.config import RetryPolicy
from manito.errors import DistanceServiceError, ProtocolError
from manito.routing import (
    OrsRoutedDistanceProvider,
    RouteSummary,
    parse_route_summary,
    retry_route_lookup,
)

from conftest import JOB_8KM, PROVIDER, FakeRouteProvider


def _directions_response(meters=9200.0, seconds=840.0):
    return {"routes": [{"summary": {"distance": meters, "duration": seconds}}]}


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def test_parse_route_summary_converts_metres():
    summary = parse_route_summary(_directions_response())
    assert summary == RouteSummary(distance_km=9.2, duration_seconds=840.0)


@pytest.mark.parametrize(
    "response",
    [{}, {"routes": []}, {"routes": [{"summary": {}}]}, None, _directions_response(meters=-1)],
)
def test_parse_route_summary_rejects_unexpected_shapes(response):
    with pytest.raises(ProtocolError):
        parse_route_summary(response)


def test_ors_provider_requests_lon_lat_pairs():
    client = MagicMock()
    client.directions.return_value = _directions_response()
    provider = OrsRoutedDistanceProvider(client, profile="driving-car")

    summary = asyncio.run(provider.get_route(PROVIDER, JOB_8KM))

    assert summary.distance_km == pytest.approx(9.2)
    client.directions.assert_called_once_with(
        coordinates=[[PROVIDER.longitude, PROVIDER.latitude], [JOB_8KM.longitude, JOB_8KM.latitude]],
        profile="driving-car",
        format="json",
    )


@pytest.mark.parametrize(
    "exc, retryable",
    [
        (ors_exceptions.ApiError(429, {"error": "Rate limit exceeded"}), True),
        (ors_exceptions.ApiError(503, {"error": "Service unavailable"}), True),
        (ors_exceptions.ApiError(400, {"error": {"code": 2003, "message": "Bad parameter"}}), False),
        (
            ors_exceptions.ApiError(
                404, {"error": {"code": 2010, "message": "Could not find routable point"}}
            ),
            False,
        ),
        (ors_exceptions.HTTPError(502), True),
        (ors_exceptions.Timeout(), True),
        (ConnectionResetError("reset"), True),
    ],
)
def test_ors_failures_are_classified(exc, retryable):
    client = MagicMock()
    client.directions.side_effect = exc
    provider = OrsRoutedDistanceProvider(client)

    with pytest.raises(DistanceServiceError) as excinfo:
        asyncio.run(provider.get_route(PROVIDER, JOB_8KM))

    assert excinfo.value.retryable is retryable


def test_missing_api_key_is_not_retryable(monkeypatch):
    monkeypatch.delenv("ORS_API_KEY", raising=False)
    monkeypatch.setattr(routing, "_ORS_CLIENT", None)
    provider = OrsRoutedDistanceProvider()

    with pytest.raises(DistanceServiceError) as excinfo:
        asyncio.run(provider.get_route(PROVIDER, JOB_8KM))

    assert excinfo.value.retryable is False
    assert "ORS_API_KEY" in str(excinfo.value)


def test_get_ors_client_builds_from_environment(monkeypatch):
    created = []

    class DummyClient:
        def __init__(self, key):
            created.append(key)

    monkeypatch.setenv("ORS_API_KEY", "abc123")
    monkeypatch.setattr(routing, "_ORS_CLIENT", None)
    monkeypatch.setattr(routing.ors, "Client", DummyClient)

    first = routing.get_ors_client()
    second = routing.get_ors_client()

    assert first is second
    assert created == ["abc123"]


def test_retry_succeeds_after_transient_failures(caplog):
    provider = FakeRouteProvider(
        [
            DistanceServiceError("busy", retryable=True),
            DistanceServiceError("busy", retryable=True),
            RouteSummary(9.2, 840.0),
        ]
    )
    sleep = RecordingSleep()

    with caplog.at_level(logging.WARNING, logger="manito.routing"):
        summary = asyncio.run(
            retry_route_lookup(provider, PROVIDER, JOB_8KM, RetryPolicy(3, 0.5), sleep=sleep)
        )

    assert summary.distance_km == 9.2
    assert len(provider.calls) == 3
    assert sleep.delays == [0.5, 1.0]
    assert "Retrying route lookup" in caplog.text


def test_retry_gives_up_after_policy_attempts():
    provider = FakeRouteProvider([DistanceServiceError("down") for _ in range(5)])
    sleep = RecordingSleep()

    with pytest.raises(DistanceServiceError) as excinfo:
        asyncio.run(retry_route_lookup(provider, PROVIDER, JOB_8KM, RetryPolicy(3, 0.5), sleep=sleep))

    assert excinfo.value.attempts == 3
    assert len(provider.calls) == 3
    assert sleep.delays == [0.5, 1.0]


def test_non_retryable_error_stops_immediately():
    provider = FakeRouteProvider([DistanceServiceError("no road", retryable=False)])
    sleep = RecordingSleep()

    with pytest.raises(DistanceServiceError) as excinfo:
        asyncio.run(retry_route_lookup(provider, PROVIDER, JOB_8KM, RetryPolicy(3, 0.5), sleep=sleep))

    assert excinfo.value.attempts == 1
    assert sleep.delays == []
