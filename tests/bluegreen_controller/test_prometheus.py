"""
Tests for the Prometheus metric source.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from bluegreen_controller.metrics.prometheus import (
    PrometheusMetricSource,
    format_duration,
    parse_query_response,
    render_query,
)


def _vector(*values):
    return {
        "status": "success",
        "data": {
            "resultType": "vector",
            "result": [
                {"metric": {"pod": f"api-{i}"}, "value": [1767268800.0, value]}
                for i, value in enumerate(values)
            ],
        },
    }


def _session_returning(status, payload=None, text=""):
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.text = AsyncMock(return_value=text)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.get = MagicMock(return_value=context)
    return session


class TestQueryTemplate:

    @pytest.mark.parametrize("seconds,expected", [(60, "60s"), (300.4, "300s"), (0, "1s")])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_render_query(self):
        query = "sum(rate(errors_total[{window}])) / sum(rate(requests_total[{window}]))"

        assert render_query(query, 120) == (
            "sum(rate(errors_total[120s])) / sum(rate(requests_total[120s]))"
        )

    def test_query_without_placeholder_is_unchanged(self):
        assert render_query("min(up)", 60) == "min(up)"


class TestParseResponse:

    def test_vector_takes_largest_series(self):
        reading = parse_query_response(_vector("0.01", "0.07", "0.02"))

        assert reading.ok
        assert reading.value == pytest.approx(0.07)

    def test_scalar(self):
        payload = {
            "status": "success",
            "data": {"resultType": "scalar", "result": [1767268800.0, "1"]},
        }

        assert parse_query_response(payload).value == 1.0

    def test_empty_result_is_unavailable(self):
        reading = parse_query_response(_vector())

        assert not reading.ok
        assert reading.error == "empty result"

    @pytest.mark.parametrize("raw", ["NaN", "+Inf", "garbage"])
    def test_non_numeric_is_unavailable(self, raw):
        assert not parse_query_response(_vector(raw)).ok

    def test_error_status(self):
        payload = {"status": "error", "errorType": "bad_data", "error": "parse error"}

        reading = parse_query_response(payload)

        assert not reading.ok
        assert "bad_data" in reading.error

    def test_matrix_is_unsupported(self):
        payload = {"status": "success", "data": {"resultType": "matrix", "result": []}}

        assert not parse_query_response(payload).ok


class TestPrometheusMetricSource:

    @pytest.mark.asyncio
    async def test_query_success(self):
        source = PrometheusMetricSource("http://prometheus:9090/")
        session = _session_returning(200, _vector("0.03"))

        with patch.object(source, "_get_session", AsyncMock(return_value=session)):
            reading = await source.query("rate(errors_total[{window}])", 300)

        assert reading.ok
        assert reading.value == pytest.approx(0.03)
        session.get.assert_called_once_with(
            "http://prometheus:9090/api/v1/query",
            params={"query": "rate(errors_total[300s])"},
        )

    @pytest.mark.asyncio
    async def test_http_error_is_unavailable(self):
        source = PrometheusMetricSource("http://prometheus:9090")
        session = _session_returning(503, text="overloaded")

        with patch.object(source, "_get_session", AsyncMock(return_value=session)):
            reading = await source.query("min(up)", 60)

        assert not reading.ok
        assert reading.error == "HTTP 503"

    @pytest.mark.asyncio
    async def test_network_error_is_unavailable(self):
        source = PrometheusMetricSource("http://prometheus:9090")
        session = MagicMock()
        session.get = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))

        with patch.object(source, "_get_session", AsyncMock(return_value=session)):
            reading = await source.query("min(up)", 60)

        assert not reading.ok
        assert "network error" in reading.error

    @pytest.mark.asyncio
    async def test_close_without_session(self):
        source = PrometheusMetricSource("http://prometheus:9090")

        await source.close()
