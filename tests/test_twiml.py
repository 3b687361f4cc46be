"""
Tests for the HTTP endpoints: TwiML generation, Twilio callbacks, health.
"""

import os
import xml.etree.ElementTree as ET
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient


@pytest.fixture
def client():
    from server.app import app
    # Not entered as a context manager, so the startup model check never runs.
    return TestClient(app, raise_server_exceptions=False)


class TestTwimlGeneration:
    """Tests for TwiML endpoint."""

    @pytest.mark.parametrize("path", ["/twiml", "/incoming-call"])
    def test_twiml_contains_stream_element(self, client, path):
        response = client.post(path, data={"CallSid": "CA123"})

        assert response.status_code == 200
        assert "application/xml" in response.headers.get("content-type", "")

        content = response.text
        assert "<Response>" in content
        assert "<Connect>" in content
        assert "<Stream" in content
        assert "wss://test.ngrok.io/ws" in content

    def test_twiml_is_valid_xml(self, client):
        response = client.get("/incoming-call")

        root = ET.fromstring(response.text)
        assert root.tag == "Response"
        assert root.find("./Connect/Stream").get("url") == "wss://test.ngrok.io/ws"

    def test_twiml_uses_correct_host(self, client):
        test_host = "my-custom-domain.example.com"

        with patch.dict(os.environ, {"PUBLIC_HOST": f"https://{test_host}/"}):
            from src.callagent.config import get_config
            get_config.cache_clear()

            response = client.post("/incoming-call")

        assert f"wss://{test_host}/ws" in response.text


class TestTwilioCallbacks:
    def test_status_callback_is_counted(self, client):
        from server.app import metrics
        before = metrics.status_callbacks

        response = client.post("/status", data={"CallSid": "CA123", "CallStatus": "completed"})

        assert response.status_code == 200
        assert response.text == "<Response></Response>"
        assert metrics.status_callbacks == before + 1

    def test_fail_callback_is_counted(self, client):
        from server.app import metrics
        before = metrics.failures

        response = client.post("/fail", data={"CallSid": "CA123", "ErrorCode": "11200"})

        assert response.status_code == 200
        assert metrics.failures == before + 1


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert "timestamp" in data


class TestMetricsEndpoint:
    def test_metrics_returns_json(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        data = response.json()
        for key in (
            "uptime_seconds",
            "total_connections",
            "active_connections",
            "total_calls",
            "active_calls",
            "status_callbacks",
            "failures",
            "errors",
        ):
            assert key in data
