"""
Unit tests for alert and alert rule API routes.
"""

import pytest
from fastapi.testclient import TestClient
from huddle.api.main import app
from huddle.api.routes import alerts as alert_routes
from huddle.services import alert_rule_service, performance_alert_service
from huddle.services.errors import ValidationError, NotFoundError

COACH_HEADERS = {"X-User-Id": "coach1", "X-User-Role": "coach"}
PLAYER_HEADERS = {"X-User-Id": "p1", "X-User-Role": "player"}


def _alert(**overrides):
    alert = {
        "id": 1,
        "player_id": "p1",
        "alert_type": "benchmark_low",
        "severity": "warning",
        "metric": "ppg",
        "current_value": 8.0,
        "threshold_value": 10.0,
        "trend": None,
        "message": "Pat is averaging 8.00 ppg",
        "action_required": False,
        "acknowledged": False,
        "acknowledged_by": None,
        "acknowledged_at": None,
        "resolved_at": None,
        "rule_id": 1,
        "created_at": "2026-03-01T12:00:00+00:00",
        "updated_at": "2026-03-01T12:00:00+00:00",
    }
    alert.update(overrides)
    return alert


def _rule(**overrides):
    rule = {
        "id": 1,
        "name": "Low scoring",
        "description": None,
        "metric_name": "ppg",
        "comparison": "below",
        "threshold_value": 10.0,
        "secondary_threshold": None,
        "time_window": 7,
        "alert_type": "benchmark_low",
        "severity": "warning",
        "alert_message": "{player_name} is averaging {value} {metric}",
        "is_active": True,
        "check_frequency": "daily",
        "applies_to": "all",
        "specific_players": [],
        "created_by": "coach1",
        "created_at": "2026-03-01T12:00:00+00:00",
        "updated_at": "2026-03-01T12:00:00+00:00",
    }
    rule.update(overrides)
    return rule


@pytest.fixture
def client():
    """Create a test client."""
    return TestClient(app)


@pytest.mark.parametrize(
    "method,path",
    [
        ("get", "/api/alerts"),
        ("get", "/api/alerts/summary"),
        ("put", "/api/alerts/1/acknowledge"),
        ("get", "/api/alert-rules"),
        ("post", "/api/alert-rules/run-checks"),
    ],
)
def test_alert_routes_require_coach(client, method, path):
    response = getattr(client, method)(path, headers=PLAYER_HEADERS)
    assert response.status_code == 403


def test_list_alerts_grouped_by_player(client, monkeypatch):
    async def fake_list_alerts(session, **kwargs):
        assert kwargs["include_resolved"] is False
        return [_alert(id=1, player_id="p1"), _alert(id=2, player_id="p2"), _alert(id=3, player_id="p1", metric="rebounds")]

    monkeypatch.setattr(performance_alert_service, "list_alerts", fake_list_alerts, raising=True)

    response = client.get("/api/alerts", headers=COACH_HEADERS)

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert [a["id"] for a in data["alerts_by_player"]["p1"]] == [1, 3]
    assert [a["id"] for a in data["alerts_by_player"]["p2"]] == [2]


def test_alert_summary(client, monkeypatch):
    async def fake_summary(session):
        return {
            "total": 2,
            "unacknowledged": 2,
            "by_severity": {"info": 0, "warning": 1, "alert": 0, "critical": 1},
            "by_type": {"benchmark_low": 2},
            "recent_critical": [_alert(severity="critical")],
            "at_risk_players": [{"player_id": "p1", "alert_count": 2, "max_severity": "critical"}],
        }

    monkeypatch.setattr(performance_alert_service, "get_alert_summary", fake_summary, raising=True)

    response = client.get("/api/alerts/summary", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()["at_risk_players"][0]["player_id"] == "p1"


def test_acknowledge_alert_uses_caller(client, monkeypatch):
    async def fake_ack(session, alert_id, acknowledged_by, now=None):
        return _alert(id=alert_id, acknowledged=True, acknowledged_by=acknowledged_by,
                      acknowledged_at="2026-03-01T13:00:00+00:00")

    monkeypatch.setattr(performance_alert_service, "acknowledge_alert", fake_ack, raising=True)

    response = client.put("/api/alerts/4/acknowledge", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()["acknowledged_by"] == "coach1"


def test_resolve_missing_alert(client, monkeypatch):
    async def fake_resolve(session, alert_id, now=None):
        raise NotFoundError("Performance alert", alert_id)

    monkeypatch.setattr(performance_alert_service, "resolve_alert", fake_resolve, raising=True)

    response = client.put("/api/alerts/404/resolve", headers=COACH_HEADERS)
    assert response.status_code == 404


def test_create_rule(client, monkeypatch):
    captured = {}

    async def fake_create(session, created_by, **fields):
        captured.update(fields, created_by=created_by)
        return _rule(name=fields["name"], created_by=created_by)

    monkeypatch.setattr(alert_rule_service, "create_alert_rule", fake_create, raising=True)

    response = client.post(
        "/api/alert-rules",
        json={
            "name": "Low scoring",
            "metric_name": "ppg",
            "comparison": "below",
            "threshold_value": 10,
            "alert_type": "benchmark_low",
            "alert_message": "{player_name} is averaging {value} {metric}",
        },
        headers=COACH_HEADERS,
    )

    assert response.status_code == 200
    assert captured["created_by"] == "coach1"
    assert captured["threshold_value"] == 10
    assert captured["secondary_threshold"] is None


def test_create_between_rule_without_secondary_is_400(client, monkeypatch):
    async def fake_create(session, created_by, **fields):
        raise ValidationError("secondary_threshold", "secondary_threshold is required for 'between' rules")

    monkeypatch.setattr(alert_rule_service, "create_alert_rule", fake_create, raising=True)

    response = client.post(
        "/api/alert-rules",
        json={
            "name": "Range",
            "metric_name": "ppg",
            "comparison": "between",
            "threshold_value": 5,
            "alert_type": "benchmark_low",
            "alert_message": "out of range",
        },
        headers=COACH_HEADERS,
    )
    assert response.status_code == 400


def test_update_rule_sends_only_provided_fields(client, monkeypatch):
    captured = {}

    async def fake_update(session, rule_id, updates):
        captured["updates"] = updates
        return _rule(id=rule_id, threshold_value=updates["threshold_value"])

    monkeypatch.setattr(alert_rule_service, "update_alert_rule", fake_update, raising=True)

    response = client.patch("/api/alert-rules/3", json={"threshold_value": 12}, headers=COACH_HEADERS)

    assert response.status_code == 200
    assert captured["updates"] == {"threshold_value": 12.0}


def test_get_alert(client, monkeypatch):
    async def fake_get(session, alert_id):
        return _alert(id=alert_id)

    monkeypatch.setattr(performance_alert_service, "get_alert", fake_get, raising=True)

    response = client.get("/api/alerts/7", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()["id"] == 7


def test_get_missing_alert(client, monkeypatch):
    async def fake_get(session, alert_id):
        raise NotFoundError("Performance alert", alert_id)

    monkeypatch.setattr(performance_alert_service, "get_alert", fake_get, raising=True)

    response = client.get("/api/alerts/404", headers=COACH_HEADERS)
    assert response.status_code == 404


def test_get_rule(client, monkeypatch):
    async def fake_get(session, rule_id):
        return _rule(id=rule_id)

    monkeypatch.setattr(alert_rule_service, "get_alert_rule", fake_get, raising=True)

    response = client.get("/api/alert-rules/3", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()["id"] == 3

    assert client.get("/api/alert-rules/3", headers=PLAYER_HEADERS).status_code == 403


def test_update_rule_null_is_active_is_400(client, monkeypatch):
    captured = {}

    async def fake_update(session, rule_id, updates):
        captured["updates"] = updates
        raise ValidationError("is_active", "is_active must be true or false")

    monkeypatch.setattr(alert_rule_service, "update_alert_rule", fake_update, raising=True)

    response = client.patch("/api/alert-rules/3", json={"is_active": None}, headers=COACH_HEADERS)

    assert response.status_code == 400
    assert captured["updates"] == {"is_active": None}


def test_deactivate_rule(client, monkeypatch):
    async def fake_deactivate(session, rule_id):
        return _rule(id=rule_id, is_active=False)

    monkeypatch.setattr(alert_rule_service, "deactivate_alert_rule", fake_deactivate, raising=True)

    response = client.put("/api/alert-rules/3/deactivate", headers=COACH_HEADERS)
    assert response.status_code == 200
    assert response.json()["is_active"] is False


class _FakeEngine:
    def __init__(self):
        self.calls = []

    async def run_pass(self, now=None, check_frequency=None):
        self.calls.append(check_frequency)
        return {
            "evaluated_at": "2026-03-01T12:00:00+00:00",
            "check_frequency": check_frequency,
            "rules_evaluated": 1,
            "units_evaluated": 2,
            "alerts_created": [_alert()],
            "alerts_resolved": [],
            "deduplicated": 0,
            "skipped": [{"rule_id": 1, "player_id": "p2", "reason": "no ppg data"}],
            "invalid_rules": [],
            "errors": [],
        }


@pytest.mark.parametrize("frequency", ["realtime", "hourly", "daily", "weekly"])
def test_run_checks(client, monkeypatch, frequency):
    fake_engine = _FakeEngine()
    monkeypatch.setattr(alert_routes, "get_alert_engine", lambda: fake_engine, raising=True)

    response = client.post(f"/api/alert-rules/run-checks?check_frequency={frequency}", headers=COACH_HEADERS)

    assert response.status_code == 200
    assert fake_engine.calls == [frequency]
    assert response.json()["units_evaluated"] == 2


def test_run_checks_rejects_unknown_frequency(client):
    response = client.post("/api/alert-rules/run-checks?check_frequency=monthly", headers=COACH_HEADERS)
    assert response.status_code == 400
