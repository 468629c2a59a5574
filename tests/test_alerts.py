import smtplib
from dataclasses import replace

from drc import alerts, db
from drc.rollouts import RolloutReport
from drc.runtime import Outcome


def _report():
    return RolloutReport(
        rollout_id="r1",
        outcome=Outcome.FAILED,
        message="api failed while awaiting_health: 3 consecutive unhealthy answers",
        failed_service="api",
        services=[
            {"service": "db", "state": "healthy", "target_image": "postgres:16",
             "error": None, "error_type": None, "failed_in": None},
            {"service": "api", "state": "failed", "target_image": "registry.local/api:2",
             "error": "HTTP 503", "error_type": "ServiceUnhealthyError", "failed_in": "awaiting_health"},
        ],
    )


class FakeSMTP:
    sent = []
    fail = False

    def __init__(self, host, port, timeout=None):
        self.host, self.port = host, port

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self):
        pass

    def login(self, user, password):
        if self.fail:
            raise smtplib.SMTPAuthenticationError(535, b"bad credentials")

    def sendmail(self, sender, recipients, body):
        FakeSMTP.sent.append((sender, recipients, body))


def _configure(monkeypatch, **overrides):
    cfg = replace(
        alerts.settings,
        enable_email=True,
        smtp_host="smtp.local",
        smtp_port=587,
        smtp_user="drc",
        smtp_password="pw",
        email_from="drc@local",
        email_to="ops@local, oncall@local",
        **overrides,
    )
    monkeypatch.setattr(alerts, "settings", cfg)
    FakeSMTP.sent = []
    FakeSMTP.fail = False
    monkeypatch.setattr(alerts.smtplib, "SMTP", FakeSMTP)


def test_format_report():
    subject, body = alerts.format_report(_report())
    assert subject == "DRC rollout r1 FAILED: api"
    assert "ServiceUnhealthyError in awaiting_health" in body
    assert body.splitlines()[0].startswith("api failed while awaiting_health")


def test_disabled_by_default(monkeypatch):
    monkeypatch.setattr(alerts, "settings", replace(alerts.settings, enable_email=False))
    assert alerts.notify_failure(_report()) is False


def test_sends_to_every_recipient(monkeypatch):
    _configure(monkeypatch)
    assert alerts.notify_failure(_report()) is True
    sender, recipients, body = FakeSMTP.sent[0]
    assert sender == "drc@local"
    assert recipients == ["ops@local", "oncall@local"]
    assert "DRC rollout r1 FAILED" in body


def test_delivery_error_is_journaled(monkeypatch):
    _configure(monkeypatch)
    FakeSMTP.fail = True
    assert alerts.send_email("s", "b") is False
    assert FakeSMTP.sent == []
    assert "Alert email not sent" in db.latest_events(limit=1)[0]["message"]
