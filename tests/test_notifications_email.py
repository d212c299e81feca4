"""
Workflow notification + e-mail tests.

Covers:
    - step-ready in-app notifications and e-mails to the eligible users
    - per-step notification policies (EMAIL / PUSH / SMS, IMMEDIATE / DELAYED)
    - side-effect failures never undoing the transition
    - EmailService delivery modes and template rendering
"""

import smtplib
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.models import db
from app.models.audit import AuditLog
from app.models.notification import Notification
from app.models.scheduling import EmailLog
from app.services import workflow_runtime as runtime
from app.services import workflow_service
from app.services.email_service import EmailService
from app.services.scheduler_service import SchedulerService
from app.services.workflow_notifications import validate_notification_policies


@pytest.fixture()
def run(admin, matter, publish_template):
    def _run(steps, dependencies=None, **kw):
        template = publish_template(steps, dependencies)
        subject = kw or {"matter_id": matter.id}
        return workflow_service.instantiate(template.id, actor=admin, **subject)
    return _run


def _inbox(user):
    return Notification.query.filter_by(recipient_id=user.id).order_by(Notification.id).all()


def _finish(step, actor, payload=None):
    runtime.start_step(step.id, actor)
    return runtime.complete_step(step.id, actor, payload or {})


# ═════════════════════════════════════════════════════════════════════════
# Step ready
# ═════════════════════════════════════════════════════════════════════════


class TestStepReady:
    def test_eligible_users_are_told(self, run, draft_step, lawyer, paralegal, admin):
        instance = run([draft_step("engagement_letter", 0)])
        step = instance.steps[0]

        [notification] = _inbox(lawyer)
        assert notification.title == "Step ready: Engagement Letter"
        assert notification.entity_type == "workflow_step"
        assert notification.entity_id == step.id
        assert _inbox(paralegal) == []
        assert _inbox(admin) == []

        [email] = EmailLog.query.filter_by(template_name="workflow_step_ready").all()
        assert email.recipient_email == lawyer.email
        assert email.subject == "Action required: Engagement Letter"
        assert email.status == "sent"

    def test_client_step_reaches_portal_user(self, run, draft_step, portal_user):
        run([draft_step("upload_id", 0, "REQUEST_DOC", role_scope="CLIENT",
                        action_config={"request_text": "Upload a photo ID"})])
        assert [n.title for n in _inbox(portal_user)] == ["Step ready: Upload Id"]

    def test_admins_cover_empty_role(self, run, draft_step, contact, admin):
        run([draft_step("conflict_check", 0, role_scope="PARALEGAL")], contact_id=contact.id)
        assert len(_inbox(admin)) == 1

    def test_next_step_notified_on_advance(self, run, draft_step, lawyer, paralegal):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1, role_scope="PARALEGAL")],
            [{"source": "a", "target": "b"}],
        )
        assert _inbox(paralegal) == []
        _finish(instance.steps[0], lawyer)
        assert [n.title for n in _inbox(paralegal)] == ["Step ready: B"]

    def test_flag_disables_everything(self, app, run, draft_step, lawyer):
        with patch.dict(app.config, {"WORKFLOW_NOTIFICATIONS_ENABLED": False}):
            run([draft_step("a", 0)])
        assert _inbox(lawyer) == []
        assert EmailLog.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════
# Policies
# ═════════════════════════════════════════════════════════════════════════


class TestPolicies:
    def test_completed_email_with_literal_and_role_recipients(self, run, draft_step, lawyer, portal_user):
        policy = {
            "channel": "EMAIL",
            "triggers": ["ON_COMPLETED"],
            "recipients": ["ops@firm.test", "CLIENT"],
            "subject_template": "{step_title} done for {client_name}",
        }
        instance = run([draft_step("a", 0, notification_policies=[policy])])
        workflow_service.patch_context(instance.id, lawyer, {"updates": {"client_name": "Doe"}})
        _finish(instance.steps[0], lawyer)

        mails = EmailLog.query.filter_by(subject="A done for Doe").all()
        assert {m.recipient_email for m in mails} == {"ops@firm.test", portal_user.email}
        assert all(m.status == "sent" for m in mails)

    def test_default_template_for_policy_email(self, run, draft_step, lawyer):
        policy = {"triggers": ["ON_FAILED"], "recipients": ["ops@firm.test"]}
        instance = run([draft_step("a", 0, notification_policies=[policy])])
        step = instance.steps[0]
        runtime.start_step(step.id, lawyer)
        runtime.fail_step(step.id, lawyer, "Client unreachable")

        [mail] = EmailLog.query.filter_by(template_name="workflow_step_update").all()
        assert mail.subject == "A: failed"

    def test_push_on_ready(self, run, draft_step, paralegal):
        policy = {"channel": "PUSH", "triggers": ["ON_READY"], "recipients": ["PARALEGAL"]}
        run([draft_step("a", 0, notification_policies=[policy])])
        assert [n.title for n in _inbox(paralegal)] == ["A: ready"]

    def test_sms_is_dropped(self, run, draft_step, lawyer):
        policy = {"channel": "SMS", "triggers": ["ON_COMPLETED"], "recipients": ["LAWYER"]}
        instance = run([draft_step("a", 0, notification_policies=[policy])])
        before = (EmailLog.query.count(), Notification.query.count())
        _finish(instance.steps[0], lawyer)
        assert (EmailLog.query.count(), Notification.query.count()) == before

    def test_delayed_email_waits_for_dispatcher(self, run, draft_step, lawyer):
        policy = {
            "triggers": ["ON_COMPLETED"],
            "recipients": ["ops@firm.test"],
            "send_strategy": "DELAYED",
            "delay_minutes": 30,
        }
        instance = run([draft_step("a", 0, notification_policies=[policy])])
        _finish(instance.steps[0], lawyer)

        [mail] = EmailLog.query.filter_by(recipient_email="ops@firm.test").all()
        assert mail.status == "queued"
        assert mail.send_after is not None
        assert mail.html_body

        later = datetime.now(timezone.utc) + timedelta(hours=1)
        SchedulerService.set_clock(lambda: later)
        assert SchedulerService.run_job("deferred_email_dispatcher")["result"] == {"delivered": 1}
        assert db.session.get(EmailLog, mail.id).status == "sent"

    def test_policy_validation(self):
        assert validate_notification_policies(None) == []
        assert validate_notification_policies({"channel": "EMAIL"}) == ["notification_policies must be a list"]
        errors = validate_notification_policies([
            {"triggers": ["ON_READY"], "recipients": [42]},
            {"triggers": ["ON_READY"], "send_strategy": "DELAYED", "delay_minutes": 0},
        ])
        assert any("recipients must be a list" in e for e in errors)
        assert any("delay_minutes must be between 1 and 10080" in e for e in errors)


# ═════════════════════════════════════════════════════════════════════════
# Failure isolation
# ═════════════════════════════════════════════════════════════════════════


class TestFailureIsolation:
    def test_notification_failure_keeps_transition(self, run, draft_step, lawyer):
        instance = run(
            [draft_step("a", 0), draft_step("b", 1)],
            [{"source": "a", "target": "b"}],
        )
        with patch("app.services.workflow_notifications.NotificationService.broadcast",
                   side_effect=RuntimeError("push gateway down")):
            step = _finish(instance.steps[0], lawyer)

        assert step.action_state == "COMPLETED"
        assert [s.action_state for s in instance.steps] == ["COMPLETED", "READY"]
        assert [n.title for n in _inbox(lawyer)] == ["Step ready: A"]

    def test_audit_failure_is_swallowed(self, run, draft_step, lawyer):
        instance = run([draft_step("a", 0)])
        with patch("app.services.workflow_service.write_audit", side_effect=RuntimeError("disk full")):
            step = runtime.start_step(instance.steps[0].id, lawyer)

        assert step.action_state == "IN_PROGRESS"
        assert AuditLog.query.filter_by(action="workflow.step.start").count() == 0


# ═════════════════════════════════════════════════════════════════════════
# EmailService
# ═════════════════════════════════════════════════════════════════════════


class TestEmailService:
    def test_dev_mode_logs_as_sent(self):
        log = EmailService.send(to_email="a@firm.test", subject="Hi", html_body="<p>x</p>")
        assert log.status == "sent"
        assert log.sent_at is not None

    def test_smtp_delivery(self, app):
        with patch.dict(app.config, {"MAIL_SERVER": "smtp.firm.test"}), \
                patch.object(EmailService, "_send_smtp") as smtp:
            log = EmailService.send(to_email="a@firm.test", to_name="Ann", subject="Hi", html_body="<p>x</p>")
        smtp.assert_called_once_with(to_email="a@firm.test", to_name="Ann", subject="Hi", html_body="<p>x</p>")
        assert log.status == "sent"

    def test_smtp_failure_is_recorded(self, app):
        with patch.dict(app.config, {"MAIL_SERVER": "smtp.firm.test"}), \
                patch.object(EmailService, "_send_smtp", side_effect=smtplib.SMTPException("relay denied")):
            log = EmailService.send(to_email="a@firm.test", subject="Hi", html_body="<p>x</p>")
        assert log.status == "failed"
        assert log.error_message == "relay denied"

    def test_unknown_template(self):
        assert EmailService.send_from_template(to_email="a@firm.test", template_name="nope", context={}) is None

    def test_render(self):
        assert EmailService.render("{step_title} for {who}", {"step_title": "Sign"}) == "Sign for {who}"
        assert EmailService.render("{unclosed", {}) == "{unclosed"
        assert EmailService.render(None, {}) == ""
