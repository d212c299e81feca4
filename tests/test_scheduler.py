"""
Scheduler + scheduled job tests.

Time is driven through ``SchedulerService.set_clock``; the background
loop is only started with ``run_due_jobs`` patched out.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.models import db
from app.models.crm import CalendarEvent, MatterTask
from app.models.scheduling import EmailLog
from app.services.email_service import EmailService
from app.services.scheduler_service import SchedulerService

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
JOBS = ["deferred_email_dispatcher", "event_reminder_scanner", "task_reminder_scanner"]


@pytest.fixture()
def clock():
    """``clock.move(minutes=...)`` shifts the scheduler's notion of now."""
    state = {"now": NOW}

    class _Clock:
        @staticmethod
        def move(**delta):
            state["now"] = state["now"] + timedelta(**delta)
            return state["now"]

        @staticmethod
        def now():
            return state["now"]

    SchedulerService.set_clock(lambda: state["now"])
    return _Clock


def _emails(template_name):
    return EmailLog.query.filter_by(template_name=template_name).order_by(EmailLog.id).all()


# ═════════════════════════════════════════════════════════════════════════
# Runner
# ═════════════════════════════════════════════════════════════════════════


class TestRunner:
    def test_clock_is_injectable(self, clock):
        assert SchedulerService.now() == NOW
        clock.move(minutes=5)
        assert SchedulerService.now() == NOW + timedelta(minutes=5)

    def test_run_job_records_history(self, clock):
        result = SchedulerService.run_job("deferred_email_dispatcher")
        assert result["status"] == "success"
        assert result["result"] == {"delivered": 0}
        assert result["ran_at"] == NOW.isoformat()

        status = SchedulerService.get_job_status("deferred_email_dispatcher")
        assert status["run_count"] == 1
        assert status["last_run_status"] == "success"

    def test_unknown_job(self):
        assert SchedulerService.run_job("nightly_backup")["status"] == "error"

    def test_failing_job_is_recorded(self, clock):
        def boom(app, now):
            raise RuntimeError("mail relay down")

        with patch.dict("app.services.scheduler_service._job_registry", {"deferred_email_dispatcher": boom}):
            result = SchedulerService.run_job("deferred_email_dispatcher")

        assert result["status"] == "failed"
        assert result["error"] == "mail relay down"
        status = SchedulerService.get_job_status("deferred_email_dispatcher")
        assert status["error_count"] == 1
        assert status["last_error"] == "mail relay down"

    def test_due_jobs_respect_interval(self, clock):
        assert sorted(r["job_name"] for r in SchedulerService.run_due_jobs()) == JOBS
        assert SchedulerService.run_due_jobs() == []

        clock.move(seconds=61)
        assert len(SchedulerService.run_due_jobs()) == 3

    def test_disabled_job_is_not_due(self, clock):
        SchedulerService.toggle_job("task_reminder_scanner", False)
        names = [r["job_name"] for r in SchedulerService.run_due_jobs()]
        assert "task_reminder_scanner" not in names
        assert SchedulerService.get_job_status("task_reminder_scanner")["status"] == "paused"

    def test_toggle_unknown_job(self):
        assert SchedulerService.toggle_job("nightly_backup", True) is None

    def test_start_and_stop(self):
        assert SchedulerService.is_running() is False
        with patch.object(SchedulerService, "run_due_jobs", return_value=[]):
            assert SchedulerService.start(3600) is True
            assert SchedulerService.start(3600) is False
            assert SchedulerService.is_running() is True
            SchedulerService.stop()
        assert SchedulerService.is_running() is False


# ═════════════════════════════════════════════════════════════════════════
# Task reminders
# ═════════════════════════════════════════════════════════════════════════


class TestTaskReminders:
    @pytest.fixture()
    def tasks(self, matter, paralegal):
        rows = {
            "soon": MatterTask(matter_id=matter.id, title="File answer", assignee_id=paralegal.id,
                               due_at=NOW + timedelta(minutes=30)),
            "later": MatterTask(matter_id=matter.id, title="Prep deposition", assignee_id=paralegal.id,
                                due_at=NOW + timedelta(hours=3)),
            "overdue": MatterTask(matter_id=matter.id, title="Serve subpoena", assignee_id=paralegal.id,
                                  due_at=NOW - timedelta(hours=1)),
            "done": MatterTask(matter_id=matter.id, title="Intake call", assignee_id=paralegal.id,
                               due_at=NOW + timedelta(minutes=10), status="DONE"),
        }
        db.session.add_all(rows.values())
        db.session.commit()
        return rows

    def test_reminds_assignee_and_owner_once(self, clock, tasks, lawyer, paralegal):
        result = SchedulerService.run_job("task_reminder_scanner")
        assert result["result"]["sent"] == 1

        sent = _emails("task_reminder")
        assert {e.recipient_email for e in sent} == {paralegal.email, lawyer.email}
        assert all(e.entity_id == tasks["soon"].id for e in sent)
        assert sent[0].subject.startswith("Reminder: File answer")

        soon = db.session.get(MatterTask, tasks["soon"].id)
        assert soon.reminder_notified is True
        assert db.session.get(MatterTask, tasks["later"].id).reminder_notified is False
        assert db.session.get(MatterTask, tasks["overdue"].id).reminder_notified is False

    def test_second_run_sends_nothing(self, clock, tasks):
        SchedulerService.run_job("task_reminder_scanner")
        result = SchedulerService.run_job("task_reminder_scanner")
        assert result["result"]["sent"] == 0
        assert len(_emails("task_reminder")) == 2

    def test_window_moves_with_clock(self, clock, tasks):
        SchedulerService.run_job("task_reminder_scanner")
        clock.move(hours=2, minutes=30)
        assert SchedulerService.run_job("task_reminder_scanner")["result"]["sent"] == 1
        assert db.session.get(MatterTask, tasks["later"].id).reminder_notified is True


# ═════════════════════════════════════════════════════════════════════════
# Event reminders
# ═════════════════════════════════════════════════════════════════════════


class TestEventReminders:
    @pytest.fixture()
    def events(self, matter, lawyer):
        rows = {
            "hearing": CalendarEvent(
                title="Motion hearing", location="Courtroom 4B",
                start_at=NOW + timedelta(minutes=20), end_at=NOW + timedelta(minutes=80),
                organizer_id=lawyer.id, matter_id=matter.id,
                attendees=[{"email": "opposing@counsel.test"}, {"email": lawyer.email}],
                reminder_minutes=30,
            ),
            "mediation": CalendarEvent(
                title="Mediation", start_at=NOW + timedelta(hours=2), end_at=NOW + timedelta(hours=5),
                organizer_id=lawyer.id, reminder_minutes=30,
            ),
        }
        db.session.add_all(rows.values())
        db.session.commit()
        return rows

    def test_reminder_inside_lead_time(self, clock, events, lawyer):
        result = SchedulerService.run_job("event_reminder_scanner")
        assert result["result"] == {"processed": 2, "sent": 1}

        sent = _emails("event_reminder")
        assert [e.recipient_email for e in sent] == [lawyer.email, "opposing@counsel.test"]
        assert sent[0].subject.startswith("Upcoming: Motion hearing")
        assert db.session.get(CalendarEvent, events["hearing"].id).reminder_sent_at is not None
        assert db.session.get(CalendarEvent, events["mediation"].id).reminder_sent_at is None

    def test_later_event_picked_up_when_due(self, clock, events):
        SchedulerService.run_job("event_reminder_scanner")
        clock.move(hours=1, minutes=35)
        result = SchedulerService.run_job("event_reminder_scanner")
        assert result["result"]["sent"] == 1
        assert len(_emails("event_reminder")) == 3


# ═════════════════════════════════════════════════════════════════════════
# Deferred e-mail
# ═════════════════════════════════════════════════════════════════════════


class TestDeferredEmail:
    def test_queued_until_send_after(self, clock):
        log = EmailService.send(
            to_email="ops@firm.test", subject="Engagement letter signed",
            html_body="<p>Signed</p>", send_after=NOW + timedelta(minutes=15),
        )
        db.session.commit()
        assert log.status == "queued"

        assert SchedulerService.run_job("deferred_email_dispatcher")["result"] == {"delivered": 0}
        clock.move(minutes=20)
        assert SchedulerService.run_job("deferred_email_dispatcher")["result"] == {"delivered": 1}

        log = db.session.get(EmailLog, log.id)
        assert log.status == "sent"
        assert log.html_body is None
