"""
Legal Workflow Engine
Scheduled Jobs.

Concrete job implementations that run on the scheduler loop.  Every job
takes ``(app, now)`` and returns a summary dict.

Jobs:
    - task_reminder_scanner: E-mails assignee and matter owner before a task is due
    - event_reminder_scanner: E-mails organizer and attendees before an event starts
    - deferred_email_dispatcher: Delivers queued (DELAYED) workflow e-mails
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from app.models import db
from app.models.crm import CalendarEvent, MatterTask
from app.services.email_service import EmailService
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)

# Tasks already overdue by more than this are left alone
TASK_OVERDUE_BACKSTOP = timedelta(minutes=5)
# Events that started up to this long ago are still picked up by the query
EVENT_START_GRACE = timedelta(minutes=5)
REMINDER_BATCH_SIZE = 200
TASK_REMINDER_STATUSES = ("OPEN", "IN_PROGRESS")


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; every stored timestamp is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _fmt(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "unspecified"


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Task Reminder Scanner
# ═══════════════════════════════════════════════════════════════════════════


def _task_recipients(task: MatterTask) -> list[str]:
    emails: list[str] = []
    if task.assignee is not None and task.assignee.email:
        emails.append(task.assignee.email)
    owner = task.matter.owner if task.matter is not None else None
    if owner is not None and owner.email and owner.email not in emails:
        emails.append(owner.email)
    return emails


@register_job("task_reminder_scanner")
def scan_task_reminders(app, now: datetime) -> dict[str, Any]:
    """Send one reminder per open task that falls due within the lookahead window."""
    lookahead = timedelta(minutes=max(int(app.config.get("TASK_REMINDER_LOOKAHEAD_MINUTES", 60)), 5))
    window_end = now + lookahead

    candidates = (
        MatterTask.query
        .filter(
            MatterTask.reminder_notified.is_(False),
            MatterTask.due_at.isnot(None),
            MatterTask.due_at <= window_end,
            MatterTask.status.in_(TASK_REMINDER_STATUSES),
        )
        .order_by(MatterTask.due_at)
        .limit(REMINDER_BATCH_SIZE)
        .all()
    )

    results = {"processed": len(candidates), "sent": 0}
    for task in candidates:
        due_at = _aware(task.due_at)
        until_due = due_at - now
        if until_due < -TASK_OVERDUE_BACKSTOP or until_due > lookahead:
            continue

        recipients = _task_recipients(task)
        if recipients:
            context = {
                "task_title": task.title,
                "matter_title": task.matter.title if task.matter is not None else "-",
                "due_at": _fmt(due_at),
                "priority": task.priority,
            }
            for email in recipients:
                EmailService.send_from_template(
                    to_email=email,
                    template_name="task_reminder",
                    context=context,
                    category="task",
                    entity_type="matter_task",
                    entity_id=task.id,
                )
            results["sent"] += 1

        # Flag even without recipients so the task is not rescanned forever
        task.reminder_notified = True
        task.reminder_notified_at = now

    db.session.commit()
    if results["sent"]:
        logger.info("Task reminder scanner: %s", results, extra={"job_name": "task_reminder_scanner"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Event Reminder Scanner
# ═══════════════════════════════════════════════════════════════════════════


def _event_recipients(event: CalendarEvent) -> list[str]:
    emails: list[str] = []
    if event.organizer is not None and event.organizer.email:
        emails.append(event.organizer.email)
    for attendee in event.attendees or []:
        email = attendee.get("email") if isinstance(attendee, dict) else None
        if email and email not in emails:
            emails.append(email)
    return emails


@register_job("event_reminder_scanner")
def scan_event_reminders(app, now: datetime) -> dict[str, Any]:
    """Send one reminder per event once its start is within ``reminder_minutes``."""
    max_lookahead = timedelta(minutes=int(app.config.get("EVENT_REMINDER_MAX_LOOKAHEAD_MINUTES", 1440)))

    candidates = (
        CalendarEvent.query
        .filter(
            CalendarEvent.reminder_minutes > 0,
            CalendarEvent.reminder_sent_at.is_(None),
            CalendarEvent.start_at >= now - EVENT_START_GRACE,
            CalendarEvent.start_at <= now + max_lookahead,
        )
        .order_by(CalendarEvent.start_at)
        .limit(REMINDER_BATCH_SIZE)
        .all()
    )

    results = {"processed": len(candidates), "sent": 0}
    for event in candidates:
        start_at = _aware(event.start_at)
        until_start = start_at - now
        if until_start < timedelta(0) or until_start > timedelta(minutes=event.reminder_minutes):
            continue

        recipients = _event_recipients(event)
        if recipients:
            context = {
                "event_title": event.title,
                "start_at": _fmt(start_at),
                "location": event.location or "-",
            }
            for email in recipients:
                EmailService.send_from_template(
                    to_email=email,
                    template_name="event_reminder",
                    context=context,
                    category="event",
                    entity_type="calendar_event",
                    entity_id=event.id,
                )
            results["sent"] += 1

        event.reminder_sent_at = now

    db.session.commit()
    if results["sent"]:
        logger.info("Event reminder scanner: %s", results, extra={"job_name": "event_reminder_scanner"})
    return results


# ═══════════════════════════════════════════════════════════════════════════
#  Job 3: Deferred Email Dispatcher
# ═══════════════════════════════════════════════════════════════════════════


@register_job("deferred_email_dispatcher")
def dispatch_deferred_emails(app, now: datetime) -> dict[str, Any]:
    """Deliver queued workflow e-mails whose send_after time has passed."""
    delivered = EmailService.dispatch_due(now)
    db.session.commit()
    return {"delivered": delivered}
