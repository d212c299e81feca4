"""
Workflow Action Handlers — closed registry keyed by action type.

Each action type owns:
    - a frozen config dataclass (``parse_config`` validates the template's
      ``action_config`` into it)
    - ``start``                 optional side fields (session ids, queue status)
    - ``validate_completion``   normalises the completion payload or raises
    - ``on_complete``           writes outputs, returns COMPLETED or FAILED
    - ``fail``                  explicit failure
    - ``next_state_on_event``   maps provider events to a next state
    - ``event_completion``      completion payload built from a provider event;
                                the event, not its payload, decides the outcome

Handlers mutate only ``HandlerContext.data`` (a working copy of the step's
``action_data``) and request instance context changes through
``HandlerContext.update_context``; the runtime persists both.

Usage:
    from app.services.workflow_handlers import action_registry

    handler = action_registry.get("APPROVAL")
    config = handler.parse_config(step.config)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Errors
# ═══════════════════════════════════════════════════════════════════════════


class ActionHandlerError(Exception):
    """Handler rejected a config or payload. ``code`` is machine-readable."""

    def __init__(self, message: str, code: str = "INVALID_PAYLOAD") -> None:
        self.code = code
        super().__init__(message)


class ActionRegistryError(Exception):
    """Unknown or duplicate action type registration."""


# ═══════════════════════════════════════════════════════════════════════════
#  Context
# ═══════════════════════════════════════════════════════════════════════════


@dataclass
class HandlerContext:
    instance: Any
    step: Any
    actor: Any
    config: Any
    data: dict
    context: dict
    now: datetime
    context_updates: dict = field(default_factory=dict)

    @property
    def actor_id(self):
        return getattr(self.actor, "id", None)

    def update_context(self, updates: dict) -> None:
        self.context_updates.update(updates)
        self.context.update(updates)


# ── Field helpers ────────────────────────────────────────────────────────────


def _as_dict(raw: Any, what: str, code: str) -> dict:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ActionHandlerError(f"{what} must be an object", code)
    return raw


def _opt_str(raw: dict, key: str, *, code: str, max_length: int | None = None,
             required: bool = False, default: str | None = None) -> str | None:
    value = raw.get(key, default)
    if value is None or (isinstance(value, str) and not value.strip() and required):
        if required:
            raise ActionHandlerError(f"'{key}' is required", code)
        return None
    if not isinstance(value, str):
        raise ActionHandlerError(f"'{key}' must be a string", code)
    if max_length is not None and len(value) > max_length:
        raise ActionHandlerError(f"'{key}' must be at most {max_length} characters", code)
    return value


def _opt_int(raw: dict, key: str, *, code: str, minimum: int | None = None,
             maximum: int | None = None) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, int) or isinstance(value, bool):
        raise ActionHandlerError(f"'{key}' must be an integer", code)
    if minimum is not None and value < minimum:
        raise ActionHandlerError(f"'{key}' must be >= {minimum}", code)
    if maximum is not None and value > maximum:
        raise ActionHandlerError(f"'{key}' must be <= {maximum}", code)
    return value


def _str_list(raw: dict, key: str, *, code: str) -> tuple[str, ...]:
    value = raw.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(v, str) and v.strip() for v in value):
        raise ActionHandlerError(f"'{key}' must be a list of non-empty strings", code)
    return tuple(value)


def _choice(raw: dict, key: str, choices: tuple[str, ...], default: str, *, code: str) -> str:
    value = raw.get(key, default)
    if value not in choices:
        raise ActionHandlerError(f"'{key}' must be one of {', '.join(choices)}", code)
    return value


def _token(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# ═══════════════════════════════════════════════════════════════════════════
#  Base handler + registry
# ═══════════════════════════════════════════════════════════════════════════


class ActionHandler:
    """Default behaviour shared by all action types."""

    action_type: str = ""

    def parse_config(self, raw: Any):
        return _as_dict(raw, "Action config", "INVALID_CONFIG")

    def can_start(self, ctx: HandlerContext) -> bool:
        return True

    def start(self, ctx: HandlerContext) -> str | None:
        return "IN_PROGRESS"

    def validate_completion(self, ctx: HandlerContext, payload: Any) -> dict:
        return _as_dict(payload, "Completion payload", "INVALID_PAYLOAD")

    def on_complete(self, ctx: HandlerContext, payload: dict) -> str:
        return "COMPLETED"

    def fail(self, ctx: HandlerContext, reason: str) -> str:
        ctx.data["failure_reason"] = reason
        return "FAILED"

    def next_state_on_event(self, ctx: HandlerContext, event_type: str, payload: dict) -> str | None:
        return None

    def event_completion(self, ctx: HandlerContext, event_type: str, payload: dict) -> dict:
        """Normalised ``on_complete`` payload for a completing provider event."""
        return {}


class ActionRegistry:
    """Dispatch table: action type → handler instance."""

    def __init__(self) -> None:
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, handler: ActionHandler) -> None:
        if handler.action_type in self._handlers:
            raise ActionRegistryError(f"Handler already registered for type {handler.action_type}")
        self._handlers[handler.action_type] = handler

    def override(self, handler: ActionHandler) -> None:
        self._handlers[handler.action_type] = handler

    def get(self, action_type: str) -> ActionHandler:
        handler = self._handlers.get(action_type)
        if handler is None:
            raise ActionRegistryError(f"No handler registered for type {action_type}")
        return handler

    def types(self) -> list[str]:
        return sorted(self._handlers)

    def list(self) -> list[ActionHandler]:
        return list(self._handlers.values())


action_registry = ActionRegistry()


def register_handler(cls: type[ActionHandler]) -> type[ActionHandler]:
    """Class decorator: instantiate and register the handler."""
    action_registry.register(cls())
    return cls


# ═══════════════════════════════════════════════════════════════════════════
#  1. APPROVAL
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ApprovalConfig:
    approver_role: str = "LAWYER"
    message: str | None = None
    on_reject: str = "FAIL"


@register_handler
class ApprovalHandler(ActionHandler):
    """
    Approve / reject decision.

    A rejection is a named outcome: FAILED by default, or COMPLETED with
    ``decision.approved = false`` when ``on_reject`` is COMPLETE (used to
    route IF_FALSE branches).
    """

    action_type = "APPROVAL"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        return ApprovalConfig(
            approver_role=_choice(raw, "approver_role", ("LAWYER", "ADMIN"), "LAWYER", code="INVALID_CONFIG"),
            message=_opt_str(raw, "message", code="INVALID_CONFIG", max_length=2000),
            on_reject=_choice(raw, "on_reject", ("FAIL", "COMPLETE"), "FAIL", code="INVALID_CONFIG"),
        )

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        approved = payload.get("approved")
        if not isinstance(approved, bool):
            raise ActionHandlerError("'approved' must be true or false", "INVALID_PAYLOAD")
        return {
            "approved": approved,
            "comment": _opt_str(payload, "comment", code="INVALID_PAYLOAD", max_length=2000),
        }

    def on_complete(self, ctx, payload):
        decision = {
            "approved": payload["approved"],
            "comment": payload["comment"],
            "decided_at": ctx.now.isoformat(),
            "decided_by": ctx.actor_id,
        }
        ctx.data["decision"] = decision
        updates = {
            "last_approval": {**decision, "step_id": ctx.step.id},
            "approval_count": int(ctx.context.get("approval_count") or 0) + 1,
        }
        if ctx.step.role_scope == "CLIENT":
            updates["client_approved"] = payload["approved"]
        ctx.update_context(updates)

        if payload["approved"] or ctx.config.on_reject == "COMPLETE":
            return "COMPLETED"
        ctx.data["failure_reason"] = "Approval rejected"
        return "FAILED"


# ═══════════════════════════════════════════════════════════════════════════
#  2. CHECKLIST
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ChecklistItem:
    id: str
    label: str
    required: bool = True


@dataclass(frozen=True)
class ChecklistConfig:
    items: tuple[ChecklistItem, ...] = ()

    @property
    def required_ids(self) -> set[str]:
        return {item.id for item in self.items if item.required}


@register_handler
class ChecklistHandler(ActionHandler):
    """All required items must be ticked. Omitting ``completed_items`` ticks every item."""

    action_type = "CHECKLIST"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        entries = raw.get("items") or []
        if not isinstance(entries, list):
            raise ActionHandlerError("'items' must be a list", "INVALID_CONFIG")
        items = []
        for entry in entries:
            if isinstance(entry, str) and entry.strip():
                items.append(ChecklistItem(id=entry, label=entry))
            elif isinstance(entry, dict) and isinstance(entry.get("label") or entry.get("id"), str):
                label = entry.get("label") or entry["id"]
                items.append(ChecklistItem(
                    id=str(entry.get("id") or label),
                    label=label,
                    required=bool(entry.get("required", True)),
                ))
            else:
                raise ActionHandlerError("Checklist items must be strings or {id, label, required}", "INVALID_CONFIG")
        ids = [item.id for item in items]
        if len(ids) != len(set(ids)):
            raise ActionHandlerError("Checklist item ids must be unique", "INVALID_CONFIG")
        return ChecklistConfig(items=tuple(items))

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        known = {item.id for item in ctx.config.items} | {item.label for item in ctx.config.items}
        if payload.get("completed_items") is None:
            return {"completed_items": [item.id for item in ctx.config.items]}

        ticked = _str_list(payload, "completed_items", code="INVALID_PAYLOAD")
        unknown = [t for t in ticked if t not in known]
        if unknown:
            raise ActionHandlerError(f"Unknown checklist items: {', '.join(unknown)}", "INVALID_PAYLOAD")
        by_label = {item.label: item.id for item in ctx.config.items}
        ticked_ids = {by_label.get(t, t) for t in ticked}
        missing = sorted(ctx.config.required_ids - ticked_ids)
        if missing:
            raise ActionHandlerError(
                f"Required checklist items not completed: {', '.join(missing)}",
                "CHECKLIST_INCOMPLETE",
            )
        return {"completed_items": [item.id for item in ctx.config.items if item.id in ticked_ids]}

    def on_complete(self, ctx, payload):
        ctx.data["completed_items"] = payload["completed_items"]
        return "COMPLETED"


# ═══════════════════════════════════════════════════════════════════════════
#  3. WRITE_TEXT
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class WriteTextConfig:
    title: str
    description: str | None = None
    placeholder: str | None = None
    min_length: int | None = None
    max_length: int | None = None


@register_handler
class WriteTextHandler(ActionHandler):
    action_type = "WRITE_TEXT"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        config = WriteTextConfig(
            title=_opt_str(raw, "title", code="INVALID_CONFIG", required=True, max_length=300),
            description=_opt_str(raw, "description", code="INVALID_CONFIG", max_length=2000),
            placeholder=_opt_str(raw, "placeholder", code="INVALID_CONFIG", max_length=500),
            min_length=_opt_int(raw, "min_length", code="INVALID_CONFIG", minimum=0),
            max_length=_opt_int(raw, "max_length", code="INVALID_CONFIG", minimum=1),
        )
        if (config.min_length is not None and config.max_length is not None
                and config.max_length < config.min_length):
            raise ActionHandlerError("'max_length' must be >= 'min_length'", "INVALID_CONFIG")
        return config

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        content = _opt_str(payload, "content", code="INVALID_PAYLOAD", required=True)
        cfg = ctx.config
        if cfg.min_length is not None and len(content) < cfg.min_length:
            raise ActionHandlerError(f"Text must be at least {cfg.min_length} characters", "TEXT_TOO_SHORT")
        if cfg.max_length is not None and len(content) > cfg.max_length:
            raise ActionHandlerError(f"Text must be at most {cfg.max_length} characters", "TEXT_TOO_LONG")
        return {
            "content": content,
            "format": _choice(payload, "format", ("plain", "html"), "plain", code="INVALID_PAYLOAD"),
        }

    def on_complete(self, ctx, payload):
        ctx.data.update({
            "content": payload["content"],
            "format": payload["format"],
            "submitted_at": ctx.now.isoformat(),
            "submitted_by": ctx.actor_id,
        })
        ctx.update_context({f"text_{ctx.step.id}": payload["content"]})
        return "COMPLETED"


# ═══════════════════════════════════════════════════════════════════════════
#  4. TASK
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TaskConfig:
    description: str | None = None
    requires_evidence: bool = False
    estimated_minutes: int | None = None


@register_handler
class TaskHandler(ActionHandler):
    action_type = "TASK"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        return TaskConfig(
            description=_opt_str(raw, "description", code="INVALID_CONFIG", max_length=5000),
            requires_evidence=bool(raw.get("requires_evidence", False)),
            estimated_minutes=_opt_int(raw, "estimated_minutes", code="INVALID_CONFIG", minimum=0),
        )

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        evidence = _str_list(payload, "evidence", code="INVALID_PAYLOAD")
        if ctx.config.requires_evidence and not evidence:
            raise ActionHandlerError("Evidence is required to complete this task", "EVIDENCE_REQUIRED")
        return {
            "notes": _opt_str(payload, "notes", code="INVALID_PAYLOAD", max_length=5000),
            "evidence": list(evidence),
        }

    def on_complete(self, ctx, payload):
        ctx.data.update({"notes": payload["notes"], "evidence": payload["evidence"]})
        ctx.update_context({
            "task_completed": True,
            "completed_by": ctx.actor_id,
            "completed_at": ctx.now.isoformat(),
        })
        return "COMPLETED"


# ═══════════════════════════════════════════════════════════════════════════
#  5. SIGNATURE
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class SignatureConfig:
    document_id: str | None = None
    provider: str = "mock"


@register_handler
class SignatureHandler(ActionHandler):
    action_type = "SIGNATURE"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        document_id = raw.get("document_id")
        return SignatureConfig(
            document_id=str(document_id) if document_id is not None else None,
            provider=_choice(raw, "provider", ("mock", "docusign"), "mock", code="INVALID_CONFIG"),
        )

    def start(self, ctx):
        ctx.data.update({
            "session_id": _token("sig"),
            "provider": ctx.config.provider,
            "status": "SENT",
        })
        return "IN_PROGRESS"

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        document_id = payload.get("document_id") or ctx.config.document_id
        if document_id is None:
            raise ActionHandlerError("A signed document id is required", "DOCUMENT_REQUIRED")
        return {"document_id": str(document_id)}

    def on_complete(self, ctx, payload):
        ctx.data.update({
            "status": "SIGNED",
            "document_id": payload["document_id"],
            "signed_at": ctx.now.isoformat(),
            "signed_by": ctx.actor_id,
        })
        ctx.update_context({
            "signature_completed": True,
            "signed_by": ctx.actor_id,
            "signed_at": ctx.now.isoformat(),
            "document_id": payload["document_id"],
        })
        return "COMPLETED"

    def next_state_on_event(self, ctx, event_type, payload):
        if event_type == "SIGNATURE_COMPLETED":
            return "COMPLETED"
        if event_type in ("SIGNATURE_FAILED", "SIGNATURE_DECLINED"):
            return "FAILED"
        return None

    def event_completion(self, ctx, event_type, payload):
        document_id = payload.get("document_id") or ctx.config.document_id
        return {"document_id": str(document_id) if document_id is not None else None}


# ═══════════════════════════════════════════════════════════════════════════
#  6. PAYMENT
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class PaymentConfig:
    amount: float
    currency: str = "USD"
    provider: str = "mock"


@register_handler
class PaymentHandler(ActionHandler):
    action_type = "PAYMENT"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        amount = raw.get("amount")
        if not isinstance(amount, (int, float)) or isinstance(amount, bool) or amount < 0:
            raise ActionHandlerError("'amount' must be a number >= 0", "INVALID_CONFIG")
        currency = _opt_str(raw, "currency", code="INVALID_CONFIG", default="USD")
        if not 3 <= len(currency) <= 10:
            raise ActionHandlerError("'currency' must be 3-10 characters", "INVALID_CONFIG")
        return PaymentConfig(
            amount=amount,
            currency=currency.upper(),
            provider=_opt_str(raw, "provider", code="INVALID_CONFIG", default="mock", max_length=50),
        )

    def start(self, ctx):
        ctx.data.update({
            "intent_id": _token("pay"),
            "amount": ctx.config.amount,
            "currency": ctx.config.currency,
            "status": "REQUIRES_PAYMENT",
        })
        return "IN_PROGRESS"

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        return {"reference": _opt_str(payload, "reference", code="INVALID_PAYLOAD", max_length=200)}

    def on_complete(self, ctx, payload):
        ctx.data.update({
            "status": "PAID",
            "paid_at": ctx.now.isoformat(),
            "reference": payload["reference"],
        })
        ctx.update_context({
            "payment_completed": True,
            "payment_amount": ctx.config.amount,
            "payment_currency": ctx.config.currency,
        })
        return "COMPLETED"

    def next_state_on_event(self, ctx, event_type, payload):
        if event_type == "PAYMENT_SUCCEEDED":
            return "COMPLETED"
        if event_type == "PAYMENT_FAILED":
            return "FAILED"
        return None

    def event_completion(self, ctx, event_type, payload):
        reference = payload.get("reference") or ctx.data.get("intent_id")
        return {"reference": str(reference) if reference is not None else None}

    def fail(self, ctx, reason):
        ctx.data["status"] = "FAILED"
        return super().fail(ctx, reason)


# ═══════════════════════════════════════════════════════════════════════════
#  7. REQUEST_DOC
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class RequestDocConfig:
    request_text: str
    accepted_file_types: tuple[str, ...] = ()


@register_handler
class RequestDocHandler(ActionHandler):
    action_type = "REQUEST_DOC"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        return RequestDocConfig(
            request_text=_opt_str(raw, "request_text", code="INVALID_CONFIG", required=True, max_length=2000),
            accepted_file_types=_str_list(raw, "accepted_file_types", code="INVALID_CONFIG"),
        )

    def start(self, ctx):
        ctx.data.update({"status": "OPEN", "requested_at": ctx.now.isoformat()})
        ctx.update_context({"documents_requested": True})
        return "IN_PROGRESS"

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        document_id = payload.get("document_id")
        if document_id is None or str(document_id).strip() == "":
            raise ActionHandlerError("'document_id' of the uploaded document is required", "DOCUMENT_REQUIRED")
        return {"document_id": str(document_id)}

    def on_complete(self, ctx, payload):
        ctx.data.update({
            "status": "FULFILLED",
            "document_id": payload["document_id"],
            "fulfilled_at": ctx.now.isoformat(),
        })
        ctx.update_context({
            "document_uploaded_id": payload["document_id"],
            "document_count": int(ctx.context.get("document_count") or 0) + 1,
        })
        return "COMPLETED"

    def next_state_on_event(self, ctx, event_type, payload):
        if event_type == "DOCUMENT_UPLOADED":
            return "COMPLETED"
        return None

    def event_completion(self, ctx, event_type, payload):
        document_id = payload.get("document_id")
        if document_id is None or str(document_id).strip() == "":
            raise ActionHandlerError("DOCUMENT_UPLOADED events must carry a document_id", "DOCUMENT_REQUIRED")
        return {"document_id": str(document_id)}


# ═══════════════════════════════════════════════════════════════════════════
#  8. POPULATE_QUESTIONNAIRE
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class QuestionnaireConfig:
    questionnaire_id: str
    title: str | None = None
    description: str | None = None
    due_in_days: int | None = None


@register_handler
class QuestionnaireHandler(ActionHandler):
    action_type = "POPULATE_QUESTIONNAIRE"

    def parse_config(self, raw):
        raw = super().parse_config(raw)
        questionnaire_id = raw.get("questionnaire_id")
        if questionnaire_id is None or str(questionnaire_id).strip() == "":
            raise ActionHandlerError("'questionnaire_id' is required", "INVALID_CONFIG")
        return QuestionnaireConfig(
            questionnaire_id=str(questionnaire_id),
            title=_opt_str(raw, "title", code="INVALID_CONFIG", max_length=300),
            description=_opt_str(raw, "description", code="INVALID_CONFIG", max_length=2000),
            due_in_days=_opt_int(raw, "due_in_days", code="INVALID_CONFIG", minimum=0, maximum=365),
        )

    def start(self, ctx):
        ctx.data["questionnaire_id"] = ctx.config.questionnaire_id
        if ctx.config.due_in_days is not None:
            ctx.data["due_at"] = (ctx.now + timedelta(days=ctx.config.due_in_days)).isoformat()
        return "IN_PROGRESS"

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        response_id = payload.get("response_id")
        if response_id is None or str(response_id).strip() == "":
            raise ActionHandlerError("'response_id' is required", "RESPONSE_REQUIRED")
        return {"response_id": str(response_id)}

    def on_complete(self, ctx, payload):
        ctx.data.update({"response_id": payload["response_id"], "submitted_at": ctx.now.isoformat()})
        ctx.update_context({
            f"questionnaire_{ctx.step.id}": {
                "questionnaire_id": ctx.config.questionnaire_id,
                "response_id": payload["response_id"],
                "completed_at": ctx.now.isoformat(),
            },
        })
        return "COMPLETED"


# ═══════════════════════════════════════════════════════════════════════════
#  9. AUTOMATION_EMAIL / AUTOMATION_WEBHOOK
# ═══════════════════════════════════════════════════════════════════════════

AUTOMATION_LOG_LIMIT = 20
AUTOMATION_RESULTS = ("SUCCEEDED", "FAILED", "MANUAL_OVERRIDE")


@dataclass(frozen=True)
class EmailAutomationConfig:
    recipients: tuple[str, ...]
    cc: tuple[str, ...] = ()
    subject_template: str | None = None
    body_template: str | None = None
    send_strategy: str = "IMMEDIATE"
    delay_minutes: int | None = None


@dataclass(frozen=True)
class WebhookAutomationConfig:
    url: str
    method: str = "POST"
    headers: dict = field(default_factory=dict)
    payload_template: Any = None
    send_strategy: str = "IMMEDIATE"
    delay_minutes: int | None = None


class _AutomationHandler(ActionHandler):
    """Queue on start, record the run result on completion."""

    def _parse_strategy(self, raw: dict) -> tuple[str, int | None]:
        strategy = _choice(raw, "send_strategy", ("IMMEDIATE", "DELAYED"), "IMMEDIATE", code="INVALID_CONFIG")
        delay = _opt_int(raw, "delay_minutes", code="INVALID_CONFIG", minimum=1, maximum=10080)
        if strategy == "DELAYED" and delay is None:
            raise ActionHandlerError("'delay_minutes' is required for DELAYED sends", "INVALID_CONFIG")
        return strategy, delay

    def _delay_minutes(self, config) -> int | None:
        return config.delay_minutes if config.send_strategy == "DELAYED" else None

    def _append_log(self, ctx, entry: dict) -> None:
        log = list(ctx.data.get("log") or [])
        log.append(entry)
        ctx.data["log"] = log[-AUTOMATION_LOG_LIMIT:]

    def start(self, ctx):
        runs = int(ctx.data.get("runs") or 0) + 1
        ctx.data.update({"status": "QUEUED", "runs": runs, "queued_at": ctx.now.isoformat()})
        delay = self._delay_minutes(ctx.config)
        if delay:
            ctx.data["scheduled_for"] = (ctx.now + timedelta(minutes=delay)).isoformat()
        self._append_log(ctx, {"at": ctx.now.isoformat(), "status": "QUEUED", "run": runs, "by": ctx.actor_id})
        return "IN_PROGRESS"

    def validate_completion(self, ctx, payload):
        payload = super().validate_completion(ctx, payload)
        status = payload.get("status")
        if status not in AUTOMATION_RESULTS:
            raise ActionHandlerError(
                f"'status' must be one of {', '.join(AUTOMATION_RESULTS)}", "INVALID_PAYLOAD",
            )
        return {
            "status": status,
            "message": _opt_str(payload, "message", code="INVALID_PAYLOAD", max_length=2000),
        }

    def on_complete(self, ctx, payload):
        ctx.data["status"] = payload["status"]
        ctx.data["finished_at"] = ctx.now.isoformat()
        self._append_log(ctx, {
            "at": ctx.now.isoformat(),
            "status": payload["status"],
            "message": payload["message"],
            "by": ctx.actor_id,
        })
        ctx.update_context({f"automation_{ctx.step.id}": payload["status"]})
        if payload["status"] == "FAILED":
            ctx.data["failure_reason"] = payload["message"] or "Automation failed"
            return "FAILED"
        return "COMPLETED"

    def next_state_on_event(self, ctx, event_type, payload):
        if event_type == "AUTOMATION_SUCCEEDED":
            return "COMPLETED"
        if event_type == "AUTOMATION_FAILED":
            return "FAILED"
        return None

    def event_completion(self, ctx, event_type, payload):
        message = payload.get("message")
        return {"status": "SUCCEEDED", "message": str(message)[:2000] if message is not None else None}

    def fail(self, ctx, reason):
        ctx.data["status"] = "FAILED"
        ctx.data["finished_at"] = ctx.now.isoformat()
        self._append_log(ctx, {"at": ctx.now.isoformat(), "status": "FAILED", "message": reason, "by": ctx.actor_id})
        ctx.update_context({f"automation_{ctx.step.id}": "FAILED"})
        return super().fail(ctx, reason)


@register_handler
class EmailAutomationHandler(_AutomationHandler):
    action_type = "AUTOMATION_EMAIL"

    def parse_config(self, raw):
        raw = ActionHandler.parse_config(self, raw)
        recipients = _str_list(raw, "recipients", code="INVALID_CONFIG")
        if not recipients:
            raise ActionHandlerError("'recipients' must contain at least one address", "INVALID_CONFIG")
        strategy, delay = self._parse_strategy(raw)
        return EmailAutomationConfig(
            recipients=recipients,
            cc=_str_list(raw, "cc", code="INVALID_CONFIG"),
            subject_template=_opt_str(raw, "subject_template", code="INVALID_CONFIG", max_length=500),
            body_template=_opt_str(raw, "body_template", code="INVALID_CONFIG", max_length=20000),
            send_strategy=strategy,
            delay_minutes=delay,
        )


@register_handler
class WebhookAutomationHandler(_AutomationHandler):
    action_type = "AUTOMATION_WEBHOOK"

    def parse_config(self, raw):
        raw = ActionHandler.parse_config(self, raw)
        url = _opt_str(raw, "url", code="INVALID_CONFIG", required=True, max_length=2000)
        if not url.startswith(("http://", "https://")):
            raise ActionHandlerError("'url' must be an http(s) URL", "INVALID_CONFIG")
        headers = raw.get("headers") or {}
        if not isinstance(headers, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in headers.items()
        ):
            raise ActionHandlerError("'headers' must map strings to strings", "INVALID_CONFIG")
        strategy, delay = self._parse_strategy(raw)
        return WebhookAutomationConfig(
            url=url,
            method=_choice(raw, "method", ("GET", "POST", "PUT", "PATCH", "DELETE"), "POST", code="INVALID_CONFIG"),
            headers=dict(headers),
            payload_template=raw.get("payload_template"),
            send_strategy=strategy,
            delay_minutes=delay,
        )


# ── Authoring helper ─────────────────────────────────────────────────────────


def validate_action_config(action_type: str, raw_config: Any):
    """Parse a template step's config; raises ActionRegistryError / ActionHandlerError."""
    return action_registry.get(action_type).parse_config(raw_config)

