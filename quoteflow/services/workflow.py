"""
Quotation workflow: the single entry point for every state change.

Each public operation loads the quotation, checks the caller's last-known
version, recomputes totals, lets the revision manager decide whether a new
snapshot is needed, drives the approval engine where the transition is
approval-gated, and commits status, revision pointer, chain pointer and the
status log in one transaction. Domain events are returned to the caller,
who forwards them to notifications after the commit.
"""
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from quoteflow import db
from quoteflow.errors import (
    ConcurrentModification,
    InvalidStateForEdit,
    InvalidStateTransition,
    NotFound,
    QuotationArchived,
    QuotationError,
    Unauthorized,
    ValidationError,
)
from quoteflow.models.approval_chain import ApprovalChain
from quoteflow.models.quotation import Quotation, QuotationStatus as S
from quoteflow.models.quotation_item import QuotationItem
from quoteflow.models.revision import RevisionKind
from quoteflow.models.status_log import QuotationStatusLog
from quoteflow.services import approval, calculator, events as ev, revisions
from quoteflow.services.identity import resolve_roles

TransitionResult = namedtuple("TransitionResult", "quotation events revision chain", defaults=(None, None))

# 状態遷移表: {from: {event: to}}
TRANSITIONS = {
    S.DRAFT.value: {
        "submit_for_approval": S.PENDING_APPROVAL.value,
        "archive": S.ARCHIVED.value,
    },
    S.PENDING_APPROVAL.value: {
        "chain_approved": S.APPROVED.value,
        "chain_rejected": S.DRAFT.value,
        "revise": S.DRAFT.value,
        "archive": S.ARCHIVED.value,
    },
    S.APPROVED.value: {
        "send": S.SENT.value,
        "revise": S.DRAFT.value,
        "archive": S.ARCHIVED.value,
    },
    S.SENT.value: {
        "send": S.SENT.value,
        "client_view": S.VIEWED.value,
        "accept": S.ACCEPTED.value,
        "reject": S.REJECTED.value,
        "expire": S.EXPIRED.value,
        "revise": S.DRAFT.value,
        "archive": S.ARCHIVED.value,
    },
    S.VIEWED.value: {
        "send": S.VIEWED.value,
        "client_view": S.VIEWED.value,
        "accept": S.ACCEPTED.value,
        "reject": S.REJECTED.value,
        "expire": S.EXPIRED.value,
        "revise": S.DRAFT.value,
        "archive": S.ARCHIVED.value,
    },
    S.ACCEPTED.value: {"reopen": S.DRAFT.value},
    S.REJECTED.value: {"reopen": S.DRAFT.value},
    S.EXPIRED.value: {"reopen": S.DRAFT.value},
    S.ARCHIVED.value: {},
}

EDITABLE_FIELDS = ("title", "client_reference", "currency", "validity_days", "document_discount", "document_taxes")


def available_events(status):
    status = getattr(status, "value", status)
    return sorted(TRANSITIONS.get(status, {}))


# --- helpers ---

@contextmanager
def _unit_of_work(label):
    try:
        yield
        db.session.commit()
    except StaleDataError as e:
        db.session.rollback()
        current_app.logger.warning("[WORKFLOW] concurrent modification during %s: %s", label, e)
        raise ConcurrentModification(f"quotation was modified concurrently during {label}") from e
    except IntegrityError as e:
        db.session.rollback()
        current_app.logger.warning("[WORKFLOW] integrity conflict during %s: %s", label, e)
        raise ConcurrentModification(f"conflicting write during {label}") from e
    except Exception:
        db.session.rollback()
        raise


def _load_quotation(quotation_id):
    quotation = db.session.get(Quotation, quotation_id)
    if quotation is None:
        raise NotFound(f"quotation {quotation_id} not found")
    return quotation


def _check_version(quotation, expected_version):
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        raise ValidationError("expected_version must be an integer", field="expected_version")
    if expected != quotation.version:
        raise ConcurrentModification(
            f"quotation {quotation.id} is at version {quotation.version}, not {expected}",
            current_version=quotation.version,
        )


def _bump(quotation):
    quotation.version = quotation.version + 1


def _target(quotation, event):
    targets = TRANSITIONS.get(quotation.status, {})
    if event not in targets:
        raise InvalidStateTransition(
            f"cannot {event} quotation {quotation.id} in status {quotation.status}",
            status=quotation.status,
            event=event,
        )
    return targets[event]


def _log_status(quotation, event, from_status, actor_id, comment=None):
    db.session.add(QuotationStatusLog(
        quotation_id=quotation.id,
        event=event,
        from_status=from_status,
        to_status=quotation.status,
        actor_id=actor_id,
        revision_version=quotation.current_revision_version,
        comment=comment,
    ))
    current_app.logger.info(
        "[WORKFLOW] quotation_id=%s %s -> %s event=%s actor_id=%s rev=%s",
        quotation.id, from_status, quotation.status, event, actor_id, quotation.current_revision_version
    )


def _transition(quotation, event, actor_id, comment=None):
    from_status = quotation.status
    quotation.status = _target(quotation, event)
    _bump(quotation)
    _log_status(quotation, event, from_status, actor_id, comment)
    return from_status


def _require_admin(actor_id):
    if current_app.config["ADMIN_ROLE"] not in resolve_roles(actor_id):
        raise Unauthorized(f"user {actor_id} is not an administrator")


def _current_chain(quotation):
    if not quotation.current_chain_id:
        return None
    return db.session.get(ApprovalChain, quotation.current_chain_id)


ITEM_SCALE = 4  # quotation_items の Numeric(…, 4)


def _dec(value, field):
    """Item values are stored as given; more decimals than the column holds is an input error."""
    d = calculator.to_decimal(value, field)
    if d.normalize().as_tuple().exponent < -ITEM_SCALE:
        raise ValidationError(
            f"{field} allows at most {ITEM_SCALE} decimal places: {value!r}", field=field
        )
    return d


def _build_items(raw_items):
    if raw_items is None:
        return []
    if not isinstance(raw_items, (list, tuple)):
        raise ValidationError("items must be a list", field="items")
    items = []
    for position, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise ValidationError(f"item {position} must be an object", field="items")
        discount = raw.get("discount")
        if discount is None and raw.get("discount_type"):
            discount = {"type": raw.get("discount_type"), "value": raw.get("discount_value")}
        discount_type = (discount.get("type") or "percentage") if discount else None
        if discount_type not in (None, "percentage", "fixed"):
            raise ValidationError(f"item {position}: line discount must be percentage or fixed", field="items")
        items.append(QuotationItem(
            position=position,
            description=(raw.get("description") or "").strip() or None,
            quantity=_dec(raw.get("quantity"), "quantity"),
            unit_price=_dec(raw.get("unit_price"), "unit_price"),
            tax_rate=_dec(raw.get("tax_rate"), "tax_rate"),
            discount_type=discount_type,
            discount_value=_dec(discount.get("value"), "discount") if discount else None,
        ))
    return items


def _normalize_rule(rule, field):
    if not isinstance(rule, dict):
        raise ValidationError(f"{field} must be an object", field=field)
    out = {"scope": "document", "type": rule.get("type") or "percentage"}
    for key in ("value", "min_amount", "max_amount"):
        if rule.get(key) not in (None, ""):
            out[key] = f"{calculator.to_decimal(rule[key], key):f}"
    if rule.get("name"):
        out["name"] = str(rule["name"])
    if rule.get("tiers"):
        out["tiers"] = [
            {
                "threshold": f"{calculator.to_decimal(t.get('threshold'), 'threshold'):f}",
                "discount": f"{calculator.to_decimal(t.get('discount'), 'discount'):f}",
            }
            for t in rule["tiers"]
        ]
    return out


def _normalize_document_rules(field, value):
    if not value:
        return None
    if field == "document_discount":
        rules = _normalize_rule(value, field)
    else:
        raw = [value] if isinstance(value, dict) else list(value)
        rules = [_normalize_rule(r, field) for r in raw]
    problems = calculator.validate_rules(rules, kind="discount" if field == "document_discount" else "tax")
    if problems:
        raise ValidationError(f"invalid {field}: " + "; ".join(problems), field=field, problems=problems)
    return rules


def _apply_header(quotation, changes):
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError(f"fields cannot be edited: {sorted(unknown)}", field=sorted(unknown)[0])
    for field, value in changes.items():
        if field in ("document_discount", "document_taxes"):
            setattr(quotation, field, _normalize_document_rules(field, value))
        elif field == "validity_days":
            quotation.validity_days = _validity_days(value)
        elif field == "title":
            if not value or not str(value).strip():
                raise ValidationError("title is required", field="title")
            quotation.title = str(value).strip()
        elif field == "currency":
            quotation.currency = str(value).strip().upper() if value else current_app.config["DEFAULT_CURRENCY"]
        else:
            setattr(quotation, field, value)


def _validity_days(value):
    if value in (None, ""):
        return current_app.config["DEFAULT_VALIDITY_DAYS"]
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError("validity_days must be an integer", field="validity_days")
    if days < 1:
        raise ValidationError("validity_days must be at least 1", field="validity_days")
    return days


def _recalculate(quotation):
    totals = calculator.compute_document_totals(
        [item.as_calc_input() for item in quotation.items],
        document_discount=quotation.document_discount,
        document_tax=quotation.document_taxes,
        quantum=current_app.config["CURRENCY_QUANTUM"],
    )
    for item, line in zip(quotation.items, totals["lines"]):
        item.line_total = line["net_amount"]
    quotation.subtotal = totals["subtotal"]
    quotation.discount_amount = totals["discount_amount"]
    quotation.tax_amount = totals["tax_amount"]
    quotation.grand_total = totals["grand_total"]
    return totals


def _next_document_number(now):
    prefix = f"{current_app.config['DOCUMENT_NUMBER_PREFIX']}-{now.year}-"
    # 文字列の max だと 9999 > 10000 になるので連番部分を数値で比較する
    seq_column = db.cast(db.func.substr(Quotation.document_number, len(prefix) + 1), db.Integer)
    last = (
        db.session.query(db.func.max(seq_column))
        .filter(Quotation.document_number.like(prefix + "%"))
        .scalar()
    )
    seq = int(last) + 1 if last else 1
    return f"{prefix}{seq:04d}"


def _supersede(quotation, actor_id, now):
    chain = _current_chain(quotation)
    if not approval.supersede_chain(chain, now):
        return []
    return [ev.build_event(quotation, ev.CHAIN_SUPERSEDED, actor_id, {"chain_id": chain.id}, now)]


def _apply_chain_outcome(quotation, chain, outcome, actor_id, now):
    if isinstance(outcome, approval.ChainApproved):
        from_status = _transition(quotation, "chain_approved", actor_id)
        quotation.approved_at = now
        return [ev.build_event(quotation, ev.QUOTATION_APPROVED, actor_id,
                               {"chain_id": chain.id, "from_status": from_status}, now)]
    from_status = _transition(quotation, "chain_rejected", actor_id, outcome.comment)
    quotation.rejection_reason = outcome.comment
    return [ev.build_event(quotation, ev.QUOTATION_APPROVAL_REJECTED, actor_id,
                           {"chain_id": chain.id, "step_index": outcome.step_index,
                            "reason": outcome.comment, "from_status": from_status}, now)]


# --- operations ---

def create_quotation(title, items=None, actor_id=None, client_reference=None, currency=None,
                     document_discount=None, document_taxes=None, validity_days=None, now=None):
    """Create a Draft quotation together with its initial revision."""
    now = now or datetime.utcnow()
    with _unit_of_work("create"):
        quotation, revision = _insert_quotation(
            title, items, actor_id, client_reference, currency,
            document_discount, document_taxes, validity_days, now,
        )
        events = [ev.build_event(quotation, ev.QUOTATION_CREATED, actor_id,
                                 {"document_number": quotation.document_number}, now)]
    return TransitionResult(quotation, events, revision)


def _insert_quotation(title, items, actor_id, client_reference, currency, document_discount,
                      document_taxes, validity_days, now, event="create", change_summary="initial version"):
    if not title or not str(title).strip():
        raise ValidationError("title is required", field="title")
    quotation = Quotation(
        document_number=_next_document_number(now),
        title=str(title).strip(),
        client_reference=client_reference,
        currency=(currency or current_app.config["DEFAULT_CURRENCY"]).upper(),
        status=S.DRAFT.value,
        version=1,
        validity_days=_validity_days(validity_days),
        document_discount=_normalize_document_rules("document_discount", document_discount),
        document_taxes=_normalize_document_rules("document_taxes", document_taxes),
        created_by=actor_id,
        created_at=now,
    )
    quotation.items = _build_items(items)
    _recalculate(quotation)
    db.session.add(quotation)
    db.session.flush()  # Allocate quotation.id without committing

    revision, _ = revisions.create_revision(quotation, change_summary, actor_id, kind=RevisionKind.INITIAL)
    _log_status(quotation, event, None, actor_id)
    return quotation, revision


def duplicate_quotation(quotation_id, actor_id=None, title=None, now=None):
    """
    Copy a quotation's content (header, items, document rules) into a new
    Draft with its own document number and revision 1. The source is only
    read, in any status.
    """
    now = now or datetime.utcnow()
    with _unit_of_work("duplicate"):
        source = _load_quotation(quotation_id)
        quotation, revision = _insert_quotation(
            title or f"{source.title} (Copy)",
            [item.as_input() for item in source.items],
            actor_id,
            source.client_reference,
            source.currency,
            source.document_discount,
            source.document_taxes,
            source.validity_days,
            now,
            event="duplicate",
            change_summary=f"duplicated from {source.document_number}",
        )
        events = [ev.build_event(quotation, ev.QUOTATION_DUPLICATED, actor_id, {
            "document_number": quotation.document_number,
            "source_quotation_id": source.id,
            "source_document_number": source.document_number,
        }, now)]
    return TransitionResult(quotation, events, revision)


def update_draft_items(quotation_id, items=None, actor_id=None, expected_version=None, now=None, **changes):
    """
    Edit the working copy of a Draft: replace its items and/or header fields.
    No revision is written; the next submission snapshots the result.
    """
    now = now or datetime.utcnow()
    with _unit_of_work("update"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        if quotation.is_archived:
            raise QuotationArchived(f"quotation {quotation_id} is archived")
        if not quotation.is_draft:
            raise InvalidStateForEdit(
                f"quotation {quotation_id} is {quotation.status}; revise it before editing",
                status=quotation.status,
            )
        _apply_header(quotation, changes)
        if items is not None:
            quotation.items = _build_items(items)
        _recalculate(quotation)
        _bump(quotation)
        events = [ev.build_event(quotation, ev.QUOTATION_UPDATED, actor_id,
                                 {"fields": sorted(changes) + (["items"] if items is not None else [])}, now)]
    return TransitionResult(quotation, events)


def submit_for_approval(quotation_id, steps, actor_id=None, expected_version=None, now=None):
    now = now or datetime.utcnow()
    with _unit_of_work("submit_for_approval"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        _target(quotation, "submit_for_approval")
        if not quotation.items:
            raise ValidationError("a quotation without items cannot be submitted", field="items")

        _recalculate(quotation)
        revision, _ = revisions.create_revision(quotation, "submitted for approval", actor_id)
        events = _supersede(quotation, actor_id, now)
        chain = approval.create_chain(quotation, steps, created_by=actor_id, now=now)

        quotation.current_chain_id = chain.id
        quotation.submitted_at = now
        quotation.rejection_reason = None
        _transition(quotation, "submit_for_approval", actor_id)
        events.append(ev.build_event(quotation, ev.QUOTATION_SUBMITTED, actor_id,
                                     {"chain_id": chain.id, "steps": len(chain.steps)}, now))
    return TransitionResult(quotation, events, revision, chain)


def submit_approval_decision(chain_id, step_index, approver_id, decision, comment=None,
                             revision_version=None, now=None):
    """
    Record an approver's decision. A version conflict with a concurrent
    decision on the same chain is retried on fresh state, so decisions on
    distinct parallel steps both land.
    """
    now = now or datetime.utcnow()
    roles = resolve_roles(approver_id)
    retries = max(1, int(current_app.config["APPROVAL_DECISION_RETRIES"]))
    last_error = None

    for attempt in range(1, retries + 1):
        try:
            step, outcome = approval.submit_decision(
                chain_id, step_index, approver_id, decision,
                comment=comment, roles=roles, revision_version=revision_version, now=now,
            )
            chain = step.chain
            quotation = _load_quotation(chain.quotation_id)
            events = [ev.build_event(quotation, ev.STEP_DECIDED, approver_id, {
                "chain_id": chain.id,
                "step_index": step.step_index,
                "decision": step.decision,
                "comment": comment,
            }, now)]
            if outcome is not None:
                events.extend(_apply_chain_outcome(quotation, chain, outcome, approver_id, now))
            db.session.commit()
            return TransitionResult(quotation, events, None, chain)
        except StaleDataError as e:
            db.session.rollback()
            last_error = e
            current_app.logger.warning(
                "[APPROVAL] version conflict on chain_id=%s attempt=%s/%s", chain_id, attempt, retries
            )
        except Exception:
            db.session.rollback()
            raise

    raise ConcurrentModification(f"approval chain {chain_id} kept changing; retry the decision") from last_error


def send(quotation_id, actor_id=None, expected_version=None, now=None):
    """
    Send an Approved quotation to the client. Sending again from Sent or
    Viewed is a re-send: status and revision stay as they are.
    """
    now = now or datetime.utcnow()
    with _unit_of_work("send"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        target = _target(quotation, "send")

        if target == quotation.status:
            revision = revisions.get_revision(quotation.id, quotation.current_revision_version)
            _log_status(quotation, "send", quotation.status, actor_id, "resent")
            events = [ev.build_event(quotation, ev.QUOTATION_RESENT, actor_id,
                                     {"revision_version": revision.version_number}, now)]
            return TransitionResult(quotation, events, revision)

        _recalculate(quotation)
        revision, created = revisions.create_revision(quotation, "sent to client", actor_id)
        quotation.sent_at = now
        quotation.valid_until = now + timedelta(days=quotation.validity_days)
        _transition(quotation, "send", actor_id)
        events = [ev.build_event(quotation, ev.QUOTATION_SENT, actor_id, {
            "valid_until": quotation.valid_until.isoformat(),
            "new_revision": created,
        }, now)]
    return TransitionResult(quotation, events, revision)


def record_client_view(quotation_id, actor_id=None, expected_version=None, now=None):
    now = now or datetime.utcnow()
    with _unit_of_work("client_view"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        target = _target(quotation, "client_view")
        if target == quotation.status:
            # 2回目以降の閲覧は何もしない
            return TransitionResult(quotation, [])
        quotation.viewed_at = now
        _transition(quotation, "client_view", actor_id)
        events = [ev.build_event(quotation, ev.QUOTATION_VIEWED, actor_id, {}, now)]
    return TransitionResult(quotation, events)


def accept(quotation_id, actor_id=None, expected_version=None, now=None):
    now = now or datetime.utcnow()
    with _unit_of_work("accept"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        _target(quotation, "accept")
        if quotation.valid_until is not None and now > quotation.valid_until:
            raise InvalidStateTransition(
                f"quotation {quotation_id} validity ended at {quotation.valid_until.isoformat()}",
                status=quotation.status,
                event="accept",
            )
        quotation.accepted_at = now
        _transition(quotation, "accept", actor_id)
        events = [ev.build_event(quotation, ev.QUOTATION_ACCEPTED, actor_id, {}, now)]
    return TransitionResult(quotation, events)


def reject(quotation_id, reason=None, actor_id=None, expected_version=None, now=None):
    now = now or datetime.utcnow()
    with _unit_of_work("reject"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        _target(quotation, "reject")
        quotation.rejected_at = now
        quotation.decision_reason = reason
        _transition(quotation, "reject", actor_id, reason)
        events = [ev.build_event(quotation, ev.QUOTATION_REJECTED, actor_id, {"reason": reason}, now)]
    return TransitionResult(quotation, events)


def expire(quotation_id, now=None, actor_id=None, expected_version=None):
    now = now or datetime.utcnow()
    with _unit_of_work("expire"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        _target(quotation, "expire")
        if quotation.valid_until is None or now <= quotation.valid_until:
            raise InvalidStateTransition(
                f"quotation {quotation_id} is still valid",
                status=quotation.status,
                event="expire",
            )
        quotation.expired_at = now
        _transition(quotation, "expire", actor_id)
        events = [ev.build_event(quotation, ev.QUOTATION_EXPIRED, actor_id,
                                 {"valid_until": quotation.valid_until.isoformat()}, now)]
    return TransitionResult(quotation, events)


def evaluate_expired(now=None):
    """
    Scheduler sweep: expire quotations past their validity deadline and time
    out approval steps past their deadline. Conflicts are skipped and picked
    up by the next sweep.
    """
    now = now or datetime.utcnow()
    result = {"expired": [], "timed_out_chains": [], "skipped": [], "skipped_steps": [], "events": []}

    quotation_ids = [
        row[0] for row in db.session.query(Quotation.id)
        .filter(Quotation.status.in_([S.SENT.value, S.VIEWED.value]))
        .filter(Quotation.valid_until.isnot(None))
        .filter(Quotation.valid_until < now)
        .order_by(Quotation.id)
        .all()
    ]
    for quotation_id in quotation_ids:
        try:
            outcome = expire(quotation_id, now=now)
        except QuotationError as e:
            current_app.logger.warning("[SCHEDULER] skip expire quotation_id=%s: %s", quotation_id, e)
            result["skipped"].append(quotation_id)
            continue
        result["expired"].append(quotation_id)
        result["events"].extend(outcome.events)

    step_ids = [step.id for step in approval.find_overdue_steps(now)]
    for step_id in step_ids:
        try:
            with _unit_of_work("approval_timeout"):
                step, outcome = approval.time_out_step(step_id, now)
                if outcome is None:
                    continue
                chain = step.chain
                quotation = _load_quotation(chain.quotation_id)
                events = [ev.build_event(quotation, ev.STEP_DECIDED, None, {
                    "chain_id": chain.id,
                    "step_index": step.step_index,
                    "decision": step.decision,
                    "comment": step.comment,
                }, now)]
                events.extend(_apply_chain_outcome(quotation, chain, outcome, None, now))
        except QuotationError as e:
            current_app.logger.warning("[SCHEDULER] skip approval timeout step_id=%s: %s", step_id, e)
            result["skipped_steps"].append(step_id)
            continue
        result["timed_out_chains"].append(chain.id)
        result["events"].extend(events)

    current_app.logger.info(
        "[SCHEDULER] evaluate_expired expired=%s timed_out_chains=%s skipped=%s skipped_steps=%s",
        result["expired"], result["timed_out_chains"], result["skipped"], result["skipped_steps"]
    )
    return result


def archive(quotation_id, actor_id, expected_version=None, reason=None, now=None):
    now = now or datetime.utcnow()
    with _unit_of_work("archive"):
        _require_admin(actor_id)
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        if quotation.is_archived:
            raise QuotationArchived(f"quotation {quotation_id} is already archived")
        _target(quotation, "archive")
        events = _supersede(quotation, actor_id, now)
        quotation.archived_at = now
        _transition(quotation, "archive", actor_id, reason)
        events.append(ev.build_event(quotation, ev.QUOTATION_ARCHIVED, actor_id, {"reason": reason}, now))
    return TransitionResult(quotation, events)


def reopen(quotation_id, admin_id, expected_version=None, reason=None, now=None):
    """Administrative override: bring a closed quotation back to Draft under a new revision."""
    now = now or datetime.utcnow()
    with _unit_of_work("reopen"):
        _require_admin(admin_id)
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        if quotation.is_archived:
            raise QuotationArchived(f"quotation {quotation_id} is archived and cannot be reopened")
        from_status = quotation.status
        _target(quotation, "reopen")

        quotation.reopened_at = now
        quotation.valid_until = None
        quotation.decision_reason = None
        quotation.current_chain_id = None
        _recalculate(quotation)
        revision, _ = revisions.create_revision(
            quotation, reason or f"reopened from {from_status}", admin_id, kind=RevisionKind.REOPENED, force=True
        )
        _transition(quotation, "reopen", admin_id, reason)
        events = [ev.build_event(quotation, ev.QUOTATION_REOPENED, admin_id,
                                 {"from_status": from_status, "reason": reason}, now)]
    return TransitionResult(quotation, events, revision)


def revise(quotation_id, actor_id=None, expected_version=None, change_summary=None, now=None):
    """
    Return a submitted, approved or sent quotation to Draft so it can be
    edited. The pending approval chain (if any) is superseded and a new
    revision records the restart.
    """
    now = now or datetime.utcnow()
    with _unit_of_work("revise"):
        quotation = _load_quotation(quotation_id)
        _check_version(quotation, expected_version)
        if quotation.is_archived:
            raise QuotationArchived(f"quotation {quotation_id} is archived")
        from_status = quotation.status
        _target(quotation, "revise")

        events = _supersede(quotation, actor_id, now)
        quotation.valid_until = None
        quotation.current_chain_id = None
        _recalculate(quotation)
        revision, _ = revisions.create_revision(
            quotation, change_summary or f"revised from {from_status}", actor_id, kind=RevisionKind.REVISED, force=True
        )
        _transition(quotation, "revise", actor_id, change_summary)
        events.append(ev.build_event(quotation, ev.QUOTATION_REVISED, actor_id,
                                     {"from_status": from_status}, now))
    return TransitionResult(quotation, events, revision)


def get_quotation(quotation_id):
    return _load_quotation(quotation_id)


def get_revision_history(quotation_id):
    _load_quotation(quotation_id)
    return revisions.list_revisions(quotation_id)


def status_history(quotation_id):
    _load_quotation(quotation_id)
    return (
        QuotationStatusLog.query
        .filter(QuotationStatusLog.quotation_id == quotation_id)
        .order_by(QuotationStatusLog.id.asc())
        .all()
    )


def get_approval_history(quotation_id):
    _load_quotation(quotation_id)
    return approval.chain_history(quotation_id)


def escalate_approval(chain_id, actor_id, reason=None, now=None):
    """Raise the urgency of a pending approval chain (managers and administrators)."""
    now = now or datetime.utcnow()
    with _unit_of_work("escalate"):
        chain = approval.escalate_chain(
            chain_id, actor_id, reason,
            roles=resolve_roles(actor_id),
            allowed_roles=current_app.config["ESCALATION_ROLES"],
            now=now,
        )
        quotation = _load_quotation(chain.quotation_id)
        events = [ev.build_event(quotation, ev.APPROVAL_ESCALATED, actor_id, {
            "chain_id": chain.id,
            "urgency": chain.urgency,
            "reason": chain.escalation_reason,
        }, now)]
    return TransitionResult(quotation, events, None, chain)


def list_quotations(status=None, created_by=None, client_reference=None, created_from=None, created_to=None):
    """
    Quotations matching every given filter, newest first.
    status may be one status or a list of them; created_from / created_to
    bound created_at inclusively.
    """
    query = Quotation.query
    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        unknown = sorted(set(statuses) - {s.value for s in S})
        if unknown:
            raise ValidationError(f"unknown status: {', '.join(unknown)}", field="status")
        query = query.filter(Quotation.status.in_(statuses))
    if created_by is not None:
        try:
            query = query.filter(Quotation.created_by == int(created_by))
        except (TypeError, ValueError):
            raise ValidationError("created_by must be an integer", field="created_by")
    if client_reference:
        query = query.filter(Quotation.client_reference == client_reference)
    if created_from is not None:
        query = query.filter(Quotation.created_at >= created_from)
    if created_to is not None:
        query = query.filter(Quotation.created_at <= created_to)
    return query.order_by(Quotation.created_at.desc(), Quotation.id.desc()).all()
