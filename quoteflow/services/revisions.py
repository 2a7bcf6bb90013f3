"""
Revision manager: immutable, sequentially numbered content snapshots of a
quotation. A snapshot captures header fields, items with their computed line
totals, document rules and totals, so any past version can be reconstructed
exactly.
"""
import hashlib
import json
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app
from sqlalchemy import func

from quoteflow import db
from quoteflow.errors import NotFound, QuotationArchived, ValidationError
from quoteflow.models.revision import QuotationRevision, RevisionKind
from quoteflow.services.calculator import to_decimal

HEADER_FIELDS = ("document_number", "title", "client_reference", "currency", "validity_days",
                 "document_discount", "document_taxes")
ITEM_FIELDS = ("description", "quantity", "unit_price", "tax_rate", "discount", "line_total")
TOTAL_FIELDS = ("subtotal", "discount_amount", "tax_amount", "grand_total")


def _num(value, places="0.0001"):
    if value is None:
        return None
    return f"{to_decimal(value).quantize(Decimal(places), rounding=ROUND_HALF_UP):f}"


def build_snapshot(quotation):
    items = sorted(quotation.items, key=lambda i: i.position)
    return {
        "document_number": quotation.document_number,
        "title": quotation.title,
        "client_reference": quotation.client_reference,
        "currency": quotation.currency,
        "validity_days": quotation.validity_days,
        "document_discount": quotation.document_discount,
        "document_taxes": quotation.document_taxes,
        "items": [
            {
                "position": item.position,
                "description": item.description,
                "quantity": _num(item.quantity),
                "unit_price": _num(item.unit_price),
                "tax_rate": _num(item.tax_rate),
                "discount": (
                    {"type": item.discount_type, "value": _num(item.discount_value)}
                    if item.discount_type else None
                ),
                "line_total": _num(item.line_total, "0.01"),
            }
            for item in items
        ],
        "totals": {name: _num(getattr(quotation, name), "0.01") for name in TOTAL_FIELDS},
    }


def content_hash(snapshot):
    canonical = json.dumps(snapshot, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def latest_revision(quotation_id):
    return (
        QuotationRevision.query
        .filter(QuotationRevision.quotation_id == quotation_id)
        .order_by(QuotationRevision.version_number.desc())
        .first()
    )


def create_revision(quotation, change_summary=None, author_id=None, kind=RevisionKind.UPDATE, force=False):
    """
    Snapshot the quotation's current content.

    Returns (revision, created). When the content is identical to the latest
    revision and force is False, the latest revision is returned and nothing
    is written. Forced revisions (reopen, revise) are always written.
    The caller owns the transaction; this only adds to the session.
    """
    if quotation.is_archived:
        raise QuotationArchived(f"quotation {quotation.id} is archived")
    if quotation.id is None:
        raise ValidationError("quotation must be flushed before it can be revisioned")

    kind = kind.value if isinstance(kind, RevisionKind) else str(kind)
    snapshot = build_snapshot(quotation)
    digest = content_hash(snapshot)

    latest = latest_revision(quotation.id)
    if latest is not None and not force and latest.content_hash == digest:
        current_app.logger.debug("[REVISION] unchanged quotation_id=%s v%s", quotation.id, latest.version_number)
        quotation.current_revision_version = latest.version_number
        return latest, False

    max_version = (
        db.session.query(func.max(QuotationRevision.version_number))
        .filter(QuotationRevision.quotation_id == quotation.id)
        .scalar()
    )
    next_version = (max_version or 0) + 1

    revision = QuotationRevision(
        quotation_id=quotation.id,
        version_number=next_version,
        kind=kind,
        snapshot=snapshot,
        content_hash=digest,
        change_summary=change_summary,
        author_id=author_id,
    )
    db.session.add(revision)
    quotation.current_revision_version = next_version
    current_app.logger.info(
        "[REVISION] created quotation_id=%s v%s kind=%s author_id=%s",
        quotation.id, next_version, kind, author_id
    )
    return revision, True


def get_revision(quotation_id, version):
    revision = (
        QuotationRevision.query
        .filter_by(quotation_id=quotation_id, version_number=version)
        .first()
    )
    if revision is None:
        raise NotFound(f"revision v{version} of quotation {quotation_id} not found")
    return revision


def list_revisions(quotation_id):
    return (
        QuotationRevision.query
        .filter(QuotationRevision.quotation_id == quotation_id)
        .order_by(QuotationRevision.version_number.asc())
        .all()
    )


def diff_revisions(quotation_id, from_version, to_version):
    """Field-level differences between two revisions of one quotation."""
    before = get_revision(quotation_id, from_version).snapshot
    after = get_revision(quotation_id, to_version).snapshot

    header = {
        field: {"from": before.get(field), "to": after.get(field)}
        for field in HEADER_FIELDS
        if before.get(field) != after.get(field)
    }

    old_items = {item["position"]: item for item in before.get("items", [])}
    new_items = {item["position"]: item for item in after.get("items", [])}
    added = [new_items[p] for p in sorted(new_items) if p not in old_items]
    removed = [old_items[p] for p in sorted(old_items) if p not in new_items]
    changed = []
    for position in sorted(set(old_items) & set(new_items)):
        fields = {
            field: {"from": old_items[position].get(field), "to": new_items[position].get(field)}
            for field in ITEM_FIELDS
            if old_items[position].get(field) != new_items[position].get(field)
        }
        if fields:
            changed.append({"position": position, "fields": fields})

    totals = {}
    for field in TOTAL_FIELDS:
        old = before.get("totals", {}).get(field) or "0"
        new = after.get("totals", {}).get(field) or "0"
        if old != new:
            totals[field] = {"from": old, "to": new, "delta": f"{Decimal(new) - Decimal(old):f}"}

    return {
        "quotation_id": quotation_id,
        "from_version": from_version,
        "to_version": to_version,
        "header": header,
        "items": {"added": added, "removed": removed, "changed": changed},
        "totals": totals,
    }
