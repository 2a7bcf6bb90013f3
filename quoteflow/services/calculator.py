"""
Tax & discount calculation for quotations.

Pure functions over Decimal. Nothing here touches the database or the Flask
application; callers pass the currency quantum explicitly.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from quoteflow.errors import ValidationError, DiscountExceedsSubtotal

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_QUANTUM = "0.01"

DISCOUNT_TYPES = ("percentage", "fixed", "tiered")
TAX_TYPES = ("percentage", "fixed")
RULE_SCOPES = ("line", "document")


def to_decimal(value, field="value"):
    """Convert input to Decimal via str() so floats keep their printed value."""
    if value is None or value == "":
        return ZERO
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number", field=field)
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).replace(",", "").strip())
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field} must be a number: {value!r}", field=field)
    if not d.is_finite():
        raise ValidationError(f"{field} must be finite", field=field)
    return d


def quantize(value, quantum=DEFAULT_QUANTUM):
    return to_decimal(value).quantize(Decimal(quantum), rounding=ROUND_HALF_UP)


def _rule_value(rule, field):
    return to_decimal(rule.get("value"), field)


def _out_of_range(rule, amount):
    """A rule only applies while amount lies within [min_amount, max_amount]."""
    min_amount = rule.get("min_amount")
    if min_amount not in (None, "") and amount < to_decimal(min_amount, "min_amount"):
        return True
    max_amount = rule.get("max_amount")
    return max_amount not in (None, "") and amount > to_decimal(max_amount, "max_amount")


def compute_tiered_discount(amount, tiers):
    """
    Marginal tiered discount: each tier discounts the part of the amount
    above its threshold (and below the next higher threshold).
    tiers: [{"threshold": 1000, "discount": 5}, ...] discount in percent.
    """
    amount = to_decimal(amount, "amount")
    remaining = amount
    total = ZERO
    ordered = sorted(
        ((to_decimal(t.get("threshold"), "threshold"), to_decimal(t.get("discount"), "discount")) for t in tiers or []),
        key=lambda t: t[0],
        reverse=True,
    )
    for threshold, rate in ordered:
        if rate < 0 or rate > HUNDRED:
            raise ValidationError("tier discount must be between 0 and 100", field="tiers")
        if remaining > threshold:
            total += (remaining - threshold) * rate / HUNDRED
            remaining = threshold
    return total


def apply_discount(amount, discount, field="discount"):
    """Return the (unrounded) discount a rule takes off amount."""
    if not discount:
        return ZERO
    dtype = discount.get("type") or "percentage"
    if _out_of_range(discount, amount):
        return ZERO

    if dtype == "percentage":
        value = _rule_value(discount, field)
        if value < 0:
            raise ValidationError(f"{field} percentage must not be negative", field=field)
        # 100%超は下の小計超過チェックで弾く
        result = amount * value / HUNDRED
    elif dtype == "fixed":
        value = _rule_value(discount, field)
        if value < 0:
            raise ValidationError(f"{field} must not be negative", field=field)
        result = value
    elif dtype == "tiered":
        result = compute_tiered_discount(amount, discount.get("tiers"))
    else:
        raise ValidationError(f"unknown {field} type: {dtype}", field=field)

    if result > amount:
        raise DiscountExceedsSubtotal(
            f"{field} {result} exceeds subtotal {amount}", discount=str(result), subtotal=str(amount)
        )
    return result


def compute_line_total(item):
    """
    Compute one line: quantity x unit price, minus the line discount, plus the
    line tax rate applied to the discounted amount. Values are not rounded.
    """
    quantity = to_decimal(item.get("quantity"), "quantity")
    unit_price = to_decimal(item.get("unit_price"), "unit_price")
    tax_rate = to_decimal(item.get("tax_rate"), "tax_rate")

    if quantity <= 0:
        raise ValidationError("quantity must be greater than 0", field="quantity")
    if unit_price < 0:
        raise ValidationError("unit_price must not be negative", field="unit_price")
    if tax_rate < 0 or tax_rate > HUNDRED:
        raise ValidationError("tax_rate must be between 0 and 100", field="tax_rate")

    subtotal = quantity * unit_price
    discount_amount = apply_discount(subtotal, item.get("discount"), "line discount")
    net_amount = subtotal - discount_amount
    tax_amount = net_amount * tax_rate / HUNDRED
    return {
        "subtotal": subtotal,
        "discount_amount": discount_amount,
        "net_amount": net_amount,
        "tax_rate": tax_rate,
        "tax_amount": tax_amount,
        "total": net_amount + tax_amount,
    }


def _as_rule_list(rules):
    if not rules:
        return []
    if isinstance(rules, dict):
        return [rules]
    return list(rules)


def compute_document_totals(items, document_discount=None, document_tax=None, quantum=DEFAULT_QUANTUM):
    """
    Sum the lines, apply the document discount to the subtotal, then tax the
    discounted amount. Line taxes are scaled down by the same ratio as the
    discounted subtotal; document tax rules apply to the discounted amount.
    Every output value is rounded once, at the end, to the currency quantum.
    """
    lines = [compute_line_total(item) for item in items]
    subtotal = sum((line["net_amount"] for line in lines), ZERO)

    discount_amount = apply_discount(subtotal, document_discount, "document discount")
    taxable = subtotal - discount_amount
    ratio = (taxable / subtotal) if subtotal > 0 else ZERO

    # 税率ごとの内訳
    by_rate = {}
    for line in lines:
        if line["tax_rate"] == 0:
            continue
        entry = by_rate.setdefault(line["tax_rate"], [ZERO, ZERO])
        entry[0] += line["net_amount"] * ratio
        entry[1] += line["tax_amount"] * ratio

    breakdown = []
    tax_amount = ZERO
    for rate in sorted(by_rate):
        base, amount = by_rate[rate]
        tax_amount += amount
        breakdown.append({
            "name": f"{rate.normalize():f}%",
            "scope": "line",
            "rate": f"{rate.normalize():f}",
            "taxable_amount": quantize(base, quantum),
            "tax_amount": quantize(amount, quantum),
        })

    for rule in _as_rule_list(document_tax):
        ttype = rule.get("type") or "percentage"
        value = _rule_value(rule, "document tax")
        if value < 0:
            raise ValidationError("document tax must not be negative", field="document_tax")
        if _out_of_range(rule, taxable):
            continue
        if ttype == "percentage":
            if value > HUNDRED:
                raise ValidationError("document tax percentage must not exceed 100", field="document_tax")
            amount = taxable * value / HUNDRED
        elif ttype == "fixed":
            amount = value
        else:
            raise ValidationError(f"unknown document tax type: {ttype}", field="document_tax")
        tax_amount += amount
        breakdown.append({
            "name": rule.get("name") or f"{ttype} {value.normalize():f}",
            "scope": "document",
            "rate": f"{value.normalize():f}" if ttype == "percentage" else None,
            "taxable_amount": quantize(taxable, quantum),
            "tax_amount": quantize(amount, quantum),
        })

    return {
        "subtotal": quantize(subtotal, quantum),
        "discount_amount": quantize(discount_amount, quantum),
        "tax_amount": quantize(tax_amount, quantum),
        "grand_total": quantize(taxable + tax_amount, quantum),
        "tax_breakdown": breakdown,
        "lines": [
            {
                "subtotal": quantize(line["subtotal"], quantum),
                "discount_amount": quantize(line["discount_amount"], quantum),
                "net_amount": quantize(line["net_amount"], quantum),
                "tax_amount": quantize(line["tax_amount"], quantum),
            }
            for line in lines
        ],
    }


def validate_rules(rules, kind="discount"):
    """
    Return a list of problems found in tax/discount rule definitions.
    kind: "discount" or "tax". A discount percentage above 100 is not a rule
    problem; applying it fails with DiscountExceedsSubtotal instead.
    """
    if kind not in ("discount", "tax"):
        raise ValueError(f"unknown rule kind: {kind}")
    allowed_types = DISCOUNT_TYPES if kind == "discount" else TAX_TYPES
    errors = []
    for idx, rule in enumerate(_as_rule_list(rules)):
        label = rule.get("name") or f"rule[{idx}]"
        scope = rule.get("scope", "line")
        rtype = rule.get("type") or "percentage"
        if scope not in RULE_SCOPES:
            errors.append(f"{label}: unknown scope {scope!r}")
        if rtype not in allowed_types:
            errors.append(f"{label}: unknown type {rtype!r}")
            continue
        if rtype == "tiered":
            if not rule.get("tiers"):
                errors.append(f"{label}: tiered rule has no tiers")
            continue
        try:
            value = _rule_value(rule, label)
        except ValidationError as e:
            errors.append(e.message)
            continue
        if value < 0:
            errors.append(f"{label}: value must not be negative")
        if kind == "tax" and rtype == "percentage" and value > HUNDRED:
            errors.append(f"{label}: tax percentage must not exceed 100")
        try:
            min_amount = rule.get("min_amount")
            max_amount = rule.get("max_amount")
            if min_amount not in (None, "") and max_amount not in (None, ""):
                if to_decimal(min_amount, "min_amount") > to_decimal(max_amount, "max_amount"):
                    errors.append(f"{label}: min_amount is greater than max_amount")
        except ValidationError as e:
            errors.append(f"{label}: {e.message}")
    return errors
