"""
discount_engine.py
==================
Pure discount resolution over a tree of discount groups.

Resolution order:
-----------------
1. Root groups are evaluated by ascending priority; their net amounts are summed.
2. A group is a hard gate: when inactive or outside its schedule, nothing inside
   it (discounts or child groups) is looked at.
3. Inside a group, direct discounts are evaluated by ascending priority, then
   child groups recursively, also by ascending priority.
4. Applicable discounts and positive child-group totals become the group's
   candidates, combined by the group operator:
   - and: every candidate is summed.
   - or:  only the first candidate counts.
   - not: any candidate suppresses the whole group (net zero).
   - min / max: the smallest / largest candidate counts; ties go to the first.
5. In an 'and' group a fixed_price discount replaces the group's other direct
   discounts; child-group totals are still added on top.
6. The summed total is clamped to the base price.

Equal priorities keep their input order (sorted() is stable), which decides
the winner under or/min/max.

Nothing here performs I/O, mutates its input, or raises for well-typed input:
every reason a discount does not apply ends up in the rejected audit list.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence, Tuple, Union

from schemas import (
    AppliedDiscount,
    Discount,
    DiscountCondition,
    DiscountContext,
    DiscountGroup,
    DiscountResult,
    DiscountTarget,
    DiscountType,
    GroupOperator,
    RejectedDiscount,
    TargetType,
)

logger = logging.getLogger(__name__)

INACTIVE_REASON = "Discount is inactive"
OUT_OF_SCHEDULE_REASON = "Discount is outside its active schedule"
TARGET_MISMATCH_REASON = "Item is not among the discount targets"
OR_REASON = "OR operator: lower priority than an already-selected OR alternative"
NOT_REASON = "NOT operator: conditions met, but NOT operator suppresses the discount"
MIN_REASON = "MIN operator: a smaller discount was chosen (MIN)"
MAX_REASON = "MAX operator: a larger discount was chosen (MAX)"
FIXED_PRICE_REASON = "Fixed price takes precedence within an AND group"


class DiscountEvaluation(NamedTuple):
    applicable: bool
    amount: float
    rejection_reasons: List[str]


class GroupEvaluation(NamedTuple):
    total_amount: float
    applied: List[AppliedDiscount]
    rejected: List[RejectedDiscount]


class _Candidate(NamedTuple):
    amount: float
    source: Optional[AppliedDiscount]  # None for a child-group aggregate


class _Combination(NamedTuple):
    total: float
    selected: List[AppliedDiscount]
    suppressed: List[Tuple[AppliedDiscount, str]]


# ─────────────────────────── Schedule ───────────────────────────

def _as_utc(value: datetime) -> datetime:
    # Naive datetimes are taken to be UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def is_within_schedule(starts_at: Optional[datetime], ends_at: Optional[datetime], now: datetime) -> bool:
    """Inclusive on both bounds; a missing bound is unbounded on that side."""
    moment = _as_utc(now)
    if starts_at is not None and _as_utc(starts_at) > moment:
        return False
    if ends_at is not None and _as_utc(ends_at) < moment:
        return False
    return True


# ─────────────────────────── Targets ───────────────────────────

def matches_target(targets: Sequence[DiscountTarget], context: DiscountContext) -> bool:
    """
    True when the discount covers the item being priced.
    No targets at all means the discount is global.
    """
    if not targets:
        return True
    for target in targets:
        if target.target_type == TargetType.all:
            return True
        if target.target_type == TargetType.product and target.target_id == context.product_id:
            return True
        if target.target_type == TargetType.modification and target.target_id == context.modification_id:
            return True
        if target.target_type == TargetType.section and target.target_id == context.section_id:
            return True
    return False


# ─────────────────────────── Conditions ───────────────────────────

def _to_number(value: Any) -> float:
    # Unparseable values become NaN so every comparison fails
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def compare_numeric(actual: float, operator: str, expected: float) -> bool:
    if operator == ">=":
        return actual >= expected
    if operator == ">":
        return actual > expected
    if operator == "<=":
        return actual <= expected
    if operator == "<":
        return actual < expected
    if operator == "=":
        return actual == expected
    return False


def evaluate_condition(condition: DiscountCondition, context: DiscountContext) -> Tuple[bool, str]:
    """
    Returns (met, reason). reason is empty when the condition holds.
    """
    condition_type = condition.condition_type
    operator = condition.operator
    value = condition.value

    if condition_type == "user_category":
        if context.user_category_id is None:
            return False, "User has no category"
        ids = value if isinstance(value, list) else [value]
        if operator == "in":
            met = context.user_category_id in ids
            return met, "" if met else "User category is not in the allowed list"
        met = context.user_category_id not in ids
        return met, "" if met else "User category is excluded from this discount"

    if condition_type == "min_quantity":
        met = compare_numeric(context.quantity, operator, _to_number(value))
        return met, "" if met else f"Quantity {context.quantity} does not satisfy {operator} {value}"

    if condition_type == "min_order_amount":
        met = compare_numeric(context.cart_total, operator, _to_number(value))
        return met, "" if met else f"Cart total {context.cart_total} does not satisfy {operator} {value}"

    if condition_type == "user_logged_in":
        expected = value is True or value == "true"
        met = context.is_logged_in == expected
        if met:
            return True, ""
        return False, "Login required" if expected else "Guests only"

    return False, f"Unknown condition type: {condition_type}"


# ─────────────────────────── Single discount ───────────────────────────

def calculate_amount(discount: Discount, base_price: float) -> float:
    if discount.discount_type == DiscountType.percent:
        return base_price * (discount.discount_value / 100)
    if discount.discount_type == DiscountType.fixed_amount:
        return min(discount.discount_value, base_price)
    # fixed_price: the amount taken off to reach the target price
    return max(0.0, base_price - discount.discount_value)


def evaluate_discount(
    discount: Discount, base_price: float, context: DiscountContext, now: datetime
) -> DiscountEvaluation:
    """
    Checks activity, schedule, targets and conditions in that order.
    Only the condition step can produce more than one reason.
    """
    if not discount.is_active:
        return DiscountEvaluation(False, 0.0, [INACTIVE_REASON])
    if not is_within_schedule(discount.starts_at, discount.ends_at, now):
        return DiscountEvaluation(False, 0.0, [OUT_OF_SCHEDULE_REASON])
    if not matches_target(discount.targets, context):
        return DiscountEvaluation(False, 0.0, [TARGET_MISMATCH_REASON])

    reasons = []
    for condition in discount.conditions:
        met, reason = evaluate_condition(condition, context)
        if not met:
            reasons.append(reason)
    if reasons:
        return DiscountEvaluation(False, 0.0, reasons)

    return DiscountEvaluation(True, calculate_amount(discount, base_price), [])


# ─────────────────────────── Operators ───────────────────────────

def _combine_and(candidates: List[_Candidate]) -> _Combination:
    total = sum(c.amount for c in candidates)
    return _Combination(total, [c.source for c in candidates if c.source is not None], [])


def _combine_or(candidates: List[_Candidate]) -> _Combination:
    if not candidates:
        return _Combination(0.0, [], [])
    first = candidates[0]
    selected = [first.source] if first.source is not None else []
    suppressed = [(c.source, OR_REASON) for c in candidates[1:] if c.source is not None]
    return _Combination(first.amount, selected, suppressed)


def _combine_not(candidates: List[_Candidate]) -> _Combination:
    return _Combination(0.0, [], [(c.source, NOT_REASON) for c in candidates if c.source is not None])


def _pick(candidates: List[_Candidate], index: int, reason: str) -> _Combination:
    chosen = candidates[index]
    selected = [chosen.source] if chosen.source is not None else []
    suppressed = [(c.source, reason) for i, c in enumerate(candidates) if i != index and c.source is not None]
    return _Combination(chosen.amount, selected, suppressed)


def _combine_min(candidates: List[_Candidate]) -> _Combination:
    if not candidates:
        return _Combination(0.0, [], [])
    # min() keeps the first of equal amounts
    index = min(range(len(candidates)), key=lambda i: candidates[i].amount)
    return _pick(candidates, index, MIN_REASON)


def _combine_max(candidates: List[_Candidate]) -> _Combination:
    if not candidates:
        return _Combination(0.0, [], [])
    index = max(range(len(candidates)), key=lambda i: candidates[i].amount)
    return _pick(candidates, index, MAX_REASON)


COMBINATORS: Dict[GroupOperator, Callable[[List[_Candidate]], _Combination]] = {
    GroupOperator.and_: _combine_and,
    GroupOperator.or_: _combine_or,
    GroupOperator.not_: _combine_not,
    GroupOperator.min: _combine_min,
    GroupOperator.max: _combine_max,
}


# ─────────────────────────── Groups ───────────────────────────

def _by_priority(item: Union[Discount, DiscountGroup]) -> int:
    return item.priority


def _rejected(entry_id: int, name: str, reason: str, group_name: str) -> RejectedDiscount:
    return RejectedDiscount(id=entry_id, name=name, reason=reason, group_name=group_name)


def evaluate_group(
    group: DiscountGroup, base_price: float, context: DiscountContext, now: datetime
) -> GroupEvaluation:
    """
    Evaluates one group and its whole subtree.

    Returns the group's net amount plus the applied/rejected audit entries of
    every discount in the subtree. Each call builds its own lists; the caller
    concatenates them.
    """
    if not group.is_active or not is_within_schedule(group.starts_at, group.ends_at, now):
        return GroupEvaluation(0.0, [], [])

    applied: List[AppliedDiscount] = []
    rejected: List[RejectedDiscount] = []
    candidates: List[_Candidate] = []

    for discount in sorted(group.discounts, key=_by_priority):
        evaluation = evaluate_discount(discount, base_price, context, now)
        if evaluation.applicable:
            candidates.append(_Candidate(evaluation.amount, AppliedDiscount(
                id=discount.id,
                name=discount.name,
                type=discount.discount_type,
                value=discount.discount_value,
                calculated_amount=evaluation.amount,
                group_name=group.name,
            )))
        else:
            rejected.append(_rejected(
                discount.id, discount.name, "; ".join(evaluation.rejection_reasons), group.name
            ))

    children_total = 0.0
    for child in sorted(group.children, key=_by_priority):
        child_evaluation = evaluate_group(child, base_price, context, now)
        applied.extend(child_evaluation.applied)
        rejected.extend(child_evaluation.rejected)
        if child_evaluation.total_amount > 0:
            candidates.append(_Candidate(child_evaluation.total_amount, None))
            children_total += child_evaluation.total_amount

    combination = COMBINATORS[group.operator](candidates)
    total, selected, suppressed = combination.total, combination.selected, list(combination.suppressed)

    if group.operator == GroupOperator.and_:
        fixed = next((a for a in selected if a.type == DiscountType.fixed_price), None)
        if fixed is not None:
            suppressed.extend((a, FIXED_PRICE_REASON) for a in selected if a is not fixed)
            selected = [fixed]
            total = fixed.calculated_amount + children_total

    applied.extend(selected)
    rejected.extend(_rejected(a.id, a.name, reason, group.name) for a, reason in suppressed)
    return GroupEvaluation(total, applied, rejected)


# ─────────────────────────── Resolver ───────────────────────────

def resolve_discount(
    base_price: float, groups: Sequence[DiscountGroup], context: DiscountContext
) -> DiscountResult:
    """
    Resolve the final price of one line item against a forest of root groups.

    Guarantees 0 <= total_discount <= base_price and
    total_discount == base_price - final_price whenever base_price > 0.
    """
    if not groups or base_price <= 0:
        return DiscountResult(final_price=base_price, total_discount=0.0)

    now = context.now or datetime.now(timezone.utc)
    raw_total = 0.0
    applied: List[AppliedDiscount] = []
    rejected: List[RejectedDiscount] = []

    for group in sorted(groups, key=_by_priority):
        evaluation = evaluate_group(group, base_price, context, now)
        raw_total += evaluation.total_amount
        applied.extend(evaluation.applied)
        rejected.extend(evaluation.rejected)

    total_discount = max(0.0, min(raw_total, base_price))
    final_price = max(0.0, base_price - total_discount)

    logger.debug(
        "Resolved product %s: base=%s raw=%s discount=%s applied=%d rejected=%d",
        context.product_id, base_price, raw_total, total_discount, len(applied), len(rejected),
    )

    return DiscountResult(
        final_price=final_price,
        total_discount=total_discount,
        applied_discounts=applied,
        rejected_discounts=rejected,
    )
