"""
Service fee resolution.

Rules are scoped TICKET_TYPE > EVENT > GLOBAL; within one scope the highest
``priority`` wins. The computation itself is pure: ``pick_rule`` and
``compute_fees`` only look at the rules handed to them. ``FeeRuleEngine``
adds the database reads and the degradation ladder:

  1. one ranked query (``source="rules"``)
  2. three scoped queries, resolved in code (``source="fallback_rules"``)
  3. a flat default rate on the subtotal (``source="default"``)
"""
from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from loguru import logger
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import ValidationError
from .helpers import is_valid_id, money
from .infra.sql import Gated
from .infra.timings import timeit
from .model.db import ServiceFeeRule

SCOPE_RANK = {"TICKET_TYPE": 0, "EVENT": 1, "GLOBAL": 2}


@dataclass(frozen=True)
class FeeSelection:
    ticket_type_id: str
    quantity: int
    unit_price: Decimal

    @property
    def base_amount(self) -> Decimal:
        return money(Decimal(str(self.unit_price)) * self.quantity)


@dataclass(frozen=True)
class FeeRule:
    id: Optional[str]
    scope: str
    fee_type: str
    fee_value: Decimal
    applies_to: str = "BUYER"
    priority: int = 0
    name: str = "Service Fee"
    event_id: Optional[str] = None
    ticket_type_id: Optional[str] = None
    minimum_fee: Optional[Decimal] = None
    maximum_fee: Optional[Decimal] = None

    @classmethod
    def from_row(cls, row) -> "FeeRule":
        def dec(v):
            return None if v is None else Decimal(str(v))
        return cls(
            id=row["id"],
            scope=row["scope"],
            fee_type=row["fee_type"],
            fee_value=dec(row["fee_value"]) or Decimal("0"),
            applies_to=row["applies_to"] or "BUYER",
            priority=int(row["priority"] or 0),
            name=row["name"] or "Service Fee",
            event_id=row["event_id"],
            ticket_type_id=row["ticket_type_id"],
            minimum_fee=dec(row["minimum_fee"]),
            maximum_fee=dec(row["maximum_fee"]),
        )


@dataclass(frozen=True)
class FeeBreakdownItem:
    rule_id: Optional[str]
    rule_name: str
    scope: str
    fee_type: str
    fee_amount: Decimal
    applies_to: str
    ticket_type_id: str
    base_amount: Decimal


@dataclass
class FeeResult:
    total_buyer_fees: Decimal = Decimal("0.00")
    total_organizer_fees: Decimal = Decimal("0.00")
    breakdown: List[FeeBreakdownItem] = field(default_factory=list)
    source: str = "rules"

    def as_dict(self) -> dict:
        return {
            "total_buyer_fees": self.total_buyer_fees,
            "total_organizer_fees": self.total_organizer_fees,
            "source": self.source,
            "breakdown": [
                {
                    "rule_id": b.rule_id,
                    "rule_name": b.rule_name,
                    "scope": b.scope,
                    "fee_type": b.fee_type,
                    "fee_amount": b.fee_amount,
                    "applies_to": b.applies_to,
                    "ticket_type_id": b.ticket_type_id,
                    "base_amount": b.base_amount,
                }
                for b in self.breakdown
            ],
        }


# ----------------------------
# Pure resolution
# ----------------------------
def pick_rule(rules: Iterable[FeeRule], event_id: str,
              ticket_type_id: str) -> Optional[FeeRule]:
    best: Optional[FeeRule] = None
    best_key = None
    for r in rules:
        if r.scope == "TICKET_TYPE":
            if r.ticket_type_id != ticket_type_id:
                continue
        elif r.scope == "EVENT":
            if r.event_id != event_id:
                continue
        elif r.scope != "GLOBAL":
            continue
        key = (SCOPE_RANK[r.scope], -r.priority)
        if best_key is None or key < best_key:
            best, best_key = r, key
    return best


def rule_fee(rule: FeeRule, sel: FeeSelection) -> Decimal:
    if rule.fee_type == "FIXED":
        fee = rule.fee_value * sel.quantity
    else:
        fee = sel.base_amount * rule.fee_value
    if rule.minimum_fee is not None and fee < rule.minimum_fee:
        fee = rule.minimum_fee
    if rule.maximum_fee is not None and fee > rule.maximum_fee:
        fee = rule.maximum_fee
    return money(fee)


def compute_fees(rules: Sequence[FeeRule], event_id: str,
                 selections: Sequence[FeeSelection],
                 source: str = "rules") -> FeeResult:
    result = FeeResult(source=source)
    buyer = Decimal("0")
    organizer = Decimal("0")
    for sel in selections:
        rule = pick_rule(rules, event_id, sel.ticket_type_id)
        if rule is None:
            continue
        fee = rule_fee(rule, sel)
        applies = rule.applies_to or "BUYER"
        if applies == "BUYER":
            buyer += fee
        elif applies == "ORGANIZER":
            organizer += fee
        else:
            # SPLIT: buyer takes the odd cent
            half = money(fee / 2)
            organizer += half
            buyer += fee - half
        result.breakdown.append(FeeBreakdownItem(
            rule_id=rule.id,
            rule_name=rule.name,
            scope=rule.scope,
            fee_type=rule.fee_type,
            fee_amount=fee,
            applies_to=applies,
            ticket_type_id=sel.ticket_type_id,
            base_amount=sel.base_amount,
        ))
    result.total_buyer_fees = money(buyer)
    result.total_organizer_fees = money(organizer)
    return result


def validate_selections(event_id, selections: Sequence[FeeSelection],
                        max_quantity: int) -> None:
    if not is_valid_id(event_id):
        raise ValidationError("invalid event id", code="event_required")
    for s in selections:
        if not is_valid_id(s.ticket_type_id):
            raise ValidationError("invalid ticket type id",
                                  code="ticket_type_not_found")
        q = s.quantity
        if isinstance(q, bool) or not isinstance(q, int):
            raise ValidationError("quantity must be an integer",
                                  code="quantity_not_integer")
        if q <= 0:
            raise ValidationError("quantity must be positive",
                                  code="quantity_not_positive")
        if q > max_quantity:
            raise ValidationError("quantity too large",
                                  code="quantity_too_large")
        try:
            price = Decimal(str(s.unit_price))
        except ArithmeticError:
            raise ValidationError("invalid unit price", code="amount_invalid")
        if not price.is_finite() or price < 0:
            raise ValidationError("invalid unit price", code="amount_invalid")


# ----------------------------
# Engine with DB reads
# ----------------------------
SQL_RANKED_RULES = """
    SELECT id, name, scope, event_id, ticket_type_id, fee_type, fee_value,
           minimum_fee, maximum_fee, applies_to, priority
    FROM service_fee_rules
    WHERE active = :active
      AND (
            (scope = 'TICKET_TYPE' AND ticket_type_id IN ({tt}))
         OR (scope = 'EVENT' AND event_id = :event_id)
         OR scope = 'GLOBAL'
      )
    ORDER BY CASE scope
               WHEN 'TICKET_TYPE' THEN 0
               WHEN 'EVENT' THEN 1
               ELSE 2
             END,
             priority DESC
"""


class FeeRuleEngine:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated, *, default_rate: Decimal = Decimal("0.02"),
                 max_quantity: int = 100) -> None:
        self.sessions = sessions
        self.gated = gated
        self.default_rate = default_rate
        self.max_quantity = max_quantity

    async def calculate_fees(
        self, event_id: str, selections: Sequence[FeeSelection]
    ) -> FeeResult:
        validate_selections(event_id, selections, self.max_quantity)
        if not selections:
            return FeeResult()

        try:
            async with timeit("fees.ranked"):
                rules = await self._ranked_rules(event_id, selections)
            return compute_fees(rules, event_id, selections, source="rules")
        except SQLAlchemyError as e:
            logger.error("fee rule query failed, resolving in code: {}", e)

        try:
            async with timeit("fees.fallback"):
                rules = await self._scoped_rules(event_id, selections)
            return compute_fees(rules, event_id, selections,
                                source="fallback_rules")
        except SQLAlchemyError as e:
            logger.error("fee rule fallback failed: {}", e)

        subtotal = sum((s.base_amount for s in selections), Decimal("0"))
        logger.warning(
            "FEE DEFAULT APPLIED: organizer rules bypassed for event {} "
            "(rate={}, subtotal={})", event_id, self.default_rate, subtotal
        )
        return FeeResult(
            total_buyer_fees=money(subtotal * self.default_rate),
            total_organizer_fees=Decimal("0.00"),
            breakdown=[],
            source="default",
        )

    async def _ranked_rules(self, event_id: str,
                            selections: Sequence[FeeSelection]
                            ) -> List[FeeRule]:
        ids = sorted({s.ticket_type_id for s in selections})
        names = [f"tt{i}" for i in range(len(ids))]
        sql = SQL_RANKED_RULES.format(tt=", ".join(f":{n}" for n in names))
        params = dict(zip(names, ids))
        params.update(active=True, event_id=event_id)
        async with self.sessions() as db:
            async with self.gated():
                rows = (await db.execute(text(sql), params)).mappings().all()
        return [FeeRule.from_row(r) for r in rows]

    async def _scoped_rules(self, event_id: str,
                            selections: Sequence[FeeSelection]
                            ) -> List[FeeRule]:
        ids = [s.ticket_type_id for s in selections]
        R = ServiceFeeRule
        queries = [
            select(R).where(R.active.is_(True), R.scope == "TICKET_TYPE",
                            R.ticket_type_id.in_(ids)),
            select(R).where(R.active.is_(True), R.scope == "EVENT",
                            R.event_id == event_id),
            select(R).where(R.active.is_(True), R.scope == "GLOBAL"),
        ]
        out: List[FeeRule] = []
        async with self.sessions() as db:
            async with self.gated():
                for q in queries:
                    for r in (await db.execute(q)).scalars().all():
                        out.append(FeeRule.from_row(
                            {c.name: getattr(r, c.name)
                             for c in R.__table__.columns}
                        ))
        return out

