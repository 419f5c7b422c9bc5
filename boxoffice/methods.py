"""Remembered payment methods. Only masked labels are ever stored."""
from __future__ import annotations
import re
import uuid
from typing import List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .helpers import mask_phone, now_ts, sanitize_phone, sanitize_provider
from .infra.sql import Gated
from .model.db import SavedPaymentMethod

# (prefix regex, brand); first match wins
_BRANDS = [
    (re.compile(r"^4"), "Visa"),
    (re.compile(r"^(5[1-5]|2[2-7])"), "Mastercard"),
    (re.compile(r"^3[47]"), "American Express"),
    (re.compile(r"^(6011|65|64[45])"), "Discover"),
    (re.compile(r"^3[068]"), "Diners Club"),
    (re.compile(r"^35"), "JCB"),
    (re.compile(r"^62"), "Union Pay"),
]


def card_brand(number: str) -> str:
    digits = re.sub(r"\D", "", number or "")
    for pattern, brand in _BRANDS:
        if pattern.match(digits):
            return brand
    return "Carte"


def mask_card(last4: str) -> str:
    return f"****{last4}"


def method_label(method: str, provider_details: Mapping,
                 payment_details: Mapping) -> Optional[Tuple[str, str, str]]:
    """(method_type, provider, masked label), or None when nothing safe
    to remember is known."""
    if method == "CARD":
        last4 = provider_details.get("last4")
        brand = provider_details.get("brand")
        number = re.sub(r"\D", "", str(payment_details.get("card_number")
                                       or ""))
        if not last4 and len(number) >= 4:
            last4 = number[-4:]
        if not last4:
            return None
        if number:
            brand = card_brand(number)
        return "credit_card", (brand or "Carte"), mask_card(last4)

    phone = sanitize_phone(provider_details.get("phone")) or \
        sanitize_phone(payment_details.get("phone"))
    if not phone:
        return None
    provider = sanitize_provider(payment_details.get("provider")) or \
        "mobile_money"
    return "mobile_money", provider, mask_phone(phone)


class SavedMethodStore:
    def __init__(self, sessions: async_sessionmaker[AsyncSession],
                 gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def remember(self, user_id: str, method_type: str, provider: str,
                       account_label: str, account_name: str = "") -> bool:
        """False when the same masked method is already on file."""
        async with self.sessions() as db:
            try:
                async with self.gated():
                    db.add(SavedPaymentMethod(
                        id=uuid.uuid4().hex,
                        user_id=user_id,
                        method_type=method_type,
                        provider=provider,
                        account_label=account_label,
                        account_name=account_name,
                        created_at=now_ts(),
                    ))
                    await db.commit()
            except IntegrityError:
                await db.rollback()
                return False
        logger.info("saved {} method {} for user {}", method_type,
                    account_label, user_id)
        return True

    async def list_for(self, user_id: str) -> List[dict]:
        async with self.sessions() as db:
            async with self.gated():
                rows = (await db.execute(
                    select(SavedPaymentMethod)
                    .where(SavedPaymentMethod.user_id == user_id)
                    .order_by(SavedPaymentMethod.created_at.desc())
                )).scalars().all()
        return [
            {
                "id": r.id,
                "method_type": r.method_type,
                "provider": r.provider,
                "account_label": r.account_label,
                "account_name": r.account_name,
            }
            for r in rows
        ]
