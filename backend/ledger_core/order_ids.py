"""
Order identifier generation for payments.

Format:
    INV-<CO>-<YYMMDD>-<PRD>-FIN-<NN>-<SSSS>       full payment
    CIC-INV-<CO>-<YYMMDD>-<PRD>-FIN-<NN>-<SSSS>   installment

<NN> is the installment number (01 for a full payment). <SSSS> is derived
from a hash of (chain_id, installment_number), so synthesizing the same
successor twice yields the same id and the unique index on order_id
rejects the duplicate. Four digits collide across chains of the same product
and day; callers pass a higher attempt number to draw another suffix.
"""

from datetime import datetime
from typing import Optional
import hashlib
import os
import re

from models import PaymentKind

COMPANY_CODE = os.getenv("ORDER_COMPANY_CODE", "BMS")
LEGAL_TEAM_CODE = "FIN"

PRODUCT_CODES = {
    "alpukat": "ALP",
    "aren": "ARN",
    "jengkol": "JGL",
    "gaharu": "GHR",
    "kelapa": "KLP",
}

_FULL_PATTERN = re.compile(r"^INV-[A-Z]{2,5}-\d{6}-[A-Z]{1,3}-FIN-\d{2}-\d{4}$")
_INSTALLMENT_PATTERN = re.compile(r"^CIC-INV-[A-Z]{2,5}-\d{6}-[A-Z]{1,3}-FIN-\d{2}-\d{4}$")


def product_code(product_ref: Optional[str]) -> str:
    """Three-letter product code from a product label"""
    name = (product_ref or "").lower()
    for key, code in PRODUCT_CODES.items():
        if key in name:
            return code
    letters = re.sub(r"[^a-zA-Z]", "", product_ref or "")[:3].upper()
    return letters or "INV"


def content_suffix(chain_id: str, installment_number: int, attempt: int = 0) -> str:
    """Stable 4-digit suffix for a chain position"""
    key = f"{chain_id}:{installment_number}"
    if attempt:
        key = f"{key}:{attempt}"
    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"{int(digest, 16) % 10000:04d}"


def generate_order_id(
    product_ref: Optional[str],
    kind: str,
    chain_id: str,
    installment_number: int = 1,
    issued_at: Optional[datetime] = None,
    attempt: int = 0,
) -> str:
    """Build an order id for a payment at a given chain position"""
    issued_at = issued_at or datetime.utcnow()
    prefix = "CIC-INV" if kind == PaymentKind.INSTALLMENT.value else "INV"
    number = 1 if kind == PaymentKind.FULL.value else installment_number
    return (
        f"{prefix}-{COMPANY_CODE}-{issued_at.strftime('%y%m%d')}-{product_code(product_ref)}-"
        f"{LEGAL_TEAM_CODE}-{number:02d}-{content_suffix(chain_id, installment_number, attempt)}"
    )


def validate_order_id(order_id: str) -> bool:
    """True for ids in either generated format"""
    return bool(_FULL_PATTERN.match(order_id) or _INSTALLMENT_PATTERN.match(order_id))
