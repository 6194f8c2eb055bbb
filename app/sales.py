from __future__ import annotations

import datetime
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from database import Sale, delete_sale, query_sales, record_audit_log
from roles import can_access_all_branches, can_access_management, can_manage_sales

logger = logging.getLogger(__name__)

PAYMENT_CARD = "card"
PAYMENT_CASH = "cash"
PAYMENT_DEPOSIT = "deposit"
PAYMENT_METHODS = [PAYMENT_CARD, PAYMENT_CASH, PAYMENT_DEPOSIT]
CURRENCY_SUFFIX = "원"


class SaleValidationError(ValueError):
    pass


def _digits(value: Optional[str]) -> str:
    return re.sub(r"\D", "", value or "")


def format_phone_number(value: Optional[str]) -> str:
    """Dash a phone number as it is typed: 010 / 010-1234 / 010-1234-5678."""
    numbers = _digits(value)
    if len(numbers) <= 3:
        return numbers
    if len(numbers) <= 7:
        return f"{numbers[:3]}-{numbers[3:]}"
    return f"{numbers[:3]}-{numbers[3:7]}-{numbers[7:11]}"


def format_currency(value: Optional[str]) -> str:
    numbers = _digits(value)
    if not numbers:
        return ""
    return f"{int(numbers):,}{CURRENCY_SUFFIX}"


def parse_currency(value: Optional[str]) -> Optional[int]:
    numbers = _digits(value)
    return int(numbers) if numbers else None


def _clean(text: Optional[str]) -> Optional[str]:
    text = (text or "").strip()
    return text or None


@dataclass
class SaleForm:
    quantity: Optional[int] = None
    payment_method: str = PAYMENT_CARD
    customer_name: str = ""
    age: Optional[int] = None
    address: str = ""
    phone: str = ""
    email: str = ""
    depositor: str = ""
    deposit_amount: str = ""
    order_details: str = ""
    needs_shipping: bool = False
    privacy_agreed: bool = False
    marketing_agreed: bool = False

    def validate(self) -> None:
        if not self.quantity or int(self.quantity) < 1:
            raise SaleValidationError("Enter the quantity sold.")
        if self.payment_method not in PAYMENT_METHODS:
            raise SaleValidationError(f"Unknown payment method '{self.payment_method}'.")
        if self.needs_shipping:
            if not self.customer_name.strip():
                raise SaleValidationError("Enter the buyer's name for shipping.")
            if not self.address.strip():
                raise SaleValidationError("Enter the shipping address.")
            if not self.phone.strip():
                raise SaleValidationError("Enter a contact number for shipping.")
        if self.payment_method == PAYMENT_DEPOSIT:
            if not self.depositor.strip():
                raise SaleValidationError("Enter the depositor's name.")
            if parse_currency(self.deposit_amount) is None:
                raise SaleValidationError("Enter the deposit amount.")
        if not self.privacy_agreed:
            raise SaleValidationError("The customer must agree to the privacy policy.")


def submit_sale(session, user: Dict[str, Any], form: SaleForm) -> Sale:
    if not can_manage_sales(user):
        raise PermissionError("Your account cannot record sales.")
    form.validate()
    sale = Sale(
        user_id=user.get("id"),
        user_name=user.get("name"),
        branch_name=user.get("branch"),
        customer_name=_clean(form.customer_name),
        phone=_clean(format_phone_number(form.phone)),
        customer_email=_clean(form.email),
        address=_clean(form.address),
        age=int(form.age) if form.age else None,
        payment_method=form.payment_method,
        quantity=int(form.quantity),
        depositor=_clean(form.depositor),
        deposit_amount=parse_currency(form.deposit_amount),
        order_details=_clean(form.order_details),
        needs_shipping=bool(form.needs_shipping),
        privacy_agreed=bool(form.privacy_agreed),
        marketing_agreed=bool(form.marketing_agreed),
    )
    session.add(sale)
    session.commit()
    session.refresh(sale)
    logger.info("Sale %s recorded by user %s", sale.id, user.get("id"))
    return sale


def search_sales(
    session,
    user: Dict[str, Any],
    *,
    branch: Optional[str] = None,
    search: Optional[str] = None,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
    shipping_only: bool = False,
) -> List[Sale]:
    """Order list for ``user``; everyone except system admins sees their own branch only."""
    if not can_access_all_branches(user):
        branch = user.get("branch")
    return query_sales(
        session,
        branch=branch,
        search=search,
        start=start,
        end=end,
        shipping_only=shipping_only,
    )


def shipping_list(session, user: Dict[str, Any], **filters: Any) -> List[Sale]:
    return search_sales(session, user, shipping_only=True, **filters)


def remove_sale(session, user: Dict[str, Any], sale_id: int) -> None:
    if not can_access_management(user):
        raise PermissionError("Only managers can delete orders.")
    sale = session.get(Sale, sale_id)
    if sale is None:
        return
    if not can_access_all_branches(user) and sale.branch_name != user.get("branch"):
        raise PermissionError("You cannot delete orders from another branch.")
    delete_sale(session, sale_id)
    record_audit_log(session, user.get("id"), "sale_delete", target_type="Sale", target_id=sale_id)
