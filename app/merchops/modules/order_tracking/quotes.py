from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.merchops.modules.order_tracking.models import InvoiceDoc, QuoteDoc
from app.merchops.modules.order_tracking.orders import Order
from app.merchops.modules.order_tracking.parsers import extract_quote_number, parse_grand_total, parse_payload, pick_str

logger = logging.getLogger(__name__)

DEFAULT_INVOICE_SCAN_LIMIT = 1000


@dataclass(frozen=True)
class CustomerContact:
    name: str
    company: str
    email: str
    phone: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "company": self.company, "email": self.email, "phone": self.phone}


@dataclass(frozen=True)
class QuoteCorrelation:
    quote_no: str | None = None
    selling_price: float | None = None
    customer: CustomerContact | None = None
    invoice_no: str | None = None


NO_CORRELATION = QuoteCorrelation()


def extract_customer(payload: dict[str, Any]) -> CustomerContact | None:
    """`enquiryCustomer` wins over the legacy `customer` block."""
    raw = payload.get("enquiryCustomer") or payload.get("customer")
    if not isinstance(raw, dict):
        return None
    first = pick_str(raw, ("firstName", "first_name"))
    last = pick_str(raw, ("lastName", "last_name"))
    return CustomerContact(
        name=f"{first} {last}".strip() or "Unknown",
        company=pick_str(raw, ("company",), "-") or "-",
        email=pick_str(raw, ("email",)) or "-",
        phone=pick_str(raw, ("telephoneNumber", "telephone", "phone", "phoneNumber")) or "-",
    )


class QuoteCorrelator:
    """
    Joins upstream orders to stored quotes and invoices.

    correlate() never raises: lookup misses and database errors degrade to None fields.
    One instance per run; recent invoices are loaded once and reused across orders.
    """

    def __init__(self, s: Session, *, invoice_scan_limit: int = DEFAULT_INVOICE_SCAN_LIMIT):
        self.s = s
        self.invoice_scan_limit = invoice_scan_limit
        self._invoices: list[tuple[str, str]] | None = None

    def correlate(self, order: Order) -> QuoteCorrelation:
        quote_no = extract_quote_number(order.customer_reference)
        if not quote_no:
            logger.debug("QUOTES: order %s has no quote number in reference %r", order.order_id, order.customer_reference)
            return NO_CORRELATION

        selling_price: float | None = None
        customer: CustomerContact | None = None
        quote = self.find_quote(quote_no)
        if quote is not None:
            payload = parse_payload(quote.payload_json)
            if payload is not None:
                selling_price = parse_grand_total(payload)
                customer = extract_customer(payload)

        invoice_no = self.find_invoice_for_quote(quote_no)
        logger.debug("QUOTES: order %s quote=%s found=%s invoice=%s", order.order_id, quote_no, quote is not None, invoice_no)
        return QuoteCorrelation(quote_no=quote_no, selling_price=selling_price, customer=customer, invoice_no=invoice_no)

    def find_quote(self, quote_no: str) -> QuoteDoc | None:
        candidates = list(dict.fromkeys([quote_no, quote_no.upper(), quote_no.lower()]))
        try:
            for candidate in candidates:
                row = self.s.query(QuoteDoc).filter(QuoteDoc.quote_no == candidate).one_or_none()
                if row is not None:
                    return row
        except SQLAlchemyError:
            logger.exception("QUOTES: quote lookup failed for %s", quote_no)
            self.s.rollback()
        return None

    def _recent_invoices(self) -> list[tuple[str, str]]:
        if self._invoices is None:
            try:
                rows = (
                    self.s.query(InvoiceDoc.invoice_no, InvoiceDoc.payload_json)
                    .order_by(InvoiceDoc.created_at.desc(), InvoiceDoc.id.desc())
                    .limit(self.invoice_scan_limit)
                    .all()
                )
                self._invoices = [(r.invoice_no, r.payload_json or "") for r in rows]
            except SQLAlchemyError:
                logger.exception("QUOTES: loading recent invoices failed")
                self.s.rollback()
                self._invoices = []
        return self._invoices

    def find_invoice_for_quote(self, quote_no: str) -> str | None:
        """
        Best-effort join: the first recent invoice whose payload text contains the quote number
        (as-is, upper or lower case). There is no foreign key from invoice to quote, so a short
        quote number can match an unrelated invoice.
        """
        q = quote_no.strip()
        if not q:
            return None
        needles = {q, q.upper(), q.lower()}
        for invoice_no, payload_text in self._recent_invoices():
            if any(n in payload_text for n in needles):
                return invoice_no
        return None
