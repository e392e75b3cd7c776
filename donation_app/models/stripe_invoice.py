# donation_app/models/stripe_invoice.py

from __future__ import annotations

from datetime import date

from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db


class StripeInvoice(BaseModel):
    """
    One processor invoice/transaction grouping.

    Several donations share an invoice when a single payment funds more than
    one child.
    """

    __tablename__ = "stripe_invoices"

    id: Mapped[int] = mapped_column(primary_key=True)
    stripe_invoice_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    stripe_charge_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True, index=True)
    stripe_customer_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    total_amount_cents: Mapped[int] = mapped_column(db.Integer, nullable=False)
    invoice_date: Mapped[date] = mapped_column(db.Date, nullable=False)

    def __repr__(self):
        return f"<StripeInvoice {self.stripe_invoice_id}>"
