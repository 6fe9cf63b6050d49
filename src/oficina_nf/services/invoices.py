from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from oficina_nf.models.base import utcnow
from oficina_nf.models.invoice import Invoice, InvoiceHistory
from oficina_nf.models.order import ServiceOrder
from oficina_nf.services.exceptions import AlreadyCanceled, InvoiceNotFound

logger = logging.getLogger(__name__)


def get_invoice(session: Session, invoice_id: int) -> Invoice:
    invoice = session.get(Invoice, invoice_id)
    if invoice is None:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    return invoice


def _as_start(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def list_invoices(
    session: Session,
    date_from: date | datetime | None = None,
    date_to: date | datetime | None = None,
    client_id: int | None = None,
) -> list[Invoice]:
    """Invoices newest first. A plain ``date_to`` includes that whole day."""
    stmt = select(Invoice).order_by(Invoice.data_emissao.desc(), Invoice.id.desc())
    if date_from is not None:
        stmt = stmt.where(Invoice.data_emissao >= _as_start(date_from))
    if date_to is not None:
        if isinstance(date_to, datetime):
            stmt = stmt.where(Invoice.data_emissao <= date_to)
        else:
            stmt = stmt.where(Invoice.data_emissao < _as_start(date_to + timedelta(days=1)))
    if client_id is not None:
        stmt = stmt.where(Invoice.cliente_id == client_id)
    return list(session.execute(stmt).scalars())


def cancel_invoice(session: Session, invoice_id: int, reason: str) -> Invoice:
    """Cancel an invoice and release its service order for a new one.

    Pending emission jobs are left alone.
    """
    if not reason or not reason.strip():
        raise ValueError("Cancellation reason is required")
    invoice = session.execute(
        select(Invoice).where(Invoice.id == invoice_id).with_for_update()
    ).scalar_one_or_none()
    if invoice is None:
        raise InvoiceNotFound(f"Invoice {invoice_id} not found")
    if invoice.cancelada:
        raise AlreadyCanceled(f"Invoice {invoice.numero} is already canceled")

    now = utcnow()
    invoice.cancelada = True
    invoice.data_cancelamento = now
    invoice.motivo_cancelamento = reason.strip()

    order = session.get(ServiceOrder, invoice.os_id)
    if order is not None and order.nf_id == invoice.id:
        order.nf_id = None
        order.atualizado_em = now
    session.add(
        InvoiceHistory(
            nota_fiscal_id=invoice.id,
            status="cancelada",
            mensagem=reason.strip(),
            criado_em=now,
        )
    )
    session.flush()
    logger.info("Invoice %s canceled", invoice.numero)
    return invoice


def invoice_history(session: Session, invoice_id: int) -> list[InvoiceHistory]:
    get_invoice(session, invoice_id)
    return list(
        session.execute(
            select(InvoiceHistory)
            .where(InvoiceHistory.nota_fiscal_id == invoice_id)
            .order_by(InvoiceHistory.criado_em, InvoiceHistory.id)
        ).scalars()
    )
