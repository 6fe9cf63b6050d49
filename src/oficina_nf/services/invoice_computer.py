from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from oficina_nf.config import EMISSION_MODES, TAX_RATES
from oficina_nf.models.base import utcnow
from oficina_nf.models.invoice import Invoice, InvoiceHistory, InvoiceSequence
from oficina_nf.models.order import ServiceOrder
from oficina_nf.services.artifact_store import ArtifactStore
from oficina_nf.services.exceptions import DuplicateInvoice, NotFinalized, OrderNotFound
from oficina_nf.services.gateway_configs import get_active_config
from oficina_nf.services.job_queue import JobQueue
from oficina_nf.services.summary import render_summary
from oficina_nf.utils.formatters import format_invoice_number, parse_invoice_number

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
SEQUENCE_NAME = "notas_fiscais"


class LineItem(Protocol):
    quantidade: Decimal
    valor_unitario: Decimal
    valor_total: Decimal | None


def _money(value: Decimal | int | str) -> Decimal:
    return Decimal(value).quantize(CENTS, rounding=ROUND_HALF_UP)


def line_total(item: LineItem) -> Decimal:
    """Recorded line total, or quantity * unit price when none was recorded."""
    if item.valor_total is not None:
        return Decimal(item.valor_total)
    return Decimal(item.quantidade or 0) * Decimal(item.valor_unitario or 0)


@dataclass(frozen=True)
class InvoiceAmounts:
    valor_produtos: Decimal
    valor_servicos: Decimal
    valor_base: Decimal
    icms: Decimal
    iss: Decimal
    pis: Decimal
    cofins: Decimal
    total_impostos: Decimal
    valor_total: Decimal
    # True when the order had no priced items and the recorded order total was used.
    base_from_order_total: bool = False

    def taxes(self) -> dict[str, Decimal]:
        return {"icms": self.icms, "iss": self.iss, "pis": self.pis, "cofins": self.cofins}


def compute_amounts(
    products: Iterable[LineItem],
    services: Iterable[LineItem],
    order_total: Decimal | None,
    rates: Mapping[str, Decimal] = TAX_RATES,
) -> InvoiceAmounts:
    """Base, taxes and total for an order.

    ICMS, PIS and COFINS apply to the base; ISS applies to the services
    subtotal only. Every amount is rounded half-up to cents.
    """
    valor_produtos = _money(sum((line_total(p) for p in products), Decimal("0")))
    valor_servicos = _money(sum((line_total(s) for s in services), Decimal("0")))
    base = valor_produtos + valor_servicos
    from_order_total = False
    if base == 0:
        base = _money(order_total or 0)
        from_order_total = True

    icms = _money(base * rates["icms"])
    iss = _money(valor_servicos * rates["iss"])
    pis = _money(base * rates["pis"])
    cofins = _money(base * rates["cofins"])
    total_impostos = icms + iss + pis + cofins
    return InvoiceAmounts(
        valor_produtos=valor_produtos,
        valor_servicos=valor_servicos,
        valor_base=base,
        icms=icms,
        iss=iss,
        pis=pis,
        cofins=cofins,
        total_impostos=total_impostos,
        valor_total=base + total_impostos,
        base_from_order_total=from_order_total,
    )


def _bump_sequence(session: Session) -> int:
    return session.execute(
        update(InvoiceSequence)
        .where(InvoiceSequence.nome == SEQUENCE_NAME)
        .values(valor=InvoiceSequence.valor + 1)
        .execution_options(synchronize_session=False)
    ).rowcount


def next_invoice_sequence(session: Session) -> int:
    """Allocate the next invoice sequence value inside the caller's transaction.

    The counter row stays locked until the transaction ends, so concurrent
    generators serialize here. On first use the counter is seeded from the
    highest existing invoice number.
    """
    if not _bump_sequence(session):
        highest = session.execute(select(func.max(Invoice.numero))).scalar_one_or_none()
        seed = parse_invoice_number(highest) + 1
        try:
            with session.begin_nested():
                session.add(InvoiceSequence(nome=SEQUENCE_NAME, valor=seed))
            return seed
        except IntegrityError:
            logger.debug("Invoice sequence seeded concurrently, retrying increment")
            if not _bump_sequence(session):
                raise
    return session.execute(
        select(InvoiceSequence.valor).where(InvoiceSequence.nome == SEQUENCE_NAME)
    ).scalar_one()


def _decimal_str(value: Decimal) -> str:
    return str(_money(value))


def build_payload(
    invoice: Invoice,
    order: ServiceOrder,
    amounts: InvoiceAmounts,
    gateway_config_id: int | None,
) -> dict[str, Any]:
    """Denormalized emission payload. Carries no credentials."""
    return {
        "id": invoice.id,
        "numero": invoice.numero,
        "os_id": order.id,
        "os_numero": order.numero,
        "cliente": order.cliente.to_payload(),
        "produtos": [p.to_payload() for p in order.produtos],
        "servicos": [s.to_payload() for s in order.servicos],
        "valor_produtos": _decimal_str(amounts.valor_produtos),
        "valor_servicos": _decimal_str(amounts.valor_servicos),
        "valor_base": _decimal_str(amounts.valor_base),
        "valor_total": _decimal_str(amounts.valor_total),
        "impostos": {name: _decimal_str(v) for name, v in amounts.taxes().items()},
        "total_impostos": _decimal_str(amounts.total_impostos),
        "gateway_config_id": gateway_config_id,
    }


class InvoiceComputer:
    """Creates the invoice for a finalized service order.

    In ``queued`` mode the emission job is enqueued in the same transaction;
    in ``manual`` mode an HTML summary is stored instead.
    """

    def __init__(
        self,
        sessions: sessionmaker[Session],
        queue: JobQueue,
        *,
        mode: str = "queued",
        store: ArtifactStore | None = None,
        rates: Mapping[str, Decimal] = TAX_RATES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if mode not in EMISSION_MODES:
            raise ValueError(f"Unsupported emission mode: {mode}")
        if mode == "manual" and store is None:
            raise ValueError("manual emission mode requires an artifact store")
        self.sessions = sessions
        self.queue = queue
        self.mode = mode
        self.store = store
        self.rates = rates
        self._clock = clock

    def generate(self, order_id: int) -> Invoice:
        try:
            with self.sessions.begin() as session:
                invoice = self._generate(session, order_id)
        except IntegrityError:
            # Lost a race against another generator for the same order.
            with self.sessions() as session:
                if self._active_invoice_id(session, order_id) is not None:
                    raise DuplicateInvoice(
                        f"Order {order_id} already has an active invoice"
                    ) from None
            raise
        logger.info("Invoice %s generated for order %d (%s)", invoice.numero, order_id, self.mode)
        return invoice

    @staticmethod
    def _active_invoice_id(session: Session, order_id: int) -> int | None:
        return session.execute(
            select(Invoice.id).where(Invoice.os_id == order_id, Invoice.cancelada.is_(False))
        ).scalar_one_or_none()

    def _generate(self, session: Session, order_id: int) -> Invoice:
        order = session.execute(
            select(ServiceOrder).where(ServiceOrder.id == order_id).with_for_update()
        ).scalar_one_or_none()
        if order is None:
            raise OrderNotFound(f"Service order {order_id} not found")
        if not order.is_finalized:
            raise NotFinalized(
                f"Service order {order.numero} must be finalized to generate an invoice "
                f"(status: {order.status})"
            )
        existing = self._active_invoice_id(session, order.id)
        if existing is not None:
            raise DuplicateInvoice(
                f"Service order {order.numero} already has invoice {existing}"
            )

        amounts = compute_amounts(order.produtos, order.servicos, order.valor_total, self.rates)
        if amounts.base_from_order_total:
            logger.info(
                "Order %s has no priced items, using recorded total %s as base",
                order.numero,
                order.valor_total,
            )

        now = self._clock()
        invoice = Invoice(
            numero=format_invoice_number(next_invoice_sequence(session)),
            os_id=order.id,
            cliente_id=order.cliente_id,
            data_emissao=now,
            valor_produtos=amounts.valor_produtos,
            valor_servicos=amounts.valor_servicos,
            valor_total=amounts.valor_total,
            icms=amounts.icms,
            iss=amounts.iss,
            pis=amounts.pis,
            cofins=amounts.cofins,
            total_impostos=amounts.total_impostos,
            observacoes=f"NF gerada automaticamente para OS {order.numero}",
            cancelada=False,
            criado_em=now,
        )
        session.add(invoice)
        session.flush()

        order.nf_id = invoice.id
        order.atualizado_em = now
        session.add(
            InvoiceHistory(
                nota_fiscal_id=invoice.id,
                status="gerada",
                mensagem=f"NF {invoice.numero} gerada para OS {order.numero}",
                criado_em=now,
            )
        )

        if self.mode == "manual":
            html = render_summary(invoice, order, order.cliente, order.produtos, order.servicos)
            stored = self.store.save(html, f"nf_{invoice.id}.html")
            invoice.html_path = stored.location
            status, message = "manual_summary", f"Resumo salvo em {stored.location}"
        else:
            config = get_active_config(session)
            payload = build_payload(invoice, order, amounts, config.id if config else None)
            job = self.queue.enqueue(session, invoice.id, payload)
            status, message = "queued", f"Job {job.id} enfileirado para emissão"
        session.add(
            InvoiceHistory(
                nota_fiscal_id=invoice.id, status=status, mensagem=message, criado_em=now
            )
        )
        return invoice
