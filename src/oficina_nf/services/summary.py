from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal

import lxml.html
from lxml.html import builder as E

from oficina_nf.models.client import Client
from oficina_nf.models.invoice import Invoice
from oficina_nf.models.order import OrderProduct, OrderService, ServiceOrder
from oficina_nf.utils.formatters import format_brl

_STYLE = (
    "body{font-family:Arial,Helvetica,sans-serif;padding:20px}h1{font-size:18px}"
    "table{width:100%;border-collapse:collapse}td,th{padding:6px;border:1px solid #ddd}"
)


def _item_total(item: OrderProduct | OrderService) -> Decimal:
    if item.valor_total is not None:
        return item.valor_total
    return item.quantidade * item.valor_unitario


def _items_table(items: Sequence[OrderProduct | OrderService]):
    rows = [
        E.TR(
            E.TD(item.descricao or "-"),
            E.TD(str(item.quantidade)),
            E.TD(format_brl(item.valor_unitario)),
            E.TD(format_brl(_item_total(item))),
        )
        for item in items
    ]
    return E.TABLE(
        E.THEAD(E.TR(E.TH("Descrição"), E.TH("Qtd"), E.TH("Preço"), E.TH("Total"))),
        E.TBODY(*rows),
    )


def render_summary(
    invoice: Invoice,
    order: ServiceOrder,
    client: Client,
    products: Sequence[OrderProduct],
    services: Sequence[OrderService],
) -> bytes:
    """HTML summary for manual emission on the municipal portal."""
    doc = E.HTML(
        E.HEAD(
            E.META(charset="utf-8"),
            E.TITLE(f"Resumo NF {invoice.numero}"),
            E.STYLE(_STYLE),
        ),
        E.BODY(
            E.H1(f"Resumo da Nota Fiscal - {invoice.numero}"),
            E.P(E.STRONG("Ordem de Serviço: "), order.numero),
            E.P(E.STRONG("Cliente: "), f"{client.nome} ({client.cpf_cnpj or '-'})"),
            E.P(E.STRONG("Endereço: "), client.endereco or "-"),
            E.H2("Itens - Produtos"),
            _items_table(products),
            E.H2("Itens - Serviços"),
            _items_table(services),
            E.H3("Totais"),
            E.P(E.STRONG("Produtos: "), format_brl(invoice.valor_produtos)),
            E.P(E.STRONG("Serviços: "), format_brl(invoice.valor_servicos)),
            E.P(E.STRONG("Base: "), format_brl(invoice.valor_base)),
            E.P(
                E.STRONG("Impostos: "),
                f"ICMS {format_brl(invoice.icms)}, ISS {format_brl(invoice.iss)}, "
                f"PIS {format_brl(invoice.pis)}, COFINS {format_brl(invoice.cofins)}",
            ),
            E.P(E.STRONG("Total Impostos: "), format_brl(invoice.total_impostos)),
            E.P(E.STRONG("Valor Total: "), format_brl(invoice.valor_total)),
            E.HR(),
            E.P(
                "Copie e cole estes dados no sistema da prefeitura "
                "para emissão manual da NFS-e."
            ),
        ),
    )
    return lxml.html.tostring(doc, doctype="<!DOCTYPE html>", encoding="utf-8", pretty_print=True)
