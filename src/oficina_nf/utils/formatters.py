from __future__ import annotations

from decimal import Decimal

from oficina_nf.config import INVOICE_NUMBER_WIDTH


def format_brl(value: Decimal | str) -> str:
    """Format a monetary amount as R$ X.XXX,XX."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"R$ {formatted}"


def format_invoice_number(value: int, width: int = INVOICE_NUMBER_WIDTH) -> str:
    """Zero-pad a sequence value: 1 -> '000001'."""
    if value < 1:
        raise ValueError(f"Invoice sequence must be positive, got {value}")
    return str(value).zfill(width)


def parse_invoice_number(numero: str | None) -> int:
    """Inverse of format_invoice_number; non-numeric legacy values count as 0."""
    if not numero:
        return 0
    try:
        return int(numero)
    except ValueError:
        return 0
