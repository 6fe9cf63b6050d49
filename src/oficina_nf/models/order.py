from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oficina_nf.models.base import Base, Money, utcnow
from oficina_nf.models.client import Client


class OrderStatus(str, enum.Enum):
    """Values stored in ``ordens_servico.status``."""

    OPEN = "Aberta"
    IN_PROGRESS = "Em andamento"
    FINALIZED = "Finalizada"
    CANCELED = "Cancelada"


class ServiceOrder(Base):
    """Ordem de serviço. Read-only here except for the ``nf_id`` back-reference."""

    __tablename__ = "ordens_servico"

    id: Mapped[int] = mapped_column(primary_key=True)
    numero: Mapped[str] = mapped_column(String(20), unique=True)
    cliente_id: Mapped[int] = mapped_column(ForeignKey("clientes.id"))
    status: Mapped[str] = mapped_column(String(20), default=OrderStatus.OPEN.value)
    valor_produtos: Mapped[Decimal | None] = mapped_column(Money, default=Decimal("0"))
    valor_servicos: Mapped[Decimal | None] = mapped_column(Money, default=Decimal("0"))
    valor_total: Mapped[Decimal | None] = mapped_column(Money, default=Decimal("0"))
    # Plain integer: notas_fiscais also references this table, no FK cycle.
    nf_id: Mapped[int | None] = mapped_column()
    criado_em: Mapped[datetime] = mapped_column(default=utcnow)
    atualizado_em: Mapped[datetime] = mapped_column(default=utcnow)
    finalizado_em: Mapped[datetime | None] = mapped_column()

    cliente: Mapped[Client] = relationship()
    produtos: Mapped[list[OrderProduct]] = relationship(order_by="OrderProduct.id")
    servicos: Mapped[list[OrderService]] = relationship(order_by="OrderService.id")

    @property
    def is_finalized(self) -> bool:
        return self.status == OrderStatus.FINALIZED.value


class _LineItem:
    codigo: Mapped[str] = mapped_column(String(50), default="")
    descricao: Mapped[str] = mapped_column(Text, default="")
    quantidade: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("1"))
    valor_unitario: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    valor_total: Mapped[Decimal | None] = mapped_column(Money)

    def to_payload(self) -> dict:
        return {
            "codigo": self.codigo,
            "descricao": self.descricao,
            "quantidade": str(self.quantidade),
            "valor_unitario": str(self.valor_unitario),
            "valor_total": None if self.valor_total is None else str(self.valor_total),
        }


class OrderProduct(_LineItem, Base):
    __tablename__ = "os_produtos"

    id: Mapped[int] = mapped_column(primary_key=True)
    os_id: Mapped[int] = mapped_column(ForeignKey("ordens_servico.id", ondelete="CASCADE"))
    produto_id: Mapped[int | None] = mapped_column()


class OrderService(_LineItem, Base):
    __tablename__ = "os_servicos"

    id: Mapped[int] = mapped_column(primary_key=True)
    os_id: Mapped[int] = mapped_column(ForeignKey("ordens_servico.id", ondelete="CASCADE"))
