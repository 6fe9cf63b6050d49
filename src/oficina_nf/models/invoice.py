from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import ForeignKey, Index, String, Text, false, text
from sqlalchemy.orm import Mapped, mapped_column

from oficina_nf.models.base import Base, Money, utcnow


class Invoice(Base):
    """Nota fiscal record.

    Amounts are written once at generation. Afterwards only the emission
    result (artifact locations, provider number) and the one-way
    cancellation fields change.
    """

    __tablename__ = "notas_fiscais"
    __table_args__ = (
        # At most one non-canceled invoice per service order.
        Index(
            "uq_notas_fiscais_os_ativa",
            "os_id",
            unique=True,
            postgresql_where=text("cancelada = false"),
            sqlite_where=text("cancelada = 0"),
        ),
        Index("idx_notas_fiscais_data", "data_emissao"),
        Index("idx_notas_fiscais_cliente", "cliente_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    numero: Mapped[str] = mapped_column(String(20), unique=True)
    os_id: Mapped[int] = mapped_column(ForeignKey("ordens_servico.id"))
    cliente_id: Mapped[int] = mapped_column(ForeignKey("clientes.id"))
    data_emissao: Mapped[datetime] = mapped_column(default=utcnow)
    valor_produtos: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    valor_servicos: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    valor_total: Mapped[Decimal] = mapped_column(Money)
    icms: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    iss: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    pis: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    cofins: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    total_impostos: Mapped[Decimal] = mapped_column(Money, default=Decimal("0"))
    observacoes: Mapped[str | None] = mapped_column(Text)
    xml_path: Mapped[str | None] = mapped_column(String(500))
    pdf_path: Mapped[str | None] = mapped_column(String(500))
    html_path: Mapped[str | None] = mapped_column(String(500))
    numero_externo: Mapped[str | None] = mapped_column(String(50))
    cancelada: Mapped[bool] = mapped_column(default=False, server_default=false())
    data_cancelamento: Mapped[datetime | None] = mapped_column()
    motivo_cancelamento: Mapped[str | None] = mapped_column(Text)
    criado_em: Mapped[datetime] = mapped_column(default=utcnow)

    @property
    def valor_base(self) -> Decimal:
        return self.valor_total - self.total_impostos


class InvoiceHistory(Base):
    __tablename__ = "notas_fiscais_historico"

    id: Mapped[int] = mapped_column(primary_key=True)
    nota_fiscal_id: Mapped[int] = mapped_column(
        ForeignKey("notas_fiscais.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String(50))
    mensagem: Mapped[str | None] = mapped_column(Text)
    criado_em: Mapped[datetime] = mapped_column(default=utcnow)


class InvoiceSequence(Base):
    """Counter row for invoice numbers; locked on every allocation."""

    __tablename__ = "nf_sequencia"

    nome: Mapped[str] = mapped_column(String(50), primary_key=True)
    valor: Mapped[int] = mapped_column(default=0)
