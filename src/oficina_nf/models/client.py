from __future__ import annotations

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from oficina_nf.models.base import Base, utcnow


class Client(Base):
    """Service taker (cliente). Owned by the CRUD side of the application."""

    __tablename__ = "clientes"

    id: Mapped[int] = mapped_column(primary_key=True)
    nome: Mapped[str] = mapped_column(String(255))
    telefone: Mapped[str | None] = mapped_column(String(20))
    cpf_cnpj: Mapped[str | None] = mapped_column(String(20))
    email: Mapped[str | None] = mapped_column(String(255))
    endereco: Mapped[str | None] = mapped_column(Text)
    criado_em: Mapped[datetime] = mapped_column(default=utcnow)

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "nome": self.nome,
            "cpf_cnpj": self.cpf_cnpj,
            "endereco": self.endereco,
        }
