from __future__ import annotations

from datetime import datetime

from sqlalchemy import LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from oficina_nf.models.base import Base, utcnow


class GatewayConfig(Base):
    """Per-issuer provider selection and credentials.

    ``certificado_a1`` only ever holds SecretCipher output.
    """

    __tablename__ = "gateway_configs"

    id: Mapped[int] = mapped_column(primary_key=True)
    empresa_id: Mapped[int] = mapped_column()
    provider: Mapped[str | None] = mapped_column(String(100))
    api_key: Mapped[str | None] = mapped_column(Text)
    api_secret: Mapped[str | None] = mapped_column(Text)
    certificado_a1: Mapped[bytes | None] = mapped_column(LargeBinary)
    certificado_senha: Mapped[str | None] = mapped_column(String(255))
    ativo: Mapped[bool] = mapped_column(default=True)
    criado_em: Mapped[datetime] = mapped_column(default=utcnow)

    def __repr__(self) -> str:
        return f"<GatewayConfig id={self.id} provider={self.provider!r} ativo={self.ativo}>"
