from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from oficina_nf.models.gateway import GatewayConfig
from oficina_nf.services.exceptions import GatewayConfigNotFound
from oficina_nf.utils.certificate import certificate_info, decode_pfx
from oficina_nf.utils.cipher import SecretCipher

logger = logging.getLogger(__name__)


def create_gateway_config(
    session: Session,
    cipher: SecretCipher,
    empresa_id: int,
    provider: str | None,
    api_key: str | None = None,
    api_secret: str | None = None,
    certificado_a1: str | None = None,
    certificado_senha: str | None = None,
    ativo: bool = True,
) -> GatewayConfig:
    """Store a provider configuration; the A1 certificate is kept encrypted only.

    When both certificate and password are given the pair is opened first,
    so a wrong password is rejected (ValueError) before anything is stored.
    """
    encrypted = None
    if certificado_a1:
        if certificado_senha:
            info = certificate_info(decode_pfx(certificado_a1), certificado_senha)
            if not info["valid"]:
                logger.warning(
                    "Certificate for empresa %d is outside its validity window (until %s)",
                    empresa_id,
                    info["not_after"],
                )
        encrypted = cipher.encrypt(certificado_a1)

    config = GatewayConfig(
        empresa_id=empresa_id,
        provider=provider,
        api_key=api_key,
        api_secret=api_secret,
        certificado_a1=encrypted,
        certificado_senha=certificado_senha,
        ativo=ativo,
    )
    session.add(config)
    session.flush()
    logger.info("Gateway config %d created (provider=%s)", config.id, provider or "stub")
    return config


def to_public_dict(config: GatewayConfig) -> dict:
    """Listing view: no API secret, no certificate, no password."""
    return {
        "id": config.id,
        "empresa_id": config.empresa_id,
        "provider": config.provider,
        "ativo": config.ativo,
        "has_certificate": config.certificado_a1 is not None,
        "criado_em": config.criado_em,
    }


def list_gateway_configs(session: Session) -> list[dict]:
    configs = session.execute(
        select(GatewayConfig).order_by(GatewayConfig.criado_em.desc(), GatewayConfig.id.desc())
    ).scalars()
    return [to_public_dict(c) for c in configs]


def get_gateway_config(session: Session, config_id: int) -> GatewayConfig:
    config = session.get(GatewayConfig, config_id)
    if config is None:
        raise GatewayConfigNotFound(f"Gateway config {config_id} not found")
    return config


def get_active_config(session: Session) -> GatewayConfig | None:
    """Newest active configuration, or None (stub emission)."""
    return session.execute(
        select(GatewayConfig)
        .where(GatewayConfig.ativo.is_(True))
        .order_by(GatewayConfig.criado_em.desc(), GatewayConfig.id.desc())
        .limit(1)
    ).scalar_one_or_none()


def delete_gateway_config(session: Session, config_id: int) -> None:
    session.delete(get_gateway_config(session, config_id))
    session.flush()
    logger.info("Gateway config %d deleted", config_id)


def download_certificate(session: Session, cipher: SecretCipher, config_id: int) -> str | None:
    """Base64 of the decrypted A1 certificate; cipher errors propagate."""
    config = get_gateway_config(session, config_id)
    return cipher.decrypt(config.certificado_a1)
