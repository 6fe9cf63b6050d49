from __future__ import annotations

import base64
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from oficina_nf.config import WorkerSettings
from oficina_nf.db import create_schema, make_engine, make_session_factory
from oficina_nf.models.client import Client
from oficina_nf.models.order import OrderProduct, OrderService, OrderStatus, ServiceOrder
from oficina_nf.services.artifact_store import LocalArtifactStore
from oficina_nf.services.job_queue import JobQueue
from oficina_nf.utils.cipher import SecretCipher

_ENV_VARS = (
    "DATABASE_URL",
    "PLUGNOTAS_URL",
    "PLUGNOTAS_API_KEY",
    "PROVIDER_TIMEOUT",
    "STORAGE_PROVIDER",
    "STORAGE_DIR",
    "S3_BUCKET",
    "S3_ENDPOINT",
    "S3_SECURE",
    "AWS_REGION",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "NF_WORKER_POLL_MS",
    "NF_WORKER_MAX_ATTEMPTS",
    "NF_WORKER_BACKOFF_SECONDS",
    "NF_WORKER_PROCESSING_TIMEOUT",
    "EMISSION_MODE",
    "CERT_KEY",
    "CERT_KEY_BASE64",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the developer's shell/.env/settings.yaml out of every test."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OFICINA_NF_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.setenv("OFICINA_NF_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setattr("oficina_nf.config._get_keyring_key", lambda: None)


# --- Clock ---


class FixedClock:
    """Deterministic utcnow replacement; advance() moves time forward."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2025, 3, 10, 12, 0, 0))


# --- Database ---


@pytest.fixture
def engine(tmp_path):
    # File-backed so worker threads in concurrency tests share one database.
    eng = make_engine(f"sqlite:///{tmp_path / 'oficina.db'}")
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def sessions(engine):
    return make_session_factory(engine)


@pytest.fixture
def queue(clock) -> JobQueue:
    return JobQueue(clock=clock)


@pytest.fixture
def store(tmp_path) -> LocalArtifactStore:
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def worker_settings() -> WorkerSettings:
    return WorkerSettings(
        poll_interval=0.5, max_attempts=3, backoff_unit=60, processing_timeout=600
    )


@pytest.fixture
def make_order(sessions):
    """Factory: persist a client + service order and return the order id.

    ``products`` / ``services`` are (quantidade, valor_unitario, valor_total)
    tuples; valor_total may be None.
    """
    counter = {"n": 0}

    def _make(
        numero: str | None = None,
        status: str = OrderStatus.FINALIZED.value,
        products=(),
        services=(),
        valor_total: str = "0",
    ) -> int:
        counter["n"] += 1
        with sessions.begin() as session:
            client = Client(
                nome=f"Cliente {counter['n']}",
                cpf_cnpj="12345678909",
                endereco="Rua das Oficinas, 10",
            )
            session.add(client)
            session.flush()
            order = ServiceOrder(
                numero=numero or f"OS-{counter['n']:04d}",
                cliente_id=client.id,
                status=status,
                valor_total=Decimal(valor_total),
            )
            session.add(order)
            session.flush()
            for i, (qty, unit, total) in enumerate(products):
                session.add(
                    OrderProduct(
                        os_id=order.id,
                        codigo=f"P{i + 1}",
                        descricao=f"Peça {i + 1}",
                        quantidade=Decimal(qty),
                        valor_unitario=Decimal(unit),
                        valor_total=None if total is None else Decimal(total),
                    )
                )
            for i, (qty, unit, total) in enumerate(services):
                session.add(
                    OrderService(
                        os_id=order.id,
                        codigo=f"S{i + 1}",
                        descricao=f"Serviço {i + 1}",
                        quantidade=Decimal(qty),
                        valor_unitario=Decimal(unit),
                        valor_total=None if total is None else Decimal(total),
                    )
                )
            return order.id

    return _make


@pytest.fixture
def order_42(make_order) -> int:
    """Finalized order: 2 x 50.00 in parts plus 200.00 of labor."""
    return make_order(
        numero="42",
        products=[("2", "50.00", "100.00")],
        services=[("1", "200.00", None)],
        valor_total="300.00",
    )


# --- Cipher ---


@pytest.fixture
def cipher_key() -> str:
    return base64.b64encode(bytes(range(32))).decode("ascii")


@pytest.fixture
def cipher(cipher_key) -> SecretCipher:
    return SecretCipher(cipher_key)


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "Oficina Teste"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Oficina Teste LTDA"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def test_pfx(test_key_and_cert) -> tuple[bytes, str]:
    key, cert = test_key_and_cert
    password = "testpass"
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
    )
    return pfx_data, password


@pytest.fixture
def test_pfx_b64(test_pfx) -> str:
    return base64.b64encode(test_pfx[0]).decode("ascii")
