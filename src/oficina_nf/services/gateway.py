from __future__ import annotations

import base64
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests
import requests.exceptions
from lxml import etree
from requests_pkcs12 import post as pkcs12_post

from oficina_nf.config import STUB_DELAY, ProviderSettings
from oficina_nf.models.gateway import GatewayConfig
from oficina_nf.services.artifact_store import ArtifactStore, StoredArtifact
from oficina_nf.services.exceptions import ProviderError, UnknownProvider
from oficina_nf.services.retry import PROVIDER_SUBMIT, RetryPolicy, retry_call
from oficina_nf.utils.cipher import SecretCipher

logger = logging.getLogger(__name__)

STUB_PROVIDERS = ("", "stub")


@dataclass(frozen=True)
class EmissionResult:
    numero: str
    status: str
    raw_response: dict[str, Any] = field(default_factory=dict)
    pdf: StoredArtifact | None = None
    xml: StoredArtifact | None = None
    pdf_base64: str | None = None
    xml_base64: str | None = None


class GatewayAdapter(Protocol):
    name: str

    def emit(self, payload: dict[str, Any], config: GatewayConfig | None) -> EmissionResult: ...


def _store_best_effort(
    store: ArtifactStore, content_b64: str | None, name: str
) -> StoredArtifact | None:
    """Persist one artifact; a storage failure never fails the emission."""
    if not content_b64:
        return None
    try:
        return store.save(content_b64, name)
    except Exception:
        logger.warning("Failed to store artifact %s", name, exc_info=True)
        return None


def _first(data: dict, *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value:
            return value
    return None


class StubGateway:
    """Local stand-in used when no live provider is configured.

    No network: after an artificial delay it makes up a document number and
    placeholder PDF/XML content.
    """

    name = "stub"

    def __init__(
        self,
        store: ArtifactStore,
        *,
        delay: float = STUB_DELAY,
        sleep_func: Callable[[float], object] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.store = store
        self.delay = delay
        self._sleep = sleep_func
        self._rng = rng or random.Random()

    def emit(self, payload: dict[str, Any], config: GatewayConfig | None) -> EmissionResult:
        if self.delay:
            self._sleep(self.delay)
        numero = str(self._rng.randint(100000, 999999))
        os_id = payload.get("os_id")

        pdf_bytes = f"PDF - NF {numero} - Emitida para OS {os_id}".encode()
        root = etree.Element("nfe")
        etree.SubElement(root, "numero").text = numero
        etree.SubElement(root, "os").text = str(os_id)
        xml_bytes = etree.tostring(root, xml_declaration=True, encoding="utf-8")

        pdf_b64 = base64.b64encode(pdf_bytes).decode("ascii")
        xml_b64 = base64.b64encode(xml_bytes).decode("ascii")
        invoice_id = payload.get("id")
        return EmissionResult(
            numero=numero,
            status="emitida",
            raw_response={"stub": True},
            pdf=_store_best_effort(self.store, pdf_b64, f"nf_{invoice_id}.pdf"),
            xml=_store_best_effort(self.store, xml_b64, f"nf_{invoice_id}.xml"),
            pdf_base64=pdf_b64,
            xml_base64=xml_b64,
        )


class PlugNotasGateway:
    """PlugNotas REST client.

    Uses mutual TLS when the issuer's GatewayConfig carries an A1
    certificate (decrypted in memory only).
    """

    name = "plugnotas"

    def __init__(
        self,
        url: str,
        api_key: str,
        store: ArtifactStore,
        cipher: SecretCipher,
        *,
        timeout: float,
        retry_policy: RetryPolicy = PROVIDER_SUBMIT,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.store = store
        self.cipher = cipher
        self.timeout = timeout
        self.retry_policy = retry_policy
        self._sleep = sleep_func

    @staticmethod
    def build_request(payload: dict[str, Any]) -> dict[str, Any]:
        """Map the normalized emission payload onto the provider's request body."""
        return {
            "numero_interno": payload.get("id"),
            "cliente": payload.get("cliente"),
            "produtos": payload.get("produtos", []),
            "servicos": payload.get("servicos", []),
            "valores": {
                "valor_produtos": payload.get("valor_produtos"),
                "valor_servicos": payload.get("valor_servicos"),
                "valor_total": payload.get("valor_total"),
            },
        }

    def _post(self, body: dict[str, Any], config: GatewayConfig | None) -> requests.Response:
        url = f"{self.url}/nfe"
        headers = {
            "Authorization": f"Api-Key {self.api_key}",
            "Content-Type": "application/json",
        }
        encrypted_cert = config.certificado_a1 if config is not None else None
        if encrypted_cert:
            pfx_data = base64.b64decode(self.cipher.decrypt(encrypted_cert))
            pfx_password = config.certificado_senha or ""

            def _do_post():
                return pkcs12_post(
                    url,
                    json=body,
                    headers=headers,
                    pkcs12_data=pfx_data,
                    pkcs12_password=pfx_password,
                    timeout=self.timeout,
                )

        else:

            def _do_post():
                return requests.post(url, json=body, headers=headers, timeout=self.timeout)

        return retry_call(_do_post, self.retry_policy, sleep_func=self._sleep)

    def emit(self, payload: dict[str, Any], config: GatewayConfig | None) -> EmissionResult:
        body = self.build_request(payload)
        try:
            resp = self._post(body, config)
        except requests.exceptions.RequestException as exc:
            raise ProviderError(f"PlugNotas provider error: {exc}") from exc

        if not resp.ok:
            text = resp.text[:500] if resp.text else ""
            raise ProviderError(
                f"PlugNotas provider error ({resp.status_code}): {text}",
                status_code=resp.status_code,
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError("PlugNotas provider error: response is not JSON") from exc
        if not isinstance(data, dict):
            raise ProviderError("PlugNotas provider error: unexpected response body")

        numero = _first(data, "numero", "id")
        if not numero:
            logger.warning(
                "Provider response has no number, using internal %s", payload.get("numero")
            )
            numero = payload.get("numero")

        pdf_b64 = _first(data, "pdfBase64", "pdf_base64")
        xml_b64 = _first(data, "xmlBase64", "xml_base64")
        invoice_id = payload.get("id")
        return EmissionResult(
            numero=str(numero),
            status=str(data.get("status") or "emitida"),
            raw_response=data,
            pdf=_store_best_effort(self.store, pdf_b64, f"nf_{invoice_id}.pdf"),
            xml=_store_best_effort(self.store, xml_b64, f"nf_{invoice_id}.xml"),
            pdf_base64=pdf_b64,
            xml_base64=xml_b64,
        )


def select_gateway(
    config: GatewayConfig | None,
    settings: ProviderSettings,
    store: ArtifactStore,
    cipher: SecretCipher,
    *,
    sleep_func: Callable[[float], object] = time.sleep,
) -> StubGateway | PlugNotasGateway:
    """Pick the gateway variant for *config* (provider name is case-insensitive).

    Raises UnknownProvider for a provider name with no adapter.
    """
    provider = ((config.provider if config is not None else None) or "").strip().lower()
    stub = StubGateway(store, delay=settings.stub_delay, sleep_func=sleep_func)
    if provider in STUB_PROVIDERS:
        return stub
    if provider == PlugNotasGateway.name:
        api_key = (config.api_key if config is not None else None) or settings.api_key
        if settings.url and api_key:
            return PlugNotasGateway(
                settings.url,
                api_key,
                store,
                cipher,
                timeout=settings.timeout,
                sleep_func=sleep_func,
            )
        logger.info("PlugNotas without URL/API key configured, using stub")
        return stub
    raise UnknownProvider(f"Provider adapter not found: {provider}")


class GatewaySelector:
    """Chooses the gateway variant for a GatewayConfig.

    Built once at startup with the provider settings and the shared
    ArtifactStore/SecretCipher, then called per job. Adapters are cached
    per config id, provider and API key, so an edited key takes effect on
    the next job.
    """

    def __init__(
        self,
        settings: ProviderSettings,
        store: ArtifactStore,
        cipher: SecretCipher,
        *,
        sleep_func: Callable[[float], object] = time.sleep,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cipher = cipher
        self._sleep = sleep_func
        self._cache: dict[tuple[int | None, str | None, str | None], GatewayAdapter] = {}

    def __call__(self, config: GatewayConfig | None) -> GatewayAdapter:
        if config is None:
            key = (None, None, None)
        else:
            key = (config.id, config.provider, config.api_key)
        adapter = self._cache.get(key)
        if adapter is None:
            adapter = select_gateway(
                config, self.settings, self.store, self.cipher, sleep_func=self._sleep
            )
            self._cache[key] = adapter
        return adapter
