from __future__ import annotations

import base64
import logging
import os
import secrets
import stat
import sys
from pathlib import Path

USAGE = """\
Uso: oficina-nf <comando> [argumentos]

Comandos:
  init                       cria diretórios e a chave de criptografia (CERT_KEY)
  init-db                    cria as tabelas no banco configurado
  worker                     executa o worker de emissão
  jobs                       lista os jobs recentes
  dlq                        lista os jobs na dead-letter queue
  requeue <dlq_id>           reenfileira um job da dead-letter queue
  generate <os_id>           gera a nota fiscal de uma OS finalizada
  cancel <nf_id> <motivo>    cancela uma nota fiscal
"""


def _configure_logging() -> None:
    level = os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)
    env_file.chmod(stat.S_IRUSR | stat.S_IWUSR)


def _init_config() -> None:
    """Create config/data directories and a certificate encryption key."""
    from oficina_nf.config import (
        KEYRING_SERVICE,
        KEYRING_USERNAME,
        get_cipher_key,
        get_config_dir,
        get_data_dir,
    )

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)
    print(f"Configuração: {config_dir}")
    print(f"Dados:   {data_dir}")

    if get_cipher_key():
        print("Chave de criptografia já configurada.")
        return

    key = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
    if _check_keyring_available():
        import keyring

        keyring.set_password(KEYRING_SERVICE, KEYRING_USERNAME, key)
        print("Chave armazenada no keychain do sistema.")
    else:
        env_file = config_dir / ".env"
        _upsert_env_var(env_file, "CERT_KEY", key)
        print(f"Chave salva em {env_file}")
    print("Guarde uma cópia: sem ela os certificados salvos não podem ser lidos.")


def _session_factory():
    from oficina_nf.config import get_database_url
    from oficina_nf.db import make_engine, make_session_factory

    return make_session_factory(make_engine(get_database_url()))


def _init_db() -> None:
    from oficina_nf.config import get_database_url
    from oficina_nf.db import create_schema, make_engine

    create_schema(make_engine(get_database_url()))
    print("Tabelas criadas.")


def _run_worker() -> None:
    from oficina_nf.config import (
        get_cipher_key,
        load_provider_settings,
        load_storage_settings,
        load_worker_settings,
    )
    from oficina_nf.services.artifact_store import build_artifact_store
    from oficina_nf.services.gateway import GatewaySelector
    from oficina_nf.services.job_queue import JobQueue
    from oficina_nf.services.worker import Worker
    from oficina_nf.utils.cipher import SecretCipher

    store = build_artifact_store(load_storage_settings())
    gateways = GatewaySelector(load_provider_settings(), store, SecretCipher(get_cipher_key()))
    worker = Worker(_session_factory(), JobQueue(), gateways, load_worker_settings())
    try:
        worker.run_forever()
    except KeyboardInterrupt:
        print("\nWorker encerrado.")


def _list_jobs() -> None:
    from oficina_nf.services.job_queue import JobQueue

    with _session_factory()() as session:
        jobs = JobQueue().list_jobs(session)
        if not jobs:
            print("Nenhum job.")
            return
        print(f"{'ID':>6}  {'NF':>6}  {'STATUS':<10}  {'TENT.':>5}  {'PRÓXIMA':<19}  ERRO")
        for job in jobs:
            next_run = f"{job.next_run_at:%Y-%m-%d %H:%M:%S}" if job.next_run_at else "-"
            error = (job.last_error or "")[:60]
            print(
                f"{job.id:>6}  {job.nota_fiscal_id:>6}  {job.status:<10}  "
                f"{job.attempts:>5}  {next_run:<19}  {error}"
            )


def _list_dead_letters() -> None:
    from oficina_nf.services.job_queue import JobQueue

    with _session_factory()() as session:
        entries = JobQueue().list_dead_letters(session)
        if not entries:
            print("Dead-letter queue vazia.")
            return
        print(f"{'ID':>6}  {'JOB':>6}  {'NF':>6}  {'TENT.':>5}  {'MOVIDO EM':<19}  ERRO")
        for entry in entries:
            nf = entry.nota_fiscal_id if entry.nota_fiscal_id is not None else "-"
            print(
                f"{entry.id:>6}  {entry.original_job_id:>6}  {nf:>6}  {entry.attempts:>5}  "
                f"{entry.moved_at:%Y-%m-%d %H:%M:%S}  {(entry.last_error or '')[:60]}"
            )


def _requeue(dlq_id: int) -> None:
    from oficina_nf.services.job_queue import JobQueue

    with _session_factory().begin() as session:
        job = JobQueue().requeue_dead_letter(session, dlq_id)
        print(f"Entrada {dlq_id} reenfileirada como job {job.id}.")


def _generate(order_id: int) -> None:
    from oficina_nf.config import get_emission_mode, load_storage_settings
    from oficina_nf.services.artifact_store import build_artifact_store
    from oficina_nf.services.invoice_computer import InvoiceComputer
    from oficina_nf.services.job_queue import JobQueue

    mode = get_emission_mode()
    store = build_artifact_store(load_storage_settings()) if mode == "manual" else None
    computer = InvoiceComputer(_session_factory(), JobQueue(), mode=mode, store=store)
    invoice = computer.generate(order_id)
    print(f"NF {invoice.numero} gerada (total {invoice.valor_total}).")
    if invoice.html_path:
        print(f"Resumo para emissão manual: {invoice.html_path}")


def _cancel(invoice_id: int, reason: str) -> None:
    from oficina_nf.services.invoices import cancel_invoice

    with _session_factory().begin() as session:
        invoice = cancel_invoice(session, invoice_id, reason)
        print(f"NF {invoice.numero} cancelada.")


def _int_arg(args: list[str], index: int, name: str) -> int:
    try:
        return int(args[index])
    except (IndexError, ValueError):
        print(f"Erro: {name} deve ser um número inteiro.")
        print(USAGE)
        sys.exit(2)


def main() -> None:
    """Entry point for the oficina-nf operator CLI."""
    args = sys.argv[1:]
    if not args or args[0] in ("-h", "--help", "help"):
        print(USAGE)
        return

    _configure_logging()

    from oficina_nf.services.exceptions import CipherError, GatewayError, InvoiceError, JobNotFound

    command = args[0]
    try:
        if command == "init":
            _init_config()
        elif command == "init-db":
            _init_db()
        elif command == "worker":
            _run_worker()
        elif command == "jobs":
            _list_jobs()
        elif command == "dlq":
            _list_dead_letters()
        elif command == "requeue":
            _requeue(_int_arg(args, 1, "dlq_id"))
        elif command == "generate":
            _generate(_int_arg(args, 1, "os_id"))
        elif command == "cancel":
            invoice_id = _int_arg(args, 1, "nf_id")
            reason = " ".join(args[2:])
            _cancel(invoice_id, reason)
        else:
            print(f"Comando desconhecido: {command}")
            print(USAGE)
            sys.exit(2)
    except (InvoiceError, GatewayError, CipherError, JobNotFound, ValueError) as e:
        print(f"Erro: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
