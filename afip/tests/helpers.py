# afip/tests/helpers.py
# -*- coding: utf-8 -*-
"""Dobles de prueba compartidos por los tests de afip."""
from __future__ import annotations

import functools
import threading
import time
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Dict, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from afip.services.errors import CredentialNotFound
from afip.services.stores import CredentialMaterial
from afip.services.tra import Ticket

CUIT = "20123456789"


def make_certificate(
    *,
    not_before: Optional[datetime] = None,
    not_after: Optional[datetime] = None,
    key: Optional[rsa.RSAPrivateKey] = None,
) -> tuple[str, str]:
    """Certificado autofirmado + clave privada, ambos en PEM."""
    key = key or rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.now(dt_timezone.utc)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "facturacion-test"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, f"CUIT {CUIT}"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - timedelta(days=1))
        .not_valid_after(not_after or now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode("ascii")
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    return cert_pem, key_pem


@functools.lru_cache(maxsize=1)
def shared_certificate() -> tuple[str, str]:
    return make_certificate()


def login_response_xml(
    generation: datetime,
    expiration: datetime,
    *,
    token: str = "TOKEN",
    sign: str = "SIGN",
) -> str:
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
        '<loginTicketResponse version="1.0">'
        "<header>"
        "<source>CN=wsaahomo, O=AFIP, C=AR, SERIALNUMBER=CUIT 33693450239</source>"
        f"<destination>SERIALNUMBER=CUIT {CUIT}, CN=facturacion-test</destination>"
        "<uniqueId>1234567890</uniqueId>"
        f"<generationTime>{generation.replace(microsecond=0).isoformat()}</generationTime>"
        f"<expirationTime>{expiration.replace(microsecond=0).isoformat()}</expirationTime>"
        "</header>"
        "<credentials>"
        f"<token>{token}</token>"
        f"<sign>{sign}</sign>"
        "</credentials>"
        "</loginTicketResponse>"
    )


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class InMemoryCredentialStore:
    def __init__(
        self,
        *tenant_ids: str,
        mode: str = "HOMOLOGATION",
        modes: Optional[Dict[str, str]] = None,
    ) -> None:
        modes = modes or {}
        self._items: Dict[str, CredentialMaterial] = {
            tenant_id: CredentialMaterial(
                tenant_id=tenant_id,
                cuit=CUIT,
                certificate_pem="CERT",
                private_key_pem="KEY",
                service="wsfe",
                mode=modes.get(tenant_id, mode),
            )
            for tenant_id in tenant_ids
        }

    def get(self, tenant_id: str) -> CredentialMaterial:
        try:
            return self._items[tenant_id]
        except KeyError as exc:
            raise CredentialNotFound(f"Sin credenciales para {tenant_id}") from exc

    def tenant_ids(self) -> List[str]:
        return sorted(self._items)


class InMemoryTicketStore:
    def __init__(self) -> None:
        self._items: Dict[str, Ticket] = {}
        self._lock = threading.Lock()
        self.upserts = 0

    def get(self, tenant_id: str) -> Optional[Ticket]:
        with self._lock:
            return self._items.get(tenant_id)

    def upsert(self, tenant_id: str, ticket: Ticket) -> None:
        with self._lock:
            self._items[tenant_id] = ticket
            self.upserts += 1

    def all(self) -> Dict[str, Ticket]:
        with self._lock:
            return dict(self._items)


class FakeWSAA:
    """
    Reemplazo de WSAAClient: cuenta logins y devuelve un loginTicketResponse
    con la vigencia indicada. Con `fail_with` levanta esa excepción.
    """

    def __init__(
        self,
        clock: FakeClock,
        *,
        lifetime: timedelta = timedelta(hours=12),
        delay: float = 0,
        fail_with: Optional[Exception] = None,
    ) -> None:
        self.clock = clock
        self.lifetime = lifetime
        self.delay = delay
        self.fail_with = fail_with
        self.calls = 0
        self.messages: List[str] = []
        self._lock = threading.Lock()

    def login(self, signed_message: str) -> str:
        with self._lock:
            self.calls += 1
            number = self.calls
            self.messages.append(signed_message)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        now = self.clock()
        return login_response_xml(now, now + self.lifetime, token=f"TOKEN-{number}", sign=f"SIGN-{number}")


def fake_signer(data: bytes, certificate_pem: str, private_key_pem: str) -> str:
    return f"CMS[{len(data)}]"


def make_ticket(now: datetime, *, expires_in: timedelta, token: str = "PRIOR") -> Ticket:
    return Ticket(
        token=token,
        sign=f"{token}-SIGN",
        generation_time=now - timedelta(hours=1),
        expiration_time=now + expires_in,
    )
