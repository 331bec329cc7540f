# afip/services/signer.py
# -*- coding: utf-8 -*-
"""
Firma CMS/PKCS#7 del TRA para WSAA.

Equivale a:
    openssl cms -sign -in tra.xml -signer cert.pem -inkey key.pem -nodetach -outform der | base64

pero en proceso, con la librería cryptography (sin archivos temporales ni
procesos externos).
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone as dt_timezone
from typing import Optional, Union

from asn1crypto import cms as asn1_cms
from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7
from django.utils import timezone

from afip.services.errors import CredentialInvalid

logger = logging.getLogger("afip.wsaa")

PemInput = Union[str, bytes]

_HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
    "sha1": hashes.SHA1,
}


@dataclass(frozen=True)
class SigningMaterial:
    """Certificado X.509 + clave privada ya cargados."""

    certificate: x509.Certificate
    private_key: object

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    @property
    def not_valid_after(self) -> datetime:
        return _cert_validity(self.certificate)[1]


def _as_bytes(value: PemInput) -> bytes:
    if isinstance(value, str):
        return value.encode("utf-8")
    return value or b""


def _cert_validity(cert: x509.Certificate) -> tuple[datetime, datetime]:
    try:
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    except AttributeError:
        # cryptography < 42
        return (
            cert.not_valid_before.replace(tzinfo=dt_timezone.utc),
            cert.not_valid_after.replace(tzinfo=dt_timezone.utc),
        )


def _public_key_der(key) -> bytes:
    return key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def load_signing_material(
    certificate_pem: PemInput,
    private_key_pem: PemInput,
    *,
    now: Optional[datetime] = None,
    check_validity: bool = True,
) -> SigningMaterial:
    """
    Carga y valida certificado + clave privada PEM.

    Levanta CredentialInvalid si el material no se puede leer, si la clave
    no corresponde al certificado o si el certificado no está vigente.
    """
    cert_bytes = _as_bytes(certificate_pem)
    key_bytes = _as_bytes(private_key_pem)

    if not cert_bytes.strip():
        raise CredentialInvalid("El certificado PEM está vacío.")
    if not key_bytes.strip():
        raise CredentialInvalid("La clave privada PEM está vacía.")

    try:
        cert = x509.load_pem_x509_certificate(cert_bytes)
    except ValueError as exc:
        raise CredentialInvalid(f"Certificado PEM mal formado: {exc}") from exc

    try:
        private_key = serialization.load_pem_private_key(key_bytes, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        raise CredentialInvalid(f"Clave privada PEM mal formada: {exc}") from exc

    if not isinstance(private_key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey)):
        raise CredentialInvalid(
            f"Tipo de clave no soportado para CMS: {type(private_key).__name__}"
        )

    if _public_key_der(private_key.public_key()) != _public_key_der(cert.public_key()):
        raise CredentialInvalid("La clave privada no corresponde al certificado.")

    if check_validity:
        now = now or timezone.now()
        cert_start, cert_end = _cert_validity(cert)
        if now < cert_start or now > cert_end:
            logger.warning(
                "Certificado %s fuera de vigencia. Válido: %s hasta %s. Ahora: %s",
                cert.subject.rfc4514_string(),
                cert_start,
                cert_end,
                now,
            )
            raise CredentialInvalid(
                f"Certificado vencido o aún no vigente. Válido desde {cert_start} hasta {cert_end}"
            )

    return SigningMaterial(certificate=cert, private_key=private_key)


def sign_message(
    data: bytes,
    certificate_pem: PemInput,
    private_key_pem: PemInput,
) -> str:
    """
    Devuelve el CMS SignedData (SHA-256, certificado embebido, contenido
    encapsulado) en DER codificado base64, listo para loginCms(in0=...).
    """
    if not data:
        raise ValueError("No hay contenido para firmar.")

    material = load_signing_material(certificate_pem, private_key_pem)

    try:
        cms_der = (
            pkcs7.PKCS7SignatureBuilder()
            .set_data(data)
            .add_signer(material.certificate, material.private_key, hashes.SHA256())
            .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
        )
    except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
        logger.exception("Error criptográfico firmando el TRA: %s", exc)
        raise CredentialInvalid(f"Error al firmar el TRA: {exc}") from exc

    logger.debug("TRA firmado en CMS (%s bytes DER) para %s", len(cms_der), material.subject)
    return base64.b64encode(cms_der).decode("ascii")


def verify_signed_message(signed_message: PemInput) -> bytes:
    """
    Verifica un CMS generado por sign_message contra el certificado embebido
    y devuelve el contenido original.
    """
    try:
        der = base64.b64decode(_as_bytes(signed_message), validate=True)
        content_info = asn1_cms.ContentInfo.load(der)
        if content_info["content_type"].native != "signed_data":
            raise CredentialInvalid("El CMS no es SignedData.")
        signed_data = content_info["content"]
        content = signed_data["encap_content_info"]["content"].native
        certificates = signed_data["certificates"]
        signer_info = signed_data["signer_infos"][0]
    except (binascii.Error, ValueError, TypeError, KeyError, IndexError) as exc:
        raise CredentialInvalid(f"CMS mal formado: {exc}") from exc

    if content is None:
        raise CredentialInvalid("El CMS no encapsula el contenido firmado.")
    if not certificates:
        raise CredentialInvalid("El CMS no incluye el certificado del firmante.")

    cert = x509.load_der_x509_certificate(certificates[0].chosen.dump())
    hash_name = signer_info["digest_algorithm"]["algorithm"].native
    hash_cls = _HASHES.get(hash_name)
    if hash_cls is None:
        raise CredentialInvalid(f"Algoritmo de digest no soportado: {hash_name}")

    signed_attrs = signer_info["signed_attrs"]
    if signed_attrs:
        digest = None
        for attr in signed_attrs:
            if attr["type"].native == "message_digest":
                digest = attr["values"][0].native
        if digest != hashlib.new(hash_name, content).digest():
            raise CredentialInvalid("El message-digest del CMS no coincide con el contenido.")
        # Los atributos firmados se verifican como SET OF (tag 0x31), no como [0] IMPLICIT.
        to_verify = b"\x31" + signed_attrs.dump()[1:]
    else:
        to_verify = content

    signature = signer_info["signature"].native
    public_key = cert.public_key()
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, to_verify, padding.PKCS1v15(), hash_cls())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, to_verify, ec.ECDSA(hash_cls()))
        else:
            raise CredentialInvalid(
                f"Tipo de clave pública no soportado: {type(public_key).__name__}"
            )
    except InvalidSignature as exc:
        raise CredentialInvalid("La firma CMS no verifica contra el certificado embebido.") from exc

    return content


__all__ = [
    "SigningMaterial",
    "load_signing_material",
    "sign_message",
    "verify_signed_message",
]
