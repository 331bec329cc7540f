# afip/services/errors.py
# -*- coding: utf-8 -*-
"""
Taxonomía de errores de la integración AFIP (WSAA / WSFE).

Todas las capas (firma, transporte, tickets, autorización) levantan
subclases de AfipError para que los llamadores no dependan de las
excepciones de zeep / requests / cryptography.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence


@dataclass(frozen=True)
class AuthorityMessage:
    """Par (código, mensaje) tal como lo devuelve AFIP en Errors/Observaciones/Events."""

    code: str
    message: str

    def as_dict(self) -> Dict[str, str]:
        return {"codigo": self.code, "mensaje": self.message}


class AfipError(Exception):
    """Error base de la integración AFIP."""

    kind = "AfipError"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        codes: Optional[Sequence[AuthorityMessage]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.codes: List[AuthorityMessage] = list(codes or [])

    def as_message(self) -> Dict[str, Any]:
        """
        Representación serializable que se guarda en los mensajes de la venta
        (mismo formato origen/detalle que usa el workflow).
        """
        data: Dict[str, Any] = {
            "origen": self.kind,
            "detalle": self.message,
        }
        if self.codes:
            data["codigos"] = [c.as_dict() for c in self.codes]
        return data


class CredentialInvalid(AfipError):
    """Certificado o clave privada mal formados / vencidos / inconsistentes."""

    kind = "CredentialInvalid"


class CredentialNotFound(AfipError):
    """El tenant no tiene credenciales AFIP configuradas."""

    kind = "CredentialNotFound"


class TransportFailure(AfipError):
    """Error de red, timeout o transporte HTTP al hablar con AFIP."""

    kind = "TransportFailure"
    retryable = True


class AuthorityRejection(AfipError):
    """AFIP respondió correctamente pero rechazó la operación (SOAP Fault o Errors)."""

    kind = "AuthorityRejection"


class ParseFailure(AfipError):
    """Respuesta de AFIP mal formada o incompleta (sin token/sign, sin CAE, etc.)."""

    kind = "ParseFailure"

    def __init__(
        self,
        message: str,
        *,
        raw_payload: Any = None,
        codes: Optional[Sequence[AuthorityMessage]] = None,
    ) -> None:
        super().__init__(message, codes=codes)
        self.raw_payload = raw_payload


class RenewalFailed(AfipError):
    """Falló una renovación forzada del ticket; envuelve el error original."""

    kind = "RenewalFailed"

    def __init__(self, message: str, *, cause: AfipError) -> None:
        super().__init__(message, codes=cause.codes)
        self.cause = cause
        self.cause_kind = cause.kind

    def as_message(self) -> Dict[str, Any]:
        data = super().as_message()
        data["causa"] = self.cause_kind
        return data


class InvalidInvoice(AfipError, ValueError):
    """Los datos del comprobante no cumplen las reglas mínimas antes de transmitir."""

    kind = "InvalidInvoice"


__all__ = [
    "AuthorityMessage",
    "AfipError",
    "CredentialInvalid",
    "CredentialNotFound",
    "TransportFailure",
    "AuthorityRejection",
    "ParseFailure",
    "RenewalFailed",
    "InvalidInvoice",
]
