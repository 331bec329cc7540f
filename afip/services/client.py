# afip/services/client.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from django.conf import settings

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from zeep import Client
from zeep.helpers import serialize_object
from zeep.transports import Transport
from zeep.exceptions import Fault, TransportError, ValidationError, XMLParseError, XMLSyntaxError

from afip.services.codes import WSFE_NO_RESULTS, OperatingMode, normalize_cuit
from afip.services.errors import (
    AuthorityMessage,
    AuthorityRejection,
    InvalidInvoice,
    ParseFailure,
    TransportFailure,
)
from afip.services.tra import Ticket

wsaa_logger = logging.getLogger("afip.wsaa")
wsfe_logger = logging.getLogger("afip.wsfe")


# =========================
# Endpoints AFIP (tomados desde settings)
# =========================

WSAA_WSDL = {
    OperatingMode.HOMOLOGATION: getattr(
        settings,
        "AFIP_WSAA_WSDL_HOMOLOGATION",
        "https://wsaahomo.afip.gov.ar/ws/services/LoginCms?WSDL",
    ),
    OperatingMode.PRODUCTION: getattr(
        settings,
        "AFIP_WSAA_WSDL_PRODUCTION",
        "https://wsaa.afip.gov.ar/ws/services/LoginCms?WSDL",
    ),
}

WSFE_WSDL = {
    OperatingMode.HOMOLOGATION: getattr(
        settings,
        "AFIP_WSFE_WSDL_HOMOLOGATION",
        "https://wswhomo.afip.gov.ar/wsfev1/service.asmx?WSDL",
    ),
    OperatingMode.PRODUCTION: getattr(
        settings,
        "AFIP_WSFE_WSDL_PRODUCTION",
        "https://servicios1.afip.gov.ar/wsfev1/service.asmx?WSDL",
    ),
}

# Parámetros de red / resiliencia
AFIP_SSL_VERIFY = getattr(settings, "AFIP_SSL_VERIFY", True)
AFIP_REQUEST_TIMEOUT = getattr(settings, "AFIP_REQUEST_TIMEOUT", 20)  # segundos
AFIP_WSDL_RETRY_MAX = getattr(settings, "AFIP_WSDL_RETRY_MAX", 3)
AFIP_LOGIN_MAX_ATTEMPTS = getattr(settings, "AFIP_LOGIN_MAX_ATTEMPTS", 3)
AFIP_LOGIN_BACKOFF = getattr(settings, "AFIP_LOGIN_BACKOFF", 1)  # segundos, se duplica


def build_session() -> requests.Session:
    """
    Session HTTP compartida por zeep. Solo se reintentan respuestas 5xx de GET
    (descarga del WSDL): las llamadas SOAP van por POST y no son idempotentes
    del lado AFIP. Los errores de conexión y lectura no se reintentan acá; el
    presupuesto de intentos de loginCms lo maneja WSAAClient.login().
    """
    session = requests.Session()
    session.verify = AFIP_SSL_VERIFY
    session.headers.update({"User-Agent": "AfipWS/1.0 (Python/Zeep)"})

    retry = Retry(
        total=AFIP_WSDL_RETRY_MAX,
        connect=0,
        read=0,
        other=0,
        backoff_factor=1,
        status_forcelist=[500, 502, 503, 504],
        allowed_methods=["GET"],
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def extract_messages(data: Optional[Dict[str, Any]], container: str, item: str) -> List[AuthorityMessage]:
    """
    Extrae pares (Code, Msg) de estructuras del tipo
    {"Errors": {"Err": [{"Code": 10016, "Msg": "..."}]}}.
    """
    if not data:
        return []
    wrapper = data.get(container) or {}
    if not isinstance(wrapper, dict):
        return []
    return [
        AuthorityMessage(code=str(entry.get("Code", "")), message=str(entry.get("Msg") or ""))
        for entry in as_list(wrapper.get(item))
        if isinstance(entry, dict)
    ]


class _SoapService:
    """
    Base común: resuelve el WSDL por modo de operación y crea el cliente zeep
    de forma perezosa (si el WSDL no baja, falla la primera llamada y no el
    constructor).
    """

    wsdl_by_mode: Dict[str, str] = {}
    label = "AFIP"
    logger = wsfe_logger

    def __init__(
        self,
        mode: str,
        *,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.mode = OperatingMode.normalize(mode)
        self.wsdl = self.wsdl_by_mode[self.mode]
        self.timeout = timeout or AFIP_REQUEST_TIMEOUT
        self._session = session
        self._client: Optional[Client] = None

    @property
    def client(self) -> Client:
        if self._client is None:
            transport = Transport(
                session=self._session or build_session(),
                timeout=self.timeout,
                operation_timeout=self.timeout,
            )
            self.logger.info(
                "Inicializando cliente %s modo=%s [WSDL=%s, verify_ssl=%s, timeout=%s]",
                self.label,
                self.mode,
                self.wsdl,
                AFIP_SSL_VERIFY,
                self.timeout,
            )
            try:
                self._client = Client(wsdl=self.wsdl, transport=transport)
            except (requests.RequestException, TransportError) as exc:
                raise TransportFailure(
                    f"No fue posible descargar el WSDL de {self.label}: {exc}"
                ) from exc
            except (XMLSyntaxError, XMLParseError) as exc:
                # Páginas de mantenimiento HTML en lugar del WSDL.
                raise TransportFailure(
                    f"WSDL de {self.label} inválido o servicio no disponible: {exc}"
                ) from exc
        return self._client

    def _call(self, operation: str, **kwargs: Any) -> Any:
        try:
            return getattr(self.client.service, operation)(**kwargs)
        except Fault as exc:
            self.logger.warning("SOAP Fault en %s.%s: %s (%s)", self.label, operation, exc.message, exc.code)
            raise AuthorityRejection(
                f"{self.label} rechazó {operation}: {exc.message}",
                codes=[AuthorityMessage(code=str(exc.code or ""), message=str(exc.message or ""))],
            ) from exc
        except (requests.RequestException, TransportError) as exc:
            self.logger.warning("Error de red/timeout en %s.%s: %s", self.label, operation, exc)
            raise TransportFailure(
                f"No fue posible conectarse a {self.label} ({operation}): {exc}"
            ) from exc
        except ValidationError as exc:
            raise InvalidInvoice(
                f"Los datos enviados a {operation} no cumplen el esquema de {self.label}: {exc}"
            ) from exc
        except (XMLSyntaxError, XMLParseError) as exc:
            self.logger.error("Respuesta ilegible de %s.%s: %s", self.label, operation, exc)
            raise ParseFailure(
                f"Respuesta ilegible de {self.label} ({operation}): {exc}",
                raw_payload=getattr(exc, "content", None),
            ) from exc


# =========================
# WSAA: loginCms
# =========================


class WSAAClient(_SoapService):
    """
    Cliente del Web Service de Autenticación y Autorización (LoginCms).

    login() reintenta solo fallas de transporte (conexión, timeout, HTTP) con
    backoff exponencial; un SOAP Fault es una respuesta definitiva de AFIP y
    se propaga sin reintentar.
    """

    wsdl_by_mode = WSAA_WSDL
    label = "WSAA"
    logger = wsaa_logger

    def __init__(
        self,
        mode: str,
        *,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(mode, timeout=timeout, session=session)
        self.max_attempts = max(1, max_attempts or AFIP_LOGIN_MAX_ATTEMPTS)
        self.backoff = AFIP_LOGIN_BACKOFF if backoff is None else backoff
        self._sleep = sleep

    def login(self, signed_message: str) -> str:
        """Envía el CMS en base64 y devuelve el loginCmsReturn (XML crudo)."""
        last_error: Optional[TransportFailure] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                result = self._call("loginCms", in0=signed_message)
            except TransportFailure as exc:
                last_error = exc
                self.logger.warning(
                    "loginCms intento %s/%s falló: %s",
                    attempt,
                    self.max_attempts,
                    exc.message,
                )
                if attempt < self.max_attempts:
                    self._sleep(self.backoff * (2 ** (attempt - 1)))
                continue

            if not result:
                raise ParseFailure("WSAA devolvió loginCmsReturn vacío.", raw_payload=result)
            self.logger.info("loginCms OK en el intento %s (modo=%s)", attempt, self.mode)
            return str(result)

        self.logger.error("loginCms agotó %s intentos contra %s", self.max_attempts, self.wsdl)
        raise TransportFailure(
            f"WSAA no respondió tras {self.max_attempts} intentos: "
            f"{last_error.message if last_error else 'sin detalle'}"
        )


# =========================
# WSFEv1
# =========================


class WSFEClient(_SoapService):
    """
    Cliente del Web Service de Factura Electrónica (WSFEv1).

    Ninguna llamada se reintenta automáticamente: repetir un FECAESolicitar
    puede consumir dos números de comprobante.
    """

    wsdl_by_mode = WSFE_WSDL
    label = "WSFE"
    logger = wsfe_logger

    @staticmethod
    def auth(ticket: Ticket, cuit) -> Dict[str, Any]:
        return {"Token": ticket.token, "Sign": ticket.sign, "Cuit": normalize_cuit(cuit)}

    def _serialized(self, operation: str, **kwargs: Any) -> Dict[str, Any]:
        data = serialize_object(self._call(operation, **kwargs), dict)
        if not isinstance(data, dict):
            raise ParseFailure(f"Respuesta inesperada de {operation}.", raw_payload=data)
        return data

    def _raise_for_errors(self, operation: str, data: Dict[str, Any], *, allow_empty: bool = False) -> bool:
        """
        Levanta AuthorityRejection si la respuesta trae Errors. Con
        allow_empty, el código 602 (sin resultados) devuelve False.
        """
        errors = extract_messages(data, "Errors", "Err")
        if not errors:
            return True
        if allow_empty and all(e.code == str(WSFE_NO_RESULTS) for e in errors):
            return False
        self.logger.warning("%s devolvió errores: %s", operation, [e.as_dict() for e in errors])
        raise AuthorityRejection(
            f"WSFE rechazó {operation}: " + "; ".join(f"{e.code} {e.message}" for e in errors),
            codes=errors,
        )

    def request_authorization(self, ticket: Ticket, cuit, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        FECAESolicitar. payload es el FeCAEReq completo; la respuesta se
        devuelve serializada para que el llamador interprete el veredicto
        (Errors aquí no es excepción: es parte del rechazo).
        """
        fe_cae_req = payload.get("FeCAEReq", payload)
        cab = fe_cae_req.get("FeCabReq", {})
        self.logger.info(
            "FECAESolicitar cuit=%s PtoVta=%s CbteTipo=%s",
            cuit,
            cab.get("PtoVta"),
            cab.get("CbteTipo"),
        )
        data = self._serialized("FECAESolicitar", Auth=self.auth(ticket, cuit), FeCAEReq=fe_cae_req)
        self.logger.debug("Respuesta FECAESolicitar: %s", data)
        return data

    def last_authorized_number(self, ticket: Ticket, cuit, sales_point: int, document_type: int) -> int:
        data = self._serialized(
            "FECompUltimoAutorizado",
            Auth=self.auth(ticket, cuit),
            PtoVta=sales_point,
            CbteTipo=document_type,
        )
        self._raise_for_errors("FECompUltimoAutorizado", data)
        try:
            return int(data.get("CbteNro") or 0)
        except (TypeError, ValueError) as exc:
            raise ParseFailure(
                f"CbteNro inválido en FECompUltimoAutorizado: {data.get('CbteNro')!r}",
                raw_payload=data,
            ) from exc

    def points_of_sale(self, ticket: Ticket, cuit) -> List[Dict[str, Any]]:
        data = self._serialized("FEParamGetPtosVenta", Auth=self.auth(ticket, cuit))
        if not self._raise_for_errors("FEParamGetPtosVenta", data, allow_empty=True):
            return []
        result = data.get("ResultGet") or {}
        return [
            {
                "numero": int(item.get("Nro")),
                "tipo_emision": item.get("EmisionTipo"),
                "bloqueado": item.get("Bloqueado") == "S",
                "fecha_baja": item.get("FchBaja"),
            }
            for item in as_list(result.get("PtoVenta"))
        ]

    def voucher_info(
        self,
        ticket: Ticket,
        cuit,
        sales_point: int,
        document_type: int,
        number: int,
    ) -> Optional[Dict[str, Any]]:
        """FECompConsultar. None si AFIP no tiene ese comprobante."""
        data = self._serialized(
            "FECompConsultar",
            Auth=self.auth(ticket, cuit),
            FeCompConsReq={
                "CbteTipo": document_type,
                "CbteNro": number,
                "PtoVta": sales_point,
            },
        )
        if not self._raise_for_errors("FECompConsultar", data, allow_empty=True):
            return None
        return data.get("ResultGet")


__all__ = [
    "WSAAClient",
    "WSFEClient",
    "build_session",
    "extract_messages",
    "as_list",
]
