# afip/services/secrets.py
# -*- coding: utf-8 -*-
"""
Cifrado en reposo de las claves privadas AFIP.

Se usa Fernet con la clave AFIP_SECRETS_KEY. Si no está configurada se
deriva una desde SECRET_KEY (útil en desarrollo; en producción conviene
una clave propia para poder rotar SECRET_KEY sin perder las credenciales).
"""
from __future__ import annotations

import base64
import functools
import hashlib
from typing import Union

from cryptography.fernet import Fernet, InvalidToken
from django.conf import settings

from afip.services.errors import CredentialInvalid


@functools.lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    key = getattr(settings, "AFIP_SECRETS_KEY", None)
    if not key:
        digest = hashlib.sha256(settings.SECRET_KEY.encode("utf-8")).digest()
        key = base64.urlsafe_b64encode(digest).decode("ascii")
    return Fernet(key.encode("ascii") if isinstance(key, str) else key)


def encrypt_text(value: Union[str, bytes]) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return get_fernet().encrypt(value).decode("ascii")


def decrypt_text(token: Union[str, bytes]) -> str:
    if isinstance(token, str):
        token = token.encode("ascii")
    try:
        return get_fernet().decrypt(token).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialInvalid(
            "No se pudo descifrar la clave privada (AFIP_SECRETS_KEY incorrecta o dato corrupto)."
        ) from exc
