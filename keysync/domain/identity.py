from __future__ import annotations

import re
from email.utils import getaddresses
from typing import Iterable

EMAIL_RE = re.compile(r"^[^@\s<>(),;:\"]+@[^@\s<>(),;:\"]+\.[^@\s<>(),;:\"]+$")


def extract_valid_email(identity: str | None) -> str | None:
    """
    Назначение:
        Извлекает email из user id вида "Name <email>" или "email".

    Выходные данные:
        str | None
            Адрес, если строка сводится ровно к одному валидному адресу, иначе None.

    Алгоритм:
        - Разбор адресов через email.utils.getaddresses.
        - Больше одного адреса или адрес не прошёл EMAIL_RE -> None.
    """
    if not identity or not identity.strip():
        return None
    addresses = [addr for _name, addr in getaddresses([identity]) if addr]
    if len(addresses) != 1:
        return None
    email = addresses[0].strip()
    if EMAIL_RE.match(email) is None:
        return None
    return email


def canonicalize_identity(identity: str) -> str:
    """
    Назначение:
        Приводит user id к канонической форме "<email>", если вся строка
        является email. Иначе возвращает строку без изменений.

    Инварианты:
        canonicalize_identity(canonicalize_identity(x)) == canonicalize_identity(x)
    """
    email = extract_valid_email(identity)
    if email is not None and email == identity:
        return f"<{email}>"
    return identity


def canonicalize_user_ids(user_ids: Iterable[str]) -> tuple[str, ...]:
    """
    Назначение:
        Выравнивает user id импортируемого ключа: любой uid с валидным email
        заменяется на "<email>", остальные остаются как есть.
    """
    result: list[str] = []
    for uid in user_ids:
        email = extract_valid_email(uid)
        result.append(uid if email is None else f"<{email}>")
    return tuple(result)


def contains_case_insensitive(haystack: str, needle: str) -> bool:
    return needle.casefold() in haystack.casefold()


__all__ = ["EMAIL_RE", "extract_valid_email", "canonicalize_identity", "canonicalize_user_ids", "contains_case_insensitive"]
