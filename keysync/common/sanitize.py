def maskSecret(value: str | None) -> str | None:
    """
    Назначение:
        Маскирует секреты (токен каталога, пароль связки) для вывода в stdout/logs.

    Выходные данные:
        str | None
            '***', если значение задано, иначе None.
    """
    if value is None:
        return None
    return "***"


def truncateText(value: str | None, limit: int = 200) -> str | None:
    """
    Назначение:
        Ограничивает длину текста (тело ответа каталога, сообщения ошибок)
        для логов и отчётов.
    """
    if value is None:
        return None
    if len(value) <= limit:
        return value
    suffix = "..." if limit > 3 else ""
    return value[: limit - len(suffix)] + suffix
