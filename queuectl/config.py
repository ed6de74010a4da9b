from typing import Any, Callable, Dict, Optional

from .errors import ValidationError
from .storage import DEFAULT_CONFIG, MAX_RETRIES_LIMIT, Storage


def _non_negative_int(value: Any) -> str:
    try:
        number = int(str(value).strip())
    except ValueError:
        raise ValidationError("max_retries must be a non-negative integer") from None
    if number < 0:
        raise ValidationError("max_retries must be a non-negative integer")
    if number > MAX_RETRIES_LIMIT:
        raise ValidationError(f"max_retries must not exceed {MAX_RETRIES_LIMIT}")
    return str(number)


def _positive_number(value: Any) -> str:
    try:
        number = float(str(value).strip())
    except ValueError:
        raise ValidationError("backoff_base must be a positive number") from None
    if not number > 0 or number == float("inf"):
        raise ValidationError("backoff_base must be a positive number")
    return str(int(number)) if number.is_integer() else str(number)


_VALIDATORS: Dict[str, Callable[[Any], str]] = {
    "max_retries": _non_negative_int,
    "backoff_base": _positive_number,
}


def normalize_key(key: str) -> str:
    return key.strip().replace("-", "_")


class Config:
    """Typed view over the config table of a :class:`Storage`."""

    def __init__(self, storage: Storage):
        self.storage = storage

    def get(self, key: str) -> Optional[str]:
        return self.storage.get_config(normalize_key(key))

    def set(self, key: str, value: Any) -> str:
        """Validate and store ``value``; returns the stored text."""
        key = normalize_key(key)
        validator = _VALIDATORS.get(key)
        if validator is None:
            known = ", ".join(sorted(_VALIDATORS))
            raise ValidationError(f"Unknown config key: {key}. Use one of: {known}")
        stored = validator(value)
        self.storage.set_config(key, stored)
        return stored

    def get_all(self) -> Dict[str, str]:
        return {**DEFAULT_CONFIG, **self.storage.get_all_config()}

    @property
    def max_retries(self) -> int:
        value = self.get("max_retries")
        return int(value if value is not None else DEFAULT_CONFIG["max_retries"])

    @property
    def backoff_base(self) -> float:
        value = self.get("backoff_base")
        return float(value if value is not None else DEFAULT_CONFIG["backoff_base"])
