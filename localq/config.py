import math
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .errors import ValidationError
from .models import CONFIG

DEFAULT_CONFIG = {
    "max_retries": 3,
    "backoff_base": 2.0,
    "worker_poll_interval": 1000,  # ms
    "job_timeout": 300000,         # ms
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())

# key -> (type, check, description of the valid range)
_RULES = {
    "max_retries": (int, lambda v: v >= 0, "an integer >= 0"),
    "backoff_base": (float, lambda v: v > 1, "a number > 1"),
    "worker_poll_interval": (int, lambda v: v >= 100, "an integer >= 100 (ms)"),
    "job_timeout": (int, lambda v: v >= 1000, "an integer >= 1000 (ms)"),
}


def parse_config_value(key: str, value: Any):
    """Coerce `value` (possibly a CLI string) to the key's type and range-check it."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValidationError(f"Unknown config key {key!r}. Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    kind, check, expected = _RULES[key]
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be {expected}, got {value!r}")
    try:
        if kind is int:
            if isinstance(value, float):
                if not value.is_integer():
                    raise ValueError(value)
                parsed = int(value)
            else:
                parsed = int(str(value).strip())
        else:
            parsed = float(str(value).strip())
    except ValueError:
        raise ValidationError(f"{key} must be {expected}, got {value!r}")
    if not math.isfinite(parsed) or not check(parsed):
        raise ValidationError(f"{key} must be {expected}, got {value!r}")
    return parsed


@dataclass(frozen=True)
class Config:
    max_retries: int = DEFAULT_CONFIG["max_retries"]
    backoff_base: float = DEFAULT_CONFIG["backoff_base"]
    worker_poll_interval: int = DEFAULT_CONFIG["worker_poll_interval"]
    job_timeout: int = DEFAULT_CONFIG["job_timeout"]

    def __post_init__(self):
        for key, value in asdict(self).items():
            parse_config_value(key, value)

    @property
    def poll_interval_seconds(self) -> float:
        return self.worker_poll_interval / 1000.0

    @property
    def job_timeout_seconds(self) -> float:
        return self.job_timeout / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "Config":
        values = dict(DEFAULT_CONFIG)
        for key, value in data.items():
            if key in ALLOWED_CONFIG_KEYS:
                values[key] = parse_config_value(key, value)
        return cls(**values)


# ---------- persistence ----------
def load_config(store) -> Config:
    stored = {key: rec["value"] for key, rec in store.read(CONFIG).items()}
    return Config.from_mapping(stored)


def get_config(store, key: Optional[str] = None):
    cfg = load_config(store).to_dict()
    if key is None:
        return cfg
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValidationError(f"Unknown config key {key!r}. Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    return cfg[key]


def set_config(store, key: str, value: Any) -> Config:
    parsed = parse_config_value(key, value)
    store.write(CONFIG, key, {"key": key, "value": parsed})
    return load_config(store)
