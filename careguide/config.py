"""Runtime configuration for the task player.

Defaults come from careguide.constants. Any field can be overridden with a
CAREGUIDE_<FIELD_NAME> environment variable (a .env file is loaded first).
"""

import os
from dataclasses import dataclass, fields

from dotenv import load_dotenv

from careguide import constants as C

ENV_PREFIX = "CAREGUIDE_"


@dataclass
class PlayerConfig:
    """Timing, threshold and device settings for one task player session."""
    model_path: str = C.MODEL_PATH
    conf_min: float = C.CONF_MIN_DEFAULT
    imgsz: int = C.IMGSZ_DEFAULT

    model_poll_interval: float = C.MODEL_POLL_INTERVAL
    heuristic_poll_interval: float = C.HEURISTIC_POLL_INTERVAL
    edge_threshold: int = C.EDGE_THRESHOLD_DEFAULT

    fallback_timeout_min: float = C.FALLBACK_TIMEOUT_MIN
    fallback_timeout_max: float = C.FALLBACK_TIMEOUT_MAX
    settle_delay: float = C.SETTLE_DELAY
    manual_settle_delay: float = C.MANUAL_SETTLE_DELAY
    default_repetition: float = C.DEFAULT_REPETITION_SECONDS

    camera_index: int = 0
    camera_attempts: int = C.CAMERA_MAX_ATTEMPTS
    camera_backoff: float = C.CAMERA_BACKOFF_SECONDS
    camera_ready_timeout: float = C.CAMERA_READY_TIMEOUT

    voice_lang: str = C.VOICE_LANG
    speech_rate: float = C.SPEECH_RATE
    volume: float = C.SPEECH_VOLUME

    debug: bool = False


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def load_player_config(**overrides) -> PlayerConfig:
    """
    Build a PlayerConfig from defaults, then CAREGUIDE_* env vars, then kwargs.
    Raises ValueError if an env var cannot be parsed for its field type.
    """
    load_dotenv()
    cfg = PlayerConfig()
    for f in fields(cfg):
        raw = os.getenv(ENV_PREFIX + f.name.upper())
        if raw is None or raw == "":
            continue
        try:
            setattr(cfg, f.name, _coerce(raw, getattr(cfg, f.name)))
        except ValueError as exc:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}: {raw!r}") from exc
    for key, value in overrides.items():
        if not hasattr(cfg, key):
            raise TypeError(f"Unknown config field: {key}")
        setattr(cfg, key, value)
    if cfg.fallback_timeout_max < cfg.fallback_timeout_min:
        cfg.fallback_timeout_max = cfg.fallback_timeout_min
    return cfg
