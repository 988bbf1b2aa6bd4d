import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

CONFIG_FILE = Path("config.json")
DEFAULT_CONFIG_FILE = Path("config.default.json")
ENV_FILE = Path(".env")

BASE_PATH_ENV_ALIAS = "MEDIATHUMB_BASE_PATH"

DEFAULT_CONFIG_FALLBACK: Dict[str, Any] = {
    "MEDIA_BASE_PATH": "./media",
    "BIND": "127.0.0.1",
    "PORT": 8080,
    "KEYFRAME_MAX_FRAMES": 30,
    "KEYFRAME_SCORE_THRESHOLD": 10.0,
    "KEYFRAME_SHARPNESS_THRESHOLD": None,
    "THUMBNAIL_QUALITY": 80,
    "MEDIA_QUALITY": 90,
    "FFMPEG_PATH": "",
    "FFPROBE_PATH": "",
    "logging": {
        "level": "INFO",
    },
}


class ConfigError(ValueError):
    """Raised when the configuration cannot produce usable service settings."""


@dataclass(frozen=True)
class LoadOptions:
    """Keyframe selection knobs, fixed for the lifetime of the process."""

    max_keyframes: int = 30
    score_threshold: float = 10.0
    sharpness_threshold: Optional[float] = None


@dataclass(frozen=True)
class ServiceSettings:
    base_path: Path
    bind: str = "127.0.0.1"
    port: int = 8080
    load_options: LoadOptions = LoadOptions()
    thumbnail_quality: int = 80
    media_quality: int = 90
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    log_level: str = "INFO"


def load_env_file(env_path: Path = ENV_FILE) -> Dict[str, str]:
    """Copy ``KEY=value`` lines from ``env_path`` into os.environ.

    Variables that are already set to a non-empty value win over the file.
    ``export`` prefixes and surrounding quotes are accepted. Returns what was set.
    """

    env_path = Path(env_path)
    if not env_path.is_file():
        return {}
    applied: Dict[str, str] = {}
    for lineno, line in enumerate(env_path.read_text(encoding="utf-8").splitlines(), start=1):
        entry = line.strip()
        if entry.startswith("export "):
            entry = entry[len("export ") :].lstrip()
        if not entry or entry.startswith("#"):
            continue
        name, sep, raw_value = entry.partition("=")
        name = name.strip()
        if not sep or not name:
            logger.debug("%s:%d: ignoring line without KEY=value", env_path, lineno)
            continue
        if os.environ.get(name):
            continue
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        os.environ[name] = value
        applied[name] = value
    return applied


def ensure_config_file(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    default_fallback: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create config.json from the defaults, or top it up with keys added since it was written."""

    defaults = _load_json(default_path) or copy.deepcopy(default_fallback or DEFAULT_CONFIG_FALLBACK)
    config_path = Path(config_path)
    if not config_path.exists():
        logger.info("Writing initial %s", config_path)
        _write_json(config_path, defaults)
        return defaults

    current = _load_json(config_path) or {}
    added = _merge_defaults(current, copy.deepcopy(defaults))
    if added:
        logger.info("Added %d new default key(s) to %s", added, config_path)
        _write_json(config_path, current)
    return current


def load_config(
    config_path: Path = CONFIG_FILE,
    default_path: Path = DEFAULT_CONFIG_FILE,
    env_path: Path = ENV_FILE,
) -> Dict[str, Any]:
    """Return the merged configuration with environment overrides applied."""

    load_env_file(env_path)
    ensure_config_file(config_path, default_path)

    default_data = _load_json(default_path) or dict(DEFAULT_CONFIG_FALLBACK)
    config_data = _load_json(config_path) or {}

    merged = _deep_merge(default_data, config_data)
    for key, value in _collect_environment_overrides(merged).items():
        merged[key] = value
    return merged


def build_service_settings(config: Dict[str, Any], *, require_base_path: bool = True) -> ServiceSettings:
    """Turn a merged config mapping into immutable, validated settings."""

    raw_base = str(config.get("MEDIA_BASE_PATH") or "").strip()
    if not raw_base:
        raise ConfigError("MEDIA_BASE_PATH is required")
    base_path = Path(raw_base).expanduser()
    if require_base_path:
        if not base_path.is_dir():
            raise ConfigError(f"Media base path '{base_path}' is not a directory")
        if not os.access(base_path, os.R_OK):
            raise ConfigError(f"Media base path '{base_path}' is not readable")
    base_path = base_path.resolve(strict=False)

    sharpness_raw = config.get("KEYFRAME_SHARPNESS_THRESHOLD")
    sharpness: Optional[float] = None
    if sharpness_raw is not None and str(sharpness_raw).strip().lower() not in {"", "null", "none", "off"}:
        sharpness = _as_float(sharpness_raw, 0.0)

    load_options = LoadOptions(
        max_keyframes=max(1, _as_int(config.get("KEYFRAME_MAX_FRAMES"), LoadOptions.max_keyframes)),
        score_threshold=_as_float(config.get("KEYFRAME_SCORE_THRESHOLD"), LoadOptions.score_threshold),
        sharpness_threshold=sharpness,
    )

    logging_section = config.get("logging") if isinstance(config.get("logging"), dict) else {}
    return ServiceSettings(
        base_path=base_path,
        bind=str(config.get("BIND") or "127.0.0.1"),
        port=_as_int(config.get("PORT"), 8080),
        load_options=load_options,
        thumbnail_quality=_clamp_quality(config.get("THUMBNAIL_QUALITY"), 80),
        media_quality=_clamp_quality(config.get("MEDIA_QUALITY"), 90),
        ffmpeg_path=str(config.get("FFMPEG_PATH") or "").strip() or None,
        ffprobe_path=str(config.get("FFPROBE_PATH") or "").strip() or None,
        log_level=str(logging_section.get("level") or "INFO").upper(),
    )


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _clamp_quality(value: Any, default: int) -> int:
    return max(1, min(100, _as_int(value, default)))


def _collect_environment_overrides(base: Dict[str, Any]) -> Dict[str, Any]:
    """Environment variables named after scalar top-level keys, plus the base path alias."""

    overrides = {
        key: os.environ[key]
        for key, current in base.items()
        if not isinstance(current, dict) and os.environ.get(key)
    }
    alias = os.environ.get(BASE_PATH_ENV_ALIAS)
    if alias:
        overrides["MEDIA_BASE_PATH"] = alias
    if overrides:
        logger.debug("config.env_overrides keys=%s", ",".join(sorted(overrides)))
    return overrides


def _deep_merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    # null in the override file means "use the default"
    merged = {key: dict(value) if isinstance(value, dict) else value for key, value in defaults.items()}
    for key, value in overrides.items():
        if value is None and key in merged:
            continue
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _merge_defaults(target: Dict[str, Any], defaults: Dict[str, Any]) -> int:
    """Add keys missing from ``target`` in place; return how many were added."""

    added = 0
    for key, value in defaults.items():
        existing = target.get(key)
        if key not in target:
            target[key] = value
            added += 1
        elif isinstance(existing, dict) and isinstance(value, dict):
            added += _merge_defaults(existing, value)
    return added


def _load_json(path: Path) -> Optional[Dict[str, Any]]:
    path = Path(path)
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring config file %s: top level must be an object", path)
        return None
    return payload


def _write_json(path: Path, data: Dict[str, Any]) -> None:
    """Replace ``path`` atomically so a crash never leaves half a config behind."""

    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        tmp_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as exc:
        logger.warning("Could not write config file %s: %s", path, exc)
        tmp_path.unlink(missing_ok=True)


def describe(settings: ServiceSettings) -> List[str]:
    """Human readable summary lines logged at startup."""

    options = settings.load_options
    sharpness = "off" if options.sharpness_threshold is None else f"{options.sharpness_threshold:g}"
    return [
        f"base_path={settings.base_path}",
        f"keyframes max={options.max_keyframes} score>={options.score_threshold:g} sharpness>={sharpness}",
        f"quality thumbnail={settings.thumbnail_quality} media={settings.media_quality}",
    ]
