import json
import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import NamedTuple

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    # LLM route used for resegmentation; api_routes are tried in order after it.
    "api_provider": "openrouter",  # "openrouter", "openai", "gemini", "custom"
    "api_key": "",
    "base_url": "https://openrouter.ai/api/v1",
    "model": "openai/gpt-4o-mini",
    "api_extra_headers": {},
    "api_fallback_enabled": True,
    "api_routes": [],
    "verbose_logging": False,
    # Transcript pipeline triggers
    "pipeline_min_raw_fragments": 5,
    "pipeline_idle_trigger_seconds": 45.0,
    "pipeline_idle_min_fragments": 2,
    "pipeline_poll_seconds": 5.0,
    "pipeline_resume_delay_seconds": 2.0,
    "pipeline_followup_delay_seconds": 0.1,
    # Chunking / completion budget
    "pipeline_max_chunk_fragments": 20,
    "pipeline_chars_per_token": 4.0,
    "pipeline_max_output_tokens": 4096,
    "pipeline_inter_chunk_delay_seconds": 0.5,
    # Retry + content guard
    "pipeline_max_attempts": 3,
    "pipeline_retry_base_delay_seconds": 2.0,
    "pipeline_min_content_ratio": 0.5,  # 0 disables the summarisation guard.
}

# key -> (type, min, max)
_PIPELINE_LIMITS: dict[str, tuple[type, float, float]] = {
    "pipeline_min_raw_fragments": (int, 1, 200),
    "pipeline_idle_trigger_seconds": (float, 0.0, 3600.0),
    "pipeline_idle_min_fragments": (int, 1, 200),
    "pipeline_poll_seconds": (float, 0.05, 300.0),
    "pipeline_resume_delay_seconds": (float, 0.0, 120.0),
    "pipeline_followup_delay_seconds": (float, 0.0, 30.0),
    "pipeline_max_chunk_fragments": (int, 1, 500),
    "pipeline_chars_per_token": (float, 1.0, 10.0),
    "pipeline_max_output_tokens": (int, 256, 32768),
    "pipeline_inter_chunk_delay_seconds": (float, 0.0, 30.0),
    "pipeline_max_attempts": (int, 1, 10),
    "pipeline_retry_base_delay_seconds": (float, 0.0, 60.0),
    "pipeline_min_content_ratio": (float, 0.0, 1.0),
}

_MAX_ROUTES = 8


class ProviderPreset(NamedTuple):
    base_url: str
    model: str
    key_env: str
    host: str


PROVIDERS: dict[str, ProviderPreset] = {
    "openrouter": ProviderPreset("https://openrouter.ai/api/v1", "openai/gpt-4o-mini", "OPENROUTER_API_KEY", "openrouter.ai"),
    "openai": ProviderPreset("https://api.openai.com/v1", "gpt-4o-mini", "OPENAI_API_KEY", "api.openai.com"),
    # Gemini through its OpenAI-compatible endpoint.
    "gemini": ProviderPreset(
        "https://generativelanguage.googleapis.com/v1beta/openai",
        "gemini-2.5-flash",
        "GEMINI_API_KEY",
        "generativelanguage.googleapis.com",
    ),
}

_PROVIDER_ALIASES = {"google": "gemini", "google_gemini": "gemini", "open_router": "openrouter"}


def get_config_path() -> Path:
    configured = os.environ.get("REFINERY_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()
    base_dir = os.environ.get("APPDATA") or str(Path.home())
    return (Path(base_dir) / "Transcript Refinery" / "settings.json").resolve()


def coerce_headers(value: object) -> dict[str, str]:
    """Header mapping from a dict or a JSON object string; blank names/values are dropped."""
    if isinstance(value, str):
        try:
            value = json.loads(value) if value.strip() else {}
        except ValueError:
            return {}
    if not isinstance(value, dict):
        return {}
    pairs = ((str(k).strip(), str(v).strip()) for k, v in value.items())
    return {k: v for k, v in pairs if k and v}


def coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, (bool, int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("", "0", "false", "no", "off", "n"):
            return False
    return default


def coerce_str(value: object, default: str = "", *, max_len: int = 4096) -> str:
    out = default if value is None else str(value)
    return out.strip()[:max_len]


def _clamp(value, min_v, max_v):
    if min_v is not None and value < min_v:
        return min_v
    if max_v is not None and value > max_v:
        return max_v
    return value


def coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except (TypeError, ValueError, OverflowError):
        out = int(default)
    return _clamp(out, min_v, max_v)


def coerce_float_in_range(
    value: object,
    default: float,
    *,
    min_v: float | None = None,
    max_v: float | None = None,
) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        out = float(default)
    if out != out:  # NaN
        out = float(default)
    return _clamp(out, min_v, max_v)


def resolve_provider(name: object, base_url: str = "") -> str:
    """Preset name for a route: explicit alias first, else inferred from the base URL host."""
    p = coerce_str(name).casefold().replace("-", "_").replace(" ", "_")
    p = _PROVIDER_ALIASES.get(p, p)
    if p in PROVIDERS:
        return p
    url = base_url.casefold()
    for preset_name, preset in PROVIDERS.items():
        if url and preset.host in url:
            return preset_name
    return "custom"


def normalize_route(values: object) -> dict | None:
    """One API route with preset defaults applied; None when no base URL can be determined."""
    if not isinstance(values, dict):
        return None
    base_url = coerce_str(values.get("base_url"), max_len=2048)
    provider = resolve_provider(values.get("provider"), base_url)
    preset = PROVIDERS.get(provider)
    base_url = base_url or (preset.base_url if preset else "")
    if not base_url:
        return None
    return {
        "provider": provider,
        "api_key": coerce_str(values.get("api_key")),
        "base_url": base_url,
        "model": coerce_str(values.get("model"), max_len=512) or (preset.model if preset else DEFAULT_CONFIG["model"]),
        "api_extra_headers": coerce_headers(values.get("api_extra_headers")),
        "enabled": coerce_bool(values.get("enabled"), True),
    }


def sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    src: dict = dict(base) if isinstance(base, dict) else {}
    if isinstance(raw, dict):
        src.update(raw)

    out: dict = dict(DEFAULT_CONFIG)
    primary = normalize_route(
        {
            "provider": src.get("api_provider", DEFAULT_CONFIG["api_provider"]),
            "api_key": src.get("api_key"),
            "base_url": src.get("base_url") or DEFAULT_CONFIG["base_url"],
            "model": src.get("model"),
            "api_extra_headers": src.get("api_extra_headers"),
        }
    )
    out["api_provider"] = primary["provider"]
    out["api_key"] = primary["api_key"]
    out["base_url"] = primary["base_url"]
    out["model"] = primary["model"]
    out["api_extra_headers"] = primary["api_extra_headers"]
    out["api_fallback_enabled"] = coerce_bool(src.get("api_fallback_enabled"), True)
    routes = src.get("api_routes") if isinstance(src.get("api_routes"), list) else []
    out["api_routes"] = [r for r in map(normalize_route, routes) if r][:_MAX_ROUTES]
    out["verbose_logging"] = coerce_bool(src.get("verbose_logging"), False)

    for key, (kind, lo, hi) in _PIPELINE_LIMITS.items():
        coerce = coerce_int_in_range if kind is int else coerce_float_in_range
        out[key] = coerce(src.get(key), DEFAULT_CONFIG[key], min_v=kind(lo), max_v=kind(hi))
    # The idle trigger exists to catch backlogs below the count threshold.
    out["pipeline_idle_min_fragments"] = min(out["pipeline_idle_min_fragments"], out["pipeline_min_raw_fragments"])

    return out


def llm_routes(cfg: dict) -> list[dict]:
    """
    Routes the LLM client should try, in order: the primary route, then `api_routes`
    unless fallback is disabled. Missing keys come from the provider's environment
    variable; routes that still have no key are dropped, as are duplicates.
    """
    candidates = [
        normalize_route(
            {
                "provider": cfg.get("api_provider"),
                "api_key": cfg.get("api_key"),
                "base_url": cfg.get("base_url"),
                "model": cfg.get("model"),
                "api_extra_headers": cfg.get("api_extra_headers"),
            }
        )
    ]
    if coerce_bool(cfg.get("api_fallback_enabled"), True):
        candidates += [normalize_route(r) for r in cfg.get("api_routes") or []]

    out: list[dict] = []
    for route in candidates:
        if not route or not route.pop("enabled"):
            continue
        if not route["api_key"] and route["provider"] in PROVIDERS:
            route["api_key"] = (os.environ.get(PROVIDERS[route["provider"]].key_env) or "").strip()
        if route["api_key"] and route not in out:
            out.append(route)
    return out[:_MAX_ROUTES]


def load_config(path: Path | None = None) -> dict:
    cfg_path = path or get_config_path()
    loaded: dict = {}
    try:
        if cfg_path.is_file():
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file %s", cfg_path)
    return sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict, path: Path | None = None) -> None:
    """Write sanitized settings through a temp file so a crash never leaves half a file."""
    cfg_path = path or get_config_path()
    clean_cfg = sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cfg_path.with_suffix(cfg_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(cfg_path)
    except Exception:
        logger.exception("Failed to save settings file %s", cfg_path)
        raise


@dataclass(frozen=True)
class PipelineSettings:
    """Typed view of the `pipeline_*` settings; field names drop the prefix."""

    min_raw_fragments: int = 5
    idle_trigger_seconds: float = 45.0
    idle_min_fragments: int = 2
    poll_seconds: float = 5.0
    resume_delay_seconds: float = 2.0
    followup_delay_seconds: float = 0.1
    max_chunk_fragments: int = 20
    chars_per_token: float = 4.0
    max_output_tokens: int = 4096
    inter_chunk_delay_seconds: float = 0.5
    max_attempts: int = 3
    retry_base_delay_seconds: float = 2.0
    min_content_ratio: float = 0.5

    @classmethod
    def from_config(cls, cfg: dict | None) -> "PipelineSettings":
        clean = sanitize_config_values(cfg or {}, base=DEFAULT_CONFIG)
        return cls(**{f.name: clean[f"pipeline_{f.name}"] for f in fields(cls)})
