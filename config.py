import json
import os
from typing import Any, Dict, Optional

CONFIG_PATH = "config.json"

# Default configuration values
DEFAULT_CONFIG = {
    "profile": "default",

    # Spotify Web API (OAuth PKCE)
    "spotify_client_id": "",
    "spotify_redirect_uri": "http://127.0.0.1:5173/auth/spotify/callback",
    "spotify_scopes": [
        "user-read-private",
        "user-read-email",
        "user-library-read",
        "user-library-modify",
        "playlist-read-private",
        "playlist-read-collaborative",
        "playlist-modify-public",
        "playlist-modify-private",
        "user-read-playback-state",
        "user-modify-playback-state",
        "user-read-currently-playing",
    ],
    "spotify_cache_tokens": True,
    "session_storage_path": "data/spotify_session.json",

    # Authorization challenge
    "pkce_ttl_seconds": 600,
    "pkce_lock_lease_seconds": 600,

    # Tokens
    "token_refresh_margin_seconds": 300,
    "token_default_lifetime_seconds": 3600,

    # Requests
    "request_timeout_seconds": 10,
    "request_max_attempts": 3,
    "request_backoff_base_ms": 1000,

    # Optimistic updates
    "reconcile_delay_seconds": 1.0,
}

# Profile definitions
CONFIG_PROFILES = {
    "default": {
        "request_timeout_seconds": 10,
        "request_max_attempts": 3,
        "request_backoff_base_ms": 1000,
        "reconcile_delay_seconds": 1.0,
    },
    "patient": {
        # Slow or flaky networks
        "request_timeout_seconds": 30,
        "request_max_attempts": 5,
        "request_backoff_base_ms": 2000,
        "reconcile_delay_seconds": 3.0,
    },
    "fail_fast": {
        "request_timeout_seconds": 5,
        "request_max_attempts": 1,
        "request_backoff_base_ms": 250,
        "reconcile_delay_seconds": 0.5,
    },
}

# Validation rules for config fields
CONFIG_SCHEMA = {
    "profile": {"type": str, "required": False, "choices": ["default", "patient", "fail_fast"]},

    "spotify_client_id": {"type": str, "required": False},
    "spotify_redirect_uri": {"type": str, "required": False},
    "spotify_scopes": {"type": list, "required": False, "element_type": str},
    "spotify_cache_tokens": {"type": bool, "required": False},
    "session_storage_path": {"type": str, "required": False},

    "pkce_ttl_seconds": {"type": (int, float), "required": False, "min": 30, "max": 3600},
    "pkce_lock_lease_seconds": {"type": (int, float), "required": False, "min": 1, "max": 3600},

    "token_refresh_margin_seconds": {"type": (int, float), "required": False, "min": 0, "max": 1800},
    "token_default_lifetime_seconds": {"type": (int, float), "required": False, "min": 60, "max": 86400},

    "request_timeout_seconds": {"type": (int, float), "required": False, "min": 1, "max": 120},
    "request_max_attempts": {"type": int, "required": False, "min": 1, "max": 10},
    "request_backoff_base_ms": {"type": int, "required": False, "min": 0, "max": 60000},

    "reconcile_delay_seconds": {"type": (int, float), "required": False, "min": 0, "max": 60},
}

def load_config() -> Dict[str, Any]:
    """Load configuration from file, applying defaults for missing fields."""
    if not os.path.exists(CONFIG_PATH):
        raise FileNotFoundError(f"Config file {CONFIG_PATH} not found.")

    with open(CONFIG_PATH, "r", encoding="utf-8") as f:
        config = json.load(f)

    for key, value in DEFAULT_CONFIG.items():
        if key not in config:
            config[key] = value

    return config

def load_or_create_config() -> Dict[str, Any]:
    """Like load_config(), but writes the defaults first when no config.json exists."""
    if not os.path.exists(CONFIG_PATH):
        save_config(DEFAULT_CONFIG.copy())
    return load_config()

def save_config(config: Dict[str, Any]) -> bool:
    """Save configuration to file."""
    try:
        with open(CONFIG_PATH, "w", encoding="utf-8") as f:
            json.dump(config, f, indent=2)
        return True
    except OSError as e:
        raise IOError(f"Failed to save config: {e}") from e

def _type_name(expected: Any) -> str:
    if isinstance(expected, tuple):
        return "/".join(t.__name__ for t in expected)
    return expected.__name__

def _field_errors(key: str, value: Any, rules: Dict[str, Any]) -> list[str]:
    """Errors for a single present field; an empty list means the value is acceptable."""
    expected = rules.get("type")
    # bool is an int subclass
    is_number = isinstance(value, (int, float)) and not isinstance(value, bool)

    if expected is not None:
        if expected is bool:
            type_ok = isinstance(value, bool)
        elif expected in (int, (int, float)):
            type_ok = is_number and isinstance(value, expected)
        else:
            type_ok = isinstance(value, expected)
        if not type_ok:
            return [f"Field '{key}' must be {_type_name(expected)}, got {type(value).__name__}"]

    element_type = rules.get("element_type")
    if element_type is not None:
        bad = [v for v in value if not isinstance(v, element_type)]
        if bad:
            return [f"Field '{key}' must be a list of {element_type.__name__}, got invalid elements: {bad}"]

    problems = []
    if "choices" in rules and value not in rules["choices"]:
        problems.append(f"Field '{key}' must be one of {rules['choices']}, got '{value}'")
    if is_number and "min" in rules and value < rules["min"]:
        problems.append(f"Field '{key}' must be >= {rules['min']}, got {value}")
    if is_number and "max" in rules and value > rules["max"]:
        problems.append(f"Field '{key}' must be <= {rules['max']}, got {value}")
    return problems

def validate_config(config: Dict[str, Any]) -> tuple[bool, list[str]]:
    """
    Validate configuration against CONFIG_SCHEMA plus the cross-field rules.
    Returns (is_valid, list_of_errors).
    """
    errors = []
    for key, rules in CONFIG_SCHEMA.items():
        if key not in config:
            if rules.get("required", False):
                errors.append(f"Missing required field: {key}")
            continue
        errors.extend(_field_errors(key, config[key], rules))

    # The lease may not outlive the challenge.
    ttl = config.get("pkce_ttl_seconds")
    lease = config.get("pkce_lock_lease_seconds")
    if not errors and isinstance(ttl, (int, float)) and isinstance(lease, (int, float)) and lease > ttl:
        errors.append(f"Field 'pkce_lock_lease_seconds' must be <= pkce_ttl_seconds ({ttl}), got {lease}")

    return len(errors) == 0, errors

def update_config(key: str, value: Any) -> tuple[bool, str]:
    """
    Update a single config field with validation.
    Returns (success, message).
    """
    config = load_config()

    if key not in CONFIG_SCHEMA:
        return False, f"Unknown config key: {key}"

    test_config = config.copy()
    test_config[key] = value

    is_valid, errors = validate_config(test_config)
    if not is_valid:
        return False, f"Validation failed: {', '.join(errors)}"

    config[key] = value
    save_config(config)

    return True, f"Updated '{key}' to '{value}'"

def get_config_profile(config: Dict[str, Any]) -> str:
    """Get the current profile name from config."""
    return config.get("profile", "default")

def apply_config_profile(profile_name: str) -> tuple[bool, str]:
    """
    Apply a configuration profile, updating the request/retry settings.
    Returns (success, message).
    """
    if profile_name not in CONFIG_PROFILES:
        return False, f"Unknown profile: {profile_name}. Available: {list(CONFIG_PROFILES.keys())}"

    config = load_config()
    for key, value in CONFIG_PROFILES[profile_name].items():
        config[key] = value

    config["profile"] = profile_name

    is_valid, errors = validate_config(config)
    if not is_valid:
        return False, f"Profile validation failed: {', '.join(errors)}"

    save_config(config)
    return True, f"Applied profile '{profile_name}' successfully"

def get_profile_info(profile_name: str) -> Optional[Dict[str, Any]]:
    """Get settings for a specific profile."""
    return CONFIG_PROFILES.get(profile_name)

def list_profiles() -> Dict[str, Dict[str, Any]]:
    """Return all available profiles and their settings."""
    return CONFIG_PROFILES.copy()

def reset_to_defaults() -> tuple[bool, str]:
    """Reset configuration to default values."""
    try:
        save_config(DEFAULT_CONFIG.copy())
        return True, "Configuration reset to defaults"
    except IOError as e:
        return False, f"Failed to reset config: {e}"

def get_config_value(key: str, default: Any = None) -> Any:
    """Get a single config value with optional default."""
    try:
        config = load_config()
    except (FileNotFoundError, json.JSONDecodeError):
        return default
    return config.get(key, default)
