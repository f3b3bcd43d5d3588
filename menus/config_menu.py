import questionary

from config import (
    CONFIG_SCHEMA,
    apply_config_profile,
    list_profiles,
    load_config,
    reset_to_defaults,
    update_config,
    validate_config,
)
from utils.logger import log_error, log_info, log_success

CONFIG_CATEGORIES = {
    "Spotify app": ["spotify_client_id", "spotify_redirect_uri", "spotify_scopes"],
    "Session storage": ["spotify_cache_tokens", "session_storage_path"],
    "Authorization": ["pkce_ttl_seconds", "pkce_lock_lease_seconds"],
    "Tokens": ["token_refresh_margin_seconds", "token_default_lifetime_seconds"],
    "Requests": ["request_timeout_seconds", "request_max_attempts", "request_backoff_base_ms"],
    "Optimistic updates": ["reconcile_delay_seconds"],
    "Profile": ["profile"],
}


def config_menu(config: dict) -> dict:
    """
    Display the configuration menu and handle user selections.
    Returns the potentially updated config dict.
    """
    while True:
        choice = questionary.select(
            "⚙️ Config Menu - What would you like to do?",
            choices=[
                "View current config",
                "Update a setting",
                "Switch config profile",
                "Reset to defaults",
                "Validate configuration",
                "Back",
            ],
        ).ask()

        if choice == "View current config":
            view_config(config)
        elif choice == "Update a setting":
            config = update_setting_menu(config)
        elif choice == "Switch config profile":
            config = switch_profile_menu(config)
        elif choice == "Reset to defaults":
            config = reset_config_menu(config)
        elif choice == "Validate configuration":
            validate_config_menu(config)
        else:
            break

    return config


def format_config(config: dict) -> str:
    lines = []
    for category, keys in CONFIG_CATEGORIES.items():
        lines.append(f"{category}:")
        for key in keys:
            if key not in config:
                continue
            value = config[key]
            if isinstance(value, bool):
                value = "✓ Enabled" if value else "✗ Disabled"
            elif isinstance(value, list):
                value = ", ".join(str(v) for v in value) or "(none)"
            elif key == "spotify_client_id" and not value:
                value = "NOT SET"
            lines.append(f"  {key}: {value}")
    return "\n".join(lines)


def view_config(config: dict):
    log_info("\n" + "=" * 50)
    log_info("📋 Current Configuration")
    log_info("=" * 50)
    log_info(format_config(config))
    log_info("=" * 50)


def parse_setting_value(key: str, raw: str):
    """Convert text typed by the user into the type CONFIG_SCHEMA expects for ``key``."""
    schema = CONFIG_SCHEMA[key]
    expected = schema.get("type")
    raw = (raw or "").strip()

    if expected is int:
        return int(raw)
    if expected == (int, float):
        number = float(raw)
        return int(number) if number.is_integer() else number
    if expected is list:
        return [part for part in raw.replace(",", " ").split() if part]
    return raw


def update_setting_menu(config: dict) -> dict:
    """Menu to update individual settings."""
    key = questionary.select("Select setting to update:", choices=list(CONFIG_SCHEMA.keys()) + ["Back"]).ask()
    if not key or key == "Back":
        return config

    schema = CONFIG_SCHEMA.get(key, {})
    current_value = config.get(key)
    log_info(f"\nCurrent value: {current_value}")

    if "choices" in schema:
        new_value = questionary.select(f"Select new value for {key}:", choices=schema["choices"]).ask()
    elif schema.get("type") is bool:
        new_value = questionary.confirm(
            f"Enable {key}?",
            default=current_value if isinstance(current_value, bool) else True,
        ).ask()
    else:
        default = " ".join(current_value) if isinstance(current_value, list) else str(current_value or "")
        hint = f" ({schema['min']}-{schema['max']})" if "min" in schema and "max" in schema else ""
        raw = questionary.text(f"Enter new value for {key}{hint}:", default=default).ask()
        if raw is None:
            return config
        try:
            new_value = parse_setting_value(key, raw)
        except ValueError:
            log_error("Invalid number format")
            return config

    if new_value is None:
        return config

    success, message = update_config(key, new_value)
    if success:
        log_success(message)
        config[key] = new_value
    else:
        log_error(message)
    return config


def switch_profile_menu(config: dict) -> dict:
    """Menu to switch between request/retry profiles."""
    profiles = list_profiles()

    log_info("\n📋 Available Profiles:\n")
    for name, settings in profiles.items():
        current = " (current)" if config.get("profile") == name else ""
        log_info(f"  {name}{current}:")
        for key, value in settings.items():
            log_info(f"    - {key}: {value}")

    choice = questionary.select("Select profile to apply:", choices=list(profiles.keys()) + ["Back"]).ask()
    if not choice or choice == "Back":
        return config

    if questionary.confirm(f"Apply '{choice}' profile? This will update the request settings.", default=True).ask():
        success, message = apply_config_profile(choice)
        if success:
            log_success(message)
            config = load_config()
        else:
            log_error(message)
    return config


def reset_config_menu(config: dict) -> dict:
    if questionary.confirm("⚠️ Reset all settings to defaults? This cannot be undone.", default=False).ask():
        success, message = reset_to_defaults()
        if success:
            log_success(message)
            config = load_config()
        else:
            log_error(message)
    return config


def validate_config_menu(config: dict):
    is_valid, errors = validate_config(config)
    if is_valid:
        log_success("Configuration is valid!")
    else:
        log_error("Configuration has errors:")
        for error in errors:
            log_error(f"  ✗ {error}")
