import json
import sys

import questionary

from config import load_or_create_config, validate_config
from menus.config_menu import config_menu
from menus.session_menu import session_menu
from utils.logger import log_error, log_info, log_warning, setup_logging


def main_menu() -> str:
    return questionary.select(
        "🎵 Spotify Session - Main Menu",
        choices=["Spotify Menu", "Config Menu", "Exit"],
    ).ask()


def main() -> int:
    setup_logging()

    try:
        config = load_or_create_config()
    except json.JSONDecodeError as e:
        log_error(f"Config file contains invalid JSON: {e}")
        return 1
    except OSError as e:
        log_error(f"Error loading config: {e}")
        return 1

    is_valid, errors = validate_config(config)
    if not is_valid:
        log_warning("Configuration has errors (fix them in the Config Menu):")
        for error in errors:
            log_warning(f"  - {error}")

    while True:
        choice = main_menu()

        if choice == "Spotify Menu":
            session_menu(config)
        elif choice == "Config Menu":
            config = config_menu(config)
        elif choice == "Exit" or choice is None:
            log_info("Exiting program...")
            return 0
        else:
            log_error("Invalid choice.")


if __name__ == "__main__":
    sys.exit(main())
