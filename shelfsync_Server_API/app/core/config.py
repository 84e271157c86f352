# config.py
# Description: Configuration settings for the shelfsync server application and the device sync client.
#
# Imports
import configparser
import os
from pathlib import Path
from typing import Optional, Dict, Any
#
# 3rd-party Libraries
from loguru import logger
#
# Local Imports
#
########################################################################################################################
#
# Functions:

# --- Constants ---
# Page size used by the change query engine when walking the record store
DEFAULT_SYNC_PAGE_SIZE = 100
# Max records handled per upsert chunk on push
DEFAULT_SYNC_BATCH_SIZE = 100
# How many times a conditional write is re-resolved before giving up
DEFAULT_UPSERT_MAX_ATTEMPTS = 3

# --- Device-side sync defaults ---
DEFAULT_CLIENT_TIMEOUT_SECONDS = 8.0
DEFAULT_SYNC_INTERVAL_SECONDS = 60
DEFAULT_STATE_FILE = ".shelfsync_state.json"
DEFAULT_LOCAL_DB_PATH = "./shelfsync_local.sqlite"

_DEFAULT_API_KEY = "default-secret-key-for-single-user"
_DEFAULT_JWT_SECRET = "a_very_insecure_default_secret_key_for_dev_only"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Environment variable {name}='{raw}' is not an integer, using default {default}.")
        return default


def load_settings() -> Dict[str, Any]:
    """Loads all settings from environment variables or defaults into a dictionary."""

    # --- Application Mode ---
    app_mode_str = os.getenv("APP_MODE", "single").lower()
    single_user_mode = app_mode_str != "multi"

    # --- Single-User Settings ---
    # In single-user mode the bearer token is a fixed API key and every request maps to one user id
    single_user_fixed_id = os.getenv("SINGLE_USER_FIXED_ID", "single_user")
    single_user_api_key = os.getenv("API_KEY", _DEFAULT_API_KEY)

    # --- Multi-User Settings (JWT) ---
    jwt_secret_key = os.getenv("JWT_SECRET_KEY", _DEFAULT_JWT_SECRET)
    jwt_algorithm = "HS256"
    access_token_expire_minutes = _int_env("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24)

    # --- Database Settings ---
    user_db_base_dir = Path(os.getenv("USER_DB_BASE_DIR", "./user_databases/"))

    # --- Sync Engine Settings ---
    sync_page_size = _int_env("SYNC_PAGE_SIZE", DEFAULT_SYNC_PAGE_SIZE)
    sync_batch_size = _int_env("SYNC_BATCH_SIZE", DEFAULT_SYNC_BATCH_SIZE)
    upsert_max_attempts = _int_env("SYNC_UPSERT_MAX_ATTEMPTS", DEFAULT_UPSERT_MAX_ATTEMPTS)

    # --- CORS ---
    origins_raw = os.getenv("ALLOWED_ORIGINS", "")
    allowed_origins = [o.strip() for o in origins_raw.split(",") if o.strip()]

    # --- Logging ---
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    config_dict = {
        # General App
        "APP_MODE_STR": app_mode_str,
        "SINGLE_USER_MODE": single_user_mode,
        "LOG_LEVEL": log_level,
        "ALLOWED_ORIGINS": allowed_origins,

        # Single User
        "SINGLE_USER_FIXED_ID": single_user_fixed_id,
        "SINGLE_USER_API_KEY": single_user_api_key,

        # Multi User / Auth
        "JWT_SECRET_KEY": jwt_secret_key,
        "JWT_ALGORITHM": jwt_algorithm,
        "ACCESS_TOKEN_EXPIRE_MINUTES": access_token_expire_minutes,

        # Database
        "USER_DB_BASE_DIR": user_db_base_dir,

        # Sync
        "SYNC_PAGE_SIZE": max(1, sync_page_size),
        "SYNC_BATCH_SIZE": max(1, sync_batch_size),
        "SYNC_UPSERT_MAX_ATTEMPTS": max(1, upsert_max_attempts),
    }

    if config_dict["SINGLE_USER_MODE"] and config_dict["SINGLE_USER_API_KEY"] == _DEFAULT_API_KEY:
        logger.warning("Using default API_KEY for single-user mode. Set the API_KEY environment variable for security.")
    if not config_dict["SINGLE_USER_MODE"] and config_dict["JWT_SECRET_KEY"] == _DEFAULT_JWT_SECRET:
        logger.warning("SECURITY WARNING: Using default JWT_SECRET_KEY in multi-user mode. Set a strong JWT_SECRET_KEY!")

    return config_dict


settings = load_settings()

ALLOWED_ORIGINS = settings["ALLOWED_ORIGINS"]


# --- Device Client Configuration ---

def load_client_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads the device-side sync configuration.

    Values come from the ``[Sync]`` section of an INI file when one is given,
    with ``SHELFSYNC_SERVER_URL`` and ``SHELFSYNC_TOKEN`` overriding the file.
    """
    parser = configparser.ConfigParser()
    if config_path:
        path_obj = Path(config_path)
        if not path_obj.exists():
            logger.error(f"Client config file not found at {path_obj}")
            raise FileNotFoundError(f"Client config file not found at {path_obj}")
        try:
            parser.read(path_obj)
        except configparser.Error as e:
            logger.error(f"Error parsing client config file {path_obj}: {e}")
            raise
        logger.info(f"Loaded client config from {path_obj}; sections: {parser.sections()}")

    section = parser["Sync"] if parser.has_section("Sync") else {}

    def _get(key: str, default: Optional[str] = None) -> Optional[str]:
        value = section.get(key, default) if section else default
        return value if value not in ("", None) else default

    client_config = {
        "server_url": os.getenv("SHELFSYNC_SERVER_URL") or _get("server_url", "http://127.0.0.1:8000/api/v1"),
        "token": os.getenv("SHELFSYNC_TOKEN") or _get("token"),
        "user_id": _get("user_id", "local_user"),
        "state_file": _get("state_file", DEFAULT_STATE_FILE),
        "local_db_path": _get("local_db_path", DEFAULT_LOCAL_DB_PATH),
        "timeout_seconds": float(_get("timeout_seconds", str(DEFAULT_CLIENT_TIMEOUT_SECONDS))),
        "interval_seconds": int(_get("interval_seconds", str(DEFAULT_SYNC_INTERVAL_SECONDS))),
    }
    return client_config

#
# End of config.py
########################################################################################################################
