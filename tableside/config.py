"""
Runtime configuration: environment defaults with an optional YAML overlay
"""
import logging
import os

import yaml

API_BASE_URL = os.getenv("TABLESIDE_API_URL", "http://localhost:3000")
SOCKET_URL = os.getenv("TABLESIDE_SOCKET_URL", API_BASE_URL.replace("http", "ws", 1) + "/ws")
RESTAURANT_ID = os.getenv("TABLESIDE_RESTAURANT_ID")
RESTAURANT_NAME = os.getenv("TABLESIDE_RESTAURANT_NAME", "Restaurant")
STORAGE_PATH = os.getenv("TABLESIDE_STORAGE_PATH", "data/tableside.db")
SECRET_NAME = os.getenv("TABLESIDE_SECRET_NAME")
AWS_REGION = os.getenv("AWS_DEFAULT_REGION", "us-east-1")
LOGLEVEL = os.environ.get("LOGLEVEL", "INFO").upper()

# Transport
HEARTBEAT_INTERVAL = 25.0
HEARTBEAT_TIMEOUT = 60.0
ACK_TIMEOUT = 5.0
OPEN_TIMEOUT = 20.0
RECONNECT_ATTEMPTS = 10
RECONNECT_DELAY = 1.0
RECONNECT_DELAY_MAX = 30.0
RECONNECT_JITTER = 0.5

# REST
REQUEST_TIMEOUT = 10.0

CLOSED_RESERVATION_STATUSES = ("closed", "terminated", "completed", "terminée")

DEFAULT_SETTINGS_FILE = ".tableside.yaml"


def configure_logging(level=None):
    """Configure root logging the same way for every entry point"""
    logging.basicConfig(level=level or LOGLEVEL, format="%(asctime)s %(message)s")


def default_settings():
    return {
        "api_base_url": API_BASE_URL,
        "socket_url": SOCKET_URL,
        "restaurant_id": RESTAURANT_ID,
        "restaurant_name": RESTAURANT_NAME,
        "storage_path": STORAGE_PATH,
        "secret_name": SECRET_NAME,
        "region": AWS_REGION,
        "request_timeout": REQUEST_TIMEOUT,
        "transport": {
            "heartbeat_interval": HEARTBEAT_INTERVAL,
            "heartbeat_timeout": HEARTBEAT_TIMEOUT,
            "ack_timeout": ACK_TIMEOUT,
            "open_timeout": OPEN_TIMEOUT,
            "reconnect_attempts": RECONNECT_ATTEMPTS,
            "reconnect_delay": RECONNECT_DELAY,
            "reconnect_delay_max": RECONNECT_DELAY_MAX,
        },
        "closed_statuses": list(CLOSED_RESERVATION_STATUSES),
    }


def load_settings(path=None):
    """Load settings, overlaying the YAML file (if any) on the environment defaults"""
    settings = default_settings()
    path = path or os.getenv("TABLESIDE_SETTINGS", DEFAULT_SETTINGS_FILE)
    try:
        with open(path, "r") as f:
            overrides = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return settings

    if not isinstance(overrides, dict):
        raise ValueError(f"Settings file {path} must contain a mapping")

    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(settings.get(key), dict):
            settings[key] = {**settings[key], **value}
        else:
            settings[key] = value
    return settings
