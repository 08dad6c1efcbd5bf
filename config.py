# Configuration file for the WYA!? realtime relay

import json
import os

# Try to load configuration from `config.json` located next to this file.
# If the file is missing or a key is absent, fall back to the defaults below.
_BASE_DIR = os.path.dirname(os.path.abspath(__file__))
_JSON_PATH = os.path.join(_BASE_DIR, 'config.json')

# Defaults
_defaults = {
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///wya_relay.db',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'SECRET_KEY': 'change-me',
    'SOCKETIO_ASYNC_MODE': 'eventlet',
    'CORS_ALLOWED_ORIGINS': '*',
    'LOG_LEVEL': 'INFO',

    # Signal relay
    'SIGNAL_WINDOW_SECONDS': 30,
    'SIGNAL_RETENTION_SECONDS': 300,
    'SIGNAL_MAX_PAYLOAD_BYTES': 64 * 1024,

    # Per-session outbox
    'SESSION_QUEUE_SIZE': 256,
    'SESSION_OVERFLOW_POLICY': 'drop_oldest',  # 'drop_oldest' or 'disconnect'

    # Store retries
    'SEND_MAX_RETRIES': 3,
    'SEND_BACKOFF_SECONDS': 0.05,
    'REACTION_MAX_RETRIES': 5,

    # Chat safety
    'MAX_MESSAGE_LENGTH': 4000,
    'RATE_LIMIT_MESSAGES': 50,
    'RATE_LIMIT_WINDOW_SECONDS': 60,
    'HISTORY_PAGE_SIZE': 100,
}

_cfg = {}
try:
    with open(_JSON_PATH, 'r', encoding='utf-8') as f:
        _cfg = json.load(f) or {}
except FileNotFoundError:
    # No config.json present, defaults apply
    _cfg = {}


# Helper to get value from JSON, environment or defaults
def _get(key):
    if key in os.environ:
        return os.environ[key]
    return _cfg.get(key, _defaults.get(key))


# Database
SQLALCHEMY_DATABASE_URI = _get('SQLALCHEMY_DATABASE_URI')
SQLALCHEMY_TRACK_MODIFICATIONS = str(_get('SQLALCHEMY_TRACK_MODIFICATIONS')).lower() in ('1', 'true', 'yes')

# Security
SECRET_KEY = _get('SECRET_KEY')

# Transport
SOCKETIO_ASYNC_MODE = _get('SOCKETIO_ASYNC_MODE')
CORS_ALLOWED_ORIGINS = _get('CORS_ALLOWED_ORIGINS')
LOG_LEVEL = str(_get('LOG_LEVEL')).upper()

# Signal relay
SIGNAL_WINDOW_SECONDS = int(_get('SIGNAL_WINDOW_SECONDS'))
SIGNAL_RETENTION_SECONDS = int(_get('SIGNAL_RETENTION_SECONDS'))
SIGNAL_MAX_PAYLOAD_BYTES = int(_get('SIGNAL_MAX_PAYLOAD_BYTES'))

# Per-session outbox
SESSION_QUEUE_SIZE = int(_get('SESSION_QUEUE_SIZE'))
SESSION_OVERFLOW_POLICY = _get('SESSION_OVERFLOW_POLICY')

# Store retries
SEND_MAX_RETRIES = int(_get('SEND_MAX_RETRIES'))
SEND_BACKOFF_SECONDS = float(_get('SEND_BACKOFF_SECONDS'))
REACTION_MAX_RETRIES = int(_get('REACTION_MAX_RETRIES'))

# Chat safety
MAX_MESSAGE_LENGTH = int(_get('MAX_MESSAGE_LENGTH'))
RATE_LIMIT_MESSAGES = int(_get('RATE_LIMIT_MESSAGES'))
RATE_LIMIT_WINDOW_SECONDS = int(_get('RATE_LIMIT_WINDOW_SECONDS'))
HISTORY_PAGE_SIZE = int(_get('HISTORY_PAGE_SIZE'))

# Keys copied onto flask_app.config when no override object is given
CONFIG_KEYS = [
    'SQLALCHEMY_DATABASE_URI', 'SQLALCHEMY_TRACK_MODIFICATIONS', 'SECRET_KEY',
    'SOCKETIO_ASYNC_MODE', 'CORS_ALLOWED_ORIGINS', 'LOG_LEVEL',
    'SIGNAL_WINDOW_SECONDS', 'SIGNAL_RETENTION_SECONDS', 'SIGNAL_MAX_PAYLOAD_BYTES',
    'SESSION_QUEUE_SIZE', 'SESSION_OVERFLOW_POLICY',
    'SEND_MAX_RETRIES', 'SEND_BACKOFF_SECONDS', 'REACTION_MAX_RETRIES',
    'MAX_MESSAGE_LENGTH', 'RATE_LIMIT_MESSAGES', 'RATE_LIMIT_WINDOW_SECONDS',
    'HISTORY_PAGE_SIZE',
]
