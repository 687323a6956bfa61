from __future__ import annotations
import os
from pathlib import Path
from typing import Dict

import yaml

# ---- Env ----
# Full URL of the backend API, defaulting to the docker-compose service name.
BACKEND_URL = os.getenv('BACKEND_URL', 'http://api:7070')
# Token used for privileged requests to the backend.
ADMIN_TOKEN = os.getenv('ADMIN_TOKEN', 'change-me')
TWITCH_CLIENT_ID_ENV = os.getenv('TWITCH_CLIENT_ID')
TWITCH_CLIENT_SECRET_ENV = os.getenv('TWITCH_CLIENT_SECRET')
BOT_USER_ID_ENV = os.getenv('BOT_USER_ID') or os.getenv('TWITCH_BOT_USER_ID')
SUPER_USER_ENV = os.getenv('SUPER_USER')
MESSAGES_PATH = Path(os.getenv('BOT_MESSAGES_PATH', '/bot/messages.yml'))
LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

DEFAULT_PREFIX = '!'

# Seconds between two outbound chat messages, shared by every channel.
SEND_DELAY = 1.0
OUTBOUND_QUEUE_SIZE = 1000

PUBSUB_URL = 'wss://pubsub-edge.twitch.tv'
PUBSUB_RECONNECT_DELAY = 5.0
PUBSUB_HEARTBEAT_INTERVAL = 60.0

TOKEN_RETRY_DELAY = 60.0
TOKEN_EXPIRY_MARGIN = 60.0

HITMAN_DELAY = 15.0
HITMAN_TIMEOUT = 600

DEFAULT_MESSAGES = {
    'bot_started': 'Bot started',
    'permission_denied': 'you do not have the permissions to use this command!',
    'execution_error': 'Execution error: {error}',
    'store_error': 'error: {error}',
    'missing_arguments': 'missing arguments',
    'missing_command': 'missing command',
    'missing_channel': 'missing channel',
    'command_added': 'successfully added command "{trigger}"',
    'command_exists': 'command "{trigger}" already exists',
    'command_removed': 'successfully removed command "{trigger}"',
    'command_not_found': 'command "{trigger}" not found',
    'command_not_specified': 'command not specified',
    'no_such_command': 'no such command',
    'builtin_command': 'built-in command',
    'command_list': 'Custom commands: {commands}',
    'command_list_empty': 'no custom commands',
    'redeem_added': 'successfully added redeem "{title}"',
    'redeem_exists': 'redeem "{title}" already exists',
    'redeem_removed': 'successfully removed redeem "{title}"',
    'redeem_not_found': 'redeem "{title}" not found',
    'redeem_usage': 'usage: addredeem <reward title> = <action>',
}


def load_messages(path: Path) -> Dict[str, str]:
    cfg: Dict[str, str] = DEFAULT_MESSAGES.copy()
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
            cfg.update(data)
    except FileNotFoundError:
        pass
    return cfg
