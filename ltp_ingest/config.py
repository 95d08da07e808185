"""
Configuration loading: YAML file, .env, environment overrides.
"""

import copy
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from loguru import logger

DEFAULT_CONFIG = {
    'database': {
        'url': 'ltp_ingest.db',
    },
    'broker': {
        'api_key': None,
        'client_code': None,
        'api_root': 'https://apiconnect.angelone.in',
        'stream_url': 'wss://smartapisocket.angelone.in/smart-stream',
        'timeout': 10,
    },
    'ingest': {
        'transport': 'polling',
        'poll_interval': 7.0,
        'batch_size': 50,
        'batch_delay': 1.0,
        'flush_interval': 2.0,
        'heartbeat_interval': 10.0,
        'liveness_window': 60.0,
        'reconnect_base_delay': 2.0,
        'max_reconnect_attempts': 10,
        'buffer_capacity': 10000,
        'native_upsert': False,
    },
    'retention': {
        'enabled': True,
        'days': 10,
        'interval': 3600,
    },
    'logging': {
        'level': 'INFO',
    },
}


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def default_config() -> dict:
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(config_path: Optional[str] = "config.yaml") -> dict:
    """Load configuration from YAML file, then apply environment overrides"""
    # Load .env file
    load_dotenv()

    config = default_config()

    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            logger.warning(f"Config file not found: {config_path}, using defaults")
        else:
            with open(config_file) as f:
                config = _deep_merge(config, yaml.safe_load(f) or {})

    return apply_env_overrides(config)


def apply_env_overrides(config: dict) -> dict:
    """Apply environment variable overrides to config"""
    config.setdefault('database', {})
    config.setdefault('broker', {})
    config.setdefault('ingest', {})
    config.setdefault('logging', {})

    if os.getenv('DATABASE_URL'):
        config['database']['url'] = os.getenv('DATABASE_URL')

    # Broker credentials only ever come from the environment
    for env, key in (
        ('ANGEL_API_KEY', 'api_key'),
        ('ANGEL_CLIENT_CODE', 'client_code'),
        ('ANGEL_API_ROOT', 'api_root'),
        ('ANGEL_ACCESS_TOKEN', 'access_token'),
        ('ANGEL_FEED_TOKEN', 'feed_token'),
    ):
        if os.getenv(env):
            config['broker'][key] = os.getenv(env)

    if os.getenv('INGEST_TRANSPORT'):
        config['ingest']['transport'] = os.getenv('INGEST_TRANSPORT').lower()

    if os.getenv('LTP_BATCH_SIZE'):
        config['ingest']['batch_size'] = int(os.getenv('LTP_BATCH_SIZE'))

    if os.getenv('LTP_BATCH_DELAY_MS'):
        config['ingest']['batch_delay'] = int(os.getenv('LTP_BATCH_DELAY_MS')) / 1000

    if os.getenv('LTP_POLL_INTERVAL_MS'):
        config['ingest']['poll_interval'] = int(os.getenv('LTP_POLL_INTERVAL_MS')) / 1000

    if os.getenv('LOG_LEVEL'):
        config['logging']['level'] = os.getenv('LOG_LEVEL').upper()

    return config
