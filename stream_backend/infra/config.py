"""
Global Configuration Management

Agent Stream configuration: output defaults, engine selection, log paths and
process lifetime options. Precedence is CLI flags > settings file > defaults.
"""

import os
import sys
import json
from typing import Dict, Any, Optional


class Config:
    """
    Global Configuration Class
    """
    HOME_DIR = os.path.join(os.path.expanduser("~"), ".agent_stream")

    # settings.json path
    _settings_path = os.path.join(HOME_DIR, "settings.json")

    _data: Dict[str, Any] = {}

    # Path configuration
    LOG_DIR = os.path.join(HOME_DIR, "logs")

    # Log File Path
    LOG_PATH = os.path.join(LOG_DIR, "cli.log")
    DEBUG = False

    # Output / lifetime defaults
    OUTPUT_FORMAT = "text"
    ONESHOT = False
    SIGNAL_ONLY_EXIT = False
    KEEPALIVE_INTERVAL = 60.0

    # Engine factory, "module:attr"
    ENGINE = "stream_backend.engine.scripted:ScriptedHost"

    @classmethod
    def load_settings(cls, settings_path: Optional[str] = None):
        """Load settings.json"""
        path = settings_path or cls._settings_path
        try:
            if os.path.exists(path):
                with open(path, 'r', encoding='utf-8') as f:
                    cls._data = json.load(f)
        except Exception as e:
            # stdout belongs to the protocol
            print(f"[Config] Error loading settings: {e}", file=sys.stderr)
            cls._data = {}

        cls.OUTPUT_FORMAT = cls._data.get("outputFormat", cls.OUTPUT_FORMAT)
        cls.ONESHOT = bool(cls._data.get("oneshot", cls.ONESHOT))
        cls.SIGNAL_ONLY_EXIT = bool(cls._data.get("signalOnlyExit", cls.SIGNAL_ONLY_EXIT))
        cls.ENGINE = cls._data.get("engine", cls.ENGINE)
        cls.DEBUG = bool(cls._data.get("debug", cls.DEBUG))

        interval = cls._data.get("keepAliveInterval")
        if isinstance(interval, (int, float)) and interval > 0:
            cls.KEEPALIVE_INTERVAL = float(interval)

    @classmethod
    def _apply_env_overrides(cls):
        """Environment variable overrides"""
        home = os.environ.get("AGENT_STREAM_HOME")
        if home:
            cls.HOME_DIR = home
            cls.LOG_DIR = os.path.join(home, "logs")
            cls.LOG_PATH = os.path.join(cls.LOG_DIR, "cli.log")
        if os.environ.get("AGENT_STREAM_LOG_PATH"):
            cls.LOG_PATH = os.environ["AGENT_STREAM_LOG_PATH"]
            cls.LOG_DIR = os.path.dirname(cls.LOG_PATH) or "."
        if os.environ.get("AGENT_STREAM_ENGINE"):
            cls.ENGINE = os.environ["AGENT_STREAM_ENGINE"]
        if os.environ.get("AGENT_STREAM_DEBUG", "").lower() in ("1", "true", "yes"):
            cls.DEBUG = True

    @classmethod
    def initialize(cls, settings_path: Optional[str] = None):
        """Initialize configuration"""
        cls._apply_env_overrides()
        if not settings_path:
            settings_path = os.path.join(cls.HOME_DIR, "settings.json")
        cls._settings_path = settings_path
        cls.load_settings(settings_path)
        # Env wins over the settings file
        cls._apply_env_overrides()
        cls.ensure_dirs()

    @classmethod
    def ensure_dirs(cls):
        try:
            os.makedirs(cls.LOG_DIR, exist_ok=True)
        except OSError:
            # Read-only home; Logger already tolerates a missing file
            pass

    @classmethod
    def get(cls, key: str, default: Any = None) -> Any:
        return cls._data.get(key, default)
