"""
Companion server configuration.

Configuration Sources (priority order):
1. Command line arguments (applied by main)
2. Environment variables prefixed with WEBTTY_SERVER_
3. .env file
4. Default values
"""

import base64
import os
import signal
from typing import Any, Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WEBTTY_SERVER_", env_file=".env",
                                      env_file_encoding="utf-8", extra="ignore")

    # Listener
    port: int = 7681
    interface: str = "0.0.0.0"
    base_path: str = ""                      # e.g. "/terminal", no trailing slash

    # Access control
    credential: Optional[str] = None         # user:password, enables basic auth and tokens
    check_origin: bool = False
    once: bool = False                       # serve one client, then exit
    max_clients: int = 0                     # 0 means unlimited
    readonly: bool = False

    # Session
    command: List[str] = Field(default_factory=lambda: [os.environ.get("SHELL", "/bin/sh")])
    close_signal: str = "SIGHUP"             # sent to the command when its client leaves
    reconnect: int = 10                      # seconds, sent to clients as a reconnect hint
    preferences: Dict[str, Any] = Field(default_factory=dict)
    ack_window: int = 1 << 20                # unacknowledged output bytes before reading stops, 0 disables

    log_level: str = "INFO"
    log_file: Optional[str] = "webtty-server.log"

    @field_validator("base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        value = value.rstrip("/")
        if value and not value.startswith("/"):
            value = "/" + value
        return value

    @field_validator("close_signal")
    @classmethod
    def _check_signal(cls, value: str) -> str:
        name = value.upper()
        if not name.startswith("SIG"):
            name = "SIG" + name
        if not hasattr(signal.Signals, name):
            raise ValueError(f"unknown signal: {value}")
        return name

    @field_validator("command")
    @classmethod
    def _check_command(cls, value: List[str]) -> List[str]:
        if not value or not value[0]:
            raise ValueError("a command is required")
        return value

    @property
    def signal_code(self) -> signal.Signals:
        return signal.Signals[self.close_signal]

    @property
    def token(self) -> str:
        """Token handed out by the token endpoint; empty when no credential is configured."""
        if not self.credential:
            return ""
        return base64.b64encode(self.credential.encode("utf-8")).decode("ascii")
