"""
Client configuration.

Every bag here is resolved once at startup and frozen for the lifetime of
the session. Field aliases keep the camelCase names used by the server's
preference documents, so the same models validate both.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from webtty.comms_core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class FlowControl(BaseModel):
    """
    Thresholds for the inbound flow-control window, in bytes.

    - limit: largest credit a single output frame can take
    - high_water: pending bytes above which acks are withheld
    - low_water: pending bytes at or below which acks resume

    All three are byte counts. ttyd's own client preferences of the same
    names use ``limit`` as a write batch size in bytes and count
    ``highWater``/``lowWater`` in pending batches (10 and 4), so values
    copied from there must be converted.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    limit: int = 100_000
    high_water: int = Field(default=100_000, alias="highWater")
    low_water: int = Field(default=40_000, alias="lowWater")

    @model_validator(mode="after")
    def _check_thresholds(self) -> "FlowControl":
        if self.limit <= 0:
            raise ConfigurationError(f"flow control limit must be positive, got {self.limit}")
        if self.low_water < 0:
            raise ConfigurationError(f"flow control lowWater must not be negative, got {self.low_water}")
        if self.high_water <= self.low_water:
            raise ConfigurationError(
                f"flow control highWater ({self.high_water}) must be greater than lowWater ({self.low_water})")
        if self.high_water > self.limit:
            raise ConfigurationError(
                f"flow control highWater ({self.high_water}) must not exceed limit ({self.limit})")
        return self


class ClientOptions(BaseModel):
    """Feature toggles for the terminal surface."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    renderer_type: Literal["dom", "canvas", "webgl"] = Field(default="webgl", alias="rendererType")
    disable_leave_alert: bool = Field(default=False, alias="disableLeaveAlert")
    disable_resize_overlay: bool = Field(default=False, alias="disableResizeOverlay")
    enable_zmodem: bool = Field(default=False, alias="enableZmodem")
    enable_trzsz: bool = Field(default=False, alias="enableTrzsz")
    enable_sixel: bool = Field(default=False, alias="enableSixel")
    close_on_disconnect: bool = Field(default=False, alias="closeOnDisconnect")
    is_windows: bool = Field(default=False, alias="isWindows")
    unicode_version: Literal["6", "11"] = Field(default="11", alias="unicodeVersion")


class Theme(BaseModel):
    """Terminal colour palette. Defaults to a dark theme."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    foreground: str = "#b0afaf"
    background: str = "#1f1f1f"
    cursor: str = "#98b1ff"
    selection_background: str = Field(default="#3252b8", alias="selectionBackground")
    black: str = "#333333"
    red: str = "#f76769"
    green: str = "#17b877"
    yellow: str = "#ffa23e"
    blue: str = "#7895ff"
    magenta: str = "#a87ffb"
    cyan: str = "#25a6e9"
    white: str = "#b0afaf"
    bright_black: str = Field(default="#555555", alias="brightBlack")
    bright_red: str = Field(default="#fc8f8e", alias="brightRed")
    bright_green: str = Field(default="#66ce98", alias="brightGreen")
    bright_yellow: str = Field(default="#ffc26e", alias="brightYellow")
    bright_blue: str = Field(default="#98b1ff", alias="brightBlue")
    bright_magenta: str = Field(default="#c8aaff", alias="brightMagenta")
    bright_cyan: str = Field(default="#71c2ee", alias="brightCyan")
    bright_white: str = Field(default="#fdfcfc", alias="brightWhite")

    def ansi_palette(self) -> list[str]:
        """The 16 ANSI colours in palette index order."""
        return [
            self.black, self.red, self.green, self.yellow,
            self.blue, self.magenta, self.cyan, self.white,
            self.bright_black, self.bright_red, self.bright_green, self.bright_yellow,
            self.bright_blue, self.bright_magenta, self.bright_cyan, self.bright_white,
        ]


class TerminalOptions(BaseModel):
    """Options handed to the emulator when it is created."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    font_size: int = Field(default=14, gt=0, alias="fontSize")
    line_height: float = Field(default=1.0, gt=0, alias="lineHeight")
    font_family: str = Field(default="Google Sans Code,Liberation Mono,Menlo,Courier,monospace",
                             alias="fontFamily")
    theme: Theme = Theme()
    allow_proposed_api: bool = Field(default=True, alias="allowProposedApi")


class ClientSettings(BaseSettings):
    """
    Startup settings for the command line client.

    Configuration Sources (priority order):
    1. Command line arguments (applied by the caller)
    2. Environment variables prefixed with WEBTTY_
    3. .env file
    4. Default values
    """
    model_config = SettingsConfigDict(env_prefix="WEBTTY_", env_file=".env",
                                      env_file_encoding="utf-8", extra="ignore")

    url: Optional[str] = None
    credential: Optional[str] = None          # user:password for a protected token endpoint
    log_level: str = "INFO"
    log_file: Optional[str] = "webtty.log"
    resize_window: float = 0.05               # seconds resize events are coalesced for
    drain_timeout: float = 5.0                # seconds allowed to flush writes on close
    handshake_timeout: float = 10.0
    flow_limit: int = 100_000
    flow_high_water: int = 100_000
    flow_low_water: int = 40_000
    disable_leave_alert: bool = False
    disable_resize_overlay: bool = False
    close_on_disconnect: bool = False
    is_windows: bool = False

    def flow_control(self) -> FlowControl:
        return FlowControl(limit=self.flow_limit, high_water=self.flow_high_water,
                           low_water=self.flow_low_water)

    def client_options(self) -> ClientOptions:
        return ClientOptions(
            disable_leave_alert=self.disable_leave_alert,
            disable_resize_overlay=self.disable_resize_overlay,
            close_on_disconnect=self.close_on_disconnect,
            is_windows=self.is_windows,
        )
