# MIT License
#
# Copyright (c) 2025 Timothy J Fontaine
#
# Permission is hereby granted, free of charge, to any person obtaining a copy
# of this software and associated documentation files (the "Software"), to deal
# in the Software without restriction, including without limitation the rights
# to use, copy, modify, merge, publish, distribute, sublicense, and/or sell
# copies of the Software, and to permit persons to whom the Software is
# furnished to do so, subject to the following conditions:
#
# The above copyright notice and this permission notice shall be included in all
# copies or substantial portions of the Software.
#
# THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR
# IMPLIED, INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY,
# FITNESS FOR A PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE
# AUTHORS OR COPYRIGHT HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER
# LIABILITY, WHETHER IN AN ACTION OF CONTRACT, TORT OR OTHERWISE, ARISING FROM,
# OUT OF OR IN CONNECTION WITH THE SOFTWARE OR THE USE OR OTHER DEALINGS IN THE
# SOFTWARE.

import json
import logging
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, CliSuppress, SettingsConfigDict

VALID_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
VALID_LOG_FORMATS = ["rich", "json"]


class ServerConfig(BaseSettings):
    """
    Immutable configuration snapshot for a Bulwark server, loaded from
    environment variables, a ``.env`` file, keyword arguments or a YAML file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
        arbitrary_types_allowed=True,
        cli_prog_name="bulwark",
    )

    port: int = Field(default=8080, alias="PORT")
    host: str = Field(default="0.0.0.0", alias="HOST")

    sessions_enabled: bool = Field(default=True, alias="SESSIONS_ENABLED")
    session_secret: Optional[str] = Field(default=None, alias="SESSION_SECRET")
    session_name: str = Field(default="bulwark.sid", alias="SESSION_NAME")
    session_collection: str = Field(default="sessions", alias="SESSION_COLLECTION")
    database_connection_string: str = Field(
        default="redis://localhost:6379/0", alias="DATABASE_CONNECTION_STRING"
    )
    database_replica_set: Optional[str] = Field(
        default=None,
        alias="DATABASE_REPLICA_SET",
        description="Sentinel master name; when set the connection string "
        "lists sentinel hosts.",
    )

    content_security: bool = Field(default=True, alias="CONTENT_SECURITY")
    content_security_policy: Dict[str, List[str]] = Field(
        default_factory=dict, alias="CONTENT_SECURITY_POLICY"
    )

    # Set programmatically by the embedding application, never from env or argv
    logger: CliSuppress[
        Optional[Union[logging.Logger, logging.LoggerAdapter]]
    ] = Field(
        default=None, exclude=True
    )
    logger_context: str = Field(default="HTTP", alias="LOGGER_CONTEXT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="rich", alias="LOG_FORMAT")

    template_layout_dir: Optional[str] = Field(
        default=None, alias="TEMPLATE_LAYOUT_DIR"
    )
    template_dir: Optional[str] = Field(default=None, alias="TEMPLATE_DIR")

    @field_validator("content_security_policy", mode="before")
    def parse_content_security_policy(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                raise ValueError(
                    "content_security_policy must be a valid JSON string or a mapping"
                )
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v):
        if v.upper() not in VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of {VALID_LOG_LEVELS}")
        return v.upper()

    @field_validator("log_format")
    def validate_log_format(cls, v):
        if v.lower() not in VALID_LOG_FORMATS:
            raise ValueError(f"log_format must be one of {VALID_LOG_FORMATS}")
        return v.lower()

    @model_validator(mode="after")
    def require_session_secret(self):
        if self.sessions_enabled and not self.session_secret:
            raise ValueError("session_secret is required when sessions are enabled")
        return self

    @classmethod
    def from_yaml(cls, path: str, **overrides: Any) -> "ServerConfig":
        """Load configuration from a YAML mapping, with keyword overrides."""
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        data.update(overrides)
        return cls(**data)
