"""Configuration for the sync engine and scheduler."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import voluptuous as vol

from .const import (
    CONF_CALLBACK_NAME,
    CONF_PENDING_PATH,
    CONF_REQUEST_TIMEOUT,
    CONF_SCRIPT_ID,
    CONF_SCRIPT_URL,
    CONF_SYNC_INTERVAL,
    CONF_TABLES,
    DEFAULT_PENDING_PATH,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_SYNC_INTERVAL,
    JSONP_CALLBACK,
    MIN_SYNC_INTERVAL,
    SCRIPT_URL_TEMPLATE,
    TABLES,
)
from .errors import ConfigurationError

_NON_EMPTY = vol.All(str, vol.Strip, vol.Length(min=1))

OPTIONS_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_SCRIPT_URL): vol.Any(None, vol.All(str, vol.Strip)),
        vol.Optional(CONF_SCRIPT_ID): vol.Any(None, vol.All(str, vol.Strip)),
        vol.Optional(CONF_SYNC_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(
            vol.Coerce(int), vol.Clamp(min=MIN_SYNC_INTERVAL)
        ),
        vol.Optional(CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT): vol.All(
            vol.Coerce(float), vol.Range(min=0, min_included=False)
        ),
        vol.Optional(CONF_CALLBACK_NAME, default=JSONP_CALLBACK): vol.All(
            _NON_EMPTY, vol.Match(r"^[A-Za-z_$][\w$]*$")
        ),
        vol.Optional(CONF_PENDING_PATH, default=DEFAULT_PENDING_PATH): _NON_EMPTY,
        vol.Optional(CONF_TABLES, default=list(TABLES)): vol.All([_NON_EMPTY], vol.Length(min=1)),
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class SyncConfig:
    """Settings required to talk to the remote and run the scheduler."""

    script_url: str = ""
    interval: int = DEFAULT_SYNC_INTERVAL
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    callback_name: str = JSONP_CALLBACK
    pending_path: str = DEFAULT_PENDING_PATH
    tables: tuple[str, ...] = TABLES

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> SyncConfig:
        try:
            opts = OPTIONS_SCHEMA(dict(options))
        except vol.Invalid as err:
            raise ConfigurationError(f"invalid sync options: {err}", reason="invalid_options") from err
        script_url = opts.get(CONF_SCRIPT_URL) or ""
        script_id = opts.get(CONF_SCRIPT_ID) or ""
        if not script_url and script_id:
            script_url = SCRIPT_URL_TEMPLATE.format(script_id=script_id)
        return cls(
            script_url=script_url,
            interval=opts[CONF_SYNC_INTERVAL],
            request_timeout=opts[CONF_REQUEST_TIMEOUT],
            callback_name=opts[CONF_CALLBACK_NAME],
            pending_path=opts[CONF_PENDING_PATH],
            tables=tuple(dict.fromkeys(opts[CONF_TABLES])),
        )

    @property
    def ready(self) -> bool:
        return bool(self.script_url)

    def as_dict(self) -> dict[str, Any]:
        return {
            CONF_SCRIPT_URL: self.script_url,
            CONF_SYNC_INTERVAL: self.interval,
            CONF_REQUEST_TIMEOUT: self.request_timeout,
            CONF_CALLBACK_NAME: self.callback_name,
            CONF_PENDING_PATH: self.pending_path,
            CONF_TABLES: list(self.tables),
        }


__all__ = ["OPTIONS_SCHEMA", "SyncConfig"]
