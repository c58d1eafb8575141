import os
import configparser
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from attachment_relay.api import create_app
from attachment_relay.drive import DriveUploader, FileTokenProvider, StaticTokenProvider, TokenProvider
from attachment_relay.logger import configure_logging
from attachment_relay.notifier import LineNotifier, LoggingNotifier
from attachment_relay.prometheus import UploadMetrics
from attachment_relay.relay import AttachmentRelay
from attachment_relay.sources import LineContentSource
from attachment_relay.strategy import MIB

configure_logging(os.getenv("RELAY_LOG_LEVEL", "INFO"))


TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"Not a boolean setting: {value!r}")


def load_settings() -> dict[str, object]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with RELAY_):
      RELAY_CONFIG - Path to config.ini file (default: config.ini)
      RELAY_LOG_LEVEL - Logging level (default: INFO)
      RELAY_HOST - Server host (default: 0.0.0.0)
      RELAY_PORT - Server port (default: 8000)
      RELAY_API_TOKEN - API authentication token
      RELAY_DRIVE_FOLDER_ID - Destination Google Drive folder (default: root)
      RELAY_DRIVE_ACCESS_TOKEN - OAuth access token for Google Drive
      RELAY_DRIVE_TOKEN_FILE - File holding the Drive access token, re-read whenever it changes
      RELAY_LINE_CHANNEL_ACCESS_TOKEN - LINE channel access token
      RELAY_MAX_BUFFER_BYTES - Largest attachment accepted (default: 50 MiB)
      RELAY_MULTIPART_THRESHOLD - Below this size one multipart request is used (default: 5 MiB)
      RELAY_CHUNKED_THRESHOLD - Above this size the upload is chunked (default: 25 MiB)
      RELAY_CHUNK_SIZE - Chunk size for chunked uploads (default: 8 MiB)
      RELAY_MAX_ATTEMPTS - Upload attempts per queue entry (default: 3)
      RELAY_INTER_ITEM_DELAY - Pause between queue entries in seconds (default: 1)
      RELAY_RETENTION_SECONDS - How long finished entries stay visible (default: 3600)
      RELAY_BUFFER_TIMEOUT - Deadline to buffer one attachment in seconds (default: 60)
      RELAY_BATCH_DEBOUNCE_SECONDS - Batch debounce window in seconds (default: 30)
      RELAY_BATCH_ENABLED - Group attachments per owner before uploading (default: True)

    Config file sections/keys:
      [server] host, port, api_token
      [drive] folder_id, access_token, token_file
      [line] channel_access_token
      [upload] max_buffer_bytes, multipart_threshold, chunked_threshold, chunk_size,
               max_attempts, inter_item_delay, retention_seconds, buffer_timeout
      [batch] debounce_seconds, enabled

    Google OAuth access tokens expire after about an hour. ``access_token`` is
    used as-is for the life of the process, so long-running deployments should
    point ``token_file`` at a file kept fresh by an external refresher.
    """
    config_path = Path(os.getenv("RELAY_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def setting(section: str, option: str, env_name: str, default=None, cast=str):
        if parser.has_option(section, option):
            raw = parser.get(section, option)
        else:
            raw = os.getenv(env_name)
        if raw is None:
            return default
        return cast(raw)

    settings = {
        "http_host": setting("server", "host", "RELAY_HOST", "0.0.0.0"),
        "http_port": setting("server", "port", "RELAY_PORT", 8000, int),
        "api_token": setting("server", "api_token", "RELAY_API_TOKEN"),
        "drive_folder_id": setting("drive", "folder_id", "RELAY_DRIVE_FOLDER_ID", "root"),
        "drive_access_token": setting("drive", "access_token", "RELAY_DRIVE_ACCESS_TOKEN"),
        "drive_token_file": setting("drive", "token_file", "RELAY_DRIVE_TOKEN_FILE"),
        "line_channel_access_token": setting("line", "channel_access_token", "RELAY_LINE_CHANNEL_ACCESS_TOKEN"),
        "max_buffer_bytes": setting("upload", "max_buffer_bytes", "RELAY_MAX_BUFFER_BYTES", 50 * MIB, int),
        "multipart_threshold": setting("upload", "multipart_threshold", "RELAY_MULTIPART_THRESHOLD", 5 * MIB, int),
        "chunked_threshold": setting("upload", "chunked_threshold", "RELAY_CHUNKED_THRESHOLD", 25 * MIB, int),
        "chunk_size": setting("upload", "chunk_size", "RELAY_CHUNK_SIZE", 8 * MIB, int),
        "max_attempts": setting("upload", "max_attempts", "RELAY_MAX_ATTEMPTS", 3, int),
        "inter_item_delay": setting("upload", "inter_item_delay", "RELAY_INTER_ITEM_DELAY", 1.0, float),
        "retention_seconds": setting("upload", "retention_seconds", "RELAY_RETENTION_SECONDS", 3600, int),
        "buffer_timeout": setting("upload", "buffer_timeout", "RELAY_BUFFER_TIMEOUT", 60.0, float),
        "debounce_seconds": setting("batch", "debounce_seconds", "RELAY_BATCH_DEBOUNCE_SECONDS", 30.0, float),
        "batch_enabled": setting("batch", "enabled", "RELAY_BATCH_ENABLED", True, parse_bool),
    }

    for key in ("api_token", "drive_access_token", "drive_token_file", "line_channel_access_token"):
        value = settings.get(key)
        if isinstance(value, str):
            value = value.strip() or None
        settings[key] = value
    return settings


def token_provider(settings: dict[str, object]) -> TokenProvider:
    """Prefer the refreshable token file over a fixed access token."""
    token_file = settings.get("drive_token_file")
    if token_file:
        return FileTokenProvider(str(token_file))
    return StaticTokenProvider(str(settings.get("drive_access_token") or ""))


def build_relay(settings: dict[str, object]) -> AttachmentRelay:
    """Assemble the relay and its collaborators from ``settings``."""
    metrics = UploadMetrics()
    uploader = DriveUploader(
        token_provider(settings),
        folder_id=str(settings.get("drive_folder_id") or "root"),
        multipart_threshold=int(settings["multipart_threshold"]),
        chunked_threshold=int(settings["chunked_threshold"]),
        chunk_size=int(settings["chunk_size"]),
        max_file_size=int(settings["max_buffer_bytes"]),
        metrics=metrics,
    )
    line_token = settings.get("line_channel_access_token") or ""
    notifier = LineNotifier(line_token) if line_token else LoggingNotifier()
    return AttachmentRelay(
        uploader=uploader,
        source=LineContentSource(line_token),
        notifier=notifier,
        batch_enabled=bool(settings.get("batch_enabled")),
        debounce_seconds=float(settings["debounce_seconds"]),
        max_buffer_bytes=int(settings["max_buffer_bytes"]),
        buffer_timeout=float(settings["buffer_timeout"]),
        max_attempts=int(settings["max_attempts"]),
        inter_item_delay=float(settings["inter_item_delay"]),
        retention_seconds=float(settings["retention_seconds"]),
        metrics=metrics,
    )


if __name__ == "__main__":
    settings = load_settings()
    relay = build_relay(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await relay.start()
        yield
        await relay.stop()

    app = create_app(relay, api_token=settings.get("api_token"), lifespan=lifespan)

    uvicorn.run(app, host=str(settings["http_host"]), port=int(settings["http_port"]))
