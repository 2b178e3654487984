"""Public API for dropbox_appender package."""

from .cli import (
    AppenderError,
    Config,
    DropboxClient,
    append_content,
    format_entry,
    main,
    resolve_path,
    resolve_token,
)

__all__ = [
    "AppenderError",
    "Config",
    "DropboxClient",
    "append_content",
    "format_entry",
    "main",
    "resolve_path",
    "resolve_token",
]
