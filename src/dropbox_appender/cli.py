#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Dropbox Appender – v0.3.0
"""

# Appends a short text entry to today's journal note in Dropbox. The note lives at
# /Notes/Journal/YYYY/MM/NoteYYYYMMDD.md and is created by the first append of the day.
#
# Dropbox has no "append" primitive, so every run is a download, a local concatenation
# and an upload with mode=overwrite. Two shells appending at the same moment will race
# and the last upload wins; the tool is meant for a single user typing one note at a time.

###############################################################################
# Authentication
#
# 1. Direct token:
#    - If DROPBOX_TOKEN is set it is used as the bearer token as-is. Nothing else is
#      consulted. Useful for legacy long-lived tokens generated in the app console.
#
# 2. Refresh token (recommended):
#    - `dropbox-appender auth` prints the authorization URL for the app key, asks for
#      the code Dropbox shows after approval and exchanges it for an offline refresh
#      token, which is stored in ~/.config/dropbox-appender/config.json (mode 0600).
#    - Every later run trades the refresh token for a short-lived access token. The
#      access token is never cached; a run is a single command.
#    - DROPBOX_APP_KEY, DROPBOX_APP_SECRET and DROPBOX_REFRESH_TOKEN override the
#      matching fields of the config file when set.
#
# 3. A refresh failure is fatal. The user is told to re-run `auth`; there is no
#    fallback to another credential source.
###############################################################################


from __future__ import annotations
import argparse
import json
import os
import sys
import tempfile
import requests
from dataclasses import dataclass, asdict
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Mapping, NamedTuple, Sequence, TextIO
from urllib.parse import urlencode

try:
    from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
except ImportError:
    print("Error: 'zoneinfo' module not found. Use Python 3.9+ or install 'tzdata'.", file=sys.stderr)
    sys.exit(1)

# ── Constants ────────────────────────────────────────────────────────────────
VERSION              = "0.3.0"
PROG_NAME            = "dropbox-appender"
CONTENT_BASE_URL     = "https://content.dropboxapi.com"
AUTHORIZE_URL        = "https://www.dropbox.com/oauth2/authorize"
DEFAULT_TOKEN_URL    = "https://api.dropboxapi.com/oauth2/token"
API_ARG_HEADER       = "Dropbox-API-Arg"
JOURNAL_ROOT         = "/Notes/Journal"
TIME_FMT             = "%H:%M:%S"
TOKEN_ENV_VAR        = "DROPBOX_TOKEN"
APP_KEY_ENV_VAR      = "DROPBOX_APP_KEY"
APP_SECRET_ENV_VAR   = "DROPBOX_APP_SECRET"
REFRESH_ENV_VAR      = "DROPBOX_REFRESH_TOKEN"
CONFIG_DIR_MODE      = 0o700
CONFIG_FILE_MODE     = 0o600

# ── Utilities ────────────────────────────────────────────────────────────────
def eprint(msg: str, verbose: bool=False):
    if verbose:
        print(msg, file=sys.stderr)

def progress_print(msg: str, quiet: bool=False):
    if not quiet:
        print(msg, file=sys.stderr)

def current_time(tz_name: Optional[str]=None) -> datetime:
    """Returns "now" in the given IANA timezone, or local time when none is given."""
    if not tz_name:
        return datetime.now().astimezone()
    try:
        return datetime.now(ZoneInfo(tz_name))
    except (ZoneInfoNotFoundError, ValueError, OSError):
        print(f"Warning: Timezone '{tz_name}' not found; falling back to local time.", file=sys.stderr)
        return datetime.now().astimezone()

# ── Errors ───────────────────────────────────────────────────────────────────
class AppenderError(Exception):
    pass

class ConfigError(AppenderError):
    pass

class InputError(AppenderError):
    pass

class LocalIOError(AppenderError):
    pass

class NetworkError(AppenderError):
    pass

class ApiError(AppenderError):
    def __init__(self, message: str, status: Optional[int]=None, body: str=""):
        super().__init__(message)
        self.status = status
        self.body = body

class AuthError(AppenderError):
    def __init__(self, message: str, status: Optional[int]=None, body: str=""):
        super().__init__(message)
        self.status = status
        self.body = body

# ── Entry Formatting ─────────────────────────────────────────────────────────
def resolve_path(now: datetime) -> str:
    return f"{JOURNAL_ROOT}/{now:%Y}/{now:%m}/Note{now:%Y%m%d}.md"

def format_entry(now: datetime, text: str, no_timestamp: bool=False) -> str:
    if no_timestamp:
        return text + "\n"
    return f"### {now.strftime(TIME_FMT)}\n{text}\n"

def append_content(existing: str, entry: str) -> str:
    # Assumes `existing` already ends with the newline of its own last entry.
    if existing == "":
        return entry
    return existing + "\n" + entry

# ── Input ────────────────────────────────────────────────────────────────────
def read_input(args: Sequence[str], stdin: Optional[TextIO]=None) -> str:
    """Arguments win over piped stdin; an interactive terminal is never read."""
    if args:
        return " ".join(args)

    stdin = stdin if stdin is not None else sys.stdin
    if stdin is not None and not stdin.isatty():
        try:
            text = stdin.read().strip()
        except (OSError, UnicodeDecodeError) as e:
            raise InputError(f"reading stdin: {e}") from e
        if text:
            return text

    raise InputError("no input provided: pass text as argument or via stdin")

# ── Config Store ─────────────────────────────────────────────────────────────
@dataclass
class Config:
    app_key: str = ""
    app_secret: str = ""
    refresh_token: str = ""

def default_config_path() -> Path:
    return Path.home() / ".config" / PROG_NAME / "config.json"

def load_config(path: Path, env: Optional[Mapping[str,str]]=None, verbose: bool=False) -> Config:
    """
    Reads the JSON config file, then layers the DROPBOX_* environment overrides on top.
    A missing or malformed file is normal first-run state and yields an empty Config.
    """
    env = os.environ if env is None else env
    cfg = Config()
    try:
        data = json.loads(Path(path).read_text())
        if isinstance(data, dict):
            for field in ("app_key", "app_secret", "refresh_token"):
                value = data.get(field)
                if isinstance(value, str):
                    setattr(cfg, field, value)
        else:
            eprint(f"[Config] {path} does not hold a JSON object; ignoring it", verbose)
    except FileNotFoundError:
        eprint(f"[Config] no config file at {path}", verbose)
    except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
        eprint(f"[Config] failed to read or parse {path}: {e}", verbose)

    overrides = {
        "app_key": APP_KEY_ENV_VAR,
        "app_secret": APP_SECRET_ENV_VAR,
        "refresh_token": REFRESH_ENV_VAR,
    }
    for field, var in overrides.items():
        value = env.get(var)
        if value:
            eprint(f"[Config] {field} taken from {var}", verbose)
            setattr(cfg, field, value)
    return cfg

def _make_private_dirs(directory: Path):
    # mkdir(parents=True) only applies `mode` to the leaf, so create each level ourselves.
    missing = []
    while not directory.exists():
        missing.append(directory)
        directory = directory.parent
    for d in reversed(missing):
        d.mkdir(mode=CONFIG_DIR_MODE, exist_ok=True)

def save_config(path: Path, cfg: Config, verbose: bool=False):
    """Writes the config as indented JSON via a temp file, readable by the owner only."""
    path = Path(path)
    tmp_name = None
    try:
        _make_private_dirs(path.parent)
        fd, tmp_name = tempfile.mkstemp(prefix=".config-", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w") as fh:
            json.dump(asdict(cfg), fh, indent=2)
        os.chmod(tmp_name, CONFIG_FILE_MODE)
        os.replace(tmp_name, path)
        tmp_name = None
        eprint(f"[Config] wrote {path}", verbose)
    except OSError as e:
        raise LocalIOError(f"saving config to {path}: {e}") from e
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)

# ── OAuth ────────────────────────────────────────────────────────────────────
@dataclass
class TokenResponse:
    access_token: str
    refresh_token: str = ""
    token_type: str = ""

def authorize_url(app_key: str) -> str:
    params = {
        "client_id": app_key,
        "response_type": "code",
        "token_access_type": "offline",
    }
    return f"{AUTHORIZE_URL}?{urlencode(params)}"

def _post_token(token_url: str, form: Dict[str,str], action: str, session=None, verbose: bool=False) -> TokenResponse:
    http = session or requests
    eprint(f"[OAuth] POST {token_url} grant_type={form['grant_type']}", verbose)
    try:
        resp = http.post(token_url, data=form)
    except requests.RequestException as e:
        raise NetworkError(f"token request: {e}") from e

    body = resp.text
    if resp.status_code != 200:
        raise AuthError(f"{action} failed (status {resp.status_code}): {body.strip()}",
                        status=resp.status_code, body=body)
    try:
        data = json.loads(body)
    except json.JSONDecodeError as e:
        raise AuthError(f"parsing response: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("access_token"), str):
        raise AuthError("parsing response: no access_token in token response")
    return TokenResponse(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token") or "",
        token_type=data.get("token_type") or "",
    )

def exchange_code(token_url: str, app_key: str, app_secret: str, code: str, session=None, verbose: bool=False) -> TokenResponse:
    form = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": app_key,
        "client_secret": app_secret,
    }
    return _post_token(token_url, form, "token exchange", session=session, verbose=verbose)

def refresh_access_token(token_url: str, app_key: str, app_secret: str, refresh_token: str, session=None, verbose: bool=False) -> str:
    # Dropbox does not rotate refresh tokens here, so only the access token is kept.
    form = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": app_key,
        "client_secret": app_secret,
    }
    return _post_token(token_url, form, "token refresh", session=session, verbose=verbose).access_token

# ── Dropbox Content API ──────────────────────────────────────────────────────
class DownloadResult(NamedTuple):
    content: str
    found: bool

class DropboxClient:
    def __init__(self, token: str, base_url: str=CONTENT_BASE_URL, session: Optional[requests.Session]=None, verbose: bool=False):
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.verbose = verbose
        self.session = session or requests.Session()

    def _log(self, msg: str):
        eprint(f"[API] {msg}", self.verbose)

    def _post(self, endpoint: str, api_arg: Dict[str,Any], data: Optional[bytes]=None, content_type: Optional[str]=None) -> requests.Response:
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.token}",
            API_ARG_HEADER: json.dumps(api_arg),
        }
        if content_type:
            headers["Content-Type"] = content_type
        self._log(f"POST {url} {API_ARG_HEADER}={headers[API_ARG_HEADER]}")
        try:
            resp = self.session.post(url, headers=headers, data=data)
        except requests.RequestException as e:
            raise NetworkError(f"{endpoint} request: {e}") from e
        self._log(f"{endpoint} -> {resp.status_code}")
        return resp

    def fetch(self, path: str) -> DownloadResult:
        """
        Downloads `path`. A 409 whose error_summary mentions not_found means the
        document does not exist yet; that is reported as found=False, not raised.
        """
        resp = self._post("2/files/download", {"path": path})

        if resp.status_code == 409:
            summary = ""
            try:
                payload = resp.json()
                if isinstance(payload, dict):
                    summary = str(payload.get("error_summary") or "")
            except ValueError:
                pass
            if "not_found" in summary:
                self._log(f"{path} does not exist yet")
                return DownloadResult("", False)
            raise ApiError(f"dropbox API error: {summary}", status=409, body=resp.text)

        if resp.status_code != 200:
            raise ApiError(f"dropbox API error (status {resp.status_code}): {resp.text}",
                           status=resp.status_code, body=resp.text)

        try:
            return DownloadResult(resp.content.decode("utf-8"), True)
        except UnicodeDecodeError as e:
            raise ApiError(f"{path} is not UTF-8 text: {e}", status=200) from e

    def download(self, path: str) -> str:
        return self.fetch(path).content

    def upload(self, path: str, content: str):
        # mute keeps Dropbox from notifying the user's devices about every append.
        api_arg = {"path": path, "mode": "overwrite", "mute": True}
        resp = self._post("2/files/upload", api_arg, data=content.encode("utf-8"),
                          content_type="application/octet-stream")
        if resp.status_code != 200:
            raise ApiError(f"dropbox API error (status {resp.status_code}): {resp.text}",
                           status=resp.status_code, body=resp.text)

# ── Token Resolution ─────────────────────────────────────────────────────────
def resolve_token(cfg: Config, env: Optional[Mapping[str,str]]=None, token_url: str=DEFAULT_TOKEN_URL,
                  session=None, verbose: bool=False) -> str:
    env = os.environ if env is None else env

    token = env.get(TOKEN_ENV_VAR)
    if token:
        eprint(f"Using bearer token from {TOKEN_ENV_VAR}", verbose)
        return token

    if cfg.app_key and cfg.app_secret and cfg.refresh_token:
        eprint("Refreshing access token...", verbose)
        try:
            return refresh_access_token(token_url, cfg.app_key, cfg.app_secret, cfg.refresh_token,
                                        session=session, verbose=verbose)
        except AppenderError as e:
            raise AuthError(f"refresh token invalid, run: {PROG_NAME} auth\n  ({e})") from e

    raise AuthError(f"no authentication configured, run: {PROG_NAME} auth")

# ── Command Handlers ────────────────────────────────────────────────────────
def append_entry(client: DropboxClient, text: str, now: datetime, no_timestamp: bool=False, quiet: bool=False) -> str:
    """Appends one entry to the note for `now` and returns the note's Dropbox path."""
    path = resolve_path(now)
    entry = format_entry(now, text, no_timestamp)

    progress_print(f"Downloading {path}...", quiet)
    existing = client.fetch(path)
    if existing.found:
        eprint(f"Appending to existing note ({len(existing.content)} chars)", client.verbose)
    else:
        eprint("Starting a new note for today", client.verbose)

    progress_print(f"Uploading {path}...", quiet)
    client.upload(path, append_content(existing.content, entry))
    return path

def run_auth(config_path: Path, env: Optional[Mapping[str,str]]=None, stdin: Optional[TextIO]=None,
             token_url: str=DEFAULT_TOKEN_URL, session=None, verbose: bool=False):
    cfg = load_config(config_path, env=env, verbose=verbose)
    if not cfg.app_key or not cfg.app_secret:
        raise ConfigError(
            "app_key and app_secret required.\n"
            f"Set in {config_path} or via {APP_KEY_ENV_VAR} and {APP_SECRET_ENV_VAR} env vars."
        )

    print("1. Open this URL in your browser:")
    print()
    print("  ", authorize_url(cfg.app_key))
    print()
    print("2. Enter the authorization code: ", end="", flush=True)

    stdin = stdin if stdin is not None else sys.stdin
    code = stdin.readline().strip()
    if not code:
        raise InputError("no code entered")

    result = exchange_code(token_url, cfg.app_key, cfg.app_secret, code, session=session, verbose=verbose)
    if not result.refresh_token:
        raise AuthError("token response did not include a refresh token")

    cfg.refresh_token = result.refresh_token
    save_config(config_path, cfg, verbose=verbose)
    print("\nAuthentication successful! Refresh token saved.")

def run_append(args, env: Optional[Mapping[str,str]]=None, stdin: Optional[TextIO]=None, session=None,
               now: Optional[datetime]=None):
    if session is None:
        with requests.Session() as own_session:
            return run_append(args, env=env, stdin=stdin, session=own_session, now=now)

    verbose = getattr(args, "verbose", False)
    quiet = getattr(args, "quiet", False)
    config_path = Path(args.config) if args.config else default_config_path()

    cfg = load_config(config_path, env=env, verbose=verbose)
    token = resolve_token(cfg, env=env, session=session, verbose=verbose)
    text = read_input(args.text, stdin=stdin)
    now = now or current_time(args.timezone)

    client = DropboxClient(token, session=session, verbose=verbose)
    path = append_entry(client, text, now, no_timestamp=args.no_timestamp, quiet=quiet)
    print(f"Appended to {path}")

# ── CLI Setup ────────────────────────────────────────────────────────────────
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description="Append a note to today's Dropbox journal. Run `%(prog)s auth` once to authorize.",
    )
    parser.add_argument("-v","--verbose", action="store_true", help="Enable verbose output for debugging.")
    parser.add_argument("--quiet", action="store_true", help="Suppress progress messages to stderr.")
    parser.add_argument("--config", type=str, metavar="PATH", help="Config file (default: ~/.config/dropbox-appender/config.json).")
    parser.add_argument("--timezone", type=str, help="Timezone for the note date and timestamp (default: local time).")
    parser.add_argument("--no-timestamp", action="store_true", help="Omit the ### HH:MM:SS header.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    parser.add_argument("text", nargs=argparse.REMAINDER, help="Text to append; read from stdin when omitted. Use `auth` to authorize.")
    return parser

def main(argv: Optional[Sequence[str]]=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    # REMAINDER keeps a leading `--` separator in the note words.
    if args.text[:1] == ["--"]:
        args.text = args.text[1:]

    try:
        # `auth` as the first word is the one-time authorization flow, not a note.
        if args.text[:1] == ["auth"]:
            if len(args.text) > 1:
                parser.error("auth takes no arguments")
            config_path = Path(args.config) if args.config else default_config_path()
            run_auth(config_path, verbose=args.verbose)
        else:
            run_append(args)
    except AppenderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        return 1
    return 0

if __name__=="__main__":
    sys.exit(main())
