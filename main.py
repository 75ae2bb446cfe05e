#!/usr/bin/env python3
"""
Warden -- command line client for the Warden command tree.

Every word on the command line becomes one path segment of
GET <server>/api/<word>/<word>/... and the plain-text answer is printed.

Usage:
  python main.py system login alice
  python main.py user view alice
  python main.py user 2fa add alice <curpassword> TOTP laptop
  python main.py -r user password set alice      (prompts for the new password)
  python main.py system logout

Environment variables:
  WARDEN_SERVER    Server URL (default http://localhost:8334)
  WARDEN_TOKEN     Token file (default ~/.warden_token)
  WARDEN_VERBOSE   Anything but "off" logs the request and response headers

The session token lives in the token file (mode 0600). A new token arrives
in "WWW-Authenticate: Bearer access_token=..." and replaces the stored one;
error="invalid_token" (expired, revoked or logged out) removes the file.
The process exit code is the server's X-ReturnCode, 0 when absent.
"""

import argparse
import getpass
import logging
import os
import re
import sys
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import requests

from core.config import ClientSettings

VERSION = "0.3.0"
EMPTY_ARG = "%B6"

logger = logging.getLogger("warden.cli")

_ACCESS_TOKEN_RE = re.compile(r'access_token="([^"]+)"')


def encode_args(args: list[str]) -> str:
    """['user', 'set', 'a/b', ''] -> 'user/set/a%2Fb/%B6'"""
    return "/".join(quote(arg, safe="") if arg else EMPTY_ARG for arg in args)


def load_token(path: Path) -> str:
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        return ""
    except OSError as e:
        logger.warning("Could not read token file '%s': %s", path, e)
        return ""


def store_token(path: Path, token: str) -> None:
    """Write the token with owner-only permissions."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as fh:
        fh.write(token)
    os.chmod(path, 0o600)


def drop_token(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def handle_auth_header(header: str, token_file: Path) -> None:
    """Apply the server's WWW-Authenticate instructions to the token file."""
    if not header:
        return
    if 'error="invalid_token"' in header:
        logger.info("Server rejected the stored token; removing %s", token_file)
        drop_token(token_file)
        return
    m = _ACCESS_TOKEN_RE.search(header)
    if m:
        store_token(token_file, m.group(1))


def run(
    args: list[str],
    server: str,
    token_file: Path,
    session: Optional[requests.Session] = None,
) -> int:
    """Send one command and print its output. Returns the exit code."""
    http = session or requests.Session()
    url = f"{server.rstrip('/')}/api/{encode_args(args)}"
    headers = {"User-Agent": f"warden-cli/{VERSION}"}
    token = load_token(token_file)
    if token:
        headers["Authorization"] = f"Bearer {token}"

    logger.debug("GET %s", url)
    try:
        resp = http.get(url, headers=headers, allow_redirects=False, timeout=60)
    except requests.RequestException as e:
        print(f"Could not reach {server}: {e}", file=sys.stderr)
        return 1
    logger.debug("%d %s", resp.status_code, dict(resp.headers))

    handle_auth_header(resp.headers.get("WWW-Authenticate", ""), token_file)

    sys.stdout.write(resp.text)
    if resp.text and not resp.text.endswith("\n"):
        sys.stdout.write("\n")

    code = resp.headers.get("X-ReturnCode", "")
    if code.isdigit():
        return int(code)
    return 0 if resp.ok else 1


def main(argv: Optional[list[str]] = None) -> int:
    settings = ClientSettings()
    parser = argparse.ArgumentParser(
        prog="warden",
        description="Command line client for the Warden command tree.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py system login alice
  python main.py system whoami
  python main.py user 2fa list alice
  python main.py -r system login alice      (password prompted, not echoed)
        """,
    )
    parser.add_argument("words", nargs="*", metavar="WORD", help="Command words and arguments")
    parser.add_argument("--server", default=settings.server, help="Server URL (default: %(default)s)")
    parser.add_argument("--tokenfile", default=settings.token_file, metavar="PATH", help="Token file (default: %(default)s)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log requests and responses")
    parser.add_argument(
        "-r",
        "--read-secret",
        action="store_true",
        help="Prompt for one more argument without echoing it (passwords)",
    )
    opts = parser.parse_args(argv)

    verbose = opts.verbose or settings.verbose_enabled
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    words = list(opts.words)
    if opts.read_secret:
        words.append(getpass.getpass("Password: "))
    if not words:
        words = ["help"]

    return run(words, opts.server, Path(opts.tokenfile).expanduser())


if __name__ == "__main__":
    sys.exit(main())
