"""
Utility functions for the Azure DevOps migration tool.
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
import unicodedata
from pathlib import PurePosixPath
from subprocess import CompletedProcess
from typing import Final
from urllib.parse import unquote

DEFAULT_FILENAME: Final[str] = "attachment"
MAX_FILENAME_LENGTH: Final[int] = 100

_UNSAFE_FILENAME_CHARS = re.compile(r'[\x00-\x1f\x7f<>:"/\\|?*]+')
_WHITESPACE_RUN = re.compile(r"\s+")
_WINDOWS_RESERVED_NAMES: Final[frozenset[str]] = frozenset(
    {"CON", "PRN", "AUX", "NUL"} | {f"COM{i}" for i in range(1, 10)} | {f"LPT{i}" for i in range(1, 10)}
)


class PassError(Exception):
    """Base class for pass-related errors."""


class InvalidPassPathError(PassError):
    """Raised when the pass path format is invalid."""


class PassphraseRequiredError(PassError):
    """Raised when a GPG passphrase is required for the pass utility."""


def setup_logging(*, verbose: bool = False) -> None:
    """Configure logging for the migration process."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(), logging.FileHandler("migration.log", mode="a")],
    )


def sanitize_filename(name: str | None, max_length: int = MAX_FILENAME_LENGTH) -> str:
    """Turn an arbitrary string into a safe file name for the staging area.

    Percent-escapes are decoded, directory components dropped, control and
    reserved characters replaced with ``_``, and the result is cut to
    ``max_length`` characters while keeping the extension.

    Returns:
        A non-empty file name; ``"attachment"`` when nothing usable is left.
    """
    if not name:
        return DEFAULT_FILENAME

    cleaned = unicodedata.normalize("NFC", unquote(name))
    cleaned = PurePosixPath(cleaned.replace("\\", "/")).name
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", cleaned)
    cleaned = _WHITESPACE_RUN.sub(" ", cleaned).strip().strip(".").strip()
    if not cleaned or set(cleaned) == {"_"}:
        return DEFAULT_FILENAME

    stem, dot, suffix = cleaned.rpartition(".")
    if not dot or not stem:
        stem, suffix = cleaned, ""
    # Extensions longer than this are treated as part of the name
    if len(suffix) > 16:
        stem, suffix = cleaned, ""

    if stem.upper() in _WINDOWS_RESERVED_NAMES:
        stem = f"_{stem}"

    extension = f".{suffix}" if suffix else ""
    if len(stem) + len(extension) > max_length:
        stem = stem[: max(1, max_length - len(extension))].rstrip(" .") or DEFAULT_FILENAME
    return f"{stem}{extension}"[:max_length]


def _validate_pass_path(pass_path: str) -> None:
    """Validate the pass path format."""
    if not re.fullmatch(r"(?:[A-Za-z0-9_-]+)(?:/[A-Za-z0-9_-]+)*", pass_path):
        msg = f"Invalid pass path: {pass_path}"
        raise ValueError(msg)


def _pass_failure_message(pass_path: str, error: subprocess.CalledProcessError, suffix: str = "") -> str:
    return (
        f"Failed to get value from pass at '{pass_path}'{suffix}.\n"
        f"Output: {error.stdout.strip()}\n"
        f"Error: {error.stderr.strip()}\n"
        f"Return code: {error.returncode}"
    )


def get_pass_value(pass_path: str) -> str:
    """Get value from pass utility at specified path."""
    _validate_pass_path(pass_path)

    try:
        result: CompletedProcess[str] = subprocess.run(  # noqa: S603
            ["pass", pass_path], capture_output=True, text=True, check=True
        )
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.lower()
        if e.returncode == 1 and "not in the password store" in stderr:
            msg = f"Pass path '{pass_path}' not found or invalid."
            raise InvalidPassPathError(msg) from e
        if e.returncode == 2 and "gpg" in stderr and "public key decryption failed" in stderr:
            # The GPG agent wants a passphrase; ask for it and feed it to pass in loopback mode.
            # This fails in non-interactive sessions (e.g. pytest).
            try:
                passphrase = input("Enter passphrase for GPG key used by pass: ")
            except EOFError as eof:
                msg = "Passphrase input was interrupted. Please run the command in an interactive session."
                raise PassphraseRequiredError(msg) from eof

            env = os.environ.copy() | {"PASSWORD_STORE_GPG_OPTS": "--pinentry-mode=loopback --passphrase-fd 0"}
            try:
                result = subprocess.run(  # noqa: S603
                    ["pass", pass_path], input=passphrase, capture_output=True, text=True, check=True, env=env
                )
            except subprocess.CalledProcessError as retry_error:
                msg = _pass_failure_message(pass_path, retry_error, " with passphrase")
                raise PassphraseRequiredError(msg) from retry_error
            return result.stdout.strip()
        raise PassError(_pass_failure_message(pass_path, e)) from e

    return result.stdout.strip()
