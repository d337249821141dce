"""Tests for utility functions."""

from __future__ import annotations

import logging
import subprocess
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest

from azure_devops_migrator.utils import (
    InvalidPassPathError,
    PassError,
    get_pass_value,
    sanitize_filename,
    setup_logging,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.mark.unit
class TestSanitizeFilename:
    def test_plain_name_is_kept(self) -> None:
        assert sanitize_filename("report.pdf") == "report.pdf"

    def test_empty_or_missing(self) -> None:
        assert sanitize_filename(None) == "attachment"
        assert sanitize_filename("") == "attachment"
        assert sanitize_filename("...") == "attachment"

    def test_percent_escapes_are_decoded(self) -> None:
        assert sanitize_filename("design%20v2.png") == "design v2.png"

    def test_directories_are_dropped(self) -> None:
        assert sanitize_filename("../../etc/passwd") == "passwd"
        assert sanitize_filename("C:\\Users\\me\\notes.txt") == "notes.txt"

    def test_reserved_characters_are_replaced(self) -> None:
        assert sanitize_filename('bad<>:"|?*.txt') == "bad_.txt"

    def test_windows_device_names(self) -> None:
        assert sanitize_filename("CON.txt") == "_CON.txt"
        assert sanitize_filename("lpt1") == "_lpt1"

    def test_long_name_keeps_extension(self) -> None:
        result = sanitize_filename("a" * 200 + ".pdf")
        assert len(result) == 100
        assert result.endswith(".pdf")

    def test_long_suffix_is_not_an_extension(self) -> None:
        name = "archive.thisisnotreallyanextension"
        assert sanitize_filename(name, max_length=20) == name[:20]


@pytest.mark.unit
class TestGetPassValue:
    def test_returns_stripped_output(self) -> None:
        completed = subprocess.CompletedProcess(["pass", "ado/pat"], 0, stdout="secret\n", stderr="")
        with patch("azure_devops_migrator.utils.subprocess.run", return_value=completed) as mock_run:
            assert get_pass_value("ado/pat") == "secret"
        assert mock_run.call_args.args[0] == ["pass", "ado/pat"]

    def test_invalid_path_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="Invalid pass path"):
            _ = get_pass_value("../secrets")

    def test_missing_entry(self) -> None:
        error = subprocess.CalledProcessError(1, ["pass"], output="", stderr="Error: ado/pat is not in the password store.")
        with (
            patch("azure_devops_migrator.utils.subprocess.run", side_effect=error),
            pytest.raises(InvalidPassPathError),
        ):
            _ = get_pass_value("ado/pat")

    def test_other_failure(self) -> None:
        error = subprocess.CalledProcessError(3, ["pass"], output="", stderr="unexpected")
        with (
            patch("azure_devops_migrator.utils.subprocess.run", side_effect=error),
            pytest.raises(PassError, match="Return code: 3"),
        ):
            _ = get_pass_value("ado/pat")


@pytest.mark.unit
class TestSetupLogging:
    """setup_logging configures the root logger; handlers are restored afterwards."""

    def _configured_level(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, *, verbose: bool) -> int:
        monkeypatch.chdir(tmp_path)
        root_logger = logging.getLogger()
        original_handlers = root_logger.handlers[:]
        original_level = root_logger.level
        root_logger.handlers.clear()
        try:
            setup_logging(verbose=verbose)
            return root_logger.level
        finally:
            for handler in root_logger.handlers:
                handler.close()
            root_logger.handlers = original_handlers
            root_logger.setLevel(original_level)

    def test_default_level_is_info(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        assert self._configured_level(tmp_path, monkeypatch, verbose=False) == logging.INFO
        assert (tmp_path / "migration.log").exists()

    def test_verbose_level_is_debug(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        assert self._configured_level(tmp_path, monkeypatch, verbose=True) == logging.DEBUG
