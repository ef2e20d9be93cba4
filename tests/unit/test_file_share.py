"""Tests for the Azure Files download-as-ZIP flow (src/storage/file_share.py)."""

from __future__ import annotations

import io
import zipfile
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.storage.file_share import (
    FileShareError,
    compile_file_pattern,
    create_service_client,
    download_matching_file_as_zip,
    normalize_directory,
)


class _AsyncItems:
    """Async iterator over directory listing entries."""

    def __init__(self, items: list[dict[str, Any]]) -> None:
        self._items = iter(items)

    def __aiter__(self) -> _AsyncItems:
        return self

    async def __anext__(self) -> dict[str, Any]:
        try:
            return next(self._items)
        except StopIteration:
            raise StopAsyncIteration from None


def _fake_service(
    items: list[dict[str, Any]] | None = None,
    share_exists: bool = True,
    directory_exists: bool = True,
    contents: dict[str, bytes] | None = None,
) -> MagicMock:
    contents = contents or {}

    directory_client = MagicMock()
    directory_client.exists = AsyncMock(return_value=directory_exists)
    directory_client.list_directories_and_files.side_effect = lambda: _AsyncItems(items or [])

    def _file_client(name: str) -> MagicMock:
        downloader = MagicMock()
        downloader.readall = AsyncMock(return_value=contents[name])
        file_client = MagicMock()
        file_client.download_file = AsyncMock(return_value=downloader)
        return file_client

    directory_client.get_file_client.side_effect = _file_client

    share_client = MagicMock()
    share_client.exists = AsyncMock(return_value=share_exists)
    share_client.get_directory_client.return_value = directory_client

    service = MagicMock()
    service.__aenter__ = AsyncMock(return_value=service)
    service.__aexit__ = AsyncMock(return_value=False)
    service.get_share_client.return_value = share_client
    return service


def _file(name: str) -> dict[str, Any]:
    return {"name": name, "is_directory": False}


def _dir(name: str) -> dict[str, Any]:
    return {"name": name, "is_directory": True}


# ═══════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [(None, ""), ("", ""), ("  reports ", "reports"), ("/exports/2024", "exports/2024"), ("\\logs", "logs")],
    )
    def test_normalize_directory(self, raw, expected):
        assert normalize_directory(raw) == expected

    def test_pattern_is_case_insensitive(self):
        assert compile_file_pattern(r"report.*\.csv$").search("REPORT_2024.CSV")

    def test_invalid_pattern(self):
        with pytest.raises(FileShareError):
            compile_file_pattern("[unclosed")

    def test_create_service_client_uses_backup_intent(self):
        credential = object()
        with patch("azure.storage.fileshare.aio.ShareServiceClient") as mock_cls:
            create_service_client("myaccount", credential=credential)
        mock_cls.assert_called_once_with(
            "https://myaccount.file.core.windows.net",
            credential=credential,
            token_intent="backup",
        )


# ═══════════════════════════════════════════════════════════════════════
# download_matching_file_as_zip
# ═══════════════════════════════════════════════════════════════════════


class TestDownload:
    @pytest.mark.asyncio
    async def test_first_match_is_zipped(self):
        service = _fake_service(
            items=[_dir("report-archive"), _file("notes.txt"), _file("Report-1.csv"), _file("report-2.csv")],
            contents={"Report-1.csv": b"a,b\n1,2\n"},
        )

        archive = await download_matching_file_as_zip(
            "acct", "share", "/exports", r"report-\d\.csv", service_client=service
        )

        assert isinstance(archive, io.BytesIO)
        with zipfile.ZipFile(archive) as zf:
            assert zf.namelist() == ["Report-1.csv"]
            assert zf.read("Report-1.csv") == b"a,b\n1,2\n"
        service.get_share_client.assert_called_once_with("share")
        service.get_share_client.return_value.get_directory_client.assert_called_once_with("exports")

    @pytest.mark.asyncio
    async def test_blank_directory_means_share_root(self):
        service = _fake_service(items=[_file("a.log")], contents={"a.log": b"x"})
        await download_matching_file_as_zip("acct", "share", "", r"\.log$", service_client=service)
        service.get_share_client.return_value.get_directory_client.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_no_match_returns_none(self):
        service = _fake_service(items=[_file("notes.txt")])
        result = await download_matching_file_as_zip("acct", "share", None, r"\.csv$", service_client=service)
        assert result is None

    @pytest.mark.asyncio
    async def test_directories_never_match(self):
        service = _fake_service(items=[_dir("data.csv")])
        result = await download_matching_file_as_zip("acct", "share", None, r"\.csv$", service_client=service)
        assert result is None

    @pytest.mark.asyncio
    async def test_missing_share_returns_none(self):
        service = _fake_service(share_exists=False)
        result = await download_matching_file_as_zip("acct", "nope", None, ".*", service_client=service)
        assert result is None
        service.get_share_client.return_value.get_directory_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_directory_returns_none(self):
        service = _fake_service(directory_exists=False)
        result = await download_matching_file_as_zip("acct", "share", "gone", ".*", service_client=service)
        assert result is None

    @pytest.mark.asyncio
    async def test_invalid_regex_raises_before_connecting(self):
        service = _fake_service()
        with pytest.raises(FileShareError):
            await download_matching_file_as_zip("acct", "share", None, "(", service_client=service)
        service.get_share_client.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_error_is_wrapped(self):
        service = _fake_service()
        service.get_share_client.return_value.exists = AsyncMock(side_effect=ConnectionError("refused"))
        with pytest.raises(FileShareError, match="refused"):
            await download_matching_file_as_zip("acct", "share", None, ".*", service_client=service)


# ═══════════════════════════════════════════════════════════════════════
# Credential lifecycle
# ═══════════════════════════════════════════════════════════════════════


class TestCredentialLifecycle:
    @pytest.mark.asyncio
    async def test_own_credential_closed_after_download(self):
        credential = MagicMock()
        credential.close = AsyncMock()
        service = _fake_service(items=[_file("a.csv")], contents={"a.csv": b"x"})

        with (
            patch("src.storage.file_share.create_credential", return_value=credential),
            patch("src.storage.file_share.create_service_client", return_value=service) as mock_create,
        ):
            await download_matching_file_as_zip("acct", "share", None, r"\.csv$")

        mock_create.assert_called_once_with("acct", credential)
        credential.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_own_credential_closed_on_storage_error(self):
        credential = MagicMock()
        credential.close = AsyncMock()
        service = _fake_service()
        service.get_share_client.return_value.exists = AsyncMock(side_effect=ConnectionError("refused"))

        with (
            patch("src.storage.file_share.create_credential", return_value=credential),
            patch("src.storage.file_share.create_service_client", return_value=service),
        ):
            with pytest.raises(FileShareError):
                await download_matching_file_as_zip("acct", "share", None, ".*")

        credential.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_own_credential_closed_when_nothing_matches(self):
        credential = MagicMock()
        credential.close = AsyncMock()
        with (
            patch("src.storage.file_share.create_credential", return_value=credential),
            patch("src.storage.file_share.create_service_client", return_value=_fake_service()),
        ):
            assert await download_matching_file_as_zip("acct", "share", None, ".*") is None
        credential.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_given_service_client_credential_not_created(self):
        with patch("src.storage.file_share.create_credential") as mock_cred:
            await download_matching_file_as_zip("acct", "share", None, ".*", service_client=_fake_service())
        mock_cred.assert_not_called()
