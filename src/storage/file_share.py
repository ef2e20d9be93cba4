"""Entra Graph Samples — Azure Files download as ZIP.

Finds the first file in an Azure Files share directory whose name matches a
regular expression and returns it wrapped in an in-memory ZIP archive.  The
share is reached with the app's managed identity (DefaultAzureCredential)
using the ``backup`` token intent that OAuth access to Azure Files requires.
"""

from __future__ import annotations

import io
import re
import zipfile
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

FILE_ENDPOINT_TEMPLATE = "https://{account}.file.core.windows.net"
TOKEN_INTENT = "backup"


class FileShareError(Exception):
    """Raised when a file share download cannot be completed."""


def normalize_directory(directory: str | None) -> str:
    """Strip whitespace and leading separators; empty means the share root."""
    if not directory:
        return ""
    return directory.strip().lstrip("/\\")


def compile_file_pattern(pattern: str) -> re.Pattern[str]:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        logger.error("fileshare.invalid_regex", pattern=pattern, error=str(exc))
        raise FileShareError(f"Invalid file name regex: {exc}") from exc


def create_credential() -> Any:
    from azure.identity.aio import DefaultAzureCredential

    return DefaultAzureCredential()


def create_service_client(account: str, credential: Any) -> Any:
    """Build an async ``ShareServiceClient`` for *account*."""
    from azure.storage.fileshare.aio import ShareServiceClient

    return ShareServiceClient(
        FILE_ENDPOINT_TEMPLATE.format(account=account),
        credential=credential,
        token_intent=TOKEN_INTENT,
    )


async def _first_matching_file(directory_client: Any, pattern: re.Pattern[str]) -> str | None:
    async for item in directory_client.list_directories_and_files():
        if item["is_directory"]:
            continue
        if pattern.search(item["name"]):
            return str(item["name"])
    return None


def _zip_single_file(name: str, content: bytes) -> io.BytesIO:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr(name, content)
    buffer.seek(0)
    return buffer


async def download_matching_file_as_zip(
    account: str,
    share: str,
    directory: str | None,
    file_name_regex: str,
    *,
    service_client: Any = None,
) -> io.BytesIO | None:
    """Download the first file matching *file_name_regex* as a ZIP archive.

    Args:
        account: Storage account name.
        share: File share name.
        directory: Directory inside the share; blank for the root.
        file_name_regex: Case-insensitive pattern matched against file names.
        service_client: Pre-built ``ShareServiceClient`` (tests, custom auth).

    Returns:
        A rewound ``BytesIO`` holding the ZIP, or ``None`` when the share,
        the directory or a matching file does not exist.

    Raises:
        FileShareError: Invalid regex or any storage failure.
    """
    directory = normalize_directory(directory)
    pattern = compile_file_pattern(file_name_regex)
    logger.info("fileshare.download.start", share=share, directory=directory or "/")

    # only a credential created here is closed here
    credential = None
    if service_client is None:
        credential = create_credential()
        service_client = create_service_client(account, credential)

    try:
        return await _download(service_client, share, directory, pattern, file_name_regex)
    finally:
        if credential is not None:
            await credential.close()


async def _download(
    client: Any,
    share: str,
    directory: str,
    pattern: re.Pattern[str],
    file_name_regex: str,
) -> io.BytesIO | None:
    try:
        async with client:
            share_client = client.get_share_client(share)
            if not await share_client.exists():
                logger.warning("fileshare.share_missing", share=share)
                return None

            directory_client = share_client.get_directory_client(directory or None)
            if not await directory_client.exists():
                logger.warning("fileshare.directory_missing", directory=directory)
                return None

            file_name = await _first_matching_file(directory_client, pattern)
            if file_name is None:
                logger.info("fileshare.no_match", pattern=file_name_regex)
                return None

            logger.info("fileshare.match_found", file_name=file_name)
            downloader = await directory_client.get_file_client(file_name).download_file()
            content = await downloader.readall()
    except Exception as exc:
        logger.error("fileshare.download.error", error=str(exc), error_type=type(exc).__name__)
        raise FileShareError(f"Error downloading file as ZIP: {exc}") from exc

    archive = _zip_single_file(file_name, content)
    logger.info("fileshare.download.complete", file_name=file_name, size=len(content))
    return archive
