"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Locating the export bundle of a job.

A job's ``storage_key`` is a local path, a ``file://`` URL or an HTTP(S) URL.
Remote bundles are downloaded in chunks to a temporary file that is removed
when the ``open_bundle`` context exits.
"""

import os
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from urllib.parse import unquote, urlparse

import requests
from requests.adapters import HTTPAdapter, Retry
from requests.exceptions import RequestException

from tmtp.core.logging import get_logger
from tmtp.errors import BundleSourceError

logger = get_logger(__name__)

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


def is_remote(storage_key: str) -> bool:
    return urlparse(storage_key).scheme in ("http", "https")


def local_path(storage_key: str) -> Path:
    """Filesystem path of a local path or ``file://`` storage key."""
    parsed = urlparse(storage_key)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(storage_key)


def create_session(max_retries: int = 3, backoff_factor: float = 0.5) -> requests.Session:
    """HTTP session that retries transient download failures."""
    session = requests.Session()
    retry_strategy = Retry(
        total=max_retries,
        backoff_factor=backoff_factor,
        status_forcelist=[429, 500, 502, 503, 504],
        allowed_methods=["GET", "HEAD"],
    )
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def download_bundle(
    url: str,
    destination_dir: str | None = None,
    timeout: float = 300.0,
    session: requests.Session | None = None,
) -> Path:
    """
    Download a remote bundle to a temporary file.

    Args:
        url: HTTP(S) location of the bundle
        destination_dir: Directory for the temporary file; the system default when None
        timeout: Connect and read timeout in seconds
        session: Session to download with; a retrying session is created when None

    Returns:
        Path of the downloaded file; the caller removes it

    Raises:
        BundleSourceError: If the download fails
    """
    http = session or create_session()
    handle, name = tempfile.mkstemp(prefix="tmtp-bundle-", suffix=".json", dir=destination_dir)
    path = Path(name)
    try:
        with os.fdopen(handle, "wb") as target:
            with http.get(url, stream=True, timeout=timeout) as response:
                response.raise_for_status()
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        target.write(chunk)
    except RequestException as e:
        path.unlink(missing_ok=True)
        raise BundleSourceError(f"Failed to download export bundle from {url}: {e}") from e
    finally:
        if session is None:
            http.close()

    logger.info("Downloaded export bundle", context={"url": url, "bytes": path.stat().st_size})
    return path


@contextmanager
def open_bundle(
    storage_key: str, temp_dir: str | None = None, timeout: float = 300.0
) -> Iterator[Path]:
    """
    Yield a local path to the bundle named by a storage key.

    Raises:
        BundleSourceError: If a local bundle does not exist or a download fails
    """
    if not storage_key:
        raise BundleSourceError("The import job has no bundle location")

    if not is_remote(storage_key):
        path = local_path(storage_key)
        if not path.is_file():
            raise BundleSourceError(f"Export bundle not found: {path}")
        yield path
        return

    path = download_bundle(storage_key, temp_dir, timeout)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
        logger.debug("Removed downloaded bundle", context={"path": str(path)})
