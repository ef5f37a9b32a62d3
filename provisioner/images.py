"""Boot image acquisition for hostvm-provisioner.

The only integrity check applied to a downloaded image is a minimum size
threshold. A truncated transfer is caught; a corrupted file of plausible size
is not. Checksum verification would be the natural strengthening point.
"""

from __future__ import annotations

import tempfile
import time
from http.client import HTTPException
from pathlib import Path
from typing import Callable, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import requests

from provisioner.constants import DOWNLOAD_CHUNK_SIZE, DOWNLOAD_TIMEOUT, USER_AGENT
from provisioner.exceptions import TransportError
from provisioner.models import ErrorKind, Failed, ImageDescriptor, Ok, StageResult
from provisioner.utils import ProgressPrinter, format_size, log

# Called with (bytes downloaded so far, total bytes or None).
ProgressCallback = Callable[[int, Optional[int]], None]


def partial_path(destination: Path) -> Path:
    return destination.with_name(destination.name + ".part")


def _content_length(headers, url: str) -> Optional[int]:
    raw = headers.get("Content-Length")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        raise TransportError(f"Malformed Content-Length '{raw}' from {url}") from None


class ImageTransport:
    name = ""

    def fetch(self, url: str, destination: Path, progress: Optional[ProgressCallback] = None) -> None:
        raise NotImplementedError


class ResumableHttpTransport(ImageTransport):
    """Streams into ``<destination>.part`` and resumes it with an HTTP Range request."""

    name = "http-resumable"

    def __init__(self, session: Optional[requests.Session] = None) -> None:
        self.session = session if session is not None else requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT

    def fetch(self, url: str, destination: Path, progress: Optional[ProgressCallback] = None) -> None:
        part = partial_path(destination)
        offset = part.stat().st_size if part.exists() else 0
        headers = {}
        if offset:
            headers["Range"] = f"bytes={offset}-"
            log("INFO", f"Partial download found ({format_size(offset)}); attempting resume")

        try:
            with self.session.get(url, headers=headers, stream=True, timeout=DOWNLOAD_TIMEOUT) as resp:
                if resp.status_code == 416:
                    part.unlink(missing_ok=True)
                    raise TransportError(f"server rejected resume range for {url}")
                resp.raise_for_status()
                length = _content_length(resp.headers, url)
                if offset and resp.status_code == 206:
                    mode = "ab"
                    total = length + offset if length is not None else None
                else:
                    # Server ignored the range; start over.
                    mode = "wb"
                    offset = 0
                    total = length
                downloaded = offset
                with open(part, mode) as fh:
                    for chunk in resp.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        downloaded += len(chunk)
                        if progress is not None:
                            progress(downloaded, total)
        except requests.RequestException as exc:
            raise TransportError(f"{self.name} transfer of {url} failed: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"{self.name} could not write {part}: {exc}") from exc
        part.replace(destination)


class UrllibTransport(ImageTransport):
    """Plain full download; always starts from byte zero."""

    name = "urllib"

    def fetch(self, url: str, destination: Path, progress: Optional[ProgressCallback] = None) -> None:
        partial_path(destination).unlink(missing_ok=True)
        req = Request(url, headers={"User-Agent": USER_AGENT})
        try:
            with urlopen(req, timeout=DOWNLOAD_TIMEOUT) as response:
                total_bytes = _content_length(response.headers, url)
                self._stream(response, destination, total_bytes, progress)
        except HTTPError as exc:
            raise TransportError(f"HTTP error downloading {url}: {exc.code} {exc.reason}") from exc
        except URLError as exc:
            raise TransportError(f"Failed to download {url}: {exc.reason}") from exc
        except (HTTPException, OSError) as exc:
            raise TransportError(f"{self.name} transfer of {url} failed: {exc!r}") from exc

    def _stream(self, response, destination: Path, total_bytes: Optional[int], progress) -> None:
        downloaded = 0
        with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
            tmp_path = Path(tmp.name)
            try:
                while True:
                    chunk = response.read(DOWNLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    tmp.write(chunk)
                    downloaded += len(chunk)
                    if progress is not None:
                        progress(downloaded, total_bytes)
                tmp.flush()
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise
        tmp_path.replace(destination)


class ImageAcquirer:
    def __init__(
        self,
        primary: Optional[ImageTransport] = None,
        secondary: Optional[ImageTransport] = None,
        show_progress: bool = True,
    ) -> None:
        self.primary = primary if primary is not None else ResumableHttpTransport()
        self.secondary = secondary if secondary is not None else UrllibTransport()
        self.show_progress = show_progress

    def acquire(self, descriptor: ImageDescriptor) -> StageResult:
        path = descriptor.local_path
        threshold = descriptor.expected_minimum_size_bytes

        if descriptor.is_valid():
            log("INFO", f"Using cached image: {path} ({format_size(path.stat().st_size)})")
            return Ok(path)
        if path.exists():
            size = path.stat().st_size
            log(
                "WARN",
                f"Cached image too small ({format_size(size)} < {format_size(threshold)} threshold); "
                f"re-downloading {path}",
            )
            try:
                path.unlink()
            except OSError as exc:
                return Failed(ErrorKind.DOWNLOAD, f"could not remove undersized image {path}: {exc}")

        log("INFO", f"Downloading {descriptor.display_label}: {descriptor.source_url}")
        start_time = time.time()
        error = self._transfer(descriptor)
        if error is not None:
            return Failed(ErrorKind.DOWNLOAD, error)

        if not descriptor.is_valid():
            size = path.stat().st_size if path.exists() else 0
            path.unlink(missing_ok=True)
            log("ERROR", f"Downloaded image is {format_size(size)}, below the {format_size(threshold)} threshold")
            return Failed(ErrorKind.DOWNLOAD, "size validation failed")

        elapsed = time.time() - start_time
        log("SUCCESS", f"Downloaded {format_size(path.stat().st_size)} in {elapsed:.1f}s")
        return Ok(path)

    def _transfer(self, descriptor: ImageDescriptor) -> Optional[str]:
        """Primary transport, then one full restart on the secondary. Returns an error or None."""
        url = descriptor.source_url
        destination = descriptor.local_path
        try:
            self._fetch(self.primary, url, destination, descriptor.display_label)
            return None
        except TransportError as exc:
            log("WARN", f"{exc}; retrying with {self.secondary.name}")
        try:
            self._fetch(self.secondary, url, destination, descriptor.display_label)
            return None
        except TransportError as exc:
            log("ERROR", str(exc))
            return f"both transports failed for {url}: {exc}"

    def _fetch(self, transport: ImageTransport, url: str, destination: Path, label: str) -> None:
        printer = ProgressPrinter(label) if self.show_progress else None
        try:
            transport.fetch(url, destination, printer)
        finally:
            if printer is not None:
                printer.finish()
