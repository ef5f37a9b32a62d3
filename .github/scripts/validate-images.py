#!/usr/bin/env python3
"""Validate the known boot image table: field sanity and URL reachability."""

from __future__ import annotations

import re
import sys

import requests

from provisioner.constants import KNOWN_IMAGES
from provisioner.models import ImageDefinition

URL_RE = re.compile(r"^https?://")
REQUEST_TIMEOUT = 30
USER_AGENT = "hostvm-provisioner/image-validator (GitHub Actions)"


# ── Phase 1: Field validation (fail-fast) ───────────────────────────


def validate_fields(images: tuple[ImageDefinition, ...]) -> list[str]:
    errors: list[str] = []
    seen_keys: set[str] = set()
    seen_files: set[str] = set()

    for image in images:
        if image.key in seen_keys:
            errors.append(f"[{image.key}] duplicate key")
        seen_keys.add(image.key)
        if image.filename in seen_files:
            errors.append(f"[{image.key}] filename '{image.filename}' reused")
        seen_files.add(image.filename)
        if not URL_RE.match(image.url):
            errors.append(f"[{image.key}] 'url' must start with http:// or https://")
        if "/" in image.filename:
            errors.append(f"[{image.key}] 'filename' must not contain '/'")
        if image.minimum_size_bytes <= 0:
            errors.append(f"[{image.key}] 'minimum_size_bytes' must be positive")

    return errors


# ── Phase 2: URL reachability and advertised size (collect-all) ─────


def check_image(image: ImageDefinition) -> str | None:
    """Return an error string if the URL is unreachable or advertises too few bytes."""
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT

    try:
        resp = session.head(image.url, timeout=REQUEST_TIMEOUT, allow_redirects=True)
        # Some servers reject HEAD; fall back to GET with streaming
        if resp.status_code in (403, 405):
            resp = session.get(image.url, timeout=REQUEST_TIMEOUT, allow_redirects=True, stream=True)
            resp.close()
        if resp.status_code >= 400:
            return f"[{image.key}] HTTP {resp.status_code} for {image.url}"
        length = resp.headers.get("Content-Length")
        if length and int(length) < image.minimum_size_bytes:
            return f"[{image.key}] advertises {length} bytes, below threshold {image.minimum_size_bytes}"
        return None
    except requests.RequestException as exc:
        return f"[{image.key}] {exc.__class__.__name__}: {exc} for {image.url}"


# ── Main ─────────────────────────────────────────────────────────────


def main() -> int:
    print("\n=== Phase 1: Field validation ===")
    field_errors = validate_fields(KNOWN_IMAGES)
    if field_errors:
        for e in field_errors:
            print(f"  ERROR: {e}")
        print(f"\nField validation failed with {len(field_errors)} error(s)")
        return 1
    print(f"  OK: {len(KNOWN_IMAGES)} images, all fields valid")

    print("\n=== Phase 2: URL reachability ===")
    url_errors = [err for err in (check_image(image) for image in KNOWN_IMAGES) if err]
    if url_errors:
        for e in url_errors:
            print(f"  ERROR: {e}")
        print(f"\nURL validation failed: {len(url_errors)}/{len(KNOWN_IMAGES)} images")
        return 1
    print(f"  OK: all {len(KNOWN_IMAGES)} URLs reachable")

    print("\nAll checks passed.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
