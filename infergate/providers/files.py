"""Normalization of request images into workflow executor file descriptors."""

from __future__ import annotations

import re
from typing import Any, Mapping

from ..models import RequestInput

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _is_http_url(value: str) -> bool:
    return bool(_HTTP_URL.match(value))


def to_image_file(item: Any) -> dict[str, Any] | None:
    """Return a file descriptor for one image entry, or ``None`` when unusable."""

    if isinstance(item, str):
        url = item.strip()
        if not url or not _is_http_url(url):
            return None
        return {"type": "image", "transfer_method": "remote_url", "url": url}

    if not isinstance(item, Mapping):
        return None

    method = _text(item.get("transfer_method"))
    file_type = _text(item.get("type")) or "image"
    if method == "local_file":
        upload_id = _text(item.get("upload_file_id") or item.get("file_id") or item.get("id"))
        if not upload_id:
            return None
        return {"type": file_type, "transfer_method": "local_file", "upload_file_id": upload_id}

    url = _text(item.get("url"))
    if url and _is_http_url(url):
        return {"type": file_type, "transfer_method": "remote_url", "url": url}
    return None


def build_image_files(request_input: RequestInput | Mapping[str, Any] | None) -> list[dict[str, Any]]:
    if request_input is None:
        return []
    if isinstance(request_input, RequestInput):
        images = request_input.images
    else:
        images = request_input.get("images")
    if not isinstance(images, list):
        return []
    files = []
    for item in images:
        descriptor = to_image_file(item)
        if descriptor is not None:
            files.append(descriptor)
    return files
