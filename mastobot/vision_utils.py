from __future__ import annotations

import re
from typing import List

IMG_EXT_RE = re.compile(r"\.(png|jpe?g|gif|webp)$", re.IGNORECASE)


def extract_image_urls(status: dict) -> List[str]:
    """Return a de-duplicated list of image URLs attached to a Mastodon status.

    Attachments typed ``image`` count, as do ``unknown`` attachments (remote
    media the server did not process) whose URL has an image extension.
    """
    urls: List[str] = []
    seen = set()
    for att in (status or {}).get("media_attachments") or []:
        if not isinstance(att, dict):
            continue
        kind = str(att.get("type") or "").lower()
        url = att.get("url") or att.get("remote_url")
        if not url or url in seen:
            continue
        if kind == "image" or (kind == "unknown" and IMG_EXT_RE.search(str(url).split("?", 1)[0])):
            seen.add(url)
            urls.append(url)
    return urls
