"""
Client-local SDP adjustments applied before a description is sent.
"""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

LOG = logging.getLogger(__name__)

_RTPMAP = re.compile(r"^a=rtpmap:(\d+)\s+([^/\s]+)", re.IGNORECASE)
_APT = re.compile(r"^a=fmtp:(\d+)\s+.*\bapt=(\d+)", re.IGNORECASE)


def _split_lines(sdp: str) -> Tuple[List[str], str]:
    separator = "\r\n" if "\r\n" in sdp else "\n"
    return sdp.split(separator), separator


def _video_section(lines: List[str]) -> Optional[Tuple[int, int]]:
    start = None
    for index, line in enumerate(lines):
        if line.startswith("m="):
            if start is not None:
                return start, index
            if line.startswith("m=video"):
                start = index
    if start is None:
        return None
    return start, len(lines)


def reorder_video_payloads(sdp: str, codec: str) -> str:
    """
    Move the payload types of ``codec`` (and their RTX companions) to the
    front of the ``m=video`` line.  Other sections are untouched.
    """

    lines, separator = _split_lines(sdp)
    bounds = _video_section(lines)
    if bounds is None:
        return sdp
    start, end = bounds

    wanted = codec.strip().lower()
    preferred: List[str] = []
    rtx_for: Dict[str, str] = {}
    for line in lines[start + 1 : end]:
        match = _RTPMAP.match(line)
        if match and match.group(2).lower() == wanted:
            preferred.append(match.group(1))
            continue
        apt = _APT.match(line)
        if apt:
            rtx_for[apt.group(1)] = apt.group(2)

    if not preferred:
        LOG.debug("Codec %s not offered; leaving SDP unchanged", codec)
        return sdp

    preferred.extend(pt for pt, primary in rtx_for.items() if primary in preferred)
    parts = lines[start].split(" ")
    header, payloads = parts[:3], parts[3:]
    ordered = [pt for pt in payloads if pt in preferred]
    ordered.extend(pt for pt in payloads if pt not in preferred)
    lines[start] = " ".join(header + ordered)
    return separator.join(lines)


def prefer_video_codec(description: Any, codec: Optional[str]) -> Any:
    """
    Apply :func:`reorder_video_payloads` to a description.

    ``description`` may be the raw SDP text, a ``{"type", "sdp"}`` mapping or a
    runtime description object with a writable ``sdp`` attribute; anything
    else is returned as-is.
    """

    if not codec:
        return description
    if isinstance(description, str):
        return reorder_video_payloads(description, codec)
    if isinstance(description, dict) and isinstance(description.get("sdp"), str):
        updated = dict(description)
        updated["sdp"] = reorder_video_payloads(description["sdp"], codec)
        return updated
    if isinstance(getattr(description, "sdp", None), str):
        updated = copy.copy(description)
        updated.sdp = reorder_video_payloads(description.sdp, codec)
        return updated
    return description
