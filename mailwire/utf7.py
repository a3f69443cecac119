"""Modified UTF-7 codec for IMAP mailbox names (RFC 3501, section 5.1.3).

Printable US-ASCII stands for itself except "&", which becomes "&-". Runs
of any other characters are UTF-16BE encoded, base64 encoded with "," in
place of "/" and without padding, and wrapped in "&" ... "-".
"""

import base64
from typing import List


def _is_direct(ch: str) -> bool:
    return 0x20 <= ord(ch) <= 0x7E


def _encode_run(run: List[str]) -> str:
    raw = "".join(run).encode("utf-16-be")
    b64 = base64.b64encode(raw).decode("ascii").rstrip("=")
    return "&" + b64.replace("/", ",") + "-"


def encode(name: str) -> str:
    """Encode a Unicode mailbox name for the wire."""
    out: List[str] = []
    run: List[str] = []
    for ch in name:
        if _is_direct(ch):
            if run:
                out.append(_encode_run(run))
                run = []
            out.append("&-" if ch == "&" else ch)
        else:
            run.append(ch)
    if run:
        out.append(_encode_run(run))
    return "".join(out)


def decode(name: str) -> str:
    """Decode a wire mailbox name to Unicode.

    Malformed shift sequences (an "&" with no closing "-") are kept
    verbatim rather than rejected, since servers occasionally return
    unencoded names.
    """
    out: List[str] = []
    i = 0
    length = len(name)
    while i < length:
        ch = name[i]
        if ch != "&":
            out.append(ch)
            i += 1
            continue
        end = name.find("-", i + 1)
        if end == -1:
            out.append(name[i:])
            break
        chunk = name[i + 1 : end]
        if not chunk:
            out.append("&")
        else:
            b64 = chunk.replace(",", "/")
            b64 += "=" * (-len(b64) % 4)
            out.append(base64.b64decode(b64).decode("utf-16-be", errors="replace"))
        i = end + 1
    return "".join(out)
