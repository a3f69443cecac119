"""IMAP response grammar: literals, tokens, UID sets and untagged data.

A server response is read as a list of *segments*: text lines and the
literals between them. A line ending in ``{N}`` announces a literal of
exactly N bytes, after which the same response continues on the next
line. :func:`read_response` collects those segments from a
:class:`~mailwire.transport.LineReader`; :func:`tokenize` turns them into
nested Python lists so FETCH, LIST and SEARCH data can be picked apart
without regular expressions over raw text.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from mailwire.errors import MailConnectionError
from mailwire.models import MailboxInfo
from mailwire.transport import LineReader
from mailwire import utf7

LITERAL_MARKER = re.compile(r"\{(\d+)\+?\}$")
_RESPONSE_CODE = re.compile(r"\[([A-Za-z0-9.\-]+)(?: ([^\]]*))?\]")
_MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
           "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


@dataclass(frozen=True)
class Literal:
    """A literal from a server response.

    ``size`` is the declared byte count. ``data`` holds the bytes, or None
    when the literal was consumed and discarded.
    """

    size: int
    data: Optional[bytes]

    @property
    def discarded(self) -> bool:
        return self.data is None


Segment = Union[str, Literal]


async def read_response(
    reader: LineReader,
    first_line: str,
    max_literal: Optional[int] = None,
) -> List[Segment]:
    """Collect one complete response starting with *first_line*.

    Every literal is consumed with an exact byte count. Literals larger
    than *max_literal* are read and thrown away, leaving a placeholder
    whose ``data`` is None.
    """
    segments: List[Segment] = []
    line = first_line
    while True:
        segments.append(line)
        match = LITERAL_MARKER.search(line)
        if not match:
            return segments
        size = int(match.group(1))
        if max_literal is not None and size > max_literal:
            await reader.read_exact(size, keep=0)
            segments.append(Literal(size, None))
        else:
            segments.append(Literal(size, await reader.read_exact(size)))
        next_line = await reader.read_line()
        if next_line is None:
            raise MailConnectionError("Connection closed in the middle of a response")
        line = next_line


def tokenize(segments: Sequence[Segment]) -> List[Any]:
    """Tokenize response segments into nested lists.

    Atoms and quoted strings become ``str``, ``NIL`` becomes None,
    parenthesized lists become ``list`` and literals stay
    :class:`Literal`. Square-bracketed sections such as
    ``BODY[HEADER.FIELDS (DATE)]<0>`` are kept together as one atom.
    """
    root: List[Any] = []
    stack: List[List[Any]] = [root]

    for segment in segments:
        if isinstance(segment, Literal):
            stack[-1].append(segment)
            continue
        text = segment
        i = 0
        length = len(text)
        while i < length:
            ch = text[i]
            if ch == " ":
                i += 1
            elif ch == "(":
                child: List[Any] = []
                stack[-1].append(child)
                stack.append(child)
                i += 1
            elif ch == ")":
                if len(stack) > 1:
                    stack.pop()
                i += 1
            elif ch == '"':
                value, i = _read_quoted(text, i + 1)
                stack[-1].append(value)
            elif ch == "{" and LITERAL_MARKER.fullmatch(text, i):
                # the literal itself is the next segment
                break
            else:
                atom, i = _read_atom(text, i)
                stack[-1].append(None if atom.upper() == "NIL" else atom)
    return root


def _read_quoted(text: str, i: int) -> Tuple[str, int]:
    out = []
    length = len(text)
    while i < length:
        ch = text[i]
        if ch == "\\" and i + 1 < length:
            out.append(text[i + 1])
            i += 2
        elif ch == '"':
            return "".join(out), i + 1
        else:
            out.append(ch)
            i += 1
    return "".join(out), i


def _read_atom(text: str, i: int) -> Tuple[str, int]:
    start = i
    depth = 0
    length = len(text)
    while i < length:
        ch = text[i]
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth = max(0, depth - 1)
        elif depth == 0 and ch in ' ()"':
            break
        i += 1
    return text[start:i], i


def fetch_items(tokens: List[Any]) -> Dict[str, Any]:
    """Turn the parenthesized list of a FETCH response into a dict.

    ``tokens`` is the tokenized ``* n FETCH (...)`` response. Keys are
    upper-cased data item names, e.g. ``UID``, ``FLAGS``,
    ``BODY[HEADER.FIELDS (DATE SUBJECT)]`` or ``BODY[TEXT]<0>``.
    """
    payload: List[Any] = []
    for token in tokens:
        if isinstance(token, list):
            payload = token
            break
    items: Dict[str, Any] = {}
    for idx in range(0, len(payload) - 1, 2):
        key = payload[idx]
        if isinstance(key, str):
            items[key.upper()] = payload[idx + 1]
    return items


def find_section(items: Dict[str, Any], prefix: str) -> Any:
    """Return the first FETCH item whose key starts with *prefix*."""
    prefix = prefix.upper()
    for key, value in items.items():
        if key.startswith(prefix):
            return value
    return None


def item_bytes(value: Any) -> Optional[bytes]:
    """Bytes of a FETCH value given as a literal or a quoted string."""
    if isinstance(value, Literal):
        return value.data
    if isinstance(value, str):
        return value.encode("utf-8")
    return None


def flatten(tokens: Iterable[Any]) -> Iterable[str]:
    """Yield every string atom in a nested token list."""
    for token in tokens:
        if isinstance(token, list):
            yield from flatten(token)
        elif isinstance(token, str):
            yield token


def compact_uids(uids: Iterable[int]) -> str:
    """Compact UIDs into an IMAP sequence set.

    The input is sorted and deduplicated, then each run of consecutive
    numbers becomes ``start:end`` and isolated numbers stay single:
    ``{1, 2, 3, 5, 7, 8, 9}`` → ``"1:3,5,7:9"``.

    Raises:
        ValueError: If any UID is not a positive integer.
    """
    ordered = sorted(set(uids))
    if ordered and ordered[0] < 1:
        raise ValueError(f"UIDs must be positive integers, got {ordered[0]}")

    parts: List[str] = []
    start = prev = None
    for uid in ordered:
        if prev is not None and uid == prev + 1:
            prev = uid
            continue
        if start is not None:
            parts.append(str(start) if start == prev else f"{start}:{prev}")
        start = prev = uid
    if start is not None:
        parts.append(str(start) if start == prev else f"{start}:{prev}")
    return ",".join(parts)


def uid_set_expand(uid_set: str) -> List[int]:
    """Expand an IMAP sequence set into an ascending list of UIDs.

    Inverse of :func:`compact_uids`. ``*`` is not supported since its
    value depends on the mailbox.
    """
    uids = set()
    for part in filter(None, uid_set.split(",")):
        if ":" in part:
            low, high = (int(v) for v in part.split(":", 1))
            if low > high:
                low, high = high, low
            uids.update(range(low, high + 1))
        else:
            uids.add(int(part))
    return sorted(uids)


def quote(value: str) -> str:
    """Quote a string per RFC 3501, escaping backslashes and quotes."""
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def format_internal_date(value: datetime) -> str:
    """Format a datetime as an IMAP date-time in UTC (``17-Jul-1996 02:44:25 +0000``)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return (
        f"{value.day:02d}-{_MONTHS[value.month - 1]}-{value.year} "
        f"{value.hour:02d}:{value.minute:02d}:{value.second:02d} +0000"
    )


def tagged_status(line: str, tag: str) -> Tuple[str, str]:
    """Split a tagged completion line into (status, text)."""
    rest = line[len(tag):].strip()
    status, _, text = rest.partition(" ")
    return status.upper(), text


def response_code(line: str) -> Optional[Tuple[str, List[str]]]:
    """Extract a bracketed response code, e.g. ``[UNSEEN 2]`` → ("UNSEEN", ["2"])."""
    match = _RESPONSE_CODE.search(line)
    if not match:
        return None
    args = (match.group(2) or "").split()
    return match.group(1).upper(), args


def untagged_number(line: str, keyword: str) -> Optional[int]:
    """Return n for an untagged ``* n KEYWORD`` line, else None."""
    parts = line.split(" ", 3)
    if len(parts) >= 3 and parts[0] == "*" and parts[1].isdigit() and parts[2].upper() == keyword:
        return int(parts[1])
    return None


def parse_search(line: str) -> List[int]:
    """Numbers from a ``* SEARCH`` line (empty list for a bare ``* SEARCH``)."""
    return [int(tok) for tok in line.split()[2:] if tok.isdigit()]


def parse_capabilities(line: str) -> List[str]:
    """Capability tokens from ``* CAPABILITY ...`` or an ``[CAPABILITY ...]`` code."""
    code = response_code(line)
    if code and code[0] == "CAPABILITY":
        return code[1]
    return line.split()[2:]


def parse_list(segments: Sequence[Segment]) -> Optional[MailboxInfo]:
    """Parse a ``* LIST (attrs) "delim" name`` response."""
    tokens = tokenize(segments)
    if len(tokens) < 5 or str(tokens[1]).upper() != "LIST":
        return None
    attributes, delimiter, raw_name = tokens[2], tokens[3], tokens[4]
    if isinstance(raw_name, Literal):
        raw_name = (raw_name.data or b"").decode("utf-8", errors="replace")
    if raw_name is None:
        return None
    name = utf7.decode(str(raw_name))
    path = name.replace(delimiter, "/") if delimiter else name
    attrs = tuple(a for a in attributes if isinstance(a, str)) if isinstance(attributes, list) else ()
    return MailboxInfo(name=name, path=path, delimiter=delimiter, attributes=attrs)
