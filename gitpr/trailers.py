#!/usr/bin/env python3

import re
from typing import List, Tuple

TRAILER_RE = re.compile(r"^([A-Za-z0-9_-]+)(\s*:\s*)(.*)$")
CONTINUATION_RE = re.compile(r"^\s+\S.*$")

# Lines git itself appends; one of these makes a mostly-prose paragraph
# count as trailers
GIT_GENERATED_PREFIXES = ["Signed-off-by: ", "(cherry picked from commit "]

# Trailer keys we care about.  Keys are case-insensitive; we store them
# lower-cased.
KEY_REMOTE_REF = "remote-ref"
KEY_TAGS = "tags"
KEY_PR = "pr"

Trailer = Tuple[str, str]


def parse_message(message: str) -> Tuple[str, str, str]:
    """
    Split a commit message into title, body and the raw trailer block,
    following the rules of git interpret-trailers: the trailer block is
    the last paragraph, and it either consists only of "Key: value"
    lines or has a git-generated line and at least 25% trailer lines.

    Returns: (title, body, trailers); body and trailers may be ""
    """
    if not message:
        return "", "", ""

    lines = message.splitlines()
    subject = lines[0].strip()
    rest = lines[1:]
    if not rest:
        return subject, "", ""

    start = find_trailer_block_start(rest)
    if start == -1:
        return subject, "\n".join(rest).strip(), ""
    return (
        subject,
        "\n".join(rest[:start]).strip(),
        "\n".join(rest[start:]).strip(),
    )


def find_trailer_block_start(lines: List[str]) -> int:
    """
    Index into lines (the message without its title) of the first line
    of the trailer block, or -1 if there is none.
    """
    if not any(line.strip() for line in lines):
        return -1

    # The trailer block must be preceded by a blank line; the one
    # separating title and body counts.
    blank_indices = [i for i, line in enumerate(lines) if not line.strip()]
    if not blank_indices:
        return -1

    end = len(lines)
    while end > 0 and not lines[end - 1].strip():
        end -= 1

    candidates = [i for i in blank_indices if i < end]
    if not candidates:
        return -1
    start = candidates[-1] + 1
    if is_trailer_block(lines[start:end]):
        return start
    return -1


def is_trailer_block(lines: List[str]) -> bool:
    content_lines = [line for line in lines if line.strip()]
    if not content_lines:
        return False

    trailers = 0
    prose = 0
    git_generated = False
    for line in content_lines:
        if CONTINUATION_RE.match(line):
            # Folded value of the previous trailer
            continue
        if any(line.startswith(prefix) for prefix in GIT_GENERATED_PREFIXES):
            git_generated = True
            trailers += 1
        elif TRAILER_RE.match(line):
            trailers += 1
        else:
            prose += 1

    if trailers and not prose:
        return True
    return git_generated and trailers * 3 >= prose


def parse_trailers(block: str) -> List[Trailer]:
    """
    Split a raw trailer block into (key, value) pairs.  Keys are
    lower-cased; when a key repeats, the last value wins but the
    position of the first occurrence is kept.
    """
    out: List[Trailer] = []
    for line in block.splitlines():
        m = TRAILER_RE.match(line.strip())
        if not m:
            continue
        key, value = m.group(1).lower(), m.group(3).strip()
        out = set_trailer(out, key, value)
    return out


def get_trailer(trailers: List[Trailer], key: str) -> str:
    key = key.lower()
    for k, v in trailers:
        if k == key:
            return v
    return ""


def set_trailer(trailers: List[Trailer], key: str, value: str) -> List[Trailer]:
    key = key.lower()
    out = []
    found = False
    for k, v in trailers:
        if k == key:
            out.append((k, value))
            found = True
        else:
            out.append((k, v))
    if not found:
        out.append((key, value))
    return out


def format_key(key: str) -> str:
    """
    >>> format_key("remote-ref")
    'Remote-Ref'
    """
    return "-".join(w[:1].upper() + w[1:] for w in key.lower().split("-"))


def format_trailers(trailers: List[Trailer]) -> str:
    # Remote-Ref goes last so it is easy to spot in git log
    ordered = sorted(trailers, key=lambda kv: (kv[0] == KEY_REMOTE_REF, kv[0]))
    return "\n".join("{}: {}".format(format_key(k), v) for k, v in ordered)


def format_message(title: str, body: str, trailers: List[Trailer]) -> str:
    parts = [title]
    if body:
        parts.append(body)
    if trailers:
        parts.append(format_trailers(trailers))
    return "\n\n".join(parts)
