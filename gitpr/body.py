#!/usr/bin/env python3

"""
Pull request descriptions: what we write when submitting a stack, and
what we strip off again when a PR is squash-merged.

A generated description looks like this:

    <text the author typed on GitHub, or the empty template>

    <!-- git-pr: everything below is generated -->

    <commit message body>

    ---

    * 🍀 #12 (👉[abcdef12](https://github.com/o/n/commit/abcdef12))
    * ◻️ #13

The part above the delimiter belongs to the author and survives
resubmission.  The footer below "---" is the stack listing; it is
useless in the squash commit, so cleanup_body() removes it.
"""

import re
from typing import List, Optional, Sequence

import gitpr.github_utils
from gitpr.stack import Commit

BODY_TEMPLATE = """
# Summary

<br><br><br><br>
"""

DELIMITER = "<!-- git-pr: everything below is generated -->"

EMOJIS = ["🍀", "🌻", "🍄", "🐳", "🦊", "🐝", "🌵", "🍉", "🦉", "🐙"]

RE_DRAFT = re.compile(r"\[draft\]", re.IGNORECASE)

# <!-- comment --> and <!--- comment --->
HTML_COMMENT_OPEN = "<!--"
HTML_COMMENT_CLOSE = "-->"

# [//]: # (comment), []: # "comment", ...
RE_MARKDOWN_COMMENT = re.compile(
    r"""^\[[\w/]*]:\s*#\s*[("'].*[)"']?\s*$""", re.MULTILINE
)

# A line of the stack footer, e.g. "* ◻️ #123"
RE_PR_REFERENCE = re.compile(r"^\*.*#\d+")

RE_MULTIPLE_BLANK_LINES = re.compile(r"\n{3,}")

RE_BR = re.compile(r"<br\s*/?>")

# Only "# Summary", whitespace and line breaks
RE_EMPTY_TEMPLATE = re.compile(r"#\s*Summary(?:\s|<br\s*/?>)*")

# "# Word", "## Word", ...
RE_ATX_HEADING = re.compile(r"#+[^\S\n]*\w+")

RE_WORD = re.compile(r"\w+")

# The underline of a setext heading
RE_SETEXT_UNDERLINE = re.compile(r"[-=]+")


def cleanup_body(body: str) -> str:
    """
    Turn a PR description into the body of its squash commit: drop
    comments, the generated stack footer, and formatting debris.
    Returns "" when nothing but template headings is left.

    >>> cleanup_body("Fix it.\\n\\n---\\n\\n* ◻️ #12\\n")
    'Fix it.'
    """
    if not body:
        return ""
    body = body.replace("\r\n", "\n")
    body = remove_comments(body)
    body = remove_stack_footer(body)
    body = RE_MULTIPLE_BLANK_LINES.sub("\n\n", body)
    body = remove_trailing_breaks(body)
    body = body.strip()
    if is_empty_body(body):
        return ""
    return body


def remove_comments(body: str) -> str:
    """
    Removing a comment can splice its surroundings into a new one, as in
    "<!-<!-- x -->- y -->", so keep going until nothing changes.
    """
    while True:
        cleaned = RE_MARKDOWN_COMMENT.sub("", remove_html_comments(body))
        if cleaned == body:
            return cleaned
        body = cleaned


def remove_html_comments(body: str) -> str:
    pieces: List[str] = []
    pos = 0
    while True:
        start = body.find(HTML_COMMENT_OPEN, pos)
        if start < 0:
            break
        end = body.find(HTML_COMMENT_CLOSE, start + len(HTML_COMMENT_OPEN))
        if end < 0:
            # Unterminated, like every later opener
            break
        pieces.append(body[pos:start])
        pos = end + len(HTML_COMMENT_CLOSE)
    pieces.append(body[pos:])
    return "".join(pieces)


def remove_trailing_breaks(body: str) -> str:
    end = len(body.rstrip())
    while body.endswith(">", 0, end):
        start = body.rfind("<", 0, end)
        if start < 0 or not RE_BR.fullmatch(body, start, end):
            break
        end = start
        while end > 0 and body[end - 1].isspace():
            end -= 1
    return body[:end]


def remove_stack_footer(body: str) -> str:
    lines = body.split("\n")
    start = find_stack_footer_start(lines)
    if start is None:
        return body
    return "\n".join(lines[:start])


def find_stack_footer_start(lines: List[str]) -> Optional[int]:
    """
    The footer starts at a "---" line that follows a blank line and is
    followed, anywhere below, by a PR reference.  We cut at the first
    blank line of the run above the separator.
    """
    last_reference = max(
        (i for i, line in enumerate(lines) if RE_PR_REFERENCE.match(line.strip())),
        default=0,
    )
    for i, line in enumerate(lines[:last_reference]):
        if line.strip() != "---":
            continue
        if i == 0 or lines[i - 1].strip():
            # "Title\n---" is a setext heading, not a separator
            continue
        j = i - 1
        while j > 0 and not lines[j - 1].strip():
            j -= 1
        return j
    return None


def is_empty_body(body: str) -> bool:
    trimmed = body.strip()
    return bool(RE_EMPTY_TEMPLATE.fullmatch(trimmed)) or only_headings(trimmed)


def only_headings(body: str) -> bool:
    """
    Whether every non-blank line is a single-word heading, either
    "# Word" or "Word" underlined with "---" or "===".
    """
    lines = [line.strip() for line in body.split("\n") if line.strip()]
    i = 0
    while i < len(lines):
        if RE_ATX_HEADING.fullmatch(lines[i]):
            i += 1
        elif (
            i + 1 < len(lines)
            and RE_WORD.fullmatch(lines[i])
            and RE_SETEXT_UNDERLINE.fullmatch(lines[i + 1])
        ):
            i += 2
        else:
            return False
    return True


def user_part(body: str) -> str:
    """
    The author-owned part of an existing description: everything above
    our delimiter, or the whole thing if we never wrote to it.
    """
    idx = body.find(DELIMITER)
    if idx >= 0:
        return body[:idx].strip()
    return body.strip()


def is_draft(title: str) -> bool:
    return bool(RE_DRAFT.search(title))


def stack_line(
    commit: Commit,
    current: Commit,
    repo: gitpr.github_utils.GitHubRepoNameWithOwner,
) -> str:
    commit_url = "https://{}/{}/{}/commit/{}".format(
        repo["github_url"], repo["owner"], repo["name"], commit.short_hash
    )
    if commit.hash == current.hash:
        marker = EMOJIS[commit.pr_number % len(EMOJIS)]
        ref = "#{} (👉[{}]({}))".format(commit.pr_number, commit.short_hash, commit_url)
    elif commit.pr_number:
        marker = "◻️"
        ref = "#{}".format(commit.pr_number)
    else:
        # Someone else's commit that we did not submit
        marker = "◻️"
        ref = "[{} ({})]({})".format(commit.title, commit.short_hash, commit_url)
    return "* {} {}".format(marker, ref)


def generate_body(
    commit: Commit,
    stack: Sequence[Commit],
    repo: gitpr.github_utils.GitHubRepoNameWithOwner,
    existing_body: str = "",
) -> str:
    """
    Build the description for commit's PR.  Text the author wrote on
    GitHub is kept; if there is none and the commit message has no body
    either, we put in the empty template for them to fill out.
    """
    parts = []
    kept = user_part(existing_body)
    if kept:
        parts.append(kept)
    elif not commit.message:
        parts.append(BODY_TEMPLATE.strip())
    parts.append(DELIMITER)
    if commit.message:
        parts.append(commit.message)
    parts.append("---")
    parts.append("\n".join(stack_line(c, commit, repo) for c in stack))
    return "\n\n".join(parts) + "\n"
