"""
Diagnoser.

Matches a blob of log text against every registered signature and produces at
most one Issue per signature per blob. Pure: no I/O, no shared state.
"""

import logging
from typing import Optional

from autoheal.models import Issue, RunRef, Signature
from autoheal.signatures import SignatureRegistry

logger = logging.getLogger(__name__)

MAX_EXCERPT_CHARS = 500


def tail_window(text: str, max_lines: int, max_bytes: int) -> str:
    """
    Return the most recent part of text: at most max_lines lines and at most
    max_bytes bytes (UTF-8), whichever is smaller. Non-positive limits disable
    the corresponding bound.
    """
    if not text:
        return ""

    if max_lines > 0:
        lines = text.splitlines()
        if len(lines) > max_lines:
            text = "\n".join(lines[-max_lines:])

    if max_bytes > 0:
        encoded = text.encode("utf-8")
        if len(encoded) > max_bytes:
            text = encoded[-max_bytes:].decode("utf-8", errors="ignore")
            # Drop the partial first line left by the byte cut
            newline = text.find("\n")
            if newline != -1:
                text = text[newline + 1:]

    return text


def excerpt_at(text: str, start: int, end: int) -> str:
    """The full line(s) containing text[start:end], trimmed to MAX_EXCERPT_CHARS."""
    line_start = text.rfind("\n", 0, start) + 1
    line_end = text.find("\n", end)
    if line_end == -1:
        line_end = len(text)
    excerpt = text[line_start:line_end].strip()
    if len(excerpt) > MAX_EXCERPT_CHARS:
        excerpt = excerpt[:MAX_EXCERPT_CHARS] + "..."
    return excerpt


class Diagnoser:
    """Turns raw collector text into Issues."""

    def __init__(
        self,
        registry: SignatureRegistry,
        max_lines: int = 500,
        max_bytes: int = 256 * 1024,
    ):
        self.registry = registry
        self.max_lines = max_lines
        self.max_bytes = max_bytes

    def diagnose(self, text: str, source: str, run: Optional[RunRef] = None) -> list[Issue]:
        """
        Scan the recent window of text.

        Returns one Issue per matching signature; repeated matches of the same
        signature in one blob collapse into the first match.
        """
        window = tail_window(text, self.max_lines, self.max_bytes)
        if not window.strip():
            return []

        issues = []
        for signature in self.registry.all():
            issue = self._match(signature, window, source, run)
            if issue is not None:
                issues.append(issue)

        if issues:
            logger.info(
                f"Diagnosed {len(issues)} issue(s) from {source}: "
                f"{', '.join(i.signature_id for i in issues)}"
            )
        return issues

    def _match(
        self, signature: Signature, window: str, source: str, run: Optional[RunRef]
    ) -> Optional[Issue]:
        match = signature.search(window)
        if match is None:
            return None
        return Issue(
            signature_id=signature.id,
            source=source,
            raw_excerpt=excerpt_at(window, match.start(), match.end()),
            severity=signature.severity,
            run=run,
        )
