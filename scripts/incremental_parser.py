#!/usr/bin/env python3
"""
Incremental vulnerability-record parser.

The model is asked for one JSON object with a single array-valued key whose
elements are findings.  That document is only valid JSON once the last delta
arrives, but each element is complete as soon as its own object closes.  This
parser scans only newly appended text, one character at a time, tracking:

- nesting depth (``{`` / ``[`` open, ``}`` / ``]`` close)
- whether the cursor is inside a string literal
- whether the previous character was a backslash inside a string

Only the array under the top-level ``"vulnerabilities"`` key is tracked;
any other array is scanned past.  When an object that opened directly inside
the findings array closes, the slice holding it is decoded once and
validated.  Valid records are returned to the caller immediately; invalid
ones are skipped and never retried.

This is a bespoke depth/quote scanner, not a general streaming JSON parser:
it assumes one array of flat-ish objects.  A general incremental tokenizer
can replace it behind the same ``feed`` / ``parsed_count`` interface.

At stream end nothing is forced through; callers strict-parse ``text`` as a
cross-check and treat records already returned here as authoritative.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from schemas.pipeline import FINDINGS_KEY, Finding, validate_finding

logger = logging.getLogger(__name__)


class IncrementalRecordParser:
    """Surface findings from a growing JSON document as each one closes.

    One instance per analysis run.  Not thread-safe.
    """

    def __init__(self) -> None:
        self._text = ""
        self._cursor = 0  # next character to scan; only moves forward
        self._depth = 0
        self._in_string = False
        self._escape = False
        self._string_start = 0
        # Most recent string closed directly inside the top-level object
        self._last_key: Optional[str] = None
        # Depth inside the findings array, None until its "[" is seen
        self._array_depth: Optional[int] = None
        self._element_start: Optional[int] = None
        self._parsed = 0
        self._skipped = 0

    @property
    def text(self) -> str:
        """Everything fed so far, for the final strict parse."""
        return self._text

    @property
    def skipped_count(self) -> int:
        return self._skipped

    def parsed_count(self) -> int:
        """Number of validated records emitted so far.  Never decreases."""
        return self._parsed

    def feed(self, text_delta: str) -> List[Finding]:
        """Append *text_delta* and return findings whose objects just closed."""
        if not text_delta:
            return []
        self._text += text_delta

        emitted: List[Finding] = []
        text = self._text
        for pos in range(self._cursor, len(text)):
            finding = self._scan_char(text[pos], pos)
            if finding is not None:
                emitted.append(finding)
        self._cursor = len(text)
        return emitted

    def _scan_char(self, char: str, pos: int) -> Optional[Finding]:
        if self._in_string:
            if self._escape:
                self._escape = False
            elif char == "\\":
                self._escape = True
            elif char == '"':
                self._in_string = False
                if self._depth == 1:
                    self._last_key = self._text[self._string_start + 1:pos]
            return None

        if char == '"':
            self._in_string = True
            self._string_start = pos
        elif char == "[":
            self._depth += 1
            # The findings array is the value of FINDINGS_KEY in the top-level object
            if (
                self._array_depth is None
                and self._depth == 2
                and self._last_key == FINDINGS_KEY
            ):
                self._array_depth = self._depth
        elif char == "{":
            if self._array_depth is not None and self._depth == self._array_depth:
                self._element_start = pos
            self._depth += 1
        elif char == "}":
            self._depth -= 1
            if (
                self._element_start is not None
                and self._depth == self._array_depth
            ):
                start, self._element_start = self._element_start, None
                return self._commit(self._text[start:pos + 1])
        elif char == "]":
            if self._array_depth is not None and self._depth == self._array_depth:
                # Findings array closed; another array may still follow.
                self._array_depth = None
                self._element_start = None
            self._depth -= 1
        return None

    def _commit(self, element: str) -> Optional[Finding]:
        try:
            raw = json.loads(element)
        except json.JSONDecodeError as exc:
            self._skipped += 1
            logger.warning("Skipping undecodable finding element: %s", exc)
            return None

        finding = validate_finding(raw)
        if finding is None:
            self._skipped += 1
            logger.warning("Skipping finding element that failed validation")
            return None

        self._parsed += 1
        return finding


__all__ = ["IncrementalRecordParser"]
