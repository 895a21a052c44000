from __future__ import annotations
"""
Sindi — In-band Property Tags
==============================
The model sees retrieval results and cites listings through tagged blocks in
the text channel:

  <PROPERTIES_HINTS>{"nearby": [...], "search": [...]}</PROPERTIES_HINTS>   (in)
  <PROPERTIES_CONTEXT>[{...}, ...]</PROPERTIES_CONTEXT>                    (in)
  <PROPERTIES_JSON>["id", ...]</PROPERTIES_JSON>                           (out)

Nothing the model writes inside <PROPERTIES_JSON> is trusted: the stream
guard holds the block back, checks it against this turn's hints and either
re-emits a normalized copy or drops it.
"""

import json
import logging
import re

from sindi.config import RESULTS_RETURN_MAX

logger = logging.getLogger(__name__)

HINTS_OPEN, HINTS_CLOSE = "<PROPERTIES_HINTS>", "</PROPERTIES_HINTS>"
CONTEXT_OPEN, CONTEXT_CLOSE = "<PROPERTIES_CONTEXT>", "</PROPERTIES_CONTEXT>"
JSON_OPEN, JSON_CLOSE = "<PROPERTIES_JSON>", "</PROPERTIES_JSON>"

_JSON_BLOCK_RE = re.compile(r"<PROPERTIES_JSON>([\s\S]*?)</PROPERTIES_JSON>", re.IGNORECASE)
_JSON_OPEN_RE = re.compile(re.escape(JSON_OPEN), re.IGNORECASE)
_JSON_CLOSE_RE = re.compile(re.escape(JSON_CLOSE), re.IGNORECASE)

# A block that has not closed within this many characters is not a block.
BLOCK_MAX_CHARS = 2000

HINTS_INSTRUCTION = (
    "If and only if the user explicitly asked to search/show/find/browse listings in their "
    "current message, end your reply with a <PROPERTIES_JSON> block by copying the IDs verbatim "
    "from the appropriate list in <PROPERTIES_HINTS> (choose \"nearby\" for requests about "
    "nearby/closest/others-like-these; otherwise choose \"search\"). Otherwise, do not include "
    "any <PROPERTIES_JSON> block."
)


def extract_cited_ids(messages: list[dict]) -> list[str]:
    """Ids from the most recent assistant turn that carried a PROPERTIES_JSON block.

    Order is preserved, so the first id is the anchor for proximity search.
    """
    for m in reversed(messages):
        if m.get("role") != "assistant" or not m.get("content"):
            continue
        match = _JSON_BLOCK_RE.search(str(m["content"]))
        if not match:
            continue
        try:
            arr = json.loads(match.group(1).strip())
        except json.JSONDecodeError:
            continue
        if isinstance(arr, list):
            ids: list[str] = []
            for item in arr:
                value = str(item).strip() if item is not None else ""
                if value and value not in ids:
                    ids.append(value)
            return ids
    return []


def render_hints_block(hints: dict[str, list[str]]) -> str:
    payload = {"nearby": list(hints.get("nearby", [])), "search": list(hints.get("search", []))}
    return f"{HINTS_OPEN}{json.dumps(payload)}{HINTS_CLOSE}"


def render_context_block(context: list[dict]) -> str:
    return f"{CONTEXT_OPEN}{json.dumps(context, ensure_ascii=False)}{CONTEXT_CLOSE}"


def validate_properties_block(payload: str, allowed_ids: set[str]) -> list[str] | None:
    """Return the cited ids if the block is well-formed and in policy, else None.

    In policy means: a non-empty JSON array of strings, at most five, no
    duplicates, every id present in this turn's hints.
    """
    if not allowed_ids:
        return None
    try:
        arr = json.loads(payload.strip())
    except json.JSONDecodeError:
        return None
    if not isinstance(arr, list) or not arr or len(arr) > RESULTS_RETURN_MAX:
        return None
    if not all(isinstance(x, str) for x in arr):
        return None
    if len(set(arr)) != len(arr):
        return None
    if any(x not in allowed_ids for x in arr):
        return None
    return arr


def _partial_open_suffix(text: str) -> int:
    """Length of the longest suffix of ``text`` that could begin JSON_OPEN, in any case."""
    for n in range(min(len(JSON_OPEN) - 1, len(text)), 0, -1):
        if JSON_OPEN.startswith(text[-n:].upper()):
            return n
    return 0


class PropertiesBlockGuard:
    """Streaming filter that only lets an in-policy PROPERTIES_JSON block through.

    ``feed`` returns the text that is safe to forward now; ``finish`` flushes
    what is left once the model stream ends. Text outside the block is never
    delayed by more than a partial opening tag.
    """

    def __init__(self, allowed_ids: set[str]):
        self.allowed_ids = set(allowed_ids)
        self.cited_ids: list[str] | None = None
        self.discarded = 0
        self._pending = ""
        self._in_block = False

    def feed(self, chunk: str) -> str:
        self._pending += chunk
        out: list[str] = []

        while self._pending:
            if self._in_block:
                close = _JSON_CLOSE_RE.search(self._pending)
                if close is None:
                    if len(self._pending) > BLOCK_MAX_CHARS:
                        self._discard("unterminated")
                        self._pending = ""
                        self._in_block = False
                    break
                payload = self._pending[:close.start()]
                self._pending = self._pending[close.end():]
                self._in_block = False
                out.append(self._close_block(payload))
                continue

            start = _JSON_OPEN_RE.search(self._pending)
            if start is not None:
                out.append(self._pending[:start.start()])
                self._pending = self._pending[start.end():]
                self._in_block = True
                continue

            keep = _partial_open_suffix(self._pending)
            if keep:
                out.append(self._pending[:-keep])
                self._pending = self._pending[-keep:]
            else:
                out.append(self._pending)
                self._pending = ""
            break

        return "".join(out)

    def finish(self) -> str:
        if self._in_block:
            self._discard("truncated")
            self._pending = ""
            self._in_block = False
            return ""
        rest = self._pending
        self._pending = ""
        # a dangling "<PROP..." fragment from a cut-off reply is not text
        if len(rest) > 1:
            return ""
        return rest

    def _close_block(self, payload: str) -> str:
        if self.cited_ids is not None:
            self._discard("duplicate block")
            return ""
        ids = validate_properties_block(payload, self.allowed_ids)
        if ids is None:
            self._discard("out of policy")
            return ""
        self.cited_ids = ids
        return f"{JSON_OPEN}{json.dumps(ids)}{JSON_CLOSE}"

    def _discard(self, reason: str) -> None:
        self.discarded += 1
        logger.warning(f"[tags] dropped PROPERTIES_JSON block ({reason})")
