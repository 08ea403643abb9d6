"""Legacy extraction: scrape result items out of free-form model text.

Used only when an agent never called its report tool. Every tagged block
is parsed and the arrays are merged; malformed blocks are skipped. With no
usable block, the first array-shaped JSON fragment in the text is tried.
"""

from __future__ import annotations

import json
import logging
import re

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_decoder = json.JSONDecoder()


def _block_re(tag: str) -> re.Pattern:
    return re.compile(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", re.DOTALL)


def _loads_array(raw: str) -> list | None:
    cleaned = _FENCE_RE.sub("", raw.strip())
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, list) else None


def find_json_array(text: str) -> list | None:
    """First position in ``text`` that decodes to a non-empty JSON array of objects."""
    for match in re.finditer(r"\[", text):
        try:
            value, _ = _decoder.raw_decode(text, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(value, list) and value and all(isinstance(v, dict) for v in value):
            return value
    return None


def extract_tagged_json(text: str, tag: str) -> list:
    """Merge the arrays of every ``<tag>...</tag>`` block in ``text``."""
    items: list = []
    found_block = False
    for number, block in enumerate(_block_re(tag).findall(text), start=1):
        parsed = _loads_array(block)
        if parsed is None:
            logger.warning("Skipping malformed <%s> block %d: %s", tag, number, block.strip()[:200])
            continue
        found_block = True
        items.extend(parsed)
    if found_block:
        return items

    fallback = find_json_array(text)
    return fallback or []


def validate_items(raw_items: list, model: type[BaseModel]) -> list:
    """Validate each raw dict against ``model``, dropping the ones that fail."""
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            continue
        try:
            items.append(model.model_validate(raw))
        except ValidationError as e:
            logger.debug("Dropping invalid %s: %s", model.__name__, e)
    return items
