"""Decoding of model output into typed records, with explicit fallbacks."""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Generic, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .errors import ModelOutputError

logger = logging.getLogger("parsing")

T = TypeVar("T")

FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n(.*?)\n?```\s*$", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class Parsed(Generic[T]):
    value: T


@dataclass(frozen=True)
class Fallback(Generic[T]):
    value: T
    raw: str
    reason: str


ParseResult = Union[Parsed[T], Fallback[T]]


def decode_json(raw: str, model: Optional[Type[BaseModel]] = None) -> Any:
    """Decode *raw* as JSON, optionally validating it into *model*.

    A Markdown code fence around the JSON is tolerated.
    Raises ModelOutputError on anything else.
    """
    text = raw or ""
    m = FENCE_RE.match(text)
    if m:
        text = m.group(1)
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise ModelOutputError(f"model output is not JSON: {e}") from e
    if model is None:
        return data
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ModelOutputError(f"model output does not match {model.__name__}: {e}") from e


def parse_or(raw: str, fallback: T, model: Optional[Type[BaseModel]] = None) -> ParseResult:
    """Return ``Parsed(value)`` when *raw* decodes, otherwise ``Fallback(fallback)``."""
    try:
        return Parsed(decode_json(raw, model))
    except ModelOutputError as e:
        logger.debug("falling back on unparsable model output: %s", e)
        return Fallback(value=fallback, raw=raw, reason=str(e))
