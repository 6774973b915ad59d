"""
Red-flag scanner — keyword screen over free-text check-in notes.

Terms come from a YAML file with a top-level `terms:` list and are cached
for an hour. A missing or unreadable file falls back to a built-in list.
Matching is case-insensitive; multi-word terms match across any run of
whitespace.
"""
from __future__ import annotations

import re
import time
import structlog
from pathlib import Path
from typing import Callable, Optional

import yaml

logger = structlog.get_logger()

FALLBACK_TERMS: tuple[str, ...] = (
    "bladder",
    "bowel",
    "saddle",
    "numbness",
    "fever",
    "trauma",
    "progressive weakness",
    "loss of control",
    "incontinence",
)

DEFAULT_PATH = Path(__file__).resolve().parent.parent / "config" / "red_flags.yml"
CACHE_TTL_SECONDS = 60 * 60


def _pattern(term: str) -> re.Pattern:
    words = [re.escape(w) for w in term.split()]
    return re.compile(r"\b" + r"\s+".join(words), re.IGNORECASE)


class RedFlagScanner:
    def __init__(
        self,
        path: Optional[str] = None,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.path = Path(path) if path else DEFAULT_PATH
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._terms: Optional[list[str]] = None
        self._patterns: list[tuple[str, re.Pattern]] = []
        self._loaded_at = 0.0

    def _load(self) -> list[str]:
        try:
            with open(self.path) as f:
                raw = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info("red_flags_file_missing", path=str(self.path))
            return list(FALLBACK_TERMS)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("red_flags_load_failed", path=str(self.path), error=str(e))
            return list(FALLBACK_TERMS)

        terms = raw.get("terms") if isinstance(raw, dict) else None
        if not isinstance(terms, list):
            logger.warning("red_flags_file_invalid", path=str(self.path))
            return list(FALLBACK_TERMS)

        cleaned = [str(t).strip().lower() for t in terms if str(t).strip()]
        logger.info("red_flags_loaded", count=len(cleaned), path=str(self.path))
        return cleaned

    def terms(self) -> list[str]:
        now = self._clock()
        if self._terms is None or now - self._loaded_at >= self.ttl_seconds:
            self._terms = self._load()
            self._patterns = [(t, _pattern(t)) for t in self._terms]
            self._loaded_at = now
        return list(self._terms)

    def scan(self, text: Optional[str]) -> list[str]:
        """Terms found in `text`, in list order."""
        if not text:
            return []
        self.terms()
        return [term for term, pattern in self._patterns if pattern.search(text)]

    def clear_cache(self) -> None:
        self._terms = None
        self._patterns = []
        self._loaded_at = 0.0
