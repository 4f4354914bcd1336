"""Content filter: include/exclude keyword rules applied before scoring.

Classification (``check_content_rules``) is pure and synchronous. Rule
lookup (``ContentRulesCache``) goes through Redis with the epoch row as the
source of truth, and fails open: if neither can be read, no rules apply and
scoring proceeds unfiltered.
"""

import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterable, TypeVar

from src.governance.config import GovernanceConfig
from src.governance.repository import EpochRepository
from src.governance.schemas import ContentRules

logger = logging.getLogger(__name__)

# Keywords that get strict phrase/boundary matching
ASCII_KEYWORD_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\s-]*$")

# Boundary = start/end of text or any char that is not a letter or digit.
# [\W_] is "not a unicode letter or digit" under Python's str regex.
_BOUNDARY_BEFORE = r"(?:^|[\W_])"
_BOUNDARY_AFTER = r"(?=$|[\W_])"

REASON_EXCLUDED = "excluded_keyword"
REASON_NO_INCLUDE_MATCH = "no_include_match"
REASON_NO_TEXT = "no_text_with_include_filter"

T = TypeVar("T")


@dataclass(frozen=True)
class FilterResult:
    """Outcome of checking one post's text against the content rules."""

    passes: bool
    reason: str | None = None
    matched_keyword: str | None = None


@lru_cache(maxsize=1024)
def keyword_matcher(normalized_keyword: str) -> Callable[[str], bool]:
    """Compile a matcher for an already lower-cased, stripped keyword.

    ASCII keywords match as whole phrases: "ai" does not match "again", and
    "machine learning" also matches "machine-learning" or "machine_learning".
    Anything else (emoji, non-Latin scripts, symbols) falls back to substring
    matching.
    """
    if not ASCII_KEYWORD_PATTERN.match(normalized_keyword):
        return lambda text: normalized_keyword in text

    parts = [re.escape(part) for part in normalized_keyword.split() if part]
    phrase = r"[\s_-]+".join(parts)
    pattern = re.compile(_BOUNDARY_BEFORE + phrase + _BOUNDARY_AFTER)
    return lambda text: pattern.search(text) is not None


def matches_keyword(lower_text: str, keyword: str) -> bool:
    normalized = keyword.strip().lower()
    if not normalized:
        return False
    return keyword_matcher(normalized)(lower_text)


def check_content_rules(text: str | None, rules: ContentRules) -> FilterResult:
    """
    Classify post text against include/exclude rules.

    Precedence:
        1. No rules configured: pass.
        2. No text (media-only): fail if any include rule exists, else pass.
        3. Any exclude keyword matches: fail.
        4. Include rules exist: pass only if one matches.

    Args:
        text: Post text, or None for media-only posts.
        rules: Current content rules.

    Returns:
        FilterResult with the reason and matched keyword where relevant.
    """
    if rules.is_empty:
        return FilterResult(passes=True)

    if not text:
        if rules.include_keywords:
            return FilterResult(passes=False, reason=REASON_NO_TEXT)
        return FilterResult(passes=True)

    lower_text = text.lower()

    for keyword in rules.exclude_keywords:
        if matches_keyword(lower_text, keyword):
            return FilterResult(
                passes=False, reason=REASON_EXCLUDED, matched_keyword=keyword
            )

    if rules.include_keywords:
        for keyword in rules.include_keywords:
            if matches_keyword(lower_text, keyword):
                return FilterResult(passes=True, matched_keyword=keyword)
        return FilterResult(passes=False, reason=REASON_NO_INCLUDE_MATCH)

    return FilterResult(passes=True)


def filter_posts(
    posts: Iterable[T],
    rules: ContentRules,
    text_of: Callable[[T], str | None] | None = None,
) -> tuple[list[T], int]:
    """Apply the rules to a batch.

    ``text_of`` extracts a post's text; by default the ``text`` attribute.

    Returns:
        (passing posts in input order, number filtered out)
    """
    text_of = text_of or (lambda post: getattr(post, "text", None))
    passed: list[T] = []
    filtered = 0
    for post in posts:
        if check_content_rules(text_of(post), rules).passes:
            passed.append(post)
        else:
            filtered += 1
    return passed, filtered


class ContentRulesCache:
    """Redis-cached view of the current epoch's content rules.

    Lookup order: Redis key, then the current epoch row (repopulating Redis),
    then empty rules. Governance mutations call ``invalidate`` after commit.
    """

    def __init__(
        self,
        redis_client: Any,
        epoch_repo: EpochRepository,
        config: GovernanceConfig | None = None,
    ) -> None:
        self._redis = redis_client
        self._epochs = epoch_repo
        self._config = config or GovernanceConfig()

    @property
    def key(self) -> str:
        return self._config.content_rules_cache_key

    async def _read_cache(self) -> ContentRules | None:
        try:
            cached = await self._redis.get(self.key)
        except Exception as e:
            logger.warning("Failed to read content rules from Redis, using database: %s", e)
            return None

        if not cached:
            return None

        try:
            data = json.loads(cached)
        except (TypeError, ValueError) as e:
            logger.warning("Cached content rules unparseable, using database: %s", e)
            return None

        if not isinstance(data, dict) or not isinstance(
            data.get("include_keywords"), list
        ) or not isinstance(data.get("exclude_keywords"), list):
            logger.warning("Cached content rules had unexpected shape, using database")
            return None

        return ContentRules.from_dict(data)

    async def get_current(self) -> ContentRules:
        """Current content rules; empty rules if nothing can be loaded."""
        cached = await self._read_cache()
        if cached is not None:
            return cached

        try:
            epoch = await self._epochs.get_current()
        except Exception as e:
            logger.error("Failed to load content rules from database, filtering disabled: %s", e)
            return ContentRules()

        if epoch is None:
            logger.warning("No active epoch found for content rules")
            return ContentRules()

        rules = epoch.content_rules
        try:
            await self._redis.set(
                self.key,
                json.dumps(rules.to_dict()),
                ex=self._config.content_rules_cache_ttl_seconds,
            )
        except Exception as e:
            logger.warning("Failed to cache content rules in Redis: %s", e)

        logger.debug(
            "Content rules loaded from database (%d include, %d exclude)",
            len(rules.include_keywords),
            len(rules.exclude_keywords),
        )
        return rules

    async def invalidate(self) -> None:
        try:
            await self._redis.delete(self.key)
            logger.debug("Content rules cache invalidated")
        except Exception as e:
            logger.error("Failed to invalidate content rules cache: %s", e)
