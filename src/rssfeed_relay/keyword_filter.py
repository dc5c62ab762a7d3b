"""Keyword whitelist/blacklist filtering."""

from collections.abc import Iterable, Sequence

from rssfeed_relay.models import FeedItem, FilterResult, KeywordPolicy


def matches(text: str, whitelist: Sequence[str], blacklist: Sequence[str]) -> bool:
    """Decide whether text passes a keyword policy.

    Matching is case-insensitive substring containment. An empty list
    places no constraint.

    Args:
        text: Text to inspect.
        whitelist: At least one term must occur, when non-empty.
        blacklist: No term may occur, when non-empty.

    Returns:
        True if the text should be delivered.
    """
    haystack = text.lower()
    if whitelist and not any(term.lower() in haystack for term in whitelist):
        return False
    if blacklist and any(term.lower() in haystack for term in blacklist):
        return False
    return True


def item_text(item: FeedItem) -> str:
    return f"{item.title} {item.description} {item.content}"


def apply(items: Iterable[FeedItem], policy: KeywordPolicy | None) -> FilterResult:
    """Split items into those passing ``policy`` and those dropped by it."""
    if policy is None:
        return FilterResult(kept=list(items), dropped=[])

    whitelist = policy.whitelist if policy.whitelist_enabled else []
    blacklist = policy.blacklist if policy.blacklist_enabled else []

    kept, dropped = [], []
    for item in items:
        if matches(item_text(item), whitelist, blacklist):
            kept.append(item)
        else:
            dropped.append(item)
    return FilterResult(kept=kept, dropped=dropped)
