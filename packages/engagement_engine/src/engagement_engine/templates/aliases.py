"""
Placeholder key aliases.

Templates are authored by hand and mix naming styles (``user_name``,
``userName``, ``firstName``). Every key is canonicalized to snake_case and
looked up through synonym groups so callers can supply any variant.
"""

import re
from collections.abc import Mapping
from typing import Any

# Any provided key in a group satisfies all the others.
KEY_GROUPS: list[tuple[str, ...]] = [
    # Names
    ("user_name", "first_name", "userName", "firstName"),
    ("last_name", "lastName"),
    ("full_name", "fullName"),
    # Contest fields
    ("challenge_title", "contest_title", "contestTitle"),
    ("challenge_description", "contest_description", "contestDescription"),
    ("end_date", "contest_end_date", "contestDeadline"),
    ("prize_amount", "contest_prize", "contestPrize"),
    ("contest_url", "contestUrl"),
    ("results_url", "contestResultsUrl"),
    # User metrics
    ("submissions_count", "user_submissions_count", "submission_count", "submissionsCount", "submissionCount"),
    ("wins_count", "user_wins_count", "win_count", "winsCount", "winCount"),
    ("votes_count", "user_total_votes", "vote_count", "votesCount", "voteCount"),
    # Totals
    ("total_submissions", "total_submissions_count", "totalSubmissions", "totalSubmissionsCount"),
    ("total_votes", "total_votes_count", "totalVotes", "totalVotesCount"),
    ("total_participants", "total_participants_count", "totalParticipants", "totalParticipantsCount"),
    # URLs
    ("dashboard_url", "dashboardUrl"),
    ("unsubscribe_url", "unsubscribeUrl"),
    ("website_url", "websiteUrl"),
]

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-zA-Z0-9]+")
_SNAKE_PART = re.compile(r"_([a-z0-9])")


def to_snake(key: str) -> str:
    """``userName`` / ``user-name`` / ``User Name`` -> ``user_name``."""
    key = _CAMEL_BOUNDARY.sub(r"\1_\2", key)
    key = _NON_ALNUM.sub("_", key)
    return key.strip("_").lower()


def to_camel(key: str) -> str:
    """``user_name`` / ``userName`` -> ``userName``."""
    return _SNAKE_PART.sub(lambda m: m.group(1).upper(), to_snake(key))


def _build_index(groups: list[tuple[str, ...]]) -> dict[str, tuple[str, ...]]:
    index: dict[str, tuple[str, ...]] = {}
    for group in groups:
        canonical = tuple(dict.fromkeys(to_snake(alias) for alias in group))
        for name in canonical:
            index[name] = canonical
    return index


ALIAS_INDEX = _build_index(KEY_GROUPS)


def candidate_keys(key: str) -> list[str]:
    """All spellings to try for a placeholder key, most specific first."""
    snake = to_snake(key)
    candidates = [key, snake, to_camel(snake)]
    for alias in ALIAS_INDEX.get(snake, ()):
        candidates.extend((alias, to_camel(alias)))
    return list(dict.fromkeys(c for c in candidates if c))


MISSING = object()


def lookup(scope: Mapping[str, Any], key: str) -> Any:
    """
    Resolve a key in one scope.

    Returns the module-level sentinel ``MISSING`` when no spelling matches.
    """
    for candidate in candidate_keys(key):
        if candidate in scope:
            return scope[candidate]
    return MISSING
