from __future__ import annotations

from functools import lru_cache

WILDCARD_ONE = '*'
WILDCARD_ANY = '#'


def validate_routing_key(routing_key: str) -> str:
    """Check a publish-side routing key (e.g. ``agenda.election.create``).

    Wildcards belong to bindings only; a published key must be concrete.
    """
    if not isinstance(routing_key, str) or not routing_key:
        raise ValueError('routing_key must be a non-empty string')
    words = routing_key.split('.')
    if any(not w for w in words):
        raise ValueError(f'routing_key has an empty segment: {routing_key!r}')
    if any(w in (WILDCARD_ONE, WILDCARD_ANY) for w in words):
        raise ValueError(f'routing_key must not contain wildcards: {routing_key!r}')
    return routing_key


def validate_pattern(pattern: str) -> str:
    if not isinstance(pattern, str) or not pattern:
        raise ValueError('binding pattern must be a non-empty string')
    if any(not w for w in pattern.split('.')):
        raise ValueError(f'binding pattern has an empty segment: {pattern!r}')
    return pattern


def matches(pattern: str, routing_key: str) -> bool:
    """Topic-exchange match: ``*`` is exactly one word, ``#`` is zero or more words."""
    return _match(tuple(pattern.split('.')), tuple(routing_key.split('.')))


@lru_cache(maxsize=1024)
def _match(pattern: tuple[str, ...], words: tuple[str, ...]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == WILDCARD_ANY:
        # '#' swallows 0..len(words) words
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == WILDCARD_ONE or head == words[0]:
        return _match(rest, words[1:])
    return False
