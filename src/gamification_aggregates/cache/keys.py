from __future__ import annotations

from urllib.parse import quote

from gamification_aggregates.query.types import DateWindow, Scope

_SEP = "|"


def _escape(value: str) -> str:
    # Keep keys readable while making the separators unambiguous.
    return quote(value, safe=" @._-:")


def scope_prefix(scope: Scope) -> str:
    """Prefix shared by every key about `scope`; pair with TTLCache.invalidate_by_prefix."""
    ids = ",".join(_escape(i) for i in scope.ids)
    return f"{scope.kind.value}={ids}{_SEP}"


def make_cache_key(
    operation: str,
    scope: Scope,
    window: DateWindow | None = None,
    *extra: str,
) -> str:
    """
    Deterministic key: scope first (so one scope can be dropped by prefix), then the
    operation name, the window's instant bounds and any operation-specific qualifiers.
    Scope ids arrive sorted, so id order never changes the key.
    """
    parts = [operation]
    if window is not None:
        parts.append(window.cache_token())
    parts.extend(_escape(e) for e in extra)
    return scope_prefix(scope) + _SEP.join(parts)


def key_mentions_scope(key: str, scope: Scope) -> bool:
    """
    True when `key` was made for a scope of the same kind sharing at least one id.

    Multi-id keys (e.g. a KPI lookup for `company=1,2`) are reachable from any of
    their ids, which a plain prefix match would miss.
    """
    head, sep, _ = key.partition(_SEP)
    kind, eq, ids = head.partition("=")
    if not sep or not eq or kind != scope.kind.value:
        return False
    wanted = {_escape(i) for i in scope.ids}
    return not wanted.isdisjoint(ids.split(","))


def key_operation(key: str) -> str:
    """The operation segment of a key made by `make_cache_key`."""
    parts = key.split(_SEP)
    return parts[1] if len(parts) > 1 else ""
