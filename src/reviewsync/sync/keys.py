"""Cache key construction rules.

Learn: Every cached query is addressed by a CacheKey built here, never by
an ad hoc string. A key is a tuple of parts: the namespace (entity),
the query name, then the scope parameters. Because keys are tuples,
invalidating a shorter key invalidates every key it prefixes:

    notifications.lists(user)          → ("notifications", "list", user)
    notifications.list(user, 50, True) → ("notifications", "list", user, 50, True)

so one invalidation covers every limit / unread_only variant.
"""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class CacheKey:
    parts: tuple[Any, ...]

    @classmethod
    def of(cls, *parts: Any) -> "CacheKey":
        if not parts:
            raise ValueError("CacheKey needs at least a namespace")
        return cls(tuple(str(p) if not isinstance(p, (int, bool)) else p for p in parts))

    @property
    def namespace(self) -> str:
        return self.parts[0]

    @property
    def ttl_name(self) -> str:
        """"<namespace>:<query>" — the name TTL configuration is keyed on."""
        if len(self.parts) > 1:
            return f"{self.parts[0]}:{self.parts[1]}"
        return self.parts[0]

    def is_prefix_of(self, other: "CacheKey") -> bool:
        return other.parts[: len(self.parts)] == self.parts

    def __str__(self) -> str:
        return "/".join(str(p) for p in self.parts)


# ─── Notifications ───────────────────────────────────────


class notifications:
    @staticmethod
    def lists(user_id) -> CacheKey:
        return CacheKey.of("notifications", "list", user_id)

    @staticmethod
    def list(user_id, limit: int, unread_only: bool = False) -> CacheKey:
        return CacheKey.of("notifications", "list", user_id, limit, unread_only)

    @staticmethod
    def unread_count(user_id) -> CacheKey:
        return CacheKey.of("notifications", "unread-count", user_id)


# ─── Comments ────────────────────────────────────────────


class comments:
    @staticmethod
    def list(content_item_id) -> CacheKey:
        return CacheKey.of("comments", "list", content_item_id)

    @staticmethod
    def unresolved_count(content_item_id) -> CacheKey:
        return CacheKey.of("comments", "unresolved-count", content_item_id)


# ─── Approvals ───────────────────────────────────────────


class approvals:
    @staticmethod
    def list(content_item_id) -> CacheKey:
        return CacheKey.of("approvals", "list", content_item_id)

    @staticmethod
    def latest(content_item_id) -> CacheKey:
        return CacheKey.of("approvals", "latest", content_item_id)

    @staticmethod
    def stats(content_item_id) -> CacheKey:
        return CacheKey.of("approvals", "stats", content_item_id)

    @staticmethod
    def all_for(content_item_id) -> "list[CacheKey]":
        return [
            approvals.list(content_item_id),
            approvals.latest(content_item_id),
            approvals.stats(content_item_id),
        ]


# ─── Content ─────────────────────────────────────────────


class content:
    @staticmethod
    def detail(content_item_id) -> CacheKey:
        return CacheKey.of("content", "detail", content_item_id)

    @staticmethod
    def versions(content_item_id) -> CacheKey:
        return CacheKey.of("content", "versions", content_item_id)

    @staticmethod
    def list(project_id) -> CacheKey:
        return CacheKey.of("content", "list", project_id)
