"""
Topic membership stores.

- base: contract and snapshot type
- memory: in-process backend
- redis_store: Redis backend (MULTI/EXEC, WATCH)
"""

from topic_gateway.components.membership.base import MembershipSnapshot, TopicMembershipStore
from topic_gateway.components.membership.memory import InMemoryMembershipStore
from topic_gateway.components.membership.redis_store import RedisMembershipStore

__all__ = [
    "MembershipSnapshot",
    "TopicMembershipStore",
    "InMemoryMembershipStore",
    "RedisMembershipStore",
]
