"""
Conversation scopes: the unit that shares exactly one symmetric key.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List


CONVERSATION_KEY_PREFIX = "e2e_conv_key:"


class ScopeKind(str, Enum):
    """Kinds of conversation, using the identifiers the server stores"""
    CHANNEL = "channel"
    DIRECT_MESSAGE = "dm"
    GROUP = "group"


def dm_scope_id(user_a: str, user_b: str) -> str:
    """
    Derive the scope id of a direct-message pair.

    Both participants compute the same value regardless of who initiates.
    """
    return ":".join(sorted([user_a, user_b]))


@dataclass(frozen=True)
class ConversationScope:
    """
    Attributes:
        kind: Channel, direct message or group
        scope_id: Channel/group id, or the sorted user pair for direct messages
    """
    kind: ScopeKind
    scope_id: str

    def __post_init__(self):
        object.__setattr__(self, "kind", ScopeKind(self.kind))
        if not self.scope_id:
            raise ValueError("Scope id must not be empty")

    @classmethod
    def channel(cls, channel_id: str) -> 'ConversationScope':
        return cls(ScopeKind.CHANNEL, channel_id)

    @classmethod
    def group(cls, group_id: str) -> 'ConversationScope':
        return cls(ScopeKind.GROUP, group_id)

    @classmethod
    def direct(cls, user_a: str, user_b: str) -> 'ConversationScope':
        return cls(ScopeKind.DIRECT_MESSAGE, dm_scope_id(user_a, user_b))

    @property
    def cache_key(self) -> str:
        """Key under which this device caches the conversation key"""
        return f"{CONVERSATION_KEY_PREFIX}{self.kind.value}:{self.scope_id}"

    def participants(self) -> List[str]:
        """User ids named by a direct-message scope id (empty for other kinds)"""
        if self.kind is not ScopeKind.DIRECT_MESSAGE:
            return []
        return [part for part in self.scope_id.split(":") if part]

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.scope_id}"
