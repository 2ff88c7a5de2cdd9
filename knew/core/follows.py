"""
Follow subscriptions (states and topics) for KNEW.
"""
import time
import uuid
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from knew.core.article import FOLLOW_TYPES, FollowSubscription
from knew.core.events import EventBus, FollowsChanged
from knew.errors import DuplicateFollowError

# Configure logging
logger = logging.getLogger(__name__)

ACTION_INTERVAL = 0.5  # seconds between mutating actions


class FollowStore:
    """
    Persistence for follow rows. insert() must raise DuplicateFollowError
    when the (user, type, value) row already exists.
    """
    async def list(self, user_id: str) -> List[FollowSubscription]:
        raise NotImplementedError

    async def insert(self, user_id: str, follow_type: str, value: str) -> FollowSubscription:
        raise NotImplementedError

    async def delete(self, follow_id: str) -> bool:
        raise NotImplementedError


class InMemoryFollowStore(FollowStore):
    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._rows: Dict[str, FollowSubscription] = {}

    async def list(self, user_id: str) -> List[FollowSubscription]:
        rows = [r for r in self._rows.values() if r.user_id == user_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    async def insert(self, user_id: str, follow_type: str, value: str) -> FollowSubscription:
        for row in self._rows.values():
            if (row.user_id, row.type, row.value) == (user_id, follow_type, value):
                raise DuplicateFollowError(f"duplicate key value violates unique constraint: {follow_type}:{value}")
        row = FollowSubscription(
            id=uuid.uuid4().hex,
            type=follow_type,
            value=value,
            created_at=self.clock(),
            user_id=user_id,
        )
        self._rows[row.id] = row
        return row

    async def delete(self, follow_id: str) -> bool:
        return self._rows.pop(follow_id, None) is not None


@dataclass(frozen=True)
class FollowResult:
    ok: bool
    message: str


class FollowManager:
    """
    Keeps one user's follows in sync with the store.

    Mutations are applied optimistically and rolled back if the store
    write fails; every successful change publishes FollowsChanged.
    """
    def __init__(
        self,
        store: FollowStore,
        user_id: Optional[str],
        bus: Optional[EventBus] = None,
        clock: Callable[[], float] = time.time,
        action_interval: float = ACTION_INTERVAL,
    ):
        self.store = store
        self.user_id = user_id
        self.bus = bus
        self.clock = clock
        self.action_interval = action_interval
        self.follows: List[FollowSubscription] = []
        self._index: Dict[Tuple[str, str], FollowSubscription] = {}
        self._last_action: Optional[float] = None

    async def refresh(self) -> List[FollowSubscription]:
        """Reload follows from the store."""
        if not self.user_id:
            self._replace([])
            return self.follows
        try:
            self._replace(await self.store.list(self.user_id))
            logger.debug(f"Loaded {len(self.follows)} follows for {self.user_id}")
        except Exception as e:
            logger.error(f"Error fetching follows: {e}")
        return self.follows

    def _replace(self, follows: List[FollowSubscription]) -> None:
        self.follows = list(follows)
        self._index = {(f.type, f.value): f for f in self.follows}

    def is_following(self, follow_type: str, value: str) -> bool:
        return (follow_type, value) in self._index

    def _throttled(self) -> bool:
        now = self.clock()
        if self._last_action is not None and now - self._last_action < self.action_interval:
            return True
        self._last_action = now
        return False

    async def follow(self, follow_type: str, value: str) -> FollowResult:
        """
        Follow a state or topic.

        Args:
            follow_type: ``state`` or ``topic``
            value: State name or topic

        Returns:
            FollowResult; an existing follow is reported, not raised
        """
        if follow_type not in FOLLOW_TYPES:
            raise ValueError(f"Unknown follow type: {follow_type}")
        if self._throttled():
            return FollowResult(False, "Please wait a moment")
        if not self.user_id:
            return FollowResult(False, "Please log in to follow")
        if self.is_following(follow_type, value):
            return FollowResult(False, f"Already following {value}")

        placeholder = FollowSubscription(
            id=f"temp-{uuid.uuid4().hex}",
            type=follow_type,
            value=value,
            created_at=self.clock(),
            user_id=self.user_id,
        )
        self._replace([placeholder] + self.follows)

        try:
            row = await self.store.insert(self.user_id, follow_type, value)
        except DuplicateFollowError:
            logger.info(f"Already following {follow_type}:{value}; resyncing")
            await self.refresh()
            return FollowResult(False, f"Already following {value}")
        except Exception as e:
            logger.error(f"Error following {follow_type}:{value}: {e}")
            self._replace([f for f in self.follows if f.id != placeholder.id])
            return FollowResult(False, "Failed to follow")

        self._replace([row if f.id == placeholder.id else f for f in self.follows])
        logger.info(f"Now following {follow_type}:{value}")
        self._publish()
        return FollowResult(True, f"Now following {value}")

    async def unfollow(self, follow_type: str, value: str) -> FollowResult:
        if self._throttled():
            return FollowResult(False, "Please wait a moment")
        if not self.user_id:
            return FollowResult(False, "Please log in")

        existing = self._index.get((follow_type, value))
        if existing is None:
            return FollowResult(False, f"Not following {value}")

        self._replace([f for f in self.follows if f.id != existing.id])
        try:
            await self.store.delete(existing.id)
        except Exception as e:
            logger.error(f"Error unfollowing {follow_type}:{value}: {e}")
            self._replace([existing] + self.follows)
            return FollowResult(False, "Failed to unfollow")

        logger.info(f"Unfollowed {follow_type}:{value}")
        self._publish()
        return FollowResult(True, f"Unfollowed {value}")

    async def unfollow_by_id(self, follow_id: str) -> FollowResult:
        for f in self.follows:
            if f.id == follow_id:
                return await self.unfollow(f.type, f.value)
        return FollowResult(False, "Not following")

    async def toggle(self, follow_type: str, value: str) -> FollowResult:
        if self.is_following(follow_type, value):
            return await self.unfollow(follow_type, value)
        return await self.follow(follow_type, value)

    def _publish(self) -> None:
        if self.bus is not None:
            self.bus.publish(FollowsChanged(user_id=self.user_id, follows=tuple(self.follows)))
