import time
from typing import Callable, Dict, Optional


class TypingTracker:
    """Users currently typing, per chat, each entry expiring after a quiet period."""

    def __init__(self, quiet_period: float = 5.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.quiet_period = quiet_period
        self._clock = clock
        # chat_id -> {user_id: (display name, last refresh)}
        self._rooms: Dict[int, Dict[int, tuple[str, float]]] = {}

    def update(self, chat_id: int, user_id: int, typing: bool, name: Optional[str] = None) -> None:
        room = self._rooms.setdefault(chat_id, {})
        if typing:
            room[user_id] = (name or "Someone", self._clock())
        else:
            room.pop(user_id, None)
        if not room:
            self._rooms.pop(chat_id, None)

    def users(self, chat_id: int) -> Dict[int, str]:
        room = self._rooms.get(chat_id, {})
        now = self._clock()
        for user_id in [uid for uid, (_, seen) in room.items() if now - seen >= self.quiet_period]:
            del room[user_id]
        return {uid: name for uid, (name, _) in room.items()}

    def display_text(self, chat_id: int) -> str:
        names = list(self.users(chat_id).values())
        if not names:
            return ""
        verb = "is" if len(names) == 1 else "are"
        return f"{', '.join(names)} {verb} typing..."

    def clear(self, chat_id: Optional[int] = None) -> None:
        if chat_id is None:
            self._rooms.clear()
        else:
            self._rooms.pop(chat_id, None)
