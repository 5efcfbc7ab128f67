"""Classification of identities as bots (non-human)."""

from __future__ import annotations

from typing import Iterable, Optional


class BotFilter:
    """Matches identities against configured bot names and ids, case-insensitively."""

    def __init__(self, bot_names: Iterable[str] = (), bot_ids: Optional[Iterable[str]] = None) -> None:
        self._bot_names = {name.lower() for name in bot_names}
        self._bot_ids = {bot_id.lower() for bot_id in bot_ids or ()}

    def is_bot(self, display_name: str, is_container: bool = False, user_id: Optional[str] = None) -> bool:
        # Group identities are never treated as people.
        if is_container:
            return True

        if display_name and display_name.lower() in self._bot_names:
            return True

        return bool(user_id) and user_id.lower() in self._bot_ids
