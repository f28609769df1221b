"""Background conversation-title generation.

After the first user message of an untitled conversation, a second,
independent non-streaming completion asks the model for a short title. The
request runs as a fire-and-forget task: its failure is logged and never
affects the turn that triggered it, and cancelling that turn does not cancel
it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from ..core.config import TITLE_GENERATION_PARAMETERS, TITLE_PROMPT
from ..core.errors import LMStudioError
from ..core.logging_system import SessionLogger
from ..core.timing_logger import timed

if TYPE_CHECKING:
    from ..api.gateway.lmstudio_client import LMStudioApiClient
    from ..storage.persistence import Conversation, ConversationStore

LOGGER = logging.getLogger(__name__)

_MAX_TITLE_CHARS = 255
_TITLE_STRIP_CHARS = " \t\r\n\"'`“”‘’"


@dataclass(frozen=True)
class _PromptTurn:
    text: str
    is_user: bool


def clean_title(raw: Optional[str]) -> str:
    """Trim whitespace and surrounding quotes from a generated title."""
    if not raw:
        return ""
    first_line = next((line for line in raw.splitlines() if line.strip()), "")
    return first_line.strip(_TITLE_STRIP_CHARS)[:_MAX_TITLE_CHARS].strip()


class TitleGenerator:
    """Spawn and track title requests, at most one per conversation."""

    def __init__(
        self,
        client: "LMStudioApiClient",
        store: "ConversationStore",
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.logger = logger or LOGGER
        self._tasks: set[asyncio.Task[Optional[str]]] = set()
        self._in_flight: set[str] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def needs_title(self, conversation: "Conversation") -> bool:
        if (conversation.title or "").strip():
            return False
        return conversation.id not in self._in_flight

    def schedule(self, conversation: "Conversation", model_id: str) -> Optional[asyncio.Task[Optional[str]]]:
        """Start title generation for ``conversation`` unless it is titled or already running."""
        if not self.needs_title(conversation):
            return None
        parent_request_id = SessionLogger.request_id.get()
        self._in_flight.add(conversation.id)
        task = asyncio.create_task(
            self._run(conversation, model_id, parent_request_id),
            name=f"title-{conversation.id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        conversation: "Conversation",
        model_id: str,
        parent_request_id: Optional[str],
    ) -> Optional[str]:
        request_id = f"{parent_request_id}-title" if parent_request_id else None
        SessionLogger.request_id.set(request_id)
        try:
            return await self.generate(conversation, model_id)
        except LMStudioError as exc:
            self.logger.warning("Title generation failed for %s (%s): %s", conversation.id, exc.kind, exc)
            return None
        except Exception:
            self.logger.error("Title generation crashed for %s", conversation.id, exc_info=True)
            return None
        finally:
            self._in_flight.discard(conversation.id)
            SessionLogger.cleanup(request_id)

    @timed
    async def generate(self, conversation: "Conversation", model_id: str) -> Optional[str]:
        """Request a title from the first user message and persist it.

        Returns the stored title, or None when there was nothing to title or
        the conversation disappeared meanwhile.
        """
        first_user = next((message for message in conversation.messages if message.is_user), None)
        if first_user is None or not (first_user.text or "").strip():
            return None
        turns = [_PromptTurn(TITLE_PROMPT, is_user=False), _PromptTurn(first_user.text, is_user=True)]
        raw = await self.client.send_nonstreaming(turns, model_id, TITLE_GENERATION_PARAMETERS)
        title = clean_title(raw)
        if not title:
            self.logger.debug("Model returned an empty title for %s", conversation.id)
            return None
        if self.store.get_conversation(conversation.id) is None:
            self.logger.debug("Conversation %s was deleted before its title arrived", conversation.id)
            return None
        conversation.title = title
        self.store.save()
        self.logger.info("Titled conversation %s: %s", conversation.id, title)
        return title

    async def wait_idle(self) -> None:
        """Wait until every outstanding title request has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
