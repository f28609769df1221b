"""Application context for the LM Studio chat client.

``ChatApplication`` owns everything a chat front end needs: configuration,
the conversation store, the transport client, the model registry, the
Session Controller, the current conversation and the generation settings
snapshot. Front ends hold one instance instead of reaching for globals.

Typical use::

    app = ChatApplication(ClientValves(BASE_URL="http://localhost:1234"))
    await app.prepare()
    result = await app.send("Hello!")
    print(result.content_message.text if result.ok else result.error_message)
    await app.aclose()
"""

from __future__ import annotations

from typing import Any, Optional

import aiohttp

from .api.gateway.lmstudio_client import LMStudioApiClient
from .core.config import PREFERENCE_BASE_URL, ClientValves, GenerationParameters, build_base_url
from .core.errors import LMStudioError, format_user_error
from .core.logging_system import SessionLogger
from .core.timing_logger import close_timing_file, configure_timing_file, timed
from .models.registry import LMStudioModel, ModelRegistry
from .requests.orchestrator import MessageCallback, SessionController, TurnResult
from .requests.title_generator import TitleGenerator
from .storage.persistence import Conversation, ConversationStore


class ChatApplication:
    """Per-process chat context wiring store, client, registry and controller."""

    def __init__(
        self,
        valves: Optional[ClientValves] = None,
        settings: Optional[GenerationParameters] = None,
        store: Optional[ConversationStore] = None,
        *,
        http_session: Optional[aiohttp.ClientSession] = None,
        on_update: Optional[MessageCallback] = None,
    ) -> None:
        # Copy so base URL changes stay local to this application.
        self.valves = (valves or ClientValves()).model_copy()
        self.logger = SessionLogger.get_logger(__name__)
        SessionLogger.set_max_lines(self.valves.SESSION_LOG_MAX_LINES)
        if self.valves.ENABLE_TIMING_LOG and not configure_timing_file(self.valves.TIMING_LOG_FILE):
            self.logger.warning("Timing log disabled: cannot open %s", self.valves.TIMING_LOG_FILE)

        self._owns_store = store is None
        self.store = store or ConversationStore(self.valves.DATABASE_URL, logger=self.logger)
        self._restore_base_url()

        self.settings = settings or GenerationParameters.app_defaults()
        self.client = LMStudioApiClient(self.valves, session=http_session, logger=self.logger)
        self.registry = ModelRegistry(self.client, self.store, logger=self.logger)
        self.titles = TitleGenerator(self.client, self.store, logger=self.logger)
        self.controller = SessionController(
            self.client,
            self.store,
            self.registry,
            valves=self.valves,
            title_generator=self.titles,
            on_update=on_update,
            logger=self.logger,
        )
        self.current_conversation: Optional[Conversation] = None
        self.last_error: Optional[str] = None

    def _restore_base_url(self) -> None:
        persisted = self.store.get_preference(PREFERENCE_BASE_URL)
        if not persisted:
            return
        try:
            self.valves.BASE_URL = persisted
        except ValueError:
            self.logger.warning("Ignoring invalid persisted server address %r", persisted)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def base_url(self) -> str:
        return self.valves.BASE_URL

    @property
    def models(self) -> list[LMStudioModel]:
        return self.registry.models

    @property
    def selected_model_id(self) -> Optional[str]:
        return self.registry.selected_model_id

    @property
    def is_loading(self) -> bool:
        return self.controller.busy

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    @timed
    async def prepare(self) -> Conversation:
        """Refresh models, then resume the most recently used conversation.

        A failed model refresh is reported through ``last_error`` and does
        not prevent startup.
        """
        await self.refresh_models()
        conversations = self.store.list_conversations()
        if not conversations:
            return self.start_new_conversation()
        self.current_conversation = conversations[0]
        self.logger.debug("Resuming conversation %s", self.current_conversation.id)
        return self.current_conversation

    async def refresh_models(self) -> list[LMStudioModel]:
        try:
            models = await self.registry.fetch_models()
        except LMStudioError as exc:
            self.last_error = f"Error fetching models: {format_user_error(exc, self.valves)}"
            self.logger.warning("Model refresh failed (%s): %s", exc.kind, exc)
            return self.registry.models
        self.last_error = None
        return models

    def select_model(self, model_id: str) -> None:
        self.registry.select_model(model_id)

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def start_new_conversation(self) -> Conversation:
        self.current_conversation = self.store.create_conversation()
        return self.current_conversation

    def list_conversations(self) -> list[Conversation]:
        return self.store.list_conversations()

    def select_conversation(self, conversation_id: str) -> Conversation:
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        self.current_conversation = conversation
        return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation; deleting the current one starts a new one."""
        is_current = (
            self.current_conversation is not None and self.current_conversation.id == conversation_id
        )
        if is_current and self.controller.busy:
            self.controller.cancel()
        deleted = self.store.delete_conversation(conversation_id)
        if deleted and is_current:
            self.start_new_conversation()
        return deleted

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    async def update_base_url(self, base_url: str) -> list[LMStudioModel]:
        """Validate and persist a new server address, then reload its models.

        Raises:
            ValueError: when ``base_url`` is not an http(s) URL with a host.
        """
        self.valves.BASE_URL = base_url
        self.store.set_preference(PREFERENCE_BASE_URL, self.valves.BASE_URL)
        self.logger.info("Server address set to %s", self.valves.BASE_URL)
        return await self.refresh_models()

    async def configure_server(self, scheme: str, host: str, port: Any = None) -> list[LMStudioModel]:
        """Apply the server form fields (protocol, host, port)."""
        return await self.update_base_url(build_base_url(scheme, host, port))

    def update_settings(self, settings: GenerationParameters) -> None:
        self.settings = settings

    def reset_settings(self) -> GenerationParameters:
        self.settings = GenerationParameters.app_defaults()
        return self.settings

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def send(self, prompt: str) -> TurnResult:
        """Send ``prompt`` in the current conversation, starting one if needed."""
        conversation = self.current_conversation or self.start_new_conversation()
        result = await self.controller.send(conversation, prompt, self.settings)
        self.last_error = result.error_message
        return result

    def cancel(self) -> bool:
        return self.controller.cancel()

    async def aclose(self) -> None:
        self.controller.cancel()
        await self.titles.aclose()
        await self.client.close()
        if self._owns_store:
            self.store.close()
        if self.valves.ENABLE_TIMING_LOG:
            close_timing_file()
        self.logger.debug("Chat application closed")
