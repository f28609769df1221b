"""Model catalog and selection.

This module owns the list of models the server advertises and the id of the
model new turns are sent to:
- Wire schemas for ``GET /v1/models``
- ModelRegistry: cached catalog, fallback selection, persisted choice
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import PREFERENCE_SELECTED_MODEL
from ..core.timing_logger import timed

if TYPE_CHECKING:
    from ..api.gateway.lmstudio_client import LMStudioApiClient
    from ..storage.persistence import ConversationStore

LOGGER = logging.getLogger(__name__)


class LMStudioModel(BaseModel):
    """One entry of the ``data`` array returned by ``/v1/models``."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    object: str = "model"
    owned_by: Optional[str] = None


class ModelsResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: List[LMStudioModel] = Field(default_factory=list)
    object: Optional[str] = None


class ModelRegistry:
    """Cached model list plus the currently selected model id.

    The selection is restored from the ``lastSelectedModelID`` preference on
    construction and written back whenever it changes.
    """

    def __init__(
        self,
        client: "LMStudioApiClient",
        store: Optional["ConversationStore"] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.logger = logger or LOGGER
        self._models: list[LMStudioModel] = []
        self._selected_model_id: Optional[str] = None
        if store is not None:
            self._selected_model_id = store.get_preference(PREFERENCE_SELECTED_MODEL)

    @property
    def models(self) -> list[LMStudioModel]:
        return list(self._models)

    @property
    def selected_model_id(self) -> Optional[str]:
        return self._selected_model_id

    def model_ids(self) -> list[str]:
        return [model.id for model in self._models]

    @timed
    async def fetch_models(self) -> list[LMStudioModel]:
        """Refresh the catalog from the server.

        On failure the cached list and selection are left untouched and the
        classified error propagates. When the previously selected id is no
        longer offered, the first available model is selected instead.
        """
        models = await self.client.fetch_models()
        self._models = list(models)
        self.logger.info("Loaded %d model(s) from %s", len(self._models), self.client.base_url)

        if not self._models:
            if self._selected_model_id is not None:
                self.logger.info("No models available; clearing selection %s", self._selected_model_id)
            self._persist_selection(None)
            return self.models

        if self._selected_model_id not in self.model_ids():
            fallback = self._models[0].id
            if self._selected_model_id:
                self.logger.info(
                    "Selected model %s is no longer available; falling back to %s",
                    self._selected_model_id,
                    fallback,
                )
            self._persist_selection(fallback)
        return self.models

    def select_model(self, model_id: str) -> None:
        """Make ``model_id`` the model for future sends and persist the choice.

        Raises:
            ValueError: when the catalog is loaded and does not contain ``model_id``.
        """
        model_id = (model_id or "").strip()
        if not model_id:
            raise ValueError("Model id must not be empty")
        if self._models and model_id not in self.model_ids():
            raise ValueError(f"Unknown model: {model_id}")
        self._persist_selection(model_id)
        self.logger.debug("Selected model %s", model_id)

    def _persist_selection(self, model_id: Optional[str]) -> None:
        self._selected_model_id = model_id
        if self.store is not None:
            self.store.set_preference(PREFERENCE_SELECTED_MODEL, model_id)
