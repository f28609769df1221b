"""Model catalog subsystem.

- registry: ``/v1/models`` schemas and the selected-model registry
"""

from .registry import LMStudioModel, ModelRegistry, ModelsResponse

__all__ = [
    "LMStudioModel",
    "ModelRegistry",
    "ModelsResponse",
]
