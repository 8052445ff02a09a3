"""Template-driven entity store with property blocks and single-parent hierarchy."""

__version__ = "0.1.0"

from .startup import ensure_default_templates  # noqa: E402
from .store import EntityService, create_entity_service  # noqa: E402

__all__ = ["EntityService", "__version__", "create_entity_service", "ensure_default_templates"]
