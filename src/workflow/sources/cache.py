"""Last-used task source preference.

The preference is a convenience, never state: an unreadable or invalid
cache file is logged and treated as "no preference".

Caching rules:
- ``other`` sources are ad hoc and never cached
- ``gh-projects`` is cached only with both project number and owner set
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from src.workflow.errors import CorruptState
from src.workflow.sources.models import (
    GitHubProjectsSourceConfig,
    TaskSourceKind,
    parse_source_config,
)
from src.workflow.state.storage import read_json_document, write_json_atomic


logger = logging.getLogger(__name__)


PREFERENCE_FILENAME = "preference.json"


def should_cache(config: Any) -> bool:
    if config.kind == TaskSourceKind.OTHER:
        return False
    if isinstance(config, GitHubProjectsSourceConfig):
        return bool(config.project_number and config.owner)
    return True


class PreferenceCache:
    """JSON file holding the last-used task source configuration.

    Attributes:
        path: Location of the cache document.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def for_state_dir(cls, state_dir: Path) -> "PreferenceCache":
        return cls(Path(state_dir) / "sources" / PREFERENCE_FILENAME)

    def get_preference(self) -> Optional[Any]:
        """Return the cached TaskSourceConfig, or None."""
        try:
            document = read_json_document(self.path)
        except CorruptState as e:
            logger.warning(
                "Ignoring unreadable source preference",
                extra={"cache_path": str(self.path), "error": e.message},
            )
            return None
        if document is None:
            return None

        try:
            return parse_source_config(document.get("taskSource") or {})
        except ValidationError as e:
            logger.warning(
                "Ignoring invalid source preference",
                extra={"cache_path": str(self.path), "error_count": e.error_count()},
            )
            return None

    def save_preference(self, config: Any) -> bool:
        """Persist ``config`` as the preference if the caching rules allow.

        Returns:
            True if the preference was written.
        """
        if not should_cache(config):
            logger.debug(
                "Source preference not cached", extra={"source": config.kind.value}
            )
            return False

        write_json_atomic(
            self.path,
            {
                "taskSource": config.model_dump(mode="json", by_alias=True),
                "savedAt": datetime.now(timezone.utc).isoformat(),
            },
        )
        logger.info("Saved source preference", extra={"source": config.kind.value})
        return True

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
