"""
Usage collectors, one per upstream tool.

Every collector has the same shape: ``collect(config, paths)`` returns a
list of uncosted UsageEvent values and never writes to the event store.
"""

from typing import Callable, List, Tuple

from thinktax.config.loader import ThinktaxConfig
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import UsageEvent

from .apprentice import collect_apprentice
from .claude import collect_claude
from .codex import collect_codex
from .cursor import collect_cursor
from .glean import collect_glean
from .openclaw import collect_openclaw
from .review_crew import collect_review_crew

Collector = Callable[[ThinktaxConfig, ThinktaxPaths], List[UsageEvent]]

DEFAULT_COLLECTORS: Tuple[Tuple[str, Collector], ...] = (
    ("claude", collect_claude),
    ("codex", collect_codex),
    ("cursor", collect_cursor),
    ("openclaw", collect_openclaw),
    ("apprentice", collect_apprentice),
    ("glean", collect_glean),
    ("review_crew", collect_review_crew),
)

__all__ = [
    "Collector",
    "DEFAULT_COLLECTORS",
    "collect_apprentice",
    "collect_claude",
    "collect_codex",
    "collect_cursor",
    "collect_glean",
    "collect_openclaw",
    "collect_review_crew",
]
