"""
Project attribution from config mappings and repository roots.
"""

import hashlib
from pathlib import Path
from typing import Optional

from thinktax.config.loader import ThinktaxConfig

from .events import UsageProject


def hash_project_id(root: str) -> str:
    return hashlib.sha1(root.encode("utf-8")).hexdigest()


def resolve_project(
    config: ThinktaxConfig,
    instance_id: Optional[str],
    root: Optional[str]
) -> UsageProject:
    """Attribute usage to a project.

    Configured mappings are tried in order (instance id match, then path
    prefix match). Without a mapping the repository root names the
    project, then the instance id.

    Args:
        config: Loaded configuration
        instance_id: Session or workspace identifier from the source
        root: Working directory / repository root, if known

    Returns:
        UsageProject, possibly with every field None
    """
    for mapping in config.projects.mappings:
        match = mapping.match
        if match.instance_id and instance_id and match.instance_id == instance_id:
            return UsageProject(
                id=mapping.id or instance_id,
                name=mapping.name or mapping.id or instance_id,
                root=mapping.root or root,
            )
        if match.path_prefix and root and root.startswith(match.path_prefix):
            return UsageProject(
                id=mapping.id or hash_project_id(root),
                name=mapping.name or mapping.id or Path(root).name,
                root=mapping.root or root,
            )

    if root:
        return UsageProject(id=hash_project_id(root), name=Path(root).name, root=root)
    if instance_id:
        return UsageProject(id=instance_id, name=instance_id, root=None)
    return UsageProject()


def find_git_root(start: str) -> Optional[str]:
    """Nearest ancestor of ``start`` (inclusive) containing ``.git``."""
    current = Path(start)
    while current != current.parent:
        if (current / ".git").exists():
            return str(current)
        current = current.parent
    return None
