"""
Applying project-stage guards against the store.

Several components move a project forward (approval, scheduling,
publishing).  They all go through ``apply_project_transition`` so the
write is a compare-and-set on the stage the guard was evaluated against.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from content_pipeline.exceptions import NotFoundError, StateConflictError
from content_pipeline.models import ContentProject, Transition

logger = logging.getLogger(__name__)

ProjectGuard = Callable[[ContentProject, datetime], Transition[ContentProject]]


async def load_project(store, project_id: str) -> ContentProject:
    """Fetch a project or raise ``NotFoundError``."""
    project = await store.get_project(project_id)
    if project is None:
        raise NotFoundError(f"Project {project_id} not found")
    return project


async def apply_project_transition(
    store,
    recorder,
    project: ContentProject,
    guard: ProjectGuard,
    now: datetime,
    strict: bool = True,
) -> Optional[ContentProject]:
    """Run *guard* on *project* and persist the result.

    Args:
        store: ``PipelineStore`` holding the project.
        recorder: Activity sink, or ``None``.
        project: Snapshot the guard is evaluated against.
        guard: A project-stage function from ``state_guards``.
        now: Transition timestamp.
        strict: When ``False`` an illegal transition returns ``None``
            instead of raising (used for opportunistic side effects).

    Returns:
        The stored snapshot, or ``None`` if the guard rejected the move
        (non-strict) or another writer changed the stage first.

    Raises:
        StateConflictError: If the guard rejects the move and *strict*.
    """
    try:
        transition = guard(project, now)
    except StateConflictError:
        if strict:
            raise
        return None

    stored = await store.compare_and_set_project(transition.entity, project.stage)
    if not stored:
        logger.debug(
            "[WORKFLOW] Project %s left stage '%s' before %s could apply",
            project.id,
            project.stage.value,
            transition.event.data.get("operation"),
        )
        return None

    logger.info(
        "[WORKFLOW] Project %s: %s -> %s",
        project.id,
        project.stage.value,
        transition.entity.stage.value,
    )
    if recorder is not None:
        await recorder.record_event(
            transition.event,
            f"Stage changed to {transition.entity.stage.value}",
            project_id=project.id,
        )
    return transition.entity


__all__ = ["ProjectGuard", "load_project", "apply_project_transition"]
