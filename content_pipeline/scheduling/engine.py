"""
Scheduled-post lifecycle engine.

``ScheduledPostEngine`` owns every write to a ``ScheduledPost``: creation
with conflict checks, the claim, publish/failure outcomes, cancellation,
rescheduling and retry bookkeeping.  Each operation evaluates a pure guard
from :mod:`content_pipeline.workflow.state_guards` and persists the result
with a compare-and-set on the status the guard saw, so a concurrent writer
can never be silently overwritten.

All database interactions go through the ``store`` parameter (a
:class:`~content_pipeline.database.PipelineStore`).
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from content_pipeline.config import PublishingConfig
from content_pipeline.database import PipelineStore, active_statuses
from content_pipeline.exceptions import (
    NotFoundError,
    SchedulingConflictError,
    StateConflictError,
    ValidationError,
)
from content_pipeline.models import (
    BatchResult,
    ErrorKind,
    Post,
    PostStatus,
    ProjectStage,
    ScheduledPost,
    ScheduledPostStatus,
    Transition,
)
from content_pipeline.utils import ensure_utc, generate_id, localize, utc_now
from content_pipeline.workflow import state_guards as guards
from content_pipeline.workflow.project_stage import apply_project_transition

logger = logging.getLogger(__name__)


class ScheduledPostEngine:
    """Creates, claims and settles scheduled publish attempts.

    Args:
        store: Persistence store.
        recorder: Activity sink, or ``None``.
        config: Publishing settings (retries, backoff tiers, conflict
            window, stuck timeout).  Defaults to ``PublishingConfig()``.
        clock: Returns the current UTC time.
    """

    def __init__(
        self,
        store: PipelineStore,
        recorder=None,
        config: Optional[PublishingConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.config = config or PublishingConfig()
        self._clock = clock

    @property
    def max_retries(self) -> int:
        return self.config.max_retries

    # ================================================================
    # SCHEDULING
    # ================================================================

    async def schedule(
        self,
        post_id: str,
        platform: str,
        scheduled_time: datetime,
        timezone: str = "UTC",
    ) -> ScheduledPost:
        """Schedule an approved post on one platform.

        Args:
            post_id: The post to publish.
            platform: Target platform (``"linkedin"``, ``"x"``, ...).
            scheduled_time: When to publish; must be strictly in the future.
                A naive value is wall-clock time in *timezone*.
            timezone: IANA timezone the user scheduled in.

        Returns:
            The new ``ScheduledPost`` in Pending.

        Raises:
            ValidationError: Past time, unknown timezone, empty platform.
            NotFoundError: The post does not exist.
            StateConflictError: The post is not approved, or already has an
                active schedule on this platform.
            SchedulingConflictError: Another pending post on the platform is
                within the conflict window.
        """
        now = self._clock()
        if not platform or not platform.strip():
            raise ValidationError("platform cannot be empty")
        when = guards.validate_schedule_time(localize(scheduled_time, timezone), now)

        post = await self._load_post(post_id)
        post_transition = guards.mark_post_scheduled(post, now)
        await self._ensure_no_active_record(post_id, platform)
        await self._check_conflict(platform, when)

        record = await self._create_record(post, post_transition, platform, when, timezone, now)
        logger.info(
            "[ENGINE] Post %s scheduled on %s for %s (%s)",
            post_id,
            platform,
            when.isoformat(),
            record.id,
        )
        return record

    async def schedule_immediate(self, post_id: str, platform: str) -> ScheduledPost:
        """Create a Pending record that is due right away.

        Used by publish-now.  The future-time rule and the conflict window
        apply to planned slots only; an explicit publish-now is exempt, but
        the post must still be approved and have no active record on the
        platform.

        Raises:
            NotFoundError: The post does not exist.
            StateConflictError: The post is not approved, or already has an
                active schedule on this platform.
        """
        now = self._clock()
        if not platform or not platform.strip():
            raise ValidationError("platform cannot be empty")

        post = await self._load_post(post_id)
        post_transition = guards.mark_post_scheduled(post, now)
        await self._ensure_no_active_record(post_id, platform)

        record = await self._create_record(post, post_transition, platform, now, "UTC", now)
        logger.info(
            "[ENGINE] Post %s queued for immediate publish on %s (%s)",
            post_id,
            platform,
            record.id,
        )
        return record

    async def schedule_bulk(
        self,
        project_id: str,
        platform: str,
        start: datetime,
        interval: timedelta,
        timezone: str = "UTC",
    ) -> BatchResult:
        """Space a project's approved posts on *platform* at a fixed interval.

        Posts targeting *platform* go out oldest first: the first at
        *start*, each next one *interval* later.  Every slot goes through
        ``schedule``, so a slot that is in the past or clashes with another
        pending post fails on its own without stopping the rest.

        Returns:
            ``BatchResult`` keyed by post id with the new scheduled-post id.

        Raises:
            ValidationError: Non-positive interval, unknown timezone.
        """
        if interval <= timedelta(0):
            raise ValidationError(f"interval must be positive, got {interval}")
        when = localize(start, timezone)

        posts = sorted(
            (
                p
                for p in await self.store.list_posts(project_id)
                if p.status is PostStatus.APPROVED
                and p.archived_at is None
                and p.platform == platform
            ),
            key=lambda p: p.created_at,
        )
        result = BatchResult()
        if not posts:
            logger.warning(
                "[ENGINE] No approved %s posts to bulk schedule in project %s",
                platform,
                project_id,
            )
            return result

        for post in posts:
            try:
                record = await self.schedule(post.id, platform, when, timezone)
            except (SchedulingConflictError, StateConflictError, ValidationError) as exc:
                logger.warning("[ENGINE] Bulk schedule of post %s failed: %s", post.id, exc)
                result.add_failure(post.id, str(exc))
            else:
                result.add_success(post.id, record.id)
            when += interval

        logger.info(
            "[ENGINE] Bulk scheduled project %s on %s: %d scheduled, %d failed",
            project_id,
            platform,
            result.success_count,
            result.failure_count,
        )
        return result

    async def republish(self, post_id: str, platform: str, reason: str) -> ScheduledPost:
        """Send an already published post to *platform* again.

        The published record moves to Republishing and a fresh Pending
        record, due now, carries the new attempt.  The old record returns
        to Published once the fresh one settles (see
        ``settle_republished``).

        Returns:
            The fresh Pending record.

        Raises:
            NotFoundError: The post does not exist.
            StateConflictError: No published record on *platform*, or an
                attempt is already active there.
        """
        now = self._clock()
        post = await self._load_post(post_id)
        published = await self.store.list_scheduled_posts(
            post_id=post_id, platform=platform, statuses=[ScheduledPostStatus.PUBLISHED]
        )
        if not published:
            raise StateConflictError(
                f"Post {post_id} has no published record on {platform} to republish",
                entity="post",
                entity_id=post_id,
                current=post.status.value,
            )
        await self._ensure_no_active_record(post_id, platform)

        source = max(published, key=lambda r: r.published_at or r.updated_at)
        transition = guards.mark_republishing(source, reason, now)
        await self._persist(transition, ScheduledPostStatus.PUBLISHED)
        await self._record_transition(transition, f"Republishing: {reason}")

        record = await self._create_record(post, None, platform, now, "UTC", now)
        logger.info(
            "[ENGINE] Republishing post %s on %s (%s replaces %s): %s",
            post_id,
            platform,
            record.id,
            source.id,
            reason,
        )
        await self._record(
            post_id,
            "post_republished",
            f"Republished post to {platform}. Reason: {reason}",
            post.project_id,
            platform=platform,
            reason=reason,
            scheduled_post_id=record.id,
            replaces=source.id,
        )
        return record

    async def settle_republished(self, post_id: str, platform: str) -> List[ScheduledPost]:
        """Return Republishing records of the post on *platform* to Published."""
        now = self._clock()
        settled: List[ScheduledPost] = []
        for record in await self.store.list_scheduled_posts(
            post_id=post_id, platform=platform, statuses=[ScheduledPostStatus.REPUBLISHING]
        ):
            transition = guards.finish_republishing(record, now)
            if not await self.store.compare_and_set_scheduled_post(
                transition.entity, ScheduledPostStatus.REPUBLISHING
            ):
                continue
            await self._record_transition(transition, "Republish settled")
            settled.append(transition.entity)
        return settled

    async def reschedule(self, scheduled_post_id: str, new_time: datetime) -> ScheduledPost:
        """Move a record to *new_time*, resetting retries and errors.

        Raises:
            ValidationError: *new_time* is not in the future.
            StateConflictError: The record is Published, Processing or
                Cancelled.
            SchedulingConflictError: *new_time* clashes with another pending
                post on the platform.
        """
        now = self._clock()
        record = await self._load(scheduled_post_id)
        transition = guards.reschedule(record, new_time, now)
        await self._check_conflict(
            record.platform, transition.entity.scheduled_time, exclude_id=record.id
        )
        await self._persist(transition, record.status)

        await self._restore_post_schedule(record, now)

        logger.info(
            "[ENGINE] Scheduled post %s moved to %s",
            record.id,
            transition.entity.scheduled_time.isoformat(),
        )
        await self._record_transition(transition, "Rescheduled")
        return transition.entity

    async def cancel(self, scheduled_post_id: str, reason: str) -> ScheduledPost:
        """Cancel a record that has not been claimed.

        The parent post reverts to Approved once none of its records is
        still active.

        Raises:
            StateConflictError: The record is Published, Processing or
                already Cancelled.
        """
        now = self._clock()
        record = await self._load(scheduled_post_id)
        transition = guards.cancel(record, reason, now)
        await self._persist(transition, record.status)

        remaining = [
            r
            for r in await self.store.list_scheduled_posts(
                post_id=record.post_id, statuses=active_statuses()
            )
            if r.id != record.id
        ]
        post = await self.store.get_post(record.post_id)
        if post is not None and not remaining:
            try:
                post_transition = guards.unschedule_post(post, now)
            except StateConflictError:
                logger.debug(
                    "[ENGINE] Post %s is '%s'; not reverted to approved",
                    post.id,
                    post.status.value,
                )
            else:
                await self.store.save_post(post_transition.entity)

        logger.info("[ENGINE] Scheduled post %s cancelled: %s", record.id, reason)
        await self._record_transition(transition, f"Cancelled: {reason}")
        return transition.entity

    # ================================================================
    # EXECUTION LIFECYCLE
    # ================================================================

    async def start_processing(self, scheduled_post_id: str) -> Optional[ScheduledPost]:
        """Claim a Pending record for publishing.

        Returns:
            The claimed record, or ``None`` if another worker already
            claimed (or published) it.

        Raises:
            NotFoundError: Unknown id.
            StateConflictError: The record is in a status that can never be
                claimed (Failed, Cancelled, ...).
        """
        record = await self._load(scheduled_post_id)
        if record.status in {ScheduledPostStatus.PROCESSING, ScheduledPostStatus.PUBLISHED}:
            logger.debug("[ENGINE] Scheduled post %s already claimed", record.id)
            return None

        transition = guards.start_processing(record, self._clock())
        claimed = await self.store.compare_and_set_scheduled_post(
            transition.entity, ScheduledPostStatus.PENDING
        )
        if not claimed:
            logger.debug("[ENGINE] Lost claim race for scheduled post %s", record.id)
            return None

        logger.info("[ENGINE] Claimed scheduled post %s (%s)", record.id, record.platform)
        await self._record_transition(transition, "Publishing started")
        return transition.entity

    async def mark_published(
        self,
        scheduled_post_id: str,
        external_post_id: str,
        published_at: Optional[datetime] = None,
        publish_url: Optional[str] = None,
    ) -> ScheduledPost:
        now = self._clock()
        record = await self._load(scheduled_post_id)
        transition = guards.mark_published(
            record,
            external_post_id,
            ensure_utc(published_at) if published_at else now,
            now,
            publish_url=publish_url,
        )
        await self._persist(transition, ScheduledPostStatus.PROCESSING)
        logger.info(
            "[ENGINE] Scheduled post %s published on %s (external_id=%s)",
            record.id,
            record.platform,
            external_post_id,
        )
        await self._record_transition(transition, f"Published on {record.platform}")
        return transition.entity

    async def mark_failed(
        self,
        scheduled_post_id: str,
        error_message: str,
        failure_reason: ErrorKind,
    ) -> ScheduledPost:
        """Record a failed attempt.

        Retryable failures with attempts left get a ``next_attempt_at`` from
        the backoff tiers; the retry job picks them up from there.
        """
        now = self._clock()
        record = await self._load(scheduled_post_id)
        transition = guards.mark_failed(
            record,
            error_message,
            failure_reason,
            now,
            max_retries=self.config.max_retries,
            retry_delays=self.config.retry_delays_seconds,
        )
        await self._persist(transition, ScheduledPostStatus.PROCESSING)

        failed = transition.entity
        if failed.next_attempt_at is not None:
            logger.warning(
                "[ENGINE] Scheduled post %s failed (%s, attempt %d/%d), retry at %s: %s",
                failed.id,
                failure_reason.value,
                failed.retry_count,
                self.config.max_retries,
                failed.next_attempt_at.isoformat(),
                error_message,
            )
        else:
            logger.error(
                "[ENGINE] Scheduled post %s failed (%s, attempt %d/%d), not retrying: %s",
                failed.id,
                failure_reason.value,
                failed.retry_count,
                self.config.max_retries,
                error_message,
            )
        await self._record_transition(transition, f"Publish failed: {error_message}")
        return failed

    async def can_retry(
        self, scheduled_post_id: str, max_retries: Optional[int] = None
    ) -> bool:
        record = await self._load(scheduled_post_id)
        return guards.can_retry(
            record, max_retries if max_retries is not None else self.config.max_retries
        )

    async def reset_for_retry(self, scheduled_post_id: str) -> ScheduledPost:
        """Failed -> Pending while attempts remain.

        Raises:
            StateConflictError: Not Failed, or retries exhausted.
        """
        now = self._clock()
        record = await self._load(scheduled_post_id)
        transition = guards.reset_for_retry(
            record, now, max_retries=self.config.max_retries
        )
        await self._persist(transition, ScheduledPostStatus.FAILED)
        await self._restore_post_schedule(record, now)
        logger.info(
            "[ENGINE] Scheduled post %s queued for retry (attempts so far: %d)",
            record.id,
            record.retry_count,
        )
        await self._record_transition(transition, "Reset for retry")
        return transition.entity

    # ================================================================
    # QUERIES
    # ================================================================

    async def get_due_posts(
        self, now: Optional[datetime] = None, limit: int = 100
    ) -> List[ScheduledPost]:
        """Pending records whose time has come, oldest first."""
        return await self.store.get_due_scheduled_posts(now or self._clock(), limit)

    async def get_retry_candidates(self, now: Optional[datetime] = None) -> List[ScheduledPost]:
        """Failed records the retry job may put back to Pending.

        Only rate-limited and transient failures with attempts left and a
        passed ``next_attempt_at`` qualify; unauthorized and terminal
        failures wait for a human.
        """
        now = now or self._clock()
        failed = await self.store.list_scheduled_posts(
            statuses=[ScheduledPostStatus.FAILED]
        )
        return [
            r
            for r in failed
            if guards.can_retry(r, self.config.max_retries)
            and _is_retryable_reason(r.failure_reason)
            and r.next_attempt_at is not None
            and r.next_attempt_at <= now
        ]

    async def requeue_retry_candidates(self, now: Optional[datetime] = None) -> List[ScheduledPost]:
        """Reset every current retry candidate; returns the reset records."""
        requeued: List[ScheduledPost] = []
        for record in await self.get_retry_candidates(now):
            try:
                requeued.append(await self.reset_for_retry(record.id))
            except StateConflictError as exc:
                # Someone else (human retry, cancel) got there first
                logger.debug("[ENGINE] Skipping retry of %s: %s", record.id, exc)
        if requeued:
            logger.info("[ENGINE] Requeued %d failed posts for retry", len(requeued))
        return requeued

    async def recover_stuck_posts(self, now: Optional[datetime] = None) -> int:
        """Fail records stuck in Processing longer than the stuck timeout.

        A worker that crashed mid-publish leaves its record in Processing
        forever; the failure is recorded as transient so the retry job can
        pick it up.

        Returns:
            Number of records recovered.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.config.stuck_timeout_minutes)
        processing = await self.store.list_scheduled_posts(
            statuses=[ScheduledPostStatus.PROCESSING]
        )
        recovered = 0
        for record in processing:
            started = record.last_attempt or record.updated_at
            if started > cutoff:
                continue
            try:
                await self.mark_failed(
                    record.id,
                    (
                        f"Publishing stuck for >{self.config.stuck_timeout_minutes} "
                        "minutes. Marked as failed by recovery process."
                    ),
                    ErrorKind.TRANSIENT,
                )
            except StateConflictError:
                continue
            recovered += 1
            logger.warning(
                "[ENGINE] Recovered stuck scheduled post %s (processing since %s)",
                record.id,
                started.isoformat(),
            )
        if recovered:
            logger.info(
                "[ENGINE] Recovery complete: %d stuck posts marked as FAILED", recovered
            )
        return recovered

    # ================================================================
    # CONFLICT DETECTION
    # ================================================================

    async def is_slot_available(self, platform: str, when: datetime) -> bool:
        """Whether *when* is clear of every pending post on *platform*."""
        pending = await self._pending_on(platform)
        return self._find_conflict(pending, ensure_utc(when)) is None

    async def get_available_slots(
        self,
        platform: str,
        start: datetime,
        end: datetime,
        step: timedelta = timedelta(hours=1),
    ) -> List[datetime]:
        """Candidate times from *start* to *end* (inclusive) that ``schedule``
        would accept on *platform*.

        Candidates are spaced by *step*; past candidates and those within
        the conflict window of a pending post are left out.

        Raises:
            ValidationError: Non-positive step, or *end* before *start*.
        """
        if step <= timedelta(0):
            raise ValidationError(f"step must be positive, got {step}")
        start, end = ensure_utc(start), ensure_utc(end)
        if end < start:
            raise ValidationError("end must not be before start")

        now = self._clock()
        pending = await self._pending_on(platform)
        slots: List[datetime] = []
        candidate = start
        while candidate <= end:
            if candidate > now and self._find_conflict(pending, candidate) is None:
                slots.append(candidate)
            candidate += step
        return slots

    async def _check_conflict(
        self, platform: str, when: datetime, exclude_id: Optional[str] = None
    ) -> None:
        """Raise if a pending post on *platform* lies within the window."""
        pending = await self._pending_on(platform)
        other = self._find_conflict(pending, when, exclude_id)
        if other is None:
            return
        logger.debug(
            "[ENGINE] Conflict at %s on %s with %s (%s)",
            when.isoformat(),
            platform,
            other.id,
            other.scheduled_time.isoformat(),
        )
        raise SchedulingConflictError(
            f"Another post is scheduled on {platform} at "
            f"{other.scheduled_time.isoformat()}, within "
            f"{self.config.conflict_window_minutes} minutes of "
            f"{when.isoformat()}",
            entity="scheduled_post",
            entity_id=other.id,
            current=other.status.value,
        )

    async def _pending_on(self, platform: str) -> List[ScheduledPost]:
        return await self.store.list_scheduled_posts(
            platform=platform, statuses=[ScheduledPostStatus.PENDING]
        )

    def _find_conflict(
        self,
        pending: List[ScheduledPost],
        when: datetime,
        exclude_id: Optional[str] = None,
    ) -> Optional[ScheduledPost]:
        window = timedelta(minutes=self.config.conflict_window_minutes)
        for other in pending:
            if other.id != exclude_id and abs(other.scheduled_time - when) <= window:
                return other
        return None

    # ================================================================
    # INTERNAL HELPERS
    # ================================================================

    async def _load(self, scheduled_post_id: str) -> ScheduledPost:
        record = await self.store.get_scheduled_post(scheduled_post_id)
        if record is None:
            raise NotFoundError(f"Scheduled post {scheduled_post_id} not found")
        return record

    async def _load_post(self, post_id: str) -> Post:
        post = await self.store.get_post(post_id)
        if post is None:
            raise NotFoundError(f"Post {post_id} not found")
        return post

    async def _ensure_no_active_record(self, post_id: str, platform: str) -> None:
        active = await self.store.list_scheduled_posts(
            post_id=post_id, platform=platform, statuses=active_statuses()
        )
        if active:
            raise StateConflictError(
                f"Post {post_id} already has an active schedule on {platform} "
                f"({active[0].id}, status '{active[0].status.value}')",
                entity="scheduled_post",
                entity_id=active[0].id,
                current=active[0].status.value,
            )

    async def _create_record(
        self,
        post: Post,
        post_transition: Optional[Transition[Post]],
        platform: str,
        when: datetime,
        timezone: str,
        now: datetime,
    ) -> ScheduledPost:
        record = ScheduledPost(
            id=generate_id(),
            post_id=post.id,
            project_id=post.project_id,
            platform=platform,
            content=post.content,
            scheduled_time=when,
            timezone=timezone,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert_scheduled_post(record)
        if post_transition is not None:
            await self.store.save_post(post_transition.entity)
        await self._record(
            record.id,
            "scheduled_post_created",
            f"Scheduled on {platform} for {when.isoformat()}",
            record.project_id,
            platform=platform,
            post_id=post.id,
            scheduled_time=when.isoformat(),
        )

        project = await self.store.get_project(post.project_id)
        if project is not None and project.stage is ProjectStage.POSTS_APPROVED:
            await apply_project_transition(
                self.store, self.recorder, project, guards.schedule_posts, now, strict=False
            )
        return record

    async def _restore_post_schedule(self, record: ScheduledPost, now: datetime) -> None:
        """Put a Failed parent post back to Scheduled when its record is live again."""
        post = await self.store.get_post(record.post_id)
        if post is None or post.status is not PostStatus.FAILED:
            return
        transition = guards.mark_post_scheduled(post, now)
        await self.store.save_post(transition.entity)

    async def _persist(
        self, transition: Transition[ScheduledPost], expected: ScheduledPostStatus
    ) -> None:
        stored = await self.store.compare_and_set_scheduled_post(transition.entity, expected)
        if not stored:
            raise StateConflictError(
                f"Scheduled post {transition.entity.id} changed concurrently "
                f"(expected status '{expected.value}')",
                entity="scheduled_post",
                entity_id=transition.entity.id,
            )

    async def _record_transition(
        self, transition: Transition[ScheduledPost], description: str
    ) -> None:
        if self.recorder is not None:
            await self.recorder.record_event(
                transition.event, description, project_id=transition.entity.project_id
            )

    async def _record(
        self, entity_id: str, activity_type: str, description: str, project_id: str, **metadata
    ) -> None:
        if self.recorder is not None:
            await self.recorder.record(
                entity_id, activity_type, description, metadata=metadata, project_id=project_id
            )


def _is_retryable_reason(reason: Optional[str]) -> bool:
    if reason is None:
        return False
    try:
        return ErrorKind(reason).is_retryable
    except ValueError:
        return False


__all__ = ["ScheduledPostEngine"]
