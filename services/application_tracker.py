"""
Application Lifecycle Tracker - gig applications, project start and bounded delivery rounds

application_status: pending -> accepted | rejected
project_status:     not_started -> in_progress -> submitted -> approved -> completed
                                                 submitted -> revision_requested -> submitted
Every submission consumes one iteration; remaining_iterations never goes up.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from database import Database
from models import ApplicationStatus, GigApplication, ParticipantRole, ProjectStatus
from services.event_bus import EventBus
from services.ledger_store import ensure_positive_amount
from utils.datetime_helpers import utc_now
from utils.error_handler import (
    AlreadyRejected, ApplicationNotFound, DuplicateApplication, InvalidIterations, InvalidTransition,
    IterationsExhausted, NotAParticipant, RoleNotAllowed,
)
from utils.identity import Actor
from utils.optimistic_locking import apply_versioned, with_async_optimistic_locking
from utils.state_machines import ensure_transition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplicationSnapshot:
    id: int
    gig_id: str
    freelancer_id: str
    proposed_rate: Optional[int]
    application_status: ApplicationStatus
    project_status: ProjectStatus
    total_iterations: int
    remaining_iterations: int
    used_iterations: int
    last_feedback: Optional[str]
    accepted_at: Optional[datetime]
    project_started_at: Optional[datetime]
    last_submission_at: Optional[datetime]
    completed_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: GigApplication) -> "ApplicationSnapshot":
        return cls(
            id=row.id,
            gig_id=row.gig_id,
            freelancer_id=row.freelancer_id,
            proposed_rate=row.proposed_rate,
            application_status=ApplicationStatus(row.application_status),
            project_status=ProjectStatus(row.project_status),
            total_iterations=row.total_iterations,
            remaining_iterations=row.remaining_iterations,
            used_iterations=row.used_iterations,
            last_feedback=row.last_feedback,
            accepted_at=row.accepted_at,
            project_started_at=row.project_started_at,
            last_submission_at=row.last_submission_at,
            completed_at=row.completed_at,
        )


def validate_iterations(iterations) -> int:
    if (
        isinstance(iterations, bool)
        or not isinstance(iterations, int)
        or not Config.MIN_ITERATIONS <= iterations <= Config.MAX_ITERATIONS
    ):
        raise InvalidIterations(
            f"Iterations must be between {Config.MIN_ITERATIONS} and {Config.MAX_ITERATIONS}, got {iterations!r}",
            iterations=str(iterations),
        )
    return iterations


class ApplicationTracker:
    """Gates payment on accepted applications and bounds delivery rounds"""

    def __init__(self, db: Database, event_bus: EventBus):
        self.db = db
        self.event_bus = event_bus

    async def find_application(
        self, session: AsyncSession, gig_id: str, freelancer_id: str
    ) -> Optional[GigApplication]:
        result = await session.execute(
            select(GigApplication).where(
                GigApplication.gig_id == gig_id,
                GigApplication.freelancer_id == freelancer_id,
            )
        )
        return result.scalar_one_or_none()

    async def _require(self, session: AsyncSession, gig_id: str, freelancer_id: str) -> GigApplication:
        application = await self.find_application(session, gig_id, freelancer_id)
        if application is None:
            raise ApplicationNotFound(
                f"No application from {freelancer_id} to gig {gig_id}", gig_id=gig_id, freelancer_id=freelancer_id
            )
        return application

    async def get_application(self, gig_id: str, freelancer_id: str) -> ApplicationSnapshot:
        async with self.db.managed_session() as session:
            return ApplicationSnapshot.from_row(await self._require(session, gig_id, freelancer_id))

    async def submit_application(
        self,
        gig_id: str,
        actor: Actor,
        proposed_rate: Optional[int] = None,
        iterations: int = Config.DEFAULT_ITERATIONS,
        cover_letter: Optional[str] = None,
    ) -> ApplicationSnapshot:
        if actor.role != ParticipantRole.FREELANCER:
            raise RoleNotAllowed("Only freelancers can apply to gigs", role=actor.role.value)
        validate_iterations(iterations)
        if proposed_rate is not None:
            ensure_positive_amount(proposed_rate)

        async with self.db.managed_session() as session:
            if await self.find_application(session, gig_id, actor.user_id) is not None:
                raise DuplicateApplication(f"{actor.user_id} already applied to gig {gig_id}", gig_id=gig_id)

            application = GigApplication(
                gig_id=gig_id,
                freelancer_id=actor.user_id,
                proposed_rate=proposed_rate,
                cover_letter=cover_letter,
                application_status=ApplicationStatus.PENDING.value,
                project_status=ProjectStatus.NOT_STARTED.value,
                total_iterations=iterations,
                remaining_iterations=iterations,
                used_iterations=0,
                applied_at=utc_now(),
                version=1,
            )
            session.add(application)
            try:
                await session.flush()
            except IntegrityError as e:
                raise DuplicateApplication(f"{actor.user_id} already applied to gig {gig_id}", gig_id=gig_id) from e
            snapshot = ApplicationSnapshot.from_row(application)

        logger.info(f"📝 APPLICATION_SUBMITTED: {actor.user_id} → gig {gig_id} ({iterations} iterations)")
        await self.event_bus.publish("application.submitted", {
            "gig_id": gig_id, "freelancer_id": actor.user_id, "iterations": iterations,
        })
        return snapshot

    @with_async_optimistic_locking()
    async def accept_application(self, gig_id: str, freelancer_id: str) -> ApplicationSnapshot:
        async with self.db.managed_session() as session:
            application = await self._require(session, gig_id, freelancer_id)
            if application.application_status == ApplicationStatus.ACCEPTED.value:
                return ApplicationSnapshot.from_row(application)

            ensure_transition("application", application.application_status, ApplicationStatus.ACCEPTED.value, application.id)
            await apply_versioned(
                session, application,
                application_status=ApplicationStatus.ACCEPTED.value,
                accepted_at=utc_now(),
            )
            snapshot = ApplicationSnapshot.from_row(application)

        logger.info(f"✅ APPLICATION_ACCEPTED: {freelancer_id} on gig {gig_id}")
        await self.event_bus.publish("application.accepted", {"gig_id": gig_id, "freelancer_id": freelancer_id})
        return snapshot

    @with_async_optimistic_locking()
    async def reject_application(self, gig_id: str, freelancer_id: str) -> ApplicationSnapshot:
        async with self.db.managed_session() as session:
            application = await self._require(session, gig_id, freelancer_id)
            if application.application_status == ApplicationStatus.REJECTED.value:
                raise AlreadyRejected(f"Application of {freelancer_id} to gig {gig_id} is already rejected")

            ensure_transition("application", application.application_status, ApplicationStatus.REJECTED.value, application.id)
            await apply_versioned(
                session, application,
                application_status=ApplicationStatus.REJECTED.value,
                rejected_at=utc_now(),
            )
            snapshot = ApplicationSnapshot.from_row(application)

        logger.info(f"❌ APPLICATION_REJECTED: {freelancer_id} on gig {gig_id}")
        await self.event_bus.publish("application.rejected", {"gig_id": gig_id, "freelancer_id": freelancer_id})
        return snapshot

    async def start_project_in_session(
        self, session: AsyncSession, application: GigApplication
    ) -> bool:
        """not_started -> in_progress; False when the project had already started"""
        if application.application_status != ApplicationStatus.ACCEPTED.value:
            raise InvalidTransition(
                f"Application {application.id} is {application.application_status}, project cannot start",
                application_id=application.id,
            )
        if application.project_status != ProjectStatus.NOT_STARTED.value:
            return False

        await apply_versioned(
            session, application,
            project_status=ProjectStatus.IN_PROGRESS.value,
            project_started_at=utc_now(),
        )
        logger.info(f"🚀 PROJECT_STARTED: {application.freelancer_id} on gig {application.gig_id}")
        return True

    @with_async_optimistic_locking()
    async def _start_project_txn(self, gig_id: str, freelancer_id: str):
        async with self.db.managed_session() as session:
            application = await self._require(session, gig_id, freelancer_id)
            started = await self.start_project_in_session(session, application)
            return ApplicationSnapshot.from_row(application), started

    async def start_project(self, gig_id: str, freelancer_id: str) -> ApplicationSnapshot:
        snapshot, started = await self._start_project_txn(gig_id, freelancer_id)
        if started:
            await self.event_bus.publish("project.started", {"gig_id": gig_id, "freelancer_id": freelancer_id})
        return snapshot

    @with_async_optimistic_locking()
    async def _submit_delivery_txn(self, gig_id: str, actor: Actor) -> ApplicationSnapshot:
        async with self.db.managed_session() as session:
            application = await self._require(session, gig_id, actor.user_id)

            if application.application_status != ApplicationStatus.ACCEPTED.value:
                raise InvalidTransition(f"Application to gig {gig_id} is not accepted")
            ensure_transition("project", application.project_status, ProjectStatus.SUBMITTED.value, application.id)
            if application.remaining_iterations <= 0:
                logger.warning(f"🚫 ITERATIONS_EXHAUSTED: {actor.user_id} on gig {gig_id}")
                raise IterationsExhausted(
                    f"All {application.total_iterations} iterations used", total=application.total_iterations
                )

            await apply_versioned(
                session, application,
                project_status=ProjectStatus.SUBMITTED.value,
                remaining_iterations=application.remaining_iterations - 1,
                used_iterations=application.used_iterations + 1,
                last_submission_at=utc_now(),
            )
            return ApplicationSnapshot.from_row(application)

    async def submit_delivery(self, gig_id: str, actor: Actor) -> ApplicationSnapshot:
        if actor.role != ParticipantRole.FREELANCER:
            raise NotAParticipant("Only the hired freelancer submits deliveries")
        snapshot = await self._submit_delivery_txn(gig_id, actor)

        logger.info(
            f"📦 DELIVERY_SUBMITTED: {actor.user_id} on gig {gig_id} "
            f"({snapshot.used_iterations}/{snapshot.total_iterations} used)"
        )
        await self.event_bus.publish("project.submitted", {
            "gig_id": gig_id, "freelancer_id": actor.user_id,
            "remaining_iterations": snapshot.remaining_iterations,
        })
        return snapshot

    @with_async_optimistic_locking()
    async def review_delivery(
        self, gig_id: str, freelancer_id: str, approve: bool, feedback: Optional[str] = None
    ) -> ApplicationSnapshot:
        target = ProjectStatus.APPROVED if approve else ProjectStatus.REVISION_REQUESTED
        async with self.db.managed_session() as session:
            application = await self._require(session, gig_id, freelancer_id)
            ensure_transition("project", application.project_status, target.value, application.id)
            await apply_versioned(session, application, project_status=target.value, last_feedback=feedback)
            snapshot = ApplicationSnapshot.from_row(application)

        logger.info(f"🔍 DELIVERY_REVIEWED: gig {gig_id} {freelancer_id} → {target.value}")
        await self.event_bus.publish("project.reviewed", {
            "gig_id": gig_id, "freelancer_id": freelancer_id, "status": target.value, "feedback": feedback,
        })
        return snapshot

    @with_async_optimistic_locking()
    async def complete_project(self, gig_id: str, freelancer_id: str) -> ApplicationSnapshot:
        async with self.db.managed_session() as session:
            application = await self._require(session, gig_id, freelancer_id)
            ensure_transition("project", application.project_status, ProjectStatus.COMPLETED.value, application.id)
            await apply_versioned(
                session, application,
                project_status=ProjectStatus.COMPLETED.value,
                completed_at=utc_now(),
            )
            snapshot = ApplicationSnapshot.from_row(application)

        logger.info(f"🏁 PROJECT_COMPLETED: {freelancer_id} on gig {gig_id}")
        await self.event_bus.publish("project.completed", {"gig_id": gig_id, "freelancer_id": freelancer_id})
        return snapshot
