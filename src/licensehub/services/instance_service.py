"""Instance Lifecycle Manager.

create → start ⇄ stop → destroy for one user's instance. The Instance row
is the only state; every call re-reads it and mutates it with conditional
writes, so concurrent callers (user actions, both sweeps) cannot double
start, double stop, or double charge usage.

Transactions are kept short: collaborator calls (which may take minutes)
happen between transactions, never inside one.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from licensehub.app.config import Settings, get_settings
from licensehub.app.metrics.collector import INSTANCE_START_DURATION
from licensehub.core.clock import Clock, unix_now
from licensehub.core.domain import (
    OPEN_SESSION_STATUSES,
    PERMISSION_RESET_VERSIONS,
    TASK_BOUND_STATUSES,
    InstanceStatus,
    LicenseType,
    TaskStatus,
    is_valid_version,
    license_id_for,
    owner_of,
    sanitize_username,
)
from licensehub.core.errors import (
    ConflictError,
    LicenseHubError,
    PolicyViolationError,
    UnavailableError,
    UpstreamFailureError,
    ValidationError,
)
from licensehub.core.interfaces import (
    Collaborators,
    LicenseCredentials,
    TaskNetwork,
    TaskProfile,
)
from licensehub.core.logging_schema import Component, ErrorClass, LogEvent
from licensehub.core.models import Instance, ScheduledSession
from licensehub.core.outcome import StepLog
from licensehub.core.schemas import (
    CreateResult,
    DestroyResult,
    InstanceView,
    SharingResult,
    StartResult,
    StopResult,
    VersionResult,
)
from licensehub.services import license_policy, state_store, usage_ledger

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class InstanceProfile:
    """User-supplied registration details."""

    username: str
    license_type: LicenseType = LicenseType.BYOL
    license_username: str | None = None
    license_password: str | None = None
    allow_license_sharing: bool = False
    max_concurrent_users: int = 1
    app_version: str = "13"


@dataclass
class _LaunchedTask:
    template_ref: str
    task_ref: str
    address: str
    rule_ref: str


class InstanceLifecycleManager:
    """Create/start/stop/destroy state machine for per-user instances."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        collaborators: Collaborators,
        clock: Clock = unix_now,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._sessions = session_factory
        self._c = collaborators
        self._clock = clock
        self._policy = settings.policy
        self._aws = settings.aws
        self._domain = settings.domain.name

    # =========================================================================
    # Naming
    # =========================================================================

    def host_for(self, sanitized_username: str) -> str:
        return f"{sanitized_username}.{self._domain}"

    def url_for(self, instance: Instance) -> str:
        return f"https://{self.host_for(instance.sanitized_username)}"

    def _target_name(self, sanitized_username: str) -> str:
        # Target group names are limited to 32 characters
        return f"{self._aws.resource_prefix}-{sanitized_username}"[:32].rstrip("-")

    async def _upstream(self, step: str, coro_factory: Callable[[], Awaitable[T]], **extra) -> T:
        """Call a collaborator, translating failures to UpstreamFailureError."""
        try:
            return await coro_factory()
        except LicenseHubError:
            raise
        except Exception as exc:
            timed_out = isinstance(exc, TimeoutError)
            logger.warning(
                "Collaborator call failed: %s",
                step,
                extra={
                    "event": LogEvent.OPERATION_TIMEOUT if timed_out else LogEvent.UPSTREAM_ERROR,
                    "component": Component.LIFECYCLE,
                    "step": step,
                    "error_class": ErrorClass.TIMEOUT if timed_out else None,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    **extra,
                },
            )
            raise UpstreamFailureError(f"{step} failed: {exc}") from exc

    # =========================================================================
    # Create
    # =========================================================================

    async def create(self, user_id: str, profile: InstanceProfile) -> CreateResult:
        """Provision every per-user resource and write the Instance row.

        The row is inserted first (claiming the user ID) with a start lease
        held, so a concurrent create fails with ConflictError before any
        resource is provisioned twice.

        Raises:
            ConflictError: If the user already has an instance
            ValidationError: If the profile is inconsistent
            UpstreamFailureError: If provisioning failed (partial resources are rolled back)
        """
        if profile.license_type == LicenseType.POOLED and profile.allow_license_sharing:
            raise ValidationError("Pooled instances cannot share a license")
        if profile.max_concurrent_users < 1:
            raise ValidationError("maxConcurrentUsers must be at least 1")
        if not is_valid_version(profile.app_version):
            raise ValidationError(f"Invalid version: {profile.app_version}")

        now = self._clock()
        sanitized = sanitize_username(profile.username)
        op_id = uuid4().hex

        async with self._sessions() as db:
            await state_store.insert_instance(
                db,
                Instance(
                    user_id=user_id,
                    username=profile.username,
                    sanitized_username=sanitized,
                    status=InstanceStatus.CREATED,
                    app_version=profile.app_version,
                    license_type=profile.license_type,
                    allow_license_sharing=profile.allow_license_sharing,
                    max_concurrent_users=profile.max_concurrent_users,
                    license_owner_id=(
                        license_id_for(user_id) if profile.license_type == LicenseType.BYOL else None
                    ),
                    op_id=op_id,
                    op_started_at=now,
                    created_at=now,
                    updated_at=now,
                ),
            )
            await db.commit()

        provisioned: dict[str, str] = {}
        try:
            credentials = await self._registration_credentials(user_id, profile)
            provisioned["access_point_id"] = await self._upstream(
                "create_access_point", lambda: self._c.network_storage.create_access_point(user_id)
            )
            provisioned["bucket_name"] = await self._upstream(
                "create_bucket", lambda: self._c.object_storage.create_bucket(user_id, sanitized)
            )
            scoped = await self._upstream(
                "create_scoped_credential",
                lambda: self._c.identity.create_scoped_credential(user_id, provisioned["bucket_name"]),
            )
            provisioned["scoped_credential"] = user_id
            provisioned["target_ref"] = await self._upstream(
                "create_target", lambda: self._c.routing.create_target(self._target_name(sanitized))
            )
            await self._upstream(
                "upsert_dns",
                lambda: self._c.dns.upsert(self.host_for(sanitized), self._aws.alb_dns_name),
            )
            provisioned["dns"] = self.host_for(sanitized)
            provisioned["secret_ref"] = await self._upstream(
                "put_secret", lambda: self._c.secrets.put(user_id, credentials)
            )
        except LicenseHubError:
            await self._rollback_provisioning(user_id, provisioned)
            async with self._sessions() as db:
                await state_store.delete_instance(db, user_id)
                await db.commit()
            raise

        pool_created = False
        async with self._sessions() as db:
            await state_store.update_instance(
                db,
                user_id,
                self._clock(),
                access_point_id=provisioned["access_point_id"],
                bucket_name=provisioned["bucket_name"],
                bucket_access_key_id=scoped.access_key_id,
                bucket_secret_access_key=scoped.secret_access_key,
                target_ref=provisioned["target_ref"],
                secret_ref=provisioned["secret_ref"],
                op_id=None,
                op_started_at=None,
            )
            if profile.allow_license_sharing:
                _, pool_created = await state_store.upsert_pool(
                    db,
                    license_id_for(user_id),
                    owner_id=user_id,
                    owner_username=profile.username,
                    max_concurrent_users=profile.max_concurrent_users,
                    now=now,
                )
            await db.commit()

        url = f"https://{self.host_for(sanitized)}"
        logger.info(
            "Instance created",
            extra={
                "event": LogEvent.INSTANCE_CREATED,
                "user_id": user_id,
                "license_type": profile.license_type,
                "sharing": profile.allow_license_sharing,
            },
        )
        return CreateResult(
            user_id=user_id,
            url=url,
            status=InstanceStatus.CREATED,
            license_pool_created=pool_created,
        )

    async def _registration_credentials(
        self, user_id: str, profile: InstanceProfile
    ) -> LicenseCredentials:
        """Credentials to store for a new instance, reusing a prior admin key."""
        existing = await self._upstream("get_secret", lambda: self._c.secrets.get(user_id))
        admin_key = existing.admin_key if existing else uuid4().hex

        if profile.license_username and profile.license_password:
            return LicenseCredentials(
                username=profile.license_username,
                password=profile.license_password,
                admin_key=admin_key,
            )
        if profile.license_type == LicenseType.POOLED:
            # Filled in from the license owner when a session starts
            return LicenseCredentials(username="", password="", admin_key=admin_key)
        if existing is not None and existing.username:
            return existing
        raise ValidationError("BYOL instances require license credentials")

    async def _rollback_provisioning(self, user_id: str, provisioned: dict[str, str]) -> None:
        steps = StepLog()
        if "secret_ref" in provisioned:
            await steps.attempt("delete_secret", lambda: self._c.secrets.delete(provisioned["secret_ref"]))
        if "dns" in provisioned:
            await steps.attempt("delete_dns", lambda: self._c.dns.delete(provisioned["dns"]))
        if "target_ref" in provisioned:
            await steps.attempt(
                "delete_target", lambda: self._c.routing.delete_target(provisioned["target_ref"])
            )
        if "scoped_credential" in provisioned:
            await steps.attempt(
                "delete_scoped_credential", lambda: self._c.identity.delete_scoped_credential(user_id)
            )
        if "bucket_name" in provisioned:
            await steps.attempt(
                "delete_bucket", lambda: self._c.object_storage.delete_bucket(provisioned["bucket_name"])
            )
        if "access_point_id" in provisioned:
            await steps.attempt(
                "delete_access_point",
                lambda: self._c.network_storage.purge_and_delete(provisioned["access_point_id"], user_id),
            )
        if steps.errors:
            logger.error(
                "Provisioning rollback incomplete",
                extra={"event": LogEvent.CLEANUP_STEP_FAILED, "user_id": user_id, "errors": steps.errors},
            )

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, user_id: str) -> StartResult:
        """On-demand start.

        Raises:
            NotFoundError: If no instance exists
            ConflictError: If already running or another operation holds the lease
            PolicyViolationError: If a scheduled session reserves the license now
            UpstreamFailureError: If launching or routing failed
        """
        return await self._start(user_id, session=None)

    async def start_for_session(self, user_id: str, session: ScheduledSession) -> StartResult:
        """Start (or re-link) the instance backing a scheduled session.

        A running on-demand instance is stopped first so it restarts with
        the session's license and deadline.
        """
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
        if instance.status in TASK_BOUND_STATUSES and instance.task_ref:
            if instance.linked_session_id == session.session_id:
                return StartResult(
                    user_id=user_id,
                    url=self.url_for(instance),
                    status=instance.status,
                    auto_shutdown_at=instance.auto_shutdown_at,
                    linked_session_id=instance.linked_session_id,
                )
            await self._stop_task(instance)
        return await self._start(user_id, session=session)

    async def _start(self, user_id: str, session: ScheduledSession | None) -> StartResult:
        now = self._clock()
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
            if instance.status == InstanceStatus.RUNNING:
                raise ConflictError("Instance is already running")
            if instance.status in TASK_BOUND_STATUSES:
                raise ConflictError(f"Instance is {instance.status}")
            if not instance.target_ref:
                raise ConflictError("Instance is still being provisioned")

            if session is None:
                decision = await license_policy.evaluate_on_demand(db, instance, now, self._policy)
                if not decision.can_start:
                    raise PolicyViolationError(decision.reason or "On-demand start not permitted")

            op_id = uuid4().hex
            stale_before = now - self._policy.operation_timeout_seconds
            claimed = await state_store.transition_instance(
                db,
                user_id,
                Instance.status.in_([InstanceStatus.CREATED.value, InstanceStatus.STOPPED.value]),
                or_(Instance.op_id.is_(None), Instance.op_started_at < stale_before),
                now=now,
                op_id=op_id,
                op_started_at=now,
            )
            if not claimed:
                raise ConflictError("Another operation is in progress for this instance")
            await db.commit()

        license_owner_id = instance.license_owner_id
        started = time.monotonic()
        try:
            if session is not None and session.license_id:
                if instance.license_type == LicenseType.POOLED:
                    await self._hand_off_credentials(instance, session.license_id)
                license_owner_id = session.license_id
            launched = await self._launch(instance)
        except Exception:
            await self._release_lease(user_id, op_id)
            raise

        ready_at = self._clock()
        deadline = license_policy.auto_shutdown_at(
            instance.license_type,
            session.end_time if session is not None else None,
            ready_at,
            self._policy,
        )
        async with self._sessions() as db:
            finalized = await state_store.transition_instance(
                db,
                user_id,
                Instance.op_id == op_id,
                now=ready_at,
                status=InstanceStatus.RUNNING,
                template_ref=launched.template_ref,
                task_ref=launched.task_ref,
                task_address=launched.address,
                rule_ref=launched.rule_ref,
                started_at=ready_at,
                auto_shutdown_at=deadline,
                linked_session_id=session.session_id if session is not None else None,
                license_owner_id=license_owner_id,
                op_id=None,
                op_started_at=None,
            )
            if finalized:
                await usage_ledger.record_start(db, user_id, ready_at)
            await db.commit()

        if not finalized:
            # Lease lost (destroyed or taken over as stale) while launching
            await self._teardown_task(instance.target_ref, launched)
            raise ConflictError("Instance changed while starting")

        INSTANCE_START_DURATION.observe(time.monotonic() - started)
        logger.info(
            "Instance started",
            extra={
                "event": LogEvent.INSTANCE_STARTED,
                "user_id": user_id,
                "session_id": session.session_id if session is not None else None,
                "license_id": license_owner_id,
                "auto_shutdown_at": deadline,
            },
        )
        return StartResult(
            user_id=user_id,
            url=self.url_for(instance),
            status=InstanceStatus.RUNNING,
            auto_shutdown_at=deadline,
            linked_session_id=session.session_id if session is not None else None,
        )

    async def _release_lease(self, user_id: str, op_id: str) -> None:
        async with self._sessions() as db:
            await state_store.transition_instance(
                db, user_id, Instance.op_id == op_id, now=self._clock(), op_id=None, op_started_at=None
            )
            await db.commit()

    async def _hand_off_credentials(self, instance: Instance, license_id: str) -> None:
        """Copy the license owner's credentials into the user's secret.

        The user's own admin key is preserved. If the owner's credentials are
        gone, the pool is permanently unusable and is deactivated.

        Raises:
            UnavailableError: If the owner's credentials no longer exist
        """
        async with self._sessions() as db:
            pool = await state_store.get_pool(db, license_id)
        owner_id = pool.owner_id if pool is not None else owner_of(license_id)
        if owner_id is None or owner_id == instance.user_id:
            return

        owner_credentials = await self._upstream("get_owner_secret", lambda: self._c.secrets.get(owner_id))
        if owner_credentials is None:
            await self.deactivate_pool(license_id, reason="owner credentials missing")
            raise UnavailableError(f"License owner credentials not found for {license_id}")

        own = await self._upstream("get_secret", lambda: self._c.secrets.get(instance.user_id))
        admin_key = own.admin_key if own is not None else uuid4().hex
        await self._upstream(
            "put_secret",
            lambda: self._c.secrets.put(
                instance.user_id,
                LicenseCredentials(
                    username=owner_credentials.username,
                    password=owner_credentials.password,
                    admin_key=admin_key,
                ),
            ),
        )

    async def _launch(self, instance: Instance) -> _LaunchedTask:
        profile = TaskProfile(
            user_id=instance.user_id,
            username=instance.sanitized_username,
            app_version=instance.app_version,
            access_point_id=instance.access_point_id,
            secret_ref=instance.secret_ref,
            bucket_name=instance.bucket_name,
            bucket_access_key_id=instance.bucket_access_key_id,
            bucket_secret_access_key=instance.bucket_secret_access_key,
        )
        network = TaskNetwork(
            subnet_ids=list(self._aws.subnet_ids),
            security_group_ids=[self._aws.security_group_id] if self._aws.security_group_id else [],
        )
        target_ref = instance.target_ref
        log_extra = {"user_id": instance.user_id}

        template_ref = await self._upstream(
            "register_task_template", lambda: self._c.compute.register_task_template(profile), **log_extra
        )
        task_ref = await self._upstream(
            "run_task", lambda: self._c.compute.run(template_ref, network), **log_extra
        )
        launched = _LaunchedTask(template_ref=template_ref, task_ref=task_ref, address="", rule_ref="")
        try:
            await self._upstream(
                "wait_until_running",
                lambda: self._c.compute.wait_until_running(
                    task_ref, self._policy.operation_timeout_seconds
                ),
                **log_extra,
            )
            launched.address = await self._upstream(
                "private_address", lambda: self._c.compute.private_address(task_ref), **log_extra
            )
            await self._upstream(
                "bind_target", lambda: self._c.routing.bind(target_ref, launched.address), **log_extra
            )
            priority = await self._upstream("next_priority", self._c.routing.next_priority, **log_extra)
            launched.rule_ref = await self._upstream(
                "create_rule",
                lambda: self._c.routing.create_rule(
                    self.host_for(instance.sanitized_username), target_ref, priority
                ),
                **log_extra,
            )
        except LicenseHubError:
            await self._teardown_task(target_ref, launched)
            raise
        return launched

    async def _teardown_task(self, target_ref: str | None, launched: _LaunchedTask) -> None:
        steps = StepLog()
        if launched.rule_ref:
            await steps.attempt("delete_rule", lambda: self._c.routing.delete_rule(launched.rule_ref))
        if target_ref and launched.address:
            await steps.attempt("unbind_target", lambda: self._c.routing.unbind(target_ref, launched.address))
        await steps.attempt("stop_task", lambda: self._c.compute.stop(launched.task_ref))

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self, user_id: str) -> StopResult:
        """Stop the instance; a no-op success if it is not running.

        Raises:
            NotFoundError: If no instance exists
            UpstreamFailureError: If the compute task could not be stopped
        """
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
        if instance.task_ref is None:
            return StopResult(user_id=user_id, status=instance.status, already_stopped=True)
        return await self._stop_task(instance)

    async def _stop_task(self, instance: Instance) -> StopResult:
        """Tear down routing and the task, then conditionally clear the row.

        Only the caller whose conditional write wins closes the usage interval.
        """
        user_id = instance.user_id
        task_ref = instance.task_ref
        steps = StepLog()
        if instance.rule_ref:
            await steps.attempt(
                "delete_rule", lambda: self._c.routing.delete_rule(instance.rule_ref), user_id=user_id
            )
        if instance.target_ref and instance.task_address:
            await steps.attempt(
                "unbind_target",
                lambda: self._c.routing.unbind(instance.target_ref, instance.task_address),
                user_id=user_id,
            )
        await self._upstream("stop_task", lambda: self._c.compute.stop(task_ref), user_id=user_id)

        stopped_at = self._clock()
        hours = 0.0
        async with self._sessions() as db:
            won = await state_store.transition_instance(
                db,
                user_id,
                Instance.task_ref == task_ref,
                now=stopped_at,
                status=InstanceStatus.STOPPED,
                task_ref=None,
                task_address=None,
                rule_ref=None,
                auto_shutdown_at=None,
                linked_session_id=None,
                license_owner_id=(
                    license_id_for(user_id) if instance.license_type == LicenseType.BYOL else None
                ),
            )
            if won and instance.started_at is not None:
                hours = await usage_ledger.record_stop(db, user_id, instance.started_at, stopped_at)
            await db.commit()

        if won:
            logger.info(
                "Instance stopped",
                extra={
                    "event": LogEvent.INSTANCE_STOPPED,
                    "user_id": user_id,
                    "hours": round(hours, 3),
                    "linked_session_id": instance.linked_session_id,
                },
            )
        return StopResult(
            user_id=user_id,
            status=InstanceStatus.STOPPED,
            already_stopped=not won,
            hours_recorded=hours,
        )

    # =========================================================================
    # Status
    # =========================================================================

    async def status(self, user_id: str) -> InstanceView:
        """Instance view reconciled against the compute layer.

        A task that has vanished is treated as stopped (usage closed, routing
        removed); starting/stopping are copied from the compute layer.
        """
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
        if instance.task_ref is None:
            return InstanceView.of(instance, self.url_for(instance))

        try:
            observed = await self._c.compute.status(instance.task_ref)
        except Exception as exc:
            logger.warning(
                "Task status unavailable, returning stored status",
                extra={"event": LogEvent.UPSTREAM_ERROR, "user_id": user_id, "error": str(exc)},
            )
            return InstanceView.of(instance, self.url_for(instance))

        if observed == TaskStatus.STOPPED:
            logger.info(
                "Task vanished, reconciling instance to stopped",
                extra={"event": LogEvent.INSTANCE_RECONCILED, "user_id": user_id},
            )
            await self._stop_task(instance)
        elif observed != instance.status:
            async with self._sessions() as db:
                await state_store.transition_instance(
                    db,
                    user_id,
                    Instance.task_ref == instance.task_ref,
                    now=self._clock(),
                    status=InstanceStatus(observed.value),
                )
                await db.commit()

        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
        return InstanceView.of(instance, self.url_for(instance))

    async def list_all(self) -> list[InstanceView]:
        async with self._sessions() as db:
            instances = await state_store.list_instances(db)
        return [InstanceView.of(i, self.url_for(i)) for i in instances]

    # =========================================================================
    # Destroy
    # =========================================================================

    async def destroy(self, user_id: str, keep_license_sharing: bool = False) -> DestroyResult:
        """Best-effort cascade: every step is attempted even if earlier ones fail.

        Safe on partial state: with no Instance row, an orphaned active pool
        is deactivated instead of raising.
        """
        steps = StepLog()
        sessions_cancelled, reservations_cancelled = await self._cancel_user_sessions(user_id, steps)

        async with self._sessions() as db:
            instance = await state_store.get_instance(db, user_id)

        license_id = license_id_for(user_id)
        if instance is None:
            deactivated = False
            if not keep_license_sharing:
                deactivated = await self.deactivate_pool(license_id, reason="destroy without instance")
            return DestroyResult(
                user_id=user_id,
                instance_found=False,
                license_pool_deactivated=deactivated,
                sessions_cancelled=sessions_cancelled,
                reservations_cancelled=reservations_cancelled,
                steps_succeeded=steps.succeeded,
                steps_total=steps.total,
                errors=steps.errors,
            )

        extra = {"user_id": user_id}
        if instance.task_ref:
            await steps.attempt("stop_instance", lambda: self._stop_task(instance), **extra)
        if instance.target_ref:
            await steps.attempt(
                "delete_target", lambda: self._c.routing.delete_target(instance.target_ref), **extra
            )
        await steps.attempt(
            "delete_dns", lambda: self._c.dns.delete(self.host_for(instance.sanitized_username)), **extra
        )
        if instance.access_point_id:
            await steps.attempt(
                "delete_access_point",
                lambda: self._c.network_storage.purge_and_delete(instance.access_point_id, user_id),
                **extra,
            )
        if instance.bucket_name:
            await steps.attempt(
                "delete_bucket", lambda: self._c.object_storage.delete_bucket(instance.bucket_name), **extra
            )
        await steps.attempt(
            "delete_scoped_credential", lambda: self._c.identity.delete_scoped_credential(user_id), **extra
        )
        if not keep_license_sharing and instance.secret_ref:
            await steps.attempt("delete_secret", lambda: self._c.secrets.delete(instance.secret_ref), **extra)

        deactivated = False
        if not keep_license_sharing:
            outcome = await steps.attempt(
                "deactivate_license_pool",
                lambda: self.deactivate_pool(license_id, reason="instance destroyed"),
                **extra,
            )
            deactivated = bool(outcome.value)
        await steps.attempt("delete_instance_row", lambda: self._delete_row(user_id), **extra)

        logger.info(
            "Instance destroyed",
            extra={
                "event": LogEvent.INSTANCE_DESTROYED,
                "user_id": user_id,
                "keep_license_sharing": keep_license_sharing,
                "steps_succeeded": steps.succeeded,
                "steps_total": steps.total,
            },
        )
        return DestroyResult(
            user_id=user_id,
            instance_found=True,
            license_pool_deactivated=deactivated,
            sessions_cancelled=sessions_cancelled,
            reservations_cancelled=reservations_cancelled,
            steps_succeeded=steps.succeeded,
            steps_total=steps.total,
            errors=steps.errors,
        )

    async def _cancel_user_sessions(self, user_id: str, steps: StepLog) -> tuple[int, int]:
        async with self._sessions() as db:
            sessions = await state_store.list_sessions(
                db, user_id=user_id, statuses=set(OPEN_SESSION_STATUSES)
            )

        cancelled = 0
        reservations = 0
        for session in sessions:
            outcome = await steps.attempt(
                f"cancel_session:{session.session_id}",
                lambda sid=session.session_id: self._cancel_session_rows(sid),
                user_id=user_id,
            )
            if outcome.ok:
                was_cancelled, count = outcome.value
                cancelled += int(was_cancelled)
                reservations += count

        outcome = await steps.attempt(
            "cancel_reservations", lambda: self._cancel_user_reservation_rows(user_id), user_id=user_id
        )
        if outcome.ok:
            reservations += outcome.value
        return cancelled, reservations

    async def _cancel_session_rows(self, session_id: str) -> tuple[bool, int]:
        async with self._sessions() as db:
            result = await state_store.cancel_session_and_reservations(db, session_id, self._clock())
            await db.commit()
        return result

    async def _cancel_user_reservation_rows(self, user_id: str) -> int:
        async with self._sessions() as db:
            count = await state_store.cancel_user_reservations(db, user_id, self._clock())
            await db.commit()
        return count

    async def _delete_row(self, user_id: str) -> None:
        now = self._clock()
        async with self._sessions() as db:
            current = await state_store.get_instance(db, user_id)
            if current is not None and current.task_ref and current.started_at is not None:
                # Stop failed earlier in the cascade; still close the usage interval
                await usage_ledger.record_stop(db, user_id, current.started_at, now)
            await state_store.delete_instance(db, user_id)
            await db.commit()

    async def delete_user(self, user_id: str) -> DestroyResult:
        """Destroy, then remove a leftover secret and any active pool."""
        result = await self.destroy(user_id, keep_license_sharing=False)
        steps = StepLog()

        async def _delete_leftover_secret() -> None:
            if await self._c.secrets.get(user_id) is not None:
                await self._c.secrets.delete(self._c.secrets.ref_for(user_id))

        await steps.attempt("delete_leftover_secret", _delete_leftover_secret, user_id=user_id)
        outcome = await steps.attempt(
            "deactivate_license_pool",
            lambda: self.deactivate_pool(license_id_for(user_id), reason="user deleted"),
            user_id=user_id,
        )
        result.license_pool_deactivated = result.license_pool_deactivated or bool(outcome.value)
        result.steps_succeeded += steps.succeeded
        result.steps_total += steps.total
        result.errors.extend(steps.errors)
        return result

    # =========================================================================
    # Sharing / version
    # =========================================================================

    async def deactivate_pool(self, license_id: str, reason: str) -> bool:
        """Deactivate a pool (kept for reservation history). False if not active."""
        async with self._sessions() as db:
            changed = await state_store.set_pool_active(db, license_id, False, self._clock())
            await db.commit()
        if changed:
            logger.warning(
                "License pool deactivated",
                extra={"event": LogEvent.POOL_DEACTIVATED, "license_id": license_id, "reason": reason},
            )
        return changed

    async def set_license_sharing(
        self,
        user_id: str,
        enabled: bool,
        max_concurrent_users: int | None = None,
    ) -> SharingResult:
        """Opt a BYOL instance into (or out of) the shared license pool.

        Raises:
            NotFoundError: If no instance exists
            ValidationError: If the instance is pooled
        """
        now = self._clock()
        license_id = license_id_for(user_id)
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
            if instance.license_type != LicenseType.BYOL:
                raise ValidationError("Only BYOL instances can share their license")
            max_users = max_concurrent_users or instance.max_concurrent_users
            if max_users < 1:
                raise ValidationError("maxConcurrentUsers must be at least 1")

            await state_store.update_instance(
                db, user_id, now, allow_license_sharing=enabled, max_concurrent_users=max_users
            )
            created = False
            if enabled:
                _, created = await state_store.upsert_pool(
                    db,
                    license_id,
                    owner_id=user_id,
                    owner_username=instance.username,
                    max_concurrent_users=max_users,
                    now=now,
                )
            else:
                await state_store.set_pool_active(db, license_id, False, now)
            await db.commit()

        logger.info(
            "License sharing %s",
            "enabled" if enabled else "disabled",
            extra={
                "event": LogEvent.POOL_ACTIVATED if enabled else LogEvent.POOL_DEACTIVATED,
                "license_id": license_id,
                "max_concurrent_users": max_users,
            },
        )
        return SharingResult(
            license_id=license_id,
            allow_license_sharing=enabled,
            is_active=enabled,
            max_concurrent_users=max_users,
            created=created,
        )

    async def update_version(self, user_id: str, version: str) -> VersionResult:
        """Change the application version used on next start.

        Raises:
            ValidationError: If the version is not a known channel or x.y[.z]
            NotFoundError: If no instance exists
            ConflictError: If the instance is running
        """
        if not is_valid_version(version):
            raise ValidationError(
                f"Invalid version: {version}. Use 13, 12, 11, release, latest, or x.y[.z]"
            )
        async with self._sessions() as db:
            instance = await state_store.require_instance(db, user_id)
            if instance.task_ref is not None:
                raise ConflictError("Stop the instance before changing its version")
            previous = instance.app_version
            await state_store.update_instance(db, user_id, self._clock(), app_version=version)
            await db.commit()

        reset = False
        if version in PERMISSION_RESET_VERSIONS and previous != version and instance.access_point_id:
            steps = StepLog()
            outcome = await steps.attempt(
                "reset_permissions",
                lambda: self._c.network_storage.reset_permissions(
                    instance.access_point_id, user_id, version
                ),
                user_id=user_id,
            )
            reset = outcome.ok

        logger.info(
            "Instance version updated",
            extra={
                "event": LogEvent.VERSION_UPDATED,
                "user_id": user_id,
                "previous": previous,
                "version": version,
            },
        )
        return VersionResult(
            user_id=user_id,
            app_version=version,
            previous_version=previous,
            permissions_reset=reset,
        )
