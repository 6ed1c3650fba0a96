"""Request Dispatcher.

Single entry point for bot, admin tooling and timers:

    dispatcher = Dispatcher(lifecycle, scheduler, admin, usage, prep, shutdown)
    response = await dispatcher.dispatch({"action": "start", "userId": "123"})
    # {"statusCode": 200, "body": {...}}
"""

import hmac
import logging
import time
from typing import Any

import pydantic
from pydantic import BaseModel

from licensehub.app.config import Settings, get_settings
from licensehub.app.logging import bind_action, clear_trace_context, get_trace_id, set_trace_id
from licensehub.app.metrics.collector import DISPATCH_DURATION, DISPATCH_TOTAL
from licensehub.control.sweeps.auto_shutdown import AutoShutdownSweep
from licensehub.control.sweeps.session_prep import SessionPrepSweep
from licensehub.core.errors import ForbiddenError, LicenseHubError
from licensehub.core.logging_schema import Component, LogEvent
from licensehub.dispatch.commands import (
    ACTIONS,
    ANONYMOUS_ACTIONS,
    AdminCancelAllSessionsCommand,
    AdminCancelSessionCommand,
    AdminCommand,
    AdminForceShutdownCommand,
    AdminMaintenanceResetCommand,
    AdminOverviewCommand,
    AdminSystemMaintenanceCommand,
    AutoShutdownCheckCommand,
    CancelSessionCommand,
    CheckAvailabilityCommand,
    Command,
    CreateCommand,
    DeleteUserCommand,
    DestroyCommand,
    DonationWebhookCommand,
    EndScheduledSessionCommand,
    GetAllCostsCommand,
    GetUserCostsCommand,
    ListAllCommand,
    ListSessionsCommand,
    PrepareSessionsCommand,
    ScheduleSessionCommand,
    SetLicenseSharingCommand,
    ShutdownStatsCommand,
    StartCommand,
    StartScheduledSessionCommand,
    StatusCommand,
    StopCommand,
    UpdateVersionCommand,
    parse_command,
)
from licensehub.services.admin_service import AdminService
from licensehub.services.instance_service import InstanceLifecycleManager, InstanceProfile
from licensehub.services.license_scheduler import LicenseScheduler, SessionRequest
from licensehub.services.usage_ledger import UsageService

logger = logging.getLogger(__name__)


def _to_body(result: Any) -> Any:
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json", by_alias=True)
    if isinstance(result, list):
        return [_to_body(item) for item in result]
    return result


def _error(status_code: int, message: str, code: str | None = None) -> dict[str, Any]:
    body: dict[str, Any] = {"error": message}
    if code is not None:
        body["code"] = code
    return {"statusCode": status_code, "body": body}


class Dispatcher:
    def __init__(
        self,
        lifecycle: InstanceLifecycleManager,
        scheduler: LicenseScheduler,
        admin: AdminService,
        usage: UsageService,
        prep_sweep: SessionPrepSweep,
        shutdown_sweep: AutoShutdownSweep,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self._lifecycle = lifecycle
        self._scheduler = scheduler
        self._admin = admin
        self._usage = usage
        self._prep = prep_sweep
        self._shutdown = shutdown_sweep
        self._admin_ids = frozenset(settings.admin.user_ids)
        self._donation_token = settings.usage.donation_verification_token

    def is_admin(self, user_id: str | None) -> bool:
        return user_id is not None and user_id in self._admin_ids

    async def dispatch(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Run one action and return ``{statusCode, body}``. Never raises."""
        action = payload.get("action")
        # Inside an HTTP request the middleware already owns the trace
        owns_trace = get_trace_id() is None
        if owns_trace:
            set_trace_id()
        label = action if isinstance(action, str) and action in ACTIONS else "unknown"
        bind_action(label, payload.get("userId"))
        started = time.perf_counter()
        try:
            response = await self._dispatch(action, payload)
        finally:
            if owns_trace:
                clear_trace_context()

        DISPATCH_TOTAL.labels(action=label, status=str(response["statusCode"])).inc()
        DISPATCH_DURATION.labels(action=label).observe(time.perf_counter() - started)
        return response

    async def _dispatch(self, action: Any, payload: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(action, str) or not action:
            return _error(400, "Missing required fields: action and userId")
        if action not in ANONYMOUS_ACTIONS and not payload.get("userId"):
            return _error(400, "Missing required fields: action and userId")
        if action not in ACTIONS:
            return _error(400, f"Unknown action: {action}")

        try:
            command = parse_command(payload)
        except pydantic.ValidationError as exc:
            return _error(400, f"Invalid request: {_summarize(exc)}", "VALIDATION_ERROR")

        try:
            result = await self.execute(command)
        except LicenseHubError as exc:
            level = logging.ERROR if exc.status_code >= 500 else logging.INFO
            logger.log(
                level,
                "Action failed: %s",
                exc.message,
                extra={
                    "event": LogEvent.DISPATCH_FAILED,
                    "component": Component.API,
                    "action": action,
                    "user_id": payload.get("userId"),
                    "error_code": exc.code.value,
                },
            )
            return _error(exc.status_code, exc.message, exc.code.value)
        except Exception as exc:
            logger.exception(
                "Unhandled error in action %s",
                action,
                extra={"event": LogEvent.DISPATCH_FAILED, "component": Component.API, "action": action},
            )
            return _error(500, f"Internal error: {exc}")

        return {"statusCode": 200, "body": _to_body(result)}

    async def execute(self, command: Command) -> Any:
        """Run a validated command against its service.

        Raises:
            LicenseHubError: Propagated from the service
        """
        if isinstance(command, AdminCommand) and not self.is_admin(command.user_id):
            raise ForbiddenError("Admin privileges required")

        match command:
            # Instance lifecycle
            case CreateCommand():
                return await self._lifecycle.create(
                    command.user_id,
                    InstanceProfile(
                        username=command.username,
                        license_type=command.license_type,
                        license_username=command.license_username,
                        license_password=command.license_password,
                        allow_license_sharing=command.allow_license_sharing,
                        max_concurrent_users=command.max_concurrent_users,
                        app_version=command.app_version,
                    ),
                )
            case StartCommand():
                return await self._lifecycle.start(command.user_id)
            case StopCommand():
                return await self._lifecycle.stop(command.user_id)
            case DestroyCommand():
                return await self._lifecycle.destroy(
                    command.user_id, keep_license_sharing=command.keep_license_sharing
                )
            case DeleteUserCommand():
                return await self._lifecycle.delete_user(command.user_id)
            case StatusCommand():
                return await self._lifecycle.status(command.user_id)
            case ListAllCommand():
                return await self._lifecycle.list_all()
            case UpdateVersionCommand():
                return await self._lifecycle.update_version(command.user_id, command.app_version)
            case SetLicenseSharingCommand():
                return await self._lifecycle.set_license_sharing(
                    command.user_id,
                    command.allow_license_sharing,
                    command.max_concurrent_users,
                )

            # Scheduling
            case ScheduleSessionCommand():
                return await self._scheduler.schedule_session(
                    SessionRequest(
                        user_id=command.user_id,
                        username=command.username,
                        start_time=command.start_time,
                        end_time=command.end_time,
                        license_type=command.license_type,
                        title=command.title,
                        description=command.description,
                        preferred_license_id=command.preferred_license_id,
                    )
                )
            case CancelSessionCommand():
                return await self._scheduler.cancel_session(
                    command.session_id,
                    requested_by=command.user_id,
                    is_admin=self.is_admin(command.user_id),
                )
            case ListSessionsCommand():
                return await self._scheduler.list_sessions(
                    command.user_id, include_closed=command.include_closed
                )
            case CheckAvailabilityCommand():
                return await self._scheduler.check_availability(
                    command.license_type,
                    command.start_time,
                    command.end_time,
                    preferred_license_id=command.preferred_license_id,
                    requesting_user_id=command.user_id,
                )
            case StartScheduledSessionCommand():
                await self._require_session_access(command.session_id, command.user_id)
                return await self._scheduler.activate_session(command.session_id, require_started=True)
            case EndScheduledSessionCommand():
                await self._require_session_access(command.session_id, command.user_id)
                return await self._scheduler.complete_session(command.session_id)

            # Sweep triggers
            case AutoShutdownCheckCommand():
                return await self._shutdown.tick()
            case PrepareSessionsCommand():
                return await self._prep.tick()
            case ShutdownStatsCommand():
                return await self._shutdown.shutdown_stats()

            # Admin
            case AdminOverviewCommand():
                return await self._admin.overview()
            case AdminForceShutdownCommand():
                return await self._admin.force_shutdown(
                    command.target_user_id, command.user_id, command.force_reason
                )
            case AdminCancelSessionCommand():
                return await self._admin.cancel_session(
                    command.session_id, command.user_id, command.force_reason
                )
            case AdminCancelAllSessionsCommand():
                return await self._admin.cancel_all_sessions(command.user_id, command.force_reason)
            case AdminSystemMaintenanceCommand():
                return await self._admin.system_maintenance(command.user_id, command.force_reason)
            case AdminMaintenanceResetCommand():
                return await self._admin.maintenance_reset(command.user_id, command.force_reason)

            # Usage
            case GetUserCostsCommand():
                return await self._usage.user_costs(command.user_id)
            case GetAllCostsCommand():
                return await self._usage.all_costs()
            case DonationWebhookCommand():
                self._verify_donation_token(command.verification_token)
                return await self._usage.donation(command.amount, command.from_name, command.message)

        raise TypeError(f"Unhandled command: {type(command).__name__}")

    async def _require_session_access(self, session_id: str, user_id: str) -> None:
        session = await self._scheduler.get_session(session_id)
        if session.user_id != user_id and not self.is_admin(user_id):
            raise ForbiddenError("You can only manage your own sessions")

    def _verify_donation_token(self, token: str | None) -> None:
        if self._donation_token and not hmac.compare_digest(
            token or "", self._donation_token
        ):
            raise ForbiddenError("Invalid donation verification token")


def _summarize(exc: pydantic.ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(p) for p in error["loc"] if p not in ACTIONS)
        parts.append(f"{location}: {error['msg']}" if location else error["msg"])
    return "; ".join(parts)
