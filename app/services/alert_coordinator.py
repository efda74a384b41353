"""External alert coordination: one push notification per stage wait.

The notification service is best effort: an unreachable endpoint, a
rejected request or a missing user context all downgrade to "alert not
scheduled" and never fail the stage transition that asked for it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, field_validator

from app.config import get_settings
from app.models.enums import AlertKindEnum
from app.schemas.batch import BatchRecord, ScheduledAlert
from app.services.recipe import RecipeDefinition, Stage, WaitSpec
from app.services.timers import Clock, utc_now

logger = structlog.get_logger("cheese.alerts")

REMINDER_PERMISSION = "alexa::alerts:reminders:skill:readwrite"


def stage_key(stage_id: int) -> str:
	return f"stage_{stage_id}"


def orphan_key(alert: ScheduledAlert) -> str:
	"""Key for a superseded alert that could not be cancelled yet."""
	return f"orphan_{alert.external_reminder_id}"


class NotificationContext(BaseModel):
	"""Endpoint + access token valid for one end-user session."""

	model_config = ConfigDict(frozen=True)

	api_endpoint: str
	api_access_token: str

	@field_validator("api_endpoint")
	@classmethod
	def _strip_slash(cls, value: str) -> str:
		return value.rstrip("/")

	@classmethod
	def from_envelope(cls, envelope: Mapping[str, Any] | None) -> NotificationContext | None:
		system = ((envelope or {}).get("context") or {}).get("System") or {}
		endpoint = system.get("apiEndpoint")
		token = system.get("apiAccessToken")
		if not endpoint or not token:
			return None
		return cls(api_endpoint=endpoint, api_access_token=token)


@dataclass(frozen=True, slots=True)
class ScheduleResult:
	reminder_id: str | None = None
	permission_denied: bool = False


@dataclass(slots=True)
class AlertSync:
	scheduled_alerts: dict[str, ScheduledAlert] = field(default_factory=dict)
	reminder_scheduled: bool = False
	needs_permission: bool = False
	wait_seconds: int | None = None


# ── Notification service client ─────────────────────────────────────────────


class NotificationClient:
	def __init__(
		self,
		*,
		timeout_seconds: float | None = None,
		timezone: str | None = None,
		locale: str | None = None,
		transport: httpx.AsyncBaseTransport | None = None,
	):
		settings = get_settings()
		self.timeout_seconds = timeout_seconds or settings.notification_timeout_seconds
		self.timezone = timezone or settings.timezone
		self.locale = locale or settings.alert_locale
		self.transport = transport

	def _client(self) -> httpx.AsyncClient:
		return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport)

	async def schedule_reminder(
		self,
		context: NotificationContext,
		message: str,
		fire_at: datetime,
		*,
		request_time: datetime | None = None,
	) -> ScheduleResult:
		body = {
			"requestTime": (request_time or utc_now()).isoformat(),
			"trigger": {
				"type": "SCHEDULED_ABSOLUTE",
				"scheduledTime": fire_at.isoformat(),
				"timeZoneId": self.timezone,
			},
			"alertInfo": {"spokenInfo": {"content": [{"locale": self.locale, "text": message}]}},
			"pushNotification": {"status": "ENABLED"},
		}
		headers = {"Authorization": f"Bearer {context.api_access_token}"}

		try:
			async with self._client() as client:
				response = await client.post(f"{context.api_endpoint}/v1/alerts/reminders", json=body, headers=headers)
		except httpx.HTTPError as exc:
			logger.error("alert_schedule_failed", error=str(exc))
			return ScheduleResult()

		if response.status_code in (401, 403):
			logger.warning("alert_permission_denied", status_code=response.status_code)
			return ScheduleResult(permission_denied=True)
		if response.is_error:
			logger.error("alert_schedule_rejected", status_code=response.status_code, body=response.text[:500])
			return ScheduleResult()

		try:
			token = response.json().get("alertToken")
		except ValueError:
			token = None
		return ScheduleResult(reminder_id=str(token) if token else None)

	async def cancel_reminder(self, context: NotificationContext, reminder_id: str) -> bool:
		headers = {"Authorization": f"Bearer {context.api_access_token}"}
		try:
			async with self._client() as client:
				response = await client.delete(
					f"{context.api_endpoint}/v1/alerts/reminders/{reminder_id}",
					headers=headers,
				)
		except httpx.HTTPError as exc:
			logger.error("alert_cancel_failed", reminder_id=reminder_id, error=str(exc))
			return False
		if response.is_error:
			logger.error("alert_cancel_rejected", reminder_id=reminder_id, status_code=response.status_code)
			return False
		return True


# ── Coordinator ─────────────────────────────────────────────────────────────


class AlertCoordinator:
	"""Keeps ``scheduled_alerts`` at no more than one live entry per stage key."""

	def __init__(self, client: NotificationClient, *, clock: Clock = utc_now, test_mode: bool | None = None):
		self.client = client
		self.clock = clock
		self.test_mode = get_settings().test_mode if test_mode is None else test_mode

	@staticmethod
	def _message(recipe: RecipeDefinition, stage: Stage, kind: AlertKindEnum) -> str:
		if kind == AlertKindEnum.loop_timeout:
			return (
				f"Tempo máximo da etapa {stage.id} do lote {recipe.name} atingido: {stage.name}. "
				"Você já pode avançar."
			)
		return f"Tempo finalizado do lote {recipe.name}. Etapa {stage.id}: {stage.name}. Você já pode continuar."

	async def cancel(self, context: NotificationContext | None, external_id: str) -> bool:
		if context is None:
			logger.warning("alert_cancel_skipped", reminder_id=external_id, reason="no_context")
			return False
		return await self.client.cancel_reminder(context, external_id)

	async def cancel_all(
		self,
		context: NotificationContext | None,
		alerts: Mapping[str, ScheduledAlert],
	) -> dict[str, ScheduledAlert]:
		"""Cancel every tracked alert; returns the entries that are still live."""
		kept: dict[str, ScheduledAlert] = {}
		for key, alert in alerts.items():
			if not await self.cancel(context, alert.external_reminder_id):
				kept[key] = alert
		return kept

	async def schedule_wait(
		self,
		context: NotificationContext | None,
		batch: BatchRecord,
		recipe: RecipeDefinition,
		stage: Stage,
		wait: WaitSpec,
		alerts: Mapping[str, ScheduledAlert],
	) -> AlertSync:
		key = stage_key(stage.id)
		updated = dict(alerts)
		if context is None:
			return AlertSync(scheduled_alerts=updated, needs_permission=True, wait_seconds=wait.seconds)

		prior = updated.pop(key, None)
		if prior is not None and not await self.cancel(context, prior.external_reminder_id):
			updated[orphan_key(prior)] = prior

		now = self.clock()
		due_at = now + timedelta(seconds=wait.seconds)
		result = await self.client.schedule_reminder(
			context,
			self._message(recipe, stage, wait.kind),
			due_at,
			request_time=now,
		)
		if result.reminder_id is None:
			return AlertSync(
				scheduled_alerts=updated,
				needs_permission=result.permission_denied,
				wait_seconds=wait.seconds,
			)

		updated[key] = ScheduledAlert(
			external_reminder_id=result.reminder_id,
			stage_id=stage.id,
			due_at=due_at,
			kind=wait.kind,
		)
		logger.info(
			"alert_scheduled",
			batch_id=str(batch.id),
			stage_id=stage.id,
			kind=wait.kind.value,
			seconds=wait.seconds,
			reminder_id=result.reminder_id,
		)
		return AlertSync(scheduled_alerts=updated, reminder_scheduled=True, wait_seconds=wait.seconds)

	async def sync_stage_alert(
		self,
		context: NotificationContext | None,
		batch: BatchRecord,
		recipe: RecipeDefinition,
		left_stage_id: int,
		next_stage: Stage,
		alerts: Mapping[str, ScheduledAlert],
	) -> AlertSync:
		"""Cancel the left stage's alert and arm the next stage's wait, if it has one.

		Anything not owned by the next stage is cancelled too, which retries
		entries an earlier call could not cancel. An entry only leaves
		``scheduled_alerts`` once its cancel went through.
		"""
		wait = recipe.wait_spec(next_stage, self.test_mode)
		own_key = stage_key(next_stage.id) if wait is not None else None
		updated = await self.cancel_all(context, {key: alert for key, alert in alerts.items() if key != own_key})
		if stage_key(left_stage_id) in updated:
			logger.info("alert_kept_for_retry", batch_id=str(batch.id), stage_id=left_stage_id)

		if wait is None:
			return AlertSync(scheduled_alerts=updated)
		if own_key in alerts:
			updated[own_key] = alerts[own_key]
		return await self.schedule_wait(context, batch, recipe, next_stage, wait, updated)

	async def reschedule_loop_timeout(
		self,
		context: NotificationContext | None,
		batch: BatchRecord,
		recipe: RecipeDefinition,
		stage: Stage,
		alerts: Mapping[str, ScheduledAlert],
	) -> AlertSync:
		"""Re-arm the loop-timeout alert for whatever loop time is left."""
		max_minutes = recipe.loop_max_minutes(stage, self.test_mode)
		started_at = batch.stage_started_at(stage.id)
		if context is None or not max_minutes or started_at is None:
			return AlertSync(scheduled_alerts=dict(alerts))

		elapsed = (self.clock() - started_at).total_seconds()
		remaining = math.ceil(max_minutes * 60 - elapsed)
		if remaining <= 0:
			return AlertSync(scheduled_alerts=dict(alerts))
		wait = WaitSpec(seconds=remaining, kind=AlertKindEnum.loop_timeout)
		return await self.schedule_wait(context, batch, recipe, stage, wait, alerts)
