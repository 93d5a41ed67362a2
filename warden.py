#!/usr/bin/env python3
"""
warden.py

Cron tick dispatcher for internal API jobs.
"""

from __future__ import annotations

import argparse
import hmac
import json
import logging
import os
import re
import shlex
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence, Tuple
from urllib import error as urllib_error
from urllib import parse as urllib_parse
from urllib import request as urllib_request
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from croniter import croniter
from flask import Flask, Response, request


LOG_FILE = os.environ.get("WARDEN_LOG_FILE", "warden.log")
DEFAULT_CONFIG = "warden.yaml"
DEFAULT_PREVIEW_COUNT = 5
DEFAULT_POLL_SECONDS = 5
DEFAULT_HTTP_TIMEOUT_SECONDS = 120
DEFAULT_ALERT_TIMEOUT_MS = 5000
DEFAULT_SERVER_HOST = "127.0.0.1"
DEFAULT_SERVER_PORT = 8787
BODY_LIMIT = 1500
INTERNAL_API_PREFIX = "/api/internal/"
AUTH_HEADER = "Internal-Authorization"


class WardenError(Exception):
    """Base error for warden."""


class ConfigError(WardenError):
    """Config validation error."""


def setup_logging() -> logging.Logger:
    logger = logging.getLogger("warden")
    if logger.handlers:
        return logger
    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    file_handler = logging.FileHandler(LOG_FILE, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    return logger


logger = setup_logging()
UTC = timezone.utc


# --- Registry -----------------------------------------------------------------


class Backend(str, Enum):
    APP = "app"
    SHIELD = "shield"


class JobKey(str, Enum):
    CREATE_DAILY_CHRONICLES = "createDailyChronicles"
    PROCESS_INCOMPLETE_CHRONICLES = "processIncompleteChronicles"
    SYNC_CHRONICLES_UPDATES = "syncChroniclesUpdates"
    SYNC_USER_STAKES = "syncUserStakes"
    PROVIDE_LIQUIDITY = "provideLiquidity"
    SHIELD_CLEAN = "shieldClean"
    RECORD_DAC_PERFORMANCE = "recordDacPerformance"
    HEALTH_CHECK = "healthCheck"


@dataclass(frozen=True)
class JobDescriptor:
    key: JobKey
    method: str
    path: str
    backends: FrozenSet[Backend]

    @property
    def requires_auth(self) -> bool:
        return self.path.startswith(INTERNAL_API_PREFIX)


def _internal_job(key: JobKey, path: str, *backends: Backend) -> JobDescriptor:
    return JobDescriptor(key=key, method="POST", path=INTERNAL_API_PREFIX + path, backends=frozenset(backends))


JOB_REGISTRY: Dict[JobKey, JobDescriptor] = {
    JobKey.CREATE_DAILY_CHRONICLES: _internal_job(
        JobKey.CREATE_DAILY_CHRONICLES, "create-daily-chronicles", Backend.APP
    ),
    JobKey.PROCESS_INCOMPLETE_CHRONICLES: _internal_job(
        JobKey.PROCESS_INCOMPLETE_CHRONICLES, "process-incomplete-chronicles", Backend.APP
    ),
    JobKey.SYNC_CHRONICLES_UPDATES: _internal_job(
        JobKey.SYNC_CHRONICLES_UPDATES, "sync-chronicles-updates", Backend.APP
    ),
    JobKey.SYNC_USER_STAKES: _internal_job(JobKey.SYNC_USER_STAKES, "sync-user-stakes", Backend.APP),
    JobKey.PROVIDE_LIQUIDITY: _internal_job(JobKey.PROVIDE_LIQUIDITY, "provide-liquidity", Backend.APP),
    JobKey.SHIELD_CLEAN: _internal_job(JobKey.SHIELD_CLEAN, "shield-clean", Backend.SHIELD),
    JobKey.RECORD_DAC_PERFORMANCE: _internal_job(
        JobKey.RECORD_DAC_PERFORMANCE, "record-dac-performance", Backend.APP
    ),
    JobKey.HEALTH_CHECK: JobDescriptor(
        key=JobKey.HEALTH_CHECK,
        method="GET",
        path="/api/health",
        backends=frozenset({Backend.APP, Backend.SHIELD}),
    ),
}


def describe_job(job: JobKey) -> JobDescriptor:
    return JOB_REGISTRY[job]


def parse_job_key(value: str) -> Optional[JobKey]:
    try:
        return JobKey(value)
    except ValueError:
        return None


def parse_backend(value: str) -> Optional[Backend]:
    try:
        return Backend(value)
    except ValueError:
        return None


# --- Schedule map -------------------------------------------------------------


class Schedule(str, Enum):
    HALF_HOURLY_DAYTIME = "0,30 6-23 * * *"
    MORNING_QUARTER_PAST = "15 7-9 * * *"
    EVERY_MINUTE = "*/1 * * * *"
    HOURLY = "0 * * * *"
    EVERY_15_MINUTES = "*/15 * * * *"
    EVERY_5_MINUTES = "*/5 * * * *"


# Multiple jobs on one expression run in parallel within the same tick.
SCHEDULE_MAP: Dict[Schedule, Dict[Backend, Tuple[JobKey, ...]]] = {
    Schedule.HALF_HOURLY_DAYTIME: {
        Backend.APP: (JobKey.CREATE_DAILY_CHRONICLES,),
        Backend.SHIELD: (),
    },
    Schedule.MORNING_QUARTER_PAST: {
        Backend.APP: (JobKey.PROCESS_INCOMPLETE_CHRONICLES,),
        Backend.SHIELD: (),
    },
    Schedule.EVERY_MINUTE: {
        Backend.APP: (JobKey.SYNC_CHRONICLES_UPDATES, JobKey.SYNC_USER_STAKES),
        Backend.SHIELD: (),
    },
    Schedule.HOURLY: {
        Backend.APP: (JobKey.PROVIDE_LIQUIDITY,),
        Backend.SHIELD: (),
    },
    Schedule.EVERY_15_MINUTES: {
        Backend.APP: (JobKey.RECORD_DAC_PERFORMANCE,),
        Backend.SHIELD: (JobKey.SHIELD_CLEAN,),
    },
    Schedule.EVERY_5_MINUTES: {
        Backend.APP: (JobKey.HEALTH_CHECK,),
        Backend.SHIELD: (JobKey.HEALTH_CHECK,),
    },
}


def parse_schedule(expr: str) -> Optional[Schedule]:
    """Exact-match lookup of an incoming cron expression."""
    try:
        return Schedule(expr)
    except ValueError:
        return None


def jobs_for(schedule: Schedule, backend: Backend) -> Tuple[JobKey, ...]:
    return SCHEDULE_MAP[schedule][backend]


def check_schedule_map() -> None:
    for schedule in Schedule:
        per_backend = SCHEDULE_MAP.get(schedule)
        if per_backend is None:
            raise ConfigError(f'Error: Schedule "{schedule.value}" has no entry in the schedule map.')
        for backend in Backend:
            if backend not in per_backend:
                raise ConfigError(
                    f'Error: Schedule "{schedule.value}" has no entry for backend "{backend.value}".'
                )
            seen: set = set()
            for job in per_backend[backend]:
                if job not in JOB_REGISTRY:
                    raise ConfigError(f'Error: Unknown job "{job}" mapped to "{schedule.value}".')
                if backend not in JOB_REGISTRY[job].backends:
                    raise ConfigError(
                        f'Error: Job "{job.value}" cannot run on backend "{backend.value}" '
                        f'(schedule "{schedule.value}").'
                    )
                if job in seen:
                    raise ConfigError(
                        f'Error: Job "{job.value}" listed twice for "{schedule.value}" on "{backend.value}".'
                    )
                seen.add(job)
        if not croniter.is_valid(schedule.value):
            raise ConfigError(f'Error: Invalid cron expression "{schedule.value}".')


# --- Settings -----------------------------------------------------------------


@dataclass(frozen=True)
class AlertSettings:
    webhook_url: Optional[str] = None
    timeout_ms: int = DEFAULT_ALERT_TIMEOUT_MS


@dataclass(frozen=True)
class ManualSettings:
    enabled: bool = False
    key: str = ""


@dataclass(frozen=True)
class ServerSettings:
    host: str = DEFAULT_SERVER_HOST
    port: int = DEFAULT_SERVER_PORT


@dataclass(frozen=True)
class Settings:
    base_urls: Mapping[Backend, str]
    internal_api_key: str
    enabled: bool = False
    timezone_name: str = "UTC"
    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    alerts: AlertSettings = field(default_factory=AlertSettings)
    manual: ManualSettings = field(default_factory=ManualSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @property
    def timezone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    def base_url(self, backend: Backend) -> Optional[str]:
        return self.base_urls.get(backend)


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_http_url(value: Any, field_path: str) -> str:
    url = ensure_str(value, field_path)
    if not (url.startswith("http://") or url.startswith("https://")):
        raise ConfigError(f"Error: {field_path} must be an HTTP URL.")
    return url


def ensure_mapping(value: Any, field_path: str, allowed: Sequence[str]) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - set(allowed)
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def _env_flag(raw: str, name: str) -> bool:
    text = raw.strip().lower()
    if text == "true":
        return True
    if text == "false":
        return False
    raise ConfigError(f'Error: {name} must be "true" or "false", got "{raw}".')


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = value.strip()
    return text if text else None


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def parse_backends(raw: Any, field_path: str = "backends") -> Dict[Backend, str]:
    backends_raw = ensure_mapping(raw, field_path, [backend.value for backend in Backend])
    base_urls: Dict[Backend, str] = {}
    for name, entry in backends_raw.items():
        backend = Backend(name)
        entry_path = f"{field_path}.{name}"
        if entry is None:
            continue
        entry = ensure_mapping(entry, entry_path, ["base_url"])
        if entry.get("base_url") is None:
            continue
        base_urls[backend] = ensure_http_url(entry.get("base_url"), f"{entry_path}.base_url")
    if Backend.APP not in base_urls:
        raise ConfigError(f"Error: {field_path}.app.base_url is required.")
    return base_urls


def parse_settings(payload: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ

    unknown_top = set(payload.keys()) - {
        "version",
        "enabled",
        "timezone",
        "backends",
        "http",
        "alerts",
        "manual",
        "server",
    }
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    version = payload.get("version", 1)
    if version != 1:
        raise ConfigError(f'Error: Unsupported config version "{version}".')

    enabled = ensure_bool(payload.get("enabled"), "enabled", False)
    enabled_env = _non_empty(env.get("WARDEN_ENABLED"))
    if enabled_env is not None:
        enabled = _env_flag(enabled_env, "WARDEN_ENABLED")

    timezone_name = payload.get("timezone", "UTC")
    if not isinstance(timezone_name, str):
        raise ConfigError("Error: timezone must be a timezone string.")
    parse_timezone(timezone_name, "timezone")

    base_urls = parse_backends(payload.get("backends"))

    http_raw = ensure_mapping(payload.get("http"), "http", ["timeout_seconds"])
    timeout_seconds = ensure_int(
        http_raw.get("timeout_seconds"), "http.timeout_seconds", DEFAULT_HTTP_TIMEOUT_SECONDS
    )

    api_key = _non_empty(env.get("INTERNAL_API_KEY"))
    if api_key is None:
        raise ConfigError("Error: INTERNAL_API_KEY must be set in the environment.")

    alerts_raw = ensure_mapping(payload.get("alerts"), "alerts", ["webhook_url", "timeout_ms"])
    webhook_url = _non_empty(env.get("SLACK_WEBHOOK_URL"))
    if webhook_url is None and alerts_raw.get("webhook_url") is not None:
        webhook_url = ensure_http_url(alerts_raw.get("webhook_url"), "alerts.webhook_url")
    alerts = AlertSettings(
        webhook_url=webhook_url,
        timeout_ms=ensure_int(alerts_raw.get("timeout_ms"), "alerts.timeout_ms", DEFAULT_ALERT_TIMEOUT_MS),
    )

    manual_raw = ensure_mapping(payload.get("manual"), "manual", ["enabled"])
    manual_enabled = ensure_bool(manual_raw.get("enabled"), "manual.enabled", False)
    manual_key = _non_empty(env.get("MANUAL_KEY")) or ""
    if manual_enabled and not manual_key:
        raise ConfigError("Error: manual.enabled requires MANUAL_KEY in the environment.")
    if manual_enabled and hmac.compare_digest(manual_key, api_key):
        raise ConfigError("Error: MANUAL_KEY must differ from INTERNAL_API_KEY.")

    server_raw = ensure_mapping(payload.get("server"), "server", ["host", "port"])
    server = ServerSettings(
        host=ensure_str(server_raw.get("host", DEFAULT_SERVER_HOST), "server.host"),
        port=ensure_int(server_raw.get("port"), "server.port", DEFAULT_SERVER_PORT, 0),
    )

    return Settings(
        base_urls=base_urls,
        internal_api_key=api_key,
        enabled=enabled,
        timezone_name=timezone_name,
        timeout_seconds=timeout_seconds,
        alerts=alerts,
        manual=ManualSettings(enabled=manual_enabled, key=manual_key),
        server=server,
    )


def load_settings(config_path: Path, environ: Optional[Mapping[str, str]] = None) -> Settings:
    check_schedule_map()
    return parse_settings(_load_config_payload(config_path), environ)


# --- Job invoker --------------------------------------------------------------


@dataclass(frozen=True)
class JobResult:
    job: JobKey
    backend: Backend
    success: bool
    duration_ms: int
    url: str
    base_url: str
    status: Optional[int] = None
    error: Optional[str] = None
    body: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def full_url(base_url: str, path: str) -> str:
    return base_url.rstrip("/") + path


def truncate_body(text: str, limit: int = BODY_LIMIT) -> str:
    return text[:limit]


def _read_error_body(exc: urllib_error.HTTPError) -> str:
    try:
        raw = exc.read()
    except Exception:
        return ""
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")


def invoke_job(backend: Backend, job: JobKey, settings: Settings, tick_id: str = "-") -> JobResult:
    """Call one job endpoint and classify the outcome.

    Never raises: HTTP and transport failures come back as a failed JobResult.
    """
    descriptor = describe_job(job)
    base_url = settings.base_url(backend) or ""
    url = full_url(base_url, descriptor.path)
    headers: Dict[str, str] = {}
    if descriptor.requires_auth:
        headers[AUTH_HEADER] = settings.internal_api_key
    req = urllib_request.Request(url=url, method=descriptor.method, headers=headers)

    started = time.monotonic()
    try:
        with urllib_request.urlopen(req, timeout=settings.timeout_seconds) as response:
            status = response.status
        duration_ms = int((time.monotonic() - started) * 1000)
    except urllib_error.HTTPError as exc:
        duration_ms = int((time.monotonic() - started) * 1000)
        trimmed = truncate_body(_read_error_body(exc))
        logger.error(
            "[%s] job=%s backend=%s status=%s durMs=%s url=%s body=%s",
            tick_id,
            job.value,
            backend.value,
            exc.code,
            duration_ms,
            url,
            trimmed,
        )
        return JobResult(
            job=job,
            backend=backend,
            success=False,
            duration_ms=duration_ms,
            url=url,
            base_url=base_url,
            status=exc.code,
            error=f"HTTP {exc.code}",
            body=trimmed,
        )
    except urllib_error.URLError as exc:
        return _transport_failure(tick_id, job, backend, url, base_url, started, str(exc.reason))
    except Exception as exc:
        return _transport_failure(tick_id, job, backend, url, base_url, started, str(exc) or repr(exc))

    logger.info(
        "[%s] job=%s backend=%s OK status=%s durMs=%s url=%s",
        tick_id,
        job.value,
        backend.value,
        status,
        duration_ms,
        url,
    )
    return JobResult(
        job=job,
        backend=backend,
        success=True,
        duration_ms=duration_ms,
        url=url,
        base_url=base_url,
        status=status,
    )


def _transport_failure(
    tick_id: str,
    job: JobKey,
    backend: Backend,
    url: str,
    base_url: str,
    started: float,
    message: str,
) -> JobResult:
    duration_ms = int((time.monotonic() - started) * 1000)
    logger.error(
        "[%s] job=%s backend=%s fetch error durMs=%s url=%s err=%s",
        tick_id,
        job.value,
        backend.value,
        duration_ms,
        url,
        message,
    )
    return JobResult(
        job=job,
        backend=backend,
        success=False,
        duration_ms=duration_ms,
        url=url,
        base_url=base_url,
        error=message,
    )


# --- Alert policy & notifier --------------------------------------------------


@dataclass(frozen=True)
class SuppressionRule:
    status: int
    job: Optional[JobKey]  # None matches every job
    reason: str

    def matches(self, result: JobResult) -> bool:
        if result.status != self.status:
            return False
        return self.job is None or self.job == result.job


SUPPRESSION_RULES: Tuple[SuppressionRule, ...] = (
    SuppressionRule(503, None, "backend unavailable; expected transient condition"),
    SuppressionRule(409, None, "idempotency conflict from an overlapping tick"),
    SuppressionRule(524, JobKey.PROVIDE_LIQUIDITY, "gateway timeout; provisioning keeps running upstream"),
)


def suppression_for(result: JobResult) -> Optional[SuppressionRule]:
    for rule in SUPPRESSION_RULES:
        if rule.matches(result):
            return rule
    return None


def is_alert_worthy(result: JobResult) -> bool:
    if result.success:
        return False
    # No status means no response at all; always alert.
    if result.status is None:
        return True
    return suppression_for(result) is None


def format_alert(signal: str, result: JobResult, at: Optional[datetime] = None) -> str:
    timestamp = (at or datetime.now(tz=UTC)).astimezone(UTC).isoformat()
    status_text = str(result.status) if result.status is not None else "network error"
    body_snippet = f"\n• *Body (trimmed)*:\n```\n{result.body}\n```" if result.body else ""
    return (
        f":rotating_light: *Cron job failed* ({signal})\n"
        f"• *Job*: {result.job.value}\n"
        f"• *Backend*: {result.backend.value}\n"
        f"• *Status*: {status_text}\n"
        f"• *Duration*: {result.duration_ms}ms\n"
        f"• *When*: {timestamp}\n"
        f"• *URL*: {result.url}\n"
        f"• *BASE_URL*: {result.base_url}"
        + body_snippet
    )


def post_alert(webhook_url: str, text: str, timeout_ms: int = DEFAULT_ALERT_TIMEOUT_MS) -> bool:
    """Best-effort webhook delivery; failures are logged, never raised."""
    body = json.dumps({"text": text}).encode("utf-8")
    req = urllib_request.Request(
        url=webhook_url,
        data=body,
        method="POST",
        headers={"Content-Type": "application/json"},
    )
    try:
        with urllib_request.urlopen(req, timeout=max(0.1, timeout_ms / 1000.0)) as response:
            if 200 <= response.status < 300:
                return True
            logger.error("Alert webhook failed status=%s", response.status)
            return False
    except urllib_error.HTTPError as exc:
        logger.error("Alert webhook failed status=%s", exc.code)
        return False
    except urllib_error.URLError as exc:
        logger.error("Alert webhook error: %s", str(exc.reason))
        return False
    except Exception as exc:
        logger.error("Alert webhook error: %s", str(exc))
        return False


def join_all(tasks: Sequence[Callable[[], Any]], name: str = "warden-task") -> List[Any]:
    """Run every task on its own thread and wait for all of them.

    Results keep the order of ``tasks``. A task that raises leaves None in its
    slot; the exception is logged and siblings are unaffected.
    """
    results: List[Any] = [None] * len(tasks)

    def runner(index: int, task: Callable[[], Any]) -> None:
        try:
            results[index] = task()
        except Exception:
            logger.exception("Unexpected error in %s-%s", name, index)

    threads = [
        threading.Thread(target=runner, args=(idx, task), daemon=True, name=f"{name}-{idx}")
        for idx, task in enumerate(tasks)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    return results


def send_alerts(signal: str, results: Sequence[JobResult], settings: Settings, tick_id: str = "-") -> int:
    """Post one alert per alert-worthy failure. Returns the number delivered."""
    webhook = settings.alerts.webhook_url
    worthy: List[JobResult] = []
    for result in results:
        if is_alert_worthy(result):
            worthy.append(result)
        elif not result.success:
            rule = suppression_for(result)
            logger.info(
                "[%s] Alert suppressed for job=%s status=%s (%s)",
                tick_id,
                result.job.value,
                result.status,
                rule.reason if rule else "not alert-worthy",
            )
    if not worthy:
        return 0
    if not webhook:
        logger.info("[%s] No alert webhook configured; %s alert(s) not sent.", tick_id, len(worthy))
        return 0

    timeout_ms = settings.alerts.timeout_ms
    tasks = [
        (lambda r=result: post_alert(webhook, format_alert(signal, r), timeout_ms))
        for result in worthy
    ]
    delivered = join_all(tasks, name="warden-alert")
    return sum(1 for ok in delivered if ok)


# --- Tick dispatcher ----------------------------------------------------------


class TickPhase(str, Enum):
    GATED = "gated"
    RESOLVING = "resolving"
    DISPATCHING = "dispatching"
    AGGREGATING = "aggregating"
    ALERTING = "alerting"
    FINALIZING = "finalizing"


@dataclass(frozen=True)
class TickOutcome:
    signal: str
    tick_id: str
    results: Tuple[JobResult, ...] = ()
    skipped: Optional[str] = None

    @property
    def failed(self) -> List[JobResult]:
        return [result for result in self.results if not result.success]

    @property
    def any_failed(self) -> bool:
        return any(not result.success for result in self.results)

    @property
    def alert_worthy(self) -> List[JobResult]:
        return [result for result in self.results if is_alert_worthy(result)]

    def summary(self) -> str:
        return (
            f"{len(self.failed)}/{len(self.results)} failed, "
            f"unexpected failures={len(self.alert_worthy)}"
        )


class TickFailedError(WardenError):
    """Raised after a tick settles with at least one failed job."""

    def __init__(self, outcome: TickOutcome):
        self.outcome = outcome
        super().__init__(f"Some jobs failed for cron={outcome.signal}: {outcome.summary()}")


Invoker = Callable[[Backend, JobKey, Settings, str], JobResult]
Notifier = Callable[[str, Sequence[JobResult], Settings, str], int]


def make_tick_id(signal: str, at: Optional[datetime] = None) -> str:
    moment = at or datetime.now(tz=UTC)
    compact = signal.replace(" ", "_")
    return f"{compact}:{moment.strftime('%Y%m%d%H%M%S')}-{moment.microsecond:06d}"


def resolve_due_jobs(signal: str, settings: Settings, tick_id: str = "-") -> List[Tuple[Backend, JobKey]]:
    schedule = parse_schedule(signal)
    if schedule is None:
        return []
    due: List[Tuple[Backend, JobKey]] = []
    for backend in Backend:
        jobs = jobs_for(schedule, backend)
        if not jobs:
            continue
        if settings.base_url(backend) is None:
            logger.warning(
                "[%s] backend=%s has %s job(s) for cron=%s but no base_url; skipping.",
                tick_id,
                backend.value,
                len(jobs),
                signal,
            )
            continue
        due.extend((backend, job) for job in jobs)
    return due


def _phase(tick_id: str, phase: TickPhase) -> None:
    logger.debug("[%s] phase=%s", tick_id, phase.value)


def dispatch_tick(
    signal: str,
    settings: Settings,
    invoker: Optional[Invoker] = None,
    notifier: Optional[Notifier] = None,
) -> TickOutcome:
    """Run every job due for ``signal`` and report the aggregate.

    Returns the outcome when nothing failed (or nothing ran). Raises
    TickFailedError once all jobs and alerts have settled if any job failed,
    including failures whose alerts were suppressed.
    """
    invoke = invoker or invoke_job
    notify = notifier or send_alerts
    tick_id = make_tick_id(signal)

    _phase(tick_id, TickPhase.GATED)
    if not settings.enabled:
        logger.info("[%s] [disabled] skipping cron=%s", tick_id, signal)
        return TickOutcome(signal=signal, tick_id=tick_id, skipped="disabled")

    _phase(tick_id, TickPhase.RESOLVING)
    due = resolve_due_jobs(signal, settings, tick_id)
    if not due:
        logger.error('[%s] no jobs mapped for cron="%s"', tick_id, signal)
        return TickOutcome(signal=signal, tick_id=tick_id, skipped="unmapped")

    _phase(tick_id, TickPhase.DISPATCHING)
    logger.info(
        "[%s] Dispatching %s job(s) for cron=%s: %s",
        tick_id,
        len(due),
        signal,
        ", ".join(f"{backend.value}/{job.value}" for backend, job in due),
    )
    tasks = [
        (lambda b=backend, j=job: invoke(b, j, settings, tick_id))
        for backend, job in due
    ]
    raw_results = join_all(tasks, name="warden-job")

    _phase(tick_id, TickPhase.AGGREGATING)
    results: List[JobResult] = []
    for (backend, job), result in zip(due, raw_results):
        if result is None:
            # Only reachable when a custom invoker raises.
            result = JobResult(
                job=job,
                backend=backend,
                success=False,
                duration_ms=0,
                url=full_url(settings.base_url(backend) or "", describe_job(job).path),
                base_url=settings.base_url(backend) or "",
                error="invoker raised",
            )
        results.append(result)
    outcome = TickOutcome(signal=signal, tick_id=tick_id, results=tuple(results))

    _phase(tick_id, TickPhase.ALERTING)
    if outcome.any_failed:
        try:
            notify(signal, outcome.results, settings, tick_id)
        except Exception:
            logger.exception("[%s] Alert delivery raised unexpectedly", tick_id)

    _phase(tick_id, TickPhase.FINALIZING)
    if outcome.any_failed:
        error = TickFailedError(outcome)
        logger.error("[%s] %s", tick_id, str(error))
        raise error
    logger.info("[%s] cron=%s completed: %s job(s) OK", tick_id, signal, len(outcome.results))
    return outcome


class TickHandle:
    """Join handle for a tick running on its own thread."""

    def __init__(self, signal: str, thread: threading.Thread):
        self.signal = signal
        self._thread = thread
        self._outcome: Optional[TickOutcome] = None
        self._error: Optional[BaseException] = None

    def done(self) -> bool:
        return not self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> bool:
        self._thread.join(timeout=timeout)
        return self.done()

    def result(self, timeout: Optional[float] = None) -> TickOutcome:
        if not self.join(timeout):
            raise WardenError(f"Tick for cron={self.signal} still running.")
        if self._error is not None:
            raise self._error
        if self._outcome is None:
            raise WardenError(f"Tick for cron={self.signal} finished without an outcome.")
        return self._outcome


def start_tick(
    signal: str,
    settings: Settings,
    invoker: Optional[Invoker] = None,
    notifier: Optional[Notifier] = None,
) -> TickHandle:
    handle: TickHandle

    def worker() -> None:
        try:
            handle._outcome = dispatch_tick(signal, settings, invoker=invoker, notifier=notifier)
        except BaseException as exc:
            handle._error = exc

    thread = threading.Thread(target=worker, daemon=True, name=f"warden-tick-{signal}")
    handle = TickHandle(signal, thread)
    thread.start()
    return handle


# --- Health / manual surface --------------------------------------------------


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str


ManualRunner = Callable[[Backend, JobKey, Settings], JobResult]


def handle_request(
    method: str,
    target: str,
    settings: Settings,
    runner: Optional[ManualRunner] = None,
) -> HttpResponse:
    parsed = urllib_parse.urlsplit(target)
    path = parsed.path or "/"
    method = method.upper()

    if settings.manual.enabled and path == "/run" and method == "POST":
        query = urllib_parse.parse_qs(parsed.query)
        job = parse_job_key((query.get("job") or [""])[0])
        backend = parse_backend((query.get("backend") or [Backend.APP.value])[0])
        if job is None or backend is None or backend not in describe_job(job).backends:
            return HttpResponse(400, "bad job")
        if settings.base_url(backend) is None:
            return HttpResponse(400, "bad job")
        key = (query.get("key") or [""])[0]
        if not hmac.compare_digest(key.encode("utf-8"), settings.manual.key.encode("utf-8")):
            return HttpResponse(403, "forbidden")
        logger.info("Manual run requested: job=%s backend=%s", job.value, backend.value)
        result = (runner or invoke_job)(backend, job, settings)
        if result.success:
            return HttpResponse(200, "ok")
        return HttpResponse(502, f"job failed: {result.error}")

    if path == "/" and method == "GET":
        return HttpResponse(200, "ok")
    return HttpResponse(404, "not found")


SERVED_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
_SECRET_QUERY = re.compile(r"([?&]key=)[^&\s\"]*")


def redact_query_secrets(text: str) -> str:
    return _SECRET_QUERY.sub(r"\1[redacted]", text)


class SecretRedactingFilter(logging.Filter):
    """Strip the manual trigger key from access log lines before they are emitted."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_query_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True


def _install_access_log_redaction() -> None:
    access_logger = logging.getLogger("werkzeug")
    if not any(isinstance(f, SecretRedactingFilter) for f in access_logger.filters):
        access_logger.addFilter(SecretRedactingFilter())


def create_app(settings: Settings, runner: Optional[ManualRunner] = None) -> Flask:
    """Flask app serving liveness on `GET /` and, when enabled, the manual `POST /run` trigger."""
    app = Flask(__name__)
    _install_access_log_redaction()

    @app.route("/", defaults={"path": ""}, methods=SERVED_METHODS)
    @app.route("/<path:path>", methods=SERVED_METHODS)
    def dispatch(path: str) -> Response:
        target = request.path
        if request.query_string:
            target = f"{target}?{request.query_string.decode('utf-8', errors='replace')}"
        response = handle_request(request.method, target, settings, runner)
        return Response(response.body, status=response.status, mimetype="text/plain")

    @app.after_request
    def log_request(response: Response) -> Response:
        logger.info("%s %s %s", request.method, request.path, response.status_code)
        return response

    return app


# --- Scheduling host ----------------------------------------------------------


def _ensure_aware_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def next_fire_after(schedule: Schedule, after_utc: datetime, tz: ZoneInfo) -> datetime:
    local_after = _ensure_aware_utc(after_utc).astimezone(tz)
    nxt = croniter(schedule.value, local_after).get_next(datetime)
    if nxt.tzinfo is None:
        nxt = nxt.replace(tzinfo=tz)
    return nxt.astimezone(UTC)


def next_fire_times(schedule: Schedule, count: int, tz: ZoneInfo, now_utc: Optional[datetime] = None) -> List[datetime]:
    cursor = _ensure_aware_utc(now_utc or datetime.now(tz=UTC))
    runs: List[datetime] = []
    while len(runs) < count:
        cursor = next_fire_after(schedule, cursor, tz)
        runs.append(cursor)
    return runs


def command_validate(config_path: Path) -> int:
    settings = load_settings(config_path)
    print(f"Config valid: {config_path}")
    print(f"Enabled: {settings.enabled}")
    for backend in Backend:
        print(f"- backend {backend.value}: {settings.base_url(backend) or '(not configured)'}")
    print(f"Alerts: {'webhook configured' if settings.alerts.webhook_url else 'disabled'}")
    print(f"Manual trigger: {'enabled' if settings.manual.enabled else 'disabled'}")
    print(f"Schedules: {len(Schedule)}")
    for schedule in Schedule:
        mapped = sum(len(jobs_for(schedule, backend)) for backend in Backend)
        print(f"- {schedule.value}: {mapped} job(s)")
    return 0


def command_preview(config_path: Path, count: int) -> int:
    settings = load_settings(config_path)
    tz = settings.timezone
    now_utc = datetime.now(tz=UTC)
    for schedule in Schedule:
        print("=" * 80)
        print(f"Cron: {schedule.value} ({settings.timezone_name})")
        for backend in Backend:
            jobs = jobs_for(schedule, backend)
            if not jobs:
                continue
            configured = "" if settings.base_url(backend) else " [backend not configured]"
            print(f"- {backend.value}{configured}:")
            for job in jobs:
                descriptor = describe_job(job)
                print(f"    {job.value}: {descriptor.method} {descriptor.path}")
        print(f"Next {count} fire time(s):")
        for fire_at in next_fire_times(schedule, count, tz, now_utc=now_utc):
            print(f"- {fire_at.astimezone(tz).isoformat()}")
    print("=" * 80)
    return 0


def command_tick(config_path: Path, signal: str) -> int:
    settings = load_settings(config_path)
    try:
        dispatch_tick(signal, settings)
    except TickFailedError:
        return 1
    return 0


def command_run(config_path: Path, job_name: str, backend_name: str) -> int:
    settings = load_settings(config_path)
    job = parse_job_key(job_name)
    if job is None:
        raise WardenError(f'Unknown job "{job_name}".')
    backend = parse_backend(backend_name)
    if backend is None or backend not in describe_job(job).backends:
        raise WardenError(f'Job "{job_name}" cannot run on backend "{backend_name}".')
    if settings.base_url(backend) is None:
        raise WardenError(f'Backend "{backend_name}" has no base_url configured.')
    result = invoke_job(backend, job, settings, tick_id="manual")
    return 0 if result.success else 1


def command_export_cron(config_path: Path) -> int:
    settings = load_settings(config_path)
    warden_path = Path(__file__).resolve()
    config_abs = config_path.resolve()

    print("# warden.py cron export")
    print(f"# generated_at={datetime.now(tz=UTC).isoformat()}")
    print(f"CRON_TZ={settings.timezone_name}")
    for schedule in Schedule:
        print("")
        print(f"# jobs: {', '.join(f'{b.value}/{j.value}' for b in Backend for j in jobs_for(schedule, b))}")
        command = (
            f"{shlex.quote(sys.executable)} {shlex.quote(str(warden_path))} "
            f"--config {shlex.quote(str(config_abs))} tick --cron {shlex.quote(schedule.value)}"
        )
        print(f"{schedule.value} {command}")
    return 0


def reap_finished(running: List[TickHandle]) -> int:
    reaped = 0
    for handle in [h for h in running if h.done()]:
        running.remove(handle)
        reaped += 1
        try:
            outcome = handle.result()
            logger.info("Tick for cron=%s finished (%s)", handle.signal, outcome.summary())
        except TickFailedError as exc:
            logger.info("Tick for cron=%s marked failed: %s", handle.signal, exc.outcome.summary())
        except Exception as exc:
            logger.exception("Tick for cron=%s crashed: %s", handle.signal, exc)
    return reaped


def spawn_due_ticks(
    settings: Settings,
    next_fire: Dict[Schedule, datetime],
    running: List[TickHandle],
    now: datetime,
) -> List[Schedule]:
    fired: List[Schedule] = []
    for schedule in Schedule:
        if next_fire[schedule] > now:
            continue
        # Overlapping ticks are allowed; each is isolated.
        running.append(start_tick(schedule.value, settings))
        next_fire[schedule] = next_fire_after(schedule, max(next_fire[schedule], now), settings.timezone)
        fired.append(schedule)
    return fired


def command_daemon(config_path: Path, poll_seconds: int) -> int:
    settings = load_settings(config_path)
    tz = settings.timezone
    now = datetime.now(tz=UTC)
    next_fire: Dict[Schedule, datetime] = {
        schedule: next_fire_after(schedule, now, tz) for schedule in Schedule
    }
    running: List[TickHandle] = []

    logger.info(
        "Starting daemon with %s schedule(s), enabled=%s, poll_seconds=%s",
        len(next_fire),
        settings.enabled,
        poll_seconds,
    )
    try:
        while True:
            now = datetime.now(tz=UTC)
            reap_finished(running)
            spawn_due_ticks(settings, next_fire, running, now)
            time.sleep(poll_seconds)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted; waiting for %s running tick(s).", len(running))
        for handle in running:
            handle.join()
        return 130


def command_serve(config_path: Path, host: Optional[str], port: Optional[int]) -> int:
    settings = load_settings(config_path)
    app = create_app(settings)
    bind_host = host if host is not None else settings.server.host
    bind_port = port if port is not None else settings.server.port
    logger.info(
        "Serving health endpoint on http://%s:%s (manual trigger %s)",
        bind_host,
        bind_port,
        "enabled" if settings.manual.enabled else "disabled",
    )
    app.run(host=bind_host, port=bind_port)
    return 0


def _add_config_option(subparser: argparse.ArgumentParser) -> None:
    # SUPPRESS keeps a top-level `--config` from being overwritten by the subcommand's default.
    subparser.add_argument(
        "--config",
        default=argparse.SUPPRESS,
        help=f"Path to config (default: {DEFAULT_CONFIG})",
    )


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="warden.py cron tick dispatcher",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=DEFAULT_CONFIG,
        help=f"Path to warden YAML config (default: {DEFAULT_CONFIG})",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate_parser = subparsers.add_parser("validate", help="Validate config and schedule map")
    _add_config_option(validate_parser)

    preview_parser = subparsers.add_parser("preview", help="Show schedules, jobs and next fire times")
    _add_config_option(preview_parser)
    preview_parser.add_argument("--count", type=int, default=DEFAULT_PREVIEW_COUNT, help="Next fire count")

    tick_parser = subparsers.add_parser("tick", help="Dispatch one tick for a cron expression")
    _add_config_option(tick_parser)
    tick_parser.add_argument("--cron", required=True, help="Cron expression that fired")

    run_parser = subparsers.add_parser("run", help="Invoke a single job once")
    _add_config_option(run_parser)
    run_parser.add_argument("--job", required=True, help="Job key, e.g. syncUserStakes")
    run_parser.add_argument("--backend", default=Backend.APP.value, help="Backend name (default: app)")

    daemon_parser = subparsers.add_parser("daemon", help="Run the scheduling loop")
    _add_config_option(daemon_parser)
    daemon_parser.add_argument(
        "--poll-seconds",
        type=int,
        default=DEFAULT_POLL_SECONDS,
        help=f"Polling interval in seconds (default: {DEFAULT_POLL_SECONDS})",
    )

    export_parser = subparsers.add_parser("export-cron", help="Export crontab lines driving `tick`")
    _add_config_option(export_parser)

    serve_parser = subparsers.add_parser("serve", help="Serve the health/manual endpoint")
    _add_config_option(serve_parser)
    serve_parser.add_argument("--host", help="Bind host (default: server.host)")
    serve_parser.add_argument("--port", type=int, help="Bind port (default: server.port)")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config_path = Path(args.config or DEFAULT_CONFIG).resolve()

    try:
        if args.command == "validate":
            return command_validate(config_path)
        if args.command == "preview":
            if args.count <= 0:
                raise WardenError("--count must be >= 1")
            return command_preview(config_path, count=args.count)
        if args.command == "tick":
            return command_tick(config_path, signal=args.cron)
        if args.command == "run":
            return command_run(config_path, job_name=args.job, backend_name=args.backend)
        if args.command == "daemon":
            if args.poll_seconds <= 0:
                raise WardenError("--poll-seconds must be >= 1")
            return command_daemon(config_path, poll_seconds=args.poll_seconds)
        if args.command == "export-cron":
            return command_export_cron(config_path)
        if args.command == "serve":
            return command_serve(config_path, host=args.host, port=args.port)
        raise WardenError(f"Unsupported command: {args.command}")
    except WardenError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
