from __future__ import annotations

import logging
from dataclasses import dataclass

from sniper.core.config import Settings
from sniper.core.protection import BreakerOptions, BreakerRegistry
from sniper.jobs.claims import ClaimQueue
from sniper.jobs.coordinator import Coordinator
from sniper.jobs.discovery import ResourceDiscoverer, SearchParams
from sniper.jobs.notifications import NotificationQueue
from sniper.schemas.tasks import TaskOptions
from sniper.services.browser import PlaywrightLauncher
from sniper.services.catalog_client import CatalogClient, load_query
from sniper.services.collaborators import (
    DisabledChallengeSolver,
    LoggingPublisher,
    NoOneTimeCode,
    NotificationPublisher,
    WebhookPublisher,
)
from sniper.services.key_service import build_key_service
from sniper.services.portal import PortalClaimAction, PortalLoginFlow
from sniper.services.repository import PostgresRepository, Repository
from sniper.services.secrets import EnvelopeStore, SecretCache
from sniper.services.session import SessionAuthority, load_identity_pool
from sniper.services.store import InMemoryStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    repository: Repository
    breakers: BreakerRegistry
    session: SessionAuthority
    coordinator: Coordinator


def build_repository(settings: Settings) -> Repository:
    if settings.database_url:
        return PostgresRepository(
            settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
            retry_max_seconds=settings.queue_retry_max_seconds,
        )
    logger.warning("SNIPER_DATABASE_URL not set; using in-memory store, state is lost on restart")
    return InMemoryStore(retry_max_seconds=settings.queue_retry_max_seconds)


def build_publisher(settings: Settings) -> NotificationPublisher:
    if settings.notification_webhook_url:
        return WebhookPublisher(settings.notification_webhook_url)
    return LoggingPublisher()


def build_breakers(settings: Settings) -> BreakerRegistry:
    return BreakerRegistry(
        BreakerOptions(
            failure_threshold=settings.breaker_failure_threshold,
            reset_timeout_seconds=settings.breaker_reset_timeout_seconds,
            timeout_seconds=settings.breaker_timeout_seconds,
            volume_threshold=settings.breaker_volume_threshold,
        )
    )


def build_runtime(settings: Settings) -> Runtime:
    breakers = build_breakers(settings)
    repository = build_repository(settings)

    key_service = build_key_service(settings)
    secret_cache = SecretCache(
        key_service,
        breakers,
        ttl_seconds=settings.secret_cache_ttl_seconds,
        sweep_interval_seconds=settings.secret_cache_sweep_seconds,
    )
    base_url = settings.portal_base_url.rstrip("/")
    session = SessionAuthority(
        envelopes=EnvelopeStore(key_service, secret_cache),
        launcher=PlaywrightLauncher(headless=settings.browser_headless, proxy_url=settings.proxy_url),
        login_flow=PortalLoginFlow(
            base_url=base_url,
            login_path=settings.portal_login_path,
            account_path=settings.portal_account_path,
            email=settings.account_email,
            pin=settings.account_pin,
        ),
        challenge_solver=DisabledChallengeSolver(),
        code_retriever=NoOneTimeCode(),
        breakers=breakers,
        session_path=settings.session_file_path,
        refresh_url=f"{base_url}{settings.portal_refresh_path}",
        account_url=f"{base_url}{settings.portal_account_path}",
        identities=load_identity_pool(settings.identity_pool_path),
        login_marker=settings.portal_login_path,
        challenge_timeout_seconds=settings.challenge_timeout_seconds,
        one_time_code_window_seconds=settings.one_time_code_window_seconds,
    )

    catalog = CatalogClient(
        settings.catalog_endpoint,
        query=load_query(settings.catalog_query_path),
        timeout_seconds=settings.catalog_timeout_seconds,
    )
    discoverer = ResourceDiscoverer(
        catalog=catalog,
        tokens=session,
        repository=repository,
        records=repository,
        breakers=breakers,
        search=SearchParams(
            location=settings.search_location,
            keywords=settings.search_keywords,
            radius_miles=settings.search_radius_miles,
        ),
        page_size=settings.page_size,
        page_delay_seconds=settings.page_delay_seconds,
        retention_seconds=settings.seen_retention_seconds,
    )

    claims = ClaimQueue(
        queue_repository=repository,
        locks=repository,
        records=repository,
        session=session,
        action=PortalClaimAction(),
        lock_ttl_seconds=settings.claim_lock_ttl_seconds,
        concurrency=settings.claim_concurrency,
        batch_size=settings.claim_batch_size,
        lease_seconds=settings.queue_lease_seconds,
        poll_interval_seconds=settings.queue_poll_interval_seconds,
        reaper_interval_seconds=settings.lease_reaper_interval_seconds,
        reaper_batch_size=settings.lease_reaper_batch_size,
    )

    closers = [("catalog client", catalog.close)]
    notifications: NotificationQueue | None = None
    if settings.notification_enabled:
        publisher = build_publisher(settings)
        notifications = NotificationQueue(
            queue_repository=repository,
            publisher=publisher,
            concurrency=settings.notification_concurrency,
            lease_seconds=settings.queue_lease_seconds,
            poll_interval_seconds=settings.queue_poll_interval_seconds,
            reaper_interval_seconds=settings.lease_reaper_interval_seconds,
        )
        closers.append(("notification publisher", publisher.close))

    coordinator = Coordinator(
        session=session,
        discoverer=discoverer,
        repository=repository,
        claims=claims,
        breakers=breakers,
        notifications=notifications,
        secret_cache=secret_cache,
        schedule=settings.poll_cron_schedule,
        run_initial_cycle=settings.run_initial_cycle,
        claim_options=TaskOptions(
            max_attempts=settings.claim_max_attempts,
            backoff_seconds=settings.claim_backoff_seconds,
        ),
        notification_options=TaskOptions(
            max_attempts=settings.notification_max_attempts,
            backoff_seconds=settings.notification_backoff_seconds,
        ),
        finished_retention_seconds=settings.finished_task_retention_seconds,
        closers=closers,
    )
    return Runtime(
        settings=settings,
        repository=repository,
        breakers=breakers,
        session=session,
        coordinator=coordinator,
    )
