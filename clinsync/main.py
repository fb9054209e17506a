"""Application bootstrap for Clinical-Sync.

This module builds every component from configuration and wires them
together: storage, offline cache, REDCap client, audit trail, sync engine,
authentication and the connectivity monitor. The API and the CLI both
start from ``build_container``.

Architecture:
    - Composition root of the Hexagonal Architecture: the only place that
      knows which adapter implements which port
    - The connectivity monitor's offline -> online transition triggers a
      bulk sync of pending records
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from clinsync.adapters.cache import DuckDBOfflineCache, InMemoryOfflineCache
from clinsync.adapters.export import RecordExportRenderer
from clinsync.adapters.remote import RedcapClient, ScriptedRemoteClient
from clinsync.adapters.storage import DuckDBAdapter, InMemoryStorageAdapter
from clinsync.domain.enums import UserRole
from clinsync.domain.ports import OfflineCachePort, RemoteSyncPort, StorageError
from clinsync.domain.services.clinical_data_service import ClinicalDataService
from clinsync.domain.services.sync_engine import SyncEngine
from clinsync.infrastructure.audit import AuditTrail
from clinsync.infrastructure.auth import AuthenticationService
from clinsync.infrastructure.config_manager import ConfigManager, DatabaseConfig, RedcapConfig
from clinsync.infrastructure.connectivity_monitor import ConnectivityMonitor, ConnectivityState
from clinsync.infrastructure.request_context import SYSTEM_ACTOR, request_context

logger = logging.getLogger(__name__)

# Accounts created on first start when CS_SEED_DEFAULT_USERS is enabled
DEFAULT_USERS = [
    ("admin@clinic.com", "admin123", UserRole.ADMINISTRATOR),
    ("researcher@clinic.com", "researcher123", UserRole.RESEARCHER),
]


def create_storage_adapter(db_config: DatabaseConfig):
    """Create the storage adapter (record store, user store and audit log).

    Raises:
        StorageError: If the DuckDB schema cannot be created
    """
    if db_config.db_type == "memory":
        logger.info("Initializing in-memory storage adapter")
        return InMemoryStorageAdapter()

    logger.info(f"Initializing DuckDB adapter with path: {db_config.db_path or ':memory:'}")
    adapter = DuckDBAdapter(db_config=db_config)
    result = adapter.initialize_schema()
    if result.is_failure():
        raise StorageError(result.error or "Schema initialization failed", operation="initialize_schema")
    return adapter


def create_offline_cache(db_config: DatabaseConfig) -> OfflineCachePort:
    """Create the offline cache.

    The DuckDB cache lives in its own file next to the main database
    (``<db>_offline.duckdb``) unless CS_CACHE_PATH says otherwise.
    """
    if db_config.db_type == "memory":
        return InMemoryOfflineCache()

    cache_path = db_config.cache_path
    if cache_path is None:
        if db_config.db_path and db_config.db_path != ":memory:":
            db_path = Path(db_config.db_path)
            cache_path = str(db_path.with_name(f"{db_path.stem}_offline.duckdb"))
        else:
            cache_path = ":memory:"
    return DuckDBOfflineCache(cache_path)


def create_remote_client(redcap_config: RedcapConfig) -> RemoteSyncPort:
    """Create the REDCap client, or a scripted client when REDCap is not configured."""
    if redcap_config.is_configured:
        logger.info(f"Using REDCap endpoint {redcap_config.api_url}")
        return RedcapClient(
            api_url=redcap_config.api_url,
            api_token=redcap_config.api_token,
            timeout_seconds=redcap_config.timeout_seconds,
        )
    logger.warning("REDCap is not configured (CS_REDCAP_URL/CS_REDCAP_TOKEN); using the scripted client")
    return ScriptedRemoteClient()


@dataclass
class ApplicationContainer:
    """Every wired component of a running application."""

    config: ConfigManager
    storage: object
    cache: OfflineCachePort
    remote: RemoteSyncPort
    audit_trail: AuditTrail
    sync_engine: SyncEngine
    service: ClinicalDataService
    auth: AuthenticationService
    monitor: ConnectivityMonitor
    exporter: RecordExportRenderer = field(default_factory=RecordExportRenderer)

    async def on_connectivity_change(self, state: ConnectivityState) -> None:
        """Drain the pending queue when REDCap becomes reachable again."""
        if not state.is_online:
            logger.info("Offline: new records will be captured in the offline cache")
            return
        # Reconnect syncs are automatic actions, attributed to the system actor
        with request_context(SYSTEM_ACTOR):
            summary = await self.service.sync_all_pending()
        logger.info(
            f"Reconnect sync: {summary.succeeded} synced, {summary.failed} failed, {summary.skipped} skipped"
        )

    async def start(self) -> None:
        self.monitor.start()

    async def shutdown(self) -> None:
        await self.monitor.stop()
        await self.remote.close()
        for component in (self.storage, self.cache):
            close = getattr(component, "close", None)
            if close is not None:
                close()
        logger.info("Application container shut down")


def build_container(
    config: Optional[ConfigManager] = None,
    remote: Optional[RemoteSyncPort] = None,
    monitor: Optional[ConnectivityMonitor] = None,
    bcrypt_rounds: int = 12
) -> ApplicationContainer:
    """Build and wire the application.

    Parameters:
        config: Configuration (defaults to the environment)
        remote: Remote client override (defaults to the configured REDCap client)
        monitor: Connectivity monitor override
        bcrypt_rounds: bcrypt cost factor (tests lower it)

    Returns:
        ApplicationContainer with default users seeded when configured
    """
    config = config or ConfigManager.from_environment()
    db_config = config.get_database_config()
    redcap_config = config.get_redcap_config()
    security_config = config.get_security_config()
    sync_config = config.get_sync_config()

    storage = create_storage_adapter(db_config)
    cache = create_offline_cache(db_config)
    remote = remote or create_remote_client(redcap_config)
    monitor = monitor or ConnectivityMonitor.from_url(
        redcap_config.api_url if redcap_config.is_configured else None,
        interval_seconds=sync_config.connectivity_interval_seconds,
    )

    def is_online() -> bool:
        return monitor.is_online

    trail = AuditTrail(storage)
    engine = SyncEngine(
        records=storage,
        cache=cache,
        remote=remote,
        audit_log=storage,
        audit_trail=trail,
        is_online=is_online,
        timeout_seconds=redcap_config.timeout_seconds,
        max_concurrency=sync_config.max_concurrency,
    )
    auth = AuthenticationService(
        users=storage,
        audit_trail=trail,
        jwt_secret=security_config.jwt_secret,
        algorithm=security_config.jwt_algorithm,
        expires_minutes=security_config.jwt_expires_minutes,
        reset_token_minutes=security_config.reset_token_minutes,
        bcrypt_rounds=bcrypt_rounds,
    )
    exporter = RecordExportRenderer()
    service = ClinicalDataService(
        records=storage,
        users=storage,
        audit_log=storage,
        cache=cache,
        sync_engine=engine,
        audit_trail=trail,
        exporter=exporter,
        password_hasher=auth.hash_password,
        is_online=is_online,
    )

    container = ApplicationContainer(
        config=config,
        storage=storage,
        cache=cache,
        remote=remote,
        audit_trail=trail,
        sync_engine=engine,
        service=service,
        auth=auth,
        monitor=monitor,
        exporter=exporter,
    )
    monitor.register_callback(container.on_connectivity_change)

    if security_config.seed_default_users:
        service.ensure_default_users(DEFAULT_USERS)

    return container
