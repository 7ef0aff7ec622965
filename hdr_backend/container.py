#  HDR Backend - Dependency Injection Container
#
#  DeclarativeContainer wiring the store, outbound clients and services.
#
#  Depends on: config.py, db/connection.py, services/*
#  Used by:    app.py, middleware/auth.py, routes/*

import httpx
from dependency_injector import containers, providers

from hdr_backend.config import (
    AUTH_ALGORITHM,
    AUTOENHANCE_API_BASE_URL,
    AUTOENHANCE_API_KEY,
    AUTOENHANCE_WEBHOOK_TOKEN,
    BROADCAST_TIMEOUT,
    PROVIDER_TIMEOUT,
    STORAGE_TIMEOUT,
    SUPABASE_JWT_SECRET,
    SUPABASE_PUBLISHABLE_KEY,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_STORAGE_BUCKET,
    SUPABASE_URL,
    SUPABASE_USE_RLS,
)
from hdr_backend.db.connection import Database
from hdr_backend.services.auth import TokenVerifier
from hdr_backend.services.broadcast import Broadcaster
from hdr_backend.services.completion import CompletionService
from hdr_backend.services.downloads import DownloadService
from hdr_backend.services.orders import OrderService
from hdr_backend.services.processing import ProcessingService
from hdr_backend.services.provider import AutoEnhanceClient
from hdr_backend.services.storage import ObjectStore
from hdr_backend.services.store import OrderStore
from hdr_backend.services.tasks import TaskRunner
from hdr_backend.services.uploads import UploadService

# Storage writes go through RLS with the publishable key unless disabled
_STORAGE_KEY = SUPABASE_PUBLISHABLE_KEY if SUPABASE_USE_RLS else SUPABASE_SERVICE_ROLE_KEY


class Container(containers.DeclarativeContainer):
    """DI container for the HDR backend.

    Everything is a Singleton: one instance per application lifecycle.
    Routes access them via @inject + Depends(Provide[Container.xxx]).
    Tests override them via container.xxx.override(providers.Object(mock)).
    """

    wiring_config = containers.WiringConfiguration(
        modules=[
            "hdr_backend.routes.orders",
            "hdr_backend.routes.uploads",
            "hdr_backend.routes.images",
            "hdr_backend.routes.webhooks",
            "hdr_backend.routes.health",
            "hdr_backend.middleware.auth",
        ]
    )

    # --- Core ---
    db = providers.Singleton(Database)
    store = providers.Singleton(OrderStore, db=db)
    runner = providers.Singleton(TaskRunner)

    # One client per upstream so timeouts can differ
    provider_http = providers.Singleton(httpx.AsyncClient, timeout=PROVIDER_TIMEOUT)
    storage_http = providers.Singleton(httpx.AsyncClient, timeout=STORAGE_TIMEOUT)
    broadcast_http = providers.Singleton(httpx.AsyncClient, timeout=BROADCAST_TIMEOUT)

    # --- Upstreams ---
    provider = providers.Singleton(
        AutoEnhanceClient,
        http_client=provider_http,
        base_url=AUTOENHANCE_API_BASE_URL,
        api_key=AUTOENHANCE_API_KEY,
    )
    object_store = providers.Singleton(
        ObjectStore,
        http_client=storage_http,
        base_url=SUPABASE_URL,
        bucket=SUPABASE_STORAGE_BUCKET,
        api_key=_STORAGE_KEY,
    )
    broadcaster = providers.Singleton(
        Broadcaster,
        http_client=broadcast_http,
        base_url=SUPABASE_URL,
        api_key=SUPABASE_SERVICE_ROLE_KEY,
    )

    # --- Auth ---
    token_verifier = providers.Singleton(
        TokenVerifier, secret=SUPABASE_JWT_SECRET, algorithm=AUTH_ALGORITHM,
    )
    webhook_token = providers.Object(AUTOENHANCE_WEBHOOK_TOKEN)

    # --- Workflows ---
    orders = providers.Singleton(
        OrderService,
        store=store,
        provider=provider,
        object_store=object_store,
        runner=runner,
    )
    uploads = providers.Singleton(
        UploadService,
        store=store,
        provider=provider,
        broadcaster=broadcaster,
    )
    processing = providers.Singleton(
        ProcessingService,
        store=store,
        provider=provider,
        broadcaster=broadcaster,
    )
    completion = providers.Singleton(
        CompletionService,
        store=store,
        provider=provider,
        object_store=object_store,
        broadcaster=broadcaster,
        runner=runner,
    )
    downloads = providers.Singleton(
        DownloadService,
        store=store,
        provider=provider,
        object_store=object_store,
    )
