import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from starlette.middleware.trustedhost import TrustedHostMiddleware

from marketsync.auth import IdentityProvider
from marketsync.routers import auth, conversations, notifications, requests
from marketsync.services.blob_store import LocalBlobStore, blob_store_from_env
from marketsync.services.conversation_resolver import ConversationResolver
from marketsync.services.document_store import DocumentStore, store_from_env
from marketsync.services.live_query import LiveQuerySubscriber
from marketsync.services.notification_dispatcher import NotificationDispatcher
from marketsync.services.notification_outbox import NotificationOutbox
from marketsync.services.push_gateway import PushGateway
from marketsync.services.user_directory import UserDirectory
from marketsync.services.workflow_engine import WorkflowEngine

logger = logging.getLogger(__name__)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def create_app(
    store: Optional[DocumentStore] = None,
    push_gateway: Optional[PushGateway] = None,
    blob_store: Optional[LocalBlobStore] = None,
) -> FastAPI:
    store = store or store_from_env()
    push_gateway = push_gateway or PushGateway.from_env()
    blob_store = blob_store or blob_store_from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Notifications staged before a crash are sent on the next start.
        await app.state.notification_outbox.flush()
        yield
        store.close()
        logger.info("Document store closed")

    app = FastAPI(title="MarketSync API", version="0.1.0", lifespan=lifespan)

    subscriber = LiveQuerySubscriber(store)
    directory = UserDirectory(store)
    notification_dispatcher = NotificationDispatcher(store, subscriber, push_gateway=push_gateway)
    outbox = NotificationOutbox(store, notification_dispatcher)
    conversation_resolver = ConversationResolver(
        store,
        directory,
        subscriber,
        notifications=notification_dispatcher,
        blob_store=blob_store,
        outbox=outbox,
    )
    app.state.store = store
    app.state.subscriber = subscriber
    app.state.user_directory = directory
    app.state.identity_provider = IdentityProvider(directory)
    app.state.notification_dispatcher = notification_dispatcher
    app.state.notification_outbox = outbox
    app.state.conversation_resolver = conversation_resolver
    app.state.workflow_engine = WorkflowEngine(
        store,
        notification_dispatcher,
        subscriber,
        conversations=conversation_resolver,
        blob_store=blob_store,
        outbox=outbox,
    )

    cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
    allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
    if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(auth.router)
    app.include_router(conversations.router)
    app.include_router(requests.router)
    app.include_router(notifications.router)

    if blob_store is not None and blob_store.base_url.startswith("/"):
        blob_store.root_dir.mkdir(parents=True, exist_ok=True)
        app.mount(blob_store.base_url, StaticFiles(directory=blob_store.root_dir), name="uploads")

    @app.get("/health")
    def health():
        return {"status": "ok", "push_enabled": push_gateway.enabled}

    return app


app = create_app()
