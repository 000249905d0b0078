import asyncio
import os
import sys
import tempfile

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
# Importing marketsync.main builds the module-level app; keep its database out of the source tree.
os.environ.setdefault("MARKETSYNC_DB_PATH", os.path.join(tempfile.gettempdir(), "marketsync-test.sqlite3"))

from marketsync.services.conversation_resolver import ConversationResolver
from marketsync.services.document_store import DocumentStore
from marketsync.services.live_query import LiveQuerySubscriber
from marketsync.services.notification_dispatcher import NotificationDispatcher
from marketsync.services.user_directory import UserDirectory
from marketsync.services.workflow_engine import WorkflowEngine


async def settle(rounds: int = 5) -> None:
    """Let queued listener deliveries run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def next_snapshot(subscription, timeout: float = 1.0):
    return await asyncio.wait_for(subscription.__anext__(), timeout)


@pytest.fixture
def store(tmp_path):
    document_store = DocumentStore(db_path=str(tmp_path / "store.sqlite3"))
    yield document_store
    document_store.close()


@pytest.fixture
def subscriber(store):
    return LiveQuerySubscriber(store)


@pytest.fixture
def directory(store):
    return UserDirectory(store)


@pytest.fixture
def dispatcher(store, subscriber):
    return NotificationDispatcher(store, subscriber)


@pytest.fixture
def resolver(store, directory, subscriber, dispatcher):
    return ConversationResolver(store, directory, subscriber, notifications=dispatcher)


@pytest.fixture
def engine(store, dispatcher, subscriber, resolver):
    return WorkflowEngine(store, dispatcher, subscriber, conversations=resolver)
