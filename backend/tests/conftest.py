import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from threadguard.moderation.domain.clock import FixedClock
from threadguard.moderation.domain.models import Actor, CommentState, Role
from threadguard.moderation.domain.store import InMemoryModerationStore
from threadguard.settings import settings

T0 = datetime(2024, 3, 4, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from threadguard.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def fast_external_calls():
	"""Keep retry loops fast and deterministic."""
	original = (
		settings.external_call_timeout_seconds,
		settings.external_call_attempts,
		settings.external_call_backoff_seconds,
	)
	settings.external_call_timeout_seconds = 1.0
	settings.external_call_attempts = 3
	settings.external_call_backoff_seconds = 0.0
	try:
		yield
	finally:
		(
			settings.external_call_timeout_seconds,
			settings.external_call_attempts,
			settings.external_call_backoff_seconds,
		) = original


@pytest.fixture
def clock() -> FixedClock:
	return FixedClock(T0)


@pytest.fixture
def store() -> InMemoryModerationStore:
	return InMemoryModerationStore()


@pytest_asyncio.fixture
async def community(store: InMemoryModerationStore) -> InMemoryModerationStore:
	"""Store seeded with an author, reporters, staff and one comment."""
	await store.upsert_actor(Actor(actor_id="author", created_at=T0 - timedelta(days=2)))
	for idx in range(1, 13):
		await store.upsert_actor(Actor(actor_id=f"r{idx}", created_at=T0 - timedelta(days=90)))
	await store.upsert_actor(Actor(actor_id="user1", created_at=T0 - timedelta(days=30)))
	await store.upsert_actor(Actor(actor_id="mod1", role=Role.MODERATOR))
	await store.upsert_actor(Actor(actor_id="mod2", role=Role.MODERATOR))
	await store.upsert_actor(Actor(actor_id="admin1", role=Role.ADMIN))
	await store.upsert_actor(Actor(actor_id="root", role=Role.SUPER_ADMIN))
	await store.upsert_comment(CommentState(comment_id="c1", author_id="author", thread_id="c1"))
	return store
