import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from fakeredis.aioredis import FakeRedis

os.environ.setdefault("SECRET_KEY", "chatcore-test-secret-key-0123456789abcdef")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("CORS_ALLOW_ORIGINS", "http://app.test")

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from chatcore.domain.chat import container
from chatcore.domain.chat.models import UserProfile
from chatcore.infra import postgres
from chatcore.infra.jwt import encode_access
from chatcore.main import app
from chatcore.settings import settings


KNOWN_USERS = ("alice", "bob", "carol", "dave")


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from chatcore.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Pin the settings the tests rely on and restore them afterwards."""
	original = (settings.environment, settings.conceal_membership, settings.obs_metrics_public, settings.obs_admin_token)
	settings.environment = "test"
	settings.conceal_membership = True
	settings.obs_metrics_public = False
	settings.obs_admin_token = None
	try:
		yield
	finally:
		(
			settings.environment,
			settings.conceal_membership,
			settings.obs_metrics_public,
			settings.obs_admin_token,
		) = original


@pytest_asyncio.fixture(autouse=True)
async def chat():
	"""A fresh chat core (memory store) with a few known users."""
	await container.reset_chat()
	core = container.get_chat()
	for user_id in KNOWN_USERS:
		core.users.register(UserProfile(id=user_id, display_name=user_id.title(), avatar_url=None))
	try:
		yield core
	finally:
		await container.reset_chat()


@pytest.fixture
def token_for():
	def _token(user_id: str, **claims) -> str:
		return encode_access({"sub": user_id, **claims})

	return _token


@pytest.fixture
def auth_headers(token_for):
	def _headers(user_id: str) -> dict:
		return {"Authorization": f"Bearer {token_for(user_id)}"}

	return _headers


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
