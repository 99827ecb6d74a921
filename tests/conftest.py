import pytest
from httpx import AsyncClient, ASGITransport
from mongomock_motor import AsyncMongoMockClient

from livequiz.question_bank import QuestionBank
from livequiz.runtime import QuizRuntime
from livequiz.server import create_app

TEST_DB_NAME = "cyberquiz_test"
ADMIN_HEADERS = {"Authorization": "Bearer test-admin-token"}


@pytest.fixture
def db():
    """Fresh in-memory database per test"""
    client = AsyncMongoMockClient()
    return client[TEST_DB_NAME]


@pytest.fixture(scope="session")
def bank():
    return QuestionBank.from_file()


@pytest.fixture
async def runtime(db, bank):
    rt = QuizRuntime(db, bank=bank, enforce_window=True, countdown_tick=0.01, stream_interval=0.02)
    yield rt
    await rt.close()


@pytest.fixture
async def client(runtime):
    """Create test client"""
    app = create_app(runtime=runtime)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers():
    return dict(ADMIN_HEADERS)


@pytest.fixture
async def registered_user(client):
    """Register the sample participant used across API tests"""
    response = await client.post(
        "/api/users",
        json={"name": "A", "rollNo": "235UCS001", "mobileNo": "9876543210", "email": "a@x.com"},
    )
    assert response.status_code == 200
    return response.json()["user"]
