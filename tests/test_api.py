import pytest

# ============================================================================
# HEALTH & INFO TESTS
# ============================================================================


@pytest.mark.asyncio
async def test_root_endpoint(client):
    """Test root endpoint"""
    response = await client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["name"] == "Cyber Quiz Live API"
    assert data["version"] == "1.2.0"
    assert "features" in data


@pytest.mark.asyncio
async def test_health_endpoint(client):
    """Test health check endpoint"""
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert "status" in data
    assert data["services"]["redis"] == "disabled"
    assert data["stream"]["subscribers"] == 0


@pytest.mark.asyncio
async def test_time_sync(client):
    response = await client.get("/api/time-sync")
    assert response.status_code == 200
    assert isinstance(response.json()["serverTime"], int)


# ============================================================================
# REGISTRATION TESTS
# ============================================================================


@pytest.mark.asyncio
async def test_register_and_check(client):
    """Register, look up, then confirm no result exists yet"""
    response = await client.post(
        "/api/users",
        json={"name": " A ", "rollNo": "235ucs001", "mobileNo": "9876543210", "email": "A@X.com"},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["user"]["name"] == "A"
    assert data["user"]["rollNo"] == "235UCS001"
    assert data["user"]["email"] == "a@x.com"
    assert data["userId"] == data["user"]["id"]

    response = await client.get("/api/users", params={"rollNo": "235UCS001"})
    assert response.json()["exists"] is True

    response = await client.get("/api/quiz/check", params={"rollNo": "235UCS001"})
    assert response.status_code == 200
    assert response.json() == {"hasCompleted": False, "result": None}


@pytest.mark.asyncio
async def test_register_duplicate(client, registered_user):
    response = await client.post(
        "/api/users",
        json={"name": "B", "rollNo": "235UCS009", "mobileNo": "9876543210", "email": "b@x.com"},
    )
    assert response.status_code == 409
    assert "error" in response.json()


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "A", "rollNo": "UCS001", "mobileNo": "9876543210", "email": "a@x.com"},
        {"name": "A", "rollNo": "235UCS001", "mobileNo": "1234567890", "email": "a@x.com"},
        {"name": "A", "rollNo": "235UCS001", "mobileNo": "9876543210", "email": "not-an-email"},
        {"name": "   ", "rollNo": "235UCS001", "mobileNo": "9876543210", "email": "a@x.com"},
        {"rollNo": "235UCS001"},
    ],
)
@pytest.mark.asyncio
async def test_register_validation(client, payload):
    response = await client.post("/api/users", json=payload)
    assert response.status_code == 400
    assert "error" in response.json()


@pytest.mark.asyncio
async def test_lookup_normalizes_identifiers(client, registered_user):
    response = await client.get("/api/users", params={"rollNo": " 235ucs001 "})
    assert response.json()["exists"] is True

    response = await client.get("/api/users", params={"email": "A@X.COM"})
    assert response.json()["user"]["id"] == registered_user["id"]

    response = await client.post(
        "/api/users",
        json={"name": "B", "rollNo": "235UCS001", "mobileNo": "9000000001", "email": "b@x.com"},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_lookup_requires_identifier(client):
    response = await client.get("/api/users")
    assert response.status_code == 400

    response = await client.get("/api/users", params={"email": "nobody@x.com"})
    assert response.json() == {"exists": False}


# ============================================================================
# QUIZ STATE TESTS
# ============================================================================


@pytest.mark.asyncio
async def test_get_default_state(client):
    response = await client.get("/api/quiz/state")
    assert response.status_code == 200
    state = response.json()["state"]
    assert state["isActive"] is False
    assert state["phase"] == "idle"
    assert "countdownToken" not in state


@pytest.mark.asyncio
async def test_admin_state_requires_token(client):
    response = await client.post("/api/quiz/state", json={"action": "reset"})
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}


@pytest.mark.asyncio
async def test_unknown_action_rejected(client, admin_headers):
    response = await client.post("/api/quiz/state", json={"action": "explode"}, headers=admin_headers)
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid action"}


@pytest.mark.asyncio
async def test_malformed_action_rejected(client, admin_headers):
    response = await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": "abc"}, headers=admin_headers
    )
    assert response.status_code == 400

    response = await client.post("/api/quiz/state", json={"questionId": 1}, headers=admin_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_start_question_action(client, admin_headers):
    response = await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": 17}, headers=admin_headers
    )
    assert response.status_code == 200
    state = response.json()["state"]
    assert state["isActive"] is True
    assert state["currentQuestionId"] == 17
    assert state["timeRemaining"] > 0

    response = await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": 18}, headers=admin_headers
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_start_unknown_question_action(client, admin_headers):
    response = await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": 999}, headers=admin_headers
    )
    assert response.status_code == 404


# ============================================================================
# LIVE ANSWER TESTS
# ============================================================================


@pytest.mark.asyncio
async def test_live_answer_flow(client, admin_headers, registered_user, bank):
    await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": 17}, headers=admin_headers
    )
    user_id = registered_user["id"]

    response = await client.post(
        "/api/quiz/live",
        json={"userId": user_id, "questionId": 17, "selectedOption": 2, "timeTaken": 2},
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "isCorrect": True, "pointsEarned": 140}

    response = await client.get("/api/quiz/live", params={"userId": user_id})
    data = response.json()
    assert data["participants"] == 1
    assert data["yourRank"] == 1
    entry = data["leaderboard"][0]
    assert entry["name"] == "A"
    assert entry["rollNo"] == "235UCS001"
    assert entry["totalPoints"] == 140

    response = await client.get("/api/quiz/check", params={"email": "a@x.com"})
    assert response.json()["hasCompleted"] is True

    own = bank.question_at(user_id, 0, 10)
    closed = next(qid for qid in bank.ids if qid not in (17, own.id))
    response = await client.post(
        "/api/quiz/live",
        json={"userId": user_id, "questionId": closed, "selectedOption": 0, "timeTaken": 1},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_live_answer_when_idle(client):
    response = await client.post(
        "/api/quiz/live",
        json={"userId": "u1", "questionId": 17, "selectedOption": 2, "timeTaken": 2},
    )
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_live_answer_rejects_nan_time(client, admin_headers):
    await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": 17}, headers=admin_headers
    )
    response = await client.post(
        "/api/quiz/live",
        content='{"userId": "u1", "questionId": 17, "selectedOption": 2, "timeTaken": NaN}',
        headers={"Content-Type": "application/json"},
    )
    assert response.status_code == 400

    response = await client.get("/api/quiz/live")
    assert response.json()["leaderboard"] == []


@pytest.mark.asyncio
async def test_live_answer_validation(client):
    response = await client.post("/api/quiz/live", json={"userId": "u1", "questionId": 17})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_user_questions(client):
    response = await client.get("/api/quiz/questions", params={"userId": "u1", "count": 5})
    assert response.status_code == 200
    data = response.json()
    assert len(data["questions"]) == 5
    assert len(set(data["questionIds"])) == 5
    for question in data["questions"]:
        assert "correctAnswer" not in question

    again = await client.get("/api/quiz/questions", params={"userId": "u1", "count": 5})
    assert again.json()["questionIds"] == data["questionIds"]

    response = await client.get("/api/quiz/questions", params={"userId": "u1", "count": 31})
    assert response.status_code == 400


# ============================================================================
# LEGACY SUBMISSION
# ============================================================================


@pytest.mark.asyncio
async def test_legacy_submit(client):
    payload = {
        "name": "C",
        "rollNo": "235UCS003",
        "mobileNo": "9123456789",
        "email": "c@x.com",
        "score": 8,
        "totalQuestions": 10,
        "answers": [],
    }
    response = await client.post("/api/quiz/submit", json=payload)
    assert response.status_code == 200
    result = response.json()["result"]
    assert result["percentage"] == 80
    assert result["isEligibleForReward"] is True

    response = await client.post("/api/quiz/submit", json=payload)
    assert response.status_code == 409


# ============================================================================
# ADMIN TESTS
# ============================================================================


@pytest.mark.asyncio
async def test_admin_login(client):
    response = await client.post("/api/admin/login", json={"username": "admin", "password": "cyber123"})
    assert response.status_code == 200
    assert response.json()["token"]

    response = await client.post("/api/admin/login", json={"username": "admin", "password": "nope"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_admin_users_and_reward(client, admin_headers, registered_user):
    response = await client.get("/api/admin/users")
    assert response.status_code == 401

    await client.post(
        "/api/quiz/state", json={"action": "start_question", "questionId": 17}, headers=admin_headers
    )
    user_id = registered_user["id"]
    await client.post(
        "/api/quiz/live",
        json={"userId": user_id, "questionId": 17, "selectedOption": 2, "timeTaken": 2},
    )

    response = await client.get("/api/admin/users", headers=admin_headers)
    assert response.status_code == 200
    stats = response.json()["data"]["statistics"]
    assert stats["totalUsers"] == 1
    assert stats["averageScore"] == 10
    assert stats["rewardsGiven"] == 0

    response = await client.patch(
        "/api/admin/reward", json={"userId": user_id, "rewardGiven": True}, headers=admin_headers
    )
    assert response.status_code == 200

    response = await client.get("/api/admin/users", headers=admin_headers)
    assert response.json()["data"]["statistics"]["rewardsGiven"] == 1

    response = await client.patch(
        "/api/admin/users", json={"userId": "missing", "rewardGiven": True}, headers=admin_headers
    )
    assert response.status_code == 404


# ============================================================================
# VISITOR TESTS
# ============================================================================


@pytest.mark.asyncio
async def test_visitor_counting(client):
    response = await client.post("/api/visitors")
    assert response.status_code == 200
    assert response.json()["isNewVisitor"] is True
    visitor_id = response.cookies["visitor_id"]

    response = await client.post("/api/visitors", headers={"Cookie": f"visitor_id={visitor_id}"})
    data = response.json()
    assert data["isNewVisitor"] is False
    assert data["totalVisitors"] == 1

    response = await client.get("/api/visitors")
    assert response.json()["totalVisitors"] == 1
