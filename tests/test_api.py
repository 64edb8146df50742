import hashlib
import hmac
import json
import time
from datetime import date, timedelta
from types import SimpleNamespace

import stripe

from models import Transaction, UserSubscription


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.get_json()
    assert body["status"] == "healthy"
    assert body["services"]["environment"]["has_openai"] is False


def test_auth_flow(client, register):
    user_id, headers = register("pat@example.com")

    me = client.get("/auth/me", headers=headers)
    assert me.get_json()["user"]["id"] == user_id

    dup = client.post("/auth/register", json={"email": "PAT@example.com", "password": "another-pass"})
    assert dup.status_code == 409

    bad = client.post("/auth/login", json={"email": "pat@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401
    assert bad.get_json()["error"] == "Invalid email or password"

    ok = client.post("/auth/login", json={"email": "pat@example.com", "password": "correct-horse"})
    assert ok.status_code == 200
    assert ok.get_json()["access_token"]


def test_register_validation(client):
    assert client.post("/auth/register", json={"email": "a@b.c"}).status_code == 400
    short = client.post("/auth/register", json={"email": "a@b.c", "password": "short"})
    assert short.status_code == 400


def test_auth_rate_limit(client):
    for _ in range(5):
        client.post("/auth/login", json={"email": "x@example.com", "password": "whatever1"})

    resp = client.post("/auth/login", json={"email": "x@example.com", "password": "whatever1"})
    assert resp.status_code == 429
    assert int(resp.headers["Retry-After"]) >= 1
    assert resp.headers["X-RateLimit-Remaining"] == "0"


def test_api_requires_token(client):
    assert client.get("/api/transactions").status_code == 401
    assert client.post("/api/ask-ai", json={"prompt": "hi"}).status_code == 401


def test_ask_ai_gate_and_errors(client, register, db, set_tier, fake_ai):
    user_id, headers = register()

    assert client.post("/api/ask-ai", json={}, headers=headers).status_code == 400

    refused = client.post("/api/ask-ai", json={"prompt": "hi"}, headers=headers)
    assert refused.status_code == 403
    assert refused.get_json() == {
        "error": "AI chat limit reached", "limit": 0, "tier": "free", "upgradeRequired": True,
    }

    set_tier(db, user_id, "starter")
    fake_ai.replies.append("Spend less on coffee.")
    resp = client.post("/api/ask-ai", json={"prompt": "What should I cut?"}, headers=headers)
    assert resp.status_code == 200
    assert resp.get_json() == {"result": "Spend less on coffee."}

    usage = client.post("/api/check-usage", json={"featureType": "ai_chats"}, headers=headers).get_json()
    assert usage["usage"] == 1
    assert usage["remaining"] == 9


def test_ask_ai_without_key(client, register, db, set_tier):
    user_id, headers = register()
    set_tier(db, user_id, "premium")

    resp = client.post("/api/ask-ai", json={"prompt": "hi"}, headers=headers)
    assert resp.status_code == 500
    assert resp.get_json()["error"] == "OpenAI API key is not configured"


def test_ask_ai_persists_chat(client, register, db, set_tier, fake_ai):
    user_id, headers = register()
    set_tier(db, user_id, "pro")
    fake_ai.replies += ["First answer", "Second answer"]

    first = client.post("/api/ask-ai", json={"prompt": "Am I overspending?", "persist": True}, headers=headers)
    session_id = first.get_json()["sessionId"]

    client.post("/api/ask-ai", json={"prompt": "Thanks", "sessionId": session_id}, headers=headers)

    detail = client.get(f"/api/chat/sessions/{session_id}", headers=headers).get_json()
    assert detail["title"] == "Am I overspending?"
    assert [m["content"] for m in detail["messages"]] == ["Am I overspending?", "First answer", "Thanks",
                                                           "Second answer"]

    missing = client.post("/api/ask-ai", json={"prompt": "x", "sessionId": 999}, headers=headers)
    assert missing.status_code == 404


def test_ask_ai_stream(client, register, db, set_tier, fake_ai):
    user_id, headers = register()
    set_tier(db, user_id, "premium")
    fake_ai.replies.append("Hi there")

    resp = client.post("/api/ask-ai/stream?step=3", json={"prompt": "hello"}, headers=headers)
    assert resp.mimetype == "application/x-ndjson"
    frames = [json.loads(line)["text"] for line in resp.get_data(as_text=True).splitlines()]
    assert frames == ["Hi ", "Hi the", "Hi there"]


def test_chat_session_routes(client, register):
    _, headers = register()
    _, other_headers = register("other@example.com")

    created = client.post("/api/chat/sessions", json={"title": "Budget"}, headers=headers)
    assert created.status_code == 201
    session_id = created.get_json()["id"]

    renamed = client.patch(f"/api/chat/sessions/{session_id}", json={"title": "Budget 2025"}, headers=headers)
    assert renamed.get_json()["title"] == "Budget 2025"

    assert client.get(f"/api/chat/sessions/{session_id}", headers=other_headers).status_code == 404
    assert len(client.get("/api/chat/sessions", headers=headers).get_json()["items"]) == 1

    assert client.delete(f"/api/chat/sessions/{session_id}", headers=headers).status_code == 200
    assert client.get("/api/chat/sessions", headers=headers).get_json()["items"] == []


def test_generate_insight_route(client, register):
    _, headers = register()

    assert client.post("/api/generate-insight", json={"merchant": "Shell"}, headers=headers).status_code == 400

    resp = client.post("/api/generate-insight", json={
        "merchant": "Starbucks", "category": "Coffee", "amount": "5.25", "mood": "Anxious: deadline",
    }, headers=headers)
    assert resp.status_code == 200
    assert "herbal tea" in resp.get_json()["insight"]


def test_mood_and_ticker_routes_without_model(client, register):
    _, headers = register()

    mood = client.post("/api/generate-mood-insights", json={"currentMood": 4, "recentMoods": [5, 4]},
                       headers=headers)
    assert mood.status_code == 200
    assert mood.get_json()["forecastData"]["riskScore"] == 45

    ticker = client.post("/api/generate-ticker-insights", json={"transactions": []}, headers=headers)
    assert ticker.get_json() == {"insights": []}


def test_analyze_receipt(client, register, fake_ai):
    _, headers = register()
    answers = {"needVsWant": "Want", "mood": "Excited", "moodDescription": "new job"}

    missing = client.post("/api/analyze-receipt", json=dict(answers, mood=None, image="aGk="), headers=headers)
    assert missing.status_code == 400
    assert missing.get_json()["error"] == "Please select your mood"

    no_image = client.post("/api/analyze-receipt", json=answers, headers=headers)
    assert no_image.get_json() == {"error": "No image provided", "step": "upload"}

    fake_ai.replies.append('{"merchant": "Chipotle", "amount": 14.2, "category": "Restaurant", "confidence": 0.95}')
    resp = client.post("/api/analyze-receipt", json=dict(answers, image="aGk="), headers=headers)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["merchant"] == "Chipotle"
    assert body["needVsWant"] == "Want"
    assert body["mood"] == "Excited: new job"
    assert body["aiInsight"] is None

    usage = client.post("/api/check-usage", json={"featureType": "receipt"}, headers=headers).get_json()
    assert usage["usage"] == 1


def test_receipt_limit(client, register):
    _, headers = register()
    payload = {"needVsWant": "Need", "mood": "Neutral", "moodDescription": "errands", "image": "aGk="}

    client.post("/api/usage/increment", json={"featureType": "receipts", "increment": 2}, headers=headers)
    resp = client.post("/api/analyze-receipt", json=payload, headers=headers)
    assert resp.status_code == 403
    assert resp.get_json()["upgradeRequired"] is True


def test_save_receipt_route(client, register):
    _, headers = register()
    resp = client.post("/api/receipts", json={
        "merchant": "Target", "amount": 23.99, "category": "Shopping", "needVsWant": "Want",
        "mood": "Sad: rainy", "generateInsight": True,
    }, headers=headers)

    assert resp.status_code == 201
    txn = resp.get_json()["transaction"]
    assert txn["source"] == "receipt"
    assert txn["ai_insight"]
    assert resp.get_json()["spending_log"]["merchant"] == "Target"


def test_transaction_crud(client, register):
    _, headers = register()
    _, other_headers = register("other@example.com")

    bad = client.post("/api/transactions", json={"name": "Lunch", "amount": 0}, headers=headers)
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "Amount cannot be zero"

    created = client.post("/api/transactions", json={
        "name": "Lunch", "amount": 12.5, "date": "2024-04-01", "category": "Food",
    }, headers=headers)
    assert created.status_code == 201
    txn_id = created.get_json()["transaction"]["id"]

    patched = client.patch(f"/api/transactions/{txn_id}", json={"need_vs_want": "Need"}, headers=headers)
    assert patched.get_json()["need_vs_want"] == "Need"
    assert client.patch(f"/api/transactions/{txn_id}", json={"need_vs_want": "Meh"},
                        headers=headers).status_code == 400

    assert client.post(f"/api/transactions/{txn_id}/archive", headers=headers).get_json()["archived"] is True
    assert client.get("/api/transactions", headers=headers).get_json()["items"] == []
    archived = client.get("/api/transactions?archived=true", headers=headers).get_json()["items"]
    assert [t["id"] for t in archived] == [txn_id]
    client.post(f"/api/transactions/{txn_id}/unarchive", headers=headers)

    assert client.delete(f"/api/transactions/{txn_id}", headers=other_headers).status_code == 404
    assert client.delete(f"/api/transactions/{txn_id}", headers=headers).status_code == 200
    assert client.get("/api/transactions?archived=all", headers=headers).get_json()["items"] == []


def test_transaction_limit(client, register):
    _, headers = register()
    for i in range(5):
        resp = client.post("/api/transactions", json={"name": f"Item {i}", "amount": 3}, headers=headers)
        assert resp.status_code == 201

    refused = client.post("/api/transactions", json={"name": "One more", "amount": 3}, headers=headers)
    assert refused.status_code == 403
    assert refused.get_json()["error"] == "Transaction limit reached"


def test_clear_transactions(client, register, db):
    user_id, headers = register()
    db.add_all([
        Transaction(user_id=user_id, name="A", amount=1, date=date.today(), category=["X"]),
        Transaction(user_id=user_id, name="B", amount=2, date=date.today(), category=["X"]),
    ])
    db.commit()

    resp = client.delete("/api/transactions", headers=headers)
    assert resp.get_json() == {"success": True, "deleted": 2}


def test_spending_logs(client, register):
    _, headers = register()

    assert client.post("/api/spending-logs", json={"amount": "x", "category": "Food"},
                       headers=headers).status_code == 400
    client.post("/api/spending-logs", json={"amount": -8, "category": "Food", "date": "2024-01-02"}, headers=headers)
    client.post("/api/spending-logs", json={"amount": 20, "category": "Gas", "merchant": "Shell"}, headers=headers)

    items = client.get("/api/spending-logs", headers=headers).get_json()["items"]
    assert [i["category"] for i in items] == ["Gas", "Food"]
    assert items[1]["amount"] == 8

    assert client.delete("/api/spending-logs", headers=headers).get_json()["deleted"] == 2


def test_mood_logs_upsert(client, register):
    _, headers = register()
    today = date.today().isoformat()

    assert client.post("/api/mood-logs", json={"mood": 11}, headers=headers).status_code == 400

    first = client.post("/api/mood-logs", json={"mood": 3, "notes": "tired"}, headers=headers)
    assert first.status_code == 201
    second = client.post("/api/mood-logs", json={"mood": 7, "date": today}, headers=headers)
    assert second.status_code == 200

    old = (date.today() - timedelta(days=30)).isoformat()
    client.post("/api/mood-logs", json={"mood": 5, "date": old}, headers=headers)

    items = client.get("/api/mood-logs?days=7", headers=headers).get_json()["items"]
    assert [(i["mood"], i["date"]) for i in items] == [(7, today)]


def test_dashboard_and_forecast(client, register, db):
    user_id, headers = register()
    start = date.today() - timedelta(days=10)
    for i in range(6):
        db.add(Transaction(user_id=user_id, name="Shop", amount=10, date=start + timedelta(days=i),
                           category=["Food"], need_vs_want="Want"))
    db.commit()

    dash = client.get("/api/dashboard", headers=headers).get_json()
    assert dash["total_spent"] == 60.0
    assert dash["want_percentage"] == 100.0

    forecast = client.get("/api/forecast", headers=headers).get_json()
    assert len(forecast["days"]) == 7
    assert round(forecast["total"], 6) == 70.0

    profile = client.get("/api/profile", headers=headers).get_json()
    assert profile["stats"]["transactions_count"] == 6
    assert profile["plan"]["tier"] == "free"


def test_generate_calendar_route(client, register, db, set_tier, fake_ai):
    user_id, headers = register()
    form = {"age": 28, "family": "Single", "income": 50000, "goals": ["Save"], "risk": "Medium"}

    assert client.post("/api/generate-calendar", json=dict(form, goals=[]), headers=headers).status_code == 400
    assert client.post("/api/generate-calendar", json=form, headers=headers).status_code == 403

    set_tier(db, user_id, "starter")
    fake_ai.replies.append("```json\n{\"summary\": \"Save first.\", \"scores\": {\"Readiness\": 5}}\n```")
    resp = client.post("/api/generate-calendar", json=form, headers=headers)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["success"] is True
    assert body["data"]["scores"]["Risk Management"] == 7
    assert len(body["data"]["calendar"]) == 7


def test_calendar_save_and_load(client, register):
    _, headers = register()
    assert client.get("/api/calendar/load", headers=headers).get_json() == {"success": True, "data": None}

    client.post("/api/calendar/save", json={
        "form_data": {"goals": ["Save"]}, "event_statuses": {"task-1-1": "done"},
    }, headers=headers)

    data = client.get("/api/calendar/load", headers=headers).get_json()["data"]
    assert data["calendar_form"] == {"goals": ["Save"]}
    assert data["task_statuses"]["event_statuses"] == {"task-1-1": "done"}


def test_stripe_checkout(client, register, monkeypatch):
    _, headers = register()
    assert client.post("/api/stripe/checkout", json={}, headers=headers).status_code == 400

    monkeypatch.setattr(stripe, "api_key", "sk_test_123")
    monkeypatch.setattr(stripe.checkout.Session, "create",
                        lambda **kw: SimpleNamespace(url="https://checkout.stripe.test/abc"))

    for _ in range(5):
        resp = client.post("/api/stripe/checkout", json={"priceId": "price_1"}, headers=headers)
        assert resp.get_json() == {"url": "https://checkout.stripe.test/abc"}

    limited = client.post("/api/stripe/checkout", json={"priceId": "price_1"}, headers=headers)
    assert limited.status_code == 429
    assert "Retry-After" in limited.headers


def sign(payload, secret="whsec_test"):
    timestamp = int(time.time())
    signature = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def test_stripe_webhook(client, register, db):
    user_id, _ = register()
    db.add(UserSubscription(user_id=user_id, subscription_tier="pro", status="active",
                            stripe_subscription_id="sub_42"))
    db.commit()

    payload = json.dumps({
        "id": "evt_1",
        "object": "event",
        "type": "invoice.payment_failed",
        "data": {"object": {"object": "invoice", "subscription": "sub_42"}},
    })

    bad = client.post("/api/stripe/webhook", data=payload, headers={"Stripe-Signature": "t=1,v1=nope"})
    assert bad.status_code == 400

    ok = client.post("/api/stripe/webhook", data=payload, headers={"Stripe-Signature": sign(payload)},
                     content_type="application/json")
    assert ok.get_json() == {"received": True}

    db.expire_all()
    assert db.query(UserSubscription).filter_by(user_id=user_id).one().status == "past_due"


def test_cancel_subscription_and_status(client, register, db, set_tier, monkeypatch):
    user_id, headers = register()
    assert client.post("/api/stripe/cancel-subscription", headers=headers).status_code == 404

    set_tier(db, user_id, "pro", stripe_subscription_id="sub_7")
    monkeypatch.setattr(stripe.Subscription, "modify", lambda sid, **kw: None)
    assert client.post("/api/stripe/cancel-subscription", headers=headers).get_json()["success"] is True

    status = client.get("/api/payment/status?payment=success&session_id=cs_9", headers=headers).get_json()
    assert status == {"payment": "success", "session_id": "cs_9", "tier": "pro"}


def test_ask_ai_mood_budgeting_mode(client, register, db, set_tier, fake_ai):
    user_id, headers = register()
    set_tier(db, user_id, "starter")

    client.post("/api/ask-ai", json={"prompt": "Why do I shop when sad?", "mode": "mood-budgeting"},
                headers=headers)
    client.post("/api/ask-ai", json={"prompt": "hi", "systemPrompt": "Be brief."}, headers=headers)

    assert "mood-based budgeting app" in fake_ai.calls[0]["messages"][0]["content"]
    assert fake_ai.calls[1]["messages"][0]["content"] == "Be brief."


def test_plan_route(client, register):
    _, headers = register()
    plan = client.get("/api/plan", headers=headers).get_json()
    assert plan["tier"] == "free"
    assert plan["details"] is None
    assert plan["remaining"] == {"transactions": 5, "receipts": 2, "ai_chats": 0}


def test_mood_insights_survive_malformed_input(client, register):
    _, headers = register()

    resp = client.post("/api/generate-mood-insights", json={"currentMood": "high", "recentTransactions": [5]},
                       headers=headers)
    assert resp.status_code == 200
    assert resp.get_json()["forecastData"]["riskScore"] == 45


def test_ask_ai_unknown_session_costs_nothing(client, register, db, set_tier, fake_ai):
    user_id, headers = register()
    set_tier(db, user_id, "starter")
    _, other_headers = register("jo@example.com")
    foreign = client.post("/api/chat/sessions", json={"title": "Mine"}, headers=other_headers).get_json()["id"]

    for session_id in (999, foreign):
        resp = client.post("/api/ask-ai", json={"prompt": "x", "sessionId": session_id}, headers=headers)
        assert resp.status_code == 404
        assert resp.get_json()["error"] == "Chat session not found"

    assert fake_ai.calls == []
    usage = client.post("/api/check-usage", json={"featureType": "ai_chat"}, headers=headers).get_json()
    assert usage["usage"] == 0


def test_analyze_receipt_unreadable_reply(client, register, fake_ai):
    _, headers = register()
    fake_ai.replies.append("I cannot read this receipt.")

    resp = client.post("/api/analyze-receipt", json={
        "needVsWant": "Need", "mood": "Stressed", "moodDescription": "late bill", "image": "aGk=",
    }, headers=headers)
    body = resp.get_json()
    assert resp.status_code == 200
    assert body["merchant"] == "Unknown Merchant"
    assert body["amount"] == 0
    assert body["confidence"] == 0.3
    assert body["needVsWant"] == "Need"
    assert body["mood"] == "Stressed: late bill"
    assert body["aiInsight"] is None

    usage = client.post("/api/check-usage", json={"featureType": "receipt"}, headers=headers).get_json()
    assert usage["usage"] == 1
