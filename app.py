import json
import logging
import time
from datetime import date, timedelta

import stripe
from flask import Blueprint, Flask, Response, current_app, g, jsonify, request, stream_with_context
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from openai import OpenAIError
from werkzeug.exceptions import HTTPException

import ai
import chat
import database
import insights
import payments
import plans
import receipts
import roadmap
from auth import auth_bp, current_user_id
from config import Config, environment_status
from errors import ApiError
from models import MoodLog, SpendingLog, Transaction, User
from ratelimit import client_ip, rate_limit

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__)


# ---------------------------
# Helpers
# ---------------------------

def db():
    """One SQLAlchemy session per request, closed on teardown."""
    if "db_session" not in g:
        g.db_session = database.SessionLocal()
    return g.db_session


def body():
    return request.get_json(silent=True) or {}


def require_usage(session, user_id, action, message):
    check = plans.can_perform_action(session, user_id, action)
    if not check.allowed:
        raise ApiError(message, 403, limit=check.limit, tier=check.tier, upgradeRequired=True)
    return check


def model_error(exc, prefix="OpenAI API error"):
    status, message, suggestions = ai.describe_api_error(exc)
    logger.error("Model call failed (%s): %s", status, message)
    return ApiError(f"{prefix}: {message}", status, debug={"status": status, "suggestions": suggestions})


def own_transaction(session, user_id, transaction_id):
    txn = session.query(Transaction).filter_by(id=transaction_id, user_id=user_id).first()
    if txn is None:
        raise ApiError("Transaction not found", 404)
    return txn


def own_chat(session, user_id, session_id):
    found = chat.get_session(session, user_id, session_id)
    if found is None:
        raise ApiError("Chat session not found", 404)
    return found


@api.before_request
def api_rate_limit():
    if request.path.startswith("/api/") and request.path != "/api/stripe/webhook":
        rate_limit("api", client_ip())


def parse_day(raw, field="date"):
    if not raw:
        return date.today()
    try:
        return date.fromisoformat(str(raw))
    except ValueError:
        raise ApiError(f"Invalid {field}, expected YYYY-MM-DD", 400)


# ---------------------------
# Health
# ---------------------------

@api.route("/health")
def health():
    status = environment_status(current_app.config)
    return jsonify({
        "status": "healthy",
        "services": {
            "environment": status,
            "openai": "available" if status["has_openai"] else "not configured (using fallbacks)",
            "stripe": "available" if status["has_stripe"] else "not configured",
        },
    })


# ---------------------------
# Plans + usage
# ---------------------------

FEATURE_ACTIONS = {feature: action for action, feature in plans.ACTION_FEATURES.items()}


def action_from(name):
    if name in plans.ACTION_FEATURES:
        return name
    if name in FEATURE_ACTIONS:
        return FEATURE_ACTIONS[name]
    raise ApiError(f"Unknown feature type: {name}", 400)


@api.route("/api/plan")
@jwt_required()
def plan():
    return jsonify(plans.plan_summary(db(), current_user_id()))


@api.route("/api/check-usage", methods=["POST"])
@jwt_required()
def check_usage():
    feature = body().get("featureType")
    if not feature:
        raise ApiError("Feature type is required", 400)

    check = plans.can_perform_action(db(), current_user_id(), action_from(feature))
    return jsonify({
        "canUse": check.allowed,
        "tier": check.tier,
        "limit": check.limit,
        "usage": check.usage,
        "remaining": check.remaining,
    })


@api.route("/api/usage/increment", methods=["POST"])
@jwt_required()
def usage_increment():
    data = body()
    feature = data.get("featureType")
    if not feature:
        raise ApiError("Missing required field: featureType", 400)
    try:
        increment = int(data.get("increment", 1))
    except (TypeError, ValueError):
        raise ApiError("increment must be an integer", 400)
    if increment < 1:
        raise ApiError("increment must be positive", 400)

    if not plans.increment_usage(db(), current_user_id(), action_from(feature), increment):
        raise ApiError("Usage limit reached", 403, upgradeRequired=True)
    return jsonify({"success": True})


# ---------------------------
# AI chat
# ---------------------------

def _answer_prompt():
    """Shared by /api/ask-ai and its streaming variant. Returns (answer, chat_session or None)."""
    data = body()
    prompt = (data.get("prompt") or "").strip()
    if not prompt:
        raise ApiError("Prompt is required", 400)

    session_id = data.get("sessionId")
    if session_id is not None:
        try:
            session_id = int(session_id)
        except (TypeError, ValueError):
            raise ApiError("sessionId must be an integer", 400)

    session = db()
    user_id = current_user_id()
    if session_id is not None:
        # unknown sessions are rejected before any quota is spent
        own_chat(session, user_id, session_id)
    rate_limit("ai", user_id)
    require_usage(session, user_id, "ai_chat", "AI chat limit reached")

    if not ai.is_available():
        raise ApiError("OpenAI API key is not configured", 500)

    system_prompt = data.get("systemPrompt")
    if not system_prompt and data.get("mode") == "mood-budgeting":
        system_prompt = ai.MOOD_BUDGETING_SYSTEM_PROMPT

    try:
        answer = chat.ask_ai(session, user_id, prompt, system_prompt)
    except OpenAIError as e:
        raise model_error(e)

    # usage only counts successful answers
    plans.increment_usage(session, user_id, "ai_chat")

    chat_session = None
    if session_id is not None or data.get("persist"):
        chat_session = chat.record_exchange(session, user_id, session_id, prompt, answer)
    return answer, chat_session


@api.route("/api/ask-ai", methods=["POST"])
@jwt_required()
def ask_ai():
    answer, chat_session = _answer_prompt()
    response = {"result": answer}
    if chat_session is not None:
        response["sessionId"] = chat_session.id
    return jsonify(response)


@api.route("/api/ask-ai/stream", methods=["POST"])
@jwt_required()
def ask_ai_stream():
    answer, _ = _answer_prompt()
    interval = current_app.config["TYPING_INTERVAL_MS"] / 1000.0
    step = max(1, request.args.get("step", default=1, type=int))

    def generate():
        for frame in chat.typing_frames(answer, step):
            yield json.dumps({"text": frame}) + "\n"
            if interval:
                time.sleep(interval)

    return Response(stream_with_context(generate()), mimetype="application/x-ndjson")


@api.route("/api/chat/sessions", methods=["GET", "POST"])
@jwt_required()
def chat_sessions():
    session = db()
    user_id = current_user_id()
    if request.method == "POST":
        title = (body().get("title") or "").strip() or "New Chat"
        created = chat.create_session(session, user_id, title)
        return jsonify(created.to_dict()), 201
    return jsonify({"items": [s.to_dict() for s in chat.list_sessions(session, user_id)]})


@api.route("/api/chat/sessions/<int:session_id>", methods=["GET", "PATCH", "DELETE"])
@jwt_required()
def chat_session_detail(session_id):
    session = db()
    found = own_chat(session, current_user_id(), session_id)

    if request.method == "DELETE":
        chat.delete_session(session, found)
        return jsonify({"success": True})
    if request.method == "PATCH":
        title = body().get("title")
        if not isinstance(title, str):
            raise ApiError("Title is required", 400)
        chat.rename_session(session, found, title)

    data = found.to_dict()
    data["messages"] = [m.to_dict() for m in chat.get_messages(session, found)]
    return jsonify(data)


# ---------------------------
# Insights
# ---------------------------

@api.route("/api/generate-insight", methods=["POST"])
@jwt_required()
def generate_insight():
    data = body()
    merchant, category, amount = data.get("merchant"), data.get("category"), data.get("amount")
    if not merchant or not category or not amount:
        raise ApiError("Missing required fields", 400)
    try:
        amount = float(amount)
    except (TypeError, ValueError):
        raise ApiError("Invalid amount format", 400)

    insight = insights.generate_insight(merchant, category, amount, data.get("mood"), data.get("needVsWant"))
    return jsonify({"insight": insight})


@api.route("/api/generate-mood-insights", methods=["POST"])
@jwt_required()
def generate_mood_insights():
    data = body()
    forecast = insights.generate_mood_forecast(
        data.get("currentMood"), data.get("recentMoods") or [], data.get("recentTransactions") or []
    )
    return jsonify({"forecastData": forecast})


@api.route("/api/generate-ticker-insights", methods=["POST"])
@jwt_required()
def generate_ticker_insights():
    data = body()
    result = insights.generate_ticker_insights(
        data.get("transactions") or [], data.get("recentMoods") or [], data.get("timeframe") or "7d"
    )
    return jsonify({"insights": result})


@api.route("/api/dashboard")
@jwt_required()
def dashboard():
    return jsonify(insights.get_dashboard_stats(db(), current_user_id()))


@api.route("/api/forecast")
@jwt_required()
def forecast():
    total, result = insights.spending_forecast(db(), current_user_id())
    if total is None:
        return jsonify({"total": None, "days": [], "message": result})
    return jsonify({"total": total, "days": result})


@api.route("/api/profile")
@jwt_required()
def profile():
    session = db()
    user = session.get(User, current_user_id())
    if user is None:
        raise ApiError("Unauthorized", 401)
    return jsonify({
        "user": user.to_dict(),
        "stats": insights.get_profile_stats(session, user.id, user.created_at),
        "plan": plans.plan_summary(session, user.id),
    })


# ---------------------------
# Receipts
# ---------------------------

@api.route("/api/analyze-receipt", methods=["POST"])
@jwt_required()
def analyze_receipt():
    data = body()
    session = db()
    user_id = current_user_id()
    require_usage(session, user_id, "receipt", "Receipt scanning limit reached")

    wizard = receipts.ReceiptWizard()
    analyzed = {"by_model": False, "result": None}

    def run(image):
        result, by_model = receipts.analyze_receipt(image)
        analyzed.update(by_model=by_model, result=result)
        return result

    try:
        wizard.answer(data.get("needVsWant"), data.get("mood"), data.get("moodDescription"))
        result = wizard.upload(data.get("image"), run)
    except receipts.WizardError as e:
        if not analyzed["by_model"]:
            raise ApiError(str(e), 400, step=wizard.step)
        # the model read the image but returned nothing usable; hand back the sanitized fallback
        logger.info("Returning fallback receipt for user %s: %s", user_id, e)
        result = dict(analyzed["result"], needVsWant=wizard.need_vs_want, mood=wizard.mood_label)

    if analyzed["by_model"]:
        plans.increment_usage(session, user_id, "receipt")

    result["aiInsight"] = None
    return jsonify(result)


@api.route("/api/receipts", methods=["POST"])
@jwt_required()
def save_receipt():
    data = body()
    if not data.get("merchant") or not data.get("amount"):
        raise ApiError("Missing required fields: merchant and amount", 400)
    try:
        float(data["amount"])
    except (TypeError, ValueError):
        raise ApiError("Invalid amount format", 400)

    if data.get("generateInsight") and not data.get("aiInsight"):
        data["aiInsight"] = insights.generate_insight(
            data["merchant"],
            data.get("category") or "General",
            abs(float(data["amount"])),
            data.get("mood"),
            data.get("needVsWant"),
        )

    txn, log = receipts.save_receipt(db(), current_user_id(), data)
    return jsonify({"transaction": txn.to_dict(), "spending_log": log.to_dict()}), 201


# ---------------------------
# Transactions
# ---------------------------

@api.route("/api/transactions", methods=["GET"])
@jwt_required()
def list_transactions():
    archived = request.args.get("archived", "false").lower()
    limit = request.args.get("limit", default=100, type=int)

    q = db().query(Transaction).filter(Transaction.user_id == current_user_id())
    if archived in ("true", "false"):
        q = q.filter(Transaction.archived.is_(archived == "true"))
    txns = q.order_by(Transaction.date.desc(), Transaction.id.desc()).limit(limit).all()
    return jsonify({"items": [t.to_dict() for t in txns]})


@api.route("/api/transactions", methods=["POST"])
@jwt_required()
def add_transaction():
    session = db()
    user_id = current_user_id()
    require_usage(session, user_id, "transaction", "Transaction limit reached")

    try:
        txn, log = receipts.create_manual_transaction(session, user_id, body())
    except ValueError as e:
        raise ApiError(str(e), 400)

    plans.increment_usage(session, user_id, "transaction")
    return jsonify({"transaction": txn.to_dict(), "spending_log": log.to_dict()}), 201


@api.route("/api/transactions", methods=["DELETE"])
@jwt_required()
def clear_transactions():
    session = db()
    deleted = session.query(Transaction).filter(Transaction.user_id == current_user_id()).delete()
    session.commit()
    return jsonify({"success": True, "deleted": deleted})


@api.route("/api/transactions/<int:transaction_id>", methods=["PATCH"])
@jwt_required()
def update_transaction(transaction_id):
    session = db()
    txn = own_transaction(session, current_user_id(), transaction_id)
    data = body()

    if "need_vs_want" in data:
        if data["need_vs_want"] not in (None, "Need", "Want"):
            raise ApiError("need_vs_want must be Need or Want", 400)
        txn.need_vs_want = data["need_vs_want"]
    if "mood_at_purchase" in data:
        txn.mood_at_purchase = data["mood_at_purchase"] or None
    if "ai_insight" in data:
        txn.ai_insight = data["ai_insight"] or None
    if "name" in data:
        if not (data["name"] or "").strip():
            raise ApiError("Name cannot be empty", 400)
        txn.name = data["name"].strip()
    if "category" in data:
        category = data["category"]
        txn.category = category if isinstance(category, list) else [category or "General"]

    session.commit()
    return jsonify(txn.to_dict())


@api.route("/api/transactions/<int:transaction_id>/archive", methods=["POST"])
@jwt_required()
def archive_transaction(transaction_id):
    session = db()
    txn = own_transaction(session, current_user_id(), transaction_id)
    txn.archived = True
    session.commit()
    return jsonify(txn.to_dict())


@api.route("/api/transactions/<int:transaction_id>/unarchive", methods=["POST"])
@jwt_required()
def unarchive_transaction(transaction_id):
    session = db()
    txn = own_transaction(session, current_user_id(), transaction_id)
    txn.archived = False
    session.commit()
    return jsonify(txn.to_dict())


@api.route("/api/transactions/<int:transaction_id>", methods=["DELETE"])
@jwt_required()
def delete_transaction(transaction_id):
    session = db()
    txn = own_transaction(session, current_user_id(), transaction_id)
    session.delete(txn)
    session.commit()
    return jsonify({"success": True})


# ---------------------------
# Spending + mood logs
# ---------------------------

@api.route("/api/spending-logs", methods=["GET", "POST", "DELETE"])
@jwt_required()
def spending_logs():
    session = db()
    user_id = current_user_id()

    if request.method == "DELETE":
        deleted = session.query(SpendingLog).filter(SpendingLog.user_id == user_id).delete()
        session.commit()
        return jsonify({"success": True, "deleted": deleted})

    if request.method == "POST":
        data = body()
        try:
            amount = float(data.get("amount"))
        except (TypeError, ValueError):
            raise ApiError("Invalid amount format", 400)
        if not data.get("category"):
            raise ApiError("Category is required", 400)
        log = receipts.add_spending_log(
            session, user_id, amount, data["category"], data.get("merchant"),
            data.get("source") or "manual", on=parse_day(data.get("date")),
        )
        session.commit()
        return jsonify(log.to_dict()), 201

    logs = (
        session.query(SpendingLog)
        .filter(SpendingLog.user_id == user_id)
        .order_by(SpendingLog.date.desc(), SpendingLog.id.desc())
        .all()
    )
    return jsonify({"items": [log.to_dict() for log in logs]})


@api.route("/api/mood-logs", methods=["GET", "POST"])
@jwt_required()
def mood_logs():
    session = db()
    user_id = current_user_id()

    if request.method == "POST":
        data = body()
        try:
            mood = int(round(float(data.get("mood"))))
        except (TypeError, ValueError):
            raise ApiError("Mood must be a number from 1 to 10", 400)
        if not 1 <= mood <= 10:
            raise ApiError("Mood must be a number from 1 to 10", 400)

        on = parse_day(data.get("date"))
        log = session.query(MoodLog).filter_by(user_id=user_id, date=on).first()
        created = log is None
        if created:
            log = MoodLog(user_id=user_id, date=on)
            session.add(log)
        log.mood = mood
        log.notes = data.get("notes") or ""
        session.commit()
        return jsonify(log.to_dict()), 201 if created else 200

    days = request.args.get("days", default=7, type=int)
    since = date.today() - timedelta(days=days - 1)
    logs = (
        session.query(MoodLog)
        .filter(MoodLog.user_id == user_id, MoodLog.date >= since)
        .order_by(MoodLog.date.asc())
        .all()
    )
    return jsonify({"items": [log.to_dict() for log in logs]})


# ---------------------------
# Roadmap / calendar
# ---------------------------

@api.route("/api/generate-calendar", methods=["POST"])
@jwt_required()
def generate_calendar():
    try:
        form = roadmap.validate_form(body())
    except ValueError as e:
        raise ApiError(str(e), 400)

    session = db()
    user_id = current_user_id()
    tier = plans.get_user_tier(session, user_id)
    if not plans.has_feature_access(tier, "calendar"):
        raise ApiError("Calendar requires a paid plan", 403, tier=tier, upgradeRequired=True)
    rate_limit("ai", user_id)

    if not ai.is_available():
        raise ApiError("OpenAI API key is not configured. Please check your environment variables.", 500)

    try:
        result = roadmap.generate_roadmap(form)
    except OpenAIError as e:
        raise model_error(e, prefix="OpenAI API Error")

    return jsonify({"success": True, "data": result.model_dump()})


@api.route("/api/calendar/save", methods=["POST"])
@jwt_required()
def calendar_save():
    data = body()
    row = roadmap.save_calendar(
        db(),
        current_user_id(),
        form_data=data.get("form_data"),
        result_data=data.get("result_data"),
        event_statuses=data.get("event_statuses"),
        custom_events=data.get("custom_events"),
    )
    return jsonify({"success": True, "data": row.to_dict()})


@api.route("/api/calendar/load", methods=["GET"])
@jwt_required()
def calendar_load():
    return jsonify({"success": True, "data": roadmap.load_calendar(db(), current_user_id())})


# ---------------------------
# Payments
# ---------------------------

@api.route("/api/stripe/checkout", methods=["POST"])
@jwt_required()
def stripe_checkout():
    data = body()
    if not data.get("priceId"):
        raise ApiError("Missing required field: priceId", 400)

    session = db()
    user_id = current_user_id()
    rate_limit("checkout", user_id, "Too many checkout attempts. Please try again later.")

    user = session.get(User, user_id)
    if user is None:
        raise ApiError("Authentication required", 401)

    try:
        url = payments.create_checkout_session(
            user, data["priceId"], current_app.config["APP_URL"], data.get("successUrl"), data.get("cancelUrl")
        )
    except (stripe.StripeError, RuntimeError):
        logger.exception("Checkout session failed for user %s", user_id)
        raise ApiError("Payment processing failed", 500)
    return jsonify({"url": url})


@api.route("/api/stripe/webhook", methods=["POST"])
def stripe_webhook():
    secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")
    if not secret:
        raise ApiError("Webhook secret is not configured", 500)

    try:
        event = payments.construct_event(
            request.get_data(), request.headers.get("Stripe-Signature", ""), secret
        )
    except ValueError as e:
        logger.warning("%s", e)
        raise ApiError("Webhook signature verification failed", 400)

    payments.handle_event(db(), event)
    return jsonify({"received": True})


@api.route("/api/stripe/cancel-subscription", methods=["POST"])
@jwt_required()
def stripe_cancel():
    try:
        sub = payments.cancel_subscription(db(), current_user_id())
    except LookupError as e:
        raise ApiError(str(e), 404)
    except stripe.StripeError:
        logger.exception("Cancel subscription failed")
        raise ApiError("Failed to cancel subscription", 500)
    return jsonify({"success": True, "subscription": sub.to_dict()})


@api.route("/api/payment/status")
@jwt_required()
def payment_status():
    result = payments.payment_result(request.args)
    result["tier"] = plans.get_user_tier(db(), current_user_id())
    return jsonify(result)


# ---------------------------
# App factory
# ---------------------------

def create_app(overrides=None):
    app = Flask(__name__)
    app.config.update(Config.from_env())
    app.config.setdefault("JWT_ACCESS_TOKEN_EXPIRES", timedelta(hours=12))
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(level=app.config["LOG_LEVEL"])

    JWTManager(app)

    origins = [o.strip() for o in app.config["CORS_ORIGINS"].split(",") if o.strip()]
    CORS(app, resources={r"/*": {"origins": origins}}, supports_credentials=True)

    database.init_engine(app.config["DATABASE_URL"])
    database.init_db()
    logger.info("Database initialized")

    ai.configure(app.config["OPENAI_API_KEY"], app.config["OPENAI_MODEL"])
    payments.configure(app.config["STRIPE_SECRET_KEY"], app.config["STRIPE_PRICE_IDS"])

    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(api)

    @app.teardown_appcontext
    def close_session(exception):
        session = g.pop("db_session", None)
        if session is not None:
            if exception is not None:
                session.rollback()
            session.close()

    @app.errorhandler(ApiError)
    def handle_api_error(e):
        return jsonify(e.to_dict()), e.status, e.headers

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        if e.code is not None and e.code < 400:
            return e
        return jsonify({"error": e.description}), e.code

    @app.errorhandler(Exception)
    def handle_unexpected(e):
        logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    return app


# ---------------------------
# Main
# ---------------------------

if __name__ == "__main__":
    create_app().run(debug=True)
