import json
import logging
from datetime import date, timedelta

import numpy as np
import pandas as pd
from sklearn.linear_model import LinearRegression
from sqlalchemy.orm import Session

import ai
from models import MoodLog, Transaction

logger = logging.getLogger(__name__)


# ---------------------------
# Purchase insight
# ---------------------------

INSIGHT_SYSTEM_PROMPT = """You are a financial behavior therapist with deep expertise in emotional psychology
and behavioral economics. You help people understand the hidden emotional drivers behind their spending
decisions and offer highly specific, niche interventions.

Guidelines:
- Offer ONE specific, unusual, actionable technique tailored to this exact scenario
- Avoid generic advice about budgeting, tracking, or monitoring
- Focus on the emotional pattern revealed by this purchase and the need underneath it
- Natural, flowing language; NO emojis or bullet points
- 2-3 sentences maximum"""


def normalize_need_vs_want(value):
    return value if value in ("Need", "Want") else None


def contextual_fallback(merchant, category, amount, mood=None, need_vs_want=None):
    """
    Insight used when the model is unavailable or fails. Picked by merchant
    keyword first, then mood keyword, then amount.
    """
    m = merchant.lower()
    c = (category or "").lower()
    mood_name = (mood or "").lower().split(":")[0].strip()
    feeling = mood_name or "neutral"
    amt = f"${amount:g}"

    if "starbucks" in m or "coffee" in m:
        if "stressed" in mood_name or "anxious" in mood_name:
            return (f"Your {amt} coffee run during stress might be your nervous system seeking warmth and ritual "
                    "rather than caffeine. Next time, hold a warm cup of herbal tea for 3 minutes while taking "
                    "deep breaths; it often gives the same soothing effect without the expense.")
        if amount > 8:
            return (f"That {amt} coffee suggests you upgraded or added extras when feeling {feeling}. Try a "
                    "\"coffee ceremony\" at home: grinding beans, steaming milk, taking time to savor. It turns "
                    "an expensive habit into a ritual that costs far less.")
        return (f"Coffee purchases when feeling {feeling} often signal a desire for connection or a mental "
                "transition. Try sitting in a coffee shop with a book instead of buying; you get the ambiance "
                "you were actually craving.")

    if "amazon" in m or "shopping" in m:
        if "sad" in mood_name or "down" in mood_name:
            return (f"Shopping for {amt} while feeling down often means seeking repair through acquisition. "
                    "Try \"shopping\" your own belongings instead: rediscover, rearrange or give something away.")
        if need_vs_want == "Want" and amount > 30:
            return (f"This {amt} want-purchase might be your brain seeking novelty. Set aside $5 each time you "
                    "resist an impulse buy, then once a month spend it deliberately on something surprising.")
        return (f"Online shopping when feeling {feeling} can become mindless. Add items to your cart, wait 24 "
                "hours and ask: \"What feeling am I trying to purchase?\"")

    if "uber" in m or "lyft" in m or "transport" in c:
        if "tired" in mood_name or "exhausted" in mood_name:
            return (f"That {amt} ride while tired suggests your energy is choosing your transport. Keep a small "
                    "fatigue kit (snack, water, playlist) so you can check whether you need the ride or a reset.")
        if amount > 15:
            return ("Expensive rides often happen at emotional peaks. Set a 5-minute timer before booking and "
                    "use it to look for an alternative that fits your priorities.")
        return (f"Transportation spending when feeling {feeling} may be a habit of trading money for time. "
                "Map which trips are truly worth the premium and which are just routine.")

    if "grocery" in m or "food" in m or "market" in m:
        if "stressed" in mood_name or "overwhelmed" in mood_name:
            return (f"Grocery shopping for {amt} while stressed often leads to convenient but expensive "
                    "decision-fatigue purchases. Write a five-item list before you enter the store.")
        if need_vs_want == "Need" and amount > 60:
            return (f"Large necessary grocery trips when feeling {feeling} can come from worry about scarcity. "
                    "Try buying exactly what you need for 3 days and notice how that feels.")
        return (f"Next time you shop while feeling {feeling}, pick one item purely for joy; it balances the "
                "practical with the pleasurable without overspending.")

    if "restaurant" in m or "dining" in m or "restaurant" in c:
        if "lonely" in mood_name or "sad" in mood_name:
            return (f"Dining out for {amt} while lonely suggests you are buying atmosphere along with food. "
                    "Bring a journal to a cafe instead and get the social energy for the cost of a drink.")
        if "excited" in mood_name or "celebratory" in mood_name:
            return (f"Celebrating with a {amt} meal ties joy to spending. Create a non-food celebration ritual "
                    "too, like a photo, a note to yourself or a call to someone you love.")
        return (f"Restaurant purchases when feeling {feeling} often signal wanting to be cared for. Set the table "
                "nicely at home and plate your food with care; it meets the same need for less.")

    if "anxious" in mood_name or "worried" in mood_name:
        return (f"Spending {amt} at {merchant} while anxious suggests money may feel like a fix for inner "
                "turbulence. Write down what you hope this purchase will change; the real need often shows.")
    if "happy" in mood_name or "excited" in mood_name:
        return (f"This {amt} purchase during good feelings shows you reward positive emotions with spending. "
                "Channel that energy into something that compounds, like learning or time with friends.")
    if "bored" in mood_name or "restless" in mood_name:
        return (f"Shopping for {amt} at {merchant} while bored means buying stimulation. Keep a list of free "
                "novelties: a new walk, rearranging a room, a short online course.")

    if amount > 100:
        return (f"Large purchases like this {amt} one often try to solve complex feelings with material "
                "solutions. Before the next one, ask what you hope it will change about how you feel.")
    if amount < 10:
        return (f"Small purchases like this {amt} one add up quietly. Notice whether they cluster around "
                "certain moods or times of day, then try a tiny free ritual instead.")

    return (f"Your {amt} purchase at {merchant} while feeling {feeling} shows how emotions and money meet. "
            "Next time, pause and ask: \"What am I hoping this will change about how I feel right now?\"")


def generate_insight(merchant, category, amount, mood=None, need_vs_want=None) -> str:
    need_vs_want = normalize_need_vs_want(need_vs_want)
    fallback = contextual_fallback(merchant, category, amount, mood, need_vs_want)

    if not ai.is_available():
        return fallback

    mood_name, _, mood_description = (mood or "Not specified").partition(":")
    mood_text = mood_name.strip() or "Not specified"
    if mood_description.strip():
        mood_text += f" ({mood_description.strip()})"

    prompt = f"""Merchant: {merchant}
Category: {category}
Amount: ${amount}
Classification: {need_vs_want or 'Not specified'}
Mood: {mood_text}

Generate a deeply personalized insight that reveals something unexpected about this purchase pattern
and offers a unique, niche suggestion for addressing the underlying emotional need."""

    try:
        insight = ai.chat_completion(
            [
                {"role": "system", "content": INSIGHT_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=150,
            temperature=0.8,
        )
    except Exception as e:
        logger.warning("Insight generation failed, using fallback: %s", e)
        return fallback

    return insight or fallback


# ---------------------------
# Mood forecast
# ---------------------------

FALLBACK_FORECAST = {
    "riskScore": 45,
    "riskLevel": "Moderate Risk",
    "riskColor": "yellow",
    "forecast": "Spending behavior patterns suggest moderate impulse risk. Current data indicates a balanced "
                "emotional-financial state with room for improved awareness.",
    "alert": "Track mood before purchases over $25 to maintain spending discipline",
    "prediction": "Steady spending pattern expected with 15% variance from baseline",
    "confidence": "Low",
}


def _mood_value(raw):
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def mood_statistics(current_mood, recent_moods, recent_transactions):
    moods = np.array([float(m) for m in (recent_moods or [])])
    transactions = [t for t in (recent_transactions or []) if isinstance(t, dict)]
    avg = float(moods.mean()) if moods.size else None
    trend = float(moods[-1] - moods[0]) if moods.size >= 2 else 0.0
    volatility = float(moods.std()) if moods.size > 1 else 0.0
    spending = float(sum(abs(float(t.get("amount", 0) or 0)) for t in transactions))
    return {
        "current": current_mood,
        "average": avg,
        "trend": trend,
        "volatility": volatility,
        "recent_spending": spending,
        "transaction_count": len(transactions),
    }


def risk_forecast(current_mood, volatility):
    """Forecast computed locally when the model reply cannot be parsed."""
    base = (10 - current_mood) * 10 if current_mood else 50
    score = min(100.0, max(0.0, base + volatility * 15))

    if score > 75:
        level, color = "High Risk", "red"
    elif score > 50:
        level, color = "Moderate Risk", "orange"
    else:
        level, color = "Low Risk", "green"

    return {
        "riskScore": int(round(score)),
        "riskLevel": level,
        "riskColor": color,
        "forecast": "Current mood patterns suggest spending impulse risk. Emotional state indicates potential "
                    "for comfort purchases during low-energy periods.",
        "alert": "Monitor discretionary spending today - mood volatility may trigger impulse purchases",
        "prediction": "Comfort spending likely to rise during afternoon stress periods",
        "confidence": "Medium",
    }


def generate_mood_forecast(current_mood, recent_moods, recent_transactions) -> dict:
    """Never raises: bad input or a failed model call yields FALLBACK_FORECAST."""
    current_mood = _mood_value(current_mood)
    try:
        stats = mood_statistics(current_mood, recent_moods, recent_transactions)
    except Exception:
        logger.warning("Invalid mood data, returning fallback forecast", exc_info=True)
        return dict(FALLBACK_FORECAST)

    if stats["trend"] > 0:
        trend = "Improving"
    elif stats["trend"] < 0:
        trend = "Declining"
    else:
        trend = "Stable"

    avg = f"{stats['average']:.1f}" if stats["average"] is not None else "Not tracked"
    current = f"{current_mood:g}" if current_mood is not None else "Not set"
    prompt = f"""You are an AI financial behavior forecaster. Analyze this data to predict spending risks:

BEHAVIORAL DATA:
- Current mood: {current}/10
- 7-day avg mood: {avg}/10
- Mood trend: {trend}
- Mood volatility: {stats['volatility']:.1f} (higher = more unpredictable)
- Recent spending: ${stats['recent_spending']:.2f}
- Transaction count: {stats['transaction_count']}

Return only a JSON object with: riskScore (0-100), riskLevel ("Low Risk" | "Moderate Risk" | "High Risk" |
"Critical Risk"), riskColor ("green" | "yellow" | "orange" | "red"), forecast (2-3 sentences), alert,
prediction, confidence ("High" | "Medium" | "Low")."""

    try:
        content = ai.chat_completion([{"role": "user", "content": prompt}], max_tokens=500, temperature=0.7)
        if not content:
            raise ValueError("No content generated")
    except Exception as e:
        logger.warning("Mood forecast failed, using fallback: %s", e)
        return dict(FALLBACK_FORECAST)

    try:
        forecast = json.loads(content)
        if not isinstance(forecast, dict):
            raise ValueError("Forecast is not an object")
        return forecast
    except ValueError:
        return risk_forecast(current_mood, stats["volatility"])


# ---------------------------
# Ticker insights
# ---------------------------

def spending_breakdown(transactions):
    """Totals per merchant and per (first) category, largest first."""
    df = pd.DataFrame(
        [
            {
                "merchant": t.get("name") or "Unknown",
                "category": (t.get("category")[0] if isinstance(t.get("category"), list) and t.get("category")
                             else t.get("category") or "General"),
                "amount": abs(float(t.get("amount", 0) or 0)),
            }
            for t in transactions
        ]
    )
    by_merchant = df.groupby("merchant")["amount"].sum().sort_values(ascending=False)
    by_category = df.groupby("category")["amount"].sum().sort_values(ascending=False)
    return {
        "total": float(df["amount"].sum()),
        "count": int(len(df)),
        "merchants": [(k, float(v)) for k, v in by_merchant.items()],
        "categories": [(k, float(v)) for k, v in by_category.items()],
    }


def generate_ticker_insights(transactions, recent_moods=None, timeframe="7d") -> list:
    if not transactions:
        return []

    try:
        breakdown = spending_breakdown(transactions)
        avg_mood = float(np.mean(recent_moods)) if recent_moods else None

        top_cats = ", ".join(f"{k}: ${v:.2f}" for k, v in breakdown["categories"][:3])
        top_merchants = ", ".join(f"{k}: ${v:.2f}" for k, v in breakdown["merchants"][:3])
        prompt = f"""You are an AI financial analyst. Based on this REAL user spending data, generate 3-4 specific insights:

ACTUAL USER DATA ({timeframe}):
- Total spent: ${breakdown['total']:.2f}
- Transactions: {breakdown['count']}
- Average mood: {f'{avg_mood:.1f}/10' if avg_mood is not None else 'Not tracked'}
- Top categories: {top_cats}
- Top merchants: {top_merchants}

Each insight MUST use the real data above, be under 65 characters, include specific numbers, and contain
no emojis. Return only a JSON array of strings, no other text."""

        content = ai.chat_completion([{"role": "user", "content": prompt}], max_tokens=300, temperature=0.3)
        insights = json.loads(content)
    except Exception as e:
        logger.warning("Ticker insights failed: %s", e)
        return []

    if not isinstance(insights, list):
        return []
    return [str(i) for i in insights]


# ---------------------------
# Dashboard statistics
# ---------------------------

def _transactions_frame(session: Session, user_id: int) -> pd.DataFrame:
    txns = (
        session.query(Transaction)
        .filter(Transaction.user_id == user_id, Transaction.archived.is_(False))
        .all()
    )
    return pd.DataFrame(
        [
            {
                "date": t.date,
                "name": t.name,
                "amount": abs(t.amount),
                "category": (t.category or ["Uncategorized"])[0],
                "need_vs_want": t.need_vs_want or "Unclassified",
                "mood": (t.mood_at_purchase or "").split(":")[0].strip() or "Unknown",
            }
            for t in txns
        ],
        columns=["date", "name", "amount", "category", "need_vs_want", "mood"],
    )


def get_dashboard_stats(session: Session, user_id: int) -> dict:
    df = _transactions_frame(session, user_id)

    stats = {
        "total_spent": 0.0,
        "transaction_count": 0,
        "need_total": 0.0,
        "want_total": 0.0,
        "want_percentage": 0.0,
        "category_labels": [],
        "category_values": [],
        "month_labels": [],
        "month_values": [],
        "mood_labels": [],
        "mood_values": [],
        "average_mood": None,
    }

    moods = [m.mood for m in session.query(MoodLog).filter(MoodLog.user_id == user_id).all()]
    if moods:
        stats["average_mood"] = round(float(np.mean(moods)), 1)

    if df.empty:
        return stats

    total = float(df["amount"].sum())
    by_need = df.groupby("need_vs_want")["amount"].sum()
    stats["total_spent"] = total
    stats["transaction_count"] = int(len(df))
    stats["need_total"] = float(by_need.get("Need", 0.0))
    stats["want_total"] = float(by_need.get("Want", 0.0))
    if total > 0:
        stats["want_percentage"] = round(stats["want_total"] / total * 100, 1)

    cat_sum = df.groupby("category")["amount"].sum().sort_values(ascending=False)
    stats["category_labels"] = list(cat_sum.index)
    stats["category_values"] = [float(x) for x in cat_sum.values]

    df["year_month"] = pd.to_datetime(df["date"]).dt.to_period("M").astype(str)
    month_sum = df.groupby("year_month")["amount"].sum().sort_index()
    stats["month_labels"] = list(month_sum.index)
    stats["month_values"] = [float(x) for x in month_sum.values]

    mood_sum = df.groupby("mood")["amount"].sum().sort_values(ascending=False)
    stats["mood_labels"] = list(mood_sum.index)
    stats["mood_values"] = [float(x) for x in mood_sum.values]

    return stats


# ---------------------------
# ML: spending forecast (next 7 days)
# ---------------------------

def spending_forecast(session: Session, user_id: int, days: int = 7):
    df = _transactions_frame(session, user_id)
    if df.empty:
        return None, "Not enough spending data to build forecast."

    daily = df.groupby("date")["amount"].sum().reset_index().sort_values("date")
    if len(daily) < 5:
        return None, "Not enough spending data to build forecast."

    daily["day_index"] = np.arange(len(daily))

    model = LinearRegression()
    model.fit(daily[["day_index"]], daily["amount"])

    future_index = np.arange(len(daily), len(daily) + days)
    preds = model.predict(pd.DataFrame({"day_index": future_index}))

    last_date = daily["date"].iloc[-1]
    result = [
        {
            "day": i + 1,
            "date": (last_date + timedelta(days=i + 1)).isoformat(),
            "predicted": float(max(p, 0)),
        }
        for i, p in enumerate(preds)
    ]
    return sum(p["predicted"] for p in result), result


# ---------------------------
# Profile stats
# ---------------------------

def get_profile_stats(session: Session, user_id: int, created_at=None) -> dict:
    txns = session.query(Transaction).filter(Transaction.user_id == user_id).all()
    mood_count = session.query(MoodLog).filter(MoodLog.user_id == user_id).count()
    stats = {
        "transactions_count": len(txns),
        "total_spent": float(sum(abs(t.amount) for t in txns)),
        "receipts_uploaded": sum(1 for t in txns if t.source == "receipt"),
        "ai_insights_generated": sum(1 for t in txns if t.ai_insight),
        "mood_logs_count": mood_count,
    }
    if created_at is not None:
        stats["account_age_days"] = (date.today() - created_at.date()).days
    return stats
